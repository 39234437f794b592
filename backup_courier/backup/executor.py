"""
Backup pipeline runner - orchestrates one complete backup run.

Workflow:
1. Acquire the staging lock (fail fast if another run holds it)
2. Create a fresh per-run staging directory
3. Snapshot source folders
4. Dump the database (if configured)
5. Create compressed archive
6. Encrypt the archive (if a passphrase is configured)
7. Deliver the final artifact with a caption
8. Remove the staging directory and release the lock (always)
"""

import logging
import shutil
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from ..config import PipelineConfig
from ..errors import EncryptionError, PipelineError, StagingWriteError
from ..models import RunHistory, RunRecord
from ..utils.crypto import Encryptor
from ..utils.locking import StagingLock
from .compression import archive_filename, create_archive, get_archive_size
from .database import DatabaseDumper
from .delivery import DeliveryReceipt, build_caption, create_deliverer, decrypt_command
from .sources import SourceCollector

logger = logging.getLogger(__name__)

RUN_DIR_PREFIX = 'run_'


class RunState(str, Enum):
    IDLE = 'idle'
    COLLECTING_SOURCES = 'collecting_sources'
    DUMPING_DATABASE = 'dumping_database'
    ARCHIVING = 'archiving'
    ENCRYPTING = 'encrypting'
    DELIVERING = 'delivering'
    CLEANING_UP = 'cleaning_up'
    COMPLETED = 'completed'
    FAILED = 'failed'


class ArtifactKind(str, Enum):
    SNAPSHOT = 'snapshot'
    DUMP = 'dump'
    ARCHIVE = 'archive'
    ENCRYPTED = 'encrypted'


@dataclass
class Artifact:
    """A file or directory produced during a run."""
    path: Path
    kind: ArtifactKind
    final: bool = False

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class RunContext:
    """Per-run state: identifier, staging directory and the artifacts produced so far."""
    run_id: str
    staging_dir: Path
    started_at: datetime
    artifacts: List[Artifact] = field(default_factory=list)

    def add(self, path: Path, kind: ArtifactKind) -> Artifact:
        artifact = Artifact(path=Path(path), kind=kind)
        self.artifacts.append(artifact)
        return artifact

    def of_kind(self, *kinds: ArtifactKind) -> List[Artifact]:
        return [a for a in self.artifacts if a.kind in kinds]

    def promote(self, artifact: Artifact):
        """Make an artifact the one to deliver; everything else becomes intermediate."""
        for other in self.artifacts:
            other.final = other is artifact

    @property
    def final_artifact(self) -> Optional[Artifact]:
        finals = [a for a in self.artifacts if a.final]
        return finals[0] if len(finals) == 1 else None


@dataclass
class RunResult:
    """Outcome of a run, returned once cleanup has finished."""
    run_id: str
    state: RunState
    receipt: Optional[DeliveryReceipt] = None
    artifact_name: Optional[str] = None
    error: Optional[PipelineError] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.COMPLETED

    @property
    def failed_stage(self) -> Optional[str]:
        return self.error.stage if self.error is not None else None


class PipelineRunner:
    """
    Runs the backup pipeline for a configuration.

    Stages run strictly in order. A stage error skips the remaining stages
    but never the cleanup of the staging directory.
    """

    def __init__(
        self,
        config: PipelineConfig,
        deliverer=None,
        history: Optional[RunHistory] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the pipeline runner.

        Args:
            config: Validated pipeline configuration
            deliverer: Delivery backend (created from config.remote_endpoint if None)
            history: Run history store (optional)
            clock: Source of the run timestamp (defaults to datetime.now)
        """
        self.config = config
        self.deliverer = deliverer
        self.history = history
        self.clock = clock or datetime.now

        self.state = RunState.IDLE
        self.transitions: List[RunState] = [RunState.IDLE]
        self.context: Optional[RunContext] = None
        self.logs: List[str] = []

        self.collector = SourceCollector(config.source_paths, config.exclude_patterns)
        self.dumper = (
            DatabaseDumper(config.database, timeout=config.timeout_for('dump'))
            if config.database is not None else None
        )

    def run(self) -> RunResult:
        """
        Execute one pipeline run.

        Returns:
            RunResult with state COMPLETED or FAILED

        Raises:
            ConcurrentRunError: If another run holds the staging lock
        """
        if self.state != RunState.IDLE:
            raise RuntimeError("PipelineRunner instances run once; create a new runner")

        lock = StagingLock(self.config.lock_path)
        lock.acquire()
        try:
            return self._run_locked()
        finally:
            lock.release()

    def _run_locked(self) -> RunResult:
        started_at = self.clock()
        run_id = started_at.strftime(self.config.run_id_format)
        record = self._record_start(run_id, started_at)

        self._log(f"Starting backup run {run_id}")
        result = RunResult(run_id=run_id, state=RunState.FAILED, logs=self.logs)

        try:
            with self._staging(run_id) as staging_dir:
                self.context = RunContext(run_id=run_id, staging_dir=staging_dir, started_at=started_at)
                result.receipt = self._execute_stages(self.context)
                result.artifact_name = self.context.final_artifact.name
                file_size = self._final_size()
        except PipelineError as e:
            result.error = e
            self._fail(e)
        except BaseException:
            # Bugs and interrupts are recorded, then propagate
            self._transition(RunState.FAILED)
            logger.exception(f"Backup run {run_id} aborted unexpectedly")
            self._record_finish(record, status='failed', error_message='aborted unexpectedly')
            raise
        else:
            self._transition(RunState.COMPLETED)
            self._log(f"Backup run {run_id} completed: {result.artifact_name} -> {result.receipt.reference}")

        result.state = self.state

        if result.succeeded:
            self._record_finish(
                record,
                status='completed',
                artifact_name=result.artifact_name,
                file_size_bytes=file_size,
                remote_reference=result.receipt.reference,
            )
        else:
            self._record_finish(
                record,
                status='failed',
                failed_stage=result.failed_stage,
                error_message=str(result.error),
            )

        return result

    def _record_start(self, run_id: str, started_at: datetime) -> Optional[RunRecord]:
        """Open a history row; a history failure never stops the backup."""
        if self.history is None:
            return None
        try:
            return self.history.start(run_id, started_at)
        except Exception as e:
            self._log(f"Warning: Failed to record run start in history: {e}", level=logging.WARNING)
            return None

    def _record_finish(self, record: Optional[RunRecord], **fields):
        """Store the outcome; the run's result stands even if this fails."""
        if record is None:
            return
        fields.setdefault('completed_at', self.clock())
        fields['logs'] = '\n'.join(self.logs)
        try:
            self.history.finish(record, **fields)
        except Exception as e:
            self._log(f"Warning: Failed to record run outcome in history: {e}", level=logging.WARNING)

    def _execute_stages(self, ctx: RunContext) -> DeliveryReceipt:
        """Run every stage in order; any PipelineError aborts the rest."""
        # Step 1: Snapshot source folders
        self._transition(RunState.COLLECTING_SOURCES)
        for path in self.collector.collect(ctx.staging_dir, ctx.run_id):
            ctx.add(path, ArtifactKind.SNAPSHOT)
        self._log(f"Collected {len(ctx.of_kind(ArtifactKind.SNAPSHOT))} source paths")

        # Step 2: Dump the database
        self._transition(RunState.DUMPING_DATABASE)
        if self.dumper is not None:
            ctx.add(self.dumper.dump(ctx.staging_dir, ctx.run_id), ArtifactKind.DUMP)
            self._log(f"Database '{self.config.database.name}' dumped")
        else:
            self._log("No database configured, skipping dump")

        # Step 3: Create archive
        self._transition(RunState.ARCHIVING)
        members = [a.path for a in ctx.of_kind(ArtifactKind.SNAPSHOT, ArtifactKind.DUMP)]
        archive_path = ctx.staging_dir / archive_filename(
            self.config.archive_prefix, ctx.run_id, self.config.compression_format
        )
        archive = ctx.add(
            create_archive(members, archive_path, self.config.compression_format),
            ArtifactKind.ARCHIVE
        )
        ctx.promote(archive)
        self._log(f"Archive created: {archive.name} ({get_archive_size(archive.path) / 1024 / 1024:.2f} MB)")

        # Step 4: Encrypt the archive
        if self.config.encryption_enabled:
            self._transition(RunState.ENCRYPTING)
            encryptor = Encryptor(
                self.config.encryption_passphrase,
                iterations=self.config.kdf_iterations,
                timeout=self.config.timeout_for('encrypt'),
            )
            encrypted = ctx.add(encryptor.encrypt_file(archive.path), ArtifactKind.ENCRYPTED)
            ctx.promote(encrypted)
            self._log(f"Archive encrypted as {encrypted.name}")

        # Step 5: Deliver
        self._transition(RunState.DELIVERING)
        final = ctx.final_artifact
        if final is None:
            raise PipelineError("No final artifact to deliver", stage='deliver')
        if self.config.encryption_enabled and final.kind != ArtifactKind.ENCRYPTED:
            raise EncryptionError("Refusing to deliver an unencrypted archive while encryption is configured")

        deliverer = self.deliverer or create_deliverer(
            self.config.remote_endpoint, timeout=self.config.timeout_for('deliver')
        )
        caption = self._build_caption(ctx, final, use_html=getattr(deliverer, 'use_html', True))
        receipt = deliverer.deliver(final.path, caption, metadata={
            'run-id': ctx.run_id,
            'host': self.config.host_name,
            'database': self.config.database.name if self.config.database else '',
            'encrypted': 'true' if final.kind == ArtifactKind.ENCRYPTED else 'false',
        })
        self._log(f"Delivered {final.name} to {self.config.remote_endpoint.describe()}")
        return receipt

    def _build_caption(self, ctx: RunContext, final: Artifact, use_html: bool = True) -> str:
        decrypt_cmd = None
        if final.kind == ArtifactKind.ENCRYPTED:
            archive = ctx.of_kind(ArtifactKind.ARCHIVE)[0]
            decrypt_cmd = decrypt_command(final.name, archive.name)

        return build_caption(
            timestamp=ctx.started_at,
            host_name=self.config.host_name,
            sources=[str(p) for p in self.config.source_paths],
            database=self.config.database.name if self.config.database else None,
            artifact_name=final.name,
            decrypt_cmd=decrypt_cmd,
            use_html=use_html,
        )

    def _final_size(self) -> Optional[int]:
        final = self.context.final_artifact if self.context else None
        if final is None or not final.path.exists():
            return None
        return final.path.stat().st_size

    @contextmanager
    def _staging(self, run_id: str):
        """
        Create a fresh staging directory for this run and always remove it.

        Leftovers of runs that were killed before cleanup are removed first;
        the caller holds the staging lock, so nothing else can own them.
        """
        root = self.config.staging_dir
        try:
            root.mkdir(parents=True, exist_ok=True)
            for leftover in root.glob(f'{RUN_DIR_PREFIX}*'):
                self._log(f"Removing leftover staging directory {leftover.name}")
                shutil.rmtree(leftover)
            staging_dir = root / f"{RUN_DIR_PREFIX}{run_id}"
            staging_dir.mkdir()
        except OSError as e:
            raise StagingWriteError(f"Cannot prepare staging directory {root}: {e}")

        self._log(f"Staging directory: {staging_dir}")
        try:
            yield staging_dir
        finally:
            self._cleanup(staging_dir)

    def _cleanup(self, staging_dir: Path):
        """Remove the staging directory and every artifact in it."""
        self._transition(RunState.CLEANING_UP)
        if staging_dir.exists():
            try:
                shutil.rmtree(staging_dir)
                self._log("Cleaned up staging directory")
            except OSError as e:
                logger.error(f"Failed to clean up staging directory {staging_dir}: {e}")
                self._log(f"Warning: Failed to cleanup staging directory: {e}")

    def _transition(self, state: RunState):
        self.state = state
        self.transitions.append(state)
        logger.debug(f"Pipeline state -> {state.value}")

    def _fail(self, error: PipelineError):
        self._transition(RunState.FAILED)
        status = error.exit_status if error.exit_status is not None else 'n/a'
        message = f"Stage {error.stage} failed (exit status {status}): {error}"
        logger.error(message)
        self._log(message, level=logging.DEBUG)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Level for the module logger
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def run_pipeline(config: PipelineConfig) -> RunResult:
    """
    Execute one backup run for a configuration ("run now").

    Args:
        config: Validated pipeline configuration

    Returns:
        RunResult with state COMPLETED or FAILED

    Raises:
        ConcurrentRunError: If another run holds the staging lock
    """
    history = RunHistory(config.history_db) if config.history_db else None
    runner = PipelineRunner(config, history=history)
    return runner.run()
