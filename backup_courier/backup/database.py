"""
Database export for backup runs.

Runs pg_dump inside a running container through `docker exec` and streams
its standard output straight into a file in the staging directory.
"""

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

from ..config import DatabaseConfig
from ..errors import DumpExecutionError

logger = logging.getLogger(__name__)


def dump_name(run_id: str) -> str:
    """Name of the SQL dump file for a given run."""
    return f"pg_backup_{run_id}.sql"


class DatabaseDumper:
    """Exports a PostgreSQL database from a container into a file."""

    def __init__(self, database: DatabaseConfig, timeout: Optional[float] = None):
        """
        Initialize database dumper.

        Args:
            database: Container and credentials of the database
            timeout: Seconds before the export is killed (None = no limit)
        """
        self.database = database
        self.timeout = timeout

    def build_command(self) -> List[str]:
        """
        Build the export command line.

        The password is passed by name only (`-e PGPASSWORD`) so it never
        shows up in the process list; its value comes from the environment.
        """
        command = [self.database.docker_binary, 'exec']
        if self.database.password:
            command += ['-e', 'PGPASSWORD']
        command += [
            self.database.service,
            self.database.dump_binary,
            '-U', self.database.user,
            self.database.name,
        ]
        return command

    def dump(self, staging_dir: Path, run_id: str) -> Path:
        """
        Export the database into the staging directory.

        Args:
            staging_dir: Destination directory
            run_id: Run identifier used in the dump filename

        Returns:
            Path to the dump file

        Raises:
            DumpExecutionError: If docker is missing, the export exits non-zero or times out
        """
        if shutil.which(self.database.docker_binary) is None:
            raise DumpExecutionError(
                f"{self.database.docker_binary} is not installed or not on PATH"
            )

        dump_path = Path(staging_dir) / dump_name(run_id)
        command = self.build_command()

        env = os.environ.copy()
        if self.database.password:
            env['PGPASSWORD'] = self.database.password

        logger.info(
            f"Dumping database '{self.database.name}' from container '{self.database.service}'"
        )

        try:
            with open(dump_path, 'wb') as out:
                result = subprocess.run(
                    command,
                    stdout=out,
                    stderr=subprocess.PIPE,
                    env=env,
                    timeout=self.timeout,
                )
        except subprocess.TimeoutExpired:
            self._discard(dump_path)
            raise DumpExecutionError(f"Database dump timed out after {self.timeout} seconds")
        except OSError as e:
            self._discard(dump_path)
            raise DumpExecutionError(f"Failed to run database dump: {e}")

        if result.returncode != 0:
            self._discard(dump_path)
            stderr = (result.stderr or b'').decode('utf-8', errors='replace').strip()
            raise DumpExecutionError(
                f"Database dump exited with code {result.returncode}: {stderr or 'no output'}",
                exit_status=result.returncode,
            )

        logger.info(f"Database dump written: {dump_path.name} ({dump_path.stat().st_size} bytes)")
        return dump_path

    @staticmethod
    def _discard(dump_path: Path):
        """Remove a partially written dump; it is never usable."""
        try:
            dump_path.unlink()
        except FileNotFoundError:
            pass
