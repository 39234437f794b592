"""
Source collection for backup runs.

SourceCollector copies configured files/directories into the staging
directory under a name derived from the run identifier:

    /srv/marzban/db  ->  <staging>/db_<run_id>
"""

import errno
import logging
import os
import shutil
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, List

from ..errors import SourceUnavailable, StagingWriteError

logger = logging.getLogger(__name__)

# errno values that mean the staging side is the problem
_STAGING_ERRNOS = {errno.ENOSPC, errno.EDQUOT, errno.EROFS}


def snapshot_name(source_path: Path, run_id: str) -> str:
    """Name of the staged copy of a source path for a given run."""
    return f"{Path(source_path).name}_{run_id}"


class SourceCollector:
    """
    Copies source paths into the staging directory.

    Metadata (mtime, permissions) is preserved with copy2; symlinks inside
    directories are copied as links.
    """

    def __init__(self, paths: Iterable[Path], exclude_patterns: Iterable[str] = ()):
        """
        Initialize source collector.

        Args:
            paths: File/directory paths to snapshot (may be empty)
            exclude_patterns: Glob patterns to skip (e.g., *.pyc, __pycache__)
        """
        self.paths = [Path(p) for p in paths]
        self.exclude_patterns = list(exclude_patterns)

    def _should_exclude(self, path: Path) -> bool:
        """
        Check if a path matches any exclude pattern.

        Args:
            path: Path to check

        Returns:
            True if path should be skipped
        """
        if not self.exclude_patterns:
            return False

        path_str = str(path)
        for pattern in self.exclude_patterns:
            # Match against full path or just the name
            if fnmatch(path_str, pattern) or fnmatch(path.name, pattern):
                return True
            if pattern.startswith('**/') and fnmatch(path.name, pattern[3:]):
                return True
        return False

    def _ignore(self, directory, names):
        return [name for name in names if self._should_exclude(Path(directory) / name)]

    def check_sources(self):
        """
        Verify every source exists and is readable.

        Raises:
            SourceUnavailable: On the first missing or unreadable path
        """
        for path in self.paths:
            source_path = path.expanduser()
            if not source_path.exists():
                raise SourceUnavailable(f"Path does not exist: {path}")
            mode = os.R_OK | os.X_OK if source_path.is_dir() else os.R_OK
            if not os.access(source_path, mode):
                raise SourceUnavailable(f"Path is not readable: {path}")

    def collect(self, staging_dir: Path, run_id: str) -> List[Path]:
        """
        Copy every source path into the staging directory.

        Args:
            staging_dir: Destination directory (must exist)
            run_id: Run identifier used in snapshot names

        Returns:
            Staged paths, in configuration order

        Raises:
            SourceUnavailable: If a source is missing, unreadable or of unsupported type
            StagingWriteError: If the staging directory cannot be written
        """
        staging_dir = Path(staging_dir)
        if not self.paths:
            logger.info("No source paths configured, skipping folder snapshot")
            return []

        self.check_sources()

        if not staging_dir.is_dir() or not os.access(staging_dir, os.W_OK | os.X_OK):
            raise StagingWriteError(f"Staging directory is not writable: {staging_dir}")

        collected = []
        for path in self.paths:
            source_path = path.expanduser()
            dest_path = staging_dir / snapshot_name(source_path, run_id)
            logger.info(f"Copying {source_path} -> {dest_path.name}")

            try:
                if source_path.is_dir():
                    shutil.copytree(source_path, dest_path, symlinks=True, ignore=self._ignore)
                elif source_path.is_file():
                    shutil.copy2(source_path, dest_path)
                else:
                    raise SourceUnavailable(f"Unsupported path type: {path}")
            except SourceUnavailable:
                raise
            except shutil.Error as e:
                # copytree collects per-file errors as (src, dst, reason)
                reasons = [str(item[2]) for item in e.args[0]] if e.args and isinstance(e.args[0], list) else [str(e)]
                if any('No space left' in reason or 'Read-only file system' in reason for reason in reasons):
                    raise StagingWriteError(f"Failed to write snapshot of {path}: {'; '.join(reasons)}")
                raise SourceUnavailable(f"Failed to copy {path}: {'; '.join(reasons)}")
            except OSError as e:
                if e.errno in _STAGING_ERRNOS or _is_under(e.filename, staging_dir):
                    raise StagingWriteError(f"Failed to write snapshot of {path}: {e}")
                raise SourceUnavailable(f"Failed to copy {path}: {e}")

            collected.append(dest_path)

        return collected


def _is_under(filename, directory: Path) -> bool:
    if not filename:
        return False
    try:
        Path(filename).resolve().relative_to(directory.resolve())
        return True
    except ValueError:
        return False
