"""
Archive creation for backup runs.

Supports multiple formats:
- tar.gz: Gzip compressed tar (default)
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)
- zip: Standard zip compression

Members are written in the order the staged artifacts were produced, each
under its own basename, so the same staging contents always give the same
member list.
"""

import logging
import os
import stat
import tarfile
import zipfile
from pathlib import Path
from typing import List, Sequence

from ..errors import ArchiveCreationError

logger = logging.getLogger(__name__)

EXTENSIONS = {
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
    'none': 'tar',
    'zip': 'zip',
}

TAR_MODES = {
    'tar.gz': 'w:gz',
    'tar.bz2': 'w:bz2',
    'tar.xz': 'w:xz',
    'none': 'w',
}


def archive_filename(prefix: str, run_id: str, compression_format: str = 'tar.gz') -> str:
    """
    Generate the archive filename for a run.

    Format: {prefix}_{run_id}.{ext}

    Args:
        prefix: Archive name prefix (e.g. 'backup')
        run_id: Run identifier
        compression_format: Compression format

    Returns:
        Filename (without path)
    """
    if compression_format not in EXTENSIONS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(EXTENSIONS.keys())}"
        )

    # Sanitize prefix (replace spaces and special chars with underscores)
    safe_prefix = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in prefix
    )
    return f"{safe_prefix}_{run_id}.{EXTENSIONS[compression_format]}"


def create_archive(
    artifact_paths: Sequence[Path],
    archive_path: Path,
    compression_format: str = 'tar.gz'
) -> Path:
    """
    Bundle staged artifacts into a single archive.

    Args:
        artifact_paths: Staged files/directories, in insertion order
        archive_path: Full path of the archive to create
        compression_format: One of EXTENSIONS

    Returns:
        Path to the created archive

    Raises:
        ArchiveCreationError: If an artifact is missing or the archive cannot be written
    """
    archive_path = Path(archive_path)

    if not artifact_paths:
        raise ArchiveCreationError("No artifacts to archive")

    if compression_format not in EXTENSIONS:
        raise ArchiveCreationError(f"Invalid compression format: {compression_format}")

    missing = [str(p) for p in artifact_paths if not Path(p).exists()]
    if missing:
        raise ArchiveCreationError(f"Artifacts missing at archive time: {', '.join(missing)}")

    names = [Path(p).name for p in artifact_paths]
    if len(set(names)) != len(names):
        raise ArchiveCreationError(f"Duplicate member names in archive: {names}")

    try:
        if compression_format == 'zip':
            _create_zip(artifact_paths, archive_path)
        else:
            _create_tar(artifact_paths, archive_path, TAR_MODES[compression_format])
    except Exception as e:
        # Clean up partial archive on failure
        if archive_path.exists():
            try:
                archive_path.unlink()
            except OSError:
                logger.warning(f"Could not remove partial archive {archive_path}")
        raise ArchiveCreationError(f"Failed to create archive: {e}")

    logger.info(f"Archive created: {archive_path.name} ({len(artifact_paths)} members)")
    return archive_path


def _create_tar(artifact_paths: Sequence[Path], archive_path: Path, mode: str):
    with tarfile.open(archive_path, mode) as tar:
        for artifact in artifact_paths:
            artifact = Path(artifact)
            # tarfile sorts directory listings itself
            tar.add(artifact, arcname=artifact.name, recursive=True)


def _create_zip(artifact_paths: Sequence[Path], archive_path: Path):
    with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for artifact in artifact_paths:
            artifact = Path(artifact)
            if artifact.is_symlink() or artifact.is_file():
                _write_zip_entry(zipf, artifact, artifact.name)
            elif artifact.is_dir():
                _add_directory_to_zip(zipf, artifact)
            else:
                raise ArchiveCreationError(f"Invalid path type: {artifact}")


def _add_directory_to_zip(zipf: zipfile.ZipFile, directory: Path):
    """
    Recursively add a directory to a zip archive under its basename.

    Empty directories get an explicit entry so they survive extraction.
    """
    zipf.write(directory, directory.name)
    for item in sorted(directory.rglob('*')):
        relative_path = item.relative_to(directory.parent)
        _write_zip_entry(zipf, item, str(relative_path))


def _write_zip_entry(zipf: zipfile.ZipFile, path: Path, arcname: str):
    """
    Add one path to a zip archive.

    Symlinks are stored as links (Unix mode bits, target as data), the way
    tarfile stores them, so a dangling link does not fail the archive.
    """
    if path.is_symlink():
        info = zipfile.ZipInfo(arcname)
        info.create_system = 3  # Unix, so external_attr carries the mode
        info.external_attr = (stat.S_IFLNK | 0o777) << 16
        zipf.writestr(info, os.readlink(path))
    else:
        zipf.write(path, arcname)


def list_members(archive_path: Path) -> List[str]:
    """Top-level member names of an archive, in archive order."""
    archive_path = Path(archive_path)
    if zipfile.is_zipfile(archive_path):
        with zipfile.ZipFile(archive_path) as zipf:
            names = [n.rstrip('/') for n in zipf.namelist()]
    else:
        with tarfile.open(archive_path, 'r:*') as tar:
            names = tar.getnames()

    top_level = []
    for name in names:
        head = name.split('/', 1)[0]
        if head not in top_level:
            top_level.append(head)
    return top_level


def get_archive_size(archive_path: Path) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveCreationError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise ArchiveCreationError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise ArchiveCreationError(f"Failed to get archive size: {e}")
