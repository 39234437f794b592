"""
Unit tests for compression module (backup_courier/backup/compression.py).

Tests archive creation for all supported formats and member ordering.
"""

import filecmp
import os
import stat
import tarfile
import zipfile
from pathlib import Path

import pytest

from backup_courier.backup.compression import (
    archive_filename,
    create_archive,
    get_archive_size,
    list_members,
)
from backup_courier.errors import ArchiveCreationError


@pytest.fixture
def staged(tmp_path):
    """A staging directory with a snapshot folder and a dump file."""
    staging = tmp_path / 'staging'
    staging.mkdir()

    snapshot = staging / 'app_RUN'
    (snapshot / 'sub').mkdir(parents=True)
    (snapshot / 'a.txt').write_text('alpha')
    (snapshot / 'sub' / 'b.bin').write_bytes(bytes(range(200)))

    dump = staging / 'pg_backup_RUN.sql'
    dump.write_text('-- PostgreSQL database dump\nCREATE TABLE users (id int);\n')

    return staging, [snapshot, dump]


class TestCreateArchive:
    """Test create_archive with different formats."""

    @pytest.mark.parametrize("compression_format,expected_extension", [
        ("tar.gz", ".tar.gz"),
        ("tar.bz2", ".tar.bz2"),
        ("tar.xz", ".tar.xz"),
        ("none", ".tar"),
        ("zip", ".zip"),
    ])
    def test_create_archive_all_formats(self, staged, compression_format, expected_extension):
        """Test creating archives in all supported formats."""
        staging, members = staged
        archive = staging / archive_filename('backup', 'RUN', compression_format)

        result = create_archive(members, archive, compression_format)

        assert result == archive
        assert str(result).endswith(expected_extension)
        assert os.path.getsize(result) > 0
        assert list_members(result) == ['app_RUN', 'pg_backup_RUN.sql']

    def test_member_order_follows_insertion_order(self, staged):
        """Test members appear in the order artifacts were listed, not alphabetically."""
        staging, members = staged
        reversed_members = list(reversed(members))

        archive = create_archive(reversed_members, staging / 'backup_RUN.tar.gz')

        assert list_members(archive) == ['pg_backup_RUN.sql', 'app_RUN']

    def test_tar_round_trip_is_byte_identical(self, staged, tmp_path):
        """Test unpacking the archive yields byte-identical copies of each artifact."""
        staging, members = staged
        archive = create_archive(members, staging / 'backup_RUN.tar.gz')

        out = tmp_path / 'out'
        with tarfile.open(archive, 'r:gz') as tar:
            tar.extractall(out)

        assert filecmp.cmp(members[1], out / 'pg_backup_RUN.sql', shallow=False)
        comparison = filecmp.dircmp(members[0], out / 'app_RUN')
        assert comparison.left_only == [] and comparison.right_only == []
        assert comparison.diff_files == []
        assert filecmp.cmp(members[0] / 'sub' / 'b.bin', out / 'app_RUN' / 'sub' / 'b.bin', shallow=False)

    def test_zip_contains_nested_files(self, staged):
        """Test ZIP format keeps the directory structure."""
        staging, members = staged
        archive = create_archive(members, staging / 'backup_RUN.zip', 'zip')

        assert zipfile.is_zipfile(archive)
        with zipfile.ZipFile(archive) as zipf:
            assert zipf.testzip() is None
            names = zipf.namelist()
            assert 'app_RUN/sub/b.bin' in names
            assert 'pg_backup_RUN.sql' in names

    def test_zip_stores_dangling_symlink_as_link(self, staged):
        """Test a symlink whose target is gone is stored as a link entry in ZIP format."""
        staging, members = staged
        os.symlink('/nonexistent/target', members[0] / 'broken-link')

        archive = create_archive(members, staging / 'backup_RUN.zip', 'zip')

        with zipfile.ZipFile(archive) as zipf:
            info = zipf.getinfo('app_RUN/broken-link')
            assert stat.S_ISLNK(info.external_attr >> 16)
            assert zipf.read(info) == b'/nonexistent/target'
            assert zipf.read('app_RUN/a.txt') == b'alpha'

    def test_archive_contains_no_extras(self, staged):
        """Test files in staging that were not listed are not archived."""
        staging, members = staged
        (staging / 'stray.txt').write_text('not an artifact')

        archive = create_archive(members, staging / 'backup_RUN.tar.gz')

        assert 'stray.txt' not in list_members(archive)


class TestCreateArchiveErrors:
    """Test error handling in create_archive."""

    def test_empty_artifact_list(self, tmp_path):
        """Test that an empty artifact list raises ArchiveCreationError."""
        with pytest.raises(ArchiveCreationError, match="No artifacts"):
            create_archive([], tmp_path / 'backup.tar.gz')

    def test_missing_artifact(self, staged):
        """Test that a missing artifact fails and no archive is left behind."""
        staging, members = staged
        missing = staging / 'pg_backup_OTHER.sql'
        archive = staging / 'backup_RUN.tar.gz'

        with pytest.raises(ArchiveCreationError, match="missing at archive time"):
            create_archive(members + [missing], archive)

        assert not archive.exists()

    def test_invalid_format(self, staged):
        """Test that an unknown compression format is rejected."""
        staging, members = staged
        with pytest.raises(ArchiveCreationError, match="Invalid compression format"):
            create_archive(members, staging / 'backup_RUN.rar', 'rar')

    def test_unwritable_destination_cleans_up(self, staged, tmp_path):
        """Test that a failure while writing surfaces as ArchiveCreationError."""
        staging, members = staged
        archive = tmp_path / 'no_such_dir' / 'backup_RUN.tar.gz'

        with pytest.raises(ArchiveCreationError, match="Failed to create archive"):
            create_archive(members, archive)

        assert not archive.exists()


class TestArchiveFilename:
    """Test archive_filename."""

    def test_filename_embeds_run_id(self):
        """Test basic filename generation."""
        assert archive_filename('backup', '2024-01-15_12-00-00') == 'backup_2024-01-15_12-00-00.tar.gz'

    def test_filename_sanitizes_prefix(self):
        """Test special characters in the prefix are replaced."""
        assert archive_filename('my backup/prod', 'RUN', 'zip') == 'my_backup_prod_RUN.zip'

    def test_filename_plain_tar(self):
        """Test 'none' format produces a .tar name."""
        assert archive_filename('backup', 'RUN', 'none') == 'backup_RUN.tar'

    def test_filename_invalid_format(self):
        """Test unknown formats raise ValueError."""
        with pytest.raises(ValueError, match="Invalid compression format"):
            archive_filename('backup', 'RUN', 'rar')


class TestGetArchiveSize:
    """Test get_archive_size."""

    def test_size_of_existing_file(self, tmp_path):
        """Test size is reported in bytes."""
        archive = tmp_path / 'a.tar'
        archive.write_bytes(b'x' * 1234)
        assert get_archive_size(archive) == 1234

    def test_size_of_missing_file(self, tmp_path):
        """Test missing archive raises ArchiveCreationError."""
        with pytest.raises(ArchiveCreationError, match="not found"):
            get_archive_size(tmp_path / 'missing.tar.gz')
