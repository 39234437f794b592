"""
Unit tests for the command line (backup_courier/cli.py).
"""

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import yaml

from backup_courier.cli import EXIT_CONCURRENT, EXIT_CONFIG, EXIT_FAILED, EXIT_OK, build_parser, main
from backup_courier.errors import ConcurrentRunError, DumpExecutionError
from backup_courier.models import RunHistory
from backup_courier.utils.crypto import Encryptor


@pytest.fixture
def config_file(tmp_path, base_config_dict, app_source):
    def _write(**overrides):
        data = dict(base_config_dict, source_paths=[str(app_source)])
        data.update(overrides)
        path = tmp_path / 'backup-courier.yml'
        path.write_text(yaml.safe_dump(data))
        return path
    return _write


@pytest.fixture
def encrypted_archive(tmp_path):
    archive = tmp_path / 'backup_RUN.tar.gz'
    archive.write_bytes(b'archive bytes' * 50)
    encrypted = Encryptor('secret', iterations=1000, chunk_size=128).encrypt_file(archive)
    original = archive.read_bytes()
    archive.unlink()
    return encrypted, original


class TestParser:
    """Test argument parsing."""

    def test_no_command_prints_help(self, capsys):
        """Test running without a command shows usage."""
        assert main([]) == EXIT_OK
        assert 'usage: backup-courier' in capsys.readouterr().out

    def test_decrypt_arguments(self):
        """Test decrypt options."""
        args = build_parser().parse_args(['decrypt', 'a.enc', '--output', 'a.tar.gz', '--force'])

        assert args.encrypted == 'a.enc'
        assert args.output == 'a.tar.gz'
        assert args.force
        assert args.passphrase_env == 'BACKUP_PASSPHRASE'


class TestRunCommand:
    """Test `backup-courier run`."""

    def test_run_success(self, config_file):
        """Test a completed run exits 0."""
        result = MagicMock(succeeded=True, run_id='RUN', artifact_name='backup_RUN.tar.gz')

        with patch('backup_courier.cli.run_pipeline', return_value=result) as mock_run:
            assert main(['--config', str(config_file()), 'run']) == EXIT_OK

        config = mock_run.call_args.args[0]
        assert config.host_name == 'test-host'

    def test_run_failure(self, config_file):
        """Test a failed run exits 1."""
        result = MagicMock(succeeded=False, run_id='RUN', failed_stage='dump',
                           error=DumpExecutionError("exit 1", exit_status=1))

        with patch('backup_courier.cli.run_pipeline', return_value=result):
            assert main(['--config', str(config_file()), 'run']) == EXIT_FAILED

    def test_run_concurrent(self, config_file):
        """Test a locked staging directory exits 3."""
        with patch('backup_courier.cli.run_pipeline', side_effect=ConcurrentRunError("locked")):
            assert main(['--config', str(config_file()), 'run']) == EXIT_CONCURRENT

    def test_run_configuration_error(self, config_file):
        """Test an invalid configuration exits 2 without running."""
        with patch('backup_courier.cli.run_pipeline') as mock_run:
            assert main(['--config', str(config_file(compression_format='rar')), 'run']) == EXIT_CONFIG

        mock_run.assert_not_called()

    def test_run_missing_config_file(self, tmp_path):
        """Test a missing config file exits 2."""
        assert main(['--config', str(tmp_path / 'missing.yml'), 'run']) == EXIT_CONFIG

    def test_run_unusable_history_db(self, config_file, tmp_path):
        """Test a history database that cannot be opened exits 2 before anything is staged."""
        path = config_file(history_db=f"sqlite:///{tmp_path / 'no-such-dir' / 'history.db'}")

        with patch('backup_courier.backup.executor.PipelineRunner') as mock_runner:
            assert main(['--config', str(path), 'run']) == EXIT_CONFIG

        mock_runner.assert_not_called()
        assert not (tmp_path / 'staging').exists()

    def test_run_reads_env_file(self, config_file, tmp_path):
        """Test --env-file values reach the configuration."""
        env_file = tmp_path / 'backup.env'
        env_file.write_text('BACKUP_HOST_NAME=from-env-file\n')
        result = MagicMock(succeeded=True, run_id='RUN', artifact_name='backup_RUN.tar.gz')

        with patch('backup_courier.cli.run_pipeline', return_value=result) as mock_run:
            assert main(['--config', str(config_file()), '--env-file', str(env_file), 'run']) == EXIT_OK

        assert mock_run.call_args.args[0].host_name == 'from-env-file'

    def test_run_missing_env_file(self, config_file, tmp_path):
        """Test a missing --env-file exits 2."""
        with patch('backup_courier.cli.run_pipeline') as mock_run:
            assert main(['--config', str(config_file()), '--env-file', str(tmp_path / 'missing.env'),
                         'run']) == EXIT_CONFIG

        mock_run.assert_not_called()


class TestDecryptCommand:
    """Test `backup-courier decrypt`."""

    def test_decrypt(self, encrypted_archive, monkeypatch):
        """Test the delivered decrypt command restores the archive."""
        encrypted, original = encrypted_archive
        monkeypatch.setenv('BACKUP_PASSPHRASE', 'secret')
        output = encrypted.with_name('backup_RUN.tar.gz')

        assert main(['decrypt', '--output', str(output), str(encrypted)]) == EXIT_OK
        assert output.read_bytes() == original

    def test_decrypt_default_output(self, encrypted_archive, monkeypatch):
        """Test the output defaults to the name without .enc."""
        encrypted, original = encrypted_archive
        monkeypatch.setenv('BACKUP_PASSPHRASE', 'secret')

        assert main(['decrypt', str(encrypted)]) == EXIT_OK
        assert encrypted.with_name('backup_RUN.tar.gz').read_bytes() == original

    def test_decrypt_wrong_passphrase(self, encrypted_archive, monkeypatch):
        """Test a wrong passphrase exits 1 and writes nothing."""
        encrypted, _ = encrypted_archive
        monkeypatch.setenv('BACKUP_PASSPHRASE', 'wrong')

        assert main(['decrypt', str(encrypted)]) == EXIT_FAILED
        assert not encrypted.with_name('backup_RUN.tar.gz').exists()

    def test_decrypt_prompts_without_env(self, encrypted_archive, monkeypatch):
        """Test the passphrase is prompted for when the variable is unset."""
        encrypted, original = encrypted_archive
        monkeypatch.delenv('BACKUP_PASSPHRASE', raising=False)

        with patch('backup_courier.cli.getpass', return_value='secret') as mock_getpass:
            assert main(['decrypt', str(encrypted)]) == EXIT_OK

        mock_getpass.assert_called_once()

    def test_decrypt_refuses_overwrite(self, encrypted_archive, monkeypatch):
        """Test an existing output file is kept unless --force is given."""
        encrypted, original = encrypted_archive
        monkeypatch.setenv('BACKUP_PASSPHRASE', 'secret')
        output = encrypted.with_name('backup_RUN.tar.gz')
        output.write_bytes(b'keep me')

        assert main(['decrypt', str(encrypted)]) == EXIT_FAILED
        assert output.read_bytes() == b'keep me'

        assert main(['decrypt', '--force', str(encrypted)]) == EXIT_OK
        assert output.read_bytes() == original

    def test_decrypt_missing_file(self, tmp_path):
        """Test a missing input exits 1."""
        assert main(['decrypt', str(tmp_path / 'missing.enc')]) == EXIT_FAILED

    def test_decrypt_refuses_output_equal_to_input(self, encrypted_archive, monkeypatch):
        """Test decrypting onto the encrypted file itself is refused even with --force."""
        encrypted, _ = encrypted_archive
        monkeypatch.setenv('BACKUP_PASSPHRASE', 'secret')
        before = encrypted.read_bytes()

        with patch('backup_courier.cli.decrypt_file') as mock_decrypt:
            assert main(['decrypt', '--force', '--output', str(encrypted), str(encrypted)]) == EXIT_FAILED

        mock_decrypt.assert_not_called()
        assert encrypted.read_bytes() == before

    def test_decrypt_passphrase_from_env_file(self, encrypted_archive, tmp_path, monkeypatch):
        """Test the passphrase variable can come from an env file."""
        encrypted, original = encrypted_archive
        monkeypatch.delenv('BACKUP_PASSPHRASE', raising=False)
        env_file = tmp_path / 'backup.env'
        env_file.write_text('BACKUP_PASSPHRASE=secret\n')

        with patch('backup_courier.cli.getpass') as mock_getpass:
            assert main(['--env-file', str(env_file), 'decrypt', str(encrypted)]) == EXIT_OK

        mock_getpass.assert_not_called()
        assert encrypted.with_name('backup_RUN.tar.gz').read_bytes() == original


class TestCronCommand:
    """Test `backup-courier cron`."""

    def test_cron_requires_config(self, monkeypatch):
        """Test cron management needs an explicit config file."""
        monkeypatch.delenv('BACKUP_COURIER_CONFIG', raising=False)
        assert main(['cron', 'show']) == EXIT_CONFIG

    def test_cron_add(self, config_file, capsys):
        """Test cron add validates the config and installs the job."""
        path = config_file()

        with patch('backup_courier.cli.add_cron', return_value='0 2 * * * cmd') as mock_add:
            assert main(['--config', str(path), 'cron', 'add', '0 2 * * *']) == EXIT_OK

        schedule, command = mock_add.call_args.args
        assert schedule == '0 2 * * *'
        assert str(path) in command
        assert 'Cron job added' in capsys.readouterr().out

    def test_cron_add_invalid_config(self, config_file):
        """Test an invalid config is never scheduled."""
        with patch('backup_courier.cli.add_cron') as mock_add:
            assert main(['--config', str(config_file(compression_format='rar')),
                         'cron', 'add', '0 2 * * *']) == EXIT_CONFIG

        mock_add.assert_not_called()

    def test_cron_add_with_env_file(self, config_file, tmp_path):
        """Test the installed cron line carries --env-file."""
        env_file = tmp_path / 'backup.env'
        env_file.write_text('BACKUP_HOST_NAME=cron-host\n')

        with patch('backup_courier.cli.add_cron', return_value='0 2 * * * cmd') as mock_add:
            assert main(['--config', str(config_file()), '--env-file', str(env_file),
                         'cron', 'add', '0 2 * * *']) == EXIT_OK

        _, command = mock_add.call_args.args
        assert f"--env-file {env_file.resolve()} run" in command

    def test_cron_remove_missing(self, config_file, capsys):
        """Test removing a job that does not exist."""
        with patch('backup_courier.cli.remove_cron', return_value=False):
            assert main(['--config', str(config_file()), 'cron', 'remove']) == EXIT_OK

        assert 'No cron job found' in capsys.readouterr().out


class TestHistoryCommand:
    """Test `backup-courier history`."""

    def test_history_lists_runs(self, config_file, tmp_path, capsys):
        """Test recorded runs are printed newest first."""
        db_url = f"sqlite:///{tmp_path / 'history.db'}"
        history = RunHistory(db_url)
        record = history.start('2024-01-15_12-00-00', datetime(2024, 1, 15, 12, 0, 0))
        history.finish(record, status='completed', artifact_name='backup_2024-01-15_12-00-00.tar.gz')
        record = history.start('2024-01-16_12-00-00', datetime(2024, 1, 16, 12, 0, 0))
        history.finish(record, status='failed', failed_stage='dump', error_message='exit 1')

        assert main(['--config', str(config_file(history_db=db_url)), 'history']) == EXIT_OK

        lines = capsys.readouterr().out.splitlines()
        assert '2024-01-16_12-00-00' in lines[0] and 'dump: exit 1' in lines[0]
        assert 'backup_2024-01-15_12-00-00.tar.gz' in lines[1]

    def test_history_not_configured(self, config_file):
        """Test history needs history_db."""
        assert main(['--config', str(config_file()), 'history']) == EXIT_CONFIG

    def test_history_unusable_database(self, config_file, tmp_path):
        """Test an unopenable history database exits 2."""
        db_url = f"sqlite:///{tmp_path / 'no-such-dir' / 'history.db'}"

        assert main(['--config', str(config_file(history_db=db_url)), 'history']) == EXIT_CONFIG
