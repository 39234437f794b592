"""Command line interface for Backup Courier."""

import argparse
import logging
import os
import sys
from getpass import getpass
from pathlib import Path
from typing import Optional, Sequence

from . import __version__, configure_logging
from .backup.executor import run_pipeline
from .config import PipelineConfig, load_config, read_environment
from .errors import ConcurrentRunError, ConfigurationError, EncryptionError
from .models import RunHistory
from .scheduler import SchedulingError, add_cron, remove_cron, run_command, serve, show_cron
from .utils.crypto import decrypt_file, decrypted_name

logger = logging.getLogger('backup_courier')

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_CONCURRENT = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='backup-courier',
        description=(
            "Back up folders and a PostgreSQL database running in Docker, archive and "
            "optionally encrypt them, and deliver the result to Telegram or S3."
        ),
    )
    parser.add_argument(
        '--config',
        default=os.environ.get('BACKUP_COURIER_CONFIG'),
        help="Path to the YAML configuration (default: $BACKUP_COURIER_CONFIG; "
             "environment variables override file values).",
    )
    parser.add_argument(
        '--env-file',
        default=os.environ.get('BACKUP_COURIER_ENV_FILE'),
        help="KEY=value file loaded before the environment overrides "
             "(default: .env next to the config file, if present).",
    )
    parser.add_argument('-v', '--verbose', action='count', default=0, help="Increase log verbosity.")
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command')

    subparsers.add_parser('run', help="Run the backup pipeline once, now.")

    parser_decrypt = subparsers.add_parser('decrypt', help="Decrypt a delivered .enc archive.")
    parser_decrypt.add_argument('encrypted', help="Encrypted archive (.enc).")
    parser_decrypt.add_argument('--output', '-o', help="Output path (default: name without .enc).")
    parser_decrypt.add_argument(
        '--passphrase-env',
        default='BACKUP_PASSPHRASE',
        help="Environment variable holding the passphrase (prompted if unset).",
    )
    parser_decrypt.add_argument('--force', action='store_true', help="Overwrite an existing output file.")

    parser_cron = subparsers.add_parser('cron', help="Manage the crontab entry for scheduled backups.")
    cron_sub = parser_cron.add_subparsers(dest='cron_command')
    parser_cron_add = cron_sub.add_parser('add', help="Add or replace the cron job.")
    parser_cron_add.add_argument('schedule', help="Cron schedule, e.g. '0 2 * * *' for daily at 2 AM.")
    cron_sub.add_parser('show', help="Show the current cron job (if any).")
    cron_sub.add_parser('remove', help="Remove the cron job.")

    parser_serve = subparsers.add_parser('serve', help="Run backups on a schedule in the foreground.")
    parser_serve.add_argument('schedule', help="Cron schedule, e.g. '0 2 * * *'.")
    parser_serve.add_argument('--timezone', help="Time zone for the schedule (default: local time).")

    parser_history = subparsers.add_parser('history', help="Show recent runs (needs history_db).")
    parser_history.add_argument('--limit', type=int, default=20, help="Number of runs to show.")

    return parser


def _log_level(verbose: int) -> int:
    return logging.DEBUG if verbose >= 1 else logging.INFO


def _load(args: argparse.Namespace) -> PipelineConfig:
    config = load_config(args.config, env_file=args.env_file)
    if config.log_file:
        configure_logging(_log_level(args.verbose), config.log_file)
    return config


def cmd_run(args: argparse.Namespace) -> int:
    try:
        config = _load(args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG

    try:
        result = run_pipeline(config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG
    except ConcurrentRunError as e:
        logger.error(str(e))
        return EXIT_CONCURRENT

    if result.succeeded:
        logger.info(f"Backup {result.run_id} delivered: {result.artifact_name}")
        return EXIT_OK

    logger.error(f"Backup {result.run_id} failed in stage '{result.failed_stage}': {result.error}")
    return EXIT_FAILED


def cmd_decrypt(args: argparse.Namespace) -> int:
    source = Path(args.encrypted)
    if not source.is_file():
        logger.error(f"File not found: {source}")
        return EXIT_FAILED

    output = Path(args.output) if args.output else source.with_name(decrypted_name(source.name))
    if output.resolve() == source.resolve():
        logger.error(f"Output {output} is the encrypted input itself; choose another path")
        return EXIT_FAILED
    if output.exists() and not args.force:
        logger.error(f"{output} already exists (use --force to overwrite)")
        return EXIT_FAILED

    try:
        environ = read_environment(args.config, args.env_file)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG

    passphrase = environ.get(args.passphrase_env) or getpass("Passphrase: ")
    try:
        decrypt_file(source, output, passphrase)
    except EncryptionError as e:
        logger.error(str(e))
        return EXIT_FAILED

    logger.info(f"Decrypted {source.name} -> {output}")
    return EXIT_OK


def cmd_cron(args: argparse.Namespace) -> int:
    if not args.config:
        logger.error("cron needs --config: scheduled runs do not inherit this shell's environment")
        return EXIT_CONFIG

    command = run_command(args.config, env_file=args.env_file)
    try:
        if args.cron_command == 'add':
            load_config(args.config, env_file=args.env_file)
            line = add_cron(args.schedule, command)
            print(f"Cron job added: {line}")
        elif args.cron_command == 'show':
            line = show_cron(command)
            print(f"Cron job found: {line}" if line else "No cron job found for this configuration.")
        elif args.cron_command == 'remove':
            removed = remove_cron(command)
            print("Cron job removed." if removed else "No cron job found to remove.")
        else:
            logger.error("Specify one of: add, show, remove")
            return EXIT_CONFIG
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG
    except SchedulingError as e:
        logger.error(str(e))
        return EXIT_FAILED
    return EXIT_OK


def cmd_serve(args: argparse.Namespace) -> int:
    try:
        _load(args)
        serve(args.config, args.schedule, timezone=args.timezone, env_file=args.env_file)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG
    return EXIT_OK


def cmd_history(args: argparse.Namespace) -> int:
    try:
        config = _load(args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG

    if not config.history_db:
        logger.error("history_db is not configured")
        return EXIT_CONFIG

    try:
        records = RunHistory(config.history_db).recent(args.limit)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG
    if not records:
        print("No runs recorded.")
        return EXIT_OK

    for record in records:
        started = record.started_at.strftime('%Y-%m-%d %H:%M:%S')
        detail = record.artifact_name if record.status == 'completed' else (
            f"{record.failed_stage or '-'}: {record.error_message or ''}"
        )
        print(f"{started}  {record.run_id:<24} {record.status:<10} {detail}")
    return EXIT_OK


COMMANDS = {
    'run': cmd_run,
    'decrypt': cmd_decrypt,
    'cron': cmd_cron,
    'serve': cmd_serve,
    'history': cmd_history,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(_log_level(args.verbose))

    if not args.command:
        parser.print_help()
        return EXIT_OK

    return COMMANDS[args.command](args)


if __name__ == '__main__':
    sys.exit(main())
