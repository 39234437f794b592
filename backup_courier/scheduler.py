"""
Scheduling for Backup Courier.

The pipeline itself only knows "run now". This module schedules it in two ways:
- crontab entries managed through the `crontab` binary (add/show/remove)
- a long-running APScheduler process (`backup-courier serve`)
"""

import logging
import shlex
import subprocess
import sys
from pathlib import Path
from typing import Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import load_config
from .errors import ConfigurationError, PipelineError
from .backup.executor import run_pipeline

logger = logging.getLogger(__name__)

JOB_ID = 'backup_run'


class SchedulingError(Exception):
    """Raised when the host crontab cannot be read or written."""
    pass


def validate_schedule(schedule: str, timezone: Optional[str] = None) -> CronTrigger:
    """
    Parse a five-field cron expression.

    Raises:
        ConfigurationError: If the expression is invalid
    """
    try:
        return CronTrigger.from_crontab(schedule, timezone=timezone)
    except ValueError as e:
        raise ConfigurationError(f"Invalid cron schedule '{schedule}': {e}")


def run_command(config_path: str, python: Optional[str] = None, env_file: Optional[str] = None) -> str:
    """Command line the scheduler invokes for one run."""
    python = python or sys.executable
    config_path = str(Path(config_path).expanduser().resolve())
    command = f"{shlex.quote(python)} -m backup_courier.cli --config {shlex.quote(config_path)}"
    if env_file:
        env_file = str(Path(env_file).expanduser().resolve())
        command += f" --env-file {shlex.quote(env_file)}"
    return f"{command} run"


def read_crontab() -> str:
    """
    Return the current user's crontab ('' if there is none).

    Raises:
        SchedulingError: If crontab is missing or fails
    """
    try:
        result = subprocess.run(['crontab', '-l'], capture_output=True, text=True)
    except FileNotFoundError:
        raise SchedulingError("crontab is not installed. Please install cron and try again.")

    if result.returncode != 0:
        if 'no crontab' in result.stderr.lower():
            return ''
        raise SchedulingError(f"crontab -l failed: {result.stderr.strip()}")
    return result.stdout


def write_crontab(content: str):
    try:
        result = subprocess.run(['crontab', '-'], input=content, capture_output=True, text=True)
    except FileNotFoundError:
        raise SchedulingError("crontab is not installed. Please install cron and try again.")
    if result.returncode != 0:
        raise SchedulingError(f"Failed to write crontab: {result.stderr.strip()}")


def add_cron(schedule: str, command: str) -> str:
    """
    Install (or replace) the cron entry for a command.

    Returns:
        The installed cron line
    """
    validate_schedule(schedule)
    lines = [line for line in read_crontab().splitlines() if command not in line]
    cron_line = f"{schedule} {command}"
    lines.append(cron_line)
    write_crontab('\n'.join(lines) + '\n')
    logger.info(f"Cron job added: {cron_line}")
    return cron_line


def show_cron(command: str) -> Optional[str]:
    """Return the cron line for a command, or None."""
    for line in read_crontab().splitlines():
        if command in line:
            return line
    return None


def remove_cron(command: str) -> bool:
    """
    Remove the cron entry for a command.

    Returns:
        True if an entry was removed
    """
    lines = read_crontab().splitlines()
    kept = [line for line in lines if command not in line]
    if len(kept) == len(lines):
        logger.info("No cron job found to remove")
        return False
    write_crontab('\n'.join(kept) + '\n' if kept else '')
    logger.info("Cron job removed")
    return True


def _scheduled_run(config_path: Optional[str], env_file: Optional[str] = None):
    """
    Run the pipeline once from a scheduler tick.

    Configuration is reloaded every tick so edits apply without a restart.
    Failures are logged; the scheduler keeps running.
    """
    try:
        config = load_config(config_path, env_file=env_file)
        result = run_pipeline(config)
        if result.succeeded:
            logger.info(f"Scheduled backup {result.run_id} completed")
        else:
            logger.error(f"Scheduled backup {result.run_id} failed in stage {result.failed_stage}")
    except PipelineError as e:
        logger.error(f"Scheduled backup skipped ({e.stage}): {e}")
    except Exception:
        logger.exception("Scheduled backup crashed")


def create_scheduler(
    config_path: Optional[str],
    schedule: str,
    timezone: Optional[str] = None,
    env_file: Optional[str] = None
) -> BlockingScheduler:
    """
    Build a blocking scheduler that runs the pipeline on a cron schedule.

    Args:
        config_path: YAML configuration path (None = environment only)
        schedule: Five-field cron expression
        timezone: Scheduler time zone (None = local time, like cron)
        env_file: .env file reloaded with the configuration on every tick

    Returns:
        Configured, not yet started, BlockingScheduler
    """
    trigger = validate_schedule(schedule, timezone=timezone)

    scheduler_kwargs = {
        'job_defaults': {
            'coalesce': True,  # Combine multiple pending instances into one
            'max_instances': 1,  # Only one instance of a job at a time
            'misfire_grace_time': 300  # 5 minutes grace period for misfires
        }
    }
    if timezone:
        scheduler_kwargs['timezone'] = timezone

    scheduler = BlockingScheduler(**scheduler_kwargs)
    scheduler.add_job(
        func=_scheduled_run,
        args=[config_path, env_file],
        trigger=trigger,
        id=JOB_ID,
        name=f"Backup: {schedule}",
        replace_existing=True
    )
    return scheduler


def serve(
    config_path: Optional[str],
    schedule: str,
    timezone: Optional[str] = None,
    env_file: Optional[str] = None
):
    """Run the pipeline on a schedule until interrupted."""
    scheduler = create_scheduler(config_path, schedule, timezone=timezone, env_file=env_file)
    logger.info(f"Scheduler started with schedule '{schedule}'")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
