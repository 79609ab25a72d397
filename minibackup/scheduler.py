"""
APScheduler configuration and job scheduling for mini-backup.

Manages:
- Scheduled backups (one cron job per definition schedule expression)
- Manual triggers
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from .errors import ConfigurationError
from .backup.executor import execute_backup_by_name


logger = logging.getLogger(__name__)

# Global scheduler instance and runtime reference
scheduler = None
backup_runtime = None


def init_scheduler(runtime):
    """
    Initialize and configure APScheduler, then schedule every definition.

    Args:
        runtime: Wired Runtime instance
    """
    global scheduler, backup_runtime

    if scheduler is not None:
        return scheduler

    backup_runtime = runtime
    timezone_name = runtime.config.get('SCHEDULER_TIMEZONE', 'UTC')

    executors = {
        'default': ThreadPoolExecutor(max_workers=3)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone_name
    )

    for definition in runtime.definitions.values():
        if definition.schedule.standard:
            _add_scheduled_job(definition.name, definition.schedule.standard, False, timezone_name)
        if definition.schedule.glacier:
            _add_scheduled_job(definition.name, definition.schedule.glacier, True, timezone_name)

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after init_scheduler().
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started successfully (state={scheduler.state})")

    jobs = scheduler.get_jobs()
    if jobs:
        logger.info(f"Loaded {len(jobs)} scheduled jobs:")
        for job in jobs:
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info("No scheduled jobs loaded")


def stop_scheduler():
    """Stop the APScheduler and forget it, so init_scheduler() can run again."""
    global scheduler, backup_runtime

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")

    scheduler = None
    backup_runtime = None


def _job_id(name: str, glacier_mode: bool) -> str:
    return f"backup_{name}_{'glacier' if glacier_mode else 'standard'}"


def _add_scheduled_job(name: str, cron_expression: str, glacier_mode: bool, timezone_name: str = 'UTC'):
    """
    Add one backup schedule to the scheduler.

    Raises:
        ConfigurationError: If the cron expression is invalid
    """
    try:
        trigger = CronTrigger.from_crontab(cron_expression, timezone=timezone_name)
    except ValueError as e:
        raise ConfigurationError(f"Invalid schedule for backup {name} ({cron_expression}): {e}")

    tier = 'glacier' if glacier_mode else 'standard'
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[name, glacier_mode],
        trigger=trigger,
        id=_job_id(name, glacier_mode),
        name=f"Backup: {name} ({tier})",
        replace_existing=True
    )

    logger.info(f"Scheduled backup job: {name} ({tier}, {cron_expression})")


def _execute_backup_wrapper(name: str, glacier_mode: bool = False):
    """
    Wrapper function for executing backups in scheduler context.

    Args:
        name: Backup definition name
        glacier_mode: Target the glacier tier
    """
    try:
        logger.info(f"Scheduler executing backup: {name} (glacier_mode={glacier_mode})")
        result = execute_backup_by_name(backup_runtime, name, glacier_mode)
        logger.info(f"Backup {name} completed with status: {result.status}")
    except ConfigurationError as e:
        logger.error(f"Scheduler backup {name} failed: {e}")


def trigger_backup_now(name: str, glacier_mode: bool = False):
    """
    Manually trigger a backup immediately.

    Raises:
        RuntimeError: If the scheduler is not initialized
        ConfigurationError: If no definition has this name
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    # Verify the definition exists
    backup_runtime.get_definition(name)

    # One-time job with a 1 second delay to avoid racing the scheduler thread
    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[name, glacier_mode],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{name}_{int(now.timestamp())}",
        name=f"Manual: {name}",
        replace_existing=False
    )

    logger.info(f"Manually triggered backup: {name}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        next_run_time = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run_time.isoformat() if next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    """Check if scheduler is running."""
    return scheduler is not None and scheduler.running
