"""
Background Job Scheduler for the Store Edge Hub.

This module provides APScheduler-based background job scheduling. It uses
BackgroundScheduler (NOT BlockingScheduler) to run alongside the Flask web
server. Jobs are closures over the Flask app, so they are kept in the
in-memory job store and re-registered on every start.

Key jobs scheduled:
- transaction_sync: Uploads the sync queue (every sync_interval_seconds)
- deployment_poll: Polls for pending deployments (every deployment_poll_minutes)

Example:
    from edge_hub.scheduler import init_scheduler, register_jobs

    scheduler = init_scheduler()
    register_jobs(scheduler, app)
    scheduler.start()
"""

import logging
from typing import Any, Callable, Dict, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobEvent
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler


logger = logging.getLogger(__name__)


# Global scheduler instance
_scheduler: Optional[BackgroundScheduler] = None


def init_scheduler(start: bool = False) -> BackgroundScheduler:
    """
    Initialize the background job scheduler.

    Jobs are NOT added here - they are added separately by register_jobs().

    Args:
        start: Whether to start the scheduler immediately (default: False)

    Returns:
        Configured BackgroundScheduler instance
    """
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Scheduler already initialized and running")
        return _scheduler

    jobstores = {
        'default': MemoryJobStore()
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=4)
    }

    job_defaults = {
        'coalesce': True,  # Combine missed jobs into single execution
        'max_instances': 1,  # Only one instance of each job at a time
        'misfire_grace_time': 60,
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC',
    )

    scheduler.add_listener(_on_job_executed, EVENT_JOB_EXECUTED)
    scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)

    if start:
        scheduler.start()
        logger.info("Scheduler started")

    _scheduler = scheduler
    return scheduler


def get_scheduler() -> Optional[BackgroundScheduler]:
    return _scheduler


def shutdown_scheduler(wait: bool = True) -> None:
    """
    Shutdown the scheduler gracefully.

    Args:
        wait: Whether to wait for running jobs to complete (default: True)
    """
    global _scheduler

    if _scheduler is not None:
        logger.info("Shutting down scheduler...")
        if _scheduler.running:
            _scheduler.shutdown(wait=wait)
        _scheduler = None


def _on_job_executed(event: JobEvent) -> None:
    logger.debug(f"Job '{event.job_id}' executed successfully")


def _on_job_error(event: JobEvent) -> None:
    logger.error(
        f"Job '{event.job_id}' failed with exception: {event.exception}",
        exc_info=event.traceback,
    )


def add_job(
    scheduler: BackgroundScheduler,
    func: Callable,
    job_id: str,
    trigger: str = 'interval',
    replace_existing: bool = True,
    **trigger_args: Any,
) -> None:
    """
    Add a job to the scheduler with standard settings.

    Example:
        add_job(scheduler, sync_transactions, 'transaction_sync', seconds=5)
    """
    scheduler.add_job(
        func,
        trigger=trigger,
        id=job_id,
        replace_existing=replace_existing,
        **trigger_args,
    )
    logger.info(f"Added job '{job_id}' with trigger '{trigger}': {trigger_args}")


def list_jobs(scheduler: Optional[BackgroundScheduler] = None) -> Dict[str, Any]:
    """
    List all scheduled jobs.

    Args:
        scheduler: BackgroundScheduler instance (uses global if not provided)

    Returns:
        Dictionary with job information
    """
    sched = scheduler or get_scheduler()

    if sched is None:
        return {'running': False, 'job_count': 0, 'jobs': []}

    jobs = []
    for job in sched.get_jobs():
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run_time': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger),
        })

    return {
        'running': sched.running,
        'job_count': len(jobs),
        'jobs': jobs,
    }


def register_jobs(scheduler: BackgroundScheduler, app: Any) -> None:
    """
    Register all background jobs with the scheduler.

    - transaction_sync: Uploads a batch of the sync queue
    - deployment_poll: Asks the deployment runtime to poll the control plane

    Jobs touching the database run within the Flask application context.

    Args:
        scheduler: BackgroundScheduler instance (initialized but not started)
        app: Flask application instance
    """
    config = app.config['HUB_CONFIG']

    def job_transaction_sync() -> None:
        with app.app_context():
            app.config['TRANSACTION_SYNC'].process_queue()

    def job_deployment_poll() -> None:
        runtime = app.config['DEPLOYMENT_RUNTIME']
        if runtime.is_running:
            runtime.check_now()
        else:
            logger.warning("Deployment runtime not running, skipping poll")

    add_job(
        scheduler,
        job_transaction_sync,
        'transaction_sync',
        seconds=config.sync_interval_seconds,
    )
    add_job(
        scheduler,
        job_deployment_poll,
        'deployment_poll',
        minutes=config.deployment_poll_minutes,
    )

    logger.info(f"Registered {len(scheduler.get_jobs())} background jobs")
