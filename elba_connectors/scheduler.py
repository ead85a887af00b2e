"""APScheduler-based cron scheduling of users syncs."""

from __future__ import annotations

import logging

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from elba_connectors.app import create_dispatcher, run_users_sync
from elba_connectors.config import ConnectorsConfig
from elba_connectors.db import Database
from elba_connectors.dispatch import Dispatcher

logger = logging.getLogger("connectors.scheduler")


def _users_sync_job(dispatcher: Dispatcher, connector_name: str) -> None:
    reports = run_users_sync(dispatcher, connector_name)
    failed = sum(1 for r in reports if r.status == "failed")
    if failed:
        logger.error(
            "%d users sync run(s) failed for %s",
            failed,
            connector_name,
            extra={"connector": connector_name},
        )


def _on_job_error(event) -> None:
    logger.error(
        "Job %s raised an exception: %s",
        event.job_id,
        event.exception,
    )


def build_scheduler(
    config: ConnectorsConfig,
    db: Database,
    connector_names: list[str],
) -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)
    sched = config.scheduler

    for name in connector_names:
        dispatcher, _ = create_dispatcher(name, config, db)
        scheduler.add_job(
            _users_sync_job,
            CronTrigger.from_crontab(sched.users_sync_cron, timezone="UTC"),
            args=[dispatcher, name],
            id=f"{name}-schedule-users-sync",
            max_instances=1,
            misfire_grace_time=sched.misfire_grace_time,
        )
    return scheduler


def start_scheduler(config: ConnectorsConfig, db: Database, connector_names: list[str]) -> None:
    """Start the blocking scheduler with one cron job per connector."""
    scheduler = build_scheduler(config, db, connector_names)
    logger.info("Starting scheduler with jobs: %s",
                [j.id for j in scheduler.get_jobs()])
    scheduler.start()
