"""Wiring of the sync functions for one connector."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from elba_connectors.base_connector import BaseConnector
from elba_connectors.config import ConnectorsConfig
from elba_connectors.connectors import get_connector
from elba_connectors.db import (
    Database,
    EligibilityPredicate,
    OrganisationStore,
    all_organisations,
    not_synced_within,
)
from elba_connectors.dispatch import Dispatcher, RunReport, SyncFunction
from elba_connectors.elba import Elba, ElbaFactory
from elba_connectors.events import Event, users_page_sync_event, users_schedule_sync_event
from elba_connectors.middleware import rate_limit_middleware, unauthorized_middleware
from elba_connectors.schedule_users_sync import UsersSyncScheduler
from elba_connectors.sync_users import UsersPageSync

logger = logging.getLogger("connectors.app")


def eligibility_from_config(config: ConnectorsConfig) -> EligibilityPredicate:
    hours = config.scheduler.users_sync_frequency_hours
    return not_synced_within(hours) if hours else all_organisations


def register_users_sync(
    dispatcher: Dispatcher,
    connector: BaseConnector,
    store: OrganisationStore,
    elba_factory: Callable[[str, str], Elba],
    retries: int = 3,
    first_sync_priority: int = 600,
    predicate: EligibilityPredicate = all_organisations,
) -> tuple[SyncFunction, SyncFunction]:
    """Register the schedule and page-sync functions of `connector`."""
    name = connector.CONNECTOR_NAME

    schedule = dispatcher.register(SyncFunction(
        id=f"{name}-schedule-users-sync",
        event=users_schedule_sync_event(name),
        handler=UsersSyncScheduler(name, store, dispatcher, predicate=predicate),
        retries=retries,
    ))

    sync_page = dispatcher.register(SyncFunction(
        id=f"{name}-sync-users-page",
        event=users_page_sync_event(name),
        handler=UsersPageSync(connector, store, elba_factory, dispatcher),
        retries=retries,
        concurrency_key=lambda event: event.data.get("organisationId"),
        priority=lambda event: first_sync_priority if event.data.get("isFirstSync") else 0,
        middleware=(rate_limit_middleware, unauthorized_middleware(store, elba_factory)),
    ))
    return schedule, sync_page


def record_report(db: Database) -> Callable[[RunReport], None]:
    """Report callback persisting each function run in sync_runs."""

    def record(report: RunReport) -> None:
        run_id = db.record_run(
            function_id=report.function_id,
            organisation_id=report.organisation_id,
            status=report.status,
            output_status=(report.output or {}).get("status"),
            attempts=report.attempts,
            error_message=str(report.error) if report.error else None,
        )
        logger.debug(
            "Recorded run",
            extra={"function": report.function_id, "run_id": run_id, "status": report.status},
        )

    return record


def create_dispatcher(
    connector_name: str,
    config: ConnectorsConfig,
    db: Database,
    connector: Optional[BaseConnector] = None,
) -> tuple[Dispatcher, OrganisationStore]:
    dispatcher = Dispatcher(
        max_workers=config.scheduler.max_workers,
        max_retry_after=config.scheduler.max_retry_after,
        on_report=record_report(db),
    )
    store = OrganisationStore(db, connector_name)
    register_users_sync(
        dispatcher,
        connector or get_connector(connector_name, config),
        store,
        ElbaFactory(config.elba),
        retries=config.scheduler.max_retries,
        first_sync_priority=config.scheduler.first_sync_priority,
        predicate=eligibility_from_config(config),
    )
    return dispatcher, store


def run_users_sync(dispatcher: Dispatcher, connector_name: str) -> list[RunReport]:
    """Trigger one scheduling cycle and drain every page it produces."""
    dispatcher.send(Event(users_schedule_sync_event(connector_name)))
    reports = dispatcher.run_until_idle()
    failed = [r for r in reports if r.status == "failed"]
    logger.info(
        "Users sync cycle finished: %d run(s), %d failed",
        len(reports),
        len(failed),
        extra={"connector": connector_name, "records": len(reports)},
    )
    return reports
