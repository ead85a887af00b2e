"""Fan-out of users syncs: one page-sync event per eligible organisation."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from elba_connectors.db import EligibilityPredicate, Organisation, OrganisationStore, all_organisations
from elba_connectors.events import (
    Event,
    SyncJobState,
    from_epoch_ms,
    to_epoch_ms,
    users_page_sync_event,
)

logger = logging.getLogger("connectors.schedule_users_sync")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _watermark(now: datetime) -> datetime:
    # Payloads carry milliseconds; truncate so every page sees the same instant
    return from_epoch_ms(to_epoch_ms(now))


class UsersSyncScheduler:
    def __init__(
        self,
        connector_name: str,
        store: OrganisationStore,
        emitter,
        predicate: EligibilityPredicate = all_organisations,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.connector_name = connector_name
        self.store = store
        self.emitter = emitter
        self.predicate = predicate
        self.clock = clock

    def __call__(self, event: Event) -> dict[str, Any]:
        now = self.clock()
        organisations = self.store.list_eligible_for_sync(now, self.predicate)
        sync_started_at = _watermark(now)

        if organisations:
            name = users_page_sync_event(self.connector_name)
            self.emitter.send([
                Event(
                    name,
                    SyncJobState(
                        organisation_id=org.id,
                        region=org.region,
                        is_first_sync=False,
                        sync_started_at=sync_started_at,
                    ).to_payload(),
                )
                for org in organisations
            ])
        logger.info(
            "Scheduled %d users sync(s)",
            len(organisations),
            extra={"connector": self.connector_name, "records": len(organisations)},
        )
        return {
            "organisations": [
                {"organisationId": org.id, "region": org.region} for org in organisations
            ]
        }


def request_first_sync(
    emitter,
    connector_name: str,
    organisation: Organisation,
    now: Callable[[], datetime] = _utcnow,
) -> SyncJobState:
    """Start the initial users sync of a freshly installed organisation."""
    state = SyncJobState(
        organisation_id=organisation.id,
        region=organisation.region,
        is_first_sync=True,
        sync_started_at=_watermark(now()),
    )
    emitter.send(Event(users_page_sync_event(connector_name), state.to_payload()))
    return state
