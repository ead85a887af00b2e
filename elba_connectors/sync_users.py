"""Users sync: one function run per remote page.

Each run fetches a single page, pushes its users to elba and either queues
the next page or, on the last page, deletes the elba users this sync did not
refresh. Runs for one organisation never overlap; the dispatcher keys their
concurrency on the organisation id.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from elba_connectors.base_connector import BaseConnector
from elba_connectors.db import OrganisationStore
from elba_connectors.elba import Elba
from elba_connectors.errors import OrganisationNotFoundError
from elba_connectors.events import Event, SyncJobState, users_page_sync_event

logger = logging.getLogger("connectors.sync_users")


class UsersPageSync:
    def __init__(
        self,
        connector: BaseConnector,
        store: OrganisationStore,
        elba_factory: Callable[[str, str], Elba],
        emitter,
    ) -> None:
        self.connector = connector
        self.store = store
        self.elba_factory = elba_factory
        self.emitter = emitter
        self.event_name = users_page_sync_event(connector.CONNECTOR_NAME)

    def __call__(self, event: Event) -> dict[str, Any]:
        state = SyncJobState.from_payload(event.data)
        extra = {
            "connector": self.connector.CONNECTOR_NAME,
            "organisation_id": state.organisation_id,
            "region": state.region,
            "page": state.page,
        }

        organisation = self.store.get(state.organisation_id)
        if organisation is None:
            raise OrganisationNotFoundError(state.organisation_id)

        page = self.connector.fetch_users_page(organisation, state.page)
        users = self.connector.format_users(page.users)

        elba = self.elba_factory(state.organisation_id, state.region)
        if users:
            elba.users.update(users)
        logger.info("Synced users page", extra={**extra, "records": len(users)})

        if page.next_page:
            self.emitter.send(Event(self.event_name, state.next_page(page.next_page).to_payload()))
            return {"status": "ongoing"}

        elba.users.delete(synced_before=state.sync_started_at)
        self.store.mark_synced(state.organisation_id, state.sync_started_at)
        logger.info("Users sync completed", extra={**extra, "status": "completed"})
        return {"status": "completed"}
