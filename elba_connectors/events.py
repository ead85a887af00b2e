"""Event names and the payload threaded between page-sync invocations."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

from elba_connectors.errors import NonRetriableError

# Opaque position in a remote listing: a URL, a continuation token or a page number.
Cursor = Union[str, int]


def users_page_sync_event(connector: str) -> str:
    return f"{connector}/users.page_sync.requested"


def users_schedule_sync_event(connector: str) -> str:
    return f"{connector}/users.schedule_sync.triggered"


def to_epoch_ms(instant: datetime) -> int:
    return int(instant.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class InvalidEventError(NonRetriableError):
    """An event payload is missing fields or carries the wrong types."""


@dataclass(frozen=True)
class SyncJobState:
    """Continuation state of one logical users sync.

    sync_started_at is the tombstone watermark: it never changes between pages
    of the same sync. page is None for the first page, otherwise the cursor
    returned verbatim by the previous page.
    """

    organisation_id: str
    region: str
    is_first_sync: bool
    sync_started_at: datetime
    page: Optional[Cursor] = None

    def next_page(self, cursor: Cursor) -> "SyncJobState":
        return dataclasses.replace(self, page=cursor)

    def to_payload(self) -> dict[str, Any]:
        return {
            "organisationId": self.organisation_id,
            "region": self.region,
            "isFirstSync": self.is_first_sync,
            "syncStartedAt": to_epoch_ms(self.sync_started_at),
            "page": self.page,
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "SyncJobState":
        try:
            organisation_id = data["organisationId"]
            region = data["region"]
            sync_started_at = data["syncStartedAt"]
        except KeyError as exc:
            raise InvalidEventError(f"Sync event is missing field {exc.args[0]!r}") from exc

        if not isinstance(organisation_id, str) or not organisation_id:
            raise InvalidEventError("organisationId must be a non-empty string")
        if not isinstance(region, str) or not region:
            raise InvalidEventError("region must be a non-empty string")
        if isinstance(sync_started_at, bool) or not isinstance(sync_started_at, int):
            raise InvalidEventError("syncStartedAt must be epoch milliseconds")

        page = data.get("page")
        if page is not None and (isinstance(page, bool) or not isinstance(page, (str, int))):
            raise InvalidEventError("page must be a string, an integer or null")

        return cls(
            organisation_id=organisation_id,
            region=region,
            is_first_sync=bool(data.get("isFirstSync", False)),
            sync_started_at=from_epoch_ms(sync_started_at),
            page=page,
        )


@dataclass(frozen=True)
class Event:
    name: str
    data: dict[str, Any] = field(default_factory=dict)
