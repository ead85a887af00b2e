"""Client for the elba API: the sink every connector pushes users into."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import requests

from elba_connectors.config import ElbaConfig
from elba_connectors.errors import ElbaError

logger = logging.getLogger("connectors.elba")


@dataclass(frozen=True)
class User:
    id: str
    display_name: str
    email: Optional[str] = None
    additional_emails: list[str] = field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "email": self.email,
            "additionalEmails": list(self.additional_emails),
        }


class _Resource:
    def __init__(self, client: "Elba") -> None:
        self._client = client


class UsersResource(_Resource):
    def update(self, users: list[User]) -> dict[str, Any]:
        return self._client.request(
            "POST", "/users", {"users": [u.to_json() for u in users]}
        )

    def delete(self, synced_before: datetime) -> dict[str, Any]:
        """Delete every user of the organisation not updated since synced_before."""
        return self._client.request(
            "DELETE", "/users", {"syncedBefore": synced_before.isoformat()}
        )


class ConnectionStatusResource(_Resource):
    def update(self, has_error: bool) -> dict[str, Any]:
        return self._client.request(
            "PATCH", "/connection-status", {"hasError": has_error}
        )


class Elba:
    """elba API bound to one organisation and region."""

    def __init__(
        self,
        config: ElbaConfig,
        organisation_id: str,
        region: str,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.organisation_id = organisation_id
        self.region = region
        self._source_id = config.source_id
        self._base = config.base_url.rstrip("/")
        self._timeout = config.timeout
        self._session = session or requests.Session()
        self._headers = {
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
        }
        self.users = UsersResource(self)
        self.connection_status = ConnectionStatusResource(self)

    def request(self, method: str, path: str, body: dict[str, Any]) -> dict[str, Any]:
        payload = {
            "organisationId": self.organisation_id,
            "sourceId": self._source_id,
            **body,
        }
        resp = self._session.request(
            method,
            f"{self._base}/rest{path}",
            params={"region": self.region},
            json=payload,
            headers=self._headers,
            timeout=self._timeout,
        )
        if not resp.ok:
            raise ElbaError(
                f"elba {method} {path} responded with status {resp.status_code}",
                response=resp,
            )
        logger.debug(
            "elba %s %s ok",
            method,
            path,
            extra={"organisation_id": self.organisation_id, "region": self.region},
        )
        return resp.json() if resp.content else {}


class ElbaFactory:
    """Builds per-organisation elba clients sharing one HTTP session."""

    def __init__(self, config: ElbaConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def __call__(self, organisation_id: str, region: str) -> Elba:
        return Elba(
            self.config,
            organisation_id=organisation_id,
            region=region,
            session=self.session,
        )
