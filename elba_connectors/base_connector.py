"""Abstract base class for every SaaS connector."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import requests

from elba_connectors.db import Organisation
from elba_connectors.elba import User
from elba_connectors.errors import ConnectorApiError, MalformedPageError
from elba_connectors.events import Cursor

logger = logging.getLogger("connectors.connector")


@dataclass(frozen=True)
class UsersPage:
    users: list[dict[str, Any]] = field(default_factory=list)
    next_page: Optional[Cursor] = None


class BaseConnector(ABC):
    """Each connector fetches one page of users and maps them to elba users.

    Connectors are stateless between pages: everything needed to resume a
    listing travels in the cursor.
    """

    CONNECTOR_NAME: str = ""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 30.0) -> None:
        self._session = session or requests.Session()
        self._timeout = timeout

    @abstractmethod
    def fetch_users_page(self, organisation: Organisation, page: Optional[Cursor]) -> UsersPage:
        """Fetch the page at `page` (None for the first one)."""

    @abstractmethod
    def format_user(self, user: dict[str, Any]) -> User:
        """Map one remote user to an elba user."""

    def include_user(self, user: dict[str, Any]) -> bool:
        """Whether a remote user is synced at all. Every user by default."""
        return True

    def format_users(self, users: list[dict[str, Any]]) -> list[User]:
        try:
            return [self.format_user(u) for u in users if self.include_user(u)]
        except (KeyError, TypeError, AttributeError) as exc:
            raise MalformedPageError(
                f"{self.CONNECTOR_NAME} returned a user without the expected fields: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _check(self, resp: requests.Response) -> requests.Response:
        if not resp.ok:
            logger.warning(
                "%s API error %d on %s",
                self.CONNECTOR_NAME,
                resp.status_code,
                resp.url,
                extra={"connector": self.CONNECTOR_NAME},
            )
            raise ConnectorApiError.from_response(self.CONNECTOR_NAME, resp)
        return resp

    def _json(self, resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise MalformedPageError(
                f"{self.CONNECTOR_NAME} returned a non-JSON body"
            ) from exc
