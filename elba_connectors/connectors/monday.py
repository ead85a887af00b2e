"""Monday connector: account users through the GraphQL API, numbered pages."""

from __future__ import annotations

import logging
from typing import Any, Optional

import requests

from elba_connectors.base_connector import BaseConnector, UsersPage
from elba_connectors.config import MondayConfig
from elba_connectors.db import Organisation
from elba_connectors.elba import User
from elba_connectors.errors import ConnectorApiError, MalformedPageError
from elba_connectors.events import Cursor

logger = logging.getLogger("connectors.monday")

USERS_QUERY = """
query ($limit: Int, $page: Int) {
  users(limit: $limit, page: $page, kind: non_guests) {
    id
    name
    email
  }
}
"""


class MondayConnector(BaseConnector):
    CONNECTOR_NAME = "monday"

    def __init__(self, config: MondayConfig, session: Optional[requests.Session] = None) -> None:
        super().__init__(session)
        self._url = config.api_base_url
        self._page_size = config.page_size

    def fetch_users_page(self, organisation: Organisation, page: Optional[Cursor]) -> UsersPage:
        page_number = int(page) if page else 1
        resp = self._session.post(
            self._url,
            json={
                "query": USERS_QUERY,
                "variables": {"limit": self._page_size, "page": page_number},
            },
            headers={"Authorization": organisation.token, "API-Version": "2024-01"},
            timeout=self._timeout,
        )
        self._check(resp)

        body = self._json(resp)
        if isinstance(body, dict) and body.get("errors"):
            # GraphQL reports failures with a 200 status
            raise ConnectorApiError(
                f"monday GraphQL error: {body['errors'][0].get('message', 'unknown')}",
                response=resp,
            )
        users = (body.get("data") or {}).get("users") if isinstance(body, dict) else None
        if not isinstance(users, list):
            raise MalformedPageError("monday response has no data.users list")

        next_page = page_number + 1 if len(users) == self._page_size else None
        return UsersPage(users=users, next_page=next_page)

    def format_user(self, user: dict[str, Any]) -> User:
        return User(
            id=str(user["id"]),
            display_name=user["name"],
            email=user.get("email"),
            additional_emails=[],
        )
