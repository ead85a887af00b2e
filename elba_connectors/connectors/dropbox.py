"""Dropbox connector: team members, continued with an opaque cursor."""

from __future__ import annotations

import logging
from typing import Any, Optional

import requests

from elba_connectors.base_connector import BaseConnector, UsersPage
from elba_connectors.config import DropboxConfig
from elba_connectors.db import Organisation
from elba_connectors.elba import User
from elba_connectors.errors import MalformedPageError
from elba_connectors.events import Cursor

logger = logging.getLogger("connectors.dropbox")


class DropboxConnector(BaseConnector):
    CONNECTOR_NAME = "dropbox"

    def __init__(self, config: DropboxConfig, session: Optional[requests.Session] = None) -> None:
        super().__init__(session)
        self._base = config.api_base_url.rstrip("/")
        self._page_size = config.page_size

    def fetch_users_page(self, organisation: Organisation, page: Optional[Cursor]) -> UsersPage:
        if page:
            url = f"{self._base}/team/members/list/continue_v2"
            body: dict[str, Any] = {"cursor": str(page)}
        else:
            url = f"{self._base}/team/members/list_v2"
            body = {"limit": self._page_size}

        resp = self._session.post(
            url,
            json=body,
            headers={"Authorization": f"Bearer {organisation.token}"},
            timeout=self._timeout,
        )
        self._check(resp)

        data = self._json(resp)
        members = data.get("members") if isinstance(data, dict) else None
        if not isinstance(members, list):
            raise MalformedPageError("Dropbox response has no members list")

        next_page = data.get("cursor") if data.get("has_more") else None
        return UsersPage(users=members, next_page=next_page)

    def include_user(self, user: dict[str, Any]) -> bool:
        # Invited and suspended members have no seat to monitor
        return user["profile"]["status"][".tag"] == "active"

    def format_user(self, user: dict[str, Any]) -> User:
        profile = user["profile"]
        return User(
            id=profile["team_member_id"],
            display_name=profile["name"]["display_name"],
            email=profile.get("email"),
            additional_emails=[
                e["email"]
                for e in profile.get("secondary_emails", [])
                if e.get("is_verified")
            ],
        )
