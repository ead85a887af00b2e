"""GitHub connector: organisation members, paginated through the Link header."""

from __future__ import annotations

import logging
from typing import Any, Optional

import requests

from elba_connectors.base_connector import BaseConnector, UsersPage
from elba_connectors.config import GitHubConfig
from elba_connectors.db import Organisation
from elba_connectors.elba import User
from elba_connectors.errors import MalformedPageError
from elba_connectors.events import Cursor

logger = logging.getLogger("connectors.github")


def next_link(link_header: str) -> Optional[str]:
    """Extract the rel="next" URL from a GitHub Link header."""
    for part in link_header.split(","):
        if 'rel="next"' in part:
            return part.split(";")[0].strip().strip("<>")
    return None


class GitHubConnector(BaseConnector):
    CONNECTOR_NAME = "github"

    def __init__(self, config: GitHubConfig, session: Optional[requests.Session] = None) -> None:
        super().__init__(session)
        self._base = config.api_base_url.rstrip("/")
        self._per_page = config.per_page

    def fetch_users_page(self, organisation: Organisation, page: Optional[Cursor]) -> UsersPage:
        if not organisation.account_login:
            raise MalformedPageError(
                f"Organisation {organisation.id} has no GitHub account login"
            )

        headers = {
            "Authorization": f"token {organisation.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        # The cursor is the full next URL, query string included
        if page:
            resp = self._session.get(str(page), headers=headers, timeout=self._timeout)
        else:
            resp = self._session.get(
                f"{self._base}/orgs/{organisation.account_login}/members",
                params={"per_page": str(self._per_page)},
                headers=headers,
                timeout=self._timeout,
            )
        self._check(resp)

        data = self._json(resp)
        if not isinstance(data, list):
            raise MalformedPageError("GitHub members endpoint did not return a list")

        return UsersPage(users=data, next_page=next_link(resp.headers.get("Link", "")))

    def format_user(self, user: dict[str, Any]) -> User:
        return User(
            id=str(user["id"]),
            display_name=user.get("name") or user["login"],
            email=user.get("email"),
            additional_emails=[],
        )
