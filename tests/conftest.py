"""Shared fixtures: in-memory organisation store and a scripted connector."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest

from elba_connectors.base_connector import BaseConnector, UsersPage
from elba_connectors.db import Organisation, all_organisations
from elba_connectors.elba import User

ORGANISATION_ID = "45a76301-f1dd-4a77-b12f-9d7d3fca3c90"
OTHER_ORGANISATION_ID = "7c1d2f3e-8a9b-4c5d-9e0f-112233445566"
SYNC_STARTED_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeStore:
    def __init__(self, *organisations: Organisation) -> None:
        self.organisations = {o.id: o for o in organisations}
        self.synced: dict[str, datetime] = {}

    def get(self, organisation_id: str) -> Optional[Organisation]:
        return self.organisations.get(organisation_id)

    def remove(self, organisation_id: str) -> None:
        self.organisations.pop(organisation_id, None)

    def list_eligible_for_sync(self, now, predicate=all_organisations):
        return [o for o in self.organisations.values() if predicate(o, now)]

    def mark_synced(self, organisation_id: str, synced_at: datetime) -> None:
        self.synced[organisation_id] = synced_at


class FakeConnector(BaseConnector):
    """Serves scripted pages keyed by cursor.

    A value may be a UsersPage, an exception to raise, or a list of those
    consumed one per call.
    """

    CONNECTOR_NAME = "fake"

    def __init__(self, pages: dict[Any, Any]) -> None:
        super().__init__()
        self.pages = pages
        self.calls: list[Any] = []

    def fetch_users_page(self, organisation, page):
        self.calls.append(page)
        outcome = self.pages[page]
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def format_user(self, user):
        return User(id=user["id"], display_name=user["name"], email=user.get("email"))


def remote_user(n: int) -> dict[str, Any]:
    return {"id": f"user-{n}", "name": f"User {n}", "email": f"user-{n}@example.com"}


def elba_user(n: int) -> User:
    return User(id=f"user-{n}", display_name=f"User {n}", email=f"user-{n}@example.com")


@pytest.fixture
def organisation() -> Organisation:
    return Organisation(id=ORGANISATION_ID, region="eu", token="token-1")


@pytest.fixture
def store(organisation) -> FakeStore:
    return FakeStore(organisation)


@pytest.fixture
def elba() -> MagicMock:
    return MagicMock()


@pytest.fixture
def elba_factory(elba) -> MagicMock:
    return MagicMock(return_value=elba)


@pytest.fixture
def no_sleep() -> list[float]:
    """Collects requested sleep durations instead of sleeping."""
    return []


def two_page_connector() -> FakeConnector:
    return FakeConnector({
        None: UsersPage(users=[remote_user(1), remote_user(2)], next_page="p2"),
        "p2": UsersPage(users=[], next_page=None),
    })
