"""Tests for the dispatcher and the wired users sync functions."""

import threading
import time
from collections import defaultdict
from unittest.mock import Mock

import pytest

from elba_connectors.app import register_users_sync, run_users_sync
from elba_connectors.base_connector import UsersPage
from elba_connectors.db import Organisation
from elba_connectors.dispatch import Dispatcher, SyncFunction
from elba_connectors.errors import ConnectorApiError, NonRetriableError, RetryAfterError
from elba_connectors.events import Event, SyncJobState, users_page_sync_event

from tests.conftest import (
    ORGANISATION_ID,
    OTHER_ORGANISATION_ID,
    SYNC_STARTED_AT,
    FakeConnector,
    FakeStore,
    elba_user,
    remote_user,
    two_page_connector,
)


def _dispatcher(no_sleep, **kwargs):
    return Dispatcher(max_workers=kwargs.pop("max_workers", 4), sleep=no_sleep.append, **kwargs)


def _page_event(organisation_id=ORGANISATION_ID, page=None, is_first_sync=False):
    state = SyncJobState(
        organisation_id=organisation_id,
        region="eu",
        is_first_sync=is_first_sync,
        sync_started_at=SYNC_STARTED_AT,
        page=page,
    )
    return Event(users_page_sync_event("fake"), state.to_payload())


# ---------------------------------------------------------------------------
# Dispatcher mechanics
# ---------------------------------------------------------------------------

class TestDispatcher:

    def test_unknown_event_is_ignored(self, no_sleep):
        dispatcher = _dispatcher(no_sleep)
        dispatcher.send(Event("nobody/listens"))
        assert dispatcher.pending() == 0
        assert dispatcher.run_until_idle() == []

    def test_transient_failure_is_retried_with_same_event(self, no_sleep):
        seen = []

        def handler(event):
            seen.append(event)
            if len(seen) < 3:
                raise RuntimeError("flaky")
            return {"status": "completed"}

        dispatcher = _dispatcher(no_sleep, backoff_base=2.0)
        dispatcher.register(SyncFunction(id="f", event="e", handler=handler, retries=3))
        event = Event("e", {"organisationId": "a"})
        dispatcher.send(event)

        [report] = dispatcher.run_until_idle()

        assert report.status == "completed"
        assert report.attempts == 3
        assert seen == [event, event, event]
        assert no_sleep == [2.0, 4.0]

    def test_terminal_failure_is_not_retried(self, no_sleep):
        handler = Mock(side_effect=NonRetriableError("stop"))
        dispatcher = _dispatcher(no_sleep)
        dispatcher.register(SyncFunction(id="f", event="e", handler=handler, retries=3))
        dispatcher.send(Event("e"))

        [report] = dispatcher.run_until_idle()

        assert report.status == "failed"
        assert report.attempts == 1
        assert handler.call_count == 1
        assert no_sleep == []

    def test_priority_runs_first(self, no_sleep):
        order = []
        dispatcher = _dispatcher(no_sleep, max_workers=1)
        dispatcher.register(SyncFunction(
            id="f",
            event="e",
            handler=lambda event: order.append(event.data["name"]),
            priority=lambda event: 600 if event.data.get("isFirstSync") else 0,
        ))
        dispatcher.send([
            Event("e", {"name": "routine-1"}),
            Event("e", {"name": "routine-2"}),
            Event("e", {"name": "first", "isFirstSync": True}),
        ])

        dispatcher.run_until_idle()

        assert order == ["first", "routine-1", "routine-2"]

    def test_runs_with_same_key_never_overlap(self, no_sleep):
        lock = threading.Lock()
        active = defaultdict(int)
        peak = defaultdict(int)

        def handler(event):
            key = event.data["organisationId"]
            with lock:
                active[key] += 1
                peak[key] = max(peak[key], active[key])
            time.sleep(0.01)
            with lock:
                active[key] -= 1

        dispatcher = _dispatcher(no_sleep, max_workers=4)
        dispatcher.register(SyncFunction(
            id="f",
            event="e",
            handler=handler,
            concurrency_key=lambda event: event.data["organisationId"],
        ))
        dispatcher.send(
            [Event("e", {"organisationId": "a", "n": n}) for n in range(4)]
            + [Event("e", {"organisationId": "b", "n": n}) for n in range(4)]
        )

        reports = dispatcher.run_until_idle()

        assert len(reports) == 8
        assert peak == {"a": 1, "b": 1}

    def test_reports_are_passed_to_callback(self, no_sleep):
        on_report = Mock()
        dispatcher = _dispatcher(no_sleep, on_report=on_report)
        dispatcher.register(SyncFunction(id="f", event="e", handler=lambda e: {"status": "ok"}))
        dispatcher.send(Event("e", {"organisationId": "a"}))

        [report] = dispatcher.run_until_idle()

        on_report.assert_called_once_with(report)
        assert report.organisation_id == "a"
        assert report.output == {"status": "ok"}

    def test_failing_report_callback_does_not_stop_the_drain(self, no_sleep):
        ran = []
        on_report = Mock(side_effect=[RuntimeError("db down"), None, None])
        dispatcher = _dispatcher(no_sleep, max_workers=1, on_report=on_report)
        dispatcher.register(SyncFunction(id="f", event="e", handler=lambda e: ran.append(e.data["n"])))
        dispatcher.send([Event("e", {"n": n}) for n in range(3)])

        reports = dispatcher.run_until_idle()

        assert ran == [0, 1, 2]
        assert [r.status for r in reports] == ["completed"] * 3
        assert on_report.call_count == 3
        assert dispatcher.pending() == 0

    @pytest.mark.parametrize("hint, expected", [
        (float("nan"), 1.0),
        (float("inf"), 1.0),
        (-5.0, 0.0),
        (86400.0, 120.0),
    ])
    def test_retry_after_hint_is_bounded(self, no_sleep, hint, expected):
        attempts = []

        def handler(event):
            attempts.append(event)
            if len(attempts) == 1:
                raise RetryAfterError("slow down", retry_after=hint)
            return {"status": "ok"}

        dispatcher = _dispatcher(no_sleep, max_retry_after=120.0)
        dispatcher.register(SyncFunction(id="f", event="e", handler=handler))
        dispatcher.send(Event("e"))

        [report] = dispatcher.run_until_idle()

        assert report.status == "completed"
        assert no_sleep == [expected]


# ---------------------------------------------------------------------------
# Users sync wired on the dispatcher
# ---------------------------------------------------------------------------

class TestUsersSyncFunctions:

    def _register(self, dispatcher, connector, store, elba_factory):
        register_users_sync(dispatcher, connector, store, elba_factory, retries=3)

    def test_two_pages_second_empty(self, no_sleep, store, elba, elba_factory):
        connector = two_page_connector()
        dispatcher = _dispatcher(no_sleep)
        self._register(dispatcher, connector, store, elba_factory)
        dispatcher.send(_page_event())

        reports = dispatcher.run_until_idle()

        assert [r.output for r in reports] == [{"status": "ongoing"}, {"status": "completed"}]
        assert connector.calls == [None, "p2"]
        elba.users.update.assert_called_once_with([elba_user(1), elba_user(2)])
        elba.users.delete.assert_called_once_with(synced_before=SYNC_STARTED_AT)
        assert store.synced == {ORGANISATION_ID: SYNC_STARTED_AT}

    def test_one_update_per_page_then_one_delete(self, no_sleep, store, elba, elba_factory):
        connector = FakeConnector({
            None: UsersPage(users=[remote_user(1)], next_page=2),
            2: UsersPage(users=[remote_user(2)], next_page=3),
            3: UsersPage(users=[remote_user(3)], next_page=4),
            4: UsersPage(users=[remote_user(4)]),
        })
        dispatcher = _dispatcher(no_sleep)
        self._register(dispatcher, connector, store, elba_factory)
        dispatcher.send(_page_event())

        dispatcher.run_until_idle()

        assert connector.calls == [None, 2, 3, 4]
        assert [c.args[0] for c in elba.users.update.call_args_list] == [
            [elba_user(1)], [elba_user(2)], [elba_user(3)], [elba_user(4)],
        ]
        elba.users.delete.assert_called_once_with(synced_before=SYNC_STARTED_AT)

    def test_unauthorized_removes_organisation_once(self, no_sleep, store, elba, elba_factory):
        unauthorized = ConnectorApiError("bad credentials", status_code=401)
        connector = FakeConnector({None: unauthorized})
        dispatcher = _dispatcher(no_sleep)
        self._register(dispatcher, connector, store, elba_factory)
        dispatcher.send(_page_event())

        [report] = dispatcher.run_until_idle()

        assert report.status == "failed"
        assert report.attempts == 1
        assert isinstance(report.error, NonRetriableError)
        assert report.error.__cause__ is unauthorized
        elba_factory.assert_called_once_with(ORGANISATION_ID, "eu")
        elba.connection_status.update.assert_called_once_with(has_error=True)
        assert store.get(ORGANISATION_ID) is None

    def test_server_error_exhausts_retries(self, no_sleep, store, elba, elba_factory):
        connector = FakeConnector({None: ConnectorApiError("boom", status_code=500)})
        dispatcher = _dispatcher(no_sleep)
        self._register(dispatcher, connector, store, elba_factory)
        dispatcher.send(_page_event())

        [report] = dispatcher.run_until_idle()

        assert report.status == "failed"
        assert report.attempts == 4
        assert isinstance(report.error, ConnectorApiError)
        assert connector.calls == [None] * 4
        assert len(no_sleep) == 3
        assert store.get(ORGANISATION_ID) is not None
        elba.connection_status.update.assert_not_called()

    def test_rate_limit_waits_retry_after(self, no_sleep, store, elba, elba_factory):
        limited = ConnectorApiError(
            "too many requests",
            response=Mock(status_code=429, headers={"Retry-After": "7"}),
        )
        connector = FakeConnector({None: [limited, UsersPage(users=[remote_user(1)])]})
        dispatcher = _dispatcher(no_sleep)
        self._register(dispatcher, connector, store, elba_factory)
        dispatcher.send(_page_event())

        [report] = dispatcher.run_until_idle()

        assert report.status == "completed"
        assert report.attempts == 2
        assert no_sleep == [7.0]

    @pytest.mark.parametrize("retry_after", ["nan", "inf"])
    def test_unusable_retry_after_falls_back_to_backoff(self, no_sleep, store, elba, elba_factory, retry_after):
        limited = ConnectorApiError(
            "too many requests",
            response=Mock(status_code=429, headers={"Retry-After": retry_after}),
        )
        connector = FakeConnector({None: [limited, UsersPage(users=[remote_user(1)])]})
        dispatcher = _dispatcher(no_sleep)
        self._register(dispatcher, connector, store, elba_factory)
        dispatcher.send(_page_event())

        [report] = dispatcher.run_until_idle()

        assert report.status == "completed"
        assert no_sleep == [1.0]
        elba.users.delete.assert_called_once()

    def test_missing_organisation_fails_without_retry(self, no_sleep, elba_factory):
        connector = two_page_connector()
        dispatcher = _dispatcher(no_sleep)
        self._register(dispatcher, connector, FakeStore(), elba_factory)
        dispatcher.send(_page_event())

        [report] = dispatcher.run_until_idle()

        assert report.status == "failed"
        assert report.attempts == 1
        assert connector.calls == []

    def test_schedule_cycle_syncs_every_organisation(self, no_sleep, organisation, elba_factory):
        other = Organisation(id=OTHER_ORGANISATION_ID, region="us", token="token-2")
        store = FakeStore(organisation, other)
        connector = FakeConnector({None: UsersPage(users=[remote_user(1)])})
        dispatcher = _dispatcher(no_sleep)
        self._register(dispatcher, connector, store, elba_factory)

        reports = run_users_sync(dispatcher, "fake")

        by_function = defaultdict(list)
        for report in reports:
            by_function[report.function_id].append(report)
        assert len(by_function["fake-schedule-users-sync"]) == 1
        assert {r.organisation_id for r in by_function["fake-sync-users-page"]} == {
            ORGANISATION_ID,
            OTHER_ORGANISATION_ID,
        }
        assert all(r.status == "completed" for r in reports)
        assert set(store.synced) == {ORGANISATION_ID, OTHER_ORGANISATION_ID}
