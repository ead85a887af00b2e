"""Database helpers: connection pool, organisation store, run tracking."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Generator, Optional

import psycopg2
import psycopg2.extras
import psycopg2.pool

from elba_connectors.config import DatabaseConfig

logger = logging.getLogger("connectors.db")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS organisations (
    connector       TEXT NOT NULL,
    id              UUID NOT NULL,
    region          TEXT NOT NULL,
    token           TEXT NOT NULL,
    account_login   TEXT,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_synced_at  TIMESTAMPTZ,
    PRIMARY KEY (connector, id)
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id               UUID PRIMARY KEY,
    function_id      TEXT NOT NULL,
    organisation_id  UUID,
    status           TEXT NOT NULL,
    output_status    TEXT,
    attempts         INTEGER NOT NULL DEFAULT 1,
    error_message    TEXT,
    finished_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


@dataclass(frozen=True)
class Organisation:
    id: str
    region: str
    token: str
    # GitHub organisation login; unused by other connectors
    account_login: Optional[str] = None
    created_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None


# (organisation, now) -> should this organisation be synced on this run
EligibilityPredicate = Callable[[Organisation, datetime], bool]


def all_organisations(organisation: Organisation, now: datetime) -> bool:
    return True


def not_synced_within(hours: int) -> EligibilityPredicate:
    """Organisations never synced, or last synced more than `hours` ago."""
    window = timedelta(hours=hours)

    def predicate(organisation: Organisation, now: datetime) -> bool:
        if organisation.last_synced_at is None:
            return True
        return now - organisation.last_synced_at >= window

    return predicate


class Database:
    """Thin wrapper around a ThreadedConnectionPool."""

    def __init__(self, config: DatabaseConfig) -> None:
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=config.min_connections,
            maxconn=config.max_connections,
            dsn=config.url,
        )

    def close(self) -> None:
        self._pool.closeall()

    @contextmanager
    def connection(self) -> Generator:
        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Generator:
        """Yield a cursor inside an auto-commit/rollback transaction."""
        with self.connection() as conn:
            try:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                    yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def create_schema(self) -> None:
        with self.transaction() as cur:
            cur.execute(SCHEMA_SQL)
        logger.info("Schema ready")

    # ------------------------------------------------------------------
    # Run tracking
    # ------------------------------------------------------------------

    def record_run(
        self,
        function_id: str,
        organisation_id: Optional[str],
        status: str,
        output_status: Optional[str] = None,
        attempts: int = 1,
        error_message: Optional[str] = None,
    ) -> str:
        run_id = str(uuid.uuid4())
        with self.transaction() as cur:
            cur.execute(
                """INSERT INTO sync_runs
                   (id, function_id, organisation_id, status, output_status,
                    attempts, error_message)
                   VALUES (%s, %s, %s, %s, %s, %s, %s)""",
                (
                    run_id,
                    function_id,
                    organisation_id,
                    status,
                    output_status,
                    attempts,
                    error_message[:1000] if error_message else None,
                ),
            )
        return run_id

    def get_recent_runs(
        self,
        function_id: Optional[str] = None,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        with self.transaction() as cur:
            if function_id:
                cur.execute(
                    """SELECT id, function_id, organisation_id, status, output_status,
                              attempts, error_message, finished_at
                       FROM sync_runs WHERE function_id = %s
                       ORDER BY finished_at DESC LIMIT %s""",
                    (function_id, limit),
                )
            else:
                cur.execute(
                    """SELECT id, function_id, organisation_id, status, output_status,
                              attempts, error_message, finished_at
                       FROM sync_runs
                       ORDER BY finished_at DESC LIMIT %s""",
                    (limit,),
                )
            return [dict(row) for row in cur.fetchall()]


class OrganisationStore:
    """Organisation credentials of one connector, keyed by elba organisation id."""

    _COLUMNS = "id, region, token, account_login, created_at, last_synced_at"

    def __init__(self, db: Database, connector: str) -> None:
        self.db = db
        self.connector = connector

    @staticmethod
    def _to_organisation(row: dict[str, Any]) -> Organisation:
        return Organisation(
            id=str(row["id"]),
            region=row["region"],
            token=row["token"],
            account_login=row.get("account_login"),
            created_at=row.get("created_at"),
            last_synced_at=row.get("last_synced_at"),
        )

    def get(self, organisation_id: str) -> Optional[Organisation]:
        with self.db.transaction() as cur:
            cur.execute(
                f"""SELECT {self._COLUMNS} FROM organisations
                    WHERE connector = %s AND id = %s""",
                (self.connector, organisation_id),
            )
            row = cur.fetchone()
        return self._to_organisation(row) if row else None

    def list_eligible_for_sync(
        self,
        now: datetime,
        predicate: EligibilityPredicate = all_organisations,
    ) -> list[Organisation]:
        with self.db.transaction() as cur:
            cur.execute(
                f"""SELECT {self._COLUMNS} FROM organisations
                    WHERE connector = %s ORDER BY created_at""",
                (self.connector,),
            )
            rows = cur.fetchall()
        organisations = [self._to_organisation(row) for row in rows]
        return [org for org in organisations if predicate(org, now)]

    def save(self, organisation: Organisation) -> None:
        """Insert or refresh the credential obtained by the installation flow."""
        with self.db.transaction() as cur:
            cur.execute(
                """INSERT INTO organisations (connector, id, region, token, account_login)
                   VALUES (%s, %s, %s, %s, %s)
                   ON CONFLICT (connector, id) DO UPDATE SET
                       region = EXCLUDED.region,
                       token = EXCLUDED.token,
                       account_login = EXCLUDED.account_login""",
                (
                    self.connector,
                    organisation.id,
                    organisation.region,
                    organisation.token,
                    organisation.account_login,
                ),
            )

    def mark_synced(self, organisation_id: str, synced_at: datetime) -> None:
        with self.db.transaction() as cur:
            cur.execute(
                """UPDATE organisations SET last_synced_at = %s
                   WHERE connector = %s AND id = %s""",
                (synced_at, self.connector, organisation_id),
            )

    def remove(self, organisation_id: str) -> None:
        with self.db.transaction() as cur:
            cur.execute(
                "DELETE FROM organisations WHERE connector = %s AND id = %s",
                (self.connector, organisation_id),
            )
            removed = cur.rowcount
        logger.info(
            "Removed organisation",
            extra={
                "connector": self.connector,
                "organisation_id": organisation_id,
                "records": removed,
            },
        )
