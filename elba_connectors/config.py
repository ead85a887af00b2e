"""Configuration via environment variables with cloud-native secret support.

Supports:
  - Environment variables (local dev)
  - AWS Secrets Manager (aws-secret://name#key)
  - GCP Secret Manager (gcp-secret://name)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from elba_connectors.secrets import resolve_database_url, resolve_secret


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    min_connections: int = 2
    max_connections: int = 10


@dataclass(frozen=True)
class ElbaConfig:
    api_key: str
    source_id: str
    base_url: str = "https://api.elba.security/api"
    timeout: float = 30.0


@dataclass(frozen=True)
class GitHubConfig:
    api_base_url: str = "https://api.github.com"
    per_page: int = 100


@dataclass(frozen=True)
class MondayConfig:
    api_base_url: str = "https://api.monday.com/v2"
    page_size: int = 25


@dataclass(frozen=True)
class DropboxConfig:
    api_base_url: str = "https://api.dropboxapi.com/2"
    page_size: int = 200


@dataclass(frozen=True)
class SchedulerConfig:
    users_sync_cron: str = "0 0 * * *"
    # None means every organisation is synced on each run
    users_sync_frequency_hours: Optional[int] = None
    max_retries: int = 3
    first_sync_priority: int = 600
    max_workers: int = 4
    max_retry_after: float = 300.0
    misfire_grace_time: int = 300


@dataclass(frozen=True)
class ConnectorsConfig:
    database: DatabaseConfig
    elba: ElbaConfig
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    github: GitHubConfig = field(default_factory=GitHubConfig)
    monday: MondayConfig = field(default_factory=MondayConfig)
    dropbox: DropboxConfig = field(default_factory=DropboxConfig)


def _optional_int(name: str) -> Optional[int]:
    raw = os.environ.get(name, "").strip()
    return int(raw) if raw else None


def load_config() -> ConnectorsConfig:
    """Load configuration from environment variables.

    ELBA_API_KEY may be a secret reference; it is resolved through AWS Secrets
    Manager or GCP Secret Manager when it carries one of their prefixes.
    """
    load_dotenv()

    api_key_raw = os.environ.get("ELBA_API_KEY", "")
    if not api_key_raw:
        raise ValueError("ELBA_API_KEY environment variable is required")
    source_id = os.environ.get("ELBA_SOURCE_ID", "")
    if not source_id:
        raise ValueError("ELBA_SOURCE_ID environment variable is required")

    database = DatabaseConfig(
        url=resolve_database_url(),
        min_connections=int(os.environ.get("DB_MIN_CONNECTIONS", "2")),
        max_connections=int(os.environ.get("DB_MAX_CONNECTIONS", "10")),
    )

    elba = ElbaConfig(
        api_key=resolve_secret(api_key_raw),
        source_id=source_id,
        base_url=os.environ.get("ELBA_API_BASE_URL", "https://api.elba.security/api"),
        timeout=float(os.environ.get("ELBA_REQUEST_TIMEOUT", "30")),
    )

    scheduler = SchedulerConfig(
        users_sync_cron=os.environ.get("USERS_SYNC_CRON", "0 0 * * *"),
        users_sync_frequency_hours=_optional_int("USERS_SYNC_FREQUENCY_HOURS"),
        max_retries=int(os.environ.get("USERS_SYNC_MAX_RETRIES", "3")),
        max_workers=int(os.environ.get("DISPATCH_MAX_WORKERS", "4")),
        max_retry_after=float(os.environ.get("RETRY_AFTER_MAX_SECONDS", "300")),
        misfire_grace_time=int(os.environ.get("MISFIRE_GRACE_TIME", "300")),
    )

    return ConnectorsConfig(
        database=database,
        elba=elba,
        scheduler=scheduler,
        github=GitHubConfig(
            api_base_url=os.environ.get("GITHUB_API_BASE_URL", "https://api.github.com"),
            per_page=int(os.environ.get("GITHUB_USERS_PAGE_SIZE", "100")),
        ),
        monday=MondayConfig(
            api_base_url=os.environ.get("MONDAY_API_BASE_URL", "https://api.monday.com/v2"),
            page_size=int(os.environ.get("MONDAY_USERS_PAGE_SIZE", "25")),
        ),
        dropbox=DropboxConfig(
            api_base_url=os.environ.get("DROPBOX_API_BASE_URL", "https://api.dropboxapi.com/2"),
            page_size=int(os.environ.get("DROPBOX_USERS_PAGE_SIZE", "200")),
        ),
    )
