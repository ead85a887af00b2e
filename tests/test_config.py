"""Tests for environment configuration and secret resolution."""

import json
from unittest.mock import MagicMock, patch

import pytest

from elba_connectors import config as config_module
from elba_connectors.config import load_config
from elba_connectors.secrets import SecretResolutionError, resolve_database_url, resolve_secret

MANAGED_VARS = [
    "ELBA_API_KEY", "ELBA_SOURCE_ID", "ELBA_API_BASE_URL", "ELBA_REQUEST_TIMEOUT",
    "DATABASE_URL", "PG_HOST", "PG_PORT", "PG_USER", "PG_PASSWORD", "PG_DATABASE",
    "USERS_SYNC_CRON", "USERS_SYNC_FREQUENCY_HOURS", "USERS_SYNC_MAX_RETRIES",
    "DISPATCH_MAX_WORKERS", "RETRY_AFTER_MAX_SECONDS", "GITHUB_API_BASE_URL", "MONDAY_USERS_PAGE_SIZE",
    "GCP_PROJECT_ID",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in MANAGED_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(config_module, "load_dotenv", lambda: None)


class TestLoadConfig:

    def test_requires_api_key(self, monkeypatch):
        monkeypatch.setenv("ELBA_SOURCE_ID", "source")
        with pytest.raises(ValueError, match="ELBA_API_KEY"):
            load_config()

    def test_requires_source_id(self, monkeypatch):
        monkeypatch.setenv("ELBA_API_KEY", "key")
        with pytest.raises(ValueError, match="ELBA_SOURCE_ID"):
            load_config()

    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("ELBA_API_KEY", "key")
        monkeypatch.setenv("ELBA_SOURCE_ID", "source")

        config = load_config()

        assert config.elba.api_key == "key"
        assert config.elba.base_url == "https://api.elba.security/api"
        assert config.database.url.startswith("postgresql://connectors:")
        assert config.scheduler.users_sync_cron == "0 0 * * *"
        assert config.scheduler.users_sync_frequency_hours is None
        assert config.scheduler.max_retries == 3
        assert config.scheduler.max_retry_after == 300.0
        assert config.monday.page_size == 25

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("ELBA_API_KEY", "key")
        monkeypatch.setenv("ELBA_SOURCE_ID", "source")
        monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db:5432/x")
        monkeypatch.setenv("USERS_SYNC_FREQUENCY_HOURS", "12")
        monkeypatch.setenv("USERS_SYNC_MAX_RETRIES", "5")
        monkeypatch.setenv("MONDAY_USERS_PAGE_SIZE", "50")
        monkeypatch.setenv("RETRY_AFTER_MAX_SECONDS", "90")

        config = load_config()

        assert config.database.url == "postgresql://u:p@db:5432/x"
        assert config.scheduler.users_sync_frequency_hours == 12
        assert config.scheduler.max_retries == 5
        assert config.monday.page_size == 50
        assert config.scheduler.max_retry_after == 90.0


class TestSecrets:

    def test_plain_value_is_returned(self):
        assert resolve_secret("plain") == "plain"

    def test_aws_secret_json_key(self):
        client = MagicMock()
        client.get_secret_value.return_value = {"SecretString": json.dumps({"api_key": "s3cr3t"})}
        with patch("boto3.client", return_value=client) as factory:
            assert resolve_secret("aws-secret://elba#api_key") == "s3cr3t"
        assert factory.call_args.args == ("secretsmanager",)
        client.get_secret_value.assert_called_once_with(SecretId="elba")

    def test_aws_secret_missing_key(self):
        client = MagicMock()
        client.get_secret_value.return_value = {"SecretString": "{}"}
        with patch("boto3.client", return_value=client):
            with pytest.raises(SecretResolutionError):
                resolve_secret("aws-secret://elba#api_key")

    def test_gcp_short_name_needs_project(self):
        with pytest.raises(SecretResolutionError):
            resolve_secret("gcp-secret://elba-api-key")

    def test_database_url_from_pg_vars(self, monkeypatch):
        monkeypatch.setenv("PG_HOST", "db")
        monkeypatch.setenv("PG_PASSWORD", "pw")
        assert resolve_database_url() == "postgresql://connectors:pw@db:5432/elba_connectors"
