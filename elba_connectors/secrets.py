"""Secret references resolved from AWS Secrets Manager or GCP Secret Manager.

Plain values are returned untouched, so local development can keep secrets
in environment variables or a .env file.
"""

from __future__ import annotations

import json
import logging
import os

logger = logging.getLogger("connectors.secrets")

_AWS_PREFIX = "aws-secret://"
_GCP_PREFIX = "gcp-secret://"


class SecretResolutionError(RuntimeError):
    pass


def resolve_secret(value: str) -> str:
    """Resolve a secret reference to its plaintext value.

    Supported formats:
      - "aws-secret://secret-name"         -> AWS Secrets Manager
      - "aws-secret://secret-name#key"     -> AWS Secrets Manager (JSON key)
      - "gcp-secret://projects/.../versions/N" or "gcp-secret://name"
      - anything else                      -> returned as-is
    """
    if value.startswith(_AWS_PREFIX):
        return _resolve_aws_secret(value[len(_AWS_PREFIX):])
    if value.startswith(_GCP_PREFIX):
        return _resolve_gcp_secret(value[len(_GCP_PREFIX):])
    return value


def _resolve_aws_secret(ref: str) -> str:
    import boto3

    secret_name, _, json_key = ref.partition("#")
    client = boto3.client(
        "secretsmanager", region_name=os.environ.get("AWS_REGION", "us-east-1")
    )
    secret_string = client.get_secret_value(SecretId=secret_name)["SecretString"]
    logger.info("Resolved AWS secret %s", secret_name)

    if not json_key:
        return secret_string
    data = json.loads(secret_string)
    if json_key not in data:
        raise SecretResolutionError(f"Key {json_key!r} not found in AWS secret {secret_name!r}")
    return str(data[json_key])


def _resolve_gcp_secret(ref: str) -> str:
    from google.cloud import secretmanager

    if ref.startswith("projects/"):
        name = ref
    else:
        project = os.environ.get("GCP_PROJECT_ID", "")
        if not project:
            raise SecretResolutionError(
                f"Cannot resolve gcp-secret://{ref} without GCP_PROJECT_ID"
            )
        name = f"projects/{project}/secrets/{ref}/versions/latest"

    client = secretmanager.SecretManagerServiceClient()
    response = client.access_secret_version(request={"name": name})
    logger.info("Resolved GCP secret %s", name)
    return response.payload.data.decode("UTF-8")


def resolve_database_url() -> str:
    """DATABASE_URL when set, otherwise assembled from PG_* variables."""
    url = os.environ.get("DATABASE_URL", "")
    if url:
        return resolve_secret(url)

    host = os.environ.get("PG_HOST", "localhost")
    port = os.environ.get("PG_PORT", "5432")
    user = os.environ.get("PG_USER", "connectors")
    password = resolve_secret(os.environ.get("PG_PASSWORD", "localdev-change-me"))
    database = os.environ.get("PG_DATABASE", "elba_connectors")
    return f"postgresql://{user}:{password}@{host}:{port}/{database}"
