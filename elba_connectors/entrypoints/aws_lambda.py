"""AWS Lambda handler for scheduled users syncs.

Deployed as Lambda functions triggered by EventBridge cron rules.
Each invocation runs one scheduling cycle of a single connector.

Event format:
  {"connector": "github"}
  {"connector": "dropbox"}
"""

from __future__ import annotations

import json
import logging
import os

from elba_connectors.app import create_dispatcher, run_users_sync
from elba_connectors.config import load_config
from elba_connectors.connectors import CONNECTOR_REGISTRY
from elba_connectors.db import Database
from elba_connectors.logging_config import configure_logging

logger = logging.getLogger("connectors.lambda")


def handler(event: dict, context) -> dict:
    """Lambda entry point."""
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))

    connector = event.get("connector", "")
    if connector not in CONNECTOR_REGISTRY:
        return {"statusCode": 400, "body": f"Unknown connector {connector!r}"}

    logger.info("Lambda invoked for connector=%s", connector)

    config = load_config()
    db = Database(config.database)

    try:
        dispatcher, _ = create_dispatcher(connector, config, db)
        reports = run_users_sync(dispatcher, connector)
        results = {
            "completed": sum(1 for r in reports if r.status == "completed"),
            "failed": sum(1 for r in reports if r.status == "failed"),
        }
        return {
            "statusCode": 200,
            "body": json.dumps({"connector": connector, "results": results}),
        }
    except Exception as exc:
        logger.error("Sync failed for %s: %s", connector, exc, exc_info=True)
        return {
            "statusCode": 500,
            "body": json.dumps({"connector": connector, "error": str(exc)}),
        }
    finally:
        db.close()
