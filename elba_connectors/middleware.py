"""Run results and the middleware that reclassifies them.

A function run ends as a RunResult tagged success, terminal failure or
transient failure. Middleware receives the result of every run and returns the
result the dispatcher should act on.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Callable, Optional

from elba_connectors.errors import (
    ConnectorApiError,
    NonRetriableError,
    RetryAfterError,
    is_retriable,
    is_unauthorized,
)
from elba_connectors.events import Event

logger = logging.getLogger("connectors.middleware")


class Outcome(str, Enum):
    SUCCESS = "success"
    TERMINAL = "terminal"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class RunResult:
    outcome: Outcome
    output: Optional[dict[str, Any]] = None
    error: Optional[BaseException] = None
    retry_after: Optional[float] = None

    @classmethod
    def ok(cls, output: Optional[dict[str, Any]]) -> "RunResult":
        return cls(Outcome.SUCCESS, output=output)

    @classmethod
    def failed(cls, error: BaseException) -> "RunResult":
        if isinstance(error, RetryAfterError):
            return cls(Outcome.TRANSIENT, error=error, retry_after=error.retry_after)
        outcome = Outcome.TRANSIENT if is_retriable(error) else Outcome.TERMINAL
        return cls(outcome, error=error)


@dataclass(frozen=True)
class FunctionContext:
    function_id: str
    event: Event


Middleware = Callable[[FunctionContext, RunResult], RunResult]


def unauthorized_middleware(store, elba_factory) -> Middleware:
    """Stop syncing organisations whose credential the SaaS rejected.

    On a 401 from a connector the organisation's elba connection is flagged as
    broken, its record is removed so schedulers no longer pick it up, and the
    error becomes non-retriable with the original kept as its cause.
    """

    def transform(ctx: FunctionContext, result: RunResult) -> RunResult:
        if not is_unauthorized(result.error):
            return result

        organisation_id = ctx.event.data.get("organisationId")
        region = ctx.event.data.get("region")
        extra = {
            "function": ctx.function_id,
            "organisation_id": organisation_id,
            "region": region,
        }
        if organisation_id and region:
            logger.warning("Credential rejected, removing organisation", extra=extra)
            elba = elba_factory(organisation_id, region)
            elba.connection_status.update(has_error=True)
            store.remove(organisation_id)
        else:
            logger.error("Unauthorized error on an event without organisation", extra=extra)

        error = NonRetriableError(str(result.error), cause=result.error)
        return replace(result, outcome=Outcome.TERMINAL, error=error, retry_after=None)

    return transform


def _parse_retry_after(value: str) -> Optional[float]:
    value = value.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return max(seconds, 0.0) if math.isfinite(seconds) else None
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def rate_limit_middleware(ctx: FunctionContext, result: RunResult) -> RunResult:
    """Turn a 429 carrying Retry-After into a delayed retry."""
    error = result.error
    if not isinstance(error, ConnectorApiError) or error.status_code != 429:
        return result
    if error.response is None:
        return result

    retry_after = _parse_retry_after(error.response.headers.get("Retry-After", ""))
    if retry_after is None:
        return result

    logger.info(
        "Rate limited, retrying in %.1fs",
        retry_after,
        extra={"function": ctx.function_id},
    )
    delayed = RetryAfterError(str(error), retry_after=retry_after, cause=error)
    return replace(result, outcome=Outcome.TRANSIENT, error=delayed, retry_after=retry_after)
