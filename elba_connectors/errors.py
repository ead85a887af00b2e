"""Error taxonomy shared by connectors, the elba client and the dispatcher.

Terminal errors derive from NonRetriableError and end a sync for good.
Everything else is treated as transient and retried by the dispatcher.
"""

from __future__ import annotations

from typing import Optional

import requests


class SyncError(Exception):
    """Base class for every error raised by the sync pipeline."""


class NonRetriableError(SyncError):
    """The dispatcher must not retry a function that raised this."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    @property
    def cause(self) -> Optional[BaseException]:
        return self.__cause__


class OrganisationNotFoundError(NonRetriableError):
    def __init__(self, organisation_id: str) -> None:
        super().__init__(f"Could not retrieve organisation with id={organisation_id}")
        self.organisation_id = organisation_id


class MalformedPageError(NonRetriableError):
    """The remote API answered with a payload we cannot read users from."""


class ConnectorApiError(SyncError):
    """A connector's HTTP call returned a non-2xx response."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[requests.Response] = None,
    ) -> None:
        super().__init__(message)
        if status_code is None and response is not None:
            status_code = response.status_code
        self.status_code = status_code
        self.response = response

    @classmethod
    def from_response(cls, connector: str, response: requests.Response) -> "ConnectorApiError":
        return cls(
            f"{connector} API responded with status {response.status_code}",
            response=response,
        )


class RetryAfterError(SyncError):
    """Transient failure that should only be retried after a delay."""

    def __init__(self, message: str, retry_after: float, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        if cause is not None:
            self.__cause__ = cause


class ElbaError(SyncError):
    """The elba API rejected a request."""

    def __init__(self, message: str, response: Optional[requests.Response] = None) -> None:
        super().__init__(message)
        self.response = response


def is_unauthorized(error: Optional[BaseException]) -> bool:
    """True when the error is a connector rejecting the organisation's credential."""
    return isinstance(error, ConnectorApiError) and error.status_code == 401


def is_retriable(error: BaseException) -> bool:
    return not isinstance(error, NonRetriableError)
