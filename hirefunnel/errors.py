"""
Error taxonomy for the candidate funnel.

Every error raised deliberately by the engine derives from
:class:`FunnelError` and carries the HTTP status code the API layer
reports for it.  Per-candidate failures are caught close to where they
happen and recorded on the candidate; only batch-level failures and
caller mistakes surface as exceptions.
"""

from __future__ import annotations

from typing import Optional


class FunnelError(Exception):
    """Base class for all funnel errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(FunnelError):
    """Caller supplied malformed weights or is missing required fields."""

    status_code = 400


class NotFoundError(FunnelError):
    """A candidate, batch or job profile id does not exist."""

    status_code = 404


class StageOrderError(FunnelError):
    """A stage result arrived for a stage that is not the current one."""

    status_code = 409

    def __init__(self, candidate_id: str, expected: str, received: str) -> None:
        super().__init__(
            f"Candidate {candidate_id} is at stage '{expected}', cannot advance '{received}'"
        )
        self.candidate_id = candidate_id
        self.expected = expected
        self.received = received


class ExternalServiceError(FunnelError):
    """An outbound call failed.

    ``retryable`` is decided by the connection pool: server errors,
    HTTP 429, network failures and timeouts are retryable; any other
    4xx is terminal.
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        endpoint: str = "",
        status: Optional[int] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status = status
        self.retryable = retryable


class ResourceExhaustedError(FunnelError):
    """Admission was denied for longer than the caller was willing to wait."""

    status_code = 503


class ScoringError(FunnelError):
    """Unexpected internal failure while computing a score breakdown."""

    status_code = 500
