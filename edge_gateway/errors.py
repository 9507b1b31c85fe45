"""Error taxonomy for the edge chat gateway.

Every failure the gateway reports to a caller is a GatewayError carrying an
HTTP status, a short error label, and an optional detail string. The three
families decide what the caller is allowed to see:

- CallerError: bad input, missing auth, quota exhausted, rate limited.
- UpstreamError: the completion API answered with a non-success status.
- InfrastructureError: signing, ledger or transport failures. The caller
  only ever sees a generic message; operators get the detail in the logs.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for errors that map onto a gateway response."""

    outcome = "error"

    def __init__(
        self, status_code: int, error: str, detail: Optional[str] = None
    ) -> None:
        self.status_code = status_code
        self.error = error
        self.detail = detail
        super().__init__(detail or error)


class CallerError(GatewayError):
    """The request was rejected because of something the caller did."""

    outcome = "rejected"


class UpstreamError(GatewayError):
    """The completion API returned a non-success response."""

    outcome = "upstream_error"

    def __init__(self, status_code: int, detail: Optional[str] = None) -> None:
        super().__init__(status_code, "Upstream request failed", detail)


class InfrastructureError(GatewayError):
    """A gateway-side dependency failed; never exposes internal detail."""

    outcome = "infrastructure_error"

    def __init__(self, error: str = "Service temporarily unavailable") -> None:
        super().__init__(500, error)


class InvalidRequest(CallerError):
    """The request body is malformed or fails validation."""

    outcome = "invalid_request"

    def __init__(self, detail: str) -> None:
        super().__init__(400, "Invalid request", detail)
