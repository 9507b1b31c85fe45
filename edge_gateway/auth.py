"""Access control for the edge chat gateway.

Two mutually exclusive modes, chosen at deployment time:

- shared_secret: the caller is a trusted service presenting
  ``Authorization: Bearer <secret>``.
- quota: end users are charged one unit per request against the quota
  ledger. Requests without a caller identity are anonymous and skip the
  ledger.

Access control never touches rate-limiter state.
"""

import hmac
import logging
from typing import Optional

from edge_gateway.config import AuthConfig, AuthMode
from edge_gateway.errors import CallerError, InfrastructureError
from edge_gateway.ledger import QuotaLedgerClient

logger = logging.getLogger("gateway")


class AuthenticationError(CallerError):
    """Raised when the shared secret is missing or wrong."""

    outcome = "unauthorized"

    def __init__(self, detail: str) -> None:
        super().__init__(401, "Unauthorized access", detail)


class InsufficientQuota(CallerError):
    """Raised when the ledger cannot charge the caller."""

    outcome = "quota_denied"

    def __init__(self, identity: str) -> None:
        super().__init__(402, "Insufficient tokens")
        self.identity = identity


class Misconfigured(InfrastructureError):
    """Raised when the gateway itself is missing required configuration."""

    outcome = "misconfigured"

    def __init__(self, reason: str) -> None:
        super().__init__("Server misconfigured")
        self.reason = reason

    def __str__(self) -> str:
        return "Server misconfigured: {}".format(self.reason)


def bearer_token(header_value: Optional[str]) -> Optional[str]:
    """Extract the credential from an ``Authorization: Bearer`` header."""
    if not header_value:
        return None
    scheme, _, credential = header_value.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credential.strip() or None


def verify_shared_secret(header_value: Optional[str], secret: Optional[str]) -> None:
    """Check a bearer credential against the configured shared secret.

    Args:
        header_value: The raw Authorization header (may be None).
        secret: The configured secret (None if not provisioned).

    Raises:
        Misconfigured: If no secret is configured on the server.
        AuthenticationError: If the credential is missing or does not match.
    """
    if not secret:
        raise Misconfigured("shared secret is not configured")

    credential = bearer_token(header_value)
    if credential is None:
        raise AuthenticationError("Missing bearer credential.")

    if not hmac.compare_digest(credential.encode("utf-8"), secret.encode("utf-8")):
        raise AuthenticationError("Invalid bearer credential.")


class AccessController:
    """Applies the configured authorization mode to each request."""

    def __init__(
        self, config: AuthConfig, ledger: Optional[QuotaLedgerClient] = None
    ) -> None:
        self.config = config
        self._ledger = ledger

    @property
    def mode(self) -> AuthMode:
        return self.config.mode

    def authenticate(self, authorization: Optional[str]) -> None:
        """Header-only checks; runs before the request body is read."""
        if self.mode == AuthMode.SHARED_SECRET:
            verify_shared_secret(authorization, self.config.shared_secret)

    async def charge(self, identity: Optional[str]) -> None:
        """Spend one quota unit for identity when running in quota mode.

        Raises:
            InsufficientQuota: If the ledger reports no balance or is unreachable.
        """
        if self.mode != AuthMode.QUOTA or not identity:
            return
        if self._ledger is None:
            logger.error("Quota mode is enabled but no ledger client is configured")
            raise InsufficientQuota(identity)

        result = await self._ledger.check_and_deduct(identity)
        if not result.ok:
            logger.info(
                "Quota denied for %s (%s, remaining=%s)",
                identity,
                result.reason,
                result.remaining,
            )
            raise InsufficientQuota(identity)

    async def admit(
        self, authorization: Optional[str], identity: Optional[str]
    ) -> None:
        """Run both access checks for one request.

        Args:
            authorization: The raw Authorization header.
            identity: The caller identity from the request body, if any.

        Raises:
            AuthenticationError: Shared-secret mode, bad or missing credential.
            Misconfigured: Shared-secret mode, no secret configured.
            InsufficientQuota: Quota mode, the caller could not be charged.
        """
        self.authenticate(authorization)
        await self.charge(identity)
