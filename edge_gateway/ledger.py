"""Quota ledger client.

Each caller identity owns a document in an external Firestore collection
holding ``remainingUnits``, ``lastUseTimestamp`` and ``totalUnitsUsed``.
check_and_deduct() reads the document and, if a unit is left, writes back
the decremented balance.

The read and the write are two separate requests with no precondition, so
two concurrent calls for the same identity can both observe the same
balance and both write ``balance - 1``. One unit is then spent twice. The
ledger is a metering side effect, not an accounting source of truth, and
that window is accepted.

Every failure (credentials, transport, unexpected payloads) is reported as
``ok=False``: a request that cannot be charged is never admitted.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from edge_gateway.config import LedgerConfig
from edge_gateway.signer import CredentialError, ServiceTokenProvider

logger = logging.getLogger("gateway")

REMAINING_FIELD = "remainingUnits"
LAST_USE_FIELD = "lastUseTimestamp"
TOTAL_USED_FIELD = "totalUnitsUsed"


class LedgerError(Exception):
    """Raised internally when the ledger store cannot be read or written."""


@dataclass
class QuotaCheck:
    """Outcome of a check-and-deduct call."""

    ok: bool
    remaining: Optional[int] = None
    reason: Optional[str] = None


def _int_value(fields: Dict[str, Any], name: str) -> Optional[int]:
    """Read an integer from a Firestore typed-value map."""
    value = fields.get(name)
    if value is None:
        return None
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        number = float(value["doubleValue"])
        if not math.isfinite(number):
            raise LedgerError("field {} is not finite".format(name))
        return int(number)
    raise LedgerError("field {} is not numeric".format(name))


class QuotaLedgerClient:
    """Reads and decrements per-identity quota balances."""

    def __init__(
        self,
        config: LedgerConfig,
        client: httpx.AsyncClient,
        tokens: ServiceTokenProvider,
    ) -> None:
        self._config = config
        self._client = client
        self._tokens = tokens

    def document_url(self, identity: str) -> str:
        """Return the REST URL of the identity's quota document."""
        if not self._config.project_id:
            raise LedgerError("no ledger project configured")
        return "{}/projects/{}/databases/(default)/documents/{}/{}".format(
            self._config.base_url.rstrip("/"),
            self._config.project_id,
            self._config.collection,
            quote(identity, safe=""),
        )

    async def _send(
        self, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        """Send an authenticated request, refreshing the token once on 401/403."""
        token = await self._tokens.get_token()
        resp = await self._client.request(
            method, url, headers={"Authorization": "Bearer {}".format(token)}, **kwargs
        )
        if resp.status_code in (401, 403):
            logger.warning(
                "Ledger rejected access token (HTTP %s); refreshing", resp.status_code
            )
            token = await self._tokens.get_token(force_refresh=True)
            resp = await self._client.request(
                method,
                url,
                headers={"Authorization": "Bearer {}".format(token)},
                **kwargs
            )
        return resp

    async def fetch(self, identity: str) -> Dict[str, Any]:
        """Return the typed-value field map of the identity's document.

        Raises:
            LedgerError: If the document is missing or the store fails.
            CredentialError: If no access token can be obtained.
        """
        resp = await self._send("GET", self.document_url(identity))
        if resp.status_code == 404:
            raise LedgerError("no quota record")
        if resp.status_code != 200:
            raise LedgerError("ledger read returned HTTP {}".format(resp.status_code))
        try:
            return resp.json().get("fields", {})
        except (ValueError, AttributeError) as exc:
            raise LedgerError("ledger read returned an unreadable body") from exc

    async def write(
        self, identity: str, remaining: int, total_used: int, used_at: datetime
    ) -> None:
        """Overwrite the three quota fields of the identity's document.

        Raises:
            LedgerError: If the store rejects the write.
            CredentialError: If no access token can be obtained.
        """
        body = {
            "fields": {
                REMAINING_FIELD: {"integerValue": str(remaining)},
                LAST_USE_FIELD: {
                    "timestampValue": used_at.isoformat().replace("+00:00", "Z")
                },
                TOTAL_USED_FIELD: {"integerValue": str(total_used)},
            }
        }
        params = [
            ("updateMask.fieldPaths", name)
            for name in (REMAINING_FIELD, LAST_USE_FIELD, TOTAL_USED_FIELD)
        ]
        resp = await self._send(
            "PATCH", self.document_url(identity), params=params, json=body
        )
        if resp.status_code != 200:
            raise LedgerError("ledger write returned HTTP {}".format(resp.status_code))

    async def check_and_deduct(self, identity: str) -> QuotaCheck:
        """Spend one unit of the identity's quota if any is left.

        Args:
            identity: The caller identity owning the quota document.

        Returns:
            QuotaCheck with ok=True only if a unit was observed and the
            decrement was written.
        """
        try:
            fields = await self.fetch(identity)
            remaining = _int_value(fields, REMAINING_FIELD)
            total_used = _int_value(fields, TOTAL_USED_FIELD) or 0
        except (
            LedgerError,
            CredentialError,
            httpx.HTTPError,
            ValueError,
            TypeError,
            AttributeError,
            OverflowError,
        ) as exc:
            logger.warning("Quota read failed for %s: %s", identity, exc)
            return QuotaCheck(ok=False, reason="unavailable")

        if remaining is None or remaining <= 0:
            return QuotaCheck(ok=False, remaining=remaining or 0, reason="exhausted")

        try:
            await self.write(
                identity,
                remaining=remaining - 1,
                total_used=total_used + 1,
                used_at=datetime.now(timezone.utc),
            )
        except (LedgerError, CredentialError, httpx.HTTPError) as exc:
            logger.warning("Quota write failed for %s: %s", identity, exc)
            return QuotaCheck(ok=False, remaining=remaining, reason="unavailable")

        return QuotaCheck(ok=True, remaining=remaining - 1)
