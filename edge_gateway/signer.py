"""Service credentials for the quota ledger.

Builds a self-signed RS256 assertion for the configured service account and
exchanges it at the token endpoint for a short-lived bearer token. The
signing step runs locally; only the exchange touches the network.
"""

import base64
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from edge_gateway.config import LedgerConfig
from edge_gateway.errors import InfrastructureError

logger = logging.getLogger("gateway")

ASSERTION_LIFETIME = 3600
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"

# Refresh a cached token this many seconds before it expires.
_REFRESH_MARGIN = 60


class CredentialError(InfrastructureError):
    """Raised when a ledger access token cannot be obtained."""

    outcome = "credential_error"

    def __init__(self, reason: str) -> None:
        super().__init__()
        self.reason = reason

    def __str__(self) -> str:
        return "Credential acquisition failed: {}".format(self.reason)


def b64url_encode(data: bytes) -> str:
    """URL-safe base64 with the trailing padding stripped."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(segment: str) -> bytes:
    """Inverse of b64url_encode."""
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def encode_segment(obj: Dict[str, Any]) -> str:
    """Serialize a header or claim set to a compact JSON segment."""
    return b64url_encode(json.dumps(obj, separators=(",", ":")).encode("utf-8"))


class AssertionSigner(ABC):
    """Turns a claim set into a signed three-part assertion."""

    @abstractmethod
    def sign(self, claims: Dict[str, Any]) -> str:
        """Return ``header.claims.signature``, each segment base64url."""


class RS256Signer(AssertionSigner):
    """Signs assertions with an RSA private key (SHA-256, PKCS#1 v1.5)."""

    algorithm = "RS256"

    def __init__(self, private_key_pem: str, key_id: Optional[str] = None) -> None:
        self.key_id = key_id
        self._key = _load_rsa_key(private_key_pem)

    def header(self) -> Dict[str, Any]:
        header: Dict[str, Any] = {"alg": self.algorithm, "typ": "JWT"}
        if self.key_id:
            header["kid"] = self.key_id
        return header

    def sign(self, claims: Dict[str, Any]) -> str:
        signing_input = "{}.{}".format(
            encode_segment(self.header()), encode_segment(claims)
        )
        signature = self._key.sign(
            signing_input.encode("ascii"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        return "{}.{}".format(signing_input, b64url_encode(signature))


def _load_rsa_key(private_key_pem: str) -> rsa.RSAPrivateKey:
    """Load a PEM private key, accepting literal ``\\n`` escapes."""
    pem = private_key_pem.replace("\\n", "\n").strip()
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError) as exc:
        raise CredentialError("invalid private key: {}".format(exc)) from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise CredentialError("private key is not an RSA key")
    return key


def build_claims(
    issuer: str, scope: str, audience: str, issued_at: int
) -> Dict[str, Any]:
    """Claim set for a token-exchange assertion valid for one hour."""
    return {
        "iss": issuer,
        "scope": scope,
        "aud": audience,
        "iat": issued_at,
        "exp": issued_at + ASSERTION_LIFETIME,
    }


class ServiceTokenProvider:
    """Exchanges signed assertions for ledger access tokens.

    The most recent token is cached in memory until shortly before it
    expires. Nothing is persisted.
    """

    def __init__(
        self,
        config: LedgerConfig,
        client: httpx.AsyncClient,
        signer: Optional[AssertionSigner] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._client = client
        self._signer = signer
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def _get_signer(self) -> AssertionSigner:
        if self._signer is None:
            if not self._config.private_key:
                raise CredentialError("no ledger private key configured")
            self._signer = RS256Signer(
                self._config.private_key, self._config.private_key_id
            )
        return self._signer

    def build_assertion(self) -> str:
        """Sign a fresh assertion for the configured service account.

        Raises:
            CredentialError: If the key material or account is missing or invalid.
        """
        if not self._config.client_email:
            raise CredentialError("no ledger client email configured")
        signer = self._get_signer()
        claims = build_claims(
            issuer=self._config.client_email,
            scope=self._config.scope,
            audience=self._config.token_uri,
            issued_at=int(self._clock()),
        )
        return signer.sign(claims)

    async def get_token(self, force_refresh: bool = False) -> str:
        """Return a bearer token for the ledger store.

        Args:
            force_refresh: Ignore any cached token and exchange a new assertion.

        Returns:
            The access token string.

        Raises:
            CredentialError: If signing or the exchange fails.
        """
        now = self._clock()
        if not force_refresh and self._token and now < self._expires_at:
            return self._token

        assertion = self.build_assertion()
        try:
            resp = await self._client.post(
                self._config.token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            )
        except httpx.HTTPError as exc:
            raise CredentialError("token exchange failed: {}".format(exc)) from exc

        if resp.status_code != 200:
            raise CredentialError(
                "token endpoint returned HTTP {}".format(resp.status_code)
            )

        try:
            data = resp.json()
            token = data["access_token"]
        except (ValueError, KeyError, TypeError) as exc:
            raise CredentialError("token response missing access_token") from exc

        expires_in = data.get("expires_in", ASSERTION_LIFETIME)
        try:
            lifetime = float(expires_in)
        except (TypeError, ValueError):
            lifetime = float(ASSERTION_LIFETIME)

        self._token = token
        self._expires_at = now + max(lifetime - _REFRESH_MARGIN, 0.0)
        logger.info("Obtained ledger access token for %s", self._config.client_email)
        return token
