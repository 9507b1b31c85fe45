"""Shared test fixtures for the edge chat gateway tests.

The ledger store, the token endpoint and the completion API are all faked
behind one httpx.MockTransport, routed by host.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import parse_qsl, unquote

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from edge_gateway.config import (
    AuthConfig,
    AuthMode,
    GatewayConfig,
    LedgerConfig,
    RateLimitConfig,
    UpstreamConfig,
)

SHARED_SECRET = "s3cret-shared-token"
UPSTREAM_KEY = "sk-upstream-test"
TOKEN_HOST = "oauth2.googleapis.com"
LEDGER_HOST = "firestore.googleapis.com"

COMPLETION = {
    "id": "chatcmpl-123",
    "object": "chat.completion",
    "model": "gpt-3.5-turbo",
    "choices": [
        {
            "index": 0,
            "message": {"role": "assistant", "content": "Hello there!"},
            "finish_reason": "stop",
        }
    ],
    "usage": {"prompt_tokens": 5, "completion_tokens": 3, "total_tokens": 8},
}


class FakeLedger:
    """In-memory stand-in for the Firestore documents and the token endpoint."""

    def __init__(self) -> None:
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.token_requests: List[Dict[str, str]] = []
        self.issued = 0
        self.revoked: Set[str] = set()
        self.reject_all_tokens = False
        self.token_status = 200
        self.read_status: Optional[int] = None
        self.write_status: Optional[int] = None
        self.read_delay = 0.0
        self.reads = 0
        self.writes = 0
        self.write_masks: List[List[str]] = []

    def add(self, identity: str, remaining: int, total_used: int = 0) -> None:
        self.documents[identity] = {
            "remainingUnits": remaining,
            "totalUnitsUsed": total_used,
            "lastUseTimestamp": None,
        }

    async def handle_token(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode("utf-8")))
        self.token_requests.append(form)
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_grant"})
        self.issued += 1
        return httpx.Response(
            200,
            json={
                "access_token": "ledger-token-{}".format(self.issued),
                "expires_in": 3600,
                "token_type": "Bearer",
            },
        )

    async def handle_document(self, request: httpx.Request) -> httpx.Response:
        token = request.headers.get("authorization", "")[len("Bearer "):]
        if (
            self.reject_all_tokens
            or not token.startswith("ledger-token-")
            or token in self.revoked
        ):
            return httpx.Response(401, json={"error": {"code": 401}})

        raw_path = request.url.raw_path.decode("ascii").split("?")[0]
        identity = unquote(raw_path.rsplit("/", 1)[1])

        if request.method == "GET":
            self.reads += 1
            if self.read_status is not None:
                return httpx.Response(self.read_status, json={"error": {}})
            doc = self.documents.get(identity)
            if doc is None:
                return httpx.Response(404, json={"error": {"code": 404}})
            snapshot = dict(doc)
            if self.read_delay:
                await asyncio.sleep(self.read_delay)
            fields: Dict[str, Any] = {}
            if snapshot["remainingUnits"] is not None:
                fields["remainingUnits"] = {
                    "integerValue": str(snapshot["remainingUnits"])
                }
            fields["totalUnitsUsed"] = {"integerValue": str(snapshot["totalUnitsUsed"])}
            return httpx.Response(200, json={"name": identity, "fields": fields})

        if request.method == "PATCH":
            self.writes += 1
            if self.write_status is not None:
                return httpx.Response(self.write_status, json={"error": {}})
            self.write_masks.append(
                request.url.params.get_list("updateMask.fieldPaths")
            )
            fields = json.loads(request.content)["fields"]
            doc = self.documents.setdefault(identity, {})
            doc["remainingUnits"] = int(fields["remainingUnits"]["integerValue"])
            doc["totalUnitsUsed"] = int(fields["totalUnitsUsed"]["integerValue"])
            doc["lastUseTimestamp"] = fields["lastUseTimestamp"]["timestampValue"]
            return httpx.Response(200, json={"name": identity, "fields": fields})

        return httpx.Response(405)


class FakeUpstream:
    """Records forwarded requests and answers with a canned completion."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.status = 200
        self.body: Any = COMPLETION
        self.raw: Optional[bytes] = None
        self.fail_transport = False

    @property
    def payloads(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_transport:
            raise httpx.ConnectError("connection refused by 10.0.0.7", request=request)
        if self.raw is not None:
            return httpx.Response(self.status, content=self.raw)
        return httpx.Response(self.status, json=self.body)


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    """A throwaway RSA key shared by every test in the session."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_pem(rsa_key: rsa.RSAPrivateKey) -> str:
    """The session RSA key as PKCS#8 PEM text."""
    return rsa_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture()
def fake_ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture()
def fake_upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture()
def http_client(
    fake_ledger: FakeLedger, fake_upstream: FakeUpstream
) -> httpx.AsyncClient:
    """An AsyncClient whose requests never leave the process."""

    async def route(request: httpx.Request) -> httpx.Response:
        if request.url.host == TOKEN_HOST:
            return await fake_ledger.handle_token(request)
        if request.url.host == LEDGER_HOST:
            return await fake_ledger.handle_document(request)
        return await fake_upstream.handle(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(route))


@pytest.fixture()
def make_config(rsa_pem: str) -> Callable[..., GatewayConfig]:
    """Factory for test configurations."""

    def _make(
        mode: AuthMode = AuthMode.SHARED_SECRET,
        shared_secret: Optional[str] = SHARED_SECRET,
        api_key: Optional[str] = UPSTREAM_KEY,
        max_requests: int = 3,
        window_seconds: float = 60.0,
        temperature: Optional[float] = None,
        project_id: Optional[str] = "test-project",
        private_key: Optional[str] = None,
    ) -> GatewayConfig:
        return GatewayConfig(
            auth=AuthConfig(mode=mode, shared_secret=shared_secret),
            rate_limit=RateLimitConfig(
                window_seconds=window_seconds, max_requests=max_requests
            ),
            upstream=UpstreamConfig(api_key=api_key, temperature=temperature),
            ledger=LedgerConfig(
                project_id=project_id,
                client_email="gateway@test-project.iam.gserviceaccount.com",
                private_key=private_key if private_key is not None else rsa_pem,
                private_key_id="key-1",
            ),
        )

    return _make
