"""FastAPI application for the edge chat gateway.

A single handler (mounted at ``/`` and ``/v1/chat``) that authenticates the
caller, charges quota, applies the per-identity rate limit, and forwards the
request to the completion API.

Request flow:
1. CORS preflight and method check
2. Shared-secret check (header only)
3. Body parsing and validation (no side effects)
4. Quota charge (quota mode, identified callers only)
5. Rate limit (identified callers only)
6. Forward upstream and pass the response through
"""

import math
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

import httpx
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import ValidationError

from edge_gateway.auth import AccessController
from edge_gateway.config import AuthMode, GatewayConfig, load_config
from edge_gateway.errors import GatewayError, InfrastructureError, InvalidRequest
from edge_gateway.forwarder import Forwarder
from edge_gateway.ledger import QuotaLedgerClient
from edge_gateway.limiter import RateLimiter, RateLimitExceeded, WindowStore
from edge_gateway.models import ChatRequest, ErrorResponse
from edge_gateway.signer import ServiceTokenProvider
from edge_gateway.telemetry import log_request, logger, setup_logging

HANDLED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Max-Age": "86400",
}


@dataclass
class Gateway:
    """The components behind the handler, built once per app."""

    config: GatewayConfig
    access: AccessController
    limiter: RateLimiter
    forwarder: Forwarder
    http_client: httpx.AsyncClient
    owns_client: bool = False

    async def aclose(self) -> None:
        if self.owns_client:
            await self.http_client.aclose()


def build_gateway(
    config: GatewayConfig,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    window_store: Optional[WindowStore] = None,
) -> Gateway:
    """Wire up the gateway components from a configuration.

    Args:
        config: The loaded gateway configuration.
        http_client: Shared client for upstream, ledger and token calls.
            One is created (and owned) when omitted.
        window_store: Rate-limit window store. Defaults to in-memory.

    Returns:
        A ready-to-use Gateway.
    """
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=config.upstream.timeout)

    ledger = None
    if config.auth.mode == AuthMode.QUOTA:
        if not config.ledger.project_id:
            logger.warning(
                "Quota mode without LEDGER_PROJECT_ID; identified callers are denied"
            )
        tokens = ServiceTokenProvider(config.ledger, client)
        ledger = QuotaLedgerClient(config.ledger, client, tokens)
    elif not config.auth.shared_secret:
        logger.warning(
            "Shared-secret mode without GATEWAY_SHARED_SECRET; all requests will fail"
        )

    if not config.upstream.api_key:
        logger.warning("No upstream API key configured; forwarding will fail")

    return Gateway(
        config=config,
        access=AccessController(config.auth, ledger),
        limiter=RateLimiter(
            max_requests=config.rate_limit.max_requests,
            window_seconds=config.rate_limit.window_seconds,
            store=window_store,
        ),
        forwarder=Forwarder(config.upstream, client),
        http_client=client,
        owns_client=owns_client,
    )


def get_gateway(application: FastAPI) -> Gateway:
    """Return the app's gateway components (lazy-init from config)."""
    gateway: Optional[Gateway] = application.state.gateway
    if gateway is None:
        config = application.state.config
        if config is None:
            config = load_config()
            application.state.config = config
        setup_logging(config.log_file)
        gateway = build_gateway(
            config,
            http_client=application.state.http_client,
            window_store=application.state.window_store,
        )
        application.state.gateway = gateway
    return gateway


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Build the gateway on startup and release its HTTP client on shutdown."""
    gateway = get_gateway(application)
    yield
    await gateway.aclose()
    application.state.gateway = None


def _cors_headers(origin: str, request_id: str) -> Dict[str, str]:
    return {"Access-Control-Allow-Origin": origin, "X-Request-ID": request_id}


def _error_response(
    status: int,
    error: str,
    detail: Optional[str],
    headers: Dict[str, str],
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body = ErrorResponse(error=error, detail=detail)
    return JSONResponse(
        status_code=status, content=body.model_dump(exclude_none=True), headers=headers
    )


async def _parse_request(request: Request) -> ChatRequest:
    """Read and validate the JSON body.

    Raises:
        InvalidRequest: If the body is not JSON or fails validation.
    """
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequest("Request body is not valid JSON.")

    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object.")

    try:
        return ChatRequest.model_validate(body)
    except ValidationError as exc:
        problems = "; ".join(
            "{}: {}".format(".".join(str(p) for p in err["loc"]) or "body", err["msg"])
            for err in exc.errors()
        )
        raise InvalidRequest(problems)


router = APIRouter()


@router.api_route("/", methods=HANDLED_METHODS, response_model=None)
@router.api_route("/v1/chat", methods=HANDLED_METHODS, response_model=None)
async def chat(request: Request) -> Response:
    """Handle a chat completion request."""
    gateway = get_gateway(request.app)
    request_id = "gw-{}".format(uuid.uuid4().hex[:12])
    headers = _cors_headers(request.headers.get("origin") or "*", request_id)

    if request.method == "OPTIONS":
        return Response(status_code=200, headers={**headers, **PREFLIGHT_HEADERS})

    if request.method != "POST":
        log_request(
            request_id=request_id,
            caller=None,
            outcome="method_not_allowed",
            status=405,
        )
        return PlainTextResponse("Method not allowed", status_code=405, headers=headers)

    chat_request: Optional[ChatRequest] = None
    identity: Optional[str] = None
    try:
        gateway.access.authenticate(request.headers.get("authorization"))
        chat_request = await _parse_request(request)
        identity = chat_request.caller_identity
        await gateway.access.charge(identity)
        await gateway.limiter.check(identity)
        payload = await gateway.forwarder.forward(chat_request, request_id)
    except GatewayError as exc:
        if isinstance(exc, RateLimitExceeded):
            headers["Retry-After"] = str(max(math.ceil(exc.retry_after), 1))
        log_request(
            request_id=request_id,
            caller=identity,
            outcome=exc.outcome,
            status=exc.status_code,
            messages=len(chat_request.messages) if chat_request else None,
            error=str(exc),
        )
        return _error_response(exc.status_code, exc.error, exc.detail, headers)
    except Exception as unhandled:
        logger.exception("Unhandled error while serving %s", request_id)
        exc = InfrastructureError()
        log_request(
            request_id=request_id,
            caller=identity,
            outcome=exc.outcome,
            status=exc.status_code,
            messages=len(chat_request.messages) if chat_request else None,
            error=repr(unhandled),
        )
        return _error_response(exc.status_code, exc.error, exc.detail, headers)

    log_request(
        request_id=request_id,
        caller=identity,
        outcome="success",
        status=200,
        messages=len(chat_request.messages),
        model=chat_request.model or gateway.config.upstream.default_model,
    )
    return JSONResponse(status_code=200, content=payload, headers=headers)


def create_app(
    config: Optional[GatewayConfig] = None,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    window_store: Optional[WindowStore] = None,
) -> FastAPI:
    """Create the gateway application.

    Args:
        config: Gateway configuration. Loaded from the environment on first
            use when omitted.
        http_client: Shared outbound HTTP client (tests inject a mock one).
        window_store: Rate-limit window store. Defaults to in-memory.
    """
    application = FastAPI(title="Edge Chat Gateway", version="0.1.0", lifespan=lifespan)
    application.state.config = config
    application.state.http_client = http_client
    application.state.window_store = window_store
    application.state.gateway = None
    application.include_router(router)
    return application


app = create_app()
