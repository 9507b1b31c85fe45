"""Forwarder for the upstream chat-completion API.

Copies model, messages and max_tokens into an OpenAI-compatible request and
returns the upstream JSON unchanged. Upstream failures keep their status
code so callers can still tell a 429 from a 400; transport failures become a
generic 500.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from edge_gateway.auth import Misconfigured
from edge_gateway.config import UpstreamConfig
from edge_gateway.errors import InfrastructureError, UpstreamError
from edge_gateway.models import ChatRequest

logger = logging.getLogger("gateway")


def extract_error_message(resp: httpx.Response) -> str:
    """Best-effort human-readable message from an upstream error body."""
    try:
        data = resp.json()
    except ValueError:
        data = None

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if data.get("message"):
            return str(data["message"])

    text = resp.text.strip()
    if text and data is None:
        return text[:500]
    return resp.reason_phrase or "HTTP {}".format(resp.status_code)


class Forwarder:
    """Sends admitted requests to the completion API."""

    def __init__(self, config: UpstreamConfig, client: httpx.AsyncClient) -> None:
        self.config = config
        self._client = client

    def build_payload(self, request: ChatRequest) -> Dict[str, Any]:
        """Build the upstream JSON body, filling in configured defaults."""
        payload: Dict[str, Any] = {
            "model": request.model or self.config.default_model,
            "messages": request.upstream_messages(),
            "max_tokens": request.max_tokens or self.config.default_max_tokens,
        }
        if self.config.temperature is not None:
            payload["temperature"] = self.config.temperature
        return payload

    async def forward(
        self, request: ChatRequest, request_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Forward a request upstream and return the response JSON.

        Args:
            request: The validated, admitted gateway request.
            request_id: Gateway request ID, used for log correlation.

        Returns:
            The upstream response body, untouched.

        Raises:
            Misconfigured: If no upstream API key is configured.
            UpstreamError: If the upstream returns a non-2xx response.
            InfrastructureError: If the upstream cannot be reached or answers
                with an unreadable body.
        """
        if not self.config.api_key:
            raise Misconfigured("upstream API key is not configured")

        headers = {
            "Authorization": "Bearer {}".format(self.config.api_key),
            "Content-Type": "application/json",
        }
        payload = self.build_payload(request)

        try:
            resp = await self._client.post(
                self.config.url,
                json=payload,
                headers=headers,
                timeout=self.config.timeout,
            )
        except httpx.HTTPError as exc:
            logger.error("Upstream transport failure (%s): %r", request_id, exc)
            raise InfrastructureError() from exc

        if not resp.is_success:
            message = extract_error_message(resp)
            logger.warning(
                "Upstream returned HTTP %s (%s): %s",
                resp.status_code,
                request_id,
                message,
            )
            raise UpstreamError(resp.status_code, message)

        try:
            return resp.json()
        except ValueError as exc:
            logger.error("Upstream returned a non-JSON body (%s)", request_id)
            raise InfrastructureError() from exc
