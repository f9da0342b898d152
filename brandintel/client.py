"""Async client for the external brand-intelligence engine.

One bounded-timeout request per call, no retries. Transport failures and
5xx statuses are converted to ``ServiceUnavailable`` with a message the end
user can act on; other rejected requests and undecodable bodies become
``DataUnavailable``.
"""
from __future__ import annotations

import logging
import os
from typing import Any

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from brandintel.errors import DataUnavailable, NotFound, ServiceUnavailable
from brandintel.schemas import EngineJobAccepted, EngineJobStatus, EngineModuleStatus

log = logging.getLogger(__name__)

DEFAULT_ENGINE_URL = "http://localhost:8000/v2/brand-intelligence/wisdom-tree"
DEFAULT_TIMEOUT = 30.0

_GATEWAY_MESSAGES = {
    502: "Brand intelligence service is temporarily unavailable. Please try again in a few moments.",
    503: "Brand intelligence service is currently overloaded. Please try again later.",
    504: "Request timed out. The analysis may take longer than expected. Please try again.",
}
_CONNECT_MESSAGE = "Cannot connect to brand intelligence service. Please check if the service is running."
_TIMEOUT_MESSAGE = "Request timed out. Please try again."
_SERVER_ERROR_MESSAGE = "Brand intelligence service encountered an error. Please try again later."


def _parse(model: type[BaseModel], data: Any) -> dict:
    try:
        return model.model_validate(data).model_dump()
    except SchemaError as exc:
        raise DataUnavailable(f"Unexpected engine response: {exc.error_count()} invalid field(s)") from exc


class EngineClient:
    """Thin wrapper over ``httpx.AsyncClient`` for the engine's polling contract."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or os.environ.get("BRANDINTEL_ENGINE_URL", DEFAULT_ENGINE_URL)).rstrip("/")
        self.timeout = timeout if timeout is not None else float(
            os.environ.get("BRANDINTEL_ENGINE_TIMEOUT", DEFAULT_TIMEOUT)
        )
        self._transport = transport

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            ) as client:
                resp = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            log.warning("Engine request timed out (%s %s): %s", method, url, exc)
            raise ServiceUnavailable(_TIMEOUT_MESSAGE) from exc
        except httpx.TransportError as exc:
            log.warning("Engine unreachable (%s %s): %s", method, url, exc)
            raise ServiceUnavailable(_CONNECT_MESSAGE) from exc

        if resp.status_code in _GATEWAY_MESSAGES:
            log.warning("Engine returned %s for %s %s", resp.status_code, method, url)
            raise ServiceUnavailable(_GATEWAY_MESSAGES[resp.status_code])
        if resp.status_code == 404:
            raise NotFound(f"Engine has no record for {path}")
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            log.warning("Engine returned %s for %s %s: %s", resp.status_code, method, url, resp.text[:200])
            if resp.status_code >= 500:
                raise ServiceUnavailable(_SERVER_ERROR_MESSAGE) from exc
            raise DataUnavailable(f"Engine rejected the request ({resp.status_code})") from exc
        try:
            return resp.json()
        except ValueError as exc:
            log.warning("Engine sent a non-JSON body for %s %s", method, url)
            raise DataUnavailable("Engine response was not valid JSON") from exc

    async def analyze(self, payload: dict) -> dict:
        """``POST /analyze`` -> ``{job_id, status, message}``."""
        return _parse(EngineJobAccepted, await self._request("POST", "/analyze", json=payload))

    async def get_job(self, job_id: str, comprehensive: bool = False) -> dict:
        """``GET /jobs/{job_id}``, optionally asking for the canonical shape."""
        params = {"format": "comprehensive"} if comprehensive else None
        return _parse(EngineJobStatus, await self._request("GET", f"/jobs/{job_id}", params=params))

    async def get_module_job(self, job_id: str) -> dict:
        """``GET /modules/{job_id}`` -> ``{job_id, module_id, status, result}``."""
        return _parse(EngineModuleStatus, await self._request("GET", f"/modules/{job_id}"))

    async def analyze_module(
        self,
        url: str,
        module_id: str,
        persona_id: str | None = None,
        job_id: str | None = None,
    ) -> dict:
        payload: dict[str, Any] = {"url": url, "module_id": module_id}
        if persona_id:
            payload["persona_id"] = persona_id
        if job_id:
            payload["job_id"] = job_id
        return _parse(EngineJobAccepted, await self._request("POST", "/analyze-module", json=payload))
