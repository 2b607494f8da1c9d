"""Async client for the control-plane REST API (config, targets, runs, logs)."""

import logging
from typing import Any, Dict, List, Optional

import httpx

from .exceptions import ControlPlaneError
from .models import AuditEvent, DeliveryTarget, RunCreate, RunUpdate

logger = logging.getLogger(__name__)


def _unwrap(body: Any) -> Any:
    """Accept both `{ok, data}` envelopes and bare bodies."""
    if isinstance(body, dict) and "data" in body and "ok" in body:
        if body.get("ok") is False:
            error = body.get("error") or {}
            raise ControlPlaneError(f"Control plane error: {error.get('code', 'UNKNOWN')}")
        return body["data"]
    return body


class ControlPlaneClient:
    """
    Thin wrapper over the control-plane endpoints under `{api_url}/api`.

    Every method raises ControlPlaneError on transport failure or non-2xx
    status; callers decide whether that is fatal.
    """

    def __init__(self, http: httpx.AsyncClient, api_url: str, timeout_ms: int = 10000):
        self.http = http
        self.base_url = f"{api_url.rstrip('/')}/api"
        self.timeout = timeout_ms / 1000

    async def _request(self, method: str, endpoint: str, json: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            response = await self.http.request(method, url, json=json, timeout=self.timeout)
        except httpx.TimeoutException:
            raise ControlPlaneError(f"{method} /{endpoint.lstrip('/')} timed out")
        except httpx.TransportError as e:
            raise ControlPlaneError(f"{method} /{endpoint.lstrip('/')} failed: {type(e).__name__}")

        if not response.is_success:
            raise ControlPlaneError(f"{method} /{endpoint.lstrip('/')} returned HTTP {response.status_code}")
        if not response.content:
            return None
        try:
            return _unwrap(response.json())
        except ValueError:
            raise ControlPlaneError(f"{method} /{endpoint.lstrip('/')} returned invalid JSON")

    async def get_config(self) -> Dict[str, Any]:
        return await self._request("GET", "/config")

    async def list_targets(self) -> List[DeliveryTarget]:
        data = await self._request("GET", "/targets")
        return [DeliveryTarget.model_validate(t) for t in (data or [])]

    async def create_run(self, run: RunCreate) -> str:
        data = await self._request("POST", "/runs", json=run.model_dump(mode="json", by_alias=True))
        if not isinstance(data, dict) or not data.get("id"):
            raise ControlPlaneError("POST /runs returned no run id")
        return str(data["id"])

    async def update_run(self, run_id: str, update: RunUpdate) -> None:
        body = update.model_dump(mode="json", by_alias=True, exclude_none=True)
        await self._request("PATCH", f"/runs/{run_id}", json=body)

    async def append_log(self, event: AuditEvent) -> None:
        body = event.model_dump(mode="json", by_alias=True, exclude_none=True)
        await self._request("POST", "/logs", json=body)
