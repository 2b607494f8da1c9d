"""
Delivery engine: sends anonymized results to configured HTTP targets.

Handles per-target auth headers, `${var}` body templates, loopback-host
rewriting for containerised deployments, retries, and classification of
transport failures into safe error codes.
"""

import asyncio
import base64
import errno
import logging
import re
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx
import orjson
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from .exceptions import ControlPlaneError, DeliveryError
from .models import (
    AnonymizationResult,
    AnonymizedMessage,
    ApiKeyHeaderAuth,
    BasicAuth,
    BearerTokenAuth,
    DeliveryTarget,
    NoAuth,
)
from .pii_guard import safe_preview

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}
TEMPLATE_VAR = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")
GENERIC_MESSAGE_MAX = 200
# Transport messages may embed the request URL, including userinfo
URL_IN_TEXT = re.compile(r"[A-Za-z][A-Za-z0-9+.-]*://\S+")
USERINFO_IN_TEXT = re.compile(r"[^\s/@:]+:[^\s/@]+@")


# ---------------------------------------------------------------------------
# Request construction
# ---------------------------------------------------------------------------

def auth_headers(auth) -> Dict[str, str]:
    """Headers derived from a target's auth variant."""
    if isinstance(auth, NoAuth):
        return {}
    if isinstance(auth, BearerTokenAuth):
        return {"Authorization": f"Bearer {auth.token}"}
    if isinstance(auth, ApiKeyHeaderAuth):
        return {auth.header: auth.key}
    if isinstance(auth, BasicAuth):
        encoded = base64.b64encode(f"{auth.username}:{auth.password}".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {encoded}"}
    raise TypeError(f"Unsupported auth type: {type(auth).__name__}")


def build_headers(target: DeliveryTarget) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    headers.update(target.headers)
    headers.update(auth_headers(target.auth))
    return headers


def template_variables(result: AnonymizationResult) -> Dict[str, Any]:
    """The closed set of variables a body template may reference."""
    messages = []
    for m in result.messages:
        msg = {"role": m.role.value, "content": m.content}
        if m.timestamp is not None:
            msg["timestamp"] = m.timestamp
        messages.append(msg)
    return {
        "messages": messages,
        "source_file_hash": result.source_file_hash,
        "processed_at": result.processed_at,
        "byte_size": result.byte_size,
        "metadata": result.metadata,
    }


def render_template(template: Any, variables: Dict[str, Any]) -> Any:
    """
    Walk a JSON template, replacing string leaves that are exactly `${name}`.

    Unknown names are left as the literal string. No expression evaluation.
    """
    if isinstance(template, dict):
        return {k: render_template(v, variables) for k, v in template.items()}
    if isinstance(template, list):
        return [render_template(v, variables) for v in template]
    if isinstance(template, str):
        m = TEMPLATE_VAR.match(template)
        if m and m.group(1) in variables:
            return variables[m.group(1)]
    return template


def build_body(target: DeliveryTarget, result: AnonymizationResult) -> bytes:
    if target.body_template is not None:
        payload = render_template(target.body_template, template_variables(result))
    else:
        payload = result.payload()
    return orjson.dumps(payload)


def normalize_local_url(url: str, alias: str) -> str:
    """
    Point loopback hosts at `alias`.

    Inside a container `localhost` is the container itself, not the host
    machine running the target service.
    """
    if not alias:
        return url
    parts = urlsplit(url)
    host = parts.hostname
    if host is None or host.lower() not in LOOPBACK_HOSTS:
        return url
    netloc = alias
    if parts.port is not None:
        netloc = f"{netloc}:{parts.port}"
    userinfo = parts.netloc.rpartition("@")[0]
    if userinfo:
        netloc = f"{userinfo}@{netloc}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------

def _causes(exc: BaseException):
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        yield exc
        exc = exc.__cause__ or exc.__context__


def _is_loopback(url: str) -> bool:
    host = urlsplit(url).hostname
    return bool(host) and host.lower() in LOOPBACK_HOSTS


def classify_error(exc: Exception, url: str, timeout_ms: int) -> DeliveryError:
    """Map a transport exception onto a DELIVERY_* code with a safe message."""
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return DeliveryError("DELIVERY_TIMEOUT", f"Connection timed out after {timeout_ms}ms")

    chain = list(_causes(exc))
    text = " ".join(str(e) for e in chain).lower()

    refused = any(isinstance(e, ConnectionRefusedError) for e in chain) or \
        any(getattr(e, "errno", None) == errno.ECONNREFUSED for e in chain) or \
        "connection refused" in text
    if refused:
        hint = ""
        if _is_loopback(url):
            hint = " In Docker, localhost points to the worker container itself."
        return DeliveryError("DELIVERY_CONNECTION_REFUSED", f"Connection refused by target host.{hint}")

    dns = any(isinstance(e, socket.gaierror) for e in chain) or any(
        s in text for s in (
            "name or service not known",
            "nodename nor servname",
            "temporary failure in name resolution",
            "getaddrinfo failed",
            "no address associated with hostname",
        )
    )
    if dns:
        return DeliveryError("DELIVERY_DNS_ERROR", "Could not resolve target hostname")

    reset = any(isinstance(e, ConnectionResetError) for e in chain) or \
        any(getattr(e, "errno", None) == errno.ECONNRESET for e in chain) or \
        "connection reset" in text
    if reset:
        return DeliveryError("DELIVERY_CONNECTION_RESET", "Connection reset by target host")

    text = USERINFO_IN_TEXT.sub("", URL_IN_TEXT.sub("<URL>", str(exc)))
    message = safe_preview(text or type(exc).__name__, GENERIC_MESSAGE_MAX)
    return DeliveryError("DELIVERY_ERROR", message or "Connection failed")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

@dataclass
class TargetAttempt:
    index: int
    status_code: Optional[int] = None
    error: Optional[DeliveryError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class DeliveryOutcome:
    attempts: List[TargetAttempt] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def target_count(self) -> int:
        return len(self.attempts)

    @property
    def success_count(self) -> int:
        return sum(1 for a in self.attempts if a.ok)

    @property
    def failure_count(self) -> int:
        return self.target_count - self.success_count

    @property
    def ok(self) -> bool:
        return self.failure_count == 0

    @property
    def first_error(self) -> Optional[TargetAttempt]:
        return next((a for a in self.attempts if not a.ok), None)

    @property
    def status_code(self) -> Optional[int]:
        """HTTP status of the last call that produced a response."""
        codes = [a.status_code for a in self.attempts if a.status_code is not None]
        return codes[-1] if codes else None


def _log_retry(retry_state) -> None:
    error = retry_state.outcome.exception()
    logger.warning(f"delivery_retry: attempt={retry_state.attempt_number} code={error.code}")


def _test_result() -> AnonymizationResult:
    now = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
    return AnonymizationResult(
        source_file_hash="test-source-hash",
        byte_size=128,
        processed_at=now,
        messages=[AnonymizedMessage(
            id="test-1", role="user", content="Sanitized test message",
            timestamp=now, entities_found=0,
        )],
        metadata={"test": True, "source": "local-anonymizer"},
    )


class DeliveryEngine:
    """Resolves delivery targets and sends results to them."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        control_plane=None,
        localhost_alias: str = "host.docker.internal",
        legacy_url: str = "",
        legacy_auth_header: str = "",
        legacy_timeout_ms: int = 15000,
    ):
        self.http = http
        self.control_plane = control_plane
        self.localhost_alias = localhost_alias
        self.legacy_url = legacy_url
        self.legacy_auth_header = legacy_auth_header
        self.legacy_timeout_ms = legacy_timeout_ms

    def legacy_target(self) -> Optional[DeliveryTarget]:
        if not self.legacy_url:
            return None
        headers = {}
        if self.legacy_auth_header:
            headers["Authorization"] = self.legacy_auth_header
        return DeliveryTarget(
            name="legacy",
            url=self.legacy_url,
            method="POST",
            headers=headers,
            timeout_ms=self.legacy_timeout_ms,
        )

    async def resolve_targets(self) -> List[DeliveryTarget]:
        """Enabled configured targets, else the legacy env target, else none."""
        targets: List[DeliveryTarget] = []
        if self.control_plane is not None:
            try:
                targets = [t for t in await self.control_plane.list_targets() if t.enabled]
            except ControlPlaneError as e:
                logger.warning(f"targets_fetch_failed: {e}")
        if targets:
            return targets
        legacy = self.legacy_target()
        return [legacy] if legacy else []

    def request_url(self, target: DeliveryTarget) -> str:
        """Target URL after loopback rewriting. Raises DeliveryError if it cannot be parsed."""
        try:
            return normalize_local_url(target.url, self.localhost_alias)
        except ValueError:
            raise DeliveryError("DELIVERY_ERROR", "Invalid target URL") from None

    async def _send(self, target: DeliveryTarget, body: bytes) -> httpx.Response:
        url = self.request_url(target)
        try:
            return await self.http.request(
                target.method,
                url,
                headers=build_headers(target),
                content=None if target.method == "GET" else body,
                timeout=target.timeout_ms / 1000,
            )
        except httpx.InvalidURL:
            raise DeliveryError("DELIVERY_ERROR", "Invalid target URL") from None
        except (httpx.HTTPError, OSError, asyncio.TimeoutError) as e:
            raise classify_error(e, url, target.timeout_ms) from e

    async def _attempt(self, target: DeliveryTarget, body: bytes) -> int:
        response = await self._send(target, body)
        if response.is_success:
            return response.status_code
        preview = safe_preview(response.text)
        message = f"Target responded with HTTP {response.status_code}"
        if preview:
            message = f"{message}: {preview}"
        raise DeliveryError("DELIVERY_ERROR", message, status_code=response.status_code)

    async def deliver(self, target: DeliveryTarget, result: AnonymizationResult) -> int:
        """
        Send `result` to one target, retrying up to `target.retries` times.

        Returns:
            HTTP status code of the successful response

        Raises:
            DeliveryError: classified failure from the final attempt
        """
        body = build_body(target, result)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(target.retries + 1),
            wait=wait_fixed(target.backoff_ms / 1000),
            retry=retry_if_exception_type(DeliveryError),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                status = await self._attempt(target, body)
        return status

    async def deliver_all(self, targets: List[DeliveryTarget], result: AnonymizationResult) -> DeliveryOutcome:
        """
        Deliver to every target in order, sequentially.

        A failing target does not stop later targets; the outcome records
        per-target status so the caller can decide on the run status.
        """
        outcome = DeliveryOutcome()
        started = time.monotonic()
        for index, target in enumerate(targets):
            attempt = TargetAttempt(index=index)
            try:
                attempt.status_code = await self.deliver(target, result)
            except DeliveryError as e:
                attempt.error = e
                attempt.status_code = e.status_code
                logger.warning(f"delivery_target_failed: index={index} code={e.code}")
            outcome.attempts.append(attempt)
        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        return outcome

    async def test_target(self, target: DeliveryTarget) -> Dict[str, Any]:
        """Send a synthetic PII-free result through the normal request path."""
        request_url = self.request_url(target)
        response = await self._send(target, build_body(target, _test_result()))
        preview = None
        if not response.is_success:
            preview = safe_preview(response.text) or None
        return {
            "statusCode": response.status_code,
            "ok": response.is_success,
            "statusText": response.reason_phrase,
            "responsePreview": preview,
            "requestUrl": request_url,
        }
