"""Optional forwarding of anonymized messages to sentiment/toxicity analysis."""

import logging
from typing import Any, Dict, Optional

import httpx

from .config import RuntimeConfig
from .models import AnonymizationResult

logger = logging.getLogger(__name__)

SENTIMENT_PATH = "/api/v1/analysis/sentiment"
TOXICITY_PATH = "/api/v1/analysis/toxicity"


def build_analysis_payload(result: AnonymizationResult, cfg: RuntimeConfig, include_language: bool = True) -> Dict[str, Any]:
    messages = []
    for m in result.messages:
        msg = {"role": m.role.value, "content": m.content}
        if m.timestamp is not None:
            msg["timestamp"] = m.timestamp
        messages.append(msg)
    payload: Dict[str, Any] = {"messages": messages, "conversationId": result.source_file_hash}
    if include_language:
        payload["languageCode"] = cfg.analysis_service_language_code
    if cfg.analysis_service_model:
        payload["model"] = cfg.analysis_service_model
    if cfg.analysis_service_channel:
        payload["channel"] = cfg.analysis_service_channel
    if cfg.analysis_service_tags:
        payload["tags"] = cfg.analysis_service_tags
    return payload


class AnalysisForwarder:
    """Never raises: every failure is logged at warning and reported as None."""

    def __init__(self, http: httpx.AsyncClient, timeout_ms: int = 30000):
        self.http = http
        self.timeout = timeout_ms / 1000

    async def _call(self, cfg: RuntimeConfig, path: str, payload: Dict[str, Any]) -> Optional[int]:
        url = f"{cfg.analysis_service_url.rstrip('/')}{path}"
        try:
            response = await self.http.post(
                url,
                json=payload,
                headers={"X-API-Key": cfg.analysis_service_api_key},
                timeout=self.timeout,
            )
        except Exception as e:
            # Includes malformed service URLs, which httpx rejects before sending
            logger.warning(f"analysis_call_failed: path={path} error={type(e).__name__}")
            return None
        if not response.is_success:
            logger.warning(f"analysis_call_failed: path={path} status={response.status_code}")
        return response.status_code

    async def forward(self, result: AnonymizationResult, cfg: RuntimeConfig) -> Dict[str, Optional[int]]:
        """Returns HTTP status per analysis kind that was attempted."""
        statuses: Dict[str, Optional[int]] = {}
        if not cfg.analysis_enabled:
            return statuses
        if cfg.analysis_service_sentiment_enabled:
            statuses["sentiment"] = await self._call(cfg, SENTIMENT_PATH, build_analysis_payload(result, cfg))
        if cfg.analysis_service_toxicity_enabled:
            statuses["toxicity"] = await self._call(
                cfg, TOXICITY_PATH, build_analysis_payload(result, cfg, include_language=False)
            )
        return statuses
