"""Async client for the Presidio analyzer and anonymizer services."""

import logging
from typing import Dict, List, Optional

import httpx

from .exceptions import AnalyzerError, AnonymizerError, PresidioConnectionError, PresidioError
from .models import Finding

logger = logging.getLogger(__name__)

OperatorsMap = Dict[str, Dict[str, str]]


def build_operators(operator: str) -> OperatorsMap:
    """
    Build the Presidio `anonymizers` map for a configured operator.

    A single DEFAULT entry applies to every detected entity type.
    """
    if operator == "replace":
        return {"DEFAULT": {"type": "replace"}}
    if operator == "redact":
        return {"DEFAULT": {"type": "redact"}}
    if operator == "hash":
        return {"DEFAULT": {"type": "hash", "hash_type": "sha256"}}
    raise ValueError(f"Unknown anonymization operator: {operator}")


class PresidioClient:
    """
    Presidio REST client.

    Usage:
        client = PresidioClient(http, "http://presidio-analyzer:5001",
                                "http://presidio-anonymizer:5002")
        findings = await client.analyze("Call me at 555-123-4567", "en")
        if findings:
            text = await client.anonymize(text, findings, build_operators("replace"))
    """

    def __init__(self, http: httpx.AsyncClient, analyzer_url: str, anonymizer_url: str, timeout_ms: int = 30000):
        self.http = http
        self.analyzer_url = analyzer_url.rstrip("/")
        self.anonymizer_url = anonymizer_url.rstrip("/")
        self.timeout = timeout_ms / 1000

    async def _post(self, url: str, body: dict) -> httpx.Response:
        try:
            return await self.http.post(url, json=body, timeout=self.timeout)
        except httpx.TimeoutException:
            logger.warning(f"presidio_timeout: url={url}")
            raise PresidioConnectionError(f"Request to {url} timed out after {self.timeout}s")
        except httpx.TransportError as e:
            logger.warning(f"presidio_unreachable: url={url} error={type(e).__name__}")
            raise PresidioConnectionError(f"Failed to connect to Presidio: {type(e).__name__}")

    async def analyze(
        self,
        text: str,
        language: str,
        entities: Optional[List[str]] = None,
        score_threshold: Optional[float] = None,
    ) -> List[Finding]:
        """
        Detect PII entities in text.

        Args:
            text: Plain-text content to analyse
            language: Language code, e.g. "en"
            entities: Entity types to detect (default: all)
            score_threshold: Minimum confidence (0-1) for a finding

        Raises:
            AnalyzerError: On non-success HTTP status
            PresidioConnectionError: On timeout or transport failure
        """
        body = {"text": text, "language": language}
        if entities:
            body["entities"] = entities
        if score_threshold is not None:
            body["score_threshold"] = score_threshold

        response = await self._post(f"{self.analyzer_url}/analyze", body)
        if not response.is_success:
            raise AnalyzerError(response.status_code)
        try:
            return [Finding.model_validate(f) for f in response.json()]
        except (ValueError, TypeError):
            raise PresidioError("Presidio Analyzer returned an invalid body")

    async def anonymize(self, text: str, findings: List[Finding], operators: OperatorsMap) -> str:
        """
        Replace detected spans using the given operators.

        Raises:
            AnonymizerError: On non-success HTTP status
            PresidioConnectionError: On timeout or transport failure
        """
        body = {
            "text": text,
            "analyzer_results": [f.model_dump() for f in findings],
            "anonymizers": operators,
        }
        response = await self._post(f"{self.anonymizer_url}/anonymize", body)
        if not response.is_success:
            raise AnonymizerError(response.status_code)
        try:
            return response.json()["text"]
        except (ValueError, KeyError, TypeError):
            raise PresidioError("Presidio Anonymizer returned an invalid body")
