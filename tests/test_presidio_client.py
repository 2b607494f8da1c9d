import json

import httpx
import pytest

from chatlog_anonymizer.exceptions import (
    AnalyzerError,
    AnonymizerError,
    PresidioConnectionError,
    PresidioError,
)
from chatlog_anonymizer.models import Finding
from chatlog_anonymizer.presidio_client import PresidioClient, build_operators


def make_client(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PresidioClient(http, "http://analyzer:5001/", "http://anonymizer:5002")


class TestBuildOperators:

    def test_replace(self):
        assert build_operators("replace") == {"DEFAULT": {"type": "replace"}}

    def test_redact(self):
        assert build_operators("redact") == {"DEFAULT": {"type": "redact"}}

    def test_hash(self):
        assert build_operators("hash") == {"DEFAULT": {"type": "hash", "hash_type": "sha256"}}

    def test_unknown(self):
        with pytest.raises(ValueError):
            build_operators("encrypt")


class TestAnalyze:

    @pytest.mark.asyncio
    async def test_minimal_body(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        assert await make_client(handler).analyze("nothing here", "en") == []
        assert str(seen[0].url) == "http://analyzer:5001/analyze"
        assert json.loads(seen[0].content) == {"text": "nothing here", "language": "en"}

    @pytest.mark.asyncio
    async def test_entities_and_threshold_included(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json=[])

        await make_client(handler).analyze("x", "de", entities=["PERSON"], score_threshold=0.4)
        assert seen[0]["entities"] == ["PERSON"]
        assert seen[0]["score_threshold"] == 0.4
        assert seen[0]["language"] == "de"

    @pytest.mark.asyncio
    async def test_parses_findings(self):
        def handler(request):
            return httpx.Response(200, json=[
                {"entity_type": "PERSON", "start": 0, "end": 4, "score": 0.9, "recognition_metadata": {}},
            ])

        findings = await make_client(handler).analyze("Jane is here", "en")
        assert findings == [Finding(entity_type="PERSON", start=0, end=4, score=0.9)]

    @pytest.mark.asyncio
    async def test_http_error(self):
        with pytest.raises(AnalyzerError) as exc:
            await make_client(lambda r: httpx.Response(503)).analyze("x", "en")
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_invalid_body(self):
        with pytest.raises(PresidioError):
            await make_client(lambda r: httpx.Response(200, text="not json")).analyze("x", "en")

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(PresidioConnectionError):
            await make_client(handler).analyze("x", "en")

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow")

        with pytest.raises(PresidioConnectionError):
            await make_client(handler).analyze("x", "en")


class TestAnonymize:

    @pytest.mark.asyncio
    async def test_sends_findings_and_operators(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"text": "<PERSON> is here", "items": []})

        findings = [Finding(entity_type="PERSON", start=0, end=4, score=0.9)]
        text = await make_client(handler).anonymize("Jane is here", findings, build_operators("replace"))
        assert text == "<PERSON> is here"
        assert str(seen[0].url) == "http://anonymizer:5002/anonymize"
        body = json.loads(seen[0].content)
        assert body["analyzer_results"] == [{"entity_type": "PERSON", "start": 0, "end": 4, "score": 0.9}]
        assert body["anonymizers"] == {"DEFAULT": {"type": "replace"}}

    @pytest.mark.asyncio
    async def test_http_error(self):
        with pytest.raises(AnonymizerError) as exc:
            await make_client(lambda r: httpx.Response(500)).anonymize("x", [], build_operators("redact"))
        assert exc.value.status_code == 500

    @pytest.mark.asyncio
    async def test_missing_text_field(self):
        with pytest.raises(PresidioError):
            await make_client(lambda r: httpx.Response(200, json={"items": []})).anonymize(
                "x", [], build_operators("redact")
            )
