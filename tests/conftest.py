"""
Shared fixtures: an in-process fake of every HTTP collaborator.

The fake routes by host:
  api:3001                -> control plane (config, targets, runs, logs)
  presidio-analyzer:5001  -> /analyze
  presidio-anonymizer:5002 -> /anonymize
  anything else           -> delivery targets / analysis service
"""

import hashlib
import json
import uuid

import httpx
import pytest

from chatlog_anonymizer.config import Settings
from chatlog_anonymizer.worker import Worker

PII_ENTITIES = {
    "john.smith@example.com": "EMAIL_ADDRESS",
    "+1-555-123-4567": "PHONE_NUMBER",
    "123-45-6789": "US_SSN",
    "John Smith": "PERSON",
}

PII_PATTERNS = list(PII_ENTITIES)

VALID_CHAT = {
    "version": "1",
    "messages": [
        {"id": "m1", "role": "user", "content": "Hi, I am John Smith, email john.smith@example.com",
         "timestamp": "2024-01-01T10:00:00Z"},
        {"id": "m2", "role": "assistant", "content": "Thanks! How can I help?"},
        {"id": "m3", "role": "user", "content": "Call +1-555-123-4567, SSN 123-45-6789"},
    ],
    "metadata": {"channel": "web"},
}


def contains_pii(text: str) -> bool:
    return any(p.lower() in text.lower() for p in PII_PATTERNS)


class FakeBackend:
    def __init__(self):
        self.config = {
            "maxFileSizeBytes": 10 * 1024 * 1024,
            "deleteAfterSuccess": False,
            "deleteAfterFailure": False,
            "anonymizationOperator": "replace",
        }
        self.config_status = 200
        self.targets = []
        self.runs = {}
        self.run_history = {}
        self.logs = []
        self.requests = []
        self.run_create_status = 201
        self.logs_status = 201
        self.analyzer_status = 200
        self.anonymizer_status = 200
        # url -> int status | Exception instance
        self.target_responses = {}
        self.target_calls = []

    # -- helpers -----------------------------------------------------------

    def event_types(self):
        return [e["eventType"] for e in self.logs]

    def only_run(self):
        assert len(self.runs) == 1
        return next(iter(self.runs.values()))

    def only_history(self):
        assert len(self.run_history) == 1
        return next(iter(self.run_history.values()))

    def control_plane_bodies(self):
        return [r.content.decode("utf-8") for r in self.requests if r.url.host == "api"]

    # -- routing -----------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host == "api":
            return self._control_plane(request)
        if host == "presidio-analyzer":
            return self._analyze(request)
        if host == "presidio-anonymizer":
            return self._anonymize(request)
        return self._target(request)

    def _control_plane(self, request):
        path = request.url.path
        method = request.method
        body = json.loads(request.content) if request.content else None
        if path == "/api/config" and method == "GET":
            return httpx.Response(self.config_status, json={"ok": True, "data": self.config})
        if path == "/api/targets" and method == "GET":
            return httpx.Response(200, json={"ok": True, "data": self.targets})
        if path == "/api/runs" and method == "POST":
            if self.run_create_status >= 400:
                return httpx.Response(self.run_create_status, json={"ok": False})
            run_id = str(uuid.uuid4())
            self.runs[run_id] = dict(body, id=run_id)
            self.run_history[run_id] = [body["status"]]
            return httpx.Response(201, json={"ok": True, "data": {"id": run_id}})
        if path.startswith("/api/runs/") and method == "PATCH":
            run_id = path.rsplit("/", 1)[-1]
            self.runs[run_id].update(body)
            if "status" in body:
                self.run_history[run_id].append(body["status"])
            return httpx.Response(200, json={"ok": True, "data": None})
        if path == "/api/logs" and method == "POST":
            if self.logs_status >= 400:
                return httpx.Response(self.logs_status)
            self.logs.append(body)
            return httpx.Response(201, json={"ok": True, "data": None})
        return httpx.Response(404)

    def _analyze(self, request):
        if self.analyzer_status != 200:
            return httpx.Response(self.analyzer_status)
        text = json.loads(request.content)["text"]
        findings = []
        for raw, entity in PII_ENTITIES.items():
            start = text.find(raw)
            if start >= 0:
                findings.append({"entity_type": entity, "start": start, "end": start + len(raw), "score": 0.85})
        return httpx.Response(200, json=findings)

    def _anonymize(self, request):
        if self.anonymizer_status != 200:
            return httpx.Response(self.anonymizer_status)
        body = json.loads(request.content)
        text = body["text"]
        op = body["anonymizers"]["DEFAULT"]
        for f in sorted(body["analyzer_results"], key=lambda f: f["start"], reverse=True):
            span = text[f["start"]:f["end"]]
            if op["type"] == "replace":
                new = f"<{f['entity_type']}>"
            elif op["type"] == "redact":
                new = ""
            else:
                new = hashlib.sha256(span.encode("utf-8")).hexdigest()
            text = text[:f["start"]] + new + text[f["end"]:]
        return httpx.Response(200, json={"text": text})

    def _target(self, request):
        self.target_calls.append(request)
        url = str(request.url)
        outcome = self.target_responses.get(url, 200)
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, text="" if outcome < 400 else "upstream exploded")


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def http(backend):
    return httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))


@pytest.fixture
def settings(tmp_path):
    return Settings(uploads_dir=str(tmp_path), api_url="http://api:3001")


@pytest.fixture
def worker(settings, http):
    return Worker(settings, http=http)


@pytest.fixture
def chat_file(tmp_path):
    path = tmp_path / "chat-valid.json"
    path.write_text(json.dumps(VALID_CHAT), encoding="utf-8")
    return path


def target(url="http://receiver.example/ingest", **overrides):
    data = {
        "id": str(uuid.uuid4()),
        "name": "receiver",
        "url": url,
        "method": "POST",
        "headers": {},
        "auth": {"type": "none"},
        "timeoutMs": 15000,
        "retries": 0,
        "backoffMs": 0,
        "enabled": True,
        "createdAt": "2024-01-01T00:00:00Z",
        "updatedAt": "2024-01-01T00:00:00Z",
    }
    data.update(overrides)
    return data
