import json

import httpx
import pytest

from chatlog_anonymizer.control_plane import ControlPlaneClient
from chatlog_anonymizer.exceptions import ControlPlaneError
from chatlog_anonymizer.models import AuditEvent, AuditEventType, RunCreate, RunStatus, RunUpdate

from conftest import target


def client_for(handler):
    return ControlPlaneClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), "http://api:3001/")


@pytest.mark.asyncio
async def test_list_targets_parses_envelope():
    def handler(request):
        assert str(request.url) == "http://api:3001/api/targets"
        return httpx.Response(200, json={"ok": True, "data": [target(name="a"), target(name="b", enabled=False)]})

    targets = await client_for(handler).list_targets()
    assert [t.name for t in targets] == ["a", "b"]
    assert targets[1].enabled is False


@pytest.mark.asyncio
async def test_bare_body_accepted():
    cfg = await client_for(lambda r: httpx.Response(200, json={"maxFileSizeBytes": 5})).get_config()
    assert cfg == {"maxFileSizeBytes": 5}


@pytest.mark.asyncio
async def test_error_envelope_raises():
    def handler(request):
        return httpx.Response(200, json={"ok": False, "data": None, "error": {"code": "NOT_FOUND"}})

    with pytest.raises(ControlPlaneError, match="NOT_FOUND"):
        await client_for(handler).get_config()


@pytest.mark.asyncio
async def test_create_run_body_and_id():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(201, json={"ok": True, "data": {"id": "r-1"}})

    run_id = await client_for(handler).create_run(RunCreate(source_file_name="sha256:ab", source_file_size=3))
    assert run_id == "r-1"
    assert seen[0] == {
        "sourceType": "folderUpload",
        "sourceFileName": "sha256:ab",
        "sourceFileSize": 3,
        "status": "queued",
    }


@pytest.mark.asyncio
async def test_create_run_without_id():
    with pytest.raises(ControlPlaneError):
        await client_for(lambda r: httpx.Response(201, json={"ok": True, "data": {}})).create_run(
            RunCreate(source_file_name="sha256:ab", source_file_size=3)
        )


@pytest.mark.asyncio
async def test_update_run_omits_unset_fields():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"ok": True, "data": None})

    await client_for(handler).update_run("r-1", RunUpdate(status=RunStatus.anonymized, presidio_stats={"PERSON": 2}))
    assert seen[0].method == "PATCH"
    assert seen[0].url.path == "/api/runs/r-1"
    assert json.loads(seen[0].content) == {"status": "anonymized", "presidioStats": {"PERSON": 2}}


@pytest.mark.asyncio
async def test_append_log_body():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(204)

    await client_for(handler).append_log(AuditEvent(event_type=AuditEventType.worker_heartbeat, meta={"inFlight": 1}))
    assert seen[0] == {"eventType": "worker_heartbeat", "level": "info", "meta": {"inFlight": 1}}


@pytest.mark.asyncio
async def test_transport_failure():
    def handler(request):
        raise httpx.ConnectError("refused")

    with pytest.raises(ControlPlaneError):
        await client_for(handler).list_targets()
