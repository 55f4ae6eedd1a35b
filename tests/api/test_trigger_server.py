"""Tests for the HTTP trigger API handlers."""

import pytest
from aiohttp import web

from conftest import MockRequest, StaticCollector, registry_with, response_json
from asymaudit.api.server import TriggerServer, error_middleware
from asymaudit.api.triggers import AuditTrigger
from asymaudit.orchestrator.exceptions import PersistenceError
from asymaudit.orchestrator.models import JobPriority, RunStatus

API_KEY = "s3cret"
AUTH = {"X-API-Key": API_KEY}
NOW = "2026-01-05T09:00:00+00:00"


@pytest.fixture
def triggers(store, queue, clock):
    return AuditTrigger(store, queue, registry_with(StaticCollector([None])), clock=clock)


@pytest.fixture
def server(store, queue, triggers, clock):
    return TriggerServer(store, queue, triggers, api_key=API_KEY, clock=clock)


def post(json_data, headers=AUTH):
    return MockRequest(headers=headers, json_data=json_data, method="POST")


@pytest.mark.asyncio
async def test_health_is_open(server):
    response = await server.health_check(MockRequest(path="/health"))

    assert response.status == 200
    assert response_json(response) == {
        "status": "ok",
        "service": "asymaudit-worker",
        "timestamp": NOW,
    }


def test_routes_are_registered(server):
    routes = {
        (route.method, route.resource.canonical)
        for route in server.app.router.routes()
        if route.method != "HEAD"
    }

    assert routes == {
        ("GET", "/health"),
        ("GET", "/api/queue/status"),
        ("GET", "/api/audit/status/{run_id}"),
        ("POST", "/api/audit/trigger"),
        ("POST", "/api/audit/trigger-all"),
    }


@pytest.mark.asyncio
async def test_middleware_renders_unknown_route_in_envelope():
    async def handler(request):
        raise web.HTTPNotFound()

    response = await error_middleware(MockRequest(path="/nope"), handler)

    assert response.status == 404
    body = response_json(response)
    assert body["success"] is False
    assert body["error"] == "Endpoint not found"


@pytest.mark.asyncio
async def test_middleware_hides_unexpected_errors():
    async def handler(request):
        raise RuntimeError("secret detail")

    response = await error_middleware(MockRequest(path="/api/queue/status"), handler)

    assert response.status == 500
    assert response_json(response)["error"] == "Internal server error"


@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [{}, {"X-API-Key": "wrong"}])
async def test_api_routes_require_key(server, headers):
    response = await server.queue_status(MockRequest(headers=headers))

    assert response.status == 401
    assert response_json(response)["error"] == "Unauthorized: Invalid API key"


@pytest.mark.asyncio
async def test_missing_server_key_refuses_everything(store, queue, triggers):
    server = TriggerServer(store, queue, triggers, api_key=None)

    response = await server.queue_status(MockRequest(headers={"X-API-Key": ""}))

    assert response.status == 401


@pytest.mark.asyncio
async def test_trigger_queues_manual_run(server, store, queue, client):
    response = await server.trigger_audit(
        post({"clientId": client.id, "auditType": "seo_technical"})
    )

    assert response.status == 200
    body = response_json(response)
    assert body["success"] is True
    assert body["timestamp"] == NOW
    data = body["data"]
    assert data["client"] == "Acme Corp"
    assert data["auditType"] == "seo_technical"
    assert data["status"] == "queued"
    run = store.get_run(data["runId"])
    assert run.status is RunStatus.PENDING
    assert run.metadata["triggered_by"] == "manual"
    job = queue.get(data["jobId"])
    assert job.priority == JobPriority.MANUAL
    assert job.metadata == {"manual": True}


@pytest.mark.asyncio
async def test_trigger_accepts_key_in_body_and_custom_priority(server, queue, client):
    response = await server.trigger_audit(
        post(
            {"clientId": client.id, "auditType": "seo_technical", "apiKey": API_KEY, "priority": 2},
            headers={},
        )
    )

    assert response.status == 200
    assert queue.get(response_json(response)["data"]["jobId"]).priority == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload,status,error",
    [
        ({"clientId": "client-1"}, 400, "Missing required fields: clientId and auditType"),
        (
            {"clientId": "client-1", "auditType": "seo_technical", "priority": -1},
            400,
            "priority must be a non-negative integer",
        ),
        (
            {"clientId": "client-1", "auditType": "seo_technical", "metadata": "x"},
            400,
            "metadata must be an object",
        ),
        ({"clientId": "missing", "auditType": "seo_technical"}, 404, "Client not found or inactive"),
        ({"clientId": "client-1", "auditType": "made_up"}, 400, "Unknown audit type: made_up"),
        (
            {"clientId": "client-1", "auditType": "ga4_config"},
            400,
            "Unknown audit type: ga4_config (no collector configured)",
        ),
    ],
)
async def test_trigger_rejections(server, client, payload, status, error):
    response = await server.trigger_audit(post(payload))

    assert response.status == status
    assert response_json(response) == {"success": False, "error": error, "timestamp": NOW}


@pytest.mark.asyncio
async def test_trigger_rejects_malformed_json(server):
    response = await server.trigger_audit(MockRequest(headers=AUTH, body=b"{oops", method="POST"))

    assert response.status == 400
    assert response_json(response)["error"] == "Invalid JSON payload"


@pytest.mark.asyncio
async def test_inactive_client_is_not_found(server, store):
    store.add_client("Dormant", client_id="client-2", is_active=False)

    response = await server.trigger_audit(
        post({"clientId": "client-2", "auditType": "seo_technical"})
    )

    assert response.status == 404


@pytest.mark.asyncio
async def test_trigger_all_reports_unsupported_types_as_failed(server, store, queue, client):
    store.add_integration(client.id, "google_tag_manager")

    response = await server.trigger_all(post({"clientId": client.id}))

    assert response.status == 200
    data = response_json(response)["data"]
    assert data["client"] == "Acme Corp"
    assert data["totalAudits"] == 2
    assert data["successCount"] == 1
    assert data["failedCount"] == 1
    by_type = {entry["auditType"]: entry for entry in data["results"]}
    assert by_type["gtm_container"] == {
        "auditType": "gtm_container",
        "runId": "",
        "jobId": "",
        "status": "failed",
    }
    queued = by_type["seo_technical"]
    assert queued["status"] == "queued"
    job = queue.get(queued["jobId"])
    assert job.priority == JobPriority.TRIGGER_ALL
    assert job.metadata == {"manual": True, "fullSuite": True}


@pytest.mark.asyncio
async def test_trigger_all_without_integrations(server, client):
    response = await server.trigger_all(post({"clientId": client.id}))

    assert response.status == 404
    assert response_json(response)["error"] == "No active integrations found for client"


@pytest.mark.asyncio
async def test_trigger_all_requires_client_id(server):
    response = await server.trigger_all(post({}))

    assert response.status == 400
    assert response_json(response)["error"] == "Missing required field: clientId"


@pytest.mark.asyncio
async def test_audit_status_includes_job_for_live_runs(server, triggers, client):
    result = triggers.trigger(client.id, "seo_technical")

    response = await server.audit_status(
        MockRequest(headers=AUTH, match_info={"run_id": result.run.id})
    )

    assert response.status == 200
    data = response_json(response)["data"]
    assert data["run"]["status"] == "pending"
    assert data["job"]["status"] == "waiting"
    assert data["job"]["data"]["runId"] == result.run.id


@pytest.mark.asyncio
async def test_audit_status_omits_job_for_finished_runs(server, store, triggers, client):
    result = triggers.trigger(client.id, "seo_technical")
    store.transition_run(result.run.id, RunStatus.COLLECTING)
    store.transition_run(result.run.id, RunStatus.FAILED, error_message="boom")

    response = await server.audit_status(
        MockRequest(headers=AUTH, match_info={"run_id": result.run.id})
    )

    data = response_json(response)["data"]
    assert data["run"]["error_message"] == "boom"
    assert data["job"] is None


@pytest.mark.asyncio
async def test_audit_status_unknown_run(server):
    response = await server.audit_status(MockRequest(headers=AUTH, match_info={"run_id": "nope"}))

    assert response.status == 404
    assert response_json(response)["error"] == "Audit run not found"


@pytest.mark.asyncio
async def test_queue_status_counts(server, triggers, client):
    triggers.trigger(client.id, "seo_technical")

    response = await server.queue_status(MockRequest(headers=AUTH))

    data = response_json(response)["data"]
    assert data["waiting"] == 1
    assert data["active"] == 0


def test_caller_metadata_cannot_replace_provenance(triggers, client):
    result = triggers.trigger(
        client.id,
        "seo_technical",
        metadata={"triggered_by": "someone-else", "manual": False, "ticket": "OPS-12"},
    )

    assert result.run.metadata["triggered_by"] == "manual"
    assert result.run.metadata["triggered_at"] == NOW
    assert result.run.metadata["ticket"] == "OPS-12"
    assert result.job.metadata == {"triggered_by": "someone-else", "manual": True, "ticket": "OPS-12"}


def test_run_is_discarded_when_its_job_cannot_be_queued(triggers, store, queue, client, monkeypatch):
    def broken_enqueue(*args, **kwargs):
        raise PersistenceError("Unable to enqueue job: disk I/O error")

    monkeypatch.setattr(queue, "enqueue", broken_enqueue)

    with pytest.raises(PersistenceError):
        triggers.trigger(client.id, "seo_technical")

    assert store.list_runs(client.id) == []


def test_trigger_all_discards_runs_it_could_not_queue(triggers, store, queue, client, monkeypatch):
    store.add_integration(client.id, "google_tag_manager")

    def broken_enqueue(*args, **kwargs):
        raise PersistenceError("Unable to enqueue job: disk I/O error")

    monkeypatch.setattr(queue, "enqueue", broken_enqueue)

    suite = triggers.trigger_all(client.id)

    assert suite.success_count == 0
    assert suite.failed_count == 2
    assert store.list_runs(client.id) == []
