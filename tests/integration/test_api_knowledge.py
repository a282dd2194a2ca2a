# ==============================
# Integration: Gateway Knowledge API
# ==============================
from __future__ import annotations

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from gateway.api.http_app import create_app
from tests.conftest import ScriptedModel, _reset_deps, compiled_reply


@pytest.mark.integration
def test_overlay_editing_roundtrip(app_client: TestClient) -> None:
    put = app_client.put("/api/knowledge", json={"path": "event.location", "value": "Jakarta Convention Center"}).json()
    assert put["ok"] is True
    assert put["data"]["version"] == 1
    assert put["data"]["knowledge"]["event"]["location"] == "Jakarta Convention Center"

    value = app_client.get("/api/knowledge/value", params={"path": "event.location"}).json()
    assert value["data"]["value"] == "Jakarta Convention Center"

    app_client.put("/api/knowledge", json={"path": "event.location", "delete": True})
    missing = app_client.get("/api/knowledge/value", params={"path": "event.location"})
    assert missing.status_code == 404
    assert missing.json()["detail"]["error"]["code"] == "not_found"

    replaced = app_client.put("/api/knowledge", json={"overlay": {"tickets": {"regular": 150000}}}).json()
    assert replaced["data"]["overlay"] == {"tickets": {"regular": 150000}}

    cleared = app_client.delete("/api/knowledge").json()
    assert cleared["data"]["overlay"] == {}
    assert cleared["data"]["version"] == 4


@pytest.mark.integration
def test_malformed_path_is_bad_request(app_client: TestClient) -> None:
    resp = app_client.put("/api/knowledge", json={"path": "event..location", "value": 1})
    assert resp.status_code == 400
    body = resp.json()["detail"]
    assert body["ok"] is False
    assert body["error"]["code"] == "invalid_path"


@pytest.mark.integration
def test_csv_upload(app_client: TestClient) -> None:
    ok = app_client.post("/api/knowledge/upload", json={"content": "tickets.regular,150000\ntickets.vip,500000\n"}).json()
    assert ok["data"]["applied"] == 2

    bad = app_client.post(
        "/api/knowledge/upload",
        json={"content": "a.b,1\nbad..path,2\n", "allOrNothing": True},
    ).json()
    assert bad["data"]["discarded"] is True
    assert bad["data"]["applied"] == 0

    empty = app_client.post("/api/knowledge/upload", json={"content": "path,value\n"})
    assert empty.status_code == 400
    assert empty.json()["detail"]["error"]["code"] == "invalid_csv"


@pytest.mark.integration
def test_compile_review_and_history(app_client: TestClient, scripted_model: ScriptedModel) -> None:
    app_client.put("/api/knowledge", json={"path": "event.location", "value": "JCC"})
    scripted_model.queue(compiled_reply({"event": {"location": "ICE BSD"}}))

    compiled = app_client.post(
        "/api/knowledge/compile",
        json={"newKnowledge": {"event.location": "ICE BSD"}, "compilationType": "merge", "autoApply": True},
    ).json()
    assert compiled["ok"] is True
    draft = compiled["data"]
    assert draft["status"] == "pending_review"
    assert draft["conflicts"][0]["existingValue"] == "JCC"

    pending = app_client.get("/api/knowledge/drafts", params={"status": "pending_review"}).json()
    assert [d["compilationId"] for d in pending["data"]["drafts"]] == [draft["compilationId"]]

    approved = app_client.post(
        f"/api/knowledge/drafts/{draft['compilationId']}/approve", json={"reviewer": "ops"}
    ).json()
    assert approved["data"]["status"] == "applied"
    assert approved["data"]["appliedVersion"] == 2

    again = app_client.post(f"/api/knowledge/drafts/{draft['compilationId']}/reject", json={})
    assert again.status_code == 400
    assert again.json()["detail"]["error"]["code"] == "invalid_state"

    history = app_client.get("/api/knowledge/history").json()
    assert history["data"]["version"] == 2
    assert [h["version"] for h in history["data"]["history"]] == [2, 1]

    diff = app_client.get("/api/knowledge/diff", params={"from": 1}).json()
    assert diff["data"]["modified"] == [{"path": "event.location", "oldValue": "JCC", "newValue": "ICE BSD"}]

    restored = app_client.post("/api/knowledge/restore/1").json()
    assert restored["data"]["overlay"] == {"event": {"location": "JCC"}}
    assert restored["meta"]["restored_from"] == 1

    unknown = app_client.get("/api/knowledge/drafts/cmp_missing")
    assert unknown.status_code == 404


@pytest.mark.integration
def test_compile_invalid_output_and_fallback(app_client: TestClient, scripted_model: ScriptedModel) -> None:
    scripted_model.queue("no json here")
    failed = app_client.post("/api/knowledge/compile", json={"newKnowledge": {"event.theme": "Trade"}})
    assert failed.status_code == 400
    assert failed.json()["detail"]["error"]["code"] == "invalid_output"
    assert "compilation_id" in failed.json()["detail"]["error"]["details"]

    scripted_model.queue("still no json")
    fallback = app_client.post(
        "/api/knowledge/compile",
        params={"fallback": "true"},
        json={"newKnowledge": {"event.theme": "Trade"}, "autoApply": True},
    ).json()
    assert fallback["meta"]["fallback"] is True
    assert fallback["data"]["status"] == "auto_applied"

    current = app_client.get("/api/knowledge").json()
    assert current["data"]["knowledge"]["event"]["theme"] == "Trade"


@pytest.mark.integration
def test_smart_entry_creates_draft(app_client: TestClient, scripted_model: ScriptedModel) -> None:
    scripted_model.queue(
        json.dumps({"changes": [{"action": "added", "path": "parking.sunday", "value": "free"}], "summary": "Parking"})
    )
    resp = app_client.post("/api/knowledge/smart-entry", json={"description": "Parking is free on Sunday"}).json()
    assert resp["data"]["status"] == "pending_review"
    assert resp["data"]["compiledKnowledge"]["parking"] == {"sunday": "free"}


@pytest.mark.integration
def test_query_endpoints(app_client: TestClient, scripted_model: ScriptedModel) -> None:
    empty = app_client.post("/api/knowledge/query", json={"query": "Where is the event?"}).json()
    assert empty["data"]["confidence"] == 0.1

    app_client.put("/api/knowledge", json={"path": "event.location", "value": "Jakarta Convention Center"})
    scripted_model.queue(
        json.dumps(
            {
                "answer": "At the Jakarta Convention Center.",
                "claims": [{"text": "Venue", "sources": ["event.location"]}],
                "followUp": [],
            }
        )
    )
    answered = app_client.post("/api/knowledge/query", json={"query": "Where is the event?", "maxSources": 3}).json()
    assert answered["data"]["sources"][0]["path"] == "event.location"
    assert answered["data"]["sources"][0]["relevance"] > 0.5
    assert "suggestedFollowUp" in answered["data"]

    too_long = app_client.post("/api/knowledge/query", json={"query": "x" * 1001})
    assert too_long.status_code == 422

    caps = app_client.get("/api/knowledge/query").json()
    assert caps["data"]["maxQueryLength"] == 1000


@pytest.mark.integration
def test_metrics_endpoint(app_client: TestClient) -> None:
    app_client.put("/api/knowledge", json={"path": "event.location", "value": "JCC"})
    body = app_client.get("/api/knowledge/metrics").json()
    assert body["data"]["counters"]["knowledge.applied"] == 1


@pytest.fixture()
def sqlite_api_client(knowledge_test_env: Path):
    _reset_deps()
    client = TestClient(create_app())
    yield client
    client.close()
    _reset_deps()


@pytest.mark.integration
def test_sqlite_backed_app_persists_between_instances(sqlite_api_client: TestClient, knowledge_test_env: Path) -> None:
    put = sqlite_api_client.put("/api/knowledge", json={"path": "event.location", "value": "JCC"}).json()
    assert put["data"]["version"] == 1
    assert knowledge_test_env.exists()

    _reset_deps()
    with TestClient(create_app()) as fresh:
        body = fresh.get("/api/knowledge").json()
    assert body["data"]["version"] == 1
    assert body["data"]["knowledge"] == {"event": {"location": "JCC"}}
