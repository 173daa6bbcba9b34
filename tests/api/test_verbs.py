"""Tests for verb administration endpoints."""

from __future__ import annotations

from fastapi.testclient import TestClient

from lrs.services.verb_registry import ADL_VERBS
from tests.conftest import make_statement

_CUSTOM = "http://example.com/verbs/mastered"


def _add(client: TestClient, verb_id: str = _CUSTOM, **overrides):
    body = {
        "verb_id": verb_id,
        "category": "completion",
        "action": "mark_passed",
        "description": "Mastery reached",
        **overrides,
    }
    return client.post("/v1/verbs", json=body)


def test_list_verbs_has_standard_and_custom(client: TestClient) -> None:
    _add(client)
    resp = client.get("/v1/verbs")
    assert resp.status_code == 200
    body = resp.json()
    assert f"{ADL_VERBS}completed" in body["standard"]
    assert body["custom"][_CUSTOM]["action"] == "mark_passed"
    assert "stats" in body


def test_add_custom_verb_returns_201(client: TestClient) -> None:
    resp = _add(client)
    assert resp.status_code == 201
    body = resp.json()
    assert body["verbId"] == _CUSTOM
    assert body["category"] == "completion"
    assert body["isCustom"] is True


def test_add_without_action_returns_422(client: TestClient) -> None:
    resp = client.post("/v1/verbs", json={"verb_id": _CUSTOM, "category": "completion"})
    assert resp.status_code == 422


def test_classify_builtin_detected_and_unknown(client: TestClient) -> None:
    builtin = client.get("/v1/verbs/classify", params={"verbId": f"{ADL_VERBS}passed"}).json()
    assert builtin["action"] == "mark_passed"
    assert "isDetected" not in builtin

    detected = client.get(
        "/v1/verbs/classify", params={"verbId": "http://example.com/verbs/quiz-completed"}
    ).json()
    assert detected["category"] == "completion"
    assert detected["isDetected"] is True

    unknown = client.get(
        "/v1/verbs/classify", params={"verbId": "http://example.com/verbs/sneezed"}
    ).json()
    assert unknown["isUnknown"] is True


def test_classify_requires_verb_id(client: TestClient) -> None:
    assert client.get("/v1/verbs/classify").status_code == 422
    assert client.get("/v1/verbs/classify", params={"verbId": ""}).status_code == 422


def test_custom_verb_get_update_delete(client: TestClient) -> None:
    _add(client)
    params = {"verbId": _CUSTOM}

    got = client.get("/v1/verbs/custom", params=params)
    assert got.status_code == 200
    assert got.json()["description"] == "Mastery reached"

    updated = client.put("/v1/verbs/custom", params=params, json={"action": "mark_completed"})
    assert updated.status_code == 200
    assert updated.json()["action"] == "mark_completed"
    assert updated.json()["category"] == "completion"

    assert client.delete("/v1/verbs/custom", params=params).status_code == 204
    assert client.get("/v1/verbs/custom", params=params).status_code == 404


def test_update_unknown_custom_verb_returns_404(client: TestClient) -> None:
    resp = client.put("/v1/verbs/custom", params={"verbId": _CUSTOM}, json={"category": "progress"})
    assert resp.status_code == 404
    body = resp.json()
    assert body["code"] == "NOT_FOUND"
    assert _CUSTOM in body["detail"]


def test_delete_unknown_custom_verb_returns_404(client: TestClient) -> None:
    assert client.delete("/v1/verbs/custom", params={"verbId": _CUSTOM}).status_code == 404


def test_stats_count_ingested_statements(client: TestClient) -> None:
    client.post(
        "/xapi/statements",
        json=[make_statement(f"{who}@example.com", "answered") for who in ("a", "b")],
    )
    resp = client.get("/v1/verbs/stats")
    assert resp.status_code == 200
    answered = resp.json()[f"{ADL_VERBS}answered"]
    assert answered["totalCount"] == 2
    assert answered["uniqueUsers"] == 2
