"""
Tests for the HTTP surface.
"""

import httpx
import pytest

from protocol_guard.api.app import create_app
from protocol_guard.core.error_handling import InvalidInputError


@pytest.fixture
async def client(fast_config, service):
    app = create_app(config=fast_config, service=service)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert "circuit_breakers" in body["checks"]

    quick = await client.get("/health/quick")
    assert quick.json()["checks"].keys() == {"store"}


async def test_retrieve(client):
    response = await client.post("/retrieve", json={"query": "chest pain", "limit": 4})
    assert response.status_code == 200
    body = response.json()
    assert body["chunks"][0]["protocol_code"] == "1211"
    assert body["blocked"] is False
    assert body["degraded"] is False
    assert [v["stage"] for v in body["validation"]] == ["pre-retrieval", "during-retrieval"]


async def test_retrieve_unknown_code_blocked(client):
    body = (await client.post("/retrieve", json={"query": "TP 9999"})).json()
    assert body["blocked"] is True
    assert body["chunks"] == []
    assert body["safety_message"]
    assert body["validation"][0]["findings"][0]["code"] == "invalid-protocol-code"


@pytest.mark.parametrize("payload", [
    {"query": "chest pain", "patient_age": -1},
    {"query": "chest pain", "limit": 0},
    {"patient_age": 30},
])
async def test_retrieve_rejects_bad_payload(client, payload):
    response = await client.post("/retrieve", json=payload)
    assert response.status_code == 422


async def test_contract_error_maps_to_400(client, service, monkeypatch):
    async def bad_retrieve(*args, **kwargs):
        raise InvalidInputError("limit must be a positive integer", {"limit": 0})

    monkeypatch.setattr(service, "retrieve", bad_retrieve)
    response = await client.post("/retrieve", json={"query": "chest pain"})

    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "INVALID_INPUT"


async def test_validate_context(client):
    response = await client.post("/validate-context", json={
        "context": "Give Ativan 2 mg IV.",
        "retrieved_codes": ["1231"],
    })
    body = response.json()
    assert body["stage"] == "pre-response"
    assert body["valid"] is False
    assert "context-medication-error" in {f["code"] for f in body["findings"]}


async def test_validate_answer(client):
    response = await client.post("/validate-answer", json={
        "answer": "Per TP 9999 give oxygen.",
        "retrieved_codes": ["1211"],
        "query": "chest pain",
    })
    body = response.json()
    assert body["stage"] == "post-response"
    assert body["valid"] is False
    assert body["findings"][0]["code"] == "hallucinated-citation"


async def test_validation_metrics(client, service):
    await client.post("/retrieve", json={"query": "TP 9999"})
    await service.telemetry.flush()

    body = (await client.get("/validation/metrics")).json()
    assert body["metrics"]["total_validations"] >= 1
    assert body["failure_rate_by_stage"]["pre-retrieval"] > 0
    assert body["recent_failures"][0]["codes"] == ["invalid-protocol-code"]
