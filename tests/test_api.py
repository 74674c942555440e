import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from tests.fakes import IMAGE_URL, FakeBackend


def sse_events(body: str):
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


@pytest.mark.asyncio
async def test_chat_returns_response(client):
    res = await client.post("/api/chat", json={"message": "hello there", "sessionId": "abc"})
    assert res.status_code == 200
    data = res.json()
    assert data["content"] == client.backend.answer
    assert data["model"] == "llama-3.3-70b-versatile"
    assert data["intent"]["type"] == "simple"
    assert data["metadata"]["sessionId"] == "abc"


@pytest.mark.asyncio
async def test_chat_rejects_bad_bodies(client):
    res = await client.post("/api/chat", content="nope", headers={"Content-Type": "application/json"})
    assert res.status_code == 400
    res = await client.post("/api/chat", json={"message": "   "})
    assert res.status_code == 400
    res = await client.post("/api/chat", json={"sessionId": "abc"})
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_stream_reports_chain_progress(app_factory):
    backend = FakeBackend(
        classification={"type": "image-generation", "needsImageGeneration": True, "confidence": 0.9}
    )
    app, _, _ = app_factory(backend=backend)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/chat/stream", json={"message": "generate an image of a cat in a garden"})
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/event-stream")
    events = sse_events(res.text)
    assert [e["type"] for e in events] == [
        "step-start",
        "coordinator-update",
        "step-complete",
        "step-start",
        "step-complete",
        "chain-complete",
    ]
    assert events[0]["purpose"] == "prompt-enhancement"
    assert events[0]["totalSteps"] == 2
    assert events[1]["kind"] == "structured"
    final = events[-1]["data"]
    assert final["isChained"] is True
    assert final["steps"][-1]["content"] == IMAGE_URL


@pytest.mark.asyncio
async def test_stream_fast_path_emits_single_complete(client):
    res = await client.post("/api/chat/stream", json={"message": "hello there"})
    events = sse_events(res.text)
    assert [e["type"] for e in events] == ["complete"]
    assert events[0]["data"]["content"] == client.backend.answer


@pytest.mark.asyncio
async def test_stream_reports_errors(client, monkeypatch):
    async def boom(*args, **kwargs):
        raise RuntimeError("orchestrator exploded")

    monkeypatch.setattr(client.app.state.orchestrator, "execute", boom)
    res = await client.post("/api/chat/stream", json={"message": "hello"})
    assert sse_events(res.text) == [{"type": "error", "error": "orchestrator exploded"}]


@pytest.mark.asyncio
async def test_session_lifecycle(client):
    await client.post("/api/chat", json={"message": "What's the latest on GPU prices?", "sessionId": "s-1"})
    res = await client.get("/api/sessions/s-1")
    assert res.status_code == 200
    assert res.json()["session_id"] == "s-1"
    assert res.json()["turn_index"] == 1

    res = await client.delete("/api/sessions/s-1")
    assert res.json() == {"ok": True, "session_id": "s-1"}
    assert (await client.delete("/api/sessions/s-1")).status_code == 404
    assert (await client.get("/api/sessions/s-1")).status_code == 404


@pytest.mark.asyncio
async def test_models_and_tools_catalogs(client):
    res = await client.get("/api/models", params={"provider": "replicate"})
    assert [m["id"] for m in res.json()["models"]] == ["seedream-4"]
    all_models = (await client.get("/api/models")).json()["models"]
    assert all(not m["deprecated"] for m in all_models)
    tools = (await client.get("/api/tools")).json()["tools"]
    assert "search_web" in [t["function"]["name"] for t in tools]


@pytest.mark.asyncio
async def test_lifespan_closes_providers(app_factory):
    app, _, _ = app_factory()
    async with LifespanManager(app):
        pass
    assert all(provider.closed for provider in app.state.registry.providers.values())
