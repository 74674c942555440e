import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from forefront.config import MASKED, load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    # load_dotenv() would otherwise pick up a developer's .env.
    monkeypatch.chdir(tmp_path)
    for var in (
        "FOREFRONT_ENV_OVERRIDES_CONFIG",
        "GROQ_API_KEY",
        "GROQ_BASE_URL",
        "TOOL_MODEL",
        "SHORT_ANSWER_CHARS",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.mark.asyncio
async def test_get_settings_masks_api_keys(app_factory):
    app, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get("/settings")
            assert res.status_code == 200
            data = res.json()["settings"]
            assert data["groq"]["api_key"] == MASKED
            assert data["replicate"]["api_key"] == MASKED
            assert data["groq"]["base_url"] == "http://groq.test/v1"


@pytest.mark.asyncio
async def test_post_settings_persists_and_keeps_masked_key(app_factory):
    app, config_path, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post(
                "/settings",
                json={
                    "groq": {"base_url": "http://groq-new.test/v1", "api_key": MASKED},
                    "tool_model": "llama-3.1-8b-instant",
                },
            )
            assert res.status_code == 200
            assert res.json()["settings"]["groq"]["api_key"] == MASKED
            assert app.state.orchestrator.settings.tool_model == "llama-3.1-8b-instant"
            assert app.state.orchestrator.sessions is app.state.sessions

    saved = json.loads(config_path.read_text())
    assert saved["groq"] == {"base_url": "http://groq-new.test/v1", "api_key": "groq-key"}
    assert saved["tool_model"] == "llama-3.1-8b-instant"


@pytest.mark.asyncio
async def test_post_settings_rejects_invalid_values(app_factory):
    app, config_path, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/settings", json={"short_answer_chars": "lots"})
            assert res.status_code == 422
    assert not config_path.exists()


@pytest.mark.asyncio
async def test_post_settings_rejects_bodies_that_are_not_objects(app_factory):
    app, config_path, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/settings", content="{not json", headers={"Content-Type": "application/json"})
            assert res.status_code == 400
            res = await client.post("/settings", json=["groq"])
            assert res.status_code == 400
            res = await client.post("/settings", json="tool_model")
            assert res.status_code == 400
    assert not config_path.exists()


def test_config_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"groq": {"base_url": "http://config"}, "tool_model": "from-config"}))
    monkeypatch.setenv("GROQ_BASE_URL", "http://env")
    monkeypatch.setenv("TOOL_MODEL", "from-env")
    settings = load_settings(config_path=config_path)
    assert settings.groq.base_url == "http://config"
    assert settings.tool_model == "from-config"


def test_env_overrides_when_enabled(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"groq": {"base_url": "http://config"}, "tool_model": "from-config"}))
    monkeypatch.setenv("GROQ_BASE_URL", "http://env")
    monkeypatch.setenv("TOOL_MODEL", "from-env")
    monkeypatch.setenv("FOREFRONT_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.groq.base_url == "http://env"
    assert settings.tool_model == "from-env"


def test_api_key_backfills_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"groq": {"base_url": "http://config"}}))
    monkeypatch.setenv("GROQ_API_KEY", "env-key")
    monkeypatch.setenv("SHORT_ANSWER_CHARS", "42")
    settings = load_settings(config_path=config_path)
    assert settings.groq.api_key == "env-key"
    assert settings.groq.base_url == "http://config"
    assert settings.short_answer_chars == 42


def test_missing_or_broken_config_uses_defaults(tmp_path):
    assert load_settings(config_path=tmp_path / "absent.json").fallback_model == "gemini-2.0-flash"
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    assert load_settings(config_path=broken).planner_model == "llama-3.3-70b-versatile"
