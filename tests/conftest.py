from pathlib import Path
from typing import Optional

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from forefront.config import AppSettings, ProviderEndpoint
from forefront.main import create_app
from forefront.orchestrator import Orchestrator
from tests.fakes import FakeBackend, make_registry


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        groq=ProviderEndpoint(base_url="http://groq.test/v1", api_key="groq-key"),
        perplexity=ProviderEndpoint(base_url="http://pplx.test", api_key="pplx-key"),
        gemini=ProviderEndpoint(base_url="http://gemini.test/v1beta", api_key="gemini-key"),
        replicate=ProviderEndpoint(base_url="http://replicate.test/v1", api_key="replicate-key"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def orchestrator_factory(tmp_path: Path):
    def _factory(backend: Optional[FakeBackend] = None, **settings_overrides):
        backend = backend or FakeBackend()
        settings = make_settings(tmp_path, **settings_overrides)
        return Orchestrator(settings, make_registry(backend)), backend

    return _factory


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        backend: Optional[FakeBackend] = None,
        config_path: Optional[Path] = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        backend = backend or FakeBackend()
        registry = make_registry(backend)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, providers=registry, config_path=cfg_path)
        return app, cfg_path, backend

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, backend = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.backend = backend  # type: ignore[attr-defined]
            yield http_client
