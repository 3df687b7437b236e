from __future__ import annotations

import os
from dataclasses import dataclass

import pytest
from fastapi.testclient import TestClient

from fakes import FakeClock, FakeHttpClient, MemoryUploadStorage
from mascot_backend.server.app import create_app
from mascot_backend.server.config import ServerConfig
from mascot_backend.server.config_loader import CONFIG_FILE_ENV
from mascot_backend.server.logging_utils import AccessLog
from mascot_backend.server.rate_limit import FixedWindowRateLimiter
from mascot_backend.server.storage import UploadStorage
from mascot_backend.server.upstream import UpstreamClient

_ENV_PREFIXES = ("MASCOT_", "RATE_LIMIT_")
_ENV_NAMES = {"OPENAI_API_KEY", "OPENAI_BASE_URL", "PORT"}


@pytest.fixture(autouse=True)
def clean_env(tmp_path, monkeypatch):
    """Keep developer shells and config files out of the tests."""
    for key in list(os.environ.keys()):
        if key in _ENV_NAMES or key.startswith(_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv(CONFIG_FILE_ENV, str(tmp_path / "absent.toml"))
    yield


@dataclass
class Harness:
    client: TestClient
    cfg: ServerConfig
    http: FakeHttpClient
    storage: UploadStorage
    clock: FakeClock


@pytest.fixture
def cfg(tmp_path):
    return ServerConfig(openai_api_key="sk-test", upload_dir=str(tmp_path / "uploads"))


@pytest.fixture
def make_harness(cfg):
    def _make(
        config: ServerConfig | None = None,
        *,
        storage: UploadStorage | None = None,
        access_log: AccessLog | None = None,
        raise_server_exceptions: bool = True,
    ) -> Harness:
        config = config or cfg
        http = FakeHttpClient()
        clock = FakeClock()
        storage = storage if storage is not None else MemoryUploadStorage()
        limiter = FixedWindowRateLimiter(
            config.rate_limit_window_ms, config.rate_limit_max, clock=clock
        )
        app = create_app(
            config,
            upstream=UpstreamClient(config, client=http),
            storage=storage,
            rate_limiter=limiter,
            access_log=access_log,
        )
        client = TestClient(app, raise_server_exceptions=raise_server_exceptions)
        return Harness(client=client, cfg=config, http=http, storage=storage, clock=clock)

    return _make


@pytest.fixture
def harness(make_harness):
    return make_harness()
