import asyncio
import time

import httpx

from fakes import FakeHttpClient, Resp
from mascot_backend.server import upstream as upstream_module
from mascot_backend.server.config import ServerConfig
from mascot_backend.server.upstream import (
    EMPTY_REPLY,
    QUOTA_REPLY,
    UNREACHABLE_REPLY,
    UpstreamClient,
    UpstreamFailure,
    UpstreamSuccess,
    count_models,
    extract_reply,
    friendly_chat_failure,
    ping_failure_payload,
)


def test_chat_completion_posts_payload(monkeypatch):
    seen = {}

    async def fake_post(self, url, json=None, headers=None, timeout=None):  # noqa: A002
        seen.update(url=url, json=json, headers=headers, timeout=timeout)
        return Resp(200, {"choices": [{"message": {"content": "Hello"}}]})

    monkeypatch.setattr(upstream_module.httpx.AsyncClient, "post", fake_post)

    cfg = ServerConfig(openai_api_key="sk-abc", chat_model="gpt-test", chat_timeout_ms=1500)
    client = UpstreamClient(cfg)
    result = asyncio.run(client.chat_completion("Hi"))

    assert isinstance(result, UpstreamSuccess)
    assert extract_reply(result.body) == "Hello"
    assert seen["url"] == "https://api.openai.com/v1/chat/completions"
    assert seen["headers"]["Authorization"] == "Bearer sk-abc"
    assert seen["timeout"] == 1.5
    assert seen["json"]["model"] == "gpt-test"


def test_list_models_timeout_becomes_failure(monkeypatch):
    async def fake_get(self, url, headers=None, timeout=None):
        raise httpx.ReadTimeout("read timed out")

    monkeypatch.setattr(upstream_module.httpx.AsyncClient, "get", fake_get)

    client = UpstreamClient(ServerConfig(openai_api_key="sk-abc"))
    result = asyncio.run(client.list_models())

    assert isinstance(result, UpstreamFailure)
    assert result.status_code is None
    assert result.detail == "read timed out"


def test_empty_exception_message_falls_back_to_class_name(monkeypatch):
    async def fake_get(self, url, headers=None, timeout=None):
        raise httpx.ConnectError("")

    monkeypatch.setattr(upstream_module.httpx.AsyncClient, "get", fake_get)

    result = asyncio.run(UpstreamClient(ServerConfig(openai_api_key="k")).list_models())
    assert result.detail == "ConnectError"


def test_non_2xx_becomes_failure_with_text_body(monkeypatch):
    async def fake_get(self, url, headers=None, timeout=None):
        return Resp(502, None, text="<html>Bad Gateway</html>")

    monkeypatch.setattr(upstream_module.httpx.AsyncClient, "get", fake_get)

    result = asyncio.run(UpstreamClient(ServerConfig(openai_api_key="k")).list_models())
    assert result == UpstreamFailure(status_code=502, detail="<html>Bad Gateway</html>")


def test_configured_tracks_credential():
    assert not UpstreamClient(ServerConfig()).configured
    assert UpstreamClient(ServerConfig(openai_api_key="k")).configured


def test_extract_reply_shapes():
    assert extract_reply({"choices": [{"message": {"content": " ok "}}]}) == "ok"
    assert extract_reply({"choices": [{"message": {}}]}) == EMPTY_REPLY
    assert extract_reply({"choices": [{"message": {"content": 7}}]}) == EMPTY_REPLY
    assert extract_reply({}) == EMPTY_REPLY
    assert extract_reply("not json") == EMPTY_REPLY


def test_count_models_shapes():
    assert count_models({"data": [1, 2]}) == 2
    assert count_models({"data": None}) == 0
    assert count_models([]) == 0


def test_friendly_chat_failure():
    quota = UpstreamFailure(429, {"error": {"code": "insufficient_quota"}})
    assert friendly_chat_failure(quota) == (429, QUOTA_REPLY)
    assert friendly_chat_failure(UpstreamFailure(None, "timeout")) == (502, UNREACHABLE_REPLY)
    assert friendly_chat_failure(UpstreamFailure(500, "oops")) == (500, UNREACHABLE_REPLY)


def test_quota_code_without_status_still_uses_default():
    failure = UpstreamFailure(None, {"error": {"code": "insufficient_quota"}})
    assert friendly_chat_failure(failure) == (502, QUOTA_REPLY)


def test_ping_failure_payload():
    assert ping_failure_payload(UpstreamFailure(None, "refused")) == (
        500,
        {"ok": False, "detail": "refused"},
    )
    assert ping_failure_payload(UpstreamFailure(403, {"error": {}})) == (
        403,
        {"ok": False, "detail": {"error": {}}},
    )


def test_error_code_ignores_odd_shapes():
    assert UpstreamFailure(400, "text").error_code is None
    assert UpstreamFailure(400, {"error": "flat"}).error_code is None
    assert UpstreamFailure(400, {"error": {"code": 12}}).error_code is None


def test_slow_upstream_is_cut_off_at_the_timeout():
    http = FakeHttpClient()
    http.delay = 2.0
    cfg = ServerConfig(openai_api_key="sk-abc", chat_timeout_ms=100)
    client = UpstreamClient(cfg, client=http)

    started = time.monotonic()
    result = asyncio.run(client.chat_completion("Hi"))
    elapsed = time.monotonic() - started

    assert elapsed < 1.5
    assert result == UpstreamFailure(status_code=None, detail="Upstream call exceeded 100 ms")
    assert friendly_chat_failure(result) == (502, UNREACHABLE_REPLY)


def test_ping_timeout_uses_its_own_budget():
    http = FakeHttpClient()
    http.delay = 2.0
    cfg = ServerConfig(openai_api_key="sk-abc", ping_timeout_ms=50, chat_timeout_ms=5_000)
    result = asyncio.run(UpstreamClient(cfg, client=http).list_models())
    assert result.status_code is None
    assert result.detail == "Upstream call exceeded 50 ms"


def test_non_ascii_credential_becomes_failure():
    cfg = ServerConfig(openai_api_key="sk-é", openai_base_url="http://127.0.0.1:9/v1")

    async def call():
        client = UpstreamClient(cfg)
        try:
            return await client.chat_completion("hi")
        finally:
            await client.aclose()

    result = asyncio.run(call())

    assert isinstance(result, UpstreamFailure)
    assert result.status_code is None
    assert friendly_chat_failure(result) == (502, UNREACHABLE_REPLY)


def test_invalid_url_becomes_failure():
    http = FakeHttpClient()
    http.queue(httpx.InvalidURL("Invalid URL 'http://exa mple'"))
    client = UpstreamClient(ServerConfig(openai_api_key="k"), client=http)
    result = asyncio.run(client.list_models())
    assert ping_failure_payload(result) == (
        500,
        {"ok": False, "detail": "Invalid URL 'http://exa mple'"},
    )
