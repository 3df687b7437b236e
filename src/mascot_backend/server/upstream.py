"""Outbound calls to the language-model provider.

Every call resolves to an :class:`UpstreamSuccess` or :class:`UpstreamFailure`;
HTTP status errors, timeouts (a hard cutoff on the whole call), connection
failures and unusable URLs or credentials never escape as exceptions.
Translating a failure into the caller-facing body is done by the
pure helpers at the bottom of this module.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Union

import httpx

from .config import ServerConfig

logger = logging.getLogger(__name__)

EMPTY_REPLY = "Sorry, I couldn’t generate a response."
QUOTA_REPLY = "⚠️ Demo usage limit reached. Please try again later."
UNREACHABLE_REPLY = "⚠️ I’m having trouble reaching the AI service. Please try again."
QUOTA_ERROR_CODE = "insufficient_quota"

DEFAULT_CHAT_FAILURE_STATUS = 502
DEFAULT_PING_FAILURE_STATUS = 500


@dataclass
class UpstreamSuccess:
    status_code: int
    body: Any


@dataclass
class UpstreamFailure:
    # None when no HTTP response was received (timeout, DNS, refused, ...).
    status_code: int | None
    detail: Any

    @property
    def error_code(self) -> str | None:
        if not isinstance(self.detail, dict):
            return None
        error = self.detail.get("error")
        if isinstance(error, dict):
            code = error.get("code")
            return code if isinstance(code, str) else None
        return None


UpstreamResult = Union[UpstreamSuccess, UpstreamFailure]


def _decode_body(resp: Any) -> Any:
    try:
        return resp.json()
    except ValueError:
        return getattr(resp, "text", "")


class UpstreamClient:
    """Thin async client for the provider's model-listing and chat endpoints."""

    def __init__(self, cfg: ServerConfig, client: httpx.AsyncClient | None = None):
        self.cfg = cfg
        self.client = client or httpx.AsyncClient()

    @property
    def configured(self) -> bool:
        return self.cfg.has_credential

    def _url(self, path: str) -> str:
        return self.cfg.openai_base_url.rstrip("/") + path

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.cfg.openai_api_key}",
        }

    async def _request(
        self, method: str, url: str, timeout: float, payload: dict | None
    ) -> httpx.Response:
        if method == "GET":
            return await self.client.get(url, headers=self._headers(), timeout=timeout)
        return await self.client.post(
            url, json=payload, headers=self._headers(), timeout=timeout
        )

    async def _send(
        self, method: str, path: str, timeout_ms: int, payload: dict | None = None
    ) -> UpstreamResult:
        url = self._url(path)
        timeout = timeout_ms / 1000
        # httpx applies its timeout per phase; wait_for bounds the whole call.
        try:
            resp = await asyncio.wait_for(
                self._request(method, url, timeout, payload), timeout
            )
        except asyncio.TimeoutError:
            return UpstreamFailure(
                status_code=None, detail=f"Upstream call exceeded {timeout_ms} ms"
            )
        except (httpx.HTTPError, httpx.InvalidURL, UnicodeError) as exc:
            message = str(exc) or exc.__class__.__name__
            logger.debug("%s %s failed: %s", method, url, message)
            return UpstreamFailure(status_code=None, detail=message)

        body = _decode_body(resp)
        if 200 <= resp.status_code < 300:
            return UpstreamSuccess(status_code=resp.status_code, body=body)
        return UpstreamFailure(status_code=resp.status_code, detail=body)

    async def list_models(self) -> UpstreamResult:
        return await self._send("GET", "/models", self.cfg.ping_timeout_ms)

    def build_chat_payload(self, message: str) -> dict[str, Any]:
        return {
            "model": self.cfg.chat_model,
            "messages": [
                {"role": "system", "content": self.cfg.system_prompt},
                {"role": "user", "content": message},
            ],
            "temperature": self.cfg.temperature,
            "max_tokens": self.cfg.max_tokens,
        }

    async def chat_completion(self, message: str) -> UpstreamResult:
        return await self._send(
            "POST",
            "/chat/completions",
            self.cfg.chat_timeout_ms,
            self.build_chat_payload(message),
        )

    async def aclose(self) -> None:
        await self.client.aclose()


def extract_reply(body: Any) -> str:
    """First choice's message content, trimmed, or the fixed apology."""

    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return EMPTY_REPLY
    if not isinstance(content, str):
        return EMPTY_REPLY
    return content.strip() or EMPTY_REPLY


def count_models(body: Any) -> int:
    data = body.get("data") if isinstance(body, dict) else None
    return len(data) if isinstance(data, list) else 0


def friendly_chat_failure(failure: UpstreamFailure) -> tuple[int, str]:
    status = failure.status_code or DEFAULT_CHAT_FAILURE_STATUS
    if failure.error_code == QUOTA_ERROR_CODE:
        return status, QUOTA_REPLY
    return status, UNREACHABLE_REPLY


def ping_failure_payload(failure: UpstreamFailure) -> tuple[int, dict[str, Any]]:
    status = failure.status_code or DEFAULT_PING_FAILURE_STATUS
    return status, {"ok": False, "detail": failure.detail}
