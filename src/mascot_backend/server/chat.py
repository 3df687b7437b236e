from __future__ import annotations

import logging
from typing import Any

from .errors import (
    err_missing_credential_chat,
    err_missing_credential_ping,
    err_missing_message,
)
from .upstream import (
    UpstreamClient,
    UpstreamFailure,
    count_models,
    extract_reply,
    friendly_chat_failure,
    ping_failure_payload,
)

logger = logging.getLogger(__name__)


def _as_text(value: Any) -> str:
    # JavaScript String() rendering.
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, list):
        return ",".join(_as_text(item) for item in value)
    if isinstance(value, dict):
        return "[object Object]"
    return str(value)


def _is_falsy(value: Any) -> bool:
    if value is None or value is False or value == "":
        return True
    if isinstance(value, (int, float)):
        return value == 0 or value != value
    return False


def coerce_message(body: Any) -> str:
    """Pull ``message`` out of a decoded request body as trimmed text.

    Non-object bodies and falsy values (missing, null, "", 0, false) give "".
    Arrays join their items with commas and objects read as
    ``[object Object]``.
    """

    if not isinstance(body, dict):
        return ""
    value = body.get("message")
    if _is_falsy(value):
        return ""
    return _as_text(value).strip()


async def handle_chat(body: Any, upstream: UpstreamClient) -> tuple[int, dict]:
    message = coerce_message(body)
    if not message:
        raise err_missing_message()
    if not upstream.configured:
        raise err_missing_credential_chat()

    result = await upstream.chat_completion(message)
    if isinstance(result, UpstreamFailure):
        status, reply = friendly_chat_failure(result)
        logger.error(
            "Upstream /chat error (status=%s): %s", result.status_code, result.detail
        )
        return status, {"reply": reply}
    return 200, {"reply": extract_reply(result.body)}


async def handle_ping(upstream: UpstreamClient) -> tuple[int, dict]:
    if not upstream.configured:
        raise err_missing_credential_ping()

    result = await upstream.list_models()
    if isinstance(result, UpstreamFailure):
        logger.warning(
            "Upstream model listing failed (status=%s): %s",
            result.status_code,
            result.detail,
        )
        return ping_failure_payload(result)
    return 200, {"ok": True, "count": count_models(result.body)}
