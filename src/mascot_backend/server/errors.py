from __future__ import annotations

from typing import Any

from fastapi import HTTPException


class ApiError(HTTPException):
    """HTTP error whose ``detail`` is the exact JSON body sent to the caller."""

    def __init__(
        self,
        status_code: int,
        content: dict[str, Any],
        headers: dict[str, str] | None = None,
    ):
        super().__init__(status_code=status_code, detail=content, headers=headers)


class BodyTooLarge(ApiError):
    def __init__(self) -> None:
        super().__init__(413, {"error": "Request body too large."})


def err_invalid_json() -> ApiError:
    return ApiError(400, {"error": "Invalid JSON body."})


def err_missing_message() -> ApiError:
    return ApiError(400, {"error": "Missing 'message' in body."})


def err_missing_credential_chat() -> ApiError:
    return ApiError(500, {"reply": "⚠️ Server not configured with OPENAI_API_KEY."})


def err_missing_credential_ping() -> ApiError:
    return ApiError(500, {"ok": False, "detail": "OPENAI_API_KEY not set"})


def err_no_file(field_name: str) -> ApiError:
    return ApiError(
        400,
        {
            "success": False,
            "error": f"No file uploaded. Field name '{field_name}'.",
        },
    )


def err_file_too_large(limit: int) -> ApiError:
    return ApiError(
        413, {"success": False, "error": f"File too large. Max {limit} bytes."}
    )


def err_malformed_upload() -> ApiError:
    return ApiError(400, {"success": False, "error": "Malformed multipart body."})


def err_upload_failed() -> ApiError:
    return ApiError(500, {"success": False, "error": "Upload failed."})


def err_internal() -> ApiError:
    return ApiError(500, {"error": "Internal server error."})


def err_not_found() -> ApiError:
    return ApiError(404, {"error": "Not found."})
