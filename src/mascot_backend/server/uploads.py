"""Mascot upload policy: multipart parsing with a hard size ceiling and naming.

The request body is streamed through ``python-multipart``; bytes of the file
part are counted as they arrive, so an oversized file is rejected while it is
being parsed, before the route handler runs and before anything touches disk.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Optional

import python_multipart
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import parse_options_header
from fastapi import Request

from .errors import err_file_too_large, err_malformed_upload

logger = logging.getLogger(__name__)

UPLOAD_FIELD = "mascot"
DEFAULT_UPLOAD_NAME = "mascot"
# Room for boundaries, part headers and small text fields around the file.
MULTIPART_OVERHEAD_BYTES = 64 * 1024

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass
class UploadedFile:
    original_name: Optional[str]
    data: bytes


@dataclass
class StoredAsset:
    file_name: str
    url: str


def sanitize_filename(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name)


def build_stored_name(original_name: str | None, now_ms: int | None = None) -> str:
    """``<epoch ms>_<sanitized original name>``, defaulting the name to "mascot"."""

    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{now_ms}_{sanitize_filename(original_name or DEFAULT_UPLOAD_NAME)}"


@dataclass
class _PartState:
    header_field: bytearray = field(default_factory=bytearray)
    header_value: bytearray = field(default_factory=bytearray)
    headers: dict[str, bytes] = field(default_factory=dict)
    capture: bool = False
    filename: Optional[str] = None
    data: bytearray = field(default_factory=bytearray)


class _FilePartCollector:
    """python-multipart callbacks that keep the first file part of one field."""

    def __init__(self, field_name: str, max_bytes: int):
        self.field_name = field_name
        self.max_bytes = max_bytes
        self.part = _PartState()
        self.result: UploadedFile | None = None
        self.too_large = False

    def callbacks(self) -> dict:
        return {
            "on_part_begin": self.on_part_begin,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
        }

    def on_part_begin(self) -> None:
        self.part = _PartState()

    def on_header_field(self, data: bytes, start: int, end: int) -> None:
        self.part.header_field += data[start:end]

    def on_header_value(self, data: bytes, start: int, end: int) -> None:
        self.part.header_value += data[start:end]

    def on_header_end(self) -> None:
        name = bytes(self.part.header_field).decode("latin-1").lower()
        self.part.headers[name] = bytes(self.part.header_value)
        self.part.header_field.clear()
        self.part.header_value.clear()

    def on_headers_finished(self) -> None:
        disposition = self.part.headers.get("content-disposition")
        if disposition is None or self.result is not None:
            return
        _, options = parse_options_header(disposition)
        name = options.get(b"name", b"").decode("utf-8", errors="replace")
        raw_filename = options.get(b"filename")
        # Parts without a filename are plain form fields.
        if name != self.field_name or raw_filename is None:
            return
        self.part.capture = True
        self.part.filename = raw_filename.decode("utf-8", errors="replace")

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        if not self.part.capture or self.too_large:
            return
        self.part.data += data[start:end]
        if len(self.part.data) > self.max_bytes:
            self.too_large = True
            self.part.data.clear()

    def on_part_end(self) -> None:
        if self.part.capture and not self.too_large and self.result is None:
            self.result = UploadedFile(
                original_name=self.part.filename, data=bytes(self.part.data)
            )


class MascotUploadReader:
    """FastAPI dependency returning the uploaded file, or None when absent.

    Raises 413 as soon as the file part grows past ``max_bytes`` and 400 for
    a malformed multipart body.
    """

    def __init__(self, max_bytes: int, field_name: str = UPLOAD_FIELD):
        self.max_bytes = max_bytes
        self.field_name = field_name

    async def __call__(self, request: Request) -> UploadedFile | None:
        content_type = request.headers.get("content-type")
        if not content_type:
            return None
        mime, params = parse_options_header(content_type)
        if mime.lower() != b"multipart/form-data":
            return None
        boundary = params.get(b"boundary")
        if not boundary:
            raise err_malformed_upload()

        collector = _FilePartCollector(self.field_name, self.max_bytes)
        parser = python_multipart.MultipartParser(boundary, collector.callbacks())
        body_ceiling = self.max_bytes + MULTIPART_OVERHEAD_BYTES
        received = 0
        try:
            async for chunk in request.stream():
                received += len(chunk)
                if received > body_ceiling:
                    raise err_file_too_large(self.max_bytes)
                parser.write(chunk)
                if collector.too_large:
                    raise err_file_too_large(self.max_bytes)
            parser.finalize()
        except MultipartParseError as exc:
            logger.info("Rejected malformed multipart upload: %s", exc)
            raise err_malformed_upload() from exc

        if collector.too_large:
            raise err_file_too_large(self.max_bytes)
        return collector.result
