from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class AccessRecord:
    """One served request, as written to the JSON-lines access log."""

    ts: str
    request_id: str
    method: str
    url: str
    status: int
    duration_ms: float
    client: Optional[str] = None


class AccessLog:
    """Append-only JSON-lines access log, rotated once it passes ``max_bytes``.

    Rotation renames the current file to ``<path>.<YYYYmmdd-HHMMSS>`` and
    starts a fresh one. Write failures are reported on the module logger and
    never reach the request being logged.
    """

    def __init__(self, path: str | Path, max_bytes: int = 25_000_000):
        self.path = Path(path).expanduser()
        self.max_bytes = max_bytes
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            logger.warning("Could not create access log directory %s", self.path.parent)

    def _rotate_if_needed(self) -> None:
        try:
            if self.path.is_file() and self.path.stat().st_size > self.max_bytes:
                stamp = time.strftime("%Y%m%d-%H%M%S")
                os.replace(self.path, self.path.with_name(f"{self.path.name}.{stamp}"))
        except OSError:
            logger.warning("Access log rotation failed for %s", self.path)

    def write(self, record: AccessRecord) -> None:
        self._rotate_if_needed()
        line = json.dumps(asdict(record), ensure_ascii=False)
        try:
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except OSError:
            logger.warning("Could not append to access log %s", self.path)

    def record_request(
        self,
        *,
        request_id: str,
        method: str,
        url: str,
        status: int,
        elapsed_ms: float,
        client: Optional[str] = None,
    ) -> AccessRecord:
        record = AccessRecord(
            ts=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            request_id=request_id,
            method=method,
            url=url,
            status=status,
            duration_ms=round(elapsed_ms, 3),
            client=client,
        )
        self.write(record)
        return record
