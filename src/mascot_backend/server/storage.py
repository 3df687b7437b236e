from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path

logger = logging.getLogger(__name__)

UPLOAD_URL_PREFIX = "/uploads"


def is_plain_name(name: str) -> bool:
    """True when ``name`` is a bare file name with no directory component."""

    return bool(name) and name not in {".", ".."} and Path(name).name == name and (
        "\\" not in name
    )


class UploadStorage(ABC):
    """Where uploaded bytes live and how they are addressed over HTTP."""

    url_prefix = UPLOAD_URL_PREFIX

    def url_for(self, name: str) -> str:
        return f"{self.url_prefix}/{name}"

    @abstractmethod
    def put(self, name: str, data: bytes) -> str:
        """Persist ``data`` under ``name`` and return its public URL."""

    @abstractmethod
    def get(self, name: str) -> bytes | None:
        """Return stored bytes, or None when nothing is stored under ``name``."""

    def path_for(self, name: str) -> Path | None:
        """Local file backing ``name``, for backends that keep uploads on disk."""
        return None


class LocalUploadStorage(UploadStorage):
    def __init__(self, directory: Path | str):
        self.directory = Path(directory).expanduser()

    def _path(self, name: str) -> Path | None:
        if not is_plain_name(name):
            return None
        return self.directory / name

    def put(self, name: str, data: bytes) -> str:
        path = self._path(name)
        if path is None:
            raise ValueError(f"Invalid upload name: {name!r}")
        # Created lazily on the first upload.
        self.directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info("Stored upload %s (%d bytes)", name, len(data))
        return self.url_for(name)

    def get(self, name: str) -> bytes | None:
        path = self._path(name)
        if path is None or not path.is_file():
            return None
        return path.read_bytes()

    def path_for(self, name: str) -> Path | None:
        path = self._path(name)
        if path is None or not path.is_file():
            return None
        return path
