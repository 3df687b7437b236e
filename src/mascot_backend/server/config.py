from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

DEFAULT_SYSTEM_PROMPT = (
    "You are Academic Technexus's helpful assistant. Be concise, friendly, and safe."
)


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    service_name: str = "mascot-backend"
    # Upstream provider
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    chat_model: str = "gpt-4o-mini"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    temperature: float = 0.6
    max_tokens: int = 500
    chat_timeout_ms: int = 20_000
    ping_timeout_ms: int = 10_000
    # Rate limiting (applies to /chat and /mascot/upload)
    rate_limit_window_ms: int = 10_000
    rate_limit_max: int = 8
    # Uploads and request bodies
    upload_dir: str = "uploads"
    max_upload_bytes: int = 5 * 1024 * 1024
    max_json_bytes: int = 1024 * 1024
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    # Logging
    access_log_path: Optional[str] = None
    max_log_bytes: int = 25_000_000
    config_file_path: Optional[str] = None

    @property
    def has_credential(self) -> bool:
        return bool(self.openai_api_key)

    @classmethod
    def load(cls) -> "ServerConfig":
        from .config_loader import load_server_config

        return load_server_config()
