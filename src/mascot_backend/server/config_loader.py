from __future__ import annotations

import os
import tomllib
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Callable, Union, get_args, get_origin, get_type_hints

from .config import ServerConfig

CONFIG_FILE_ENV = "MASCOT_CONFIG_FILE"
DEFAULT_CONFIG_PATH = Path("configs/mascot_backend.toml")

_SECTION_MAP: dict[str, list[str]] = {
    "server": ["host", "port", "service_name", "cors_origins", "max_json_bytes"],
    "upstream": [
        "openai_api_key",
        "openai_base_url",
        "chat_model",
        "system_prompt",
        "temperature",
        "max_tokens",
        "chat_timeout_ms",
        "ping_timeout_ms",
    ],
    "rate_limit": ["rate_limit_window_ms", "rate_limit_max"],
    "uploads": ["upload_dir", "max_upload_bytes"],
    "logging": ["access_log_path", "max_log_bytes"],
}

# Earlier names win when several are set.
_ENV_NAMES: dict[str, tuple[str, ...]] = {
    "host": ("MASCOT_HOST",),
    "port": ("MASCOT_PORT", "PORT"),
    "service_name": ("MASCOT_SERVICE_NAME",),
    "openai_api_key": ("OPENAI_API_KEY",),
    "openai_base_url": ("OPENAI_BASE_URL",),
    "chat_model": ("MASCOT_CHAT_MODEL",),
    "system_prompt": ("MASCOT_SYSTEM_PROMPT",),
    "temperature": ("MASCOT_TEMPERATURE",),
    "max_tokens": ("MASCOT_MAX_TOKENS",),
    "chat_timeout_ms": ("MASCOT_CHAT_TIMEOUT_MS",),
    "ping_timeout_ms": ("MASCOT_PING_TIMEOUT_MS",),
    "rate_limit_window_ms": ("RATE_LIMIT_WINDOW_MS",),
    "rate_limit_max": ("RATE_LIMIT_MAX",),
    "upload_dir": ("MASCOT_UPLOAD_DIR",),
    "max_upload_bytes": ("MASCOT_MAX_UPLOAD_BYTES",),
    "max_json_bytes": ("MASCOT_MAX_JSON_BYTES",),
    "cors_origins": ("MASCOT_CORS_ORIGINS",),
    "access_log_path": ("MASCOT_ACCESS_LOG_PATH",),
    "max_log_bytes": ("MASCOT_MAX_LOG_BYTES",),
}

_SECRET_ENV = {"OPENAI_API_KEY"}


def _field_types() -> dict[str, Any]:
    hints = get_type_hints(ServerConfig)
    return {f.name: hints[f.name] for f in fields(ServerConfig)}


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return int(str(value).strip())


def _coerce_float(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    return float(str(value).strip())


def _coerce_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _coerce_list(value: Any) -> list[str]:
    if isinstance(value, str):
        parts = [item.strip() for item in value.split(",")]
        return [item for item in parts if item]
    return [str(item) for item in value]


_CASTERS: dict[Any, Callable[[Any], Any]] = {
    int: _coerce_int,
    float: _coerce_float,
    str: _coerce_str,
}


def _coerce_value(field_type: Any, value: Any) -> Any:
    origin = get_origin(field_type)
    if origin is None:
        caster = _CASTERS.get(field_type)
        return caster(value) if caster else value

    if origin is list:
        return _coerce_list(value)

    if origin is Union:
        args = [arg for arg in get_args(field_type) if arg is not type(None)]
        if value in ("", None):
            return None
        if len(args) == 1 and args[0] in _CASTERS:
            return _CASTERS[args[0]](value)
    return value


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    out: dict[str, Any] = {}
    for section, keys in _SECTION_MAP.items():
        section_values = data.get(section, {})
        if not isinstance(section_values, dict):
            continue
        for key in keys:
            if key in section_values:
                out[key] = section_values[key]
    return out


def _default_config_dict() -> dict[str, Any]:
    data = asdict(ServerConfig())
    data.pop("config_file_path", None)
    return data


def _normalize(config: dict[str, Any]) -> dict[str, Any]:
    field_types = _field_types()
    normalized = {}
    for key, default_value in _default_config_dict().items():
        value = config.get(key, default_value)
        try:
            normalized[key] = _coerce_value(field_types[key], value)
        except (TypeError, ValueError):
            normalized[key] = default_value
    return normalized


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    field_types = _field_types()
    for key, names in _ENV_NAMES.items():
        raw = next(
            (os.environ[name] for name in names if os.environ.get(name) is not None),
            None,
        )
        if raw is None:
            continue
        try:
            config[key] = _coerce_value(field_types[key], raw)
        except (TypeError, ValueError):
            # Unparsable override keeps the file/default value.
            continue
    return config


def config_file_path() -> Path:
    return Path(os.environ.get(CONFIG_FILE_ENV, DEFAULT_CONFIG_PATH)).expanduser()


def load_server_config() -> ServerConfig:
    path = config_file_path()
    normalized = _normalize(_read_config_file(path))
    normalized = _apply_env_overrides(normalized)
    cfg = ServerConfig(**normalized)
    cfg.config_file_path = str(path)
    return cfg


def list_env_overrides() -> dict[str, str]:
    out: dict[str, str] = {}
    for names in _ENV_NAMES.values():
        for name in names:
            value = os.environ.get(name)
            if value is None:
                continue
            out[name] = "***" if name in _SECRET_ENV and value else value
    return out
