"""Centralised logging setup for the mascot backend."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Optional

__all__ = ["configure_logging"]

_MANAGED_HANDLER_FLAG = "_mascot_managed_handler"

LOG_DIR_ENV = "MASCOT_LOG_DIR"

# Per-request chatter from the upstream HTTP client and the multipart parser.
NOISY_LOGGERS = ("httpx", "httpcore", "python_multipart", "multipart")


def _default_log_directory() -> Path:
    """Return the default directory for log files."""

    env_override = os.environ.get(LOG_DIR_ENV)
    if env_override:
        return Path(env_override).expanduser()

    module_path = Path(__file__).resolve()
    # Prefer the project root (folder containing pyproject.toml or .git)
    for candidate in module_path.parents:
        if (candidate / "pyproject.toml").exists() or (candidate / ".git").exists():
            return candidate / "logs"

    return Path.cwd() / "logs"


def _remove_managed_handlers(logger: logging.Logger) -> None:
    """Detach any handlers previously installed by :func:`configure_logging`."""

    for handler in list(logger.handlers):
        if getattr(handler, _MANAGED_HANDLER_FLAG, False):
            logger.removeHandler(handler)
            handler.close()


def configure_logging(
    log_name: str,
    *,
    level: int = logging.INFO,
    log_dir: Optional[Path] = None,
    include_console: bool = True,
    quiet_loggers: Iterable[str] = NOISY_LOGGERS,
) -> Path:
    """Configure root logging to write to ``<log_dir>/<log_name>.log``.

    Calling this again replaces the handlers installed by the previous call,
    so the server can be reconfigured (e.g. by the CLI) without duplicating
    output.

    Loggers named in ``quiet_loggers`` are held at WARNING or above so
    upstream URLs and upload parsing do not flood the service log.
    """

    target_directory = (
        Path(log_dir).expanduser() if log_dir else _default_log_directory()
    )
    target_directory.mkdir(parents=True, exist_ok=True)
    log_path = target_directory / f"{log_name}.log"

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    _remove_managed_handlers(root_logger)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    setattr(file_handler, _MANAGED_HANDLER_FLAG, True)
    root_logger.addHandler(file_handler)

    if include_console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        setattr(console_handler, _MANAGED_HANDLER_FLAG, True)
        root_logger.addHandler(console_handler)

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logging.captureWarnings(True)

    return log_path
