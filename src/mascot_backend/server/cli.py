from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..logging_utils import configure_logging
from .chat import handle_ping
from .config import ServerConfig
from .config_loader import list_env_overrides
from .errors import ApiError
from .upstream import UpstreamClient

app = typer.Typer(help="Mascot backend - chat proxy and mascot uploads")
console = Console()
logger = logging.getLogger(__name__)

APP_IMPORT_PATH = "mascot_backend.server.app:app"


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address (default from config)"),
    port: Optional[int] = typer.Option(None, help="Listen port (default from config)"),
    reload: bool = typer.Option(
        False, "--reload/--no-reload", help="Auto-reload on code changes"
    ),
    log_level: str = typer.Option("info", help="Log level for the service loggers"),
):
    """Run the HTTP service under uvicorn."""
    import uvicorn

    load_dotenv()
    level = getattr(logging, log_level.upper(), logging.INFO)
    log_path = configure_logging("mascot_backend", level=level)
    cfg = ServerConfig.load()
    bind_host = host or cfg.host
    bind_port = port or cfg.port
    logger.info("Starting on %s:%d (log file %s)", bind_host, bind_port, log_path)
    uvicorn.run(
        APP_IMPORT_PATH,
        host=bind_host,
        port=bind_port,
        reload=reload,
        log_level=log_level.lower(),
        server_header=False,
    )


async def _run_ping(cfg: ServerConfig) -> tuple[int, dict]:
    upstream = UpstreamClient(cfg)
    try:
        return await handle_ping(upstream)
    except ApiError as exc:
        return exc.status_code, exc.detail
    finally:
        await upstream.aclose()


@app.command()
def ping():
    """Check that the model provider is reachable with the configured key."""
    load_dotenv()
    cfg = ServerConfig.load()
    status, payload = asyncio.run(_run_ping(cfg))
    typer.echo(json.dumps(payload))
    if not payload.get("ok"):
        logger.debug("Ping failed with status %s", status)
        raise typer.Exit(1)


@app.command("config")
def show_config():
    """Print the resolved configuration and the environment overrides in effect."""
    load_dotenv()
    cfg = ServerConfig.load()
    table = Table(title="Mascot backend configuration")
    table.add_column("Setting")
    table.add_column("Value")
    for name, value in sorted(vars(cfg).items()):
        if name == "openai_api_key":
            value = "***" if value else ""
        table.add_row(name, escape(str(value)))
    console.print(table)

    overrides = list_env_overrides()
    if overrides:
        console.print("Environment overrides:")
        for env_name, value in sorted(overrides.items()):
            console.print(f"  {env_name}={escape(value)}")
    else:
        console.print("No environment overrides.")


if __name__ == "__main__":  # pragma: no cover
    app()
