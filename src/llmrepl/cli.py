from __future__ import annotations
import concurrent.futures
import logging
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Optional

import typer

from .bootstrap import build_app
from .config_loader import ConfigError
from .log_utils import build_log_config, configure_logging, log_event
from .web.app import DEFAULT_HOST, DEFAULT_PORT, build_server, parse_addr, run as run_server

app = typer.Typer(add_completion=False, help="Talk to several LLM backends from one REPL or HTTP API.")

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path("config/default.yaml")


def _app_version() -> Optional[str]:
    try:
        return f"v{pkg_version('llm-repl')}"
    except PackageNotFoundError:
        return None


def _bootstrap(config: Path, provider: Optional[str], model: Optional[str], log_file_name: str):
    configure_logging(build_log_config(log_file_name=log_file_name))
    try:
        ctx = build_app(config, provider=provider, model=model)
    except (FileNotFoundError, ConfigError) as e:
        typer.echo(f"Config error: {e}", err=True)
        raise typer.Exit(code=2)
    for w in ctx["warnings"]:
        typer.echo(f"[warn] {w}", err=True)
    return ctx


def _addr(addr: Optional[str], cfg: dict) -> tuple[str, int]:
    if not addr:
        server_cfg = cfg.get("server") or {}
        addr = f"{server_cfg.get('host', DEFAULT_HOST)}:{server_cfg.get('port', DEFAULT_PORT)}"
    try:
        return parse_addr(addr)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--addr")


@app.command()
def chat(
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="YAML config file."),
    provider: Optional[str] = typer.Option(None, help="Override session.provider."),
    model: Optional[str] = typer.Option(None, help="Override session.model."),
    serve: bool = typer.Option(False, "--serve", help="Also start the HTTP API beside the REPL."),
    addr: Optional[str] = typer.Option(None, envvar="LLM_REPL_SERVER_ADDR", help="host:port for --serve (default: config server.*)."),
    banner: bool = typer.Option(True, "--banner/--no-banner"),
):
    """Interactive REPL."""
    from .render import Renderer
    from .repl import Repl

    ctx = _bootstrap(config, provider, model, "repl.log")
    renderer = Renderer()
    if banner:
        renderer.banner(version=_app_version(), subtitle="/help for commands")
    repl = Repl(ctx["service"], renderer)

    if serve:
        host, port = _addr(addr, ctx["cfg"])
        server = build_server(ctx["service"], host=host, port=port)
        serving = repl.loop.submit(server.serve())
        log_event(logger, "http.listen", host=host, port=port)
        renderer.info(f"HTTP API listening on http://{host}:{port}", ctx["state"].snapshot().theme)

    try:
        repl.run()
    finally:
        if serve:
            server.should_exit = True
            try:
                serving.result(timeout=5)
            except concurrent.futures.TimeoutError:
                log_event(logger, "http.shutdown_timeout", level=logging.WARNING)
        repl.close()
    typer.echo("Bye.")


@app.command()
def serve(
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="YAML config file."),
    provider: Optional[str] = typer.Option(None, help="Override session.provider."),
    model: Optional[str] = typer.Option(None, help="Override session.model."),
    addr: Optional[str] = typer.Option(None, envvar="LLM_REPL_SERVER_ADDR", help="host:port to listen on (default: config server.*)."),
):
    """HTTP API only."""
    ctx = _bootstrap(config, provider, model, "server.log")
    host, port = _addr(addr, ctx["cfg"])
    run_server(ctx["service"], host=host, port=port)


if __name__ == "__main__":
    app()
