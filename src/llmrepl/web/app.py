from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn

from llmrepl.core.errors import (
    BackendClientError,
    BackendError,
    CommandError,
    NotReady,
    ReplError,
    UnknownBackend,
    UnknownCommand,
    UnknownModel,
)
from llmrepl.core.service import ReplService
from llmrepl.log_utils import log_event

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000


class QueryBody(BaseModel):
    prompt: str
    model: Optional[str] = None


class CommandBody(BaseModel):
    command: str


def status_for(exc: ReplError) -> int:
    if isinstance(exc, (UnknownBackend, UnknownCommand)):
        return 404
    if isinstance(exc, NotReady):
        return 401
    if isinstance(exc, (UnknownModel, CommandError, BackendClientError)):
        return 400
    if isinstance(exc, BackendError):
        return 502
    return 500


def _error(status: int, details: str) -> JSONResponse:
    return JSONResponse({"error": HTTPStatus(status).phrase, "details": details}, status_code=status)


def parse_addr(addr: str) -> tuple[str, int]:
    """'host:port' -> (host, port). A bare ':port' keeps the default host."""
    host, sep, port = addr.strip().rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"Expected host:port, got '{addr}'")
    return host or DEFAULT_HOST, int(port)


def create_app(service: ReplService) -> FastAPI:
    app = FastAPI(title="llm-repl")
    app.state.service = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ReplError)
    async def repl_error(request: Request, exc: ReplError) -> JSONResponse:
        status = status_for(exc)
        log_event(logger, "http.error", level=logging.WARNING, path=request.url.path, status=status, error=str(exc))
        return _error(status, str(exc))

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled error on %s", request.url.path)
        return _error(500, str(exc))

    @app.get("/status")
    async def get_status():
        return JSONResponse(service.snapshot().to_dict())

    @app.get("/providers")
    async def list_providers():
        return JSONResponse({"items": service.list_backends()})

    @app.get("/providers/{name}/models")
    async def list_models(name: str):
        return JSONResponse({"items": await service.list_models(name)})

    @app.post("/query")
    async def post_query(req: QueryBody):
        if not req.prompt.strip():
            return _error(400, "Prompt cannot be empty.")
        model = req.model.strip() if req.model and req.model.strip() else None
        return JSONResponse({"response": await service.query(req.prompt, model=model)})

    @app.post("/command")
    async def post_command(req: CommandBody):
        if not req.command.strip():
            return _error(400, "Command cannot be empty.")
        return JSONResponse({"output": await service.command(req.command)})

    @app.post("/shell")
    async def post_shell(req: CommandBody):
        if not req.command.strip():
            return _error(400, "Shell command cannot be empty.")
        return JSONResponse({"output": await service.shell(req.command)})

    @app.get("/history")
    async def get_history():
        return JSONResponse({"history": [r.to_dict() for r in service.history()]})

    return app


def build_server(service: ReplService, *, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> uvicorn.Server:
    """A uvicorn server for an already-running event loop (await server.serve())."""
    config = uvicorn.Config(create_app(service), host=host, port=port, log_config=None)
    return uvicorn.Server(config)


def run(service: ReplService, *, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
    log_event(logger, "http.listen", host=host, port=port)
    uvicorn.run(create_app(service), host=host, port=port, log_config=None)
