from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .chat_service import (
    METHOD_NOT_ALLOWED_TEXT,
    MISSING_INPUT_TEXT,
    UNAUTHORIZED_TEXT,
    ChatService,
    build_chat_service,
)
from .config_service import ConfigService
from .logger_factory import configure_logging, get_logger
from .utils.logfmt import fmt


class ChatIn(BaseModel):
    # history items and attachments stay loosely typed: bad entries are
    # dropped with a warning further down instead of failing the request
    message: Optional[str] = None
    context: Optional[Any] = None
    history: Optional[Any] = None
    attachments: Optional[Any] = None


def _text(status_code: int, text: str) -> JSONResponse:
    return JSONResponse({"text": text}, status_code=status_code)


def create_app(cfg: ConfigService | None = None, service: ChatService | None = None) -> FastAPI:
    cfg = cfg or ConfigService("config.yaml")
    configure_logging(
        level=cfg.log_level(),
        tz=cfg.log_tz(),
        lib_log_level=cfg.lib_log_level(),
        console_to_file=cfg.log_console(),
        error_file=cfg.log_errors(),
    )
    log = get_logger("http_app")
    chat_service = service or build_chat_service(cfg)

    app = FastAPI(title="Chronicle Keeper Chat")
    app.state.chat_service = chat_service

    @app.on_event("shutdown")
    async def _close_clients():
        try:
            await chat_service.aclose()
        except Exception as exc:
            log.error(f"shutdown-close-error {exc!r}")

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        # methods outside the route table still answer with a {text} body
        if exc.status_code == 405 and request.url.path == "/api/chat":
            return _text(405, METHOD_NOT_ALLOWED_TEXT)
        return await http_exception_handler(request, exc)

    @app.get("/health")
    async def health():
        return {
            "ok": True,
            "llm": chat_service.llm is not None and chat_service.llm_settings.configured,
            "world_store": chat_service.store is not None,
        }

    async def chat(request: Request):
        if request.method != "POST":
            return _text(405, METHOD_NOT_ALLOWED_TEXT)

        secret = cfg.shared_secret()
        if secret and request.headers.get("X-Chat-Token", "").strip() != secret:
            return _text(401, UNAUTHORIZED_TEXT)

        try:
            body = await request.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        try:
            inp = ChatIn.model_validate(body)
        except ValidationError as e:
            log.info(f"chat-bad-request {fmt('errors', e.error_count())}")
            return _text(400, MISSING_INPUT_TEXT)

        outcome = await chat_service.handle(inp.model_dump())
        return _text(outcome.status_code, outcome.text)

    app.add_api_route(
        "/api/chat",
        chat,
        methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"],
    )

    try:
        paths = sorted({getattr(r, "path", "") for r in app.routes})
        log.info(f"http-routes {paths}")
    except Exception:
        pass

    return app
