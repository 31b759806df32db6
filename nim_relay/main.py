from __future__ import annotations

import logging
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings
from .errors import ClientRequestError, RelayError, openai_error_for_status
from .logging_config import configure_logging
from .models import ModelResolver
from .relay import ChatRelay
from .schemas.openai import ModelCard, ModelList


logger = logging.getLogger(__name__)

CHAT_PATHS = ("/v1/chat/completions", "/chat/completions", "/v1/v1/chat/completions")
MODELS_PATHS = ("/v1/models", "/models")


class RequestLogMiddleware:
    """Log one line per inbound HTTP request; never touches the response."""

    def __init__(self, app) -> None:
        self.app = app

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] == "http":
            logger.info("%s %s", scope["method"], scope["path"])
        await self.app(scope, receive, send)


def create_app(settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None) -> FastAPI:
    settings = settings or Settings()
    # A missing backend credential is a start-up failure, not a per-request one
    settings.validate()
    configure_logging(settings)

    resolver = ModelResolver(settings.model_map, settings.default_model)
    relay = ChatRelay(settings, resolver, client=client)

    app = FastAPI(title="NIM Reasoning Relay")
    app.state.settings = settings
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        allow_credentials=True,
    )
    app.add_middleware(RequestLogMiddleware)

    @app.exception_handler(RelayError)
    async def _relay_error(request: Request, exc: RelayError):
        return JSONResponse(status_code=exc.status_code, content=exc.body)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        # Clients that only parse JSON must never see an HTML/plain-text error page
        if exc.status_code == 404:
            message = f"Route {request.url.path} not found. Check the base URL configured in your client."
        else:
            message = str(exc.detail or f"HTTP {exc.status_code}")
        return JSONResponse(
            status_code=exc.status_code,
            content=openai_error_for_status(exc.status_code, message),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content=openai_error_for_status(400, str(exc)))

    async def chat_completions(request: Request):
        try:
            body = await request.json()
        except ValueError:
            raise ClientRequestError("Invalid JSON body")
        return await relay.handle(body, request)

    for path in CHAT_PATHS:
        app.add_api_route(path, chat_completions, methods=["POST"])

    async def list_models():
        cards = [ModelCard(id=model_id) for model_id in resolver.list_models()]
        return ModelList(data=cards).model_dump()

    for path in MODELS_PATHS:
        app.add_api_route(path, list_models, methods=["GET"])

    @app.get("/")
    @app.get("/health")
    async def root():
        return {"status": "online", "proxy": "nim-reasoning-relay", "backend": settings.nim_base_url}

    @app.on_event("shutdown")
    async def _shutdown_close_client():
        await relay.aclose()

    return app
