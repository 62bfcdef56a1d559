"""FastAPI application factory.

- User API:   /api/v1/tokens/*, /api/v1/sessions/*  (JWT bearer)
- Webhook:    /api/v1/webhooks/grant  (shared-secret header, no JWT)
- Operator:   /api/v1/tokens/grant  (X-Internal-Key header, no JWT)
- healthz, metrics, docs: exempt from auth

Routers are mounted by the composition root (src/main.py); this module
owns cross-cutting concerns only: error mapping, trace ids, auth, CORS and
security headers.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.routing import Match

from src.gateway.middleware.auth import bearer_token, decode_token
from src.gateway.middleware.security_headers import SecurityHeadersMiddleware
from src.shared.errors import (
    AuthenticationError,
    ConfigurationError,
    InsufficientBalanceError,
    PortUnavailableError,
    ServerOnlyError,
    SessionNotFoundError,
    TokenMeterError,
    UnauthorizedWebhookError,
    ValidationError,
)
from src.shared.logging.error_handler import log_structured_error
from src.shared.trace_context import trace_context

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from prometheus_client import CollectorRegistry

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/v1/webhooks/grant"
OPERATOR_GRANT_PATH = "/api/v1/tokens/grant"

_EXEMPT_PATHS = frozenset(
    {
        "/healthz",
        "/metrics",
        "/docs",
        "/openapi.json",
        "/redoc",
        WEBHOOK_PATH,
        OPERATOR_GRANT_PATH,
    }
)


def _error_body(exc: TokenMeterError) -> dict[str, Any]:
    return {"error": exc.code, "message": str(exc)}


def create_app(
    *,
    jwt_secret: str,
    cors_origins: list[str] | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager[None]] | None = None,
    metrics_registry: CollectorRegistry | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        jwt_secret: JWT signing secret for user routes.
        cors_origins: Allowed CORS origins (none -> CORS disabled).
        lifespan: Async context manager factory for startup/shutdown lifecycle.
        metrics_registry: Registry served at /metrics (default: global registry).

    Raises:
        ConfigurationError: If jwt_secret is empty.
    """
    if not jwt_secret:
        msg = "jwt_secret is required"
        raise ConfigurationError(msg)

    registry = metrics_registry or REGISTRY

    app = FastAPI(
        title="Token Meter API",
        description="Token balance, metered sessions and purchase grants",
        version="0.1.0",
        docs_url="/docs",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.jwt_secret = jwt_secret

    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        )

    _sec_headers = SecurityHeadersMiddleware()
    app.state.security_headers = _sec_headers

    # -- Error handlers --

    @app.exception_handler(InsufficientBalanceError)
    async def _insufficient(_: Request, exc: InsufficientBalanceError) -> JSONResponse:
        return JSONResponse(
            status_code=402,
            content={
                **_error_body(exc),
                "balance": str(exc.balance),
                "required": str(exc.required),
            },
        )

    @app.exception_handler(SessionNotFoundError)
    async def _session_not_found(_: Request, exc: SessionNotFoundError) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={**_error_body(exc), "session_id": exc.session_id},
        )

    @app.exception_handler(AuthenticationError)
    async def _auth_error(_: Request, exc: AuthenticationError) -> JSONResponse:
        return JSONResponse(status_code=401, content=_error_body(exc))

    @app.exception_handler(UnauthorizedWebhookError)
    async def _webhook_unauthorized(_: Request, exc: UnauthorizedWebhookError) -> JSONResponse:
        return JSONResponse(status_code=401, content=_error_body(exc))

    @app.exception_handler(ServerOnlyError)
    async def _server_only(_: Request, exc: ServerOnlyError) -> JSONResponse:
        return JSONResponse(status_code=401, content=_error_body(exc))

    @app.exception_handler(ValidationError)
    async def _validation_error(_: Request, exc: ValidationError) -> JSONResponse:
        body = _error_body(exc)
        if exc.field:
            body["field"] = exc.field
        return JSONResponse(status_code=422, content=body)

    @app.exception_handler(PortUnavailableError)
    async def _port_unavailable(request: Request, exc: PortUnavailableError) -> JSONResponse:
        log_structured_error(
            logger,
            exc,
            user_id=str(getattr(request.state, "user_id", "")),
            context={"path": request.url.path, "port": exc.port_name},
        )
        return JSONResponse(status_code=503, content=_error_body(exc))

    @app.exception_handler(TokenMeterError)
    async def _meter_error(request: Request, exc: TokenMeterError) -> JSONResponse:
        log_structured_error(logger, exc, context={"path": request.url.path})
        return JSONResponse(status_code=500, content=_error_body(exc))

    @app.exception_handler(RequestValidationError)
    async def _request_validation(_: Request, exc: RequestValidationError) -> JSONResponse:
        problems = [
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}"
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content={"error": "VALIDATION", "message": "; ".join(problems)},
        )

    # Uniform {error, message} schema for Starlette's own HTTP errors
    @app.exception_handler(StarletteHTTPException)
    async def _http_exception(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        code_map = {
            404: "NOT_FOUND",
            405: "METHOD_NOT_ALLOWED",
        }
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": code_map.get(exc.status_code, "HTTP_ERROR"),
                "message": exc.detail or f"HTTP {exc.status_code}",
            },
        )

    # -- Auth middleware --

    @app.middleware("http")
    async def jwt_auth_middleware(request: Request, call_next: Any) -> Response:
        path = request.url.path

        def _add_security_headers(response: Response) -> Response:
            for name, value in _sec_headers.get_headers().items():
                response.headers[name] = value
            return response

        # CORS preflight must pass through to CORSMiddleware
        if request.method == "OPTIONS" or path in _EXEMPT_PATHS:
            return _add_security_headers(await call_next(request))

        # Unknown paths return 404, not 401.
        route_matched = any(route.matches(request.scope)[0] != Match.NONE for route in app.routes)
        if not route_matched:
            return _add_security_headers(await call_next(request))

        token = bearer_token(request.headers.get("authorization", ""))
        if not token:
            return _add_security_headers(
                JSONResponse(
                    status_code=401,
                    content={
                        "error": "AUTH_FAILED",
                        "message": "Missing or malformed Authorization header",
                    },
                )
            )
        try:
            payload = decode_token(token, secret=jwt_secret)
        except AuthenticationError as exc:
            return _add_security_headers(JSONResponse(status_code=401, content=_error_body(exc)))

        request.state.user_id = payload.user_id
        return _add_security_headers(await call_next(request))

    # Registered last so it wraps auth: every log line of a request carries its trace id.
    @app.middleware("http")
    async def trace_id_middleware(request: Request, call_next: Any) -> Response:
        with trace_context(request.headers.get("x-request-id")) as trace_id:
            response = await call_next(request)
        response.headers["X-Request-ID"] = trace_id
        return response

    # -- Exempt routes --

    @app.get("/healthz", tags=["system"])
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics", tags=["system"], include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    return app
