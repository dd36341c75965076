from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from sevr.api.error_handling import error_response, register_exception_handlers
from sevr.api.routes import router
from sevr.api.schemas import HealthResponse
from sevr.config import Settings
from sevr.logging import get_logger, set_correlation_id
from sevr.service.errors import PayloadTooLargeError
from sevr.storage.models import utcnow

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release pools on shutdown."""
    from sevr.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Sevr API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; a wildcard cannot be combined with credentials.
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def limit_body_size(request: Request, call_next):
    """Reject bodies over ``max_body_bytes`` before they reach a route."""
    content_length = request.headers.get("content-length")
    if content_length is not None:
        try:
            size = int(content_length)
        except ValueError:
            return error_response(400, "Invalid Content-Length header", "validation_error")
        if size > _settings.max_body_bytes:
            logger.warning(
                "payload_too_large",
                path=request.url.path,
                size=size,
                limit=_settings.max_body_bytes,
            )
            exc = PayloadTooLargeError("Request body too large")
            return error_response(exc.status_code, exc.message, exc.error_code)
    return await call_next(request)


class StreamedBodyLimit:
    """Count received body bytes so chunked uploads without a length are capped too.

    Raises a 413 ``HTTPException`` from inside ``receive``; FastAPI re-raises it
    while reading the body and the registered handler renders it.
    """

    def __init__(self, app, max_bytes: int) -> None:
        self.app = app
        self.max_bytes = max_bytes

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        received = 0

        async def limited_receive():
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_bytes:
                    logger.warning(
                        "payload_too_large",
                        path=scope.get("path"),
                        size=received,
                        limit=self.max_bytes,
                    )
                    raise HTTPException(status_code=413, detail="Request body too large")
            return message

        await self.app(scope, limited_receive, send)


app.add_middleware(StreamedBodyLimit, max_bytes=_settings.max_body_bytes)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of the request with ``X-Request-ID`` (or a fresh uuid)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/api/health", response_model=HealthResponse, tags=["health"])
async def health() -> HealthResponse:
    return HealthResponse(timestamp=utcnow())


def create_app() -> FastAPI:
    return app
