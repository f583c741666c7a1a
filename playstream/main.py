import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from playstream import __version__
from playstream.config import settings
from playstream.core.dependencies import get_orchestrator, get_registry_store
from playstream.core.errors import StreamError, ValidationError
from playstream.modules.streams import routes as streams_routes

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="Deploy, monitor and tear down per-user game-streaming instances",
    debug=settings.debug,
    redirect_slashes=False,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(StreamError)
async def stream_error_handler(request: Request, exc: StreamError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query"))
        problems.append(f"{field}: {error.get('msg')}" if field else error.get("msg", ""))
    return JSONResponse(
        status_code=ValidationError.status_code,
        content=ValidationError("; ".join(problems) or None).to_dict(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    message = "Internal server error" if settings.is_production else str(exc)
    return JSONResponse(status_code=500, content={"error": "InternalError", "message": message})


class SecurityHeadersMiddleware:
    """Hardening headers; API responses may carry session passwords, so they are never cached."""

    def __init__(self, app, no_store_prefix: str = API_PREFIX):
        self.app = app
        self.no_store_prefix = no_store_prefix

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        extra = [(b"X-Content-Type-Options", b"nosniff"), (b"X-Frame-Options", b"DENY")]
        if scope.get("path", "").startswith(self.no_store_prefix):
            extra.append((b"Cache-Control", b"no-store"))

        async def send_with_headers(message):
            if message["type"] == "http.response.start":
                message["headers"] = list(message.get("headers", [])) + extra
            await send(message)

        await self.app(scope, receive, send_with_headers)


app.add_middleware(SlowAPIMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


def include_routers(application: FastAPI) -> None:
    application.include_router(streams_routes.router, prefix=API_PREFIX)


include_routers(app)


@app.on_event("startup")
async def startup_event():
    logger.info(
        f"{settings.app_name} {__version__} starting (env={settings.environment}, "
        f"registry={settings.registry_backend}, orchestrator={settings.orchestrator_backend}, "
        f"region={settings.aws_region})"
    )


@app.on_event("shutdown")
async def shutdown_event():
    # Local executions run on daemon threads and stop with the process
    logger.info(f"{settings.app_name} shutting down")


@app.get("/health")
@limiter.exempt
async def health():
    return {"status": "healthy", "version": __version__}


@app.get("/ready")
@limiter.exempt
async def ready():
    """The registry store and orchestrator can be constructed from current settings."""
    checks = {"registry": settings.registry_backend, "orchestrator": settings.orchestrator_backend}
    try:
        get_registry_store()
        get_orchestrator()
    except Exception as e:
        logger.warning(f"Readiness check failed: {str(e)}")
        return JSONResponse(status_code=503, content={"status": "not_ready", "message": str(e), **checks})
    return {"status": "ready", **checks}
