import logging
import os
import re
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.middleware import add_cors_middleware
from api.routes import router
from server import find_free_port, start_server
from storage import get_db
from workshop.autosave import AUTOSAVE_DEBOUNCE_MS
from workshop.runtime import WorkshopRuntime

_logger = logging.getLogger(__name__)

_SENTRY_DSN = os.getenv("SENTRY_DSN", "")

# Patient identifiers to scrub from error reports
_PHI_PATTERNS = [
    re.compile(r"\b[A-Z]{2,5}-\d{4}-[0-9A-F]{8,12}\b"),                # internal patient code
    re.compile(r"\b\d{1,2}[/-]\d{1,2}[/-]\d{2,4}\b"),                  # dates
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),                              # ISO dates
    re.compile(r"(?i)\bbirth_date_millis\W+-?\d+"),                    # birth date
    re.compile(r"(?i)(?:display_name|patient|name)\s*[:=]\s*[^\n,;]{2,40}"),  # labeled names
    re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),  # email
]


def _scrub_phi(text: str) -> str:
    for pattern in _PHI_PATTERNS:
        text = pattern.sub("[REDACTED]", text)
    return text


def _before_send(event, hint):
    # Scrub identifiers from exception values
    if "exception" in event:
        for exc_info in event["exception"].get("values", []):
            if exc_info.get("value"):
                exc_info["value"] = _scrub_phi(exc_info["value"])
    # Scrub breadcrumbs
    for bc in event.get("breadcrumbs", {}).get("values", []):
        if bc.get("message"):
            bc["message"] = _scrub_phi(bc["message"])
    return event


def _init_sentry() -> None:
    if not _SENTRY_DSN:
        return
    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.starlette import StarletteIntegration

        sentry_sdk.init(
            dsn=_SENTRY_DSN,
            environment=os.getenv("SENTRY_ENVIRONMENT", "development"),
            integrations=[FastApiIntegration(), StarletteIntegration()],
            before_send=_before_send,
        )
    except ImportError:
        pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the workshop runtime on startup; flush and stop it on shutdown."""
    runtime = WorkshopRuntime(get_db(), debounce_ms=app.state.debounce_ms)
    await runtime.start()
    app.state.runtime = runtime
    yield
    await runtime.stop()


def create_app(debounce_ms: int = AUTOSAVE_DEBOUNCE_MS) -> FastAPI:
    _init_sentry()
    app = FastAPI(title="RHC Tools Sidecar", version="1.0.0", lifespan=lifespan)
    app.state.debounce_ms = debounce_ms
    add_cors_middleware(app)
    # Catch-all exception handler so unhandled errors still return JSON
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        _logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error."},
        )

    app.include_router(router)
    return app


if __name__ == "__main__":
    port = find_free_port()
    app = create_app()
    start_server(app, port)
