from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

from flashdeck.api.error_handling import (
    error_response,
    register_exception_handlers,
    unhandled_error_response,
)
from flashdeck.api.routes import router
from flashdeck.config import Settings
from flashdeck.logging import get_logger, set_correlation_id
from flashdeck.service.audit import SecurityAction
from flashdeck.service.cookies import CookieJar
from flashdeck.service.csrf import CSRF_COOKIE_NAME, CSRF_HEADER_NAME, verify_csrf

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from flashdeck.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Flashdeck Account Service", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Default to common local dev hosts; avoid wildcard when credentials are enabled.
    return [
        "http://localhost:3000",
        "http://localhost:4321",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:4321",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", CSRF_HEADER_NAME, "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


def _is_api_path(path: str) -> bool:
    return path.startswith("/api/")


# Registered innermost first: the CSRF guard runs after the session loader and
# before the endpoint; the correlation id wraps everything.


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    from flashdeck.service.runtime import get_runtime

    if get_runtime().session_loader.is_public(request.url.path):
        return await call_next(request)
    cookie_token = request.cookies.get(CSRF_COOKIE_NAME)
    header_token = request.headers.get(CSRF_HEADER_NAME)
    if not verify_csrf(request.method, cookie_token, header_token):
        logger.warning(
            "csrf_validation_failed",
            path=request.url.path,
            method=request.method,
            cookie_present=bool(cookie_token),
            header_present=bool(header_token),
        )
        return error_response(403, "Missing or invalid CSRF token", code="FORBIDDEN")
    return await call_next(request)


@app.middleware("http")
async def load_session(request: Request, call_next):
    """Attach the session context and apply queued cookie changes to the response.

    Page requests without a usable session are redirected to the login page.
    API requests are never redirected: they continue with a null session so the
    endpoint answers 401, except for an identity mismatch, which answers 403.
    """
    from flashdeck.service.runtime import get_runtime

    runtime = get_runtime()
    cookies = CookieJar(
        request.cookies,
        secure=runtime.settings.cookie_secure,
        csrf_ttl_hours=runtime.settings.csrf_cookie_ttl_hours,
    )
    result = await runtime.session_loader.load_session(
        request.url.path, cookies, runtime.identity.create_client()
    )
    request.state.cookie_jar = cookies
    request.state.session_context = result.context

    path = request.url.path
    if result.redirect and not _is_api_path(path):
        response = RedirectResponse(result.redirect, status_code=302)
    elif result.failure == SecurityAction.SESSION_MISMATCH:
        response = error_response(403, "Security violation detected", code="SESSION_MISMATCH")
    else:
        try:
            response = await call_next(request)
        except Exception as exc:
            # Rendered here so queued cookie changes still reach the client
            response = unhandled_error_response(request, exc)
    cookies.apply(response)
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    try:
        response = await call_next(request)
    except Exception as exc:
        response = unhandled_error_response(request, exc)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if _is_api_path(request.url.path) or request.url.path == "/healthz":
        response.headers["Cache-Control"] = "no-store"
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Bind a correlation id for logging and echo it in X-Request-ID.

    Taken from the client's X-Request-ID header when present, otherwise a new UUID.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    return {"status": "ok", "version": __version__}
