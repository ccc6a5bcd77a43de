from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from flashdeck.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RegisterRequest,
    SessionResponse,
    UserResponse,
)
from flashdeck.logging import get_logger
from flashdeck.service.account import RequestActor
from flashdeck.service.audit import SecurityAction
from flashdeck.service.cookies import USER_ID_COOKIE, CookieJar
from flashdeck.service.csrf import issue_csrf_token
from flashdeck.service.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    LogoutError,
    RateLimitedError,
    ServerError,
)
from flashdeck.service.identity import IdentityError
from flashdeck.service.runtime import get_runtime
from flashdeck.service.sessions import SessionContext, protect_route

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def get_cookie_jar(request: Request) -> CookieJar:
    jar = getattr(request.state, "cookie_jar", None)
    if jar is None:
        settings = get_runtime().settings
        jar = CookieJar(
            request.cookies,
            secure=settings.cookie_secure,
            csrf_ttl_hours=settings.csrf_cookie_ttl_hours,
        )
        request.state.cookie_jar = jar
    return jar


def get_session_context(request: Request) -> SessionContext:
    context = getattr(request.state, "session_context", None)
    if context is None:
        context = SessionContext(identity_client=get_runtime().identity.create_client())
        request.state.session_context = context
    return context


async def require_session(context: SessionContext = Depends(get_session_context)) -> SessionContext:
    if protect_route(context) is not None:
        raise AuthenticationError("Authentication required")
    return context


async def _read_json(request: Request) -> Any:
    """Decode the body, or ``None`` when it is not JSON; the flows reject ``None``."""
    try:
        return await request.json()
    except ValueError:
        return None


def _actor(request: Request, context: SessionContext) -> RequestActor:
    # The raw request cookie, not a value backfilled during this request
    return RequestActor.from_context(context, cookie_user_id=request.cookies.get(USER_ID_COOKIE))


@router.post("/register", response_model=Envelope, status_code=201)
async def register(
    body: RegisterRequest,
    context: SessionContext = Depends(get_session_context),
    cookies: CookieJar = Depends(get_cookie_jar),
):
    """Create an account with its profile row and sign the new user in."""
    runtime = get_runtime()
    session = await runtime.accounts.register(context.identity_client, body.email, body.password)
    session = session.with_csrf(issue_csrf_token())
    cookies.set_session_cookies(session)
    data = LoginResponse(user=UserResponse(id=session.user_id, email=session.email))
    return Envelope(data=data.model_dump())


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest,
    context: SessionContext = Depends(get_session_context),
    cookies: CookieJar = Depends(get_cookie_jar),
):
    """Sign in with email and password and set the session cookies."""
    runtime = get_runtime()
    try:
        session = await context.identity_client.sign_in_with_password(body.email, body.password)
    except IdentityError as exc:
        await runtime.audit.failure(None, SecurityAction.LOGIN, f"sign-in rejected: {exc.message}")
        if exc.status_code == 429:
            raise RateLimitedError("Too many login attempts, please try again later", retry_after=60) from exc
        if exc.status_code is not None and 400 <= exc.status_code < 500:
            raise InvalidCredentialsError("Invalid email or password") from exc
        raise ServerError("Authentication failed") from exc

    session = session.with_csrf(issue_csrf_token())
    cookies.set_session_cookies(session)
    await runtime.audit.success(session.user_id, SecurityAction.LOGIN)
    logger.info("login_succeeded", user_id=session.user_id)
    data = LoginResponse(user=UserResponse(id=session.user_id, email=session.email))
    return Envelope(data=data.model_dump())


@router.post("/logout", response_model=Envelope)
async def logout(
    context: SessionContext = Depends(require_session),
    cookies: CookieJar = Depends(get_cookie_jar),
):
    runtime = get_runtime()
    user_id = context.session.user_id if context.session else None
    try:
        await context.identity_client.sign_out()
    except IdentityError as exc:
        await runtime.audit.failure(user_id, SecurityAction.LOGOUT, f"sign-out failed: {exc.message}")
        raise LogoutError("Failed to log out") from exc
    cookies.clear_session_cookies()
    await runtime.audit.success(user_id, SecurityAction.LOGOUT)
    return Envelope(data=MessageResponse(message="Logged out successfully").model_dump())


@router.get("/session", response_model=Envelope)
async def current_session(context: SessionContext = Depends(require_session)):
    """Return the signed-in user for client-side rendering."""
    session = context.session
    data = SessionResponse(
        user=UserResponse(id=session.user_id, email=session.email),
        expires_at=session.expires_at,
    )
    return Envelope(data=data.model_dump(mode="json", by_alias=True))


@router.post("/change-password", response_model=Envelope)
async def change_password(
    request: Request,
    context: SessionContext = Depends(get_session_context),
):
    runtime = get_runtime()
    body = await _read_json(request)
    result = await runtime.accounts.change_password(_actor(request, context), body)
    return Envelope(data=result)


@router.post("/delete-account", response_model=Envelope)
async def delete_account(
    request: Request,
    context: SessionContext = Depends(get_session_context),
    cookies: CookieJar = Depends(get_cookie_jar),
):
    runtime = get_runtime()
    body = await _read_json(request)
    result = await runtime.accounts.delete_account(_actor(request, context), body)
    cookies.clear_session_cookies()
    return Envelope(data=result)
