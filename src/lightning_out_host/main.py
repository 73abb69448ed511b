# src/lightning_out_host/main.py

import asyncio
import contextlib
import logging
import secrets
import sys
import typing
from datetime import datetime, timezone

import httpx
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

from . import auth_utils
from .config import PACKAGE_DIR, Settings, load_settings
from .errors import (
    ConfigurationError,
    OAuthProtocolError,
    SessionExpiredError,
    TokenEndpointError,
)
from .logging_utils import audit, configure_logging, fingerprint
from .platform_client import fetch_user_info
from .security_headers import (
    SecurityHeadersMiddleware,
    apply_security_headers,
    build_content_security_policy,
)
from .session_data import SessionData
from .session_store import (
    InMemorySessionStore,
    SessionMiddlewareCustom,
    SessionStore,
    destroy_session,
    get_session,
    regenerate_session,
    save_session,
)
from .token_refresh import apply_refresh, call_with_refresh

logger = logging.getLogger(__name__)

templates = Jinja2Templates(directory=PACKAGE_DIR / "templates")

LOGIN_PATH = "/login"
APP_PATH = "/app"
SESSION_EXPIRED_URL = "/login?error=session_expired"

LANDING_MESSAGES = {
    "session_expired": "Your session has expired. Please log in again.",
}

HttpClientFactory = typing.Callable[[], httpx.AsyncClient]


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _wants_json(request: Request) -> bool:
    return request.url.path.startswith("/api/") or request.url.path == "/session-info"


def _safe_redirect_target(target: typing.Optional[str]) -> str:
    # Same-site relative paths only; anything else would be an open redirect
    if not target or not target.startswith("/") or target.startswith("//") or "\\" in target:
        return APP_PATH
    return target


def _render_error(request: Request, status_code: int, title: str, message: str,
                  error_code: typing.Optional[str] = None) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "error.html",
        {"title": title, "message": message, "error_code": error_code},
        status_code=status_code,
    )


# --- Dependencies for checking authentication ---
async def require_authenticated(request: Request) -> SessionData:
    """Presence check only; a stale token passes and is caught when the platform rejects it."""
    session = get_session(request)
    if not session.is_authenticated:
        logger.debug("Unauthenticated request to %s, redirecting to %s", request.url.path, LOGIN_PATH)
        raise HTTPException(
            status_code=status.HTTP_302_FOUND,
            detail="Not authenticated",
            headers={"Location": LOGIN_PATH},
        )
    return session


async def require_authenticated_api(request: Request) -> SessionData:
    session = get_session(request)
    if not session.is_authenticated:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return session


# --- Authentication Routes ---
async def login(request: Request):
    settings = _settings(request)
    if not settings.SF_CLIENT_ID or not settings.app_url:
        logger.error("/login called but SF_CLIENT_ID or APP_URL is not configured")
        return _render_error(request, status.HTTP_500_INTERNAL_SERVER_ERROR,
                             "Missing configuration",
                             "The application is not configured for login yet.")

    if request.query_params.get("error"):
        logger.info("/login re-entered with error flag: %s", request.query_params.get("error"))

    # Fresh session ID per attempt prevents fixation
    session = await regenerate_session(request)
    state = auth_utils.generate_state()
    code_verifier = auth_utils.generate_code_verifier()
    code_challenge = auth_utils.derive_code_challenge(code_verifier)
    session.begin_login(state, code_verifier)

    # The redirect must not leave before the pending state is committed
    await save_session(request)
    audit("login_started", session=fingerprint(request.state.session_id), state=state)

    auth_url = auth_utils.build_authorize_url(settings, state=state, code_challenge=code_challenge)
    return RedirectResponse(url=auth_url, status_code=status.HTTP_302_FOUND)


async def oauth_callback(request: Request):
    settings = _settings(request)
    session = get_session(request)
    session_ref = fingerprint(request.state.session_id)
    code = request.query_params.get("code")
    returned_state = request.query_params.get("state")

    if not code:
        provider_error = request.query_params.get("error")
        audit("callback_rejected", reason="missing_code", session=session_ref, provider_error=provider_error)
        if provider_error:
            raise OAuthProtocolError(status.HTTP_400_BAD_REQUEST,
                                     f"Authorization was not granted: {provider_error}")
        raise OAuthProtocolError(status.HTTP_400_BAD_REQUEST, "No authorization code")

    # State is checked before the verifier is touched
    expected_state = session.oauth_state
    if (
        not returned_state
        or not expected_state
        or not session.code_verifier
        or not secrets.compare_digest(returned_state.encode("utf-8"), expected_state.encode("utf-8"))
    ):
        audit("callback_rejected", reason="invalid_state", session=session_ref)
        raise OAuthProtocolError(status.HTTP_403_FORBIDDEN, "Invalid session or state parameter")

    code_verifier = session.consume_pending()
    await save_session(request)

    async with request.app.state.http_client_factory() as client:
        token_set = await auth_utils.exchange_code_for_tokens(settings, client, code, code_verifier)

    session.store_tokens(token_set)
    await save_session(request)
    audit("login_completed", session=session_ref)
    return RedirectResponse(url=APP_PATH, status_code=status.HTTP_302_FOUND)


async def logout(request: Request):
    was_authenticated = get_session(request).is_authenticated
    await destroy_session(request)
    audit("logout", was_authenticated=was_authenticated)
    return RedirectResponse(url="/", status_code=status.HTTP_302_FOUND)


async def refresh_token(request: Request, redirect: typing.Optional[str] = None):
    if not get_session(request).refresh_token:
        return RedirectResponse(url=LOGIN_PATH, status_code=status.HTTP_302_FOUND)
    try:
        await apply_refresh(request)
    except TokenEndpointError:
        return RedirectResponse(url=SESSION_EXPIRED_URL, status_code=status.HTTP_302_FOUND)
    return RedirectResponse(url=_safe_redirect_target(redirect), status_code=status.HTTP_302_FOUND)


# --- Host page and session data ---
async def host_page(request: Request, session: SessionData = Depends(require_authenticated)):
    settings = _settings(request)
    template = "app.html" if settings.HOST_PAGE_MODE == "embedded" else "app_shell.html"
    response = templates.TemplateResponse(
        request,
        template,
        {
            "instance_url": session.instance_url,
            "access_token": session.access_token,
            "components": " ".join(settings.LIGHTNING_COMPONENTS),
        },
    )
    response.headers["Content-Security-Policy"] = build_content_security_policy(
        settings, instance_url=session.instance_url)
    response.headers["Cache-Control"] = "no-store"
    return response


async def session_info(request: Request, session: SessionData = Depends(require_authenticated_api)):
    settings = _settings(request)
    payload = {
        "instanceUrl": session.instance_url,
        "components": settings.LIGHTNING_COMPONENTS,
    }
    if settings.SESSION_INFO_INCLUDE_TOKEN:
        payload["accessToken"] = session.access_token
    return JSONResponse(payload, headers={"Cache-Control": "no-store"})


async def user_info(request: Request, session: SessionData = Depends(require_authenticated_api)):
    async def _fetch(access_token: str, instance_url: str):
        async with request.app.state.http_client_factory() as client:
            return await fetch_user_info(client, access_token, instance_url)

    try:
        data = await call_with_refresh(request, _fetch)
    except httpx.HTTPStatusError as e:
        logger.error("Platform userinfo call failed: HTTP %s", e.response.status_code)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Platform request failed")
    except httpx.RequestError as e:
        logger.error("Platform userinfo call could not connect: %s", e)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                            detail="Could not connect to the platform")
    return {"user": data}


# --- Simple Frontend Serving ---
async def read_root(request: Request, error: typing.Optional[str] = None):
    settings = _settings(request)
    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "authenticated": get_session(request).is_authenticated,
            "config_status": settings.configuration_status(),
            "app_url": settings.app_url,
            "show_config": not settings.is_production,
            "message": LANDING_MESSAGES.get(error or ""),
        },
    )


async def health(request: Request):
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": _settings(request).ENVIRONMENT,
    }


async def favicon():
    favicon_path = PACKAGE_DIR / "static" / "favicon.ico"
    if favicon_path.is_file():
        return FileResponse(favicon_path, media_type="image/x-icon")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Exception handlers ---
async def handle_protocol_error(request: Request, exc: OAuthProtocolError):
    return _render_error(request, exc.status_code, "Authentication failed", exc.message)


async def handle_token_endpoint_error(request: Request, exc: TokenEndpointError):
    return _render_error(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Authentication failed",
        exc.description or "The identity provider could not complete the sign-in.",
        error_code=exc.error,
    )


async def handle_session_expired(request: Request, exc: SessionExpiredError):
    return RedirectResponse(url=SESSION_EXPIRED_URL, status_code=status.HTTP_302_FOUND)


async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    settings = _settings(request)
    message = "An unexpected error occurred." if settings.is_production else str(exc)
    if _wants_json(request):
        response = JSONResponse({"error": "Internal server error", "message": message},
                                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    else:
        response = _render_error(request, status.HTTP_500_INTERNAL_SERVER_ERROR,
                                 "Internal server error", message)
    # Runs outside SecurityHeadersMiddleware, so the headers are applied here
    apply_security_headers(response, build_content_security_policy(settings))
    return response


# --- Startup / shutdown ---
async def _purge_loop(store: InMemorySessionStore) -> None:
    while True:
        await asyncio.sleep(store.ttl_seconds)
        purged = store.purge_expired()
        if purged:
            logger.debug("Purged %d expired sessions", purged)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info("--- Lightning Out host starting up ---")
    for name, present in settings.configuration_status().items():
        logger.info("  %s: %s", name, "✓ Set" if present else "✗ Missing")
    logger.info("  APP_URL resolved to: %s", settings.app_url)
    logger.info("  Session cookie: SameSite=%s Secure=%s TTL=%ss",
                settings.SESSION_COOKIE_SAMESITE, settings.cookie_secure, settings.SESSION_TTL_SECONDS)
    logger.info("  Host page mode: %s", settings.HOST_PAGE_MODE)

    purge_task = None
    if isinstance(app.state.session_store, InMemorySessionStore):
        purge_task = asyncio.create_task(_purge_loop(app.state.session_store))
    try:
        yield
    finally:
        if purge_task is not None:
            purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await purge_task


# --- FastAPI App Setup ---
def create_app(
        settings: Settings,
        session_store: typing.Optional[SessionStore] = None,
        http_client_factory: typing.Optional[HttpClientFactory] = None,
) -> FastAPI:
    app = FastAPI(
        title="Lightning Out Host",
        description="Authenticates users against Salesforce with OAuth 2.0 + PKCE and hosts Lightning Out components.",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
        openapi_url=None if settings.is_production else "/openapi.json",
    )

    app.state.settings = settings
    if session_store is None:
        session_store = InMemorySessionStore(settings.SESSION_TTL_SECONDS)
    if http_client_factory is None:
        def http_client_factory():
            return httpx.AsyncClient(timeout=settings.TOKEN_ENDPOINT_TIMEOUT)
    app.state.session_store = session_store
    app.state.http_client_factory = http_client_factory

    # Last added runs first: security headers wrap the session layer
    if settings.DEBUG_LOGGING:
        @app.middleware("http")
        async def trace_auth_requests(request: Request, call_next):
            if request.url.path.startswith("/oauth") or request.url.path == LOGIN_PATH:
                logger.debug(
                    "%s %s session=%s cookie=%s",
                    request.method, request.url.path,
                    fingerprint(request.state.session_id),
                    "Y" if settings.SESSION_COOKIE_NAME in request.cookies else "N",
                )
            return await call_next(request)

    app.add_middleware(SessionMiddlewareCustom, settings=settings, store=app.state.session_store)
    app.add_middleware(SecurityHeadersMiddleware, settings=settings)

    app.mount("/static", StaticFiles(directory=PACKAGE_DIR / "static"), name="static")

    app.add_api_route("/", read_root, methods=["GET"], response_class=HTMLResponse)
    app.add_api_route("/favicon.ico", favicon, methods=["GET"], include_in_schema=False)
    app.add_api_route("/health", health, methods=["GET"])
    app.add_api_route(LOGIN_PATH, login, methods=["GET"])
    app.add_api_route("/oauth/callback", oauth_callback, methods=["GET"])
    app.add_api_route(APP_PATH, host_page, methods=["GET"], response_class=HTMLResponse)
    app.add_api_route("/session-info", session_info, methods=["GET"])
    app.add_api_route("/api/userinfo", user_info, methods=["GET"])
    app.add_api_route("/refresh-token", refresh_token, methods=["GET"])
    app.add_api_route("/logout", logout, methods=["GET"])

    app.add_exception_handler(OAuthProtocolError, handle_protocol_error)
    app.add_exception_handler(TokenEndpointError, handle_token_endpoint_error)
    app.add_exception_handler(SessionExpiredError, handle_session_expired)
    app.add_exception_handler(Exception, handle_unexpected_error)
    return app


def run() -> None:
    configure_logging()
    try:
        settings = load_settings()
    except ConfigurationError as e:
        logger.critical("%s. SESSION_SECRET is required for secure session management.", e)
        sys.exit(1)
    configure_logging(settings.DEBUG_LOGGING)
    uvicorn.run(create_app(settings), host=settings.HOST, port=settings.PORT, proxy_headers=True)
