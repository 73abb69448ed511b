# src/lightning_out_host/token_refresh.py
import logging
import typing

import httpx
from fastapi import Request

from .auth_utils import TokenSet, post_token_request
from .config import Settings
from .errors import SessionExpiredError, StaleCredentialError, TokenEndpointError
from .logging_utils import audit, fingerprint
from .session_store import destroy_session, save_session

logger = logging.getLogger(__name__)

T = typing.TypeVar("T")


async def refresh_access_token(
        settings: Settings,
        client: httpx.AsyncClient,
        refresh_token: str,
) -> TokenSet:
    """
    Mints a new access token from a refresh token. Touches no session state.
    Providers often omit refresh_token on refresh; the previous one stays valid then.
    """
    token_set = await post_token_request(settings, client, {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": settings.SF_CLIENT_ID,
        "client_secret": settings.SF_CLIENT_SECRET,
    })
    if not token_set.refresh_token:
        token_set = token_set.model_copy(update={"refresh_token": refresh_token})
    return token_set


async def apply_refresh(request: Request) -> TokenSet:
    """
    Refreshes the tokens of the current session and persists them.
    On any failure the session is destroyed before the error propagates.
    """
    settings: Settings = request.app.state.settings
    session = request.state.session
    session_ref = fingerprint(request.state.session_id)

    if not session.refresh_token:
        audit("refresh_unavailable", session=session_ref)
        await destroy_session(request)
        raise TokenEndpointError("no_refresh_token", "The session holds no refresh token.")

    try:
        async with request.app.state.http_client_factory() as client:
            token_set = await refresh_access_token(settings, client, session.refresh_token)
    except TokenEndpointError as e:
        audit("refresh_failed", session=session_ref, error=e.error)
        await destroy_session(request)
        raise

    session.store_tokens(token_set)
    await save_session(request)
    audit("refresh_succeeded", session=session_ref)
    return token_set


async def call_with_refresh(
        request: Request,
        operation: typing.Callable[[str, str], typing.Awaitable[T]],
) -> T:
    """
    Runs `operation(access_token, instance_url)`. If the platform rejects the token,
    refreshes once and retries once. A second rejection, a failed refresh, or a disabled
    retry path destroys the session and raises SessionExpiredError.
    """
    settings: Settings = request.app.state.settings
    session = request.state.session
    try:
        return await operation(session.access_token, session.instance_url)
    except StaleCredentialError:
        logger.info("Access token rejected for session %s", fingerprint(request.state.session_id))

    if not settings.REFRESH_RETRY_ENABLED:
        await destroy_session(request)
        raise SessionExpiredError()

    try:
        token_set = await apply_refresh(request)
    except TokenEndpointError as e:
        raise SessionExpiredError() from e

    try:
        return await operation(token_set.access_token, token_set.instance_url)
    except StaleCredentialError as e:
        audit("token_rejected_after_refresh", session=fingerprint(request.state.session_id))
        await destroy_session(request)
        raise SessionExpiredError() from e
