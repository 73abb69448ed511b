# src/lightning_out_host/auth_utils.py
import base64
import hashlib
import logging
import secrets
import typing
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ValidationError

from .config import Settings
from .errors import TokenEndpointError
from .logging_utils import audit

logger = logging.getLogger(__name__)


class TokenSet(BaseModel):
    access_token: str
    instance_url: str
    refresh_token: typing.Optional[str] = None
    id: typing.Optional[str] = None
    issued_at: typing.Optional[str] = None
    scope: typing.Optional[str] = None
    token_type: typing.Optional[str] = None


# --- PKCE / CSRF material ---

def generate_state() -> str:
    return secrets.token_hex(32)


def generate_code_verifier() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")


def derive_code_challenge(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


# --- Authorization Code Flow Functions ---

def build_authorize_url(settings: Settings, state: str, code_challenge: str) -> str:
    """
    Builds the identity provider's authorization URL.
    The 'state' and verifier are generated and stored in the session by the /login route.
    """
    query = urlencode({
        "response_type": "code",
        "client_id": settings.SF_CLIENT_ID,
        "redirect_uri": settings.redirect_uri,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    })
    return f"{settings.authorize_url}?{query}"


def _parse_error_payload(response: httpx.Response) -> TokenEndpointError:
    error = "token_request_failed"
    description = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error") or error
        description = payload.get("error_description")
    return TokenEndpointError(error, description, status_code=response.status_code)


async def post_token_request(
        settings: Settings,
        client: httpx.AsyncClient,
        form: typing.Dict[str, str],
) -> TokenSet:
    """
    POSTs a form-encoded grant to the token endpoint and parses the token response.
    Every failure mode surfaces as TokenEndpointError.
    """
    grant_type = form.get("grant_type")
    data = {k: v for k, v in form.items() if v is not None}
    try:
        response = await client.post(
            settings.token_url,
            data=data,
            headers={"Accept": "application/json"},
            timeout=settings.TOKEN_ENDPOINT_TIMEOUT,
        )
    except httpx.TimeoutException as e:
        logger.error("Token endpoint timed out (grant_type=%s): %s", grant_type, e)
        raise TokenEndpointError("timeout", "The identity provider did not respond in time.") from e
    except httpx.RequestError as e:
        logger.error("Token endpoint request failed (grant_type=%s): %s", grant_type, e)
        raise TokenEndpointError("request_failed", "Could not reach the identity provider.") from e

    if response.is_error:
        err = _parse_error_payload(response)
        logger.error(
            "Token endpoint returned HTTP %s (grant_type=%s): %s - %s",
            response.status_code, grant_type, err.error, err.description,
        )
        raise err

    try:
        payload = response.json()
    except ValueError as e:
        raise TokenEndpointError("invalid_token_response", "Token response was not JSON.",
                                 status_code=response.status_code) from e
    if not isinstance(payload, dict):
        raise TokenEndpointError("invalid_token_response", "Token response was not a JSON object.",
                                 status_code=response.status_code)
    if "error" in payload:
        raise TokenEndpointError(payload["error"], payload.get("error_description"),
                                 status_code=response.status_code)
    if not payload.get("access_token") or not payload.get("instance_url"):
        raise TokenEndpointError("invalid_token_response",
                                 "Token response is missing access_token or instance_url.",
                                 status_code=response.status_code)
    try:
        return TokenSet.model_validate(payload)
    except ValidationError as e:
        raise TokenEndpointError("invalid_token_response", "Token response has malformed fields.",
                                 status_code=response.status_code) from e


async def exchange_code_for_tokens(
        settings: Settings,
        client: httpx.AsyncClient,
        code: str,
        code_verifier: str,
) -> TokenSet:
    """
    Exchanges the authorization code for tokens. The redirect_uri must match the one
    sent at login start, and the unhashed verifier lets the provider check the challenge.
    """
    token_set = await post_token_request(settings, client, {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": settings.SF_CLIENT_ID,
        "client_secret": settings.SF_CLIENT_SECRET,
        "redirect_uri": settings.redirect_uri,
        "code_verifier": code_verifier,
    })
    audit("token_exchanged", instance_url=token_set.instance_url,
          refresh_token_issued=token_set.refresh_token is not None)
    return token_set
