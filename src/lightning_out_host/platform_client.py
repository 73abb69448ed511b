# src/lightning_out_host/platform_client.py
import typing

import httpx
from fastapi import status

from .errors import StaleCredentialError


async def fetch_user_info(
        client: httpx.AsyncClient,
        access_token: str,
        instance_url: str,
) -> typing.Dict[str, typing.Any]:
    """Calls the instance's OpenID userinfo endpoint on behalf of the signed-in user."""
    response = await client.get(
        f"{instance_url.rstrip('/')}/services/oauth2/userinfo",
        headers={
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        },
    )
    if response.status_code in (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN):
        raise StaleCredentialError(response.status_code)
    response.raise_for_status()
    return response.json()
