# src/lightning_out_host/errors.py

from typing import List, Optional

from fastapi import status


class ConfigurationError(Exception):
    """Raised when the process environment cannot produce valid Settings. Fatal at startup."""

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        self.fields = fields or []
        super().__init__(message)


class OAuthProtocolError(Exception):
    """A malformed or forged OAuth callback. Safe to show the message to the user."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class TokenEndpointError(Exception):
    """
    The identity provider's token endpoint failed, either with an OAuth error payload,
    an unexpected response, a network failure or a timeout.
    `error` and `description` carry only what the provider reported publicly.
    """

    def __init__(
        self,
        error: str,
        description: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.error = error
        self.description = description
        self.status_code = status_code
        super().__init__(f"{error}: {description}" if description else error)


class StaleCredentialError(Exception):
    """The platform rejected the access token held in the session."""

    def __init__(self, status_code: int = status.HTTP_401_UNAUTHORIZED):
        self.status_code = status_code
        super().__init__(f"Access token rejected by the platform (HTTP {status_code})")


class SessionExpiredError(Exception):
    """The session could not be recovered and has been destroyed; the user must log in again."""
