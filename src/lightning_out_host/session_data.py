# src/lightning_out_host/session_data.py

import enum
import time
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .auth_utils import TokenSet


class AuthState(str, enum.Enum):
    ANONYMOUS = "ANONYMOUS"
    PENDING_AUTH = "PENDING_AUTH"
    AUTHENTICATED = "AUTHENTICATED"


class SessionData(BaseModel):
    """
    Represents the data stored server-side for a visitor session.
    Only the signed session ID is stored in the browser cookie.
    """
    # Present only between /login and /oauth/callback, always as a pair
    oauth_state: Optional[str] = None
    code_verifier: Optional[str] = None

    access_token: Optional[str] = None
    instance_url: Optional[str] = None
    refresh_token: Optional[str] = None

    created_at: float = Field(default_factory=time.time)

    @property
    def is_authenticated(self) -> bool:
        # A token is never usable without the instance it was issued for
        return bool(self.access_token and self.instance_url)

    @property
    def is_pending(self) -> bool:
        return bool(self.oauth_state and self.code_verifier)

    @property
    def auth_state(self) -> AuthState:
        if self.is_authenticated:
            return AuthState.AUTHENTICATED
        if self.is_pending:
            return AuthState.PENDING_AUTH
        return AuthState.ANONYMOUS

    @property
    def is_empty(self) -> bool:
        return not any((
            self.oauth_state, self.code_verifier,
            self.access_token, self.instance_url, self.refresh_token,
        ))

    def begin_login(self, oauth_state: str, code_verifier: str) -> None:
        self.clear()
        self.oauth_state = oauth_state
        self.code_verifier = code_verifier

    def consume_pending(self) -> Optional[str]:
        """Drops the state/verifier pair and returns the verifier. Single use."""
        code_verifier = self.code_verifier
        self.oauth_state = None
        self.code_verifier = None
        return code_verifier

    def store_tokens(self, token_set: "TokenSet") -> None:
        self.access_token = token_set.access_token
        self.instance_url = token_set.instance_url
        if token_set.refresh_token:
            self.refresh_token = token_set.refresh_token

    def clear(self) -> None:
        self.oauth_state = None
        self.code_verifier = None
        self.access_token = None
        self.instance_url = None
        self.refresh_token = None
