# src/lightning_out_host/config.py

import logging
from pathlib import Path
from typing import Any, List, Literal, Optional, Union
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# .env is at the project root, two levels up from src/lightning_out_host/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PACKAGE_DIR = CONFIG_FILE_DIR
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

DEFAULT_LOGIN_URL = "https://login.salesforce.com"
PLATFORM_WILDCARD_ORIGINS = ("https://*.salesforce.com", "https://*.force.com")


def _split_list(v: Any, sep: Optional[str]) -> List[str]:
    if v is None:
        return []
    if isinstance(v, str):
        return [item.strip() for item in v.split(sep) if item.strip()]
    if isinstance(v, (list, tuple)):
        return [str(item).strip() for item in v if str(item).strip()]
    raise TypeError(f"Expected a delimited string or a list, got {type(v)}")


class Settings(BaseSettings):
    # === Connected App (identity provider client) ===
    SF_CLIENT_ID: Optional[str] = None
    SF_CLIENT_SECRET: Optional[str] = None
    SF_LOGIN_URL: str = DEFAULT_LOGIN_URL

    # === This application ===
    APP_URL: Optional[str] = None
    REPLIT_HOST: Optional[str] = None
    HOST: str = "0.0.0.0"
    PORT: int = 5000
    ENVIRONMENT: Literal["development", "production"] = "production"

    # === Session Management ===
    SESSION_SECRET: str
    SESSION_COOKIE_NAME: str = "lightningout.sid"
    SESSION_COOKIE_SAMESITE: Literal["lax", "strict", "none"] = "lax"
    SESSION_COOKIE_SECURE: Optional[bool] = None
    SESSION_TTL_SECONDS: int = 30 * 60

    # === Behaviour switches ===
    DEBUG_LOGGING: bool = False
    REFRESH_RETRY_ENABLED: bool = True
    TOKEN_ENDPOINT_TIMEOUT: float = 10.0

    # === Host page ===
    HOST_PAGE_MODE: Literal["embedded", "session_info"] = "embedded"
    SESSION_INFO_INCLUDE_TOKEN: bool = True
    # Allow the env to provide a delimited string; validators turn it into List[str]
    LIGHTNING_COMPONENTS: Union[str, List[str]] = ["c-case-list"]
    FRAME_ANCESTORS: Union[str, List[str]] = ["'self'"]
    CSP_EXTRA_ORIGINS: Union[str, List[str]] = []

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    @field_validator("SESSION_SECRET")
    @classmethod
    def require_session_secret(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("SESSION_SECRET must be a non-empty string")
        return v

    @field_validator("SF_CLIENT_ID", "SF_CLIENT_SECRET", "APP_URL", "REPLIT_HOST", mode="before")
    @classmethod
    def blank_is_unset(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("SF_LOGIN_URL")
    @classmethod
    def check_login_url(cls, v: str) -> str:
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"SF_LOGIN_URL must be an absolute http(s) URL, got {v!r}")
        return v.rstrip("/")

    @field_validator("SESSION_TTL_SECONDS")
    @classmethod
    def check_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("SESSION_TTL_SECONDS must be positive")
        return v

    @field_validator("TOKEN_ENDPOINT_TIMEOUT")
    @classmethod
    def check_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("TOKEN_ENDPOINT_TIMEOUT must be positive")
        return v

    @field_validator("LIGHTNING_COMPONENTS", "CSP_EXTRA_ORIGINS", mode="before")
    @classmethod
    def parse_comma_separated(cls, v: Any) -> List[str]:
        return _split_list(v, ",")

    @field_validator("FRAME_ANCESTORS", mode="before")
    @classmethod
    def parse_space_separated(cls, v: Any) -> List[str]:
        return _split_list(v, None)

    @model_validator(mode="after")
    def check_components(self) -> "Settings":
        if not self.LIGHTNING_COMPONENTS:
            raise ValueError("LIGHTNING_COMPONENTS must name at least one component")
        if not self.FRAME_ANCESTORS:
            raise ValueError("FRAME_ANCESTORS must not be empty")
        return self

    # === Derived properties ===
    @property
    def app_url(self) -> str:
        url = self.APP_URL or self.REPLIT_HOST or f"http://localhost:{self.PORT}"
        return url.lower().rstrip("/")

    @property
    def redirect_uri(self) -> str:
        return f"{self.app_url}/oauth/callback"

    @property
    def authorize_url(self) -> str:
        return f"{self.SF_LOGIN_URL}/services/oauth2/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.SF_LOGIN_URL}/services/oauth2/token"

    @property
    def login_origin(self) -> str:
        parsed = urlparse(self.SF_LOGIN_URL)
        return f"{parsed.scheme}://{parsed.netloc}"

    @property
    def platform_origins(self) -> List[str]:
        origins = list(PLATFORM_WILDCARD_ORIGINS)
        for origin in [self.login_origin, *self.CSP_EXTRA_ORIGINS]:
            if origin not in origins:
                origins.append(origin)
        return origins

    @property
    def cookie_secure(self) -> bool:
        # SameSite=None is rejected by browsers without Secure
        if self.SESSION_COOKIE_SAMESITE == "none":
            return True
        if self.SESSION_COOKIE_SECURE is not None:
            return self.SESSION_COOKIE_SECURE
        return self.app_url.startswith("https://")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    def configuration_status(self) -> dict:
        """Which settings are present, for the landing page and startup log. Never the values."""
        return {
            "SF_CLIENT_ID": bool(self.SF_CLIENT_ID),
            "SF_CLIENT_SECRET": bool(self.SF_CLIENT_SECRET),
            "APP_URL": bool(self.APP_URL or self.REPLIT_HOST),
            "SESSION_SECRET": True,
        }


def load_settings(**overrides: Any) -> Settings:
    """
    Builds the immutable Settings once at process start.
    Any validation failure is re-raised as ConfigurationError naming the offending fields.
    """
    if not overrides:
        if ENV_FILE_PATH.exists():
            load_dotenv(dotenv_path=ENV_FILE_PATH, override=False)
            logger.info("Loaded .env file from: %s", ENV_FILE_PATH)
        else:
            logger.info(".env file not found at %s. Relying on environment variables.", ENV_FILE_PATH)
    try:
        return Settings(**overrides)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) or "settings" for err in e.errors()})
        raise ConfigurationError(
            f"Invalid configuration: {', '.join(fields)}",
            fields=fields,
        ) from e
