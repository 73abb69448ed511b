# src/lightning_out_host/security_headers.py
import typing
from urllib.parse import urlparse

from starlette.middleware.base import BaseHTTPMiddleware

from .config import Settings


def origin_of(url: typing.Optional[str]) -> typing.Optional[str]:
    if not url:
        return None
    parsed = urlparse(url)
    if parsed.scheme != "https" or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def build_content_security_policy(settings: Settings, instance_url: typing.Optional[str] = None) -> str:
    """
    Only the platform/identity-provider origins the widgets need are allowed.
    The instance origin is added when known, so tenant-specific domains outside the
    wildcards still load.
    """
    platform = list(settings.platform_origins)
    instance_origin = origin_of(instance_url)
    if instance_origin and instance_origin not in platform:
        platform.append(instance_origin)
    platform_src = " ".join(platform)

    directives = [
        "default-src 'self'",
        f"script-src 'self' {platform_src}",
        # Lightning components inject inline styles
        f"style-src 'self' 'unsafe-inline' {platform_src}",
        "img-src 'self' data: https:",
        "font-src 'self' data: https:",
        f"connect-src 'self' {platform_src}",
        f"frame-src 'self' {platform_src}",
        f"frame-ancestors {' '.join(settings.FRAME_ANCESTORS)}",
        f"form-action 'self' {settings.login_origin}",
        "base-uri 'self'",
        "object-src 'none'",
    ]
    return "; ".join(directives)


def apply_security_headers(response, policy: str) -> None:
    # Handlers that know the instance origin set their own policy
    if "content-security-policy" not in response.headers:
        response.headers["Content-Security-Policy"] = policy
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, settings: Settings):
        super().__init__(app)
        self.default_policy = build_content_security_policy(settings)

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        apply_security_headers(response, self.default_policy)
        return response
