# src/lightning_out_host/logging_utils.py
"""
Logging setup and the auth audit trail.

Audit events are one JSON object per line on the `lightning_out_host.audit` logger.
Credential-bearing fields are redacted before they reach any handler: replaced with
"[REDACTED]" normally, or with a short SHA-256 fingerprint when DEBUG_LOGGING is on
so that values can be correlated across log lines without being disclosed.
"""

import hashlib
import json
import logging
import time
from typing import Any, Optional

audit_logger = logging.getLogger("lightning_out_host.audit")

REDACTED = "[REDACTED]"
SENSITIVE_KEYS = frozenset({
    "access_token", "accessToken",
    "refresh_token", "refreshToken",
    "code", "code_verifier", "codeVerifier",
    "state", "oauth_state", "oauthState",
    "client_secret", "clientSecret",
    "session_id", "sessionId",
})

_debug_fingerprints = False


def fingerprint(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return "sha256:" + hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]


def redact(key: str, value: Any) -> Any:
    if key not in SENSITIVE_KEYS or value is None:
        return value
    if _debug_fingerprints:
        return fingerprint(str(value))
    return REDACTED


def audit(event: str, **fields: Any) -> None:
    entry = {"ts": time.time(), "event": event}
    entry.update({key: redact(key, value) for key, value in fields.items()})
    audit_logger.info(json.dumps(entry, default=str))


def configure_logging(debug: bool = False) -> None:
    global _debug_fingerprints
    _debug_fingerprints = debug
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("lightning_out_host").setLevel(logging.DEBUG if debug else logging.INFO)
    # httpx logs full request URLs at INFO; keep it quiet unless debugging
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)
