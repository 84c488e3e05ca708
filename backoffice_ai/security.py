"""
Passkey authentication for the /ai endpoints.

When ADMIN_API_KEY is configured every /ai request must carry it in the
X-Api-Key header. Failures are logged as structured security events with
the client IP and a short hash of the key that was offered, never the
raw value.
"""

import hashlib
import logging
import secrets
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request

from . import config

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Api-Key"


def hash_passkey(passkey: str) -> str:
    """Create a SHA-256 hash of the passkey for logging (never log raw passkey)."""
    return hashlib.sha256(passkey.encode()).hexdigest()[:8]


def get_client_ip(request: Request) -> str:
    """Extract real client IP from request, handling proxies and load balancers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # X-Forwarded-For can contain multiple IPs, use the first one
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return str(request.client.host) if request.client else "unknown"


def log_security_event(
    event_type: str,
    ip_address: str,
    details: Dict[str, Any],
    severity: str = "WARNING"
) -> None:
    log_entry = {
        "event": event_type,
        "ip": ip_address,
        "severity": severity,
        **details
    }

    if severity == "ERROR":
        logger.error(f"[SECURITY] {log_entry}")
    else:
        logger.warning(f"[SECURITY] {log_entry}")


def validate_api_key(request: Request, expected_key: Optional[str] = None) -> bool:
    """
    Check the X-Api-Key header against ADMIN_API_KEY.

    Returns True when the key matches or no key is configured.

    Raises:
        HTTPException: 401 when the header is missing or wrong.
    """
    expected = expected_key if expected_key is not None else config.ADMIN_API_KEY
    if not expected:
        return True

    client_ip = get_client_ip(request)
    provided = request.headers.get(API_KEY_HEADER)

    if not provided:
        log_security_event(
            "auth_failure_missing_api_key",
            client_ip,
            {
                "path": request.url.path,
                "user_agent": request.headers.get("User-Agent", "unknown")
            },
        )
        raise HTTPException(status_code=401, detail="Authentication required")

    if not secrets.compare_digest(provided, expected):
        log_security_event(
            "auth_failure_invalid_api_key",
            client_ip,
            {
                "path": request.url.path,
                "provided_hash": hash_passkey(provided),
            },
            severity="ERROR"
        )
        raise HTTPException(status_code=401, detail="Invalid API key")

    return True
