"""
Security-focused structured logging utilities for RecipeShare.

This module provides JSON-based logging helpers to ensure that
only non-sensitive, high-level security events are recorded.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional


logger = logging.getLogger("recipeshare.security")
if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter("%(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


# Never written to the security log, even when passed in ``extra``.
SENSITIVE_FIELDS = {
    "content",
    "description",
    "ingredients",
    "instructions",
    "file_contents",
    "authorization",
    "cookie",
}


def mask_ip(ip: Optional[str]) -> Optional[str]:
    """
    Mask the last octet of an IPv4 address to avoid logging full client IPs.

    Args:
        ip: Original IP address string.

    Returns:
        Masked IP address or None if input is empty.
    """
    if not ip:
        return None

    if ip == "unknown":
        return ip

    parts = ip.split(".")
    if len(parts) == 4:
        parts[-1] = "x"
        return ".".join(parts)

    # IPv6 and anything else is not logged in detail
    return "***"


def log_security_event(
    event: str,
    *,
    ip: Optional[str] = None,
    action: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Log a structured security event as JSON.

    This function MUST NOT receive or log:
    - Recipe or comment bodies
    - Uploaded file contents
    - Credentials, cookies or auth headers

    Args:
        event: Name of the security event (e.g., "rate_limit_triggered").
        ip: Client IP address (will be masked before logging).
        action: Rate-limited action name, if any (e.g., "comment").
        extra: Additional non-sensitive fields to include.
    """
    payload: Dict[str, Any] = {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    masked_ip = mask_ip(ip)
    if masked_ip is not None:
        payload["ip"] = masked_ip

    if action is not None:
        payload["action"] = action

    if extra:
        payload.update(
            {k: v for k, v in extra.items() if k.lower() not in SENSITIVE_FIELDS}
        )

    try:
        logger.info(json.dumps(payload, separators=(",", ":"), default=str))
    except Exception:
        # Logging should never break application flow
        pass
