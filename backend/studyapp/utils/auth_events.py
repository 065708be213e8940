"""Structured logging for authentication steps."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from ..config import settings

_LOGGER = logging.getLogger("studyapp.auth")

_REDACTED_KEYS = {"password", "new_password", "current_password", "token", "password_hash"}


def _clean(details: Optional[dict]) -> dict:
    if not details:
        return {}
    return {k: ("***" if k in _REDACTED_KEYS else v) for k, v in details.items()}


def log_auth_event(email: str, step: str, details: Optional[dict[str, Any]] = None, level: int = logging.INFO) -> None:
    """Emit one JSON line describing an authentication step.

    `step` is an upper-case marker such as `REGISTRATION_START` or
    `LOGIN_INVALID_PASSWORD`. Secret-looking keys in `details` are masked.
    """
    record = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "email": email or "",
        "step": step.upper(),
        "details": _clean(details),
        "environment": settings.ENV,
    }
    _LOGGER.log(level, "auth_event %s", json.dumps(record, ensure_ascii=True, default=str))
