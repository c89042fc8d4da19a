"""Credential masking for log output.

Config records carry the broker password and the sync API key, and sync
requests carry them again as headers. Anything headed for a log line goes
through :func:`redact_for_log` first.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

_MASK = "<redacted>"

# config field names plus the HTTP header names built by sync.auth_headers
_SECRET_KEYS: frozenset[str] = frozenset({"password", "api_key", "apikey", "x-api-key", "authorization"})


def _is_secret(key: Any) -> bool:
    return str(key).lower() in _SECRET_KEYS


def redact_for_log(value: Any, *, max_string: int = 256) -> Any:
    """Copy of *value* with credentials masked and long strings cut short.

    Empty credentials stay visible so a log shows that none was set.
    """
    if isinstance(value, Mapping):
        return {
            str(k): _MASK if _is_secret(k) and v else redact_for_log(v, max_string=max_string)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_for_log(v, max_string=max_string) for v in value]
    if isinstance(value, str) and len(value) > max_string:
        return f"{value[:max_string]}…<truncated>"
    return value
