"""JSON log formatter for log aggregation.

Activate by setting ``API_STRUCTURED_LOGGING=true``; the application then
replaces the default text handlers with a ``StreamHandler`` using this
formatter.

Output schema per line::

    {
        "timestamp": "2026-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "api.access",
        "message": "request completed",
        "request": { ... },          // from RequestLoggingMiddleware
        "firm_id": "firm_123",       // when passed via ``extra``
        "exc_info": "Traceback ..."  // only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Structured ``extra`` fields copied into the payload when present.
_EXTRA_FIELDS: tuple[str, ...] = ("request", "firm_id", "event", "subscription_id", "payment_id")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Render *record* as a single JSON line."""
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
