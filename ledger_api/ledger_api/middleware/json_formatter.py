"""Single-line JSON log output, enabled by ``LEDGER_STRUCTURED_LOGGING=true``.

Besides the standard fields, a record may carry structured context
passed through ``extra=``:

* ``request`` -- the access log entry from :mod:`ledger_api.middleware.logging`.
* ``webhook_event`` -- id and type of the Stripe event being reconciled.
* ``trace_id`` / ``span_id`` -- injected by ``TraceLoggingFilter``.

Example::

    {"timestamp": "2025-10-01T12:34:56.789012+00:00", "level": "ERROR",
     "logger": "ledger_api.services.webhook_reconciler",
     "message": "Webhook event evt_1 (invoice.paid) failed; ...",
     "trace_id": "4bf9...", "webhook_event": {"id": "evt_1", "type": "invoice.paid"},
     "exc_info": "Traceback ..."}
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Scalar attributes copied when present and non-empty.
_CONTEXT_FIELDS = ("trace_id", "span_id")

# Structured ``extra=`` payloads copied as nested objects.
_STRUCTURED_EXTRAS = ("request", "webhook_event")


class JSONFormatter(logging.Formatter):
    """Render log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value:
                entry[name] = value
        for name in _STRUCTURED_EXTRAS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info and record.exc_info[0] is not None:
            entry["exc_info"] = "".join(traceback.format_exception(*record.exc_info))
        elif record.stack_info:
            entry["stack_info"] = record.stack_info

        return json.dumps(entry, default=str, ensure_ascii=False)
