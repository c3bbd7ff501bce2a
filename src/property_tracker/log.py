from __future__ import annotations

import json
import logging
import sys
from typing import Optional, TextIO

# Structured extras that callers pass through `extra=`; emitted as JSON keys.
STRUCTURED_KEYS = (
    "property_id",
    "source_name",
    "source_listing_id",
    "observed_at",
    "run_id",
    "page_number",
    "fields_changed",
    "late_fields",
    "created",
    "attempts",
    "error",
)


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in STRUCTURED_KEYS:
            if hasattr(record, key):
                payload[key] = getattr(record, key)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(
    level: Optional[str] = None,
    json_lines: bool = False,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    root = logging.getLogger("property_tracker")
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(stream or sys.stderr)
    if json_lines:
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    root.addHandler(handler)
    root.setLevel((level or "INFO").upper())
    return root
