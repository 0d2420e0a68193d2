"""Emit log records as JSON lines.

All modules log with the standard library and pass structured context as the
only argument, eg `logit.info("creating cluster", {"namespace": "foo"})`. The
formatter here merges that dictionary into the JSON document.

"""

import json
import logging
import sys
from datetime import UTC, datetime


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        context = record.args if isinstance(record.args, dict) else {}
        data = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "severity": record.levelname,
            "logger": record.name,
            "message": str(record.msg) if context else record.getMessage(),
        }

        # Merge the structured context into the document.
        for key, value in context.items():
            data.setdefault(key, value)

        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def setup(level: str) -> None:
    """Send all log records with severity `level` or higher to stdout as JSON."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    # The HTTP client is too chatty at DEBUG level.
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)
