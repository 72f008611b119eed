"""
Structured logging for Cloud Run
Outputs JSON-formatted logs for Google Cloud Logging
"""

import logging
import json
import sys
from datetime import datetime, timezone


class JsonFormatter(logging.Formatter):
    """One JSON object per line; `extra={"context": {...}}` is merged in"""

    def format(self, record):
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "function": record.funcName,
            "line": record.lineno
        }

        context = getattr(record, "context", None)
        if isinstance(context, dict):
            for key, value in context.items():
                log_obj.setdefault(key, value)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def get_logger(name: str) -> logging.Logger:
    """Get configured logger for Cloud Logging"""

    logger = logging.getLogger(name)

    # Only add handler if not already added (prevents duplicate logs)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

        # Prevent logs from propagating to the root logger (avoids duplicates)
        logger.propagate = False

    return logger
