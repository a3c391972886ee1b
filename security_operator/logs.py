"""Logging setup and reconcile-scoped logger adapter."""

import json
import logging
from datetime import datetime, timezone

from security_operator.config import Settings

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        key = getattr(record, "reconcile_key", None)
        if key:
            payload["key"] = key
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload)


class ReconcileLogAdapter(logging.LoggerAdapter):
    """Logger adapter that includes the reconcile key in all log messages."""

    def process(self, msg, kwargs):
        key = self.extra.get("key", "-")
        kwargs.setdefault("extra", {})["reconcile_key"] = key
        return f"[{key}] {msg}", kwargs


def setup_logging(settings: Settings) -> None:
    """Configure the root logger from settings (idempotent)."""
    handler = logging.StreamHandler()
    if settings.log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logging.basicConfig(level=settings.log_level, handlers=[handler], force=True)
    # kubernetes client logs every request at DEBUG
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
