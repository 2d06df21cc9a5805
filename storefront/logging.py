from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from storefront.context import get_correlation_id
from storefront.core.config import Settings, get_settings


_PRICING_FIELDS = (
    "product_id",
    "tier_count",
    "previous_tier_count",
    "rules",
    "quantity",
    "pricing_mode",
    "target_mode",
    "outcome",
    "timed_out",
)
_HTTP_FIELDS = ("method", "path", "status_code", "duration_ms")
_KNOWN_FIELDS = frozenset(_PRICING_FIELDS + _HTTP_FIELDS + ("event_name", "error"))
_MAX_ERROR_LENGTH = 500


def _record_factory_with_correlation(factory):  # type: ignore[no-untyped-def]
    def build(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = factory(*args, **kwargs)
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return record

    build._storefront_correlation = True  # type: ignore[attr-defined]
    return build


def structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _KNOWN_FIELDS:
            fields[key] = value

    error_value = fields.get("error")
    if isinstance(error_value, str):
        fields["error"] = error_value[:_MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = structured_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


class TextLogFormatter(logging.Formatter):
    """Single-line `key=value` output for local runs."""

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            datetime.now(timezone.utc).strftime("%H:%M:%S"),
            record.levelname,
            record.name,
            record.getMessage(),
        ]
        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            parts.append(f"correlation_id={correlation_id}")
        parts.extend(f"{key}={value}" for key, value in sorted(structured_fields(record).items()))

        line = " ".join(str(part) for part in parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(settings: Settings | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_storefront_configured", False):
        return

    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(TextLogFormatter() if settings.log_format == "text" else JsonLogFormatter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    current_factory = logging.getLogRecordFactory()
    if not getattr(current_factory, "_storefront_correlation", False):
        logging.setLogRecordFactory(_record_factory_with_correlation(current_factory))
    root_logger.addHandler(handler)
    root_logger._storefront_configured = True  # type: ignore[attr-defined]
