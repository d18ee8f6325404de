"""
Structured logging for the chat core.

One JSON object per line, with:
- timestamp, level, service, logger
- trace_id / span_id of the active OpenTelemetry span ("no-trace" outside one)
- request_id on HTTP paths ("no-request" on the WebSocket paths)
- connection_id, room_id, user_id, message_id when passed through ``extra``

Usage:
    import logging

    logger = logging.getLogger(__name__)
    logger.info("Joined room", extra={"connection_id": cid, "room_id": rid})
"""
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict
from opentelemetry import trace
from pythonjsonlogger import jsonlogger

# Context keys always present in JSON lines (null when not supplied)
CONTEXT_FIELDS = ("connection_id", "room_id", "user_id", "message_id")

PLAIN_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(trace_id)s %(message)s"
JSON_FORMAT = "%(timestamp)s %(level)s %(service)s %(logger)s %(trace_id)s %(span_id)s %(request_id)s %(message)s"

QUIET_LOGGERS = ("uvicorn.access", "websockets", "sqlalchemy.engine", "opentelemetry")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter stamping the service name and connection context on each line."""

    def __init__(self, service_name: str = "chat-core", *args, **kwargs):
        self.service_name = service_name
        super().__init__(*args, **kwargs)

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = self.service_name
        log_record["logger"] = record.name
        log_record["message"] = record.getMessage()
        for field in CONTEXT_FIELDS:
            log_record[field] = getattr(record, field, None)
        if record.exc_info and "exc_info" not in log_record:
            log_record["exc_info"] = self.formatException(record.exc_info)


class LogContextFilter(logging.Filter):
    """Attach trace/span ids of the current span and a default request id."""

    def filter(self, record: logging.LogRecord) -> bool:
        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            record.trace_id = format(span_context.trace_id, "032x")
            record.span_id = format(span_context.span_id, "016x")
        else:
            record.trace_id = "no-trace"
            record.span_id = None
        if getattr(record, "request_id", None) is None:
            record.request_id = "no-request"
        return True


context_filter = LogContextFilter()


def build_formatter(service_name: str, enable_json: bool) -> logging.Formatter:
    if enable_json:
        return CustomJsonFormatter(service_name=service_name, fmt=JSON_FORMAT)
    return logging.Formatter(PLAIN_FORMAT)


def configure_logging(service_name: str = "chat-core", level: str = "INFO", enable_json: bool = True) -> None:
    """
    Install a single stdout handler on the root logger.

    Args:
        service_name: Stamped on every JSON line
        level: Root log level name
        enable_json: JSON lines (production) or plain text (development)
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(context_filter)
    handler.setFormatter(build_formatter(service_name, enable_json))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))
