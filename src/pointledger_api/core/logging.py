from __future__ import annotations

import json
import logging
import sys
from logging import LogRecord
from typing import Any, Dict, Mapping

from loguru import logger
from opentelemetry import trace


_RESERVED_LOG_RECORD_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}

# Extra keys that carry a customer's phone number or chat identity.
_MASKED_KEYS = frozenset({"phone", "phone_number", "external_identity"})

_TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level> | {extra}"
)


def mask_identity(value: Any) -> str:
    """Keep the last four characters of a phone-like identity."""

    text = str(value or "")
    if len(text) <= 4:
        return "*" * len(text)
    return "*" * (len(text) - 4) + text[-4:]


def _scrub(extra: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: mask_identity(value) if key in _MASKED_KEYS else value for key, value in extra.items()}


class InterceptHandler(logging.Handler):
    """Route stdlib records (uvicorn, sqlalchemy, apscheduler) into Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = record.msg if isinstance(record.msg, str) else str(record.msg)

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_ATTRS
        }

        safe_message = message.replace("{", "{{").replace("}", "}}")

        bound_logger = logger.bind(**extra) if extra else logger
        bound_logger.opt(depth=6, exception=record.exc_info).log(level, safe_message)


def _serialize_record(record: Dict[str, Any], metadata: Dict[str, str]) -> str:
    span = trace.get_current_span()
    span_context = span.get_span_context() if span else None

    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        "service": metadata.get("service_name", "unknown"),
        "environment": metadata.get("environment", "unknown"),
        "version": metadata.get("version", "unknown"),
    }

    if span_context and span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    if record["extra"]:
        payload.update(_scrub(record["extra"]))

    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)

    return json.dumps(payload, default=str)


def _patch_text_record(record: Dict[str, Any]) -> None:
    record["extra"] = _scrub(record["extra"])


def configure_logging(
    *,
    service_name: str,
    environment: str,
    version: str,
    level: str = "INFO",
    json_output: bool = True,
) -> None:
    """Configure Loguru + stdlib logging.

    JSON lines go to stdout for log shippers; ``json_output=False`` gives a
    colourised console format for local development. Phone numbers bound as
    log extras are masked in both modes.
    """

    logger.remove()
    metadata = {"service_name": service_name, "environment": environment, "version": version}

    if json_output:

        def _sink(message: "logger.Message") -> None:
            sys.stdout.write(_serialize_record(message.record, metadata) + "\n")

        logger.add(_sink, level=level.upper(), backtrace=False, diagnose=False)
    else:
        logger.configure(patcher=_patch_text_record)
        logger.add(sys.stderr, level=level.upper(), format=_TEXT_FORMAT, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


__all__ = ["InterceptHandler", "configure_logging", "mask_identity"]
