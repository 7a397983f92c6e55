import json
import logging

from opentelemetry import trace

from chunkstore.config import settings


def _build_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger


request_logger = _build_logger("chunkstore.request")
audit_logger = _build_logger("chunkstore.audit")
store_logger = _build_logger("chunkstore.store")


def trace_id() -> str | None:
    span_context = trace.get_current_span().get_span_context()
    if not span_context or not span_context.is_valid:
        return None
    return format(span_context.trace_id, "032x")


def _emit(logger: logging.Logger, level: int, payload: dict) -> None:
    payload.setdefault("trace_id", trace_id())
    logger.log(level, json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))


def log_event(payload: dict) -> None:
    _emit(request_logger, logging.INFO, payload)


def audit_event(payload: dict) -> None:
    _emit(audit_logger, logging.INFO, payload)


def store_event(payload: dict, level: int = logging.INFO) -> None:
    _emit(store_logger, level, payload)
