"""
Structured logging for the support backend.

Every line carries the request id bound by the HTTP middleware; ingestion and
chat code add their own ids (document_id, conversation_id) as keyword fields.
"""
import logging
import sys
import uuid
from typing import Optional

import structlog

from .config import get_settings

REDACTED = "[redacted]"
SENSITIVE_KEYS = frozenset({"api_key", "authorization", "openai_api_key", "password", "database_url"})


def redact_sensitive_fields(_, __, event_dict):
    """Mask credential-bearing fields before rendering."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def bind_request_context(request_id: Optional[str] = None) -> str:
    """Reset per-request context and bind a request id (generated when absent)."""
    request_id = request_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    return request_id


def setup_logging(log_level: str = "INFO", json_logs: bool = False):
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_logs: One JSON object per line when True, colored console output otherwise
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    # uvicorn and library output go through stdlib logging
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive_fields,
        structlog.dev.set_exc_info,
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True, exception_formatter=structlog.dev.plain_traceback))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    return structlog.get_logger()


_settings = get_settings()
logger = setup_logging(log_level=_settings.log_level, json_logs=_settings.log_json)
