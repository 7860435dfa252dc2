"""Structured logging configuration with correlation IDs and PII redaction."""

import logging
import re
import sys
from contextvars import ContextVar
from typing import Any
from uuid import uuid4

import orjson
import structlog

from inference_orchestrator.config import settings

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
user_id_var: ContextVar[str] = ContextVar("user_id", default="")
capability_var: ContextVar[str] = ContextVar("capability", default="")


class PIIRedactor:
    """Redact PII from log messages."""

    EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b")
    PHONE_PATTERN = re.compile(r"\b(?:\+?1[-.]?)?\(?[0-9]{3}\)?[-.]?[0-9]{3}[-.]?[0-9]{4}\b")
    API_KEY_PATTERN = re.compile(r"\b(sk-|pk-|api[_-]?key[\s=:]+)[\w-]{20,}\b", re.IGNORECASE)

    @classmethod
    def redact(cls, value: Any) -> Any:
        """Redact PII from value."""
        if not isinstance(value, str):
            return value

        value = cls.EMAIL_PATTERN.sub("[EMAIL_REDACTED]", value)
        value = cls.PHONE_PATTERN.sub("[PHONE_REDACTED]", value)
        value = cls.API_KEY_PATTERN.sub("[API_KEY_REDACTED]", value)
        return value


def add_context_vars(logger, method_name, event_dict):
    """Add context variables to log events."""
    if request_id := request_id_var.get():
        event_dict["request_id"] = request_id
    if user_id := user_id_var.get():
        event_dict["user_id"] = user_id
    if capability := capability_var.get():
        event_dict["capability"] = capability
    return event_dict


def redact_sensitive_data(logger, method_name, event_dict):
    """Redact sensitive data from logs."""
    for key, value in event_dict.items():
        if key in ("timestamp", "level", "logger", "request_id"):
            continue
        if isinstance(value, str):
            event_dict[key] = PIIRedactor.redact(value)
        elif isinstance(value, dict):
            event_dict[key] = {k: PIIRedactor.redact(v) for k, v in value.items()}
    return event_dict


def _orjson_dumps(obj: Any, **kwargs: Any) -> str:
    return orjson.dumps(obj, default=kwargs.get("default")).decode()


def setup_logging(
    level: str | None = None,
    format: str | None = None,
    redact_pii: bool = True,
) -> None:
    """Configure structured logging."""
    log_level = level or settings.log_level
    log_format = format or settings.log_format

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_context_vars,
    ]

    if redact_pii and settings.is_production:
        processors.append(redact_sensitive_data)

    processors.extend(
        [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
        ]
    )

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer(serializer=_orjson_dumps))
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class RequestContext:
    """Context manager for request-scoped logging."""

    def __init__(
        self,
        request_id: str | None = None,
        user_id: str | None = None,
        capability: str | None = None,
    ):
        self.request_id = request_id or str(uuid4())
        self.user_id = user_id
        self.capability = capability
        self._tokens: list[tuple[ContextVar, Any]] = []

    def __enter__(self):
        self._tokens.append((request_id_var, request_id_var.set(self.request_id)))
        if self.user_id:
            self._tokens.append((user_id_var, user_id_var.set(self.user_id)))
        if self.capability:
            self._tokens.append((capability_var, capability_var.set(self.capability)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False


def audit_log(
    action: str,
    resource: str,
    result: str,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Create an audit log entry for administrative configuration changes."""
    logger = get_logger("audit")
    logger.info(
        "audit_event",
        action=action,
        resource=resource,
        result=result,
        metadata=metadata or {},
        audit=True,
    )
