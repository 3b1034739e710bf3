from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, MutableMapping, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's ``X-Request-ID`` or mint one for this request."""
    value = correlation_id or uuid.uuid4().hex
    _request_id.set(value)
    return value


def _add_correlation_id(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]):
    request_id = _request_id.get()
    if request_id:
        event_dict.setdefault("correlation_id", request_id)
    return event_dict


# Key fragments whose values are credentials or addresses
_MASKED_KEY_PARTS = ("password", "secret", "token", "api_key", "authorization", "email")
# Compact JWS: three base64url segments, header always starts with '{"' -> "eyJ"
_BEARER_IN_TEXT = re.compile(r"eyJ[\w-]+\.[\w-]+\.[\w-]+")


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]):
    """Mask credential-keyed values and scrub bearer tokens quoted in free text."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        if any(part in key.lower() for part in _MASKED_KEY_PARTS):
            event_dict[key] = _mask(value)
        elif "eyJ" in value:
            event_dict[key] = _BEARER_IN_TEXT.sub("[token]", value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must not reach a client
_LEAKY_FRAGMENTS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\b(select|insert|update|delete)\b.{0,80}",
        r"\b(psycopg|postgres(ql)?|redis)\b[^.;]*",
        r"connection\s+.*\s+(failed|refused|timeout|timed out)",
        r"/(?:home|var|etc|usr|opt|tmp|srv)/\S+",
        r"\b(password|secret|token|api.?key)\s*[:=]\s*\S+",
        r"traceback \(most recent call last\).*",
    )
)

MAX_CLIENT_MESSAGE = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Make an internal error message safe to put in an error envelope."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _LEAKY_FRAGMENTS:
        error = pattern.sub(replacement, error)
    if len(error) > MAX_CLIENT_MESSAGE:
        error = error[: MAX_CLIENT_MESSAGE - 3] + "..."
    return error
