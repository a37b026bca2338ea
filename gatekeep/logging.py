"""structlog setup shared by every gatekeep module.

Events are snake_case with keyword context. Credential material (OTP codes,
TOTP secrets, refresh-token values) is fully masked before rendering;
account identifiers such as email keep a short prefix and suffix so log
lines stay traceable. Keys ending in ``_id`` are identifiers and pass
through untouched.
"""

from __future__ import annotations

import contextlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_CREDENTIAL_KEYS = frozenset({"password", "secret", "token", "otp", "code", "authorization"})
_IDENTITY_KEYS = frozenset({"email"})
_MASK = "***"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


@contextlib.contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation id for one request and restore the previous one after."""
    cid = correlation_id or str(uuid.uuid4())
    token = correlation_id_var.set(cid)
    try:
        yield cid
    finally:
        correlation_id_var.reset(token)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask_partial(value: str) -> str:
    if len(value) > 4:
        return value[:2] + _MASK + value[-2:]
    return _MASK


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if key in ("event", "correlation_id") or lower_key.endswith("_id"):
            continue
        if not isinstance(value, str):
            continue
        if any(marker in lower_key for marker in _CREDENTIAL_KEYS):
            event_dict[key] = _MASK
        elif any(marker in lower_key for marker in _IDENTITY_KEYS):
            event_dict[key] = _mask_partial(value)
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, development_mode: bool = False
) -> None:
    """Install the processor chain; runs once on import from the ``LOG_*`` variables."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
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


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
