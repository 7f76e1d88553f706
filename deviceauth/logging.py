from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request-scoped id attached to every log line emitted while serving a request
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Any log key containing one of these fragments is masked before rendering
_SENSITIVE_KEYS = ("token", "secret", "password", "authorization")

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` to the current context, generating one if absent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that masks token and secret values.

    Bearer and refresh tokens grant access on possession alone, so the value
    is replaced wholesale instead of keeping a prefix for debugging.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or not value:
            continue
        if any(fragment in key.lower() for fragment in _SENSITIVE_KEYS):
            event_dict[key] = "[redacted]"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    Console rendering is used when ``json_output`` is off or ``dev_mode`` is
    on; otherwise each event is one JSON object per line.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        redact_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output and not dev_mode:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))

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
