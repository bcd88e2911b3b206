"""
Logging configuration.

structlog on top of the stdlib root logger: coloured console output in
development, JSON lines otherwise. Keys that look like credentials are
redacted before rendering.
"""
import logging
import sys
from typing import Any, MutableMapping

import structlog

from clusterdeck.config import Settings
from clusterdeck.core.request_context import request_id_var

REDACT_KEYS = {"password", "passwd", "secret", "token", "authorization", "api_key", "access_key", "secret_key", "kubeconfig", "value"}

_CONFIGURED = False


def _redact(_: Any, __: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key in list(event_dict):
        if key.lower() in REDACT_KEYS and event_dict[key]:
            event_dict[key] = "***REDACTED***"
    return event_dict


def _add_request_id(_: Any, __: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    rid = request_id_var.get()
    if rid and "request_id" not in event_dict:
        event_dict["request_id"] = rid
    return event_dict


def setup_logging(settings: Settings) -> None:
    """Configure stdlib logging and structlog once per process."""
    global _CONFIGURED

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    if not _CONFIGURED:
        for h in list(root.handlers):
            root.removeHandler(h)
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)

        # route server loggers through the root handler
        for log_name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
            lg = logging.getLogger(log_name)
            lg.handlers = []
            lg.propagate = True

    renderer: Any
    if settings.log_json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=settings.is_debug and sys.stdout.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_request_id,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _redact,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
    structlog.contextvars.bind_contextvars(service="clusterdeck", env=settings.app_env)
    _CONFIGURED = True
