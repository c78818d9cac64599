"""structlog configuration shared by the API, the batch CLI and the pipelines.

Every event carries ``request_id`` and ``run_id`` keys (``None`` when unbound)
so API and batch logs can be filtered on the same fields.
"""

from __future__ import annotations

import logging
from typing import Any, MutableMapping

import structlog

from streamvault.core.config import get_settings


_CONTEXT_KEYS = ("request_id", "run_id")
_configured = False


def _ensure_context_keys(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key in _CONTEXT_KEYS:
        event_dict.setdefault(key, None)
    return event_dict


def _renderer(json_output: bool) -> Any:
    if json_output:
        return structlog.processors.JSONRenderer(sort_keys=True)
    return structlog.dev.ConsoleRenderer(colors=False)


def configure_logging() -> None:
    global _configured
    if _configured:
        return

    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format="%(message)s")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _ensure_context_keys,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            _renderer(settings.log_json),
        ],
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def bind_request_context(request_id: str, caller_id: str | None = None) -> None:
    """Attach HTTP request identifiers to every log line emitted in this context."""

    structlog.contextvars.bind_contextvars(request_id=request_id, caller_id=caller_id)


def bind_run_context(run_id: str, job: str) -> None:
    structlog.contextvars.bind_contextvars(run_id=run_id, job=job)


def bind_asset_context(asset_id: str):
    """Context manager adding ``asset_id`` to log lines for the duration of one asset operation."""

    return structlog.contextvars.bound_contextvars(asset_id=asset_id)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
