"""Sentry wiring for the API process and the batch jobs.

Sentry stays dormant until ``init_sentry`` succeeds with a configured DSN;
until then scopes and captures do nothing.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from streamvault.core.config import get_settings
from streamvault.core.logger import get_logger


_state: Dict[str, bool] = {"initialized": False}


def _call_sentry_init(**kwargs: Any) -> None:
    sentry_sdk.init(**kwargs)


def init_sentry() -> bool:
    if _state["initialized"]:
        return True

    settings = get_settings()
    dsn = settings.sentry_dsn.strip()
    if not dsn:
        return False

    options = {
        "dsn": dsn,
        "environment": settings.env,
        "release": f"{settings.app_name}@{settings.app_version}",
        "traces_sample_rate": settings.sentry_traces_sample_rate,
        "send_default_pii": False,
        "integrations": [FastApiIntegration()],
    }
    _call_sentry_init(**options)
    _state["initialized"] = True
    get_logger("streamvault.observability").info(
        "sentry_initialized",
        env=options["environment"],
        release=options["release"],
        traces_sample_rate=options["traces_sample_rate"],
    )
    return True


@contextmanager
def sentry_scope(
    *,
    asset_id: Optional[str] = None,
    request_id: Optional[str] = None,
    job: Optional[str] = None,
) -> Iterator[None]:
    """Tag events raised inside the block with the asset, request and job in play."""

    if not _state["initialized"]:
        yield
        return

    tags = {key: value for key, value in (("asset_id", asset_id), ("request_id", request_id), ("job", job)) if value}
    with sentry_sdk.new_scope() as scope:
        for key, value in tags.items():
            scope.set_tag(key, value)
        if tags:
            scope.set_context("streamvault", tags)
        yield


def capture_exception(exc: BaseException) -> None:
    if _state["initialized"]:
        sentry_sdk.capture_exception(exc)


def reset_observability_for_tests() -> None:
    _state["initialized"] = False
