"""Persistence helpers for the durable work queue."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from streamvault.core.clock import ensure_utc
from streamvault.pipeline.backoff import compute_backoff_seconds
from streamvault.pipeline.operations import QueueAction, parse_action, validate_payload
from streamvault.storage.models import QueueItem


ERROR_LOG_MAX_CHARS = 20000


def enqueue(
    session: Session,
    *,
    asset_id: str,
    action: str | QueueAction,
    now: datetime,
    priority: int = 5,
    payload: Optional[Mapping[str, Any]] = None,
    max_attempts: int = 3,
) -> QueueItem:
    if not str(asset_id or "").strip():
        raise ValueError("asset_id_required")
    normalized_action = parse_action(action)
    data = validate_payload(normalized_action, payload)
    if max_attempts <= 0:
        raise ValueError("max_attempts_must_be_positive")

    item = QueueItem(
        asset_id=str(asset_id),
        action=normalized_action.value,
        priority=int(priority),
        attempts=0,
        max_attempts=int(max_attempts),
        next_attempt_at=now,
        created_at=now,
    )
    item.payload = data
    session.add(item)
    session.flush()
    return item


def select_due_item_ids(session: Session, *, now: datetime, limit: int) -> List[int]:
    """Due, unparked items ordered by priority then FIFO."""

    stmt = (
        select(QueueItem.id)
        .where(
            QueueItem.next_attempt_at <= now,
            QueueItem.attempts < QueueItem.max_attempts,
            QueueItem.parked_at.is_(None),
        )
        .order_by(QueueItem.priority.asc(), QueueItem.created_at.asc(), QueueItem.id.asc())
        .limit(max(1, int(limit)))
    )
    return [int(item_id) for item_id in session.scalars(stmt).all()]


def is_due(item: QueueItem, *, now: datetime) -> bool:
    if item.is_parked or item.attempts >= item.max_attempts:
        return False
    return ensure_utc(item.next_attempt_at) <= ensure_utc(now)


def append_error(item: QueueItem, *, now: datetime, message: str) -> None:
    line = f"[{ensure_utc(now).isoformat()}] attempt {item.attempts}: {message}"
    combined = f"{item.error_log}\n{line}" if item.error_log else line
    if len(combined) > ERROR_LOG_MAX_CHARS:
        combined = combined[-ERROR_LOG_MAX_CHARS:]
    item.error_log = combined


def record_failure(
    item: QueueItem,
    *,
    now: datetime,
    message: str,
    permanent: bool,
    backoff_base_seconds: int,
    backoff_cap_seconds: int,
    park_seconds: int,
) -> bool:
    """Count one failed attempt; returns True when the item is now parked."""

    item.attempts = min(int(item.attempts or 0) + 1, int(item.max_attempts))
    append_error(item, now=now, message=message)
    if permanent or item.attempts >= item.max_attempts:
        item.next_attempt_at = now + timedelta(seconds=park_seconds)
        item.parked_at = now
        return True

    delay = compute_backoff_seconds(
        item.attempts,
        base_seconds=backoff_base_seconds,
        cap_seconds=backoff_cap_seconds,
    )
    item.next_attempt_at = now + timedelta(seconds=delay)
    return False


def purge_parked(session: Session, *, older_than: datetime) -> int:
    result = session.execute(
        delete(QueueItem).where(
            QueueItem.parked_at.is_not(None),
            QueueItem.parked_at < older_than,
        )
    )
    return int(result.rowcount or 0)


def assets_with_pending_work(session: Session, asset_ids: Iterable[str]) -> Set[str]:
    """Asset ids that still have an unparked item with attempts left."""

    ids = [str(asset_id) for asset_id in asset_ids]
    if not ids:
        return set()
    stmt = select(QueueItem.asset_id).where(
        QueueItem.asset_id.in_(ids),
        QueueItem.parked_at.is_(None),
        QueueItem.attempts < QueueItem.max_attempts,
    )
    return {str(asset_id) for asset_id in session.scalars(stmt).all()}


def latest_item_for_asset(session: Session, *, asset_id: str, action: QueueAction) -> Optional[QueueItem]:
    return session.scalar(
        select(QueueItem)
        .where(QueueItem.asset_id == asset_id, QueueItem.action == action.value)
        .order_by(QueueItem.created_at.desc(), QueueItem.id.desc())
        .limit(1)
    )


def queue_statistics(session: Session, *, now: datetime, stale_after_seconds: int = 86400) -> Dict[str, Any]:
    total = session.scalar(select(func.count(QueueItem.id))) or 0
    parked = session.scalar(select(func.count(QueueItem.id)).where(QueueItem.parked_at.is_not(None))) or 0
    due = session.scalar(
        select(func.count(QueueItem.id)).where(
            QueueItem.parked_at.is_(None),
            QueueItem.next_attempt_at <= now,
            QueueItem.attempts < QueueItem.max_attempts,
        )
    ) or 0
    stale = session.scalar(
        select(func.count(QueueItem.id)).where(
            QueueItem.created_at < now - timedelta(seconds=stale_after_seconds),
        )
    ) or 0
    by_action = {action.value: 0 for action in QueueAction}
    for action, count in session.execute(select(QueueItem.action, func.count(QueueItem.id)).group_by(QueueItem.action)).all():
        by_action[str(action)] = int(count)
    oldest = session.scalar(select(func.min(QueueItem.created_at)))
    oldest_age = int((ensure_utc(now) - ensure_utc(oldest)).total_seconds()) if oldest is not None else 0
    return {
        "total": int(total),
        "due": int(due),
        "waiting": int(total) - int(due) - int(parked),
        "parked": int(parked),
        "older_than_24h": int(stale),
        "by_action": by_action,
        "oldest_age_seconds": max(0, oldest_age),
    }
