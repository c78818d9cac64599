from datetime import timedelta

from streamvault.pipeline.backoff import compute_backoff_seconds
from streamvault.pipeline.queue import enqueue, record_failure
from streamvault.storage.models import QueueItem


def test_backoff_doubles_from_base_and_caps() -> None:
    delays = [compute_backoff_seconds(attempts) for attempts in range(1, 9)]
    assert delays == [60, 120, 240, 480, 960, 1920, 3600, 3600]
    assert compute_backoff_seconds(0) == 0
    assert compute_backoff_seconds(500) == 3600


def test_record_failure_schedules_retry_then_parks_at_max(session_factory, clock) -> None:
    with session_factory() as session:
        item = enqueue(
            session,
            asset_id="asset-1",
            action="upload",
            payload={"source_ref": "/videos/a.mp4"},
            max_attempts=3,
            now=clock(),
        )
        session.commit()

        kwargs = {
            "permanent": False,
            "backoff_base_seconds": 60,
            "backoff_cap_seconds": 3600,
            "park_seconds": 30 * 86400,
        }
        assert record_failure(item, now=clock(), message="timeout", **kwargs) is False
        assert item.attempts == 1
        assert item.next_attempt_at == clock() + timedelta(seconds=60)

        assert record_failure(item, now=clock(), message="timeout", **kwargs) is False
        assert item.next_attempt_at == clock() + timedelta(seconds=120)

        assert record_failure(item, now=clock(), message="timeout", **kwargs) is True
        assert item.attempts == 3
        assert item.parked_at == clock()
        assert item.next_attempt_at == clock() + timedelta(days=30)
        assert item.error_log.count("timeout") == 3


def test_record_failure_parks_permanent_errors_immediately(session_factory, clock) -> None:
    with session_factory() as session:
        item = enqueue(session, asset_id="asset-1", action="sync", now=clock())
        parked = record_failure(
            item,
            now=clock(),
            message="bad request",
            permanent=True,
            backoff_base_seconds=60,
            backoff_cap_seconds=3600,
            park_seconds=86400,
        )
        assert parked is True
        assert item.attempts == 1
        assert isinstance(item, QueueItem)
        assert item.is_parked is True
