from datetime import timedelta

import pytest
from sqlalchemy import select

from streamvault.assets.service import create_asset
from streamvault.core.clock import ensure_utc
from streamvault.remote.mock import MockStreamClient
from streamvault.service import StreamAccessService
from streamvault.storage.models import Asset, QueueItem


def test_submit_upload_and_play_end_to_end(session_factory, identity, lock_manager, clock, rate_limiter) -> None:
    remote = MockStreamClient(remote_ids=["cf123"])
    service = StreamAccessService(
        session_factory=session_factory,
        remote_client=remote,
        identity=identity,
        lock_manager=lock_manager,
        clock=clock,
        rate_limiter=rate_limiter,
        signing_key=b"end-to-end-signing-key-000000000",
    )
    with session_factory() as session:
        asset = create_asset(
            session,
            owner_id="teacher-1",
            collection_id="course-101",
            size_bytes=4096,
            metadata={"title": "Week 1"},
            now=clock(),
            asset_id="A1",
        )
        session.commit()
        assert asset.status == "pending"

    service.enqueue("A1", "upload", 5, {"source_ref": "/videos/week-1.mp4"})
    drained = service.drain_queue(1)

    assert drained.processed == 1
    with session_factory() as session:
        stored = session.get(Asset, "A1")
        assert stored.remote_id == "cf123"
        assert stored.status == "ready"
        assert ensure_utc(stored.ready_at) == clock()
        assert session.scalars(select(QueueItem)).all() == []

    issued = service.request_playback_token("A1", "teacher-1")
    assert issued.issued is True
    assert issued.expires_at == clock() + timedelta(seconds=3600)

    validated = service.validate_playback_token(issued.token)
    assert validated.valid is True
    assert validated.caller_id == "teacher-1"
    assert validated.asset_id == "A1"


def test_any_single_character_tamper_is_rejected(service, make_asset) -> None:
    asset_id = make_asset()
    token = service.request_playback_token(asset_id, "student-1").token
    header, payload, signature = token.split(".")
    prefix = f"{header}."
    body = f"{payload}.{signature}"

    for index, char in enumerate(body):
        if char == ".":
            continue
        replacement = "A" if char != "A" else "B"
        tampered = prefix + body[:index] + replacement + body[index + 1 :]
        result = service.validate_playback_token(tampered)
        assert result.valid is False
        assert result.reason in {"bad_signature", "malformed"}

    assert service.validate_playback_token(token).valid is True


def test_deleted_asset_cannot_be_played(service, make_asset, remote) -> None:
    asset_id = make_asset(remote_id="cf-bye")
    remote.put("cf-bye", "ready")

    service.delete_asset(asset_id)
    service.drain_queue()

    refused = service.request_playback_token(asset_id, "student-1")
    assert refused.issued is False
    assert refused.reason == "asset_not_ready"


def test_delete_of_unknown_asset_raises(service) -> None:
    with pytest.raises(LookupError, match="missing"):
        service.delete_asset("missing")


def test_orphaned_asset_keeps_its_record(service, make_asset, session_factory) -> None:
    asset_id = make_asset(remote_id="cf-vanished")

    report = service.run_reconciliation()

    assert report.orphan_count == 1
    with session_factory() as session:
        asset = session.get(Asset, asset_id)
        assert asset is not None
        assert asset.status == "error"
        assert asset.remote_id == "cf-vanished"

    refused = service.request_playback_token(asset_id, "student-1")
    assert refused.reason == "asset_not_ready"
