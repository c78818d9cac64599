from datetime import timedelta
import json

import pytest
from sqlalchemy import select

from streamvault import cli
from streamvault.assets.validation import UploadPolicy, is_video_source, source_extension, validate_upload
from streamvault.core.config import get_settings
from streamvault.core.errors import ConfigurationError, TransientRemoteError, ValidationError
from streamvault.pipeline.cleanup import SourceCleaner
from streamvault.storage.models import Asset, QueueItem


POLICY = UploadPolicy(max_size_bytes=1000, formats=("mkv", "mp4"))


def _asset(session_factory, asset_id: str) -> Asset:
    with session_factory() as session:
        return session.get(Asset, asset_id)


def _cleaner(session_factory, remote, clock, lock_manager=None, **kwargs) -> SourceCleaner:
    return SourceCleaner(
        session_factory=session_factory,
        remote_client=remote,
        lock_manager=lock_manager,
        clock=clock,
        **kwargs,
    )


def _video(tmp_path, name: str = "lecture.mp4", size: int = 64):
    path = tmp_path / name
    path.write_bytes(b"\0" * size)
    return path


# Upload validation


def test_extension_is_read_case_insensitively() -> None:
    assert source_extension("/videos/Lecture.MP4") == "mp4"
    assert source_extension("https://files.example/v.mkv?sig=abc") == "mkv"
    assert source_extension("/videos/no-extension") == ""


def test_video_mime_type_accepts_unknown_extension() -> None:
    assert is_video_source("/uploads/blob.bin", POLICY, mime_type="video/quicktime") is True
    assert is_video_source("/uploads/blob.bin", POLICY, mime_type="application/pdf") is False


def test_size_limit_is_inclusive() -> None:
    validate_upload(source_ref="/v.mp4", size_bytes=1000, policy=POLICY)

    with pytest.raises(ValidationError) as excinfo:
        validate_upload(source_ref="/v.mp4", size_bytes=1001, policy=POLICY)
    assert excinfo.value.reason == "file_too_large"


@pytest.mark.parametrize("source_ref", ["/docs/notes.pdf", "/videos/clip.webm", "/videos/clip"])
def test_unsupported_formats_are_rejected(source_ref) -> None:
    with pytest.raises(ValidationError) as excinfo:
        validate_upload(source_ref=source_ref, size_bytes=1, policy=POLICY)
    assert excinfo.value.reason == "unsupported_format"


def test_submit_rejects_oversized_file_without_recording_anything(service, session_factory) -> None:
    limit = get_settings().upload_max_file_size_bytes

    with pytest.raises(ValidationError) as excinfo:
        service.submit_asset(owner_id="o", collection_id="course-101", size_bytes=limit + 1, source_ref="/big.mp4")

    assert excinfo.value.reason == "file_too_large"
    with session_factory() as session:
        assert session.scalars(select(Asset)).all() == []
        assert session.scalars(select(QueueItem)).all() == []


def test_submit_rejects_unsupported_format(service) -> None:
    with pytest.raises(ValidationError) as excinfo:
        service.submit_asset(owner_id="o", collection_id="course-101", size_bytes=1, source_ref="/slides.pptx")
    assert excinfo.value.reason == "unsupported_format"


def test_submit_records_source_reference(service, session_factory) -> None:
    asset_id = service.submit_asset(owner_id="o", collection_id="course-101", size_bytes=1, source_ref="/v.mov")

    assert _asset(session_factory, asset_id).source_ref == "/v.mov"


def test_format_setting_drives_validation(monkeypatch) -> None:
    monkeypatch.setenv("UPLOAD_SUPPORTED_FORMATS", "webm, .M4V")
    get_settings.cache_clear()

    assert get_settings().upload_format_list == ("m4v", "webm")
    assert UploadPolicy.from_settings().formats == ("m4v", "webm")


def test_unknown_format_setting_is_a_configuration_error(monkeypatch) -> None:
    monkeypatch.setenv("UPLOAD_SUPPORTED_FORMATS", "mp4,exe")
    get_settings.cache_clear()

    with pytest.raises(ConfigurationError) as excinfo:
        get_settings()
    assert "exe" in str(excinfo.value)


def test_cleanup_delay_below_an_hour_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("SOURCE_CLEANUP_DELAY_SECONDS", "60")
    get_settings.cache_clear()

    with pytest.raises(ConfigurationError):
        get_settings()


# Source cleanup


def test_ready_source_past_delay_is_deleted(tmp_path, session_factory, remote, clock, lock_manager, make_asset) -> None:
    source = _video(tmp_path, size=128)
    asset_id = make_asset(
        remote_id="cf-done",
        ready_at=clock() - timedelta(days=8),
        source_ref=str(source),
    )
    remote.put("cf-done", "ready")

    report = _cleaner(session_factory, remote, clock, lock_manager).run()

    assert report.candidates == 1
    assert report.cleaned == 1
    assert source.exists() is False
    asset = _asset(session_factory, asset_id)
    assert asset.source_cleaned_at is not None
    assert asset.asset_metadata["deleted_source"]["filename"] == "lecture.mp4"
    assert asset.asset_metadata["deleted_source"]["size_bytes"] == 128
    assert lock_manager.is_locked(asset_id) is False


def test_recent_ready_source_is_kept(tmp_path, session_factory, remote, clock, make_asset) -> None:
    source = _video(tmp_path)
    make_asset(remote_id="cf-new", ready_at=clock() - timedelta(days=2), source_ref=str(source))
    remote.put("cf-new", "ready")

    report = _cleaner(session_factory, remote, clock).run()

    assert report.candidates == 0
    assert source.exists() is True


def test_source_is_kept_when_remote_copy_is_not_ready(tmp_path, session_factory, remote, clock, make_asset) -> None:
    source = _video(tmp_path)
    asset_id = make_asset(remote_id="cf-redo", ready_at=clock() - timedelta(days=8), source_ref=str(source))
    remote.put("cf-redo", "inprogress")

    report = _cleaner(session_factory, remote, clock).run()

    assert report.not_ready == 1
    assert report.cleaned == 0
    assert source.exists() is True
    assert _asset(session_factory, asset_id).source_cleaned_at is None


def test_remote_failure_keeps_source_for_next_run(tmp_path, session_factory, remote, clock, make_asset) -> None:
    source = _video(tmp_path)
    make_asset(remote_id="cf-flaky", ready_at=clock() - timedelta(days=8), source_ref=str(source))
    remote.put("cf-flaky", "ready")
    remote.fail_next("get_status", TransientRemoteError("timeout"))
    cleaner = _cleaner(session_factory, remote, clock)

    assert cleaner.run().failed == 1
    assert source.exists() is True

    assert cleaner.run().cleaned == 1
    assert source.exists() is False


def test_missing_source_is_marked_cleaned(tmp_path, session_factory, remote, clock, make_asset) -> None:
    asset_id = make_asset(
        remote_id="cf-gone-local",
        ready_at=clock() - timedelta(days=8),
        source_ref=str(tmp_path / "already-removed.mp4"),
    )
    remote.put("cf-gone-local", "ready")
    cleaner = _cleaner(session_factory, remote, clock)

    report = cleaner.run()

    assert report.already_missing == 1
    assert _asset(session_factory, asset_id).source_cleaned_at is not None
    assert cleaner.run().candidates == 0


def test_locked_asset_is_skipped(tmp_path, session_factory, remote, clock, lock_manager, make_asset) -> None:
    source = _video(tmp_path)
    asset_id = make_asset(remote_id="cf-busy", ready_at=clock() - timedelta(days=8), source_ref=str(source))
    remote.put("cf-busy", "ready")
    lock_manager.acquire(asset_id)

    report = _cleaner(session_factory, remote, clock, lock_manager).run()

    assert report.skipped_locked == 1
    assert source.exists() is True


def test_disabled_cleanup_does_nothing(tmp_path, session_factory, remote, clock, make_asset) -> None:
    source = _video(tmp_path)
    make_asset(remote_id="cf-off", ready_at=clock() - timedelta(days=8), source_ref=str(source))
    remote.put("cf-off", "ready")

    report = _cleaner(session_factory, remote, clock, enabled=False).run()

    assert report.enabled is False
    assert report.candidates == 0
    assert source.exists() is True
    assert remote.calls == []


def test_statistics_count_due_and_cleaned(tmp_path, session_factory, remote, clock, make_asset) -> None:
    make_asset(remote_id="cf-a", ready_at=clock() - timedelta(days=8), source_ref=str(_video(tmp_path, "a.mp4")))
    make_asset(remote_id="cf-b", ready_at=clock() - timedelta(days=9), source_ref=str(_video(tmp_path, "b.mp4")))
    make_asset(remote_id="cf-c", ready_at=clock() - timedelta(days=1), source_ref=str(_video(tmp_path, "c.mp4")))
    remote.put("cf-a", "ready")
    remote.put("cf-b", "ready")
    cleaner = _cleaner(session_factory, remote, clock, batch_size=1)

    assert cleaner.statistics() == {"ready_for_cleanup": 2, "sources_cleaned": 0}
    cleaner.run()
    assert cleaner.statistics() == {"ready_for_cleanup": 1, "sources_cleaned": 1}


def test_uploaded_source_is_cleaned_after_delay(tmp_path, service, session_factory, clock) -> None:
    source = _video(tmp_path, "week-2.mp4")
    asset_id = service.submit_asset(owner_id="o", collection_id="course-101", size_bytes=64, source_ref=str(source))
    service.drain_queue()
    assert _asset(session_factory, asset_id).status == "ready"

    assert service.run_source_cleanup().candidates == 0

    clock.advance(get_settings().source_cleanup_delay_seconds + 1)
    report = service.run_source_cleanup()

    assert report.cleaned == 1
    assert source.exists() is False


def test_cleanup_sources_command(tmp_path, capsys, service, remote, clock, make_asset) -> None:
    make_asset(remote_id="cf-cli", ready_at=clock() - timedelta(days=8), source_ref=str(_video(tmp_path)))
    remote.put("cf-cli", "ready")

    code = cli.main(["cleanup-sources"], service_factory=lambda: service)
    payload = json.loads(capsys.readouterr().out.strip().splitlines()[-1])

    assert code == 0
    assert payload["cleaned"] == 1
    assert payload["statistics"] == {"ready_for_cleanup": 0, "sources_cleaned": 1}
