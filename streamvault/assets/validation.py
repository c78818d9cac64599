"""Checks a source file must pass before it is queued for transfer."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePath
from typing import Optional, Tuple

from streamvault.core.config import Settings, get_settings
from streamvault.core.errors import ValidationError


VIDEO_MIME_TYPES = frozenset(
    {
        "video/mp4",
        "video/quicktime",
        "video/x-msvideo",
        "video/x-matroska",
        "video/webm",
        "video/x-flv",
        "video/x-ms-wmv",
        "video/mp4v-es",
    }
)


@dataclass(frozen=True)
class UploadPolicy:
    max_size_bytes: int
    formats: Tuple[str, ...]

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "UploadPolicy":
        settings = settings or get_settings()
        return cls(max_size_bytes=settings.upload_max_file_size_bytes, formats=settings.upload_format_list)


def source_extension(source_ref: str) -> str:
    return PurePath(str(source_ref or "").split("?", 1)[0]).suffix.lower().lstrip(".")


def is_video_source(source_ref: str, policy: UploadPolicy, mime_type: Optional[str] = None) -> bool:
    """A declared video MIME type wins; otherwise the extension decides."""

    if mime_type and mime_type.strip().lower() in VIDEO_MIME_TYPES:
        return True
    return source_extension(source_ref) in policy.formats


def validate_upload(
    *,
    source_ref: str,
    size_bytes: int,
    policy: UploadPolicy,
    mime_type: Optional[str] = None,
) -> None:
    if not str(source_ref or "").strip():
        raise ValidationError("source_required", "A source reference is required")
    if int(size_bytes) > policy.max_size_bytes:
        raise ValidationError(
            "file_too_large",
            f"File size exceeds maximum allowed: {int(size_bytes)} > {policy.max_size_bytes}",
        )
    if not is_video_source(source_ref, policy, mime_type):
        extension = source_extension(source_ref) or "none"
        raise ValidationError("unsupported_format", f"Unsupported video format: {extension}")
