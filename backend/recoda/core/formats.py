from datetime import datetime, timezone
from typing import Callable

from recoda.constants import (
    DEFAULT_QUALITY,
    MP4_MIME_TYPES,
    QUALITY_TIERS,
    WEBM_MIME_TYPES,
)


def mp4_supported(is_supported: Callable[[str], bool]) -> bool:
    return any(is_supported(mime) for mime in MP4_MIME_TYPES)


def negotiate_mime(output_format: str, is_supported: Callable[[str], bool]) -> str:
    """Pick the best encoder MIME type for the requested output format.

    MP4 is preferred when explicitly requested, or on ``auto`` when any MP4
    variant is supported. Otherwise the best WebM variant wins. Returns an
    empty string when nothing is supported.
    """
    if output_format == "mp4" or (output_format == "auto" and mp4_supported(is_supported)):
        for mime in MP4_MIME_TYPES:
            if is_supported(mime):
                return mime
    for mime in WEBM_MIME_TYPES:
        if is_supported(mime):
            return mime
    return ""


def native_format(mime: str) -> str:
    return "mp4" if "mp4" in mime else "webm"


def file_extension(mime: str) -> str:
    return native_format(mime)


def display_constraints(quality: str) -> dict:
    tier = QUALITY_TIERS.get(quality, QUALITY_TIERS[DEFAULT_QUALITY])
    return {
        "cursor": "always",
        "width": {"ideal": tier["width"]},
        "height": {"ideal": tier["height"]},
    }


def video_bitrate(quality: str) -> int:
    return QUALITY_TIERS.get(quality, QUALITY_TIERS[DEFAULT_QUALITY])["bitrate"]


def capture_timestamp(moment: datetime) -> str:
    """Timestamp used in filenames: YYYY-MM-DD_HH-MM."""
    return moment.strftime("%Y-%m-%d_%H-%M")


def recording_filename(moment: datetime, mime: str) -> str:
    return f"rec-{capture_timestamp(moment)}.{file_extension(mime)}"


def format_time(total_seconds: int) -> str:
    hours, rest = divmod(int(total_seconds), 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def format_size(num_bytes: int) -> str:
    return f"{num_bytes / (1024 * 1024):.1f} MB"


def parse_timestamp(value) -> datetime:
    """ISO-8601 string (or datetime) to an aware datetime; naive means UTC."""
    if isinstance(value, datetime):
        moment = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def to_iso(moment: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""
    moment = parse_timestamp(moment).astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"
