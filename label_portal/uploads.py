import posixpath
import secrets
import string
import time

import filetype

DEMO_CATEGORY = "label-submissions"
STUDIO_CATEGORY = "studio-requests"
USER_CATEGORIES = (DEMO_CATEGORY, STUDIO_CATEGORY)

_BASE36 = string.digits + string.ascii_lowercase

STREAM_MIME_TYPES = {
    "mp3": "audio/mpeg",
    "m4a": "audio/mpeg",
    "aac": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
}


def unique_filename(original: str) -> str:
    """Timestamp plus random suffix, keeping the original extension."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(13))
    extension = original.rsplit(".", 1)[-1] if original else ""
    return f"{int(time.time() * 1000)}_{suffix}.{extension}"


def sniff_mime(data: bytes) -> str | None:
    kind = filetype.guess(data)
    return kind.mime if kind else None


def is_allowed_demo(data: bytes, allowed_mimes: list[str]) -> bool:
    return sniff_mime(data) in allowed_mimes


def is_audio(data: bytes) -> bool:
    mime = sniff_mime(data)
    return mime is not None and mime.startswith("audio/")


def guess_stream_mime(path: str) -> str:
    extension = posixpath.basename(path).lower().rpartition(".")[2]
    return STREAM_MIME_TYPES.get(extension, "application/octet-stream")
