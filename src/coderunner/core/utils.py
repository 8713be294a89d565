from __future__ import annotations
import uuid
from datetime import datetime, timezone

TRUNCATION_MARKER = "\n... [output truncated, {omitted} bytes omitted]"


def new_job_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def decode_output(raw: bytes, limit: int) -> str:
    """Decode captured bytes, keeping at most ``limit`` bytes of the stream."""
    if limit and len(raw) > limit:
        omitted = len(raw) - limit
        return raw[:limit].decode("utf-8", errors="replace") + TRUNCATION_MARKER.format(omitted=omitted)
    return raw.decode("utf-8", errors="replace")
