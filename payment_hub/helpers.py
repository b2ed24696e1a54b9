import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional


def canonical_json(body: Any) -> str:
    """
    Deterministic serialization: keys sorted at every depth, compact separators.
    """
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def hash_payload(body: Any) -> str:
    return hashlib.sha256(canonical_json(body).encode()).hexdigest()


def first_present(payload: Mapping[str, Any], aliases: Iterable[str]) -> Any:
    """
    Value of the first alias that is present and not blank.
    """
    for alias in aliases:
        value = payload.get(alias)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def as_identifier(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Processor timestamps arrive as ``2025-09-17 12:58:09``, ISO strings or epoch seconds.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
