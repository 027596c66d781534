"""
Utility functions shared by the request handlers: clock, ISO conversion and
input parsing helpers.
"""
import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from errors import ErrorCode, HandlerError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Millisecond-precision UTC ISO string ("2024-01-31T10:00:00.000Z")."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime('%Y-%m-%dT%H:%M:%S.') + f"{value.microsecond // 1000:03d}Z"


def parse_iso_datetime(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, str):
        return None
    trimmed = raw.strip()
    if not trimmed:
        return None
    try:
        parsed = datetime.fromisoformat(trimmed.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_non_empty_string(raw: Any, max_len: int) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    trimmed = raw.strip()
    if not trimmed or len(trimmed) > max_len:
        return None
    return trimmed


def parse_optional_string(raw: Any, max_len: int) -> Optional[str]:
    if raw is None:
        return None
    return parse_non_empty_string(raw, max_len)


def parse_int_in_range(raw: Any, minimum: int, maximum: int) -> Optional[int]:
    # bool is an int subclass; reject it explicitly.
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    if isinstance(raw, float) and not math.isfinite(raw):
        return None
    value = math.floor(raw)
    if value < minimum or value > maximum:
        return None
    return value


def require_org_id(data: Dict[str, Any]) -> str:
    org_id = data.get('orgId')
    if not org_id or not isinstance(org_id, str) or not org_id.strip():
        raise HandlerError(ErrorCode.ORG_REQUIRED, 'Organization ID is required')
    return org_id.strip()


def require_id(data: Dict[str, Any], field: str, label: str) -> str:
    value = parse_non_empty_string(data.get(field), 120)
    if value is None:
        raise HandlerError(ErrorCode.VALIDATION_ERROR, f"{label} is required")
    return value


def _finite_number(raw: Any) -> bool:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return False
    return not isinstance(raw, float) or math.isfinite(raw)


def clamp_pagination(data: Dict[str, Any], default_limit: int = 50, max_limit: int = 100):
    limit = data.get('limit', default_limit)
    offset = data.get('offset', 0)
    parsed_limit = min(max(1, int(limit)), max_limit) if _finite_number(limit) else default_limit
    parsed_offset = max(0, int(offset)) if _finite_number(offset) else 0
    return parsed_limit, parsed_offset
