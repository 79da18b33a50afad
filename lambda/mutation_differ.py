"""Field-level diffs between a stored card and a proposed change set."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Mapping

from board_errors import ValidationError

LANE_FIELD = "laneId"
LANE_LABEL = "status"
DATE_FIELDS = {"dueDate"}
FIELD_ORDER = (
    "name",
    "description",
    "priority",
    "dueDate",
    "assigneeId",
    "parentId",
    "listId",
    LANE_FIELD,
    "position",
)
NULL_TOKEN = "null"


@dataclass(frozen=True)
class DiffEntry:
    field: str
    from_value: Any
    to_value: Any

    def to_json(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "from": _json_safe(self.from_value),
            "to": _json_safe(self.to_value),
        }


def canonical_datetime(value: Any) -> str:
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError as e:
            raise ValidationError(f"invalid date: {value}") from e
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
    else:
        raise ValidationError(f"invalid date: {value!r}")
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (datetime, date)):
        return canonical_datetime(value)
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def normalize(field: str, value: Any) -> Any:
    if value is None:
        return None
    if field in DATE_FIELDS or isinstance(value, (datetime, date)):
        return canonical_datetime(value)
    return _json_safe(value)


def values_equal(field: str, old: Any, new: Any) -> bool:
    a = normalize(field, old)
    b = normalize(field, new)
    if a is None or b is None:
        return a is None and b is None
    return json.dumps(a, sort_keys=True) == json.dumps(b, sort_keys=True)


def _ordered_fields(proposed: Mapping[str, Any]) -> list[str]:
    known = [f for f in FIELD_ORDER if f in proposed]
    extra = [f for f in proposed if f not in FIELD_ORDER]
    return known + extra


def diff_changes(
    prior: Mapping[str, Any],
    proposed: Mapping[str, Any],
    *,
    lane_names: Mapping[str, str] | None = None,
) -> list[DiffEntry]:
    if not isinstance(proposed, Mapping):
        raise ValidationError("proposed changes must be an object")
    names = lane_names or {}
    out: list[DiffEntry] = []
    for field in _ordered_fields(proposed):
        old = prior.get(field)
        new = proposed[field]
        if values_equal(field, old, new):
            continue
        if field == LANE_FIELD:
            out.append(
                DiffEntry(
                    field=LANE_LABEL,
                    from_value=names.get(str(old), old) if old is not None else None,
                    to_value=names.get(str(new), new) if new is not None else None,
                )
            )
            continue
        out.append(DiffEntry(field=field, from_value=normalize(field, old), to_value=normalize(field, new)))
    return out


def _display(value: Any) -> str:
    if value is None:
        return NULL_TOKEN
    safe = _json_safe(value)
    if isinstance(safe, (dict, list)):
        return json.dumps(safe, sort_keys=True, separators=(",", ":"))
    return str(safe)


def render_description(diff: list[DiffEntry]) -> str:
    return "; ".join(
        f'{d.field}: "{_display(d.from_value)}" → "{_display(d.to_value)}"' for d in diff
    )
