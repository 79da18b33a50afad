"""Ordering keys for cards inside a lane.

Positions are integers spaced ``STEP`` apart so most inserts land in an
existing gap. When two neighbours are adjacent the whole lane is renumbered in
display order; callers must persist that renumbering in the same transaction
as the move that triggered it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from board_errors import ValidationError

STEP = 1000


@dataclass(frozen=True)
class Placement:
    position: int
    # Other cards whose positions change because the lane was renumbered.
    rebalanced: dict[str, int] = field(default_factory=dict)

    @property
    def needs_rebalance(self) -> bool:
        return bool(self.rebalanced)


def _require_int(value: Any, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{label} must be an integer")
    return value


def order_key(card: dict[str, Any]) -> tuple[int, str]:
    return int(card.get("position") or 0), str(card.get("cardId") or "")


def clamp_index(index: Any, length: int) -> int:
    idx = _require_int(index, "index")
    if idx < 0:
        return 0
    if idx > length:
        return length
    return idx


def append_position(positions: Sequence[int]) -> int:
    candidate = (len(positions) + 1) * STEP
    if positions:
        last = _require_int(positions[-1], "position")
        if candidate <= last:
            candidate = last + STEP
    return candidate


def rebalance(card_ids: Iterable[str]) -> dict[str, int]:
    return {card_id: (i + 1) * STEP for i, card_id in enumerate(card_ids)}


def _between(lower: int, upper: int) -> int | None:
    if upper - lower <= 1:
        return None
    return (lower + upper) // 2


def plan_insert(lane: Sequence[tuple[str, int]], card_id: str, index: Any) -> Placement:
    """Place ``card_id`` at ``index`` of ``lane``.

    ``lane`` is the target lane in display order and must not contain the
    moving card.
    """
    positions = [_require_int(p, "position") for _cid, p in lane]
    idx = clamp_index(index, len(positions))

    if not positions:
        return Placement(position=STEP)
    if idx == len(positions):
        return Placement(position=positions[-1] + STEP)

    lower = positions[idx - 1] if idx > 0 else 0
    pos = _between(lower, positions[idx])
    if pos is not None:
        return Placement(position=pos)

    ordered = [cid for cid, _p in lane]
    ordered.insert(idx, card_id)
    renumbered = rebalance(ordered)
    current = dict(zip(ordered[:idx] + ordered[idx + 1 :], positions))
    changed = {
        cid: new_pos
        for cid, new_pos in renumbered.items()
        if cid != card_id and current.get(cid) != new_pos
    }
    return Placement(position=renumbered[card_id], rebalanced=changed)


def is_strictly_increasing(positions: Sequence[int]) -> bool:
    return all(a < b for a, b in zip(positions, positions[1:]))
