"""Local, in-memory view of a board that the client mutates optimistically."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable


def _position(card: dict[str, Any]) -> float:
    pos = card.get("position")
    if isinstance(pos, (int, float)) and not isinstance(pos, bool):
        return float(pos)
    # Cards that were never confirmed sort after persisted ones.
    return float("inf")


@dataclass
class BoardState:
    lanes: dict[str, dict[str, Any]] = field(default_factory=dict)
    lane_order: list[str] = field(default_factory=list)
    lane_cards: dict[str, list[str]] = field(default_factory=dict)
    cards: dict[str, dict[str, Any]] = field(default_factory=dict)
    activity: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    @classmethod
    def load(cls, lanes: Iterable[dict[str, Any]], cards: Iterable[dict[str, Any]]) -> "BoardState":
        state = cls()
        for lane in lanes:
            state.add_lane(lane)
        for card in sorted(cards, key=lambda c: (_position(c), str(c.get("cardId") or ""))):
            state.add_card(card)
        return state

    def add_lane(self, lane: dict[str, Any]) -> None:
        lane_id = str(lane["laneId"])
        if lane_id not in self.lanes:
            self.lane_order.append(lane_id)
        self.lanes[lane_id] = dict(lane)
        self.lane_cards.setdefault(lane_id, [])

    def card(self, card_id: str) -> dict[str, Any] | None:
        return self.cards.get(card_id)

    def lane_of(self, card_id: str) -> str | None:
        card = self.cards.get(card_id)
        return str(card.get("laneId")) if card and card.get("laneId") else None

    def index_of(self, card_id: str) -> int | None:
        lane_id = self.lane_of(card_id)
        if lane_id is None:
            return None
        ids = self.lane_cards.get(lane_id, [])
        return ids.index(card_id) if card_id in ids else None

    def index_for_position(self, lane_id: str, position: Any, *, exclude: str | None = None) -> int:
        target = _position({"position": position})
        idx = 0
        for cid in self.lane_cards.get(lane_id, []):
            if cid == exclude:
                continue
            if _position(self.cards[cid]) <= target:
                idx += 1
        return idx

    def _detach(self, card_id: str) -> None:
        for ids in self.lane_cards.values():
            if card_id in ids:
                ids.remove(card_id)
                return

    def _attach(self, card_id: str, lane_id: str, index: int | None) -> None:
        ids = self.lane_cards.setdefault(lane_id, [])
        if index is None:
            index = self.index_for_position(lane_id, self.cards[card_id].get("position"), exclude=card_id)
        ids.insert(max(0, min(int(index), len(ids))), card_id)

    def add_card(self, card: dict[str, Any], *, index: int | None = None) -> None:
        card_id = str(card["cardId"])
        lane_id = str(card["laneId"])
        self._detach(card_id)
        self.cards[card_id] = dict(card)
        self.activity.setdefault(card_id, [])
        self._attach(card_id, lane_id, index)

    def update_card(self, card_id: str, fields: dict[str, Any], *, index: int | None = None) -> dict[str, Any]:
        """Apply field values to one card and keep lane membership in step.

        A lane change places the card at `index`, or by position when no index
        is given. Within the same lane the card only moves when `index` is set.
        """
        card = self.cards[card_id]
        old_lane = card.get("laneId")
        card.update(fields)
        new_lane = card.get("laneId")
        if new_lane != old_lane or index is not None:
            self._detach(card_id)
            self._attach(card_id, str(new_lane), index)
        return card

    def remove_card(self, card_id: str) -> dict[str, Any] | None:
        self._detach(card_id)
        self.activity.pop(card_id, None)
        return self.cards.pop(card_id, None)

    def replace_card_id(self, old_id: str, new_id: str) -> None:
        if old_id == new_id or old_id not in self.cards:
            return
        card = self.cards.pop(old_id)
        card["cardId"] = new_id
        self.cards[new_id] = card
        self.activity[new_id] = self.activity.pop(old_id, [])
        for ids in self.lane_cards.values():
            if old_id in ids:
                ids[ids.index(old_id)] = new_id
        for other in self.cards.values():
            if other.get("parentId") == old_id:
                other["parentId"] = new_id

    def prepend_activity(self, card_id: str, entry: dict[str, Any]) -> None:
        self.activity.setdefault(card_id, []).insert(0, dict(entry))
