"""Optimistic local mutations reconciled with the board API.

Gestures (move, edit, create) change the local `BoardState` at once. Remote
calls are debounced per card and run one at a time per card. A failed call
restores the fields it wrote that no newer call rewrites, and raises a
`Notice`; a call whose every field was rewritten fails silently.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable

from .board_api import RemoteError
from .board_state import BoardState
from .ids import is_temp_id, new_temp_id

PHASE_CONFIRMED = "confirmed"
PHASE_PENDING = "pending"

# Snapshot key for the card's slot within its lane.
INDEX_KEY = "__index__"
MOVE_FIELDS = frozenset({"laneId", "position", INDEX_KEY})
LOCAL_ONLY_FIELDS = {"cardId"}


@dataclass(frozen=True)
class Notice:
    card_id: str
    error_code: str
    message: str
    field: str | None = None


@dataclass
class PendingOp:
    kind: str  # move | edit | create
    card_id: str
    lane_id: str | None = None
    index: int | None = None
    changes: dict[str, Any] = field(default_factory=dict)
    timer: asyncio.TimerHandle | None = None


def _touched(op: PendingOp) -> set[str]:
    if op.kind == "move":
        return set(MOVE_FIELDS)
    return set(op.changes)


class MoveCoordinator:
    def __init__(
        self,
        state: BoardState,
        remote: Any,
        *,
        debounce_ms: int = 1000,
        on_notice: Callable[[Notice], None] | None = None,
    ) -> None:
        self.state = state
        self.remote = remote
        self.debounce_seconds = max(0, int(debounce_ms)) / 1000.0
        self.on_notice = on_notice or (lambda _notice: None)
        self._snapshots: dict[str, dict[str, Any]] = {}
        self._pending: dict[str, PendingOp] = {}
        self._chains: dict[str, asyncio.Task] = {}
        self._generation: dict[str, int] = {}
        # card -> generation -> fields that call writes
        self._in_flight: dict[str, dict[int, set[str]]] = {}
        self._aliases: dict[str, str] = {}
        self._tasks: set[asyncio.Task] = set()

    # -- gestures ---------------------------------------------------------

    def move(self, card_id: str, lane_id: str, index: int) -> None:
        key = self._resolve(card_id)
        if self.state.card(key) is None:
            raise KeyError(f"unknown card: {card_id}")
        if lane_id not in self.state.lanes:
            raise KeyError(f"unknown lane: {lane_id}")
        card = self.state.card(key) or {}
        self._capture(key, {"laneId": card.get("laneId"), "position": card.get("position")}, index=True)
        self.state.update_card(key, {"laneId": lane_id}, index=index)
        placed = self.state.index_of(key)
        self._schedule(key, "move", lane_id=lane_id, index=placed if placed is not None else index)

    def edit(self, card_id: str, changes: dict[str, Any]) -> None:
        key = self._resolve(card_id)
        card = self.state.card(key)
        if card is None:
            raise KeyError(f"unknown card: {card_id}")
        if "laneId" in changes:
            raise ValueError("use move() to change a card's lane")
        self._capture(key, {f: card.get(f) for f in changes})
        self.state.update_card(key, dict(changes))
        self._schedule(key, "edit", changes=dict(changes))

    def create(self, lane_id: str, fields: dict[str, Any]) -> str:
        if lane_id not in self.state.lanes:
            raise KeyError(f"unknown lane: {lane_id}")
        temp_id = new_temp_id()
        self.state.add_card({**fields, "cardId": temp_id, "laneId": lane_id})
        self._snapshots[temp_id] = {}
        self._schedule(temp_id, "create", lane_id=lane_id, changes=dict(fields))
        return temp_id

    # -- reconciliation ---------------------------------------------------

    def card_phase(self, card_id: str) -> str:
        key = self._resolve(card_id)
        if key in self._pending or key in self._snapshots:
            return PHASE_PENDING
        return PHASE_CONFIRMED

    def resolve_id(self, card_id: str) -> str:
        return self._resolve(card_id)

    async def flush(self) -> None:
        for key in list(self._pending):
            self._fire(key)
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def _resolve(self, card_id: str) -> str:
        seen = set()
        while card_id in self._aliases and card_id not in seen:
            seen.add(card_id)
            card_id = self._aliases[card_id]
        return card_id

    def _capture(self, key: str, values: dict[str, Any], *, index: bool = False) -> None:
        snap = self._snapshots.setdefault(key, {})
        if index and "laneId" not in snap:
            snap[INDEX_KEY] = self.state.index_of(key)
        for f, v in values.items():
            snap.setdefault(f, v)

    def _schedule(self, key: str, kind: str, **payload: Any) -> None:
        pending = self._pending.get(key)
        if pending is not None and pending.kind != kind:
            self._fire(key)
            pending = None
        if pending is None:
            pending = PendingOp(kind=kind, card_id=key)
            self._pending[key] = pending
        elif pending.timer is not None:
            pending.timer.cancel()

        if kind == "edit":
            pending.changes.update(payload.get("changes") or {})
        else:
            pending.lane_id = payload.get("lane_id", pending.lane_id)
            pending.index = payload.get("index", pending.index)
            if payload.get("changes"):
                pending.changes = dict(payload["changes"])

        loop = asyncio.get_running_loop()
        pending.timer = loop.call_later(self.debounce_seconds, self._fire, key)

    def _fire(self, key: str) -> None:
        key = self._resolve(key)
        pending = self._pending.pop(key, None)
        if pending is None:
            return
        if pending.timer is not None:
            pending.timer.cancel()
        gen = self._generation.get(key, 0) + 1
        self._generation[key] = gen
        self._in_flight.setdefault(key, {})[gen] = _touched(pending)
        previous = self._chains.get(key)
        task = asyncio.get_running_loop().create_task(self._run(pending, gen, previous))
        self._chains[key] = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, op: PendingOp, gen: int, previous: asyncio.Task | None) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        try:
            await self._call(op, gen)
        finally:
            self._in_flight.get(self._resolve(op.card_id), {}).pop(gen, None)

    async def _call(self, op: PendingOp, gen: int) -> None:
        key = self._resolve(op.card_id)
        if op.kind != "create" and self.state.card(key) is None:
            # The card went away locally (e.g. its create failed).
            return
        try:
            match op.kind:
                case "move":
                    resp = await self.remote.move_card(key, op.lane_id, op.index)
                case "edit":
                    resp = await self.remote.edit_card(key, op.changes)
                case "create":
                    resp = await self.remote.create_card(op.lane_id, op.changes)
                case _:
                    raise ValueError(f"unknown operation kind: {op.kind}")
        except RemoteError as e:
            self._on_failure(op, gen, e.error_code, e.message, e.field)
        except Exception as e:
            self._on_failure(op, gen, "CLIENT_ERROR", str(e), None)
        else:
            self._on_success(op, gen, resp or {})

    def _is_latest(self, key: str, gen: int) -> bool:
        return self._generation.get(key) == gen and key not in self._pending

    def _newer_fields(self, key: str, gen: int) -> set[str]:
        fields: set[str] = set()
        for other_gen, touched in self._in_flight.get(key, {}).items():
            if other_gen > gen:
                fields |= touched
        pending = self._pending.get(key)
        if pending is not None:
            fields |= _touched(pending)
        return fields

    def _adopt_server_id(self, temp_id: str, real_id: str) -> str:
        self.state.replace_card_id(temp_id, real_id)
        self._aliases[temp_id] = real_id
        for table in (self._snapshots, self._pending, self._chains, self._generation, self._in_flight):
            if temp_id in table:
                table[real_id] = table.pop(temp_id)
        if real_id in self._pending:
            self._pending[real_id].card_id = real_id
        return real_id

    def _on_success(self, op: PendingOp, gen: int, resp: dict[str, Any]) -> None:
        card = resp.get("card") or {}
        key = self._resolve(op.card_id)
        if op.kind == "create":
            real_id = str(card.get("cardId") or "")
            if real_id and is_temp_id(key):
                key = self._adopt_server_id(key, real_id)

        server_fields = {k: v for k, v in card.items() if k not in LOCAL_ONLY_FIELDS}
        if self._is_latest(key, gen):
            if self.state.card(key) is not None and server_fields:
                self.state.update_card(key, server_fields)
            self._snapshots.pop(key, None)
        else:
            # A newer call owns the visible state; only the baseline moves.
            snap = self._snapshots.get(key)
            if snap is not None and card:
                for f in list(snap):
                    if f != INDEX_KEY:
                        snap[f] = card.get(f)
                if op.kind == "move":
                    snap.pop(INDEX_KEY, None)
                    snap["laneId"] = card.get("laneId")
                    snap["position"] = card.get("position")

        entry = resp.get("auditEntry")
        if entry and self.state.card(key) is not None:
            self.state.prepend_activity(key, entry)

    def _on_failure(self, op: PendingOp, gen: int, error_code: str, message: str, field_name: str | None) -> None:
        key = self._resolve(op.card_id)
        if op.kind == "create":
            stale = self._pending.pop(key, None)
            if stale is not None and stale.timer is not None:
                stale.timer.cancel()
            self.state.remove_card(key)
            self._snapshots.pop(key, None)
            self.on_notice(Notice(key, error_code, message, field_name))
            return

        newer = self._newer_fields(key, gen)
        if newer:
            owned = _touched(op) - newer
            if not owned:
                # Every field this call wrote has a newer write behind it.
                return
            snap = self._snapshots.get(key, {})
            restore = {f: snap.pop(f) for f in owned if f in snap}
        else:
            restore = self._snapshots.pop(key, {})

        index = restore.pop(INDEX_KEY, None)
        if self.state.card(key) is not None and restore:
            if index is None and "laneId" in restore:
                index = self.state.index_for_position(str(restore["laneId"]), restore.get("position"), exclude=key)
            self.state.update_card(key, restore, index=index)
        self.on_notice(Notice(key, error_code, message, field_name))
