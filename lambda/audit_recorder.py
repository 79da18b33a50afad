"""Atomic card mutation: the field update and its audit entry commit together."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

import position_allocator
from board_errors import Conflict, NotFound, PersistenceFailure, ValidationError
from card_store import (
    CardStore,
    DeleteNameGuard,
    Op,
    PutAudit,
    PutNameGuard,
    StoreConflict,
    StoreError,
    UpdateCard,
    name_guard_key,
)
from ids import new_audit_id
from mutation_differ import DiffEntry, diff_changes, render_description, values_equal

OUTCOME_APPLIED = "applied"
OUTCOME_NO_CHANGES = "no_changes"


@dataclass(frozen=True)
class MutationResult:
    card: dict[str, Any]
    audit_entry: dict[str, Any] | None
    outcome: str
    rebalanced: dict[str, int] = field(default_factory=dict)

    @property
    def no_changes(self) -> bool:
        return self.outcome == OUTCOME_NO_CHANGES


def _now_iso() -> str:
    # Fixed-format UTC timestamp for lexicographic ordering.
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def commit(store: CardStore, ops: Sequence[Op]) -> None:
    try:
        store.transaction(list(ops))
    except StoreConflict as e:
        if e.field == "name":
            raise Conflict("card name already exists on this board", field="name") from e
        if e.field == "revision":
            raise Conflict("card was changed by another request; reload and retry", field="revision") from e
        if e.field == "laneId":
            raise Conflict("a card in the target lane moved during the reorder; retry", field="laneId") from e
        raise Conflict(str(e), field=e.field) from e
    except StoreError as e:
        raise PersistenceFailure(f"store write failed: {e}") from e


def load_card(store: CardStore, card_id: str) -> dict[str, Any]:
    try:
        card = store.get_by_id(card_id)
    except StoreError as e:
        raise PersistenceFailure(f"store read failed: {e}") from e
    if not card:
        raise NotFound(f"card not found: {card_id}")
    return card


def load_lane(store: CardStore, lane_id: str) -> dict[str, Any]:
    try:
        lane = store.get_lane(lane_id)
    except StoreError as e:
        raise PersistenceFailure(f"store read failed: {e}") from e
    if not lane:
        raise NotFound(f"lane not found: {lane_id}")
    return lane


def lane_cards(store: CardStore, lane_id: str) -> list[dict[str, Any]]:
    try:
        return store.list_by_lane(lane_id)
    except StoreError as e:
        raise PersistenceFailure(f"store read failed: {e}") from e


def _lane_name(store: CardStore, lane_id: str) -> str:
    try:
        lane = store.get_lane(lane_id)
    except StoreError as e:
        raise PersistenceFailure(f"store read failed: {e}") from e
    return str((lane or {}).get("name") or lane_id)


def _plan_placement(
    store: CardStore,
    card: dict[str, Any],
    target_lane_id: str,
    target_index: Any,
) -> tuple[position_allocator.Placement | None, dict[str, str], int | None, int | None]:
    card_id = str(card["cardId"])
    source_lane_id = str(card.get("laneId") or "")
    target_lane = load_lane(store, target_lane_id)
    if str(target_lane.get("boardId") or "") != str(card.get("boardId") or ""):
        raise ValidationError("cards cannot move between boards", field="laneId")

    lane_names = {target_lane_id: str(target_lane.get("name") or target_lane_id)}
    if source_lane_id and source_lane_id != target_lane_id:
        lane_names[source_lane_id] = _lane_name(store, source_lane_id)

    members = lane_cards(store, target_lane_id)
    siblings = [(str(c["cardId"]), int(c.get("position") or 0)) for c in members if c.get("cardId") != card_id]

    if source_lane_id != target_lane_id:
        if target_index is None:
            return position_allocator.Placement(
                position=position_allocator.append_position([p for _cid, p in siblings])
            ), lane_names, None, None
        return position_allocator.plan_insert(siblings, card_id, target_index), lane_names, None, None

    if target_index is None:
        return None, lane_names, None, None
    ids = [str(c["cardId"]) for c in members]
    current_index = ids.index(card_id) if card_id in ids else len(siblings)
    new_index = position_allocator.clamp_index(target_index, len(siblings))
    if new_index == current_index:
        return None, lane_names, None, None
    placement = position_allocator.plan_insert(siblings, card_id, new_index)
    return placement, lane_names, current_index, new_index


def apply_mutation(
    store: CardStore,
    card_id: str,
    proposed_changes: Mapping[str, Any],
    actor_id: str | None,
    *,
    target_index: Any = None,
    expected_revision: int | None = None,
    now: str | None = None,
) -> MutationResult:
    if not isinstance(proposed_changes, Mapping):
        raise ValidationError("proposed changes must be an object")
    card = load_card(store, card_id)
    changes = dict(proposed_changes)

    placement = None
    lane_names: dict[str, str] = {}
    old_index = new_index = None
    if "laneId" in changes or target_index is not None:
        target_lane_id = changes.get("laneId", card.get("laneId"))
        if not target_lane_id:
            raise ValidationError("a card must belong to a lane", field="laneId")
        placement, lane_names, old_index, new_index = _plan_placement(
            store, card, str(target_lane_id), target_index
        )
        if placement is not None:
            changes["position"] = placement.position

    diff = diff_changes(card, changes, lane_names=lane_names)
    rebalanced = dict(placement.rebalanced) if placement else {}
    if not diff and rebalanced and old_index is not None:
        # Renumbering can hand the card its old key back while its slot moves.
        diff = [DiffEntry(field="index", from_value=old_index, to_value=new_index)]
    if not diff:
        return MutationResult(card=card, audit_entry=None, outcome=OUTCOME_NO_CHANGES)

    ts = now or _now_iso()
    revision = int(card.get("revision") or 0) + 1
    set_fields = {k: v for k, v in changes.items() if not values_equal(k, card.get(k), v)}
    set_fields["revision"] = revision
    set_fields["updatedAt"] = ts

    ops: list[Op] = [UpdateCard(card_id=card_id, set_fields=set_fields, expected_revision=expected_revision)]

    board_id = str(card.get("boardId") or "")
    if "name" in set_fields:
        old_name = card.get("name")
        new_name = set_fields["name"]
        if not old_name or name_guard_key(board_id, old_name) != name_guard_key(board_id, new_name):
            if old_name:
                ops.append(DeleteNameGuard(board_id=board_id, name=str(old_name)))
            ops.append(PutNameGuard(board_id=board_id, name=str(new_name), card_id=card_id))

    if rebalanced:
        lane_id = str(changes.get("laneId", card.get("laneId")))
        for sibling_id, pos in rebalanced.items():
            # Renumbering only holds while the sibling is still in this lane.
            ops.append(UpdateCard(card_id=sibling_id, set_fields={"position": pos}, expected_lane_id=lane_id))

    audit_id = new_audit_id()
    entry = {
        "auditId": audit_id,
        "cardId": card_id,
        "tsAuditId": f"{ts}#{audit_id}",
        "description": render_description(diff),
        "diff": [d.to_json() for d in diff],
        "actorId": actor_id or None,
        "createdAt": ts,
    }
    ops.append(PutAudit(item=entry))

    commit(store, ops)

    updated = dict(card)
    for k, v in set_fields.items():
        if v is None:
            updated.pop(k, None)
        else:
            updated[k] = v
    return MutationResult(card=updated, audit_entry=entry, outcome=OUTCOME_APPLIED, rebalanced=rebalanced)
