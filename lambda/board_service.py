from __future__ import annotations

from typing import Any, Mapping

import position_allocator
from audit_recorder import (
    MutationResult,
    _now_iso,
    apply_mutation,
    commit,
    lane_cards,
    load_card,
    load_lane,
)
from board_errors import Conflict, PersistenceFailure, ValidationError
from card_store import (
    CardStore,
    DeleteCard,
    DeleteLane,
    DeleteNameGuard,
    Op,
    PutCard,
    PutLane,
    PutNameGuard,
    StoreError,
)
from ids import new_card_id, new_lane_id
from mutation_differ import canonical_datetime

PRIORITIES = {"LOW", "MEDIUM", "HIGH", "CRITICAL"}
MAX_DESCRIPTION_LENGTH = 255
REFERENCE_FIELDS = ("assigneeId", "parentId", "listId")
EDITABLE_FIELDS = {"name", "description", "priority", "dueDate", "laneId", *REFERENCE_FIELDS}
CARD_FIELDS = (
    "cardId",
    "boardId",
    "laneId",
    "position",
    "name",
    "description",
    "priority",
    "dueDate",
    "assigneeId",
    "parentId",
    "listId",
    "revision",
    "createdAt",
    "updatedAt",
)
DEFAULT_AUDIT_LIMIT = 25
MAX_AUDIT_LIMIT = 100
MAX_CASCADE_CARDS = 48  # two writes per card inside one 100-item transaction


def card_to_json(item: Mapping[str, Any]) -> dict[str, Any]:
    return {k: item.get(k) for k in CARD_FIELDS}


def lane_to_json(item: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "laneId": item.get("laneId"),
        "boardId": item.get("boardId"),
        "name": item.get("name"),
        "color": item.get("color"),
        "sortOrder": item.get("sortOrder"),
        "createdAt": item.get("createdAt"),
    }


def audit_to_json(item: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "auditId": item.get("auditId"),
        "cardId": item.get("cardId"),
        "description": item.get("description"),
        "diff": list(item.get("diff") or []),
        "actorId": item.get("actorId"),
        "createdAt": item.get("createdAt"),
    }


def result_to_json(result: MutationResult) -> dict[str, Any]:
    return {
        "card": card_to_json(result.card),
        "auditEntry": audit_to_json(result.audit_entry) if result.audit_entry else None,
        "outcome": result.outcome,
    }


def _optional_ref(field: str, value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be a non-empty string or null", field=field)
    return value.strip()


def validate_fields(fields: Mapping[str, Any], *, creating: bool = False) -> dict[str, Any]:
    if not isinstance(fields, Mapping):
        raise ValidationError("changes must be an object")
    unknown = sorted(set(fields) - EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"unsupported field(s): {', '.join(unknown)}", field=unknown[0])

    out: dict[str, Any] = {}
    if "name" in fields or creating:
        name = fields.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("name must be a non-empty string", field="name")
        out["name"] = name.strip()
    if "description" in fields:
        desc = fields["description"]
        if desc is not None:
            if not isinstance(desc, str):
                raise ValidationError("description must be a string or null", field="description")
            if len(desc) > MAX_DESCRIPTION_LENGTH:
                raise ValidationError(
                    f"description must be at most {MAX_DESCRIPTION_LENGTH} characters",
                    field="description",
                )
        out["description"] = desc
    if "priority" in fields:
        prio = fields["priority"]
        if prio is not None:
            prio = str(prio).strip().upper()
            if prio not in PRIORITIES:
                raise ValidationError(
                    f"priority must be one of {', '.join(sorted(PRIORITIES))} or null",
                    field="priority",
                )
        out["priority"] = prio
    if "dueDate" in fields:
        due = fields["dueDate"]
        if due is not None:
            try:
                due = canonical_datetime(due)
            except ValidationError as e:
                raise ValidationError("dueDate must be a valid date or null", field="dueDate") from e
        out["dueDate"] = due
    for ref in REFERENCE_FIELDS:
        if ref in fields:
            out[ref] = _optional_ref(ref, fields[ref])
    if "laneId" in fields:
        lane_id = _optional_ref("laneId", fields["laneId"])
        if lane_id is None:
            raise ValidationError("laneId cannot be null", field="laneId")
        out["laneId"] = lane_id
    return out


def _check_parent(store: CardStore, card_id: str | None, board_id: str, parent_id: str | None) -> None:
    if parent_id is None:
        return
    if parent_id == card_id:
        raise ValidationError("a card cannot be its own parent", field="parentId")
    parent = load_card(store, parent_id)
    if str(parent.get("boardId") or "") != board_id:
        raise ValidationError("parent card belongs to another board", field="parentId")


def move_card(
    store: CardStore,
    card_id: str,
    target_lane_id: str,
    target_index: Any,
    actor_id: str | None = None,
    *,
    expected_revision: int | None = None,
) -> MutationResult:
    lane_id = _optional_ref("laneId", target_lane_id)
    if lane_id is None:
        raise ValidationError("laneId is required", field="laneId")
    if isinstance(target_index, bool) or not isinstance(target_index, int):
        raise ValidationError("index must be an integer", field="index")
    return apply_mutation(
        store,
        card_id,
        {"laneId": lane_id},
        actor_id,
        target_index=target_index,
        expected_revision=expected_revision,
    )


def edit_card(
    store: CardStore,
    card_id: str,
    field_changes: Mapping[str, Any],
    actor_id: str | None = None,
    *,
    expected_revision: int | None = None,
) -> MutationResult:
    changes = validate_fields(field_changes)
    if not changes:
        raise ValidationError("changes must include at least one field")
    if "parentId" in changes:
        card = load_card(store, card_id)
        _check_parent(store, card_id, str(card.get("boardId") or ""), changes["parentId"])
    return apply_mutation(store, card_id, changes, actor_id, expected_revision=expected_revision)


def get_card(store: CardStore, card_id: str) -> dict[str, Any]:
    return load_card(store, card_id)


def list_cards_for_lane(store: CardStore, lane_id: str) -> list[dict[str, Any]]:
    load_lane(store, lane_id)
    return sorted(lane_cards(store, lane_id), key=position_allocator.order_key)


def create_card(
    store: CardStore,
    lane_id: str,
    fields: Mapping[str, Any],
    actor_id: str | None = None,
    *,
    now: str | None = None,
) -> dict[str, Any]:
    values = validate_fields({k: v for k, v in (fields or {}).items() if k != "laneId"}, creating=True)
    lane = load_lane(store, lane_id)
    board_id = str(lane.get("boardId") or "")
    _check_parent(store, None, board_id, values.get("parentId"))

    positions = [int(c.get("position") or 0) for c in lane_cards(store, lane_id)]
    ts = now or _now_iso()
    card_id = new_card_id()
    item = {
        "cardId": card_id,
        "boardId": board_id,
        "laneId": lane_id,
        "position": position_allocator.append_position(positions),
        **values,
        "createdBy": actor_id or None,
        "revision": 1,
        "createdAt": ts,
        "updatedAt": ts,
    }
    commit(
        store,
        [
            PutCard(item=item),
            PutNameGuard(board_id=board_id, name=values["name"], card_id=card_id),
        ],
    )
    return item


def _collect_subtree(store: CardStore, root_id: str) -> list[dict[str, Any]]:
    root = load_card(store, root_id)
    seen = {root_id}
    out = [root]
    stack = [root_id]
    while stack:
        current = stack.pop()
        try:
            children = store.list_children(current)
        except StoreError as e:
            raise PersistenceFailure(f"store read failed: {e}") from e
        for child in children:
            child_id = str(child.get("cardId") or "")
            if not child_id or child_id in seen:
                continue
            seen.add(child_id)
            out.append(child)
            stack.append(child_id)
    return out


def delete_card(store: CardStore, card_id: str, *, cascade: bool = False) -> list[str]:
    if not cascade:
        card = load_card(store, card_id)
        try:
            children = store.list_children(card_id)
        except StoreError as e:
            raise PersistenceFailure(f"store read failed: {e}") from e
        if children:
            raise Conflict("card has sub-cards; delete them first or pass cascade")
        doomed = [card]
    else:
        doomed = _collect_subtree(store, card_id)
        if len(doomed) > MAX_CASCADE_CARDS:
            raise ValidationError(
                f"cascade would delete {len(doomed)} cards; at most {MAX_CASCADE_CARDS} per request"
            )

    ops: list[Op] = []
    for card in doomed:
        ops.append(DeleteCard(card_id=str(card["cardId"])))
        if card.get("name"):
            ops.append(DeleteNameGuard(board_id=str(card.get("boardId") or ""), name=str(card["name"])))
    commit(store, ops)
    return [str(c["cardId"]) for c in doomed]


def list_lanes(store: CardStore, board_id: str) -> list[dict[str, Any]]:
    try:
        return store.list_lanes(board_id)
    except StoreError as e:
        raise PersistenceFailure(f"store read failed: {e}") from e


def create_lane(
    store: CardStore,
    board_id: str,
    name: Any,
    *,
    color: Any = None,
    sort_order: Any = None,
    now: str | None = None,
) -> dict[str, Any]:
    board = _optional_ref("boardId", board_id)
    if board is None:
        raise ValidationError("boardId is required", field="boardId")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("lane name is required", field="name")
    if color is not None and not isinstance(color, str):
        raise ValidationError("color must be a string or null", field="color")
    if sort_order is not None and (isinstance(sort_order, bool) or not isinstance(sort_order, int)):
        raise ValidationError("sortOrder must be an integer", field="sortOrder")

    existing = list_lanes(store, board)
    _check_lane_name(existing, name)
    if sort_order is None:
        orders = [int(l.get("sortOrder") or 0) for l in existing]
        sort_order = (max(orders) if orders else -1) + 1

    item = {
        "laneId": new_lane_id(),
        "boardId": board,
        "name": name.strip(),
        "color": color,
        "sortOrder": sort_order,
        "createdAt": now or _now_iso(),
    }
    commit(store, [PutLane(item=item)])
    return item


def list_card_audit(store: CardStore, card_id: str, *, limit: int = DEFAULT_AUDIT_LIMIT) -> list[dict[str, Any]]:
    load_card(store, card_id)
    n = max(1, min(int(limit), MAX_AUDIT_LIMIT))
    try:
        return store.list_audit(card_id, limit=n)
    except StoreError as e:
        raise PersistenceFailure(f"store read failed: {e}") from e


def get_lane(store: CardStore, lane_id: str) -> dict[str, Any]:
    return load_lane(store, lane_id)


def _check_lane_name(existing: list[dict[str, Any]], name: str, *, exclude: str | None = None) -> None:
    wanted = name.strip().lower()
    for lane in existing:
        if lane.get("laneId") == exclude:
            continue
        if str(lane.get("name") or "").strip().lower() == wanted:
            raise Conflict("lane name already exists for this board", field="name")


def update_lane(store: CardStore, lane_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
    """Rename, recolor or reorder a lane. Only the keys present are changed."""
    if not isinstance(changes, Mapping):
        raise ValidationError("changes must be an object")
    unknown = sorted(set(changes) - {"name", "color", "sortOrder"})
    if unknown:
        raise ValidationError(f"unsupported field(s): {', '.join(unknown)}", field=unknown[0])
    if not changes:
        raise ValidationError("changes must include at least one field")

    lane = load_lane(store, lane_id)
    updated = dict(lane)
    if "name" in changes:
        name = changes["name"]
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("lane name must be a non-empty string", field="name")
        _check_lane_name(list_lanes(store, str(lane.get("boardId") or "")), name, exclude=lane_id)
        updated["name"] = name.strip()
    if "color" in changes:
        color = changes["color"]
        if color is not None and not isinstance(color, str):
            raise ValidationError("color must be a string or null", field="color")
        updated["color"] = color
    if "sortOrder" in changes:
        order = changes["sortOrder"]
        if isinstance(order, bool) or not isinstance(order, int):
            raise ValidationError("sortOrder must be an integer", field="sortOrder")
        updated["sortOrder"] = order

    commit(store, [PutLane(item=updated)])
    return {k: v for k, v in updated.items() if v is not None}


def delete_lane(store: CardStore, lane_id: str) -> str:
    load_lane(store, lane_id)
    if lane_cards(store, lane_id):
        raise Conflict("lane has cards; move or delete them first", field="laneId")
    commit(store, [DeleteLane(lane_id=lane_id)])
    return lane_id


def list_actor_audit(store: CardStore, actor_id: str, *, limit: int = DEFAULT_AUDIT_LIMIT) -> list[dict[str, Any]]:
    n = max(1, min(int(limit), MAX_AUDIT_LIMIT))
    try:
        return store.list_actor_audit(actor_id, limit=n)
    except StoreError as e:
        raise PersistenceFailure(f"store read failed: {e}") from e
