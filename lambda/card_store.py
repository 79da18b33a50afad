from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol, Sequence, Union

import boto3
from boto3.dynamodb.conditions import Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

NAME_GUARD_PREFIX = "__name__"
MAX_TRANSACTION_ITEMS = 100
LANE_INDEX = "LaneIndex"
PARENT_INDEX = "ParentIndex"
BOARD_INDEX = "BoardIndex"
ACTOR_TIME_INDEX = "ActorTimeIndex"


class StoreError(Exception):
    pass


class StoreConflict(StoreError):
    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


def name_guard_key(board_id: str, name: str) -> str:
    return f"{NAME_GUARD_PREFIX}#{board_id}#{str(name).strip().lower()}"


def is_name_guard(item: dict[str, Any]) -> bool:
    return str(item.get("cardId") or "").startswith(f"{NAME_GUARD_PREFIX}#")


@dataclass(frozen=True)
class PutCard:
    item: dict[str, Any]


@dataclass(frozen=True)
class UpdateCard:
    card_id: str
    set_fields: dict[str, Any]
    expected_revision: int | None = None
    expected_lane_id: str | None = None


@dataclass(frozen=True)
class DeleteCard:
    card_id: str


@dataclass(frozen=True)
class PutLane:
    item: dict[str, Any]


@dataclass(frozen=True)
class DeleteLane:
    lane_id: str


@dataclass(frozen=True)
class PutAudit:
    item: dict[str, Any]


@dataclass(frozen=True)
class PutNameGuard:
    board_id: str
    name: str
    card_id: str


@dataclass(frozen=True)
class DeleteNameGuard:
    board_id: str
    name: str


Op = Union[PutCard, UpdateCard, DeleteCard, PutLane, DeleteLane, PutAudit, PutNameGuard, DeleteNameGuard]


class CardStore(Protocol):
    def get_by_id(self, card_id: str) -> dict[str, Any] | None: ...

    def get_lane(self, lane_id: str) -> dict[str, Any] | None: ...

    def list_by_lane(self, lane_id: str) -> list[dict[str, Any]]: ...

    def list_lanes(self, board_id: str) -> list[dict[str, Any]]: ...

    def list_children(self, card_id: str) -> list[dict[str, Any]]: ...

    def list_audit(self, card_id: str, *, limit: int) -> list[dict[str, Any]]: ...

    def list_actor_audit(self, actor_id: str, *, limit: int) -> list[dict[str, Any]]: ...

    def transaction(self, ops: Sequence[Op]) -> None: ...


def _without_nulls(item: dict[str, Any]) -> dict[str, Any]:
    # Index key attributes cannot hold NULL, so absent and null are the same.
    return {k: v for k, v in item.items() if v is not None}


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _card_sort_key(item: dict[str, Any]) -> tuple[int, str]:
    return int(item.get("position") or 0), str(item.get("cardId") or "")


def _lane_sort_key(item: dict[str, Any]) -> tuple[int, str]:
    return int(item.get("sortOrder") or 0), str(item.get("createdAt") or "")


def _audit_sort_key(item: dict[str, Any]) -> str:
    return str(item.get("tsAuditId") or "")


@dataclass
class _MemoryState:
    cards: dict[str, dict[str, Any]] = field(default_factory=dict)
    lanes: dict[str, dict[str, Any]] = field(default_factory=dict)
    audit: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    name_guards: dict[str, str] = field(default_factory=dict)


class MemoryCardStore:
    """Dict-backed store; ops are staged on a copy and swapped in on success."""

    def __init__(self) -> None:
        self._state = _MemoryState()
        self.transactions = 0

    def get_by_id(self, card_id: str) -> dict[str, Any] | None:
        item = self._state.cards.get(card_id)
        return copy.deepcopy(item) if item else None

    def get_lane(self, lane_id: str) -> dict[str, Any] | None:
        item = self._state.lanes.get(lane_id)
        return copy.deepcopy(item) if item else None

    def list_by_lane(self, lane_id: str) -> list[dict[str, Any]]:
        items = [c for c in self._state.cards.values() if c.get("laneId") == lane_id]
        return copy.deepcopy(sorted(items, key=_card_sort_key))

    def list_lanes(self, board_id: str) -> list[dict[str, Any]]:
        items = [l for l in self._state.lanes.values() if l.get("boardId") == board_id]
        return copy.deepcopy(sorted(items, key=_lane_sort_key))

    def list_children(self, card_id: str) -> list[dict[str, Any]]:
        items = [c for c in self._state.cards.values() if c.get("parentId") == card_id]
        return copy.deepcopy(sorted(items, key=lambda c: str(c.get("cardId") or "")))

    def list_audit(self, card_id: str, *, limit: int) -> list[dict[str, Any]]:
        items = sorted(self._state.audit.get(card_id, []), key=_audit_sort_key, reverse=True)
        return copy.deepcopy(items[:limit])

    def list_actor_audit(self, actor_id: str, *, limit: int) -> list[dict[str, Any]]:
        items = [a for entries in self._state.audit.values() for a in entries if a.get("actorId") == actor_id]
        items.sort(key=_audit_sort_key, reverse=True)
        return copy.deepcopy(items[:limit])

    def audit_count(self) -> int:
        return sum(len(v) for v in self._state.audit.values())

    def transaction(self, ops: Sequence[Op]) -> None:
        staged = copy.deepcopy(self._state)
        for op in ops:
            self._apply_op(staged, op)
        self._state = staged
        self.transactions += 1

    def _apply_op(self, state: _MemoryState, op: Op) -> None:
        if isinstance(op, PutCard):
            state.cards[str(op.item["cardId"])] = _without_nulls(copy.deepcopy(op.item))
        elif isinstance(op, UpdateCard):
            current = state.cards.get(op.card_id)
            if current is None:
                raise StoreConflict(f"card does not exist: {op.card_id}")
            if op.expected_revision is not None and current.get("revision") != op.expected_revision:
                raise StoreConflict(
                    f"revision mismatch for {op.card_id}: expected {op.expected_revision}",
                    field="revision",
                )
            if op.expected_lane_id is not None and current.get("laneId") != op.expected_lane_id:
                raise StoreConflict(f"card {op.card_id} left lane {op.expected_lane_id}", field="laneId")
            for k, v in op.set_fields.items():
                if v is None:
                    current.pop(k, None)
                else:
                    current[k] = copy.deepcopy(v)
        elif isinstance(op, DeleteCard):
            state.cards.pop(op.card_id, None)
        elif isinstance(op, PutLane):
            state.lanes[str(op.item["laneId"])] = _without_nulls(copy.deepcopy(op.item))
        elif isinstance(op, DeleteLane):
            state.lanes.pop(op.lane_id, None)
        elif isinstance(op, PutAudit):
            state.audit.setdefault(str(op.item["cardId"]), []).append(_without_nulls(copy.deepcopy(op.item)))
        elif isinstance(op, PutNameGuard):
            key = name_guard_key(op.board_id, op.name)
            owner = state.name_guards.get(key)
            if owner is not None and owner != op.card_id:
                raise StoreConflict(f"name already in use: {op.name}", field="name")
            state.name_guards[key] = op.card_id
        elif isinstance(op, DeleteNameGuard):
            state.name_guards.pop(name_guard_key(op.board_id, op.name), None)
        else:
            raise StoreError(f"unsupported op: {type(op).__name__}")


class DynamoCardStore:
    def __init__(
        self,
        *,
        cards_table: str,
        lanes_table: str,
        audit_table: str,
        resource: Any | None = None,
        client: Any | None = None,
    ) -> None:
        self.cards_table_name = cards_table
        self.lanes_table_name = lanes_table
        self.audit_table_name = audit_table
        self._resource = resource
        self._client = client
        self._serializer = TypeSerializer()

    def _ddb(self) -> Any:
        if self._resource is None:
            self._resource = boto3.resource("dynamodb")
        return self._resource

    def _ddb_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("dynamodb")
        return self._client

    def _cards(self) -> Any:
        return self._ddb().Table(self.cards_table_name)

    def _lanes(self) -> Any:
        return self._ddb().Table(self.lanes_table_name)

    def _audit(self) -> Any:
        return self._ddb().Table(self.audit_table_name)

    def _query_all(self, table: Any, **kwargs: Any) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        start_key: dict[str, Any] | None = None
        while True:
            if start_key:
                kwargs["ExclusiveStartKey"] = start_key
            page = table.query(**kwargs)
            for item in page.get("Items", []) or []:
                if isinstance(item, dict):
                    out.append(_plain(item))
            start_key = page.get("LastEvaluatedKey")
            if not start_key:
                return out

    def get_by_id(self, card_id: str) -> dict[str, Any] | None:
        try:
            resp = self._cards().get_item(Key={"cardId": card_id})
        except ClientError as e:
            raise StoreError(str(e)) from e
        item = resp.get("Item")
        if not item or is_name_guard(item):
            return None
        return _plain(item)

    def get_lane(self, lane_id: str) -> dict[str, Any] | None:
        try:
            resp = self._lanes().get_item(Key={"laneId": lane_id})
        except ClientError as e:
            raise StoreError(str(e)) from e
        item = resp.get("Item")
        return _plain(item) if item else None

    def list_by_lane(self, lane_id: str) -> list[dict[str, Any]]:
        try:
            items = self._query_all(
                self._cards(),
                IndexName=LANE_INDEX,
                KeyConditionExpression=Key("laneId").eq(lane_id),
            )
        except ClientError as e:
            raise StoreError(str(e)) from e
        return sorted(items, key=_card_sort_key)

    def list_lanes(self, board_id: str) -> list[dict[str, Any]]:
        try:
            items = self._query_all(
                self._lanes(),
                IndexName=BOARD_INDEX,
                KeyConditionExpression=Key("boardId").eq(board_id),
            )
        except ClientError as e:
            raise StoreError(str(e)) from e
        return sorted(items, key=_lane_sort_key)

    def list_children(self, card_id: str) -> list[dict[str, Any]]:
        try:
            return self._query_all(
                self._cards(),
                IndexName=PARENT_INDEX,
                KeyConditionExpression=Key("parentId").eq(card_id),
            )
        except ClientError as e:
            raise StoreError(str(e)) from e

    def list_audit(self, card_id: str, *, limit: int) -> list[dict[str, Any]]:
        try:
            page = self._audit().query(
                KeyConditionExpression=Key("cardId").eq(card_id),
                ScanIndexForward=False,  # newest first
                Limit=int(limit),
            )
        except ClientError as e:
            raise StoreError(str(e)) from e
        return [_plain(i) for i in page.get("Items", []) or [] if isinstance(i, dict)]

    def list_actor_audit(self, actor_id: str, *, limit: int) -> list[dict[str, Any]]:
        try:
            page = self._audit().query(
                IndexName=ACTOR_TIME_INDEX,
                KeyConditionExpression=Key("actorId").eq(actor_id),
                ScanIndexForward=False,
                Limit=int(limit),
            )
        except ClientError as e:
            raise StoreError(str(e)) from e
        return [_plain(i) for i in page.get("Items", []) or [] if isinstance(i, dict)]

    def _av(self, value: Any) -> dict[str, Any]:
        # TypeSerializer rejects floats; route them through Decimal.
        normalized = json.loads(json.dumps(value), parse_float=Decimal)
        return self._serializer.serialize(normalized)

    def _item_av(self, item: dict[str, Any]) -> dict[str, Any]:
        return {k: self._av(v) for k, v in _without_nulls(item).items()}

    def _transact_item(self, op: Op) -> dict[str, Any]:
        if isinstance(op, PutCard):
            return {
                "Put": {
                    "TableName": self.cards_table_name,
                    "Item": self._item_av(op.item),
                    "ConditionExpression": "attribute_not_exists(cardId)",
                }
            }
        if isinstance(op, UpdateCard):
            names: dict[str, str] = {}
            values: dict[str, Any] = {}
            sets: list[str] = []
            removes: list[str] = []
            for i, (k, v) in enumerate(op.set_fields.items()):
                names[f"#f{i}"] = k
                if v is None:
                    removes.append(f"#f{i}")
                else:
                    values[f":v{i}"] = self._av(v)
                    sets.append(f"#f{i} = :v{i}")
            expr = ""
            if sets:
                expr += "SET " + ", ".join(sets)
            if removes:
                expr += (" " if expr else "") + "REMOVE " + ", ".join(removes)
            condition = "attribute_exists(cardId)"
            if op.expected_revision is not None:
                names["#revision"] = "revision"
                values[":expectedRevision"] = self._av(op.expected_revision)
                condition += " AND #revision = :expectedRevision"
            if op.expected_lane_id is not None:
                names["#laneId"] = "laneId"
                values[":expectedLane"] = self._av(op.expected_lane_id)
                condition += " AND #laneId = :expectedLane"
            update: dict[str, Any] = {
                "TableName": self.cards_table_name,
                "Key": {"cardId": self._av(op.card_id)},
                "UpdateExpression": expr,
                "ConditionExpression": condition,
                "ExpressionAttributeNames": names,
            }
            if values:
                update["ExpressionAttributeValues"] = values
            return {"Update": update}
        if isinstance(op, DeleteCard):
            return {
                "Delete": {
                    "TableName": self.cards_table_name,
                    "Key": {"cardId": self._av(op.card_id)},
                }
            }
        if isinstance(op, PutLane):
            return {
                "Put": {
                    "TableName": self.lanes_table_name,
                    "Item": self._item_av(op.item),
                }
            }
        if isinstance(op, DeleteLane):
            return {
                "Delete": {
                    "TableName": self.lanes_table_name,
                    "Key": {"laneId": self._av(op.lane_id)},
                }
            }
        if isinstance(op, PutAudit):
            # Audit entries are append-only.
            return {
                "Put": {
                    "TableName": self.audit_table_name,
                    "Item": self._item_av(op.item),
                    "ConditionExpression": "attribute_not_exists(tsAuditId)",
                }
            }
        if isinstance(op, PutNameGuard):
            return {
                "Put": {
                    "TableName": self.cards_table_name,
                    "Item": self._item_av(
                        {
                            "cardId": name_guard_key(op.board_id, op.name),
                            "itemType": "name_guard",
                            "boardId": op.board_id,
                            "ownerCardId": op.card_id,
                        }
                    ),
                    "ConditionExpression": "attribute_not_exists(cardId) OR ownerCardId = :owner",
                    "ExpressionAttributeValues": {":owner": self._av(op.card_id)},
                }
            }
        if isinstance(op, DeleteNameGuard):
            return {
                "Delete": {
                    "TableName": self.cards_table_name,
                    "Key": {"cardId": self._av(name_guard_key(op.board_id, op.name))},
                }
            }
        raise StoreError(f"unsupported op: {type(op).__name__}")

    def transaction(self, ops: Sequence[Op]) -> None:
        ops = list(ops)
        if not ops:
            return
        if len(ops) > MAX_TRANSACTION_ITEMS:
            raise StoreError(
                f"transaction has {len(ops)} items; DynamoDB allows at most {MAX_TRANSACTION_ITEMS}"
            )
        items = [self._transact_item(op) for op in ops]
        try:
            self._ddb_client().transact_write_items(TransactItems=items)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code") or "")
            if code != "TransactionCanceledException":
                raise StoreError(str(e)) from e
            reasons = e.response.get("CancellationReasons") or []
            for i, reason in enumerate(reasons):
                if str((reason or {}).get("Code") or "") != "ConditionalCheckFailed":
                    continue
                op = ops[i] if i < len(ops) else None
                if isinstance(op, PutNameGuard):
                    raise StoreConflict(f"name already in use: {op.name}", field="name") from e
                if isinstance(op, UpdateCard) and op.expected_revision is not None:
                    raise StoreConflict(
                        f"revision mismatch for {op.card_id}: expected {op.expected_revision}",
                        field="revision",
                    ) from e
                if isinstance(op, UpdateCard) and op.expected_lane_id is not None:
                    raise StoreConflict(f"card {op.card_id} left lane {op.expected_lane_id}", field="laneId") from e
                raise StoreConflict(f"conditional check failed: {type(op).__name__}") from e
            raise StoreError(str(e)) from e
