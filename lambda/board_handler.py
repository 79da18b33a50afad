from __future__ import annotations

import base64
import json
import os
import time
from datetime import datetime, timezone
from typing import Any

from botocore.exceptions import ClientError

import board_service
from board_errors import BoardError, NotFound, ValidationError
from card_store import DynamoCardStore
from ids import is_base58_22, new_card_id


CARDS_TABLE_NAME = os.environ.get("BOARD_CARDS_TABLE", "")
LANES_TABLE_NAME = os.environ.get("BOARD_LANES_TABLE", "")
AUDIT_TABLE_NAME = os.environ.get("BOARD_AUDIT_TABLE", "")
SCHEMA_VERSION = os.environ.get("BOARD_SCHEMA_VERSION", "2026-10-01")
BASE_PATH = "/v1/board"

_store_instance: Any | None = None


def _store() -> Any:
    global _store_instance
    if _store_instance is None:
        _store_instance = DynamoCardStore(
            cards_table=CARDS_TABLE_NAME,
            lanes_table=LANES_TABLE_NAME,
            audit_table=AUDIT_TABLE_NAME,
        )
    return _store_instance


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _response(status_code: int, body: dict[str, Any], request_id: str) -> dict[str, Any]:
    payload = dict(body)
    payload.setdefault("requestId", request_id)
    payload.setdefault("schemaVersion", SCHEMA_VERSION)
    return {
        "statusCode": int(status_code),
        "headers": {
            "content-type": "application/json",
            "cache-control": "no-store",
        },
        "body": json.dumps(payload),
    }


def _error(status_code: int, code: str, message: str, request_id: str, *, field: str | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"errorCode": code, "message": message}
    if field:
        body["field"] = field
    return _response(status_code, body, request_id)


def _request_id(event: dict[str, Any]) -> str:
    rc = event.get("requestContext") or {}
    if isinstance(rc, dict):
        rid = str(rc.get("requestId") or "").strip()
        if rid:
            return rid
    return new_card_id()


def _parse_body(event: dict[str, Any]) -> dict[str, Any]:
    raw = event.get("body")
    if raw is None:
        return {}
    if not isinstance(raw, str):
        raise ValidationError("request body must be a JSON object")
    if bool(event.get("isBase64Encoded")):
        try:
            raw = base64.b64decode(raw.encode("utf-8")).decode("utf-8")
        except Exception as e:
            raise ValidationError("request body base64 decode failed") from e
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except Exception as e:
        raise ValidationError("request body must be valid JSON") from e
    if not isinstance(parsed, dict):
        raise ValidationError("request body must be a JSON object")
    return parsed


def _path(event: dict[str, Any]) -> str:
    p = str(event.get("path") or "").strip()
    # Best effort for custom-domain stage prefixes.
    idx = p.find(BASE_PATH)
    if idx >= 0:
        p = p[idx:]
    return p


def _query_param(event: dict[str, Any], key: str) -> str:
    qs = event.get("queryStringParameters") or {}
    if not isinstance(qs, dict):
        return ""
    val = qs.get(key)
    return str(val).strip() if val is not None else ""


def _claims(event: dict[str, Any]) -> dict[str, Any]:
    rc = event.get("requestContext") or {}
    if not isinstance(rc, dict):
        return {}
    auth = rc.get("authorizer") or {}
    if not isinstance(auth, dict):
        return {}
    claims = auth.get("claims")
    if isinstance(claims, dict):
        return claims
    jwt_claims = (auth.get("jwt") or {}).get("claims")
    if isinstance(jwt_claims, dict):
        return jwt_claims
    return {}


def _actor(event: dict[str, Any]) -> str:
    return str(_claims(event).get("sub") or "").strip()


def _path_id(kind: str, value: str) -> str:
    # Ids are minted server-side, so any other shape cannot exist.
    if not is_base58_22(value):
        raise NotFound(f"{kind} not found: {value}")
    return value


def _optional_revision(body: dict[str, Any]) -> int | None:
    raw = body.get("expectedRevision")
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValidationError("expectedRevision must be an integer", field="expectedRevision")
    return raw


def _audit_limit(raw: str) -> int:
    if not raw:
        return board_service.DEFAULT_AUDIT_LIMIT
    try:
        n = int(raw)
    except Exception:
        return board_service.DEFAULT_AUDIT_LIMIT
    if n < 1:
        return board_service.DEFAULT_AUDIT_LIMIT
    return min(n, board_service.MAX_AUDIT_LIMIT)


def _move_card(event: dict[str, Any], request_id: str, card_id: str, log: dict[str, Any]) -> dict[str, Any]:
    body = _parse_body(event)
    result = board_service.move_card(
        _store(),
        card_id,
        body.get("laneId"),
        body.get("index"),
        _actor(event) or None,
        expected_revision=_optional_revision(body),
    )
    log["lane_id"] = result.card.get("laneId")
    log["position"] = result.card.get("position")
    log["rebalanced"] = len(result.rebalanced)
    log["audit_id"] = (result.audit_entry or {}).get("auditId")
    log["outcome"] = result.outcome
    return _response(200, board_service.result_to_json(result), request_id)


def _edit_card(event: dict[str, Any], request_id: str, card_id: str, log: dict[str, Any]) -> dict[str, Any]:
    body = _parse_body(event)
    changes = body.get("changes")
    if not isinstance(changes, dict):
        raise ValidationError("request body must include changes{}")
    result = board_service.edit_card(
        _store(),
        card_id,
        changes,
        _actor(event) or None,
        expected_revision=_optional_revision(body),
    )
    log["fields"] = sorted(changes)
    log["audit_id"] = (result.audit_entry or {}).get("auditId")
    log["outcome"] = result.outcome
    return _response(200, board_service.result_to_json(result), request_id)


def _create_card(event: dict[str, Any], request_id: str, lane_id: str, log: dict[str, Any]) -> dict[str, Any]:
    body = _parse_body(event)
    card = board_service.create_card(_store(), lane_id, body, _actor(event) or None)
    log["card_id"] = card["cardId"]
    log["position"] = card["position"]
    log["outcome"] = "created"
    return _response(201, {"card": board_service.card_to_json(card)}, request_id)


def _list_cards(request_id: str, lane_id: str, log: dict[str, Any]) -> dict[str, Any]:
    cards = board_service.list_cards_for_lane(_store(), lane_id)
    log["count"] = len(cards)
    log["outcome"] = "success"
    return _response(
        200,
        {"laneId": lane_id, "items": [board_service.card_to_json(c) for c in cards]},
        request_id,
    )


def _create_lane(event: dict[str, Any], request_id: str, board_id: str, log: dict[str, Any]) -> dict[str, Any]:
    body = _parse_body(event)
    lane = board_service.create_lane(
        _store(),
        board_id,
        body.get("name"),
        color=body.get("color"),
        sort_order=body.get("sortOrder"),
    )
    log["lane_id"] = lane["laneId"]
    log["outcome"] = "created"
    return _response(201, {"lane": board_service.lane_to_json(lane)}, request_id)


def _list_lanes(request_id: str, board_id: str, log: dict[str, Any]) -> dict[str, Any]:
    lanes = board_service.list_lanes(_store(), board_id)
    log["count"] = len(lanes)
    log["outcome"] = "success"
    return _response(
        200,
        {"boardId": board_id, "items": [board_service.lane_to_json(l) for l in lanes]},
        request_id,
    )


def _update_lane(event: dict[str, Any], request_id: str, lane_id: str, log: dict[str, Any]) -> dict[str, Any]:
    body = _parse_body(event)
    changes = body.get("changes")
    if not isinstance(changes, dict):
        raise ValidationError("request body must include changes{}")
    lane = board_service.update_lane(_store(), lane_id, changes)
    log["fields"] = sorted(changes)
    log["outcome"] = "updated"
    return _response(200, {"lane": board_service.lane_to_json(lane)}, request_id)


def _delete_card(event: dict[str, Any], request_id: str, card_id: str, log: dict[str, Any]) -> dict[str, Any]:
    cascade = _query_param(event, "cascade").lower() in {"1", "true", "yes"}
    deleted = board_service.delete_card(_store(), card_id, cascade=cascade)
    log["deleted"] = len(deleted)
    log["outcome"] = "deleted"
    return _response(200, {"deleted": deleted}, request_id)


def _card_audit(event: dict[str, Any], request_id: str, card_id: str, log: dict[str, Any]) -> dict[str, Any]:
    limit = _audit_limit(_query_param(event, "limit"))
    items = board_service.list_card_audit(_store(), card_id, limit=limit)
    log["count"] = len(items)
    log["outcome"] = "success"
    return _response(
        200,
        {"items": [board_service.audit_to_json(i) for i in items], "limit": limit},
        request_id,
    )


def _my_activity(event: dict[str, Any], request_id: str, log: dict[str, Any]) -> dict[str, Any]:
    actor = _actor(event)
    if not actor:
        log["outcome"] = "unauthorized"
        return _error(401, "UNAUTHORIZED", "missing caller identity", request_id)
    limit = _audit_limit(_query_param(event, "limit"))
    items = board_service.list_actor_audit(_store(), actor, limit=limit)
    log["count"] = len(items)
    log["outcome"] = "success"
    return _response(
        200,
        {"items": [board_service.audit_to_json(i) for i in items], "limit": limit},
        request_id,
    )


def _route(event: dict[str, Any], request_id: str, method: str, segments: list[str], log: dict[str, Any]) -> dict[str, Any]:
    rest = segments[2:]

    # /v1/board/boards/{boardId}/lanes
    if len(rest) == 3 and rest[0] == "boards" and rest[2] == "lanes":
        log["board_id"] = rest[1]
        if method == "POST":
            return _create_lane(event, request_id, rest[1], log)
        if method == "GET":
            return _list_lanes(request_id, rest[1], log)

    # /v1/board/my/activity
    if method == "GET" and rest == ["my", "activity"]:
        return _my_activity(event, request_id, log)

    # /v1/board/lanes/{laneId}
    if len(rest) == 2 and rest[0] == "lanes" and method in {"GET", "PATCH", "DELETE"}:
        log["lane_id"] = rest[1]
        lane_id = _path_id("lane", rest[1])
        if method == "GET":
            lane = board_service.get_lane(_store(), lane_id)
            log["outcome"] = "success"
            return _response(200, {"lane": board_service.lane_to_json(lane)}, request_id)
        if method == "PATCH":
            return _update_lane(event, request_id, lane_id, log)
        board_service.delete_lane(_store(), lane_id)
        log["outcome"] = "deleted"
        return _response(200, {"deleted": lane_id}, request_id)

    # /v1/board/lanes/{laneId}/cards
    if len(rest) == 3 and rest[0] == "lanes" and rest[2] == "cards" and method in {"GET", "POST"}:
        log["lane_id"] = rest[1]
        lane_id = _path_id("lane", rest[1])
        if method == "POST":
            return _create_card(event, request_id, lane_id, log)
        return _list_cards(request_id, lane_id, log)

    # /v1/board/cards/{cardId}
    if len(rest) == 2 and rest[0] == "cards" and method in {"GET", "PATCH", "DELETE"}:
        log["card_id"] = rest[1]
        card_id = _path_id("card", rest[1])
        if method == "GET":
            card = board_service.get_card(_store(), card_id)
            log["outcome"] = "success"
            return _response(200, {"card": board_service.card_to_json(card)}, request_id)
        if method == "PATCH":
            return _edit_card(event, request_id, card_id, log)
        return _delete_card(event, request_id, card_id, log)

    # /v1/board/cards/{cardId}/move
    if method == "POST" and len(rest) == 3 and rest[0] == "cards" and rest[2] == "move":
        log["card_id"] = rest[1]
        return _move_card(event, request_id, _path_id("card", rest[1]), log)

    # /v1/board/cards/{cardId}/audit
    if method == "GET" and len(rest) == 3 and rest[0] == "cards" and rest[2] == "audit":
        log["card_id"] = rest[1]
        return _card_audit(event, request_id, _path_id("card", rest[1]), log)

    log["outcome"] = "route_not_found"
    return _error(404, "NOT_FOUND", f"route not found: {method} {'/' + '/'.join(segments)}", request_id)


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    request_id = _request_id(event)
    method = str(event.get("httpMethod") or "").upper()
    path = _path(event)
    segments = [s for s in path.split("/") if s]
    wide_event: dict[str, Any] = {
        "event": "laneboard_request",
        "schema_version": SCHEMA_VERSION,
        "ts": _now_iso(),
        "request_id": request_id,
        "method": method,
        "path": path,
    }
    status_code = 500
    try:
        if not CARDS_TABLE_NAME or not LANES_TABLE_NAME or not AUDIT_TABLE_NAME:
            wide_event["outcome"] = "misconfigured"
            out = _error(500, "MISCONFIGURED", "board table env vars are required", request_id)
        elif segments[:2] != ["v1", "board"]:
            wide_event["outcome"] = "route_not_found"
            out = _error(404, "NOT_FOUND", f"route not found: {method} {path}", request_id)
        else:
            out = _route(event, request_id, method, segments, wide_event)
        status_code = int(out["statusCode"])
        return out
    except BoardError as e:
        wide_event["outcome"] = e.error_code.lower()
        wide_event["error"] = {"type": type(e).__name__, "message": e.message, "field": e.field}
        status_code = e.status_code
        return _error(e.status_code, e.error_code, e.message, request_id, field=e.field)
    except ClientError as e:
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
        status_code = 500
        return _error(500, "PERSISTENCE_FAILURE", str(e), request_id)
    except Exception as e:
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
        status_code = 500
        return _error(500, "INTERNAL_ERROR", str(e), request_id)
    finally:
        wide_event["status_code"] = status_code
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True, default=str))
