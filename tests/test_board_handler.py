import importlib
import json
import sys

from botocore.exceptions import ClientError


def _load_handler(monkeypatch, *, tables=True):
    if tables:
        monkeypatch.setenv("BOARD_CARDS_TABLE", "BoardCards")
        monkeypatch.setenv("BOARD_LANES_TABLE", "BoardLanes")
        monkeypatch.setenv("BOARD_AUDIT_TABLE", "BoardAudit")
    else:
        monkeypatch.delenv("BOARD_CARDS_TABLE", raising=False)
        monkeypatch.delenv("BOARD_LANES_TABLE", raising=False)
        monkeypatch.delenv("BOARD_AUDIT_TABLE", raising=False)
    monkeypatch.setenv("BOARD_SCHEMA_VERSION", "2026-10-01")
    if "lambda" not in sys.path:
        sys.path.insert(0, "lambda")
    import board_handler as mod

    return importlib.reload(mod)


def _event(*, method: str, path: str, body: dict | None = None, qs: dict | None = None):
    return {
        "httpMethod": method,
        "path": path,
        "body": json.dumps(body) if body is not None else None,
        "queryStringParameters": qs or None,
        "requestContext": {
            "requestId": "req-1",
            "authorizer": {"claims": {"sub": "sub-1", "cognito:username": "dev-1"}},
        },
    }


def _seeded(monkeypatch):
    mod = _load_handler(monkeypatch)
    import board_service
    from card_store import MemoryCardStore

    store = MemoryCardStore()
    todo = board_service.create_lane(store, "b1", "To Do")
    done = board_service.create_lane(store, "b1", "Done")
    card = board_service.create_card(store, todo["laneId"], {"name": "Fix bug"})
    monkeypatch.setattr(mod, "_store", lambda: store)
    return mod, store, todo["laneId"], done["laneId"], card["cardId"]


def _call(mod, event):
    out = mod.handler(event, None)
    return int(out["statusCode"]), json.loads(out["body"])


def test_move_route_applies_and_logs_wide_event(monkeypatch, capsys):
    mod, _store, _todo, done, card_id = _seeded(monkeypatch)
    capsys.readouterr()

    status, body = _call(
        mod,
        _event(method="POST", path=f"/v1/board/cards/{card_id}/move", body={"laneId": done, "index": 0}),
    )

    assert status == 200
    assert body["outcome"] == "applied"
    assert body["card"]["laneId"] == done
    assert body["auditEntry"]["description"] == 'status: "To Do" → "Done"'
    assert body["auditEntry"]["actorId"] == "sub-1"
    assert body["requestId"] == "req-1"
    assert body["schemaVersion"] == "2026-10-01"

    line = capsys.readouterr().out.strip().splitlines()[-1]
    log = json.loads(line)
    assert log["event"] == "laneboard_request"
    assert log["outcome"] == "applied"
    assert log["status_code"] == 200
    assert log["card_id"] == card_id
    assert log["audit_id"] == body["auditEntry"]["auditId"]
    assert isinstance(log["duration_ms"], int)


def test_patch_without_effective_change_returns_no_changes(monkeypatch):
    mod, store, _todo, _done, card_id = _seeded(monkeypatch)
    status, body = _call(
        mod,
        _event(method="PATCH", path=f"/v1/board/cards/{card_id}", body={"changes": {"name": "Fix bug"}}),
    )
    assert status == 200
    assert body["outcome"] == "no_changes"
    assert body["auditEntry"] is None
    assert store.audit_count() == 0


def test_patch_requires_changes_object(monkeypatch):
    mod, _store, _todo, _done, card_id = _seeded(monkeypatch)
    status, body = _call(mod, _event(method="PATCH", path=f"/v1/board/cards/{card_id}", body={"name": "x"}))
    assert status == 400
    assert body["errorCode"] == "VALIDATION_ERROR"


def test_conflict_carries_field(monkeypatch):
    mod, _store, todo, _done, card_id = _seeded(monkeypatch)
    _call(mod, _event(method="POST", path=f"/v1/board/lanes/{todo}/cards", body={"name": "Other"}))
    status, body = _call(
        mod,
        _event(method="PATCH", path=f"/v1/board/cards/{card_id}", body={"changes": {"name": "other"}}),
    )
    assert status == 409
    assert body["errorCode"] == "CONFLICT"
    assert body["field"] == "name"


def test_stale_expected_revision_is_conflict(monkeypatch):
    mod, _store, _todo, _done, card_id = _seeded(monkeypatch)
    status, body = _call(
        mod,
        _event(
            method="PATCH",
            path=f"/v1/board/cards/{card_id}",
            body={"changes": {"priority": "HIGH"}, "expectedRevision": 9},
        ),
    )
    assert status == 409
    assert body["field"] == "revision"


def test_lane_and_card_listing_routes(monkeypatch):
    mod, _store, todo, _done, card_id = _seeded(monkeypatch)
    status, lanes = _call(mod, _event(method="GET", path="/v1/board/boards/b1/lanes"))
    assert status == 200
    assert [l["name"] for l in lanes["items"]] == ["To Do", "Done"]

    status, cards = _call(mod, _event(method="GET", path=f"/v1/board/lanes/{todo}/cards"))
    assert status == 200
    assert [c["cardId"] for c in cards["items"]] == [card_id]

    status, card = _call(mod, _event(method="GET", path=f"/v1/board/cards/{card_id}"))
    assert status == 200
    assert card["card"]["name"] == "Fix bug"


def test_create_routes_return_201(monkeypatch):
    mod, _store, todo, _done, _card_id = _seeded(monkeypatch)
    status, lane = _call(mod, _event(method="POST", path="/v1/board/boards/b1/lanes", body={"name": "Review"}))
    assert status == 201
    assert lane["lane"]["sortOrder"] == 2

    status, card = _call(mod, _event(method="POST", path=f"/v1/board/lanes/{todo}/cards", body={"name": "Docs"}))
    assert status == 201
    assert card["card"]["position"] == 2000


def test_audit_route_clamps_limit(monkeypatch):
    mod, _store, _todo, done, card_id = _seeded(monkeypatch)
    _call(mod, _event(method="POST", path=f"/v1/board/cards/{card_id}/move", body={"laneId": done, "index": 0}))
    status, body = _call(mod, _event(method="GET", path=f"/v1/board/cards/{card_id}/audit", qs={"limit": "500"}))
    assert status == 200
    assert body["limit"] == 100
    assert len(body["items"]) == 1


def test_delete_route_respects_cascade_flag(monkeypatch):
    mod, _store, todo, _done, card_id = _seeded(monkeypatch)
    _call(mod, _event(method="POST", path=f"/v1/board/lanes/{todo}/cards", body={"name": "Child", "parentId": card_id}))

    status, body = _call(mod, _event(method="DELETE", path=f"/v1/board/cards/{card_id}"))
    assert status == 409

    status, body = _call(mod, _event(method="DELETE", path=f"/v1/board/cards/{card_id}", qs={"cascade": "true"}))
    assert status == 200
    assert len(body["deleted"]) == 2


def test_not_found_and_unknown_route(monkeypatch):
    mod, _store, _todo, _done, _card_id = _seeded(monkeypatch)
    status, body = _call(mod, _event(method="GET", path="/v1/board/cards/ghost"))
    assert status == 404
    assert body["errorCode"] == "NOT_FOUND"

    status, body = _call(mod, _event(method="PUT", path="/v1/board/cards/ghost/move"))
    assert status == 404
    assert body["message"].startswith("route not found")


def test_invalid_json_body_is_validation_error(monkeypatch):
    mod, _store, _todo, _done, card_id = _seeded(monkeypatch)
    event = _event(method="POST", path=f"/v1/board/cards/{card_id}/move")
    event["body"] = "{not json"
    status, body = _call(mod, event)
    assert status == 400
    assert body["errorCode"] == "VALIDATION_ERROR"


def test_missing_table_env_is_misconfigured(monkeypatch):
    mod = _load_handler(monkeypatch, tables=False)
    status, body = _call(mod, _event(method="GET", path="/v1/board/boards/b1/lanes"))
    assert status == 500
    assert body["errorCode"] == "MISCONFIGURED"


def test_unexpected_errors_map_to_500_codes(monkeypatch):
    mod = _load_handler(monkeypatch)

    class BrokenStore:
        def list_lanes(self, board_id):
            raise ClientError({"Error": {"Code": "InternalServerError", "Message": "boom"}}, "Query")

    monkeypatch.setattr(mod, "_store", lambda: BrokenStore())
    status, body = _call(mod, _event(method="GET", path="/v1/board/boards/b1/lanes"))
    assert status == 500
    assert body["errorCode"] == "PERSISTENCE_FAILURE"

    def explode(*_args, **_kwargs):
        raise RuntimeError("kaput")

    monkeypatch.setattr(mod.board_service, "list_lanes", explode)
    status, body = _call(mod, _event(method="GET", path="/v1/board/boards/b1/lanes"))
    assert status == 500
    assert body["errorCode"] == "INTERNAL_ERROR"


def test_malformed_path_ids_are_not_found_without_store_reads(monkeypatch):
    mod = _load_handler(monkeypatch)

    class NoReads:
        def __getattr__(self, name):
            raise AssertionError(f"unexpected store call: {name}")

    monkeypatch.setattr(mod, "_store", lambda: NoReads())
    for method, path in (
        ("GET", "/v1/board/cards/ghost"),
        ("POST", "/v1/board/cards/ghost/move"),
        ("GET", "/v1/board/lanes/tmp-abc/cards"),
        ("DELETE", "/v1/board/lanes/0000000000000000000000"),
    ):
        status, body = _call(mod, _event(method=method, path=path, body={}))
        assert status == 404
        assert body["errorCode"] == "NOT_FOUND"
        assert not body["message"].startswith("route not found")


def test_lane_get_update_and_delete_routes(monkeypatch):
    mod, store, todo, done, card_id = _seeded(monkeypatch)

    status, body = _call(mod, _event(method="GET", path=f"/v1/board/lanes/{done}"))
    assert status == 200
    assert body["lane"]["name"] == "Done"

    status, body = _call(
        mod,
        _event(method="PATCH", path=f"/v1/board/lanes/{done}", body={"changes": {"name": "Shipped", "color": "#0a0"}}),
    )
    assert status == 200
    assert body["lane"]["name"] == "Shipped"
    assert body["lane"]["color"] == "#0a0"

    status, body = _call(
        mod,
        _event(method="PATCH", path=f"/v1/board/lanes/{done}", body={"changes": {"name": "to do"}}),
    )
    assert status == 409
    assert body["field"] == "name"

    status, body = _call(mod, _event(method="DELETE", path=f"/v1/board/lanes/{todo}"))
    assert status == 409
    assert body["field"] == "laneId"
    assert store.get_by_id(card_id)["laneId"] == todo

    status, body = _call(mod, _event(method="DELETE", path=f"/v1/board/lanes/{done}"))
    assert status == 200
    assert body["deleted"] == done
    status, _body = _call(mod, _event(method="GET", path=f"/v1/board/lanes/{done}"))
    assert status == 404


def test_lane_patch_requires_changes_object(monkeypatch):
    mod, _store, todo, _done, _card_id = _seeded(monkeypatch)
    status, body = _call(mod, _event(method="PATCH", path=f"/v1/board/lanes/{todo}", body={"name": "x"}))
    assert status == 400
    assert body["errorCode"] == "VALIDATION_ERROR"


def test_my_activity_lists_callers_audit_entries(monkeypatch, capsys):
    mod, _store, todo, done, card_id = _seeded(monkeypatch)
    import audit_recorder

    ticks = iter(f"2026-03-01T00:00:0{i}.000000Z" for i in range(10))
    monkeypatch.setattr(audit_recorder, "_now_iso", lambda: next(ticks))
    _call(mod, _event(method="POST", path=f"/v1/board/cards/{card_id}/move", body={"laneId": done, "index": 0}))
    _call(mod, _event(method="PATCH", path=f"/v1/board/cards/{card_id}", body={"changes": {"priority": "HIGH"}}))
    other = _event(method="POST", path=f"/v1/board/cards/{card_id}/move", body={"laneId": todo, "index": 0})
    other["requestContext"]["authorizer"]["claims"]["sub"] = "sub-2"
    _call(mod, other)
    capsys.readouterr()

    status, body = _call(mod, _event(method="GET", path="/v1/board/my/activity", qs={"limit": "10"}))
    assert status == 200
    assert body["limit"] == 10
    assert [i["actorId"] for i in body["items"]] == ["sub-1", "sub-1"]
    assert body["items"][0]["description"].startswith("priority")

    log = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert log["count"] == 2


def test_my_activity_requires_caller_identity(monkeypatch):
    mod, _store, _todo, _done, _card_id = _seeded(monkeypatch)
    event = _event(method="GET", path="/v1/board/my/activity")
    event["requestContext"]["authorizer"] = {}
    status, body = _call(mod, event)
    assert status == 401
    assert body["errorCode"] == "UNAUTHORIZED"
