import argparse
import json
import re

import pytest
from typer.testing import CliRunner

from laneboard_cli import board_commands
from laneboard_cli.board_api import RemoteError
from laneboard_cli.board_main import app, main
from laneboard_cli.cli_shared import GlobalOpts, UsageError, _debounce_ms_from_env, _resolve_endpoint

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")


def _plain(s: str) -> str:
    return _ANSI_RE.sub("", s)


class FakeClient:
    def __init__(self):
        self.lanes = [
            {"laneId": "todo", "boardId": "b1", "name": "To Do", "sortOrder": 0},
            {"laneId": "done", "boardId": "b1", "name": "Done", "sortOrder": 1},
        ]
        self.cards = {
            "c1": {"cardId": "c1", "boardId": "b1", "laneId": "todo", "position": 1000, "name": "Fix bug", "revision": 1},
            "c2": {"cardId": "c2", "boardId": "b1", "laneId": "todo", "position": 2000, "name": "Write docs", "revision": 1},
        }
        self.calls = []
        self.failure = None
        self.activity = []

    def _card(self, card_id):
        if card_id not in self.cards:
            raise RemoteError("NOT_FOUND", f"card not found: {card_id}", status=404)
        return self.cards[card_id]

    def get_card(self, card_id):
        return {"card": dict(self._card(card_id))}

    def list_lanes(self, board_id):
        self.calls.append(("list_lanes", board_id))
        return {"items": [dict(lane) for lane in self.lanes if lane["boardId"] == board_id]}

    def list_cards(self, lane_id):
        items = sorted((c for c in self.cards.values() if c["laneId"] == lane_id), key=lambda c: c["position"])
        return {"items": [dict(c) for c in items]}

    def move_card(self, card_id, lane_id, index, *, expected_revision=None):
        self.calls.append(("move", card_id, lane_id, index))
        if self.failure is not None:
            raise self.failure
        card = self._card(card_id)
        card.update(laneId=lane_id, position=(index + 1) * 1000, revision=card["revision"] + 1)
        entry = {"auditId": "a1", "cardId": card_id, "description": 'status: "To Do" → "Done"'}
        return {"card": dict(card), "auditEntry": entry, "outcome": "applied"}

    def edit_card(self, card_id, changes, *, expected_revision=None):
        self.calls.append(("edit", card_id, dict(changes)))
        if self.failure is not None:
            raise self.failure
        card = self._card(card_id)
        card.update(changes)
        entry = {"auditId": "a2", "cardId": card_id, "description": "edited"}
        return {"card": dict(card), "auditEntry": entry, "outcome": "applied"}

    def create_card(self, lane_id, fields):
        self.calls.append(("create", lane_id, dict(fields)))
        return {"card": {"cardId": "c3", "laneId": lane_id, "position": 3000, **fields}}

    def delete_card(self, card_id, *, cascade=False):
        self.calls.append(("delete", card_id, cascade))
        return {"deleted": [card_id, "kid"] if cascade else [card_id]}

    def create_lane(self, board_id, name, *, color=None, sort_order=None):
        self.calls.append(("create_lane", board_id, name, color, sort_order))
        return {"lane": {"laneId": "l9", "boardId": board_id, "name": name}}

    def get_lane(self, lane_id):
        for lane in self.lanes:
            if lane["laneId"] == lane_id:
                return {"lane": dict(lane)}
        raise RemoteError("NOT_FOUND", f"lane not found: {lane_id}", status=404)

    def update_lane(self, lane_id, changes):
        self.calls.append(("update_lane", lane_id, dict(changes)))
        lane = self.get_lane(lane_id)["lane"]
        lane.update(changes)
        return {"lane": lane}

    def delete_lane(self, lane_id):
        self.calls.append(("delete_lane", lane_id))
        if any(c["laneId"] == lane_id for c in self.cards.values()):
            raise RemoteError("CONFLICT", "lane has cards; move or delete them first", status=409, field="laneId")
        return {"deleted": lane_id}

    def my_activity(self, *, limit=None):
        self.calls.append(("my_activity", limit))
        return {"items": [dict(a) for a in self.activity]}

    def card_audit(self, card_id, *, limit=None):
        self.calls.append(("audit", card_id, limit))
        return {
            "items": [
                {"createdAt": "2026-10-01T10:00:00.000Z", "actorId": "u1", "description": 'priority: null → "HIGH"'},
            ]
        }


@pytest.fixture
def fake_client(monkeypatch):
    client = FakeClient()
    monkeypatch.setattr(board_commands, "_client", lambda _g: client)
    monkeypatch.setattr("laneboard_cli.board_main.load_dotenv", lambda *a, **k: True)
    monkeypatch.delenv("LANEBOARD_DEBOUNCE_MS", raising=False)
    return client


def _g() -> GlobalOpts:
    return GlobalOpts(stack="LaneboardStack", pretty=False, quiet=False, endpoint="https://x.invalid", debounce_ms=0)


def test_help_lists_card_commands():
    runner = CliRunner()
    result = runner.invoke(app, ["card", "--help"])
    assert result.exit_code == 0
    output = _plain(result.output)
    for name in ("show", "create", "move", "edit", "audit", "delete"):
        assert name in output


def test_version_flag(capsys):
    code = main(["--version"])
    assert code == 0
    assert "laneboard 0.1.0" in capsys.readouterr().out


def test_card_move_reports_confirmed_card(fake_client, capsys):
    code = main(["card", "move", "c1", "done", "0"])
    out = capsys.readouterr().out

    assert code == 0
    assert ("move", "c1", "done", 0) in fake_client.calls
    assert "- c1 pos=1000 rev=2 priority=- name=Fix bug" in out
    assert 'activity: status: "To Do" → "Done"' in out


def test_card_move_json_output(fake_client, capsys):
    code = main(["--json", "--plain-json", "card", "move", "c2", "done", "0"])
    out = json.loads(capsys.readouterr().out)

    assert code == 0
    assert out["card"]["laneId"] == "done"
    assert out["index"] == 0
    assert out["auditEntry"]["auditId"] == "a1"


def test_card_move_conflict_is_reported_and_exits_1(fake_client, capsys):
    fake_client.failure = RemoteError("CONFLICT", "card was modified", status=409, field="revision")

    code = main(["card", "move", "c1", "done", "0"])
    captured = capsys.readouterr()

    assert code == 1
    assert "error: revision: card was modified" in _plain(captured.err)


def test_card_move_unknown_lane_is_usage_error(fake_client, capsys):
    code = main(["card", "move", "c1", "nowhere", "0"])
    combined = _plain("\n".join(capsys.readouterr()))

    assert code == 2
    assert "unknown lane: nowhere" in combined
    assert not [c for c in fake_client.calls if c[0] == "move"]


def test_card_move_missing_card(fake_client, capsys):
    code = main(["card", "move", "ghost", "done", "0"])
    err = _plain(capsys.readouterr().err)

    assert code == 1
    assert "NOT_FOUND: card not found: ghost" in err


def test_card_edit_parses_assignments(fake_client, capsys):
    code = main(["card", "edit", "c1", "--set", "priority=HIGH", "--set", "dueDate=null", "--set", "name=\"Ship it\""])
    out = capsys.readouterr().out

    assert code == 0
    assert ("edit", "c1", {"priority": "HIGH", "dueDate": None, "name": "Ship it"}) in fake_client.calls
    assert "priority=HIGH name=Ship it" in out
    assert "activity: edited" in out


def test_card_edit_requires_assignments(fake_client, capsys):
    code = main(["card", "edit", "c1"])
    assert code == 2
    assert "provide at least one --set field=value" in _plain(capsys.readouterr().err)


def test_card_edit_rejects_lane_change(fake_client, capsys):
    code = main(["card", "edit", "c1", "--set", "laneId=done"])
    assert code == 2
    assert "use move() to change a card's lane" in _plain(capsys.readouterr().err)


def test_card_edit_validation_error_names_field(fake_client, capsys):
    fake_client.failure = RemoteError("VALIDATION_ERROR", "unknown priority", status=400, field="priority")
    code = main(["card", "edit", "c1", "--set", "priority=URGENT"])
    assert code == 1
    assert "invalid priority: unknown priority" in _plain(capsys.readouterr().err)


def test_parse_assignments_rejects_missing_equals():
    with pytest.raises(UsageError, match="expected field=value"):
        board_commands._parse_assignments(["priority"])
    assert board_commands._parse_assignments(["position=5", "name=plain text"]) == {"position": 5, "name": "plain text"}


def test_lane_list_and_cards_human_output(fake_client, capsys):
    assert main(["lane", "list", "b1"]) == 0
    out = capsys.readouterr().out
    assert "- todo order=0 name=To Do" in out
    assert "items: 2" in out

    assert main(["lane", "cards", "todo"]) == 0
    out = capsys.readouterr().out
    assert out.splitlines()[0].startswith("- c1 pos=1000")
    assert "items: 2" in out

    assert main(["lane", "list", "empty-board"]) == 0
    assert "No lanes." in capsys.readouterr().out


def test_lane_create_passes_options(fake_client, capsys):
    code = main(["lane", "create", "b1", "Review", "--color", "#0af", "--sort-order", "5"])
    assert code == 0
    assert ("create_lane", "b1", "Review", "#0af", 5) in fake_client.calls
    assert "Created lane l9 (Review)." in capsys.readouterr().out


def test_cmd_card_create_collects_optional_fields(fake_client, capsys):
    args = argparse.Namespace(
        json_output=False,
        lane_id="todo",
        name="New",
        description=None,
        priority="LOW",
        due_date="2026-11-01",
        assignee_id=None,
        parent_id="c1",
    )
    assert board_commands.cmd_card_create(args, _g()) == 0
    assert fake_client.calls[-1] == ("create", "todo", {"name": "New", "priority": "LOW", "dueDate": "2026-11-01", "parentId": "c1"})
    assert "Created card c3 at position 3000." in capsys.readouterr().out


def test_card_delete_and_audit(fake_client, capsys):
    assert main(["card", "delete", "c1", "--cascade"]) == 0
    assert "Deleted 2 card(s): c1, kid" in capsys.readouterr().out

    assert main(["card", "audit", "c1", "--limit", "5"]) == 0
    out = capsys.readouterr().out
    assert ("audit", "c1", 5) in fake_client.calls
    assert 'actor=u1 priority: null → "HIGH"' in out


def test_debounce_env_must_be_non_negative_integer(monkeypatch):
    monkeypatch.setenv("LANEBOARD_DEBOUNCE_MS", "250")
    assert _debounce_ms_from_env() == 250
    monkeypatch.setenv("LANEBOARD_DEBOUNCE_MS", "soon")
    with pytest.raises(UsageError):
        _debounce_ms_from_env()
    monkeypatch.setenv("LANEBOARD_DEBOUNCE_MS", "-1")
    with pytest.raises(UsageError):
        _debounce_ms_from_env()


class _FakeCloudFormation:
    def __init__(self, outputs):
        self.outputs = outputs
        self.stack_names = []

    def describe_stacks(self, StackName):
        self.stack_names.append(StackName)
        return {"Stacks": [{"Outputs": self.outputs}]}


class _FakeSession:
    def __init__(self, cf):
        self.cf = cf

    def client(self, name):
        assert name == "cloudformation"
        return self.cf


def test_resolve_endpoint_prefers_explicit_value(monkeypatch):
    def _no_session():
        raise AssertionError("stack lookup not expected")

    monkeypatch.setattr("laneboard_cli.cli_shared._account_session", _no_session)
    assert _resolve_endpoint(_g()) == "https://x.invalid"


def test_resolve_endpoint_reads_stack_output(monkeypatch):
    cf = _FakeCloudFormation([{"OutputKey": "BoardInvokeUrl", "OutputValue": "https://api.example.invalid/prod/v1/board/"}])
    monkeypatch.setattr("laneboard_cli.cli_shared._account_session", lambda: _FakeSession(cf))
    g = GlobalOpts(stack="MyBoard", pretty=False, quiet=False)

    assert _resolve_endpoint(g) == "https://api.example.invalid/prod/v1/board"
    assert cf.stack_names == ["MyBoard"]


def test_resolve_endpoint_without_output_is_usage_error(monkeypatch):
    cf = _FakeCloudFormation([{"OutputKey": "UserPoolId", "OutputValue": "pool"}])
    monkeypatch.setattr("laneboard_cli.cli_shared._account_session", lambda: _FakeSession(cf))

    with pytest.raises(UsageError, match="missing board endpoint"):
        _resolve_endpoint(GlobalOpts(stack="MyBoard", pretty=False, quiet=False))


def test_lane_show_update_and_delete(fake_client, capsys):
    assert main(["lane", "show", "done"]) == 0
    assert "name: Done" in capsys.readouterr().out

    assert main(["lane", "update", "done", "--name", "Shipped", "--sort-order", "3"]) == 0
    assert ("update_lane", "done", {"name": "Shipped", "sortOrder": 3}) in fake_client.calls
    assert "- done order=3 color=- name=Shipped" in capsys.readouterr().out

    assert main(["lane", "update", "done", "--color", "#0af", "--clear-color"]) == 0
    assert fake_client.calls[-1] == ("update_lane", "done", {"color": None})
    capsys.readouterr()

    assert main(["lane", "delete", "done"]) == 0
    assert "Deleted lane done." in capsys.readouterr().out


def test_lane_update_requires_a_change(fake_client, capsys):
    code = main(["lane", "update", "done"])
    assert code == 2
    assert "provide at least one of" in _plain(capsys.readouterr().err)
    assert not any(c[0] == "update_lane" for c in fake_client.calls)


def test_lane_delete_with_cards_exits_1(fake_client, capsys):
    code = main(["lane", "delete", "todo"])
    assert code == 1
    assert "error: laneId: lane has cards" in _plain(capsys.readouterr().err)


def test_my_activity_human_output(fake_client, capsys):
    assert main(["my-activity"]) == 0
    out = capsys.readouterr().out
    assert "No activity." in out
    assert "items: 0" in out

    fake_client.activity = [
        {"createdAt": "2026-10-02T09:00:00.000Z", "cardId": "c2", "description": 'priority: "LOW" → "HIGH"'},
        {"createdAt": "2026-10-01T09:00:00.000Z", "cardId": "c1", "description": 'status: "To Do" → "Done"'},
    ]
    assert main(["my-activity", "--limit", "2"]) == 0
    out = capsys.readouterr().out
    assert fake_client.calls[-1] == ("my_activity", 2)
    assert out.splitlines()[0] == '- 2026-10-02T09:00:00.000Z card=c2 priority: "LOW" → "HIGH"'
    assert "items: 2" in out


def test_negative_move_index_is_clamped_not_rejected(fake_client, capsys):
    args = argparse.Namespace(json_output=False, card_id="c2", lane_id="done", index=-1)
    assert board_commands.cmd_card_move(args, _g()) == 0
    assert ("move", "c2", "done", 0) in fake_client.calls
    assert "- c2 pos=1000" in capsys.readouterr().out


def test_endpoint_from_stack_is_noted_unless_quiet(monkeypatch, capsys):
    cf = _FakeCloudFormation([{"OutputKey": "BoardInvokeUrl", "OutputValue": "https://api.example.invalid/prod"}])
    monkeypatch.setattr("laneboard_cli.cli_shared._account_session", lambda: _FakeSession(cf))

    _resolve_endpoint(GlobalOpts(stack="MyBoard", pretty=False, quiet=False))
    assert "using endpoint from stack MyBoard: https://api.example.invalid/prod" in capsys.readouterr().err

    _resolve_endpoint(GlobalOpts(stack="MyBoard", pretty=False, quiet=True))
    assert capsys.readouterr().err == ""


def test_earlier_notices_are_warnings_unless_quiet(capsys):
    from laneboard_cli.board_state import BoardState
    from laneboard_cli.cli_shared import OpError
    from laneboard_cli.move_coordinator import Notice

    state = BoardState.load([{"laneId": "todo", "name": "To Do"}], [{"cardId": "c1", "laneId": "todo", "position": 1000}])
    notices = [
        Notice("c1", "CONFLICT", "card name already exists on this board", "name"),
        Notice("c1", "PERSISTENCE_FAILURE", "store write failed"),
    ]
    args = argparse.Namespace(json_output=False)

    with pytest.raises(OpError, match="PERSISTENCE_FAILURE"):
        board_commands._report_mutation(args, _g(), state, "c1", notices)
    assert "warning: name: card name already exists on this board" in capsys.readouterr().err

    quiet = GlobalOpts(stack="LaneboardStack", pretty=False, quiet=True, endpoint="https://x.invalid")
    with pytest.raises(OpError):
        board_commands._report_mutation(args, quiet, state, "c1", notices)
    assert capsys.readouterr().err == ""
