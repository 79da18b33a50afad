from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from .board_api import AsyncBoardApi, BoardApiClient, RemoteError
from .board_state import BoardState
from .cli_shared import GlobalOpts, OpError, UsageError, _eprint, _print_json, _resolve_endpoint
from .move_coordinator import MoveCoordinator, Notice


def _client(g: GlobalOpts) -> BoardApiClient:
    return BoardApiClient(_resolve_endpoint(g), g.id_token)


def _wants_json(args: argparse.Namespace) -> bool:
    return bool(getattr(args, "json_output", False))


def _cell(value: Any) -> str:
    v = str(value if value is not None else "").strip()
    return v if v else "-"


def _card_line(card: dict[str, Any]) -> str:
    return (
        f"- {_cell(card.get('cardId'))} pos={_cell(card.get('position'))} "
        f"rev={_cell(card.get('revision'))} priority={_cell(card.get('priority'))} "
        f"name={_cell(card.get('name'))}"
    )


def _call(func: Any, *args: Any, **kwargs: Any) -> dict[str, Any]:
    try:
        return func(*args, **kwargs)
    except RemoteError as e:
        raise OpError(_remote_message(e.error_code, e.message, e.field)) from e


def _remote_message(error_code: str, message: str, field: str | None) -> str:
    if error_code == "CONFLICT" and field:
        return f"{field}: {message}"
    if error_code == "VALIDATION_ERROR" and field:
        return f"invalid {field}: {message}"
    return f"board request failed: {error_code}: {message}"


def _parse_value(raw: str) -> Any:
    if raw == "null":
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _parse_assignments(pairs: list[str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            raise UsageError(f"invalid --set {pair!r}: expected field=value")
        k, v = pair.split("=", 1)
        k = k.strip()
        if not k:
            raise UsageError(f"invalid --set {pair!r}: empty field name")
        out[k] = _parse_value(v)
    return out


def cmd_lanes(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(_client(g).list_lanes, args.board_id)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    items = [i for i in (out.get("items") or []) if isinstance(i, dict)]
    for lane in items:
        sys.stdout.write(
            f"- {_cell(lane.get('laneId'))} order={_cell(lane.get('sortOrder'))} name={_cell(lane.get('name'))}\n"
        )
    if not items:
        sys.stdout.write("No lanes.\n")
    sys.stdout.write(f"items: {len(items)}\n")
    return 0


def cmd_lane_create(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(
        _client(g).create_lane,
        args.board_id,
        args.name,
        color=args.color,
        sort_order=args.sort_order,
    )
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    lane = out.get("lane") or {}
    sys.stdout.write(f"Created lane {_cell(lane.get('laneId'))} ({_cell(lane.get('name'))}).\n")
    return 0


def _lane_line(lane: dict[str, Any]) -> str:
    return (
        f"- {_cell(lane.get('laneId'))} order={_cell(lane.get('sortOrder'))} "
        f"color={_cell(lane.get('color'))} name={_cell(lane.get('name'))}"
    )


def cmd_lane_show(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(_client(g).get_lane, args.lane_id)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    lane = out.get("lane") or {}
    for key in ("laneId", "boardId", "name", "color", "sortOrder", "createdAt"):
        sys.stdout.write(f"{key}: {_cell(lane.get(key))}\n")
    return 0


def cmd_lane_update(args: argparse.Namespace, g: GlobalOpts) -> int:
    changes: dict[str, Any] = {}
    if args.name is not None:
        changes["name"] = args.name
    if args.clear_color:
        changes["color"] = None
    elif args.color is not None:
        changes["color"] = args.color
    if args.sort_order is not None:
        changes["sortOrder"] = args.sort_order
    if not changes:
        raise UsageError("provide at least one of --name, --color, --clear-color, --sort-order")
    out = _call(_client(g).update_lane, args.lane_id, changes)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    sys.stdout.write(_lane_line(out.get("lane") or {}) + "\n")
    return 0


def cmd_lane_delete(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(_client(g).delete_lane, args.lane_id)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    sys.stdout.write(f"Deleted lane {_cell(out.get('deleted'))}.\n")
    return 0


def cmd_cards(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(_client(g).list_cards, args.lane_id)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    items = [i for i in (out.get("items") or []) if isinstance(i, dict)]
    for card in items:
        sys.stdout.write(_card_line(card) + "\n")
    if not items:
        sys.stdout.write("No cards.\n")
    sys.stdout.write(f"items: {len(items)}\n")
    return 0


def cmd_card_show(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(_client(g).get_card, args.card_id)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    card = out.get("card") or {}
    for key in ("cardId", "laneId", "position", "name", "description", "priority", "dueDate", "assigneeId", "parentId", "revision", "updatedAt"):
        sys.stdout.write(f"{key}: {_cell(card.get(key))}\n")
    return 0


def cmd_card_create(args: argparse.Namespace, g: GlobalOpts) -> int:
    fields: dict[str, Any] = {"name": args.name}
    for key, attr in (
        ("description", "description"),
        ("priority", "priority"),
        ("dueDate", "due_date"),
        ("assigneeId", "assignee_id"),
        ("parentId", "parent_id"),
    ):
        val = getattr(args, attr, None)
        if val is not None:
            fields[key] = val
    out = _call(_client(g).create_card, args.lane_id, fields)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    card = out.get("card") or {}
    sys.stdout.write(f"Created card {_cell(card.get('cardId'))} at position {_cell(card.get('position'))}.\n")
    return 0


def cmd_card_delete(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(_client(g).delete_card, args.card_id, cascade=bool(args.cascade))
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    deleted = [str(d) for d in (out.get("deleted") or [])]
    sys.stdout.write(f"Deleted {len(deleted)} card(s): {', '.join(deleted) or '-'}\n")
    return 0


def cmd_card_audit(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(_client(g).card_audit, args.card_id, limit=args.limit)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    items = [i for i in (out.get("items") or []) if isinstance(i, dict)]
    for entry in items:
        sys.stdout.write(
            f"- {_cell(entry.get('createdAt'))} actor={_cell(entry.get('actorId'))} {_cell(entry.get('description'))}\n"
        )
    if not items:
        sys.stdout.write("No activity.\n")
    return 0


def cmd_my_activity(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(_client(g).my_activity, limit=args.limit)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    items = [i for i in (out.get("items") or []) if isinstance(i, dict)]
    for entry in items:
        sys.stdout.write(
            f"- {_cell(entry.get('createdAt'))} card={_cell(entry.get('cardId'))} {_cell(entry.get('description'))}\n"
        )
    if not items:
        sys.stdout.write("No activity.\n")
    sys.stdout.write(f"items: {len(items)}\n")
    return 0


async def _load_state(client: BoardApiClient, card_id: str, extra_lane_id: str | None) -> BoardState:
    card = (await asyncio.to_thread(client.get_card, card_id)).get("card") or {}
    board_id = str(card.get("boardId") or "")
    lanes = (await asyncio.to_thread(client.list_lanes, board_id)).get("items") or []
    wanted = {str(card.get("laneId") or "")}
    if extra_lane_id:
        wanted.add(extra_lane_id)
    cards: list[dict[str, Any]] = []
    for lane_id in sorted(w for w in wanted if w):
        cards.extend((await asyncio.to_thread(client.list_cards, lane_id)).get("items") or [])
    if not any(c.get("cardId") == card_id for c in cards):
        cards.append(card)
    return BoardState.load(lanes, cards)


async def _reconcile(g: GlobalOpts, card_id: str, gesture: Any, *, lane_id: str | None = None) -> tuple[BoardState, str, list[Notice]]:
    client = _client(g)
    try:
        state = await _load_state(client, card_id, lane_id)
    except RemoteError as e:
        raise OpError(_remote_message(e.error_code, e.message, e.field)) from e
    notices: list[Notice] = []
    coordinator = MoveCoordinator(state, AsyncBoardApi(client), debounce_ms=g.debounce_ms, on_notice=notices.append)
    try:
        gesture(coordinator)
    except KeyError as e:
        raise UsageError(str(e.args[0] if e.args else e)) from e
    except ValueError as e:
        raise UsageError(str(e)) from e
    await coordinator.flush()
    return state, coordinator.resolve_id(card_id), notices


def _report_mutation(args: argparse.Namespace, g: GlobalOpts, state: BoardState, card_id: str, notices: list[Notice]) -> int:
    if notices:
        if not g.quiet:
            for earlier in notices[:-1]:
                _eprint(f"warning: {_remote_message(earlier.error_code, earlier.message, earlier.field)}")
        n = notices[-1]
        raise OpError(_remote_message(n.error_code, n.message, n.field))
    card = state.card(card_id) or {}
    activity = state.activity.get(card_id) or []
    if _wants_json(args):
        _print_json(
            {
                "card": card,
                "auditEntry": activity[0] if activity else None,
                "index": state.index_of(card_id),
            },
            pretty=g.pretty,
        )
        return 0
    sys.stdout.write(_card_line(card) + "\n")
    if activity:
        sys.stdout.write(f"activity: {_cell(activity[0].get('description'))}\n")
    else:
        sys.stdout.write("No changes.\n")
    return 0


def cmd_card_move(args: argparse.Namespace, g: GlobalOpts) -> int:
    state, card_id, notices = asyncio.run(
        _reconcile(
            g,
            args.card_id,
            lambda c: c.move(args.card_id, args.lane_id, args.index),
            lane_id=args.lane_id,
        )
    )
    return _report_mutation(args, g, state, card_id, notices)


def cmd_card_edit(args: argparse.Namespace, g: GlobalOpts) -> int:
    changes = _parse_assignments(list(args.assignments or []))
    if not changes:
        raise UsageError("provide at least one --set field=value")
    state, card_id, notices = asyncio.run(
        _reconcile(g, args.card_id, lambda c: c.edit(args.card_id, changes))
    )
    return _report_mutation(args, g, state, card_id, notices)
