from __future__ import annotations

import argparse
import contextlib
import io
import sys
from typing import Any

import click
import typer
from dotenv import load_dotenv
from rich.console import Console

from . import __version__
from .board_commands import (
    cmd_card_audit,
    cmd_card_create,
    cmd_card_delete,
    cmd_card_edit,
    cmd_card_move,
    cmd_card_show,
    cmd_cards,
    cmd_lane_create,
    cmd_lane_delete,
    cmd_lane_show,
    cmd_lane_update,
    cmd_lanes,
    cmd_my_activity,
)
from .cli_shared import DEFAULT_STACK
from .cli_shared import LANEBOARD_ENDPOINT
from .cli_shared import LANEBOARD_ID_TOKEN
from .cli_shared import GlobalOpts
from .cli_shared import OpError
from .cli_shared import UsageError
from .cli_shared import _debounce_ms_from_env
from .cli_shared import _env_or_none
from .cli_shared import _eprint


def _bootstrap_env() -> None:
    # Discover and load .env without overriding already-exported values.
    load_dotenv()


_ERROR_CONSOLE = Console(stderr=True)


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {msg}")


def _root_help_text(*, root_app: typer.Typer, prog_name: str) -> str:
    buf = io.StringIO()
    try:
        with contextlib.redirect_stdout(buf):
            try:
                root_app(args=["--help"], prog_name=prog_name, standalone_mode=False)
            except (typer.Exit, click.ClickException):
                pass
    except Exception:
        return ""
    return str(buf.getvalue() or "").strip()


def _render_usage_error_with_help(
    *,
    message: str,
    ctx: click.Context | None = None,
    fallback_help: str = "",
) -> None:
    _rich_error(message)
    help_text = ""
    if isinstance(ctx, click.Context):
        try:
            help_text = str(ctx.get_help() or "").strip()
        except Exception:
            help_text = ""
    if not help_text:
        help_text = str(fallback_help or "").strip()
    if help_text:
        _eprint("")
        _eprint(help_text)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"laneboard {__version__}")
        raise typer.Exit(code=0)


app = typer.Typer(
    name="laneboard",
    help="Kanban lanes and cards with optimistic moves and an audit trail.",
    no_args_is_help=True,
    add_completion=False,
)
card_app = typer.Typer(
    help="Card helpers (default: human-readable output; use --json for raw API responses)",
    no_args_is_help=True,
)
lane_app = typer.Typer(help="Lane helpers", no_args_is_help=True)

app.add_typer(card_app, name="card")
app.add_typer(lane_app, name="lane")


@app.callback()
def app_callback(
    ctx: typer.Context,
    endpoint: str | None = typer.Option(
        None,
        "--endpoint",
        help=f"Board API base URL (env: {LANEBOARD_ENDPOINT}; default: stack output BoardInvokeUrl)",
    ),
    stack: str | None = typer.Option(
        None,
        "--stack",
        help=f"CloudFormation stack name used to resolve the endpoint (env: STACK; default: {DEFAULT_STACK})",
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit raw JSON output"),
    plain_json: bool = typer.Option(False, "--plain-json", help="Emit compact JSON output"),
    quiet: bool = typer.Option(False, "--quiet", help="Suppress stderr notes and warnings"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    _ = version
    try:
        g = GlobalOpts(
            stack=(stack or _env_or_none("STACK") or DEFAULT_STACK),
            pretty=not plain_json,
            quiet=bool(quiet),
            endpoint=(endpoint or _env_or_none(LANEBOARD_ENDPOINT) or ""),
            id_token=(_env_or_none(LANEBOARD_ID_TOKEN) or ""),
            debounce_ms=_debounce_ms_from_env(),
        )
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=2)
    ctx.obj = {"g": g, "json_output": bool(json_output)}


def _ctx_global(ctx: typer.Context) -> tuple[GlobalOpts, bool]:
    obj = ctx.find_root().obj
    if isinstance(obj, dict) and isinstance(obj.get("g"), GlobalOpts):
        return obj["g"], bool(obj.get("json_output", False))
    _render_usage_error_with_help(message="missing global options", ctx=ctx)
    raise typer.Exit(code=2)


def _invoke(ctx: typer.Context, func: Any, **kwargs: Any) -> None:
    g, json_output = _ctx_global(ctx)
    args = argparse.Namespace(json_output=json_output, **kwargs)
    try:
        code = int(func(args, g))
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=2)
    except OpError as e:
        _rich_error(str(e))
        raise typer.Exit(code=1)

    if code:
        raise typer.Exit(code=code)


@lane_app.command("list", help="List lanes on a board, ordered for display.")
def lane_list(
    ctx: typer.Context,
    board_id: str = typer.Argument(..., help="Board ID"),
) -> None:
    _invoke(ctx, cmd_lanes, board_id=board_id)


@lane_app.command("create", help="Create a lane on a board.")
def lane_create(
    ctx: typer.Context,
    board_id: str = typer.Argument(..., help="Board ID"),
    name: str = typer.Argument(..., help="Lane name (unique per board, case-insensitive)"),
    color: str | None = typer.Option(None, "--color", help="Optional display color"),
    sort_order: int | None = typer.Option(None, "--sort-order", help="Display order (default: after the last lane)"),
) -> None:
    _invoke(ctx, cmd_lane_create, board_id=board_id, name=name, color=color, sort_order=sort_order)


@lane_app.command("show", help="Show one lane.")
def lane_show(
    ctx: typer.Context,
    lane_id: str = typer.Argument(..., help="Lane ID"),
) -> None:
    _invoke(ctx, cmd_lane_show, lane_id=lane_id)


@lane_app.command("update", help="Rename, recolor or reorder a lane.")
def lane_update(
    ctx: typer.Context,
    lane_id: str = typer.Argument(..., help="Lane ID"),
    name: str | None = typer.Option(None, "--name", help="New name (unique per board, case-insensitive)"),
    color: str | None = typer.Option(None, "--color", help="New display color"),
    clear_color: bool = typer.Option(False, "--clear-color", help="Remove the display color"),
    sort_order: int | None = typer.Option(None, "--sort-order", help="New display order"),
) -> None:
    _invoke(
        ctx,
        cmd_lane_update,
        lane_id=lane_id,
        name=name,
        color=color,
        clear_color=clear_color,
        sort_order=sort_order,
    )


@lane_app.command("delete", help="Delete an empty lane.")
def lane_delete(
    ctx: typer.Context,
    lane_id: str = typer.Argument(..., help="Lane ID"),
) -> None:
    _invoke(ctx, cmd_lane_delete, lane_id=lane_id)


@lane_app.command("cards", help="List cards in a lane by position.")
def lane_cards(
    ctx: typer.Context,
    lane_id: str = typer.Argument(..., help="Lane ID"),
) -> None:
    _invoke(ctx, cmd_cards, lane_id=lane_id)


@card_app.command("show", help="Show one card.")
def card_show(
    ctx: typer.Context,
    card_id: str = typer.Argument(..., help="Card ID"),
) -> None:
    _invoke(ctx, cmd_card_show, card_id=card_id)


@card_app.command("create", help="Create a card at the end of a lane.")
def card_create(
    ctx: typer.Context,
    lane_id: str = typer.Argument(..., help="Lane ID"),
    name: str = typer.Argument(..., help="Card name (unique per board)"),
    description: str | None = typer.Option(None, "--description", help="Up to 255 characters"),
    priority: str | None = typer.Option(None, "--priority", help="LOW|MEDIUM|HIGH|CRITICAL"),
    due_date: str | None = typer.Option(None, "--due-date", help="ISO-8601 date or datetime"),
    assignee_id: str | None = typer.Option(None, "--assignee", help="Assignee ID"),
    parent_id: str | None = typer.Option(None, "--parent", help="Parent card ID"),
) -> None:
    _invoke(
        ctx,
        cmd_card_create,
        lane_id=lane_id,
        name=name,
        description=description,
        priority=priority,
        due_date=due_date,
        assignee_id=assignee_id,
        parent_id=parent_id,
    )


@card_app.command("move", help="Move a card to a lane at a 0-based index (applied locally first, then confirmed).")
def card_move(
    ctx: typer.Context,
    card_id: str = typer.Argument(..., help="Card ID"),
    lane_id: str = typer.Argument(..., help="Target lane ID"),
    index: int = typer.Argument(..., help="0-based slot in the target lane"),
) -> None:
    _invoke(ctx, cmd_card_move, card_id=card_id, lane_id=lane_id, index=index)


@card_app.command("edit", help="Edit card fields, e.g. --set name=Ship --set priority=HIGH --set dueDate=null.")
def card_edit(
    ctx: typer.Context,
    card_id: str = typer.Argument(..., help="Card ID"),
    assignments: list[str] = typer.Option([], "--set", help="field=value (value parsed as JSON when possible)"),
) -> None:
    _invoke(ctx, cmd_card_edit, card_id=card_id, assignments=assignments)


@card_app.command("audit", help="Show a card's activity, newest first.")
def card_audit(
    ctx: typer.Context,
    card_id: str = typer.Argument(..., help="Card ID"),
    limit: int | None = typer.Option(None, "--limit", help="Page size (default 25, max 100)"),
) -> None:
    _invoke(ctx, cmd_card_audit, card_id=card_id, limit=limit)


@card_app.command("delete", help="Delete a card (use --cascade to include sub-cards).")
def card_delete(
    ctx: typer.Context,
    card_id: str = typer.Argument(..., help="Card ID"),
    cascade: bool = typer.Option(False, "--cascade", help="Also delete every sub-card"),
) -> None:
    _invoke(ctx, cmd_card_delete, card_id=card_id, cascade=cascade)


@app.command("my-activity", help="Show your own recent changes across all cards, newest first.")
def my_activity(
    ctx: typer.Context,
    limit: int | None = typer.Option(None, "--limit", help="Page size (default 25, max 100)"),
) -> None:
    _invoke(ctx, cmd_my_activity, limit=limit)


def _run_cli(*, root_app: typer.Typer, prog_name: str, argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    _bootstrap_env()
    try:
        result = root_app(args=argv, prog_name=prog_name, standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except click.exceptions.Abort:
        _rich_error("aborted")
        return 1
    except click.ClickException as e:
        if isinstance(e, click.UsageError):
            _render_usage_error_with_help(message=e.format_message(), ctx=getattr(e, "ctx", None))
            return int(e.exit_code)
        _rich_error(e.format_message())
        return int(e.exit_code)
    except UsageError as e:
        _render_usage_error_with_help(
            message=str(e),
            fallback_help=_root_help_text(root_app=root_app, prog_name=prog_name),
        )
        return 2


def main(argv: list[str] | None = None) -> int:
    return _run_cli(root_app=app, prog_name="laneboard", argv=argv)


if __name__ == "__main__":
    raise SystemExit(main())
