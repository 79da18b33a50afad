from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from typing import Any

import boto3


class LaneboardCliError(Exception):
    pass


class UsageError(LaneboardCliError):
    pass


class OpError(LaneboardCliError):
    pass


LANEBOARD_ENDPOINT = "LANEBOARD_ENDPOINT"
LANEBOARD_ID_TOKEN = "LANEBOARD_ID_TOKEN"
LANEBOARD_DEBOUNCE_MS = "LANEBOARD_DEBOUNCE_MS"
DEFAULT_STACK = "LaneboardStack"
INVOKE_URL_OUTPUT = "BoardInvokeUrl"
DEFAULT_DEBOUNCE_MS = 1000


def _eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


@dataclass(frozen=True)
class GlobalOpts:
    stack: str
    pretty: bool
    quiet: bool
    endpoint: str = ""
    id_token: str = ""
    debounce_ms: int = DEFAULT_DEBOUNCE_MS


def _env_or_none(*names: str) -> str | None:
    for n in names:
        v = (os.environ.get(n) or "").strip()
        if v:
            return v
    return None


def _debounce_ms_from_env() -> int:
    raw = _env_or_none(LANEBOARD_DEBOUNCE_MS)
    if raw is None:
        return DEFAULT_DEBOUNCE_MS
    try:
        n = int(raw)
    except ValueError as e:
        raise UsageError(f"invalid {LANEBOARD_DEBOUNCE_MS}: expected integer milliseconds") from e
    if n < 0:
        raise UsageError(f"invalid {LANEBOARD_DEBOUNCE_MS}: must be >= 0")
    return n


def _account_session() -> Any:
    profile = _env_or_none("AWS_PROFILE")
    region = _env_or_none("AWS_REGION", "AWS_DEFAULT_REGION")
    return boto3.session.Session(profile_name=profile, region_name=region)


def _cf_outputs(session: Any, *, stack: str) -> list[dict[str, Any]]:
    cf = session.client("cloudformation")
    try:
        resp = cf.describe_stacks(StackName=stack)
    except Exception as e:
        raise OpError(f"cloudformation describe-stacks failed for stack {stack!r}: {e}") from e
    stacks = resp.get("Stacks") or []
    if not stacks:
        raise OpError(f"stack not found: {stack}")
    outputs = stacks[0].get("Outputs") or []
    if not isinstance(outputs, list):
        return []
    return [o for o in outputs if isinstance(o, dict)]


def _stack_output_value(session: Any, *, stack: str, key: str) -> str | None:
    for o in _cf_outputs(session, stack=stack):
        if str(o.get("OutputKey", "")).strip() == key:
            v = str(o.get("OutputValue", "")).strip()
            return v if v else ""
    return None


def _resolve_endpoint(g: GlobalOpts) -> str:
    if g.endpoint:
        return g.endpoint.rstrip("/")
    v = _stack_output_value(_account_session(), stack=g.stack, key=INVOKE_URL_OUTPUT)
    if not v:
        raise UsageError(
            f"missing board endpoint (set {LANEBOARD_ENDPOINT} or deploy stack {g.stack!r} "
            f"with output {INVOKE_URL_OUTPUT})"
        )
    if not g.quiet:
        _eprint(f"using endpoint from stack {g.stack}: {v}")
    return v.rstrip("/")


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":"), sort_keys=True) + "\n")
