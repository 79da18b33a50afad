"""HTTP client for the board API (`/v1/board`)."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from .cli_shared import OpError

BASE_PATH = "/v1/board"


class RemoteError(OpError):
    """A non-2xx response from the board API, carrying its error body."""

    def __init__(self, error_code: str, message: str, *, status: int = 0, field: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.status = status
        self.field = field


def _http_request(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes | None = None,
    timeout_seconds: int = 30,
) -> tuple[int, dict[str, str], bytes]:
    req = Request(url, data=body, method=str(method).upper())
    for k, v in headers.items():
        req.add_header(k, v)
    try:
        with urlopen(req, timeout=timeout_seconds) as resp:
            status = getattr(resp, "status", 200)
            hdrs = {k.lower(): v for k, v in dict(resp.headers).items()}
            data = resp.read()
            return int(status), hdrs, data
    except HTTPError as e:
        hdrs = {k.lower(): v for k, v in dict(e.headers).items()}
        data = e.read() if hasattr(e, "read") else b""
        return int(getattr(e, "code", 0) or 0), hdrs, data
    except URLError as e:
        raise RemoteError("NETWORK_ERROR", f"http request failed: {e}") from e


def _seg(value: str) -> str:
    return quote(str(value), safe="")


class BoardApiClient:
    def __init__(self, endpoint: str, id_token: str = "", *, request: Any = None) -> None:
        ep = str(endpoint or "").rstrip("/")
        if ep.endswith(BASE_PATH):
            ep = ep[: -len(BASE_PATH)]
        self.endpoint = ep
        self.id_token = id_token
        self._request = request or _http_request

    def _call(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
        body_obj: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        query_clean = {
            k: str(v)
            for k, v in (query or {}).items()
            if v is not None and str(v).strip() != ""
        }
        url = f"{self.endpoint}{BASE_PATH}{path}"
        if query_clean:
            url += f"?{urlencode(query_clean)}"

        body_bytes = None
        headers: dict[str, str] = {}
        if self.id_token:
            headers["authorization"] = f"Bearer {self.id_token}"
        if body_obj is not None:
            body_bytes = json.dumps(body_obj, separators=(",", ":")).encode("utf-8")
            headers["content-type"] = "application/json"

        status, _hdrs, data = self._request(method=method, url=url, headers=headers, body=body_bytes)
        text = data.decode("utf-8", errors="replace")
        try:
            parsed: Any = json.loads(text) if text else {}
        except Exception:
            parsed = {"raw": text}

        if status < 200 or status >= 300:
            if isinstance(parsed, dict):
                code = str(parsed.get("errorCode") or "HTTP_ERROR")
                msg = str(parsed.get("message") or parsed.get("error") or text).strip()
                field = parsed.get("field") or None
            else:
                code, msg, field = "HTTP_ERROR", str(parsed), None
            raise RemoteError(code, msg or f"status={status}", status=status, field=field)

        if isinstance(parsed, dict):
            return parsed
        return {"result": parsed}

    def move_card(self, card_id: str, lane_id: str, index: int, *, expected_revision: int | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"laneId": lane_id, "index": index}
        if expected_revision is not None:
            body["expectedRevision"] = expected_revision
        return self._call("POST", f"/cards/{_seg(card_id)}/move", body_obj=body)

    def edit_card(self, card_id: str, changes: dict[str, Any], *, expected_revision: int | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"changes": changes}
        if expected_revision is not None:
            body["expectedRevision"] = expected_revision
        return self._call("PATCH", f"/cards/{_seg(card_id)}", body_obj=body)

    def create_card(self, lane_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        return self._call("POST", f"/lanes/{_seg(lane_id)}/cards", body_obj=dict(fields))

    def get_card(self, card_id: str) -> dict[str, Any]:
        return self._call("GET", f"/cards/{_seg(card_id)}")

    def list_cards(self, lane_id: str) -> dict[str, Any]:
        return self._call("GET", f"/lanes/{_seg(lane_id)}/cards")

    def delete_card(self, card_id: str, *, cascade: bool = False) -> dict[str, Any]:
        return self._call("DELETE", f"/cards/{_seg(card_id)}", query={"cascade": "true" if cascade else None})

    def create_lane(
        self,
        board_id: str,
        name: str,
        *,
        color: str | None = None,
        sort_order: int | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"name": name}
        if color is not None:
            body["color"] = color
        if sort_order is not None:
            body["sortOrder"] = sort_order
        return self._call("POST", f"/boards/{_seg(board_id)}/lanes", body_obj=body)

    def list_lanes(self, board_id: str) -> dict[str, Any]:
        return self._call("GET", f"/boards/{_seg(board_id)}/lanes")

    def get_lane(self, lane_id: str) -> dict[str, Any]:
        return self._call("GET", f"/lanes/{_seg(lane_id)}")

    def update_lane(self, lane_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        return self._call("PATCH", f"/lanes/{_seg(lane_id)}", body_obj={"changes": changes})

    def delete_lane(self, lane_id: str) -> dict[str, Any]:
        return self._call("DELETE", f"/lanes/{_seg(lane_id)}")

    def card_audit(self, card_id: str, *, limit: int | None = None) -> dict[str, Any]:
        return self._call("GET", f"/cards/{_seg(card_id)}/audit", query={"limit": limit})

    def my_activity(self, *, limit: int | None = None) -> dict[str, Any]:
        return self._call("GET", "/my/activity", query={"limit": limit})


class AsyncBoardApi:
    """Awaitable facade over BoardApiClient; each call runs in a worker thread."""

    def __init__(self, client: BoardApiClient) -> None:
        self.client = client

    async def move_card(self, card_id: str, lane_id: str, index: int, *, expected_revision: int | None = None) -> dict[str, Any]:
        return await asyncio.to_thread(
            self.client.move_card, card_id, lane_id, index, expected_revision=expected_revision
        )

    async def edit_card(self, card_id: str, changes: dict[str, Any], *, expected_revision: int | None = None) -> dict[str, Any]:
        return await asyncio.to_thread(
            self.client.edit_card, card_id, changes, expected_revision=expected_revision
        )

    async def create_card(self, lane_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self.client.create_card, lane_id, fields)
