from __future__ import annotations

import uuid

# Local ids for cards the server has not confirmed yet. The prefix keeps them
# disjoint from the server's 22-char base58 ids.
TEMP_PREFIX = "tmp-"


def new_temp_id() -> str:
    return TEMP_PREFIX + uuid.uuid4().hex


def is_temp_id(value: str | None) -> bool:
    return str(value or "").startswith(TEMP_PREFIX)
