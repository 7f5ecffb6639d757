from __future__ import annotations

import uuid
from typing import NewType

TempId = NewType("TempId", str)

TEMP_ID_PREFIX = "temp-"


def new_temp_id() -> TempId:
    """Local identity for a message the server has not confirmed yet."""
    return TempId(f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}")


def is_temp_id(value: object) -> bool:
    return isinstance(value, str) and value.startswith(TEMP_ID_PREFIX)
