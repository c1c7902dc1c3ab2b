from __future__ import annotations

import importlib
import re

ulid_module = importlib.import_module("ulid")

CLIENT_REQUEST_ID_PATTERN = r"^[A-Za-z0-9_-]{8,64}$"
_CLIENT_REQUEST_ID_RE = re.compile(CLIENT_REQUEST_ID_PATTERN)


def new_task_id() -> str:
    return f"task_{ulid_module.new().str}"


def is_valid_client_request_id(value: str) -> bool:
    return bool(_CLIENT_REQUEST_ID_RE.match(value))
