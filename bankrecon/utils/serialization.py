from __future__ import annotations

import json
from typing import Any


def stable_json_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def json_loads_or_empty(data: str | None) -> dict[str, Any]:
    if not data:
        return {}
    return json.loads(data)
