from __future__ import annotations

import json
from datetime import datetime
from typing import Any


def quote_value(value: Any) -> str:
    if value is None:
        return "NA"
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, datetime):
        return f'"{value.isoformat()}"'
    return json.dumps(str(value), ensure_ascii=False)


def fmt(key: str, value: Any) -> str:
    return f"{key}={quote_value(value)}"


def fmt_many(**fields: Any) -> str:
    """Render keyword fields as a space-separated logfmt fragment, in call order."""
    return " ".join(fmt(k, v) for k, v in fields.items())
