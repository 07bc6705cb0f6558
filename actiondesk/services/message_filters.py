from __future__ import annotations

import re
from typing import Any, Iterable

IMPORTANT_KEYWORDS = ("important", "urgent")
FALLBACK_COUNT = 3

_WHITESPACE = re.compile(r"\s+")


def normalized_text_view(item: dict[str, Any]) -> str:
    parts = [str(item.get("subject") or ""), str(item.get("snippet") or "")]
    return _WHITESPACE.sub(" ", " ".join(parts)).strip().lower()


def is_important(item: dict[str, Any]) -> bool:
    view = normalized_text_view(item)
    return any(keyword in view for keyword in IMPORTANT_KEYWORDS)


def select_important(items: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    rows = [item for item in items if isinstance(item, dict)]
    important = [item for item in rows if is_important(item)]
    if important:
        return important
    return rows[:FALLBACK_COUNT]
