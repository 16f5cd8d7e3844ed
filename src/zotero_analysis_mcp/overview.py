"""Collection-level aggregates computed from item metadata."""

from __future__ import annotations

import re
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from .models import Item, creator_display_name

TOP_AUTHOR_COUNT = 10
UNKNOWN_YEAR = "Unknown"

_YEAR_RE = re.compile(r"\b(\d{4})\b")


def publication_year(date: str) -> Optional[str]:
    match = _YEAR_RE.search(date or "")
    return match.group(1) if match else None


def parse_zotero_timestamp(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_collection_overview(items: Iterable[Item]) -> Dict[str, Any]:
    by_type: Counter = Counter()
    by_year: Counter = Counter()
    authors: Counter = Counter()
    total = 0
    for item in items:
        total += 1
        by_type[item.item_type or "unknown"] += 1
        by_year[publication_year(item.date) or UNKNOWN_YEAR] += 1
        for creator in item.creators:
            name = creator_display_name(creator)
            if name:
                authors[name] += 1
    return {
        "total_items": total,
        "item_types": dict(by_type.most_common()),
        # Chronological, with the unknown bucket last.
        "years": dict(sorted(by_year.items(), key=lambda entry: (entry[0] == UNKNOWN_YEAR, entry[0]))),
        "top_authors": [{"name": name, "count": count} for name, count in authors.most_common(TOP_AUTHOR_COUNT)],
    }


def recent_items(
    items: Iterable[Item],
    *,
    days: int,
    limit: int,
    now: Optional[datetime] = None,
) -> List[Item]:
    """Items added in the last ``days`` days, newest first, at most ``limit`` of them."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
    dated = []
    for item in items:
        added = parse_zotero_timestamp(item.date_added)
        if added is not None and added >= cutoff:
            dated.append((added, item))
    dated.sort(key=lambda entry: entry[0], reverse=True)
    return [item for _added, item in dated[:limit]]
