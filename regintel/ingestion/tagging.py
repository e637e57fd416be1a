"""Tag helpers shared by the item record and the bookmark side effect."""

from __future__ import annotations

from datetime import date, datetime
from typing import List, Union


def iso_week(d: Union[date, datetime]) -> str:
    """ISO-8601 week as 'YYYY-WW'.

    The week belongs to the ISO year that owns its Thursday, so 2024-12-31
    is '2025-01'.
    """
    if isinstance(d, datetime):
        d = d.date()
    year, week, _ = d.isocalendar()
    return f"{year}-{week:02d}"


def build_tags(*, source: str, category: str, week: str, status: str) -> List[str]:
    return [
        f"source:{source}",
        f"type:{category}",
        f"week:{week}",
        f"status:{status}",
    ]
