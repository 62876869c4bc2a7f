"""Ranking helpers: week-of date matching and fuzzy program text scoring."""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Union

from signup_pilot.providers.base import SessionCandidate

PROGRAM_MATCH_THRESHOLD = 0.65

DateLike = Union[date, datetime]


def _as_date(value: DateLike) -> date:
    return value.date() if isinstance(value, datetime) else value


def week_bounds(week_of: DateLike) -> tuple[date, date]:
    """Monday and Sunday of the week containing ``week_of``."""
    day = _as_date(week_of)
    monday = day - timedelta(days=day.weekday())
    return monday, monday + timedelta(days=6)


def match_week(week_of: DateLike, start: Optional[DateLike], tolerance_days: int = 1) -> bool:
    """
    True when ``start`` falls in the week of ``week_of``.

    The window is the Monday-anchored week, widened by ``tolerance_days``
    on each side so weekend-adjacent starts still match.
    """
    if start is None:
        return False
    monday, sunday = week_bounds(week_of)
    tolerance = timedelta(days=tolerance_days)
    return monday - tolerance <= _as_date(start) <= sunday + tolerance


def sort_candidates(
    candidates: Iterable[SessionCandidate],
    week_of: Optional[DateLike] = None,
    title_contains: Optional[str] = None,
) -> list[SessionCandidate]:
    """
    Rank candidates: week matches first, then closeness to the target date,
    then title matches, then title.
    """
    needle = (title_contains or "").lower()
    target = _as_date(week_of) if week_of else None

    def key(c: SessionCandidate) -> tuple:
        if target is None:
            in_week, distance = True, 0
        elif c.start_at is None:
            in_week, distance = False, float("inf")
        else:
            in_week = match_week(target, c.start_at)
            distance = abs((_as_date(c.start_at) - target).days)
        title_hit = bool(needle) and needle in c.title.lower()
        return (not in_week, distance, not title_hit, c.title.lower())

    return sorted(candidates, key=key)


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").lower()).strip()


def program_score(haystack: str, needle: str) -> float:
    """
    Fuzzy containment score of ``needle`` in ``haystack``.

    Exact containment scores 1.0; otherwise partial token hits score
    ``0.5 + hits / max(3, tokens)``, capped at 0.9.
    """
    hay = _normalize(haystack)
    target = _normalize(needle)
    if not target:
        return 0.0
    if target in hay:
        return 1.0

    tokens = target.split(" ")
    hits = sum(1 for t in tokens if t and t in hay)
    if hits == 0:
        return 0.0
    return min(0.9, 0.5 + hits / max(3, len(tokens)))


def best_program_score(
    text: str,
    program_text: str,
    alt_texts: Iterable[str] = (),
    time_text: Optional[str] = None,
) -> float:
    """Best score across the program name and its alternates, plus a time bonus."""
    score = program_score(text, program_text)
    for alt in alt_texts:
        score = max(score, program_score(text, alt))
    if time_text:
        score += 0.1 * program_score(text, time_text)
    return score
