"""Tests for candidate ranking helpers."""

from datetime import date, datetime

import pytest

from signup_pilot.browser.models import PageData
from signup_pilot.providers import SessionCandidate
from signup_pilot.providers.base import find_confirmation_id, page_has_captcha
from signup_pilot.providers.matching import (
    PROGRAM_MATCH_THRESHOLD,
    best_program_score,
    match_week,
    program_score,
    sort_candidates,
    week_bounds,
)


def candidate(id, title, start=None):
    return SessionCandidate(id=id, url=f"https://camp.example.org/{id}", title=title, start_at=start)


class TestWeekMatching:
    """Monday-anchored week windows."""

    def test_week_bounds(self):
        # 2024-06-12 is a Wednesday
        assert week_bounds(date(2024, 6, 12)) == (date(2024, 6, 10), date(2024, 6, 16))

    @pytest.mark.parametrize("start,expected", [
        (date(2024, 6, 10), True),
        (date(2024, 6, 16), True),
        (date(2024, 6, 9), True),
        (date(2024, 6, 17), True),
        (date(2024, 6, 8), False),
        (date(2024, 6, 18), False),
        (None, False),
    ])
    def test_match_week_with_one_day_tolerance(self, start, expected):
        assert match_week(date(2024, 6, 12), start) is expected

    def test_zero_tolerance(self):
        assert not match_week(date(2024, 6, 12), date(2024, 6, 9), tolerance_days=0)

    def test_accepts_datetimes(self):
        assert match_week(datetime(2024, 6, 12, 9, 0), datetime(2024, 6, 14, 13, 30))


class TestSortCandidates:
    """Ranking discovered sessions."""

    def test_week_match_then_distance(self):
        far = candidate("far", "Swim", datetime(2024, 7, 1))
        near = candidate("near", "Swim", datetime(2024, 6, 11))
        exact = candidate("exact", "Swim", datetime(2024, 6, 10))
        undated = candidate("undated", "Swim")

        ranked = sort_candidates([far, undated, near, exact], week_of=date(2024, 6, 10))

        assert [c.id for c in ranked] == ["exact", "near", "far", "undated"]

    def test_title_breaks_ties(self):
        a = candidate("a", "Art Camp", datetime(2024, 6, 10))
        b = candidate("b", "Ballet Camp", datetime(2024, 6, 10))

        ranked = sort_candidates([a, b], week_of=date(2024, 6, 10), title_contains="ballet")

        assert [c.id for c in ranked] == ["b", "a"]

    def test_without_week_sorts_by_title(self):
        ranked = sort_candidates([candidate("z", "Zumba"), candidate("a", "Acro")])

        assert [c.id for c in ranked] == ["a", "z"]


class TestProgramScore:
    """Fuzzy text scoring for club programs."""

    def test_containment_scores_one(self):
        assert program_score("Nordic  Ski Team - Saturdays", "ski team") == 1.0

    def test_partial_hits(self):
        # one of two tokens found: 0.5 + 1/3
        assert program_score("Nordic Ski Team", "nordic racing") == pytest.approx(0.8333, abs=1e-3)

    def test_partial_hits_are_capped(self):
        assert program_score("saturdays nordic", "nordic saturday") == 0.9

    def test_no_hits(self):
        assert program_score("Alpine Racing", "swim lessons") == 0.0
        assert program_score("Alpine Racing", "") == 0.0

    def test_alternates_and_time_bonus(self):
        text = "Freestyle Team, Sundays 1:00 PM"

        score = best_program_score(text, "Moguls", alt_texts=["freestyle team"], time_text="1:00 pm")

        assert score == pytest.approx(1.1)
        assert best_program_score(text, "Moguls") < PROGRAM_MATCH_THRESHOLD


class TestPageMarkers:
    """Recognizing challenges and confirmations in page HTML."""

    def test_captcha_markers(self):
        assert page_has_captcha(PageData(html='<div class="cf-turnstile"></div>'))
        assert page_has_captcha(PageData(html="<p>Please verify you are human</p>"))
        assert not page_has_captcha(PageData(html="<form></form>"))

    @pytest.mark.parametrize("html,expected", [
        ("<p>Confirmation #: AB-1234</p>", "AB-1234"),
        ("<p>Your order number 99887766 is complete</p>", "99887766"),
        ("<p>Registration ID: reg-55aa</p>", "reg-55aa"),
        ("<p>Thanks!</p>", None),
    ])
    def test_confirmation_id(self, html, expected):
        assert find_confirmation_id(PageData(html=html)) == expected
