"""Tests for candidate ranking."""

from call_signaling.models.candidate import Candidate
from call_signaling.services.ranking import rank_candidates


def _ids(candidates):
    return [c.id for c in candidates]


def test_preferred_language_first():
    """Scenario: T1 (9, en), T2 (7, es), preference en -> [T1, T2]."""
    t1 = Candidate(id="T1", rank_score=9, language_tag="en")
    t2 = Candidate(id="T2", rank_score=7, language_tag="es")

    assert _ids(rank_candidates([t2, t1], "en")) == ["T1", "T2"]


def test_language_match_beats_higher_score():
    high_es = Candidate(id="es-high", rank_score=10, language_tag="es")
    low_en = Candidate(id="en-low", rank_score=1, language_tag="en")

    assert _ids(rank_candidates([high_es, low_en], "en")) == ["en-low", "es-high"]


def test_language_match_is_case_insensitive():
    a = Candidate(id="a", rank_score=1, language_tag="EN")
    b = Candidate(id="b", rank_score=5, language_tag="fr")

    assert _ids(rank_candidates([b, a], "en")) == ["a", "b"]


def test_each_group_sorted_by_descending_score():
    candidates = [
        Candidate(id="es-5", rank_score=5, language_tag="es"),
        Candidate(id="en-3", rank_score=3, language_tag="en"),
        Candidate(id="es-8", rank_score=8, language_tag="es"),
        Candidate(id="en-9", rank_score=9, language_tag="en"),
    ]

    assert _ids(rank_candidates(candidates, "en")) == ["en-9", "en-3", "es-8", "es-5"]


def test_ties_keep_input_order():
    candidates = [
        Candidate(id="first", rank_score=4, language_tag="en"),
        Candidate(id="second", rank_score=4, language_tag="en"),
        Candidate(id="third", rank_score=4, language_tag="en"),
    ]

    assert _ids(rank_candidates(candidates, "en")) == ["first", "second", "third"]


def test_no_preference_orders_by_score():
    candidates = [
        Candidate(id="low", rank_score=1, language_tag="en"),
        Candidate(id="high", rank_score=9, language_tag="es"),
        Candidate(id="none", rank_score=5),
    ]

    assert _ids(rank_candidates(candidates)) == ["high", "none", "low"]


def test_empty_input_returns_empty_list():
    assert rank_candidates([], "en") == []
    assert rank_candidates([]) == []


def test_input_is_not_modified():
    candidates = [
        Candidate(id="low", rank_score=1),
        Candidate(id="high", rank_score=9),
    ]

    rank_candidates(candidates)

    assert _ids(candidates) == ["low", "high"]
