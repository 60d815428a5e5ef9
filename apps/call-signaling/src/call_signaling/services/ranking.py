"""Candidate ranking for instant calls."""

from typing import List, Optional, Sequence

from call_signaling.models.candidate import Candidate


def _normalize(tag: Optional[str]) -> Optional[str]:
    if tag is None:
        return None
    tag = tag.strip().lower()
    return tag or None


def rank_candidates(
    candidates: Sequence[Candidate], preference: Optional[str] = None
) -> List[Candidate]:
    """Order candidates for sequential ringing.

    Candidates speaking the preferred language come first, then everyone
    else; each group is ordered by descending ``rank_score``. Equal scores
    keep their input order.

    Args:
        candidates: Available candidates, in any order.
        preference: Caller's preferred language tag, compared case-insensitively.

    Returns:
        A new list; the input is not modified.
    """
    by_score = sorted(candidates, key=lambda candidate: candidate.rank_score, reverse=True)

    wanted = _normalize(preference)
    if wanted is None:
        return by_score

    matching = [c for c in by_score if _normalize(c.language_tag) == wanted]
    others = [c for c in by_score if _normalize(c.language_tag) != wanted]
    return matching + others
