"""
Matching engine — score and rank candidate partner sites for a requester.

Pure functions, no I/O.

Depends on: config, models
"""

from typing import Iterable

from backlinkmesh.config import (
    MIN_MATCH_SCORE,
    RELATED_INDUSTRIES,
    SCORE_DA_30,
    SCORE_DA_40,
    SCORE_DIFFERENT_CITY,
    SCORE_RELATED_INDUSTRY,
    SCORE_SAME_INDUSTRY,
    SCORE_SAME_STATE,
)
from backlinkmesh.models import MatchScore, SiteProfile


def is_related_industry(a: str, b: str) -> bool:
    """True if either industry lists the other as related."""
    return b in RELATED_INDUSTRIES.get(a, ()) or a in RELATED_INDUSTRIES.get(b, ())


def score(candidate: SiteProfile, requester: SiteProfile) -> int:
    """Compatibility score of ``candidate`` as a link partner for ``requester``."""
    total = 0

    if requester.state == candidate.state:
        total += SCORE_SAME_STATE

    # Different city means not a direct local competitor
    if requester.city != candidate.city:
        total += SCORE_DIFFERENT_CITY

    if requester.industry == candidate.industry:
        total += SCORE_SAME_INDUSTRY
    elif is_related_industry(requester.industry, candidate.industry):
        total += SCORE_RELATED_INDUSTRY

    da = candidate.domain_authority or 0
    if da >= 30:
        total += SCORE_DA_30
    if da >= 40:
        total += SCORE_DA_40

    return total


def rank(requester: SiteProfile, candidates: Iterable[SiteProfile]) -> list[MatchScore]:
    """Rank candidates for ``requester``, best first.

    Skips the requester's own site and anything scoring at or below the
    relevance cutoff. Ties keep input order.
    """
    scored = [
        MatchScore(site=c, score=score(c, requester))
        for c in candidates
        if c.url != requester.url
    ]
    kept = [m for m in scored if m.score > MIN_MATCH_SCORE]
    return sorted(kept, key=lambda m: m.score, reverse=True)
