"""Candidate ranking endpoint."""

from typing import List

from fastapi import APIRouter

from call_signaling.models.candidate import Candidate, RankRequest
from call_signaling.services.ranking import rank_candidates

router = APIRouter(prefix="/candidates", tags=["candidates"])


@router.post("/rank", response_model=List[Candidate])
async def rank(body: RankRequest) -> List[Candidate]:
    """Order candidates the way the instant-call flow rings them."""
    return rank_candidates(body.candidates, body.preference)
