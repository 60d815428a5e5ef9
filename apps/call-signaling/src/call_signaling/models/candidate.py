"""Candidate models for instant-call matching."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Candidate(BaseModel):
    """A currently-available counterparty that may be rung."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(..., description="Callee user ID")
    rank_score: float = Field(default=0.0, description="Quality score, e.g. average rating")
    language_tag: Optional[str] = Field(default=None, description="Spoken language tag")
    display_name: str = Field(default="", description="Name shown while ringing")
    avatar_url: Optional[str] = Field(default=None, description="Avatar URL")


class RankRequest(BaseModel):
    """Request body for the ranking endpoint."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    candidates: List[Candidate] = Field(default_factory=list)
    preference: Optional[str] = Field(default=None, description="Caller's preferred language")
