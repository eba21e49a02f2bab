"""
Ranking request/response schemas.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator


class RatingCategoryEnum(str, Enum):
    """Coarse self-reported bucket; must match DB enum."""

    BAD = "bad"
    OK = "ok"
    GREAT = "great"


class ComparisonDecisionEnum(str, Enum):
    BETTER = "better"
    WORSE = "worse"
    SIMILAR = "similar"


class MovieSnapshot(BaseModel):
    """Catalog fields cached on the ranked item at rating time."""

    title: str | None = Field(None, max_length=500)
    poster_path: str | None = Field(None, max_length=255)
    release_date: str | None = Field(None, max_length=32)
    overview: str | None = None


class Placement(BaseModel):
    """Neighbours chosen by the placement resolver."""

    before_id: UUID | None = None
    after_id: UUID | None = None

    @model_validator(mode="after")
    def before_and_after_must_differ(self) -> "Placement":
        if (
            self.before_id is not None
            and self.after_id is not None
            and self.before_id == self.after_id
        ):
            raise ValueError("before_id and after_id must be different")
        return self


class SubmitRatingRequest(BaseModel):
    """Payload for POST /rankings."""

    external_ref: int = Field(..., gt=0, description="TMDB movie id")
    category: RatingCategoryEnum
    movie: MovieSnapshot | None = None
    placement: Placement | None = None


class PlacementStartRequest(BaseModel):
    """Payload for POST /rankings/placement/start."""

    external_ref: int = Field(..., gt=0)
    category: RatingCategoryEnum


class PlacementStateModel(BaseModel):
    """Binary-search state echoed back by the client each round."""

    low: int = Field(..., ge=0)
    high: int = Field(..., ge=0)
    current_index: int = Field(..., ge=0)
    total: int = Field(..., ge=1)

    @model_validator(mode="after")
    def check_bounds(self) -> "PlacementStateModel":
        if not self.low <= self.current_index <= self.high < self.total:
            raise ValueError("placement state must satisfy low <= current_index <= high < total")
        return self


class PlacementStepRequest(BaseModel):
    """Payload for POST /rankings/placement/step."""

    external_ref: int = Field(..., gt=0)
    category: RatingCategoryEnum
    state: PlacementStateModel
    decision: ComparisonDecisionEnum


class InitialRankingRequest(BaseModel):
    """Payload for POST /rankings/initial, ids ordered worst → best."""

    ordered_ids: list[UUID]

    @field_validator("ordered_ids")
    @classmethod
    def must_not_be_empty(cls, v: list[UUID]) -> list[UUID]:
        if not v:
            raise ValueError("Please provide the ordered rating ids")
        return v


class RankedItemResponse(BaseModel):
    """Single item in the ranked-list response."""

    id: UUID
    external_ref: int
    category: RatingCategoryEnum
    position: Decimal
    numeric_score: float
    cached_title: str | None
    cached_poster_path: str | None
    cached_release_date: str | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_serializer("position")
    def serialize_position(self, position: Decimal) -> str:
        # String keeps every stored digit; JSON floats would not
        return f"{position:f}"


class PlacementResponse(BaseModel):
    """
    One round of the placement flow.

    status="compare"       → show `candidate`, send back `state` + decision
    status="resolved"      → submit the rating with before_id / after_id
    status="not_required"  → below threshold, submit without placement
    """

    status: Literal["compare", "resolved", "not_required"]
    state: PlacementStateModel | None = None
    candidate: RankedItemResponse | None = None
    before_id: UUID | None = None
    after_id: UUID | None = None


class RankingStateResponse(BaseModel):
    total_ranked: int
    threshold: int
    has_completed_initial_ranking: bool
    needs_initial_ranking: bool
    initial_items: list[RankedItemResponse] | None = None


class InitialRankingResponse(BaseModel):
    success: bool = True
    items: list[RankedItemResponse]
