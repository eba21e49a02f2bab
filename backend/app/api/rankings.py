"""
Rankings API: /rankings
───────────────────────
Endpoints:
  GET    /rankings/me               Current owner's ordered list (worst → best)
  GET    /rankings/state            Threshold / initial-ranking progress
  POST   /rankings                  Submit (or re-submit) a rating
  POST   /rankings/placement/start  First comparison for a new rating
  POST   /rankings/placement/step   Apply a decision, get the next comparison
  POST   /rankings/initial          Bulk-order the first ratings
"""
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps.auth import get_current_owner_id
from app.schemas.rankings import (
    InitialRankingRequest,
    InitialRankingResponse,
    PlacementResponse,
    PlacementStartRequest,
    PlacementStepRequest,
    RankedItemResponse,
    RankingStateResponse,
    SubmitRatingRequest,
)
from app.services.placement import PlacementState
from app.services.ranking_service import (
    DuplicateRankingError,
    RankingRequiredError,
    RankingValidationError,
    advance_placement,
    complete_initial_ranking,
    get_ranking_state,
    hydrate_item,
    list_ranked_items,
    start_placement,
    submit_rating,
)
from app.services.tmdb_lookup import hydrate_snapshot

router = APIRouter()


def _error(code: str, message: str) -> dict:
    """Standard error envelope."""
    return {"error": {"code": code, "message": message}}


def _ranking_http_error(exc: Exception) -> HTTPException:
    """Map ranking service errors onto HTTP responses."""
    if isinstance(exc, RankingRequiredError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=_error("RANKING_REQUIRED", str(exc)),
        )
    if isinstance(exc, DuplicateRankingError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=_error("DUPLICATE_RANKING", str(exc)),
        )
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=_error("VALIDATION_ERROR", str(exc)),
    )


# ── Routes ────────────────────────────────────────────────────────────────────


@router.get("/me", response_model=list[RankedItemResponse])
def get_my_rankings(
    owner_id: UUID = Depends(get_current_owner_id),
    db: Session = Depends(get_db),
) -> list[dict]:
    """Return the owner's ranked list, lowest position (worst) first."""
    return list_ranked_items(db, owner_id)


@router.get("/state", response_model=RankingStateResponse)
def get_my_ranking_state(
    owner_id: UUID = Depends(get_current_owner_id),
    db: Session = Depends(get_db),
) -> dict:
    return get_ranking_state(db, owner_id)


@router.post("", response_model=RankedItemResponse)
async def submit_rating_endpoint(
    payload: SubmitRatingRequest,
    owner_id: UUID = Depends(get_current_owner_id),
    db: Session = Depends(get_db),
) -> dict:
    """
    Rate a movie, or re-rate it in place.

    Below the threshold the category picks a default position. Past it a
    placement from /rankings/placement is required. A missing snapshot is
    filled from TMDB when possible; lookup failures are ignored.
    """
    snapshot = await hydrate_snapshot(payload.external_ref, payload.movie)
    payload = payload.model_copy(update={"movie": snapshot})

    try:
        item = submit_rating(db, owner_id, payload)
    except (RankingRequiredError, RankingValidationError, DuplicateRankingError) as exc:
        raise _ranking_http_error(exc) from exc

    return hydrate_item(item)


@router.post("/placement/start", response_model=PlacementResponse)
def start_placement_endpoint(
    payload: PlacementStartRequest,
    owner_id: UUID = Depends(get_current_owner_id),
    db: Session = Depends(get_db),
) -> dict:
    try:
        return start_placement(db, owner_id, payload.external_ref, payload.category)
    except (RankingRequiredError, RankingValidationError) as exc:
        raise _ranking_http_error(exc) from exc


@router.post("/placement/step", response_model=PlacementResponse)
def step_placement_endpoint(
    payload: PlacementStepRequest,
    owner_id: UUID = Depends(get_current_owner_id),
    db: Session = Depends(get_db),
) -> dict:
    state = PlacementState(
        low=payload.state.low,
        high=payload.state.high,
        current_index=payload.state.current_index,
        total=payload.state.total,
    )
    try:
        return advance_placement(
            db, owner_id, payload.external_ref, state, payload.decision
        )
    except (RankingRequiredError, RankingValidationError) as exc:
        raise _ranking_http_error(exc) from exc


@router.post("/initial", response_model=InitialRankingResponse)
def complete_initial_ranking_endpoint(
    payload: InitialRankingRequest,
    owner_id: UUID = Depends(get_current_owner_id),
    db: Session = Depends(get_db),
) -> dict:
    """Apply the owner's bulk order (worst → best) and unlock comparisons."""
    try:
        items = complete_initial_ranking(db, owner_id, payload.ordered_ids)
    except RankingValidationError as exc:
        raise _ranking_http_error(exc) from exc

    return {"success": True, "items": [hydrate_item(item) for item in items]}
