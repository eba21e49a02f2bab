"""
Ranking business logic: submit, place, rebalance, initial bulk ranking.

Every write starts by locking the owner's user_ranking_states row
(SELECT ... FOR UPDATE), which serialises ranking writes per owner.
Rebalance and initial ranking rewrite the whole list inside the caller's
transaction; any failure rolls back all of it.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.models import RankedItem, RatingCategoryEnum, UserRankingState
from app.schemas.rankings import Placement, SubmitRatingRequest
from app.services import placement as resolver
from app.services.ranking_math import PositionExhausted, RankingConfig, RankingMath

logger = logging.getLogger(__name__)


def config_from_settings() -> RankingConfig:
    """Build the immutable ranking config from environment settings."""
    epsilon = settings.RANKING_FALLBACK_EPSILON.strip()
    return RankingConfig(
        threshold=settings.RANKING_THRESHOLD,
        position_scale=settings.RANKING_POSITION_SCALE,
        fallback_epsilon=Decimal(epsilon) if epsilon else None,
    )


DEFAULT_CONFIG = config_from_settings()


# ── Errors ───────────────────────────────────────────────────────────────────


class RankingValidationError(Exception):
    """Malformed request: missing placement, bad permutation, etc."""


class RankingRequiredError(Exception):
    """The owner must complete the initial bulk ranking before rating more."""


class DuplicateRankingError(Exception):
    """A concurrent request created the same (owner, movie) rating first."""


# ── Helpers ──────────────────────────────────────────────────────────────────


def _category_value(category) -> str:
    return category.value if hasattr(category, "value") else str(category)


def hydrate_item(item: RankedItem) -> dict:
    """Build a dict matching the RankedItemResponse schema from an ORM row."""
    return {
        "id": item.id,
        "external_ref": item.external_ref,
        "category": _category_value(item.category),
        "position": item.position,
        "numeric_score": float(item.numeric_score),
        "cached_title": item.cached_title,
        "cached_poster_path": item.cached_poster_path,
        "cached_release_date": item.cached_release_date,
        "created_at": item.created_at,
        "updated_at": item.updated_at,
    }


def _ordered_query(db: Session, owner_id: UUID):
    """Canonical order: position ASC, then creation order."""
    return (
        db.query(RankedItem)
        .filter(RankedItem.owner_id == owner_id)
        .order_by(
            RankedItem.position.asc(),
            RankedItem.created_at.asc(),
            RankedItem.id.asc(),
        )
    )


def _count_items(db: Session, owner_id: UUID) -> int:
    return (
        db.query(func.count(RankedItem.id))
        .filter(RankedItem.owner_id == owner_id)
        .scalar()
    )


def _get_or_create_state(
    db: Session,
    owner_id: UUID,
    *,
    lock: bool = False,
) -> UserRankingState:
    """Fetch the owner's ranking state, creating it with defaults if absent."""
    query = db.query(UserRankingState).filter(UserRankingState.owner_id == owner_id)
    if lock:
        query = query.with_for_update()
    state = query.first()
    if state is None:
        state = UserRankingState(owner_id=owner_id, initial_ranking_completed=False)
        db.add(state)
        db.flush()
    return state


def _set_position(item: RankedItem, position: Decimal, math: RankingMath) -> None:
    item.position = position
    item.numeric_score = math.position_to_score(position)


def _comparison_items(
    db: Session,
    owner_id: UUID,
    external_ref: int,
) -> list[RankedItem]:
    """The owner's ordered list minus the movie being (re-)rated."""
    return [
        item
        for item in _ordered_query(db, owner_id).all()
        if item.external_ref != external_ref
    ]


# ── Read operations ──────────────────────────────────────────────────────────


def list_ranked_items(db: Session, owner_id: UUID) -> list[dict]:
    """Return the owner's full list ordered worst → best."""
    return [hydrate_item(item) for item in _ordered_query(db, owner_id).all()]


def get_ranking_state(
    db: Session,
    owner_id: UUID,
    *,
    config: RankingConfig | None = None,
) -> dict:
    """
    Report the owner's progress toward (or past) the initial bulk ranking.

    When initial ranking is pending, includes the first `threshold` items
    in creation order for the bulk-ranking UI.
    """
    config = config or DEFAULT_CONFIG
    state = (
        db.query(UserRankingState)
        .filter(UserRankingState.owner_id == owner_id)
        .first()
    )
    completed = bool(state and state.initial_ranking_completed)
    total = _count_items(db, owner_id)
    needs_initial = total >= config.threshold and not completed

    initial_items = None
    if needs_initial:
        rows = (
            db.query(RankedItem)
            .filter(RankedItem.owner_id == owner_id)
            .order_by(RankedItem.created_at.asc(), RankedItem.id.asc())
            .limit(config.threshold)
            .all()
        )
        initial_items = [hydrate_item(row) for row in rows]

    return {
        "total_ranked": total,
        "threshold": config.threshold,
        "has_completed_initial_ranking": completed,
        "needs_initial_ranking": needs_initial,
        "initial_items": initial_items,
    }


# ── Rebalance ────────────────────────────────────────────────────────────────


def rebalance_positions(
    db: Session,
    owner_id: UUID,
    *,
    config: RankingConfig | None = None,
) -> list[RankedItem]:
    """
    Re-space every item of the owner evenly across (0, 1).

    Order is preserved: items keep their canonical order and receive
    (i + 1) / (n + 1). Changes are flushed, not committed; the caller's
    transaction decides whether the whole batch lands.
    """
    math = RankingMath(config or DEFAULT_CONFIG)
    items = _ordered_query(db, owner_id).with_for_update().all()
    if not items:
        return items

    for item, position in zip(items, math.evenly_spaced(len(items))):
        _set_position(item, position, math)
    db.flush()

    logger.info("Rebalanced %d ranked items for owner %s", len(items), owner_id)
    return items


# ── Placement → position ─────────────────────────────────────────────────────


def _fetch_neighbor(
    db: Session,
    owner_id: UUID,
    neighbor_id: UUID | None,
    label: str,
    *,
    exclude_item_id: UUID | None,
) -> RankedItem | None:
    """
    Load a placement neighbour owned by the user.

    A neighbour that vanished (or belongs to someone else) is treated as
    "no neighbour on that side" so the list boundary is used instead.
    """
    if neighbor_id is None:
        return None
    if exclude_item_id is not None and neighbor_id == exclude_item_id:
        raise RankingValidationError(
            f"{label} neighbour cannot be the item being rated"
        )

    row = (
        db.query(RankedItem)
        .filter(RankedItem.id == neighbor_id, RankedItem.owner_id == owner_id)
        .first()
    )
    if row is None:
        logger.info(
            "%s neighbour %s not found for owner %s; using list boundary",
            label, neighbor_id, owner_id,
        )
    return row


def _check_neighbor_order(before: RankedItem | None, after: RankedItem | None) -> None:
    """Reject a placement whose before item ranks above its after item."""
    if before is not None and after is not None and before.position > after.position:
        raise RankingValidationError(
            "Placement neighbours are out of order; the before item must rank below the after item"
        )


def _position_from_placement(
    db: Session,
    owner_id: UUID,
    placement: Placement,
    math: RankingMath,
    *,
    exclude_item_id: UUID | None,
) -> Decimal:
    """
    Turn a (before, after) neighbour pair into a fresh position.

    On PositionExhausted: rebalance once and retry against the refreshed
    neighbours; if that still fails, fall back to before + epsilon.
    """
    before = _fetch_neighbor(
        db, owner_id, placement.before_id, "before", exclude_item_id=exclude_item_id
    )
    after = _fetch_neighbor(
        db, owner_id, placement.after_id, "after", exclude_item_id=exclude_item_id
    )
    # Equal positions are a collision, which the rebalance below repairs
    _check_neighbor_order(before, after)

    try:
        return math.allocate_position(
            before.position if before else None,
            after.position if after else None,
        )
    except PositionExhausted as exc:
        logger.info("Position space exhausted for owner %s (%s); rebalancing", owner_id, exc)

    rebalance_positions(db, owner_id, config=math.config)
    # Rebalance updated the same identity-mapped rows in place
    _check_neighbor_order(before, after)
    low = before.position if before else None
    high = after.position if after else None

    try:
        return math.allocate_position(low, high)
    except PositionExhausted:
        logger.warning(
            "Position space still exhausted after rebalance for owner %s "
            "(low=%s high=%s); using epsilon fallback",
            owner_id, low, high,
        )
        return math.fallback_position(low)


# ── Submit rating ────────────────────────────────────────────────────────────


def submit_rating(
    db: Session,
    owner_id: UUID,
    payload: SubmitRatingRequest,
    *,
    config: RankingConfig | None = None,
) -> RankedItem:
    """
    Create or update the owner's rating of a movie.

    Below the threshold the category default position is used. Past it,
    initial ranking must be complete and a placement is required.

    Raises:
        RankingRequiredError: threshold reached without initial ranking.
        RankingValidationError: placement missing or malformed.
        DuplicateRankingError: lost a race with a concurrent insert.
    """
    config = config or DEFAULT_CONFIG
    math = RankingMath(config)
    category = _category_value(payload.category)

    try:
        state = _get_or_create_state(db, owner_id, lock=True)
        total = _count_items(db, owner_id)

        if total >= config.threshold and not state.initial_ranking_completed:
            raise RankingRequiredError(
                "Stack ranking required before adding more ratings"
            )

        existing = (
            db.query(RankedItem)
            .filter(
                RankedItem.owner_id == owner_id,
                RankedItem.external_ref == payload.external_ref,
            )
            .first()
        )
        exclude_id = existing.id if existing is not None else None
        others = total - (1 if existing is not None else 0)

        if total < config.threshold or others == 0:
            position = math.default_position(category)
        else:
            placement = payload.placement
            if placement is None:
                raise RankingValidationError("Placement details are required")
            if placement.before_id is None and placement.after_id is None:
                raise RankingValidationError(
                    "Placement must name at least one neighbour"
                )
            position = _position_from_placement(
                db, owner_id, placement, math, exclude_item_id=exclude_id
            )

        item = existing
        if item is None:
            item = RankedItem(owner_id=owner_id, external_ref=payload.external_ref)
            db.add(item)

        item.category = RatingCategoryEnum(category)
        _set_position(item, position, math)

        snapshot = payload.movie
        if snapshot is not None:
            if snapshot.title is not None:
                item.cached_title = snapshot.title
            if snapshot.poster_path is not None:
                item.cached_poster_path = snapshot.poster_path
            if snapshot.release_date is not None:
                item.cached_release_date = snapshot.release_date
            if snapshot.overview is not None:
                item.cached_overview = snapshot.overview

        db.flush()
        db.commit()
    except (RankingRequiredError, RankingValidationError):
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        if "unique" in str(exc.orig).lower():
            raise DuplicateRankingError(
                "This movie was rated concurrently, please retry"
            ) from exc
        raise
    except SQLAlchemyError:
        db.rollback()
        raise

    db.refresh(item)
    return item


# ── Placement resolver (interactive) ─────────────────────────────────────────


def _placement_response(
    step: resolver.NextCandidate | resolver.Resolved,
    items: list[RankedItem],
) -> dict:
    if isinstance(step, resolver.Resolved):
        before = items[step.before_index] if step.before_index is not None else None
        after = items[step.after_index] if step.after_index is not None else None
        return {
            "status": "resolved",
            "before_id": before.id if before else None,
            "after_id": after.id if after else None,
        }

    state = step.state
    return {
        "status": "compare",
        "state": {
            "low": state.low,
            "high": state.high,
            "current_index": state.current_index,
            "total": state.total,
        },
        "candidate": hydrate_item(items[step.index]),
    }


def _check_placement_allowed(
    db: Session,
    owner_id: UUID,
    config: RankingConfig,
) -> bool:
    """
    Return True if comparisons are needed for a new rating.

    Raises RankingRequiredError while the initial bulk ranking is pending.
    """
    state = (
        db.query(UserRankingState)
        .filter(UserRankingState.owner_id == owner_id)
        .first()
    )
    total = _count_items(db, owner_id)
    if total < config.threshold:
        return False
    if state is None or not state.initial_ranking_completed:
        raise RankingRequiredError(
            "Stack ranking required before adding more ratings"
        )
    return True


def start_placement(
    db: Session,
    owner_id: UUID,
    external_ref: int,
    category: str,
    *,
    config: RankingConfig | None = None,
) -> dict:
    """First round of the binary-search placement for a movie."""
    config = config or DEFAULT_CONFIG
    if not _check_placement_allowed(db, owner_id, config):
        return {"status": "not_required"}

    items = _comparison_items(db, owner_id, external_ref)
    step = resolver.start_placement(_category_value(category), len(items))
    return _placement_response(step, items)


def advance_placement(
    db: Session,
    owner_id: UUID,
    external_ref: int,
    state: resolver.PlacementState,
    decision: str,
    *,
    config: RankingConfig | None = None,
) -> dict:
    """Apply one comparison decision and return the next round."""
    config = config or DEFAULT_CONFIG
    if not _check_placement_allowed(db, owner_id, config):
        return {"status": "not_required"}

    items = _comparison_items(db, owner_id, external_ref)
    if state.total != len(items):
        raise RankingValidationError(
            "Your ranked list changed during placement, please start again"
        )

    try:
        step = resolver.apply_decision(state, _category_value(decision))
    except ValueError as exc:
        raise RankingValidationError(str(exc)) from exc
    return _placement_response(step, items)


# ── Initial bulk ranking ─────────────────────────────────────────────────────


def complete_initial_ranking(
    db: Session,
    owner_id: UUID,
    ordered_ids: list[UUID],
    *,
    config: RankingConfig | None = None,
) -> list[RankedItem]:
    """
    Apply the owner's hand-made order (worst → best) to their ratings.

    Unknown or duplicate ids are rejected. Ids the caller left out (rated
    concurrently) are appended in creation order. Positions and the
    completion flag are committed together.
    """
    config = config or DEFAULT_CONFIG
    math = RankingMath(config)

    try:
        state = _get_or_create_state(db, owner_id, lock=True)
        if state.initial_ranking_completed:
            raise RankingValidationError("Initial ranking has already been completed")

        if not ordered_ids:
            raise RankingValidationError("Please provide the ordered rating ids")
        if len(set(ordered_ids)) != len(ordered_ids):
            raise RankingValidationError("Ordered ids contain duplicates")

        items = (
            db.query(RankedItem)
            .filter(RankedItem.owner_id == owner_id)
            .order_by(RankedItem.created_at.asc(), RankedItem.id.asc())
            .with_for_update()
            .all()
        )
        if len(items) < config.threshold:
            raise RankingValidationError(
                f"At least {config.threshold} ratings are required before ranking"
            )

        by_id = {item.id: item for item in items}
        unknown = [item_id for item_id in ordered_ids if item_id not in by_id]
        if unknown:
            raise RankingValidationError("One or more ratings are invalid")

        requested = set(ordered_ids)
        missing = [item for item in items if item.id not in requested]
        if missing:
            logger.info(
                "Initial ranking for owner %s omitted %d items; appending in creation order",
                owner_id, len(missing),
            )
        final_order = [by_id[item_id] for item_id in ordered_ids] + missing

        for item, position in zip(final_order, math.evenly_spaced(len(final_order))):
            _set_position(item, position, math)

        state.initial_ranking_completed = True
        state.initial_ranking_completed_at = datetime.now(timezone.utc)

        db.flush()
        db.commit()
    except RankingValidationError:
        db.rollback()
        raise
    except SQLAlchemyError:
        db.rollback()
        raise

    return final_order
