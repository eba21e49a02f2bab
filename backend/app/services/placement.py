"""
Placement resolver: binary search over a user's ranked list.

The list is the owner's items sorted worst → best (position ASC). Each
round the user compares the new movie against the item at current_index:

  better   new movie wins       → low  = current_index + 1
  worse    existing item wins   → high = current_index - 1
  similar  no strong preference → move toward the smaller remaining span

Once low > high the insertion index is low and the neighbours are the
items at low - 1 and low. The first candidate is seeded from the chosen
category so a "great" movie starts near the top third instead of the
middle.

Everything here is pure: the caller owns the list and just echoes the
PlacementState back between rounds.
"""
from dataclasses import dataclass
from enum import Enum

from app.services.ranking_math import CATEGORY_ORDER


class ComparisonDecision(str, Enum):
    BETTER = "better"
    WORSE = "worse"
    SIMILAR = "similar"


@dataclass(frozen=True)
class PlacementState:
    low: int
    high: int
    current_index: int
    total: int


@dataclass(frozen=True)
class NextCandidate:
    state: PlacementState

    @property
    def index(self) -> int:
        return self.state.current_index


@dataclass(frozen=True)
class Resolved:
    insertion_index: int
    total: int

    @property
    def before_index(self) -> int | None:
        return self.insertion_index - 1 if self.insertion_index > 0 else None

    @property
    def after_index(self) -> int | None:
        return self.insertion_index if self.insertion_index < self.total else None


def category_ranges(total: int) -> dict[str, tuple[int, int]]:
    """
    Split indices 0..total-1 into bad / ok / great thirds.

    Remainder slots go to bad first, then ok. A third can be empty
    (start > end) when total < 3.
    """
    base, remainder = divmod(total, 3)
    size_bad = base + (1 if remainder > 0 else 0)
    size_ok = base + (1 if remainder > 1 else 0)

    return {
        "bad": (0, size_bad - 1),
        "ok": (size_bad, size_bad + size_ok - 1),
        "great": (size_bad + size_ok, total - 1),
    }


def seed_index(category: str, total: int) -> int:
    """First comparison index: midpoint of the category's third."""
    if category not in CATEGORY_ORDER:
        raise ValueError(f"Unknown category {category!r}")
    if total <= 0:
        return 0

    start, end = category_ranges(total)[category]
    if start > end:
        return total // 2
    return (start + end) // 2


def start_placement(category: str, total: int) -> NextCandidate | Resolved:
    """Open a placement session against `total` existing items."""
    if total <= 0:
        return Resolved(insertion_index=0, total=0)

    state = PlacementState(
        low=0,
        high=total - 1,
        current_index=seed_index(category, total),
        total=total,
    )
    return NextCandidate(state=state)


def apply_decision(
    state: PlacementState,
    decision: ComparisonDecision | str,
) -> NextCandidate | Resolved:
    """Advance the search by one comparison."""
    decision = ComparisonDecision(decision)
    low, high, current = state.low, state.high, state.current_index

    if not 0 <= low <= current <= high < state.total:
        raise ValueError(
            f"Inconsistent placement state low={low} high={high} "
            f"current_index={current} total={state.total}"
        )

    if decision is ComparisonDecision.SIMILAR:
        if current - low <= high - current:
            decision = ComparisonDecision.WORSE
        else:
            decision = ComparisonDecision.BETTER

    if decision is ComparisonDecision.BETTER:
        low = current + 1
    else:
        high = current - 1

    if low > high:
        return Resolved(insertion_index=low, total=state.total)

    return NextCandidate(
        state=PlacementState(
            low=low,
            high=high,
            current_index=(low + high) // 2,
            total=state.total,
        )
    )
