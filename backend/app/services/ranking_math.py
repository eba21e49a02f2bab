"""
Ranking Math Service
────────────────────
Pure decimal math for the fractional stack ranking.

Positions live in the open interval (0, 1). Ascending position means
worst → best, so a brand-new "great" rating defaults near the top and
`numeric_score` is simply the position rescaled to 0–10.

Positions are stored as fixed-point decimals (RANKING_POSITION_SCALE
fractional digits). Repeated bisection at the same boundary therefore
runs out of room eventually; allocate_position() reports that with
PositionExhausted instead of returning a colliding value.

Nothing here touches the database; ranking_service wires these helpers
to the ORM.
"""
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Context, Decimal, localcontext

# Enough significant digits for any supported scale plus headroom. Applied
# explicitly because decimal contexts are per thread.
POSITION_CONTEXT = Context(prec=40)

CATEGORY_ORDER: tuple[str, ...] = ("bad", "ok", "great")

# Coarse default positions used while a user has fewer than `threshold`
# ratings. Expressed as fractions so they quantize cleanly at any scale.
DEFAULT_POSITION_FRACTIONS: dict[str, tuple[int, int]] = {
    "bad": (1, 6),
    "ok": (1, 2),
    "great": (5, 6),
}

SCORE_MAX = Decimal("10")
SCORE_STEP = Decimal("0.01")


class PositionExhausted(Exception):
    """Raised when no position fits strictly between two bounds."""


@dataclass(frozen=True)
class RankingConfig:
    """
    Static ranking parameters.

    threshold       : ratings before comparisons (and initial ranking) kick in
    position_scale  : fractional digits kept for a position
    fallback_epsilon: last-resort offset; defaults to 10^-position_scale
    """

    threshold: int = 10
    position_scale: int = 18
    fallback_epsilon: Decimal | None = None
    default_fractions: dict[str, tuple[int, int]] = field(
        default_factory=lambda: dict(DEFAULT_POSITION_FRACTIONS)
    )

    @property
    def quantum(self) -> Decimal:
        """Smallest representable position step."""
        return Decimal(1).scaleb(-self.position_scale)

    @property
    def epsilon(self) -> Decimal:
        if self.fallback_epsilon is not None:
            return self.fallback_epsilon
        return self.quantum


class RankingMath:
    """
    Position and score helpers bound to a RankingConfig.

    Every operation runs under POSITION_CONTEXT, so results do not depend
    on the calling thread's decimal context.
    """

    def __init__(self, config: RankingConfig | None = None) -> None:
        self.config = config or RankingConfig()

    # ── Helpers ───────────────────────────────────────────────────────────────

    def quantize(self, value: Decimal) -> Decimal:
        return value.quantize(self.config.quantum, context=POSITION_CONTEXT)

    def default_position(self, category: str) -> Decimal:
        """Fixed position for a rating made below the threshold."""
        numerator, denominator = self.config.default_fractions[category]
        with localcontext(POSITION_CONTEXT):
            return self.quantize(Decimal(numerator) / Decimal(denominator))

    # ── Allocation ────────────────────────────────────────────────────────────

    def allocate_position(
        self,
        low: Decimal | None,
        high: Decimal | None,
    ) -> Decimal:
        """
        Return a position strictly between low and high.

        Cases:
          (None, None)  → 0.5, the middle of the whole range.
          (low, None)   → midpoint of (low, 1).
          (None, high)  → midpoint of (0, high).
          (low, high)   → midpoint of (low, high).

        Raises:
            PositionExhausted: high <= low, or the quantized midpoint is not
                               strictly inside the bounds. The caller must
                               rebalance and retry.
        """
        with localcontext(POSITION_CONTEXT):
            low_d = Decimal(0) if low is None else Decimal(low)
            high_d = Decimal(1) if high is None else Decimal(high)

            if high_d <= low_d:
                raise PositionExhausted(f"no room: low={low_d} high={high_d}")

            mid = self.quantize(low_d + (high_d - low_d) / 2)
            if not low_d < mid < high_d:
                raise PositionExhausted(
                    f"precision exhausted: low={low_d} high={high_d}"
                )
            return mid

    def fallback_position(self, low: Decimal | None) -> Decimal:
        """Last-resort position just above low (may collide in theory)."""
        with localcontext(POSITION_CONTEXT):
            low_d = Decimal(0) if low is None else Decimal(low)
            return self.quantize(low_d + self.config.epsilon)

    def evenly_spaced(self, n: int) -> list[Decimal]:
        """Positions (i + 1) / (n + 1) for i in 0..n-1."""
        with localcontext(POSITION_CONTEXT):
            denominator = Decimal(n + 1)
            return [self.quantize(Decimal(i + 1) / denominator) for i in range(n)]

    # ── Score ─────────────────────────────────────────────────────────────────

    @staticmethod
    def position_to_score(position: Decimal) -> Decimal:
        """Linear rescale of a position to the 0–10 display score."""
        with localcontext(POSITION_CONTEXT):
            scaled = Decimal(position) * SCORE_MAX
            clamped = max(Decimal(0), min(SCORE_MAX, scaled))
            return clamped.quantize(SCORE_STEP, rounding=ROUND_HALF_UP)
