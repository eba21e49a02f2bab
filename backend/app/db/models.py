"""
SQLAlchemy ORM models.

Schema mirrors alembic/versions/0001_initial_schema.py: column names,
constraints and indexes are intentional.

Owners are identified by the UUID carried in the bearer token; users live
in the external auth service, so there is no users table or FK here.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings
from app.services.ranking_math import POSITION_CONTEXT


# ── Base ──────────────────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    pass


# ── Enums ─────────────────────────────────────────────────────────────────────

class RatingCategoryEnum(str, PyEnum):
    BAD = "bad"
    OK = "ok"
    GREAT = "great"


# ── Column types ──────────────────────────────────────────────────────────────

class PositionType(TypeDecorator):
    """
    Fixed-point rank position in (0, 1).

    PostgreSQL stores NUMERIC(scale + 2, scale). Other dialects (SQLite in
    tests) have no exact decimal type, so the value is stored as a
    zero-padded string: every position renders as "0." plus `scale` digits,
    which keeps lexical ORDER BY identical to numeric order.
    """

    impl = Numeric
    cache_ok = True

    def __init__(self, scale: int = settings.RANKING_POSITION_SCALE) -> None:
        super().__init__()
        self.scale = scale

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(
                Numeric(precision=self.scale + 2, scale=self.scale, asdecimal=True)
            )
        return dialect.type_descriptor(String(self.scale + 2))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        quantized = Decimal(str(value)).quantize(
            Decimal(1).scaleb(-self.scale), context=POSITION_CONTEXT
        )
        if dialect.name == "postgresql":
            return quantized
        return f"{quantized:f}"

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(str(value)) if not isinstance(value, Decimal) else value


# ── Timestamp helper ──────────────────────────────────────────────────────────

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Models ────────────────────────────────────────────────────────────────────

class RankedItem(Base):
    """
    One user's rating of one TMDB movie.

    position       : fractional index in (0, 1), worst → best. Gaps allow
                     insertion between any two items without renumbering;
                     ranking_service rebalances when a gap runs out.

    numeric_score  : display score (0.00–10.00) derived from position.

    cached_*       : catalog snapshot taken at rating time so the list can
                     render without a live TMDB call. May be stale or empty.
    """
    __tablename__ = "ranked_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Uuid, nullable=False, index=True)
    external_ref = Column(Integer, nullable=False, comment="TMDB movie id")
    category = Column(
        SAEnum(
            RatingCategoryEnum,
            name="rating_category",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    position = Column(PositionType(), nullable=False)
    numeric_score = Column(Numeric(4, 2), nullable=False)
    cached_title = Column(String(500), nullable=True)
    cached_poster_path = Column(String(255), nullable=True)
    cached_release_date = Column(String(32), nullable=True)
    cached_overview = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    __table_args__ = (
        # A user can only rank each movie once; re-rating updates in place
        UniqueConstraint("owner_id", "external_ref", name="uq_ranked_items_owner_ref"),
        # Covering index for the canonical ordered list
        Index("idx_ranked_items_owner_position", "owner_id", "position", "created_at"),
        CheckConstraint(
            "numeric_score >= 0 AND numeric_score <= 10",
            name="chk_ranked_items_score_0_10",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<RankedItem owner={self.owner_id} ref={self.external_ref} "
            f"category={self.category} pos={self.position}>"
        )


class UserRankingState(Base):
    """
    Per-owner ranking flags. Created lazily on the first write.

    initial_ranking_completed flips to True exactly once, when the owner
    submits the bulk order for their first `threshold` ratings. The row
    also serves as the per-owner lock for every ranking write.
    """
    __tablename__ = "user_ranking_states"

    owner_id = Column(Uuid, primary_key=True)
    initial_ranking_completed = Column(Boolean, default=False, nullable=False)
    initial_ranking_completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<UserRankingState owner={self.owner_id} "
            f"initial_done={self.initial_ranking_completed}>"
        )
