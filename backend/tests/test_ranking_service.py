import math
import random
import unittest
from decimal import Decimal
from unittest.mock import patch
from uuid import uuid4

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.models import Base, RankedItem, UserRankingState
from app.schemas.rankings import MovieSnapshot, Placement, SubmitRatingRequest
from app.services.placement import PlacementState
from app.services.ranking_math import PositionExhausted, RankingConfig, RankingMath
from app.services.ranking_service import (
    RankingRequiredError,
    RankingValidationError,
    advance_placement,
    complete_initial_ranking,
    get_ranking_state,
    list_ranked_items,
    rebalance_positions,
    start_placement,
    submit_rating,
)

CONFIG = RankingConfig(threshold=10, position_scale=18)
QUANTUM = Decimal("1e-18")


def _q(value: Decimal) -> Decimal:
    return value.quantize(QUANTUM)


class RankingServiceTestCase(unittest.TestCase):
    """Runs the service against an in-memory SQLite database."""

    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
        )
        self.db = self.Session()
        self.owner = uuid4()

    def tearDown(self) -> None:
        self.db.close()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    # ── helpers ───────────────────────────────────────────────────────────

    def rate(self, ref: int, category: str = "ok", placement: Placement | None = None, owner=None):
        payload = SubmitRatingRequest(
            external_ref=ref,
            category=category,
            movie=MovieSnapshot(title=f"Movie {ref}"),
            placement=placement,
        )
        return submit_rating(self.db, owner or self.owner, payload, config=CONFIG)

    def seed_ranked(self, count: int = 10) -> list[RankedItem]:
        """Rate `count` movies and bulk-rank them in external_ref order."""
        items = [self.rate(ref, "ok") for ref in range(1, count + 1)]
        return complete_initial_ranking(
            self.db, self.owner, [item.id for item in items], config=CONFIG
        )

    def ordered(self) -> list[RankedItem]:
        return (
            self.db.query(RankedItem)
            .filter(RankedItem.owner_id == self.owner)
            .order_by(RankedItem.position.asc(), RankedItem.created_at.asc())
            .all()
        )

    def place(self, ref: int, category: str, prefers_new) -> tuple[Placement, int]:
        """Drive the interactive placement; prefers_new(candidate) → bool."""
        step = start_placement(self.db, self.owner, ref, category, config=CONFIG)
        rounds = 0
        while step["status"] == "compare":
            rounds += 1
            decision = "better" if prefers_new(step["candidate"]) else "worse"
            state = PlacementState(**step["state"])
            step = advance_placement(self.db, self.owner, ref, state, decision, config=CONFIG)
        self.assertEqual(step["status"], "resolved")
        return Placement(before_id=step["before_id"], after_id=step["after_id"]), rounds


class TestThresholdGating(RankingServiceTestCase):
    def test_first_ratings_use_category_defaults(self) -> None:
        bad = self.rate(1, "bad")
        ok = self.rate(2, "ok")
        great = self.rate(3, "great")
        rmath = RankingMath(CONFIG)
        self.assertEqual(bad.position, rmath.default_position("bad"))
        self.assertEqual(ok.position, Decimal("0.5"))
        self.assertEqual(great.position, rmath.default_position("great"))
        self.assertAlmostEqual(float(great.numeric_score), 8.33, places=2)

    def test_tenth_without_placement_then_eleventh_blocked(self) -> None:
        for ref in range(1, 10):
            self.rate(ref, "ok")
        tenth = self.rate(10, "great")
        self.assertIsNotNone(tenth.id)

        with self.assertRaises(RankingRequiredError):
            self.rate(11, "bad")
        # Re-rating is blocked as well until the bulk ranking is done
        with self.assertRaises(RankingRequiredError):
            self.rate(3, "bad")
        self.assertEqual(len(self.ordered()), 10)

    def test_placement_required_after_initial_ranking(self) -> None:
        self.seed_ranked()
        with self.assertRaises(RankingValidationError):
            self.rate(11, "great")
        with self.assertRaises(RankingValidationError):
            self.rate(11, "great", Placement())

    def test_state_reports_pending_initial_ranking(self) -> None:
        for ref in range(1, 11):
            self.rate(ref, "ok")
        state = get_ranking_state(self.db, self.owner, config=CONFIG)
        self.assertEqual(state["total_ranked"], 10)
        self.assertTrue(state["needs_initial_ranking"])
        self.assertFalse(state["has_completed_initial_ranking"])
        self.assertEqual(
            [item["external_ref"] for item in state["initial_items"]],
            list(range(1, 11)),
        )

    def test_placement_not_required_below_threshold(self) -> None:
        self.rate(1, "ok")
        step = start_placement(self.db, self.owner, 2, "great", config=CONFIG)
        self.assertEqual(step, {"status": "not_required"})

    def test_placement_blocked_while_initial_ranking_pending(self) -> None:
        for ref in range(1, 11):
            self.rate(ref, "ok")
        with self.assertRaises(RankingRequiredError):
            start_placement(self.db, self.owner, 11, "ok", config=CONFIG)


class TestReRating(RankingServiceTestCase):
    def test_rerating_updates_in_place(self) -> None:
        first = self.rate(42, "bad")
        second = self.rate(42, "great")

        rows = self.ordered()
        self.assertEqual(len(rows), 1)
        self.assertEqual(second.id, first.id)
        self.assertEqual(rows[0].category.value, "great")
        self.assertEqual(rows[0].position, RankingMath(CONFIG).default_position("great"))

    def test_rerating_past_threshold_moves_item(self) -> None:
        ranked = self.seed_ranked()
        target = ranked[0]  # currently the worst

        placement = Placement(before_id=ranked[-1].id, after_id=None)
        moved = self.rate(target.external_ref, "great", placement)

        self.assertEqual(moved.id, target.id)
        order = [item.external_ref for item in self.ordered()]
        self.assertEqual(order[-1], target.external_ref)
        self.assertEqual(len(order), 10)

    def test_rerated_item_cannot_be_its_own_neighbor(self) -> None:
        ranked = self.seed_ranked()
        with self.assertRaises(RankingValidationError):
            self.rate(ranked[3].external_ref, "ok", Placement(before_id=ranked[3].id))

    def test_comparison_set_excludes_rerated_movie(self) -> None:
        ranked = self.seed_ranked()
        step = start_placement(self.db, self.owner, ranked[0].external_ref, "ok", config=CONFIG)
        self.assertEqual(step["state"]["total"], 9)


class TestInitialRanking(RankingServiceTestCase):
    def _rate_ten(self) -> list[RankedItem]:
        return [self.rate(ref, random.Random(ref).choice(["bad", "ok", "great"])) for ref in range(1, 11)]

    def test_assigns_even_positions_in_given_order(self) -> None:
        items = self._rate_ten()
        order = [item.id for item in reversed(items)]

        result = complete_initial_ranking(self.db, self.owner, order, config=CONFIG)

        self.assertEqual([item.id for item in result], order)
        expected = [_q(Decimal(i) / Decimal(11)) for i in range(1, 11)]
        self.assertEqual([item.position for item in self.ordered()], expected)
        self.assertEqual([item.id for item in self.ordered()], order)
        self.assertAlmostEqual(float(self.ordered()[0].numeric_score), 0.91, places=2)

        state = self.db.query(UserRankingState).filter_by(owner_id=self.owner).one()
        self.assertTrue(state.initial_ranking_completed)
        self.assertIsNotNone(state.initial_ranking_completed_at)

    def test_omitted_ids_are_appended_in_creation_order(self) -> None:
        items = self._rate_ten()
        partial = [items[9].id, items[8].id, items[7].id]

        result = complete_initial_ranking(self.db, self.owner, partial, config=CONFIG)

        self.assertEqual(
            [item.id for item in result],
            partial + [item.id for item in items[:7]],
        )

    def test_rejects_unknown_ids(self) -> None:
        items = self._rate_ten()
        with self.assertRaises(RankingValidationError):
            complete_initial_ranking(
                self.db, self.owner, [item.id for item in items] + [uuid4()], config=CONFIG
            )
        state = get_ranking_state(self.db, self.owner, config=CONFIG)
        self.assertFalse(state["has_completed_initial_ranking"])

    def test_rejects_other_owners_ids(self) -> None:
        items = self._rate_ten()
        stranger = self.rate(99, "ok", owner=uuid4())
        with self.assertRaises(RankingValidationError):
            complete_initial_ranking(
                self.db, self.owner, [stranger.id] + [item.id for item in items], config=CONFIG
            )

    def test_rejects_duplicates_and_empty(self) -> None:
        items = self._rate_ten()
        with self.assertRaises(RankingValidationError):
            complete_initial_ranking(self.db, self.owner, [items[0].id, items[0].id], config=CONFIG)
        with self.assertRaises(RankingValidationError):
            complete_initial_ranking(self.db, self.owner, [], config=CONFIG)

    def test_rejects_below_threshold(self) -> None:
        items = [self.rate(ref) for ref in range(1, 6)]
        with self.assertRaises(RankingValidationError):
            complete_initial_ranking(self.db, self.owner, [item.id for item in items], config=CONFIG)

    def test_runs_only_once(self) -> None:
        ranked = self.seed_ranked()
        with self.assertRaises(RankingValidationError):
            complete_initial_ranking(self.db, self.owner, [item.id for item in ranked], config=CONFIG)
        state = get_ranking_state(self.db, self.owner, config=CONFIG)
        self.assertTrue(state["has_completed_initial_ranking"])

    def test_failure_rolls_back_every_position(self) -> None:
        items = self._rate_ten()
        before = {item.id: item.position for item in self.ordered()}
        calls = {"n": 0}
        real_score = RankingMath.position_to_score

        def flaky_score(position):
            calls["n"] += 1
            if calls["n"] == 5:
                raise SQLAlchemyError("connection dropped")
            return real_score(position)

        with patch.object(RankingMath, "position_to_score", side_effect=flaky_score):
            with self.assertRaises(SQLAlchemyError):
                complete_initial_ranking(
                    self.db, self.owner, [item.id for item in items], config=CONFIG
                )

        after = {item.id: item.position for item in self.ordered()}
        self.assertEqual(after, before)
        state = get_ranking_state(self.db, self.owner, config=CONFIG)
        self.assertFalse(state["has_completed_initial_ranking"])


class TestPlacementAndRebalance(RankingServiceTestCase):
    def test_total_order_matches_every_comparison(self) -> None:
        rng = random.Random(7)
        true_score = {ref: rng.random() for ref in range(1, 41)}

        first_ten = sorted(range(1, 11), key=true_score.get)
        items = {ref: self.rate(ref, "ok") for ref in range(1, 11)}
        complete_initial_ranking(
            self.db, self.owner, [items[ref].id for ref in first_ten], config=CONFIG
        )

        for ref in range(11, 41):
            score = true_score[ref]
            category = "bad" if score < 0.33 else "ok" if score < 0.66 else "great"
            existing = len(self.ordered())
            placement, rounds = self.place(
                ref,
                category,
                lambda candidate: score > true_score[candidate["external_ref"]],
            )
            self.assertLessEqual(rounds, math.ceil(math.log2(existing)) + 1)
            self.rate(ref, category, placement)

        rows = self.ordered()
        self.assertEqual(
            [row.external_ref for row in rows],
            sorted(true_score, key=true_score.get),
        )
        positions = [row.position for row in rows]
        self.assertEqual(len(set(positions)), len(positions))
        self.assertTrue(all(Decimal(0) < p < Decimal(1) for p in positions))

    def test_step_rejects_stale_state(self) -> None:
        self.seed_ranked()
        stale = PlacementState(low=0, high=11, current_index=5, total=12)
        with self.assertRaises(RankingValidationError):
            advance_placement(self.db, self.owner, 99, stale, "better", config=CONFIG)

    def test_tight_gap_triggers_rebalance(self) -> None:
        ranked = self.seed_ranked()
        low, high = ranked[4], ranked[5]
        high.position = low.position + QUANTUM
        self.db.commit()

        with self.assertLogs("app.services.ranking_service", level="INFO") as logs:
            new = self.rate(77, "ok", Placement(before_id=low.id, after_id=high.id))

        self.assertTrue(any("Rebalanced 10" in line for line in logs.output))
        order = [row.external_ref for row in self.ordered()]
        self.assertEqual(order, [1, 2, 3, 4, 5, 77, 6, 7, 8, 9, 10])
        self.assertEqual(new.position, _q(Decimal("5.5") / Decimal(11)))

    def test_exhaustion_after_rebalance_uses_epsilon(self) -> None:
        ranked = self.seed_ranked()
        low = ranked[2]

        with patch.object(
            RankingMath,
            "allocate_position",
            side_effect=PositionExhausted("forced"),
        ), self.assertLogs("app.services.ranking_service", level="WARNING"):
            new = self.rate(77, "ok", Placement(before_id=low.id, after_id=ranked[3].id))

        self.db.refresh(low)
        self.assertEqual(new.position, low.position + QUANTUM)

    def test_reversed_neighbors_are_rejected(self) -> None:
        ranked = self.seed_ranked()
        positions = [row.position for row in self.ordered()]

        with self.assertRaises(RankingValidationError):
            self.rate(77, "ok", Placement(before_id=ranked[8].id, after_id=ranked[1].id))

        rows = self.ordered()
        self.assertEqual([row.external_ref for row in rows], list(range(1, 11)))
        self.assertEqual([row.position for row in rows], positions)

    def test_colliding_neighbors_are_rebalanced(self) -> None:
        ranked = self.seed_ranked()
        low, high = ranked[4], ranked[5]
        high.position = low.position
        self.db.commit()

        with self.assertLogs("app.services.ranking_service", level="INFO") as logs:
            self.rate(77, "ok", Placement(before_id=low.id, after_id=high.id))

        self.assertTrue(any("Rebalanced 10" in line for line in logs.output))
        order = [row.external_ref for row in self.ordered()]
        self.assertEqual(order, [1, 2, 3, 4, 5, 77, 6, 7, 8, 9, 10])

    def test_repeated_bottom_insertion_rebalances(self) -> None:
        self.seed_ranked()
        config = RankingConfig(threshold=10, position_scale=12)
        refs = list(range(101, 161))

        with self.assertLogs("app.services.ranking_service", level="INFO") as logs:
            for ref in refs:
                worst = self.ordered()[0]
                payload = SubmitRatingRequest(
                    external_ref=ref,
                    category="bad",
                    placement=Placement(after_id=worst.id),
                )
                submit_rating(self.db, self.owner, payload, config=config)

        self.assertTrue(any("Rebalanced" in line for line in logs.output))
        rows = self.ordered()
        positions = [row.position for row in rows]
        self.assertEqual(len(rows), 70)
        self.assertTrue(all(position > 0 for position in positions))
        self.assertEqual(len(set(positions)), len(positions))
        self.assertEqual(
            [row.external_ref for row in rows],
            list(reversed(refs)) + list(range(1, 11)),
        )

    def test_missing_neighbor_uses_list_boundary(self) -> None:
        ranked = self.seed_ranked()
        worst = ranked[0]

        new = self.rate(77, "bad", Placement(before_id=uuid4(), after_id=worst.id))

        self.assertEqual(self.ordered()[0].id, new.id)
        self.assertEqual(new.position, _q(worst.position / 2))

    def test_other_owners_neighbor_is_ignored(self) -> None:
        ranked = self.seed_ranked()
        stranger = self.rate(500, "great", owner=uuid4())

        new = self.rate(77, "great", Placement(before_id=ranked[-1].id, after_id=stranger.id))

        self.assertEqual(self.ordered()[-1].id, new.id)
        self.assertGreater(new.position, ranked[-1].position)
        self.assertLess(new.position, Decimal(1))

    def test_rebalance_preserves_order(self) -> None:
        ranked = self.seed_ranked()
        for ref, placement in (
            (11, Placement(before_id=ranked[0].id, after_id=ranked[1].id)),
            (12, Placement(before_id=ranked[8].id, after_id=ranked[9].id)),
        ):
            self.rate(ref, "ok", placement)
        before = [row.id for row in self.ordered()]

        rebalance_positions(self.db, self.owner, config=CONFIG)
        self.db.commit()

        rows = self.ordered()
        self.assertEqual([row.id for row in rows], before)
        self.assertEqual(
            [row.position for row in rows],
            [_q(Decimal(i) / Decimal(13)) for i in range(1, 13)],
        )

    def test_owners_are_independent(self) -> None:
        self.seed_ranked()
        other = uuid4()
        item = self.rate(1, "great", owner=other)
        self.assertEqual(item.position, RankingMath(CONFIG).default_position("great"))
        self.assertEqual(len(list_ranked_items(self.db, other)), 1)
        self.assertEqual(len(list_ranked_items(self.db, self.owner)), 10)


if __name__ == "__main__":
    unittest.main()
