"""Tests for single-leg and correlated staking."""

from datetime import timedelta

import pytest

from edgescan.config import StakingSettings
from edgescan.engine.staking import (
    StakingEngine,
    _kelly_formula,
    combined_edge,
    combined_kelly,
    combined_probability,
    correlation_between,
    event_correlation,
)
from edgescan.models.schemas import Leg, Side, SignalOpportunity, Tier, Urgency


@pytest.fixture
def engine():
    return StakingEngine(StakingSettings())


def leg(market_type, edge, probability, stake=100.0, event_key="e1"):
    return Leg(
        event_key=event_key,
        market_type=market_type,
        entity="Los Angeles Lakers",
        side=Side.YES,
        market_price=round(probability - edge / 100, 4),
        fair_probability=probability,
        edge_pct=edge,
        stake=stake,
    )


class TestSingleLeg:
    """Tests for quarter-Kelly single bets."""

    def test_clamped_to_max(self, engine):
        # Full quarter Kelly here is ~3.8% of bankroll
        assert engine.single_leg(0.55, 0.47) == pytest.approx(0.015)

    def test_inside_band(self, engine):
        assert engine.single_leg(0.50, 0.49) == pytest.approx(0.004902, abs=1e-6)

    def test_clamped_to_min(self, engine):
        assert engine.single_leg(0.50, 0.499) == pytest.approx(0.0025)

    @pytest.mark.parametrize("p,price", [(0.45, 0.47), (0.5, 0.5), (0.3, 0.9)])
    def test_no_edge_no_stake(self, engine, p, price):
        assert engine.single_leg(p, price) == 0.0

    @pytest.mark.parametrize("price", [0.0, 1.0, 1.2])
    def test_unbuyable_price(self, engine, price):
        assert engine.single_leg(0.6, price) == 0.0

    def test_result_is_zero_or_inside_bounds(self, engine):
        for p, price in [(0.9, 0.5), (0.51, 0.5), (0.2, 0.1), (0.62, 0.6), (0.35, 0.4)]:
            stake = engine.single_leg(p, price)
            assert stake == 0.0 or 0.0025 <= stake <= 0.015

    def test_stake_amount(self, engine):
        assert engine.stake_amount(0.015) == 150.0


class TestCorrelation:
    """Tests for the market-type correlation table."""

    def test_symmetric_lookup(self):
        assert correlation_between("h2h", "spread") == 0.85
        assert correlation_between("spread", "h2h") == 0.85
        assert correlation_between("totals", "spreads") == 0.20

    def test_same_type_and_unknown(self):
        assert correlation_between("h2h", "moneyline") == 1.0
        assert correlation_between("h2h", "player_props") == 0.5

    def test_event_correlation_is_mean_over_pairs(self):
        assert event_correlation(["h2h", "spread", "total"]) == pytest.approx(0.4)
        assert event_correlation(["h2h"]) == 0.0


class TestCombined:
    """Tests for combined probability, edge and Kelly."""

    def test_two_leg_example(self):
        assert combined_edge([4.0, 3.5], 0.85) == pytest.approx(7.3525)
        assert combined_probability([0.55, 0.52], 0.85) == pytest.approx(0.31603, abs=1e-5)
        assert combined_kelly([0.55, 0.52], [4.0, 3.5], 0.85) == pytest.approx(0.0502, abs=1e-3)

    def test_probability_capped(self):
        assert combined_probability([0.99, 0.99], 1.0) == 0.95

    def test_edge_floored_at_zero(self):
        assert combined_edge([0.05, 0.05], 1.0) == 0.0

    def test_single_leg_has_no_combined_kelly(self):
        assert combined_kelly([0.6], [5.0], 1.0) == 0.0

    def test_kelly_cap(self):
        assert combined_kelly([0.6, 0.6], [30.0, 30.0], 0.1) == 0.08

    @pytest.mark.parametrize("probabilities,edges", [
        ([0.55, 0.52], [4.0, 3.5]),
        ([0.90, 0.92], [3.0, 3.0]),
        ([0.80, 0.85, 0.90], [2.5, 3.0, 2.0]),
        ([0.30, 0.40], [10.0, 6.0]),
    ])
    def test_kelly_never_grows_with_correlation(self, probabilities, edges):
        grid = [i / 20 for i in range(21)]
        values = [combined_kelly(probabilities, edges, c, cap=1.0) for c in grid]
        for earlier, later in zip(values, values[1:]):
            assert later <= earlier + 1e-12

    def test_likely_legs_do_not_follow_raw_formula_up(self):
        probabilities, edges = [0.90, 0.92], [3.0, 3.0]
        assert _kelly_formula(probabilities, edges, 1.0) > _kelly_formula(probabilities, edges, 0.0)
        assert combined_kelly(probabilities, edges, 1.0, cap=1.0) <= _kelly_formula(
            probabilities, edges, 0.0
        )


class TestCorrelatedOpportunity:
    """Tests for sizing a combination."""

    def test_accepted(self, engine):
        opp = engine.correlated([leg("h2h", 4.0, 0.55), leg("spread", 3.5, 0.52)], "Lakers", "nba")

        assert opp is not None
        assert opp.correlation_coefficient == 0.85
        assert opp.combined_edge == pytest.approx(7.3525)
        assert opp.kelly_fraction == pytest.approx(0.0502, abs=1e-3)
        assert opp.max_loss == 200.0
        assert opp.expected_value == pytest.approx(14.705, abs=0.01)
        assert opp.risk_tier == "conservative"
        assert opp.correlation_type == "high"

    def test_weak_leg_rejected(self, engine):
        assert engine.correlated([leg("h2h", 6.0, 0.55), leg("spread", 1.9, 0.52)], "Lakers") is None

    def test_small_combined_edge_rejected(self, engine):
        # 2.5 + 2.5 - 0.15 * 0.15 - 0.02 = 4.9575
        assert engine.correlated([leg("h2h", 2.5, 0.55), leg("total", 2.5, 0.52)], "Lakers") is None

    def test_max_loss_rejected(self, engine):
        legs = [leg("h2h", 4.0, 0.55, stake=3000), leg("spread", 3.5, 0.52, stake=3000)]
        assert engine.correlated(legs, "Lakers") is None

    def test_small_kelly_rejected(self):
        engine = StakingEngine(StakingSettings(min_kelly_fraction=0.06))
        assert engine.correlated([leg("h2h", 4.0, 0.55), leg("spread", 3.5, 0.52)], "Lakers") is None


class TestDetectCorrelated:
    """Tests for grouping active signals."""

    @pytest.fixture
    def signal(self, now):
        def _make(event_key, market_type, edge, fair, price, outcome="Los Angeles Lakers", status="active"):
            return SignalOpportunity(
                event_key=event_key,
                side=Side.YES,
                market_price=price,
                fair_probability=fair,
                edge_pct=edge,
                confidence_score=70,
                urgency=Urgency.NORMAL,
                tier=Tier.MARGINAL,
                created_at=now,
                expires_at=now + timedelta(hours=2),
                outcome_id=outcome,
                market_id=f"{event_key}-{market_type}",
                market_type=market_type,
                sport="basketball_nba",
                status=status,
            )

        return _make

    def test_groups_by_entity(self, engine, signal):
        signals = [
            signal("e1", "h2h", 4.0, 0.55, 0.51),
            signal("e1", "spreads", 3.5, 0.52, 0.485),
            signal("e2", "h2h", 6.0, 0.60, 0.54, outcome="Boston Celtics"),
            signal("e3", "total", 9.0, 0.60, 0.51, status="expired"),
        ]
        found = engine.detect_correlated(signals)

        assert len(found) == 1
        opp = found[0]
        assert opp.entity == "Los Angeles Lakers"
        assert opp.sport == "basketball_nba"
        assert sorted(item.market_type for item in opp.legs) == ["h2h", "spread"]
        assert opp.max_loss == 300.0

    def test_duplicate_legs_collapse(self, engine, signal):
        s = signal("e1", "h2h", 4.0, 0.55, 0.51)
        assert engine.detect_correlated([s, s]) == []
