"""Tests for core/odds_math: pari-mutuel pricing, payouts, formatting."""

from decimal import Decimal

import pytest

from backend.core.odds_math import (
    MIN_ODDS,
    board_odds,
    calc_payout,
    compute_odds,
    format_odds,
    pool_total,
    validate_house_edge,
)


# ---------------------------------------------------------------------------
# compute_odds: worked examples
# ---------------------------------------------------------------------------

def test_underdog_stake_with_five_percent_edge():
    # X has ₹100, Y has ₹0; ₹50 on Y → pool 150 / 50 = 3.0 → × 0.95 = 2.85
    odds = compute_odds({"x": 100, "y": 0}, "y", 50, 5)
    assert odds == pytest.approx(2.85)


def test_zero_stake_on_covered_option_returns_floor():
    # raw odds 100 / 100 = 1.0 → clamped to the floor
    assert compute_odds({"x": 100, "y": 0}, "x", 0, 0) == MIN_ODDS


def test_empty_selection_returns_floor_instead_of_dividing_by_zero():
    assert compute_odds({"x": 100, "y": 0}, "y", 0, 5) == MIN_ODDS


def test_zero_edge_is_pure_parimutuel():
    # (60 + 40 + 20) / (40 + 20) = 2.0
    assert compute_odds({"a": 60, "b": 40}, "b", 20, 0) == pytest.approx(2.0)


def test_max_edge_discounts_twenty_percent():
    # (300 + 100 + 100) / (100 + 100) = 2.5
    raw = compute_odds({"a": 300, "b": 100}, "b", 100, 0)
    assert raw == pytest.approx(2.5)
    assert compute_odds({"a": 300, "b": 100}, "b", 100, 20) == pytest.approx(2.0)


def test_single_sided_pool_is_finite_and_floored():
    # Only one option has money and the new stake goes there too
    odds = compute_odds({"a": 500, "b": 0, "c": 0}, "a", 100, 5)
    assert odds == MIN_ODDS


def test_huge_stake_approaches_floor():
    small = compute_odds({"a": 100, "b": 100}, "b", 10, 0)
    huge = compute_odds({"a": 100, "b": 100}, "b", 1_000_000, 0)
    assert small > huge
    assert huge == pytest.approx(1.01, abs=0.001)


def test_unknown_option_returns_floor():
    assert compute_odds({"a": 10, "b": 10}, "zzz", 10, 5) == MIN_ODDS


def test_rounds_to_four_decimals():
    # 3 / 7 stake fractions produce long decimals
    odds = compute_odds({"a": 200, "b": 100}, "b", 40, 0)
    assert odds == round(340 / 140, 4)


def test_accepts_decimal_pools():
    odds = compute_odds({1: Decimal("100.00"), 2: Decimal("0.00")}, 2, Decimal("50.00"), Decimal("5"))
    assert odds == pytest.approx(2.85)


# ---------------------------------------------------------------------------
# compute_odds: properties
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("pool_a, pool_b, stake", [
    (0, 0, 1),
    (100, 0, 0),
    (0, 100, 0),
    (1, 10_000, 1),
    (10_000, 1, 1),
    (250, 250, 5_000),
])
@pytest.mark.parametrize("edge", [0, 5, 20])
def test_never_below_floor(pool_a, pool_b, stake, edge):
    pools = {"a": pool_a, "b": pool_b}
    assert compute_odds(pools, "a", stake, edge) >= MIN_ODDS
    assert compute_odds(pools, "b", stake, edge) >= MIN_ODDS


def test_higher_edge_never_raises_odds():
    pools = {"a": 700, "b": 300}
    previous = None
    for edge in range(0, 21):
        odds = compute_odds(pools, "b", 50, edge)
        if previous is not None:
            assert odds <= previous
        previous = odds


def test_higher_edge_strictly_lowers_odds_above_floor():
    pools = {"a": 700, "b": 300}
    assert compute_odds(pools, "b", 50, 10) < compute_odds(pools, "b", 50, 5)


@pytest.mark.parametrize("edge", [-1, 20.01, 50])
def test_rejects_out_of_range_edge(edge):
    with pytest.raises(ValueError):
        compute_odds({"a": 1, "b": 1}, "a", 1, edge)


def test_validate_house_edge_bounds():
    assert validate_house_edge(0) == 0.0
    assert validate_house_edge(Decimal("20")) == 20.0


# ---------------------------------------------------------------------------
# Board odds, payout, formatting
# ---------------------------------------------------------------------------

def test_board_odds_per_option():
    board = board_odds({"a": 100, "b": 300}, 0)
    assert board["a"] == pytest.approx(4.0)
    assert board["b"] == pytest.approx(1.3333)


def test_board_odds_unbacked_option_shows_floor():
    board = board_odds({"a": 100, "b": 0}, 5)
    assert board["b"] == MIN_ODDS


def test_payout_includes_stake():
    assert calc_payout(100, 2.0) == Decimal("200.00")


def test_payout_rounds_half_up_to_paisa():
    assert calc_payout(Decimal("33.33"), 2.8515) == Decimal("95.04")
    assert calc_payout(10, 1.0125) == Decimal("10.13")


def test_pool_total_is_exact():
    assert pool_total([0.1, 0.2, Decimal("0.30")]) == Decimal("0.60")


@pytest.mark.parametrize("odds, expected", [
    (2.5, "2.50x"),
    (1.01, "1.01x"),
    (Decimal("3.1416"), "3.14x"),
    (None, "-"),
])
def test_format_odds(odds, expected):
    assert format_odds(odds) == expected
