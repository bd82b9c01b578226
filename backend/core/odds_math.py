"""Pari-mutuel odds mathematics: pricing, payouts, display.

Every function here is **pure**: no I/O, no logging, no side effects.
Import from this module; never reimplement locally in services or routes.

The three pillars exposed are:

1. **Pricing**: pool state + incoming stake → house-edge-adjusted multiplier.
2. **Payout**: stake × locked multiplier, rounded to the paisa.
3. **Display**: per-option board odds and ``"2.50x"`` formatting.

Design decisions
----------------
* Pricing is *prospective*: the incoming stake is added to both the total
  pool and the selected option before dividing, so the quote a bettor sees
  already includes their own impact on the pool.  The price shown on the
  bet slip is the price committed.
* The house edge is a flat multiplicative discount ``(1 - edge/100)`` on the
  raw pari-mutuel ratio.  It is configured per market and applied uniformly
  to every option.
* Odds never drop below :data:`MIN_ODDS`.  A winning bettor always gets at
  least their stake back, and degenerate pools (nothing on the selection)
  return the floor instead of dividing by zero.
* Odds are rounded to four decimals *before* the floor is applied; payouts
  are rounded half-up to two decimals using :class:`~decimal.Decimal` so
  wallet credits are exact.

Run tests with::

    pytest tests/test_odds_math.py -v
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Final, Iterable, Mapping, Optional, Union

Number = Union[int, float, Decimal]

# ---------------------------------------------------------------------------
# Module-level constants
# ---------------------------------------------------------------------------

#: Floor multiplier.  A winning bet always returns at least 1.01× the stake.
MIN_ODDS: Final[float] = 1.01

#: Decimal places kept on a quoted multiplier.
ODDS_PRECISION: Final[int] = 4

#: House edge bounds, percent of the pool retained by the platform.
MIN_HOUSE_EDGE_PCT: Final[float] = 0.0
MAX_HOUSE_EDGE_PCT: Final[float] = 20.0

_PAISA: Final[Decimal] = Decimal("0.01")


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


def validate_house_edge(house_edge_pct: Number) -> float:
    """Return ``house_edge_pct`` as a float, or raise if outside 0–20.

    Raises:
        ValueError: If the edge is negative or above :data:`MAX_HOUSE_EDGE_PCT`.
    """
    edge = float(house_edge_pct)
    if not MIN_HOUSE_EDGE_PCT <= edge <= MAX_HOUSE_EDGE_PCT:
        raise ValueError(
            f"house_edge_pct={house_edge_pct!r} out of range "
            f"[{MIN_HOUSE_EDGE_PCT:g}, {MAX_HOUSE_EDGE_PCT:g}]"
        )
    return edge


def compute_odds(
    pools: Mapping[object, Number],
    selected_option_id: object,
    incoming_stake: Number,
    house_edge_pct: Number = 5,
) -> float:
    """Price ``incoming_stake`` on ``selected_option_id`` against the pool.

    Algorithm::

        total_pool          = sum(pools) + incoming_stake
        amount_on_selection = pools[selected] + incoming_stake
        raw_odds            = total_pool / amount_on_selection
        final_odds          = raw_odds * (1 - house_edge_pct / 100)
        return max(1.01, round(final_odds, 4))

    Args:
        pools: Mapping of option id → current ``total_amount_bet`` for every
            option in the market (the selected one included).
        selected_option_id: Option being priced.
        incoming_stake: Stake about to be added.  Zero gives the current
            board price for the option.
        house_edge_pct: Market house edge, 0–20.

    Returns:
        Multiplier ≥ :data:`MIN_ODDS`.  An unknown option or an empty
        selection (nothing staked, zero incoming) returns the floor.

    Examples::

        compute_odds({"x": 100, "y": 0}, "y", 50, 5)  → 2.85
        compute_odds({"x": 100, "y": 0}, "x", 0, 0)   → 1.01
    """
    edge = validate_house_edge(house_edge_pct)
    stake = float(incoming_stake)

    if selected_option_id not in pools:
        return MIN_ODDS

    total_pool = sum(float(v) for v in pools.values()) + stake
    amount_on_selection = float(pools[selected_option_id]) + stake

    if amount_on_selection <= 0:
        return MIN_ODDS

    raw_odds = total_pool / amount_on_selection
    final_odds = raw_odds * (1.0 - edge / 100.0)
    return max(MIN_ODDS, round(final_odds, ODDS_PRECISION))


def board_odds(
    pools: Mapping[object, Number],
    house_edge_pct: Number = 5,
) -> dict:
    """Current displayed odds for every option (zero notional stake).

    Options with no money on them show :data:`MIN_ODDS`; the bet slip
    replaces this with a prospective quote once a stake is entered.
    """
    return {
        option_id: compute_odds(pools, option_id, 0, house_edge_pct)
        for option_id in pools
    }


def pool_total(amounts: Iterable[Number]) -> Decimal:
    """Exact sum of stake amounts as a two-decimal :class:`Decimal`."""
    total = sum((Decimal(str(a)) for a in amounts), Decimal("0"))
    return total.quantize(_PAISA, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Payout
# ---------------------------------------------------------------------------


def calc_payout(stake: Number, odds: Number) -> Decimal:
    """Gross return on a winning bet: ``round(stake * odds, 2)``.

    The stake is included (decimal-odds convention), so a ₹100 bet at 2.0
    pays ₹200.00.
    """
    gross = Decimal(str(stake)) * Decimal(str(odds))
    return gross.quantize(_PAISA, rounding=ROUND_HALF_UP)


def to_money(amount: Number) -> Decimal:
    """Normalise any numeric amount to a two-decimal :class:`Decimal`."""
    return Decimal(str(amount)).quantize(_PAISA, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------


def format_odds(odds: Optional[Number]) -> str:
    """Format a multiplier for display: ``2.5`` → ``"2.50x"``."""
    if odds is None:
        return "-"
    return f"{float(odds):.2f}x"
