"""
Bet placement protocol.

place_bet() runs as one transaction:
  lock market + options  →  debit wallet  →  price  →  insert bet  →  grow pool

The market and option rows are locked (SELECT ... FOR UPDATE) before the
pool is read, so concurrent bets on the same market are serialized and each
is priced against a pool that already contains every committed stake.
"""

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, List

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from backend.core.errors import (
    InvalidAmount,
    InvalidOption,
    MarketNotOpen,
    NotFoundError,
    TransientStoreError,
)
from backend.core.odds_math import board_odds, calc_payout, compute_odds, to_money
from backend.models import Bet, BetOption, Market
from backend.services.wallet import debit_wallet

logger = logging.getLogger(__name__)


@dataclass
class PlacedBet:
    bet_id: int
    odds: float
    amount: Decimal
    potential_payout: Decimal


@dataclass
class OddsQuote:
    market_id: int
    bet_option_id: int
    stake: Decimal
    odds: float
    potential_payout: Decimal


def min_stake() -> Decimal:
    return to_money(os.getenv("MIN_STAKE", "1"))


def parse_stake(amount, minimum: Decimal) -> Decimal:
    """Coerce ``amount`` to money and enforce ``minimum`` (inclusive)."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"Stake {amount!r} is not a number")
    if not value.is_finite():
        raise InvalidAmount(f"Stake {amount!r} is not a number")
    value = to_money(value)
    if value <= 0 or value < minimum:
        raise InvalidAmount(f"Stake must be at least ₹{minimum}, got ₹{value}")
    return value


def option_pools(options: List[BetOption]) -> Dict[int, Decimal]:
    return {o.id: (o.total_amount_bet or Decimal("0")) for o in options}


def market_board(market: Market) -> Dict[int, float]:
    """Displayed odds per option for a market at zero notional stake."""
    return board_odds(option_pools(market.options), market.house_edge_pct)


# ---------------------------------------------------------------------------
# Quote (read-only)
# ---------------------------------------------------------------------------

def quote_odds(db: Session, market_id: int, bet_option_id: int, stake) -> OddsQuote:
    """
    Prospective price for ``stake`` on an option, as the bet slip shows it.

    Uses the same formula as place_bet() but takes no locks and writes
    nothing, so the committed price can still differ if other bets land first.
    """
    market = db.query(Market).filter(Market.id == market_id).first()
    if market is None:
        raise NotFoundError(f"Market {market_id} not found")

    pools = option_pools(market.options)
    if bet_option_id not in pools:
        raise InvalidOption(f"Option {bet_option_id} is not part of market {market_id}")

    value = parse_stake(stake, Decimal("0.01"))
    odds = compute_odds(pools, bet_option_id, value, market.house_edge_pct)
    return OddsQuote(
        market_id=market_id,
        bet_option_id=bet_option_id,
        stake=value,
        odds=odds,
        potential_payout=calc_payout(value, odds),
    )


# ---------------------------------------------------------------------------
# Placement
# ---------------------------------------------------------------------------

def place_bet(
    db: Session,
    user_id: int,
    market_id: int,
    bet_option_id: int,
    amount,
) -> PlacedBet:
    """
    Validate and atomically record a wager.

    Raises:
        InvalidAmount: stake not positive or below MIN_STAKE.
        NotFoundError: market does not exist.
        MarketNotOpen: market status is not "open".
        InvalidOption: option does not belong to the market.
        InsufficientBalance: wallet cannot cover the stake.
        TransientStoreError: the database failed; nothing was written.
    """
    stake = parse_stake(amount, min_stake())

    try:
        market = (
            db.query(Market)
            .filter(Market.id == market_id)
            .with_for_update()
            .first()
        )
        if market is None:
            raise NotFoundError(f"Market {market_id} not found")
        if market.status != "open":
            raise MarketNotOpen(f"Market {market_id} is {market.status}, not open for betting")

        options = (
            db.query(BetOption)
            .filter(BetOption.market_id == market_id)
            .order_by(BetOption.id)
            .with_for_update()
            .all()
        )
        selected = next((o for o in options if o.id == bet_option_id), None)
        if selected is None:
            raise InvalidOption(f"Option {bet_option_id} is not part of market {market_id}")

        debit = debit_wallet(
            db,
            user_id,
            stake,
            description=f"Bet on {selected.label}",
            tx_type="bet",
        )

        odds = compute_odds(option_pools(options), selected.id, stake, market.house_edge_pct)

        bet = Bet(
            user_id=user_id,
            market_id=market_id,
            bet_option_id=selected.id,
            amount=stake,
            odds_at_placement=Decimal(str(odds)),
            status="pending",
        )
        db.add(bet)
        db.flush()
        debit.bet_id = bet.id

        selected.total_amount_bet = to_money(selected.total_amount_bet or 0) + stake

        db.commit()
    except DBAPIError as exc:
        db.rollback()
        logger.error("place_bet store failure on market %d: %s", market_id, exc)
        raise TransientStoreError(f"Bet could not be recorded: {exc}") from exc
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Bet %d placed: user %d ₹%s on '%s' (market %d) @ %.4f",
        bet.id, user_id, stake, selected.label, market_id, odds,
    )
    return PlacedBet(
        bet_id=bet.id,
        odds=odds,
        amount=stake,
        potential_payout=calc_payout(stake, odds),
    )
