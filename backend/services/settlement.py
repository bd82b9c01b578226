"""
Settlement and void protocols.

settle_market()  - single-fire: closed market → settled, every pending bet →
                   won/lost, winners credited, all in one transaction.
void_bet()       - admin refund of one pending bet, in one transaction.

A retried settle_market() against an already-settled market with the same
winning option is a no-op; nothing is credited twice.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from backend.core.errors import (
    InvalidMarketState,
    InvalidOption,
    NotFoundError,
    NotVoidable,
    TransientStoreError,
)
from backend.core.odds_math import calc_payout, to_money
from backend.models import Bet, BetOption, Market
from backend.services.wallet import credit_wallet

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    market_id: int
    winning_option_id: int
    result: str
    bets_won: int = 0
    bets_lost: int = 0
    total_paid_out: Decimal = Decimal("0.00")
    already_settled: bool = False
    winning_bet_ids: List[int] = field(default_factory=list)


def void_decrements_pool() -> bool:
    """Whether voiding a bet also removes its stake from the option pool."""
    return os.getenv("VOID_DECREMENTS_POOL", "false").lower() == "true"


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------

def settle_market(db: Session, market_id: int, winning_option_id: int) -> SettlementResult:
    """
    Close out a market and pay winners at their locked odds.

    Preconditions:
        market exists (NotFoundError), status == "closed" (InvalidMarketState),
        winning option belongs to the market (InvalidOption).

    An already-settled market with the same winning option returns a result
    with ``already_settled=True`` and writes nothing.  A different winning
    option on a settled market raises InvalidMarketState.
    """
    try:
        market = (
            db.query(Market)
            .filter(Market.id == market_id)
            .with_for_update()
            .first()
        )
        if market is None:
            raise NotFoundError(f"Market {market_id} not found")

        if market.status == "settled":
            if market.winning_option_id == winning_option_id:
                logger.info("Market %d already settled on '%s'; no-op", market_id, market.result)
                result = SettlementResult(
                    market_id=market_id,
                    winning_option_id=winning_option_id,
                    result=market.result,
                    already_settled=True,
                )
                db.rollback()
                return result
            raise InvalidMarketState(
                f"Market {market_id} already settled on '{market.result}'"
            )

        if market.status != "closed":
            raise InvalidMarketState(
                f"Market {market_id} is {market.status}; close it before settling"
            )

        winner = (
            db.query(BetOption)
            .filter(BetOption.id == winning_option_id, BetOption.market_id == market_id)
            .first()
        )
        if winner is None:
            raise InvalidOption(
                f"Option {winning_option_id} is not part of market {market_id}"
            )

        now = datetime.utcnow()
        market.status = "settled"
        market.result = winner.label
        market.winning_option_id = winner.id
        market.settled_at = now

        outcome = SettlementResult(
            market_id=market_id,
            winning_option_id=winner.id,
            result=winner.label,
        )

        pending = (
            db.query(Bet)
            .filter(Bet.market_id == market_id, Bet.status == "pending")
            .order_by(Bet.id)
            .with_for_update()
            .all()
        )
        for bet in pending:
            bet.settled_at = now
            if bet.bet_option_id == winner.id:
                payout = calc_payout(bet.amount, bet.odds_at_placement)
                bet.status = "won"
                bet.payout = payout
                credit_wallet(
                    db,
                    bet.user_id,
                    payout,
                    description=f"Won: {winner.label} @ {bet.odds_at_placement}",
                    tx_type="win",
                    bet_id=bet.id,
                )
                outcome.bets_won += 1
                outcome.total_paid_out += payout
                outcome.winning_bet_ids.append(bet.id)
            else:
                bet.status = "lost"
                outcome.bets_lost += 1

        db.commit()
    except DBAPIError as exc:
        db.rollback()
        logger.error("settle_market store failure on market %d: %s", market_id, exc)
        raise TransientStoreError(f"Settlement rolled back: {exc}") from exc
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Market %d settled on '%s': %d won, %d lost, ₹%s paid out",
        market_id, outcome.result, outcome.bets_won, outcome.bets_lost,
        outcome.total_paid_out,
    )
    return outcome


# ---------------------------------------------------------------------------
# Void / refund
# ---------------------------------------------------------------------------

def void_bet(db: Session, bet_id: int, decrement_pool: Optional[bool] = None) -> Decimal:
    """
    Refund a pending bet and mark it void.

    The option pool is left untouched unless ``decrement_pool`` (or the
    VOID_DECREMENTS_POOL setting when None) asks for the stake to be removed.

    Returns:
        The refunded amount.
    """
    if decrement_pool is None:
        decrement_pool = void_decrements_pool()

    try:
        bet = (
            db.query(Bet)
            .filter(Bet.id == bet_id)
            .with_for_update()
            .first()
        )
        if bet is None:
            raise NotFoundError(f"Bet {bet_id} not found")
        if bet.status != "pending":
            raise NotVoidable(f"Bet {bet_id} is {bet.status}; only pending bets can be voided")

        refund = to_money(bet.amount)
        credit_wallet(
            db,
            bet.user_id,
            refund,
            description="Refund: bet voided by admin",
            tx_type="refund",
            bet_id=bet.id,
        )
        bet.status = "void"
        bet.settled_at = datetime.utcnow()

        if decrement_pool:
            option = (
                db.query(BetOption)
                .filter(BetOption.id == bet.bet_option_id)
                .with_for_update()
                .first()
            )
            option.total_amount_bet = max(
                Decimal("0.00"), to_money(option.total_amount_bet or 0) - refund
            )

        user_id = bet.user_id
        db.commit()
    except DBAPIError as exc:
        db.rollback()
        logger.error("void_bet store failure on bet %d: %s", bet_id, exc)
        raise TransientStoreError(f"Void rolled back: {exc}") from exc
    except Exception:
        db.rollback()
        raise

    logger.info("Bet %d voided: user %d refunded ₹%s", bet_id, user_id, refund)
    return refund


def pending_bet_ids(db: Session, market_ids: List[int]) -> List[int]:
    if not market_ids:
        return []
    rows = (
        db.query(Bet.id)
        .filter(Bet.market_id.in_(market_ids), Bet.status == "pending")
        .order_by(Bet.id)
        .all()
    )
    return [r[0] for r in rows]
