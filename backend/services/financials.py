"""
House-level reporting and ledger audit.

financial_overview()  - cash collected, staked, paid out, house take
leaderboard()         - users ranked by winnings
reconcile()           - cached aggregates vs. the ledger / bet log
"""

import logging
from decimal import Decimal
from typing import Dict, List

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from backend.core.odds_math import to_money
from backend.models import Bet, BetOption, Profile, WalletTransaction
from backend.services.settlement import void_decrements_pool

logger = logging.getLogger(__name__)


def financial_overview(db: Session) -> Dict:
    """
    House P&L over settled bets.

    house_take = staked on won/lost bets − paid out to winners.
    Cash collected counts positive top-ups only (money handed to admins).
    """
    staked, paid_out = (
        db.query(
            func.coalesce(func.sum(Bet.amount), 0),
            func.coalesce(func.sum(Bet.payout), 0),
        )
        .filter(Bet.status.in_(("won", "lost")))
        .one()
    )
    cash_in = (
        db.query(func.coalesce(func.sum(WalletTransaction.amount), 0))
        .filter(WalletTransaction.type == "topup", WalletTransaction.amount > 0)
        .scalar()
    )
    pending_stake = (
        db.query(func.coalesce(func.sum(Bet.amount), 0))
        .filter(Bet.status == "pending")
        .scalar()
    )
    wallets = db.query(func.coalesce(func.sum(Profile.wallet_balance), 0)).scalar()

    staked = to_money(staked or 0)
    paid_out = to_money(paid_out or 0)
    house_take = staked - paid_out
    house_take_pct = round(float(house_take / staked * 100), 1) if staked > 0 else 0.0

    return {
        "total_cash_in": to_money(cash_in or 0),
        "total_staked": staked,
        "total_paid_out": paid_out,
        "house_take": house_take,
        "house_take_pct": house_take_pct,
        "pending_stake": to_money(pending_stake or 0),
        "wallets_outstanding": to_money(wallets or 0),
    }


def leaderboard(db: Session, limit: int = 50) -> List[Dict]:
    """Users with at least one bet, ranked by total winnings then balance."""
    won = case((Bet.status == "won", 1), else_=0)
    winnings = func.coalesce(func.sum(case((Bet.status == "won", Bet.payout), else_=0)), 0)

    rows = (
        db.query(
            Profile.id,
            Profile.display_name,
            Profile.wallet_balance,
            func.count(Bet.id).label("total_bets"),
            func.sum(won).label("bets_won"),
            winnings.label("total_winnings"),
        )
        .join(Bet, Bet.user_id == Profile.id)
        .filter(Bet.status != "void")
        .group_by(Profile.id, Profile.display_name, Profile.wallet_balance)
        .order_by(winnings.desc(), Profile.wallet_balance.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "rank": i,
            "user_id": r.id,
            "display_name": r.display_name,
            "total_bets": int(r.total_bets or 0),
            "bets_won": int(r.bets_won or 0),
            "total_winnings": to_money(r.total_winnings or 0),
            "wallet_balance": to_money(r.wallet_balance or 0),
        }
        for i, r in enumerate(rows, start=1)
    ]


def reconcile(db: Session) -> Dict:
    """
    Compare every cached aggregate with the records it summarises.

    - Profile.wallet_balance vs. sum of the user's transactions.
    - BetOption.total_amount_bet vs. sum of its stakes (void stakes are
      excluded only when voids shrink the pool).
    """
    ledger = dict(
        db.query(WalletTransaction.user_id, func.sum(WalletTransaction.amount))
        .group_by(WalletTransaction.user_id)
        .all()
    )
    wallet_mismatches = []
    for profile in db.query(Profile).order_by(Profile.id).all():
        expected = to_money(ledger.get(profile.id) or 0)
        actual = to_money(profile.wallet_balance or 0)
        if expected != actual:
            wallet_mismatches.append(
                {"user_id": profile.id, "wallet_balance": actual, "ledger_sum": expected}
            )

    stake_query = db.query(Bet.bet_option_id, func.sum(Bet.amount))
    if void_decrements_pool():
        stake_query = stake_query.filter(Bet.status != "void")
    stakes = dict(stake_query.group_by(Bet.bet_option_id).all())

    pool_mismatches = []
    for option in db.query(BetOption).order_by(BetOption.id).all():
        expected = to_money(stakes.get(option.id) or 0)
        actual = to_money(option.total_amount_bet or 0)
        if expected != actual:
            pool_mismatches.append(
                {"bet_option_id": option.id, "total_amount_bet": actual, "stake_sum": expected}
            )

    if wallet_mismatches or pool_mismatches:
        logger.warning(
            "Reconcile: %d wallet and %d pool mismatch(es)",
            len(wallet_mismatches), len(pool_mismatches),
        )

    return {
        "ok": not wallet_mismatches and not pool_mismatches,
        "wallet_mismatches": wallet_mismatches,
        "pool_mismatches": pool_mismatches,
    }
