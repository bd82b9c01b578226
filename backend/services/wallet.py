"""
Wallet ledger: the only code path allowed to change a balance.

Every balance change writes a ``WalletTransaction`` row in the same session
as the cached ``Profile.wallet_balance`` update, so the balance always equals
the sum of the user's ledger entries.

``debit_wallet`` / ``credit_wallet`` never commit: they are steps inside a
caller's transaction (bet placement, settlement, void).  ``topup_wallet`` and
``reset_wallet`` are complete admin operations and commit themselves.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from backend.core.errors import (
    InsufficientBalance,
    InvalidAmount,
    NotFoundError,
    TransientStoreError,
)
from backend.core.odds_math import to_money
from backend.models import Profile, WalletTransaction

logger = logging.getLogger(__name__)


def lock_profile(db: Session, user_id: int) -> Profile:
    """Load a profile with a row lock held until the surrounding commit."""
    profile = (
        db.query(Profile)
        .filter(Profile.id == user_id)
        .with_for_update()
        .first()
    )
    if profile is None:
        raise NotFoundError(f"Profile {user_id} not found")
    return profile


def _append(
    db: Session,
    profile: Profile,
    tx_type: str,
    amount: Decimal,
    description: str,
    bet_id: Optional[int] = None,
) -> WalletTransaction:
    new_balance = to_money(profile.wallet_balance or 0) + amount
    profile.wallet_balance = new_balance
    tx = WalletTransaction(
        user_id=profile.id,
        bet_id=bet_id,
        type=tx_type,
        amount=amount,
        balance_after=new_balance,
        description=description[:200] if description else None,
    )
    db.add(tx)
    return tx


def debit_wallet(
    db: Session,
    user_id: int,
    amount,
    description: str,
    tx_type: str = "bet",
    bet_id: Optional[int] = None,
) -> WalletTransaction:
    """
    Debit ``amount`` inside the caller's transaction.

    The balance check runs against the locked row, so two concurrent debits
    on the same wallet cannot both pass it.

    Raises:
        InvalidAmount: amount is not positive.
        InsufficientBalance: balance < amount.
    """
    value = to_money(amount)
    if value <= 0:
        raise InvalidAmount(f"Debit amount must be positive, got {amount}")

    profile = lock_profile(db, user_id)
    balance = to_money(profile.wallet_balance or 0)
    if balance < value:
        raise InsufficientBalance(
            f"Insufficient balance: ₹{balance} < ₹{value}"
        )
    return _append(db, profile, tx_type, -value, description, bet_id)


def credit_wallet(
    db: Session,
    user_id: int,
    amount,
    description: str,
    tx_type: str,
    bet_id: Optional[int] = None,
) -> WalletTransaction:
    """Credit ``amount`` inside the caller's transaction."""
    value = to_money(amount)
    if value <= 0:
        raise InvalidAmount(f"Credit amount must be positive, got {amount}")

    profile = lock_profile(db, user_id)
    return _append(db, profile, tx_type, value, description, bet_id)


# ---------------------------------------------------------------------------
# Admin operations (self-committing)
# ---------------------------------------------------------------------------

def topup_wallet(
    db: Session,
    user_id: int,
    amount,
    description: Optional[str] = None,
) -> WalletTransaction:
    """Record cash collected offline as a ``topup`` credit."""
    value = to_money(amount)
    try:
        tx = credit_wallet(
            db,
            user_id,
            value,
            description or f"Manual top-up: ₹{value}",
            tx_type="topup",
        )
        db.commit()
    except DBAPIError as exc:
        db.rollback()
        raise TransientStoreError(f"Top-up failed: {exc}") from exc
    except Exception:
        db.rollback()
        raise

    db.refresh(tx)
    logger.info("Top-up: user %d +₹%s (balance ₹%s)", user_id, value, tx.balance_after)
    return tx


def reset_wallet(
    db: Session,
    user_id: int,
    description: str = "Wallet reset by admin",
) -> Optional[WalletTransaction]:
    """
    Zero a wallet through a negative ``topup`` ledger entry.

    Returns None when the balance is already zero (nothing recorded).
    """
    try:
        profile = lock_profile(db, user_id)
        balance = to_money(profile.wallet_balance or 0)
        if balance == 0:
            db.rollback()
            return None
        tx = _append(db, profile, "topup", -balance, description)
        db.commit()
    except DBAPIError as exc:
        db.rollback()
        raise TransientStoreError(f"Wallet reset failed: {exc}") from exc
    except Exception:
        db.rollback()
        raise

    db.refresh(tx)
    logger.info("Wallet reset: user %d -₹%s", user_id, balance)
    return tx


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------

def ledger_balance(db: Session, user_id: int) -> Decimal:
    """Sum of every ledger entry for a user (the source of truth)."""
    total = (
        db.query(func.coalesce(func.sum(WalletTransaction.amount), 0))
        .filter(WalletTransaction.user_id == user_id)
        .scalar()
    )
    return to_money(total or 0)


def list_transactions(
    db: Session,
    user_id: Optional[int] = None,
    tx_type: Optional[str] = None,
    limit: int = 100,
) -> List[WalletTransaction]:
    query = db.query(WalletTransaction)
    if user_id is not None:
        query = query.filter(WalletTransaction.user_id == user_id)
    if tx_type is not None:
        query = query.filter(WalletTransaction.type == tx_type)
    return (
        query.order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
        .limit(limit)
        .all()
    )
