"""
Match and market administration.

Lifecycles enforced here:
  Match:  upcoming → live → completed, or any non-terminal → cancelled
  Market: open → closed   (closed → settled only through settle_market)

Deleting a match or market first closes its open markets, voids every
pending bet under it (one refund transaction per bet), then removes the rows
once no pending bet is left.
"""

import logging
import os
import re
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from backend.core.errors import (
    InvalidMarketState,
    NotFoundError,
    StateConflictError,
    TransientStoreError,
    ValidationError,
)
from backend.core.odds_math import validate_house_edge
from backend.models import MARKET_TYPES, BetOption, Market, Match
from backend.services.settlement import pending_bet_ids, void_bet

logger = logging.getLogger(__name__)

MATCH_TRANSITIONS: Dict[str, Set[str]] = {
    "upcoming": {"live", "cancelled"},
    "live": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

MARKET_TRANSITIONS: Set[Tuple[str, str]] = {("open", "closed")}

_CRICHEROES_URL = re.compile(r"cricheroes\.com/scorecard/(\d+)/(.+?)(?:/summary)?/?$")


def default_house_edge() -> Decimal:
    return Decimal(os.getenv("DEFAULT_HOUSE_EDGE_PCT", "5"))


def parse_cricheroes_url(url: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    'https://cricheroes.com/scorecard/123456/titans-vs-daredevils/summary'
        → ('123456', 'titans-vs-daredevils')
    Anything unrecognised → (None, None).
    """
    if not url:
        return None, None
    match = _CRICHEROES_URL.search(url.strip())
    if not match:
        return None, None
    return match.group(1), match.group(2)


def _commit(db: Session, action: str):
    try:
        db.commit()
    except DBAPIError as exc:
        db.rollback()
        raise TransientStoreError(f"{action} failed: {exc}") from exc


def get_match(db: Session, match_id: int) -> Match:
    match = db.query(Match).filter(Match.id == match_id).first()
    if match is None:
        raise NotFoundError(f"Match {match_id} not found")
    return match


def get_market(db: Session, market_id: int) -> Market:
    market = db.query(Market).filter(Market.id == market_id).first()
    if market is None:
        raise NotFoundError(f"Market {market_id} not found")
    return market


def list_matches(db: Session, status: Optional[str] = None) -> List[Match]:
    query = db.query(Match)
    if status:
        query = query.filter(Match.status == status)
    return query.order_by(Match.match_date.desc()).all()


# ---------------------------------------------------------------------------
# Matches
# ---------------------------------------------------------------------------

def create_match(
    db: Session,
    team_a: str,
    team_b: str,
    match_date: datetime,
    venue: Optional[str] = None,
    over_under_line: Optional[float] = None,
    cricheroes_url: Optional[str] = None,
) -> Match:
    team_a, team_b = team_a.strip(), team_b.strip()
    if not team_a or not team_b:
        raise ValidationError("Both team names are required")
    if team_a.lower() == team_b.lower():
        raise ValidationError("A team cannot play itself")

    ch_id, ch_slug = parse_cricheroes_url(cricheroes_url)
    if cricheroes_url and ch_id is None:
        logger.warning("Unrecognised CricHeroes URL ignored: %s", cricheroes_url)

    match = Match(
        team_a=team_a,
        team_b=team_b,
        match_date=match_date,
        venue=venue,
        over_under_line=over_under_line,
        cricheroes_match_id=ch_id,
        cricheroes_slug=ch_slug,
        status="upcoming",
    )
    db.add(match)
    _commit(db, "Create match")
    db.refresh(match)
    logger.info("Match %d created: %s on %s", match.id, match.title, match.match_date)
    return match


def update_match_status(db: Session, match_id: int, status: str) -> Match:
    """Move a match along its lifecycle; the current status is a no-op."""
    match = get_match(db, match_id)
    if status == match.status:
        return match
    if status not in MATCH_TRANSITIONS:
        raise ValidationError(f"Unknown match status '{status}'")
    if status not in MATCH_TRANSITIONS[match.status]:
        raise StateConflictError(
            f"Match {match_id} cannot move from {match.status} to {status}"
        )
    previous = match.status
    match.status = status
    _commit(db, "Update match")
    logger.info("Match %d: %s → %s", match_id, previous, status)
    return match


def delete_match(db: Session, match_id: int) -> int:
    """Void every pending bet under the match, then delete it. Returns refunds."""
    match = get_match(db, match_id)
    market_ids = [m.id for m in match.markets]
    refunded = _void_all(db, market_ids)

    match = get_match(db, match_id)
    _delete_when_drained(db, match, market_ids, "Delete match")
    logger.info("Match %d deleted (%d bet(s) refunded)", match_id, refunded)
    return refunded


# ---------------------------------------------------------------------------
# Markets
# ---------------------------------------------------------------------------

def _clean_labels(labels: Iterable[str]) -> List[str]:
    cleaned = [label.strip() for label in labels if label and label.strip()]
    if len(cleaned) < 2:
        raise ValidationError("A market needs at least two options")
    seen = set()
    for label in cleaned:
        key = label.lower()
        if key in seen:
            raise ValidationError(f"Duplicate option label '{label}'")
        seen.add(key)
    return cleaned


def create_market(
    db: Session,
    match_id: int,
    market_type: str,
    option_labels: Iterable[str],
    house_edge_pct: Optional[float] = None,
    title: Optional[str] = None,
) -> Market:
    if market_type not in MARKET_TYPES:
        raise ValidationError(f"Unknown market type '{market_type}'")

    edge = default_house_edge() if house_edge_pct is None else house_edge_pct
    try:
        validate_house_edge(edge)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    labels = _clean_labels(option_labels)

    match = get_match(db, match_id)
    if match.status in ("completed", "cancelled"):
        raise StateConflictError(f"Match {match_id} is {match.status}; no new markets")

    market = Market(
        match_id=match.id,
        market_type=market_type,
        title=title,
        house_edge_pct=Decimal(str(edge)),
        status="open",
    )
    market.options = [BetOption(label=label, total_amount_bet=Decimal("0.00")) for label in labels]
    db.add(market)
    _commit(db, "Create market")
    db.refresh(market)
    logger.info(
        "Market %d created on match %d: %s (%d options, edge %s%%)",
        market.id, match_id, market_type, len(labels), market.house_edge_pct,
    )
    return market


def transition_market_status(
    db: Session,
    market_id: int,
    from_status: str,
    to_status: str,
) -> Market:
    """
    Compare-and-set a market's status.

    Raises InvalidMarketState when the market is not in ``from_status`` or the
    pair is not a permitted forward move.
    """
    if (from_status, to_status) not in MARKET_TRANSITIONS:
        raise InvalidMarketState(f"Market cannot move from {from_status} to {to_status}")

    try:
        market = (
            db.query(Market)
            .filter(Market.id == market_id)
            .with_for_update()
            .first()
        )
        if market is None:
            raise NotFoundError(f"Market {market_id} not found")
        if market.status != from_status:
            raise InvalidMarketState(
                f"Market {market_id} is {market.status}, expected {from_status}"
            )
        market.status = to_status
        db.commit()
    except DBAPIError as exc:
        db.rollback()
        raise TransientStoreError(f"Market transition failed: {exc}") from exc
    except Exception:
        db.rollback()
        raise

    logger.info("Market %d: %s → %s", market_id, from_status, to_status)
    return market


def close_market(db: Session, market_id: int) -> Market:
    """Stop accepting bets. Closing an already-closed market is a no-op."""
    market = get_market(db, market_id)
    if market.status == "closed":
        return market
    return transition_market_status(db, market_id, "open", "closed")


def delete_market(db: Session, market_id: int) -> int:
    """Void every pending bet on the market, then delete it. Returns refunds."""
    get_market(db, market_id)
    refunded = _void_all(db, [market_id])

    market = get_market(db, market_id)
    _delete_when_drained(db, market, [market_id], "Delete market")
    logger.info("Market %d deleted (%d bet(s) refunded)", market_id, refunded)
    return refunded


def _void_all(db: Session, market_ids: List[int]) -> int:
    """Close the open markets so no new bet lands, then void what is pending."""
    if not market_ids:
        return 0
    open_ids = [
        row[0] for row in db.query(Market.id)
        .filter(Market.id.in_(market_ids), Market.status == "open")
        .all()
    ]
    for market_id in open_ids:
        transition_market_status(db, market_id, "open", "closed")

    # Each void commits on its own; a failure stops the cascade before delete.
    bet_ids = pending_bet_ids(db, market_ids)
    for bet_id in bet_ids:
        void_bet(db, bet_id)
    return len(bet_ids)


def _delete_when_drained(db: Session, target, market_ids: List[int], action: str):
    """Delete ``target`` only if no pending bet is left under ``market_ids``."""
    try:
        if market_ids:
            (
                db.query(Market)
                .filter(Market.id.in_(market_ids))
                .with_for_update()
                .all()
            )
        survivors = pending_bet_ids(db, market_ids)
        if survivors:
            raise StateConflictError(
                f"{action} aborted: bet(s) {survivors} still pending"
            )
        db.delete(target)
        db.commit()
    except DBAPIError as exc:
        db.rollback()
        raise TransientStoreError(f"{action} failed: {exc}") from exc
    except Exception:
        db.rollback()
        raise
