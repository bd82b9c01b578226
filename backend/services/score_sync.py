"""
Live-score sync and auto-settlement.

Scheduled job:
  sync_live_scores()  - every SCORE_SYNC_INTERVAL_SEC: poll CricHeroes for each
                        live match, store the score, and when the match is
                        over settle its winner / top_scorer markets.

A match is marked completed and its open markets are closed in one commit, so
betting stops as soon as the result is known.  Auto-settlement only runs when
the feed reports a winning team.  Completed matches whose winner / top_scorer
markets are still unsettled are polled again on the next run, so a failed
settlement is retried.

Auto-settlement goes through the same settle_market() contract as an admin.
If the reported name cannot be tied to exactly one option the market is left
closed and a warning is logged for manual resolution.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from backend.core.errors import PoolError, TransientStoreError
from backend.models import Market, Match, ScoreSync, SessionLocal
from backend.services.markets import close_market
from backend.services.option_matching import resolve_option_label
from backend.services.score_feed import ScoreFeedError, ScoreFeedUpdate, fetch_match_summary
from backend.services.settlement import SettlementResult, settle_market

logger = logging.getLogger(__name__)

Fetcher = Callable[[str, Optional[str]], ScoreFeedUpdate]

AUTO_SETTLED_TYPES = ("winner", "top_scorer")


# ---------------------------------------------------------------------------
# Auto-settlement
# ---------------------------------------------------------------------------

def auto_settle_market(
    db: Session,
    match_id: int,
    market_type: str,
    reported_name: Optional[str],
    errors: Optional[List[str]] = None,
) -> List[SettlementResult]:
    """
    Settle every unsettled ``market_type`` market on a match using a name
    reported by the feed.  Open markets are closed first.

    Each market is settled on its own.  With ``errors`` given, a PoolError on
    one market is logged, appended there, and the rest still run; without it
    the error propagates.
    """
    if not reported_name:
        return []

    markets = (
        db.query(Market)
        .filter(
            Market.match_id == match_id,
            Market.market_type == market_type,
            Market.status != "settled",
        )
        .order_by(Market.id)
        .all()
    )
    targets = [(m.id, m.status, [(o.id, o.label) for o in m.options]) for m in markets]

    results: List[SettlementResult] = []
    for market_id, status, options in targets:
        labels = [label for _, label in options]
        label = resolve_option_label(reported_name, labels)
        if label is None:
            logger.warning(
                "Auto-settle skipped: '%s' matches no single option in %s market %d %s",
                reported_name, market_type, market_id, labels,
            )
            continue

        option_id = next(oid for oid, option_label in options if option_label == label)
        try:
            if status == "open":
                close_market(db, market_id)
            results.append(settle_market(db, market_id, option_id))
        except PoolError as exc:
            if errors is None:
                raise
            logger.error("Auto-settle of %s market %d failed: %s", market_type, market_id, exc)
            errors.append(f"Market {market_id}: {exc}")
            continue
        logger.info(
            "Auto-settled %s market %d on '%s' (feed reported '%s')",
            market_type, market_id, label, reported_name,
        )
    return results


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

def _complete_match(db: Session, match: Match, result: Optional[str]) -> int:
    """Mark a match completed and close its open markets; caller commits."""
    match.status = "completed"
    open_markets = (
        db.query(Market)
        .filter(Market.match_id == match.id, Market.status == "open")
        .with_for_update()
        .all()
    )
    for market in open_markets:
        market.status = "closed"
    logger.info(
        "Match %d (%s) completed: %s; %d market(s) closed",
        match.id, match.title, result, len(open_markets),
    )
    return len(open_markets)


def sync_match(db: Session, match: Match, fetch: Fetcher = fetch_match_summary) -> Dict:
    """Pull one scorecard into the match row; settle markets if it finished."""
    update = fetch(match.cricheroes_match_id, match.cricheroes_slug)
    match_id = match.id

    match.live_score_a = update.score_a
    match.live_score_b = update.score_b
    match.live_overs_a = update.overs_a
    match.live_overs_b = update.overs_b
    match.live_crr = update.crr_a
    if update.result:
        match.result_summary = update.result

    finished = update.is_finished and match.status == "live"
    try:
        if finished:
            _complete_match(db, match, update.result)
        completed = match.status == "completed"
        db.commit()
    except DBAPIError as exc:
        db.rollback()
        raise TransientStoreError(f"Score update for match {match_id} failed: {exc}") from exc

    settled: List[SettlementResult] = []
    errors: List[str] = []
    if completed and update.is_finished:
        if update.winning_team:
            settled += auto_settle_market(db, match_id, "winner", update.winning_team, errors)
            top = update.top_scorer
            settled += auto_settle_market(
                db, match_id, "top_scorer", top.player_name if top else None, errors
            )
        else:
            logger.warning(
                "Match %d finished without a winning team (%s); markets left for an admin",
                match_id, update.result,
            )

    return {"finished": finished, "markets_settled": len(settled), "errors": errors}


def _matches_to_poll(db: Session) -> List[Match]:
    unsettled = select(Market.match_id).where(
        Market.market_type.in_(AUTO_SETTLED_TYPES),
        Market.status != "settled",
    )
    return (
        db.query(Match)
        .filter(
            Match.cricheroes_match_id.isnot(None),
            or_(
                Match.status == "live",
                and_(Match.status == "completed", Match.id.in_(unsettled)),
            ),
        )
        .order_by(Match.id)
        .all()
    )


def sync_live_scores(
    db: Optional[Session] = None,
    fetch: Fetcher = fetch_match_summary,
) -> Dict:
    """
    Poll every live match that has a CricHeroes id, plus completed ones still
    waiting on auto-settlement.

    Called by scheduler every SCORE_SYNC_INTERVAL_SEC seconds.
    """
    logger.info("Starting sync_live_scores")
    owns_session = db is None
    if owns_session:
        db = SessionLocal()

    synced = 0
    completed = 0
    settled = 0
    errors: List[str] = []

    try:
        matches = _matches_to_poll(db)
        if not matches:
            logger.info("No live matches to sync")

        for match in matches:
            match_id = match.id
            try:
                result = sync_match(db, match, fetch)
                synced += 1
                completed += int(result["finished"])
                settled += result["markets_settled"]
                errors.extend(f"Match {match_id}: {e}" for e in result["errors"])
                db.add(ScoreSync(
                    match_id=match_id,
                    success=not result["errors"],
                    records_fetched=1,
                    markets_settled=result["markets_settled"],
                    error_message="; ".join(result["errors"])[:500] or None,
                ))
                db.commit()
            except (ScoreFeedError, PoolError) as exc:
                db.rollback()
                errors.append(f"Match {match_id}: {exc}")
                logger.error("Score sync failed for match %d: %s", match_id, exc)
                db.add(ScoreSync(
                    match_id=match_id,
                    success=False,
                    records_fetched=0,
                    error_message=str(exc)[:500],
                ))
                db.commit()

    except Exception as exc:
        logger.error("Fatal error in sync_live_scores: %s", exc, exc_info=True)
        db.rollback()
        errors.append(f"Fatal: {exc}")
    finally:
        if owns_session:
            db.close()

    summary = _job_summary(synced, completed, settled, errors)
    logger.info("sync_live_scores done: %s", summary)
    return summary


def _job_summary(synced: int, completed: int, settled: int, errors: List[str]) -> Dict:
    return {
        "matches_synced": synced,
        "matches_completed": completed,
        "markets_settled": settled,
        "errors": errors,
        "timestamp": datetime.utcnow().isoformat(),
    }
