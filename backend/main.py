"""
FastAPI application for the Cricket Pool
Includes REST API, the live-score sync job, and admin tooling
"""

from fastapi import FastAPI, Depends, HTTPException, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session
from sqlalchemy import text
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional
import logging
import os

from backend.models import get_db, Bet, Match, Market, Profile
from backend.auth import verify_api_key, verify_admin, generate_api_key, hash_api_key
from backend.core.errors import PoolError
from backend.core.odds_math import format_odds
from backend.services.betting import market_board, place_bet, quote_odds
from backend.services.financials import financial_overview, leaderboard, reconcile
from backend.services.markets import (
    close_market,
    create_market,
    create_match,
    delete_market,
    delete_match,
    get_match,
    list_matches,
    update_match_status,
)
from backend.services.score_sync import sync_live_scores
from backend.services.settlement import settle_market, void_bet
from backend.services.wallet import list_transactions, reset_wallet, topup_wallet
from backend.schemas import (
    BetCreate,
    BetPlacedResponse,
    BetResponse,
    MarketCreate,
    MarketResponse,
    MarketUpdate,
    MatchCreate,
    MatchResponse,
    MatchUpdate,
    OddsQuoteRequest,
    OddsQuoteResponse,
    SettleRequest,
    SettleResponse,
    TopupRequest,
    TransactionResponse,
    UserCreate,
    UserCreatedResponse,
    UserResponse,
    WalletResponse,
)

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Scheduler instance
scheduler = BackgroundScheduler()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting Cricket Pool")

    sync_enabled = os.getenv("SCORE_SYNC_ENABLED", "true").lower() == "true"
    sync_interval = int(os.getenv("SCORE_SYNC_INTERVAL_SEC", "60"))

    if sync_enabled:
        scheduler.add_job(
            _score_sync_job,
            IntervalTrigger(seconds=sync_interval),
            id="score_sync",
            name="Live Score Sync + Auto-Settle",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
    scheduler.start()
    logger.info(
        "Scheduler started: score sync %s every %ds",
        "enabled" if sync_enabled else "disabled", sync_interval,
    )

    yield

    logger.info("Shutting down Cricket Pool")
    scheduler.shutdown()


app = FastAPI(
    title="Cricket Pool",
    description="Pari-mutuel betting for the college cricket tournament",
    version="1.0",
    lifespan=lifespan,
)

# CORS (adjust origins for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# SCHEDULED JOB
# ============================================================================

def _score_sync_job():
    """Poll live scorecards and auto-settle finished matches."""
    try:
        results = sync_live_scores()
        if results.get("markets_settled", 0) > 0:
            logger.info("Score sync settled %d market(s)", results["markets_settled"])
    except Exception as exc:
        logger.error("Score sync job failed: %s", exc, exc_info=True)


# ============================================================================
# SERIALIZATION HELPERS
# ============================================================================

def _market_payload(market: Market) -> MarketResponse:
    board = market_board(market)
    return MarketResponse(
        id=market.id,
        match_id=market.match_id,
        market_type=market.market_type,
        title=market.title,
        house_edge_pct=market.house_edge_pct,
        status=market.status,
        result=market.result,
        total_pool=market.total_pool,
        options=[
            {
                "id": o.id,
                "label": o.label,
                "total_amount_bet": o.total_amount_bet,
                "odds": board[o.id],
                "odds_display": format_odds(board[o.id]),
            }
            for o in market.options
        ],
    )


def _match_payload(match: Match, include_markets: bool = True) -> MatchResponse:
    return MatchResponse(
        id=match.id,
        team_a=match.team_a,
        team_b=match.team_b,
        match_date=match.match_date,
        venue=match.venue,
        status=match.status,
        over_under_line=match.over_under_line,
        live_score_a=match.live_score_a,
        live_score_b=match.live_score_b,
        live_overs_a=match.live_overs_a,
        live_overs_b=match.live_overs_b,
        live_crr=match.live_crr,
        result_summary=match.result_summary,
        markets=[_market_payload(m) for m in match.markets] if include_markets else [],
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    """Health check"""
    return {
        "app": "Cricket Pool",
        "version": "1.0",
        "status": "operational",
        "timestamp": datetime.utcnow().isoformat(),
    }


@app.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """Health check endpoint"""
    health = {"status": "healthy", "database": "connected", "scheduler": "running"}

    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        health["status"] = "degraded"
        health["database"] = f"error: {str(e)}"

    if not scheduler.running:
        health["status"] = "degraded"
        health["scheduler"] = "stopped"

    return health


# ============================================================================
# AUTHENTICATED ENDPOINTS - MATCHES & ODDS
# ============================================================================

@app.get("/api/matches", response_model=List[MatchResponse])
async def get_matches(
    status: Optional[str] = Query(default=None),
    user: Profile = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    """All matches (newest first) with their markets and current board odds."""
    return [_match_payload(m) for m in list_matches(db, status)]


@app.get("/api/matches/{match_id}", response_model=MatchResponse)
async def get_match_detail(
    match_id: int,
    user: Profile = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    return _match_payload(get_match(db, match_id))


@app.post("/api/odds/quote", response_model=OddsQuoteResponse)
async def get_odds_quote(
    payload: OddsQuoteRequest,
    user: Profile = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    """Prospective odds for a stake, including its own effect on the pool."""
    quote = quote_odds(db, payload.market_id, payload.bet_option_id, payload.amount)
    return OddsQuoteResponse(
        market_id=quote.market_id,
        bet_option_id=quote.bet_option_id,
        stake=quote.stake,
        odds=quote.odds,
        odds_display=format_odds(quote.odds),
        potential_payout=quote.potential_payout,
    )


# ============================================================================
# AUTHENTICATED ENDPOINTS - BETS & WALLET
# ============================================================================

@app.post("/api/bets", response_model=BetPlacedResponse)
async def create_bet(
    payload: BetCreate,
    user: Profile = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    """Place a bet; odds are computed server-side and locked at commit."""
    placed = place_bet(db, user.id, payload.market_id, payload.bet_option_id, payload.amount)
    return BetPlacedResponse(
        message="Bet placed",
        bet_id=placed.bet_id,
        odds=placed.odds,
        amount=placed.amount,
        potential_payout=placed.potential_payout,
    )


@app.get("/api/bets", response_model=List[BetResponse])
async def get_my_bets(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    user: Profile = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    query = db.query(Bet).filter(Bet.user_id == user.id)
    if status:
        query = query.filter(Bet.status == status)
    return query.order_by(Bet.placed_at.desc(), Bet.id.desc()).limit(limit).all()


@app.get("/api/wallet", response_model=WalletResponse)
async def get_wallet(
    limit: int = Query(default=50, ge=1, le=500),
    user: Profile = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    return WalletResponse(
        user_id=user.id,
        display_name=user.display_name,
        wallet_balance=user.wallet_balance,
        transactions=list_transactions(db, user_id=user.id, limit=limit),
    )


@app.get("/api/leaderboard")
async def get_leaderboard(
    limit: int = Query(default=50, ge=1, le=200),
    user: Profile = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    return {"players": jsonable_encoder(leaderboard(db, limit))}


# ============================================================================
# ADMIN ENDPOINTS - MATCHES & MARKETS
# ============================================================================

@app.get("/admin/matches", response_model=List[MatchResponse])
async def admin_list_matches(
    user: Profile = Depends(verify_admin),
    db: Session = Depends(get_db),
):
    return [_match_payload(m) for m in list_matches(db)]


@app.post("/admin/matches", response_model=MatchResponse)
async def admin_create_match(
    payload: MatchCreate,
    user: Profile = Depends(verify_admin),
    db: Session = Depends(get_db),
):
    match = create_match(
        db,
        team_a=payload.team_a,
        team_b=payload.team_b,
        match_date=payload.match_date,
        venue=payload.venue,
        over_under_line=payload.over_under_line,
        cricheroes_url=payload.cricheroes_url,
    )
    return _match_payload(match)


@app.patch("/admin/matches/{match_id}", response_model=MatchResponse)
async def admin_update_match(
    match_id: int,
    payload: MatchUpdate,
    user: Profile = Depends(verify_admin),
    db: Session = Depends(get_db),
):
    return _match_payload(update_match_status(db, match_id, payload.status))


@app.delete("/admin/matches/{match_id}")
async def admin_delete_match(
    match_id: int,
    user: Profile = Depends(verify_admin),
    db: Session = Depends(get_db),
):
    """Void and refund every pending bet under the match, then delete it."""
    refunded = delete_match(db, match_id)
    logger.info("Match %d deleted by %s", match_id, user.display_name)
    return {"success": True, "refunded": refunded}


@app.post("/admin/markets", response_model=MarketResponse)
async def admin_create_market(
    payload: MarketCreate,
    user: Profile = Depends(verify_admin),
    db: Session = Depends(get_db),
):
    market = create_market(
        db,
        match_id=payload.match_id,
        market_type=payload.market_type,
        option_labels=payload.options,
        house_edge_pct=payload.house_edge_pct,
        title=payload.title,
    )
    return _market_payload(market)


@app.patch("/admin/markets/{market_id}", response_model=MarketResponse)
async def admin_update_market(
    market_id: int,
    payload: MarketUpdate,
    user: Profile = Depends(verify_admin),
    db: Session = Depends(get_db),
):
    """Close a market to new bets (the only manual status change allowed)."""
    return _market_payload(close_market(db, market_id))


@app.delete("/admin/markets/{market_id}")
async def admin_delete_market(
    market_id: int,
    user: Profile = Depends(verify_admin),
    db: Session = Depends(get_db),
):
    refunded = delete_market(db, market_id)
    logger.info("Market %d deleted by %s", market_id, user.display_name)
    return {"success": True, "refunded": refunded}


@app.post("/admin/settle", response_model=SettleResponse)
async def admin_settle_market(
    payload: SettleRequest,
    user: Profile = Depends(verify_admin),
    db: Session = Depends(get_db),
):
    """Settle a closed market. Retrying with the same winner is a no-op."""
    result = settle_market(db, payload.market_id, payload.winning_option_id)
    return SettleResponse(
        message="Already settled" if result.already_settled else "Market settled",
        market_id=result.market_id,
        result=result.result,
        bets_won=result.bets_won,
        bets_lost=result.bets_lost,
        total_paid_out=result.total_paid_out,
        already_settled=result.already_settled,
    )


@app.delete("/admin/bets/{bet_id}")
async def admin_void_bet(
    bet_id: int,
    user: Profile = Depends(verify_admin),
    db: Session = Depends(get_db),
):
    """Void a pending bet and refund the stake."""
    refunded = void_bet(db, bet_id)
    return {"success": True, "refunded": refunded}


# ============================================================================
# ADMIN ENDPOINTS - USERS & LEDGER
# ============================================================================

@app.get("/admin/users", response_model=List[UserResponse])
async def admin_list_users(
    user: Profile = Depends(verify_admin),
    db: Session = Depends(get_db),
):
    return db.query(Profile).order_by(Profile.display_name).all()


@app.post("/admin/users", response_model=UserCreatedResponse)
async def admin_create_user(
    payload: UserCreate,
    user: Profile = Depends(verify_admin),
    db: Session = Depends(get_db),
):
    api_key = generate_api_key()
    profile = Profile(
        display_name=payload.display_name.strip(),
        role=payload.role,
        api_key_hash=hash_api_key(api_key),
    )
    db.add(profile)
    db.commit()
    db.refresh(profile)
    logger.info("Profile %d (%s) created by %s", profile.id, profile.role, user.display_name)
    return UserCreatedResponse(
        message="User created",
        user_id=profile.id,
        display_name=profile.display_name,
        role=profile.role,
        api_key=api_key,
    )


@app.post("/admin/topup", response_model=TransactionResponse)
async def admin_topup(
    payload: TopupRequest,
    user: Profile = Depends(verify_admin),
    db: Session = Depends(get_db),
):
    """Credit cash collected offline to a user's wallet."""
    return topup_wallet(db, payload.target_user_id, payload.amount, payload.description)


@app.post("/admin/users/{user_id}/reset-wallet")
async def admin_reset_wallet(
    user_id: int,
    user: Profile = Depends(verify_admin),
    db: Session = Depends(get_db),
):
    tx = reset_wallet(db, user_id)
    return {"success": True, "reset_amount": jsonable_encoder(-tx.amount) if tx else "0.00"}


@app.get("/admin/ledger", response_model=List[TransactionResponse])
async def admin_ledger(
    user_id: Optional[int] = Query(default=None),
    type: Optional[str] = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    user: Profile = Depends(verify_admin),
    db: Session = Depends(get_db),
):
    return list_transactions(db, user_id=user_id, tx_type=type, limit=limit)


@app.get("/admin/financials")
async def admin_financials(
    user: Profile = Depends(verify_admin),
    db: Session = Depends(get_db),
):
    return jsonable_encoder(financial_overview(db))


@app.get("/admin/audit")
async def admin_audit(
    user: Profile = Depends(verify_admin),
    db: Session = Depends(get_db),
):
    """Wallet balances vs. ledger sums and option pools vs. stakes."""
    return jsonable_encoder(reconcile(db))


# ============================================================================
# ADMIN ENDPOINTS - JOBS
# ============================================================================

@app.post("/admin/force-sync-scores")
async def force_sync_scores(user: Profile = Depends(verify_admin)):
    """Run the live-score sync immediately."""
    try:
        return sync_live_scores()
    except Exception as exc:
        logger.error("Manual score sync failed: %s", exc, exc_info=True)
        raise HTTPException(status_code=500, detail=str(exc))


@app.get("/admin/scheduler/status")
async def get_scheduler_status(user: Profile = Depends(verify_admin)):
    return {
        "running": scheduler.running,
        "jobs": [
            {
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            }
            for job in scheduler.get_jobs()
        ],
    }


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(PoolError)
async def pool_error_handler(request, exc: PoolError):
    """Typed protocol failures keep their own status code"""
    if exc.status_code >= 500:
        logger.error("Store failure on %s: %s", request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "type": type(exc).__name__},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc: RequestValidationError):
    """Malformed payloads are a 400, like every other validation failure"""
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_encoder(exc.errors()), "type": "ValidationError"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Catch-all exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "type": type(exc).__name__}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
