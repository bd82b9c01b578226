"""
Pydantic request/response schemas for the Cricket Pool API.

Using explicit schemas instead of raw dicts prevents mass-assignment
vulnerabilities on ORM models and generates accurate OpenAPI docs.
"""

from __future__ import annotations

from typing import Literal, Optional
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

MarketType = Literal["winner", "top_scorer", "over_under", "live", "custom"]
MatchStatus = Literal["upcoming", "live", "completed", "cancelled"]


# ---------------------------------------------------------------------------
# Betting
# ---------------------------------------------------------------------------

class BetCreate(BaseModel):
    """
    Payload for POST /api/bets.

    Odds are never accepted from the client; the server prices the bet
    against the live pool at commit time.
    """

    market_id: int = Field(..., description="FK to markets.id")
    bet_option_id: int = Field(..., description="FK to bet_options.id")
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2, description="Stake in ₹")

    model_config = {
        "json_schema_extra": {
            "example": {"market_id": 3, "bet_option_id": 7, "amount": 50}
        }
    }


class BetPlacedResponse(BaseModel):
    message: str
    bet_id: int
    odds: float
    amount: Decimal
    potential_payout: Decimal


class OddsQuoteRequest(BaseModel):
    """Payload for POST /api/odds/quote (bet slip preview)."""
    market_id: int
    bet_option_id: int
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class OddsQuoteResponse(BaseModel):
    market_id: int
    bet_option_id: int
    stake: Decimal
    odds: float
    odds_display: str
    potential_payout: Decimal


class BetResponse(BaseModel):
    id: int
    market_id: int
    bet_option_id: int
    amount: Decimal
    odds_at_placement: Decimal
    status: str
    payout: Optional[Decimal]
    placed_at: datetime
    settled_at: Optional[datetime]

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# Matches and markets
# ---------------------------------------------------------------------------

class MatchCreate(BaseModel):
    """Payload for POST /admin/matches."""

    team_a: str = Field(..., min_length=1, max_length=120)
    team_b: str = Field(..., min_length=1, max_length=120)
    match_date: datetime
    venue: Optional[str] = Field(None, max_length=120)
    over_under_line: Optional[float] = Field(None, gt=0)
    cricheroes_url: Optional[str] = Field(
        None,
        max_length=500,
        description="https://cricheroes.com/scorecard/<id>/<slug>/summary",
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "team_a": "Titans",
                "team_b": "Daredevils",
                "match_date": "2026-11-02T15:30:00",
                "venue": "Main Ground",
                "over_under_line": 145.5,
            }
        }
    }


class MatchUpdate(BaseModel):
    """Payload for PATCH /admin/matches/{match_id}."""
    status: MatchStatus


class MarketCreate(BaseModel):
    """Payload for POST /admin/markets."""

    match_id: int
    market_type: MarketType
    house_edge_pct: Optional[float] = Field(None, ge=0, le=20)
    title: Optional[str] = Field(None, max_length=200)
    options: list[str] = Field(..., min_length=2, description="Labels for bet options")

    @field_validator("options")
    @classmethod
    def validate_labels(cls, v: list[str]) -> list[str]:
        labels = [label.strip() for label in v]
        if any(not label for label in labels):
            raise ValueError("Option labels cannot be blank")
        if len({label.lower() for label in labels}) != len(labels):
            raise ValueError("Option labels must be unique")
        return labels

    model_config = {
        "json_schema_extra": {
            "example": {
                "match_id": 1,
                "market_type": "winner",
                "house_edge_pct": 5,
                "options": ["Titans", "Daredevils"],
            }
        }
    }


class MarketUpdate(BaseModel):
    """Payload for PATCH /admin/markets/{market_id}."""
    status: Literal["closed"]


class SettleRequest(BaseModel):
    """Payload for POST /admin/settle."""
    market_id: int
    winning_option_id: int


class SettleResponse(BaseModel):
    message: str
    market_id: int
    result: str
    bets_won: int
    bets_lost: int
    total_paid_out: Decimal
    already_settled: bool


class BetOptionResponse(BaseModel):
    id: int
    label: str
    total_amount_bet: Decimal
    odds: float
    odds_display: str


class MarketResponse(BaseModel):
    id: int
    match_id: int
    market_type: str
    title: Optional[str]
    house_edge_pct: Decimal
    status: str
    result: Optional[str]
    total_pool: Decimal
    options: list[BetOptionResponse]


class MatchResponse(BaseModel):
    id: int
    team_a: str
    team_b: str
    match_date: datetime
    venue: Optional[str]
    status: str
    over_under_line: Optional[Decimal]
    live_score_a: Optional[str]
    live_score_b: Optional[str]
    live_overs_a: Optional[str]
    live_overs_b: Optional[str]
    live_crr: Optional[str]
    result_summary: Optional[str]
    markets: list[MarketResponse] = []


# ---------------------------------------------------------------------------
# Wallet and users
# ---------------------------------------------------------------------------

class TopupRequest(BaseModel):
    """Payload for POST /admin/topup."""
    target_user_id: int
    amount: Decimal = Field(..., ge=1, max_digits=12, decimal_places=2)
    description: Optional[str] = Field(None, max_length=200)


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    bet_id: Optional[int]
    type: str
    amount: Decimal
    balance_after: Decimal
    description: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class WalletResponse(BaseModel):
    user_id: int
    display_name: str
    wallet_balance: Decimal
    transactions: list[TransactionResponse]


class UserCreate(BaseModel):
    """Payload for POST /admin/users."""
    display_name: str = Field(..., min_length=1, max_length=80)
    role: Literal["user", "admin"] = "user"


class UserCreatedResponse(BaseModel):
    message: str
    user_id: int
    display_name: str
    role: str
    api_key: str = Field(..., description="Shown once; only its hash is stored")


class UserResponse(BaseModel):
    id: int
    display_name: str
    role: str
    wallet_balance: Decimal

    class Config:
        from_attributes = True
