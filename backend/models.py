"""
Database models for the Cricket Pool
SQLAlchemy ORM with PostgreSQL
"""

from sqlalchemy import (
    create_engine,
    CheckConstraint,
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    Boolean,
    Text,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from datetime import datetime
from decimal import Decimal
import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://postgres@127.0.0.1:5432/cricket_pool")

# pool_pre_ping=True keeps long-idle connections to the hosted database alive
engine = create_engine(DATABASE_URL, pool_pre_ping=True, echo=False)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

MONEY = Numeric(12, 2)
ODDS = Numeric(10, 4)

MATCH_STATUSES = ("upcoming", "live", "completed", "cancelled")
MARKET_TYPES = ("winner", "top_scorer", "over_under", "live", "custom")
MARKET_STATUSES = ("open", "closed", "settled")
BET_STATUSES = ("pending", "won", "lost", "void")
TRANSACTION_TYPES = ("topup", "bet", "win", "refund")
ROLES = ("user", "admin")


def _in(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class Profile(Base):
    """A bettor (or admin) and their virtual wallet"""

    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True)
    display_name = Column(String(80), nullable=False)
    role = Column(String(10), nullable=False, default="user")
    api_key_hash = Column(String(64), unique=True, index=True)

    # Cached aggregate of transactions.amount for this profile
    wallet_balance = Column(MONEY, nullable=False, default=Decimal("0.00"))

    bets = relationship("Bet", back_populates="user")
    transactions = relationship("WalletTransaction", back_populates="user")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(_in("role", ROLES), name="valid_role"),
        CheckConstraint("wallet_balance >= 0", name="non_negative_wallet"),
    )


class Match(Base):
    """A fixture between two college teams"""

    __tablename__ = "matches"

    id = Column(Integer, primary_key=True, index=True)
    team_a = Column(String(120), nullable=False)
    team_b = Column(String(120), nullable=False)
    match_date = Column(DateTime, nullable=False, index=True)
    venue = Column(String(120))
    status = Column(String(12), nullable=False, default="upcoming", index=True)
    over_under_line = Column(Numeric(6, 1))  # runs

    # CricHeroes scorecard reference (parsed from the admin-supplied URL)
    cricheroes_match_id = Column(String(32), index=True)
    cricheroes_slug = Column(String(200))

    # Live score (written by the score sync job)
    live_score_a = Column(String(40))
    live_score_b = Column(String(40))
    live_overs_a = Column(String(10))
    live_overs_b = Column(String(10))
    live_crr = Column(String(10))
    result_summary = Column(String(200))  # "Titans won by 12 runs"

    markets = relationship(
        "Market",
        back_populates="match",
        cascade="all, delete-orphan",
        order_by="Market.id",
    )

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(_in("status", MATCH_STATUSES), name="valid_match_status"),
    )

    @property
    def title(self) -> str:
        return f"{self.team_a} vs {self.team_b}"


class Market(Base):
    """A single betable question on a match"""

    __tablename__ = "markets"

    id = Column(Integer, primary_key=True, index=True)
    match_id = Column(
        Integer, ForeignKey("matches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    market_type = Column(String(20), nullable=False)
    title = Column(String(200))  # free-form question for live/custom markets
    house_edge_pct = Column(Numeric(5, 2), nullable=False, default=Decimal("5"))
    status = Column(String(10), nullable=False, default="open", index=True)

    # Settlement (filled once, by settle_market)
    result = Column(String(120))               # label of the winning option
    winning_option_id = Column(Integer)
    settled_at = Column(DateTime)

    match = relationship("Match", back_populates="markets")
    options = relationship(
        "BetOption",
        back_populates="market",
        cascade="all, delete-orphan",
        order_by="BetOption.id",
    )
    bets = relationship("Bet", back_populates="market", cascade="all, delete-orphan")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(_in("market_type", MARKET_TYPES), name="valid_market_type"),
        CheckConstraint(_in("status", MARKET_STATUSES), name="valid_market_status"),
        CheckConstraint(
            "house_edge_pct >= 0 AND house_edge_pct <= 20", name="valid_house_edge"
        ),
    )

    @property
    def total_pool(self) -> Decimal:
        return sum((o.total_amount_bet or Decimal("0") for o in self.options), Decimal("0"))


class BetOption(Base):
    """One mutually exclusive outcome of a market"""

    __tablename__ = "bet_options"

    id = Column(Integer, primary_key=True, index=True)
    market_id = Column(
        Integer, ForeignKey("markets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    label = Column(String(120), nullable=False)

    # Running sum of non-void stakes on this option (the pricing pool)
    total_amount_bet = Column(MONEY, nullable=False, default=Decimal("0.00"))

    market = relationship("Market", back_populates="options")
    bets = relationship("Bet", back_populates="option", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("market_id", "label", name="_market_option_label_uc"),
        CheckConstraint("total_amount_bet >= 0", name="non_negative_pool"),
    )


class Bet(Base):
    """A user's wager on one option"""

    __tablename__ = "bets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    market_id = Column(
        Integer, ForeignKey("markets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    bet_option_id = Column(
        Integer, ForeignKey("bet_options.id", ondelete="CASCADE"), nullable=False, index=True
    )

    amount = Column(MONEY, nullable=False)
    odds_at_placement = Column(ODDS, nullable=False)  # locked at commit, never repriced
    status = Column(String(10), nullable=False, default="pending", index=True)
    payout = Column(MONEY)  # set only when status == "won"

    placed_at = Column(DateTime, default=datetime.utcnow, index=True)
    settled_at = Column(DateTime)

    user = relationship("Profile", back_populates="bets")
    market = relationship("Market", back_populates="bets")
    option = relationship("BetOption", back_populates="bets")
    transactions = relationship("WalletTransaction", back_populates="bet")

    __table_args__ = (
        CheckConstraint(_in("status", BET_STATUSES), name="valid_bet_status"),
        CheckConstraint("amount > 0", name="positive_stake"),
        CheckConstraint("odds_at_placement >= 1.01", name="odds_floor"),
    )


class WalletTransaction(Base):
    """Append-only ledger entry; the only sanctioned way to move a balance"""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    bet_id = Column(Integer, ForeignKey("bets.id", ondelete="SET NULL"), index=True)
    type = Column(String(10), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)  # signed: debits negative
    balance_after = Column(MONEY, nullable=False)
    description = Column(String(200))

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    user = relationship("Profile", back_populates="transactions")
    bet = relationship("Bet", back_populates="transactions")

    __table_args__ = (
        CheckConstraint(_in("type", TRANSACTION_TYPES), name="valid_transaction_type"),
    )


class ScoreSync(Base):
    """Track live-score feed polls for monitoring scraper health"""

    __tablename__ = "score_syncs"

    id = Column(Integer, primary_key=True, index=True)
    fetch_time = Column(DateTime, default=datetime.utcnow, index=True)
    match_id = Column(Integer, ForeignKey("matches.id", ondelete="SET NULL"), index=True)
    data_source = Column(String(40), nullable=False, default="cricheroes")
    success = Column(Boolean, nullable=False)
    records_fetched = Column(Integer)
    markets_settled = Column(Integer, default=0)
    error_message = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)


# Create all tables
def init_db():
    """Initialize database tables"""
    Base.metadata.create_all(bind=engine)
