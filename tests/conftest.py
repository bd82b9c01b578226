"""Shared fixtures: an in-memory SQLite database and small object factories."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCORE_SYNC_ENABLED", "false")

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.auth import hash_api_key
from backend.models import Base, Match, Profile
from backend.services.markets import create_market
from backend.services.wallet import topup_wallet


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(balance=0, role="user", api_key=None, name=None):
        counter["n"] += 1
        profile = Profile(
            display_name=name or f"player{counter['n']}",
            role=role,
            api_key_hash=hash_api_key(api_key) if api_key else None,
            wallet_balance=Decimal("0.00"),
        )
        db.add(profile)
        db.commit()
        db.refresh(profile)
        if balance:
            topup_wallet(db, profile.id, balance)
            db.refresh(profile)
        return profile

    return _make


@pytest.fixture
def make_match(db):
    def _make(team_a="Titans", team_b="Daredevils", status="upcoming", cricheroes_id=None):
        match = Match(
            team_a=team_a,
            team_b=team_b,
            match_date=datetime(2026, 11, 2, 15, 30),
            status=status,
            cricheroes_match_id=cricheroes_id,
        )
        db.add(match)
        db.commit()
        db.refresh(match)
        return match

    return _make


@pytest.fixture
def make_market(db, make_match):
    def _make(labels=("Titans", "Daredevils"), house_edge_pct=5, market_type="winner", match=None):
        match = match or make_match()
        return create_market(
            db,
            match_id=match.id,
            market_type=market_type,
            option_labels=list(labels),
            house_edge_pct=house_edge_pct,
        )

    return _make


def option_id(market, label):
    return next(o.id for o in market.options if o.label == label)
