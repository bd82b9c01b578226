"""Tests for match/market administration and lifecycles."""

from datetime import datetime
from decimal import Decimal

import pytest

from backend.core.errors import (
    InvalidMarketState,
    MarketNotOpen,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from backend.models import Bet, BetOption, Market, Match, Profile, WalletTransaction
import backend.services.markets as markets_module
from backend.services.betting import place_bet
from backend.services.markets import (
    close_market,
    create_market,
    create_match,
    delete_market,
    delete_match,
    list_matches,
    parse_cricheroes_url,
    transition_market_status,
    update_match_status,
)
from backend.services.settlement import settle_market, void_bet
from conftest import option_id


# ---------------------------------------------------------------------------
# CricHeroes URLs
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("url, expected", [
    ("https://cricheroes.com/scorecard/123456/titans-vs-daredevils/summary",
     ("123456", "titans-vs-daredevils")),
    ("https://cricheroes.com/scorecard/987/weekend-cup/", ("987", "weekend-cup")),
    ("cricheroes.com/scorecard/42/final", ("42", "final")),
    ("https://example.com/scorecard/1/x", (None, None)),
    ("", (None, None)),
    (None, (None, None)),
])
def test_parse_cricheroes_url(url, expected):
    assert parse_cricheroes_url(url) == expected


# ---------------------------------------------------------------------------
# Matches
# ---------------------------------------------------------------------------

def test_create_match(db):
    match = create_match(
        db,
        " Titans ",
        "Daredevils",
        datetime(2026, 11, 2, 15, 30),
        venue="Main Ground",
        cricheroes_url="https://cricheroes.com/scorecard/555/titans-vs-daredevils/summary",
    )
    assert match.id is not None
    assert match.team_a == "Titans"
    assert match.status == "upcoming"
    assert match.cricheroes_match_id == "555"
    assert match.cricheroes_slug == "titans-vs-daredevils"
    assert match.title == "Titans vs Daredevils"


def test_create_match_rejects_same_team(db):
    with pytest.raises(ValidationError):
        create_match(db, "Titans", "titans", datetime(2026, 11, 2))


def test_unrecognised_cricheroes_url_is_ignored(db):
    match = create_match(db, "A", "B", datetime(2026, 11, 2), cricheroes_url="not a url")
    assert match.cricheroes_match_id is None


def test_list_matches_filters_by_status(db, make_match):
    make_match(status="upcoming")
    live = make_match(team_a="Strikers", team_b="Kings", status="live")

    assert [m.id for m in list_matches(db, status="live")] == [live.id]
    assert len(list_matches(db)) == 2


def test_match_lifecycle_forward(db, make_match):
    match = make_match()
    assert update_match_status(db, match.id, "live").status == "live"
    assert update_match_status(db, match.id, "completed").status == "completed"


@pytest.mark.parametrize("start, target", [
    ("upcoming", "completed"),
    ("live", "upcoming"),
    ("completed", "live"),
    ("cancelled", "upcoming"),
])
def test_match_lifecycle_rejects_illegal_moves(db, make_match, start, target):
    match = make_match(status=start)
    with pytest.raises(StateConflictError):
        update_match_status(db, match.id, target)


def test_match_status_same_value_is_noop(db, make_match):
    match = make_match(status="live")
    assert update_match_status(db, match.id, "live").status == "live"


def test_match_unknown_status(db, make_match):
    match = make_match()
    with pytest.raises(ValidationError):
        update_match_status(db, match.id, "abandoned")


def test_match_not_found(db):
    with pytest.raises(NotFoundError):
        update_match_status(db, 777, "live")


# ---------------------------------------------------------------------------
# Markets
# ---------------------------------------------------------------------------

def test_create_market_starts_open_with_empty_pools(db, make_match):
    match = make_match()
    market = create_market(db, match.id, "winner", ["Titans", "Daredevils"], house_edge_pct=7.5)

    assert market.status == "open"
    assert market.house_edge_pct == Decimal("7.50")
    assert [o.label for o in market.options] == ["Titans", "Daredevils"]
    assert all(o.total_amount_bet == Decimal("0.00") for o in market.options)
    assert market.total_pool == Decimal("0.00")


def test_create_market_uses_default_edge(db, make_match, monkeypatch):
    monkeypatch.setenv("DEFAULT_HOUSE_EDGE_PCT", "3")
    market = create_market(db, make_match().id, "custom", ["Yes", "No"])
    assert market.house_edge_pct == Decimal("3.00")


@pytest.mark.parametrize("kwargs", [
    {"market_type": "exotic", "option_labels": ["A", "B"]},
    {"market_type": "winner", "option_labels": ["Only one"]},
    {"market_type": "winner", "option_labels": ["Same", "same "]},
    {"market_type": "winner", "option_labels": ["A", "B"], "house_edge_pct": 25},
    {"market_type": "winner", "option_labels": ["A", "B"], "house_edge_pct": -1},
])
def test_create_market_validation(db, make_match, kwargs):
    match = make_match()
    with pytest.raises(ValidationError):
        create_market(db, match.id, **kwargs)
    assert db.query(Market).count() == 0


def test_no_markets_on_finished_match(db, make_match):
    match = make_match(status="completed")
    with pytest.raises(StateConflictError):
        create_market(db, match.id, "winner", ["A", "B"])


def test_create_market_unknown_match(db):
    with pytest.raises(NotFoundError):
        create_market(db, 99, "winner", ["A", "B"])


def test_close_market_is_idempotent(db, make_market):
    market = make_market()
    assert close_market(db, market.id).status == "closed"
    assert close_market(db, market.id).status == "closed"


def test_market_transitions_are_forward_only(db, make_market):
    market = make_market()
    close_market(db, market.id)

    with pytest.raises(InvalidMarketState):
        transition_market_status(db, market.id, "closed", "open")
    with pytest.raises(InvalidMarketState):
        transition_market_status(db, market.id, "open", "closed")


def test_settled_market_cannot_close(db, make_market):
    market = make_market()
    close_market(db, market.id)
    settle_market(db, market.id, option_id(market, "Titans"))

    with pytest.raises(InvalidMarketState):
        close_market(db, market.id)


# ---------------------------------------------------------------------------
# Deletion refunds pending bets
# ---------------------------------------------------------------------------

def test_delete_market_refunds_pending_bets(db, make_user, make_market):
    market = make_market()
    user = make_user(balance=100)
    place_bet(db, user.id, market.id, option_id(market, "Titans"), 30)
    place_bet(db, user.id, market.id, option_id(market, "Daredevils"), 20)

    refunded = delete_market(db, market.id)

    db.expire_all()
    assert refunded == 2
    assert db.query(Market).count() == 0
    assert db.query(BetOption).count() == 0
    assert db.query(Bet).count() == 0
    assert db.query(Profile).filter(Profile.id == user.id).one().wallet_balance == Decimal("100.00")

    refunds = db.query(WalletTransaction).filter(WalletTransaction.type == "refund").all()
    assert sorted(tx.amount for tx in refunds) == [Decimal("20.00"), Decimal("30.00")]
    # the ledger survives the bets it referenced
    assert all(tx.bet_id is None for tx in refunds)


def test_delete_match_cascades_and_refunds(db, make_user, make_match, make_market):
    match = make_match()
    winner = make_market(match=match)
    runs = make_market(labels=("Over 150", "Under 150"), market_type="over_under", match=match)
    user = make_user(balance=200)

    place_bet(db, user.id, winner.id, option_id(winner, "Titans"), 50)
    place_bet(db, user.id, runs.id, option_id(runs, "Over 150"), 25)
    close_market(db, winner.id)
    settle_market(db, winner.id, option_id(winner, "Daredevils"))

    refunded = delete_match(db, match.id)

    db.expire_all()
    assert refunded == 1
    assert db.query(Match).count() == 0
    assert db.query(Market).count() == 0
    # lost ₹50 stays lost, pending ₹25 comes back
    assert db.query(Profile).filter(Profile.id == user.id).one().wallet_balance == Decimal("150.00")


def test_delete_unknown_market(db):
    with pytest.raises(NotFoundError):
        delete_market(db, 5)


def test_delete_market_shuts_out_bets_placed_mid_cascade(
    db, session_factory, make_user, make_market, monkeypatch
):
    market = make_market()
    early = make_user(balance=100)
    late = make_user(balance=100)
    place_bet(db, early.id, market.id, option_id(market, "Titans"), 30)
    market_id, titans, late_id = market.id, option_id(market, "Titans"), late.id
    rejected = []

    def void_then_bet(session, bet_id):
        refund = void_bet(session, bet_id)
        other = session_factory()
        try:
            place_bet(other, late_id, market_id, titans, 40)
        except MarketNotOpen as exc:
            rejected.append(exc)
        finally:
            other.close()
        return refund

    monkeypatch.setattr(markets_module, "void_bet", void_then_bet)

    assert delete_market(db, market.id) == 1

    db.expire_all()
    assert len(rejected) == 1
    assert db.query(Market).count() == 0
    for user in (early, late):
        assert db.query(Profile).filter(Profile.id == user.id).one().wallet_balance == Decimal("100.00")
    assert db.query(WalletTransaction).filter(
        WalletTransaction.user_id == late_id, WalletTransaction.type == "bet"
    ).count() == 0


def test_delete_aborts_while_bets_are_still_pending(db, make_user, make_market, monkeypatch):
    market = make_market()
    user = make_user(balance=100)
    placed = place_bet(db, user.id, market.id, option_id(market, "Titans"), 30)
    monkeypatch.setattr(markets_module, "void_bet", lambda session, bet_id: Decimal("0.00"))

    with pytest.raises(StateConflictError):
        delete_market(db, market.id)

    db.expire_all()
    remaining = db.query(Market).one()
    assert remaining.status == "closed"
    assert db.query(Bet).filter(Bet.id == placed.bet_id).one().status == "pending"
