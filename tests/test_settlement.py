"""Tests for market settlement and bet voiding."""

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from backend.core.errors import (
    InvalidMarketState,
    InvalidOption,
    NotFoundError,
    NotVoidable,
    TransientStoreError,
)
from backend.core.odds_math import calc_payout
from backend.models import Bet, BetOption, Market, Profile, WalletTransaction
from backend.services import settlement as settlement_mod
from backend.services.betting import place_bet
from backend.services.financials import reconcile
from backend.services.markets import close_market
from backend.services.settlement import settle_market, void_bet
from conftest import option_id


def _balance(db, user_id):
    db.expire_all()
    return db.query(Profile).filter(Profile.id == user_id).one().wallet_balance


def _txs(db, tx_type):
    return db.query(WalletTransaction).filter(WalletTransaction.type == tx_type).all()


@pytest.fixture
def three_bet_market(db, make_user, make_market):
    """Two bets on Titans, one on Daredevils, market closed."""
    market = make_market(house_edge_pct=5)
    titans, devils = option_id(market, "Titans"), option_id(market, "Daredevils")
    alice = make_user(balance=500, name="alice")
    bob = make_user(balance=500, name="bob")
    carol = make_user(balance=500, name="carol")

    place_bet(db, carol.id, market.id, devils, 100)
    a = place_bet(db, alice.id, market.id, titans, 100)
    b = place_bet(db, bob.id, market.id, titans, 50)
    close_market(db, market.id)

    return {
        "market": market,
        "titans": titans,
        "devils": devils,
        "users": (alice, bob, carol),
        "bets": (a, b),
    }


# ---------------------------------------------------------------------------
# settle_market
# ---------------------------------------------------------------------------

def test_settle_pays_winners_at_locked_odds(db, three_bet_market):
    m = three_bet_market
    alice, bob, carol = m["users"]

    result = settle_market(db, m["market"].id, m["titans"])

    assert result.result == "Titans"
    assert result.bets_won == 2
    assert result.bets_lost == 1
    assert result.already_settled is False

    # alice: (100 + 100) / 100 × 0.95 = 1.9 → ₹190
    assert m["bets"][0].odds == pytest.approx(1.9)
    assert _balance(db, alice.id) == Decimal("400.00") + Decimal("190.00")
    assert _balance(db, carol.id) == Decimal("400.00")

    wins = _txs(db, "win")
    assert len(wins) == 2
    assert {tx.user_id for tx in wins} == {alice.id, bob.id}

    bets = {b.id: b for b in db.query(Bet).all()}
    for placed in m["bets"]:
        bet = bets[placed.bet_id]
        assert bet.status == "won"
        assert bet.payout == calc_payout(bet.amount, bet.odds_at_placement)
        assert bet.settled_at is not None
    assert sum(b.status == "lost" for b in bets.values()) == 1
    assert result.total_paid_out == sum(b.payout for b in bets.values() if b.status == "won")


def test_settled_market_records_result(db, three_bet_market):
    m = three_bet_market
    settle_market(db, m["market"].id, m["devils"])

    db.expire_all()
    market = db.query(Market).filter(Market.id == m["market"].id).one()
    assert market.status == "settled"
    assert market.result == "Daredevils"
    assert market.winning_option_id == m["devils"]
    assert market.settled_at is not None


def test_retry_with_same_winner_is_noop(db, three_bet_market):
    m = three_bet_market
    alice = m["users"][0]

    settle_market(db, m["market"].id, m["titans"])
    balance = _balance(db, alice.id)

    again = settle_market(db, m["market"].id, m["titans"])

    assert again.already_settled is True
    assert again.bets_won == 0
    assert again.total_paid_out == Decimal("0.00")
    assert len(_txs(db, "win")) == 2
    assert _balance(db, alice.id) == balance


def test_resettle_with_different_winner_conflicts(db, three_bet_market):
    m = three_bet_market
    settle_market(db, m["market"].id, m["titans"])

    with pytest.raises(InvalidMarketState):
        settle_market(db, m["market"].id, m["devils"])


def test_open_market_cannot_be_settled(db, make_market):
    market = make_market()
    with pytest.raises(InvalidMarketState):
        settle_market(db, market.id, option_id(market, "Titans"))

    db.expire_all()
    assert db.query(Market).filter(Market.id == market.id).one().status == "open"


def test_winner_must_belong_to_market(db, three_bet_market, make_market):
    m = three_bet_market
    other = make_market(labels=("Yes", "No"), market_type="custom")

    with pytest.raises(InvalidOption):
        settle_market(db, m["market"].id, option_id(other, "Yes"))

    db.expire_all()
    assert db.query(Market).filter(Market.id == m["market"].id).one().status == "closed"


def test_unknown_market(db):
    with pytest.raises(NotFoundError):
        settle_market(db, 424242, 1)


def test_settle_market_with_no_bets(db, make_market):
    market = make_market()
    close_market(db, market.id)

    result = settle_market(db, market.id, option_id(market, "Daredevils"))

    assert result.bets_won == 0
    assert result.bets_lost == 0
    assert result.total_paid_out == Decimal("0.00")


def test_failure_mid_batch_rolls_back_everything(db, three_bet_market, monkeypatch):
    m = three_bet_market
    real_credit = settlement_mod.credit_wallet
    calls = {"n": 0}

    def flaky_credit(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            raise OperationalError("UPDATE profiles", {}, Exception("server closed the connection"))
        return real_credit(*args, **kwargs)

    monkeypatch.setattr(settlement_mod, "credit_wallet", flaky_credit)

    with pytest.raises(TransientStoreError):
        settle_market(db, m["market"].id, m["titans"])

    db.expire_all()
    assert db.query(Market).filter(Market.id == m["market"].id).one().status == "closed"
    assert {b.status for b in db.query(Bet).all()} == {"pending"}
    assert _txs(db, "win") == []
    assert _balance(db, m["users"][0].id) == Decimal("400.00")

    # the market can still be settled once the store recovers
    monkeypatch.setattr(settlement_mod, "credit_wallet", real_credit)
    assert settle_market(db, m["market"].id, m["titans"]).bets_won == 2


def test_ledger_consistent_after_settlement(db, three_bet_market):
    m = three_bet_market
    settle_market(db, m["market"].id, m["titans"])
    assert reconcile(db)["ok"] is True


# ---------------------------------------------------------------------------
# void_bet
# ---------------------------------------------------------------------------

def test_void_refunds_stake_and_keeps_pool(db, make_user, make_market):
    market = make_market()
    titans = option_id(market, "Titans")
    user = make_user(balance=200)
    placed = place_bet(db, user.id, market.id, titans, 75)
    assert _balance(db, user.id) == Decimal("125.00")

    refunded = void_bet(db, placed.bet_id)

    assert refunded == Decimal("75.00")
    assert _balance(db, user.id) == Decimal("200.00")

    refunds = _txs(db, "refund")
    assert len(refunds) == 1
    assert refunds[0].amount == Decimal("75.00")
    assert refunds[0].bet_id == placed.bet_id

    bet = db.query(Bet).filter(Bet.id == placed.bet_id).one()
    assert bet.status == "void"
    assert bet.payout is None
    assert db.query(BetOption).filter(BetOption.id == titans).one().total_amount_bet == Decimal("75.00")
    assert reconcile(db)["ok"] is True


def test_void_can_shrink_pool_when_configured(db, make_user, make_market, monkeypatch):
    monkeypatch.setenv("VOID_DECREMENTS_POOL", "true")
    market = make_market()
    titans = option_id(market, "Titans")
    user = make_user(balance=200)
    place_bet(db, user.id, market.id, titans, 30)
    placed = place_bet(db, user.id, market.id, titans, 75)

    void_bet(db, placed.bet_id)

    db.expire_all()
    assert db.query(BetOption).filter(BetOption.id == titans).one().total_amount_bet == Decimal("30.00")
    assert reconcile(db)["ok"] is True


def test_explicit_flag_overrides_setting(db, make_user, make_market):
    market = make_market()
    titans = option_id(market, "Titans")
    user = make_user(balance=100)
    placed = place_bet(db, user.id, market.id, titans, 40)

    void_bet(db, placed.bet_id, decrement_pool=True)

    db.expire_all()
    assert db.query(BetOption).filter(BetOption.id == titans).one().total_amount_bet == Decimal("0.00")


def test_only_pending_bets_can_be_voided(db, three_bet_market):
    m = three_bet_market
    settle_market(db, m["market"].id, m["titans"])
    winner = m["bets"][0].bet_id

    with pytest.raises(NotVoidable):
        void_bet(db, winner)

    assert len(_txs(db, "refund")) == 0


def test_void_twice_is_rejected(db, make_user, make_market):
    market = make_market()
    user = make_user(balance=100)
    placed = place_bet(db, user.id, market.id, option_id(market, "Titans"), 10)

    void_bet(db, placed.bet_id)
    with pytest.raises(NotVoidable):
        void_bet(db, placed.bet_id)

    assert _balance(db, user.id) == Decimal("100.00")


def test_void_unknown_bet(db):
    with pytest.raises(NotFoundError):
        void_bet(db, 31337)


def test_voided_bet_is_skipped_by_settlement(db, three_bet_market):
    m = three_bet_market
    alice = m["users"][0]
    void_bet(db, m["bets"][0].bet_id)

    result = settle_market(db, m["market"].id, m["titans"])

    assert result.bets_won == 1
    assert _balance(db, alice.id) == Decimal("500.00")
