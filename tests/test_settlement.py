from datetime import timedelta

import pytest
from sqlalchemy import func, select

from domain.errors import BettingClosed, RoundStillOpen
from domain.models import (
    Bet,
    BetResult,
    Color,
    Round,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from domain.outcome import Outcome
from domain.services import SettlementService

from conftest import CLOSING_AT, NEXT_ROUND_AT, OPEN_AT, SETTLE_AT, FixedRandom


async def ledger_total(db, user_id) -> int:
    return await db.scalar(
        select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.user_id == user_id,
            Transaction.status != TransactionStatus.FAILED,
        )
    )


class TestSettlement:
    async def test_winner_is_paid_double(self, async_db, funded_user, wallet_service, betting_service, settlement_service):
        """A sole bettor always lands the least-staked pair under the house-edge draw"""
        bet = await betting_service.place_bet(funded_user.id, "green", 7, 200, now=OPEN_AT)

        report = await settlement_service.settle_round(OPEN_AT, now=SETTLE_AT)

        assert report.outcome == Outcome(Color.GREEN, 7)
        assert report.processed == 1
        trade = report.trades[0]
        assert trade.is_winner
        assert trade.win_amount == 400
        assert trade.bet_amount == 200
        assert trade.new_balance == 1200

        wallet = await wallet_service.get_wallet(funded_user.id)
        assert wallet.balance == 1200

        await async_db.refresh(bet)
        assert bet.result == BetResult.WIN
        assert bet.settled_at is not None

        transactions = (await async_db.execute(
            select(Transaction).where(Transaction.bet_id == bet.id).order_by(Transaction.amount)
        )).scalars().all()
        assert [(t.type, t.amount, t.status) for t in transactions] == [
            (TransactionType.LOSS, -200, TransactionStatus.COMPLETED),
            (TransactionType.WIN, 400, TransactionStatus.COMPLETED),
        ]

    async def test_loser_balance_unchanged_by_settlement(self, async_db, funded_user, wallet_service, betting_service, clock):
        bet = await betting_service.place_bet(funded_user.id, "red", 3, 300, now=OPEN_AT)
        random_draw = FixedRandom(value=0.99, choice_index=2, number=8)
        settlement = SettlementService(async_db, wallet_service, clock=clock, rng=random_draw)

        report = await settlement.settle_round(OPEN_AT, now=SETTLE_AT)

        assert report.outcome == Outcome(Color.GREEN, 8)
        trade = report.trades[0]
        assert not trade.is_winner
        assert trade.win_amount == 0
        assert trade.new_balance == 700

        wallet = await wallet_service.get_wallet(funded_user.id)
        assert wallet.balance == 700

        await async_db.refresh(bet)
        assert bet.result == BetResult.LOSS

        stake = await async_db.scalar(select(Transaction).where(Transaction.bet_id == bet.id))
        assert stake.type == TransactionType.LOSS
        assert stake.amount == -300
        assert stake.status == TransactionStatus.COMPLETED

    async def test_house_edge_across_users(self, make_funded_user, wallet_service, betting_service, settlement_service):
        alice = await make_funded_user()
        bob = await make_funded_user()
        carol = await make_funded_user()

        await betting_service.place_bet(alice.id, "red", 1, 500, now=OPEN_AT)
        await betting_service.place_bet(bob.id, "violet", 2, 200, now=OPEN_AT)
        await betting_service.place_bet(carol.id, "green", 2, 200, now=OPEN_AT)

        report = await settlement_service.settle_round(OPEN_AT, now=SETTLE_AT)

        # Colours: VIOLET ties GREEN and wins the tie; numbers: 2 carries 400 against 500
        assert report.outcome == Outcome(Color.VIOLET, 2)
        results = {trade.user_id: trade for trade in report.trades}
        assert results[bob.id].is_winner
        assert not results[alice.id].is_winner
        assert not results[carol.id].is_winner

        assert (await wallet_service.get_wallet(alice.id)).balance == 500
        assert (await wallet_service.get_wallet(bob.id)).balance == 1200
        assert (await wallet_service.get_wallet(carol.id)).balance == 800

    async def test_settlement_is_idempotent(self, async_db, funded_user, wallet_service, betting_service, settlement_service):
        await betting_service.place_bet(funded_user.id, "green", 7, 200, now=OPEN_AT)

        first = await settlement_service.settle_round(OPEN_AT, now=SETTLE_AT)
        balance_after_first = (await wallet_service.get_wallet(funded_user.id)).balance

        second = await settlement_service.settle_round(OPEN_AT + timedelta(seconds=30), now=SETTLE_AT)

        assert first.processed == 1
        assert second.processed == 0
        assert second.outcome is None
        assert second.to_dict()["success"] == "No trades to process"
        assert (await wallet_service.get_wallet(funded_user.id)).balance == balance_after_first
        assert await async_db.scalar(
            select(func.count()).select_from(Transaction).where(Transaction.type == TransactionType.WIN)
        ) == 1

    async def test_empty_round_is_a_noop(self, async_db, settlement_service):
        report = await settlement_service.settle_round(OPEN_AT, now=SETTLE_AT)

        assert report.outcome is None
        assert report.trades == []
        assert await async_db.scalar(select(func.count()).select_from(Round)) == 0

    async def test_other_rounds_untouched(self, async_db, make_funded_user, betting_service, settlement_service):
        alice = await make_funded_user()
        bob = await make_funded_user()

        await betting_service.place_bet(alice.id, "red", 1, 100, now=OPEN_AT)
        later = await betting_service.place_bet(bob.id, "red", 1, 100, now=NEXT_ROUND_AT)

        report = await settlement_service.settle_round(OPEN_AT, now=SETTLE_AT)

        assert [trade.user_id for trade in report.trades] == [alice.id]
        await async_db.refresh(later)
        assert later.result == BetResult.PENDING

    async def test_round_outcome_is_recorded_once(self, async_db, make_funded_user, wallet_service, betting_service, settlement_service, clock):
        """A bet that slipped in before the outcome was drawn settles against the stored outcome"""
        alice = await make_funded_user()
        bob = await make_funded_user()

        await betting_service.place_bet(alice.id, "green", 7, 100, now=OPEN_AT)
        first = await settlement_service.settle_round(OPEN_AT, now=SETTLE_AT)

        wallet = await wallet_service.get_wallet(bob.id)
        async_db.add(Bet(
            user_id=bob.id,
            round_id=clock.round_id_at(OPEN_AT),
            color=Color.RED,
            number=1,
            amount=100,
            result=BetResult.PENDING,
            created_at=OPEN_AT + timedelta(seconds=20),
        ))
        wallet.balance -= 100
        await async_db.commit()

        other_rng = SettlementService(async_db, wallet_service, clock=clock, rng=FixedRandom(0.0))
        second = await other_rng.settle_round(OPEN_AT, now=SETTLE_AT)

        assert second.outcome == first.outcome == Outcome(Color.GREEN, 7)
        assert not second.trades[0].is_winner

        recorded = await async_db.get(Round, clock.round_id_at(OPEN_AT))
        assert recorded.color == Color.GREEN
        assert recorded.number == 7
        assert recorded.total_staked == 100

        recent = await settlement_service.recent_outcomes()
        assert [r.id for r in recent] == [recorded.id]

    async def test_open_round_is_not_settled(self, async_db, funded_user, betting_service, settlement_service, clock):
        """No outcome is drawn while the round still takes bets"""
        bet = await betting_service.place_bet(funded_user.id, "red", 1, 100, now=OPEN_AT)

        with pytest.raises(RoundStillOpen):
            await settlement_service.settle_round(OPEN_AT, now=OPEN_AT + timedelta(seconds=5))

        assert await async_db.get(Round, clock.round_id_at(OPEN_AT)) is None
        await async_db.refresh(bet)
        assert bet.result == BetResult.PENDING

    async def test_future_round_is_not_settled(self, settlement_service):
        with pytest.raises(RoundStillOpen):
            await settlement_service.settle_round(NEXT_ROUND_AT, now=OPEN_AT)

    async def test_closing_phase_can_be_settled(self, funded_user, betting_service, settlement_service):
        await betting_service.place_bet(funded_user.id, "green", 7, 200, now=OPEN_AT)

        report = await settlement_service.settle_round(OPEN_AT, now=CLOSING_AT)

        assert report.processed == 1

    async def test_no_bets_once_outcome_is_drawn(self, make_funded_user, wallet_service, betting_service, settlement_service):
        """A late bettor cannot bet on a round whose outcome is already known"""
        alice = await make_funded_user()
        mallory = await make_funded_user()
        await betting_service.place_bet(alice.id, "red", 1, 100, now=OPEN_AT)
        await settlement_service.settle_round(OPEN_AT, now=CLOSING_AT)

        with pytest.raises(BettingClosed):
            await betting_service.place_bet(mallory.id, "green", 1, 1000, now=OPEN_AT + timedelta(seconds=20))

        assert (await wallet_service.get_wallet(mallory.id)).balance == 1000


    async def test_resolved_bet_is_skipped(self, async_db, funded_user, wallet_service, betting_service, settlement_service):
        """A bet already claimed by another pass is a no-op, not an error"""
        bet = await betting_service.place_bet(funded_user.id, "green", 7, 200, now=OPEN_AT)
        bet.result = BetResult.LOSS
        await async_db.commit()

        trade = await settlement_service._settle_bet(bet, Outcome(Color.GREEN, 7), OPEN_AT)
        await async_db.commit()

        assert trade is None
        assert (await wallet_service.get_wallet(funded_user.id)).balance == 800

    async def test_ledger_matches_balance(self, async_db, make_funded_user, wallet_service, betting_service, settlement_service):
        """Every balance change has exactly one matching transaction"""
        users = [await make_funded_user(500) for _ in range(4)]
        picks = [("red", 1, 100), ("violet", 2, 250), ("green", 3, 50), ("green", 3, 75)]

        for user, (color, number, amount) in zip(users, picks):
            await betting_service.place_bet(user.id, color, number, amount, now=OPEN_AT)
        await settlement_service.settle_round(OPEN_AT, now=SETTLE_AT)

        for user in users:
            wallet = await wallet_service.get_wallet(user.id)
            assert await ledger_total(async_db, user.id) == wallet.balance
            assert wallet.balance >= 0

        pending = await async_db.scalar(
            select(func.count()).select_from(Bet).where(Bet.result == BetResult.PENDING)
        )
        assert pending == 0
