import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from domain.clock import RoundClock, RoundPhase, round_clock, utcnow
from domain.errors import (
    BankAccountMissing,
    BettingClosed,
    BusinessRuleError,
    DuplicateBetInRound,
    ErrorContext,
    InsufficientBalance,
    RoundOutcomeConflict,
    RoundStillOpen,
    ValidationError,
    WalletBlocked,
    WalletNotFound,
    with_retry,
)
from domain.models import (
    BankAccount,
    Bet,
    BetResult,
    Color,
    Round,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    Wallet,
    Withdrawal,
    WithdrawalStatus,
)
from domain.outcome import Outcome, select_outcome
from infra.monitoring import prometheus_metrics
from infra.settings import settings

logger = logging.getLogger(__name__)


class WalletService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_wallet(self, user_id: uuid.UUID) -> Wallet:
        """Read a wallet; blocked wallets are still readable"""
        result = await self.db.execute(
            select(Wallet)
            .where(Wallet.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        wallet = result.scalar_one_or_none()
        if not wallet:
            raise WalletNotFound(context=ErrorContext(user_id=str(user_id)))
        return wallet

    async def lock_wallet(self, user_id: uuid.UUID) -> Optional[Wallet]:
        """Load a wallet holding its row lock until the unit of work ends"""
        result = await self.db.execute(
            select(Wallet)
            .where(Wallet.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @with_retry()
    async def register_user(self, email: str, name: Optional[str] = None) -> User:
        """Create a user together with an empty wallet"""
        existing = await self.db.scalar(select(User.id).where(User.email == email))
        if existing:
            raise BusinessRuleError("Email already taken.")

        user = User(email=email, name=name)
        self.db.add(user)
        await self.db.flush()
        self.db.add(Wallet(user_id=user.id, balance=0, is_blocked=False))
        await self.db.commit()

        logger.info(f"Registered user {user.id}")
        return user

    @with_retry()
    async def open_wallet(self, user_id: uuid.UUID) -> Wallet:
        wallet = await self.lock_wallet(user_id)
        if wallet:
            return wallet

        wallet = Wallet(user_id=user_id, balance=0, is_blocked=False)
        self.db.add(wallet)
        await self.db.commit()
        return wallet

    @with_retry()
    async def deposit(self, user_id: uuid.UUID, amount: int) -> Transaction:
        """Credit a wallet, creating it on first deposit"""
        if not _is_amount(amount) or not settings.min_deposit <= amount <= settings.max_deposit:
            raise ValidationError(
                f"Amount must be between {settings.min_deposit} and {settings.max_deposit}."
            )

        wallet = await self.lock_wallet(user_id)
        if wallet is None:
            wallet = Wallet(user_id=user_id, balance=0, is_blocked=False)
            self.db.add(wallet)
            await self.db.flush()

        if wallet.is_blocked:
            raise WalletBlocked(
                "Wallet is blocked. Cannot deposit.",
                context=ErrorContext(user_id=str(user_id), wallet_id=str(wallet.id), amount=amount),
            )

        transaction = Transaction(
            user_id=user_id,
            wallet_id=wallet.id,
            type=TransactionType.DEPOSIT,
            amount=amount,
            status=TransactionStatus.PENDING,
            description=f"Deposit of {amount}",
        )
        self.db.add(transaction)
        wallet.balance += amount
        await self.db.flush()

        transaction.status = TransactionStatus.COMPLETED
        await self.db.commit()

        prometheus_metrics.record_transaction(TransactionType.DEPOSIT.value)
        logger.info(f"Deposited {amount} into wallet {wallet.id}")
        return transaction

    @with_retry()
    async def withdraw(self, user_id: uuid.UUID, amount: int) -> Withdrawal:
        """Move funds from the wallet to the user's active bank account"""
        if not _is_amount(amount) or not settings.min_withdrawal <= amount <= settings.max_withdrawal:
            raise ValidationError(
                f"Withdrawal amount must be between {settings.min_withdrawal} and {settings.max_withdrawal}."
            )

        context = ErrorContext(user_id=str(user_id), amount=amount)
        wallet = await self.lock_wallet(user_id)
        if wallet is None:
            raise WalletNotFound(context=context)
        if wallet.is_blocked:
            raise WalletBlocked("Wallet is blocked. Cannot withdraw.", context=context)
        if wallet.balance < amount:
            raise InsufficientBalance(context=context)

        bank_account = await self.db.scalar(
            select(BankAccount).where(BankAccount.user_id == user_id)
        )
        if not bank_account or not bank_account.is_active:
            raise BankAccountMissing(context=context)

        withdrawal = Withdrawal(
            user_id=user_id,
            bank_account_id=bank_account.id,
            amount=amount,
            status=WithdrawalStatus.PENDING,
        )
        transaction = Transaction(
            user_id=user_id,
            wallet_id=wallet.id,
            type=TransactionType.WITHDRAWAL,
            amount=-amount,
            status=TransactionStatus.PENDING,
            description=f"Withdrawal to {bank_account.bank_name}",
        )
        self.db.add_all([withdrawal, transaction])
        wallet.balance -= amount
        await self.db.flush()

        transaction.status = TransactionStatus.COMPLETED
        withdrawal.status = WithdrawalStatus.COMPLETED
        await self.db.commit()

        prometheus_metrics.record_transaction(TransactionType.WITHDRAWAL.value)
        logger.info(f"Withdrew {amount} from wallet {wallet.id} to bank account {bank_account.id}")
        return withdrawal

    @with_retry()
    async def set_blocked(self, wallet_id: uuid.UUID, blocked: Optional[bool] = None) -> Wallet:
        """Set the blocked flag, or toggle it when ``blocked`` is None"""
        result = await self.db.execute(
            select(Wallet)
            .where(Wallet.id == wallet_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        wallet = result.scalar_one_or_none()
        if not wallet:
            raise WalletNotFound(context=ErrorContext(wallet_id=str(wallet_id)))

        wallet.is_blocked = (not wallet.is_blocked) if blocked is None else blocked
        await self.db.commit()

        logger.info(f"Wallet {wallet.id} is_blocked={wallet.is_blocked}")
        return wallet

    async def transactions(
        self, user_id: uuid.UUID, type: Optional[TransactionType] = None, limit: int = 50
    ) -> List[Transaction]:
        query = select(Transaction).where(Transaction.user_id == user_id)
        if type is not None:
            query = query.where(Transaction.type == type)
        result = await self.db.execute(
            query.order_by(Transaction.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def withdrawals(self, user_id: uuid.UUID, limit: int = 20) -> List[Withdrawal]:
        result = await self.db.execute(
            select(Withdrawal)
            .where(Withdrawal.user_id == user_id)
            .order_by(Withdrawal.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


def _is_amount(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class BettingService:
    def __init__(self, db: AsyncSession, wallets: WalletService, clock: RoundClock = round_clock):
        self.db = db
        self.wallets = wallets
        self.clock = clock

    @staticmethod
    def validate_bet(color: Union[str, Color], number: int, amount: int) -> Color:
        """Check a wager before any store access"""
        try:
            color = Color(str(getattr(color, "value", color)).upper())
        except ValueError:
            raise ValidationError(f"Invalid colour: {color}. Must be red, violet or green.")

        if not _is_amount(number) or not 0 <= number <= 9:
            raise ValidationError(f"Invalid number: {number}. Must be between 0 and 9.")

        if not _is_amount(amount) or amount <= 0:
            raise ValidationError("Bet amount must be a positive whole number.")

        return color

    @with_retry()
    async def place_bet(
        self,
        user_id: uuid.UUID,
        color: Union[str, Color],
        number: int,
        amount: int,
        now: Optional[datetime] = None,
    ) -> Bet:
        """Place a bet on the current round, debiting the stake from the wallet"""
        color = self.validate_bet(color, number, amount)
        now = now or utcnow()

        phase = self.clock.current_phase(now)
        context = ErrorContext(user_id=str(user_id), round_id=phase.round_id, amount=amount)
        if not phase.is_open:
            raise BettingClosed(context=context)
        if await self.db.get(Round, phase.round_id) is not None:
            # Outcome already drawn for this round
            raise BettingClosed(context=context)

        wallet = await self.wallets.lock_wallet(user_id)
        if wallet is None:
            raise WalletNotFound(context=context)
        if wallet.is_blocked:
            raise WalletBlocked("Wallet is blocked. Cannot place bets.", context=context)
        if amount > wallet.balance:
            raise InsufficientBalance(context=context)

        existing = await self.db.scalar(
            select(Bet.id).where(Bet.user_id == user_id, Bet.round_id == phase.round_id)
        )
        if existing:
            raise DuplicateBetInRound(context=context)

        bet = Bet(
            user_id=user_id,
            round_id=phase.round_id,
            color=color,
            number=number,
            amount=amount,
            result=BetResult.PENDING,
            created_at=now,
        )
        self.db.add(bet)
        try:
            await self.db.flush()
        except IntegrityError as e:
            # A concurrent request for the same user won the insert
            raise DuplicateBetInRound(context=context) from e

        # Stake is booked as a provisional LOSS until settlement resolves it
        self.db.add(Transaction(
            user_id=user_id,
            wallet_id=wallet.id,
            bet_id=bet.id,
            type=TransactionType.LOSS,
            amount=-amount,
            status=TransactionStatus.PENDING,
            description=f"Bet on {color.value} {number} in round {phase.round_id}",
        ))
        wallet.balance -= amount
        await self.db.commit()

        prometheus_metrics.record_bet(color.value, amount)
        logger.info(f"User {user_id} bet {amount} on {color.value} {number} in round {phase.round_id}")
        return bet

    async def user_bets(self, user_id: uuid.UUID, limit: int = 50) -> List[Bet]:
        """Trade history, most recent first"""
        result = await self.db.execute(
            select(Bet)
            .where(Bet.user_id == user_id)
            .order_by(Bet.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def round_pools(self, round_id: int) -> Dict[str, int]:
        """Total stake per colour for a round"""
        result = await self.db.execute(
            select(Bet.color, Bet.amount).where(Bet.round_id == round_id)
        )
        pools = {color.value: 0 for color in Color}
        for color, amount in result.all():
            pools[Color(color).value] += amount
        return pools


@dataclass
class TradeResult:
    user_id: uuid.UUID
    bet_id: uuid.UUID
    is_winner: bool
    win_amount: int
    bet_amount: int
    new_balance: int

    def to_dict(self) -> dict:
        return {
            "user_id": str(self.user_id),
            "bet_id": str(self.bet_id),
            "is_winner": self.is_winner,
            "win_amount": self.win_amount,
            "bet_amount": self.bet_amount,
            "new_balance": self.new_balance,
        }


@dataclass
class SettlementReport:
    round_id: int
    window_start: datetime
    window_end: datetime
    outcome: Optional[Outcome] = None
    trades: List[TradeResult] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.trades)

    def to_dict(self) -> dict:
        if self.outcome is None:
            return {
                "success": "No trades to process",
                "round_id": self.round_id,
                "outcome": None,
                "trades": [],
            }
        return {
            "success": f"Processed {self.processed} trades",
            "round_id": self.round_id,
            "outcome": self.outcome.to_dict(),
            "trades": [trade.to_dict() for trade in self.trades],
        }


class SettlementService:
    def __init__(
        self,
        db: AsyncSession,
        wallets: WalletService,
        clock: RoundClock = round_clock,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.wallets = wallets
        self.clock = clock
        self.rng = rng
        self.payout_multiplier = settings.payout_multiplier

    async def settle_round(self, at: Optional[datetime] = None, now: Optional[datetime] = None) -> SettlementReport:
        """Settle the round window containing ``at`` (default: the current round)"""
        return await self.settle_window(self.clock.current_phase(at or now), now=now)

    @with_retry()
    async def settle_window(self, window: RoundPhase, now: Optional[datetime] = None) -> SettlementReport:
        """Resolve every PENDING bet of a round exactly once.

        Only windows whose betting has closed at ``now`` (default: the wall
        clock) are settled; an open or future window raises RoundStillOpen
        before anything is read or drawn.

        Re-running for a settled window finds no PENDING bets and changes
        nothing. Concurrent passes race on a conditional PENDING update per
        bet, so each bet is resolved by exactly one of them.
        """
        current = self.clock.current_phase(now or utcnow())
        if window.round_id > current.round_id or (
            window.round_id == current.round_id and current.is_open
        ):
            raise RoundStillOpen(context=ErrorContext(round_id=window.round_id))

        started = time.time()
        report = SettlementReport(
            round_id=window.round_id,
            window_start=window.window_start,
            window_end=window.window_end,
        )

        result = await self.db.execute(
            select(Bet)
            .where(Bet.round_id == window.round_id, Bet.result == BetResult.PENDING)
            .order_by(Bet.created_at, Bet.id)
            .execution_options(populate_existing=True)
        )
        bets = list(result.scalars().all())

        if not bets:
            await self.db.commit()
            logger.info(f"No pending bets for round {window.round_id}")
            return report

        report.outcome = await self._round_outcome(window, bets)
        settled_at = utcnow()

        for bet in bets:
            trade = await self._settle_bet(bet, report.outcome, settled_at)
            if trade is not None:
                report.trades.append(trade)

        await self.db.commit()

        for trade in report.trades:
            prometheus_metrics.record_settled_bet(
                BetResult.WIN.value if trade.is_winner else BetResult.LOSS.value,
                trade.win_amount,
            )
        prometheus_metrics.settlement_duration.observe(time.time() - started)
        logger.info(
            f"Settled round {window.round_id}: {report.outcome.color.value} {report.outcome.number}, "
            f"{report.processed} bets, {sum(t.is_winner for t in report.trades)} winners"
        )
        return report

    async def _round_outcome(self, window: RoundPhase, bets: List[Bet]) -> Outcome:
        """Reuse the recorded outcome of the round or select and record one"""
        existing = await self.db.get(Round, window.round_id)
        if existing is not None:
            return Outcome(Color(existing.color), existing.number)

        outcome = select_outcome(bets, self.rng)
        self.db.add(Round(
            id=window.round_id,
            window_start=window.window_start,
            window_end=window.window_end,
            color=outcome.color,
            number=outcome.number,
            total_staked=sum(bet.amount for bet in bets),
        ))
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise RoundOutcomeConflict(window.round_id, e) from e
        return outcome

    async def _settle_bet(self, bet: Bet, outcome: Outcome, settled_at: datetime) -> Optional[TradeResult]:
        is_winner = outcome.matches(bet.color, bet.number)
        claimed = await self.db.execute(
            update(Bet)
            .where(Bet.id == bet.id, Bet.result == BetResult.PENDING)
            .values(
                result=BetResult.WIN if is_winner else BetResult.LOSS,
                settled_at=settled_at,
            )
        )
        if claimed.rowcount != 1:
            logger.debug(f"Bet {bet.id} already resolved by another settlement pass")
            return None

        wallet = await self.wallets.lock_wallet(bet.user_id)
        if wallet is None:
            raise WalletNotFound(context=ErrorContext(user_id=str(bet.user_id), round_id=bet.round_id))

        stake_transaction = await self.db.scalar(
            select(Transaction).where(
                Transaction.bet_id == bet.id,
                Transaction.type == TransactionType.LOSS,
            )
        )
        if stake_transaction is not None and stake_transaction.status == TransactionStatus.PENDING:
            stake_transaction.status = TransactionStatus.COMPLETED

        win_amount = 0
        if is_winner:
            win_amount = bet.amount * self.payout_multiplier
            wallet.balance += win_amount
            self.db.add(Transaction(
                user_id=bet.user_id,
                wallet_id=wallet.id,
                bet_id=bet.id,
                type=TransactionType.WIN,
                amount=win_amount,
                status=TransactionStatus.COMPLETED,
                description=f"Won {outcome.color.value} {outcome.number} in round {bet.round_id}",
            ))
        await self.db.flush()

        return TradeResult(
            user_id=bet.user_id,
            bet_id=bet.id,
            is_winner=is_winner,
            win_amount=win_amount,
            bet_amount=bet.amount,
            new_balance=wallet.balance,
        )

    async def recent_outcomes(self, limit: int = 10) -> List[Round]:
        result = await self.db.execute(
            select(Round).order_by(Round.id.desc()).limit(limit)
        )
        return list(result.scalars().all())
