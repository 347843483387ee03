import uuid
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas import (
    BetCreate,
    BetPlaced,
    BetResponse,
    RoundPhaseResponse,
    RoundResponse,
    SettleRequest,
    SettlementResponse,
    UserCreate,
    UserResponse,
)
from domain.clock import round_clock
from domain.services import BettingService, SettlementService, WalletService
from infra.db import get_async_db

router = APIRouter(tags=["Trading"])


@router.post("/users", response_model=UserResponse)
async def create_user(
    user_data: UserCreate,
    db: AsyncSession = Depends(get_async_db)
):
    """Register a user together with an empty wallet"""
    return await WalletService(db).register_user(user_data.email, user_data.name)


@router.get("/rounds/current", response_model=RoundPhaseResponse)
async def get_current_round(db: AsyncSession = Depends(get_async_db)):
    """Current round window, phase and per-colour pools"""
    phase = round_clock.current_phase()
    betting_service = BettingService(db, WalletService(db))
    pools = await betting_service.round_pools(phase.round_id)

    return RoundPhaseResponse(
        round_id=phase.round_id,
        window_start=phase.window_start,
        window_end=phase.window_end,
        phase=phase.phase,
        seconds_remaining=phase.seconds_remaining,
        pools=pools,
    )


@router.post("/bets", response_model=BetPlaced)
async def place_bet(
    bet_data: BetCreate,
    db: AsyncSession = Depends(get_async_db)
):
    """Place a bet on the current round"""
    betting_service = BettingService(db, WalletService(db))
    bet = await betting_service.place_bet(
        bet_data.user_id,
        bet_data.color,
        bet_data.number,
        bet_data.amount,
    )
    return BetPlaced(success="Bet placed successfully!", bet=BetResponse.model_validate(bet))


@router.get("/bets/{user_id}", response_model=List[BetResponse])
async def get_user_bets(
    user_id: uuid.UUID,
    limit: int = 50,
    db: AsyncSession = Depends(get_async_db)
):
    """Trade history for a user"""
    betting_service = BettingService(db, WalletService(db))
    return await betting_service.user_bets(user_id, limit=limit)


@router.post("/rounds/settle", response_model=SettlementResponse)
async def settle_round(
    request: SettleRequest,
    db: AsyncSession = Depends(get_async_db)
):
    """Settle a closed round; safe to call more than once"""
    settlement_service = SettlementService(db, WalletService(db))
    report = await settlement_service.settle_round(request.at)
    return report.to_dict()


@router.get("/rounds/recent", response_model=List[RoundResponse])
async def get_recent_rounds(
    limit: int = 10,
    db: AsyncSession = Depends(get_async_db)
):
    """Most recent round outcomes"""
    settlement_service = SettlementService(db, WalletService(db))
    return await settlement_service.recent_outcomes(limit=limit)
