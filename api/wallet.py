import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas import (
    DepositCreate,
    TransactionResponse,
    WalletResponse,
    WithdrawalCreate,
    WithdrawalResponse,
)
from domain.models import TransactionType
from domain.services import WalletService
from infra.db import get_async_db

router = APIRouter(prefix="/wallet", tags=["Wallet"])


@router.get("/{user_id}", response_model=WalletResponse)
async def get_wallet(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db)
):
    """Get user wallet balance"""
    return await WalletService(db).get_wallet(user_id)


@router.post("/deposit")
async def deposit(
    request: DepositCreate,
    db: AsyncSession = Depends(get_async_db)
):
    """Credit the wallet, creating it on first deposit"""
    await WalletService(db).deposit(request.user_id, request.amount)
    return {"success": f"{request.amount} deposited successfully!"}


@router.post("/withdraw")
async def withdraw(
    request: WithdrawalCreate,
    db: AsyncSession = Depends(get_async_db)
):
    """Withdraw to the user's active bank account"""
    await WalletService(db).withdraw(request.user_id, request.amount)
    return {"success": "Withdrawal request submitted successfully!"}


@router.get("/{user_id}/transactions", response_model=List[TransactionResponse])
async def get_transactions(
    user_id: uuid.UUID,
    type: Optional[TransactionType] = None,
    limit: int = 50,
    db: AsyncSession = Depends(get_async_db)
):
    """Ledger history, optionally filtered by type"""
    return await WalletService(db).transactions(user_id, type=type, limit=limit)


@router.get("/{user_id}/withdrawals", response_model=List[WithdrawalResponse])
async def get_withdrawals(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db)
):
    """Recent withdrawals, newest first"""
    return await WalletService(db).withdrawals(user_id)
