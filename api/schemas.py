import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, StrictInt

from domain.models import BetResult, Color, TransactionStatus, TransactionType, WithdrawalStatus


class UserCreate(BaseModel):
    email: EmailStr
    name: Optional[str] = Field(None, max_length=100)


class UserResponse(BaseModel):
    id: uuid.UUID
    email: str
    name: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class WalletResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    balance: int
    is_blocked: bool

    class Config:
        from_attributes = True


class BetCreate(BaseModel):
    user_id: uuid.UUID
    color: str = Field(description="red, violet or green")
    number: StrictInt
    amount: StrictInt = Field(description="Stake in the smallest currency unit")


class BetResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    round_id: int
    color: Color
    number: int
    amount: int
    result: BetResult
    created_at: datetime
    settled_at: Optional[datetime]

    class Config:
        from_attributes = True


class BetPlaced(BaseModel):
    success: str
    bet: BetResponse


class DepositCreate(BaseModel):
    user_id: uuid.UUID
    amount: StrictInt


class WithdrawalCreate(BaseModel):
    user_id: uuid.UUID
    amount: StrictInt


class TransactionResponse(BaseModel):
    id: uuid.UUID
    wallet_id: uuid.UUID
    bet_id: Optional[uuid.UUID]
    type: TransactionType
    amount: int
    status: TransactionStatus
    description: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class WithdrawalResponse(BaseModel):
    id: uuid.UUID
    bank_account_id: uuid.UUID
    amount: int
    status: WithdrawalStatus
    created_at: datetime

    class Config:
        from_attributes = True


class RoundPhaseResponse(BaseModel):
    round_id: int
    window_start: datetime
    window_end: datetime
    phase: str
    seconds_remaining: int
    pools: dict


class SettleRequest(BaseModel):
    at: Optional[datetime] = Field(None, description="Instant inside the round to settle; defaults to the current round")


class OutcomeResponse(BaseModel):
    color: Color
    number: int


class TradeResultResponse(BaseModel):
    user_id: uuid.UUID
    bet_id: uuid.UUID
    is_winner: bool
    win_amount: int
    bet_amount: int
    new_balance: int


class SettlementResponse(BaseModel):
    success: str
    round_id: int
    outcome: Optional[OutcomeResponse]
    trades: List[TradeResultResponse]


class RoundResponse(BaseModel):
    id: int
    window_start: datetime
    window_end: datetime
    color: Color
    number: int
    total_staked: int

    class Config:
        from_attributes = True
