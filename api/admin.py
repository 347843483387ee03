"""
Administrative wallet controls.

Access control is provided by the surrounding deployment; these routes only
expose the block toggle the wallet ledger honours.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas import WalletResponse
from domain.services import WalletService
from infra.db import get_async_db

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/wallets/{wallet_id}/toggle-block", response_model=WalletResponse)
async def toggle_wallet_block(
    wallet_id: uuid.UUID,
    blocked: Optional[bool] = None,
    db: AsyncSession = Depends(get_async_db)
):
    """Block or unblock a wallet; toggles when ``blocked`` is omitted"""
    return await WalletService(db).set_blocked(wallet_id, blocked)
