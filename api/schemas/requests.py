from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class InvestRequest(BaseModel):
    user_id: str = Field(min_length=1, description="Caller-supplied user identity")
    amount: Decimal = Field(description="Deposit in PYUSD")


class WithdrawRequest(BaseModel):
    user_id: str = Field(min_length=1, description="Caller-supplied user identity")
    shares: Optional[Decimal] = Field(None, description="Shares to redeem; omit to redeem the whole position")
