# app/api/models/prepaid.py
from pydantic import BaseModel, Field, field_validator
from typing import Optional

from app.gateway.pricing import to_micro


class DepositRequest(BaseModel):
    """
    Body of POST /prepaid/deposit.

    The credited amount is whatever the transaction actually transferred;
    `amount`, when given, is only the minimum the depositor expects.
    """
    clientId: str = Field(..., min_length=1, max_length=128, description="Prepaid account key (X-Client-Id).")
    txHash: str = Field(..., min_length=1, max_length=128, pattern=r"^[A-Fa-f0-9]+$", description="Deposit transaction hash.")
    amount: Optional[str] = Field(None, description="Expected deposit amount in NTMPI.", examples=["5.0"])

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            to_micro(value)
        return value


class DepositResponse(BaseModel):
    clientId: str
    txHash: str
    credited: str = Field(..., description="Amount credited in NTMPI.")
    balance: str = Field(..., description="Balance after the deposit.")


class BalanceResponse(BaseModel):
    clientId: str
    balance: str
