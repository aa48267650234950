# app/gateway/models.py
"""Domain records shared by the gateway components."""
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"


class PaymentDirection(str, Enum):
    IN = "in"
    OUT = "out"


class Invoice(BaseModel):
    """
    Payment contract for a single gated request.

    `amount` echoes the configured price string; `amount_micro` is the same
    value in minor units and is what verification compares against.
    """
    id: str
    amount: str
    amount_micro: int
    address: str
    memo: str
    route: str
    client_id: Optional[str] = None
    status: InvoiceStatus = InvoiceStatus.PENDING
    created_at: str
    expires_at: str
    tx_hash: Optional[str] = None
    paid_at: Optional[str] = None


class PaymentLogEntry(BaseModel):
    id: Optional[int] = None
    invoice_id: Optional[str] = None
    client_id: Optional[str] = None
    amount: str
    amount_micro: int
    direction: PaymentDirection
    route: Optional[str] = None
    tx_hash: Optional[str] = None
    created_at: str


class TxResult(BaseModel):
    """Outcome of an on-chain lookup. found=False means "retry later"."""
    found: bool
    tx_hash: Optional[str] = None
    amount: Optional[str] = None
    memo: Optional[str] = None
    confirmations: Optional[int] = None
