# app/api/models/invoice.py
from pydantic import BaseModel, Field
from typing import Optional

from app.gateway.models import Invoice


class InvoiceResponse(BaseModel):
    """
    Invoice as returned by GET /invoices/{id}.
    """
    id: str = Field(..., description="Invoice identifier, sent back as X-Payment-Proof.")
    amount: str = Field(..., description="Amount due in NTMPI.")
    address: str = Field(..., description="Account that must receive the payment.")
    memo: str = Field(..., description="Memo to embed in the on-chain transaction.")
    route: str = Field(..., description="Request path the invoice was issued for.")
    clientId: Optional[str] = Field(None, description="Caller identity, if one was supplied.")
    status: str = Field(..., description="pending, paid or expired.")
    createdAt: str
    expiresAt: str
    txHash: Optional[str] = Field(None, description="Paying transaction, set once paid.")
    paidAt: Optional[str] = None

    @classmethod
    def from_invoice(cls, invoice: Invoice) -> "InvoiceResponse":
        return cls(
            id=invoice.id,
            amount=invoice.amount,
            address=invoice.address,
            memo=invoice.memo,
            route=invoice.route,
            clientId=invoice.client_id,
            status=invoice.status.value,
            createdAt=invoice.created_at,
            expiresAt=invoice.expires_at,
            txHash=invoice.tx_hash,
            paidAt=invoice.paid_at,
        )
