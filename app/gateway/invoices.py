# app/gateway/invoices.py
"""
Invoice creation and lifecycle.

An invoice is issued when a request arrives without valid payment evidence.
The client pays the invoice's amount to the gateway address on-chain with
the invoice memo attached, then retries with `X-Payment-Proof: <invoice id>`.

Status only moves forward: pending -> paid or pending -> expired.
"""
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.gateway import audit
from app.gateway.models import Invoice, InvoiceStatus
from app.gateway.pricing import to_micro
from app.gateway.store import GatewayStore, format_timestamp, utc_now

logger = logging.getLogger(__name__)

MEMO_PREFIX = "cpg-"
MEMO_ID_CHARS = 8
MAX_MEMO_ATTEMPTS = 5


def make_memo(invoice_id: str) -> str:
    """Short on-chain reference derived from the invoice id."""
    return f"{MEMO_PREFIX}{invoice_id[:MEMO_ID_CHARS]}"


class InvoiceManager:
    """Creates invoices and applies their state transitions."""

    def __init__(self, store: GatewayStore, payment_address: str):
        self.store = store
        self.payment_address = payment_address

    def create_invoice(
        self,
        route: str,
        price: str,
        client_id: Optional[str],
        ttl_seconds: int
    ) -> Invoice:
        """
        Issue a pending invoice for a request.

        Args:
            route: Request path the invoice gates
            price: Price string as configured (echoed back to the client)
            client_id: Optional caller identity
            ttl_seconds: How long the invoice stays payable

        Returns:
            The persisted invoice
        """
        amount_micro = to_micro(price)

        for attempt in range(MAX_MEMO_ATTEMPTS):
            now = datetime.now(timezone.utc)
            invoice_id = str(uuid.uuid4())
            invoice = Invoice(
                id=invoice_id,
                amount=price,
                amount_micro=amount_micro,
                address=self.payment_address,
                memo=make_memo(invoice_id),
                route=route,
                client_id=client_id,
                status=InvoiceStatus.PENDING,
                created_at=format_timestamp(now),
                expires_at=format_timestamp(now + timedelta(seconds=ttl_seconds)),
            )
            try:
                self.store.insert_invoice(invoice)
            except sqlite3.IntegrityError:
                # 8 hex chars of a uuid4 can collide across a large invoice table
                logger.warning(f"Memo collision on {invoice.memo}, retrying ({attempt + 1}/{MAX_MEMO_ATTEMPTS})")
                continue

            logger.info(f"Created invoice {invoice.id} memo={invoice.memo} amount={price} route={route}")
            return invoice

        raise RuntimeError(f"Could not allocate a unique invoice memo after {MAX_MEMO_ATTEMPTS} attempts")

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        return self.store.get_invoice(invoice_id)

    def get_invoice_by_memo(self, memo: str) -> Optional[Invoice]:
        return self.store.get_invoice_by_memo(memo)

    def mark_paid(self, invoice_id: str, tx_hash: str, route: Optional[str] = None) -> bool:
        """
        Mark a pending invoice paid.

        Repeated calls are no-ops and never overwrite tx_hash/paid_at.

        Returns:
            True if this call performed the transition
        """
        transitioned = self.store.mark_paid(invoice_id, tx_hash, utc_now(), route=route)
        if transitioned:
            logger.info(f"Invoice {invoice_id} paid by tx {tx_hash}")
        else:
            logger.debug(f"Invoice {invoice_id} not pending, mark_paid ignored")
        return transitioned

    def expire_if_stale(self, invoice: Invoice) -> Invoice:
        """
        Expire a pending invoice whose expiry has passed.

        Returns:
            The current stored state of the invoice
        """
        if invoice.status != InvoiceStatus.PENDING:
            return invoice

        now = utc_now()
        if invoice.expires_at >= now:
            return invoice

        if self.store.expire_invoice(invoice.id, now):
            logger.info(f"Invoice {invoice.id} expired on access")
            audit.log_invoices_expired(1, invoice_id=invoice.id)

        return self.store.get_invoice(invoice.id) or invoice

    def expire_sweep(self, now: Optional[str] = None) -> int:
        """Expire every stale pending invoice. Returns the number expired."""
        return self.store.expire_pending(now or utc_now())
