# app/gateway/prepaid.py
"""
Prepaid balance accounting.

Clients deposit NTMPI on-chain, post the transaction hash to
/prepaid/deposit, and are then charged per request from their balance
instead of paying an invoice each time. Balances are stored in minor units;
amounts cross this interface as decimal strings.
"""
import logging
from typing import Optional

from app.gateway.pricing import format_micro, to_micro
from app.gateway.store import GatewayStore, utc_now

logger = logging.getLogger(__name__)


class PrepaidLedger:
    """Atomic balance operations on the gateway store."""

    def __init__(self, store: GatewayStore):
        self.store = store

    def get_balance(self, client_id: str) -> str:
        """Current balance, "0" for unknown clients (no account is created)."""
        balance_micro = self.store.get_balance_micro(client_id)
        if balance_micro is None:
            return "0"
        return format_micro(balance_micro)

    def add_balance(self, client_id: str, amount: str) -> str:
        """Credit a client, creating the account if absent. Returns the new balance."""
        new_balance = format_micro(self.store.add_balance(client_id, to_micro(amount), utc_now()))
        logger.info(f"Prepaid: credited {amount} to {client_id}, balance {new_balance}")
        return new_balance

    def deduct_balance(self, client_id: str, amount: str, route: Optional[str] = None) -> bool:
        """
        Charge a client if, and only if, the balance covers the amount.

        Args:
            client_id: Prepaid account key
            amount: Amount in NTMPI
            route: When given, an outgoing payment-log entry for this route is
                written atomically with the debit

        Returns:
            True if the balance was debited, False (and nothing changed) otherwise
        """
        deducted = self.store.deduct_balance(client_id, to_micro(amount), utc_now(), route=route)
        if deducted:
            logger.info(f"Prepaid: debited {amount} from {client_id}")
        else:
            logger.info(f"Prepaid: insufficient balance for {client_id} (needs {amount})")
        return deducted

    def credit_deposit(self, client_id: str, tx_hash: str, amount: str) -> str:
        """
        Credit a verified on-chain deposit.

        Raises:
            DuplicatePaymentError: If tx_hash was already credited
        """
        new_balance = format_micro(
            self.store.credit_deposit(client_id, tx_hash, to_micro(amount), utc_now())
        )
        logger.info(f"Prepaid: deposit {tx_hash} credited {amount} to {client_id}, balance {new_balance}")
        return new_balance
