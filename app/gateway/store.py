# app/gateway/store.py
"""
SQLite storage for invoices, prepaid balances and the payment log.

Every public method opens its own connection, so the store can be shared
by the request thread pool and the expiry sweeper. WAL mode lets readers
proceed while a writer holds the lock.

Consistency rules:
- Each state change is a single conditional statement, or one
  BEGIN IMMEDIATE transaction when a payment-log row must be written with it.
- Balances are integer minor units with a CHECK (balance_micro >= 0).
- A transaction hash can be recorded as an incoming payment only once. Hashes
  are hex and stored upper-cased, so a different spelling cannot slip past.
"""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from app.core.config import settings
from app.core.errors import DuplicatePaymentError
from app.gateway.models import Invoice, PaymentDirection, PaymentLogEntry
from app.gateway.pricing import format_micro

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS invoices (
    id TEXT PRIMARY KEY,
    amount TEXT NOT NULL,
    amount_micro INTEGER NOT NULL CHECK (amount_micro >= 0),
    address TEXT NOT NULL,
    memo TEXT NOT NULL UNIQUE,
    route TEXT NOT NULL,
    client_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'paid', 'expired')),
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    tx_hash TEXT,
    paid_at TEXT,
    CHECK ((status = 'paid') = (tx_hash IS NOT NULL AND paid_at IS NOT NULL))
);

CREATE INDEX IF NOT EXISTS idx_invoices_status_expires ON invoices(status, expires_at);

CREATE TABLE IF NOT EXISTS prepaid_accounts (
    client_id TEXT PRIMARY KEY,
    balance_micro INTEGER NOT NULL DEFAULT 0 CHECK (balance_micro >= 0),
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS payment_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    invoice_id TEXT,
    client_id TEXT,
    amount TEXT NOT NULL,
    amount_micro INTEGER NOT NULL,
    direction TEXT NOT NULL CHECK (direction IN ('in', 'out')),
    route TEXT,
    tx_hash TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_payment_log_client ON payment_log(client_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_payment_log_incoming_tx
    ON payment_log(tx_hash) WHERE direction = 'in' AND tx_hash IS NOT NULL;
"""

INVOICE_COLUMNS = (
    "id, amount, amount_micro, address, memo, route, client_id, status, "
    "created_at, expires_at, tx_hash, paid_at"
)


def utc_now() -> str:
    """Current time as a fixed-width ISO-8601 UTC string (sortable as text)."""
    return format_timestamp(datetime.now(timezone.utc))


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def normalize_tx_hash(tx_hash: str) -> str:
    """Canonical form of a hex transaction hash."""
    return tx_hash.strip().upper()


class GatewayStore:
    """Durable transactional store backing invoices and prepaid balances."""

    def __init__(self, db_path: str, timeout: float = 5.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        parent = Path(self.db_path).parent
        if not parent.exists():
            parent.mkdir(parents=True, exist_ok=True)
        self._migrate()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _migrate(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.executescript(SCHEMA)
        finally:
            conn.close()
        logger.info(f"Gateway store ready at {self.db_path}")

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database write lock from the start."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    # --- Invoices ---

    def insert_invoice(self, invoice: Invoice) -> Invoice:
        """
        Persist a new invoice.

        Raises:
            sqlite3.IntegrityError: If the id or memo already exists
        """
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO invoices ({INVOICE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    invoice.id, invoice.amount, invoice.amount_micro, invoice.address,
                    invoice.memo, invoice.route, invoice.client_id, invoice.status.value,
                    invoice.created_at, invoice.expires_at, invoice.tx_hash, invoice.paid_at,
                ),
            )
        return invoice

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        with self._read() as conn:
            row = conn.execute(
                f"SELECT {INVOICE_COLUMNS} FROM invoices WHERE id = ?", (invoice_id,)
            ).fetchone()
        return Invoice(**dict(row)) if row else None

    def get_invoice_by_memo(self, memo: str) -> Optional[Invoice]:
        with self._read() as conn:
            row = conn.execute(
                f"SELECT {INVOICE_COLUMNS} FROM invoices WHERE memo = ?", (memo,)
            ).fetchone()
        return Invoice(**dict(row)) if row else None

    def mark_paid(
        self,
        invoice_id: str,
        tx_hash: str,
        paid_at: str,
        route: Optional[str] = None
    ) -> bool:
        """
        Transition a pending invoice to paid and log the incoming payment.

        Only the call that performs the transition writes the log row, so
        concurrent confirmations of the same invoice log it exactly once.

        Returns:
            True if this call moved the invoice from pending to paid

        Raises:
            DuplicatePaymentError: If tx_hash was already credited elsewhere
        """
        tx_hash = normalize_tx_hash(tx_hash)
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    "UPDATE invoices SET status = 'paid', tx_hash = ?, paid_at = ? "
                    "WHERE id = ? AND status = 'pending'",
                    (tx_hash, paid_at, invoice_id),
                )
                if cursor.rowcount != 1:
                    return False
                conn.execute(
                    "INSERT INTO payment_log "
                    "(invoice_id, client_id, amount, amount_micro, direction, route, tx_hash, created_at) "
                    "SELECT id, client_id, amount, amount_micro, 'in', COALESCE(?, route), ?, ? "
                    "FROM invoices WHERE id = ?",
                    (route, tx_hash, paid_at, invoice_id),
                )
        except sqlite3.IntegrityError as e:
            logger.warning(f"Refusing to mark invoice {invoice_id} paid with reused tx {tx_hash}: {e}")
            raise DuplicatePaymentError(
                "Transaction already credited", details={"txHash": tx_hash}
            ) from e
        return True

    def expire_invoice(self, invoice_id: str, now: str) -> bool:
        """Expire one invoice if it is still pending and past its expiry."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE invoices SET status = 'expired' "
                "WHERE id = ? AND status = 'pending' AND expires_at < ?",
                (invoice_id, now),
            )
            return cursor.rowcount == 1

    def expire_pending(self, now: str) -> int:
        """Expire every pending invoice past its expiry. Returns the row count."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE invoices SET status = 'expired' WHERE status = 'pending' AND expires_at < ?",
                (now,),
            )
            return cursor.rowcount

    # --- Prepaid balances ---

    def get_balance_micro(self, client_id: str) -> Optional[int]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT balance_micro FROM prepaid_accounts WHERE client_id = ?", (client_id,)
            ).fetchone()
        return row["balance_micro"] if row else None

    def add_balance(self, client_id: str, amount_micro: int, now: str) -> int:
        """Create the account if needed and add to it. Returns the new balance."""
        with self._transaction() as conn:
            return self._upsert_balance(conn, client_id, amount_micro, now)

    def deduct_balance(
        self,
        client_id: str,
        amount_micro: int,
        now: str,
        route: Optional[str] = None
    ) -> bool:
        """
        Atomically subtract amount_micro if the balance covers it.

        When route is given, the outgoing payment-log row is written in the
        same transaction.

        Returns:
            False without any mutation when the balance is insufficient
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE prepaid_accounts SET balance_micro = balance_micro - ?, updated_at = ? "
                "WHERE client_id = ? AND balance_micro >= ?",
                (amount_micro, now, client_id, amount_micro),
            )
            if cursor.rowcount != 1:
                return False
            if route is not None:
                self._insert_log(conn, PaymentLogEntry(
                    client_id=client_id,
                    amount=format_micro(amount_micro),
                    amount_micro=amount_micro,
                    direction=PaymentDirection.OUT,
                    route=route,
                    created_at=now,
                ))
            return True

    def credit_deposit(self, client_id: str, tx_hash: str, amount_micro: int, now: str) -> int:
        """
        Credit a verified on-chain deposit exactly once.

        Returns:
            The new balance in minor units

        Raises:
            DuplicatePaymentError: If tx_hash was already credited
        """
        tx_hash = normalize_tx_hash(tx_hash)
        try:
            with self._transaction() as conn:
                self._insert_log(conn, PaymentLogEntry(
                    client_id=client_id,
                    amount=format_micro(amount_micro),
                    amount_micro=amount_micro,
                    direction=PaymentDirection.IN,
                    route="deposit",
                    tx_hash=tx_hash,
                    created_at=now,
                ))
                return self._upsert_balance(conn, client_id, amount_micro, now)
        except sqlite3.IntegrityError as e:
            logger.warning(f"Deposit tx {tx_hash} for {client_id} already credited")
            raise DuplicatePaymentError(
                "Transaction already credited", details={"txHash": tx_hash}
            ) from e

    def _upsert_balance(self, conn: sqlite3.Connection, client_id: str, amount_micro: int, now: str) -> int:
        row = conn.execute(
            "INSERT INTO prepaid_accounts (client_id, balance_micro, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(client_id) DO UPDATE SET "
            "balance_micro = balance_micro + excluded.balance_micro, updated_at = excluded.updated_at "
            "RETURNING balance_micro",
            (client_id, amount_micro, now),
        ).fetchone()
        return row["balance_micro"]

    # --- Payment log ---

    def append_payment_log(self, entry: PaymentLogEntry) -> None:
        with self._transaction() as conn:
            self._insert_log(conn, entry)

    def _insert_log(self, conn: sqlite3.Connection, entry: PaymentLogEntry) -> None:
        conn.execute(
            "INSERT INTO payment_log "
            "(invoice_id, client_id, amount, amount_micro, direction, route, tx_hash, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.invoice_id, entry.client_id, entry.amount, entry.amount_micro,
                entry.direction.value, entry.route,
                normalize_tx_hash(entry.tx_hash) if entry.tx_hash else None,
                entry.created_at,
            ),
        )

    def list_payment_log(self, client_id: Optional[str] = None, limit: int = 100) -> List[PaymentLogEntry]:
        """Return log entries, most recent first."""
        query = (
            "SELECT id, invoice_id, client_id, amount, amount_micro, direction, route, tx_hash, created_at "
            "FROM payment_log"
        )
        params: tuple = ()
        if client_id is not None:
            query += " WHERE client_id = ?"
            params = (client_id,)
        query += " ORDER BY id DESC LIMIT ?"

        with self._read() as conn:
            rows = conn.execute(query, params + (limit,)).fetchall()
        return [PaymentLogEntry(**dict(row)) for row in rows]


# Global store instance
_store: Optional[GatewayStore] = None
_store_lock = threading.Lock()


def get_store() -> GatewayStore:
    """
    Get the global store instance, opening GATEWAY_DB on first use.

    Returns:
        The singleton GatewayStore
    """
    global _store

    if _store is None:
        with _store_lock:
            if _store is None:
                _store = GatewayStore(settings.GATEWAY_DB)

    return _store


def reset_store() -> None:
    """Drop the global store (useful for testing)."""
    global _store
    with _store_lock:
        _store = None
