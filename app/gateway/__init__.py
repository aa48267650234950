# app/gateway/__init__.py
"""
402 Payment Gateway.

Reverse proxy that gates an upstream API behind NTMPI micropayments on the
Neutaro chain. Clients either pay a per-request invoice on-chain (and
retry with X-Payment-Proof) or draw down a prepaid balance (X-Client-Id).

Key components:
- pricing: route pattern pricing and fixed-point amounts
- store: SQLite persistence for invoices, balances and the payment log
- invoices: invoice creation and lifecycle
- verify: on-chain payment verification via the LCD API
- prepaid: prepaid balance accounting
- proxy: forwarding to the upstream service
- controller: per-request payment decision
- middleware: FastAPI integration
- sweeper: background invoice expiry
- audit: JSON-lines audit log of payment events

Configuration is loaded from environment variables via app.core.config.
"""
