# app/gateway/audit.py
"""
Audit logging for gateway payment events.

Gateway components report side effects (invoice issued, invoice paid,
balance credited or debited, request forwarded) by writing an event here
rather than notifying listeners. The log serves:
- Dispute resolution
- Financial reconciliation against the payment_log table
- Debugging failed verifications

Log format: JSON lines (one event per line)
Log location: Configured via GATEWAY_AUDIT_LOG_PATH (empty disables it)

Writing an event never raises; failures are logged and the request goes on.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    INVOICE_CREATED = "invoice_created"
    INVOICE_PAID = "invoice_paid"
    INVOICE_EXPIRED = "invoice_expired"
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_PENDING = "payment_pending"
    BALANCE_CREDITED = "balance_credited"
    BALANCE_DEBITED = "balance_debited"
    REQUEST_FORWARDED = "request_forwarded"
    UPSTREAM_ERROR = "upstream_error"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a short request ID for correlating events."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Optional[Path]:
    """Path of the audit log, or None when auditing is disabled."""
    log_path = settings.GATEWAY_AUDIT_LOG_PATH
    if not log_path:
        return None
    return Path(log_path)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    client_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        client_ip: Caller address (if available)
        client_id: Prepaid client identity (if available)
        request_id: Request identifier (generated when omitted)

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "client_id": client_id,
        "data": data,
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    client_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an event to the audit log.

    Returns:
        The request_id used for this event, or None if disabled or on error
    """
    log_path = get_audit_log_path()
    if log_path is None:
        return None

    event = create_audit_event(
        event_type=event_type,
        data=data,
        client_ip=client_ip,
        client_id=client_id,
        request_id=request_id,
    )

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except OSError as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_invoice_created(
    invoice_id: str,
    memo: str,
    amount: str,
    route: str,
    expires_at: str,
    client_ip: Optional[str] = None,
    client_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.INVOICE_CREATED,
        data={
            "invoice_id": invoice_id,
            "memo": memo,
            "amount": amount,
            "route": route,
            "expires_at": expires_at,
        },
        client_ip=client_ip,
        client_id=client_id,
        request_id=request_id,
    )


def log_invoice_paid(
    invoice_id: str,
    tx_hash: str,
    amount: str,
    confirmations: Optional[int],
    client_ip: Optional[str] = None,
    client_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.INVOICE_PAID,
        data={
            "invoice_id": invoice_id,
            "tx_hash": tx_hash,
            "amount": amount,
            "confirmations": confirmations,
        },
        client_ip=client_ip,
        client_id=client_id,
        request_id=request_id,
    )


def log_invoices_expired(count: int, invoice_id: Optional[str] = None) -> Optional[str]:
    """Log expiry, either a sweep (count) or a single invoice expired on access."""
    return log_audit_event(
        event_type=AuditEventType.INVOICE_EXPIRED,
        data={"count": count, "invoice_id": invoice_id},
    )


def log_payment_required_sent(
    invoice_id: str,
    amount: str,
    currency: str,
    pay_to: str,
    route: str,
    client_ip: Optional[str] = None,
    client_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 Payment Required response event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={
            "invoice_id": invoice_id,
            "amount": amount,
            "currency": currency,
            "pay_to": pay_to,
            "route": route,
        },
        client_ip=client_ip,
        client_id=client_id,
        request_id=request_id,
    )


def log_payment_pending(
    invoice_id: str,
    reason: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_PENDING,
        data={"invoice_id": invoice_id, "reason": reason},
        client_ip=client_ip,
        request_id=request_id,
    )


def log_balance_credited(
    client_id: str,
    amount: str,
    balance: str,
    tx_hash: Optional[str] = None,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.BALANCE_CREDITED,
        data={"amount": amount, "balance": balance, "tx_hash": tx_hash},
        client_ip=client_ip,
        client_id=client_id,
        request_id=request_id,
    )


def log_balance_debited(
    client_id: str,
    amount: str,
    route: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.BALANCE_DEBITED,
        data={"amount": amount, "route": route},
        client_ip=client_ip,
        client_id=client_id,
        request_id=request_id,
    )


def log_request_forwarded(
    method: str,
    route: str,
    status_code: int,
    payment_mode: str,
    client_ip: Optional[str] = None,
    client_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.REQUEST_FORWARDED,
        data={
            "method": method,
            "route": route,
            "status_code": status_code,
            "payment_mode": payment_mode,
        },
        client_ip=client_ip,
        client_id=client_id,
        request_id=request_id,
    )


def log_upstream_error(
    method: str,
    route: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.UPSTREAM_ERROR,
        data={"method": method, "route": route},
        client_ip=client_ip,
        request_id=request_id,
    )


def log_error(
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an error event."""
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        client_ip=client_ip,
        request_id=request_id,
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    client_id: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Read entries from the audit log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        client_id: Filter by client identity (optional)

    Returns:
        List of audit events (most recent first)
    """
    log_path = get_audit_log_path()
    if log_path is None or not log_path.exists():
        return []

    events = []
    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                if client_id and event.get("client_id") != client_id:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """
    Get statistics from the audit log.

    Returns:
        Dict with event counts and the first/last event timestamps
    """
    log_path = get_audit_log_path()
    stats: Dict[str, Any] = {
        "total_events": 0,
        "events_by_type": {},
        "first_event": None,
        "last_event": None,
        "log_path": str(log_path) if log_path else None,
        "log_exists": bool(log_path and log_path.exists()),
    }
    if not stats["log_exists"]:
        return stats

    for event in reversed(read_audit_log(max_entries=10 ** 9)):
        stats["total_events"] += 1
        event_type = event.get("event_type", "unknown")
        stats["events_by_type"][event_type] = stats["events_by_type"].get(event_type, 0) + 1
        timestamp = event.get("timestamp")
        if timestamp:
            if stats["first_event"] is None:
                stats["first_event"] = timestamp
            stats["last_event"] = timestamp

    return stats
