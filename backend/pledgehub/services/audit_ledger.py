"""
Audit Ledger - append-only record of every state-changing action.

``record`` joins the caller's transaction so an entry commits or rolls back
together with the mutation it describes. ``record_failure`` writes in its
own transaction for attempts whose main transaction was rolled back.
No update or delete path exists.
"""

import csv
import io
import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy.orm import Session
from loguru import logger

from pledgehub.db.models import PledgeAuditLog
from pledgehub.db.session import atomic
from pledgehub.utils.datetime import utc_now


class AuditAction:
    """Audit action vocabulary."""

    ACCESS_REQUESTED = "access_requested"
    ACCESS_GRANTED = "access_granted"
    ACCESS_DENIED = "access_denied"

    SESSION_CREATED = "session_created"
    SESSION_UPDATED = "session_updated"
    SESSION_CLOSED = "session_closed"
    SESSION_EXECUTING = "session_executing"
    SESSION_AWAITING_SELL_EXECUTION = "session_awaiting_sell_execution"
    SESSION_COMPLETED = "session_completed"
    SESSION_CANCELLED = "session_cancelled"
    SESSION_DELETED = "session_deleted"
    SESSION_CLONED = "session_cloned"

    PLEDGE_CREATED = "pledge_created"
    PLEDGE_CANCELLED = "pledge_cancelled"
    PLEDGE_FAILED = "pledge_failed"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"

    BUY_EXECUTION_COMPLETED = "buy_execution_completed"
    BUY_EXECUTION_FAILED = "buy_execution_failed"
    SELL_EXECUTION_COMPLETED = "sell_execution_completed"
    SELL_EXECUTION_FAILED = "sell_execution_failed"

    AUTO_SELL_PAUSED = "auto_sell_paused"
    AUTO_SELL_RESUMED = "auto_sell_resumed"
    AUTO_SELL_TARGET_CHANGED = "auto_sell_target_changed"
    AUTO_SELL_CANCELLED = "auto_sell_cancelled"
    AUTO_SELL_TRIGGERED = "auto_sell_triggered"


class TargetType:
    PLEDGE = "pledge"
    SESSION = "session"
    ACCESS_REQUEST = "access_request"
    PAYMENT = "payment"


CSV_COLUMNS = ["Timestamp", "Action", "TargetType", "ActorID", "Payload", "Success"]


@dataclass
class AuditFilters:
    actor_id: Optional[str] = None
    stock_symbol: Optional[str] = None
    success: Optional[bool] = None
    action: Optional[str] = None
    target_pledge_id: Optional[str] = None
    target_session_id: Optional[str] = None
    limit: Optional[int] = None


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


class AuditLedger:
    """Append-only audit trail for pledges, sessions and access requests."""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        actor_id: Optional[str],
        actor_role: str,
        action: str,
        target_type: str,
        target_pledge_id: Optional[str] = None,
        target_session_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> PledgeAuditLog:
        """Add an entry to the current transaction."""
        entry = PledgeAuditLog(
            actor_id=actor_id,
            actor_role=actor_role,
            action=action,
            target_type=target_type,
            target_pledge_id=target_pledge_id,
            target_session_id=target_session_id,
            payload=_jsonable(payload or {}),
            success=success,
            error_message=error_message,
            created_at=utc_now(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def record_failure(self, **kwargs) -> PledgeAuditLog:
        """Commit a failed-attempt entry in its own transaction."""
        kwargs["success"] = False
        with atomic(self.db):
            entry = self.record(**kwargs)
        logger.info(f"Audit: {entry.action} failed ({entry.error_message})")
        return entry

    def query(self, filters: Optional[AuditFilters] = None) -> List[PledgeAuditLog]:
        """Entries matching ``filters`` in creation order."""
        filters = filters or AuditFilters()
        query = self.db.query(PledgeAuditLog)

        if filters.actor_id:
            query = query.filter(PledgeAuditLog.actor_id == filters.actor_id)
        if filters.success is not None:
            query = query.filter(PledgeAuditLog.success == filters.success)
        if filters.action:
            query = query.filter(PledgeAuditLog.action == filters.action)
        if filters.target_pledge_id:
            query = query.filter(PledgeAuditLog.target_pledge_id == filters.target_pledge_id)
        if filters.target_session_id:
            query = query.filter(PledgeAuditLog.target_session_id == filters.target_session_id)
        entries = query.order_by(PledgeAuditLog.sequence).all()

        if filters.stock_symbol:
            symbol = filters.stock_symbol.upper()
            entries = [e for e in entries if str((e.payload or {}).get("stock_symbol", "")).upper() == symbol]

        if filters.limit:
            entries = entries[: filters.limit]
        return entries

    def export_rows(self, filters: Optional[AuditFilters] = None) -> Iterator[Dict[str, str]]:
        for entry in self.query(filters):
            yield {
                "Timestamp": entry.created_at.isoformat() if entry.created_at else "",
                "Action": entry.action,
                "TargetType": entry.target_type,
                "ActorID": entry.actor_id or "",
                "Payload": json.dumps(entry.payload or {}, sort_keys=True),
                "Success": "true" if entry.success else "false",
            }

    def export_csv(self, filters: Optional[AuditFilters] = None) -> str:
        output = io.StringIO()
        writer = csv.DictWriter(output, fieldnames=CSV_COLUMNS)
        writer.writeheader()
        for row in self.export_rows(filters):
            writer.writerow(row)
        return output.getvalue()
