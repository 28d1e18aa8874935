"""
Session Store - pledge session lifecycle and live statistics.

Statistics are aggregated from the pledges table on every call; they back
capacity checks and "filling up" warnings, so they are never cached.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session
from loguru import logger

from pledgehub.config import settings
from pledgehub.db.models import PledgeSession
from pledgehub.db.repositories import PledgeRepository, SessionRepository, UserRepository
from pledgehub.db.session import atomic
from pledgehub.domain.pricing import HUNDRED, money, to_decimal
from pledgehub.domain.results import returns_result
from pledgehub.domain.states import (
    ActorRole,
    ExecutionRule,
    FeeType,
    PledgeStatus,
    SessionMode,
    SessionStatus,
    can_advance_session,
    can_transition_pledge,
)
from pledgehub.services.audit_ledger import AuditAction, AuditLedger, TargetType
from pledgehub.utils.datetime import to_naive_utc, utc_now
from pledgehub.utils.errors import (
    InvalidSessionConfigError,
    InvalidTransitionError,
    SessionExpiredError,
    SessionFullError,
)

EDITABLE_FIELDS = {
    "stock_name",
    "description",
    "session_start",
    "session_end",
    "min_qty",
    "max_qty",
    "capacity",
    "convenience_fee_type",
    "convenience_fee_amount",
    "commission_rate_override",
    "allow_amo",
    "stock_price",
    "execution_rule",
    "execution_notes",
}

CLONED_FIELDS = (
    "stock_symbol",
    "stock_name",
    "description",
    "session_mode",
    "execution_rule",
    "min_qty",
    "max_qty",
    "capacity",
    "convenience_fee_type",
    "convenience_fee_amount",
    "commission_rate_override",
    "allow_amo",
    "stock_price",
)


@dataclass
class SessionStats:
    unique_pledgers_count: int
    total_pledges: int
    total_pledge_value: Decimal
    total_qty: int
    buy_count: int
    sell_count: int
    executing_count: int
    capacity: Optional[int]
    fill_percentage: Optional[float]
    is_filling_up: bool

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["total_pledge_value"] = str(self.total_pledge_value)
        return data


def _status_action(status: str) -> str:
    return f"session_{status}"


def validate_session_fields(fields: Dict[str, Any]) -> None:
    """Check cross-field rules on a (possibly partial) session definition."""
    mode = fields.get("session_mode")
    if mode is not None and mode not in SessionMode.ALL:
        raise InvalidSessionConfigError(f"Unknown session mode '{mode}'")

    rule = fields.get("execution_rule")
    if rule is not None and rule not in ExecutionRule.ALL:
        raise InvalidSessionConfigError(f"Unknown execution rule '{rule}'")

    start, end = fields.get("session_start"), fields.get("session_end")
    if start is not None and end is not None and to_naive_utc(start) >= to_naive_utc(end):
        raise InvalidSessionConfigError("session_start must be before session_end")

    min_qty, max_qty = fields.get("min_qty"), fields.get("max_qty")
    if min_qty is not None and min_qty < 1:
        raise InvalidSessionConfigError("min_qty must be at least 1")
    if min_qty is not None and max_qty is not None and min_qty > max_qty:
        raise InvalidSessionConfigError("min_qty must not exceed max_qty")

    capacity = fields.get("capacity")
    if capacity is not None and capacity < 1:
        raise InvalidSessionConfigError("capacity must be at least 1")

    fee_type = fields.get("convenience_fee_type")
    if fee_type is not None and fee_type not in FeeType.ALL:
        raise InvalidSessionConfigError(f"Unknown fee type '{fee_type}'")

    fee_amount = fields.get("convenience_fee_amount")
    if fee_amount is not None:
        amount = to_decimal(fee_amount)
        if amount < 0:
            raise InvalidSessionConfigError("convenience_fee_amount must not be negative")
        if fee_type == FeeType.PERCENTAGE and amount > HUNDRED:
            raise InvalidSessionConfigError("percentage fee must not exceed 100")

    rate = fields.get("commission_rate_override")
    if rate is not None and not (0 <= to_decimal(rate) <= HUNDRED):
        raise InvalidSessionConfigError("commission_rate_override must be between 0 and 100")


class SessionStore:
    """Service for pledge session CRUD, status and statistics."""

    def __init__(self, db: Session):
        self.db = db
        self.users = UserRepository(db)
        self.sessions = SessionRepository(db)
        self.pledges = PledgeRepository(db)
        self.audit = AuditLedger(db)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    @returns_result
    def create_session(self, admin_id: str, **fields) -> PledgeSession:
        self.users.require_admin(admin_id)
        for required in ("stock_symbol", "session_mode", "session_start", "session_end"):
            if fields.get(required) in (None, ""):
                raise InvalidSessionConfigError(f"{required} is required")
        validate_session_fields(fields)

        fields["stock_symbol"] = fields["stock_symbol"].strip().upper()
        fields["session_start"] = to_naive_utc(fields["session_start"])
        fields["session_end"] = to_naive_utc(fields["session_end"])
        fields.setdefault("min_qty", 1)
        fields.setdefault("convenience_fee_type", FeeType.FLAT)
        fields.setdefault("convenience_fee_amount", Decimal("0"))

        with atomic(self.db):
            session = PledgeSession(status=SessionStatus.ACTIVE, created_by=admin_id, **fields)
            self.db.add(session)
            self.db.flush()
            self.audit.record(
                actor_id=admin_id,
                actor_role=ActorRole.ADMIN,
                action=AuditAction.SESSION_CREATED,
                target_type=TargetType.SESSION,
                target_session_id=session.id,
                payload={
                    "stock_symbol": session.stock_symbol,
                    "session_mode": session.session_mode,
                    "capacity": session.capacity,
                },
            )

        logger.info(f"Session {session.id} created for {session.stock_symbol} ({session.session_mode})")
        return session

    @returns_result
    def update_session(self, session_id: str, admin_id: str, **fields) -> PledgeSession:
        """Edit configuration of a non-terminal session. Status is not editable here."""
        self.users.require_admin(admin_id)
        session = self.sessions.get_or_404(session_id)
        if session.status in SessionStatus.TERMINAL:
            raise InvalidTransitionError(f"Session is {session.status} and can no longer be edited")

        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise InvalidSessionConfigError(f"Fields not editable: {', '.join(sorted(unknown))}")

        merged = {key: getattr(session, key) for key in EDITABLE_FIELDS}
        merged["session_mode"] = session.session_mode
        merged.update(fields)
        validate_session_fields(merged)

        with atomic(self.db):
            changes = {}
            for key, value in fields.items():
                if key in ("session_start", "session_end") and value is not None:
                    value = to_naive_utc(value)
                old = getattr(session, key)
                if old != value:
                    changes[key] = {"old": old, "new": value}
                    setattr(session, key, value)
            self.db.flush()
            self.audit.record(
                actor_id=admin_id,
                actor_role=ActorRole.ADMIN,
                action=AuditAction.SESSION_UPDATED,
                target_type=TargetType.SESSION,
                target_session_id=session.id,
                payload={"stock_symbol": session.stock_symbol, "changes": changes},
            )
        return session

    @returns_result
    def delete_session(self, session_id: str, admin_id: str) -> str:
        """Hard delete, only while no pledge references the session."""
        self.users.require_admin(admin_id)
        session = self.sessions.get_or_404(session_id)
        if self.sessions.count_pledges(session_id):
            raise InvalidTransitionError(
                "Sessions with pledges cannot be deleted; cancel the session instead",
                {"session_id": session_id},
            )
        with atomic(self.db):
            self.db.delete(session)
            self.audit.record(
                actor_id=admin_id,
                actor_role=ActorRole.ADMIN,
                action=AuditAction.SESSION_DELETED,
                target_type=TargetType.SESSION,
                target_session_id=session_id,
                payload={"stock_symbol": session.stock_symbol},
            )
        return session_id

    @returns_result
    def clone_session(
        self, session_id: str, admin_id: str, session_start: datetime, session_end: datetime
    ) -> PledgeSession:
        """Start a fresh active session with the configuration of an existing one."""
        self.users.require_admin(admin_id)
        source = self.sessions.get_or_404(session_id)
        fields = {key: getattr(source, key) for key in CLONED_FIELDS}
        fields["session_start"] = session_start
        fields["session_end"] = session_end
        validate_session_fields(fields)

        with atomic(self.db):
            clone = PledgeSession(
                status=SessionStatus.ACTIVE,
                created_by=admin_id,
                **{**fields, "session_start": to_naive_utc(session_start), "session_end": to_naive_utc(session_end)},
            )
            self.db.add(clone)
            self.db.flush()
            self.audit.record(
                actor_id=admin_id,
                actor_role=ActorRole.ADMIN,
                action=AuditAction.SESSION_CLONED,
                target_type=TargetType.SESSION,
                target_session_id=clone.id,
                payload={"stock_symbol": clone.stock_symbol, "source_session_id": source.id},
            )
        return clone

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def transition_session(self, session: PledgeSession, new_status: str, actor_id: Optional[str],
                           actor_role: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """Move a session forward inside the caller's transaction."""
        previous = session.status
        if not can_advance_session(previous, new_status, session.session_mode):
            raise InvalidTransitionError(
                f"Session cannot move from {previous} to {new_status}",
                {"session_id": session.id, "status": previous},
            )
        if not self.sessions.advance_status(session, previous, new_status):
            raise InvalidTransitionError(
                "Session status was changed by another request",
                {"session_id": session.id},
            )
        self.audit.record(
            actor_id=actor_id,
            actor_role=actor_role,
            action=_status_action(new_status),
            target_type=TargetType.SESSION,
            target_session_id=session.id,
            payload={
                "stock_symbol": session.stock_symbol,
                "previous_status": previous,
                "new_status": new_status,
                **(payload or {}),
            },
        )

    @returns_result
    def advance_status(self, session_id: str, new_status: str, admin_id: str) -> PledgeSession:
        """Admin-driven forward status change (cancellation goes through cancel_session)."""
        self.users.require_admin(admin_id)
        if new_status == SessionStatus.CANCELLED:
            raise InvalidTransitionError("Use cancel_session to cancel a session")
        session = self.sessions.get_or_404(session_id)
        with atomic(self.db):
            self.transition_session(session, new_status, admin_id, ActorRole.ADMIN)
        logger.info(f"Session {session_id} moved to {new_status} by admin {admin_id}")
        return session

    @returns_result
    def cancel_session(self, session_id: str, admin_id: str, reason: Optional[str] = None) -> PledgeSession:
        """Soft-cancel a session and every live pledge in it."""
        self.users.require_admin(admin_id)
        session = self.sessions.get_or_404(session_id)
        with atomic(self.db):
            self.transition_session(session, SessionStatus.CANCELLED, admin_id, ActorRole.ADMIN, {"reason": reason})
            for pledge in self.pledges.live_for_session(session_id):
                previous = pledge.status
                if not can_transition_pledge(previous, PledgeStatus.CANCELLED):
                    continue
                if not self.pledges.transition(pledge, previous, PledgeStatus.CANCELLED):
                    raise InvalidTransitionError(
                        "A pledge in this session changed while cancelling; retry",
                        {"pledge_id": pledge.id},
                    )
                self.audit.record(
                    actor_id=admin_id,
                    actor_role=ActorRole.ADMIN,
                    action=AuditAction.PLEDGE_CANCELLED,
                    target_type=TargetType.PLEDGE,
                    target_pledge_id=pledge.id,
                    target_session_id=session_id,
                    payload={
                        "stock_symbol": pledge.stock_symbol,
                        "previous_status": previous,
                        "new_status": PledgeStatus.CANCELLED,
                        "reason": reason or "session cancelled",
                    },
                )
        logger.info(f"Session {session_id} cancelled by admin {admin_id}")
        return session

    def close_expired_sessions(self, now: Optional[datetime] = None) -> List[str]:
        """Close every active session whose end time has passed. Returns closed ids."""
        now = now or utc_now()
        closed = []
        for session in self.sessions.find_expired_active(now):
            with atomic(self.db):
                if not self.sessions.advance_status(session, SessionStatus.ACTIVE, SessionStatus.CLOSED):
                    continue
                self.audit.record(
                    actor_id=None,
                    actor_role=ActorRole.SYSTEM,
                    action=AuditAction.SESSION_CLOSED,
                    target_type=TargetType.SESSION,
                    target_session_id=session.id,
                    payload={
                        "stock_symbol": session.stock_symbol,
                        "previous_status": SessionStatus.ACTIVE,
                        "new_status": SessionStatus.CLOSED,
                        "reason": "session_end passed",
                    },
                )
            closed.append(session.id)
        if closed:
            logger.info(f"Closed {len(closed)} expired session(s)")
        return closed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> PledgeSession:
        return self.sessions.get_or_404(session_id)

    def list_sessions(self, status: Optional[str] = None) -> List[PledgeSession]:
        return self.sessions.list(status=status)

    def stats(self, session_id: str) -> SessionStats:
        """Aggregate statistics from storage (never cached)."""
        session = self.sessions.get_or_404(session_id)
        row = self.sessions.aggregate_stats(session_id)

        total_pledges = int(row.total_pledges or 0)
        fill = None
        if session.capacity:
            fill = round(total_pledges / session.capacity * 100, 2)

        return SessionStats(
            unique_pledgers_count=int(row.unique_pledgers_count or 0),
            total_pledges=total_pledges,
            total_pledge_value=money(row.total_pledge_value or 0),
            total_qty=int(row.total_qty or 0),
            buy_count=int(row.buy_count or 0),
            sell_count=int(row.sell_count or 0),
            executing_count=int(row.executing_count or 0),
            capacity=session.capacity,
            fill_percentage=fill,
            is_filling_up=fill is not None and fill >= settings.filling_up_threshold,
        )

    def check_capacity(self, session: PledgeSession, now: Optional[datetime] = None) -> SessionStats:
        """Raise SessionExpired or SessionFull if the session cannot take another pledge."""
        now = now or utc_now()
        if session.status != SessionStatus.ACTIVE or session.session_end < now:
            raise SessionExpiredError(
                "This session is no longer accepting pledges",
                {"session_id": session.id, "status": session.status},
            )
        stats = self.stats(session.id)
        if session.capacity and stats.total_pledges >= session.capacity:
            raise SessionFullError(
                "This session has reached its capacity",
                {"session_id": session.id, "capacity": session.capacity},
            )
        return stats
