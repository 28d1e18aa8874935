"""
Repository pattern for data access.

Provides clean interfaces for database operations, abstracting SQLAlchemy details.
Each repository handles a single aggregate. Repositories flush but never commit;
the calling service owns the transaction.
"""

from datetime import datetime
from typing import List, Optional, Any

from sqlalchemy import update, func, distinct, case, select
from sqlalchemy.orm import Session

from pledgehub.db.models import (
    User,
    PledgeAccessRequest,
    PledgeSession,
    Pledge,
    PledgePayment,
    PledgeExecutionRecord,
)
from pledgehub.domain.states import (
    AccessRequestStatus,
    ExecutionStatus,
    PledgeSide,
    PledgeStatus,
)
from pledgehub.utils.datetime import utc_now
from pledgehub.utils.errors import NotFoundError, PermissionDeniedError


class UserRepository:
    """Repository for User operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: str) -> Optional[User]:
        return self.db.get(User, user_id)

    def get_or_404(self, user_id: str) -> User:
        user = self.get_by_id(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found", {"user_id": user_id})
        return user

    def require_admin(self, user_id: str) -> User:
        """Load a user and insist on the admin role."""
        user = self.get_by_id(user_id)
        if not user or user.role != "admin":
            raise PermissionDeniedError("Administrator access required", {"user_id": user_id})
        return user

    def create(self, email: str, role: str = "user", **kwargs) -> User:
        user = User(email=email.lower(), role=role, **kwargs)
        self.db.add(user)
        self.db.flush()
        return user


class AccessRequestRepository:
    """Repository for PledgeAccessRequest operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_or_404(self, request_id: str) -> PledgeAccessRequest:
        request = self.db.get(PledgeAccessRequest, request_id)
        if not request:
            raise NotFoundError(f"Access request {request_id} not found", {"request_id": request_id})
        return request

    def find_approved_for_account(self, account_id: str) -> Optional[PledgeAccessRequest]:
        return (
            self.db.query(PledgeAccessRequest)
            .filter(
                PledgeAccessRequest.brokerage_account_id == account_id,
                PledgeAccessRequest.status == AccessRequestStatus.APPROVED,
            )
            .first()
        )

    def find_pending_for_user(self, user_id: str) -> Optional[PledgeAccessRequest]:
        return (
            self.db.query(PledgeAccessRequest)
            .filter(
                PledgeAccessRequest.user_id == user_id,
                PledgeAccessRequest.status == AccessRequestStatus.PENDING,
            )
            .first()
        )

    def find_approved_for_user(self, user_id: str) -> Optional[PledgeAccessRequest]:
        return (
            self.db.query(PledgeAccessRequest)
            .filter(
                PledgeAccessRequest.user_id == user_id,
                PledgeAccessRequest.status == AccessRequestStatus.APPROVED,
            )
            .order_by(PledgeAccessRequest.reviewed_at.desc())
            .first()
        )

    def latest_for_user(self, user_id: str) -> Optional[PledgeAccessRequest]:
        return (
            self.db.query(PledgeAccessRequest)
            .filter(PledgeAccessRequest.user_id == user_id)
            .order_by(PledgeAccessRequest.submitted_at.desc())
            .first()
        )

    def list(self, status: Optional[str] = None, user_id: Optional[str] = None) -> List[PledgeAccessRequest]:
        query = self.db.query(PledgeAccessRequest)
        if status:
            query = query.filter(PledgeAccessRequest.status == status)
        if user_id:
            query = query.filter(PledgeAccessRequest.user_id == user_id)
        return query.order_by(PledgeAccessRequest.submitted_at.desc()).all()


class SessionRepository:
    """Repository for PledgeSession operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_or_404(self, session_id: str) -> PledgeSession:
        session = self.db.get(PledgeSession, session_id)
        if not session:
            raise NotFoundError(f"Session {session_id} not found", {"session_id": session_id})
        return session

    def list(self, status: Optional[str] = None) -> List[PledgeSession]:
        query = self.db.query(PledgeSession)
        if status:
            query = query.filter(PledgeSession.status == status)
        return query.order_by(PledgeSession.session_start.desc()).all()

    def find_expired_active(self, now: datetime) -> List[PledgeSession]:
        return (
            self.db.query(PledgeSession)
            .filter(PledgeSession.status == "active", PledgeSession.session_end < now)
            .all()
        )

    def advance_status(self, session: PledgeSession, expected: str, new: str) -> bool:
        """Conditionally move a session's status; False if someone else moved it first."""
        self.db.flush()
        result = self.db.execute(
            update(PledgeSession)
            .where(PledgeSession.id == session.id, PledgeSession.status == expected)
            .values(status=new, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.db.refresh(session)
        return True

    def count_pledges(self, session_id: str) -> int:
        return (
            self.db.query(func.count(Pledge.id))
            .filter(Pledge.session_id == session_id)
            .scalar()
        )

    def aggregate_stats(self, session_id: str) -> Any:
        """Aggregate live pledge counts and value straight from storage."""
        counted = list(PledgeStatus.COUNTED)
        return self.db.execute(
            select(
                func.count(Pledge.id).label("total_pledges"),
                func.count(distinct(Pledge.brokerage_account_id)).label("unique_pledgers_count"),
                func.coalesce(func.sum(Pledge.qty * Pledge.price_target), 0).label("total_pledge_value"),
                func.coalesce(func.sum(Pledge.qty), 0).label("total_qty"),
                func.coalesce(func.sum(case((Pledge.side == PledgeSide.BUY, 1), else_=0)), 0).label("buy_count"),
                func.coalesce(func.sum(case((Pledge.side == PledgeSide.SELL, 1), else_=0)), 0).label("sell_count"),
                func.coalesce(
                    func.sum(case((Pledge.status == PledgeStatus.EXECUTING, 1), else_=0)), 0
                ).label("executing_count"),
            ).where(Pledge.session_id == session_id, Pledge.status.in_(counted))
        ).one()


class PledgeRepository:
    """Repository for Pledge operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_or_404(self, pledge_id: str) -> Pledge:
        pledge = self.db.get(Pledge, pledge_id)
        if not pledge:
            raise NotFoundError(f"Pledge {pledge_id} not found", {"pledge_id": pledge_id})
        return pledge

    def for_user(self, user_id: str) -> List[Pledge]:
        return (
            self.db.query(Pledge)
            .filter(Pledge.user_id == user_id)
            .order_by(Pledge.created_at.desc())
            .all()
        )

    def for_session(self, session_id: str, status: Optional[str] = None) -> List[Pledge]:
        query = self.db.query(Pledge).filter(Pledge.session_id == session_id)
        if status:
            query = query.filter(Pledge.status == status)
        return query.order_by(Pledge.created_at).all()

    def live_for_session(self, session_id: str) -> List[Pledge]:
        return (
            self.db.query(Pledge)
            .filter(Pledge.session_id == session_id, Pledge.status.notin_(list(PledgeStatus.TERMINAL)))
            .all()
        )

    def awaiting_sell(self) -> List[Pledge]:
        return (
            self.db.query(Pledge)
            .filter(Pledge.status == PledgeStatus.AWAITING_SELL_EXECUTION)
            .order_by(Pledge.created_at)
            .all()
        )

    def transition(self, pledge: Pledge, expected: str, new: str, **values) -> bool:
        """
        Compare-and-swap a pledge's status.

        The UPDATE matches on id, expected status and the version the caller
        read. Zero rows means another actor changed the pledge first.
        """
        self.db.flush()
        result = self.db.execute(
            update(Pledge)
            .where(
                Pledge.id == pledge.id,
                Pledge.status == expected,
                Pledge.version == pledge.version,
            )
            .values(status=new, version=Pledge.version + 1, updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.db.refresh(pledge)
        return True

    def update_guarded(self, pledge: Pledge, **values) -> bool:
        """Version-checked update that leaves the status as it is."""
        return self.transition(pledge, pledge.status, pledge.status, **values)


class PaymentRepository:
    """Repository for PledgePayment operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> PledgePayment:
        payment = PledgePayment(**kwargs)
        self.db.add(payment)
        self.db.flush()
        return payment

    def for_user(self, user_id: str) -> List[PledgePayment]:
        return (
            self.db.query(PledgePayment)
            .filter(PledgePayment.user_id == user_id)
            .order_by(PledgePayment.created_at.desc())
            .all()
        )


class ExecutionRecordRepository:
    """Repository for PledgeExecutionRecord operations."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> PledgeExecutionRecord:
        record = PledgeExecutionRecord(**kwargs)
        self.db.add(record)
        self.db.flush()
        return record

    def completed_leg(self, pledge_id: str, side: str) -> Optional[PledgeExecutionRecord]:
        return (
            self.db.query(PledgeExecutionRecord)
            .filter(
                PledgeExecutionRecord.pledge_id == pledge_id,
                PledgeExecutionRecord.side == side,
                PledgeExecutionRecord.status == ExecutionStatus.COMPLETED,
            )
            .first()
        )

    def for_pledge(self, pledge_id: str) -> List[PledgeExecutionRecord]:
        return (
            self.db.query(PledgeExecutionRecord)
            .filter(PledgeExecutionRecord.pledge_id == pledge_id)
            .order_by(PledgeExecutionRecord.created_at)
            .all()
        )

    def for_user(self, user_id: str) -> List[PledgeExecutionRecord]:
        return (
            self.db.query(PledgeExecutionRecord)
            .filter(PledgeExecutionRecord.user_id == user_id)
            .order_by(PledgeExecutionRecord.created_at.desc())
            .all()
        )
