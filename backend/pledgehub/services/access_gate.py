"""
Access Gate - links users to brokerage accounts before they may pledge.

A brokerage account can be approved for at most one user and a user can
have at most one pending request. Both rules are partial unique indexes;
the pre-checks below only produce friendlier errors and are not relied on
under concurrency.
"""

from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from loguru import logger

from pledgehub.db.models import PledgeAccessRequest
from pledgehub.db.repositories import AccessRequestRepository, UserRepository
from pledgehub.db.session import atomic
from pledgehub.domain.results import returns_result
from pledgehub.domain.states import AccessRequestStatus, ActorRole
from pledgehub.domain.validator import calculate_risk_score, validate_account_id
from pledgehub.log_config import mask_account_id
from pledgehub.services.audit_ledger import AuditAction, AuditLedger, TargetType
from pledgehub.utils.datetime import utc_now
from pledgehub.utils.errors import (
    AccountAlreadyLinkedError,
    ConflictError,
    ConsentIncompleteError,
    DuplicatePendingRequestError,
    InvalidAccountIdError,
    InvalidTransitionError,
    ValidationError,
)

DEFAULT_REJECTION_REASON = "Request rejected by admin"


class AccessGate:
    """Service for pledge access requests and their review."""

    def __init__(self, db: Session):
        self.db = db
        self.users = UserRepository(db)
        self.requests = AccessRequestRepository(db)
        self.audit = AuditLedger(db)

    @returns_result
    def submit_request(
        self,
        user_id: str,
        raw_account_id: str,
        broker: str,
        experience: Optional[str] = None,
        income: Optional[str] = None,
        consent_given: bool = True,
    ) -> PledgeAccessRequest:
        """
        Create a pending access request.

        Resubmitting after a rejection creates a new row; the rejected one is
        left untouched.
        """
        validation = validate_account_id(raw_account_id, broker)
        if not validation.is_valid:
            raise InvalidAccountIdError(validation.message, {"broker": broker})
        if not consent_given:
            raise ConsentIncompleteError("Consent to link the brokerage account is required")

        self.users.get_or_404(user_id)
        account_id = validation.normalized_value
        risk_score = calculate_risk_score(experience, income)

        try:
            with atomic(self.db):
                linked = self.requests.find_approved_for_account(account_id)
                if linked and linked.user_id != user_id:
                    raise AccountAlreadyLinkedError(
                        "This brokerage account is already linked to another user",
                        {"broker": broker},
                    )
                if self.requests.find_pending_for_user(user_id):
                    raise DuplicatePendingRequestError("You already have a pending access request")

                request = PledgeAccessRequest(
                    user_id=user_id,
                    brokerage_account_id=account_id,
                    broker=broker.lower(),
                    trading_experience=experience,
                    annual_income_range=income,
                    risk_score=risk_score,
                    consent_given=consent_given,
                    status=AccessRequestStatus.PENDING,
                    submitted_at=utc_now(),
                )
                self.db.add(request)
                try:
                    self.db.flush()
                except IntegrityError as e:
                    raise DuplicatePendingRequestError("You already have a pending access request") from e

                self.audit.record(
                    actor_id=user_id,
                    actor_role=ActorRole.USER,
                    action=AuditAction.ACCESS_REQUESTED,
                    target_type=TargetType.ACCESS_REQUEST,
                    payload={"request_id": request.id, "broker": request.broker, "risk_score": risk_score},
                )
        except ConflictError as e:
            self.audit.record_failure(
                actor_id=user_id,
                actor_role=ActorRole.USER,
                action=AuditAction.ACCESS_REQUESTED,
                target_type=TargetType.ACCESS_REQUEST,
                payload={"broker": broker, "error_code": e.code},
                error_message=e.message,
            )
            raise

        logger.info(
            f"Access request {request.id} submitted by {user_id} "
            f"for {mask_account_id(account_id)} (risk score {risk_score})"
        )
        return request

    @returns_result
    def review(
        self,
        request_id: str,
        decision: str,
        admin_id: str,
        reason: Optional[str] = None,
        admin_notes: Optional[str] = None,
    ) -> PledgeAccessRequest:
        """Approve or reject a pending request. Administrator only."""
        self.users.require_admin(admin_id)
        if decision not in (AccessRequestStatus.APPROVED, AccessRequestStatus.REJECTED):
            raise ValidationError(f"Unknown decision '{decision}'", {"decision": decision})

        request = self.requests.get_or_404(request_id)
        if request.status != AccessRequestStatus.PENDING:
            raise InvalidTransitionError(
                f"Request is already {request.status}",
                {"request_id": request_id, "status": request.status},
            )

        action = AuditAction.ACCESS_GRANTED if decision == AccessRequestStatus.APPROVED else AuditAction.ACCESS_DENIED
        try:
            with atomic(self.db):
                if decision == AccessRequestStatus.APPROVED:
                    self._approve(request, admin_id, admin_notes)
                else:
                    self._reject(request, admin_id, reason, admin_notes)
                self.audit.record(
                    actor_id=admin_id,
                    actor_role=ActorRole.ADMIN,
                    action=action,
                    target_type=TargetType.ACCESS_REQUEST,
                    payload={
                        "request_id": request.id,
                        "user_id": request.user_id,
                        "previous_status": AccessRequestStatus.PENDING,
                        "new_status": decision,
                        "rejection_reason": request.rejection_reason,
                    },
                )
        except ConflictError as e:
            self.audit.record_failure(
                actor_id=admin_id,
                actor_role=ActorRole.ADMIN,
                action=action,
                target_type=TargetType.ACCESS_REQUEST,
                payload={"request_id": request_id, "error_code": e.code},
                error_message=e.message,
            )
            raise

        logger.info(f"Access request {request.id} {decision} by admin {admin_id}")
        return request

    def _approve(self, request: PledgeAccessRequest, admin_id: str, admin_notes: Optional[str]) -> None:
        linked = self.requests.find_approved_for_account(request.brokerage_account_id)
        if linked and linked.id != request.id:
            raise AccountAlreadyLinkedError(
                "This brokerage account already has an approved link",
                {"request_id": request.id},
            )

        now = utc_now()
        request.status = AccessRequestStatus.APPROVED
        request.reviewed_at = now
        request.reviewed_by = admin_id
        request.admin_notes = admin_notes

        user = self.users.get_or_404(request.user_id)
        user.has_pledge_access = True
        user.linked_brokerage_account_id = request.brokerage_account_id
        user.linked_broker = request.broker
        user.pledge_access_granted_at = now

        try:
            self.db.flush()
        except IntegrityError as e:
            raise AccountAlreadyLinkedError(
                "This brokerage account already has an approved link",
                {"request_id": request.id},
            ) from e

    def _reject(
        self,
        request: PledgeAccessRequest,
        admin_id: str,
        reason: Optional[str],
        admin_notes: Optional[str],
    ) -> None:
        request.status = AccessRequestStatus.REJECTED
        request.reviewed_at = utc_now()
        request.reviewed_by = admin_id
        request.rejection_reason = reason or DEFAULT_REJECTION_REASON
        request.admin_notes = admin_notes
        self.db.flush()

    def latest_request(self, user_id: str) -> Optional[PledgeAccessRequest]:
        return self.requests.latest_for_user(user_id)

    def list_requests(self, status: Optional[str] = None) -> List[PledgeAccessRequest]:
        return self.requests.list(status=status)

    def approved_account(self, user_id: str) -> Optional[PledgeAccessRequest]:
        """The approved request a pledge binds to, if any."""
        return self.requests.find_approved_for_user(user_id)
