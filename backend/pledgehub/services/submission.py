"""
Submission Workflow - turns a signed, paid request into a pledge.

Gate order: approved brokerage link, session open and not full, quantity
and price, risk disclosure, digital consent, fee, payment, then one
transaction writing Pledge + PledgePayment + audit entry. A failed payment
leaves the pledge in ``pending_payment`` with a failed payment row so the
user can retry; it is never promoted without a completed payment.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from loguru import logger

from pledgehub.config import settings
from pledgehub.db.models import Pledge, PledgePayment, PledgeSession
from pledgehub.db.repositories import (
    AccessRequestRepository,
    PaymentRepository,
    PledgeRepository,
    SessionRepository,
)
from pledgehub.db.session import atomic
from pledgehub.domain.consent import AutoSellConfig, DigitalConsent, RiskAcknowledgment, compute_consent_hash
from pledgehub.domain.pricing import compute_convenience_fee, pledge_value, to_decimal
from pledgehub.domain.results import returns_result
from pledgehub.domain.states import (
    ActorRole,
    PaymentStatus,
    PledgeStatus,
    SessionMode,
    SessionStatus,
    pledge_side_for_mode,
)
from pledgehub.domain.validator import exceeds_recommended_limit, recommended_trading_limit
from pledgehub.services.audit_ledger import AuditAction, AuditLedger, TargetType
from pledgehub.services.payments import PaymentOutcome, PaymentProvider, get_payment_provider
from pledgehub.services.session_store import SessionStore
from pledgehub.utils.datetime import utc_now
from pledgehub.utils.errors import (
    ConflictError,
    ConsentIncompleteError,
    DematNotApprovedError,
    DisclosureIncompleteError,
    DuplicatePledgeError,
    InvalidPriceError,
    InvalidQuantityError,
    InvalidTransitionError,
    PaymentFailedError,
    PermissionDeniedError,
    SessionExpiredError,
    SessionFullError,
    ValidationError,
)

WAIVED_PROVIDER = "waived"
RETRYABLE_STATUSES = (PledgeStatus.DRAFT, PledgeStatus.PENDING_PAYMENT)
USER_CANCELLABLE_STATUSES = (
    PledgeStatus.DRAFT,
    PledgeStatus.PENDING_PAYMENT,
    PledgeStatus.PAID,
    PledgeStatus.READY_FOR_EXECUTION,
)


@dataclass
class PledgeSubmission:
    session_id: str
    qty: int
    price_target: Decimal
    risk_acknowledgment: RiskAcknowledgment
    digital_consent: DigitalConsent
    auto_sell_price: Optional[Decimal] = None
    payment_method: Optional[str] = None
    client_correlation_id: Optional[str] = None


@dataclass
class SubmissionReceipt:
    pledge: Pledge
    payment: PledgePayment
    fee: Decimal
    advisory: Optional[Dict[str, Any]] = None


class SubmissionWorkflow:
    """Service that validates, charges and records pledges."""

    def __init__(self, db: Session, payment_provider: Optional[PaymentProvider] = None):
        self.db = db
        self.access = AccessRequestRepository(db)
        self.sessions = SessionRepository(db)
        self.pledges = PledgeRepository(db)
        self.payments = PaymentRepository(db)
        self.session_store = SessionStore(db)
        self.audit = AuditLedger(db)
        self.provider = payment_provider or get_payment_provider()

    # ------------------------------------------------------------------
    # Validation steps
    # ------------------------------------------------------------------

    @staticmethod
    def validate_quantity_and_price(session: PledgeSession, submission: PledgeSubmission) -> None:
        qty = submission.qty
        if qty is None or qty <= 0:
            raise InvalidQuantityError("Quantity must be greater than zero", {"qty": qty})
        if session.min_qty is not None and qty < session.min_qty:
            raise InvalidQuantityError(
                f"Minimum quantity for this session is {session.min_qty}",
                {"qty": qty, "min_qty": session.min_qty},
            )
        if session.max_qty is not None and qty > session.max_qty:
            raise InvalidQuantityError(
                f"Maximum quantity for this session is {session.max_qty}",
                {"qty": qty, "max_qty": session.max_qty},
            )

        price = to_decimal(submission.price_target)
        if price <= 0:
            raise InvalidPriceError("Target price must be greater than zero", {"price_target": str(price)})

        if submission.auto_sell_price is not None:
            if session.session_mode != SessionMode.BUY_SELL_CYCLE:
                raise ValidationError("Sell targets are only available in buy/sell cycle sessions")
            if to_decimal(submission.auto_sell_price) <= 0:
                raise InvalidPriceError(
                    "Sell target must be greater than zero",
                    {"auto_sell_price": str(submission.auto_sell_price)},
                )

    @staticmethod
    def validate_disclosure(ack: Optional[RiskAcknowledgment]) -> None:
        if ack is None or not ack.is_complete(settings.disclosure_version):
            missing = ack.missing_categories() if ack else ["market", "execution", "financial"]
            raise DisclosureIncompleteError(
                "Please acknowledge all risk disclosures before pledging",
                {"missing_categories": missing, "disclosure_version": settings.disclosure_version},
            )

    @staticmethod
    def validate_consent(consent: Optional[DigitalConsent]) -> None:
        if consent is None or not consent.is_complete():
            missing = consent.missing_clauses() if consent else ["terms", "risk", "execution", "signature"]
            raise ConsentIncompleteError(
                "All consent clauses and a signature are required",
                {"missing": missing},
            )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    @returns_result
    def submit(self, user_id: str, submission: PledgeSubmission, now: Optional[datetime] = None) -> SubmissionReceipt:
        """Run the full gate and create a ready-for-execution pledge."""
        now = now or utc_now()

        access = self.access.find_approved_for_user(user_id)
        if not access:
            raise DematNotApprovedError("Your brokerage account has not been approved for pledging")

        session = self.sessions.get_or_404(submission.session_id)
        try:
            self.session_store.check_capacity(session, now)
            if self._live_pledge_exists(user_id, session.id):
                raise DuplicatePledgeError(
                    "You already have an active pledge in this session",
                    {"session_id": session.id},
                )
        except ConflictError as e:
            self._audit_rejected_submission(user_id, session, submission, e)
            raise

        self.validate_quantity_and_price(session, submission)
        self.validate_disclosure(submission.risk_acknowledgment)
        self.validate_consent(submission.digital_consent)

        price = to_decimal(submission.price_target)
        fee = compute_convenience_fee(
            submission.qty, price, session.convenience_fee_type, session.convenience_fee_amount
        )
        consent_hash = compute_consent_hash(
            submission.digital_consent, session.id, session.stock_symbol, submission.qty, price, fee, now
        )

        outcome = self._charge(user_id, session, fee, submission.payment_method)

        if not outcome.success:
            try:
                pledge = self._record_failed_payment(user_id, access.brokerage_account_id, session, submission,
                                                     fee, consent_hash, outcome, now)
            except ConflictError as e:
                self._audit_rejected_submission(user_id, session, submission, e)
                raise
            raise PaymentFailedError(
                outcome.error_message or "Payment failed",
                {"pledge_id": pledge.id, "retry_available": True, "fee": str(fee)},
            )

        try:
            pledge, payment = self._finalize(user_id, access.brokerage_account_id, session, submission,
                                             fee, consent_hash, outcome, now)
        except ConflictError as e:
            if outcome.payment_ref:
                logger.error(
                    f"Payment {outcome.payment_ref} captured but pledge rejected ({e.code}); refund required"
                )
            self._audit_rejected_submission(user_id, session, submission, e)
            raise

        advisory = None
        value = pledge_value(submission.qty, price)
        if exceeds_recommended_limit(access.risk_score, value):
            limit = recommended_trading_limit(access.risk_score)
            advisory = {
                "recommended_limit": str(limit.amount),
                "risk_level": limit.risk_level,
                "pledge_value": str(value),
            }

        logger.info(
            f"Pledge {pledge.id} created: {pledge.side} {pledge.qty} {pledge.stock_symbol} "
            f"@ {pledge.price_target} (fee {fee}, provider {payment.payment_provider})"
        )
        return SubmissionReceipt(pledge=pledge, payment=payment, fee=fee, advisory=advisory)

    def _live_pledge_exists(self, user_id: str, session_id: str) -> bool:
        return any(
            p.user_id == user_id and p.status not in PledgeStatus.TERMINAL
            for p in self.pledges.for_session(session_id)
        )

    def _charge(self, user_id: str, session: PledgeSession, fee: Decimal,
                payment_method: Optional[str]) -> PaymentOutcome:
        if fee <= 0:
            return PaymentOutcome(success=True, provider=WAIVED_PROVIDER, gateway_response={"status": "waived"})
        return self.provider.charge(
            user_id=user_id,
            amount=fee,
            currency=settings.payment_currency,
            description=f"Pledge convenience fee - {session.stock_symbol}",
            payment_method=payment_method,
            metadata={"session_id": session.id},
        )

    def _new_pledge(self, user_id: str, account_id: str, session: PledgeSession, submission: PledgeSubmission,
                    fee: Decimal, consent_hash: str, status: str, paid: bool) -> Pledge:
        auto_sell = None
        if session.session_mode == SessionMode.BUY_SELL_CYCLE:
            target = to_decimal(submission.auto_sell_price) if submission.auto_sell_price is not None else None
            auto_sell = AutoSellConfig.for_target(target, submission.qty).to_column()

        return Pledge(
            session_id=session.id,
            user_id=user_id,
            brokerage_account_id=account_id,
            stock_symbol=session.stock_symbol,
            qty=submission.qty,
            price_target=to_decimal(submission.price_target),
            side=pledge_side_for_mode(session.session_mode),
            consent_hash=consent_hash,
            risk_acknowledgment=submission.risk_acknowledgment.model_dump(mode="json"),
            digital_consent=submission.digital_consent.model_dump(mode="json"),
            convenience_fee_amount=fee,
            convenience_fee_paid=paid,
            auto_sell_config=auto_sell,
            status=status,
            client_correlation_id=submission.client_correlation_id,
        )

    def _insert_pledge(self, pledge: Pledge) -> None:
        self.db.add(pledge)
        try:
            self.db.flush()
        except IntegrityError as e:
            raise DuplicatePledgeError(
                "You already have an active pledge in this session",
                {"session_id": pledge.session_id},
            ) from e

    def _lock_session_capacity(self, session: PledgeSession) -> None:
        """Re-check capacity under a row lock once our pledge is in the transaction."""
        locked = (
            self.db.query(PledgeSession)
            .filter(PledgeSession.id == session.id)
            .with_for_update()
            .one()
        )
        if locked.status != SessionStatus.ACTIVE:
            raise SessionExpiredError("This session is no longer accepting pledges", {"session_id": session.id})
        if locked.capacity:
            row = self.sessions.aggregate_stats(session.id)
            if row.total_pledges > locked.capacity:
                raise SessionFullError(
                    "This session has reached its capacity",
                    {"session_id": session.id, "capacity": locked.capacity},
                )

    def _finalize(self, user_id, account_id, session, submission, fee, consent_hash, outcome, now):
        with atomic(self.db):
            pledge = self._new_pledge(user_id, account_id, session, submission, fee, consent_hash,
                                      PledgeStatus.READY_FOR_EXECUTION, paid=True)
            self._insert_pledge(pledge)
            self._lock_session_capacity(session)

            payment = self.payments.create(
                pledge_id=pledge.id,
                user_id=user_id,
                amount=fee,
                currency=settings.payment_currency,
                status=PaymentStatus.COMPLETED,
                payment_ref=outcome.payment_ref,
                payment_provider=outcome.provider,
                payment_method=submission.payment_method,
                gateway_response=outcome.gateway_response,
                created_at=now,
            )
            pledge.convenience_fee_payment_id = payment.id
            self.db.flush()

            self.audit.record(
                actor_id=user_id,
                actor_role=ActorRole.USER,
                action=AuditAction.PLEDGE_CREATED,
                target_type=TargetType.PLEDGE,
                target_pledge_id=pledge.id,
                target_session_id=session.id,
                payload={
                    "stock_symbol": pledge.stock_symbol,
                    "qty": pledge.qty,
                    "side": pledge.side,
                    "price_target": pledge.price_target,
                    "fee": fee,
                    "payment_id": payment.id,
                    "consent_hash": consent_hash,
                    "client_correlation_id": pledge.client_correlation_id,
                },
            )
        return pledge, payment

    def _record_failed_payment(self, user_id, account_id, session, submission, fee, consent_hash, outcome, now):
        with atomic(self.db):
            pledge = self._new_pledge(user_id, account_id, session, submission, fee, consent_hash,
                                      PledgeStatus.PENDING_PAYMENT, paid=False)
            self._insert_pledge(pledge)
            # Unpaid pledges hold a seat too
            self._lock_session_capacity(session)
            payment = self.payments.create(
                pledge_id=pledge.id,
                user_id=user_id,
                amount=fee,
                currency=settings.payment_currency,
                status=PaymentStatus.FAILED,
                payment_ref=outcome.payment_ref,
                payment_provider=outcome.provider,
                payment_method=submission.payment_method,
                gateway_response=outcome.gateway_response,
                created_at=now,
            )
            self.audit.record(
                actor_id=user_id,
                actor_role=ActorRole.USER,
                action=AuditAction.PAYMENT_FAILED,
                target_type=TargetType.PAYMENT,
                target_pledge_id=pledge.id,
                target_session_id=session.id,
                payload={
                    "stock_symbol": pledge.stock_symbol,
                    "qty": pledge.qty,
                    "fee": fee,
                    "payment_id": payment.id,
                },
                success=False,
                error_message=outcome.error_message,
            )
        logger.warning(f"Convenience fee payment failed for pledge {pledge.id}: {outcome.error_message}")
        return pledge

    def _audit_rejected_submission(self, user_id: str, session: PledgeSession,
                                   submission: PledgeSubmission, error: ConflictError) -> None:
        self.audit.record_failure(
            actor_id=user_id,
            actor_role=ActorRole.USER,
            action=AuditAction.PLEDGE_CREATED,
            target_type=TargetType.PLEDGE,
            target_session_id=session.id,
            payload={
                "stock_symbol": session.stock_symbol,
                "qty": submission.qty,
                "error_code": error.code,
            },
            error_message=error.message,
        )

    # ------------------------------------------------------------------
    # Follow-up operations
    # ------------------------------------------------------------------

    def _owned_pledge(self, pledge_id: str, user_id: str) -> Pledge:
        pledge = self.pledges.get_or_404(pledge_id)
        if pledge.user_id != user_id:
            raise PermissionDeniedError("This pledge belongs to another user", {"pledge_id": pledge_id})
        return pledge

    @returns_result
    def retry_payment(self, pledge_id: str, user_id: str, payment_method: Optional[str] = None,
                      now: Optional[datetime] = None) -> SubmissionReceipt:
        """Charge the fee again for a pledge left unpaid and promote it on success."""
        now = now or utc_now()
        pledge = self._owned_pledge(pledge_id, user_id)
        if pledge.status not in RETRYABLE_STATUSES:
            raise InvalidTransitionError(
                f"Payment cannot be retried for a pledge that is {pledge.status}",
                {"pledge_id": pledge_id, "status": pledge.status},
            )
        session = self.sessions.get_or_404(pledge.session_id)
        fee = to_decimal(pledge.convenience_fee_amount)
        try:
            if session.status != SessionStatus.ACTIVE or session.session_end < now:
                raise SessionExpiredError("This session is no longer accepting pledges", {"session_id": session.id})
            # The retried pledge is already counted, so a full session fails only when over capacity
            with atomic(self.db):
                self._lock_session_capacity(session)
        except ConflictError as e:
            self._audit_rejected_retry(pledge, session, fee, e)
            raise

        outcome = self._charge(user_id, session, fee, payment_method)
        previous = pledge.status

        try:
            payment = self._record_retry(pledge, session, user_id, fee, payment_method, outcome, previous, now)
        except ConflictError as e:
            if outcome.payment_ref:
                logger.error(
                    f"Payment {outcome.payment_ref} captured but retry rejected ({e.code}); refund required"
                )
            self._audit_rejected_retry(pledge, session, fee, e)
            raise

        if not outcome.success:
            raise PaymentFailedError(
                outcome.error_message or "Payment failed",
                {"pledge_id": pledge.id, "retry_available": True, "fee": str(fee)},
            )
        logger.info(f"Payment retry succeeded for pledge {pledge.id}")
        return SubmissionReceipt(pledge=pledge, payment=payment, fee=fee)

    def _record_retry(self, pledge, session, user_id, fee, payment_method, outcome, previous, now) -> PledgePayment:
        pledge_id = pledge.id
        with atomic(self.db):
            if outcome.success:
                self._lock_session_capacity(session)
            payment = self.payments.create(
                pledge_id=pledge.id,
                user_id=user_id,
                amount=fee,
                currency=settings.payment_currency,
                status=PaymentStatus.COMPLETED if outcome.success else PaymentStatus.FAILED,
                payment_ref=outcome.payment_ref,
                payment_provider=outcome.provider,
                payment_method=payment_method,
                gateway_response=outcome.gateway_response,
                created_at=now,
            )
            if outcome.success:
                moved = self.pledges.transition(
                    pledge,
                    previous,
                    PledgeStatus.READY_FOR_EXECUTION,
                    convenience_fee_paid=True,
                    convenience_fee_payment_id=payment.id,
                )
                if not moved:
                    raise InvalidTransitionError("Pledge changed while retrying payment", {"pledge_id": pledge_id})
            self.audit.record(
                actor_id=user_id,
                actor_role=ActorRole.USER,
                action=AuditAction.PAYMENT_COMPLETED if outcome.success else AuditAction.PAYMENT_FAILED,
                target_type=TargetType.PAYMENT,
                target_pledge_id=pledge.id,
                target_session_id=session.id,
                payload={
                    "stock_symbol": pledge.stock_symbol,
                    "fee": fee,
                    "payment_id": payment.id,
                    "previous_status": previous,
                    "new_status": pledge.status,
                },
                success=outcome.success,
                error_message=outcome.error_message,
            )
        return payment

    def _audit_rejected_retry(self, pledge: Pledge, session: PledgeSession, fee: Decimal,
                              error: ConflictError) -> None:
        self.audit.record_failure(
            actor_id=pledge.user_id,
            actor_role=ActorRole.USER,
            action=AuditAction.PAYMENT_COMPLETED,
            target_type=TargetType.PAYMENT,
            target_pledge_id=pledge.id,
            target_session_id=session.id,
            payload={
                "stock_symbol": pledge.stock_symbol,
                "fee": fee,
                "error_code": error.code,
                "status": pledge.status,
            },
            error_message=error.message,
        )

    @returns_result
    def cancel_pledge(self, pledge_id: str, user_id: str, reason: Optional[str] = None) -> Pledge:
        """Owner cancels a pledge before execution starts."""
        pledge = self._owned_pledge(pledge_id, user_id)
        previous = pledge.status
        if previous not in USER_CANCELLABLE_STATUSES:
            raise InvalidTransitionError(
                f"A pledge that is {previous} can no longer be cancelled",
                {"pledge_id": pledge_id, "status": previous},
            )
        with atomic(self.db):
            if not self.pledges.transition(pledge, previous, PledgeStatus.CANCELLED):
                raise InvalidTransitionError("Pledge changed while cancelling", {"pledge_id": pledge_id})
            self.audit.record(
                actor_id=user_id,
                actor_role=ActorRole.USER,
                action=AuditAction.PLEDGE_CANCELLED,
                target_type=TargetType.PLEDGE,
                target_pledge_id=pledge.id,
                target_session_id=pledge.session_id,
                payload={
                    "stock_symbol": pledge.stock_symbol,
                    "previous_status": previous,
                    "new_status": PledgeStatus.CANCELLED,
                    "reason": reason,
                },
            )
        return pledge

    def get_user_pledges(self, user_id: str) -> List[Pledge]:
        return self.pledges.for_user(user_id)

    def get_user_payments(self, user_id: str) -> List[PledgePayment]:
        return self.payments.for_user(user_id)
