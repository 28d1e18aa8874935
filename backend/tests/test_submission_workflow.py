"""
Tests for the pledge submission gate, payment stage and follow-up operations.
"""

import os
import sys
from datetime import timedelta
from decimal import Decimal

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from conftest import SECOND_ZERODHA_ACCOUNT, ZERODHA_ACCOUNT
from pledgehub.db.models import Pledge, PledgeAuditLog, PledgePayment
from pledgehub.domain.consent import DigitalConsent, RiskAcknowledgment
from pledgehub.services.session_store import SessionStore
from pledgehub.services.submission import SubmissionWorkflow
from pledgehub.utils.datetime import utc_now
from pledgehub.utils.errors import (
    ConsentIncompleteError,
    DematNotApprovedError,
    DisclosureIncompleteError,
    DuplicatePledgeError,
    InvalidPriceError,
    InvalidQuantityError,
    InvalidTransitionError,
    NotFoundError,
    PaymentFailedError,
    PermissionDeniedError,
    SessionExpiredError,
    SessionFullError,
    ValidationError,
)


class TestSubmitHappyPath:
    def test_creates_ready_pledge_with_payment(self, db_session, approved_user, make_session, submission_factory):
        session = make_session()

        result = SubmissionWorkflow(db_session).submit(approved_user.id, submission_factory(session.id))

        assert result.ok
        receipt = result.value
        pledge = receipt.pledge
        assert pledge.status == "ready_for_execution"
        assert pledge.side == "buy"
        assert pledge.brokerage_account_id == ZERODHA_ACCOUNT
        assert pledge.convenience_fee_paid
        assert pledge.convenience_fee_payment_id == receipt.payment.id
        assert len(pledge.consent_hash) == 64
        assert receipt.fee == Decimal("50.00")
        assert receipt.payment.status == "completed"
        assert receipt.payment.payment_provider == "simulated"
        assert receipt.advisory is None

        entry = db_session.query(PledgeAuditLog).filter_by(action="pledge_created").one()
        assert entry.success
        assert entry.target_pledge_id == pledge.id
        assert entry.payload["stock_symbol"] == "RELIANCE"

    def test_percentage_fee(self, db_session, approved_user, make_session, submission_factory):
        session = make_session(convenience_fee_type="percentage", convenience_fee_amount=Decimal("0.5"))

        receipt = SubmissionWorkflow(db_session).submit(
            approved_user.id, submission_factory(session.id, qty=10, price_target=2500)
        ).unwrap()

        assert receipt.fee == Decimal("125.00")
        assert Decimal(receipt.payment.amount) == Decimal("125.00")

    def test_zero_fee_is_waived(self, db_session, approved_user, make_session, submission_factory):
        session = make_session(convenience_fee_amount=Decimal("0"))

        receipt = SubmissionWorkflow(db_session).submit(approved_user.id, submission_factory(session.id)).unwrap()

        assert receipt.payment.payment_provider == "waived"
        assert receipt.pledge.status == "ready_for_execution"

    def test_sell_only_session_collects_sells(self, db_session, approved_user, make_session, submission_factory):
        session = make_session(session_mode="sell_only")
        receipt = SubmissionWorkflow(db_session).submit(approved_user.id, submission_factory(session.id)).unwrap()
        assert receipt.pledge.side == "sell"
        assert receipt.pledge.auto_sell_config is None

    def test_cycle_with_target_is_auto_target(self, db_session, approved_user, make_session, submission_factory):
        session = make_session(session_mode="buy_sell_cycle")

        receipt = SubmissionWorkflow(db_session).submit(
            approved_user.id, submission_factory(session.id, auto_sell_price=Decimal("120"))
        ).unwrap()

        config = receipt.pledge.auto_sell_config
        assert config["execution_type"] == "auto_target"
        assert Decimal(config["sell_price"]) == Decimal("120")
        assert config["sell_qty"] == 10

    def test_cycle_without_target_is_admin_managed(self, db_session, approved_user, make_session,
                                                   submission_factory):
        session = make_session(session_mode="buy_sell_cycle")
        receipt = SubmissionWorkflow(db_session).submit(approved_user.id, submission_factory(session.id)).unwrap()
        assert receipt.pledge.auto_sell_config["execution_type"] == "admin_managed"

    def test_advisory_above_recommended_limit(self, db_session, approved_user, make_session, submission_factory):
        session = make_session()

        # Risk score 55 recommends 100000; 1000 x 150 exceeds it
        receipt = SubmissionWorkflow(db_session).submit(
            approved_user.id, submission_factory(session.id, qty=1000, price_target=150)
        ).unwrap()

        assert receipt.pledge.status == "ready_for_execution"
        assert receipt.advisory == {
            "recommended_limit": "100000",
            "risk_level": "Medium Risk",
            "pledge_value": "150000.00",
        }


class TestSubmitRejections:
    def test_requires_approved_access(self, db_session, regular_user, make_session, submission_factory):
        session = make_session()
        result = SubmissionWorkflow(db_session).submit(regular_user.id, submission_factory(session.id))
        assert isinstance(result.error, DematNotApprovedError)

    def test_unknown_session(self, db_session, approved_user, submission_factory):
        result = SubmissionWorkflow(db_session).submit(approved_user.id, submission_factory("missing"))
        assert isinstance(result.error, NotFoundError)

    def test_expired_session_is_audited(self, db_session, approved_user, make_session, submission_factory):
        session = make_session()

        result = SubmissionWorkflow(db_session).submit(
            approved_user.id, submission_factory(session.id), now=utc_now() + timedelta(days=2)
        )

        assert isinstance(result.error, SessionExpiredError)
        entry = db_session.query(PledgeAuditLog).filter_by(action="pledge_created").one()
        assert not entry.success
        assert entry.payload["error_code"] == "SESSION_EXPIRED"
        assert db_session.query(Pledge).count() == 0

    def test_full_session(self, db_session, regular_user, second_user, approve_access,
                          make_session, submission_factory):
        approve_access(regular_user)
        approve_access(second_user, account_id=SECOND_ZERODHA_ACCOUNT)
        session = make_session(capacity=1)
        workflow = SubmissionWorkflow(db_session)
        workflow.submit(regular_user.id, submission_factory(session.id)).unwrap()

        result = workflow.submit(second_user.id, submission_factory(session.id))

        assert isinstance(result.error, SessionFullError)

    def test_duplicate_live_pledge(self, db_session, approved_user, make_session, submission_factory):
        session = make_session()
        workflow = SubmissionWorkflow(db_session)
        workflow.submit(approved_user.id, submission_factory(session.id)).unwrap()

        result = workflow.submit(approved_user.id, submission_factory(session.id, qty=5))

        assert isinstance(result.error, DuplicatePledgeError)
        assert db_session.query(Pledge).count() == 1

    def test_pledge_again_after_cancelling(self, db_session, approved_user, make_session, submission_factory):
        session = make_session()
        workflow = SubmissionWorkflow(db_session)
        first = workflow.submit(approved_user.id, submission_factory(session.id)).unwrap()
        workflow.cancel_pledge(first.pledge.id, approved_user.id).unwrap()

        assert workflow.submit(approved_user.id, submission_factory(session.id)).ok

    def test_quantity_bounds(self, db_session, approved_user, make_session, submission_factory):
        session = make_session(min_qty=5, max_qty=50)
        workflow = SubmissionWorkflow(db_session)

        assert isinstance(workflow.submit(approved_user.id, submission_factory(session.id, qty=4)).error,
                          InvalidQuantityError)
        assert isinstance(workflow.submit(approved_user.id, submission_factory(session.id, qty=51)).error,
                          InvalidQuantityError)

    def test_price_must_be_positive(self, db_session, approved_user, make_session, submission_factory):
        session = make_session()
        result = SubmissionWorkflow(db_session).submit(approved_user.id, submission_factory(session.id, price_target=0))
        assert isinstance(result.error, InvalidPriceError)

    def test_sell_target_outside_cycle(self, db_session, approved_user, make_session, submission_factory):
        session = make_session()
        result = SubmissionWorkflow(db_session).submit(
            approved_user.id, submission_factory(session.id, auto_sell_price=Decimal("120"))
        )
        assert isinstance(result.error, ValidationError)

    def test_incomplete_disclosure(self, db_session, approved_user, make_session, submission_factory):
        session = make_session()
        partial = RiskAcknowledgment(acknowledged=True, categories=["market"], acknowledged_at=utc_now())

        result = SubmissionWorkflow(db_session).submit(
            approved_user.id, submission_factory(session.id, risk_acknowledgment=partial)
        )

        assert isinstance(result.error, DisclosureIncompleteError)
        assert result.error.details["missing_categories"] == ["execution", "financial"]

    def test_missing_signature(self, db_session, approved_user, make_session, submission_factory):
        session = make_session()
        unsigned = DigitalConsent(agreed_to_terms=True, agreed_to_risks=True, agreed_to_execution=True,
                                  signature="", signed_at=utc_now())

        result = SubmissionWorkflow(db_session).submit(
            approved_user.id, submission_factory(session.id, digital_consent=unsigned)
        )

        assert isinstance(result.error, ConsentIncompleteError)
        assert db_session.query(PledgePayment).count() == 0


class TestPaymentFailure:
    def test_failed_payment_leaves_pledge_unpaid(self, db_session, approved_user, make_session,
                                                 submission_factory):
        session = make_session()

        result = SubmissionWorkflow(db_session).submit(
            approved_user.id, submission_factory(session.id, payment_method="fail:Insufficient funds")
        )

        assert isinstance(result.error, PaymentFailedError)
        assert result.error.message == "Insufficient funds"
        assert result.error.details["retry_available"] is True
        pledge = db_session.get(Pledge, result.error.details["pledge_id"])
        assert pledge.status == "pending_payment"
        assert not pledge.convenience_fee_paid
        payment = db_session.query(PledgePayment).one()
        assert payment.status == "failed"
        assert db_session.query(PledgeAuditLog).filter_by(action="payment_failed").one().success is False

    def test_retry_promotes_pledge(self, db_session, approved_user, make_session, submission_factory):
        session = make_session()
        workflow = SubmissionWorkflow(db_session)
        failed = workflow.submit(approved_user.id, submission_factory(session.id, payment_method="fail"))
        pledge_id = failed.error.details["pledge_id"]

        receipt = workflow.retry_payment(pledge_id, approved_user.id, payment_method="card").unwrap()

        assert receipt.pledge.status == "ready_for_execution"
        assert receipt.pledge.convenience_fee_paid
        assert receipt.pledge.convenience_fee_payment_id == receipt.payment.id
        statuses = sorted(p.status for p in workflow.get_user_payments(approved_user.id))
        assert statuses == ["completed", "failed"]

    def test_failed_retry_adds_a_row(self, db_session, approved_user, make_session, submission_factory):
        session = make_session()
        workflow = SubmissionWorkflow(db_session)
        failed = workflow.submit(approved_user.id, submission_factory(session.id, payment_method="fail"))
        pledge_id = failed.error.details["pledge_id"]

        retry = workflow.retry_payment(pledge_id, approved_user.id, payment_method="fail")

        assert isinstance(retry.error, PaymentFailedError)
        assert db_session.query(PledgePayment).count() == 2
        assert db_session.get(Pledge, pledge_id).status == "pending_payment"

    def test_retry_on_paid_pledge_is_refused(self, db_session, approved_user, make_session, submission_factory):
        session = make_session()
        workflow = SubmissionWorkflow(db_session)
        receipt = workflow.submit(approved_user.id, submission_factory(session.id)).unwrap()

        result = workflow.retry_payment(receipt.pledge.id, approved_user.id)

        assert isinstance(result.error, InvalidTransitionError)

    def test_retry_by_another_user(self, db_session, approved_user, second_user, make_session,
                                   submission_factory):
        session = make_session()
        workflow = SubmissionWorkflow(db_session)
        failed = workflow.submit(approved_user.id, submission_factory(session.id, payment_method="fail"))

        result = workflow.retry_payment(failed.error.details["pledge_id"], second_user.id)

        assert isinstance(result.error, PermissionDeniedError)

    def test_declined_payment_rechecks_capacity(self, db_session, regular_user, second_user, approve_access,
                                                make_session, submission_factory, monkeypatch):
        approve_access(regular_user)
        approve_access(second_user, account_id=SECOND_ZERODHA_ACCOUNT)
        session = make_session(capacity=1)
        workflow = SubmissionWorkflow(db_session)
        # Both users passed the early check before either pledge was written
        monkeypatch.setattr(SessionStore, "check_capacity", lambda *args, **kwargs: None)
        workflow.submit(regular_user.id, submission_factory(session.id)).unwrap()

        result = workflow.submit(second_user.id, submission_factory(session.id, payment_method="fail"))

        assert isinstance(result.error, SessionFullError)
        assert [p.user_id for p in db_session.query(Pledge).all()] == [regular_user.id]
        failure = db_session.query(PledgeAuditLog).filter_by(action="pledge_created", success=False).one()
        assert failure.payload["error_code"] == "SESSION_FULL"

    def test_retry_into_a_full_session_is_refused(self, db_session, regular_user, second_user, approve_access,
                                                  make_session, submission_factory):
        approve_access(regular_user)
        approve_access(second_user, account_id=SECOND_ZERODHA_ACCOUNT)
        session = make_session(capacity=2)
        workflow = SubmissionWorkflow(db_session)
        failed = workflow.submit(regular_user.id, submission_factory(session.id, payment_method="fail"))
        pledge_id = failed.error.details["pledge_id"]
        workflow.submit(second_user.id, submission_factory(session.id)).unwrap()
        session.capacity = 1
        db_session.commit()

        result = workflow.retry_payment(pledge_id, regular_user.id, payment_method="card")

        assert isinstance(result.error, SessionFullError)
        assert db_session.get(Pledge, pledge_id).status == "pending_payment"
        ready = db_session.query(Pledge).filter_by(session_id=session.id, status="ready_for_execution").count()
        assert ready == 1
        assert [p.status for p in workflow.get_user_payments(regular_user.id)] == ["failed"]
        failure = db_session.query(PledgeAuditLog).filter_by(action="payment_completed", success=False).one()
        assert failure.target_pledge_id == pledge_id
        assert failure.payload["error_code"] == "SESSION_FULL"


class TestCancelPledge:
    def test_owner_cancels_ready_pledge(self, db_session, approved_user, make_session, submission_factory):
        session = make_session()
        workflow = SubmissionWorkflow(db_session)
        receipt = workflow.submit(approved_user.id, submission_factory(session.id)).unwrap()

        pledge = workflow.cancel_pledge(receipt.pledge.id, approved_user.id, reason="Changed my mind").unwrap()

        assert pledge.status == "cancelled"
        assert pledge.version == 2
        entry = db_session.query(PledgeAuditLog).filter_by(action="pledge_cancelled").one()
        assert entry.payload["previous_status"] == "ready_for_execution"
        assert entry.payload["reason"] == "Changed my mind"

    def test_cancelled_pledge_stays_cancelled(self, db_session, approved_user, make_session, submission_factory):
        session = make_session()
        workflow = SubmissionWorkflow(db_session)
        receipt = workflow.submit(approved_user.id, submission_factory(session.id)).unwrap()
        workflow.cancel_pledge(receipt.pledge.id, approved_user.id).unwrap()

        result = workflow.cancel_pledge(receipt.pledge.id, approved_user.id)

        assert isinstance(result.error, InvalidTransitionError)

    def test_user_pledges_listing(self, db_session, approved_user, make_session, submission_factory):
        first = make_session()
        second = make_session(stock_symbol="TCS")
        workflow = SubmissionWorkflow(db_session)
        workflow.submit(approved_user.id, submission_factory(first.id)).unwrap()
        workflow.submit(approved_user.id, submission_factory(second.id)).unwrap()

        symbols = {p.stock_symbol for p in workflow.get_user_pledges(approved_user.id)}
        assert symbols == {"RELIANCE", "TCS"}
