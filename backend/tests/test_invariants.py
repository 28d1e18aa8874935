"""
Whole-lifecycle checks: pledge statuses only move forward and every
refused or failed operation leaves exactly one failed audit entry.
"""

import os
import sys
from collections import defaultdict
from decimal import Decimal

import pytest
from sqlalchemy import event

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from pledgehub.db.models import Pledge, PledgeAuditLog
from pledgehub.db.repositories import PledgeRepository
from pledgehub.domain.states import PledgeStatus
from pledgehub.services.execution_engine import ExecutionEngine
from pledgehub.services.submission import SubmissionWorkflow
from pledgehub.utils.errors import AlreadyExecutingError


@pytest.fixture
def status_history(monkeypatch):
    """Every status each pledge is written with, in order."""
    history = defaultdict(list)

    def on_insert(mapper, connection, target):
        history[target.id].append(target.status)

    original = PledgeRepository.transition

    def recording_transition(self, pledge, expected, new, **values):
        moved = original(self, pledge, expected, new, **values)
        if moved and new != expected:
            history[pledge.id].append(new)
        return moved

    event.listen(Pledge, "after_insert", on_insert)
    monkeypatch.setattr(PledgeRepository, "transition", recording_transition)
    yield history
    event.remove(Pledge, "after_insert", on_insert)


@pytest.fixture
def pledge_in(db_session, approved_user, make_session, submission_factory):
    def _create(session_mode="buy_only", payment_method=None):
        session = make_session(session_mode=session_mode)
        result = SubmissionWorkflow(db_session).submit(
            approved_user.id, submission_factory(session.id, payment_method=payment_method)
        )
        if result.ok:
            return session, result.value.pledge
        return session, db_session.get(Pledge, result.error.details["pledge_id"])

    return _create


def _assert_moves_forward(statuses):
    early_end = statuses[-1] in (PledgeStatus.FAILED, PledgeStatus.CANCELLED)
    forward = statuses[:-1] if early_end else statuses
    positions = [PledgeStatus.ORDER.index(s) for s in forward]
    assert positions == sorted(set(positions)), statuses


def _failures(db, pledge_id):
    return db.query(PledgeAuditLog).filter(
        PledgeAuditLog.target_pledge_id == pledge_id, PledgeAuditLog.success.is_(False)
    ).all()


class TestStatusOrder:
    def test_buy_sell_cycle(self, db_session, admin_user, status_history, pledge_in):
        _, pledge = pledge_in("buy_sell_cycle")
        engine = ExecutionEngine(db_session)
        engine.execute_buy_leg(pledge.id, admin_user.id, Decimal("100")).unwrap()
        engine.execute_now(pledge.id, admin_user.id, Decimal("110")).unwrap()
        engine.execute_now(pledge.id, admin_user.id, Decimal("115"))

        statuses = status_history[pledge.id]

        assert statuses == ["ready_for_execution", "executing", "awaiting_sell_execution", "executed"]
        _assert_moves_forward(statuses)

    def test_failed_leg(self, db_session, admin_user, status_history, pledge_in):
        session, pledge = pledge_in()
        ExecutionEngine(db_session).execute_session(session.id, admin_user.id, Decimal("0")).unwrap()

        statuses = status_history[pledge.id]

        assert statuses == ["ready_for_execution", "failed"]
        _assert_moves_forward(statuses)

    def test_cancelled_pledge(self, db_session, approved_user, admin_user, status_history, pledge_in):
        _, pledge = pledge_in()
        SubmissionWorkflow(db_session).cancel_pledge(pledge.id, approved_user.id).unwrap()
        ExecutionEngine(db_session).execute_buy_leg(pledge.id, admin_user.id)

        assert status_history[pledge.id] == ["ready_for_execution", "cancelled"]

    def test_retried_payment(self, db_session, approved_user, admin_user, status_history, pledge_in):
        _, pledge = pledge_in(payment_method="fail")
        workflow = SubmissionWorkflow(db_session)
        workflow.retry_payment(pledge.id, approved_user.id, payment_method="fail")
        workflow.retry_payment(pledge.id, approved_user.id, payment_method="card").unwrap()
        ExecutionEngine(db_session).execute_buy_leg(pledge.id, admin_user.id).unwrap()

        statuses = status_history[pledge.id]

        assert statuses == ["pending_payment", "ready_for_execution", "executing", "executed"]
        _assert_moves_forward(statuses)

    def test_unpaid_pledge_at_execution(self, db_session, admin_user, status_history, pledge_in):
        session, pledge = pledge_in(payment_method="fail")
        ExecutionEngine(db_session).execute_session(session.id, admin_user.id, Decimal("100")).unwrap()

        statuses = status_history[pledge.id]

        assert statuses == ["pending_payment", "cancelled"]
        _assert_moves_forward(statuses)


class TestFailureAudit:
    def test_failed_payment(self, db_session, pledge_in):
        _, pledge = pledge_in(payment_method="fail")

        [failure] = _failures(db_session, pledge.id)

        assert failure.action == "payment_failed"

    def test_failed_retry(self, db_session, approved_user, pledge_in):
        _, pledge = pledge_in(payment_method="fail")

        SubmissionWorkflow(db_session).retry_payment(pledge.id, approved_user.id, payment_method="fail")

        assert [f.action for f in _failures(db_session, pledge.id)] == ["payment_failed", "payment_failed"]

    def test_failed_leg(self, db_session, admin_user, pledge_in):
        session, pledge = pledge_in()

        ExecutionEngine(db_session).execute_session(session.id, admin_user.id, Decimal("0")).unwrap()

        [failure] = _failures(db_session, pledge.id)
        assert failure.action == "buy_execution_failed"
        assert failure.payload["error_code"] == "INVALID_PRICE"
        assert failure.payload["new_status"] == "failed"

    def test_lost_entry_race(self, db_session, session_factory, admin_user, pledge_in):
        _, pledge = pledge_in()
        other = session_factory()
        try:
            stale = other.get(Pledge, pledge.id)
            assert stale.status == "ready_for_execution"

            ExecutionEngine(db_session).execute_buy_leg(pledge.id, admin_user.id).unwrap()
            result = ExecutionEngine(other).execute_buy_leg(pledge.id, admin_user.id)

            assert isinstance(result.error, AlreadyExecutingError)
        finally:
            other.close()

        db_session.expire_all()
        [failure] = _failures(db_session, pledge.id)
        assert failure.action == "buy_execution_failed"
        assert failure.payload["error_code"] == "ALREADY_EXECUTING"
        assert failure.payload["status"] == "executed"

    def test_successful_cycle_has_no_failures(self, db_session, admin_user, pledge_in):
        _, pledge = pledge_in("buy_sell_cycle")
        engine = ExecutionEngine(db_session)
        engine.execute_buy_leg(pledge.id, admin_user.id, Decimal("100")).unwrap()
        engine.execute_now(pledge.id, admin_user.id, Decimal("110")).unwrap()

        assert _failures(db_session, pledge.id) == []
