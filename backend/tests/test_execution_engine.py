"""
Tests for execution legs, session phases, admin overrides and P&L.
"""

import os
import sys
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from conftest import SECOND_ZERODHA_ACCOUNT
from pledgehub.db.models import Pledge, PledgeAuditLog, PledgeExecutionRecord
from pledgehub.feature_flags import feature_flags
from pledgehub.services.execution_engine import ExecutionEngine
from pledgehub.services.session_store import SessionStore
from pledgehub.services.submission import SubmissionWorkflow
from pledgehub.utils.errors import (
    AlreadyExecutingError,
    AutoSellNotTriggeredError,
    InvalidPriceError,
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
)


@pytest.fixture
def ready_pledge(db_session, approved_user, make_session, submission_factory):
    """Create a session and a paid pledge in it; returns (session, pledge)."""

    def _create(session_mode="buy_only", auto_sell_price=None, payment_method=None, **session_fields):
        session = make_session(session_mode=session_mode, **session_fields)
        result = SubmissionWorkflow(db_session).submit(
            approved_user.id,
            submission_factory(session.id, qty=10, price_target=100,
                               auto_sell_price=auto_sell_price, payment_method=payment_method),
        )
        if payment_method == "fail":
            return session, db_session.get(Pledge, result.error.details["pledge_id"])
        return session, result.unwrap().pledge

    return _create


@pytest.fixture
def open_position(db_session, admin_user, ready_pledge):
    """A buy/sell cycle pledge whose buy leg executed at 100."""

    def _create(auto_sell_price=None, **session_fields):
        session, pledge = ready_pledge("buy_sell_cycle", auto_sell_price=auto_sell_price, **session_fields)
        ExecutionEngine(db_session).execute_buy_leg(pledge.id, admin_user.id, Decimal("100")).unwrap()
        return session, pledge

    return _create


def _records(db, pledge_id, side=None):
    query = db.query(PledgeExecutionRecord).filter(PledgeExecutionRecord.pledge_id == pledge_id)
    if side:
        query = query.filter(PledgeExecutionRecord.side == side)
    return query.all()


def _failures(db, pledge_id):
    return db.query(PledgeAuditLog).filter(
        PledgeAuditLog.target_pledge_id == pledge_id, PledgeAuditLog.success.is_(False)
    ).all()


class TestEntryLeg:
    def test_single_leg_buy(self, db_session, admin_user, ready_pledge):
        _, pledge = ready_pledge()

        record = ExecutionEngine(db_session).execute_buy_leg(
            pledge.id, admin_user.id, Decimal("101.25"), broker_order_id="ORD-1"
        ).unwrap()

        assert pledge.status == "executed"
        assert record.side == "buy"
        assert record.executed_qty == 10
        assert record.net_amount == Decimal("1012.50")
        assert record.platform_commission == Decimal("0")
        assert record.broker_order_id == "ORD-1"
        assert record.settlement_date is not None
        entry = db_session.query(PledgeAuditLog).filter_by(action="buy_execution_completed").one()
        assert entry.payload["previous_status"] == "ready_for_execution"
        assert entry.payload["new_status"] == "executed"

    def test_defaults_to_target_price(self, db_session, admin_user, ready_pledge):
        _, pledge = ready_pledge()
        record = ExecutionEngine(db_session).execute_buy_leg(pledge.id, admin_user.id).unwrap()
        assert record.executed_price == Decimal("100")

    def test_sell_only_pledge_executes_sell_leg(self, db_session, admin_user, ready_pledge):
        _, pledge = ready_pledge("sell_only")

        record = ExecutionEngine(db_session).execute_buy_leg(pledge.id, admin_user.id, Decimal("98")).unwrap()

        assert record.side == "sell"
        assert pledge.status == "executed"
        assert db_session.query(PledgeAuditLog).filter_by(action="sell_execution_completed").count() == 1

    def test_cycle_pledge_awaits_sell(self, db_session, open_position):
        _, pledge = open_position()
        assert pledge.status == "awaiting_sell_execution"
        assert len(_records(db_session, pledge.id, "buy")) == 1

    def test_second_execution_conflicts(self, db_session, admin_user, ready_pledge):
        _, pledge = ready_pledge()
        engine = ExecutionEngine(db_session)
        engine.execute_buy_leg(pledge.id, admin_user.id).unwrap()

        result = engine.execute_buy_leg(pledge.id, admin_user.id)

        assert isinstance(result.error, AlreadyExecutingError)
        assert len(_records(db_session, pledge.id)) == 1

    def test_unpaid_pledge_cannot_execute(self, db_session, admin_user, ready_pledge):
        _, pledge = ready_pledge(payment_method="fail")

        result = ExecutionEngine(db_session).execute_buy_leg(pledge.id, admin_user.id)

        assert isinstance(result.error, InvalidTransitionError)
        assert _records(db_session, pledge.id) == []

    def test_cancelled_meanwhile_is_a_transition_error(self, db_session, session_factory, admin_user,
                                                      approved_user, ready_pledge):
        _, pledge = ready_pledge()
        other = session_factory()
        try:
            stale = other.get(Pledge, pledge.id)
            assert stale.status == "ready_for_execution"

            SubmissionWorkflow(db_session).cancel_pledge(pledge.id, approved_user.id).unwrap()
            result = ExecutionEngine(other).execute_buy_leg(pledge.id, admin_user.id)

            assert isinstance(result.error, InvalidTransitionError)
            assert result.error.message == "Pledge was cancelled by another request"
        finally:
            other.close()

        assert _records(db_session, pledge.id) == []
        db_session.expire_all()
        [failure] = _failures(db_session, pledge.id)
        assert failure.action == "buy_execution_failed"
        assert failure.payload["error_code"] == "INVALID_TRANSITION"
        assert failure.payload["status"] == "cancelled"

    def test_requires_admin(self, db_session, approved_user, ready_pledge):
        _, pledge = ready_pledge()
        result = ExecutionEngine(db_session).execute_buy_leg(pledge.id, approved_user.id)
        assert isinstance(result.error, PermissionDeniedError)


class TestCycleSettlement:
    def test_profit_pays_commission(self, db_session, admin_user, open_position):
        _, pledge = open_position()

        record = ExecutionEngine(db_session).execute_now(pledge.id, admin_user.id, Decimal("120")).unwrap()

        assert pledge.status == "executed"
        assert record.side == "sell"
        assert record.executed_qty == 10
        assert record.realized_pl == Decimal("200.00")
        assert record.platform_commission == Decimal("20.00")
        assert record.net_amount == Decimal("180.00")
        assert record.commission_rate == Decimal("10")

    def test_loss_pays_no_commission(self, db_session, admin_user, open_position):
        _, pledge = open_position()

        record = ExecutionEngine(db_session).execute_now(pledge.id, admin_user.id, Decimal("90")).unwrap()

        assert record.realized_pl == Decimal("-100.00")
        assert record.platform_commission == Decimal("0.00")
        assert record.net_amount == Decimal("-100.00")

    def test_session_commission_override(self, db_session, admin_user, open_position):
        _, pledge = open_position(commission_rate_override=Decimal("5"))

        record = ExecutionEngine(db_session).execute_now(pledge.id, admin_user.id, Decimal("120")).unwrap()

        assert record.platform_commission == Decimal("10.00")
        assert record.net_amount == Decimal("190.00")

    def test_position_summary(self, db_session, admin_user, open_position):
        _, pledge = open_position()
        engine = ExecutionEngine(db_session)

        open_summary = engine.position_summary(pledge.id, live_price=Decimal("110")).unwrap()
        assert open_summary.buy_price == Decimal("100")
        assert open_summary.unrealized_pl == Decimal("100.00")
        assert open_summary.realized_pl is None

        engine.execute_now(pledge.id, admin_user.id, Decimal("120")).unwrap()
        closed = engine.position_summary(pledge.id).unwrap()
        assert closed.realized_pl == Decimal("200.00")
        assert closed.platform_commission == Decimal("20.00")
        assert closed.net_amount == Decimal("180.00")
        assert closed.unrealized_pl is None

    def test_execute_now_twice(self, db_session, admin_user, open_position):
        _, pledge = open_position()
        engine = ExecutionEngine(db_session)
        engine.execute_now(pledge.id, admin_user.id, Decimal("120")).unwrap()

        result = engine.execute_now(pledge.id, admin_user.id, Decimal("125"))

        assert isinstance(result.error, AlreadyExecutingError)
        assert len(_records(db_session, pledge.id, "sell")) == 1
        [failure] = _failures(db_session, pledge.id)
        assert failure.action == "sell_execution_failed"
        assert failure.actor_id == admin_user.id
        assert failure.payload["error_code"] == "ALREADY_EXECUTING"
        assert failure.payload["trigger"] == "admin_execute_now"

    def test_execute_now_rejects_bad_price(self, db_session, admin_user, open_position):
        _, pledge = open_position()
        result = ExecutionEngine(db_session).execute_now(pledge.id, admin_user.id, Decimal("0"))
        assert isinstance(result.error, InvalidPriceError)

    def test_concurrent_execute_now_writes_one_sell(self, db_session, session_factory, admin_user, open_position):
        _, pledge = open_position()
        other = session_factory()
        try:
            # Second actor read the position before the first one sold it
            stale = other.get(Pledge, pledge.id)
            assert stale.status == "awaiting_sell_execution"

            ExecutionEngine(db_session).execute_now(pledge.id, admin_user.id, Decimal("120")).unwrap()
            result = ExecutionEngine(other).execute_now(pledge.id, admin_user.id, Decimal("121"))

            assert isinstance(result.error, AlreadyExecutingError)
        finally:
            other.close()

        sells = _records(db_session, pledge.id, "sell")
        assert len(sells) == 1
        assert sells[0].executed_price == Decimal("120")
        db_session.expire_all()
        [failure] = _failures(db_session, pledge.id)
        assert failure.payload["error_code"] == "ALREADY_EXECUTING"
        assert failure.payload["market_price"] == "121"


class TestSessionExecution:
    def test_buy_only_session(self, db_session, admin_user, ready_pledge):
        session, pledge = ready_pledge()

        summary = ExecutionEngine(db_session).execute_session(session.id, admin_user.id, Decimal("102")).unwrap()

        assert summary.phase == "entry"
        assert summary.executed == [pledge.id]
        assert summary.session_status == "completed"
        db_session.refresh(pledge)
        assert pledge.status == "executed"
        actions = [e.action for e in db_session.query(PledgeAuditLog).filter(
            PledgeAuditLog.target_session_id == session.id, PledgeAuditLog.target_type == "session")]
        assert "session_executing" in actions
        assert "session_completed" in actions

    def test_cycle_session_both_phases(self, db_session, admin_user, ready_pledge):
        session, pledge = ready_pledge("buy_sell_cycle", stock_price=Decimal("100"))
        engine = ExecutionEngine(db_session)

        entry = engine.execute_session(session.id, admin_user.id).unwrap()
        assert entry.session_status == "awaiting_sell_execution"
        db_session.refresh(pledge)
        assert pledge.status == "awaiting_sell_execution"

        sell = engine.execute_session(session.id, admin_user.id, Decimal("120")).unwrap()
        assert sell.phase == "sell"
        assert sell.executed == [pledge.id]
        assert sell.session_status == "completed"
        assert _records(db_session, pledge.id, "sell")[0].net_amount == Decimal("180.00")

    def test_sell_phase_uses_pledge_target(self, db_session, admin_user, ready_pledge):
        session, pledge = ready_pledge("buy_sell_cycle", auto_sell_price=Decimal("130"))
        engine = ExecutionEngine(db_session)
        engine.execute_session(session.id, admin_user.id).unwrap()

        engine.execute_session(session.id, admin_user.id).unwrap()

        assert _records(db_session, pledge.id, "sell")[0].executed_price == Decimal("130")

    def test_sell_phase_requires_a_price(self, db_session, admin_user, ready_pledge):
        session, pledge = ready_pledge("buy_sell_cycle")
        engine = ExecutionEngine(db_session)
        engine.execute_session(session.id, admin_user.id).unwrap()

        result = engine.execute_session(session.id, admin_user.id)

        assert isinstance(result.error, ValidationError)
        db_session.refresh(pledge)
        assert pledge.status == "awaiting_sell_execution"

    def test_failed_legs_are_recorded(self, db_session, admin_user, ready_pledge):
        session, pledge = ready_pledge()

        summary = ExecutionEngine(db_session).execute_session(session.id, admin_user.id, Decimal("0")).unwrap()

        assert summary.executed == []
        assert summary.failed[0]["error_code"] == "INVALID_PRICE"
        db_session.refresh(pledge)
        assert pledge.status == "failed"
        record = _records(db_session, pledge.id)[0]
        assert record.status == "failed"
        assert record.executed_qty == 0

    def test_completed_session_cannot_run_again(self, db_session, admin_user, ready_pledge):
        session, _ = ready_pledge()
        engine = ExecutionEngine(db_session)
        engine.execute_session(session.id, admin_user.id).unwrap()

        assert isinstance(engine.execute_session(session.id, admin_user.id).error, InvalidTransitionError)

    def test_entry_phase_cancels_unpaid_pledges(self, db_session, admin_user, ready_pledge):
        session, pledge = ready_pledge(payment_method="fail")
        assert pledge.status == "pending_payment"

        summary = ExecutionEngine(db_session).execute_session(session.id, admin_user.id, Decimal("100")).unwrap()

        assert summary.executed == []
        assert summary.session_status == "completed"
        db_session.refresh(pledge)
        assert pledge.status == "cancelled"
        assert _records(db_session, pledge.id) == []
        entry = db_session.query(PledgeAuditLog).filter_by(action="pledge_cancelled").one()
        assert entry.target_pledge_id == pledge.id
        assert entry.actor_id == admin_user.id
        assert entry.payload["previous_status"] == "pending_payment"
        completed = db_session.query(PledgeAuditLog).filter_by(action="session_completed").one()
        assert completed.payload["unpaid_cancelled"] == 1

    def test_execute_now_closes_awaiting_session(self, db_session, admin_user, ready_pledge):
        session, pledge = ready_pledge("buy_sell_cycle")
        engine = ExecutionEngine(db_session)
        engine.execute_session(session.id, admin_user.id, Decimal("100")).unwrap()

        engine.execute_now(pledge.id, admin_user.id, Decimal("110")).unwrap()

        assert SessionStore(db_session).get_session(session.id).status == "completed"


class TestAdminOverrides:
    def test_pause_and_resume(self, db_session, admin_user, open_position):
        _, pledge = open_position(auto_sell_price=Decimal("120"))
        engine = ExecutionEngine(db_session)

        paused = engine.pause(pledge.id, admin_user.id).unwrap()
        assert paused.auto_sell_paused
        assert paused.paused_at is not None
        assert "paused by admin" in paused.admin_notes
        assert isinstance(engine.pause(pledge.id, admin_user.id).error, InvalidTransitionError)

        resumed = engine.resume(pledge.id, admin_user.id).unwrap()
        assert not resumed.auto_sell_paused
        actions = [e.action for e in db_session.query(PledgeAuditLog).filter_by(target_pledge_id=pledge.id)]
        assert "auto_sell_paused" in actions
        assert "auto_sell_resumed" in actions

    def test_refused_pause_is_audited_once(self, db_session, admin_user, open_position):
        _, pledge = open_position(auto_sell_price=Decimal("120"))
        engine = ExecutionEngine(db_session)
        engine.pause(pledge.id, admin_user.id).unwrap()

        engine.pause(pledge.id, admin_user.id)

        [failure] = _failures(db_session, pledge.id)
        assert failure.action == "auto_sell_paused"
        assert failure.error_message == "Auto-sell is already paused"
        assert failure.payload["requested_paused"] is True
        assert db_session.query(PledgeAuditLog).filter_by(action="auto_sell_paused", success=True).count() == 1

    def test_overrides_need_a_sell_leg(self, db_session, admin_user, ready_pledge):
        _, pledge = ready_pledge()
        assert isinstance(ExecutionEngine(db_session).pause(pledge.id, admin_user.id).error, InvalidTransitionError)

    def test_overrides_after_the_sell_are_refused(self, db_session, admin_user, open_position):
        _, pledge = open_position(auto_sell_price=Decimal("120"))
        engine = ExecutionEngine(db_session)
        engine.execute_now(pledge.id, admin_user.id, Decimal("120")).unwrap()

        changed = engine.change_target(pledge.id, admin_user.id, Decimal("130"))
        cancelled = engine.cancel_auto_sell(pledge.id, admin_user.id)

        assert isinstance(changed.error, InvalidTransitionError)
        assert isinstance(cancelled.error, InvalidTransitionError)
        failures = _failures(db_session, pledge.id)
        assert sorted(f.action for f in failures) == ["auto_sell_cancelled", "auto_sell_target_changed"]
        assert all(f.payload["status"] == "executed" for f in failures)

    def test_invalid_target_price_is_not_audited(self, db_session, admin_user, open_position):
        _, pledge = open_position()
        result = ExecutionEngine(db_session).change_target(pledge.id, admin_user.id, Decimal("-1"))
        assert isinstance(result.error, InvalidPriceError)
        assert _failures(db_session, pledge.id) == []

    def test_change_target_makes_auto_target(self, db_session, admin_user, open_position):
        _, pledge = open_position()

        updated = ExecutionEngine(db_session).change_target(pledge.id, admin_user.id, Decimal("125")).unwrap()

        assert updated.auto_sell_config["execution_type"] == "auto_target"
        assert Decimal(updated.auto_sell_config["sell_price"]) == Decimal("125")
        entry = db_session.query(PledgeAuditLog).filter_by(action="auto_sell_target_changed").one()
        assert entry.payload["previous"]["execution_type"] == "admin_managed"
        assert entry.payload["new"]["execution_type"] == "auto_target"

    def test_cancel_auto_sell(self, db_session, admin_user, open_position):
        _, pledge = open_position(auto_sell_price=Decimal("120"))

        updated = ExecutionEngine(db_session).cancel_auto_sell(pledge.id, admin_user.id).unwrap()

        assert updated.auto_sell_config["execution_type"] == "admin_managed"
        assert updated.auto_sell_config["sell_price"] is None

    def test_positions_are_split_by_execution_type(self, db_session, admin_user, regular_user, second_user,
                                                   approve_access, make_session, submission_factory):
        approve_access(regular_user)
        approve_access(second_user, account_id=SECOND_ZERODHA_ACCOUNT)
        session = make_session(session_mode="buy_sell_cycle")
        workflow = SubmissionWorkflow(db_session)
        auto = workflow.submit(regular_user.id, submission_factory(
            session.id, auto_sell_price=Decimal("120"))).unwrap().pledge
        managed = workflow.submit(second_user.id, submission_factory(session.id)).unwrap().pledge
        engine = ExecutionEngine(db_session)
        engine.execute_session(session.id, admin_user.id, Decimal("100")).unwrap()

        positions = engine.list_awaiting_positions()

        assert [p.id for p in positions["auto_target"]] == [auto.id]
        assert [p.id for p in positions["admin_managed"]] == [managed.id]


class TestTriggerAutoSell:
    @pytest.fixture(autouse=True)
    def enable_trigger(self, monkeypatch):
        monkeypatch.setattr(feature_flags, "ENABLE_AUTO_SELL_TRIGGER", True)

    def test_triggers_at_target(self, db_session, open_position):
        _, pledge = open_position(auto_sell_price=Decimal("120"))

        record = ExecutionEngine(db_session).trigger_auto_sell(pledge.id, Decimal("120")).unwrap()

        assert pledge.status == "executed"
        assert record.realized_pl == Decimal("200.00")
        entry = db_session.query(PledgeAuditLog).filter_by(action="auto_sell_triggered").one()
        assert entry.actor_role == "system"
        assert entry.actor_id is None

    def test_below_target(self, db_session, open_position):
        _, pledge = open_position(auto_sell_price=Decimal("120"))
        result = ExecutionEngine(db_session).trigger_auto_sell(pledge.id, Decimal("119.99"))
        assert isinstance(result.error, AutoSellNotTriggeredError)
        assert pledge.status == "awaiting_sell_execution"
        [failure] = _failures(db_session, pledge.id)
        assert failure.action == "auto_sell_triggered"
        assert failure.actor_role == "system"
        assert failure.payload["error_code"] == "AUTO_SELL_NOT_TRIGGERED"
        assert failure.payload["market_price"] == "119.99"

    def test_paused_pledge_is_skipped(self, db_session, admin_user, open_position):
        _, pledge = open_position(auto_sell_price=Decimal("120"))
        engine = ExecutionEngine(db_session)
        engine.pause(pledge.id, admin_user.id).unwrap()

        assert isinstance(engine.trigger_auto_sell(pledge.id, Decimal("150")).error, AutoSellNotTriggeredError)

    def test_admin_managed_is_skipped(self, db_session, open_position):
        _, pledge = open_position()
        result = ExecutionEngine(db_session).trigger_auto_sell(pledge.id, Decimal("150"))
        assert isinstance(result.error, AutoSellNotTriggeredError)

    def test_disabled_flag(self, db_session, open_position, monkeypatch):
        monkeypatch.setattr(feature_flags, "ENABLE_AUTO_SELL_TRIGGER", False)
        _, pledge = open_position(auto_sell_price=Decimal("120"))

        result = ExecutionEngine(db_session).trigger_auto_sell(pledge.id, Decimal("150"))

        assert isinstance(result.error, AutoSellNotTriggeredError)
        assert _records(db_session, pledge.id, "sell") == []
