"""
Execution Engine - turns funded pledges into execution records.

Single-leg pledges go ``ready_for_execution -> executing -> executed``.
Buy/sell cycle pledges stop at ``awaiting_sell_execution`` after the buy leg
and reach ``executed`` when the sell leg is written, either by an admin
(``execute_now`` or a session sell phase) or by ``trigger_auto_sell``.

Every status change is a version-checked conditional UPDATE. The attempt
that loses the race gets AlreadyExecutingError; its only write is a failed
audit entry.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from loguru import logger

from pledgehub.config import settings
from pledgehub.db.models import Pledge, PledgeExecutionRecord, PledgeSession
from pledgehub.db.repositories import (
    ExecutionRecordRepository,
    PledgeRepository,
    SessionRepository,
    UserRepository,
)
from pledgehub.db.session import atomic
from pledgehub.domain.consent import AutoSellConfig
from pledgehub.domain.pricing import (
    ZERO,
    money,
    pledge_value,
    settle_cycle,
    single_leg_net_amount,
    to_decimal,
    unrealized_pl,
)
from pledgehub.domain.results import returns_result
from pledgehub.domain.states import (
    ActorRole,
    ExecutionStatus,
    ExecutionType,
    PledgeSide,
    PledgeStatus,
    SessionMode,
    SessionStatus,
)
from pledgehub.feature_flags import feature_flags
from pledgehub.services.audit_ledger import AuditAction, AuditLedger, TargetType
from pledgehub.services.session_store import SessionStore
from pledgehub.utils.datetime import settlement_date, utc_now
from pledgehub.utils.errors import (
    AlreadyExecutingError,
    AutoSellNotTriggeredError,
    InvalidPriceError,
    InvalidTransitionError,
    PledgeHubError,
    ValidationError,
)

PAST_ENTRY = (PledgeStatus.EXECUTING, PledgeStatus.AWAITING_SELL_EXECUTION, PledgeStatus.EXECUTED)
PAST_SELL = (PledgeStatus.EXECUTING, PledgeStatus.EXECUTED)


@dataclass
class ExecutionSummary:
    session_id: str
    phase: str
    executed: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    session_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "phase": self.phase,
            "executed": self.executed,
            "failed": self.failed,
            "skipped": self.skipped,
            "session_status": self.session_status,
        }


@dataclass
class PositionSummary:
    pledge_id: str
    stock_symbol: str
    status: str
    side: str
    qty: int
    executed_qty: int = 0
    buy_price: Optional[Decimal] = None
    sell_price: Optional[Decimal] = None
    live_price: Optional[Decimal] = None
    unrealized_pl: Optional[Decimal] = None
    realized_pl: Optional[Decimal] = None
    platform_commission: Decimal = ZERO
    commission_rate: Optional[Decimal] = None
    net_amount: Optional[Decimal] = None
    auto_sell: Optional[Dict[str, Any]] = None
    auto_sell_paused: bool = False


def _price_or_raise(value: Any, label: str) -> Decimal:
    price = to_decimal(value)
    if price <= 0:
        raise InvalidPriceError(f"{label} must be greater than zero", {label.lower().replace(" ", "_"): str(price)})
    return price


class ExecutionEngine:
    """Service for buy/sell legs, admin overrides and P&L."""

    def __init__(self, db: Session):
        self.db = db
        self.users = UserRepository(db)
        self.sessions = SessionRepository(db)
        self.pledges = PledgeRepository(db)
        self.executions = ExecutionRecordRepository(db)
        self.session_store = SessionStore(db)
        self.audit = AuditLedger(db)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def commission_rate(session: PledgeSession) -> Decimal:
        if session.commission_rate_override is not None:
            return to_decimal(session.commission_rate_override)
        return to_decimal(settings.default_commission_rate)

    def _lost_race(self, pledge: Pledge, executing=PAST_ENTRY) -> PledgeHubError:
        """
        Error for a conditional update that matched no row.

        ``executing`` lists the statuses that mean another request got the
        leg first. A pledge cancelled or failed meanwhile is a plain
        transition error.
        """
        self.db.refresh(pledge)
        if pledge.status in executing:
            return AlreadyExecutingError(
                "This pledge is already being executed",
                {"pledge_id": pledge.id, "status": pledge.status},
            )
        if pledge.status in PledgeStatus.TERMINAL:
            return InvalidTransitionError(
                f"Pledge was {pledge.status} by another request",
                {"pledge_id": pledge.id, "status": pledge.status},
            )
        return InvalidTransitionError(
            "Pledge was changed by another request; reload and retry",
            {"pledge_id": pledge.id, "status": pledge.status},
        )

    def _record_refusal(self, pledge: Pledge, actor_id: Optional[str], actor_role: str, action: str,
                        error: PledgeHubError, payload: Optional[Dict[str, Any]] = None) -> None:
        self.db.refresh(pledge)
        self.audit.record_failure(
            actor_id=actor_id,
            actor_role=actor_role,
            action=action,
            target_type=TargetType.PLEDGE,
            target_pledge_id=pledge.id,
            target_session_id=pledge.session_id,
            payload={
                "stock_symbol": pledge.stock_symbol,
                "error_code": error.code,
                "status": pledge.status,
                **(payload or {}),
            },
            error_message=error.message,
        )

    @contextmanager
    def _audited(self, pledge: Pledge, actor_id: Optional[str], actor_role: str, action: str, **payload):
        """Write one failed audit entry for a refused operation on ``pledge``, then re-raise."""
        try:
            yield
        except PledgeHubError as e:
            self._record_refusal(pledge, actor_id, actor_role, action, e, payload)
            raise

    @staticmethod
    def _leg_failed_action(side: str) -> str:
        return AuditAction.BUY_EXECUTION_FAILED if side == PledgeSide.BUY else AuditAction.SELL_EXECUTION_FAILED

    @staticmethod
    def _auto_sell(pledge: Pledge) -> AutoSellConfig:
        config = AutoSellConfig.from_column(pledge.auto_sell_config)
        if config is None:
            raise InvalidTransitionError(
                "This pledge has no sell leg to manage",
                {"pledge_id": pledge.id},
            )
        return config

    def _require_open_cycle(self, pledge: Pledge) -> AutoSellConfig:
        if pledge.status in PledgeStatus.TERMINAL:
            raise InvalidTransitionError(
                f"Pledge is already {pledge.status}",
                {"pledge_id": pledge.id, "status": pledge.status},
            )
        return self._auto_sell(pledge)

    def _create_record(self, **fields) -> PledgeExecutionRecord:
        try:
            return self.executions.create(**fields)
        except IntegrityError as e:
            raise AlreadyExecutingError(
                "This leg has already been executed",
                {"pledge_id": fields.get("pledge_id"), "side": fields.get("side")},
            ) from e

    # ------------------------------------------------------------------
    # Entry leg
    # ------------------------------------------------------------------

    @returns_result
    def execute_buy_leg(
        self,
        pledge_id: str,
        admin_id: str,
        executed_price: Optional[Decimal] = None,
        broker_order_id: Optional[str] = None,
    ) -> PledgeExecutionRecord:
        """Execute the first leg of one pledge (the sell leg for sell-only sessions)."""
        self.users.require_admin(admin_id)
        pledge = self.pledges.get_or_404(pledge_id)
        with self._audited(pledge, admin_id, ActorRole.ADMIN, self._leg_failed_action(pledge.side),
                           trigger="admin_execute_leg"):
            return self._execute_entry_leg(pledge, admin_id, ActorRole.ADMIN, executed_price, broker_order_id)

    def _execute_entry_leg(
        self,
        pledge: Pledge,
        actor_id: Optional[str],
        actor_role: str,
        executed_price: Optional[Decimal] = None,
        broker_order_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PledgeExecutionRecord:
        if pledge.status in PAST_ENTRY:
            raise AlreadyExecutingError(
                "This pledge is already being executed",
                {"pledge_id": pledge.id, "status": pledge.status},
            )
        if pledge.status != PledgeStatus.READY_FOR_EXECUTION:
            raise InvalidTransitionError(
                f"A pledge that is {pledge.status} cannot be executed",
                {"pledge_id": pledge.id, "status": pledge.status},
            )
        if not pledge.convenience_fee_paid:
            raise InvalidTransitionError("Convenience fee has not been paid", {"pledge_id": pledge.id})

        session = self.sessions.get_or_404(pledge.session_id)
        price = _price_or_raise(executed_price if executed_price is not None else pledge.price_target,
                                "Executed price")
        is_cycle = session.session_mode == SessionMode.BUY_SELL_CYCLE
        final_status = PledgeStatus.AWAITING_SELL_EXECUTION if is_cycle else PledgeStatus.EXECUTED
        now = now or utc_now()
        total = pledge_value(pledge.qty, price)
        action = (
            AuditAction.BUY_EXECUTION_COMPLETED if pledge.side == PledgeSide.BUY
            else AuditAction.SELL_EXECUTION_COMPLETED
        )

        with atomic(self.db):
            if not self.pledges.transition(pledge, PledgeStatus.READY_FOR_EXECUTION, PledgeStatus.EXECUTING):
                raise self._lost_race(pledge)
            record = self._create_record(
                pledge_id=pledge.id,
                session_id=pledge.session_id,
                user_id=pledge.user_id,
                brokerage_account_id=pledge.brokerage_account_id,
                stock_symbol=pledge.stock_symbol,
                side=pledge.side,
                pledged_qty=pledge.qty,
                executed_qty=pledge.qty,
                executed_price=price,
                total_execution_value=total,
                platform_commission=ZERO,
                net_amount=total if is_cycle else single_leg_net_amount(pledge.qty, price),
                status=ExecutionStatus.COMPLETED,
                broker_order_id=broker_order_id,
                executed_at=now,
                settlement_date=settlement_date(now),
            )
            if not self.pledges.transition(pledge, PledgeStatus.EXECUTING, final_status):
                raise self._lost_race(pledge)
            self.audit.record(
                actor_id=actor_id,
                actor_role=actor_role,
                action=action,
                target_type=TargetType.PLEDGE,
                target_pledge_id=pledge.id,
                target_session_id=pledge.session_id,
                payload={
                    "stock_symbol": pledge.stock_symbol,
                    "side": pledge.side,
                    "qty": pledge.qty,
                    "executed_price": price,
                    "net_amount": record.net_amount,
                    "execution_record_id": record.id,
                    "previous_status": PledgeStatus.READY_FOR_EXECUTION,
                    "new_status": final_status,
                },
            )

        logger.info(f"Pledge {pledge.id}: {pledge.side} {pledge.qty} {pledge.stock_symbol} @ {price} -> {final_status}")
        return record

    # ------------------------------------------------------------------
    # Sell leg
    # ------------------------------------------------------------------

    def _execute_sell_leg(
        self,
        pledge: Pledge,
        price: Decimal,
        actor_id: Optional[str],
        actor_role: str,
        action: str,
        broker_order_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> PledgeExecutionRecord:
        if pledge.status in PAST_SELL:
            raise AlreadyExecutingError(
                "The sell leg of this pledge has already been executed",
                {"pledge_id": pledge.id, "status": pledge.status},
            )
        if pledge.status != PledgeStatus.AWAITING_SELL_EXECUTION:
            raise InvalidTransitionError(
                f"A pledge that is {pledge.status} has no open position to sell",
                {"pledge_id": pledge.id, "status": pledge.status},
            )
        buy = self.executions.completed_leg(pledge.id, PledgeSide.BUY)
        if buy is None:
            raise InvalidTransitionError("No completed buy leg found for this pledge", {"pledge_id": pledge.id})

        session = self.sessions.get_or_404(pledge.session_id)
        rate = self.commission_rate(session)
        # The sell leg always closes the full executed buy quantity
        qty = buy.executed_qty
        result = settle_cycle(buy.executed_price, price, qty, rate)
        now = now or utc_now()

        with atomic(self.db):
            if not self.pledges.transition(pledge, PledgeStatus.AWAITING_SELL_EXECUTION, PledgeStatus.EXECUTED):
                raise self._lost_race(pledge, PAST_SELL)
            record = self._create_record(
                pledge_id=pledge.id,
                session_id=pledge.session_id,
                user_id=pledge.user_id,
                brokerage_account_id=pledge.brokerage_account_id,
                stock_symbol=pledge.stock_symbol,
                side=PledgeSide.SELL,
                pledged_qty=pledge.qty,
                executed_qty=qty,
                executed_price=price,
                total_execution_value=pledge_value(qty, price),
                platform_commission=result.platform_commission,
                commission_rate=rate,
                realized_pl=result.realized_pl,
                net_amount=result.net_realized,
                status=ExecutionStatus.COMPLETED,
                broker_order_id=broker_order_id,
                executed_at=now,
                settlement_date=settlement_date(now),
            )
            self.audit.record(
                actor_id=actor_id,
                actor_role=actor_role,
                action=action,
                target_type=TargetType.PLEDGE,
                target_pledge_id=pledge.id,
                target_session_id=pledge.session_id,
                payload={
                    "stock_symbol": pledge.stock_symbol,
                    "qty": qty,
                    "buy_price": buy.executed_price,
                    "sell_price": price,
                    "realized_pl": result.realized_pl,
                    "platform_commission": result.platform_commission,
                    "net_realized": result.net_realized,
                    "execution_record_id": record.id,
                    "previous_status": PledgeStatus.AWAITING_SELL_EXECUTION,
                    "new_status": PledgeStatus.EXECUTED,
                    **(extra or {}),
                },
            )

        logger.info(
            f"Pledge {pledge.id}: sold {qty} {pledge.stock_symbol} @ {price}, "
            f"realized {result.realized_pl}, commission {result.platform_commission}"
        )
        return record

    def _complete_session_if_done(self, session_id: str, actor_id: Optional[str], actor_role: str) -> None:
        session = self.sessions.get_or_404(session_id)
        if session.status != SessionStatus.AWAITING_SELL_EXECUTION:
            return
        open_positions = [
            p for p in self.pledges.for_session(session_id)
            if p.status in (PledgeStatus.EXECUTING, PledgeStatus.AWAITING_SELL_EXECUTION)
        ]
        if open_positions:
            return
        with atomic(self.db):
            self.session_store.transition_session(session, SessionStatus.COMPLETED, actor_id, actor_role,
                                                  {"reason": "all positions closed"})

    # ------------------------------------------------------------------
    # Session execution
    # ------------------------------------------------------------------

    @returns_result
    def execute_session(
        self,
        session_id: str,
        admin_id: str,
        executed_price: Optional[Decimal] = None,
    ) -> ExecutionSummary:
        """
        Run the next execution phase of a session.

        Active or closed sessions run the entry phase over every
        ``ready_for_execution`` pledge. Cycle sessions that are awaiting the
        sell leg run the sell phase. ``executed_price`` overrides the session
        reference price for every pledge in the phase.
        """
        self.users.require_admin(admin_id)
        return self._run_session(session_id, admin_id, ActorRole.ADMIN, executed_price)

    def execute_session_as_system(self, session_id: str) -> ExecutionSummary:
        """Scheduler entry point for sessions whose execution rule is session_end."""
        return self._run_session(session_id, None, ActorRole.SYSTEM, None)

    def _run_session(self, session_id, actor_id, actor_role, executed_price) -> ExecutionSummary:
        session = self.sessions.get_or_404(session_id)
        if session.status in (SessionStatus.ACTIVE, SessionStatus.CLOSED):
            return self._run_entry_phase(session, actor_id, actor_role, executed_price)
        if session.status == SessionStatus.AWAITING_SELL_EXECUTION:
            return self._run_sell_phase(session, actor_id, actor_role, executed_price)
        raise InvalidTransitionError(
            f"A session that is {session.status} cannot be executed",
            {"session_id": session.id, "status": session.status},
        )

    def _run_entry_phase(self, session, actor_id, actor_role, executed_price) -> ExecutionSummary:
        summary = ExecutionSummary(session_id=session.id, phase="entry")
        with atomic(self.db):
            self.session_store.transition_session(session, SessionStatus.EXECUTING, actor_id, actor_role)

        reference = executed_price if executed_price is not None else session.stock_price
        for pledge in self.pledges.for_session(session.id, status=PledgeStatus.READY_FOR_EXECUTION):
            price = reference if reference is not None else pledge.price_target
            try:
                self._execute_entry_leg(pledge, actor_id, actor_role, price)
                summary.executed.append(pledge.id)
            except AlreadyExecutingError as e:
                self._record_refusal(pledge, actor_id, actor_role, self._leg_failed_action(pledge.side), e,
                                     {"trigger": "session_entry_phase"})
                summary.skipped.append(pledge.id)
            except PledgeHubError as e:
                self._fail_leg(pledge, pledge.side, e, actor_id, actor_role)
                summary.failed.append({"pledge_id": pledge.id, "error_code": e.code, "message": e.message})

        next_status = (
            SessionStatus.AWAITING_SELL_EXECUTION if session.session_mode == SessionMode.BUY_SELL_CYCLE
            else SessionStatus.COMPLETED
        )
        with atomic(self.db):
            unpaid = self._cancel_unpaid(session, actor_id, actor_role)
            session.last_executed_at = utc_now()
            self.session_store.transition_session(session, next_status, actor_id, actor_role, {
                "executed": len(summary.executed),
                "failed": len(summary.failed),
                "unpaid_cancelled": len(unpaid),
            })
        summary.session_status = session.status
        logger.info(
            f"Session {session.id} entry phase: {len(summary.executed)} executed, "
            f"{len(summary.failed)} failed, {len(summary.skipped)} skipped"
        )
        return summary

    def _run_sell_phase(self, session, actor_id, actor_role, executed_price) -> ExecutionSummary:
        summary = ExecutionSummary(session_id=session.id, phase="sell")
        reference = executed_price if executed_price is not None else session.stock_price
        awaiting = self.pledges.for_session(session.id, status=PledgeStatus.AWAITING_SELL_EXECUTION)

        priced = []
        for pledge in awaiting:
            price = reference
            if price is None:
                config = AutoSellConfig.from_column(pledge.auto_sell_config)
                price = config.sell_price if config and config.has_target else None
            if price is None:
                raise ValidationError(
                    "A sell price is required: set the session reference price or pass one",
                    {"session_id": session.id, "pledge_id": pledge.id},
                )
            priced.append((pledge, price))

        for pledge, price in priced:
            try:
                self._execute_sell_leg(
                    pledge,
                    _price_or_raise(price, "Sell price"),
                    actor_id,
                    actor_role,
                    AuditAction.SELL_EXECUTION_COMPLETED,
                    extra={"trigger": "session_sell_phase"},
                )
                summary.executed.append(pledge.id)
            except AlreadyExecutingError as e:
                self._record_refusal(pledge, actor_id, actor_role, AuditAction.SELL_EXECUTION_FAILED, e,
                                     {"trigger": "session_sell_phase"})
                summary.skipped.append(pledge.id)
            except PledgeHubError as e:
                self._fail_leg(pledge, PledgeSide.SELL, e, actor_id, actor_role)
                summary.failed.append({"pledge_id": pledge.id, "error_code": e.code, "message": e.message})

        with atomic(self.db):
            session.last_executed_at = utc_now()
            self.session_store.transition_session(session, SessionStatus.COMPLETED, actor_id, actor_role, {
                "executed": len(summary.executed),
                "failed": len(summary.failed),
            })
        summary.session_status = session.status
        return summary

    def _fail_leg(self, pledge: Pledge, side: str, error: PledgeHubError,
                  actor_id: Optional[str], actor_role: str) -> None:
        """Record a failed leg and move the pledge to failed."""
        self.db.refresh(pledge)
        previous = pledge.status
        if previous in PledgeStatus.TERMINAL:
            return
        action = (
            AuditAction.BUY_EXECUTION_FAILED if side == PledgeSide.BUY
            else AuditAction.SELL_EXECUTION_FAILED
        )
        with atomic(self.db):
            if not self.pledges.transition(pledge, previous, PledgeStatus.FAILED):
                logger.warning(f"Pledge {pledge.id} changed while recording a failed {side} leg")
                return
            self.executions.create(
                pledge_id=pledge.id,
                session_id=pledge.session_id,
                user_id=pledge.user_id,
                brokerage_account_id=pledge.brokerage_account_id,
                stock_symbol=pledge.stock_symbol,
                side=side,
                pledged_qty=pledge.qty,
                executed_qty=0,
                status=ExecutionStatus.FAILED,
                error_message=error.message,
            )
            self.audit.record(
                actor_id=actor_id,
                actor_role=actor_role,
                action=action,
                target_type=TargetType.PLEDGE,
                target_pledge_id=pledge.id,
                target_session_id=pledge.session_id,
                payload={
                    "stock_symbol": pledge.stock_symbol,
                    "side": side,
                    "error_code": error.code,
                    "previous_status": previous,
                    "new_status": PledgeStatus.FAILED,
                },
                success=False,
                error_message=error.message,
            )
        logger.error(f"Pledge {pledge.id} {side} leg failed: {error.message}")

    def _cancel_unpaid(self, session: PledgeSession, actor_id: Optional[str], actor_role: str) -> List[str]:
        """Cancel pledges still waiting on their fee, inside the caller's transaction."""
        cancelled = []
        for status in (PledgeStatus.DRAFT, PledgeStatus.PENDING_PAYMENT):
            for pledge in self.pledges.for_session(session.id, status=status):
                if not self.pledges.transition(pledge, status, PledgeStatus.CANCELLED):
                    logger.warning(f"Pledge {pledge.id} changed while cancelling unpaid pledges")
                    continue
                self.audit.record(
                    actor_id=actor_id,
                    actor_role=actor_role,
                    action=AuditAction.PLEDGE_CANCELLED,
                    target_type=TargetType.PLEDGE,
                    target_pledge_id=pledge.id,
                    target_session_id=session.id,
                    payload={
                        "stock_symbol": pledge.stock_symbol,
                        "previous_status": status,
                        "new_status": PledgeStatus.CANCELLED,
                        "reason": "convenience fee unpaid when the session executed",
                    },
                )
                cancelled.append(pledge.id)
        if cancelled:
            logger.info(f"Session {session.id}: cancelled {len(cancelled)} unpaid pledges")
        return cancelled

    # ------------------------------------------------------------------
    # Admin overrides
    # ------------------------------------------------------------------

    def _record_override(self, pledge: Pledge, admin_id: str, action: str,
                         previous: Dict[str, Any], new: Dict[str, Any]) -> None:
        self.audit.record(
            actor_id=admin_id,
            actor_role=ActorRole.ADMIN,
            action=action,
            target_type=TargetType.PLEDGE,
            target_pledge_id=pledge.id,
            target_session_id=pledge.session_id,
            payload={"stock_symbol": pledge.stock_symbol, "previous": previous, "new": new},
        )

    def _set_pause(self, pledge_id: str, admin_id: str, paused: bool) -> Pledge:
        self.users.require_admin(admin_id)
        pledge = self.pledges.get_or_404(pledge_id)
        action = AuditAction.AUTO_SELL_PAUSED if paused else AuditAction.AUTO_SELL_RESUMED
        with self._audited(pledge, admin_id, ActorRole.ADMIN, action, requested_paused=paused):
            self._require_open_cycle(pledge)
            if bool(pledge.auto_sell_paused) == paused:
                raise InvalidTransitionError(
                    "Auto-sell is already paused" if paused else "Auto-sell is not paused",
                    {"pledge_id": pledge_id},
                )
            now = utc_now()
            note = (
                f"Auto-execution {'paused' if paused else 'resumed'} by admin at {now.isoformat(timespec='seconds')}"
            )
            with atomic(self.db):
                values = {"auto_sell_paused": paused, "admin_notes": note}
                if paused:
                    values["paused_at"] = now
                if not self.pledges.update_guarded(pledge, **values):
                    raise self._lost_race(pledge, PAST_SELL)
                self._record_override(
                    pledge,
                    admin_id,
                    action,
                    {"auto_sell_paused": not paused},
                    {"auto_sell_paused": paused},
                )
        return pledge

    @returns_result
    def pause(self, pledge_id: str, admin_id: str) -> Pledge:
        """Stop automatic triggering for a pledge until resumed."""
        return self._set_pause(pledge_id, admin_id, True)

    @returns_result
    def resume(self, pledge_id: str, admin_id: str) -> Pledge:
        return self._set_pause(pledge_id, admin_id, False)

    @returns_result
    def execute_now(
        self,
        pledge_id: str,
        admin_id: str,
        market_price: Decimal,
        broker_order_id: Optional[str] = None,
    ) -> PledgeExecutionRecord:
        """Sell an open position immediately at ``market_price``."""
        self.users.require_admin(admin_id)
        price = _price_or_raise(market_price, "Market price")
        pledge = self.pledges.get_or_404(pledge_id)
        previous_config = pledge.auto_sell_config
        with self._audited(pledge, admin_id, ActorRole.ADMIN, AuditAction.SELL_EXECUTION_FAILED,
                           trigger="admin_execute_now", market_price=price):
            record = self._execute_sell_leg(
                pledge,
                price,
                admin_id,
                ActorRole.ADMIN,
                AuditAction.SELL_EXECUTION_COMPLETED,
                broker_order_id=broker_order_id,
                extra={"trigger": "admin_execute_now", "previous_auto_sell": previous_config},
            )
        self._complete_session_if_done(pledge.session_id, admin_id, ActorRole.ADMIN)
        return record

    @returns_result
    def change_target(self, pledge_id: str, admin_id: str, new_price: Decimal) -> Pledge:
        """Set a new sell target. The pledge becomes auto_target if it was admin-managed."""
        self.users.require_admin(admin_id)
        price = _price_or_raise(new_price, "Sell target")
        pledge = self.pledges.get_or_404(pledge_id)
        with self._audited(pledge, admin_id, ActorRole.ADMIN, AuditAction.AUTO_SELL_TARGET_CHANGED,
                           requested_sell_price=price):
            config = self._require_open_cycle(pledge)
            updated = AutoSellConfig.for_target(price, config.sell_qty or pledge.qty)

            with atomic(self.db):
                if not self.pledges.update_guarded(
                    pledge,
                    auto_sell_config=updated.to_column(),
                    admin_notes=f"Target price changed to {price} by admin",
                ):
                    raise self._lost_race(pledge, PAST_SELL)
                self._record_override(
                    pledge,
                    admin_id,
                    AuditAction.AUTO_SELL_TARGET_CHANGED,
                    config.to_column(),
                    updated.to_column(),
                )
        logger.info(f"Pledge {pledge_id} sell target changed to {price} by admin {admin_id}")
        return pledge

    @returns_result
    def cancel_auto_sell(self, pledge_id: str, admin_id: str) -> Pledge:
        """Convert the position to admin-managed and clear its target."""
        self.users.require_admin(admin_id)
        pledge = self.pledges.get_or_404(pledge_id)
        with self._audited(pledge, admin_id, ActorRole.ADMIN, AuditAction.AUTO_SELL_CANCELLED):
            config = self._require_open_cycle(pledge)
            updated = AutoSellConfig.for_target(None, config.sell_qty or pledge.qty)

            with atomic(self.db):
                if not self.pledges.update_guarded(
                    pledge,
                    auto_sell_config=updated.to_column(),
                    admin_notes="Converted to admin-managed position",
                ):
                    raise self._lost_race(pledge, PAST_SELL)
                self._record_override(
                    pledge,
                    admin_id,
                    AuditAction.AUTO_SELL_CANCELLED,
                    config.to_column(),
                    updated.to_column(),
                )
        return pledge

    @returns_result
    def trigger_auto_sell(self, pledge_id: str, market_price: Decimal) -> PledgeExecutionRecord:
        """Automatic sell when the market reaches an auto_target pledge's price."""
        if not feature_flags.ENABLE_AUTO_SELL_TRIGGER:
            raise AutoSellNotTriggeredError("Automatic sell triggering is disabled")
        price = _price_or_raise(market_price, "Market price")
        pledge = self.pledges.get_or_404(pledge_id)
        with self._audited(pledge, None, ActorRole.SYSTEM, AuditAction.AUTO_SELL_TRIGGERED, market_price=price):
            config = self._auto_sell(pledge)

            if pledge.auto_sell_paused:
                raise AutoSellNotTriggeredError("Auto-sell is paused for this pledge", {"pledge_id": pledge_id})
            if config.execution_type != ExecutionType.AUTO_TARGET or not config.has_target:
                raise AutoSellNotTriggeredError("This position is admin-managed", {"pledge_id": pledge_id})
            if price < config.sell_price:
                raise AutoSellNotTriggeredError(
                    "Market price has not reached the target",
                    {"pledge_id": pledge_id, "market_price": str(price), "sell_price": str(config.sell_price)},
                )

            record = self._execute_sell_leg(
                pledge,
                price,
                None,
                ActorRole.SYSTEM,
                AuditAction.AUTO_SELL_TRIGGERED,
                extra={"trigger": "auto_target", "sell_target": config.sell_price},
            )
        self._complete_session_if_done(pledge.session_id, None, ActorRole.SYSTEM)
        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @returns_result
    def position_summary(self, pledge_id: str, live_price: Optional[Decimal] = None) -> PositionSummary:
        """Legs and P&L of one pledge; unrealized P&L needs a live price."""
        pledge = self.pledges.get_or_404(pledge_id)
        session = self.sessions.get_or_404(pledge.session_id)
        config = AutoSellConfig.from_column(pledge.auto_sell_config)
        summary = PositionSummary(
            pledge_id=pledge.id,
            stock_symbol=pledge.stock_symbol,
            status=pledge.status,
            side=pledge.side,
            qty=pledge.qty,
            live_price=to_decimal(live_price) if live_price is not None else None,
            auto_sell=config.to_column() if config else None,
            auto_sell_paused=bool(pledge.auto_sell_paused),
        )

        entry = self.executions.completed_leg(pledge.id, pledge.side)
        if entry is None:
            return summary
        summary.executed_qty = entry.executed_qty

        if session.session_mode != SessionMode.BUY_SELL_CYCLE:
            if pledge.side == PledgeSide.BUY:
                summary.buy_price = entry.executed_price
            else:
                summary.sell_price = entry.executed_price
            summary.net_amount = entry.net_amount
            return summary

        summary.buy_price = entry.executed_price
        summary.commission_rate = self.commission_rate(session)
        sell = self.executions.completed_leg(pledge.id, PledgeSide.SELL)
        if sell is not None:
            summary.sell_price = sell.executed_price
            summary.realized_pl = money(sell.realized_pl)
            summary.platform_commission = money(sell.platform_commission)
            summary.commission_rate = sell.commission_rate
            summary.net_amount = money(sell.net_amount)
        elif live_price is not None:
            summary.unrealized_pl = unrealized_pl(live_price, entry.executed_price, entry.executed_qty)
        return summary

    def get_user_executions(self, user_id: str) -> List[PledgeExecutionRecord]:
        return self.executions.for_user(user_id)

    def list_awaiting_positions(self) -> Dict[str, List[Pledge]]:
        """Open cycle positions split by how their sell leg will be executed."""
        positions: Dict[str, List[Pledge]] = {
            ExecutionType.AUTO_TARGET: [],
            ExecutionType.ADMIN_MANAGED: [],
        }
        for pledge in self.pledges.awaiting_sell():
            config = AutoSellConfig.from_column(pledge.auto_sell_config)
            if config and config.has_target and config.execution_type == ExecutionType.AUTO_TARGET:
                positions[ExecutionType.AUTO_TARGET].append(pledge)
            else:
                positions[ExecutionType.ADMIN_MANAGED].append(pledge)
        return positions
