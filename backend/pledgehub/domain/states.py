"""
Status vocabularies and transition rules for sessions, pledges and executions.

Statuses are stored as plain strings. Transition tables here are the single
source of truth; services never compare orderings on their own.
"""

from typing import Dict, FrozenSet


class SessionMode:
    BUY_ONLY = "buy_only"
    SELL_ONLY = "sell_only"
    BUY_SELL_CYCLE = "buy_sell_cycle"

    ALL = (BUY_ONLY, SELL_ONLY, BUY_SELL_CYCLE)


class SessionStatus:
    ACTIVE = "active"
    CLOSED = "closed"
    EXECUTING = "executing"
    AWAITING_SELL_EXECUTION = "awaiting_sell_execution"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    ORDER = (ACTIVE, CLOSED, EXECUTING, AWAITING_SELL_EXECUTION, COMPLETED)
    TERMINAL = frozenset({COMPLETED, CANCELLED})
    ALL = ORDER + (CANCELLED,)


class ExecutionRule:
    MANUAL = "manual"
    SESSION_END = "session_end"

    ALL = (MANUAL, SESSION_END)


class FeeType:
    FLAT = "flat"
    PERCENTAGE = "percentage"

    ALL = (FLAT, PERCENTAGE)


class PledgeSide:
    BUY = "buy"
    SELL = "sell"


class PledgeStatus:
    DRAFT = "draft"
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    READY_FOR_EXECUTION = "ready_for_execution"
    EXECUTING = "executing"
    AWAITING_SELL_EXECUTION = "awaiting_sell_execution"
    EXECUTED = "executed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ORDER = (
        DRAFT,
        PENDING_PAYMENT,
        PAID,
        READY_FOR_EXECUTION,
        EXECUTING,
        AWAITING_SELL_EXECUTION,
        EXECUTED,
    )
    TERMINAL = frozenset({EXECUTED, FAILED, CANCELLED})
    NON_TERMINAL = frozenset(ORDER) - {EXECUTED}
    # Pledges that count toward session capacity and stats
    COUNTED = frozenset(ORDER)
    # Statuses that require a paid convenience fee
    FUNDED = frozenset({READY_FOR_EXECUTION, EXECUTING, AWAITING_SELL_EXECUTION, EXECUTED})
    ALL = ORDER + (FAILED, CANCELLED)


class PaymentStatus:
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionStatus:
    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AccessRequestStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ExecutionType:
    AUTO_TARGET = "auto_target"
    ADMIN_MANAGED = "admin_managed"


class ActorRole:
    USER = "user"
    ADMIN = "admin"
    SYSTEM = "system"


_PLEDGE_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PledgeStatus.DRAFT: frozenset({
        PledgeStatus.PENDING_PAYMENT, PledgeStatus.PAID, PledgeStatus.READY_FOR_EXECUTION,
    }),
    PledgeStatus.PENDING_PAYMENT: frozenset({PledgeStatus.PAID, PledgeStatus.READY_FOR_EXECUTION}),
    PledgeStatus.PAID: frozenset({PledgeStatus.READY_FOR_EXECUTION}),
    PledgeStatus.READY_FOR_EXECUTION: frozenset({PledgeStatus.EXECUTING}),
    PledgeStatus.EXECUTING: frozenset({PledgeStatus.EXECUTED, PledgeStatus.AWAITING_SELL_EXECUTION}),
    PledgeStatus.AWAITING_SELL_EXECUTION: frozenset({PledgeStatus.EXECUTED}),
}


def can_transition_pledge(current: str, new: str) -> bool:
    """Whether a pledge may move from ``current`` to ``new``.

    ``failed`` and ``cancelled`` are reachable from every non-terminal status;
    terminal statuses never change.
    """
    if current in PledgeStatus.TERMINAL:
        return False
    if new in (PledgeStatus.FAILED, PledgeStatus.CANCELLED):
        return True
    return new in _PLEDGE_TRANSITIONS.get(current, frozenset())


def can_advance_session(current: str, new: str, mode: str) -> bool:
    """Whether a session may move from ``current`` to ``new``.

    Status only moves forward through SessionStatus.ORDER (steps may be
    skipped); ``awaiting_sell_execution`` exists only for buy/sell cycles.
    """
    if current in SessionStatus.TERMINAL:
        return False
    if new == SessionStatus.CANCELLED:
        return True
    if new not in SessionStatus.ORDER or current not in SessionStatus.ORDER:
        return False
    if new == SessionStatus.AWAITING_SELL_EXECUTION and mode != SessionMode.BUY_SELL_CYCLE:
        return False
    return SessionStatus.ORDER.index(new) > SessionStatus.ORDER.index(current)


def pledge_side_for_mode(mode: str) -> str:
    """Sell-only sessions collect sell pledges; every other mode collects buys."""
    return PledgeSide.SELL if mode == SessionMode.SELL_ONLY else PledgeSide.BUY
