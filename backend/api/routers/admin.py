"""
Admin router for access review, session management, execution and audit.

Every endpoint requires the stored admin role. Service calls re-check the
role, so these routes cannot be used to escalate.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import StreamingResponse

from api.dependencies import get_access_gate, get_audit_ledger, get_execution_engine, get_session_store
from api.ratelimit import limiter, write_limit
from api.schemas.access import AccessRequestResponse, AccessReview
from api.schemas.executions import (
    AuditLogResponse,
    ChangeTargetRequest,
    ExecuteNowRequest,
    ExecutionRecordResponse,
    PositionsResponse,
    TriggerAutoSellRequest,
)
from api.schemas.pledges import PledgeResponse
from api.schemas.sessions import (
    ExecutionSummaryResponse,
    SessionCancel,
    SessionClone,
    SessionCreate,
    SessionExecute,
    SessionResponse,
    SessionStatusChange,
    SessionUpdate,
)
from api.utils.auth import require_admin
from api.utils.exceptions import unwrap_result
from api.utils.metrics import increment_metric
from pledgehub.domain.results import Result
from pledgehub.services.access_gate import AccessGate
from pledgehub.services.audit_ledger import AuditFilters, AuditLedger
from pledgehub.services.execution_engine import ExecutionEngine
from pledgehub.services.session_store import SessionStore
from pledgehub.utils.errors import AlreadyExecutingError

router = APIRouter(prefix="/admin", tags=["admin"])


def _unwrap_execution(result: Result):
    """Count legs that lost a race before mapping the result."""
    if not result.ok and isinstance(result.error, AlreadyExecutingError):
        increment_metric("execution_conflicts_total")
    return unwrap_result(result)


# ============================================================================
# Access requests
# ============================================================================

@router.get("/access-requests", response_model=List[AccessRequestResponse])
async def list_access_requests(
    status_filter: Optional[str] = Query(None, alias="status"),
    admin_id: str = Depends(require_admin),
    gate: AccessGate = Depends(get_access_gate),
):
    return gate.list_requests(status=status_filter)


@router.post("/access-requests/{request_id}/review", response_model=AccessRequestResponse)
@limiter.limit(write_limit)
async def review_access_request(
    request: Request,
    request_id: str,
    payload: AccessReview,
    admin_id: str = Depends(require_admin),
    gate: AccessGate = Depends(get_access_gate),
):
    reviewed = unwrap_result(
        gate.review(
            request_id,
            payload.decision,
            admin_id,
            reason=payload.rejection_reason,
            admin_notes=payload.admin_notes,
        )
    )
    increment_metric("access_reviews_total")
    return reviewed


# ============================================================================
# Sessions
# ============================================================================

@router.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(write_limit)
async def create_session(
    request: Request,
    payload: SessionCreate,
    admin_id: str = Depends(require_admin),
    store: SessionStore = Depends(get_session_store),
):
    return unwrap_result(store.create_session(admin_id, **payload.model_dump()))


@router.patch("/sessions/{session_id}", response_model=SessionResponse)
@limiter.limit(write_limit)
async def update_session(
    request: Request,
    session_id: str,
    payload: SessionUpdate,
    admin_id: str = Depends(require_admin),
    store: SessionStore = Depends(get_session_store),
):
    """Apply only the fields present in the request body"""
    return unwrap_result(store.update_session(session_id, admin_id, **payload.model_dump(exclude_unset=True)))


@router.delete("/sessions/{session_id}")
@limiter.limit(write_limit)
async def delete_session(
    request: Request,
    session_id: str,
    admin_id: str = Depends(require_admin),
    store: SessionStore = Depends(get_session_store),
):
    deleted = unwrap_result(store.delete_session(session_id, admin_id))
    return {"deleted": deleted}


@router.post("/sessions/{session_id}/status", response_model=SessionResponse)
@limiter.limit(write_limit)
async def change_session_status(
    request: Request,
    session_id: str,
    payload: SessionStatusChange,
    admin_id: str = Depends(require_admin),
    store: SessionStore = Depends(get_session_store),
):
    return unwrap_result(store.advance_status(session_id, payload.status, admin_id))


@router.post("/sessions/{session_id}/cancel", response_model=SessionResponse)
@limiter.limit(write_limit)
async def cancel_session(
    request: Request,
    session_id: str,
    payload: SessionCancel,
    admin_id: str = Depends(require_admin),
    store: SessionStore = Depends(get_session_store),
):
    return unwrap_result(store.cancel_session(session_id, admin_id, reason=payload.reason))


@router.post("/sessions/{session_id}/clone", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(write_limit)
async def clone_session(
    request: Request,
    session_id: str,
    payload: SessionClone,
    admin_id: str = Depends(require_admin),
    store: SessionStore = Depends(get_session_store),
):
    return unwrap_result(store.clone_session(session_id, admin_id, payload.session_start, payload.session_end))


@router.post("/sessions/{session_id}/execute", response_model=ExecutionSummaryResponse)
@limiter.limit(write_limit)
async def execute_session(
    request: Request,
    session_id: str,
    payload: SessionExecute,
    admin_id: str = Depends(require_admin),
    engine: ExecutionEngine = Depends(get_execution_engine),
):
    """
    Run the next execution phase of a session.

    Individual legs that fail are reported in ``failed`` and do not fail the
    request; legs another request already took are reported in ``skipped``.
    """
    summary = _unwrap_execution(engine.execute_session(session_id, admin_id, executed_price=payload.executed_price))
    increment_metric("executions_completed_total", len(summary.executed))
    increment_metric("executions_failed_total", len(summary.failed))
    increment_metric("execution_conflicts_total", len(summary.skipped))
    return summary.to_dict()


# ============================================================================
# Auto-sell overrides
# ============================================================================

@router.get("/positions", response_model=PositionsResponse)
async def list_positions(
    admin_id: str = Depends(require_admin),
    engine: ExecutionEngine = Depends(get_execution_engine),
):
    """Open buy/sell cycle positions grouped by how their sell leg runs"""
    return engine.list_awaiting_positions()


@router.post("/pledges/{pledge_id}/pause", response_model=PledgeResponse)
@limiter.limit(write_limit)
async def pause_auto_sell(
    request: Request,
    pledge_id: str,
    admin_id: str = Depends(require_admin),
    engine: ExecutionEngine = Depends(get_execution_engine),
):
    pledge = unwrap_result(engine.pause(pledge_id, admin_id))
    increment_metric("admin_overrides_total")
    return pledge


@router.post("/pledges/{pledge_id}/resume", response_model=PledgeResponse)
@limiter.limit(write_limit)
async def resume_auto_sell(
    request: Request,
    pledge_id: str,
    admin_id: str = Depends(require_admin),
    engine: ExecutionEngine = Depends(get_execution_engine),
):
    pledge = unwrap_result(engine.resume(pledge_id, admin_id))
    increment_metric("admin_overrides_total")
    return pledge


@router.post("/pledges/{pledge_id}/execute-now", response_model=ExecutionRecordResponse)
@limiter.limit(write_limit)
async def execute_now(
    request: Request,
    pledge_id: str,
    payload: ExecuteNowRequest,
    admin_id: str = Depends(require_admin),
    engine: ExecutionEngine = Depends(get_execution_engine),
):
    """Sell an open position immediately at the given market price"""
    record = _unwrap_execution(
        engine.execute_now(pledge_id, admin_id, payload.market_price, broker_order_id=payload.broker_order_id)
    )
    increment_metric("admin_overrides_total")
    increment_metric("executions_completed_total")
    return record


@router.post("/pledges/{pledge_id}/change-target", response_model=PledgeResponse)
@limiter.limit(write_limit)
async def change_target(
    request: Request,
    pledge_id: str,
    payload: ChangeTargetRequest,
    admin_id: str = Depends(require_admin),
    engine: ExecutionEngine = Depends(get_execution_engine),
):
    pledge = unwrap_result(engine.change_target(pledge_id, admin_id, payload.new_price))
    increment_metric("admin_overrides_total")
    return pledge


@router.post("/pledges/{pledge_id}/cancel-auto-sell", response_model=PledgeResponse)
@limiter.limit(write_limit)
async def cancel_auto_sell(
    request: Request,
    pledge_id: str,
    admin_id: str = Depends(require_admin),
    engine: ExecutionEngine = Depends(get_execution_engine),
):
    """Convert the position to admin-managed"""
    pledge = unwrap_result(engine.cancel_auto_sell(pledge_id, admin_id))
    increment_metric("admin_overrides_total")
    return pledge


@router.post("/pledges/{pledge_id}/trigger-auto-sell", response_model=ExecutionRecordResponse)
@limiter.limit(write_limit)
async def trigger_auto_sell(
    request: Request,
    pledge_id: str,
    payload: TriggerAutoSellRequest,
    admin_id: str = Depends(require_admin),
    engine: ExecutionEngine = Depends(get_execution_engine),
):
    """
    Report a market price for an auto-target position.

    Sells as the system actor when the price has reached the target and
    auto-sell is neither paused nor disabled; answers 409 otherwise.
    """
    record = _unwrap_execution(engine.trigger_auto_sell(pledge_id, payload.market_price))
    increment_metric("executions_completed_total")
    return record


# ============================================================================
# Audit
# ============================================================================

def _audit_filters(
    actor_id: Optional[str] = Query(None),
    stock_symbol: Optional[str] = Query(None),
    success: Optional[bool] = Query(None),
    action: Optional[str] = Query(None),
    pledge_id: Optional[str] = Query(None),
    session_id: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=10000),
) -> AuditFilters:
    return AuditFilters(
        actor_id=actor_id,
        stock_symbol=stock_symbol,
        success=success,
        action=action,
        target_pledge_id=pledge_id,
        target_session_id=session_id,
        limit=limit,
    )


@router.get("/audit", response_model=List[AuditLogResponse])
async def list_audit_entries(
    filters: AuditFilters = Depends(_audit_filters),
    admin_id: str = Depends(require_admin),
    ledger: AuditLedger = Depends(get_audit_ledger),
):
    return ledger.query(filters)


@router.get("/audit/export")
async def export_audit_csv(
    filters: AuditFilters = Depends(_audit_filters),
    admin_id: str = Depends(require_admin),
    ledger: AuditLedger = Depends(get_audit_ledger),
):
    """Download audit entries as CSV"""
    csv_content = ledger.export_csv(filters)
    increment_metric("audit_exports_total")

    filename = f"pledge_audit_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}.csv"

    return StreamingResponse(
        iter([csv_content]),
        media_type="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename={filename}",
            "Content-Type": "text/csv; charset=utf-8"
        }
    )
