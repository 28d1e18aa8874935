"""Pledges router"""
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from api.dependencies import get_db, get_execution_engine, get_submission_workflow
from api.ratelimit import limiter, write_limit
from api.schemas.pledges import (
    PaymentRetry,
    PledgeCancel,
    PledgeCreate,
    PledgeResponse,
    PositionResponse,
    SubmissionResponse,
)
from api.utils.auth import get_current_user_id
from api.utils.exceptions import ResourceNotFoundException, unwrap_result
from api.utils.metrics import increment_counter, increment_metric
from pledgehub.db.repositories import PledgeRepository
from pledgehub.domain.results import Result
from pledgehub.services.execution_engine import ExecutionEngine
from pledgehub.services.submission import PledgeSubmission, SubmissionReceipt, SubmissionWorkflow
from pledgehub.utils.errors import PaymentFailedError

router = APIRouter(prefix="/pledges", tags=["pledges"])


def _receipt_response(receipt: SubmissionReceipt) -> dict:
    return {
        "pledge": receipt.pledge,
        "payment": receipt.payment,
        "fee": receipt.fee,
        "advisory": receipt.advisory,
    }


def _count_failure(result: Result) -> None:
    if result.ok:
        return
    if isinstance(result.error, PaymentFailedError):
        increment_metric("payments_failed_total")
    else:
        increment_counter("pledge_rejections_total", {"error_code": result.error_code})


@router.get("/me", response_model=List[PledgeResponse])
async def get_my_pledges(
    user_id: str = Depends(get_current_user_id),
    workflow: SubmissionWorkflow = Depends(get_submission_workflow),
):
    return workflow.get_user_pledges(user_id)


@router.post("", response_model=SubmissionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(write_limit)
async def create_pledge(
    request: Request,
    payload: PledgeCreate,
    user_id: str = Depends(get_current_user_id),
    workflow: SubmissionWorkflow = Depends(get_submission_workflow),
):
    """
    Submit a pledge and pay its convenience fee.

    A declined payment answers 402 with the pledge id in ``details``; the
    pledge stays pending payment and can be retried.
    """
    submission = PledgeSubmission(
        session_id=payload.session_id,
        qty=payload.qty,
        price_target=payload.price_target,
        risk_acknowledgment=payload.risk_acknowledgment,
        digital_consent=payload.digital_consent,
        auto_sell_price=payload.auto_sell_price,
        payment_method=payload.payment_method,
        client_correlation_id=payload.client_correlation_id,
    )
    result = workflow.submit(user_id, submission)
    _count_failure(result)
    receipt = unwrap_result(result)
    increment_metric("pledges_submitted_total")
    return _receipt_response(receipt)


@router.post("/{pledge_id}/retry-payment", response_model=SubmissionResponse)
@limiter.limit(write_limit)
async def retry_payment(
    request: Request,
    pledge_id: str,
    payload: PaymentRetry,
    user_id: str = Depends(get_current_user_id),
    workflow: SubmissionWorkflow = Depends(get_submission_workflow),
):
    increment_metric("payment_retries_total")
    result = workflow.retry_payment(pledge_id, user_id, payment_method=payload.payment_method)
    _count_failure(result)
    return _receipt_response(unwrap_result(result))


@router.post("/{pledge_id}/cancel", response_model=PledgeResponse)
@limiter.limit(write_limit)
async def cancel_pledge(
    request: Request,
    pledge_id: str,
    payload: PledgeCancel,
    user_id: str = Depends(get_current_user_id),
    workflow: SubmissionWorkflow = Depends(get_submission_workflow),
):
    pledge = unwrap_result(workflow.cancel_pledge(pledge_id, user_id, reason=payload.reason))
    increment_metric("pledges_cancelled_total")
    return pledge


@router.get("/{pledge_id}/position", response_model=PositionResponse)
async def get_position(
    pledge_id: str,
    live_price: Optional[Decimal] = Query(None, gt=0, description="Current market price for unrealized P&L"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    engine: ExecutionEngine = Depends(get_execution_engine),
):
    """Executed legs and P&L of one of the current user's pledges"""
    pledge = PledgeRepository(db).get_or_404(pledge_id)
    if pledge.user_id != user_id:
        # Other users' pledges are reported as missing
        raise ResourceNotFoundException("Pledge", pledge_id)
    return unwrap_result(engine.position_summary(pledge_id, live_price=live_price))
