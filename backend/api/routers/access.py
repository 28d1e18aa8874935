"""Pledge access router"""
from typing import Optional

from fastapi import APIRouter, Depends, Request, status

from api.dependencies import get_access_gate
from api.ratelimit import limiter, write_limit
from api.schemas.access import AccessRequestCreate, AccessRequestResponse
from api.utils.auth import get_current_user_id
from api.utils.exceptions import unwrap_result
from api.utils.metrics import increment_metric
from pledgehub.services.access_gate import AccessGate

router = APIRouter(prefix="/access-requests", tags=["access"])


@router.post("", response_model=AccessRequestResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(write_limit)
async def submit_access_request(
    request: Request,
    payload: AccessRequestCreate,
    user_id: str = Depends(get_current_user_id),
    gate: AccessGate = Depends(get_access_gate),
):
    """Request to link a brokerage account. Admin review is required before pledging."""
    access_request = unwrap_result(
        gate.submit_request(
            user_id,
            payload.brokerage_account_id,
            payload.broker,
            experience=payload.trading_experience,
            income=payload.annual_income_range,
            consent_given=payload.consent_given,
        )
    )
    increment_metric("access_requests_total")
    return access_request


@router.get("/me", response_model=Optional[AccessRequestResponse])
async def get_my_access_request(
    user_id: str = Depends(get_current_user_id),
    gate: AccessGate = Depends(get_access_gate),
):
    """Latest access request of the current user, if any"""
    return gate.latest_request(user_id)
