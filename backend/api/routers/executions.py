"""Execution history and payment history for the current user"""
from typing import List

from fastapi import APIRouter, Depends

from api.dependencies import get_execution_engine, get_submission_workflow
from api.schemas.executions import ExecutionRecordResponse
from api.schemas.pledges import PaymentResponse
from api.utils.auth import get_current_user_id
from pledgehub.services.execution_engine import ExecutionEngine
from pledgehub.services.submission import SubmissionWorkflow

router = APIRouter(tags=["executions"])


@router.get("/executions/me", response_model=List[ExecutionRecordResponse])
async def get_my_executions(
    user_id: str = Depends(get_current_user_id),
    engine: ExecutionEngine = Depends(get_execution_engine),
):
    return engine.get_user_executions(user_id)


@router.get("/payments/me", response_model=List[PaymentResponse])
async def get_my_payments(
    user_id: str = Depends(get_current_user_id),
    workflow: SubmissionWorkflow = Depends(get_submission_workflow),
):
    return workflow.get_user_payments(user_id)
