"""FastAPI dependencies"""
from typing import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from pledgehub.db.session import get_db as get_db_session, close_db_session
from pledgehub.services.access_gate import AccessGate
from pledgehub.services.audit_ledger import AuditLedger
from pledgehub.services.execution_engine import ExecutionEngine
from pledgehub.services.payments import PaymentProvider, get_payment_provider
from pledgehub.services.session_store import SessionStore
from pledgehub.services.submission import SubmissionWorkflow


def get_db() -> Generator[Session, None, None]:
    """Get database session"""
    db = get_db_session()
    try:
        yield db
    finally:
        close_db_session(db)


def get_payments() -> PaymentProvider:
    """Get the configured convenience fee provider"""
    return get_payment_provider()


def get_access_gate(db: Session = Depends(get_db)) -> AccessGate:
    return AccessGate(db)


def get_session_store(db: Session = Depends(get_db)) -> SessionStore:
    return SessionStore(db)


def get_submission_workflow(
    db: Session = Depends(get_db),
    payments: PaymentProvider = Depends(get_payments),
) -> SubmissionWorkflow:
    return SubmissionWorkflow(db, payment_provider=payments)


def get_execution_engine(db: Session = Depends(get_db)) -> ExecutionEngine:
    return ExecutionEngine(db)


def get_audit_ledger(db: Session = Depends(get_db)) -> AuditLedger:
    return AuditLedger(db)
