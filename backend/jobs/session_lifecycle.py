"""
Session lifecycle job.

Closes active sessions whose end time has passed. With ENABLE_AUTO_EXECUTION
on, closed sessions whose execution rule is ``session_end`` then run their
entry phase as the system actor.
"""

import os
import sys
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

# Add parent directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from pledgehub.db.models import PledgeSession
from pledgehub.db.session import close_db_session, get_db
from pledgehub.domain.states import ExecutionRule, SessionStatus
from pledgehub.feature_flags import feature_flags
from pledgehub.log_config import logger
from pledgehub.services.execution_engine import ExecutionEngine
from pledgehub.services.session_store import SessionStore
from pledgehub.utils.datetime import utc_now
from pledgehub.utils.errors import PledgeHubError


def execute_due_sessions(db: Session) -> Dict[str, Any]:
    """Run the entry phase for closed sessions that execute at session end."""
    engine = ExecutionEngine(db)
    results: Dict[str, Any] = {}
    due = (
        db.query(PledgeSession)
        .filter(
            PledgeSession.status == SessionStatus.CLOSED,
            PledgeSession.execution_rule == ExecutionRule.SESSION_END,
        )
        .all()
    )
    for session in due:
        try:
            summary = engine.execute_session_as_system(session.id)
            results[session.id] = summary.to_dict()
        except PledgeHubError as e:
            logger.error(f"Automatic execution of session {session.id} failed: {e.message}")
            results[session.id] = {"error_code": e.code, "message": e.message}
    return results


def run_session_lifecycle(db: Optional[Session] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Close expired sessions and, when enabled, execute the due ones."""
    owns_session = db is None
    db = db or get_db()
    try:
        closed = SessionStore(db).close_expired_sessions(now or utc_now())
        executed: Dict[str, Any] = {}
        if feature_flags.ENABLE_AUTO_EXECUTION:
            executed = execute_due_sessions(db)
        if closed or executed:
            logger.info(f"Session lifecycle: closed={len(closed)} executed={len(executed)}")
        return {"closed": closed, "executed": executed}
    finally:
        if owns_session:
            close_db_session(db)


def main():
    result = run_session_lifecycle()
    print(f"Closed {len(result['closed'])} session(s), executed {len(result['executed'])}")


if __name__ == "__main__":
    main()
