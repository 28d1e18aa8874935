"""Pledge sessions router"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.dependencies import get_db, get_session_store
from api.schemas.sessions import SessionResponse, SessionStatsResponse, SessionsSnapshotResponse
from api.utils.auth import get_current_user_id
from pledgehub.services.session_store import SessionStore
from pledgehub.services.stats_poller import build_snapshot

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get("", response_model=List[SessionResponse])
async def list_sessions(
    status: Optional[str] = Query(None, description="Filter by session status"),
    user_id: str = Depends(get_current_user_id),
    store: SessionStore = Depends(get_session_store),
):
    return store.list_sessions(status=status)


@router.get("/snapshot", response_model=SessionsSnapshotResponse)
async def get_sessions_snapshot(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    Stats of every open session with a hash of the whole dataset.

    Pollers compare ``dataset_hash`` between calls to decide how often to
    poll; an unchanged hash means nothing moved.
    """
    return build_snapshot(db)


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    store: SessionStore = Depends(get_session_store),
):
    return store.get_session(session_id)


@router.get("/{session_id}/stats", response_model=SessionStatsResponse)
async def get_session_stats(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    store: SessionStore = Depends(get_session_store),
):
    """Live statistics, aggregated from pledges on every call"""
    stats = store.stats(session_id)
    return {"session_id": session_id, **stats.to_dict()}
