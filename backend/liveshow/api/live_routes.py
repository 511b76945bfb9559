"""
直播公开API路由（观众、候选人签到）
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional
from liveshow.core.database import get_db
from liveshow.core.errors import LiveEventError
from liveshow.services.lineup_sequencer import LineupSequencer
from liveshow.services.live_event_service import LiveEventService
from liveshow.services.scoring_service import ScoringService
from liveshow.schemas.live_schemas import (
    LiveEventResponse, LineupEntryInfo, RankingResponse, PublicVoteCreate, VoteResult,
    CandidateRef, CheckinStatus, ScoringWeights
)

router = APIRouter()

def raise_http(e: LiveEventError):
    raise HTTPException(status_code=e.status_code, detail=e.message)

@router.get("/sessions/{session_id}/events", response_model=List[LiveEventResponse])
async def list_events(session_id: int, db: Session = Depends(get_db)):
    """场次的所有直播活动"""
    return LiveEventService(db).list_events(session_id)

@router.get("/sessions/{session_id}/active-event", response_model=LiveEventResponse)
async def get_active_event(
    session_id: int,
    event_type: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """场次当前未结束的活动"""
    event = LiveEventService(db).find_active_event(session_id, event_type)
    if not event:
        raise HTTPException(status_code=404, detail="Aucun événement en cours.")
    return event

@router.get("/sessions/{session_id}/weights", response_model=ScoringWeights)
async def get_weights(session_id: int, db: Session = Depends(get_db)):
    try:
        return ScoringService(db).get_weights(session_id)
    except LiveEventError as e:
        raise_http(e)

@router.get("/sessions/{session_id}/criteria")
async def get_criteria(session_id: int, db: Session = Depends(get_db)):
    """评委打分标准"""
    try:
        return ScoringService(db).get_criteria(session_id)
    except LiveEventError as e:
        raise_http(e)

@router.get("/events/{event_id}", response_model=LiveEventResponse)
async def get_event(event_id: int, db: Session = Depends(get_db)):
    try:
        return LiveEventService(db).get_event_response(event_id)
    except LiveEventError as e:
        raise_http(e)

@router.get("/events/{event_id}/lineup", response_model=List[LineupEntryInfo])
async def get_lineup(event_id: int, db: Session = Depends(get_db)):
    """按出场顺序返回阵容"""
    try:
        return LiveEventService(db).get_lineup_info(event_id)
    except LiveEventError as e:
        raise_http(e)

@router.get("/events/{event_id}/ranking", response_model=RankingResponse)
async def get_ranking(
    event_id: int,
    category: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """加权综合排名（实时计算）"""
    try:
        return ScoringService(db).build_ranking(event_id, category)
    except LiveEventError as e:
        raise_http(e)

@router.post("/events/{event_id}/vote", response_model=VoteResult)
async def cast_vote(
    event_id: int,
    vote: PublicVoteCreate,
    db: Session = Depends(get_db)
):
    """观众投票"""
    try:
        return ScoringService(db).cast_public_vote(event_id, vote.candidate_id, vote.fingerprint)
    except LiveEventError as e:
        raise_http(e)

@router.post("/events/{event_id}/checkin", response_model=LineupEntryInfo)
async def checkin(
    event_id: int,
    body: CandidateRef,
    db: Session = Depends(get_db)
):
    """候选人到场签到"""
    try:
        entry = LineupSequencer(db).checkin(event_id, body.candidate_id)
        return LineupEntryInfo.model_validate(entry)
    except LiveEventError as e:
        raise_http(e)

@router.get("/events/{event_id}/checkin-status", response_model=CheckinStatus)
async def checkin_status(event_id: int, db: Session = Depends(get_db)):
    """已签到的候选人"""
    sequencer = LineupSequencer(db)
    try:
        sequencer.get_event(event_id)
    except LiveEventError as e:
        raise_http(e)
    return CheckinStatus(event_id=event_id, checked_in_ids=sequencer.checked_in_candidate_ids(event_id))
