"""
控制室API路由

所有请求需要携带 X-Admin-Token。操作结果统一为 ActionResult，
失败时HTTP状态码取自对应的领域错误。
"""

import secrets
from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import Optional
from liveshow.core.config import settings
from liveshow.core.database import get_db
from liveshow.services.control_room import Caller, ControlRoomActions
from liveshow.services.push_service import PushNotifier, get_push_notifier
from liveshow.services.scoring_service import ScoringService
from liveshow.services.websocket_service import get_websocket_manager, event_channel
from liveshow.schemas.live_schemas import (
    ActionResult, EventCreate, EventStatusUpdate, LineupEntryRef, CandidateRef, ReorderRequest,
    ReplacementCreate, VotingToggle, ScoringWeightsUpdate, JuryScoresReset
)

router = APIRouter()

def get_caller(x_admin_token: Optional[str] = Header(default=None)) -> Caller:
    """根据令牌识别调用方"""
    if x_admin_token and secrets.compare_digest(x_admin_token, settings.ADMIN_TOKEN):
        return Caller("control-room", is_admin=True)
    return Caller("anonymous")

def get_control_room(
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    notifier: PushNotifier = Depends(get_push_notifier)
) -> ControlRoomActions:
    return ControlRoomActions(db, caller, notifier=notifier)

async def respond(actions: ControlRoomActions, result: ActionResult, action: str) -> JSONResponse:
    """把操作结果转换为HTTP响应，成功时通知控制室连接"""
    if result.success:
        if result.event_id is not None:
            await get_websocket_manager().broadcast({
                "type": "control_action",
                "action": action,
                "event_id": result.event_id,
            }, event_channel(result.event_id), role="control")
        return JSONResponse(status_code=200, content=result.model_dump())

    status_code = actions.last_error.status_code if actions.last_error else 400
    return JSONResponse(status_code=status_code, content=result.model_dump())

@router.post("/events")
async def create_event(body: EventCreate, actions: ControlRoomActions = Depends(get_control_room)):
    """创建直播活动"""
    result = await actions.create_event(body.session_id, body.event_type, body.ordered_candidate_ids)
    return await respond(actions, result, "create_event")

@router.post("/events/{event_id}/status")
async def update_event_status(
    event_id: int,
    body: EventStatusUpdate,
    actions: ControlRoomActions = Depends(get_control_room)
):
    result = await actions.update_event_status(event_id, body.status)
    return await respond(actions, result, "update_event_status")

@router.post("/events/{event_id}/advance")
async def advance(event_id: int, actions: ControlRoomActions = Depends(get_control_room)):
    """下一位"""
    result = await actions.advance(event_id)
    return await respond(actions, result, "advance")

@router.post("/events/{event_id}/absent")
async def mark_absent(
    event_id: int,
    body: LineupEntryRef,
    actions: ControlRoomActions = Depends(get_control_room)
):
    result = await actions.mark_absent(event_id, body.lineup_entry_id)
    return await respond(actions, result, "mark_absent")

@router.post("/events/{event_id}/replay")
async def set_replay(
    event_id: int,
    body: LineupEntryRef,
    actions: ControlRoomActions = Depends(get_control_room)
):
    result = await actions.set_replay(event_id, body.lineup_entry_id)
    return await respond(actions, result, "set_replay")

@router.post("/events/{event_id}/call")
async def call_to_stage(
    event_id: int,
    body: LineupEntryRef,
    actions: ControlRoomActions = Depends(get_control_room)
):
    """半决赛：点名上台"""
    result = await actions.call_to_stage(event_id, body.lineup_entry_id)
    return await respond(actions, result, "call_to_stage")

@router.post("/events/{event_id}/finish")
async def finish_performance(event_id: int, actions: ControlRoomActions = Depends(get_control_room)):
    result = await actions.finish_performance(event_id)
    return await respond(actions, result, "finish_performance")

@router.post("/events/{event_id}/voting")
async def set_voting_open(
    event_id: int,
    body: VotingToggle,
    actions: ControlRoomActions = Depends(get_control_room)
):
    """开关观众投票"""
    result = await actions.set_voting_open(event_id, body.is_open)
    return await respond(actions, result, "set_voting_open")

@router.post("/events/{event_id}/reorder")
async def reorder_lineup(
    event_id: int,
    body: ReorderRequest,
    actions: ControlRoomActions = Depends(get_control_room)
):
    result = await actions.reorder_lineup(event_id, body.ordered_candidate_ids)
    return await respond(actions, result, "reorder_lineup")

@router.post("/events/{event_id}/replacement")
async def add_replacement(
    event_id: int,
    body: ReplacementCreate,
    actions: ControlRoomActions = Depends(get_control_room)
):
    """插入替补"""
    result = await actions.add_replacement(event_id, body.candidate_id, body.position)
    return await respond(actions, result, "add_replacement")

@router.post("/events/{event_id}/reveal")
async def reveal_winner(
    event_id: int,
    body: CandidateRef,
    actions: ControlRoomActions = Depends(get_control_room)
):
    """揭晓冠军"""
    result = await actions.reveal_winner(event_id, body.candidate_id)
    return await respond(actions, result, "reveal_winner")

@router.post("/events/{event_id}/reveal/reset")
async def reset_winner_reveal(event_id: int, actions: ControlRoomActions = Depends(get_control_room)):
    result = await actions.reset_winner_reveal(event_id)
    return await respond(actions, result, "reset_winner_reveal")

@router.put("/sessions/{session_id}/weights")
async def update_scoring_weights(
    session_id: int,
    body: ScoringWeightsUpdate,
    actions: ControlRoomActions = Depends(get_control_room)
):
    """更新评分权重"""
    result = await actions.update_scoring_weights(session_id, body.jury, body.public, body.social)
    return await respond(actions, result, "update_scoring_weights")

@router.post("/jury-scores/reset")
async def reset_jury_scores(body: JuryScoresReset, actions: ControlRoomActions = Depends(get_control_room)):
    result = await actions.reset_jury_scores(body.session_id, body.candidate_id, body.event_type)
    return await respond(actions, result, "reset_jury_scores")

@router.get("/sessions/{session_id}/jury-scores/count")
async def jury_score_count(
    session_id: int,
    candidate_id: int,
    event_type: str,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db)
):
    """某候选人已收到的评委打分数"""
    if not caller.is_admin:
        return JSONResponse(status_code=403, content=ActionResult(error="Accès réservé à la régie.").model_dump())
    count = ScoringService(db).jury_score_count(session_id, candidate_id, event_type)
    return {"session_id": session_id, "candidate_id": candidate_id, "event_type": event_type, "count": count}
