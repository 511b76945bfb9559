"""
WebSocket API路由
"""

import json
import secrets
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Depends
from typing import Optional
from loguru import logger
from liveshow.core.config import settings
from liveshow.core.database import SessionLocal
from liveshow.core.errors import LiveEventError
from liveshow.services.client_sync import ClientSyncSession, ROLE_WATCHERS
from liveshow.services.websocket_service import (
    WebSocketManager, get_websocket_manager, event_channel, discovery_channel
)

router = APIRouter()

def get_session_factory():
    """客户端同步使用的会话工厂"""
    return SessionLocal

def _role_allowed(role: str, token: Optional[str]) -> bool:
    if role not in ROLE_WATCHERS:
        return False
    if role == "control":
        return bool(token) and secrets.compare_digest(token, settings.ADMIN_TOKEN)
    return True

async def _listen(websocket: WebSocket, manager: WebSocketManager, sync: ClientSyncSession):
    """处理客户端消息：心跳、可见性变化、手动刷新"""
    while True:
        data = await websocket.receive_text()
        try:
            message_data = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("收到无效JSON消息: {}", data)
            continue
        if not isinstance(message_data, dict):
            continue

        message_type = message_data.get("type")
        if message_type == "ping":
            await manager.send_personal_message({
                "type": "pong",
                "timestamp": message_data.get("timestamp")
            }, websocket)
        elif message_type == "visibility":
            sync.set_visible(bool(message_data.get("visible", True)))
        elif message_type == "refresh":
            sync.refresh()

async def _serve(websocket: WebSocket, channel: str, role: str, sync: ClientSyncSession,
                 welcome: dict):
    manager = get_websocket_manager()
    await manager.connect(websocket, channel, role)
    try:
        await manager.send_personal_message(welcome, websocket)
        await sync.start()
        await _listen(websocket, manager, sync)
    except WebSocketDisconnect:
        pass
    except LiveEventError as e:
        await manager.send_personal_message({"type": "error", "message": e.message}, websocket)
        await websocket.close(code=1008)
    finally:
        await sync.stop()
        manager.disconnect(websocket, channel)

@router.websocket("/live/{event_id}")
async def live_event_endpoint(
    websocket: WebSocket,
    event_id: int,
    role: str = "public",
    token: Optional[str] = None,
    session_factory=Depends(get_session_factory)
):
    """活动实时同步端点"""
    if not _role_allowed(role, token):
        await websocket.close(code=1008)
        return

    manager = get_websocket_manager()

    async def send(message: dict):
        await manager.send_personal_message(message, websocket)

    sync = ClientSyncSession(role, send, event_id=event_id, session_factory=session_factory)
    await _serve(websocket, event_channel(event_id), role, sync, {
        "type": "connected",
        "event_id": event_id,
        "role": role,
    })

@router.websocket("/discover/{session_id}")
async def discover_endpoint(
    websocket: WebSocket,
    session_id: int,
    role: str = "public",
    token: Optional[str] = None,
    session_factory=Depends(get_session_factory)
):
    """还不知道活动id的客户端：等待场次的活动出现"""
    if not _role_allowed(role, token):
        await websocket.close(code=1008)
        return

    manager = get_websocket_manager()

    async def send(message: dict):
        await manager.send_personal_message(message, websocket)

    sync = ClientSyncSession(role, send, session_id=session_id, session_factory=session_factory)
    await _serve(websocket, discovery_channel(session_id), role, sync, {
        "type": "connected",
        "session_id": session_id,
        "role": role,
    })
