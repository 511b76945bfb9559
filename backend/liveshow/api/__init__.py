"""
API路由模块
"""

from fastapi import APIRouter
from .live_routes import router as live_router
from .control_routes import router as control_router
from .jury_routes import router as jury_router
from .websocket_routes import router as ws_router

# 创建主路由器
api_router = APIRouter()

# 注册各个功能模块的路由
api_router.include_router(live_router, prefix="/live", tags=["直播"])
api_router.include_router(control_router, prefix="/control", tags=["控制室"])
api_router.include_router(jury_router, prefix="/jury", tags=["评委"])
api_router.include_router(ws_router, prefix="/ws", tags=["WebSocket"])
