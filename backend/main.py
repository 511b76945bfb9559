#!/usr/bin/env python3
"""
ChanteEnScène 直播 - 后端主入口
"""

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from liveshow.core.config import settings
from liveshow.core.logging import setup_logging
from liveshow.api import api_router
from liveshow.core.database import init_db

setup_logging()

app = FastAPI(
    title=settings.APP_NAME,
    description="直播活动调度与评分后端API",
    version=settings.VERSION
)

# CORS设置
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册API路由
app.include_router(api_router, prefix="/api")

@app.on_event("startup")
async def startup_event():
    """应用启动时的初始化"""
    logger.info("🚀 启动 {} 后端服务...", settings.APP_NAME)
    await init_db()
    if not settings.PUSH_SERVICE_URL:
        logger.warning("⚠️ 未配置 PUSH_SERVICE_URL，推送通知将被跳过")

@app.get("/")
async def root():
    """根路径健康检查"""
    return {"message": f"{settings.APP_NAME} 后端运行中", "status": "healthy"}

@app.get("/health")
async def health_check():
    """健康检查端点"""
    return {"status": "healthy", "service": "liveshow"}

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
