"""
应用配置模块
"""

from typing import Optional, List, Dict, Any
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    """应用设置"""

    # 基础设置
    APP_NAME: str = "ChanteEnScène Live"
    VERSION: str = "1.0.0"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # 服务器设置
    HOST: str = "0.0.0.0"
    PORT: int = 8001
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    # 数据库设置
    DATABASE_URL: str = "sqlite:///./liveshow.db"

    # 控制室鉴权（上游认证产生的不透明令牌）
    ADMIN_TOKEN: str = "change-me"

    # 客户端同步设置
    SYNC_POLL_INTERVAL: float = 5.0  # 轮询兜底间隔（秒）
    REVEAL_FRESHNESS_SECONDS: int = 120  # 冠军揭晓的新鲜度窗口

    # 推送分发服务
    PUSH_SERVICE_URL: Optional[str] = None
    PUSH_SERVICE_TOKEN: Optional[str] = None
    PUSH_TIMEOUT: int = 10

    # 评分默认值（会被场次配置覆盖）
    DEFAULT_JURY_WEIGHT: int = 40
    DEFAULT_PUBLIC_WEIGHT: int = 40
    DEFAULT_SOCIAL_WEIGHT: int = 20
    DEFAULT_JURY_CRITERIA: List[Dict[str, Any]] = [
        {"name": "voix", "max_score": 5},
        {"name": "interpretation", "max_score": 5},
        {"name": "presence", "max_score": 5},
        {"name": "justesse", "max_score": 5},
    ]

    # 决赛阵容自动排序时的组别顺序
    CATEGORY_ORDER: List[str] = ["Enfant", "Ado", "Adulte"]

    class Config:
        env_file = ".env"
        case_sensitive = True

# 全局设置实例
settings = Settings()
