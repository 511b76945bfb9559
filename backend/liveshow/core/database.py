"""
数据库配置
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from loguru import logger

from liveshow.core.config import settings

_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False  # 设置为True可以看到SQL查询日志
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

def get_db():
    """获取数据库会话"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def import_models():
    """导入所有模型，确保元数据完整"""
    from liveshow.models.competition_session import CompetitionSession
    from liveshow.models.candidate import Candidate
    from liveshow.models.juror import Juror
    from liveshow.models.live_event import LiveEvent
    from liveshow.models.lineup import LineupEntry
    from liveshow.models.jury_score import JuryScore
    from liveshow.models.public_vote import PublicVote

async def init_db():
    """初始化数据库"""
    import_models()
    # 注册行级变更通知
    from liveshow.services.change_feed import install_change_capture
    install_change_capture()

    # 创建所有表
    Base.metadata.create_all(bind=engine)

    logger.info("数据库初始化完成: {}", settings.DATABASE_URL)
