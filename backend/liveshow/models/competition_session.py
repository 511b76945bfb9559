"""
比赛场次数据模型
"""

import json
from sqlalchemy import Column, Integer, String, DateTime, Text
from sqlalchemy.orm import relationship
from liveshow.core.database import Base
from liveshow.core.utils import utcnow

class CompetitionSession(Base):
    """比赛场次表（一届比赛）"""
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    slug = Column(String(100), nullable=False, unique=True)
    status = Column(String(30), default="draft")  # draft, registration_open, registration_closed, semifinal, final, archived
    config = Column(Text, nullable=True)            # JSON格式的场次配置（权重、评分标准等）
    created_at = Column(DateTime, default=utcnow)

    # 关系
    candidates = relationship("Candidate", back_populates="session")

    def get_config(self) -> dict:
        """解析场次配置"""
        if not self.config:
            return {}
        try:
            return json.loads(self.config)
        except (TypeError, ValueError):
            return {}

    def set_config(self, config: dict) -> None:
        self.config = json.dumps(config, ensure_ascii=False)
