"""
评委打分数据模型
"""

import json
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, Float, UniqueConstraint
from sqlalchemy.orm import relationship
from liveshow.core.database import Base
from liveshow.core.utils import utcnow

class JuryScore(Base):
    """评委打分表（重新打分覆盖原记录）"""
    __tablename__ = "jury_scores"
    __table_args__ = (
        UniqueConstraint("juror_id", "candidate_id", "event_type", name="uq_jury_score_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False, index=True)
    juror_id = Column(Integer, ForeignKey("jurors.id"), nullable=False)
    candidate_id = Column(Integer, ForeignKey("candidates.id"), nullable=False)
    event_type = Column(String(20), nullable=False)      # semifinal, final, online
    scores = Column(Text, nullable=False, default="{}")  # JSON：评分标准 -> 分数
    total_score = Column(Float, nullable=False, default=0)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # 关系
    juror = relationship("Juror")
    candidate = relationship("Candidate")

    def get_scores(self) -> dict:
        try:
            return json.loads(self.scores or "{}")
        except (TypeError, ValueError):
            return {}
