"""
演出阵容数据模型
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Index, UniqueConstraint, text
from sqlalchemy.orm import relationship
from liveshow.core.database import Base
from liveshow.core.utils import utcnow

LINEUP_STATUSES = ("pending", "performing", "completed", "absent")

class LineupEntry(Base):
    """阵容条目表"""
    __tablename__ = "lineup"
    __table_args__ = (
        UniqueConstraint("live_event_id", "candidate_id", name="uq_lineup_event_candidate"),
        # 每个活动同一时刻最多一人在台上
        Index(
            "uq_lineup_one_performing",
            "live_event_id",
            unique=True,
            sqlite_where=text("status = 'performing'"),
            postgresql_where=text("status = 'performing'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    live_event_id = Column(Integer, ForeignKey("live_events.id"), nullable=False, index=True)
    candidate_id = Column(Integer, ForeignKey("candidates.id"), nullable=False)
    position = Column(Integer, nullable=False, default=0)        # 出场顺序
    status = Column(String(20), nullable=False, default="pending")  # pending, performing, completed, absent
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    vote_opened_at = Column(DateTime, nullable=True)
    vote_closed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # 关系
    event = relationship("LiveEvent", back_populates="lineup")
    candidate = relationship("Candidate")
