"""
观众投票数据模型
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, UniqueConstraint
from liveshow.core.database import Base
from liveshow.core.utils import utcnow

class PublicVote(Base):
    """观众投票表（只追加，每台设备对每位候选人一票）"""
    __tablename__ = "live_votes"
    __table_args__ = (
        UniqueConstraint("session_id", "candidate_id", "fingerprint", name="uq_live_vote_device"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False, index=True)
    live_event_id = Column(Integer, ForeignKey("live_events.id"), nullable=False, index=True)
    candidate_id = Column(Integer, ForeignKey("candidates.id"), nullable=False)
    fingerprint = Column(String(128), nullable=False)  # 设备指纹
    created_at = Column(DateTime, default=utcnow)
