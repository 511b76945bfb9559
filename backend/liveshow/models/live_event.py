"""
直播活动数据模型
"""

from sqlalchemy import Column, Integer, String, ForeignKey, Boolean, DateTime, Index, text
from sqlalchemy.orm import relationship
from liveshow.core.database import Base
from liveshow.core.utils import utcnow

EVENT_TYPES = ("semifinal", "final")
EVENT_STATUSES = ("pending", "live", "paused", "completed")

class LiveEvent(Base):
    """直播活动表（半决赛或决赛的一次现场活动）"""
    __tablename__ = "live_events"
    __table_args__ = (
        # 同一场次同一类型最多一个未结束的活动
        Index(
            "uq_live_events_open_per_type",
            "session_id", "event_type",
            unique=True,
            sqlite_where=text("status != 'completed'"),
            postgresql_where=text("status != 'completed'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False, index=True)
    event_type = Column(String(20), nullable=False)             # semifinal, final
    status = Column(String(20), nullable=False, default="pending")  # pending, live, paused, completed
    current_candidate_id = Column(Integer, nullable=True)        # 当前演唱者（阵容的投影，弱引用）
    is_voting_open = Column(Boolean, nullable=False, default=False)
    winner_candidate_id = Column(Integer, nullable=True)
    winner_revealed_at = Column(DateTime, nullable=True)         # 揭晓时间，客户端据此触发庆祝效果
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # 关系
    lineup = relationship("LineupEntry", back_populates="event", order_by="LineupEntry.position")
