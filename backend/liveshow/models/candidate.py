"""
候选人数据模型
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime
from sqlalchemy.orm import relationship
from liveshow.core.database import Base
from liveshow.core.utils import utcnow

class Candidate(Base):
    """候选人表"""
    __tablename__ = "candidates"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False, index=True)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    stage_name = Column(String(100), nullable=True)   # 艺名
    category = Column(String(30), nullable=True)       # Enfant, Ado, Adulte
    status = Column(String(20), default="approved")   # approved, semifinalist, finalist, winner
    song_title = Column(String(200), nullable=True)
    photo_url = Column(String(500), nullable=True)
    likes_count = Column(Integer, default=0)          # 社交互动数，由外部服务写入
    created_at = Column(DateTime, default=utcnow)

    # 关系
    session = relationship("CompetitionSession", back_populates="candidates")

    @property
    def display_name(self) -> str:
        return self.stage_name or f"{self.first_name} {self.last_name}"
