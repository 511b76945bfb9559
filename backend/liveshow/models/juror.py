"""
评委数据模型
"""

from sqlalchemy import Column, Integer, String, ForeignKey, Boolean, DateTime
from liveshow.core.database import Base
from liveshow.core.utils import utcnow

class Juror(Base):
    """评委表"""
    __tablename__ = "jurors"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False, index=True)
    first_name = Column(String(50), nullable=True)
    last_name = Column(String(50), nullable=True)
    qr_token = Column(String(64), nullable=False, unique=True)  # 评委访问令牌
    role = Column(String(20), default="live")                    # live, online
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    @property
    def display_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or "Juré"
