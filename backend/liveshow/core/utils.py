"""
工具函数模块
"""

from typing import Optional
from datetime import datetime, timezone


def utcnow() -> datetime:
    """当前UTC时间（不带时区信息，与数据库中保存的格式一致）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_timestamp_with_timezone(timestamp: Optional[datetime]) -> Optional[str]:
    """格式化时间戳，确保包含UTC时区标识符"""
    if not timestamp:
        return None
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)
    # 确保发送给前端的时间戳包含'Z'后缀，表示这是UTC时间
    return timestamp.isoformat() + 'Z'


def parse_timestamp(value) -> Optional[datetime]:
    """解析ISO时间戳（兼容'Z'后缀），统一为不带时区的UTC时间"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
