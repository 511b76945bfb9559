"""
日志配置
"""

import sys

from loguru import logger

from liveshow.core.config import settings

log_format = ' | '.join(
    (
        '<lk>{time:YYYY-MM-DD HH:mm:ss.SSS}</>',
        '<lvl>{level:<8}</>',
        '<c>{name}::{function}:{line}</>',
        '{message}',
    )
)


def setup_logging(level: str = None) -> None:
    """替换loguru默认输出，统一格式"""
    logger.remove()
    logger.add(sys.stdout, format=log_format, level=level or settings.LOG_LEVEL)
