"""
直播活动领域错误
"""


class LiveEventError(Exception):
    """领域错误基类，携带对应的HTTP状态码"""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class PreconditionFailed(LiveEventError):
    """当前状态不允许该操作（如无阵容时推进、有人在台上时重演）"""

    status_code = 409


class NotFound(LiveEventError):
    """活动、阵容条目、候选人或评委不存在"""

    status_code = 404


class DuplicateEntry(LiveEventError):
    """重复记录（替补已在阵容中、重复签到）"""

    status_code = 409


class Unauthorized(LiveEventError):
    """非控制室身份调用控制室操作"""

    status_code = 403


class UpstreamUnavailable(LiveEventError):
    """存储或推送服务不可用"""

    status_code = 503
