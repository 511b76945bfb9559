"""
推送通知服务

通过HTTP把通知交给外部推送服务分发。推送是尽力而为的：失败只记录日志，
永远不会影响已经提交的状态变更。
"""

import asyncio
from typing import Optional, Set
import httpx
from loguru import logger

from liveshow.core.config import settings
from liveshow.core.errors import UpstreamUnavailable
from liveshow.schemas.live_schemas import PushPayload, PushResult

# 正在运行的后台推送任务（持有引用防止被回收）
_background_tasks: Set[asyncio.Task] = set()


class PushNotifier:
    """推送通知客户端"""

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None,
                 timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url if url is not None else settings.PUSH_SERVICE_URL
        self.token = token if token is not None else settings.PUSH_SERVICE_TOKEN
        self.timeout = timeout if timeout is not None else settings.PUSH_TIMEOUT
        self.transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def notify(self, session_id: int, role: str, payload: PushPayload) -> PushResult:
        """向某个场次某类订阅者发送推送，返回发送统计"""
        if not self.url:
            logger.debug("📭 未配置推送服务，跳过推送: {}", payload.title)
            return PushResult()

        body = {
            "session_id": session_id,
            "role": role,
            "payload": payload.model_dump(exclude_none=True),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.url, json=body, headers=self._headers())
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable(f"Service de notification injoignable (timeout): {e}")
        except httpx.HTTPStatusError as e:
            raise UpstreamUnavailable(f"Service de notification en erreur: HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Service de notification injoignable: {e}")

        result = self._parse_result(response)
        logger.info("📣 推送 [{}] 场次 {} ({}): 成功 {} 失败 {} 过期 {}",
                    payload.tag, session_id, role, result.sent, result.failed, result.expired)
        return result

    @staticmethod
    def _parse_result(response: httpx.Response) -> PushResult:
        """解析推送服务返回的 {sent, failed, expired} 统计"""
        if not response.content:
            return PushResult()
        try:
            data = response.json()
        except ValueError:
            raise UpstreamUnavailable("Réponse illisible du service de notification.")
        if not isinstance(data, dict):
            raise UpstreamUnavailable("Réponse inattendue du service de notification.")
        try:
            return PushResult(
                sent=data.get("sent", 0),
                failed=data.get("failed", 0),
                expired=data.get("expired", 0),
            )
        except ValueError:
            raise UpstreamUnavailable("Statistiques d'envoi invalides.")

    async def notify_quietly(self, session_id: int, role: str, payload: PushPayload) -> Optional[PushResult]:
        """发送推送，失败只记录日志"""
        try:
            return await self.notify(session_id, role, payload)
        except UpstreamUnavailable as e:
            logger.warning("⚠️ 推送失败 [{}]: {}", payload.tag, e.message)
            return None
        except Exception as e:
            logger.exception("❌ 推送异常 [{}]: {}", payload.tag, e)
            return None


def fire_and_forget(notifier: PushNotifier, session_id: int, role: str, payload: PushPayload) -> asyncio.Task:
    """在后台发送推送，不等待结果"""
    task = asyncio.create_task(notifier.notify_quietly(session_id, role, payload))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


# 全局推送客户端
_notifier = None


def get_push_notifier() -> PushNotifier:
    """获取全局推送客户端实例"""
    global _notifier
    if _notifier is None:
        _notifier = PushNotifier()
    return _notifier
