"""
WebSocket连接管理服务
"""

from fastapi import WebSocket
from typing import Dict, List, Optional, Tuple
from loguru import logger
import json

class WebSocketManager:
    """WebSocket连接管理器"""

    def __init__(self):
        # 频道（活动id或场次发现频道） -> [(连接, 角色)]
        self.connections: Dict[str, List[Tuple[WebSocket, str]]] = {}

    async def connect(self, websocket: WebSocket, channel: str, role: str):
        """接受连接并加入频道"""
        await websocket.accept()
        if channel not in self.connections:
            self.connections[channel] = []

        # 检查是否已存在，避免重复连接
        if not any(ws is websocket for ws, _ in self.connections[channel]):
            self.connections[channel].append((websocket, role))
            logger.info("🔌 新连接加入频道 {} ({})，当前连接数: {}", channel, role, len(self.connections[channel]))

    def disconnect(self, websocket: WebSocket, channel: str):
        """断开连接"""
        if channel in self.connections:
            self.connections[channel] = [
                (ws, role) for ws, role in self.connections[channel] if ws is not websocket
            ]
            logger.info("🔌 连接断开频道 {}，当前连接数: {}", channel, len(self.connections[channel]))
            if not self.connections[channel]:
                del self.connections[channel]

    def connection_count(self, channel: str, role: Optional[str] = None) -> int:
        return sum(1 for _, r in self.connections.get(channel, []) if role is None or r == role)

    async def send_personal_message(self, message: dict, websocket: WebSocket):
        """发送个人消息"""
        try:
            await websocket.send_text(json.dumps(message, ensure_ascii=False))
        except Exception as e:
            logger.debug("发送个人消息失败: {}", e)

    async def broadcast(self, message: dict, channel: str, role: Optional[str] = None):
        """向频道中的连接广播消息（可限定角色）"""
        connections = [ws for ws, r in self.connections.get(channel, []) if role is None or r == role]
        if not connections:
            logger.debug("⚠️ 频道 {} 没有活跃连接，跳过广播", channel)
            return

        message_text = json.dumps(message, ensure_ascii=False)
        failed_connections = []
        success_count = 0

        for connection in connections:
            try:
                await connection.send_text(message_text)
                success_count += 1
            except Exception as e:
                logger.debug("广播消息失败: {}", e)
                failed_connections.append(connection)

        # 移除失败的连接
        for failed_connection in failed_connections:
            self.disconnect(failed_connection, channel)

        logger.debug("📡 频道 {} 广播 {}: {} 成功, {} 失败",
                     channel, message.get("type", "unknown"), success_count, len(failed_connections))


def event_channel(event_id: int) -> str:
    return f"event:{event_id}"


def discovery_channel(session_id: int) -> str:
    return f"session:{session_id}"


# 全局WebSocket连接管理器
_manager = None

def get_websocket_manager() -> WebSocketManager:
    """获取全局WebSocket管理器实例"""
    global _manager
    if _manager is None:
        _manager = WebSocketManager()
    return _manager
