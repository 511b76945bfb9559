# 业务逻辑服务包
from .lineup_sequencer import LineupSequencer
from .live_event_service import LiveEventService
from .scoring_service import ScoringService
from .winner_service import WinnerRevealCoordinator, RevealGate
from .push_service import PushNotifier
from .control_room import ControlRoomActions, Caller
from .client_sync import ClientSyncSession
from .websocket_service import WebSocketManager

__all__ = [
    "LineupSequencer", "LiveEventService", "ScoringService", "WinnerRevealCoordinator",
    "RevealGate", "PushNotifier", "ControlRoomActions", "Caller", "ClientSyncSession",
    "WebSocketManager",
]
