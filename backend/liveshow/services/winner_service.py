"""
冠军揭晓服务

活动上的 winner_revealed_at 是唯一的权威触发信号：所有客户端只在这个时间戳
发生变化且足够新时才播放揭晓动画。推送只是锦上添花。
"""

from typing import Callable, Optional
from datetime import datetime
from sqlalchemy.orm import Session
from loguru import logger

from liveshow.core.config import settings
from liveshow.core.errors import PreconditionFailed, NotFound
from liveshow.core.utils import utcnow, parse_timestamp
from liveshow.models.candidate import Candidate
from liveshow.models.lineup import LineupEntry
from liveshow.models.live_event import LiveEvent
from liveshow.schemas.live_schemas import PushPayload
from liveshow.services.push_service import PushNotifier


class WinnerRevealCoordinator:
    """冠军揭晓协调器"""

    def __init__(self, db: Session, notifier: Optional[PushNotifier] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.notifier = notifier
        self.clock = clock

    def _get_event(self, event_id: int) -> LiveEvent:
        event = self.db.query(LiveEvent).filter(LiveEvent.id == event_id).first()
        if not event:
            raise NotFound("Événement introuvable.")
        return event

    async def reveal_winner(self, event_id: int, candidate_id: int) -> LiveEvent:
        """揭晓冠军：写入冠军与揭晓时间，更新候选人状态，然后尽力推送"""
        event = self._get_event(event_id)

        if event.winner_revealed_at is not None:
            if event.winner_candidate_id == candidate_id:
                # 重复揭晓同一人：不刷新时间戳，也不再推送
                return event
            raise PreconditionFailed("Un gagnant est déjà révélé. Réinitialisez d'abord la révélation.")

        in_lineup = self.db.query(LineupEntry.id).filter(
            LineupEntry.live_event_id == event_id,
            LineupEntry.candidate_id == candidate_id
        ).first()
        if not in_lineup:
            raise NotFound("Candidat absent du lineup.")
        candidate = self.db.query(Candidate).filter(Candidate.id == candidate_id).first()
        if not candidate:
            raise NotFound("Candidat introuvable.")

        event.winner_candidate_id = candidate_id
        event.winner_revealed_at = self.clock()
        candidate.status = "winner"
        self.db.commit()
        logger.info("🏆 活动 {} 揭晓冠军: {} ({})", event_id, candidate.display_name, candidate_id)

        if self.notifier is not None:
            scope = f"la catégorie {candidate.category}" if candidate.category else "le concours"
            await self.notifier.notify_quietly(event.session_id, "all", PushPayload(
                title=f"{candidate.display_name} remporte {scope} !",
                body="Félicitations au gagnant de ChanteEnScène !",
                url=f"/live/{event_id}",
                tag="winner-reveal",
            ))
        return event

    async def reset_winner_reveal(self, event_id: int) -> LiveEvent:
        """撤销揭晓（操作失误时使用），候选人回到决赛选手状态"""
        event = self._get_event(event_id)
        if event.winner_candidate_id is None and event.winner_revealed_at is None:
            return event

        if event.winner_candidate_id is not None:
            candidate = self.db.query(Candidate).filter(Candidate.id == event.winner_candidate_id).first()
            if candidate and candidate.status == "winner":
                candidate.status = "finalist"

        previous = event.winner_candidate_id
        event.winner_candidate_id = None
        event.winner_revealed_at = None
        self.db.commit()
        logger.info("↩️ 活动 {} 撤销冠军揭晓 (原冠军 {})", event_id, previous)
        return event


class RevealGate:
    """客户端揭晓判定：时间戳变化且在新鲜度窗口内才触发"""

    def __init__(self, freshness_seconds: Optional[float] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.freshness_seconds = (
            freshness_seconds if freshness_seconds is not None else settings.REVEAL_FRESHNESS_SECONDS
        )
        self.clock = clock
        self.last_seen: Optional[datetime] = None

    def observe(self, revealed_at, winner_candidate_id: Optional[int] = None,
                now: Optional[datetime] = None) -> bool:
        revealed = parse_timestamp(revealed_at)
        if revealed is None or winner_candidate_id is None:
            self.last_seen = None
            return False
        if revealed == self.last_seen:
            return False
        self.last_seen = revealed

        now = now or self.clock()
        # 两个方向都容忍时钟偏差
        return abs((now - revealed).total_seconds()) <= self.freshness_seconds
