"""
直播活动管理服务
"""

from typing import List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from loguru import logger

from liveshow.core.config import settings
from liveshow.core.errors import PreconditionFailed, NotFound, DuplicateEntry
from liveshow.models.candidate import Candidate
from liveshow.models.competition_session import CompetitionSession
from liveshow.models.lineup import LineupEntry
from liveshow.models.live_event import LiveEvent
from liveshow.schemas.live_schemas import LiveEventResponse, LineupEntryInfo

ACTIVE_STATUSES = ("pending", "live", "paused")

# 活动状态机：completed 只能由“重新开启”回到 paused
STATUS_TRANSITIONS = {
    "pending": {"live", "paused", "completed"},
    "live": {"paused", "completed"},
    "paused": {"live", "completed"},
    "completed": {"paused"},
}


class LiveEventService:
    """直播活动管理服务"""

    def __init__(self, db: Session):
        self.db = db

    def get_event(self, event_id: int) -> LiveEvent:
        event = self.db.query(LiveEvent).filter(LiveEvent.id == event_id).first()
        if not event:
            raise NotFound("Événement introuvable.")
        return event

    def get_event_response(self, event_id: int) -> LiveEventResponse:
        return LiveEventResponse.model_validate(self.get_event(event_id))

    def find_active_event(self, session_id: int, event_type: Optional[str] = None) -> Optional[LiveEvent]:
        """最新的未结束活动（客户端发现活动时使用）"""
        query = self.db.query(LiveEvent).filter(
            LiveEvent.session_id == session_id,
            LiveEvent.status.in_(ACTIVE_STATUSES)
        )
        if event_type:
            query = query.filter(LiveEvent.event_type == event_type)
        return query.order_by(LiveEvent.created_at.desc(), LiveEvent.id.desc()).first()

    def list_events(self, session_id: int) -> List[LiveEventResponse]:
        events = self.db.query(LiveEvent).filter(
            LiveEvent.session_id == session_id
        ).order_by(LiveEvent.id).all()
        return [LiveEventResponse.model_validate(event) for event in events]

    def get_lineup_info(self, event_id: int) -> List[LineupEntryInfo]:
        self.get_event(event_id)
        lineup = self.db.query(LineupEntry).filter(
            LineupEntry.live_event_id == event_id
        ).order_by(LineupEntry.position, LineupEntry.id).all()
        return [LineupEntryInfo.model_validate(entry) for entry in lineup]

    def create_event(self, session_id: int, event_type: str,
                     ordered_candidate_ids: Optional[List[int]] = None) -> LiveEvent:
        """创建直播活动；决赛自动生成阵容"""
        session = self.db.query(CompetitionSession).filter(CompetitionSession.id == session_id).first()
        if not session:
            raise NotFound("Session introuvable.")

        if self.find_active_event(session_id, event_type):
            raise DuplicateEntry("Un événement de ce type est déjà en cours.")

        if event_type == "final" and ordered_candidate_ids:
            self._check_lineup_order(session_id, ordered_candidate_ids)

        event = LiveEvent(session_id=session_id, event_type=event_type, status="pending")
        self.db.add(event)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateEntry("Un événement de ce type est déjà en cours.")

        if event_type == "final":
            candidate_ids = ordered_candidate_ids or self._default_final_order(session_id)
            for position, candidate_id in enumerate(candidate_ids, start=1):
                self.db.add(LineupEntry(
                    live_event_id=event.id,
                    candidate_id=candidate_id,
                    position=position,
                    status="pending"
                ))

        self.db.commit()
        self.db.refresh(event)
        logger.info("📺 场次 {} 创建 {} 活动 {}", session_id, event_type, event.id)
        return event

    def _check_lineup_order(self, session_id: int, candidate_ids: List[int]):
        """指定的阵容顺序：候选人必须存在、属于本场次且不重复"""
        if len(set(candidate_ids)) != len(candidate_ids):
            raise DuplicateEntry("Un candidat apparaît plusieurs fois dans l'ordre de passage.")
        candidates = self.db.query(Candidate).filter(Candidate.id.in_(candidate_ids)).all()
        found = {candidate.id: candidate for candidate in candidates}
        for candidate_id in candidate_ids:
            candidate = found.get(candidate_id)
            if candidate is None:
                raise NotFound(f"Candidat {candidate_id} introuvable.")
            if candidate.session_id != session_id:
                raise PreconditionFailed("Ce candidat n'appartient pas à cette session.")

    def _default_final_order(self, session_id: int) -> List[int]:
        """决赛默认顺序：按组别（Enfant → Ado → Adulte），组内按姓氏"""
        finalists = self.db.query(Candidate).filter(
            Candidate.session_id == session_id,
            Candidate.status == "finalist"
        ).order_by(Candidate.last_name, Candidate.id).all()

        category_order = settings.CATEGORY_ORDER

        def category_rank(candidate: Candidate) -> int:
            if candidate.category in category_order:
                return category_order.index(candidate.category)
            return len(category_order)

        return [candidate.id for candidate in sorted(finalists, key=category_rank)]

    def update_event_status(self, event_id: int, status: str) -> LiveEvent:
        event = self.get_event(event_id)
        if status == event.status:
            return event
        if status not in STATUS_TRANSITIONS.get(event.status, set()):
            raise PreconditionFailed(f"Transition impossible : {event.status} → {status}.")

        if event.status == "completed":
            # 重新开启前确认没有同类型的活动在进行
            other = self.find_active_event(event.session_id, event.event_type)
            if other and other.id != event.id:
                raise PreconditionFailed("Un autre événement de ce type est déjà en cours.")

        if status == "completed":
            performing = self.db.query(LineupEntry.id).filter(
                LineupEntry.live_event_id == event_id,
                LineupEntry.status == "performing"
            ).first()
            if performing or event.current_candidate_id is not None:
                raise PreconditionFailed("Terminez d'abord la prestation en cours.")

        event.status = status
        if status == "completed":
            event.is_voting_open = False
        self.db.commit()
        logger.info("📺 活动 {} 状态 -> {}", event_id, status)
        return event
