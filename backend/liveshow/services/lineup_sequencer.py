"""
演出阵容调度服务

维护出场顺序以及唯一的“当前演唱者”指针。活动上的 current_candidate_id
只是阵容中 performing 条目的投影，始终与阵容状态在同一个事务里写入。
"""

from typing import Callable, List, Optional
from datetime import datetime
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from loguru import logger

from liveshow.core.errors import PreconditionFailed, NotFound, DuplicateEntry
from liveshow.core.utils import utcnow
from liveshow.models.candidate import Candidate
from liveshow.models.lineup import LineupEntry
from liveshow.models.live_event import LiveEvent

# 条目状态机：pending 是唯一初始状态，completed/absent 可通过重演回到 performing
TRANSITIONS = {
    "pending": {"performing", "absent"},
    "performing": {"completed", "absent"},
    "completed": {"performing"},
    "absent": {"performing"},
}


class LineupSequencer:
    """演出阵容调度"""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    # ---- 读取 ----

    def get_event(self, event_id: int) -> LiveEvent:
        event = self.db.query(LiveEvent).filter(LiveEvent.id == event_id).first()
        if not event:
            raise NotFound("Événement introuvable.")
        return event

    def get_lineup(self, event_id: int) -> List[LineupEntry]:
        """按出场顺序读取阵容（同位置按插入顺序）"""
        return self.db.query(LineupEntry).filter(
            LineupEntry.live_event_id == event_id
        ).order_by(LineupEntry.position, LineupEntry.id).all()

    def get_entry(self, event_id: int, entry_id: int) -> LineupEntry:
        entry = self.db.query(LineupEntry).filter(
            LineupEntry.id == entry_id,
            LineupEntry.live_event_id == event_id
        ).first()
        if not entry:
            raise NotFound("Entrée lineup introuvable.")
        return entry

    def checked_in_candidate_ids(self, event_id: int) -> List[int]:
        rows = self.db.query(LineupEntry.candidate_id).filter(
            LineupEntry.live_event_id == event_id
        ).order_by(LineupEntry.position, LineupEntry.id).all()
        return [row[0] for row in rows]

    @staticmethod
    def current_performer(lineup: List[LineupEntry]) -> Optional[LineupEntry]:
        for entry in lineup:
            if entry.status == "performing":
                return entry
        return None

    # ---- 内部状态转换 ----

    @staticmethod
    def _require_active(event: LiveEvent):
        if event.status == "completed":
            raise PreconditionFailed("L'événement est terminé.")

    @staticmethod
    def _transition(entry: LineupEntry, status: str):
        if status not in TRANSITIONS.get(entry.status, set()):
            raise PreconditionFailed(
                f"Transition impossible : {entry.status} → {status}."
            )
        entry.status = status

    def _start(self, entry: LineupEntry, now: datetime):
        self._transition(entry, "performing")
        entry.started_at = now
        entry.ended_at = None
        entry.vote_opened_at = None
        entry.vote_closed_at = None

    def _complete(self, entry: LineupEntry, now: datetime):
        self._transition(entry, "completed")
        if not entry.ended_at:
            entry.ended_at = now
        if not entry.vote_opened_at:
            entry.vote_opened_at = now
        entry.vote_closed_at = now

    @staticmethod
    def _put_on_stage(event: LiveEvent, entry: LineupEntry):
        event.current_candidate_id = entry.candidate_id
        event.is_voting_open = False
        if event.status in ("pending", "paused"):
            event.status = "live"

    def _ensure_nobody_else_performing(self, event_id: int, entry: LineupEntry):
        current = self.current_performer(self.get_lineup(event_id))
        if current and current.id != entry.id:
            raise PreconditionFailed("Un candidat est déjà sur scène.")

    # ---- 操作 ----

    def advance(self, event_id: int) -> Optional[LineupEntry]:
        """结束当前演唱者并让下一位待演出的候选人上台，返回新上台的条目"""
        event = self.get_event(event_id)
        self._require_active(event)

        lineup = self.get_lineup(event_id)
        if not lineup:
            raise PreconditionFailed("Aucun lineup.")

        now = self.clock()
        current = self.current_performer(lineup)
        if current:
            self._complete(current, now)
            # 先落库“结束”，再写“上台”，任何时刻都不会出现两人同时在台上
            self.db.flush()

        next_entry = next((e for e in lineup if e.status == "pending"), None)
        if next_entry:
            self._start(next_entry, now)
            self._put_on_stage(event, next_entry)
        else:
            event.current_candidate_id = None
            event.is_voting_open = False

        self.db.commit()
        logger.info(
            "🎤 活动 {} 推进: {} -> {}",
            event_id,
            current.candidate_id if current else None,
            next_entry.candidate_id if next_entry else None,
        )
        return next_entry

    def mark_absent(self, event_id: int, entry_id: int) -> LineupEntry:
        """标记缺席；如果是当前演唱者则清空指针，不自动推进"""
        event = self.get_event(event_id)
        self._require_active(event)
        entry = self.get_entry(event_id, entry_id)

        if entry.status == "absent":
            return entry

        was_performing = entry.status == "performing"
        self._transition(entry, "absent")
        if was_performing or event.current_candidate_id == entry.candidate_id:
            event.current_candidate_id = None
            event.is_voting_open = False

        self.db.commit()
        logger.info("🚫 活动 {} 候选人 {} 缺席", event_id, entry.candidate_id)
        return entry

    def set_replay(self, event_id: int, entry_id: int) -> LineupEntry:
        """让已完成或缺席的条目重新上台（不改变出场位置）"""
        event = self.get_event(event_id)
        self._require_active(event)
        entry = self.get_entry(event_id, entry_id)

        if entry.status not in ("completed", "absent"):
            raise PreconditionFailed("Seul un passage terminé ou absent peut être rejoué.")
        self._ensure_nobody_else_performing(event_id, entry)

        self._start(entry, self.clock())
        self._put_on_stage(event, entry)
        self.db.commit()
        logger.info("🔁 活动 {} 候选人 {} 重新演唱", event_id, entry.candidate_id)
        return entry

    def call_to_stage(self, event_id: int, entry_id: int) -> LineupEntry:
        """半决赛流程：由控制室直接点名某位已签到的候选人上台"""
        event = self.get_event(event_id)
        self._require_active(event)
        entry = self.get_entry(event_id, entry_id)

        if entry.status != "pending":
            raise PreconditionFailed("Ce candidat n'est pas en attente.")
        self._ensure_nobody_else_performing(event_id, entry)

        self._start(entry, self.clock())
        self._put_on_stage(event, entry)
        self.db.commit()
        logger.info("🎤 活动 {} 候选人 {} 上台", event_id, entry.candidate_id)
        return entry

    def finish_performance(self, event_id: int) -> LineupEntry:
        """结束当前演出但不推进到下一位"""
        event = self.get_event(event_id)
        self._require_active(event)

        current = self.current_performer(self.get_lineup(event_id))
        if not current:
            raise PreconditionFailed("Aucun candidat sur scène.")

        self._complete(current, self.clock())
        event.current_candidate_id = None
        event.is_voting_open = False
        self.db.commit()
        logger.info("✅ 活动 {} 候选人 {} 演出结束", event_id, current.candidate_id)
        return current

    def set_voting_open(self, event_id: int, is_open: bool) -> Optional[LineupEntry]:
        """开关观众投票窗口，并在当前演出条目上记录投票时间"""
        event = self.get_event(event_id)
        self._require_active(event)

        now = self.clock()
        event.is_voting_open = is_open
        current = self.current_performer(self.get_lineup(event_id))
        if current:
            if is_open:
                # 开票即冻结演出时长
                current.vote_opened_at = now
                if not current.ended_at:
                    current.ended_at = now
            else:
                current.vote_closed_at = now

        self.db.commit()
        logger.info("🗳️ 活动 {} 投票{}", event_id, "开启" if is_open else "关闭")
        return current

    def reorder_lineup(self, event_id: int, ordered_candidate_ids: List[int]) -> List[LineupEntry]:
        """按给定顺序重新编号 1..N，不改变任何条目状态"""
        event = self.get_event(event_id)
        self._require_active(event)
        if event.winner_revealed_at:
            raise PreconditionFailed("Le gagnant est déjà révélé, l'ordre est figé.")

        lineup = self.get_lineup(event_id)
        by_candidate = {entry.candidate_id: entry for entry in lineup}
        if len(set(ordered_candidate_ids)) != len(ordered_candidate_ids):
            raise PreconditionFailed("Ordre invalide : candidat en double.")
        if set(ordered_candidate_ids) != set(by_candidate):
            raise PreconditionFailed("L'ordre doit contenir exactement les candidats du lineup.")

        for position, candidate_id in enumerate(ordered_candidate_ids, start=1):
            by_candidate[candidate_id].position = position

        self.db.commit()
        logger.info("🔀 活动 {} 阵容重新排序: {}", event_id, ordered_candidate_ids)
        return self.get_lineup(event_id)

    def add_replacement(self, event_id: int, candidate_id: int, position: int) -> LineupEntry:
        """插入一位替补（待演出状态）"""
        event = self.get_event(event_id)
        self._require_active(event)
        self._get_candidate_for(event, candidate_id)
        return self._insert_entry(event, candidate_id, position, "Candidat déjà dans le lineup.")

    def checkin(self, event_id: int, candidate_id: int) -> LineupEntry:
        """候选人自助签到，按到场顺序排在阵容末尾"""
        event = self.get_event(event_id)
        self._require_active(event)
        self._get_candidate_for(event, candidate_id)

        lineup = self.get_lineup(event_id)
        position = max((entry.position for entry in lineup), default=0) + 1
        return self._insert_entry(event, candidate_id, position, "Ce candidat est déjà enregistré.")

    def _get_candidate_for(self, event: LiveEvent, candidate_id: int) -> Candidate:
        candidate = self.db.query(Candidate).filter(Candidate.id == candidate_id).first()
        if not candidate:
            raise NotFound("Candidat introuvable.")
        if candidate.session_id != event.session_id:
            raise PreconditionFailed("Ce candidat n'appartient pas à cette session.")
        return candidate

    def _insert_entry(self, event: LiveEvent, candidate_id: int, position: int,
                      duplicate_message: str) -> LineupEntry:
        existing = self.db.query(LineupEntry).filter(
            LineupEntry.live_event_id == event.id,
            LineupEntry.candidate_id == candidate_id
        ).first()
        if existing:
            raise DuplicateEntry(duplicate_message)

        entry = LineupEntry(
            live_event_id=event.id,
            candidate_id=candidate_id,
            position=position,
            status="pending"
        )
        self.db.add(entry)
        try:
            self.db.commit()
        except IntegrityError:
            # 并发插入由唯一约束兜底
            self.db.rollback()
            raise DuplicateEntry(duplicate_message)
        self.db.refresh(entry)
        logger.info("➕ 活动 {} 加入候选人 {} (位置 {})", event.id, candidate_id, position)
        return entry
