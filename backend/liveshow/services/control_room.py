"""
控制室操作服务

活动与阵容状态变更的唯一写入入口。每个操作都重新读取最新状态、校验调用方
身份，并返回 ActionResult（成功标记或错误信息），异常不会越过这一层。

假定同一时刻只有一个控制室在操作：后写覆盖，没有分布式锁。
"""

import inspect
from typing import Callable, List, Optional
from datetime import datetime
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from loguru import logger

from liveshow.core.errors import LiveEventError, Unauthorized, UpstreamUnavailable
from liveshow.core.utils import utcnow
from liveshow.models.lineup import LineupEntry
from liveshow.schemas.live_schemas import ActionResult, PushPayload
from liveshow.services.lineup_sequencer import LineupSequencer
from liveshow.services.live_event_service import LiveEventService
from liveshow.services.push_service import PushNotifier, fire_and_forget
from liveshow.services.scoring_service import ScoringService
from liveshow.services.winner_service import WinnerRevealCoordinator


class Caller:
    """操作调用方（由上游认证得到）"""

    def __init__(self, identity: str, is_admin: bool = False):
        self.identity = identity
        self.is_admin = is_admin

    def __repr__(self) -> str:
        return f"Caller({self.identity}, admin={self.is_admin})"


class ControlRoomActions:
    """控制室操作集合"""

    def __init__(self, db: Session, caller: Caller, notifier: Optional[PushNotifier] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.caller = caller
        self.notifier = notifier
        self.clock = clock
        self.sequencer = LineupSequencer(db, clock=clock)
        self.events = LiveEventService(db)
        self.scoring = ScoringService(db)
        self.winners = WinnerRevealCoordinator(db, notifier=notifier, clock=clock)
        # 最近一次失败的领域错误，路由据此选择HTTP状态码
        self.last_error: Optional[LiveEventError] = None

    async def _run(self, name: str, action: Callable, event_id: Optional[int] = None) -> ActionResult:
        self.last_error = None
        try:
            if not self.caller.is_admin:
                raise Unauthorized("Accès réservé à la régie.")
            result = action()
            if inspect.isawaitable(result):
                result = await result
        except LiveEventError as e:
            self.db.rollback()
            self.last_error = e
            logger.warning("⚠️ 控制室操作 {} 失败 ({}): {}", name, self.caller.identity, e.message)
            return ActionResult(error=e.message, event_id=event_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            self.last_error = UpstreamUnavailable("Base de données indisponible, réessayez.")
            logger.error("❌ 控制室操作 {} 数据库错误: {}", name, e)
            return ActionResult(error=self.last_error.message, event_id=event_id)

        if event_id is None and result is not None:
            event_id = getattr(result, "id", None)
        logger.info("🎛️ 控制室操作 {} 完成 (活动 {})", name, event_id)
        return ActionResult(success=True, event_id=event_id)

    def _push(self, session_id: int, role: str, payload: PushPayload):
        if self.notifier is not None:
            fire_and_forget(self.notifier, session_id, role, payload)

    def _push_on_stage(self, entry: Optional[LineupEntry]):
        if entry is None:
            return
        self._push(entry.event.session_id, "jury", PushPayload(
            title=f"{entry.candidate.display_name} monte sur scène !",
            body="Préparez-vous à noter.",
            url=f"/live/{entry.live_event_id}",
            tag="on-stage",
        ))

    # ---- 阵容 ----

    async def advance(self, event_id: int) -> ActionResult:
        def action():
            entry = self.sequencer.advance(event_id)
            self._push_on_stage(entry)
        return await self._run("advance", action, event_id)

    async def mark_absent(self, event_id: int, entry_id: int) -> ActionResult:
        return await self._run("mark_absent", lambda: self.sequencer.mark_absent(event_id, entry_id), event_id)

    async def set_replay(self, event_id: int, entry_id: int) -> ActionResult:
        def action():
            self._push_on_stage(self.sequencer.set_replay(event_id, entry_id))
        return await self._run("set_replay", action, event_id)

    async def call_to_stage(self, event_id: int, entry_id: int) -> ActionResult:
        def action():
            self._push_on_stage(self.sequencer.call_to_stage(event_id, entry_id))
        return await self._run("call_to_stage", action, event_id)

    async def finish_performance(self, event_id: int) -> ActionResult:
        def action():
            entry = self.sequencer.finish_performance(event_id)
            name = entry.candidate.display_name
            self._push(entry.event.session_id, "jury", PushPayload(
                title="C'est à vous de noter !",
                body=f"{name} a terminé sa prestation. Notez maintenant !",
                url=f"/live/{event_id}",
                tag="jury-score",
            ))
        return await self._run("finish_performance", action, event_id)

    async def set_voting_open(self, event_id: int, is_open: bool) -> ActionResult:
        def action():
            current = self.sequencer.set_voting_open(event_id, is_open)
            event = self.sequencer.get_event(event_id)
            name = current.candidate.display_name if current else None
            if is_open:
                payload = PushPayload(
                    title="Les votes sont ouverts !",
                    body=f"Votez pour {name} maintenant." if name else "Votez pour votre candidat préféré.",
                    url=f"/live/{event_id}",
                    tag="vote-open",
                )
            else:
                payload = PushPayload(
                    title="Les votes sont clos",
                    body="Merci pour votre participation !",
                    url=f"/live/{event_id}",
                    tag="vote-close",
                )
            self._push(event.session_id, "public", payload)
        return await self._run("set_voting_open", action, event_id)

    async def reorder_lineup(self, event_id: int, ordered_candidate_ids: List[int]) -> ActionResult:
        return await self._run(
            "reorder_lineup",
            lambda: self.sequencer.reorder_lineup(event_id, ordered_candidate_ids),
            event_id,
        )

    async def add_replacement(self, event_id: int, candidate_id: int, position: int) -> ActionResult:
        return await self._run(
            "add_replacement",
            lambda: self.sequencer.add_replacement(event_id, candidate_id, position),
            event_id,
        )

    # ---- 活动 ----

    async def create_event(self, session_id: int, event_type: str,
                           ordered_candidate_ids: Optional[List[int]] = None) -> ActionResult:
        return await self._run(
            "create_event",
            lambda: self.events.create_event(session_id, event_type, ordered_candidate_ids),
        )

    async def update_event_status(self, event_id: int, status: str) -> ActionResult:
        return await self._run(
            "update_event_status",
            lambda: self.events.update_event_status(event_id, status),
            event_id,
        )

    # ---- 揭晓 ----

    async def reveal_winner(self, event_id: int, candidate_id: int) -> ActionResult:
        return await self._run(
            "reveal_winner",
            lambda: self.winners.reveal_winner(event_id, candidate_id),
            event_id,
        )

    async def reset_winner_reveal(self, event_id: int) -> ActionResult:
        return await self._run(
            "reset_winner_reveal",
            lambda: self.winners.reset_winner_reveal(event_id),
            event_id,
        )

    # ---- 评分 ----

    async def update_scoring_weights(self, session_id: int, jury: float, public: float,
                                     social: float) -> ActionResult:
        return await self._run(
            "update_scoring_weights",
            lambda: self.scoring.update_weights(session_id, jury, public, social),
        )

    async def reset_jury_scores(self, session_id: int, candidate_id: int, event_type: str) -> ActionResult:
        return await self._run(
            "reset_jury_scores",
            lambda: self.scoring.reset_jury_scores(session_id, candidate_id, event_type),
        )
