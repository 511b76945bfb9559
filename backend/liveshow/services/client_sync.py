"""
客户端同步服务

每个只读视图（活动状态、阵容、投票计数、评委打分）同时有两个数据来源：
变更通知（低延迟）与定时轮询（兜底）。两者都把完整快照交给 SnapshotGate，
只有快照在结构上发生变化时才推送给客户端，所以重复或乱序的通知不会造成闪烁。
"""

import asyncio
import copy
from typing import Any, Awaitable, Callable, Dict, List, Optional
from datetime import datetime
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from loguru import logger

from liveshow.core.config import settings
from liveshow.core.database import SessionLocal
from liveshow.core.errors import LiveEventError, NotFound
from liveshow.core.utils import format_timestamp_with_timezone
from liveshow.models.candidate import Candidate
from liveshow.models.juror import Juror
from liveshow.models.jury_score import JuryScore
from liveshow.models.live_event import LiveEvent
from liveshow.schemas.live_schemas import CandidateBrief, LiveEventResponse, LineupEntryInfo
from liveshow.services.change_feed import ChangeFeed, RowChange, Subscription, change_feed
from liveshow.services.live_event_service import LiveEventService
from liveshow.services.scoring_service import ScoringService
from liveshow.services.winner_service import RevealGate

Emit = Callable[[str, Any], Awaitable[None]]

# 变更无法增量合并时返回此标记，改为重新读取完整快照
REFETCH = object()

EVENT_FIELDS = tuple(LiveEventResponse.model_fields)
LINEUP_FIELDS = tuple(name for name in LineupEntryInfo.model_fields if name != "candidate")


def _jsonable(value):
    if isinstance(value, datetime):
        return format_timestamp_with_timezone(value)
    return value


def project(row: Dict[str, Any], fields) -> Dict[str, Any]:
    """把数据库行投影成与接口输出一致的字典"""
    return {name: _jsonable(row.get(name)) for name in fields}


def merge_fields(current: Dict[str, Any], row: Dict[str, Any], fields) -> Dict[str, Any]:
    merged = dict(current)
    for name, value in row.items():
        if name in fields:
            merged[name] = _jsonable(value)
    return merged


class SnapshotGate:
    """结构相等则忽略，不等才接受新快照"""

    def __init__(self):
        self.current: Any = None
        self.has_value = False

    def offer(self, snapshot: Any) -> bool:
        if self.has_value and snapshot == self.current:
            return False
        self.current = copy.deepcopy(snapshot)
        self.has_value = True
        return True


class EntityWatcher:
    """变更通知 + 定时轮询 合并成的只读视图"""

    table: str = ""
    message_type: str = ""

    def __init__(self, emit: Emit, session_factory: Callable[[], Session] = SessionLocal,
                 poll_interval: Optional[float] = None, feed: ChangeFeed = change_feed):
        self.emit = emit
        self.session_factory = session_factory
        self.poll_interval = poll_interval if poll_interval is not None else settings.SYNC_POLL_INTERVAL
        self.feed = feed
        self.gate = SnapshotGate()
        self.visible = True
        self.loaded = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._wake: Optional[asyncio.Event] = None
        self._subscription: Optional[Subscription] = None
        self._tasks: List[asyncio.Task] = []

    # ---- 子类实现 ----

    def matches(self, change: RowChange) -> bool:
        return True

    def fetch(self, db: Session) -> Any:
        raise NotImplementedError

    def apply_change(self, current: Any, change: RowChange) -> Any:
        return REFETCH

    async def on_snapshot(self, snapshot: Any):
        await self.emit(self.message_type, snapshot)

    # ---- 生命周期 ----

    async def start(self):
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._wake = asyncio.Event()
        self._subscription = self.feed.subscribe(self.table, self._enqueue, self.matches)
        await self.refresh()
        self._tasks = [
            asyncio.create_task(self._consume_changes()),
            asyncio.create_task(self._poll_loop()),
        ]

    async def stop(self):
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    def set_visible(self, visible: bool):
        """客户端不可见时暂停轮询，重新可见时立即刷新"""
        was_visible = self.visible
        self.visible = visible
        if visible != was_visible and self._wake is not None:
            self._wake.set()

    def request_refresh(self):
        if self._wake is not None:
            self._wake.set()

    # ---- 数据来源 ----

    def _enqueue(self, change: RowChange):
        # 变更通知可能来自其他线程
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, change)

    def _read(self) -> Any:
        db = self.session_factory()
        try:
            return self.fetch(db)
        finally:
            db.close()

    async def refresh(self) -> bool:
        try:
            snapshot = self._read()
        except (SQLAlchemyError, LiveEventError) as e:
            logger.debug("🔄 {} 读取失败，下次重试: {}", self.message_type, e)
            return False
        changed = await self.offer(snapshot)
        self.loaded = True
        return changed

    async def offer(self, snapshot: Any) -> bool:
        if not self.gate.offer(snapshot):
            return False
        await self.on_snapshot(snapshot)
        return True

    async def handle_change(self, change: RowChange):
        if not self.loaded:
            await self.refresh()
            return
        try:
            snapshot = self.apply_change(copy.deepcopy(self.gate.current), change)
        except (SQLAlchemyError, LiveEventError) as e:
            logger.debug("🔄 {} 增量合并失败，改为完整读取: {}", self.message_type, e)
            snapshot = REFETCH
        if snapshot is REFETCH:
            await self.refresh()
        else:
            await self.offer(snapshot)

    async def _consume_changes(self):
        while True:
            change = await self._queue.get()
            await self.handle_change(change)

    async def _poll_loop(self):
        while True:
            if self.visible:
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
            else:
                await self._wake.wait()
            self._wake.clear()
            if self.visible:
                await self.refresh()


class EventSync(EntityWatcher):
    """活动状态同步；可选地检测冠军揭晓"""

    table = "live_events"
    message_type = "event_state"

    def __init__(self, event_id: int, emit: Emit, reveal_gate: Optional[RevealGate] = None, **kwargs):
        super().__init__(emit, **kwargs)
        self.event_id = event_id
        self.reveal_gate = reveal_gate

    def matches(self, change: RowChange) -> bool:
        return change.row.get("id") == self.event_id

    def fetch(self, db: Session) -> Any:
        return LiveEventService(db).get_event_response(self.event_id).model_dump(mode="json")

    def apply_change(self, current: Any, change: RowChange) -> Any:
        if change.op == "DELETE":
            return None
        if current is None:
            return REFETCH
        # 部分字段更新合并到上一个快照
        return merge_fields(current, change.new, EVENT_FIELDS)

    async def on_snapshot(self, snapshot: Any):
        await super().on_snapshot(snapshot)
        if self.reveal_gate is None or snapshot is None:
            return
        winner_id = snapshot.get("winner_candidate_id")
        if self.reveal_gate.observe(snapshot.get("winner_revealed_at"), winner_id):
            await self.emit("winner_reveal", {
                "event_id": self.event_id,
                "winner_candidate_id": winner_id,
                "winner_revealed_at": snapshot.get("winner_revealed_at"),
            })


class LineupSync(EntityWatcher):
    """阵容同步"""

    table = "lineup"
    message_type = "lineup"

    def __init__(self, event_id: int, emit: Emit, **kwargs):
        super().__init__(emit, **kwargs)
        self.event_id = event_id

    def matches(self, change: RowChange) -> bool:
        return change.row.get("live_event_id") == self.event_id

    def fetch(self, db: Session) -> Any:
        return [entry.model_dump(mode="json") for entry in LiveEventService(db).get_lineup_info(self.event_id)]

    def _candidate_brief(self, candidate_id: int) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            candidate = db.query(Candidate).filter(Candidate.id == candidate_id).first()
            if not candidate:
                raise NotFound("Candidat introuvable.")
            return CandidateBrief.model_validate(candidate).model_dump(mode="json")
        finally:
            db.close()

    @staticmethod
    def _sorted(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return sorted(entries, key=lambda e: (e["position"], e["id"]))

    def apply_change(self, current: Any, change: RowChange) -> Any:
        entries = list(current or [])
        entry_id = change.row.get("id")

        if change.op == "DELETE":
            return [e for e in entries if e["id"] != entry_id]

        if change.op == "INSERT":
            if any(e["id"] == entry_id for e in entries):
                # 轮询已经读到过这一条
                return entries
            entry = project(change.new, LINEUP_FIELDS)
            entry["candidate"] = self._candidate_brief(change.new["candidate_id"])
            return self._sorted(entries + [entry])

        for index, existing in enumerate(entries):
            if existing["id"] == entry_id:
                entries[index] = merge_fields(existing, change.new, LINEUP_FIELDS)
                return self._sorted(entries)
        return REFETCH


class LiveVoteTallySync(EntityWatcher):
    """观众投票计数：新增投票在内存中累加，轮询时完整重算"""

    table = "live_votes"
    message_type = "vote_tally"

    def __init__(self, event_id: int, emit: Emit, **kwargs):
        super().__init__(emit, **kwargs)
        self.event_id = event_id

    def matches(self, change: RowChange) -> bool:
        return change.op == "INSERT" and change.row.get("live_event_id") == self.event_id

    def fetch(self, db: Session) -> Any:
        counts = ScoringService(db).vote_counts(self.event_id)
        return {str(candidate_id): count for candidate_id, count in counts.items()}

    def apply_change(self, current: Any, change: RowChange) -> Any:
        tally = dict(current or {})
        key = str(change.new["candidate_id"])
        tally[key] = tally.get(key, 0) + 1
        return tally


class JuryNotificationSync(EntityWatcher):
    """评委打分同步：按候选人汇总每位评委的分数，并为每次打分发出提示"""

    table = "jury_scores"
    message_type = "jury_scores"

    def __init__(self, session_id: int, event_type: str, emit: Emit, **kwargs):
        super().__init__(emit, **kwargs)
        self.session_id = session_id
        self.event_type = event_type

    def matches(self, change: RowChange) -> bool:
        row = change.row
        return row.get("session_id") == self.session_id and row.get("event_type") == self.event_type

    def fetch(self, db: Session) -> Any:
        rows = db.query(JuryScore).filter(
            JuryScore.session_id == self.session_id,
            JuryScore.event_type == self.event_type
        ).all()
        scores: Dict[str, Dict[str, float]] = {}
        for row in rows:
            scores.setdefault(str(row.candidate_id), {})[str(row.juror_id)] = row.total_score
        return scores

    def apply_change(self, current: Any, change: RowChange) -> Any:
        scores = dict(current or {})
        row = change.row
        candidate_key = str(row["candidate_id"])
        jurors = dict(scores.get(candidate_key, {}))

        if change.op == "DELETE":
            jurors.pop(str(row["juror_id"]), None)
            if jurors:
                scores[candidate_key] = jurors
            else:
                scores.pop(candidate_key, None)
            return scores

        if "total_score" not in row:
            return REFETCH
        jurors[str(row["juror_id"])] = row["total_score"]
        scores[candidate_key] = jurors
        return scores

    def _juror_name(self, juror_id: int) -> str:
        db = self.session_factory()
        try:
            juror = db.query(Juror).filter(Juror.id == juror_id).first()
            return juror.display_name if juror else "Juré"
        finally:
            db.close()

    async def handle_change(self, change: RowChange):
        # 初次加载完成之前不提示，避免打开页面时刷屏
        announce = self.loaded and change.op in ("INSERT", "UPDATE")
        await super().handle_change(change)
        if announce:
            row = change.row
            try:
                juror_name = self._juror_name(row["juror_id"])
            except SQLAlchemyError as e:
                logger.debug("🔄 评委信息读取失败: {}", e)
                juror_name = "Juré"
            await self.emit("jury_toast", {
                "juror_id": row.get("juror_id"),
                "juror_name": juror_name,
                "candidate_id": row.get("candidate_id"),
                "total_score": row.get("total_score"),
                "updated": change.op == "UPDATE",
            })


class EventDiscoverySync(EntityWatcher):
    """还没有活动id时：查找场次最新的未结束活动，或等待新活动被创建"""

    table = "live_events"
    message_type = "event_discovered"

    def __init__(self, session_id: int, emit: Emit,
                 on_discovered: Optional[Callable[[int], Awaitable[None]]] = None, **kwargs):
        super().__init__(emit, **kwargs)
        self.session_id = session_id
        self.on_discovered = on_discovered

    def matches(self, change: RowChange) -> bool:
        return change.op == "INSERT" and change.row.get("session_id") == self.session_id

    def fetch(self, db: Session) -> Any:
        event = LiveEventService(db).find_active_event(self.session_id)
        if event is None:
            return None
        return {"event_id": event.id, "event_type": event.event_type}

    def apply_change(self, current: Any, change: RowChange) -> Any:
        return {"event_id": change.new["id"], "event_type": change.new.get("event_type")}

    async def on_snapshot(self, snapshot: Any):
        if snapshot is None:
            return
        await super().on_snapshot(snapshot)
        if self.on_discovered is not None:
            await self.on_discovered(snapshot["event_id"])


# 每种客户端角色需要的视图
ROLE_WATCHERS = {
    "public": ("event", "lineup", "tally", "reveal"),
    "jury": ("event", "reveal"),
    "performer": ("event", "lineup"),
    "control": ("event", "lineup", "tally", "jury"),
}


class ClientSyncSession:
    """一个客户端连接对应的一组同步视图"""

    def __init__(self, role: str, send: Callable[[dict], Awaitable[None]],
                 event_id: Optional[int] = None, session_id: Optional[int] = None,
                 session_factory: Callable[[], Session] = SessionLocal,
                 poll_interval: Optional[float] = None, feed: ChangeFeed = change_feed,
                 reveal_gate: Optional[RevealGate] = None):
        if role not in ROLE_WATCHERS:
            raise ValueError(f"未知的客户端角色: {role}")
        if event_id is None and session_id is None:
            raise ValueError("event_id 和 session_id 至少需要一个")
        self.role = role
        self.send = send
        self.event_id = event_id
        self.session_id = session_id
        self.session_factory = session_factory
        self.poll_interval = poll_interval
        self.feed = feed
        self.reveal_gate = reveal_gate
        self.watchers: List[EntityWatcher] = []
        self.discovery: Optional[EventDiscoverySync] = None
        self._discovery_stop: Optional[asyncio.Task] = None
        self.visible = True

    async def emit(self, message_type: str, data: Any):
        await self.send({"type": message_type, "event_id": self.event_id, "data": data})

    def _watcher_kwargs(self) -> dict:
        return {
            "session_factory": self.session_factory,
            "poll_interval": self.poll_interval,
            "feed": self.feed,
        }

    async def start(self):
        if self.event_id is not None:
            await self._start_event_watchers()
        else:
            self.discovery = EventDiscoverySync(
                self.session_id, self.emit, on_discovered=self._handover, **self._watcher_kwargs()
            )
            await self.discovery.start()

    async def _handover(self, event_id: int):
        if self.event_id is not None:
            return
        self.event_id = event_id
        logger.info("🔎 场次 {} 发现活动 {} ({})", self.session_id, event_id, self.role)
        await self._start_event_watchers()
        # 在单独的任务里停止发现视图，当前调用可能正运行在它的任务中
        self._discovery_stop = asyncio.create_task(self._stop_discovery())

    async def _stop_discovery(self):
        if self.discovery is not None:
            await self.discovery.stop()
            self.discovery = None

    def _lookup_scope(self) -> LiveEvent:
        db = self.session_factory()
        try:
            event = db.query(LiveEvent).filter(LiveEvent.id == self.event_id).first()
            if not event:
                raise NotFound("Événement introuvable.")
            db.expunge(event)
            return event
        finally:
            db.close()

    async def _start_event_watchers(self):
        parts = ROLE_WATCHERS[self.role]
        kwargs = self._watcher_kwargs()
        reveal_gate = None
        if "reveal" in parts:
            reveal_gate = self.reveal_gate or RevealGate()

        watchers: List[EntityWatcher] = [EventSync(self.event_id, self.emit, reveal_gate=reveal_gate, **kwargs)]
        if "lineup" in parts:
            watchers.append(LineupSync(self.event_id, self.emit, **kwargs))
        if "tally" in parts:
            watchers.append(LiveVoteTallySync(self.event_id, self.emit, **kwargs))
        if "jury" in parts:
            event = self._lookup_scope()
            watchers.append(JuryNotificationSync(event.session_id, event.event_type, self.emit, **kwargs))

        for watcher in watchers:
            watcher.set_visible(self.visible)
            await watcher.start()
            self.watchers.append(watcher)

    def set_visible(self, visible: bool):
        self.visible = visible
        for watcher in self.watchers:
            watcher.set_visible(visible)
        if self.discovery is not None:
            self.discovery.set_visible(visible)

    def refresh(self):
        for watcher in self.watchers:
            watcher.request_refresh()
        if self.discovery is not None:
            self.discovery.request_refresh()

    async def stop(self):
        await self._stop_discovery()
        for watcher in self.watchers:
            await watcher.stop()
        self.watchers = []
