"""
行级变更通知服务

会话flush时收集被跟踪表的INSERT/UPDATE/DELETE，提交成功后才发布给订阅者；
回滚的事务不会产生任何通知。
"""

import threading
from typing import Callable, Dict, List, Optional, Any
from sqlalchemy import event, inspect
from sqlalchemy.orm import Session
from loguru import logger

TRACKED_TABLES = {"live_events", "lineup", "live_votes", "jury_scores"}

_PENDING_KEY = "liveshow_row_changes"


class RowChange:
    """一条行级变更"""

    __slots__ = ("table", "op", "new", "old")

    def __init__(self, table: str, op: str, new: Optional[Dict[str, Any]] = None,
                 old: Optional[Dict[str, Any]] = None):
        self.table = table
        self.op = op  # INSERT, UPDATE, DELETE
        self.new = new or {}
        self.old = old or {}

    @property
    def row(self) -> Dict[str, Any]:
        """变更后的行（删除时为删除前的行）"""
        return self.new if self.op != "DELETE" else self.old

    def __repr__(self) -> str:
        return f"RowChange({self.table}, {self.op}, id={self.row.get('id')})"


class Subscription:
    """对某张表的一个订阅"""

    def __init__(self, feed: "ChangeFeed", table: str, callback: Callable[[RowChange], None],
                 predicate: Optional[Callable[[RowChange], bool]] = None):
        self.feed = feed
        self.table = table
        self.callback = callback
        self.predicate = predicate

    def matches(self, change: RowChange) -> bool:
        if change.table != self.table:
            return False
        return self.predicate is None or bool(self.predicate(change))

    def close(self):
        self.feed.unsubscribe(self)


class ChangeFeed:
    """进程内的变更分发器"""

    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, table: str, callback: Callable[[RowChange], None],
                  predicate: Optional[Callable[[RowChange], bool]] = None) -> Subscription:
        subscription = Subscription(self, table, callback, predicate)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def subscriber_count(self, table: Optional[str] = None) -> int:
        with self._lock:
            if table is None:
                return len(self._subscriptions)
            return sum(1 for s in self._subscriptions if s.table == table)

    def publish(self, change: RowChange):
        with self._lock:
            subscriptions = list(self._subscriptions)

        for subscription in subscriptions:
            try:
                if subscription.matches(change):
                    subscription.callback(change)
            except Exception as e:
                # 单个订阅者出错不能影响写入方
                logger.warning("⚠️ 变更通知分发失败 {}: {}", change, e)


# 全局变更分发器
change_feed = ChangeFeed()


def row_snapshot(obj) -> Dict[str, Any]:
    """读取实例已加载的列值，不触发任何懒加载"""
    state = inspect(obj)
    loaded = state.dict
    return {
        attr.key: loaded[attr.key]
        for attr in state.mapper.column_attrs
        if attr.key in loaded
    }


def _previous_values(obj) -> Dict[str, Any]:
    state = inspect(obj)
    previous = {}
    for attr in state.mapper.column_attrs:
        history = state.attrs[attr.key].history
        if history.deleted:
            previous[attr.key] = history.deleted[0]
    return previous


def _table_name(obj) -> Optional[str]:
    table = getattr(obj, "__table__", None)
    return table.name if table is not None else None


def _collect_changes(session, flush_context):
    """flush之后收集变更（此时new/dirty/deleted仍是flush前的状态）"""
    pending = session.info.setdefault(_PENDING_KEY, [])

    for obj in session.new:
        table = _table_name(obj)
        if table in TRACKED_TABLES:
            pending.append(RowChange(table, "INSERT", new=row_snapshot(obj)))

    for obj in session.dirty:
        table = _table_name(obj)
        if table in TRACKED_TABLES and session.is_modified(obj, include_collections=False):
            pending.append(RowChange(table, "UPDATE", new=row_snapshot(obj), old=_previous_values(obj)))

    for obj in session.deleted:
        table = _table_name(obj)
        if table in TRACKED_TABLES:
            pending.append(RowChange(table, "DELETE", old=row_snapshot(obj)))


def _publish_changes(session):
    changes = session.info.pop(_PENDING_KEY, [])
    for change in changes:
        change_feed.publish(change)


def _discard_changes(session):
    session.info.pop(_PENDING_KEY, None)


_installed = False


def install_change_capture():
    """注册会话事件（重复调用无副作用）"""
    global _installed
    if _installed:
        return
    event.listen(Session, "after_flush", _collect_changes)
    event.listen(Session, "after_commit", _publish_changes)
    event.listen(Session, "after_rollback", _discard_changes)
    _installed = True


install_change_capture()
