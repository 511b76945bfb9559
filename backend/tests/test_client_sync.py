import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from liveshow.services.change_feed import ChangeFeed, RowChange
from liveshow.services.client_sync import (
    SnapshotGate, EventSync, LineupSync, LiveVoteTallySync, JuryNotificationSync, ClientSyncSession
)
from liveshow.services.lineup_sequencer import LineupSequencer
from liveshow.services.scoring_service import ScoringService
from liveshow.services.winner_service import WinnerRevealCoordinator

FULL_MARKS = {"voix": 5, "interpretation": 5, "presence": 5, "justesse": 5}


class Recorder:
    def __init__(self):
        self.messages = []

    async def __call__(self, message_type, data):
        self.messages.append((message_type, data))

    def of(self, message_type):
        return [data for kind, data in self.messages if kind == message_type]


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def read_snapshot(watcher, session_factory):
    db = session_factory()
    try:
        return watcher.fetch(db)
    finally:
        db.close()


def test_snapshot_gate_uses_deep_equality():
    gate = SnapshotGate()
    snapshot = {"lineup": [{"id": 1, "status": "pending"}]}

    assert gate.offer(snapshot) is True
    assert gate.offer({"lineup": [{"id": 1, "status": "pending"}]}) is False

    snapshot["lineup"][0]["status"] = "performing"
    assert gate.current["lineup"][0]["status"] == "pending"
    assert gate.offer(snapshot) is True


def test_snapshot_gate_accepts_initial_none():
    gate = SnapshotGate()
    assert gate.offer(None) is True
    assert gate.offer(None) is False


async def test_event_sync_follows_feed(db, seed, session_factory):
    session = seed.session()
    a = seed.candidate(session, "Alice")
    event = seed.final(session, [a])
    recorder = Recorder()
    watcher = EventSync(event.id, recorder, session_factory=session_factory, poll_interval=3600)

    await watcher.start()
    try:
        assert [s["status"] for s in recorder.of("event_state")] == ["pending"]

        LineupSequencer(db).advance(event.id)
        await wait_until(lambda: len(recorder.of("event_state")) == 2)

        latest = recorder.of("event_state")[-1]
        assert latest["status"] == "live"
        assert latest["current_candidate_id"] == a.id
        assert latest == read_snapshot(watcher, session_factory)
    finally:
        await watcher.stop()


async def test_duplicate_notifications_are_not_forwarded(seed, session_factory):
    session = seed.session()
    event = seed.semifinal(session)
    feed = ChangeFeed()
    recorder = Recorder()
    watcher = EventSync(event.id, recorder, session_factory=session_factory,
                        poll_interval=3600, feed=feed)

    await watcher.start()
    try:
        feed.publish(RowChange("live_events", "UPDATE", new={"id": event.id, "status": "pending"}))
        feed.publish(RowChange("live_events", "UPDATE", new={"id": event.id, "status": "paused"}))
        feed.publish(RowChange("live_events", "UPDATE", new={"id": event.id, "status": "paused"}))
        feed.publish(RowChange("live_events", "UPDATE", new={"id": event.id + 1, "status": "live"}))
        await wait_until(lambda: len(recorder.of("event_state")) >= 2)
        await asyncio.sleep(0.05)

        assert [s["status"] for s in recorder.of("event_state")] == ["pending", "paused"]
    finally:
        await watcher.stop()
    assert feed.subscriber_count() == 0


async def test_lineup_sync_merges_changes(db, seed, session_factory):
    session = seed.session()
    alice = seed.candidate(session, "Alice", stage_name="Lili", status="semifinalist")
    event = seed.semifinal(session)
    recorder = Recorder()
    watcher = LineupSync(event.id, recorder, session_factory=session_factory, poll_interval=3600)
    sequencer = LineupSequencer(db)

    await watcher.start()
    try:
        assert recorder.of("lineup") == [[]]

        entry = sequencer.checkin(event.id, alice.id)
        await wait_until(lambda: len(recorder.of("lineup")) == 2)
        lineup = recorder.of("lineup")[-1]
        assert lineup[0]["candidate"]["display_name"] == "Lili"
        assert lineup == read_snapshot(watcher, session_factory)

        # 重复的插入通知不会产生重复条目
        row = {"id": entry.id, "live_event_id": event.id, "candidate_id": alice.id,
               "position": 1, "status": "pending"}
        await watcher.handle_change(RowChange("lineup", "INSERT", new=row))
        assert len(recorder.of("lineup")) == 2

        sequencer.call_to_stage(event.id, entry.id)
        await wait_until(lambda: len(recorder.of("lineup")) == 3)
        lineup = recorder.of("lineup")[-1]
        assert lineup[0]["status"] == "performing"
        assert lineup[0]["started_at"].endswith("Z")
        assert lineup == read_snapshot(watcher, session_factory)

        await watcher.handle_change(RowChange("lineup", "DELETE", old=row))
        assert recorder.of("lineup")[-1] == []
    finally:
        await watcher.stop()


async def test_vote_tally_counts_in_memory_and_recounts(db, seed, session_factory):
    session = seed.session()
    a = seed.candidate(session, "Alice")
    event = seed.final(session, [a])
    sequencer = LineupSequencer(db)
    sequencer.advance(event.id)
    sequencer.set_voting_open(event.id, True)

    recorder = Recorder()
    watcher = LiveVoteTallySync(event.id, recorder, session_factory=session_factory, poll_interval=3600)
    await watcher.start()
    try:
        scoring = ScoringService(db)
        scoring.cast_public_vote(event.id, a.id, "device-0001")
        scoring.cast_public_vote(event.id, a.id, "device-0002")
        await wait_until(lambda: recorder.of("vote_tally")[-1] == {str(a.id): 2})

        assert read_snapshot(watcher, session_factory) == {str(a.id): 2}
        await watcher.refresh()
        assert len(recorder.of("vote_tally")) == 3
    finally:
        await watcher.stop()


async def test_jury_notifications_toast_after_initial_load(db, seed, session_factory):
    session = seed.session()
    a = seed.candidate(session, "Alice")
    seed.final(session, [a])
    scoring = ScoringService(db)
    early = seed.juror(session, "Early")
    scoring.submit_jury_score(early, a.id, "final", FULL_MARKS)

    recorder = Recorder()
    watcher = JuryNotificationSync(session.id, "final", recorder,
                                   session_factory=session_factory, poll_interval=3600)
    await watcher.start()
    try:
        assert recorder.of("jury_scores") == [{str(a.id): {str(early.id): 20}}]
        assert recorder.of("jury_toast") == []

        late = seed.juror(session, "Claire")
        scoring.submit_jury_score(late, a.id, "final", FULL_MARKS)
        await wait_until(lambda: len(recorder.of("jury_toast")) == 1)

        toast = recorder.of("jury_toast")[0]
        assert toast["juror_name"] == "Claire Juré"
        assert toast["candidate_id"] == a.id
        assert recorder.of("jury_scores")[-1] == {str(a.id): {str(early.id): 20, str(late.id): 20}}
    finally:
        await watcher.stop()


async def test_hidden_client_pauses_polling(db, seed, session_factory):
    session = seed.session()
    a = seed.candidate(session, "Alice")
    event = seed.final(session, [a])
    recorder = Recorder()
    # 独立的通知源：只有轮询能看到数据库变化
    watcher = EventSync(event.id, recorder, session_factory=session_factory,
                        poll_interval=0.05, feed=ChangeFeed())

    await watcher.start()
    try:
        watcher.set_visible(False)
        LineupSequencer(db).advance(event.id)
        await asyncio.sleep(0.2)
        assert len(recorder.of("event_state")) == 1

        watcher.set_visible(True)
        await wait_until(lambda: len(recorder.of("event_state")) == 2, timeout=0.5)
        assert recorder.of("event_state")[-1]["status"] == "live"
    finally:
        await watcher.stop()


async def test_read_failures_are_retried(seed, session_factory):
    session = seed.session()
    event = seed.semifinal(session)
    attempts = []

    def flaky_factory():
        attempts.append(1)
        if len(attempts) == 1:
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))
        return session_factory()

    recorder = Recorder()
    watcher = EventSync(event.id, recorder, session_factory=flaky_factory,
                        poll_interval=0.05, feed=ChangeFeed())
    await watcher.start()
    try:
        assert recorder.of("event_state") == []
        await wait_until(lambda: len(recorder.of("event_state")) == 1)
    finally:
        await watcher.stop()


async def test_discovery_hands_over_to_event_sync(seed, session_factory):
    session = seed.session()
    a = seed.candidate(session, "Alice")
    sent = []

    async def send(message):
        sent.append(message)

    sync = ClientSyncSession("performer", send, session_id=session.id,
                             session_factory=session_factory, poll_interval=3600)
    await sync.start()
    try:
        assert sent == []
        event = seed.final(session, [a])
        await wait_until(lambda: any(m["type"] == "lineup" for m in sent))

        types = [m["type"] for m in sent]
        assert types[0] == "event_discovered"
        assert sent[0]["data"]["event_id"] == event.id
        assert "event_state" in types
        assert sync.event_id == event.id
        await wait_until(lambda: sync.discovery is None)
    finally:
        await sync.stop()


async def test_public_session_reveals_winner_once(db, seed, session_factory):
    session = seed.session()
    a = seed.candidate(session, "Alice")
    event = seed.final(session, [a])
    sent = []

    async def send(message):
        sent.append(message)

    sync = ClientSyncSession("public", send, event_id=event.id,
                             session_factory=session_factory, poll_interval=3600)
    await sync.start()
    try:
        assert {m["type"] for m in sent} == {"event_state", "lineup", "vote_tally"}

        coordinator = WinnerRevealCoordinator(db)
        await coordinator.reveal_winner(event.id, a.id)
        await wait_until(lambda: any(m["type"] == "winner_reveal" for m in sent))

        await coordinator.reveal_winner(event.id, a.id)
        sync.refresh()
        await asyncio.sleep(0.1)

        reveals = [m for m in sent if m["type"] == "winner_reveal"]
        assert len(reveals) == 1
        assert reveals[0]["data"]["winner_candidate_id"] == a.id
    finally:
        await sync.stop()


def test_unknown_role_is_rejected():
    async def send(message):
        pass

    with pytest.raises(ValueError):
        ClientSyncSession("spectator", send, event_id=1)
