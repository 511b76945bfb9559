from datetime import timedelta

import pytest

from liveshow.core.errors import PreconditionFailed, NotFound
from liveshow.services.winner_service import WinnerRevealCoordinator, RevealGate


@pytest.fixture
def final_event(db, seed):
    session = seed.session()
    a = seed.candidate(session, "Alice", category="Adulte")
    b = seed.candidate(session, "Bruno", stage_name="Bruno B.")
    event = seed.final(session, [a, b])
    return event, a, b


async def test_reveal_sets_trigger_and_candidate_status(db, final_event, notifier, clock):
    event, a, _ = final_event
    coordinator = WinnerRevealCoordinator(db, notifier=notifier, clock=clock)

    await coordinator.reveal_winner(event.id, a.id)

    db.refresh(event)
    db.refresh(a)
    assert event.winner_candidate_id == a.id
    assert event.winner_revealed_at == clock.now
    assert a.status == "winner"
    assert notifier.tags() == ["winner-reveal"]
    _, role, payload = notifier.sent[0]
    assert role == "all"
    assert payload.title == "Alice Martin remporte la catégorie Adulte !"


async def test_reveal_is_idempotent(db, final_event, notifier, clock):
    event, a, _ = final_event
    coordinator = WinnerRevealCoordinator(db, notifier=notifier, clock=clock)

    await coordinator.reveal_winner(event.id, a.id)
    first_reveal = event.winner_revealed_at
    clock.tick(30)
    await coordinator.reveal_winner(event.id, a.id)

    db.refresh(event)
    assert event.winner_revealed_at == first_reveal
    assert len(notifier.sent) == 1


async def test_reveal_of_another_candidate_requires_reset(db, final_event, notifier, clock):
    event, a, b = final_event
    coordinator = WinnerRevealCoordinator(db, notifier=notifier, clock=clock)
    await coordinator.reveal_winner(event.id, a.id)

    with pytest.raises(PreconditionFailed):
        await coordinator.reveal_winner(event.id, b.id)

    await coordinator.reset_winner_reveal(event.id)
    db.refresh(event)
    db.refresh(a)
    assert event.winner_candidate_id is None
    assert event.winner_revealed_at is None
    assert a.status == "finalist"

    clock.tick(10)
    await coordinator.reveal_winner(event.id, b.id)
    db.refresh(event)
    assert event.winner_candidate_id == b.id


async def test_reveal_requires_lineup_member(db, seed, final_event):
    event, _, _ = final_event
    outsider = seed.candidate(seed.session("Autre"), "Zoé")
    with pytest.raises(NotFound):
        await WinnerRevealCoordinator(db).reveal_winner(event.id, outsider.id)


async def test_push_failure_does_not_undo_reveal(db, final_event, failing_notifier, clock):
    event, a, _ = final_event
    coordinator = WinnerRevealCoordinator(db, notifier=failing_notifier, clock=clock)

    await coordinator.reveal_winner(event.id, a.id)

    db.refresh(event)
    assert event.winner_candidate_id == a.id
    assert event.winner_revealed_at is not None


def test_gate_triggers_once_per_timestamp(clock):
    gate = RevealGate(freshness_seconds=120, clock=clock)
    revealed_at = clock.now - timedelta(seconds=5)

    assert gate.observe(revealed_at, 1) is True
    assert gate.observe(revealed_at, 1) is False
    assert gate.observe(revealed_at.isoformat() + "Z", 1) is False


def test_gate_ignores_stale_reveals(clock):
    gate = RevealGate(freshness_seconds=120, clock=clock)
    assert gate.observe(clock.now - timedelta(minutes=10), 1) is False


def test_gate_tolerates_clock_skew(clock):
    gate = RevealGate(freshness_seconds=120, clock=clock)
    assert gate.observe(clock.now + timedelta(seconds=30), 1) is True


def test_gate_rearms_after_reset(clock):
    gate = RevealGate(freshness_seconds=120, clock=clock)
    assert gate.observe(clock.now, 1) is True
    assert gate.observe(None, None) is False
    clock.tick(20)
    assert gate.observe(clock.now, 2) is True
