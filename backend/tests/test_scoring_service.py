import pytest

from liveshow.core.errors import PreconditionFailed, NotFound
from liveshow.models.jury_score import JuryScore
from liveshow.models.public_vote import PublicVote
from liveshow.schemas.live_schemas import ScoringWeights
from liveshow.services.lineup_sequencer import LineupSequencer
from liveshow.services.scoring_service import (
    ScoringService, CandidateTotals, compute_ranking, normalize
)

FULL_MARKS = {"voix": 5, "interpretation": 5, "presence": 5, "justesse": 5}
HALF_MARKS = {"voix": 2.5, "interpretation": 2.5, "presence": 2.5, "justesse": 2.5}


def test_normalize_bounds():
    assert normalize(0, 0) == 0
    assert normalize(5, 0) == 0
    assert normalize(40, 80) == 50
    assert normalize(80, 80) == 100


def test_weighted_ranking_scenario():
    weights = ScoringWeights(jury=60, public=40, social=0)
    rows = compute_ranking([
        CandidateTotals(1, "Y", jury_total=40, public_votes=10),
        CandidateTotals(2, "X", jury_total=80, public_votes=10),
    ], weights)

    assert [row.display_name for row in rows] == ["X", "Y"]
    assert rows[0].total == pytest.approx(100)
    assert rows[1].total == pytest.approx(70)
    assert [row.rank for row in rows] == [1, 2]


def test_normalized_scores_stay_within_bounds():
    weights = ScoringWeights(jury=40, public=40, social=20)
    rows = compute_ranking([
        CandidateTotals(1, "A", jury_total=12, public_votes=3, social_votes=0),
        CandidateTotals(2, "B", jury_total=0, public_votes=0, social_votes=0),
        CandidateTotals(3, "C", jury_total=75.5, public_votes=41, social_votes=7),
    ], weights)
    for row in rows:
        for value in (row.jury_normalized, row.public_normalized, row.social_normalized, row.total):
            assert 0 <= value <= 100


def test_weights_are_applied_literally():
    rows = compute_ranking([CandidateTotals(1, "A", jury_total=10, public_votes=1, social_votes=1)],
                           ScoringWeights(jury=50, public=50, social=50))
    assert rows[0].total == pytest.approx(150)


def test_ties_keep_input_order():
    rows = compute_ranking([
        CandidateTotals(7, "Premier", jury_total=10),
        CandidateTotals(3, "Second", jury_total=10),
    ], ScoringWeights(jury=100, public=0, social=0))
    assert [row.candidate_id for row in rows] == [7, 3]


@pytest.fixture
def live_final(db, seed):
    session = seed.session()
    x = seed.candidate(session, "Xavier", "Xu")
    y = seed.candidate(session, "Yasmine", "Yilmaz")
    event = seed.final(session, [y, x])
    return session, event, x, y


def open_voting(db, event):
    sequencer = LineupSequencer(db)
    sequencer.advance(event.id)
    sequencer.set_voting_open(event.id, True)


def test_build_ranking_from_sources(db, seed, live_final):
    session, event, x, y = live_final
    scoring = ScoringService(db)
    scoring.update_weights(session.id, 60, 40, 0)

    for index in range(4):
        juror = seed.juror(session, f"Juré{index}")
        scoring.submit_jury_score(juror, x.id, "final", FULL_MARKS)
        scoring.submit_jury_score(juror, y.id, "final", HALF_MARKS)

    open_voting(db, event)
    for index in range(10):
        assert scoring.cast_public_vote(event.id, x.id, f"device-x-{index:04d}").accepted
        assert scoring.cast_public_vote(event.id, y.id, f"device-y-{index:04d}").accepted

    ranking = scoring.build_ranking(event.id)
    assert [row.candidate_id for row in ranking.rows] == [x.id, y.id]
    assert ranking.rows[0].jury_total == 80
    assert ranking.rows[0].jury_count == 4
    assert ranking.rows[0].total == pytest.approx(100)
    assert ranking.rows[1].total == pytest.approx(70)
    assert ranking.tie_break == "insertion_order"


def test_ranking_scoped_by_category(db, seed):
    session = seed.session()
    kid = seed.candidate(session, "Léa", category="Enfant")
    adult = seed.candidate(session, "Marc", category="Adulte")
    event = seed.final(session, [kid, adult])

    ranking = ScoringService(db).build_ranking(event.id, category="Enfant")
    assert [row.candidate_id for row in ranking.rows] == [kid.id]


def test_ranking_uses_social_likes(db, seed):
    session = seed.session(config={"jury_weight_percent": 0, "public_weight_percent": 0,
                                   "social_weight_percent": 100})
    a = seed.candidate(session, "Anna", likes=5)
    b = seed.candidate(session, "Basile", likes=20)
    event = seed.final(session, [a, b])

    rows = ScoringService(db).build_ranking(event.id).rows
    assert [(row.candidate_id, row.social_normalized) for row in rows] == [(b.id, 100), (a.id, 25)]


def test_public_vote_uniqueness(db, live_final):
    _, event, x, _ = live_final
    scoring = ScoringService(db)
    open_voting(db, event)

    first = scoring.cast_public_vote(event.id, x.id, "device-0001")
    again = scoring.cast_public_vote(event.id, x.id, "device-0001")

    assert first.accepted is True
    assert again.accepted is False
    assert again.already_voted is True
    assert db.query(PublicVote).filter(PublicVote.candidate_id == x.id).count() == 1


def test_public_vote_requires_open_window(db, live_final):
    _, event, x, _ = live_final
    with pytest.raises(PreconditionFailed):
        ScoringService(db).cast_public_vote(event.id, x.id, "device-0001")


def test_public_vote_requires_candidate_in_lineup(db, seed, live_final):
    session, event, _, _ = live_final
    outsider = seed.candidate(session, "Zoé")
    open_voting(db, event)
    with pytest.raises(NotFound):
        ScoringService(db).cast_public_vote(event.id, outsider.id, "device-0001")


def test_jury_score_overwrite(db, seed, live_final):
    session, _, x, _ = live_final
    juror = seed.juror(session)
    scoring = ScoringService(db)

    scoring.submit_jury_score(juror, x.id, "final", HALF_MARKS)
    row = scoring.submit_jury_score(juror, x.id, "final", FULL_MARKS, comment="Superbe")

    rows = db.query(JuryScore).filter(JuryScore.juror_id == juror.id).all()
    assert len(rows) == 1
    assert row.total_score == 20
    assert row.comment == "Superbe"
    assert row.get_scores() == FULL_MARKS
    assert scoring.jury_score_count(session.id, x.id, "final") == 1


@pytest.mark.parametrize("scores", [
    {"voix": 6, "interpretation": 5, "presence": 5, "justesse": 5},
    {"voix": -1, "interpretation": 5, "presence": 5, "justesse": 5},
    {"voix": 5, "interpretation": 5, "presence": 5},
    {"voix": 5, "interpretation": 5, "presence": 5, "justesse": 5, "danse": 3},
])
def test_jury_score_validates_criteria(db, seed, live_final, scores):
    session, _, x, _ = live_final
    juror = seed.juror(session)
    with pytest.raises(PreconditionFailed):
        ScoringService(db).submit_jury_score(juror, x.id, "final", scores)


def test_reset_jury_scores(db, seed, live_final):
    session, _, x, _ = live_final
    scoring = ScoringService(db)
    for name in ("Anne", "Bea"):
        scoring.submit_jury_score(seed.juror(session, name), x.id, "final", FULL_MARKS)

    assert scoring.reset_jury_scores(session.id, x.id, "final") == 2
    assert scoring.jury_score_count(session.id, x.id, "final") == 0


@pytest.mark.parametrize("weights", [(50, 50, 10), (120, -20, 0), (30, 30, 30)])
def test_update_weights_validation(db, seed, weights):
    session = seed.session()
    with pytest.raises(PreconditionFailed):
        ScoringService(db).update_weights(session.id, *weights)


def test_weights_default_from_settings(db, seed):
    session = seed.session()
    weights = ScoringService(db).get_weights(session.id)
    assert (weights.jury, weights.public, weights.social) == (40, 40, 20)


def test_stored_weights_outside_bounds_are_applied_as_is(db, seed):
    session = seed.session(config={"jury_weight_percent": 150, "public_weight_percent": -50,
                                   "social_weight_percent": 0})
    a = seed.candidate(session, "Anna")
    event = seed.final(session, [a])

    ranking = ScoringService(db).build_ranking(event.id)

    assert (ranking.weights.jury, ranking.weights.public) == (150, -50)
    assert [row.candidate_id for row in ranking.rows] == [a.id]


def test_public_vote_counts_once_per_session(db, seed, live_final):
    session, event, x, _ = live_final
    semifinal = seed.semifinal(session)
    db.add(PublicVote(session_id=session.id, live_event_id=semifinal.id,
                      candidate_id=x.id, fingerprint="device-0001"))
    db.commit()
    open_voting(db, event)
    scoring = ScoringService(db)

    result = scoring.cast_public_vote(event.id, x.id, "device-0001")

    assert result.already_voted is True
    assert scoring.vote_counts(event.id) == {}
    assert scoring.cast_public_vote(event.id, x.id, "device-0002").accepted is True
