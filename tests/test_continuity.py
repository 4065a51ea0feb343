"""Tests for continuity scoring and caregiver selection."""

from datetime import datetime, timedelta

import pytest

from aba_scheduler.core.cache import CacheManager, ContinuityCache
from aba_scheduler.core.clock import FixedClock
from aba_scheduler.core.continuity import (
    EXPERIENCE_REASON,
    ONLY_CANDIDATE_REASON,
    PRIMARY_REASON,
    AssignmentSelector,
    ContinuityLookup,
    ContinuityScorer,
)
from aba_scheduler.models import ContinuityTrend, Session, SessionStatus, Team
from aba_scheduler.utils.exceptions import ValidationError

REFERENCE = datetime(2024, 1, 8, 8, 0)


def _history(rbt_id: str, client_id: str, days_ago, status=SessionStatus.COMPLETED):
    sessions = []
    for days in days_ago:
        start = REFERENCE - timedelta(days=days)
        sessions.append(Session(
            id=f"ses_{rbt_id}_{client_id}_{days}",
            client_id=client_id,
            rbt_id=rbt_id,
            start_time=start,
            end_time=start + timedelta(hours=3),
            status=status,
        ))
    return sessions


class TestContinuityScorer:
    """Score components and bounds."""

    @pytest.fixture
    def scorer(self):
        return ContinuityScorer(FixedClock(REFERENCE))

    def test_no_history_scores_zero(self, scorer):
        score = scorer.score("rbt_1", "client_1", [])
        assert score.score == 0
        assert score.total_sessions == 0
        assert score.last_session_date is None

    def test_only_completed_and_confirmed_count(self, scorer):
        history = (
            _history("rbt_1", "client_1", [2], SessionStatus.CANCELLED)
            + _history("rbt_1", "client_1", [3], SessionStatus.NO_SHOW)
            + _history("rbt_1", "client_1", [4], SessionStatus.SCHEDULED)
        )
        assert scorer.score("rbt_1", "client_1", history).score == 0

    def test_future_sessions_ignored(self, scorer):
        history = _history("rbt_1", "client_1", [-3], SessionStatus.CONFIRMED)
        assert scorer.score("rbt_1", "client_1", history).score == 0

    def test_single_recent_session(self, scorer):
        score = scorer.score("rbt_1", "client_1", _history("rbt_1", "client_1", [2]))
        # 2 volume + 5 recent + 30 recency
        assert score.score == 37
        assert score.recent_sessions == 1

    def test_score_is_capped(self, scorer):
        history = _history("rbt_1", "client_1", range(1, 60))
        assert scorer.score("rbt_1", "client_1", history).score == 100

    def test_non_decreasing_in_session_count(self, scorer):
        previous = 0
        for count in range(1, 30):
            history = _history("rbt_1", "client_1", range(1, count + 1))
            history = [s for s in history if s.start_time <= REFERENCE]
            current = scorer.score("rbt_1", "client_1", history).score
            assert current >= previous
            previous = current

    def test_old_history_has_no_recency_points(self, scorer):
        score = scorer.score("rbt_1", "client_1", _history("rbt_1", "client_1", [40]))
        assert score.score == 2
        assert score.recent_sessions == 0

    def test_recency_decay(self):
        last = REFERENCE - timedelta(days=10)
        assert ContinuityScorer.recency_points(last, REFERENCE) == 24
        assert ContinuityScorer.recency_points(REFERENCE - timedelta(days=7), REFERENCE) == 30
        assert ContinuityScorer.recency_points(REFERENCE - timedelta(days=60), REFERENCE) == 0

    def test_other_pairs_do_not_contribute(self, scorer):
        history = _history("rbt_2", "client_1", [1, 2]) + _history("rbt_1", "client_2", [3])
        assert scorer.score("rbt_1", "client_1", history).score == 0


class TestContinuityHistory:

    @pytest.fixture
    def scorer(self):
        return ContinuityScorer(FixedClock(REFERENCE))

    def test_build_history(self, scorer):
        history = _history("rbt_1", "client_1", [1, 8, 15, 40])
        summary = scorer.build_history("rbt_1", "client_1", history)
        assert summary.session_count == 4
        assert summary.recent_session_count == 3
        assert summary.last_session_date == REFERENCE - timedelta(days=1)
        assert summary.continuity_streak_weeks == 3
        assert summary.continuity_score == scorer.score("rbt_1", "client_1", history).score

    def test_track_pairing_history(self, scorer):
        history = _history("rbt_1", "client_1", [1, 2]) + _history("rbt_2", "client_1", [3])
        tracked = scorer.track_pairing_history("client_1", history)
        assert set(tracked) == {"rbt_1", "rbt_2"}
        assert tracked["rbt_1"].session_count == 2

    def test_metrics_identify_primary(self, scorer):
        history = _history("rbt_1", "client_1", [1, 2, 3]) + _history("rbt_2", "client_1", [4])
        metrics = scorer.generate_continuity_metrics("client_1", history, ["rbt_1", "rbt_2"])
        assert metrics.primary_rbt_id == "rbt_1"
        assert metrics.primary_rbt_share == 75.0
        assert metrics.unique_rbts == 2
        assert len(metrics.rbt_scores) == 2

    def test_metrics_trend_improving(self, scorer):
        history = (
            _history("rbt_2", "client_1", [30, 28])
            + _history("rbt_3", "client_1", [26])
            + _history("rbt_1", "client_1", [5, 3, 1])
        )
        metrics = scorer.generate_continuity_metrics("client_1", history)
        assert metrics.continuity_trend == ContinuityTrend.IMPROVING

    def test_metrics_without_history(self, scorer):
        metrics = scorer.generate_continuity_metrics("client_1", [])
        assert metrics.total_sessions == 0
        assert metrics.continuity_trend == ContinuityTrend.STABLE


class TestAssignmentSelector:
    """Primary first, then the lone candidate, then highest continuity."""

    @pytest.fixture
    def selector(self):
        return AssignmentSelector(ContinuityScorer(FixedClock(REFERENCE)))

    def _create_team(self, rbt_ids, primary):
        return Team(
            id="team_1",
            client_id="client_1",
            rbt_ids=rbt_ids,
            primary_rbt_id=primary,
            effective_date=REFERENCE - timedelta(days=90),
        )

    def test_primary_wins_when_available(self, selector):
        team = self._create_team(["rbt_1", "rbt_2"], "rbt_2")
        history = _history("rbt_1", "client_1", [1, 2, 3, 4])
        result = selector.select_optimal_rbt(["rbt_1", "rbt_2"], "client_1", history, team)
        assert result.selected_rbt_id == "rbt_2"
        assert result.selection_reason == PRIMARY_REASON
        assert [a.rbt_id for a in result.alternatives] == ["rbt_1"]

    def test_single_candidate(self, selector):
        result = selector.select_optimal_rbt(["rbt_3"], "client_1", [])
        assert result.selected_rbt_id == "rbt_3"
        assert result.selection_reason == ONLY_CANDIDATE_REASON
        assert result.alternatives == []

    def test_highest_continuity_wins(self, selector):
        team = self._create_team(["rbt_1", "rbt_2", "rbt_3"], "rbt_3")
        history = _history("rbt_1", "client_1", [1, 3, 5]) + _history("rbt_2", "client_1", [40])
        result = selector.select_optimal_rbt(["rbt_2", "rbt_1"], "client_1", history, team)
        assert result.selected_rbt_id == "rbt_1"
        assert result.selection_reason == EXPERIENCE_REASON
        assert result.continuity_score > result.alternatives[0].continuity_score

    def test_ties_go_to_first_candidate(self, selector):
        result = selector.select_optimal_rbt(["rbt_2", "rbt_1"], "client_1", [])
        assert result.selected_rbt_id == "rbt_2"

    def test_duplicate_candidates_collapsed(self, selector):
        result = selector.select_optimal_rbt(["rbt_1", "rbt_1"], "client_1", [])
        assert result.selection_reason == ONLY_CANDIDATE_REASON

    def test_empty_candidates_rejected(self, selector):
        with pytest.raises(ValidationError):
            selector.select_optimal_rbt([], "client_1", [])


class TestContinuityLookup:
    """Scores read through the session store and the cache."""

    def _create_lookup(self, database, cache=None):
        return ContinuityLookup(database.sessions, ContinuityScorer(FixedClock(REFERENCE)), cache)

    async def _add_session_started_at(self, database, start):
        await database.sessions.create(Session(
            id="ses_1",
            client_id="client_1",
            rbt_id="rbt_1",
            start_time=start,
            end_time=start + timedelta(hours=3),
            status=SessionStatus.CONFIRMED,
        ))

    @pytest.mark.asyncio
    async def test_session_earlier_in_same_minute_counts(self, database):
        await self._add_session_started_at(database, REFERENCE.replace(second=20))

        score = await self._create_lookup(database).score("rbt_1", "client_1", REFERENCE.replace(second=40))

        assert score.total_sessions == 1
        assert score.last_session_date == REFERENCE.replace(second=20)

    @pytest.mark.asyncio
    async def test_cached_lookup_scores_at_full_resolution(self, database, settings):
        await self._add_session_started_at(database, REFERENCE.replace(second=20))
        lookup = self._create_lookup(database, ContinuityCache(CacheManager(settings)))

        score = await lookup.score("rbt_1", "client_1", REFERENCE.replace(second=40))

        assert score.total_sessions == 1
        assert score.score > 0
