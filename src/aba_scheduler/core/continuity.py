"""
Continuity scoring and caregiver selection
"""
import logging
import math
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from ..database.base import SessionStore
from ..models import (
    CONTINUITY_STATUSES,
    ContinuityMetrics,
    ContinuityScore,
    ContinuityTrend,
    RBTClientHistory,
    RBTSelectionAlternative,
    RBTSelectionResult,
    Session,
    Team,
)
from ..utils.exceptions import ValidationError
from ..utils.helpers import get_monday_of_week, round_to
from .cache import ContinuityCache
from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)

# Score components (points)
VOLUME_POINTS_PER_SESSION = 2
VOLUME_CAP = 40
RECENT_POINTS_PER_SESSION = 5
RECENT_CAP = 30
RECENCY_MAX = 30
RECENCY_GRACE_DAYS = 7
RECENCY_DECAY_PER_DAY = 2
RECENT_WINDOW_DAYS = 30
MAX_SCORE = 100

# Continuity trend needs enough history to split in halves
TREND_MIN_SESSIONS = 6
TREND_PRIMARY_SHARE_BAND = 10.0

PRIMARY_REASON = "Primary caregiver for this client"
ONLY_CANDIDATE_REASON = "Only available caregiver"
EXPERIENCE_REASON = "Previous experience with client"


class ContinuityScorer:
    """Scores caregiver-client pairings from their shared session history"""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()

    def _pair_sessions(
        self,
        rbt_id: str,
        client_id: str,
        history: Iterable[Session],
        reference_date: datetime
    ) -> List[Session]:
        return sorted(
            (
                s for s in history
                if s.rbt_id == rbt_id
                and s.client_id == client_id
                and s.status in CONTINUITY_STATUSES
                and s.start_time <= reference_date
            ),
            key=lambda s: s.start_time
        )

    def score(
        self,
        rbt_id: str,
        client_id: str,
        history: Iterable[Session],
        reference_date: Optional[datetime] = None
    ) -> ContinuityScore:
        """Continuity score in [0, 100] for a caregiver-client pair at the reference date"""
        reference_date = reference_date or self.clock.now()
        sessions = self._pair_sessions(rbt_id, client_id, history, reference_date)

        if not sessions:
            return ContinuityScore(rbt_id=rbt_id, client_id=client_id, score=0)

        total = len(sessions)
        recent_cutoff = reference_date - timedelta(days=RECENT_WINDOW_DAYS)
        recent = sum(1 for s in sessions if s.start_time >= recent_cutoff)
        last_session_date = sessions[-1].start_time

        volume_points = min(total * VOLUME_POINTS_PER_SESSION, VOLUME_CAP)
        recent_points = min(recent * RECENT_POINTS_PER_SESSION, RECENT_CAP)
        recency_points = self.recency_points(last_session_date, reference_date)

        return ContinuityScore(
            rbt_id=rbt_id,
            client_id=client_id,
            score=min(volume_points + recent_points + recency_points, MAX_SCORE),
            total_sessions=total,
            recent_sessions=recent,
            last_session_date=last_session_date,
        )

    @staticmethod
    def recency_points(last_session_date: datetime, reference_date: datetime) -> float:
        days_since = (reference_date - last_session_date).days
        if days_since <= RECENCY_GRACE_DAYS:
            return RECENCY_MAX
        return max(0, RECENCY_MAX - RECENCY_DECAY_PER_DAY * (days_since - RECENCY_GRACE_DAYS))

    def build_history(
        self,
        rbt_id: str,
        client_id: str,
        history: Iterable[Session],
        reference_date: Optional[datetime] = None
    ) -> RBTClientHistory:
        """Summarize how often and how steadily a caregiver has seen a client"""
        reference_date = reference_date or self.clock.now()
        history = list(history)
        sessions = self._pair_sessions(rbt_id, client_id, history, reference_date)

        if not sessions:
            return RBTClientHistory(rbt_id=rbt_id, client_id=client_id)

        first = sessions[0].start_time
        last = sessions[-1].start_time
        recent_cutoff = reference_date - timedelta(days=RECENT_WINDOW_DAYS)
        total_weeks = max(1, math.ceil((last - first).total_seconds() / timedelta(weeks=1).total_seconds()))

        return RBTClientHistory(
            rbt_id=rbt_id,
            client_id=client_id,
            session_count=len(sessions),
            first_session_date=first,
            last_session_date=last,
            recent_session_count=sum(1 for s in sessions if s.start_time >= recent_cutoff),
            weekly_frequency=round_to(len(sessions) / total_weeks),
            continuity_streak_weeks=self._continuity_streak(sessions),
            continuity_score=self.score(rbt_id, client_id, history, reference_date).score,
        )

    @staticmethod
    def _continuity_streak(sessions: Sequence[Session]) -> int:
        """Consecutive weeks with at least one session, counted back from the latest week"""
        weeks = sorted({get_monday_of_week(s.start_time.date()) for s in sessions}, reverse=True)
        if not weeks:
            return 0

        streak = 1
        for previous, current in zip(weeks, weeks[1:]):
            if (previous - current).days != 7:
                break
            streak += 1
        return streak

    def track_pairing_history(
        self,
        client_id: str,
        history: Iterable[Session],
        reference_date: Optional[datetime] = None
    ) -> Dict[str, RBTClientHistory]:
        """History per caregiver who has worked with the client"""
        history = list(history)
        rbt_ids = list(dict.fromkeys(s.rbt_id for s in history if s.client_id == client_id))
        return {
            rbt_id: self.build_history(rbt_id, client_id, history, reference_date)
            for rbt_id in rbt_ids
        }

    def generate_continuity_metrics(
        self,
        client_id: str,
        history: Iterable[Session],
        team_members: Sequence[str] = (),
        reference_date: Optional[datetime] = None
    ) -> ContinuityMetrics:
        """Client-level continuity summary across the caregivers who served them"""
        reference_date = reference_date or self.clock.now()
        history = list(history)
        sessions = sorted(
            (
                s for s in history
                if s.client_id == client_id
                and s.status in CONTINUITY_STATUSES
                and s.start_time <= reference_date
            ),
            key=lambda s: s.start_time
        )

        scores = [self.score(rbt_id, client_id, history, reference_date) for rbt_id in team_members]
        average = sum(s.score for s in scores) / len(scores) if scores else 0.0

        if not sessions:
            return ContinuityMetrics(
                client_id=client_id,
                average_continuity_score=round_to(average),
                rbt_scores=scores,
            )

        counts = Counter(s.rbt_id for s in sessions)
        primary_rbt_id, primary_count = counts.most_common(1)[0]

        return ContinuityMetrics(
            client_id=client_id,
            total_sessions=len(sessions),
            unique_rbts=len(counts),
            primary_rbt_id=primary_rbt_id,
            primary_rbt_share=round_to(primary_count / len(sessions) * 100),
            average_continuity_score=round_to(average),
            continuity_trend=self._continuity_trend(sessions),
            rbt_scores=scores,
        )

    @staticmethod
    def _primary_share(sessions: Sequence[Session]) -> float:
        if not sessions:
            return 0.0
        counts = Counter(s.rbt_id for s in sessions)
        return max(counts.values()) / len(sessions) * 100

    def _continuity_trend(self, sessions: Sequence[Session]) -> ContinuityTrend:
        if len(sessions) < TREND_MIN_SESSIONS:
            return ContinuityTrend.STABLE

        midpoint = len(sessions) // 2
        first_half, second_half = sessions[:midpoint], sessions[midpoint:]
        first_rbts = len({s.rbt_id for s in first_half})
        second_rbts = len({s.rbt_id for s in second_half})
        first_share = self._primary_share(first_half)
        second_share = self._primary_share(second_half)

        if second_share > first_share + TREND_PRIMARY_SHARE_BAND or second_rbts < first_rbts:
            return ContinuityTrend.IMPROVING
        if second_share < first_share - TREND_PRIMARY_SHARE_BAND or second_rbts > first_rbts:
            return ContinuityTrend.DECLINING
        return ContinuityTrend.STABLE


class AssignmentSelector:
    """Chooses the caregiver for a session from the available candidates"""

    def __init__(self, scorer: ContinuityScorer):
        self.scorer = scorer

    def select_optimal_rbt(
        self,
        candidates: Sequence[str],
        client_id: str,
        history: Iterable[Session],
        team: Optional[Team] = None,
        reference_date: Optional[datetime] = None
    ) -> RBTSelectionResult:
        """
        Select a caregiver for the client.

        The team's primary caregiver wins whenever it is a candidate. A lone
        candidate is taken as is. Otherwise the highest continuity score wins,
        ties going to the earlier candidate.
        """
        candidates = list(dict.fromkeys(candidates))
        if not candidates:
            raise ValidationError(
                "No candidate caregivers available for selection",
                field="candidates",
                value=[],
            )

        history = list(history)
        scores = {
            rbt_id: self.scorer.score(rbt_id, client_id, history, reference_date).score
            for rbt_id in candidates
        }
        ranked = sorted(candidates, key=lambda rbt_id: -scores[rbt_id])

        if team is not None and team.primary_rbt_id in scores:
            selected = team.primary_rbt_id
            reason = PRIMARY_REASON
        elif len(candidates) == 1:
            selected = candidates[0]
            reason = ONLY_CANDIDATE_REASON
        else:
            selected = ranked[0]
            reason = EXPERIENCE_REASON

        alternatives = [
            RBTSelectionAlternative(
                rbt_id=rbt_id,
                continuity_score=scores[rbt_id],
                reason=self._alternative_reason(scores[rbt_id], scores[selected]),
            )
            for rbt_id in ranked if rbt_id != selected
        ]

        logger.debug(f"Selected caregiver {selected} for client {client_id}: {reason}")
        return RBTSelectionResult(
            selected_rbt_id=selected,
            continuity_score=scores[selected],
            selection_reason=reason,
            alternatives=alternatives,
        )

    @staticmethod
    def _alternative_reason(score: float, selected_score: float) -> str:
        if score == 0:
            return "No previous sessions with client"
        if score > selected_score:
            return "Higher continuity but not the primary caregiver"
        if score == selected_score:
            return "Equal continuity score"
        return "Lower continuity score"


class ContinuityLookup:
    """Continuity scores read from the session store, optionally through a cache"""

    def __init__(
        self,
        sessions: SessionStore,
        scorer: ContinuityScorer,
        cache: Optional[ContinuityCache] = None
    ):
        self.sessions = sessions
        self.scorer = scorer
        self.cache = cache

    async def score(self, rbt_id: str, client_id: str, reference_date: datetime) -> ContinuityScore:
        async def compute() -> ContinuityScore:
            history = await self.sessions.find_by_client_id(client_id)
            return self.scorer.score(rbt_id, client_id, history, reference_date)

        if self.cache is None:
            return await compute()
        # Cache entries are keyed at minute resolution
        cache_date = reference_date.replace(second=0, microsecond=0)
        return await self.cache.get_or_compute(client_id, rbt_id, cache_date, compute)
