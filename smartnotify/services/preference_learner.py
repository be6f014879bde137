"""
Feedback-driven preference learning.

``compute_profile`` is a pure function of a feedback snapshot, so the learner
is idempotent and testable without the scheduler. PreferenceLearner reads the
snapshot and writes the profile; LearnerScheduler runs it periodically.
"""

import re
import threading
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set

from ..models.core import FeedbackRecord, FeedbackValue, NotificationRate, UserNotificationProfile
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now
from .stores import DecisionLog, PreferencesStore

logger = get_logger(__name__)

STOP_WORDS = frozenset({
    'the', 'a', 'an', 'and', 'or', 'but', 'is', 'are', 'was', 'were', 'to', 'from', 'in', 'on', 'at', 'for', 'with',
    'of', 'by', 'this', 'that', 'it', 'you', 'your', 'has', 'have', 'had', 'be', 'been', 'message', 'messages',
    'notification', 'notified', 'notify', 'about', 'just', 'will', 'what', 'when', 'there', 'they', 'them', 'then',
    'than', 'some', 'would', 'could', 'should', 'anyone'
})

MAX_TERMS = 10
TREND_DELTA = 0.2
TREND_MIN_RECORDS = 4

_RATE_ORDER = [NotificationRate.LOW, NotificationRate.MEDIUM, NotificationRate.HIGH]
_SENDER_PREFIX = re.compile(r'^[^:]{1,40}:\s+')


def extract_terms(text: str) -> List[str]:
    """Lower-cased alphanumeric words longer than three characters, stop words removed."""
    words = re.sub(r'[^a-z0-9\s]', ' ', (text or '').lower()).split()
    return [w for w in words if len(w) > 3 and w not in STOP_WORDS]


def record_terms(record: FeedbackRecord) -> Set[str]:
    """Distinct terms a feedback record is about."""
    text = _SENDER_PREFIX.sub('', record.decision.notification_text or '')
    return set(extract_terms(text)) | set(extract_terms(record.source_excerpt))


def _accuracy(records: List[FeedbackRecord]) -> float:
    if not records:
        return 0.0
    return sum(1 for r in records if r.feedback == FeedbackValue.HELPFUL) / len(records)


def notification_rate(records: List[FeedbackRecord]) -> NotificationRate:
    """
    Preferred notification rate from the helpful ratio and its trend.

    The base rate comes from overall accuracy. It moves one step when the newer
    half of the (chronological) feedback is markedly more or less accurate than
    the older half.
    """
    accuracy = _accuracy(records)
    if accuracy >= 0.8:
        rate = NotificationRate.HIGH
    elif accuracy >= 0.5:
        rate = NotificationRate.MEDIUM
    else:
        rate = NotificationRate.LOW

    if len(records) < TREND_MIN_RECORDS:
        return rate

    half = len(records) // 2
    delta = _accuracy(records[half:]) - _accuracy(records[:half])
    index = _RATE_ORDER.index(rate)
    if delta <= -TREND_DELTA:
        index = max(0, index - 1)
    elif delta >= TREND_DELTA:
        index = min(len(_RATE_ORDER) - 1, index + 1)
    return _RATE_ORDER[index]


def _top_terms(counts: Counter, min_occurrences: int) -> List[str]:
    ranked = sorted((t for t, c in counts.items() if c >= min_occurrences), key=lambda t: (-counts[t], t))
    return ranked[:MAX_TERMS]


def compute_profile(user_id: str,
                    records: Iterable[FeedbackRecord],
                    min_occurrences: int = 2,
                    now: Optional[datetime] = None) -> UserNotificationProfile:
    """
    Derive a user's notification profile from their feedback.

    Args:
        user_id: Profile owner
        records: Feedback records
        min_occurrences: Number of records a term must appear in to be learned
        now: Timestamp for ``updated_at``

    Returns:
        UserNotificationProfile
    """
    records = sorted(records, key=lambda r: r.timestamp)
    helpful_terms: Counter = Counter()
    unhelpful_terms: Counter = Counter()
    for record in records:
        target = helpful_terms if record.feedback == FeedbackValue.HELPFUL else unhelpful_terms
        target.update(record_terms(record))

    # A term is learned on one side only; ties are ambiguous and dropped
    for term in set(helpful_terms) & set(unhelpful_terms):
        if helpful_terms[term] > unhelpful_terms[term]:
            del unhelpful_terms[term]
        elif unhelpful_terms[term] > helpful_terms[term]:
            del helpful_terms[term]
        else:
            del helpful_terms[term]
            del unhelpful_terms[term]

    return UserNotificationProfile(user_id=user_id,
                                   preferred_notification_rate=notification_rate(records),
                                   learned_keywords=tuple(_top_terms(helpful_terms, min_occurrences)),
                                   suppressed_topics=tuple(_top_terms(unhelpful_terms, min_occurrences)),
                                   accuracy=round(_accuracy(records), 2),
                                   total_feedback=len(records),
                                   updated_at=now or utc_now())


class PreferenceLearner:
    """Recomputes and stores profiles from the decision log's feedback."""

    def __init__(self,
                 decision_log: DecisionLog,
                 preferences_store: PreferencesStore,
                 min_occurrences: int = 2,
                 clock: Callable[[], datetime] = utc_now):
        self.decision_log = decision_log
        self.preferences_store = preferences_store
        self.min_occurrences = min_occurrences
        self.clock = clock

    def run_for_user(self, user_id: str) -> UserNotificationProfile:
        """Recompute one user's profile from all of their feedback."""
        records = self.decision_log.feedback_for_user(user_id)
        profile = compute_profile(user_id, records, self.min_occurrences, self.clock())
        self.preferences_store.save_profile(profile)
        logger.info(f'Updated notification profile for {user_id}: accuracy={profile.accuracy} '
                    f'rate={profile.preferred_notification_rate.value} learned={list(profile.learned_keywords)} '
                    f'suppressed={list(profile.suppressed_topics)}')
        return profile

    def run_all(self) -> Dict[str, UserNotificationProfile]:
        """Recompute profiles for every user with feedback; one failure does not stop the rest."""
        profiles = {}
        for user_id in self.decision_log.users_with_feedback():
            try:
                profiles[user_id] = self.run_for_user(user_id)
            except Exception as e:
                logger.error(f'Failed to update notification profile for {user_id}: {e}')
        logger.info(f'Preference learning run complete: {len(profiles)} profiles updated')
        return profiles


class LearnerScheduler:
    """Background thread running the learner on a fixed interval."""

    def __init__(self, learner: PreferenceLearner, interval: timedelta = timedelta(days=7)):
        self.learner = learner
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval.total_seconds()):
            self.learner.run_all()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='preference-learner', daemon=True)
        self._thread.start()
        logger.info(f'Preference learner scheduled every {self.interval}')

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
