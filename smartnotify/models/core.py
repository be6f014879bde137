"""
Core data models for the notification decision engine.

Documents persisted to OpenSearch are produced by the ``to_document`` methods
and read back with ``from_document``; timestamps travel as ISO-8601 strings.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..utils.timestamp_utils import from_iso, to_iso, utc_now


class Priority(str, Enum):
    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'


class FallbackStrategy(str, Enum):
    """What to do once a user's hourly inference budget is spent."""
    SIMPLE_RULES = 'simple-rules'
    NOTIFY_ALL = 'notify-all'
    SUPPRESS_ALL = 'suppress-all'


class FeedbackValue(str, Enum):
    HELPFUL = 'helpful'
    NOT_HELPFUL = 'not_helpful'


class NotificationRate(str, Enum):
    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'


class Verdict(str, Enum):
    """Heuristic triage result."""
    DEFINITELY_NOTIFY = 'definitely-notify'
    DEFINITELY_SKIP = 'definitely-skip'
    NEEDS_INFERENCE = 'needs-inference'


class AnalysisOutcome(str, Enum):
    """How a decision was reached."""
    CACHED = 'cached'
    HEURISTIC = 'heuristic'
    INFERRED = 'inferred'
    FALLBACK_HEURISTIC = 'fallback_heuristic'
    SUPPRESSED = 'suppressed'


class MonitorState(str, Enum):
    IDLE = 'idle'
    ACCUMULATING = 'accumulating'
    PAUSE_TRIGGERED = 'pause_triggered'
    THRESHOLD_TRIGGERED = 'threshold_triggered'
    DEBOUNCED = 'debounced'


class Presentation(str, Enum):
    """How a delivered notification is shown on the device."""
    ALERT = 'alert'
    SILENT = 'silent'
    BADGE = 'badge'


@dataclass(frozen=True)
class Message:
    """A chat message as provided by the message store."""
    message_id: str
    conversation_id: str
    sender_id: str
    sender_name: str
    text: str
    created_at: datetime
    read_by: Tuple[str, ...] = ()
    is_bot: bool = False


@dataclass
class Conversation:
    conversation_id: str
    participant_ids: List[str]
    is_group: bool = False
    name: Optional[str] = None


@dataclass
class UserIdentity:
    """Display identity used for mention and direct-question matching."""
    user_id: str
    display_name: str
    handle: Optional[str] = None


@dataclass
class ConversationActivityState:
    """Activity tracked for one (user, conversation) pair; lives only in memory."""
    conversation_id: str
    message_count_in_window: int = 0
    window_start_time: Optional[datetime] = None
    last_message_time: Optional[datetime] = None
    last_analysis_time: Optional[datetime] = None
    is_user_viewing: bool = False
    pending_messages: int = 0
    state: MonitorState = MonitorState.IDLE


@dataclass(frozen=True)
class MessageEmbedding:
    message_id: str
    conversation_id: str
    vector: Tuple[float, ...]
    created_at: datetime

    def to_document(self, text: str = '') -> Dict[str, Any]:
        return {
            'message_id': self.message_id,
            'conversation_id': self.conversation_id,
            'text': text,
            'embedding': list(self.vector),
            'embedded_at': to_iso(self.created_at),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'MessageEmbedding':
        return cls(message_id=doc['message_id'],
                   conversation_id=doc['conversation_id'],
                   vector=tuple(doc['embedding']),
                   created_at=from_iso(doc['embedded_at']))


@dataclass(frozen=True)
class NotificationDecision:
    """Output of one analysis run. Never carries text when it does not notify."""
    should_notify: bool
    reason: str
    priority: Priority
    source_conversation_id: str
    notification_text: Optional[str] = None
    source_message_ids: Tuple[str, ...] = ()
    generated_at: datetime = field(default_factory=utc_now)
    cache_key: Optional[str] = None
    user_id: Optional[str] = None
    decision_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if not self.should_notify and self.notification_text:
            raise ValueError('A decision that does not notify cannot carry notification text')

    def to_document(self) -> Dict[str, Any]:
        return {
            'decision_id': self.decision_id,
            'user_id': self.user_id,
            'should_notify': self.should_notify,
            'reason': self.reason,
            'notification_text': self.notification_text,
            'priority': self.priority.value,
            'conversation_id': self.source_conversation_id,
            'source_message_ids': list(self.source_message_ids),
            'generated_at': to_iso(self.generated_at),
            'cache_key': self.cache_key,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'NotificationDecision':
        return cls(should_notify=bool(doc['should_notify']),
                   reason=doc['reason'],
                   priority=Priority(doc['priority']),
                   source_conversation_id=doc['conversation_id'],
                   notification_text=doc.get('notification_text'),
                   source_message_ids=tuple(doc.get('source_message_ids') or ()),
                   generated_at=from_iso(doc['generated_at']),
                   cache_key=doc.get('cache_key'),
                   user_id=doc.get('user_id'),
                   decision_id=doc['decision_id'])


DEFAULT_PRIORITY_KEYWORDS = ['urgent', 'ASAP', 'production down', 'blocker', 'emergency']


@dataclass
class QuietHours:
    start: str = '22:00'
    end: str = '08:00'
    enabled: bool = True


@dataclass
class UserNotificationPreferences:
    user_id: str
    enabled: bool = True
    pause_threshold_seconds: int = 120
    message_count_threshold: int = 20
    priority_keywords: List[str] = field(default_factory=lambda: list(DEFAULT_PRIORITY_KEYWORDS))
    quiet_hours: QuietHours = field(default_factory=QuietHours)
    timezone: str = 'America/Los_Angeles'
    max_analyses_per_hour: int = 10
    fallback_strategy: FallbackStrategy = FallbackStrategy.SIMPLE_RULES
    version: int = 0

    def to_document(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'enabled': self.enabled,
            'pause_threshold_seconds': self.pause_threshold_seconds,
            'message_count_threshold': self.message_count_threshold,
            'priority_keywords': list(self.priority_keywords),
            'quiet_hours': {
                'start': self.quiet_hours.start,
                'end': self.quiet_hours.end,
                'enabled': self.quiet_hours.enabled
            },
            'timezone': self.timezone,
            'max_analyses_per_hour': self.max_analyses_per_hour,
            'fallback_strategy': self.fallback_strategy.value,
            'version': self.version,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'UserNotificationPreferences':
        quiet = doc.get('quiet_hours') or {}
        return cls(user_id=doc['user_id'],
                   enabled=doc.get('enabled', True),
                   pause_threshold_seconds=int(doc.get('pause_threshold_seconds', 120)),
                   message_count_threshold=int(doc.get('message_count_threshold', 20)),
                   priority_keywords=list(doc.get('priority_keywords', DEFAULT_PRIORITY_KEYWORDS)),
                   quiet_hours=QuietHours(start=quiet.get('start', '22:00'),
                                          end=quiet.get('end', '08:00'),
                                          enabled=quiet.get('enabled', True)),
                   timezone=doc.get('timezone', 'America/Los_Angeles'),
                   max_analyses_per_hour=int(doc.get('max_analyses_per_hour', 10)),
                   fallback_strategy=FallbackStrategy(doc.get('fallback_strategy', 'simple-rules')),
                   version=int(doc.get('version', 0)))


@dataclass(frozen=True)
class UserNotificationProfile:
    """Learned per-user profile. Written only by the preference learner."""
    user_id: str
    preferred_notification_rate: NotificationRate = NotificationRate.MEDIUM
    learned_keywords: Tuple[str, ...] = ()
    suppressed_topics: Tuple[str, ...] = ()
    accuracy: float = 0.0
    total_feedback: int = 0
    updated_at: Optional[datetime] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'preferred_notification_rate': self.preferred_notification_rate.value,
            'learned_keywords': list(self.learned_keywords),
            'suppressed_topics': list(self.suppressed_topics),
            'accuracy': self.accuracy,
            'total_feedback': self.total_feedback,
            'updated_at': to_iso(self.updated_at),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'UserNotificationProfile':
        return cls(user_id=doc['user_id'],
                   preferred_notification_rate=NotificationRate(doc.get('preferred_notification_rate', 'medium')),
                   learned_keywords=tuple(doc.get('learned_keywords') or ()),
                   suppressed_topics=tuple(doc.get('suppressed_topics') or ()),
                   accuracy=float(doc.get('accuracy', 0.0)),
                   total_feedback=int(doc.get('total_feedback', 0)),
                   updated_at=from_iso(doc.get('updated_at')))


@dataclass(frozen=True)
class FeedbackRecord:
    """Append-only user verdict on a delivered decision."""
    user_id: str
    decision: NotificationDecision
    feedback: FeedbackValue
    timestamp: datetime = field(default_factory=utc_now)
    source_excerpt: str = ''

    def to_document(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'decision_id': self.decision.decision_id,
            'decision': self.decision.to_document(),
            'feedback': self.feedback.value,
            'recorded_at': to_iso(self.timestamp),
            'source_excerpt': self.source_excerpt,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'FeedbackRecord':
        return cls(user_id=doc['user_id'],
                   decision=NotificationDecision.from_document(doc['decision']),
                   feedback=FeedbackValue(doc['feedback']),
                   timestamp=from_iso(doc['recorded_at']),
                   source_excerpt=doc.get('source_excerpt', ''))


@dataclass
class DecisionLogEntry:
    decision: NotificationDecision
    outcome: AnalysisOutcome
    was_delivered: bool = False
    presentation: Optional[Presentation] = None
    suppressed_by: Optional[str] = None
    source_excerpt: str = ''

    def to_document(self) -> Dict[str, Any]:
        doc = self.decision.to_document()
        doc.update({
            'outcome': self.outcome.value,
            'was_delivered': self.was_delivered,
            'presentation': self.presentation.value if self.presentation else None,
            'suppressed_by': self.suppressed_by,
            'source_excerpt': self.source_excerpt,
        })
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'DecisionLogEntry':
        return cls(decision=NotificationDecision.from_document(doc),
                   outcome=AnalysisOutcome(doc['outcome']),
                   was_delivered=bool(doc.get('was_delivered', False)),
                   presentation=Presentation(doc['presentation']) if doc.get('presentation') else None,
                   suppressed_by=doc.get('suppressed_by'),
                   source_excerpt=doc.get('source_excerpt', ''))


@dataclass(frozen=True)
class RelatedMessage:
    message: Message
    score: float


@dataclass
class RetrievedContext:
    """Bounded input assembled for one inference call."""
    unread_messages: List[Message]
    preferences: UserNotificationPreferences
    profile: UserNotificationProfile
    recent_activity: List[Message] = field(default_factory=list)
    related_history: List[RelatedMessage] = field(default_factory=list)
    active_conversation_ids: List[str] = field(default_factory=list)
    degraded: bool = False


@dataclass
class DeliveryOutcome:
    delivered: bool
    presentation: Optional[Presentation] = None
    suppressed_by: Optional[str] = None
    title: Optional[str] = None
    body: Optional[str] = None


@dataclass
class AnalysisResult:
    """Result of ``analyze_conversation_for_notification``; callers branch on ``outcome``."""
    outcome: AnalysisOutcome
    decision: NotificationDecision
    delivery: Optional[DeliveryOutcome] = None
    messages_since_cache: Optional[int] = None
    degraded_context: bool = False


@dataclass
class NotificationAnalytics:
    """Feedback summary for one user over a trailing window."""
    user_id: str
    period_days: int
    total_feedback: int = 0
    helpful_count: int = 0
    not_helpful_count: int = 0
    accuracy: float = 0.0
    common_false_positives: List[Tuple[str, int]] = field(default_factory=list)

    def to_document(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'period_days': self.period_days,
            'total_feedback': self.total_feedback,
            'helpful_count': self.helpful_count,
            'not_helpful_count': self.not_helpful_count,
            'accuracy': self.accuracy,
            'common_false_positives': [{'reason': r, 'count': c} for r, c in self.common_false_positives],
        }
