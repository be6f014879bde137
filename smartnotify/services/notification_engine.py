"""
Notification engine: wires monitoring, triage, retrieval, inference, caching,
delivery and learning into one service.
"""

from collections import Counter
from dataclasses import fields, replace
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

from ..models.core import (AnalysisOutcome, AnalysisResult, Conversation, DecisionLogEntry, FallbackStrategy,
                           FeedbackRecord, FeedbackValue, Message, NotificationAnalytics, NotificationDecision,
                           Priority, QuietHours, UserIdentity, UserNotificationPreferences, UserNotificationProfile,
                           Verdict)
from ..utils.config import AppConfig, NotificationConfig
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError
from ..utils.timestamp_utils import load_timezone, parse_clock, utc_now
from .activity_monitor import ActivityMonitor, ActivityMonitorHub
from .context_retriever import ContextRetriever
from .decision_cache import DecisionCache, build_cache_key
from .decision_maker import InferenceDecisionMaker
from .delivery_policy import DeliveryPolicy, LoggingTransport, NotificationTransport, RateLimiter, rate_limited_decision
from .dispatcher import AnalysisDispatcher
from .embedding_store import EmbeddingStore
from .heuristics import classify, decision_from_heuristic, truncate_text
from .preference_learner import LearnerScheduler, PreferenceLearner
from .stores import DecisionLog, InMemoryMessageStore, MessageStore, PreferencesStore

logger = get_logger(__name__)

EXCERPT_LENGTH = 500
_READ_ONLY_PREFERENCES = {'user_id', 'version'}


class NotificationEngineError(Exception):
    """Custom exception for notification engine errors."""
    pass


class PermissionDeniedError(NotificationEngineError):
    """Custom exception for callers acting on conversations or decisions they do not own."""
    pass


class ConversationNotFoundError(NotificationEngineError):
    """Custom exception for unknown conversations."""
    pass


class DecisionNotFoundError(NotificationEngineError):
    """Custom exception for feedback on unknown decisions."""
    pass


def _require_int(name: str, value: Any, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f'{name} must be an integer, got {value!r}')
    if value < minimum:
        raise ValueError(f'{name} must be at least {minimum}, got {value}')
    return value


def _require_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f'{name} must be true or false, got {value!r}')
    return value


def _quiet_hours(value: Any) -> QuietHours:
    if isinstance(value, dict):
        try:
            value = QuietHours(**value)
        except TypeError as e:
            raise ValueError(f'Invalid quiet_hours: {e}') from e
    if not isinstance(value, QuietHours):
        raise ValueError(f'quiet_hours must be an object with start, end and enabled, got {value!r}')

    parse_clock(value.start)
    parse_clock(value.end)
    _require_bool('quiet_hours.enabled', value.enabled)
    return value


def _validate_preference(name: str, value: Any) -> Any:
    """Check one preference change and normalize it to the stored type."""
    if name == 'quiet_hours':
        return _quiet_hours(value)
    if name == 'timezone':
        load_timezone(value)
        return value
    if name == 'enabled':
        return _require_bool(name, value)
    if name in ('pause_threshold_seconds', 'message_count_threshold'):
        return _require_int(name, value, 1)
    if name == 'max_analyses_per_hour':
        return _require_int(name, value, 0)
    if name == 'fallback_strategy':
        return FallbackStrategy(value)
    if name == 'priority_keywords':
        if isinstance(value, str) or not isinstance(value, (list, tuple)):
            raise ValueError(f'priority_keywords must be a list of strings, got {value!r}')
        if not all(isinstance(k, str) for k in value):
            raise ValueError('priority_keywords must only contain strings')
        return list(value)
    return value


class NotificationEngine:
    """Decides whether, what and how to notify each user about their conversations."""

    def __init__(self,
                 message_store: MessageStore,
                 preferences_store: PreferencesStore,
                 decision_log: DecisionLog,
                 decision_cache: DecisionCache,
                 embedding_store: EmbeddingStore,
                 llm,
                 settings: NotificationConfig,
                 transport: Optional[NotificationTransport] = None,
                 reranker=None,
                 llm_timeout_seconds: float = 10.0,
                 llm_temperature: float = 0.2,
                 clock=utc_now):
        """
        Initialize the engine.

        Args:
            message_store: Conversations, participants and messages (read only)
            preferences_store: Preferences and learned profiles
            decision_log: Decision audit log and feedback records
            decision_cache: Cache of previous decisions
            embedding_store: Message embeddings and similarity search
            llm: Inference backend exposing ``generate_response``
            settings: Notification tuning
            transport: Push channel (logs only when None)
            reranker: Optional reranker for retrieved history
            llm_timeout_seconds: Inference budget per analysis
            llm_temperature: Inference temperature
            clock: Callable returning the current aware datetime
        """
        self.message_store = message_store
        self.preferences_store = preferences_store
        self.decision_log = decision_log
        self.decision_cache = decision_cache
        self.settings = settings
        self.clock = clock

        self.retriever = ContextRetriever(message_store, embedding_store, settings, reranker=reranker, clock=clock)
        self.decision_maker = InferenceDecisionMaker(llm,
                                                     timeout_seconds=llm_timeout_seconds,
                                                     temperature=llm_temperature,
                                                     max_text_length=settings.notification_text_max_length,
                                                     clock=clock)
        self.rate_limiter = RateLimiter(clock=clock)
        self.dispatcher = AnalysisDispatcher(self._analyze_triggered, max_workers=settings.analysis_workers)
        self.monitors = ActivityMonitorHub(self._build_monitor, tick_seconds=settings.monitor_tick_seconds)
        self.delivery_policy = DeliveryPolicy(transport or LoggingTransport(), self.monitors.is_viewing, clock=clock)
        self.learner = PreferenceLearner(decision_log,
                                         preferences_store,
                                         min_occurrences=settings.learner_min_term_occurrences,
                                         clock=clock)
        self.learner_scheduler = LearnerScheduler(self.learner, timedelta(days=settings.learner_interval_days))

        logger.info('Initialized NotificationEngine')

    def _build_monitor(self, user_id: str) -> ActivityMonitor:
        return ActivityMonitor(user_id,
                               self.dispatcher.dispatch,
                               self.settings,
                               lambda: self.preferences_store.get_preferences(user_id),
                               clock=self.clock)

    def start(self) -> None:
        """Start the activity monitor thread and the learner schedule."""
        self.monitors.start()
        self.learner_scheduler.start()

    def shutdown(self, wait: bool = True) -> None:
        self.monitors.stop()
        self.learner_scheduler.stop()
        self.dispatcher.shutdown(wait=wait)
        self.retriever.close()
        self.decision_maker.close()
        logger.info('NotificationEngine shut down')

    # Message flow

    def ingest_message(self, message: Message) -> int:
        """
        Feed a new message to the monitors of every other participant.

        Returns:
            Number of monitors the message was queued for
        """
        conversation = self.message_store.get_conversation(message.conversation_id)
        if conversation is None:
            logger.warning(f'Ignoring message {message.message_id} for unknown conversation {message.conversation_id}')
            return 0

        recipients = [uid for uid in conversation.participant_ids if uid != message.sender_id]
        self.monitors.submit_message(recipients, message)
        return len(recipients)

    def set_viewing(self, user_id: str, conversation_id: str, viewing: bool) -> None:
        """Record that a user started or stopped viewing a conversation."""
        self.monitors.monitor_for(user_id).set_viewing(conversation_id, viewing)

    # Standalone registration, only available with the in-memory message store

    def _writable_store(self) -> InMemoryMessageStore:
        if not isinstance(self.message_store, InMemoryMessageStore):
            raise NotificationEngineError('Registration is only supported by the in-memory message store; '
                                          'the chat system owns conversations and users')
        return self.message_store

    def register_user(self, user_id: str, display_name: Optional[str] = None) -> UserIdentity:
        """Add or replace a user's identity."""
        identity = UserIdentity(user_id=user_id, display_name=display_name or user_id)
        self._writable_store().add_user(identity)
        logger.info(f'Registered user {user_id}')
        return identity

    def register_conversation(self,
                              conversation_id: str,
                              participant_ids: Iterable[str],
                              name: Optional[str] = None,
                              is_group: Optional[bool] = None) -> Conversation:
        """
        Add or replace a conversation.

        Args:
            conversation_id: Conversation identifier
            participant_ids: Users taking part; at least two
            name: Display name, used in group notification titles
            is_group: Defaults to True for more than two participants

        Raises:
            ValueError: If fewer than two distinct participants are given
        """
        participants = list(dict.fromkeys(participant_ids))
        if len(participants) < 2:
            raise ValueError(f'Conversation {conversation_id} needs at least two participants')

        conversation = Conversation(conversation_id=conversation_id,
                                    participant_ids=participants,
                                    name=name,
                                    is_group=len(participants) > 2 if is_group is None else is_group)
        self._writable_store().add_conversation(conversation)
        logger.info(f'Registered conversation {conversation_id} with {len(participants)} participants')
        return conversation

    def mark_conversation_read(self, conversation_id: str, user_id: str) -> int:
        """
        Mark a conversation read for a user and clear its activity state.

        Returns:
            Number of messages newly marked read

        Raises:
            ConversationNotFoundError: If the conversation does not exist
            PermissionDeniedError: If the user is not a participant
        """
        store = self._writable_store()
        self._authorize(conversation_id, user_id, None)
        marked = store.mark_read(conversation_id, user_id)
        self.monitors.monitor_for(user_id).reset_conversation(conversation_id)
        return marked

    def _analyze_triggered(self, conversation_id: str, user_id: str) -> Optional[AnalysisResult]:
        try:
            return self.analyze_conversation_for_notification(conversation_id, user_id)
        except NotificationEngineError as e:
            logger.warning(f'Triggered analysis of {conversation_id} for {user_id} rejected: {e}')
            return None

    # Analysis

    def _authorize(self, conversation_id: str, user_id: str, requesting_user_id: Optional[str]):
        if requesting_user_id is not None and requesting_user_id != user_id:
            raise PermissionDeniedError(f'{requesting_user_id} cannot analyze notifications for {user_id}')

        conversation = self.message_store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f'Conversation {conversation_id} not found')
        if user_id not in conversation.participant_ids:
            raise PermissionDeniedError(f'{user_id} is not a participant in {conversation_id}')
        return conversation

    def _no_notify(self, conversation_id: str, user_id: str, reason: str, unread: List[Message] = ()):
        return NotificationDecision(should_notify=False,
                                    reason=reason,
                                    priority=Priority.LOW,
                                    source_conversation_id=conversation_id,
                                    source_message_ids=tuple(m.message_id for m in unread),
                                    generated_at=self.clock(),
                                    user_id=user_id)

    def _cached(self, cache_key: str):
        try:
            return self.decision_cache.lookup(cache_key)
        except OpenSearchError as e:
            logger.warning(f'Decision cache read failed for {cache_key}; treating as miss: {e}')
            return None

    def _cache(self, decision: NotificationDecision, outcome: AnalysisOutcome) -> None:
        try:
            self.decision_cache.store(decision, outcome)
        except OpenSearchError as e:
            logger.warning(f'Decision cache write failed for {decision.cache_key}: {e}')

    def analyze_conversation_for_notification(self,
                                              conversation_id: str,
                                              user_id: str,
                                              requesting_user_id: Optional[str] = None,
                                              regenerate: bool = False) -> AnalysisResult:
        """
        Decide whether the user should be notified about a conversation's unread messages.

        Bypasses the activity monitor's trigger logic but still consults the
        cache, heuristics, rate limit and fallback rules. Backend failures are
        absorbed; only authorization problems raise.

        Args:
            conversation_id: Conversation to analyze
            user_id: Recipient
            requesting_user_id: Caller identity; must equal user_id when given
            regenerate: Skip the cache lookup and overwrite the cached entry

        Returns:
            AnalysisResult with the decision, how it was reached and what delivery did

        Raises:
            PermissionDeniedError: If the caller is not the user or the user is not a participant
            ConversationNotFoundError: If the conversation does not exist
        """
        conversation = self._authorize(conversation_id, user_id, requesting_user_id)
        identity = self.message_store.get_user(user_id) or UserIdentity(user_id=user_id, display_name=user_id)
        preferences = self.preferences_store.get_preferences(user_id)

        if not preferences.enabled:
            return AnalysisResult(AnalysisOutcome.SUPPRESSED,
                                  self._no_notify(conversation_id, user_id, 'Notifications disabled'))

        unread = self.retriever.fetch_unread_batch(conversation_id, user_id)
        if not unread:
            return AnalysisResult(AnalysisOutcome.HEURISTIC, self._no_notify(conversation_id, user_id,
                                                                             'No unread messages'))

        cache_key = build_cache_key(conversation_id, unread[-1].message_id, preferences.version)
        if not regenerate:
            hit = self._cached(cache_key)
            if hit is not None:
                logger.info(f'Cache hit for {conversation_id}/{user_id} ({hit.messages_since_cache} messages since)')
                return AnalysisResult(AnalysisOutcome.CACHED, hit.decision, messages_since_cache=hit.messages_since_cache)

        profile = self.preferences_store.get_profile(user_id)
        max_length = self.settings.notification_text_max_length
        degraded = False

        triage = classify(unread, identity, preferences, profile)
        if triage.verdict != Verdict.NEEDS_INFERENCE:
            decision = decision_from_heuristic(triage, unread, conversation_id, user_id, cache_key, max_length)
            outcome = AnalysisOutcome.HEURISTIC
            self._cache(decision, outcome)
        elif not self.rate_limiter.try_acquire(user_id, preferences.max_analyses_per_hour):
            decision, outcome = rate_limited_decision(unread, identity, preferences, profile, conversation_id,
                                                      cache_key, max_length)
        else:
            context = self.retriever.retrieve(user_id, conversation_id, unread, preferences, profile)
            degraded = context.degraded
            inference = self.decision_maker.decide(context, identity, conversation_id, cache_key)
            decision, outcome = inference.decision, inference.outcome
            # Fallback answers are retried on the next run instead of being pinned by the cache
            if outcome == AnalysisOutcome.INFERRED:
                self._cache(decision, outcome)

        entry = DecisionLogEntry(decision=decision,
                                 outcome=outcome,
                                 source_excerpt=truncate_text(' '.join(m.text for m in unread), EXCERPT_LENGTH))
        self._log(entry)

        delivery = self.delivery_policy.apply(decision, preferences, conversation, unread[-1].sender_name)
        if delivery.delivered or delivery.suppressed_by:
            entry.was_delivered = delivery.delivered
            entry.presentation = delivery.presentation
            entry.suppressed_by = delivery.suppressed_by
            self._log(entry, update=True)

        logger.info(f'Analysis of {conversation_id} for {user_id}: {outcome.value}, notify={decision.should_notify}, '
                    f'delivered={delivery.delivered}')
        return AnalysisResult(outcome, decision, delivery=delivery, degraded_context=degraded)

    def _log(self, entry: DecisionLogEntry, update: bool = False) -> None:
        try:
            if update:
                self.decision_log.update_delivery(entry)
            else:
                self.decision_log.record(entry)
        except OpenSearchError as e:
            logger.warning(f'Decision log write failed for {entry.decision.decision_id}: {e}')

    # Feedback and preferences

    def submit_feedback(self, decision_id: str, feedback: Union[str, FeedbackValue], user_id: str) -> FeedbackRecord:
        """
        Record a user's verdict on a decision.

        Args:
            decision_id: Decision being rated
            feedback: ``helpful`` or ``not_helpful``
            user_id: Caller; must own the decision

        Returns:
            The appended FeedbackRecord

        Raises:
            ValueError: If feedback is not a known value
            DecisionNotFoundError: If the decision is unknown
            PermissionDeniedError: If the decision belongs to another user
        """
        value = FeedbackValue(feedback)
        entry = self.decision_log.get(decision_id)
        if entry is None:
            raise DecisionNotFoundError(f'Decision {decision_id} not found')
        if entry.decision.user_id != user_id:
            raise PermissionDeniedError(f'Decision {decision_id} does not belong to {user_id}')

        record = FeedbackRecord(user_id=user_id,
                                decision=entry.decision,
                                feedback=value,
                                timestamp=self.clock(),
                                source_excerpt=entry.source_excerpt)
        self.decision_log.append_feedback(record)
        logger.info(f'Recorded {value.value} feedback from {user_id} on {decision_id}')
        return record

    def get_preferences(self, user_id: str) -> UserNotificationPreferences:
        return self.preferences_store.get_preferences(user_id)

    def update_preferences(self, user_id: str, changes: Dict[str, Any]) -> UserNotificationPreferences:
        """
        Apply changes to a user's preferences and save them with a new version.

        Args:
            user_id: User whose preferences change
            changes: Field name to new value; ``quiet_hours`` may be a dict

        Returns:
            The preferences as stored

        Raises:
            ValueError: If a field is unknown, read-only or has an invalid value
        """
        allowed = {f.name for f in fields(UserNotificationPreferences)} - _READ_ONLY_PREFERENCES
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f'Unknown or read-only preference fields: {sorted(unknown)}')

        validated = {name: _validate_preference(name, value) for name, value in changes.items()}
        current = self.preferences_store.get_preferences(user_id)
        saved = self.preferences_store.save_preferences(replace(current, **validated))
        self.monitors.refresh_preferences(user_id, saved)
        return saved

    def get_profile(self, user_id: str) -> UserNotificationProfile:
        return self.preferences_store.get_profile(user_id)

    def refresh_profile(self, user_id: str) -> UserNotificationProfile:
        """Run the preference learner for one user now."""
        return self.learner.run_for_user(user_id)

    def get_notification_analytics(self,
                                   user_id: str,
                                   requesting_user_id: Optional[str] = None,
                                   days: int = 30) -> NotificationAnalytics:
        """
        Summarize a user's feedback over the trailing window.

        Accuracy is the helpful share of feedback as a percentage. False
        positives are notifying decisions the user marked not helpful, grouped
        by decision reason.

        Args:
            user_id: User whose feedback is summarized
            requesting_user_id: Caller identity; must equal user_id when given
            days: Length of the window in days

        Returns:
            NotificationAnalytics for the window

        Raises:
            PermissionDeniedError: If the caller is not the user
            ValueError: If days is not positive
        """
        if requesting_user_id is not None and requesting_user_id != user_id:
            raise PermissionDeniedError(f'{requesting_user_id} cannot view notification analytics for {user_id}')
        if days <= 0:
            raise ValueError(f'days must be positive, got {days}')

        records = self.decision_log.feedback_for_user(user_id, since=self.clock() - timedelta(days=days))
        helpful = sum(1 for r in records if r.feedback == FeedbackValue.HELPFUL)
        false_positives = Counter(r.decision.reason for r in records
                                  if r.feedback == FeedbackValue.NOT_HELPFUL and r.decision.should_notify)

        return NotificationAnalytics(user_id=user_id,
                                     period_days=days,
                                     total_feedback=len(records),
                                     helpful_count=helpful,
                                     not_helpful_count=len(records) - helpful,
                                     accuracy=round(helpful / len(records) * 100, 2) if records else 0.0,
                                     common_false_positives=false_positives.most_common(5))


def build_default_engine(app_config: Optional[AppConfig] = None,
                         message_store: Optional[MessageStore] = None,
                         transport: Optional[NotificationTransport] = None,
                         clock=utc_now) -> NotificationEngine:
    """
    Build an engine backed by Amazon Bedrock and OpenSearch.

    Args:
        app_config: Configuration (global config if None)
        message_store: Chat system's message store (in-memory if None)
        transport: Push channel (logging only if None)
        clock: Callable returning the current aware datetime

    Returns:
        NotificationEngine
    """
    from ..utils.bedrock_embed import BedrockEmbed
    from ..utils.bedrock_llm import BedrockLLM
    from ..utils.bedrock_rerank import BedrockRerank
    from ..utils.opensearch_client import OpenSearchClient
    from .decision_cache import OpenSearchDecisionCache
    from .embedding_store import OpenSearchEmbeddingStore
    from .stores import InMemoryMessageStore, OpenSearchDecisionLog, OpenSearchPreferencesStore

    if app_config is None:
        from ..utils.config import config as app_config

    settings = app_config.notification
    opensearch = OpenSearchClient(app_config.opensearch)
    try:
        opensearch.ensure_indices()
    except OpenSearchError as e:
        logger.warning(f'Failed to create OpenSearch indices: {e}')

    message_store = message_store or InMemoryMessageStore()
    reranker = BedrockRerank(app_config.bedrock_rerank) if app_config.bedrock_rerank.enabled else None

    return NotificationEngine(message_store=message_store,
                              preferences_store=OpenSearchPreferencesStore(opensearch, settings),
                              decision_log=OpenSearchDecisionLog(opensearch),
                              decision_cache=OpenSearchDecisionCache(opensearch,
                                                                     message_store,
                                                                     ttl=timedelta(hours=settings.cache_ttl_hours),
                                                                     staleness_messages=settings.cache_staleness_messages,
                                                                     clock=clock),
                              embedding_store=OpenSearchEmbeddingStore(opensearch,
                                                                       BedrockEmbed(app_config.bedrock_embed),
                                                                       clock=clock),
                              llm=BedrockLLM(app_config.bedrock_llm),
                              settings=settings,
                              transport=transport,
                              reranker=reranker,
                              llm_timeout_seconds=app_config.bedrock_llm.timeout_seconds,
                              llm_temperature=app_config.bedrock_llm.temperature,
                              clock=clock)
