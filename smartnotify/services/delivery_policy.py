"""
Post-decision delivery gates and the notification transport boundary.

Gates run in order: active viewer, quiet hours, then priority to presentation
mapping. The hourly inference budget is enforced earlier, before inference is
consulted, through RateLimiter and ``rate_limited_decision``.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from ..models.core import (AnalysisOutcome, Conversation, DeliveryOutcome, FallbackStrategy, Message,
                           NotificationDecision, Presentation, Priority, UserIdentity, UserNotificationPreferences,
                           UserNotificationProfile)
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import in_time_window, utc_now
from .heuristics import fallback_decision, summarize_message

logger = get_logger(__name__)

PRESENTATION = {Priority.HIGH: Presentation.ALERT, Priority.MEDIUM: Presentation.SILENT, Priority.LOW: Presentation.BADGE}

SUPPRESSED_ACTIVE_VIEWER = 'active_viewer'
SUPPRESSED_QUIET_HOURS = 'quiet_hours'
SUPPRESSED_TRANSPORT_ERROR = 'transport_error'


class NotificationTransportError(Exception):
    """Custom exception for notification transport errors."""
    pass


class NotificationTransport(ABC):
    """Hands a notification to the push channel. Delivery guarantees belong to the transport."""

    @abstractmethod
    def deliver(self, user_id: str, title: str, body: str, priority: Priority, deep_link_conversation_id: str,
                deep_link_message_id: Optional[str]) -> None:
        ...


class LoggingTransport(NotificationTransport):
    """Transport that only logs; used when no push channel is configured."""

    def deliver(self, user_id: str, title: str, body: str, priority: Priority, deep_link_conversation_id: str,
                deep_link_message_id: Optional[str]) -> None:
        logger.info(f'[{PRESENTATION[priority].value}] to {user_id}: {title} - {body} '
                    f'(conversation {deep_link_conversation_id}, message {deep_link_message_id})')


class RateLimiter:
    """Per-user count of inference invocations in the current clock hour."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock
        self._counts: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def _bucket(self) -> str:
        return self.clock().strftime('%Y-%m-%d-%H')

    def try_acquire(self, user_id: str, limit: int) -> bool:
        """Count one invocation if the user is under the limit for this hour."""
        bucket = self._bucket()
        with self._lock:
            # Older hours can never be consulted again
            for key in [k for k in self._counts if k[1] != bucket]:
                del self._counts[key]
            used = self._counts.get((user_id, bucket), 0)
            if used >= limit:
                return False
            self._counts[(user_id, bucket)] = used + 1
            return True

    def usage(self, user_id: str) -> int:
        with self._lock:
            return self._counts.get((user_id, self._bucket()), 0)


def rate_limited_decision(messages: List[Message], identity: UserIdentity, preferences: UserNotificationPreferences,
                          profile: UserNotificationProfile, conversation_id: str, cache_key: Optional[str],
                          max_length: int = 100) -> Tuple[NotificationDecision, AnalysisOutcome]:
    """
    Decide without inference once the hourly budget is spent.

    Returns:
        Tuple of (decision, outcome) following the user's fallback strategy
    """
    strategy = preferences.fallback_strategy
    ids = tuple(m.message_id for m in messages)
    logger.warning(f'Hourly analysis limit reached for {identity.user_id}; applying {strategy.value}')

    if strategy == FallbackStrategy.SUPPRESS_ALL:
        decision = NotificationDecision(should_notify=False,
                                        reason='Hourly analysis limit reached; notifications suppressed',
                                        priority=Priority.LOW,
                                        source_conversation_id=conversation_id,
                                        source_message_ids=ids,
                                        cache_key=cache_key,
                                        user_id=identity.user_id)
        return decision, AnalysisOutcome.SUPPRESSED

    if strategy == FallbackStrategy.NOTIFY_ALL:
        decision = NotificationDecision(should_notify=True,
                                        reason='Hourly analysis limit reached; notifying for all messages',
                                        priority=Priority.MEDIUM,
                                        source_conversation_id=conversation_id,
                                        notification_text=summarize_message(messages[-1], max_length),
                                        source_message_ids=ids,
                                        cache_key=cache_key,
                                        user_id=identity.user_id)
        return decision, AnalysisOutcome.FALLBACK_HEURISTIC

    decision = fallback_decision(messages,
                                 identity,
                                 preferences,
                                 profile,
                                 conversation_id,
                                 cache_key=cache_key,
                                 cause='hourly analysis limit reached',
                                 max_length=max_length)
    return decision, AnalysisOutcome.FALLBACK_HEURISTIC


def notification_title(sender_name: str, conversation: Optional[Conversation]) -> str:
    if conversation is not None and conversation.is_group and conversation.name:
        return f'{sender_name} in {conversation.name}'
    return sender_name


class DeliveryPolicy:
    """Applies delivery gates to a decision and hands survivors to the transport."""

    def __init__(self,
                 transport: NotificationTransport,
                 is_viewing: Callable[[str, str], bool],
                 clock: Callable[[], datetime] = utc_now):
        """
        Initialize the policy.

        Args:
            transport: Push channel
            is_viewing: ``(user_id, conversation_id) -> bool`` owned by the activity monitor
            clock: Callable returning the current aware datetime
        """
        self.transport = transport
        self.is_viewing = is_viewing
        self.clock = clock

    def suppression_reason(self, decision: NotificationDecision, preferences: UserNotificationPreferences) -> Optional[str]:
        """Return why a notifying decision must not be delivered, or None."""
        if self.is_viewing(decision.user_id, decision.source_conversation_id):
            return SUPPRESSED_ACTIVE_VIEWER

        quiet = preferences.quiet_hours
        if quiet.enabled and decision.priority != Priority.HIGH and self._in_quiet_hours(preferences):
            return SUPPRESSED_QUIET_HOURS

        return None

    def _in_quiet_hours(self, preferences: UserNotificationPreferences) -> bool:
        quiet = preferences.quiet_hours
        try:
            return in_time_window(self.clock(), quiet.start, quiet.end, preferences.timezone)
        except ValueError as e:
            logger.warning(f'Ignoring unusable quiet hours for {preferences.user_id}: {e}')
            return False

    def apply(self, decision: NotificationDecision, preferences: UserNotificationPreferences,
              conversation: Optional[Conversation], sender_name: str) -> DeliveryOutcome:
        """
        Gate and deliver a decision.

        Args:
            decision: Decision to deliver
            preferences: Recipient preferences
            conversation: Source conversation, used for the title
            sender_name: Sender of the newest source message

        Returns:
            DeliveryOutcome describing what happened
        """
        if not decision.should_notify:
            return DeliveryOutcome(delivered=False)

        reason = self.suppression_reason(decision, preferences)
        if reason:
            logger.info(f'Suppressed decision {decision.decision_id} for {decision.user_id}: {reason}')
            return DeliveryOutcome(delivered=False, suppressed_by=reason)

        presentation = PRESENTATION[decision.priority]
        title = notification_title(sender_name, conversation)
        body = decision.notification_text or ''
        message_id = decision.source_message_ids[-1] if decision.source_message_ids else None

        try:
            self.transport.deliver(decision.user_id, title, body, decision.priority, decision.source_conversation_id,
                                   message_id)
        except NotificationTransportError as e:
            logger.error(f'Transport failed for decision {decision.decision_id}: {e}')
            return DeliveryOutcome(delivered=False,
                                   presentation=presentation,
                                   suppressed_by=SUPPRESSED_TRANSPORT_ERROR,
                                   title=title,
                                   body=body)

        return DeliveryOutcome(delivered=True, presentation=presentation, title=title, body=body)
