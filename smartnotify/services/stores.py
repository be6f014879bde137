"""
Persistence interfaces used by the engine, with in-memory and OpenSearch backends.

The message store belongs to the chat system and is only read here; the
in-memory version lets the engine run standalone. Preferences, profiles, the
decision log and feedback records are owned by the engine.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from ..models.core import (Conversation, DecisionLogEntry, FeedbackRecord, Message, UserIdentity,
                           UserNotificationPreferences, UserNotificationProfile)
from ..utils.config import NotificationConfig
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from ..utils.timestamp_utils import to_iso

logger = get_logger(__name__)


class MessageStore(ABC):
    """Read access to conversations, participants and messages."""

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserIdentity]:
        ...

    @abstractmethod
    def get_message(self, message_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    def list_user_conversations(self, user_id: str) -> List[Conversation]:
        ...

    @abstractmethod
    def fetch_unread_messages(self, conversation_id: str, user_id: str, limit: int,
                              since: Optional[datetime] = None) -> List[Message]:
        """Newest ``limit`` messages unread by and not authored by the user, oldest first."""

    @abstractmethod
    def fetch_recent_user_activity(self, user_id: str, since: datetime, limit: int) -> List[Message]:
        """Newest ``limit`` messages across the user's conversations, newest first."""

    @abstractmethod
    def count_messages_since(self, conversation_id: str, since: datetime) -> int:
        ...


class InMemoryMessageStore(MessageStore):

    def __init__(self):
        self._conversations: Dict[str, Conversation] = {}
        self._users: Dict[str, UserIdentity] = {}
        self._messages: Dict[str, Message] = {}
        self._by_conversation: Dict[str, List[str]] = {}
        self._lock = threading.RLock()

    def add_user(self, identity: UserIdentity) -> None:
        with self._lock:
            self._users[identity.user_id] = identity

    def add_conversation(self, conversation: Conversation) -> None:
        with self._lock:
            self._conversations[conversation.conversation_id] = conversation
            self._by_conversation.setdefault(conversation.conversation_id, [])

    def add_message(self, message: Message) -> None:
        with self._lock:
            if message.message_id not in self._messages:
                self._by_conversation.setdefault(message.conversation_id, []).append(message.message_id)
            self._messages[message.message_id] = message

    def mark_read(self, conversation_id: str, user_id: str) -> int:
        """Mark every message in the conversation as read by the user."""
        marked = 0
        with self._lock:
            for message_id in self._by_conversation.get(conversation_id, []):
                message = self._messages[message_id]
                if user_id not in message.read_by:
                    self._messages[message_id] = replace(message, read_by=message.read_by + (user_id, ))
                    marked += 1
        return marked

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            return self._conversations.get(conversation_id)

    def get_user(self, user_id: str) -> Optional[UserIdentity]:
        with self._lock:
            return self._users.get(user_id)

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._lock:
            return self._messages.get(message_id)

    def list_user_conversations(self, user_id: str) -> List[Conversation]:
        with self._lock:
            return [c for c in self._conversations.values() if user_id in c.participant_ids]

    def _conversation_messages(self, conversation_id: str) -> List[Message]:
        messages = [self._messages[mid] for mid in self._by_conversation.get(conversation_id, [])]
        messages.sort(key=lambda m: m.created_at)
        return messages

    def fetch_unread_messages(self, conversation_id: str, user_id: str, limit: int,
                              since: Optional[datetime] = None) -> List[Message]:
        with self._lock:
            messages = [
                m for m in self._conversation_messages(conversation_id)
                if m.sender_id != user_id and user_id not in m.read_by and (since is None or m.created_at >= since)
            ]
        return messages[-limit:] if limit else messages

    def fetch_recent_user_activity(self, user_id: str, since: datetime, limit: int) -> List[Message]:
        with self._lock:
            messages = [
                m for c in self.list_user_conversations(user_id) for m in self._conversation_messages(c.conversation_id)
                if m.created_at >= since
            ]
        messages.sort(key=lambda m: m.created_at, reverse=True)
        return messages[:limit]

    def count_messages_since(self, conversation_id: str, since: datetime) -> int:
        with self._lock:
            return sum(1 for m in self._conversation_messages(conversation_id) if m.created_at > since)


class PreferencesStore(ABC):
    """Per-user preferences (user-editable) and learned profiles (learner-written).

    Args:
        settings: Deployment defaults for users who never saved preferences
    """

    def __init__(self, settings: Optional[NotificationConfig] = None):
        self.settings = settings

    def default_preferences(self, user_id: str) -> UserNotificationPreferences:
        if self.settings is None:
            return UserNotificationPreferences(user_id=user_id)
        return UserNotificationPreferences(user_id=user_id,
                                           pause_threshold_seconds=self.settings.pause_threshold_seconds,
                                           message_count_threshold=self.settings.message_count_threshold)

    @abstractmethod
    def _load_preferences(self, user_id: str) -> Optional[UserNotificationPreferences]:
        ...

    @abstractmethod
    def _store_preferences(self, preferences: UserNotificationPreferences) -> None:
        ...

    @abstractmethod
    def get_profile(self, user_id: str) -> UserNotificationProfile:
        """Return the learned profile, or an empty one if the learner has not run yet."""

    @abstractmethod
    def save_profile(self, profile: UserNotificationProfile) -> None:
        ...

    def get_preferences(self, user_id: str) -> UserNotificationPreferences:
        """Return stored preferences, falling back to defaults."""
        return self._load_preferences(user_id) or self.default_preferences(user_id)

    def save_preferences(self, preferences: UserNotificationPreferences) -> UserNotificationPreferences:
        """
        Persist preferences with a bumped version.

        The version feeds decision cache keys, so any saved change invalidates
        cached decisions for the user.

        Returns:
            The preferences as stored
        """
        current = self._load_preferences(preferences.user_id)
        version = max(preferences.version, current.version if current else 0) + 1
        stored = replace(preferences, version=version)
        self._store_preferences(stored)
        logger.info(f'Saved notification preferences for {preferences.user_id} (version {version})')
        return stored


class InMemoryPreferencesStore(PreferencesStore):

    def __init__(self, settings: Optional[NotificationConfig] = None):
        super().__init__(settings)
        self._preferences: Dict[str, UserNotificationPreferences] = {}
        self._profiles: Dict[str, UserNotificationProfile] = {}
        self._lock = threading.Lock()

    def _load_preferences(self, user_id: str) -> Optional[UserNotificationPreferences]:
        with self._lock:
            return self._preferences.get(user_id)

    def _store_preferences(self, preferences: UserNotificationPreferences) -> None:
        with self._lock:
            self._preferences[preferences.user_id] = preferences

    def get_profile(self, user_id: str) -> UserNotificationProfile:
        with self._lock:
            return self._profiles.get(user_id) or UserNotificationProfile(user_id=user_id)

    def save_profile(self, profile: UserNotificationProfile) -> None:
        with self._lock:
            self._profiles[profile.user_id] = profile


class OpenSearchPreferencesStore(PreferencesStore):

    def __init__(self, opensearch: OpenSearchClient, settings: Optional[NotificationConfig] = None):
        super().__init__(settings)
        self.opensearch = opensearch

    def _load_preferences(self, user_id: str) -> Optional[UserNotificationPreferences]:
        doc = self.opensearch.get_document('preferences', user_id)
        return UserNotificationPreferences.from_document(doc) if doc else None

    def _store_preferences(self, preferences: UserNotificationPreferences) -> None:
        self.opensearch.put_document('preferences', preferences.user_id, preferences.to_document())

    def get_profile(self, user_id: str) -> UserNotificationProfile:
        doc = self.opensearch.get_document('profile', user_id)
        return UserNotificationProfile.from_document(doc) if doc else UserNotificationProfile(user_id=user_id)

    def save_profile(self, profile: UserNotificationProfile) -> None:
        self.opensearch.put_document('profile', profile.user_id, profile.to_document())


class DecisionLog(ABC):
    """Audit log of decisions plus the append-only feedback records that reference them."""

    @abstractmethod
    def record(self, entry: DecisionLogEntry) -> None:
        ...

    @abstractmethod
    def get(self, decision_id: str) -> Optional[DecisionLogEntry]:
        ...

    @abstractmethod
    def update_delivery(self, entry: DecisionLogEntry) -> None:
        """Persist the delivery fields of an already recorded entry."""

    @abstractmethod
    def append_feedback(self, record: FeedbackRecord) -> None:
        ...

    @abstractmethod
    def feedback_for_user(self, user_id: str, since: Optional[datetime] = None) -> List[FeedbackRecord]:
        """Feedback records for a user, oldest first."""

    @abstractmethod
    def users_with_feedback(self) -> List[str]:
        ...


class InMemoryDecisionLog(DecisionLog):

    def __init__(self):
        self._entries: Dict[str, DecisionLogEntry] = {}
        self._feedback: List[FeedbackRecord] = []
        self._lock = threading.Lock()

    def record(self, entry: DecisionLogEntry) -> None:
        with self._lock:
            self._entries[entry.decision.decision_id] = entry

    def get(self, decision_id: str) -> Optional[DecisionLogEntry]:
        with self._lock:
            return self._entries.get(decision_id)

    def update_delivery(self, entry: DecisionLogEntry) -> None:
        with self._lock:
            self._entries[entry.decision.decision_id] = entry

    def append_feedback(self, record: FeedbackRecord) -> None:
        with self._lock:
            self._feedback.append(record)

    def feedback_for_user(self, user_id: str, since: Optional[datetime] = None) -> List[FeedbackRecord]:
        with self._lock:
            records = [r for r in self._feedback if r.user_id == user_id and (since is None or r.timestamp >= since)]
        return sorted(records, key=lambda r: r.timestamp)

    def users_with_feedback(self) -> List[str]:
        with self._lock:
            return sorted({r.user_id for r in self._feedback})


class OpenSearchDecisionLog(DecisionLog):

    def __init__(self, opensearch: OpenSearchClient, max_feedback: int = 1000):
        self.opensearch = opensearch
        self.max_feedback = max_feedback

    def record(self, entry: DecisionLogEntry) -> None:
        self.opensearch.put_document('decision', entry.decision.decision_id, entry.to_document())

    def get(self, decision_id: str) -> Optional[DecisionLogEntry]:
        doc = self.opensearch.get_document('decision', decision_id)
        return DecisionLogEntry.from_document(doc) if doc else None

    def update_delivery(self, entry: DecisionLogEntry) -> None:
        self.record(entry)

    def append_feedback(self, record: FeedbackRecord) -> None:
        doc_id = f'{record.decision.decision_id}_{int(record.timestamp.timestamp() * 1000)}'
        self.opensearch.put_document('feedback', doc_id, record.to_document())

    def feedback_for_user(self, user_id: str, since: Optional[datetime] = None) -> List[FeedbackRecord]:
        # Newest first so the cap drops the oldest records, then back to chronological order
        docs = self.opensearch.search_documents('feedback', {'user_id': user_id},
                                                size=self.max_feedback,
                                                sort_field='recorded_at',
                                                descending=True,
                                                ranges={'recorded_at': {'gte': to_iso(since)}} if since else None)
        records = [FeedbackRecord.from_document(d) for d in reversed(docs)]
        return [r for r in records if since is None or r.timestamp >= since]

    def users_with_feedback(self) -> List[str]:
        return sorted(self.opensearch.distinct_values('feedback', 'user_id'))
