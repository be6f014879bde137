"""
Decision cache keyed by conversation, latest unread message and preference version.
"""

import hashlib
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from ..models.core import AnalysisOutcome, NotificationDecision
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from ..utils.timestamp_utils import from_iso, to_iso, utc_now
from .stores import MessageStore

logger = get_logger(__name__)


def build_cache_key(conversation_id: str, latest_message_id: str, preference_version: int) -> str:
    """Derive the cache key for an analysis input."""
    fingerprint = f'{conversation_id}:{latest_message_id}:{preference_version}'
    digest = hashlib.sha256(fingerprint.encode('utf-8')).hexdigest()[:16]
    return f'notification_{conversation_id}_{digest}'


@dataclass
class CacheHit:
    decision: NotificationDecision
    outcome: AnalysisOutcome
    cached_at: datetime
    messages_since_cache: int


class DecisionCache(ABC):
    """Cached decisions with message-count and age based staleness.

    Args:
        message_store: Used to count messages that arrived after an entry was written
        ttl: Maximum entry age
        staleness_messages: New-message count at which an entry is stale
        clock: Callable returning the current aware datetime
    """

    def __init__(self,
                 message_store: MessageStore,
                 ttl: timedelta = timedelta(hours=24),
                 staleness_messages: int = 10,
                 clock: Callable[[], datetime] = utc_now):
        self.message_store = message_store
        self.ttl = ttl
        self.staleness_messages = staleness_messages
        self.clock = clock

    @abstractmethod
    def _read(self, cache_key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def _write(self, cache_key: str, document: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def _delete(self, cache_key: str) -> None:
        ...

    def lookup(self, cache_key: str) -> Optional[CacheHit]:
        """
        Return a fresh cached decision, or None on miss.

        Unreadable entries and stale entries are treated as misses; unreadable
        ones are dropped so the next store overwrites them cleanly.
        """
        document = self._read(cache_key)
        if document is None:
            return None

        try:
            decision = NotificationDecision.from_document(document['decision'])
            outcome = AnalysisOutcome(document['outcome'])
            cached_at = from_iso(document['cached_at'])
            if cached_at is None:
                raise ValueError('missing cached_at')
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f'Discarding corrupt cache entry {cache_key}: {e}')
            self._delete(cache_key)
            return None

        age = self.clock() - cached_at
        if age >= self.ttl:
            logger.debug(f'Cache entry {cache_key} expired after {age}')
            return None

        messages_since = self.message_store.count_messages_since(decision.source_conversation_id, cached_at)
        if messages_since >= self.staleness_messages:
            logger.debug(f'Cache entry {cache_key} stale: {messages_since} new messages')
            return None

        return CacheHit(decision=decision, outcome=outcome, cached_at=cached_at, messages_since_cache=messages_since)

    def store(self, decision: NotificationDecision, outcome: AnalysisOutcome) -> None:
        """Write (or overwrite) the entry for the decision's cache key."""
        if not decision.cache_key:
            return
        self._write(decision.cache_key, {
            'cache_key': decision.cache_key,
            'conversation_id': decision.source_conversation_id,
            'user_id': decision.user_id,
            'outcome': outcome.value,
            'cached_at': to_iso(self.clock()),
            'decision': decision.to_document(),
        })
        logger.debug(f'Cached decision {decision.decision_id} under {decision.cache_key}')

    def invalidate(self, cache_key: str) -> None:
        self._delete(cache_key)


class InMemoryDecisionCache(DecisionCache):

    def __init__(self, message_store: MessageStore, **kwargs):
        super().__init__(message_store, **kwargs)
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _read(self, cache_key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._entries.get(cache_key)

    def _write(self, cache_key: str, document: Dict[str, Any]) -> None:
        with self._lock:
            self._entries[cache_key] = document

    def _delete(self, cache_key: str) -> None:
        with self._lock:
            self._entries.pop(cache_key, None)


class OpenSearchDecisionCache(DecisionCache):

    def __init__(self, opensearch: OpenSearchClient, message_store: MessageStore, **kwargs):
        super().__init__(message_store, **kwargs)
        self.opensearch = opensearch

    def _read(self, cache_key: str) -> Optional[Dict[str, Any]]:
        return self.opensearch.get_document('cache', cache_key)

    def _write(self, cache_key: str, document: Dict[str, Any]) -> None:
        self.opensearch.put_document('cache', cache_key, document)

    def _delete(self, cache_key: str) -> None:
        self.opensearch.delete_document('cache', cache_key)
