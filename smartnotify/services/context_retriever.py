"""
Context retrieval for notification inference.

Assembles the unread batch, the user's recent cross-conversation activity and
semantically related history into one bounded RetrievedContext. Enrichment is
best effort: if embedding, search or reranking fails or runs past the
retrieval timeout, the context degrades to the unread batch plus preferences.
"""

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Tuple

from ..models.core import Message, RelatedMessage, RetrievedContext, UserNotificationPreferences, UserNotificationProfile
from ..utils.bedrock_rerank import BedrockRerankError
from ..utils.config import NotificationConfig
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError
from ..utils.timestamp_utils import utc_now
from .embedding_store import EmbeddingStore, EmbeddingStoreError
from .stores import MessageStore

logger = get_logger(__name__)


class ContextRetrievalError(Exception):
    """Custom exception for context retrieval errors."""
    pass


class ContextRetriever:
    """Builds inference context for one (user, conversation) analysis."""

    def __init__(self,
                 message_store: MessageStore,
                 embedding_store: EmbeddingStore,
                 settings: NotificationConfig,
                 reranker=None,
                 clock: Callable[[], datetime] = utc_now):
        """
        Initialize the retriever.

        Args:
            message_store: Source of messages and conversation membership
            embedding_store: Embedding persistence and similarity search
            settings: Retrieval limits and timeouts
            reranker: Optional object exposing ``rerank(query, documents, top_k)``
            clock: Callable returning the current aware datetime
        """
        self.message_store = message_store
        self.embedding_store = embedding_store
        self.settings = settings
        self.reranker = reranker
        self.clock = clock
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix='rag')

    def fetch_unread_batch(self, conversation_id: str, user_id: str) -> List[Message]:
        """Unread messages from the recent window of a conversation, oldest first."""
        since = self.clock() - timedelta(minutes=self.settings.unread_window_minutes)
        return self.message_store.fetch_unread_messages(conversation_id, user_id, self.settings.unread_limit, since)

    def retrieve(self, user_id: str, conversation_id: str, unread: List[Message],
                 preferences: UserNotificationPreferences, profile: UserNotificationProfile) -> RetrievedContext:
        """
        Assemble the context for an inference call. Never raises for enrichment failures.

        Args:
            user_id: Recipient
            conversation_id: Conversation under analysis
            unread: Unread batch, oldest first
            preferences: Recipient preferences
            profile: Recipient's learned profile

        Returns:
            RetrievedContext, flagged ``degraded`` when enrichment was skipped
        """
        context = RetrievedContext(unread_messages=list(unread), preferences=preferences, profile=profile)

        future = self._executor.submit(self._enrich, user_id, unread)
        try:
            recent, active, related = future.result(timeout=self.settings.retrieval_timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(f'Context retrieval for {conversation_id} timed out after '
                           f'{self.settings.retrieval_timeout_seconds}s; using unread batch only')
            context.degraded = True
            return context
        except (EmbeddingStoreError, BedrockRerankError, OpenSearchError, ContextRetrievalError) as e:
            logger.warning(f'Context retrieval for {conversation_id} degraded: {e}')
            context.degraded = True
            return context

        context.recent_activity = recent
        context.active_conversation_ids = active
        context.related_history = related
        logger.debug(f'Retrieved context for {conversation_id}: {len(unread)} unread, {len(recent)} recent, '
                     f'{len(related)} related')
        return context

    def _enrich(self, user_id: str, unread: List[Message]) -> Tuple[List[Message], List[str], List[RelatedMessage]]:
        since = self.clock() - timedelta(days=self.settings.recent_activity_days)
        recent = self.message_store.fetch_recent_user_activity(user_id, since, self.settings.recent_activity_limit)

        active = []
        for message in recent:
            if message.conversation_id not in active:
                active.append(message.conversation_id)

        return recent, active, self._related_history(user_id, unread)

    def _related_history(self, user_id: str, unread: List[Message]) -> List[RelatedMessage]:
        if not unread:
            return []

        scope = [c.conversation_id for c in self.message_store.list_user_conversations(user_id)]
        batch_ids = {m.message_id for m in unread}
        max_age = timedelta(days=self.settings.embedding_reuse_days)
        top_k = self.settings.semantic_top_k

        # Best score per historical message across all batch queries
        best: Dict[str, float] = {}
        for message in unread:
            embedding = self.embedding_store.get_or_create_embedding(message.message_id, message.conversation_id,
                                                                     message.text, max_age)
            for message_id, score in self.embedding_store.similarity_search(embedding.vector, scope, top_k, batch_ids):
                if score > best.get(message_id, float('-inf')):
                    best[message_id] = score

        candidates = []
        for message_id, score in sorted(best.items(), key=lambda item: item[1], reverse=True):
            found = self.message_store.get_message(message_id)
            if found is not None:
                candidates.append(RelatedMessage(message=found, score=score))

        if self.reranker is not None and len(candidates) > 1:
            candidates = self._rerank(unread, candidates)

        return candidates[:top_k]

    def _rerank(self, unread: List[Message], candidates: List[RelatedMessage]) -> List[RelatedMessage]:
        query = ' '.join(m.text for m in unread)
        results = self.reranker.rerank(query, [c.message.text for c in candidates], top_k=len(candidates))
        try:
            return [RelatedMessage(message=candidates[r['index']].message, score=r['relevance_score']) for r in results]
        except (KeyError, IndexError, TypeError) as e:
            raise ContextRetrievalError(f'Unusable rerank result: {e}') from e

    def close(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
