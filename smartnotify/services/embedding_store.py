"""
Message embedding persistence and similarity search.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from math import sqrt
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..models.core import MessageEmbedding
from ..utils.bedrock_embed import BedrockEmbedError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import EMBEDDING_INDEX, OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import utc_now

logger = get_logger(__name__)


class EmbeddingStoreError(Exception):
    """Custom exception for embedding store errors."""
    pass


class EmbeddingStore(ABC):
    """Lazily embeds messages and answers scoped similarity queries.

    Args:
        embedder: Object exposing ``embed_document(text) -> List[float]``
        clock: Callable returning the current aware datetime
    """

    def __init__(self, embedder, clock: Callable[[], datetime] = utc_now):
        self.embedder = embedder
        self.clock = clock

    @abstractmethod
    def get_embedding(self, message_id: str) -> Optional[MessageEmbedding]:
        ...

    @abstractmethod
    def _save(self, embedding: MessageEmbedding, text: str) -> None:
        ...

    @abstractmethod
    def similarity_search(self,
                          vector: Sequence[float],
                          scope_conversation_ids: Iterable[str],
                          top_k: int = 10,
                          exclude_ids: Iterable[str] = ()) -> List[Tuple[str, float]]:
        """Return ``(message_id, score)`` pairs, best first, limited to the given conversations."""

    def get_or_create_embedding(self,
                                message_id: str,
                                conversation_id: str,
                                text: str,
                                max_age: Optional[timedelta] = None) -> MessageEmbedding:
        """
        Return the stored embedding for a message, generating it on first use.

        Args:
            message_id: Message identifier
            conversation_id: Conversation the message belongs to
            text: Message text
            max_age: Stored embeddings older than this are regenerated

        Returns:
            MessageEmbedding for the message

        Raises:
            EmbeddingStoreError: If the embedding cannot be generated or stored
        """
        try:
            existing = self.get_embedding(message_id)
            if existing is not None and (max_age is None or self.clock() - existing.created_at < max_age):
                return existing

            vector = self.embedder.embed_document(text)
            embedding = MessageEmbedding(message_id=message_id,
                                         conversation_id=conversation_id,
                                         vector=tuple(vector),
                                         created_at=self.clock())
            self._save(embedding, text)
            logger.debug(f'Embedded message {message_id} ({len(vector)} dims)')
            return embedding

        except (BedrockEmbedError, OpenSearchError) as e:
            raise EmbeddingStoreError(f'Failed to embed message {message_id}: {e}') from e


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    if not vec_a or not vec_b:
        return 0.0
    length = min(len(vec_a), len(vec_b))
    dot = sum(a * b for a, b in zip(vec_a[:length], vec_b[:length]))
    norm_a = sqrt(sum(a * a for a in vec_a[:length]))
    norm_b = sqrt(sum(b * b for b in vec_b[:length]))
    if not norm_a or not norm_b:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryEmbeddingStore(EmbeddingStore):
    """Brute-force cosine search over a lock-guarded dict."""

    def __init__(self, embedder, clock: Callable[[], datetime] = utc_now):
        super().__init__(embedder, clock)
        self._embeddings: Dict[str, MessageEmbedding] = {}
        self._lock = threading.Lock()

    def get_embedding(self, message_id: str) -> Optional[MessageEmbedding]:
        with self._lock:
            return self._embeddings.get(message_id)

    def _save(self, embedding: MessageEmbedding, text: str) -> None:
        with self._lock:
            self._embeddings[embedding.message_id] = embedding

    def similarity_search(self,
                          vector: Sequence[float],
                          scope_conversation_ids: Iterable[str],
                          top_k: int = 10,
                          exclude_ids: Iterable[str] = ()) -> List[Tuple[str, float]]:
        scope = set(scope_conversation_ids)
        excluded = set(exclude_ids)
        with self._lock:
            candidates = [e for e in self._embeddings.values()
                          if e.conversation_id in scope and e.message_id not in excluded]

        scored = [(e.message_id, cosine_similarity(vector, e.vector)) for e in candidates]
        scored.sort(key=lambda item: item[1], reverse=True)
        return [item for item in scored[:top_k] if item[1] > 0]


class OpenSearchEmbeddingStore(EmbeddingStore):
    """Embeddings kept in the OpenSearch kNN index."""

    def __init__(self, opensearch: OpenSearchClient, embedder, clock: Callable[[], datetime] = utc_now):
        super().__init__(embedder, clock)
        self.opensearch = opensearch

    def get_embedding(self, message_id: str) -> Optional[MessageEmbedding]:
        doc = self.opensearch.get_vector(message_id)
        if doc is None:
            return None
        try:
            return MessageEmbedding.from_document(doc)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f'Discarding unreadable embedding for {message_id}: {e}')
            return None

    def _save(self, embedding: MessageEmbedding, text: str) -> None:
        self.opensearch.put_document(EMBEDDING_INDEX, embedding.message_id, embedding.to_document(text))

    def similarity_search(self,
                          vector: Sequence[float],
                          scope_conversation_ids: Iterable[str],
                          top_k: int = 10,
                          exclude_ids: Iterable[str] = ()) -> List[Tuple[str, float]]:
        try:
            hits = self.opensearch.vector_search(list(vector), scope_conversation_ids, top_k, exclude_ids)
        except OpenSearchError as e:
            raise EmbeddingStoreError(f'Similarity search failed: {e}') from e
        return [(hit['document'].get('message_id', hit['id']), hit['score']) for hit in hits]
