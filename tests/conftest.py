"""Shared fixtures: in-memory stores, fake backends and a fixed clock."""

from datetime import timedelta

import pytest

from fakes import ALICE, BOB, CAROL, FakeEmbedder, FakeLLM, FixedClock, RecordingTransport
from smartnotify.models.core import Conversation
from smartnotify.services.decision_cache import InMemoryDecisionCache
from smartnotify.services.embedding_store import InMemoryEmbeddingStore
from smartnotify.services.notification_engine import NotificationEngine
from smartnotify.services.stores import InMemoryDecisionLog, InMemoryMessageStore, InMemoryPreferencesStore
from smartnotify.utils.config import NotificationConfig


@pytest.fixture
def settings():
    return NotificationConfig(pause_threshold_seconds=120,
                              message_count_threshold=20,
                              threshold_window_seconds=600,
                              debounce_seconds=300,
                              unread_limit=30,
                              unread_window_minutes=15,
                              recent_activity_limit=100,
                              recent_activity_days=7,
                              semantic_top_k=10,
                              embedding_reuse_days=7,
                              retrieval_timeout_seconds=2.0,
                              cache_ttl_hours=24,
                              cache_staleness_messages=10,
                              notification_text_max_length=100,
                              learner_interval_days=7,
                              learner_min_term_occurrences=2,
                              monitor_tick_seconds=0.05,
                              analysis_workers=2)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def message_store():
    store = InMemoryMessageStore()
    for identity in (ALICE, BOB, CAROL):
        store.add_user(identity)
    store.add_conversation(Conversation('conv-1', ['alice', 'bob', 'carol'], is_group=True, name='Launch Team'))
    store.add_conversation(Conversation('conv-2', ['alice', 'bob']))
    store.add_conversation(Conversation('conv-3', ['bob', 'carol']))
    return store


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def engine(message_store, llm, embedder, transport, settings, clock):
    engine = NotificationEngine(message_store=message_store,
                                preferences_store=InMemoryPreferencesStore(settings),
                                decision_log=InMemoryDecisionLog(),
                                decision_cache=InMemoryDecisionCache(message_store,
                                                                     ttl=timedelta(hours=24),
                                                                     staleness_messages=10,
                                                                     clock=clock),
                                embedding_store=InMemoryEmbeddingStore(embedder, clock=clock),
                                llm=llm,
                                settings=settings,
                                transport=transport,
                                llm_timeout_seconds=2.0,
                                clock=clock)
    yield engine
    engine.shutdown(wait=True)
