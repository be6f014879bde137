"""Stand-ins for Bedrock, the push channel and the wall clock."""

import hashlib
import json
import re
import threading
import time
from datetime import datetime, timedelta, timezone

from smartnotify.models.core import Message, UserIdentity
from smartnotify.services.delivery_policy import NotificationTransport

# 10:00 in America/Los_Angeles, outside the default quiet hours
BASE_TIME = datetime(2025, 1, 15, 18, 0, tzinfo=timezone.utc)

ALICE = UserIdentity(user_id='alice', display_name='Alice Chen', handle='alice')
BOB = UserIdentity(user_id='bob', display_name='Bob Smith', handle='bob')
CAROL = UserIdentity(user_id='carol', display_name='Carol Diaz', handle='carol')


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def llm_reply(should_notify: bool, reason: str, text: str = '', priority: str = 'low') -> str:
    """Body of a well-formed inference reply, as returned after the json prefill."""
    payload = {'shouldNotify': should_notify, 'reason': reason, 'notificationText': text, 'priority': priority}
    return '\n' + json.dumps(payload) + '\n'


class FakeLLM:
    """Scripted replacement for BedrockLLM.generate_response."""

    def __init__(self, responses=None, delay: float = 0.0, error: Exception = None):
        self.responses = list(responses or [])
        self.delay = delay
        self.error = error
        self.calls = []
        self._lock = threading.Lock()

    def generate_response(self, messages, system_prompt, max_tokens=None, temperature=None, stop_sequences=None,
                          deadline=None):
        with self._lock:
            self.calls.append({'messages': messages, 'system_prompt': system_prompt, 'stop_sequences': stop_sequences})
            response = self.responses.pop(0) if self.responses else llm_reply(False, 'Nothing actionable')
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return response, {'input_tokens': 0, 'output_tokens': 0}

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)


class FakeEmbedder:
    """Deterministic hashed bag-of-words vectors; shared words give positive similarity."""

    def __init__(self, dimension: int = 64, error: Exception = None):
        self.dimension = dimension
        self.error = error
        self.calls = 0

    def embed_document(self, text: str):
        self.calls += 1
        if self.error is not None:
            raise self.error
        vector = [0.0] * self.dimension
        for word in re.findall(r'[a-z0-9]+', text.lower()):
            vector[int(hashlib.md5(word.encode('utf-8')).hexdigest(), 16) % self.dimension] += 1.0
        return vector

    embed_query = embed_document


class RecordingTransport(NotificationTransport):

    def __init__(self, error: Exception = None):
        self.error = error
        self.sent = []

    def deliver(self, user_id, title, body, priority, deep_link_conversation_id, deep_link_message_id):
        if self.error is not None:
            raise self.error
        self.sent.append({
            'user_id': user_id,
            'title': title,
            'body': body,
            'priority': priority,
            'conversation_id': deep_link_conversation_id,
            'message_id': deep_link_message_id,
        })


def make_message(message_id: str,
                 text: str,
                 sender_id: str = 'bob',
                 sender_name: str = 'Bob Smith',
                 conversation_id: str = 'conv-1',
                 minutes_ago: float = 1,
                 created_at: datetime = None,
                 is_bot: bool = False,
                 read_by=()) -> Message:
    return Message(message_id=message_id,
                   conversation_id=conversation_id,
                   sender_id=sender_id,
                   sender_name=sender_name,
                   text=text,
                   created_at=created_at or BASE_TIME - timedelta(minutes=minutes_ago),
                   read_by=tuple(read_by),
                   is_bot=is_bot)
