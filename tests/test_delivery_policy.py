"""Tests for delivery gates, presentation and the hourly inference budget."""

from datetime import datetime, timezone

import pytest

from fakes import ALICE, RecordingTransport, make_message
from smartnotify.models.core import (AnalysisOutcome, Conversation, FallbackStrategy, NotificationDecision, Presentation,
                                     Priority, QuietHours, UserNotificationPreferences, UserNotificationProfile)
from smartnotify.services.delivery_policy import (SUPPRESSED_ACTIVE_VIEWER, SUPPRESSED_QUIET_HOURS,
                                                  SUPPRESSED_TRANSPORT_ERROR, DeliveryPolicy,
                                                  NotificationTransportError, RateLimiter, notification_title,
                                                  rate_limited_decision)
from smartnotify.services.heuristics import FALLBACK_MARKER
from smartnotify.utils.timestamp_utils import in_time_window, load_timezone

GROUP = Conversation('conv-1', ['alice', 'bob', 'carol'], is_group=True, name='Launch Team')


def decision(priority=Priority.MEDIUM, notify=True):
    return NotificationDecision(should_notify=notify,
                                reason='test',
                                priority=priority,
                                source_conversation_id='conv-1',
                                notification_text='Bob Smith: contract is back' if notify else None,
                                source_message_ids=('m1', 'm2'),
                                user_id='alice')


class ViewerState:

    def __init__(self):
        self.viewing = set()

    def __call__(self, user_id, conversation_id):
        return (user_id, conversation_id) in self.viewing


@pytest.fixture
def viewers():
    return ViewerState()


@pytest.fixture
def policy(transport, viewers, clock):
    return DeliveryPolicy(transport, viewers, clock=clock)


@pytest.fixture
def prefs():
    return UserNotificationPreferences(user_id='alice')


class TestQuietHoursWindow:

    @pytest.mark.parametrize('hour_utc, expected', [
        (6, True),     # 22:00 PST
        (7, True),     # 23:00 PST
        (15, True),    # 07:00 PST
        (16, False),   # 08:00 PST
        (18, False),   # 10:00 PST
        (5, False),    # 21:00 PST
    ])
    def test_overnight_window(self, hour_utc, expected):
        moment = datetime(2025, 1, 15, hour_utc, 0, tzinfo=timezone.utc)
        assert in_time_window(moment, '22:00', '08:00', 'America/Los_Angeles') is expected

    def test_same_day_window(self):
        moment = datetime(2025, 1, 15, 13, 30, tzinfo=timezone.utc)
        assert in_time_window(moment, '13:00', '14:00', 'UTC')
        assert not in_time_window(moment, '14:00', '15:00', 'UTC')

    def test_empty_window(self):
        moment = datetime(2025, 1, 15, 13, 30, tzinfo=timezone.utc)
        assert not in_time_window(moment, '09:00', '09:00', 'UTC')

    @pytest.mark.parametrize('start, end, tz_name', [
        ('22:00', '08:00', 'Mars/Olympus_Mons'),
        ('25:00', '08:00', 'UTC'),
        ('22:00', 'later', 'UTC'),
        (None, '08:00', 'UTC'),
    ])
    def test_invalid_window_raises_value_error(self, start, end, tz_name):
        moment = datetime(2025, 1, 15, 13, 30, tzinfo=timezone.utc)
        with pytest.raises(ValueError):
            in_time_window(moment, start, end, tz_name)

    def test_load_timezone(self):
        assert load_timezone('Europe/Berlin').key == 'Europe/Berlin'
        with pytest.raises(ValueError):
            load_timezone('Not/AZone')


class TestApply:

    @pytest.mark.parametrize('priority, presentation', [
        (Priority.HIGH, Presentation.ALERT),
        (Priority.MEDIUM, Presentation.SILENT),
        (Priority.LOW, Presentation.BADGE),
    ])
    def test_presentation_follows_priority(self, policy, transport, prefs, priority, presentation):
        outcome = policy.apply(decision(priority), prefs, GROUP, 'Bob Smith')
        assert outcome.delivered
        assert outcome.presentation == presentation
        assert transport.sent[0]['priority'] == priority

    def test_group_title_and_deep_link(self, policy, transport, prefs):
        policy.apply(decision(), prefs, GROUP, 'Bob Smith')
        sent = transport.sent[0]
        assert sent['title'] == 'Bob Smith in Launch Team'
        assert sent['body'] == 'Bob Smith: contract is back'
        assert sent['conversation_id'] == 'conv-1'
        assert sent['message_id'] == 'm2'

    def test_direct_title_is_sender(self):
        assert notification_title('Bob Smith', Conversation('conv-2', ['alice', 'bob'])) == 'Bob Smith'

    def test_non_notifying_decision_is_not_sent(self, policy, transport, prefs):
        outcome = policy.apply(decision(notify=False), prefs, GROUP, 'Bob Smith')
        assert not outcome.delivered
        assert outcome.suppressed_by is None
        assert transport.sent == []

    def test_active_viewer_suppresses_everything(self, policy, transport, viewers, prefs):
        viewers.viewing.add(('alice', 'conv-1'))
        for _ in range(3):
            outcome = policy.apply(decision(Priority.HIGH), prefs, GROUP, 'Bob Smith')
            assert outcome.suppressed_by == SUPPRESSED_ACTIVE_VIEWER
        assert transport.sent == []

    def test_quiet_hours_hold_non_urgent(self, policy, transport, clock, prefs):
        clock.now = datetime(2025, 1, 15, 7, 0, tzinfo=timezone.utc)
        outcome = policy.apply(decision(Priority.MEDIUM), prefs, GROUP, 'Bob Smith')
        assert outcome.suppressed_by == SUPPRESSED_QUIET_HOURS
        assert transport.sent == []

    def test_quiet_hours_let_high_priority_through(self, policy, transport, clock, prefs):
        clock.now = datetime(2025, 1, 15, 7, 0, tzinfo=timezone.utc)
        assert policy.apply(decision(Priority.HIGH), prefs, GROUP, 'Bob Smith').delivered

    def test_disabled_quiet_hours(self, policy, clock):
        clock.now = datetime(2025, 1, 15, 7, 0, tzinfo=timezone.utc)
        prefs = UserNotificationPreferences(user_id='alice', quiet_hours=QuietHours(enabled=False))
        assert policy.apply(decision(Priority.LOW), prefs, GROUP, 'Bob Smith').delivered

    @pytest.mark.parametrize('stored', [
        {'timezone': 'Not/AZone'},
        {'quiet_hours': QuietHours(start='25:99', end='08:00')},
        {'quiet_hours': QuietHours(start=None, end='08:00')},
    ])
    def test_unusable_quiet_hours_are_ignored(self, policy, transport, clock, stored, caplog):
        clock.now = datetime(2025, 1, 15, 7, 0, tzinfo=timezone.utc)
        prefs = UserNotificationPreferences(user_id='alice', **stored)

        outcome = policy.apply(decision(Priority.LOW), prefs, GROUP, 'Bob Smith')
        assert outcome.delivered
        assert len(transport.sent) == 1
        assert 'Ignoring unusable quiet hours for alice' in caplog.text

    def test_transport_error_is_reported(self, viewers, clock, prefs):
        policy = DeliveryPolicy(RecordingTransport(error=NotificationTransportError('no token')), viewers, clock=clock)
        outcome = policy.apply(decision(), prefs, GROUP, 'Bob Smith')
        assert not outcome.delivered
        assert outcome.suppressed_by == SUPPRESSED_TRANSPORT_ERROR


class TestRateLimiter:

    def test_limit_per_clock_hour(self, clock):
        limiter = RateLimiter(clock=clock)
        assert all(limiter.try_acquire('alice', 3) for _ in range(3))
        assert not limiter.try_acquire('alice', 3)
        assert limiter.try_acquire('carol', 3)
        assert limiter.usage('alice') == 3

        clock.advance(hours=1)
        assert limiter.usage('alice') == 0
        assert limiter.try_acquire('alice', 3)


class TestRateLimitedDecision:

    @pytest.fixture
    def messages(self):
        return [make_message('m1', 'The vendor contract came back')]

    def decide(self, messages, strategy):
        prefs = UserNotificationPreferences(user_id='alice', fallback_strategy=strategy)
        return rate_limited_decision(messages, ALICE, prefs, UserNotificationProfile(user_id='alice'), 'conv-1', 'key')

    def test_suppress_all(self, messages):
        result, outcome = self.decide(messages, FallbackStrategy.SUPPRESS_ALL)
        assert outcome == AnalysisOutcome.SUPPRESSED
        assert not result.should_notify

    def test_notify_all(self, messages):
        result, outcome = self.decide(messages, FallbackStrategy.NOTIFY_ALL)
        assert outcome == AnalysisOutcome.FALLBACK_HEURISTIC
        assert result.should_notify
        assert result.notification_text == 'Bob Smith: The vendor contract came back'

    def test_simple_rules(self, messages):
        result, outcome = self.decide(messages, FallbackStrategy.SIMPLE_RULES)
        assert outcome == AnalysisOutcome.FALLBACK_HEURISTIC
        assert not result.should_notify
        assert FALLBACK_MARKER in result.reason
        assert 'hourly analysis limit reached' in result.reason
