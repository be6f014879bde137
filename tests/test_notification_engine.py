"""End-to-end tests of the notification engine with in-memory stores and fake backends."""

import time
from dataclasses import replace
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from fakes import llm_reply, make_message
from smartnotify.models.core import (AnalysisOutcome, FallbackStrategy, FeedbackRecord, FeedbackValue, MonitorState,
                                     NotificationDecision, Presentation, Priority, QuietHours,
                                     UserNotificationPreferences)
from smartnotify.services.delivery_policy import SUPPRESSED_ACTIVE_VIEWER
from smartnotify.services.heuristics import FALLBACK_MARKER
from smartnotify.services.notification_engine import (ConversationNotFoundError, DecisionNotFoundError,
                                                      NotificationEngineError, PermissionDeniedError)
from smartnotify.services.stores import MessageStore
from smartnotify.utils.bedrock_llm import BedrockLLMError


def post(engine, message_id, text, minutes_ago=1.0, **kwargs):
    message = make_message(message_id, text, minutes_ago=minutes_ago, **kwargs)
    engine.message_store.add_message(message)
    engine.ingest_message(message)
    return message


def wait_for(condition, timeout=3.0):
    deadline = time.monotonic() + timeout
    while not condition() and time.monotonic() < deadline:
        time.sleep(0.01)
    return condition()


class TestScenarios:

    def test_mention_notifies_without_inference(self, engine, llm, transport):
        post(engine, 'm1', '@Alice can you review the API design by EOD?')
        result = engine.analyze_conversation_for_notification('conv-1', 'alice')

        assert result.outcome == AnalysisOutcome.HEURISTIC
        assert result.decision.should_notify
        assert result.decision.priority == Priority.HIGH
        assert 'review the API design' in result.decision.notification_text
        assert llm.call_count == 0

        assert engine.decision_cache.lookup(result.decision.cache_key) is not None
        assert result.delivery.delivered
        assert result.delivery.presentation == Presentation.ALERT
        assert transport.sent[0]['title'] == 'Bob Smith in Launch Team'

        entry = engine.decision_log.get(result.decision.decision_id)
        assert entry.was_delivered
        assert entry.outcome == AnalysisOutcome.HEURISTIC

    def test_chatter_is_skipped_without_inference(self, engine, llm, transport):
        for i, text in enumerate(['hey', 'lunch?', '😊', 'thanks!', 'ok']):
            post(engine, f'm{i}', text, minutes_ago=5 - i)

        result = engine.analyze_conversation_for_notification('conv-1', 'alice')
        assert not result.decision.should_notify
        assert result.outcome == AnalysisOutcome.HEURISTIC
        assert llm.call_count == 0
        assert transport.sent == []

    def test_ambiguous_batch_is_inferred(self, engine, llm, transport):
        llm.responses.append(llm_reply(True, 'Contract needs review', 'Bob Smith: contract redlines are back', 'medium'))
        post(engine, 'm1', 'The vendor contract came back with redlines')

        result = engine.analyze_conversation_for_notification('conv-1', 'alice')
        assert result.outcome == AnalysisOutcome.INFERRED
        assert result.decision.priority == Priority.MEDIUM
        assert result.delivery.presentation == Presentation.SILENT
        assert llm.call_count == 1
        assert transport.sent[0]['body'] == 'Bob Smith: contract redlines are back'

    def test_backend_failure_falls_back_and_is_not_cached(self, engine, llm):
        llm.error = BedrockLLMError('service unavailable')
        post(engine, 'm1', 'The vendor contract came back with redlines')

        result = engine.analyze_conversation_for_notification('conv-1', 'alice')
        assert result.outcome == AnalysisOutcome.FALLBACK_HEURISTIC
        assert FALLBACK_MARKER in result.decision.reason
        assert engine.decision_cache.lookup(result.decision.cache_key) is None

        engine.analyze_conversation_for_notification('conv-1', 'alice')
        assert llm.call_count == 2


class TestCache:

    def test_second_analysis_is_served_from_cache(self, engine, llm, transport):
        llm.responses.append(llm_reply(True, 'Contract needs review', 'Bob Smith: contract is back', 'high'))
        post(engine, 'm1', 'The vendor contract came back with redlines')

        first = engine.analyze_conversation_for_notification('conv-1', 'alice')
        second = engine.analyze_conversation_for_notification('conv-1', 'alice')

        assert second.outcome == AnalysisOutcome.CACHED
        assert second.decision == first.decision
        assert second.messages_since_cache == 0
        assert second.delivery is None
        assert llm.call_count == 1
        assert len(transport.sent) == 1

    def test_regenerate_skips_cache(self, engine, llm):
        post(engine, 'm1', 'The vendor contract came back with redlines')
        first = engine.analyze_conversation_for_notification('conv-1', 'alice')
        second = engine.analyze_conversation_for_notification('conv-1', 'alice', regenerate=True)

        assert second.outcome == AnalysisOutcome.INFERRED
        assert second.decision.decision_id != first.decision.decision_id
        assert second.decision.cache_key == first.decision.cache_key
        assert llm.call_count == 2

    def test_preference_change_invalidates(self, engine, llm):
        post(engine, 'm1', 'The vendor contract came back with redlines')
        first = engine.analyze_conversation_for_notification('conv-1', 'alice')
        engine.update_preferences('alice', {'timezone': 'America/New_York'})
        second = engine.analyze_conversation_for_notification('conv-1', 'alice')

        assert second.outcome == AnalysisOutcome.INFERRED
        assert second.decision.cache_key != first.decision.cache_key

    def test_new_message_changes_key(self, engine, llm):
        post(engine, 'm1', 'The vendor contract came back with redlines', minutes_ago=2)
        engine.analyze_conversation_for_notification('conv-1', 'alice')
        post(engine, 'm2', 'Legal wants another pass on clause four')
        result = engine.analyze_conversation_for_notification('conv-1', 'alice')

        assert result.outcome == AnalysisOutcome.INFERRED
        assert result.decision.source_message_ids == ('m1', 'm2')


class TestGates:

    def test_active_viewer_never_receives_notifications(self, engine, transport):
        engine.set_viewing('alice', 'conv-1', True)
        post(engine, 'm1', '@alice the deploy is blocked on your approval')

        for _ in range(3):
            result = engine.analyze_conversation_for_notification('conv-1', 'alice', regenerate=True)
            assert result.decision.should_notify
            assert not result.delivery.delivered
            assert result.delivery.suppressed_by == SUPPRESSED_ACTIVE_VIEWER

        assert transport.sent == []
        entry = engine.decision_log.get(result.decision.decision_id)
        assert entry.suppressed_by == SUPPRESSED_ACTIVE_VIEWER

    def test_disabled_notifications(self, engine, llm):
        engine.update_preferences('alice', {'enabled': False})
        post(engine, 'm1', '@alice ping')

        result = engine.analyze_conversation_for_notification('conv-1', 'alice')
        assert result.outcome == AnalysisOutcome.SUPPRESSED
        assert result.decision.reason == 'Notifications disabled'

    def test_no_unread_messages(self, engine, message_store):
        post(engine, 'm1', 'The vendor contract came back')
        message_store.mark_read('conv-1', 'alice')

        result = engine.analyze_conversation_for_notification('conv-1', 'alice')
        assert not result.decision.should_notify
        assert result.decision.reason == 'No unread messages'

    def test_rate_limit_applies_fallback_strategy(self, engine, llm):
        engine.update_preferences('alice', {'max_analyses_per_hour': 1})
        post(engine, 'm1', 'The vendor contract came back', minutes_ago=3)
        engine.analyze_conversation_for_notification('conv-1', 'alice')
        post(engine, 'm2', 'The budget review slipped a week', minutes_ago=2)

        result = engine.analyze_conversation_for_notification('conv-1', 'alice')
        assert result.outcome == AnalysisOutcome.FALLBACK_HEURISTIC
        assert 'hourly analysis limit reached' in result.decision.reason
        assert llm.call_count == 1

    def test_rate_limit_suppress_all(self, engine, llm):
        engine.update_preferences('alice', {'max_analyses_per_hour': 0, 'fallback_strategy': 'suppress-all'})
        post(engine, 'm1', 'The vendor contract came back')

        result = engine.analyze_conversation_for_notification('conv-1', 'alice')
        assert result.outcome == AnalysisOutcome.SUPPRESSED
        assert llm.call_count == 0


class TestAuthorization:

    def test_caller_must_be_recipient(self, engine):
        post(engine, 'm1', '@alice ping')
        with pytest.raises(PermissionDeniedError):
            engine.analyze_conversation_for_notification('conv-1', 'alice', requesting_user_id='carol')

    def test_recipient_must_be_participant(self, engine):
        with pytest.raises(PermissionDeniedError):
            engine.analyze_conversation_for_notification('conv-2', 'carol', requesting_user_id='carol')

    def test_unknown_conversation(self, engine):
        with pytest.raises(ConversationNotFoundError):
            engine.analyze_conversation_for_notification('conv-404', 'alice')


class TestFeedback:

    @pytest.fixture
    def decision_id(self, engine):
        post(engine, 'm1', '@alice can you sign the invoice?')
        return engine.analyze_conversation_for_notification('conv-1', 'alice').decision.decision_id

    def test_records_feedback(self, engine, decision_id):
        record = engine.submit_feedback(decision_id, 'helpful', 'alice')
        assert record.decision.decision_id == decision_id
        assert 'invoice' in record.source_excerpt
        assert engine.decision_log.feedback_for_user('alice') == [record]

    def test_rejects_other_users(self, engine, decision_id):
        with pytest.raises(PermissionDeniedError):
            engine.submit_feedback(decision_id, 'helpful', 'carol')

    def test_rejects_unknown_values(self, engine, decision_id):
        with pytest.raises(ValueError):
            engine.submit_feedback(decision_id, 'meh', 'alice')

    def test_rejects_unknown_decisions(self, engine):
        with pytest.raises(DecisionNotFoundError):
            engine.submit_feedback('missing', 'helpful', 'alice')


class TestLearning:

    def test_unhelpful_lunch_notifications_are_suppressed(self, engine, llm, message_store):
        for i in range(5):
            llm.responses.append(llm_reply(True, 'Social plans', f'Bob Smith: lunch plans {i}', 'low'))
            post(engine, f'lunch-{i}', f'Lunch round {i} at the taco place', minutes_ago=10 - i)
            result = engine.analyze_conversation_for_notification('conv-1', 'alice')
            assert result.decision.should_notify
            engine.submit_feedback(result.decision.decision_id, 'not_helpful', 'alice')
            message_store.mark_read('conv-1', 'alice')

        profile = engine.refresh_profile('alice')
        assert 'lunch' in profile.suppressed_topics
        assert engine.get_profile('alice') == profile

        post(engine, 'lunch-next', 'Lunch is moving to the ramen spot', minutes_ago=1)
        result = engine.analyze_conversation_for_notification('conv-1', 'alice')
        assert not result.decision.should_notify
        assert result.outcome == AnalysisOutcome.HEURISTIC
        assert llm.call_count == 5


class TestMonitorIntegration:

    def test_ingest_routes_to_other_participants(self, engine):
        message = make_message('m1', 'status update')
        engine.message_store.add_message(message)
        assert engine.ingest_message(message) == 2

    def test_unknown_conversation_is_ignored(self, engine):
        assert engine.ingest_message(make_message('m1', 'hello', conversation_id='conv-404')) == 0

    def test_pause_triggers_single_analysis_per_debounce(self, engine, llm, clock):
        for i in range(3):
            post(engine, f'm{i}', 'The vendor contract came back', conversation_id='conv-2', created_at=clock())
        engine.monitors.drain()

        clock.advance(seconds=120)
        engine.monitors.poll()
        assert wait_for(lambda: engine.dispatcher.stats()['completed'] == 1)

        post(engine, 'm3', 'Another note on the contract', conversation_id='conv-2', created_at=clock())
        engine.monitors.drain()
        clock.advance(seconds=130)
        assert engine.monitors.poll() == []

        assert engine.dispatcher.stats()['submitted'] == 1
        assert llm.call_count == 1

    def test_viewing_prevents_triggered_analysis(self, engine, llm, clock):
        engine.set_viewing('alice', 'conv-2', True)
        post(engine, 'm1', 'The vendor contract came back', conversation_id='conv-2', created_at=clock())
        engine.monitors.drain()
        clock.advance(seconds=600)

        assert engine.monitors.poll() == []
        assert engine.dispatcher.stats()['submitted'] == 0


class TestPreferences:

    def test_update_bumps_version_and_coerces(self, engine):
        before = engine.get_preferences('alice')
        updated = engine.update_preferences('alice', {
            'quiet_hours': {'start': '23:00', 'end': '07:00', 'enabled': True},
            'fallback_strategy': 'notify-all'
        })
        assert updated.version == before.version + 1
        assert updated.quiet_hours == QuietHours(start='23:00', end='07:00', enabled=True)
        assert updated.fallback_strategy == FallbackStrategy.NOTIFY_ALL
        assert engine.get_preferences('alice') == updated

    @pytest.mark.parametrize('changes', [{'colour': 'blue'}, {'version': 7}, {'user_id': 'carol'}])
    def test_rejects_unknown_and_read_only_fields(self, engine, changes):
        with pytest.raises(ValueError):
            engine.update_preferences('alice', changes)

    @pytest.mark.parametrize('changes', [
        {'timezone': 'Not/AZone'},
        {'timezone': 42},
        {'quiet_hours': {'start': '25:00', 'end': '07:00'}},
        {'quiet_hours': {'start': '22:00', 'end': 'dawn'}},
        {'quiet_hours': {'start': '22:00', 'end': '07:00', 'snooze': True}},
        {'quiet_hours': {'start': '22:00', 'end': '07:00', 'enabled': 'yes'}},
        {'quiet_hours': '22:00-07:00'},
        {'enabled': 'false'},
        {'pause_threshold_seconds': 0},
        {'pause_threshold_seconds': '120'},
        {'message_count_threshold': True},
        {'max_analyses_per_hour': -1},
        {'priority_keywords': 'urgent'},
        {'priority_keywords': ['urgent', 3]},
        {'fallback_strategy': 'shrug'},
    ])
    def test_rejects_invalid_values_without_saving(self, engine, changes):
        before = engine.get_preferences('alice')
        with pytest.raises(ValueError):
            engine.update_preferences('alice', changes)
        assert engine.get_preferences('alice') == before

    def test_user_id_in_changes_is_rejected(self, engine):
        with pytest.raises(ValueError, match='read-only'):
            engine.update_preferences('alice', {'user_id': 'carol'})
        assert engine.get_preferences('carol').version == 0

    def test_defaults_come_from_settings(self, engine, settings):
        prefs = engine.get_preferences('alice')
        assert prefs.pause_threshold_seconds == settings.pause_threshold_seconds
        assert prefs.message_count_threshold == settings.message_count_threshold

    def test_stored_unusable_quiet_hours_do_not_break_analysis(self, engine, llm, transport, caplog):
        engine.preferences_store.save_preferences(UserNotificationPreferences(user_id='alice', timezone='Not/AZone'))
        llm.responses.append(llm_reply(True, 'Contract needs review', 'Bob Smith: contract is back', 'medium'))
        post(engine, 'm1', 'The vendor contract came back with redlines')

        result = engine.analyze_conversation_for_notification('conv-1', 'alice')
        assert result.decision.should_notify
        assert result.delivery.delivered
        assert len(transport.sent) == 1
        assert 'Ignoring unusable quiet hours' in caplog.text

    def test_update_reaches_running_monitor(self, engine, llm, clock):
        post(engine, 'm1', 'The vendor contract came back', conversation_id='conv-2', created_at=clock())
        engine.monitors.drain()

        engine.update_preferences('alice', {'pause_threshold_seconds': 30})
        clock.advance(seconds=31)
        fired = engine.monitors.poll()

        assert [t.conversation_id for t in fired] == ['conv-2']
        assert wait_for(lambda: engine.dispatcher.stats()['completed'] == 1)


class TestConfiguredDefaults:

    @pytest.fixture
    def settings(self, settings):
        return replace(settings, pause_threshold_seconds=30, message_count_threshold=3)

    def test_pause_threshold_from_settings(self, engine, clock):
        post(engine, 'm1', 'The vendor contract came back', conversation_id='conv-2', created_at=clock())
        engine.monitors.drain()

        clock.advance(seconds=29)
        assert engine.monitors.poll() == []
        clock.advance(seconds=2)
        assert [t.kind for t in engine.monitors.poll()] == [MonitorState.PAUSE_TRIGGERED]

    def test_count_threshold_from_settings(self, engine, clock):
        for i in range(4):
            post(engine, f'm{i}', f'Contract note {i}', conversation_id='conv-2', created_at=clock())
        engine.monitors.drain()

        state = engine.monitors.monitor_for('alice').conversation_state('conv-2')
        assert state.last_analysis_time == clock()


class TestRegistration:

    def test_register_user_and_conversation(self, engine):
        engine.register_user('dave', 'Dave Park')
        conversation = engine.register_conversation('conv-9', ['alice', 'dave', 'alice'])

        assert conversation.participant_ids == ['alice', 'dave']
        assert not conversation.is_group
        assert engine.message_store.get_user('dave').display_name == 'Dave Park'

        post(engine, 'm1', '@alice quick one', conversation_id='conv-9', sender_id='dave', sender_name='Dave Park')
        result = engine.analyze_conversation_for_notification('conv-9', 'alice')
        assert result.decision.should_notify

    def test_group_defaults_to_participant_count(self, engine):
        assert engine.register_conversation('conv-9', ['alice', 'bob', 'dave'], name='Ops').is_group

    def test_conversation_needs_two_participants(self, engine):
        with pytest.raises(ValueError):
            engine.register_conversation('conv-9', ['alice', 'alice'])

    def test_mark_read_clears_unread_and_state(self, engine, clock):
        post(engine, 'm1', 'The vendor contract came back', conversation_id='conv-2', created_at=clock())
        engine.monitors.drain()

        assert engine.mark_conversation_read('conv-2', 'alice') == 1
        assert engine.monitors.monitor_for('alice').conversation_state('conv-2') is None
        result = engine.analyze_conversation_for_notification('conv-2', 'alice')
        assert result.decision.reason == 'No unread messages'

    def test_mark_read_requires_participant(self, engine):
        with pytest.raises(PermissionDeniedError):
            engine.mark_conversation_read('conv-3', 'alice')

    def test_registration_needs_writable_store(self, engine):
        engine.message_store = MagicMock(spec=MessageStore)
        with pytest.raises(NotificationEngineError):
            engine.register_user('dave')


def rated(engine, clock, reason, value, notify=True, days_ago=0):
    decision = NotificationDecision(should_notify=notify,
                                    reason=reason,
                                    priority=Priority.LOW,
                                    source_conversation_id='conv-1',
                                    notification_text='Bob Smith: update' if notify else None,
                                    user_id='alice')
    engine.decision_log.append_feedback(FeedbackRecord(user_id='alice',
                                                       decision=decision,
                                                       feedback=FeedbackValue(value),
                                                       timestamp=clock() - timedelta(days=days_ago)))


class TestAnalytics:

    def test_counts_accuracy_and_false_positives(self, engine, clock):
        for _ in range(3):
            rated(engine, clock, 'Social plans', 'not_helpful')
        rated(engine, clock, 'Vendor update', 'not_helpful', days_ago=2)
        rated(engine, clock, 'Quiet thread', 'not_helpful', notify=False)
        rated(engine, clock, 'Deploy blocked', 'helpful')
        rated(engine, clock, 'Deploy blocked', 'helpful', days_ago=1)
        rated(engine, clock, 'Old news', 'not_helpful', days_ago=45)

        analytics = engine.get_notification_analytics('alice', requesting_user_id='alice')
        assert analytics.total_feedback == 7
        assert analytics.helpful_count == 2
        assert analytics.not_helpful_count == 5
        assert analytics.accuracy == 28.57
        assert analytics.common_false_positives == [('Social plans', 3), ('Vendor update', 1)]
        assert analytics.to_document()['common_false_positives'][0] == {'reason': 'Social plans', 'count': 3}

    def test_window_length(self, engine, clock):
        rated(engine, clock, 'Deploy blocked', 'helpful', days_ago=1)
        rated(engine, clock, 'Old news', 'not_helpful', days_ago=10)

        analytics = engine.get_notification_analytics('alice', days=7)
        assert analytics.period_days == 7
        assert analytics.total_feedback == 1
        assert analytics.accuracy == 100.0

    def test_false_positives_keep_top_five(self, engine, clock):
        for i in range(7):
            for _ in range(i + 1):
                rated(engine, clock, f'reason {i}', 'not_helpful')

        reasons = [r for r, _ in engine.get_notification_analytics('alice').common_false_positives]
        assert reasons == ['reason 6', 'reason 5', 'reason 4', 'reason 3', 'reason 2']

    def test_no_feedback(self, engine):
        analytics = engine.get_notification_analytics('alice')
        assert analytics.total_feedback == 0
        assert analytics.accuracy == 0.0
        assert analytics.common_false_positives == []

    def test_only_owner_may_view(self, engine):
        with pytest.raises(PermissionDeniedError):
            engine.get_notification_analytics('alice', requesting_user_id='carol')

    def test_days_must_be_positive(self, engine):
        with pytest.raises(ValueError):
            engine.get_notification_analytics('alice', days=0)
