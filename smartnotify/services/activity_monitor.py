"""
Activity monitoring: decides when a conversation should be analysed.

Each user has an ActivityMonitor holding one ConversationActivityState per
conversation. ActivityMonitorHub consumes a queue of inbound messages on a single
background thread and polls the monitors for pause triggers, so message
ingestion only ever enqueues. Viewer changes go straight to the owning
monitor through its lock.

State per conversation: IDLE -> ACCUMULATING -> PAUSE_TRIGGERED or
THRESHOLD_TRIGGERED -> DEBOUNCED -> IDLE (or ACCUMULATING if messages arrived
during the debounce).
"""

import queue
import threading
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional, Tuple

from ..models.core import ConversationActivityState, Message, MonitorState, UserNotificationPreferences
from ..utils.config import NotificationConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now

logger = get_logger(__name__)


@dataclass(frozen=True)
class Trigger:
    user_id: str
    conversation_id: str
    kind: MonitorState
    fired_at: datetime
    pending_messages: int


# Returns True if the analysis was dispatched, False if one is already running
TriggerHandler = Callable[[Trigger], bool]


class ActivityMonitor:
    """Trigger state machines for every conversation of one user."""

    def __init__(self,
                 user_id: str,
                 on_trigger: TriggerHandler,
                 settings: NotificationConfig,
                 preferences: Callable[[], UserNotificationPreferences],
                 clock: Callable[[], datetime] = utc_now):
        """
        Initialize the monitor.

        Args:
            user_id: The tracked user; their own messages never count
            on_trigger: Called when a conversation should be analysed
            settings: Window and debounce lengths
            preferences: Loads the user's preferences (pause and count thresholds); called
                once and again only after ``refresh_preferences``
            clock: Callable returning the current aware datetime
        """
        self.user_id = user_id
        self.on_trigger = on_trigger
        self.window = timedelta(seconds=settings.threshold_window_seconds)
        self.debounce = timedelta(seconds=settings.debounce_seconds)
        self.load_preferences = preferences
        self.clock = clock
        self._preferences: Optional[UserNotificationPreferences] = None
        self._states: Dict[str, ConversationActivityState] = {}
        self._arrivals: Dict[str, Deque[datetime]] = {}
        self._lock = threading.RLock()

    def preferences(self) -> UserNotificationPreferences:
        """Cached preferences, loaded on first use."""
        prefs = self._preferences
        if prefs is None:
            prefs = self.load_preferences()
            self._preferences = prefs
        return prefs

    def refresh_preferences(self, preferences: Optional[UserNotificationPreferences] = None) -> None:
        """Replace the cached preferences, or drop them so the next use reloads."""
        self._preferences = preferences

    def _state(self, conversation_id: str) -> ConversationActivityState:
        state = self._states.get(conversation_id)
        if state is None:
            state = ConversationActivityState(conversation_id=conversation_id)
            self._states[conversation_id] = state
        return state

    def _reset_window(self, state: ConversationActivityState) -> None:
        self._arrivals.pop(state.conversation_id, None)
        state.message_count_in_window = 0
        state.window_start_time = None
        state.pending_messages = 0

    def _count_in_window(self, state: ConversationActivityState, now: datetime) -> int:
        arrivals = self._arrivals.get(state.conversation_id)
        if arrivals is None:
            return 0
        while arrivals and now - arrivals[0] > self.window:
            arrivals.popleft()
        state.message_count_in_window = len(arrivals)
        state.window_start_time = arrivals[0] if arrivals else None
        return len(arrivals)

    def _debouncing(self, state: ConversationActivityState, now: datetime) -> bool:
        return state.last_analysis_time is not None and now - state.last_analysis_time < self.debounce

    def handle_message(self, message: Message, now: Optional[datetime] = None) -> Optional[Trigger]:
        """
        Record an inbound message.

        Returns:
            The trigger fired by this message, if any
        """
        if message.sender_id == self.user_id:
            return None
        now = now or self.clock()
        threshold = self.preferences().message_count_threshold

        with self._lock:
            state = self._state(message.conversation_id)
            state.last_message_time = now

            if state.is_user_viewing:
                self._reset_window(state)
                state.state = MonitorState.IDLE
                return None

            self._arrivals.setdefault(message.conversation_id, deque()).append(now)
            count = self._count_in_window(state, now)
            state.pending_messages += 1

            if self._debouncing(state, now):
                state.state = MonitorState.DEBOUNCED
                return None

            state.state = MonitorState.ACCUMULATING
            if count > threshold:
                return self._fire(state, MonitorState.THRESHOLD_TRIGGERED, now)
            return None

    def set_viewing(self, conversation_id: str, viewing: bool, now: Optional[datetime] = None) -> None:
        """Record that the user opened or left a conversation."""
        with self._lock:
            state = self._state(conversation_id)
            state.is_user_viewing = viewing
            if viewing:
                self._reset_window(state)
                if not self._debouncing(state, now or self.clock()):
                    state.state = MonitorState.IDLE

    def is_viewing(self, conversation_id: str) -> bool:
        with self._lock:
            state = self._states.get(conversation_id)
            return bool(state and state.is_user_viewing)

    def poll(self, now: Optional[datetime] = None) -> List[Trigger]:
        """
        Advance time-based transitions: debounce expiry and pause triggers.

        Returns:
            Triggers fired during this poll
        """
        now = now or self.clock()
        prefs = self.preferences()
        pause = timedelta(seconds=prefs.pause_threshold_seconds)
        fired = []

        with self._lock:
            for state in self._states.values():
                if state.state == MonitorState.DEBOUNCED:
                    if self._debouncing(state, now):
                        continue
                    state.state = MonitorState.ACCUMULATING if state.pending_messages else MonitorState.IDLE

                if state.state != MonitorState.ACCUMULATING or state.is_user_viewing or not state.pending_messages:
                    continue

                if self._count_in_window(state, now) > prefs.message_count_threshold:
                    trigger = self._fire(state, MonitorState.THRESHOLD_TRIGGERED, now)
                elif state.last_message_time is not None and now - state.last_message_time >= pause:
                    trigger = self._fire(state, MonitorState.PAUSE_TRIGGERED, now)
                else:
                    trigger = None
                if trigger:
                    fired.append(trigger)

        return fired

    def _fire(self, state: ConversationActivityState, kind: MonitorState, now: datetime) -> Optional[Trigger]:
        trigger = Trigger(user_id=self.user_id,
                          conversation_id=state.conversation_id,
                          kind=kind,
                          fired_at=now,
                          pending_messages=state.pending_messages)
        state.state = kind

        if not self.on_trigger(trigger):
            # An analysis is still running; retry on a later poll
            state.state = MonitorState.ACCUMULATING
            logger.debug(f'{kind.value} for {state.conversation_id} deferred: analysis in flight')
            return None

        logger.info(f'{kind.value} for user {self.user_id} in {state.conversation_id} '
                    f'({state.pending_messages} pending messages)')
        state.last_analysis_time = now
        self._reset_window(state)
        state.state = MonitorState.DEBOUNCED
        return trigger

    def conversation_state(self, conversation_id: str) -> Optional[ConversationActivityState]:
        """Snapshot of a conversation's state, or None if it was never tracked."""
        with self._lock:
            state = self._states.get(conversation_id)
            return replace(state) if state else None

    def reset_conversation(self, conversation_id: str) -> None:
        """Forget everything about a conversation, including debounce."""
        with self._lock:
            self._states.pop(conversation_id, None)
            self._arrivals.pop(conversation_id, None)


class ActivityMonitorHub:
    """Owns every user's monitor and feeds them from one event queue.

    Args:
        monitor_factory: Builds the ActivityMonitor for a user on first use
        tick_seconds: Poll interval of the background thread
    """

    _STOP = object()

    def __init__(self, monitor_factory: Callable[[str], ActivityMonitor], tick_seconds: float = 1.0):
        self.monitor_factory = monitor_factory
        self.tick_seconds = tick_seconds
        self._monitors: Dict[str, ActivityMonitor] = {}
        self._monitors_lock = threading.Lock()
        self._events: 'queue.Queue' = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def monitor_for(self, user_id: str) -> ActivityMonitor:
        with self._monitors_lock:
            monitor = self._monitors.get(user_id)
            if monitor is None:
                monitor = self.monitor_factory(user_id)
                self._monitors[user_id] = monitor
            return monitor

    def submit_message(self, recipients: List[str], message: Message) -> None:
        """Enqueue a message for each recipient's monitor and return immediately."""
        for user_id in recipients:
            self._events.put((user_id, message))

    def is_viewing(self, user_id: str, conversation_id: str) -> bool:
        with self._monitors_lock:
            monitor = self._monitors.get(user_id)
        return bool(monitor and monitor.is_viewing(conversation_id))

    def _handle(self, event: Tuple[str, Message]) -> None:
        user_id, message = event
        self.monitor_for(user_id).handle_message(message)

    def drain(self) -> int:
        """Process every queued event on the calling thread, then poll once."""
        handled = 0
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                break
            if event is not self._STOP:
                self._handle(event)
                handled += 1
        self.poll()
        return handled

    def refresh_preferences(self, user_id: str, preferences: Optional[UserNotificationPreferences] = None) -> None:
        """Push changed preferences to the user's monitor, if it exists."""
        with self._monitors_lock:
            monitor = self._monitors.get(user_id)
        if monitor is not None:
            monitor.refresh_preferences(preferences)

    def poll(self) -> List[Trigger]:
        with self._monitors_lock:
            monitors = list(self._monitors.values())
        fired = []
        for monitor in monitors:
            # Failures stay per user
            try:
                fired.extend(monitor.poll())
            except Exception as e:
                logger.error(f'Activity poll failed for {monitor.user_id}: {e}')
        return fired

    def _run(self) -> None:
        logger.info('Activity monitor started')
        while True:
            try:
                event = self._events.get(timeout=self.tick_seconds)
            except queue.Empty:
                event = None

            if event is self._STOP:
                break
            if event is not None:
                try:
                    self._handle(event)
                except Exception as e:
                    logger.error(f'Failed to process message {event[1].message_id} for {event[0]}: {e}')
            try:
                self.poll()
            except Exception as e:
                logger.error(f'Activity poll failed: {e}')
        logger.info('Activity monitor stopped')

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name='activity-monitor', daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        if self._thread is None:
            return
        self._events.put(self._STOP)
        self._thread.join(timeout)
        self._thread = None
