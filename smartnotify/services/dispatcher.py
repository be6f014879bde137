"""
Background execution of triggered analyses.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, Set, Tuple

from ..utils.logging_config import get_logger
from .activity_monitor import Trigger

logger = get_logger(__name__)


class AnalysisDispatcher:
    """Thread pool running analyses with at most one in flight per (user, conversation)."""

    def __init__(self, analyze: Callable[[str, str], Any], max_workers: int = 4):
        """
        Initialize the dispatcher.

        Args:
            analyze: ``(conversation_id, user_id) -> result`` pipeline entry point
            max_workers: Pool size
        """
        self.analyze = analyze
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='analysis')
        self._in_flight: Set[Tuple[str, str]] = set()
        self._lock = threading.Lock()
        self._submitted = 0
        self._completed = 0
        self._failed = 0

    def in_flight(self, user_id: str, conversation_id: str) -> bool:
        with self._lock:
            return (user_id, conversation_id) in self._in_flight

    def dispatch(self, trigger: Trigger) -> bool:
        """Trigger handler for the activity monitor; never blocks."""
        return self.submit(trigger.user_id, trigger.conversation_id) is not None

    def submit(self, user_id: str, conversation_id: str) -> Optional[Future]:
        """
        Schedule an analysis unless one is already running for the pair.

        Returns:
            The Future of the scheduled analysis, or None if one is in flight
            or the pool no longer accepts work
        """
        key = (user_id, conversation_id)
        with self._lock:
            if key in self._in_flight:
                return None
            self._in_flight.add(key)
            self._submitted += 1

        def _tracked():
            try:
                return self.analyze(conversation_id, user_id)
            except Exception as e:
                with self._lock:
                    self._failed += 1
                logger.error(f'Analysis of {conversation_id} for {user_id} failed: {e}')
                raise
            finally:
                with self._lock:
                    self._in_flight.discard(key)
                    self._completed += 1

        try:
            return self._executor.submit(_tracked)
        except RuntimeError as e:
            with self._lock:
                self._in_flight.discard(key)
                self._submitted -= 1
            logger.warning(f'Dropped analysis of {conversation_id} for {user_id}: {e}')
            return None

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                'in_flight': len(self._in_flight),
                'submitted': self._submitted,
                'completed': self._completed,
                'failed': self._failed,
            }

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        logger.info('Analysis dispatcher shut down')
