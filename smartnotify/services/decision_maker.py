"""
Inference-backed notification decisions with deterministic fallback.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..models.core import AnalysisOutcome, NotificationDecision, Priority, RetrievedContext, UserIdentity
from ..utils.bedrock_llm import BedrockLLMError, BedrockLLMTimeoutError
from ..utils.json_utils import parse_json_object
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now
from .heuristics import fallback_decision, summarize_message, truncate_text
from .prompts import STRICT_FORMAT_INSTRUCTION, build_system_prompt, build_user_prompt

logger = get_logger(__name__)

PREFILL = '```json'


@dataclass
class InferenceResult:
    decision: NotificationDecision
    outcome: AnalysisOutcome
    attempts: int = 0


def validate_response(payload: Dict[str, Any], max_length: int = 100) -> Dict[str, Any]:
    """
    Check an inference payload against the decision schema.

    Args:
        payload: Parsed JSON object
        max_length: Notification text limit; longer text is truncated

    Returns:
        Normalised payload

    Raises:
        ValueError: If a field is missing or has the wrong type
    """
    should_notify = payload.get('shouldNotify')
    if not isinstance(should_notify, bool):
        raise ValueError('shouldNotify must be a boolean')

    reason = payload.get('reason')
    if not isinstance(reason, str) or not reason.strip():
        raise ValueError('reason must be a non-empty string')

    text = payload.get('notificationText', '')
    if text is None:
        text = ''
    if not isinstance(text, str):
        raise ValueError('notificationText must be a string')

    priority = payload.get('priority')
    if not isinstance(priority, str) or priority.lower() not in {p.value for p in Priority}:
        raise ValueError(f'priority must be high, medium or low, got {priority!r}')

    return {
        'should_notify': should_notify,
        'reason': reason.strip(),
        'notification_text': truncate_text(text, max_length) if should_notify and text.strip() else None,
        'priority': Priority(priority.lower()),
    }


class InferenceDecisionMaker:
    """Asks the inference backend for a decision, falling back to the shared heuristic rules."""

    def __init__(self,
                 llm,
                 timeout_seconds: float = 10.0,
                 temperature: float = 0.2,
                 max_text_length: int = 100,
                 clock: Callable[[], datetime] = utc_now):
        """
        Initialize the decision maker.

        Args:
            llm: Object exposing BedrockLLM's ``generate_response``
            timeout_seconds: Wall-clock budget for the inference step, retry included
            temperature: Sampling temperature
            max_text_length: Notification text limit
            clock: Callable returning the current aware datetime
        """
        self.llm = llm
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_text_length = max_text_length
        self.clock = clock
        self.system_prompt = build_system_prompt(max_text_length)
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix='inference')

    def _call(self, messages: List[Dict[str, Any]], deadline: float) -> str:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise BedrockLLMTimeoutError('Inference budget exhausted')

        future = self._executor.submit(self.llm.generate_response,
                                       messages=messages,
                                       system_prompt=self.system_prompt,
                                       temperature=self.temperature,
                                       stop_sequences=['```'])
        try:
            response, _ = future.result(timeout=remaining)
        except FutureTimeoutError as e:
            # The worker finishes in the background; its answer is discarded
            future.cancel()
            raise BedrockLLMTimeoutError(f'Inference exceeded {self.timeout_seconds}s') from e
        return response

    def decide(self, context: RetrievedContext, identity: UserIdentity, conversation_id: str,
               cache_key: Optional[str] = None) -> InferenceResult:
        """
        Produce a decision for the assembled context.

        Malformed output is retried once with a stricter instruction. Timeouts,
        backend errors and a second malformed reply fall back to heuristics.

        Args:
            context: Retrieved context
            identity: Recipient's display identity
            conversation_id: Conversation under analysis
            cache_key: Cache key to stamp on the decision

        Returns:
            InferenceResult with outcome INFERRED or FALLBACK_HEURISTIC
        """
        deadline = time.monotonic() + self.timeout_seconds
        user_prompt = build_user_prompt(context, identity, self.clock())
        messages = [{'role': 'user', 'content': [{'text': user_prompt}]}, {'role': 'assistant', 'content': [{'text': PREFILL}]}]

        raw = ''
        attempts = 0
        cause = 'malformed inference output'
        for strict in (False, True):
            if strict:
                messages = messages[:-1] + [{
                    'role': 'assistant',
                    'content': [{'text': raw or '(empty)'}]
                }, {
                    'role': 'user',
                    'content': [{'text': STRICT_FORMAT_INSTRUCTION}]
                }, {
                    'role': 'assistant',
                    'content': [{'text': PREFILL}]
                }]
            attempts += 1
            try:
                raw = self._call(messages, deadline)
            except BedrockLLMTimeoutError as e:
                logger.warning(f'Inference timed out for {conversation_id}: {e}')
                cause = 'inference timed out'
                break
            except BedrockLLMError as e:
                logger.warning(f'Inference unavailable for {conversation_id}: {e}')
                cause = 'inference unavailable'
                break

            try:
                fields = validate_response(parse_json_object(raw), self.max_text_length)
            except ValueError as e:
                logger.warning(f'Malformed inference output for {conversation_id} (attempt {attempts}): {e}')
                continue

            if fields['should_notify'] and not fields['notification_text'] and context.unread_messages:
                fields['notification_text'] = summarize_message(context.unread_messages[-1], self.max_text_length)

            decision = NotificationDecision(source_conversation_id=conversation_id,
                                            source_message_ids=tuple(m.message_id for m in context.unread_messages),
                                            cache_key=cache_key,
                                            user_id=identity.user_id,
                                            **fields)
            logger.info(f'Inferred decision for {conversation_id}: notify={decision.should_notify} '
                        f'priority={decision.priority.value}')
            return InferenceResult(decision=decision, outcome=AnalysisOutcome.INFERRED, attempts=attempts)

        decision = fallback_decision(context.unread_messages,
                                     identity,
                                     context.preferences,
                                     context.profile,
                                     conversation_id,
                                     cache_key=cache_key,
                                     cause=cause,
                                     max_length=self.max_text_length)
        logger.info(f'Fallback decision for {conversation_id} ({cause}): notify={decision.should_notify}')
        return InferenceResult(decision=decision, outcome=AnalysisOutcome.FALLBACK_HEURISTIC, attempts=attempts)

    def close(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
