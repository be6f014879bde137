"""
Amazon Bedrock inference client used for notification decisions.
"""

import random
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError

from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockLLMTimeoutError(BedrockLLMError):
    """Custom exception for Bedrock LLM calls that exceed their deadline."""
    pass


class BedrockLLM:
    """Amazon Bedrock Converse client with a hard per-call deadline."""

    def __init__(self, config: BedrockLLMConfig):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id

        # Socket timeouts track the decision deadline; retries are handled here
        self.bedrock_runtime = boto3.client('bedrock-runtime',
                                            region_name=config.region,
                                            config=BotoConfig(connect_timeout=config.timeout_seconds,
                                                              read_timeout=config.timeout_seconds,
                                                              retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id} '
                    f'(timeout {config.timeout_seconds}s)')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None,
                          deadline: Optional[float] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate a completion with the Converse stream API.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation
            deadline: Absolute ``time.monotonic()`` value after which the call is
                abandoned (defaults to now + configured timeout)

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            BedrockLLMTimeoutError: If the deadline passes before the stream completes
            BedrockLLMError: If all retry attempts fail
        """
        if deadline is None:
            deadline = time.monotonic() + self.config.timeout_seconds
        inf_params = {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature if temperature is None else temperature,
            'stopSequences': stop_sequences or [],
        }
        attempts = max(1, self.config.retry_attempts)

        for attempt in range(attempts):
            if time.monotonic() >= deadline:
                raise BedrockLLMTimeoutError('Bedrock LLM deadline expired before request was sent')
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{attempts}')
                response = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                                messages=messages,
                                                                system=[{'text': system_prompt}],
                                                                inferenceConfig=inf_params)
                return self._consume_stream(response.get('stream'), deadline)

            except (ReadTimeoutError, ConnectTimeoutError) as e:
                logger.warning(f'Bedrock LLM call timed out: {e}')
                raise BedrockLLMTimeoutError(f'Bedrock LLM timed out: {e}') from e

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{attempts} failed: {e}')
                if attempt >= attempts - 1:
                    raise BedrockLLMError(f'Bedrock LLM failed after {attempts} attempts: {e}') from e

                # Exponential backoff with jitter, never past the deadline
                delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 0.25)
                remaining = deadline - time.monotonic()
                if remaining <= delay:
                    raise BedrockLLMTimeoutError('Bedrock LLM deadline expired during retry backoff') from e
                time.sleep(delay)

        raise BedrockLLMError(f'Bedrock LLM failed after {attempts} attempts')

    @staticmethod
    def _consume_stream(stream, deadline: float) -> Tuple[str, Optional[Dict[str, Any]]]:
        """Collect streamed text deltas, aborting when the deadline passes."""
        chunks = []
        invoke_metrics = None

        for event in stream or []:
            if time.monotonic() >= deadline:
                raise BedrockLLMTimeoutError('Bedrock LLM stream exceeded deadline')
            if 'contentBlockDelta' in event:
                chunks.append(event['contentBlockDelta']['delta'].get('text', ''))
            if 'metadata' in event:
                invoke_metrics = {**event['metadata'].get('usage', {}), **event['metadata'].get('metrics', {})}

        text = ''.join(chunks)
        logger.debug(f'Bedrock LLM response generated (length: {len(text)})')
        return text, invoke_metrics

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response, _ = self.generate_response(messages=[{'role': 'user', 'content': [{'text': 'Hi'}]}],
                                                 system_prompt="Respond with just 'OK'.",
                                                 max_tokens=5,
                                                 temperature=0.0)
            return len(response.strip()) > 0

        except BedrockLLMError as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
