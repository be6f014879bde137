"""
Amazon Bedrock embedding client for message text.
"""

import json
import random
import time
from typing import Any, Dict, List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client supporting Titan and Cohere models."""

    def __init__(self, config: BedrockEmbedConfig):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension

        if 'cohere' in self.model_id.lower() and self.dimension != 1024:
            raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.dimension}')

        self.bedrock = boto3.client(service_name='bedrock-runtime', region_name=config.region)
        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _invoke(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Invoke the embedding model, retrying transient AWS failures."""
        body = json.dumps(payload)
        attempts = max(1, self.config.retry_attempts)

        for attempt in range(attempts):
            try:
                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                return json.loads(response.get('body').read())

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{attempts} failed: {e}')
                if attempt >= attempts - 1:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {attempts} attempts: {e}') from e
                time.sleep(self.config.retry_delay * (2**attempt) + random.uniform(0, 0.5))

            except json.JSONDecodeError as e:
                raise BedrockEmbedError(f'Malformed Bedrock Embed response: {e}') from e

        raise BedrockEmbedError(f'Bedrock Embed failed after {attempts} attempts')

    def _embed(self, text: str, input_type: str) -> List[float]:
        if not text or not text.strip():
            logger.warning(f'Empty text provided for {input_type} embedding')
            return [0.0] * self.dimension

        model = self.model_id.lower()
        if 'titan' in model:
            response = self._invoke({'inputText': text, 'dimensions': self.dimension})
            vector = response.get('embedding')
        elif 'cohere' in model:
            response = self._invoke({'input_type': input_type, 'texts': [text]})
            vectors = response.get('embeddings') or []
            vector = vectors[0] if vectors else None
        else:
            raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

        if not vector:
            raise BedrockEmbedError('Embedding response contained no vector')
        return vector

    def embed_document(self, text: str) -> List[float]:
        """
        Embed a message body for storage in the vector index.

        Args:
            text: Message text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        return self._embed(text, 'search_document')

    def embed_query(self, text: str) -> List[float]:
        """Embed text used as a similarity query."""
        return self._embed(text, 'search_query')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return len(self.embed_document('health check')) == self.dimension
        except BedrockEmbedError as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
