"""
Amazon Bedrock Rerank client for ordering retrieved context messages.
"""

import json
import random
import time
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockRerankConfig
from .logging_config import get_logger

logger = get_logger(__name__)

RERANK_REGIONS = ('us-west-2', 'ap-northeast-1', 'ca-central-1', 'eu-central-1')


class BedrockRerankError(Exception):
    """Custom exception for Bedrock Rerank errors."""
    pass


class BedrockRerank:
    """Amazon Bedrock Rerank client."""

    def __init__(self, config: BedrockRerankConfig):
        """
        Initialize Bedrock Rerank client.

        Args:
            config: BedrockRerankConfig instance with connection parameters

        Raises:
            BedrockRerankError: If the region does not host the rerank API
        """
        if config.region not in RERANK_REGIONS:
            raise BedrockRerankError(f'Rerank is not available in region {config.region}')

        self.config = config
        self.model_id = config.model_id
        self.bedrock_runtime = boto3.client('bedrock-runtime', region_name=config.region)
        logger.info(f'Initialized Bedrock Rerank client in region: {config.region}, with model: {config.model_id}')

    def rerank(self, query: str, documents: List[str], top_k: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Order documents by relevance to a query.

        Args:
            query: Text the documents are scored against
            documents: Plain-text documents
            top_k: Number of results to return (default: all documents)

        Returns:
            List of ``{'index', 'relevance_score', 'document'}`` dicts, best first

        Raises:
            BedrockRerankError: If reranking fails
        """
        if not query or not query.strip() or not documents:
            return []

        top_n = min(top_k or len(documents), len(documents))
        data = {'query': query.strip()[:2000], 'documents': list(documents), 'top_n': top_n}
        if 'cohere' in self.model_id.lower():
            data['api_version'] = 2
        body = json.dumps(data)
        attempts = max(1, self.config.retry_attempts)

        for attempt in range(attempts):
            try:
                response = self.bedrock_runtime.invoke_model(modelId=self.model_id,
                                                             accept='application/json',
                                                             contentType='application/json',
                                                             body=body)
                response_body = json.loads(response.get('body').read())
                if 'results' not in response_body:
                    raise BedrockRerankError('Invalid response format from Bedrock rerank')

                return [{'document': documents[res['index']], **res} for res in response_body['results']]

            except (ClientError, BotoCoreError, json.JSONDecodeError) as e:
                logger.warning(f'Bedrock Rerank attempt {attempt + 1}/{attempts} failed: {e}')
                if attempt >= attempts - 1:
                    raise BedrockRerankError(f'Bedrock Rerank failed after {attempts} attempts: {e}') from e
                time.sleep(self.config.retry_delay * (2**attempt) + random.uniform(0, 0.5))

        raise BedrockRerankError(f'Bedrock Rerank failed after {attempts} attempts')

    def health_check(self) -> bool:
        """Return True if the rerank model answers a trivial request."""
        try:
            return len(self.rerank('status', ['ok', 'not ok'], top_k=1)) > 0
        except BedrockRerankError as e:
            logger.error(f'Bedrock Rerank health check failed: {e}')
            return False
