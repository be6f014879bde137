"""
OpenSearch client wrapper for message embeddings and engine documents.

One OpenSearch domain holds several indices named ``{index_name}_{index_type}``:
a kNN index of message embeddings plus plain document indices for cached
decisions, the decision log, feedback, preferences and learned profiles.
"""

import time
from typing import Any, Dict, Iterable, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)

EMBEDDING_INDEX = 'embedding'
DOCUMENT_INDICES = ('cache', 'decision', 'feedback', 'preferences', 'profile')

_KEYWORD = {'type': 'keyword'}
_DATE = {'type': 'date'}


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config

        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
        host = config.endpoint.split('://', 1)[1] if '://' in config.endpoint else config.endpoint

        self.client = OpenSearch(hosts=[{'host': host, 'port': config.port}],
                                 http_auth=auth,
                                 use_ssl=True,
                                 verify_certs=True,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_for(self, index_type: str) -> str:
        return f'{self.config.index_name}_{index_type}'

    def _index_body(self, index_type: str) -> Dict[str, Any]:
        if index_type == EMBEDDING_INDEX:
            return {
                'mappings': {
                    'properties': {
                        'message_id': _KEYWORD,
                        'conversation_id': _KEYWORD,
                        'text': {'type': 'text'},
                        'embedding': {
                            'type': 'knn_vector',
                            'dimension': self.config.dimension,
                            'method': {'name': 'hnsw', 'space_type': 'cosinesimil', 'engine': 'nmslib'}
                        },
                        'embedded_at': _DATE,
                    }
                },
                'settings': {'index': {'knn': True, 'knn.algo_param.ef_search': 100}}
            }

        # Document indices keep identifiers as keywords so term filters match exactly
        return {
            'mappings': {
                'dynamic': True,
                'properties': {
                    'user_id': _KEYWORD,
                    'conversation_id': _KEYWORD,
                    'decision_id': _KEYWORD,
                    'cache_key': _KEYWORD,
                    'generated_at': _DATE,
                    'cached_at': _DATE,
                    'recorded_at': _DATE,
                }
            }
        }

    def create_index_if_not_exists(self, index_type: str) -> str:
        """
        Create an index if it doesn't exist.

        Args:
            index_type: ``embedding`` or one of the document index types

        Returns:
            'exists', 'created' or 'failed'

        Raises:
            OpenSearchError: If the create request errors
        """
        index_name = self.index_for(index_type)
        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body=self._index_body(index_type))
            if not response.get('acknowledged', False):
                logger.warning(f'Index {index_name} creation was not acknowledged')
                return 'failed'

            logger.info(f'Created index {index_name}')
            return 'created'

        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}') from e

    def ensure_indices(self, settle_seconds: float = 0.0) -> None:
        """Create every index the engine uses, optionally waiting for sync-up."""
        created = [t for t in (EMBEDDING_INDEX, ) + DOCUMENT_INDICES if self.create_index_if_not_exists(t) == 'created']
        if created and settle_seconds:
            logger.info(f'Waiting {settle_seconds}s for index sync-up...')
            time.sleep(settle_seconds)

    def put_document(self, index_type: str, doc_id: str, document: Dict[str, Any]) -> bool:
        """
        Create or overwrite a document under a fixed id.

        Returns:
            True if the document was created or updated

        Raises:
            OpenSearchError: If the request fails
        """
        index_name = self.index_for(index_type)
        try:
            response = self.client.index(index=index_name, id=doc_id, body=document)
            success = response.get('result') in ('created', 'updated')
            if not success:
                logger.warning(f'Unexpected result indexing {doc_id} in {index_name}: {response}')
            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing {doc_id} in {index_name}: {e}')
            raise OpenSearchError(f'Failed to index document: {e}') from e

    def get_document(self, index_type: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a document by id.

        Returns:
            The document source, or None if it does not exist
        """
        index_name = self.index_for(index_type)
        try:
            response = self.client.get(index=index_name, id=doc_id, _source_excludes=['embedding'])
            return response.get('_source') if response.get('found') else None

        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {doc_id} from {index_name}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}') from e

    def get_vector(self, doc_id: str) -> Optional[Dict[str, Any]]:
        """Fetch an embedding document including its vector."""
        try:
            response = self.client.get(index=self.index_for(EMBEDDING_INDEX), id=doc_id)
            return response.get('_source') if response.get('found') else None
        except NotFoundError:
            return None
        except OpenSearchException as e:
            raise OpenSearchError(f'Failed to get embedding {doc_id}: {e}') from e

    @staticmethod
    def _term_filters(filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        clauses = []
        for field, value in (filters or {}).items():
            if isinstance(value, (list, tuple, set)):
                clauses.append({'terms': {field: list(value)}})
            else:
                clauses.append({'term': {field: value}})
        return clauses

    def search_documents(self,
                         index_type: str,
                         filters: Optional[Dict[str, Any]] = None,
                         size: int = 100,
                         sort_field: Optional[str] = None,
                         descending: bool = True,
                         ranges: Optional[Dict[str, Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
        """
        Return document sources matching exact-value filters.

        Args:
            index_type: Document index type
            filters: Field to value (or list of values) exact matches
            size: Maximum number of documents to return
            sort_field: Optional field to sort on
            descending: Sort direction
            ranges: Field to range condition, e.g. ``{'recorded_at': {'gte': ...}}``

        Returns:
            List of document sources
        """
        index_name = self.index_for(index_type)
        clauses = self._term_filters(filters)
        clauses.extend({'range': {field: condition}} for field, condition in (ranges or {}).items())
        body: Dict[str, Any] = {'size': size, 'query': {'bool': {'filter': clauses}}}
        if sort_field:
            body['sort'] = [{sort_field: {'order': 'desc' if descending else 'asc'}}]

        try:
            response = self.client.search(index=index_name, body=body)
            return [hit['_source'] for hit in response['hits']['hits']]

        except NotFoundError:
            return []
        except OpenSearchException as e:
            logger.error(f'Error searching {index_name}: {e}')
            raise OpenSearchError(f'Document search failed: {e}') from e

    def distinct_values(self, index_type: str, field: str, size: int = 10000) -> List[Any]:
        """
        Return the distinct values of a keyword field using a terms aggregation.

        Args:
            index_type: Document index type
            field: Keyword field to aggregate on
            size: Maximum number of distinct values

        Returns:
            Distinct values, most frequent first
        """
        index_name = self.index_for(index_type)
        body = {'size': 0, 'aggs': {'values': {'terms': {'field': field, 'size': size}}}}

        try:
            response = self.client.search(index=index_name, body=body)
            return [bucket['key'] for bucket in response['aggregations']['values']['buckets']]

        except NotFoundError:
            return []
        except OpenSearchException as e:
            logger.error(f'Error aggregating {field} in {index_name}: {e}')
            raise OpenSearchError(f'Aggregation failed: {e}') from e

    def vector_search(self,
                      query_vector: List[float],
                      conversation_ids: Iterable[str],
                      top_k: int = 10,
                      exclude_ids: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        """
        Perform vector similarity search over message embeddings.

        Args:
            query_vector: Query vector for similarity search
            conversation_ids: Only messages from these conversations are eligible
            top_k: Number of results to return
            exclude_ids: Message ids that must not appear in the results

        Returns:
            List of ``{'id', 'score', 'document'}`` results
        """
        scope = list(conversation_ids)
        if not scope:
            return []

        bool_query: Dict[str, Any] = {
            'must': [{'knn': {'embedding': {'vector': query_vector, 'k': top_k}}}],
            'filter': [{'terms': {'conversation_id': scope}}],
        }
        excluded = list(exclude_ids or [])
        if excluded:
            bool_query['must_not'] = [{'terms': {'message_id': excluded}}]

        search_body = {'size': top_k, 'query': {'bool': bool_query}, '_source': {'excludes': ['embedding']}}

        try:
            response = self.client.search(index=self.index_for(EMBEDDING_INDEX), body=search_body)
            results = [{'id': hit['_id'], 'score': hit['_score'], 'document': hit['_source']}
                       for hit in response['hits']['hits']]
            logger.debug(f'Vector search returned {len(results)} results across {len(scope)} conversations')
            return results

        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}') from e

    def delete_document(self, index_type: str, doc_id: str) -> bool:
        """
        Delete a document from an index.

        Returns:
            True if deletion was successful, False if the document was absent
        """
        index_name = self.index_for(index_type)
        try:
            response = self.client.delete(index=index_name, id=doc_id)
            return response.get('result') == 'deleted'

        except NotFoundError:
            logger.warning(f'Document {doc_id} not found for deletion')
            return False
        except OpenSearchException as e:
            logger.error(f'Error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to delete document: {e}') from e

    def cleanup(self) -> bool:
        """
        Delete every index owned by the engine.

        Returns:
            True if cleanup was successful
        """
        try:
            for index_type in (EMBEDDING_INDEX, ) + DOCUMENT_INDICES:
                index_name = self.index_for(index_type)
                if self.client.indices.exists(index=index_name):
                    self.client.indices.delete(index=index_name)
                    logger.info(f'Deleted index: {index_name}')
            return True

        except OpenSearchException as e:
            logger.error(f'Error during OpenSearch cleanup: {e}')
            raise OpenSearchError(f'Failed to cleanup OpenSearch: {e}') from e

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return self.client.indices.exists(index=self.index_for(EMBEDDING_INDEX)) in (True, False)
        except OpenSearchException as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
