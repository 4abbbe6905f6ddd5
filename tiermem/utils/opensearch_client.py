"""
OpenSearch client wrapper backing the persistent memory store.
"""

from typing import Any, Dict, List, Optional, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import ConflictError, NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchConflictError(OpenSearchError):
    """Raised when an externally versioned write loses a compare-and-swap race."""
    pass


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built opensearch-py client (used instead of connecting)
        """
        self.config = config

        if client is not None:
            self.client = client
        else:
            auth = None
            if config.aws_auth:
                credentials = boto3.Session().get_credentials()
                auth = AWS4Auth(region=config.region, service=config.aws_service, refreshable_credentials=credentials)

            endpoint = config.endpoint
            if '://' in endpoint:
                # Remove protocol if present
                endpoint = endpoint.split('://', 1)[1]

            self.client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                     http_auth=auth,
                                     use_ssl=config.use_ssl,
                                     verify_certs=config.use_ssl,
                                     connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_name(self, suffix: str) -> str:
        return f'{self.config.index_prefix}_{suffix}'

    def create_index_if_not_exists(self, index_name: str, mappings: Dict[str, Any]) -> str:
        """
        Create index if it doesn't exist.

        Args:
            index_name: Name of the index
            mappings: Field mappings for the index

        Returns:
            'exists', 'created' or 'failed'
        """
        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body={'mappings': {'properties': mappings}})
            if response.get('acknowledged', False):
                logger.info(f'Created index {index_name}')
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def index_document(self,
                       index_name: str,
                       doc_id: str,
                       document: Dict[str, Any],
                       version: Optional[int] = None) -> bool:
        """
        Index a document, waiting for the refresh so later reads observe it.

        Args:
            index_name: Name of the index
            doc_id: Document ID
            document: Document body
            version: External version; the write is rejected unless it is greater than the stored one

        Returns:
            True if indexing was successful

        Raises:
            OpenSearchConflictError: If the external version check fails
        """
        params = {'refresh': 'wait_for'}
        if version is not None:
            params.update({'version': version, 'version_type': 'external'})

        try:
            response = self.client.index(index=index_name, id=doc_id, body=document, params=params)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed document {doc_id} in {index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')
            return success

        except ConflictError as e:
            logger.warning(f'Version conflict indexing {doc_id} in {index_name}: {e}')
            raise OpenSearchConflictError(f'Version conflict for document {doc_id}')
        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error indexing document: {e}')
            raise OpenSearchError(f'Unexpected error indexing document: {e}')

    def get_document(self, index_name: str, doc_id: str) -> Optional[Tuple[Dict[str, Any], Optional[int]]]:
        """
        Get a specific document by id.

        Args:
            index_name: Name of the index
            doc_id: Document ID

        Returns:
            Tuple of (source, version) if found, None otherwise
        """
        try:
            response = self.client.get(index=index_name, id=doc_id)
            if not response.get('found', False):
                return None
            return response['_source'], response.get('_version')

        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error getting document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error getting document: {e}')

    def search(self,
               index_name: str,
               filters: Optional[Dict[str, Any]] = None,
               must_not: Optional[List[Dict[str, Any]]] = None,
               sort: Optional[List[Dict[str, Any]]] = None,
               size: int = 1000) -> List[Dict[str, Any]]:
        """
        Run a filtered search.

        Args:
            index_name: Name of the index
            filters: Exact-match terms, e.g. {'agent_id': 'a1'}
            must_not: Extra bool must_not clauses
            sort: OpenSearch sort clauses
            size: Maximum number of documents

        Returns:
            List of documents (each with its id under '_id' and version under '_version')
        """
        query = {'bool': {'filter': [{'term': {field: value}} for field, value in (filters or {}).items()]}}
        if must_not:
            query['bool']['must_not'] = must_not

        search_body = {'size': size, 'query': query, 'version': True}
        if sort:
            search_body['sort'] = sort

        try:
            response = self.client.search(index=index_name, body=search_body)

            results = []
            for hit in response['hits']['hits']:
                results.append({**hit['_source'], '_id': hit['_id'], '_version': hit.get('_version')})

            logger.debug(f'Search on {index_name} returned {len(results)} documents')
            return results

        except NotFoundError:
            return []
        except OpenSearchException as e:
            logger.error(f'Error searching {index_name}: {e}')
            raise OpenSearchError(f'Search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error searching {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error in search: {e}')

    def count(self, index_name: str, filters: Optional[Dict[str, Any]] = None,
              must_not: Optional[List[Dict[str, Any]]] = None) -> int:
        query = {'bool': {'filter': [{'term': {field: value}} for field, value in (filters or {}).items()]}}
        if must_not:
            query['bool']['must_not'] = must_not

        try:
            return int(self.client.count(index=index_name, body={'query': query})['count'])
        except NotFoundError:
            return 0
        except OpenSearchException as e:
            logger.error(f'Error counting {index_name}: {e}')
            raise OpenSearchError(f'Count failed: {e}')

    def delete_document(self, index_name: str, doc_id: str) -> bool:
        """
        Delete a document from the index.

        Args:
            index_name: Name of the index
            doc_id: Document ID to delete

        Returns:
            True if deletion was successful, False if the document was missing
        """
        try:
            response = self.client.delete(index=index_name, id=doc_id, params={'refresh': 'wait_for'})

            success = response.get('result') == 'deleted'
            if success:
                logger.debug(f'Deleted document {doc_id} from {index_name}')
            return success

        except NotFoundError:
            logger.warning(f'Document {doc_id} not found for deletion')
            return False
        except OpenSearchException as e:
            logger.error(f'Error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to delete document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error deleting document: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return bool(self.client.ping())

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
