"""
Amazon Bedrock embedding client wrapper with retry logic, error handling and a deterministic offline fallback.
"""

import hashlib
import json
import math
import random
import time
from typing import List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


def generate_mock_embedding(text: str, dimension: int = 384) -> List[float]:
    """Generate a deterministic pseudo-embedding from the text digest.

    Same text always yields the same vector; different texts yield different vectors.

    Args:
        text: Text to embed
        dimension: Length of the returned vector

    Returns:
        List of embedding values in [-0.5, 0.5]
    """
    digest = hashlib.sha256(text.encode('utf-8')).digest()
    seed = int.from_bytes(digest[:8], 'big')
    return [math.sin((seed % 1000003 + i * 7919) / 100.0 + digest[i % len(digest)]) * 0.5 for i in range(dimension)]


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id
        self.output_embedding_length = config.dimension
        self.use_mock = config.use_mock

        if self.use_mock:
            self.bedrock = None
            logger.info(f'Initialized Bedrock Embed client in mock mode ({config.mock_dimension} dimensions)')
        else:
            # Create Bedrock runtime client
            self.bedrock = boto3.client(service_name='bedrock-runtime', region_name=config.region)
            logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    @property
    def dimension(self) -> int:
        return self.config.mock_dimension if self.use_mock else self.output_embedding_length

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            BedrockEmbedError: If all retry attempts fail
        """
        body = json.dumps(data)

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{self.config.retry_attempts}')

                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')

                result = json.loads(response.get('body').read())
                logger.debug('Bedrock Embed request successful')
                return result

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def _invoke(self, text: str, input_type: str) -> List[float]:
        if 'titan' in self.model_id.lower():
            data = {'inputText': text, 'dimensions': self.output_embedding_length}
            response = self._call_with_retry(data)
            embedding = response.get('embedding')
        elif 'cohere' in self.model_id.lower():
            if self.output_embedding_length != 1024:
                raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.output_embedding_length}')
            data = {'input_type': input_type, 'texts': [text]}
            response = self._call_with_retry(data)
            embeddings = response.get('embeddings') or []
            embedding = embeddings[0] if embeddings else None
        else:
            raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

        if not embedding:
            raise BedrockEmbedError('Bedrock returned an empty embedding')
        return embedding

    def embed_document(self, text: str) -> List[float]:
        """
        Generate embeddings for document text.

        Args:
            text: Text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If text is empty or embedding generation fails
        """
        if not text or not text.strip():
            raise BedrockEmbedError('Empty text provided for document embedding')

        if self.use_mock:
            return generate_mock_embedding(text, self.config.mock_dimension)

        try:
            return self._invoke(text, 'search_document')
        except BedrockEmbedError:
            raise
        except Exception as e:
            logger.error(f'Error generating document embedding: {e}')
            raise BedrockEmbedError(f'Document embedding failed: {e}')

    def embed_query(self, text: str) -> List[float]:
        """
        Generate embeddings for query text.

        Args:
            text: Query text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If text is empty or embedding generation fails
        """
        if not text or not text.strip():
            raise BedrockEmbedError('Empty text provided for query embedding')

        if self.use_mock:
            return generate_mock_embedding(text, self.config.mock_dimension)

        try:
            return self._invoke(text, 'search_query')
        except BedrockEmbedError:
            raise
        except Exception as e:
            logger.error(f'Error generating query embedding: {e}')
            raise BedrockEmbedError(f'Query embedding failed: {e}')

    def embed(self, text: str, input_type: str = 'search_document') -> List[float]:
        """
        Embed text, degrading to the deterministic mock embedding if the live model fails.

        Args:
            text: Text to embed
            input_type: 'search_document' or 'search_query'

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If text is empty
        """
        if not text or not text.strip():
            raise BedrockEmbedError('Empty text provided for embedding')

        try:
            if input_type == 'search_query':
                return self.embed_query(text)
            return self.embed_document(text)
        except BedrockEmbedError as e:
            logger.warning(f'Embedding service degraded, using mock embedding: {e}')
            return generate_mock_embedding(text, self.config.mock_dimension)

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_embedding = self.embed_document('test')
            return len(test_embedding) == self.dimension

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
