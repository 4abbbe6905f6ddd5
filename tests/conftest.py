"""
Shared fixtures: in-memory store, mock embeddings, configuration and a fast-retrying scheduler.
"""

from datetime import timedelta
from typing import List, Optional

import pytest

from tiermem.models.core import PersonaKnowledge, PersonaOwner, RecentItem, Segment
from tiermem.services.configuration import ConfigurationService
from tiermem.services.jobs import JobScheduler
from tiermem.services.memory_management import MemoryManagementService
from tiermem.services.storage import InMemoryStore
from tiermem.services.text_analysis import extract_keywords
from tiermem.services.transfer_engine import TransferEngine
from tiermem.utils.bedrock_embed import BedrockEmbed
from tiermem.utils.config import (AppConfig, BedrockEmbedConfig, BedrockLLMConfig, JobConfig, MCPConfig, MemoryConfig,
                                  OpenSearchConfig)
from tiermem.utils.timestamp_utils import utc_now


@pytest.fixture
def memory_config() -> MemoryConfig:
    return MemoryConfig(store_backend='memory',
                        stm_capacity=7,
                        mtm_capacity=200,
                        mtm_fscore_threshold=0.6,
                        heat_alpha=1.0,
                        heat_beta=1.0,
                        heat_gamma=1.0,
                        heat_threshold=5.0,
                        system_memory_importance_threshold=0.8,
                        system_memory_capacity=1000,
                        recency_time_constant=1.0e7,
                        stm_retrieval_limit=5,
                        mtm_retrieval_limit=10,
                        lpm_retrieval_limit=8,
                        system_retrieval_limit=3,
                        retrieval_timeout=5.0)


@pytest.fixture
def embed_config() -> BedrockEmbedConfig:
    return BedrockEmbedConfig(region='us-east-1',
                              model_id='amazon.titan-embed-text-v2:0',
                              dimension=1024,
                              retry_attempts=2,
                              retry_delay=0.0,
                              use_mock=True,
                              mock_dimension=384)


@pytest.fixture
def job_config() -> JobConfig:
    return JobConfig(memory_queue_workers=2,
                     default_queue_workers=2,
                     max_attempts=3,
                     retry_delay=0.0,
                     heat_update_interval=7200,
                     lpm_evaluation_interval=21600,
                     system_maintenance_interval=86400,
                     job_history=1000)


@pytest.fixture
def app_config(memory_config, embed_config, job_config) -> AppConfig:
    return AppConfig(environment='test',
                     log_level='DEBUG',
                     bedrock_llm=BedrockLLMConfig(region='us-east-1',
                                                  model_id='anthropic.claude-3-sonnet-20240229-v1:0',
                                                  max_tokens=256,
                                                  temperature=0.2,
                                                  retry_attempts=1,
                                                  retry_delay=0.0,
                                                  enabled=False),
                     bedrock_embed=embed_config,
                     opensearch=OpenSearchConfig(endpoint='localhost',
                                                 port=9200,
                                                 region='us-east-1',
                                                 index_prefix='test',
                                                 use_ssl=False,
                                                 aws_auth=False,
                                                 aws_service='es'),
                     memory=memory_config,
                     jobs=job_config,
                     mcp=MCPConfig(transport='sse', host='127.0.0.1', port=8000))


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def embedder(embed_config) -> BedrockEmbed:
    return BedrockEmbed(embed_config)


@pytest.fixture
def config_service(memory_config) -> ConfigurationService:
    return ConfigurationService(memory_config)


@pytest.fixture
def scheduler(job_config):
    scheduler = JobScheduler(job_config)
    yield scheduler
    scheduler.shutdown()


@pytest.fixture
def engine(store, embedder, config_service) -> TransferEngine:
    return TransferEngine(store, embedder, config_service)


@pytest.fixture
def service(app_config, store, embedder, scheduler, config_service):
    service = MemoryManagementService(app_config,
                                      store=store,
                                      embedder=embedder,
                                      scheduler=scheduler,
                                      config_service=config_service)
    yield service
    service.shutdown()


def add_items(store, agent_id: str, count: int, start_offset: int = 0) -> List[RecentItem]:
    """Add count unlinked items, oldest first, one minute apart."""
    base = utc_now() - timedelta(days=1)
    items = []
    for i in range(count):
        item = RecentItem(agent_id=agent_id,
                          query=f'Question number {i + start_offset} about gardening tomatoes',
                          response=f'Answer number {i + start_offset} with watering advice',
                          created_at=base + timedelta(minutes=i + start_offset))
        items.append(store.add_recent_item(item))
    return items


def add_segment(store,
                agent_id: str,
                visit_count: int = 0,
                items: int = 1,
                last_accessed=None,
                keywords: Optional[List[str]] = None,
                embedding: Optional[List[float]] = None,
                summary: str = 'A topic') -> Segment:
    """Create a segment with the given number of attached items."""
    seeds = add_items(store, agent_id, items)
    segment = store.create_segment(
        Segment(agent_id=agent_id,
                summary=summary,
                keywords=keywords or ['topic'],
                embedding=embedding or [1.0, 0.0, 0.0],
                visit_count=visit_count,
                last_accessed=last_accessed or utc_now()), seeds[0].id)
    for seed in seeds[1:]:
        segment = store.attach_item(segment, seed.id)
    return segment


# Scores 1.0 on every importance component once it is older than 30 days
SHAREABLE_FACT = ('The standard method to implement a general algorithm: follow these steps, apply the technique and '
                  'approach, resolve and fix issues, execute the process, perform optimization of the configuration '
                  'and integration through a common framework and protocol with a clear architecture and analysis '
                  'methodology, plus a definition, explanation, concept, theory and principle backed by data, '
                  'information, knowledge and understanding.')

PERSONAL_FACT = 'I prefer my tea sweet'


def add_fact(store, agent_id: str, content: str = SHAREABLE_FACT, age_days: float = 60) -> PersonaKnowledge:
    persona = store.get_or_create_object_persona(agent_id, 'user', 'default')
    return store.add_knowledge(
        PersonaKnowledge(agent_id=agent_id,
                         owner=PersonaOwner.for_object(persona.id),
                         content=content,
                         keywords=extract_keywords(content),
                         created_at=utc_now() - timedelta(days=age_days)))
