"""
Memory Management Service: the agent-facing facade over retrieval, transfer and storage.
"""

from dataclasses import asdict
from typing import Any, Dict, List, Optional

from ..models.core import (KnowledgeKind, MemoryResults, PersonaKnowledge, PersonaOwner, QueryContext, RecentItem,
                           RetrievalLimits)
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig
from ..utils.logging_config import get_logger
from .configuration import ConfigurationError, ConfigurationService
from .jobs import JobScheduler, JobSchedulingError
from .retrieval import QueryValidationError, RetrievalOrchestrator
from .response_generation import ResponseGenerator
from .storage import MemoryStore, NotFoundError, StorageError, create_store
from .text_analysis import analyze_sentiment, extract_entities, extract_keywords, extract_topics
from .transfer_engine import TransferEngine

logger = get_logger(__name__)

MAINTENANCE_JOBS = {
    'heat_update': 'update_heat_scores',
    'capacity_check': 'check_stm_capacity',
    'lpm_evaluation': 'evaluate_agent_lpm',
}


class MemoryManagementError(Exception):
    """Custom exception for memory management errors."""
    pass


class MemoryValidationError(MemoryManagementError):
    """Raised when caller input is rejected before any side effect."""
    pass


def capacity_status(count: int, capacity: int) -> str:
    if count >= capacity:
        return 'at_capacity'
    if count >= capacity * 0.8:
        return 'near_capacity'
    return 'normal'


def query_context_dict(context: QueryContext) -> Dict[str, Any]:
    return {
        'agent_id': context.agent_id,
        'original_query': context.original_query,
        'keywords': list(context.keywords),
        'intent': context.intent,
        'topics': extract_topics(context.original_query),
        'entities': extract_entities(context.original_query),
        'sentiment': analyze_sentiment(context.original_query),
        'embedding_dimension': len(context.embedding),
    }


def format_search_results(results: MemoryResults) -> Dict[str, List[Dict[str, Any]]]:
    """Per-tier search results with record ids, as returned to callers."""
    return {
        'recent_conversations': [{
            'id': item.id,
            'query': item.query,
            'response': item.response,
            'timestamp': item.created_at.isoformat(),
            'type': 'recent_item'
        } for item in results.stm_results],
        'relevant_topics': [{
            'id': segment.id,
            'topic': segment.summary,
            'keywords': list(segment.keywords),
            'heat_score': segment.heat_score,
            'type': 'segment'
        } for segment in results.mtm_results],
        'agent_knowledge': [{
            'id': entry.id,
            'content': entry.content,
            'keywords': list(entry.keywords),
            'type': 'knowledge_entry'
        } for entry in results.lpm_knowledge] + [{
            'id': trait.id,
            'trait_name': trait.trait_name,
            'trait_value': trait.content,
            'confidence': trait.confidence,
            'type': 'trait_entry'
        } for trait in results.lpm_traits],
        'shared_knowledge': [{
            'id': entry.id,
            'content': entry.content,
            'importance': entry.importance_score,
            'source_agent': entry.source_agent_id,
            'type': 'system_knowledge'
        } for entry in results.system_results],
    }


class MemoryManagementService:
    """Unified service for memory-aware interactions, search, summaries and maintenance."""

    def __init__(self,
                 app_config: Optional[AppConfig] = None,
                 store: Optional[MemoryStore] = None,
                 embedder: Optional[BedrockEmbed] = None,
                 scheduler: Optional[JobScheduler] = None,
                 llm: Optional[BedrockLLM] = None,
                 config_service: Optional[ConfigurationService] = None):
        """Initialize the memory management service.

        Collaborators not passed in are built from app_config (the global config if None).
        """
        if app_config is None:
            from ..utils.config import config as default_config
            app_config = default_config

        self.config = app_config
        self.store = store or create_store(app_config)
        self.embed = embedder or BedrockEmbed(app_config.bedrock_embed)
        if llm is None and app_config.bedrock_llm.enabled:
            llm = BedrockLLM(app_config.bedrock_llm)
        self.llm = llm
        self.config_service = config_service or ConfigurationService(app_config.memory)
        self.scheduler = scheduler or JobScheduler(app_config.jobs)

        self.transfer = TransferEngine(self.store, self.embed, self.config_service)
        self.transfer.register_jobs(self.scheduler)
        self.retrieval = RetrievalOrchestrator(self.store, self.embed, timeout=app_config.memory.retrieval_timeout)
        self.responder = ResponseGenerator(self.llm)
        self.default_limits = RetrievalLimits(stm=app_config.memory.stm_retrieval_limit,
                                              mtm=app_config.memory.mtm_retrieval_limit,
                                              lpm=app_config.memory.lpm_retrieval_limit,
                                              system=app_config.memory.system_retrieval_limit)
        self._periodic: List[str] = []

        logger.info('Initialized MemoryManagementService')

    @staticmethod
    def _require(value: Optional[str], name: str) -> str:
        if value is None or not str(value).strip():
            raise MemoryValidationError(f'{name} cannot be empty')
        return value

    def _process_query(self, query: str, agent_id: str) -> QueryContext:
        self._require(agent_id, 'agent_id')
        try:
            return self.retrieval.process_query(query, agent_id)
        except QueryValidationError as e:
            raise MemoryValidationError(str(e))

    def _record_segment_visits(self, results: MemoryResults) -> None:
        for segment in results.mtm_results:
            try:
                self.store.touch_segment(segment.id)
            except StorageError as e:
                logger.warning(f'Could not record visit for segment {segment.id}: {e}')

    def process_interaction(self, agent_id: str, query: str,
                            limits: Optional[RetrievalLimits] = None) -> Dict[str, Any]:
        """Run one memory-aware interaction: retrieve, synthesize, respond, then store the turn.

        Args:
            agent_id: Agent handling the interaction
            query: User message
            limits: Per-tier retrieval limits

        Returns:
            Dictionary with response, memory_context and metadata

        Raises:
            MemoryValidationError: If the query or agent id is empty
            MemoryManagementError: If retrieval fails unexpectedly
        """
        context = self._process_query(query, agent_id)

        try:
            results = self.retrieval.retrieve_memories(context, limits or self.default_limits)
            synthesized = self.retrieval.synthesize_memory_context(results)
            response = self.responder.generate(query, synthesized)
        except Exception as e:
            logger.error(f'Failed to process interaction for agent {agent_id}: {e}')
            raise MemoryManagementError(f'Interaction processing failed: {e}')

        self._record_segment_visits(results)
        storage_info = self._store_interaction(agent_id, query, response)

        logger.info(f'Processed interaction for agent {agent_id} '
                    f'(confidence {synthesized["confidence_scores"]["confidence_level"]})')
        return {
            'response': response,
            'memory_context': synthesized,
            'metadata': {
                'query_context': query_context_dict(context),
                'memory_stats': results.counts(),
                'confidence': synthesized['confidence_scores'],
                'storage_info': storage_info,
            }
        }

    def _store_interaction(self, agent_id: str, query: str, response: str) -> Dict[str, Any]:
        try:
            item = self.store.add_recent_item(RecentItem(agent_id=agent_id, query=query, response=response))
        except StorageError as e:
            logger.error(f'Failed to store interaction for agent {agent_id}: {e}')
            return {'stored': False, 'error': str(e)}

        info = {'stored': True, 'item_id': item.id, 'triggers': []}
        try:
            info['job_id'] = self.scheduler.schedule('check_stm_capacity', {'agent_id': agent_id})
            info['triggers'].append('stm_capacity_check')
        except JobSchedulingError as e:
            logger.error(f'Failed to schedule capacity check for agent {agent_id}: {e}')
            info['error'] = str(e)
        return info

    def search_memories(self, agent_id: str, query: str,
                        limits: Optional[RetrievalLimits] = None) -> Dict[str, Any]:
        """Search every tier without generating a response or storing anything in tier 1."""
        context = self._process_query(query, agent_id)
        try:
            results = self.retrieval.retrieve_memories(context, limits or self.default_limits)
        except Exception as e:
            logger.error(f'Memory search failed for agent {agent_id}: {e}')
            raise MemoryManagementError(f'Memory search failed: {e}')

        self._record_segment_visits(results)
        return {
            'query': query,
            'results': format_search_results(results),
            'metadata': {
                'total_results': results.total,
                'query_context': query_context_dict(context),
            }
        }

    def get_memory_summary(self, agent_id: str) -> Dict[str, Any]:
        """Per-tier statistics plus the tier-1..3 distribution for an agent."""
        self._require(agent_id, 'agent_id')
        tier_config = self.config_service.get_config(agent_id)

        try:
            items = self.store.list_unlinked_items(agent_id, newest_first=True)
            stm = {
                'level': 'stm',
                'total_items': len(items),
                'recent_activity': items[0].created_at.isoformat() if items else None,
                'capacity_status': capacity_status(len(items), tier_config.stm_capacity),
            }
        except StorageError as e:
            logger.warning(f'STM statistics unavailable for agent {agent_id}: {e}')
            stm = {'level': 'stm', 'total_items': 0, 'recent_activity': None, 'capacity_status': 'unknown'}

        try:
            segments = self.store.list_segments(agent_id)
            average_heat = sum(s.heat_score for s in segments) / len(segments) if segments else 0.0
            mtm = {
                'level': 'mtm',
                'total_segments': len(segments),
                'average_heat_score': round(average_heat, 2),
                'capacity_status': capacity_status(len(segments), tier_config.mtm_capacity),
            }
        except StorageError as e:
            logger.warning(f'MTM statistics unavailable for agent {agent_id}: {e}')
            mtm = {'level': 'mtm', 'total_segments': 0, 'average_heat_score': 0.0, 'capacity_status': 'unknown'}

        try:
            knowledge = self.store.list_knowledge(agent_id)
            facts = sum(1 for k in knowledge if k.kind == KnowledgeKind.FACT)
            lpm = {
                'level': 'lpm',
                'knowledge_entries': facts,
                'traits': len(knowledge) - facts,
                'total_lpm_items': len(knowledge),
            }
        except StorageError as e:
            logger.warning(f'LPM statistics unavailable for agent {agent_id}: {e}')
            lpm = {'level': 'lpm', 'knowledge_entries': 0, 'traits': 0, 'total_lpm_items': 0}

        try:
            shared = self.store.list_shared_entries()
            contributed = sum(1 for entry in shared if entry.source_agent_id == agent_id)
            system = {
                'level': 'system',
                'contributed_entries': contributed,
                'total_system_entries': len(shared),
                'contribution_ratio': round(contributed / len(shared), 4) if shared else 0.0,
            }
        except StorageError as e:
            logger.warning(f'System memory statistics unavailable: {e}')
            system = {'level': 'system', 'contributed_entries': 0, 'total_system_entries': 0, 'contribution_ratio': 0.0}

        counts = {'stm': stm['total_items'], 'mtm': mtm['total_segments'], 'lpm': lpm['total_lpm_items']}
        total = sum(counts.values())
        distribution = {
            f'{tier}_percentage': round(count / total * 100, 1) if total else 0.0 for tier, count in counts.items()
        }

        return {
            'agent_id': agent_id,
            'stm': stm,
            'mtm': mtm,
            'lpm': lpm,
            'system': system,
            'overall_stats': {
                'total_memory_items': total,
                'memory_distribution': distribution,
            },
            'config': asdict(tier_config),
        }

    def trigger_memory_maintenance(self, agent_id: str, operations: Optional[List[str]] = None) -> Dict[str, Any]:
        """Schedule background maintenance for an agent without waiting for it.

        Args:
            agent_id: Agent to maintain
            operations: Any of 'heat_update', 'capacity_check', 'lpm_evaluation' (all when None)

        Returns:
            Per-operation schedule outcome
        """
        self._require(agent_id, 'agent_id')
        operations = list(operations) if operations else list(MAINTENANCE_JOBS)

        results = {}
        for operation in operations:
            job_type = MAINTENANCE_JOBS.get(operation)
            if job_type is None:
                results[operation] = {'status': 'failed', 'error': f'Unknown operation: {operation}'}
                continue
            try:
                job_id = self.scheduler.schedule(job_type, {'agent_id': agent_id})
                results[operation] = {'status': 'scheduled', 'job_id': job_id}
            except JobSchedulingError as e:
                logger.error(f'Failed to schedule {operation} for agent {agent_id}: {e}')
                results[operation] = {'status': 'failed', 'error': str(e)}

        logger.info(f'Triggered maintenance for agent {agent_id}: {sorted(results)}')
        return {'agent_id': agent_id, 'operations': results}

    def initialize_agent(self, agent_id: str, settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Store configuration overrides for an agent and schedule its periodic maintenance."""
        self._require(agent_id, 'agent_id')
        try:
            tier_config = self.config_service.set_agent_config(agent_id, settings or {})
        except ConfigurationError as e:
            raise MemoryValidationError(f'Invalid configuration for agent {agent_id}: {e}')

        self.store.get_or_create_agent_persona(agent_id)

        jobs = self.config.jobs
        scheduled = {}
        try:
            scheduled['heat_update'] = self.scheduler.schedule('update_heat_scores', {'agent_id': agent_id},
                                                               delay=jobs.heat_update_interval)
            scheduled['lpm_evaluation'] = self.scheduler.schedule('evaluate_agent_lpm', {'agent_id': agent_id},
                                                                  delay=jobs.lpm_evaluation_interval)
        except JobSchedulingError as e:
            logger.error(f'Failed to schedule maintenance for agent {agent_id}: {e}')
            raise MemoryManagementError(f'Agent initialization failed: {e}')

        logger.info(f'Initialized memory for agent {agent_id}')
        return {'agent_id': agent_id, 'config': asdict(tier_config), 'scheduled': scheduled}

    def schedule_system_maintenance(self) -> str:
        return self.scheduler.schedule('system_memory_maintenance', queue='default')

    def start_periodic_jobs(self) -> List[str]:
        """Start recurring heat updates, tier-3 evaluation and system maintenance over every agent."""
        if self._periodic:
            return list(self._periodic)

        jobs = self.config.jobs
        self._periodic = [
            self.scheduler.schedule_recurring('update_all_heat_scores', jobs.heat_update_interval),
            self.scheduler.schedule_recurring('evaluate_lpm_promotion', jobs.lpm_evaluation_interval),
            self.scheduler.schedule_recurring('system_memory_maintenance', jobs.system_maintenance_interval),
        ]
        return list(self._periodic)

    def add_knowledge(self,
                      agent_id: str,
                      content: str,
                      confidence: float = 1.0,
                      persona_type: str = 'user',
                      identifier: str = 'default') -> Dict[str, Any]:
        """Add a knowledge fact about an object persona and queue its importance evaluation."""
        self._require(agent_id, 'agent_id')
        self._require(content, 'content')

        try:
            persona = self.store.get_or_create_object_persona(agent_id, persona_type, identifier)
            entry = PersonaKnowledge(agent_id=agent_id,
                                     owner=PersonaOwner.for_object(persona.id),
                                     content=content,
                                     confidence=confidence,
                                     keywords=extract_keywords(content))
            self.store.add_knowledge(entry)
        except ValueError as e:
            raise MemoryValidationError(str(e))
        except StorageError as e:
            logger.error(f'Failed to add knowledge for agent {agent_id}: {e}')
            raise MemoryManagementError(f'Adding knowledge failed: {e}')

        try:
            self.scheduler.schedule('evaluate_knowledge_entry', {'knowledge_id': entry.id})
        except JobSchedulingError as e:
            logger.warning(f'Could not schedule evaluation for knowledge {entry.id}: {e}')

        logger.info(f'Added knowledge {entry.id} for agent {agent_id}')
        return {'id': entry.id, 'persona_id': persona.id, 'keywords': entry.keywords}

    def add_trait(self,
                  agent_id: str,
                  name: str,
                  value: str,
                  confidence: float = 0.5,
                  owner: str = 'object',
                  persona_type: str = 'user',
                  identifier: str = 'default') -> Dict[str, Any]:
        """Add a trait owned by an object persona ('object') or by the agent persona ('agent')."""
        self._require(agent_id, 'agent_id')
        self._require(name, 'name')
        self._require(value, 'value')

        if owner not in ('object', 'agent'):
            raise MemoryValidationError(f"owner must be 'object' or 'agent', got {owner!r}")

        try:
            if owner == 'object':
                persona_id = self.store.get_or_create_object_persona(agent_id, persona_type, identifier).id
                persona_owner = PersonaOwner.for_object(persona_id)
            else:
                persona_id = self.store.get_or_create_agent_persona(agent_id).id
                persona_owner = PersonaOwner.for_agent(persona_id)
            entry = PersonaKnowledge(agent_id=agent_id,
                                     owner=persona_owner,
                                     content=value,
                                     kind=KnowledgeKind.TRAIT,
                                     trait_name=name,
                                     confidence=confidence)
            self.store.add_knowledge(entry)
        except ValueError as e:
            raise MemoryValidationError(str(e))
        except StorageError as e:
            logger.error(f'Failed to add trait {name} for agent {agent_id}: {e}')
            raise MemoryManagementError(f'Adding trait failed: {e}')

        logger.info(f'Added trait {name} for agent {agent_id} ({owner} persona)')
        return {'id': entry.id, 'persona_id': persona_id}

    def delete_knowledge(self, agent_id: str, knowledge_id: str) -> bool:
        self._require(agent_id, 'agent_id')
        self._require(knowledge_id, 'knowledge_id')

        try:
            entry = self.store.get_knowledge(knowledge_id)
        except NotFoundError as e:
            raise MemoryManagementError(f'Knowledge delete failed: {e}')
        if entry.agent_id != agent_id:
            raise MemoryManagementError(f'Knowledge delete failed: entry {knowledge_id} not found for agent {agent_id}')

        deleted = self.store.delete_knowledge(knowledge_id)
        logger.info(f'Deleted knowledge {knowledge_id} for agent {agent_id}')
        return deleted

    def shutdown(self, wait: bool = True) -> None:
        for name in self._periodic:
            self.scheduler.cancel_recurring(name)
        self._periodic = []
        self.scheduler.shutdown(wait=wait)
