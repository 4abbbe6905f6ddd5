"""
Retrieval orchestrator: query processing, parallel multi-tier retrieval and context synthesis.

The orchestrator only reads from the store. Each tier search runs as its own task; a tier that raises or
does not finish within the timeout contributes an empty result instead of failing the retrieval.
"""

from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models.core import (KnowledgeKind, MemoryResults, PersonaKnowledge, QueryContext, RecentItem, RetrievalLimits,
                           Segment, SharedEntry)
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.logging_config import get_logger
from .scoring import fscore
from .storage import MemoryStore
from .text_analysis import classify_intent, extract_keywords

logger = get_logger(__name__)

TIER_WEIGHTS = (('stm', 1.0), ('mtm', 0.8), ('lpm', 0.6), ('system', 0.4))
DEFAULT_TIMEOUT = 30.0


class RetrievalError(Exception):
    """Custom exception for retrieval errors."""
    pass


class QueryValidationError(RetrievalError):
    """Raised for empty or malformed queries."""
    pass


def confidence_level(average: float, count: int) -> str:
    if count == 0:
        return 'none'
    if average > 0.7:
        return 'high'
    if average > 0.4:
        return 'medium'
    return 'low'


def rank_memories(results: MemoryResults) -> List[Tuple[Any, str, float]]:
    """Flatten all tiers into (memory, tier, score), best first.

    Score is the tier weight decayed by 1 / (position + 1) within the tier.
    """
    per_tier = {
        'stm': results.stm_results,
        'mtm': results.mtm_results,
        'lpm': results.lpm_results,
        'system': results.system_results,
    }
    ranked = []
    for tier, base_score in TIER_WEIGHTS:
        for index, memory in enumerate(per_tier[tier]):
            ranked.append((memory, tier, base_score * (1.0 / (index + 1))))
    ranked.sort(key=lambda entry: -entry[2])
    return ranked


def calculate_confidence_scores(ranked: List[Tuple[Any, str, float]]) -> Dict[str, Any]:
    if not ranked:
        return {'average_relevance': 0.0, 'memory_count': 0, 'confidence_level': 'none'}
    average = sum(score for _, _, score in ranked) / len(ranked)
    return {
        'average_relevance': average,
        'memory_count': len(ranked),
        'confidence_level': confidence_level(average, len(ranked)),
    }


class RetrievalOrchestrator:
    """Answers a query with memories from all four tiers."""

    def __init__(self, store: MemoryStore, embedder: BedrockEmbed, timeout: float = DEFAULT_TIMEOUT):
        self.store = store
        self.embedder = embedder
        self.timeout = timeout

    def process_query(self, query: str, agent_id: str) -> QueryContext:
        """
        Build the query context used by every tier search.

        Raises:
            QueryValidationError: If the query or agent id is empty
        """
        if query is None or not str(query).strip():
            raise QueryValidationError('Query cannot be empty')
        if agent_id is None or not str(agent_id).strip():
            raise QueryValidationError('agent_id cannot be empty')

        try:
            embedding = self.embedder.embed(query, input_type='search_query')
        except BedrockEmbedError as e:
            logger.warning(f'Query embedding unavailable, using keyword similarity only: {e}')
            embedding = []

        context = QueryContext(agent_id=agent_id,
                               original_query=query,
                               embedding=embedding,
                               keywords=extract_keywords(query),
                               intent=classify_intent(query))
        logger.debug(f'Processed query for agent {agent_id}: intent={context.intent}, keywords={context.keywords}')
        return context

    def search_stm(self, context: QueryContext, limit: int) -> List[RecentItem]:
        return self.store.list_unlinked_items(context.agent_id, newest_first=True, limit=limit)

    def search_mtm(self, context: QueryContext, limit: int) -> List[Segment]:
        segments = self.store.list_segments(context.agent_id)
        scored = [(fscore(s.embedding, context.embedding, s.keywords, context.keywords), s) for s in segments]
        scored.sort(key=lambda pair: (-pair[0], -pair[1].heat_score))
        return [segment for _, segment in scored[:limit]]

    def search_lpm(self, context: QueryContext, limit: int) -> Tuple[List[PersonaKnowledge], List[PersonaKnowledge]]:
        knowledge = self.store.list_knowledge(context.agent_id, kind=KnowledgeKind.FACT, limit=limit)
        traits = self.store.list_knowledge(context.agent_id, kind=KnowledgeKind.TRAIT, limit=limit)
        return knowledge, traits

    def search_system(self, context: QueryContext, limit: int) -> List[SharedEntry]:
        return self.store.list_shared_entries(limit=limit)

    def retrieve_memories(self, context: QueryContext, limits: Optional[RetrievalLimits] = None) -> MemoryResults:
        """
        Search all four tiers concurrently.

        Args:
            context: Processed query
            limits: Per-tier result limits (defaults 5/10/8/3)

        Returns:
            MemoryResults; a failed or timed-out tier is empty
        """
        limits = limits or RetrievalLimits()
        tasks: Dict[str, Callable[[], Any]] = {
            'stm': lambda: self.search_stm(context, limits.stm),
            'mtm': lambda: self.search_mtm(context, limits.mtm),
            'lpm': lambda: self.search_lpm(context, limits.lpm),
            'system': lambda: self.search_system(context, limits.system),
        }

        executor = ThreadPoolExecutor(max_workers=len(tasks), thread_name_prefix='tiermem-retrieval')
        try:
            futures = {tier: executor.submit(task) for tier, task in tasks.items()}
            done, _ = wait(futures.values(), timeout=self.timeout)

            outcome = {}
            for tier, future in futures.items():
                if future not in done:
                    future.cancel()
                    logger.warning(f'{tier} retrieval timed out after {self.timeout}s for agent {context.agent_id}')
                    outcome[tier] = None
                    continue
                try:
                    outcome[tier] = future.result()
                except Exception as e:
                    logger.warning(f'{tier} retrieval failed for agent {context.agent_id}: {e}')
                    outcome[tier] = None
        finally:
            # A stuck tier must not hold the caller
            executor.shutdown(wait=False)

        knowledge, traits = outcome['lpm'] or ([], [])
        results = MemoryResults(query_context=context,
                                stm_results=outcome['stm'] or [],
                                mtm_results=outcome['mtm'] or [],
                                lpm_knowledge=knowledge,
                                lpm_traits=traits,
                                system_results=outcome['system'] or [])
        logger.debug(f'Retrieved memories for agent {context.agent_id}: {results.counts()}')
        return results

    def synthesize_memory_context(self, results: MemoryResults) -> Dict[str, Any]:
        """Group formatted memories per tier with the confidence summary and query intent."""
        return {
            'recent_conversations': [{
                'query': item.query,
                'response': item.response,
                'timestamp': item.created_at.isoformat(),
                'type': 'recent_conversation'
            } for item in results.stm_results],
            'relevant_topics': [{
                'topic': segment.summary,
                'keywords': list(segment.keywords),
                'heat_score': segment.heat_score,
                'type': 'topic_segment'
            } for segment in results.mtm_results],
            'agent_knowledge': {
                'knowledge': [{
                    'content': entry.content,
                    'keywords': list(entry.keywords),
                    'type': 'agent_knowledge'
                } for entry in results.lpm_knowledge],
                'traits': [{
                    'trait_name': trait.trait_name,
                    'trait_value': trait.content,
                    'confidence': trait.confidence,
                    'type': 'personality_trait'
                } for trait in results.lpm_traits],
            },
            'shared_knowledge': [{
                'content': entry.content,
                'importance': entry.importance_score,
                'source_agent': entry.source_agent_id,
                'type': 'shared_knowledge'
            } for entry in results.system_results],
            'query_intent': results.query_context.intent,
            'confidence_scores': calculate_confidence_scores(rank_memories(results)),
        }
