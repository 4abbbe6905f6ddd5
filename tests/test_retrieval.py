import threading
import time
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest
from conftest import add_fact, add_items, add_segment

from tiermem.models.core import MemoryResults, QueryContext, RetrievalLimits, SharedEntry
from tiermem.services.retrieval import (QueryValidationError, RetrievalOrchestrator, calculate_confidence_scores,
                                        confidence_level, rank_memories)
from tiermem.utils.bedrock_embed import BedrockEmbedError


@pytest.fixture
def orchestrator(store, embedder):
    return RetrievalOrchestrator(store, embedder, timeout=5.0)


def context_for(agent_id='agent-1', embedding=None, keywords=None):
    return QueryContext(agent_id=agent_id,
                        original_query='q',
                        embedding=embedding or [1.0, 0.0, 0.0],
                        keywords=keywords or [],
                        intent='general')


class TestProcessQuery:

    def test_builds_context(self, orchestrator):
        context = orchestrator.process_query('What is machine learning?', 'agent-1')
        assert context.intent == 'question'
        assert 'machine' in context.keywords
        assert len(context.embedding) == 384

    @pytest.mark.parametrize('query', ['', '   ', None])
    def test_empty_query(self, orchestrator, query):
        with pytest.raises(QueryValidationError):
            orchestrator.process_query(query, 'agent-1')

    def test_empty_agent(self, orchestrator):
        with pytest.raises(QueryValidationError):
            orchestrator.process_query('hello', ' ')

    def test_embedding_failure_degrades(self, store):
        embedder = MagicMock()
        embedder.embed.side_effect = BedrockEmbedError('down')
        context = RetrievalOrchestrator(store, embedder).process_query('remember tomatoes', 'agent-1')
        assert context.embedding == []


class TestRetrieveMemories:

    def test_new_agent_has_nothing(self, orchestrator):
        results = orchestrator.retrieve_memories(orchestrator.process_query('hello there', 'agent-new'))
        assert results.total == 0
        assert orchestrator.synthesize_memory_context(results)['confidence_scores']['confidence_level'] == 'none'

    def test_all_tiers(self, orchestrator, store):
        add_items(store, 'agent-1', 3)
        add_segment(store, 'agent-1')
        add_fact(store, 'agent-1')
        store.add_shared_entry(SharedEntry(content='shared', source_agent_id='agent-2', importance_score=0.9))

        results = orchestrator.retrieve_memories(orchestrator.process_query('tomatoes', 'agent-1'))

        assert results.counts() == {'stm_count': 3, 'mtm_count': 1, 'lpm_count': 1, 'system_count': 1}

    def test_stm_newest_first_and_limited(self, orchestrator, store):
        items = add_items(store, 'agent-1', 7)
        results = orchestrator.retrieve_memories(context_for(), RetrievalLimits(stm=2))
        assert [i.id for i in results.stm_results] == [items[6].id, items[5].id]

    def test_segments_ranked_by_similarity(self, orchestrator, store):
        far = add_segment(store, 'agent-1', embedding=[0.0, 1.0, 0.0], summary='far')
        near = add_segment(store, 'agent-1', embedding=[1.0, 0.0, 0.0], summary='near')

        results = orchestrator.retrieve_memories(context_for(embedding=[1.0, 0.0, 0.0]))

        assert [s.id for s in results.mtm_results] == [near.id, far.id]

    def test_segment_ties_broken_by_heat(self, orchestrator, store):
        cold = add_segment(store, 'agent-1')
        hot = add_segment(store, 'agent-1')
        store.update_segment(replace(store.get_segment(hot.id), heat_score=9.0))

        results = orchestrator.retrieve_memories(context_for())

        assert [s.id for s in results.mtm_results] == [hot.id, cold.id]

    def test_retrieval_does_not_touch_segments(self, orchestrator, store):
        segment = add_segment(store, 'agent-1')
        orchestrator.retrieve_memories(context_for())
        assert store.get_segment(segment.id).visit_count == 0

    def test_failing_tier_is_empty(self, orchestrator, store):
        add_items(store, 'agent-1', 2)
        add_fact(store, 'agent-1')

        with patch.object(store, 'list_segments', side_effect=RuntimeError('index missing')):
            results = orchestrator.retrieve_memories(context_for())

        assert results.mtm_results == []
        assert len(results.stm_results) == 2
        assert len(results.lpm_knowledge) == 1

    def test_agents_isolated(self, orchestrator, store):
        add_items(store, 'agent-2', 2)
        assert orchestrator.retrieve_memories(context_for()).stm_results == []

    def test_hanging_tier_times_out_empty(self, store, embedder):
        add_items(store, 'agent-1', 2)
        orchestrator = RetrievalOrchestrator(store, embedder, timeout=0.5)
        release = threading.Event()

        def hang(context, limit):
            release.wait(timeout=3)
            return [SharedEntry(content='late', source_agent_id='agent-2', importance_score=0.9)]

        try:
            with patch.object(orchestrator, 'search_system', side_effect=hang):
                started = time.monotonic()
                results = orchestrator.retrieve_memories(context_for())
                elapsed = time.monotonic() - started
        finally:
            release.set()

        assert elapsed < 2.0
        assert results.system_results == []
        assert len(results.stm_results) == 2


class TestConfidence:

    def test_levels(self):
        assert confidence_level(0.0, 0) == 'none'
        assert confidence_level(0.71, 1) == 'high'
        assert confidence_level(0.7, 1) == 'medium'
        assert confidence_level(0.4, 1) == 'low'

    def test_single_recent_item(self):
        results = MemoryResults(query_context=context_for(), stm_results=[MagicMock()])
        scores = calculate_confidence_scores(rank_memories(results))
        assert scores == {'average_relevance': 1.0, 'memory_count': 1, 'confidence_level': 'high'}

    def test_positional_decay(self):
        results = MemoryResults(query_context=context_for(),
                                stm_results=[MagicMock(), MagicMock()],
                                system_results=[MagicMock()])
        ranked = rank_memories(results)
        assert [(tier, score) for _, tier, score in ranked] == [('stm', 1.0), ('stm', 0.5), ('system', 0.4)]
        assert calculate_confidence_scores(ranked)['average_relevance'] == pytest.approx(1.9 / 3)

    def test_synthesized_shape(self, orchestrator, store):
        add_items(store, 'agent-1', 1)
        context = orchestrator.synthesize_memory_context(orchestrator.retrieve_memories(context_for()))
        assert set(context) == {'recent_conversations', 'relevant_topics', 'agent_knowledge', 'shared_knowledge',
                                'query_intent', 'confidence_scores'}
        assert context['recent_conversations'][0]['type'] == 'recent_conversation'
        assert context['agent_knowledge'] == {'knowledge': [], 'traits': []}
