import threading
from unittest.mock import MagicMock, patch

import pytest
from conftest import add_items, add_segment

from tiermem.models.core import KnowledgeKind
from tiermem.services.transfer_engine import (TransferEngine, TransferError, extract_traits, merge_embeddings,
                                              merge_keywords)
from tiermem.utils.bedrock_embed import BedrockEmbedError


@pytest.fixture
def fixed_embedder():
    embedder = MagicMock()
    embedder.embed.return_value = [1.0, 0.0, 0.0]
    return embedder


class TestMergeHelpers:

    def test_keywords_union_keeps_order_and_cap(self):
        assert merge_keywords(['a', 'b'], ['b', 'c']) == ['a', 'b', 'c']
        assert len(merge_keywords([str(i) for i in range(15)], [str(i) for i in range(10, 30)])) == 20

    def test_embedding_running_mean(self):
        assert merge_embeddings([1.0, 0.0], [0.0, 1.0], 1) == [0.5, 0.5]
        assert merge_embeddings([0.0, 0.0], [3.0, 3.0], 2) == [1.0, 1.0]
        assert merge_embeddings([], [0.2], 3) == [0.2]

    def test_traits(self):
        traits = dict((name, value) for name, value, _ in extract_traits([MagicMock(response='x' * 150)] * 6))
        assert traits == {'communication_style': 'detailed', 'engagement_level': 'medium'}


class TestStmCapacity:

    def test_transfers_only_the_overflow(self, engine, store):
        items = add_items(store, 'agent-1', 8)

        result = engine.check_stm_capacity('agent-1')

        assert result['transferred'] == [items[0].id]
        assert store.count_unlinked_items('agent-1') == 7
        segments = store.list_segments('agent-1')
        assert len(segments) == 1
        assert store.get_recent_item(items[0].id).segment_id == segments[0].id

    def test_within_capacity_is_a_no_op(self, engine, store):
        add_items(store, 'agent-1', 7)
        assert engine.check_stm_capacity('agent-1')['transferred'] == []
        assert store.list_segments('agent-1') == []

    def test_repeated_check_does_not_transfer_again(self, engine, store):
        add_items(store, 'agent-1', 8)
        engine.check_stm_capacity('agent-1')
        assert engine.check_stm_capacity('agent-1')['transferred'] == []

    def test_similar_items_cluster(self, store, fixed_embedder, config_service):
        engine = TransferEngine(store, fixed_embedder, config_service)
        config_service.set_agent_config('agent-1', {'stm_capacity': 1})
        add_items(store, 'agent-1', 3)

        result = engine.check_stm_capacity('agent-1')

        assert len(result['transferred']) == 2
        segments = store.list_segments('agent-1')
        assert len(segments) == 1
        assert segments[0].item_count == 2
        assert segments[0].embedding == [1.0, 0.0, 0.0]

    def test_dissimilar_items_seed_new_segments(self, store, config_service):
        embedder = MagicMock()
        embedder.embed.side_effect = [[1.0, 0.0], [0.0, 1.0]]
        engine = TransferEngine(store, embedder, config_service)
        config_service.set_agent_config('agent-1', {'stm_capacity': 1, 'mtm_fscore_threshold': 1.5})
        add_items(store, 'agent-1', 3)

        engine.check_stm_capacity('agent-1')

        assert len(store.list_segments('agent-1')) == 2

    def test_embedding_failure_falls_back_to_keywords(self, store, config_service):
        embedder = MagicMock()
        embedder.embed.side_effect = BedrockEmbedError('unavailable')
        engine = TransferEngine(store, embedder, config_service)
        items = add_items(store, 'agent-1', 8)

        engine.check_stm_capacity('agent-1')

        assert store.get_recent_item(items[0].id).segment_id is not None
        assert store.list_segments('agent-1')[0].embedding == []

    def test_failed_item_stays_and_job_retries(self, engine, store):
        items = add_items(store, 'agent-1', 9)
        real_transfer = engine.transfer_item

        def fail_first(item, tier_config):
            if item.id == items[0].id:
                raise RuntimeError('boom')
            return real_transfer(item, tier_config)

        with patch.object(engine, 'transfer_item', side_effect=fail_first):
            with pytest.raises(TransferError):
                engine.check_stm_capacity('agent-1')

        assert store.get_recent_item(items[0].id).segment_id is None
        assert store.get_recent_item(items[1].id).segment_id is not None


class TestHeatAndCapacity:

    def test_evicts_coldest_over_capacity(self, engine, store, config_service):
        config_service.set_agent_config('agent-1', {'mtm_capacity': 10, 'heat_threshold': 1000.0})
        segments = [add_segment(store, 'agent-1', visit_count=i) for i in range(12)]

        result = engine.update_heat_scores('agent-1')

        assert sorted(result['evicted']) == sorted([segments[0].id, segments[1].id])
        assert result['promoted'] == []
        assert len(store.list_segments('agent-1')) == 10

        rerun = engine.update_heat_scores('agent-1')
        assert rerun['evicted'] == [] and rerun['promoted'] == []

    def test_eviction_removes_attached_items(self, engine, store, config_service):
        config_service.set_agent_config('agent-1', {'mtm_capacity': 1, 'heat_threshold': 1000.0})
        cold = add_segment(store, 'agent-1', visit_count=0, items=3)
        add_segment(store, 'agent-1', visit_count=5)

        engine.update_heat_scores('agent-1')

        assert store.list_segment_items(cold.id) == []

    def test_heat_formula(self, engine, store):
        segment = add_segment(store, 'agent-1', visit_count=1, items=2)
        engine.update_heat_scores('agent-1')
        # 1 visit + 2 items + recency close to 1
        assert store.get_segment(segment.id).heat_score == pytest.approx(4.0, abs=1e-3)

    def test_hot_segment_promoted(self, engine, store):
        engine.scheduler = MagicMock()
        segment = add_segment(store, 'agent-1', visit_count=10, items=2, keywords=['tomatoes', 'watering'])

        result = engine.update_heat_scores('agent-1')

        assert result['promoted'] == [segment.id]
        assert store.list_segments('agent-1') == []
        assert store.list_segment_items(segment.id) == []

        user = store.get_or_create_object_persona('agent-1', 'user', 'default')
        agent = store.get_or_create_agent_persona('agent-1')
        fact = store.get_knowledge(f'{segment.id}-fact')
        assert fact.owner.object_persona_id == user.id
        assert 'Topic: A topic' in fact.content
        assert 'Keywords: tomatoes, watering' in fact.content

        traits = {t.trait_name: t for t in store.list_knowledge('agent-1', kind=KnowledgeKind.TRAIT)}
        assert traits['communication_style'].content == 'concise'
        assert traits['communication_style'].owner.agent_persona_id == agent.id
        assert traits['engagement_level'].content == 'low'
        assert traits['engagement_level'].owner.object_persona_id == user.id

        engine.scheduler.schedule.assert_called_once_with('evaluate_knowledge_entry', {'knowledge_id': fact.id})

    def test_cold_segment_stays(self, engine, store):
        segment = add_segment(store, 'agent-1', visit_count=0)
        result = engine.update_heat_scores('agent-1')
        assert result['promoted'] == [] and result['evicted'] == []
        assert store.get_segment(segment.id).heat_score < 5.0

    def test_empty_segment_removed(self, engine, store):
        segment = add_segment(store, 'agent-1', items=1)
        for item in store.list_segment_items(segment.id):
            store.delete_recent_item(item.id)

        engine.update_heat_scores('agent-1')

        assert store.list_segments('agent-1') == []

    def test_fan_out_isolates_agents(self, engine, store):
        add_segment(store, 'agent-1')
        add_segment(store, 'agent-2')
        original = engine.update_heat_scores

        def fail_for_agent_one(agent_id):
            if agent_id == 'agent-1':
                raise RuntimeError('boom')
            return original(agent_id)

        with patch.object(engine, 'update_heat_scores', side_effect=fail_for_agent_one):
            result = engine.update_all_heat_scores()

        assert result == {'succeeded': ['agent-2'], 'failed': ['agent-1']}


class TestConcurrency:

    def test_concurrent_capacity_checks_create_one_segment(self, engine, store):
        items = add_items(store, 'agent-1', 8)
        barrier = threading.Barrier(4)
        errors = []

        def check():
            barrier.wait(timeout=5)
            try:
                engine.check_stm_capacity('agent-1')
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=check) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert errors == []
        segments = store.list_segments('agent-1')
        assert len(segments) == 1
        assert segments[0].item_count == 1
        assert store.get_recent_item(items[0].id).segment_id == segments[0].id
        assert store.count_unlinked_items('agent-1') == 7
