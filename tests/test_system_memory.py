from conftest import PERSONAL_FACT, add_fact

from tiermem.models.core import SharedEntry


class TestKnowledgeEvaluation:

    def test_important_fact_is_shared(self, engine, store):
        fact = add_fact(store, 'agent-1')

        result = engine.evaluate_knowledge_entry(fact.id)

        assert result['status'] == 'promoted'
        assert result['importance_score'] >= 0.8
        shared = store.list_shared_entries()
        assert len(shared) == 1
        assert shared[0].source_agent_id == 'agent-1'
        assert shared[0].source_knowledge_id == fact.id

        updated = store.get_knowledge(fact.id)
        assert updated.promoted_to_system
        assert updated.system_memory_id == shared[0].id

    def test_second_evaluation_is_a_no_op(self, engine, store):
        fact = add_fact(store, 'agent-1')
        first = engine.evaluate_knowledge_entry(fact.id)

        second = engine.evaluate_knowledge_entry(fact.id)

        assert second['status'] == 'already_promoted'
        assert second['system_memory_id'] == first['system_memory_id']
        assert store.count_shared_entries() == 1

    def test_existing_shared_entry_is_reused(self, engine, store):
        fact = add_fact(store, 'agent-1')
        existing = store.add_shared_entry(
            SharedEntry(content=fact.content, source_agent_id='agent-1', importance_score=0.9,
                        source_knowledge_id=fact.id))

        result = engine.evaluate_knowledge_entry(fact.id)

        assert result['system_memory_id'] == existing.id
        assert store.count_shared_entries() == 1

    def test_personal_fact_stays_private(self, engine, store):
        fact = add_fact(store, 'agent-1', content=PERSONAL_FACT, age_days=0)

        result = engine.evaluate_knowledge_entry(fact.id)

        assert result['status'] == 'below_threshold'
        assert store.count_shared_entries() == 0
        assert not store.get_knowledge(fact.id).promoted_to_system

    def test_agent_threshold_override(self, engine, store, config_service):
        config_service.set_agent_config('agent-1', {'system_memory_importance_threshold': 0.0})
        fact = add_fact(store, 'agent-1', content=PERSONAL_FACT, age_days=0)
        assert engine.evaluate_knowledge_entry(fact.id)['status'] == 'promoted'

    def test_missing_entry(self, engine):
        assert engine.evaluate_knowledge_entry('missing')['status'] == 'not_found'

    def test_evaluate_agent(self, engine, store):
        add_fact(store, 'agent-1')
        add_fact(store, 'agent-1', content=PERSONAL_FACT, age_days=0)

        assert engine.evaluate_agent_lpm('agent-1') == {'agent_id': 'agent-1', 'evaluated': 2, 'promoted': 1}
        assert engine.evaluate_agent_lpm('agent-1') == {'agent_id': 'agent-1', 'evaluated': 1, 'promoted': 0}

    def test_evaluate_all_agents(self, engine, store):
        add_fact(store, 'agent-1')
        add_fact(store, 'agent-2')

        result = engine.evaluate_lpm_promotion()

        assert result['succeeded'] == ['agent-1', 'agent-2']
        assert store.count_shared_entries() == 2


class TestSystemMaintenance:

    def test_evicts_least_important_over_capacity(self, engine, store):
        for score in (0.81, 0.95, 0.83, 0.99, 0.85):
            store.add_shared_entry(SharedEntry(content=str(score), source_agent_id='a', importance_score=score))

        result = engine.system_memory_maintenance(capacity=3)

        assert len(result['evicted']) == 2
        assert result['count'] == 3
        assert [e.importance_score for e in store.list_shared_entries()] == [0.99, 0.95, 0.85]

    def test_within_capacity(self, engine, store):
        store.add_shared_entry(SharedEntry(content='c', source_agent_id='a', importance_score=0.9))
        assert engine.system_memory_maintenance()['evicted'] == []

    def test_source_keeps_promoted_flag_after_eviction(self, engine, store):
        fact = add_fact(store, 'agent-1')
        engine.evaluate_knowledge_entry(fact.id)
        store.add_shared_entry(SharedEntry(content='better', source_agent_id='b', importance_score=1.1))

        engine.system_memory_maintenance(capacity=1)

        assert store.get_knowledge(fact.id).promoted_to_system
        assert engine.evaluate_knowledge_entry(fact.id)['status'] == 'already_promoted'
