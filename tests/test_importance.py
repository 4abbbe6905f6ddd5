from datetime import timedelta

import pytest
from conftest import PERSONAL_FACT, SHAREABLE_FACT

from tiermem.models.core import PersonaKnowledge, PersonaOwner
from tiermem.services.importance import (ACTIONABLE_INDICATORS, calculate_importance, content_complexity,
                                         count_indicators, cross_agent_relevance, reference_score, utility_score)
from tiermem.utils.timestamp_utils import utc_now


def knowledge(content, keywords=(), age_days=0.0, now=None):
    now = now or utc_now()
    return PersonaKnowledge(agent_id='agent-1',
                            owner=PersonaOwner.for_object('persona-1'),
                            content=content,
                            keywords=list(keywords),
                            created_at=now - timedelta(days=age_days))


class TestIndicators:

    def test_single_words_match_whole_tokens(self):
        assert count_indicators('This is it', ('i',)) == 0
        assert count_indicators('I think so', ('i',)) == 1

    def test_phrases(self):
        assert count_indicators('Here is how to fix it', ACTIONABLE_INDICATORS) == 2

    def test_distinct_indicators_counted_once(self):
        assert count_indicators('fix fix fix', ('fix',)) == 1


class TestSubScores:

    def test_cross_agent_general_versus_personal(self):
        assert cross_agent_relevance('A general principle') == 1.0
        assert cross_agent_relevance(PERSONAL_FACT) == 0.0
        assert cross_agent_relevance('A common rule I prefer') == pytest.approx(0.5)

    def test_cross_agent_knowledge_boost(self):
        assert cross_agent_relevance('nothing here', ['algorithm', 'process']) == pytest.approx(0.2)

    def test_utility_capped(self):
        assert utility_score(SHAREABLE_FACT) == 1.0
        assert 0.0 <= utility_score('x') < 0.01

    def test_reference_horizon(self):
        now = utc_now()
        assert reference_score(now - timedelta(days=15), now=now) == pytest.approx(0.5)
        assert reference_score(now - timedelta(days=90), ['a'] * 5, now=now) == 1.0
        assert reference_score(now, ['a'] * 10, now=now) == pytest.approx(0.3)

    def test_complexity(self):
        assert content_complexity(SHAREABLE_FACT) == 1.0
        assert content_complexity('') == 0.0


class TestCalculateImportance:

    def test_weighted_sum(self):
        now = utc_now()
        # cross 1.0, utility 0.069, reference 0.0, complexity 0.18
        assert calculate_importance(knowledge('A general principle', now=now), now=now) == pytest.approx(0.3567)

    def test_rounded_to_four_places(self):
        score = calculate_importance(knowledge('Some mixed content about a general rule for me'))
        assert score == round(score, 4)

    def test_range(self):
        now = utc_now()
        assert calculate_importance(knowledge(SHAREABLE_FACT, age_days=60, now=now), now=now) == pytest.approx(1.0)
        assert calculate_importance(knowledge(PERSONAL_FACT, now=now), now=now) < 0.2
