"""
Importance scoring for promoting long-term persona knowledge into shared system memory.

importance = 0.3 * cross_agent + 0.3 * utility + 0.2 * reference + 0.2 * complexity

Every sub-score lies in [0, 1]. Single-word indicators match whole tokens; multi-word indicators match as
phrases, so short personal markers such as "i" or "me" do not match inside other words.
"""

from datetime import datetime
from typing import Iterable, Optional, Sequence

from ..models.core import PersonaKnowledge
from ..utils.timestamp_utils import seconds_since
from .text_analysis import split_sentences, tokenize

WEIGHTS = (0.3, 0.3, 0.2, 0.2)
REFERENCE_HORIZON_DAYS = 30.0

GENERAL_INDICATORS = ('general', 'common', 'standard', 'typical', 'universal', 'basic', 'fundamental', 'principle',
                      'rule', 'fact', 'concept')
PERSONAL_INDICATORS = ('personal', 'prefer', 'my', 'i', 'me', 'custom', 'specific', 'individual', 'unique',
                       'particular')
KNOWLEDGE_KEYWORDS = ('algorithm', 'process', 'method', 'technique', 'strategy', 'approach')
ACTIONABLE_INDICATORS = ('how to', 'steps', 'process', 'method', 'technique', 'approach', 'solution', 'fix', 'resolve',
                         'implement', 'execute', 'perform')
INFORMATIONAL_INDICATORS = ('definition', 'explanation', 'concept', 'theory', 'principle', 'fact', 'data',
                            'information', 'knowledge', 'understanding')
TECHNICAL_TERMS = ('algorithm', 'implementation', 'architecture', 'framework', 'protocol', 'optimization',
                   'configuration', 'integration', 'methodology', 'analysis')


def count_indicators(text: str, indicators: Sequence[str]) -> int:
    """Number of distinct indicators present in the text."""
    tokens = tokenize(text)
    token_set = set(tokens)
    joined = f' {" ".join(tokens)} '
    matches = 0
    for indicator in indicators:
        if ' ' in indicator:
            matches += f' {indicator} ' in joined
        else:
            matches += indicator in token_set
    return matches


def cross_agent_relevance(content: str, keywords: Iterable[str] = ()) -> float:
    general = count_indicators(content, GENERAL_INDICATORS)
    personal = count_indicators(content, PERSONAL_INDICATORS)
    base_score = general / max(general + personal, 1)

    # Domain/process vocabulary in the keywords makes knowledge more shareable
    knowledge_boost = sum(1 for k in keywords if k in KNOWLEDGE_KEYWORDS) * 0.1
    return min(base_score + knowledge_boost, 1.0)


def utility_score(content: str) -> float:
    actionable = count_indicators(content, ACTIONABLE_INDICATORS) * 0.1
    informational = count_indicators(content, INFORMATIONAL_INDICATORS) * 0.05
    length_factor = min(len(content) / 1000.0, 1.0)
    return min(actionable + informational + length_factor, 1.0)


def reference_score(created_at: datetime, keywords: Sequence[str] = (), now: Optional[datetime] = None) -> float:
    """Older entries are treated as more stable; indexed entries get a small boost."""
    days = seconds_since(created_at, now) / 86400.0
    stability = min(days / REFERENCE_HORIZON_DAYS, 1.0)
    keyword_boost = min(len(keywords) / 10.0, 0.3)
    return min(stability + keyword_boost, 1.0)


def content_complexity(content: str) -> float:
    words = content.split()
    word_score = min(len(words) / 100.0, 0.5)

    technical_score = count_indicators(content, TECHNICAL_TERMS) * 0.1

    sentences = split_sentences(content)
    avg_sentence_length = (sum(len(s.split()) for s in sentences) / len(sentences)) if sentences else 0.0
    sentence_complexity = min(avg_sentence_length / 20.0, 0.3)

    return min(word_score + technical_score + sentence_complexity, 1.0)


def calculate_importance(entry: PersonaKnowledge, now: Optional[datetime] = None) -> float:
    """Weighted importance of a knowledge entry, rounded to four decimals."""
    scores = (
        cross_agent_relevance(entry.content, entry.keywords),
        utility_score(entry.content),
        reference_score(entry.created_at, entry.keywords, now),
        content_complexity(entry.content),
    )
    return round(sum(weight * score for weight, score in zip(WEIGHTS, scores)), 4)
