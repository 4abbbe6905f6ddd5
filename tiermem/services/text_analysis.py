"""
Lexical text analysis used for segment clustering and query processing.

Keyword extraction, intent classification and light topic/sentiment tagging are rule based so they run
without a model and always produce a result for non-empty text.
"""

import re
from collections import Counter
from typing import List

INTENTS = ('memory_recall', 'question', 'creation', 'assistance', 'general')

STOPWORDS = frozenset([
    'about', 'above', 'after', 'again', 'also', 'because', 'been', 'before', 'being', 'below', 'between', 'both',
    'could', 'does', 'doing', 'down', 'during', 'each', 'from', 'further', 'have', 'having', 'here', 'into', 'just',
    'more', 'most', 'once', 'only', 'other', 'ought', 'over', 'same', 'should', 'some', 'such', 'than', 'that', 'their',
    'theirs', 'them', 'then', 'there', 'these', 'they', 'this', 'those', 'through', 'under', 'until', 'very', 'were',
    'what', 'when', 'where', 'which', 'while', 'whom', 'will', 'with', 'would', 'your', 'yours', 'yourself'
])

_WORD_RE = re.compile(r'[^\w\s]')
_SENTENCE_RE = re.compile(r'[.!?]+')

_RECALL_PHRASES = ('what did', 'did i', 'did we', 'last time')
_RECALL_WORDS = {'remember', 'recall', 'previously', 'earlier', 'forgot'}
_QUESTION_WORDS = {'how', 'what', 'why', 'when', 'where', 'who', 'which'}
_CREATION_WORDS = {'create', 'make', 'build', 'generate', 'write', 'implement'}
_ASSISTANCE_WORDS = {'help', 'assist', 'support'}


def tokenize(text: str) -> List[str]:
    """Lowercase word tokens with punctuation stripped."""
    return _WORD_RE.sub(' ', (text or '').lower()).split()


def extract_keywords(text: str, limit: int = 10) -> List[str]:
    """Most frequent content words (longer than three characters, stopwords removed).

    Ties keep first-occurrence order so the result is deterministic.
    """
    words = [w for w in tokenize(text) if len(w) > 3 and w not in STOPWORDS]
    return [word for word, _ in Counter(words).most_common(limit)]


def classify_intent(query: str) -> str:
    """Classify a query into one of INTENTS from lexical cues."""
    lowered = (query or '').lower()
    words = set(tokenize(lowered))

    if words & _RECALL_WORDS or any(phrase in lowered for phrase in _RECALL_PHRASES):
        return 'memory_recall'
    if '?' in lowered or words & _QUESTION_WORDS:
        return 'question'
    if words & _CREATION_WORDS:
        return 'creation'
    if words & _ASSISTANCE_WORDS:
        return 'assistance'
    return 'general'


def extract_topics(text: str) -> List[str]:
    words = set(tokenize(text))
    topics = []
    if words & {'help', 'how', 'what', 'explain'}:
        topics.append('information_seeking')
    if words & {'create', 'make', 'build', 'implement'}:
        topics.append('task_execution')
    if words & {'remember', 'recall', 'memory', 'past'}:
        topics.append('memory_query')
    if words & {'learn', 'understand', 'know'}:
        topics.append('learning')
    return topics or ['general']


def analyze_sentiment(text: str) -> str:
    words = tokenize(text)
    positive = sum(1 for w in words if w in {'good', 'great', 'excellent', 'love', 'like', 'amazing', 'wonderful'})
    negative = sum(1 for w in words if w in {'bad', 'terrible', 'hate', 'dislike', 'awful', 'horrible'})
    if positive > negative:
        return 'positive'
    if negative > positive:
        return 'negative'
    return 'neutral'


def extract_entities(text: str) -> List[str]:
    """Capitalized words as candidate entity names, in first-seen order."""
    seen = []
    for token in (text or '').split():
        token = token.strip('.,!?;:"\'()')
        if re.match(r'^[A-Z][a-z]+', token) and token not in seen:
            seen.append(token)
    return seen


def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_RE.split(text or '') if s.strip()]


def generate_summary(text: str, max_length: int = 120) -> str:
    """First sentence of the text, truncated to max_length."""
    sentences = split_sentences(text)
    summary = sentences[0] if sentences else (text or '').strip()
    if len(summary) > max_length:
        summary = summary[:max_length - 3].rstrip() + '...'
    return summary
