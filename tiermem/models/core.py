"""
Core data models for the hierarchical memory tiers.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.timestamp_utils import utc_now


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class RecentItem:
    """A single interaction turn held in short-term memory (tier 1).

    Items with segment_id set have been transferred and belong to that segment.
    """
    agent_id: str
    query: str
    response: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    segment_id: Optional[str] = None

    @property
    def text(self) -> str:
        return f'{self.query} {self.response}'.strip()


@dataclass
class Segment:
    """A topical cluster of recent items in mid-term memory (tier 2)."""
    agent_id: str
    summary: str
    keywords: List[str]
    embedding: List[float]
    id: str = field(default_factory=new_id)
    heat_score: float = 0.0
    visit_count: int = 0
    item_count: int = 0
    last_accessed: datetime = field(default_factory=utc_now)
    created_at: datetime = field(default_factory=utc_now)
    version: int = 1  # compare-and-swap token, bumped by every successful update


class SegmentOutcome(str, Enum):
    """Result of one heat recompute cycle for a segment."""
    ACTIVE = 'active'
    EVICTED = 'evicted'
    PROMOTED = 'promoted'


class PersonaType(str, Enum):
    OBJECT = 'object'
    AGENT = 'agent'


@dataclass
class ObjectPersona:
    """An entity the agent interacts with (a user, a domain, a product...)."""
    agent_id: str
    type: str
    identifier: str
    profile: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class AgentPersona:
    """The agent's own identity."""
    agent_id: str
    name: str = ''
    description: str = ''
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class PersonaOwner:
    """Owner of a long-term knowledge record: exactly one persona reference is set."""
    object_persona_id: Optional[str] = None
    agent_persona_id: Optional[str] = None

    def __post_init__(self):
        if bool(self.object_persona_id) == bool(self.agent_persona_id):
            raise ValueError('PersonaOwner requires exactly one of object_persona_id or agent_persona_id')

    @classmethod
    def for_object(cls, persona_id: str) -> 'PersonaOwner':
        return cls(object_persona_id=persona_id)

    @classmethod
    def for_agent(cls, persona_id: str) -> 'PersonaOwner':
        return cls(agent_persona_id=persona_id)

    @property
    def persona_type(self) -> PersonaType:
        return PersonaType.OBJECT if self.object_persona_id else PersonaType.AGENT

    @property
    def persona_id(self) -> str:
        return self.object_persona_id or self.agent_persona_id


class KnowledgeKind(str, Enum):
    FACT = 'fact'
    TRAIT = 'trait'


@dataclass
class PersonaKnowledge:
    """A fact or trait held in long-term persona memory (tier 3)."""
    agent_id: str
    owner: PersonaOwner
    content: str
    kind: KnowledgeKind = KnowledgeKind.FACT
    trait_name: Optional[str] = None  # set for traits only
    confidence: float = 1.0
    keywords: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    promoted_to_system: bool = False
    system_memory_id: Optional[str] = None

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f'confidence must be within [0, 1], got {self.confidence}')
        if self.kind == KnowledgeKind.TRAIT and not self.trait_name:
            raise ValueError('trait entries require a trait_name')


@dataclass
class SharedEntry:
    """Cross-agent knowledge in system memory (tier 4)."""
    content: str
    source_agent_id: str
    importance_score: float
    source_knowledge_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class TierConfig:
    """Per-agent capacities and thresholds, resolved once per operation."""
    agent_id: Optional[str] = None
    stm_capacity: int = 7
    mtm_capacity: int = 200
    mtm_fscore_threshold: float = 0.6
    heat_alpha: float = 1.0
    heat_beta: float = 1.0
    heat_gamma: float = 1.0
    heat_threshold: float = 5.0
    system_memory_importance_threshold: float = 0.8
    system_memory_capacity: int = 1000
    recency_time_constant: float = 1.0e7


@dataclass
class QueryContext:
    """Processed query used by every tier search."""
    agent_id: str
    original_query: str
    embedding: List[float]
    keywords: List[str]
    intent: str


@dataclass
class RetrievalLimits:
    stm: int = 5
    mtm: int = 10
    lpm: int = 8
    system: int = 3


@dataclass
class MemoryResults:
    """Raw per-tier retrieval results for one query."""
    query_context: QueryContext
    stm_results: List[RecentItem] = field(default_factory=list)
    mtm_results: List[Segment] = field(default_factory=list)
    lpm_knowledge: List[PersonaKnowledge] = field(default_factory=list)
    lpm_traits: List[PersonaKnowledge] = field(default_factory=list)
    system_results: List[SharedEntry] = field(default_factory=list)

    @property
    def lpm_results(self) -> List[PersonaKnowledge]:
        return self.lpm_knowledge + self.lpm_traits

    def counts(self) -> Dict[str, int]:
        return {
            'stm_count': len(self.stm_results),
            'mtm_count': len(self.mtm_results),
            'lpm_count': len(self.lpm_results),
            'system_count': len(self.system_results),
        }

    @property
    def total(self) -> int:
        return sum(self.counts().values())
