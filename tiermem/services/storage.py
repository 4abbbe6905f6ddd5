"""
Storage layer for the four memory tiers.

MemoryStore defines explicit typed operations per entity. InMemoryStore keeps everything in process and is
the default backend; OpenSearchMemoryStore persists each tier in its own index. Mutations of one agent's
memory are serialized through agent_lock(), and segment updates are compare-and-swap on Segment.version.
"""

import copy
import itertools
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from ..models.core import (AgentPersona, KnowledgeKind, ObjectPersona, PersonaKnowledge, PersonaOwner, RecentItem,
                           Segment, SharedEntry)
from ..utils.config import AppConfig, MemoryConfig, OpenSearchConfig
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchConflictError, OpenSearchError
from ..utils.timestamp_utils import parse_datetime, utc_now

logger = get_logger(__name__)

CAS_RETRIES = 5


class StorageError(Exception):
    """Custom exception for storage errors."""
    pass


class NotFoundError(StorageError):
    """Raised when a referenced record does not exist."""
    pass


class ConcurrentModificationError(StorageError):
    """Raised when a compare-and-swap update finds a newer version."""
    pass


class MemoryStore(ABC):
    """Typed storage operations for every memory tier."""

    def __init__(self):
        self._locks_guard = threading.Lock()
        self._agent_locks: Dict[str, threading.RLock] = {}

    @contextmanager
    def agent_lock(self, agent_id: str) -> Iterator[None]:
        """Serialize mutations of one agent's memory (re-entrant)."""
        with self._locks_guard:
            lock = self._agent_locks.setdefault(agent_id, threading.RLock())
        with lock:
            yield

    # Tier 1: recent items

    @abstractmethod
    def add_recent_item(self, item: RecentItem) -> RecentItem:
        ...

    @abstractmethod
    def get_recent_item(self, item_id: str) -> RecentItem:
        ...

    @abstractmethod
    def list_unlinked_items(self, agent_id: str, newest_first: bool = False, limit: Optional[int] = None) -> List[RecentItem]:
        ...

    @abstractmethod
    def list_segment_items(self, segment_id: str) -> List[RecentItem]:
        ...

    @abstractmethod
    def link_item(self, item_id: str, segment_id: str) -> RecentItem:
        ...

    @abstractmethod
    def delete_recent_item(self, item_id: str) -> bool:
        ...

    def count_unlinked_items(self, agent_id: str) -> int:
        return len(self.list_unlinked_items(agent_id))

    # Tier 2: segments

    @abstractmethod
    def _insert_segment(self, segment: Segment) -> Segment:
        ...

    @abstractmethod
    def get_segment(self, segment_id: str) -> Segment:
        ...

    @abstractmethod
    def list_segments(self, agent_id: str) -> List[Segment]:
        ...

    @abstractmethod
    def update_segment(self, segment: Segment) -> Segment:
        """Persist segment if the stored version still equals segment.version; returns it with version + 1.

        Raises:
            ConcurrentModificationError: If another writer updated the segment first
        """
        ...

    @abstractmethod
    def _delete_segment_record(self, segment_id: str) -> bool:
        ...

    def create_segment(self, segment: Segment, seed_item_id: str) -> Segment:
        """Create a segment together with its first item; no segment is left behind without items."""
        segment = replace(segment, item_count=1, version=1)
        created = self._insert_segment(segment)
        try:
            self.link_item(seed_item_id, created.id)
        except Exception:
            self._delete_segment_record(created.id)
            raise
        return created

    def attach_item(self, segment: Segment, item_id: str) -> Segment:
        """Write the merged segment, then mark the item as linked to it."""
        updated = self.update_segment(replace(segment, item_count=segment.item_count + 1))
        self.link_item(item_id, updated.id)
        return updated

    def delete_segment(self, segment_id: str, delete_items: bool = True) -> int:
        """Remove a segment and (by default) its attached items.

        Returns:
            Number of attached items removed
        """
        removed = 0
        if delete_items:
            for item in self.list_segment_items(segment_id):
                removed += int(self.delete_recent_item(item.id))
        if not self._delete_segment_record(segment_id):
            raise NotFoundError(f'Segment {segment_id} not found')
        return removed

    def touch_segment(self, segment_id: str, now: Optional[datetime] = None) -> Segment:
        """Count a visit and refresh last_accessed, retrying on version conflicts."""
        for _ in range(CAS_RETRIES):
            segment = self.get_segment(segment_id)
            try:
                return self.update_segment(
                    replace(segment, visit_count=segment.visit_count + 1, last_accessed=now or utc_now()))
            except ConcurrentModificationError:
                continue
        raise ConcurrentModificationError(f'Segment {segment_id} kept changing while recording a visit')

    # Tier 3: personas and knowledge

    @abstractmethod
    def get_or_create_object_persona(self, agent_id: str, persona_type: str, identifier: str,
                                     profile: Optional[Dict[str, Any]] = None) -> ObjectPersona:
        ...

    @abstractmethod
    def get_or_create_agent_persona(self, agent_id: str, name: str = '') -> AgentPersona:
        ...

    @abstractmethod
    def add_knowledge(self, entry: PersonaKnowledge) -> PersonaKnowledge:
        ...

    @abstractmethod
    def get_knowledge(self, knowledge_id: str) -> PersonaKnowledge:
        ...

    @abstractmethod
    def list_knowledge(self, agent_id: str, kind: Optional[KnowledgeKind] = None,
                       limit: Optional[int] = None) -> List[PersonaKnowledge]:
        """Knowledge for the agent, newest first."""
        ...

    @abstractmethod
    def update_knowledge(self, entry: PersonaKnowledge) -> PersonaKnowledge:
        ...

    @abstractmethod
    def delete_knowledge(self, knowledge_id: str) -> bool:
        ...

    # Tier 4: shared entries

    @abstractmethod
    def add_shared_entry(self, entry: SharedEntry) -> SharedEntry:
        ...

    @abstractmethod
    def list_shared_entries(self, limit: Optional[int] = None) -> List[SharedEntry]:
        """Shared entries by importance, highest first."""
        ...

    @abstractmethod
    def find_shared_by_source(self, knowledge_id: str) -> Optional[SharedEntry]:
        ...

    @abstractmethod
    def delete_shared_entry(self, entry_id: str) -> bool:
        ...

    def count_shared_entries(self) -> int:
        return len(self.list_shared_entries())

    @abstractmethod
    def list_agent_ids(self) -> List[str]:
        """Every agent that owns at least one tier 1-3 record."""
        ...

    def health_check(self) -> bool:
        return True


class InMemoryStore(MemoryStore):
    """Process-local store; returns copies so callers never alias stored records."""

    def __init__(self):
        super().__init__()
        self._lock = threading.RLock()
        self._sequence = itertools.count()
        self._items: Dict[str, RecentItem] = {}
        self._item_order: Dict[str, int] = {}
        self._segments: Dict[str, Segment] = {}
        self._object_personas: Dict[str, ObjectPersona] = {}
        self._agent_personas: Dict[str, AgentPersona] = {}
        self._knowledge: Dict[str, PersonaKnowledge] = {}
        self._shared: Dict[str, SharedEntry] = {}

    def add_recent_item(self, item: RecentItem) -> RecentItem:
        with self._lock:
            self._items[item.id] = copy.deepcopy(item)
            self._item_order[item.id] = next(self._sequence)
        return copy.deepcopy(item)

    def get_recent_item(self, item_id: str) -> RecentItem:
        with self._lock:
            if item_id not in self._items:
                raise NotFoundError(f'Recent item {item_id} not found')
            return copy.deepcopy(self._items[item_id])

    def _ordered_items(self, predicate) -> List[RecentItem]:
        items = [i for i in self._items.values() if predicate(i)]
        items.sort(key=lambda i: (i.created_at, self._item_order[i.id]))
        return items

    def list_unlinked_items(self, agent_id: str, newest_first: bool = False, limit: Optional[int] = None) -> List[RecentItem]:
        with self._lock:
            items = self._ordered_items(lambda i: i.agent_id == agent_id and i.segment_id is None)
            if newest_first:
                items.reverse()
            if limit is not None:
                items = items[:limit]
            return copy.deepcopy(items)

    def list_segment_items(self, segment_id: str) -> List[RecentItem]:
        with self._lock:
            return copy.deepcopy(self._ordered_items(lambda i: i.segment_id == segment_id))

    def link_item(self, item_id: str, segment_id: str) -> RecentItem:
        with self._lock:
            if item_id not in self._items:
                raise NotFoundError(f'Recent item {item_id} not found')
            if segment_id not in self._segments:
                raise NotFoundError(f'Segment {segment_id} not found')
            self._items[item_id].segment_id = segment_id
            return copy.deepcopy(self._items[item_id])

    def delete_recent_item(self, item_id: str) -> bool:
        with self._lock:
            self._item_order.pop(item_id, None)
            return self._items.pop(item_id, None) is not None

    def _insert_segment(self, segment: Segment) -> Segment:
        with self._lock:
            self._segments[segment.id] = copy.deepcopy(segment)
        return copy.deepcopy(segment)

    def get_segment(self, segment_id: str) -> Segment:
        with self._lock:
            if segment_id not in self._segments:
                raise NotFoundError(f'Segment {segment_id} not found')
            return copy.deepcopy(self._segments[segment_id])

    def list_segments(self, agent_id: str) -> List[Segment]:
        with self._lock:
            segments = [s for s in self._segments.values() if s.agent_id == agent_id]
            segments.sort(key=lambda s: s.created_at)
            return copy.deepcopy(segments)

    def update_segment(self, segment: Segment) -> Segment:
        with self._lock:
            stored = self._segments.get(segment.id)
            if stored is None:
                raise NotFoundError(f'Segment {segment.id} not found')
            if stored.version != segment.version:
                raise ConcurrentModificationError(
                    f'Segment {segment.id} is at version {stored.version}, update was based on {segment.version}')
            updated = replace(copy.deepcopy(segment), version=segment.version + 1)
            self._segments[segment.id] = updated
            return copy.deepcopy(updated)

    def _delete_segment_record(self, segment_id: str) -> bool:
        with self._lock:
            return self._segments.pop(segment_id, None) is not None

    def get_or_create_object_persona(self, agent_id: str, persona_type: str, identifier: str,
                                     profile: Optional[Dict[str, Any]] = None) -> ObjectPersona:
        with self._lock:
            for persona in self._object_personas.values():
                if (persona.agent_id, persona.type, persona.identifier) == (agent_id, persona_type, identifier):
                    return copy.deepcopy(persona)
            persona = ObjectPersona(agent_id=agent_id, type=persona_type, identifier=identifier, profile=profile or {})
            self._object_personas[persona.id] = persona
            return copy.deepcopy(persona)

    def get_or_create_agent_persona(self, agent_id: str, name: str = '') -> AgentPersona:
        with self._lock:
            if agent_id not in self._agent_personas:
                self._agent_personas[agent_id] = AgentPersona(agent_id=agent_id, name=name or agent_id)
            return copy.deepcopy(self._agent_personas[agent_id])

    def add_knowledge(self, entry: PersonaKnowledge) -> PersonaKnowledge:
        with self._lock:
            self._knowledge[entry.id] = copy.deepcopy(entry)
        return copy.deepcopy(entry)

    def get_knowledge(self, knowledge_id: str) -> PersonaKnowledge:
        with self._lock:
            if knowledge_id not in self._knowledge:
                raise NotFoundError(f'Knowledge entry {knowledge_id} not found')
            return copy.deepcopy(self._knowledge[knowledge_id])

    def list_knowledge(self, agent_id: str, kind: Optional[KnowledgeKind] = None,
                       limit: Optional[int] = None) -> List[PersonaKnowledge]:
        with self._lock:
            entries = [e for e in self._knowledge.values() if e.agent_id == agent_id and (kind is None or e.kind == kind)]
            entries.sort(key=lambda e: e.created_at, reverse=True)
            if limit is not None:
                entries = entries[:limit]
            return copy.deepcopy(entries)

    def update_knowledge(self, entry: PersonaKnowledge) -> PersonaKnowledge:
        with self._lock:
            if entry.id not in self._knowledge:
                raise NotFoundError(f'Knowledge entry {entry.id} not found')
            self._knowledge[entry.id] = copy.deepcopy(entry)
        return copy.deepcopy(entry)

    def delete_knowledge(self, knowledge_id: str) -> bool:
        with self._lock:
            return self._knowledge.pop(knowledge_id, None) is not None

    def add_shared_entry(self, entry: SharedEntry) -> SharedEntry:
        with self._lock:
            self._shared[entry.id] = copy.deepcopy(entry)
        return copy.deepcopy(entry)

    def list_shared_entries(self, limit: Optional[int] = None) -> List[SharedEntry]:
        with self._lock:
            entries = sorted(self._shared.values(), key=lambda e: (e.importance_score, e.created_at), reverse=True)
            if limit is not None:
                entries = entries[:limit]
            return copy.deepcopy(entries)

    def find_shared_by_source(self, knowledge_id: str) -> Optional[SharedEntry]:
        with self._lock:
            for entry in self._shared.values():
                if entry.source_knowledge_id == knowledge_id:
                    return copy.deepcopy(entry)
        return None

    def delete_shared_entry(self, entry_id: str) -> bool:
        with self._lock:
            return self._shared.pop(entry_id, None) is not None

    def list_agent_ids(self) -> List[str]:
        with self._lock:
            agent_ids = {i.agent_id for i in self._items.values()}
            agent_ids.update(s.agent_id for s in self._segments.values())
            agent_ids.update(k.agent_id for k in self._knowledge.values())
            return sorted(agent_ids)


# OpenSearch document conversion


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _item_to_doc(item: RecentItem) -> Dict[str, Any]:
    return {
        'id': item.id,
        'agent_id': item.agent_id,
        'query': item.query,
        'response': item.response,
        'created_at': _iso(item.created_at),
        'segment_id': item.segment_id,
    }


def _item_from_doc(doc: Dict[str, Any]) -> RecentItem:
    return RecentItem(id=doc['id'],
                      agent_id=doc['agent_id'],
                      query=doc.get('query', ''),
                      response=doc.get('response', ''),
                      created_at=parse_datetime(doc.get('created_at')),
                      segment_id=doc.get('segment_id'))


def _segment_to_doc(segment: Segment) -> Dict[str, Any]:
    return {
        'id': segment.id,
        'agent_id': segment.agent_id,
        'summary': segment.summary,
        'keywords': list(segment.keywords),
        'embedding': list(segment.embedding),
        'heat_score': segment.heat_score,
        'visit_count': segment.visit_count,
        'item_count': segment.item_count,
        'last_accessed': _iso(segment.last_accessed),
        'created_at': _iso(segment.created_at),
    }


def _segment_from_doc(doc: Dict[str, Any], version: Optional[int]) -> Segment:
    return Segment(id=doc['id'],
                   agent_id=doc['agent_id'],
                   summary=doc.get('summary', ''),
                   keywords=list(doc.get('keywords') or []),
                   embedding=list(doc.get('embedding') or []),
                   heat_score=float(doc.get('heat_score', 0.0)),
                   visit_count=int(doc.get('visit_count', 0)),
                   item_count=int(doc.get('item_count', 0)),
                   last_accessed=parse_datetime(doc.get('last_accessed')),
                   created_at=parse_datetime(doc.get('created_at')),
                   version=int(version or 1))


def _knowledge_to_doc(entry: PersonaKnowledge) -> Dict[str, Any]:
    return {
        'id': entry.id,
        'agent_id': entry.agent_id,
        'object_persona_id': entry.owner.object_persona_id,
        'agent_persona_id': entry.owner.agent_persona_id,
        'content': entry.content,
        'kind': entry.kind.value,
        'trait_name': entry.trait_name,
        'confidence': entry.confidence,
        'keywords': list(entry.keywords),
        'created_at': _iso(entry.created_at),
        'promoted_to_system': entry.promoted_to_system,
        'system_memory_id': entry.system_memory_id,
    }


def _knowledge_from_doc(doc: Dict[str, Any]) -> PersonaKnowledge:
    return PersonaKnowledge(id=doc['id'],
                            agent_id=doc['agent_id'],
                            owner=PersonaOwner(object_persona_id=doc.get('object_persona_id'),
                                               agent_persona_id=doc.get('agent_persona_id')),
                            content=doc.get('content', ''),
                            kind=KnowledgeKind(doc.get('kind', KnowledgeKind.FACT.value)),
                            trait_name=doc.get('trait_name'),
                            confidence=float(doc.get('confidence', 1.0)),
                            keywords=list(doc.get('keywords') or []),
                            created_at=parse_datetime(doc.get('created_at')),
                            promoted_to_system=bool(doc.get('promoted_to_system', False)),
                            system_memory_id=doc.get('system_memory_id'))


def _shared_to_doc(entry: SharedEntry) -> Dict[str, Any]:
    return {
        'id': entry.id,
        'content': entry.content,
        'source_agent_id': entry.source_agent_id,
        'importance_score': entry.importance_score,
        'source_knowledge_id': entry.source_knowledge_id,
        'created_at': _iso(entry.created_at),
    }


def _shared_from_doc(doc: Dict[str, Any]) -> SharedEntry:
    return SharedEntry(id=doc['id'],
                       content=doc.get('content', ''),
                       source_agent_id=doc.get('source_agent_id', ''),
                       importance_score=float(doc.get('importance_score', 0.0)),
                       source_knowledge_id=doc.get('source_knowledge_id'),
                       created_at=parse_datetime(doc.get('created_at')))


_KEYWORD = {'type': 'keyword'}
_DATE = {'type': 'date'}

INDEX_MAPPINGS = {
    'recent_items': {
        'id': _KEYWORD, 'agent_id': _KEYWORD, 'query': {'type': 'text'}, 'response': {'type': 'text'},
        'created_at': _DATE, 'segment_id': _KEYWORD
    },
    'segments': {
        'id': _KEYWORD, 'agent_id': _KEYWORD, 'summary': {'type': 'text'}, 'keywords': _KEYWORD,
        'embedding': {'type': 'float', 'index': False}, 'heat_score': {'type': 'float'},
        'visit_count': {'type': 'integer'}, 'item_count': {'type': 'integer'}, 'last_accessed': _DATE,
        'created_at': _DATE
    },
    'personas': {
        'id': _KEYWORD, 'agent_id': _KEYWORD, 'persona_type': _KEYWORD, 'type': _KEYWORD, 'identifier': _KEYWORD,
        'name': {'type': 'text'}, 'created_at': _DATE
    },
    'knowledge': {
        'id': _KEYWORD, 'agent_id': _KEYWORD, 'object_persona_id': _KEYWORD, 'agent_persona_id': _KEYWORD,
        'content': {'type': 'text'}, 'kind': _KEYWORD, 'trait_name': _KEYWORD, 'confidence': {'type': 'float'},
        'keywords': _KEYWORD, 'created_at': _DATE, 'promoted_to_system': {'type': 'boolean'},
        'system_memory_id': _KEYWORD
    },
    'shared': {
        'id': _KEYWORD, 'content': {'type': 'text'}, 'source_agent_id': _KEYWORD,
        'importance_score': {'type': 'float'}, 'source_knowledge_id': _KEYWORD, 'created_at': _DATE
    },
}

MAX_RESULTS = 10000


class OpenSearchMemoryStore(MemoryStore):
    """Persists each tier in its own OpenSearch index.

    Writes wait for refresh so a later read in the same operation sequence sees them. Segment updates use
    external versioning as the compare-and-swap token.
    """

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearchClient] = None):
        super().__init__()
        self.opensearch = client or OpenSearchClient(config)
        self.indices = {name: self.opensearch.index_name(name) for name in INDEX_MAPPINGS}

        try:
            for name, mappings in INDEX_MAPPINGS.items():
                self.opensearch.create_index_if_not_exists(self.indices[name], mappings)
        except OpenSearchError as e:
            logger.warning(f'Failed to create OpenSearch indexes: {e}')

        logger.info('Initialized OpenSearchMemoryStore')

    @contextmanager
    def _wrap(self, action: str) -> Iterator[None]:
        try:
            yield
        except OpenSearchConflictError as e:
            raise ConcurrentModificationError(f'{action} failed: {e}')
        except OpenSearchError as e:
            logger.error(f'OpenSearch error during {action}: {e}')
            raise StorageError(f'{action} failed: {e}')

    def _get(self, index: str, doc_id: str, label: str):
        with self._wrap(f'get {label}'):
            found = self.opensearch.get_document(self.indices[index], doc_id)
        if found is None:
            raise NotFoundError(f'{label} {doc_id} not found')
        return found

    def _put(self, index: str, doc_id: str, document: Dict[str, Any], version: Optional[int] = None) -> None:
        with self._wrap(f'write {index}'):
            self.opensearch.index_document(self.indices[index], doc_id, document, version=version)

    def _delete(self, index: str, doc_id: str) -> bool:
        with self._wrap(f'delete {index}'):
            return self.opensearch.delete_document(self.indices[index], doc_id)

    def _search(self, index: str, filters: Dict[str, Any], sort: Optional[List[Dict[str, Any]]] = None,
                size: Optional[int] = None, must_not: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
        with self._wrap(f'search {index}'):
            return self.opensearch.search(self.indices[index],
                                          filters=filters,
                                          must_not=must_not,
                                          sort=sort,
                                          size=MAX_RESULTS if size is None else size)

    def add_recent_item(self, item: RecentItem) -> RecentItem:
        self._put('recent_items', item.id, _item_to_doc(item))
        return item

    def get_recent_item(self, item_id: str) -> RecentItem:
        doc, _ = self._get('recent_items', item_id, 'Recent item')
        return _item_from_doc(doc)

    def list_unlinked_items(self, agent_id: str, newest_first: bool = False, limit: Optional[int] = None) -> List[RecentItem]:
        order = 'desc' if newest_first else 'asc'
        docs = self._search('recent_items', {'agent_id': agent_id},
                            sort=[{'created_at': order}, {'id': order}],
                            size=limit,
                            must_not=[{'exists': {'field': 'segment_id'}}])
        return [_item_from_doc(d) for d in docs]

    def list_segment_items(self, segment_id: str) -> List[RecentItem]:
        docs = self._search('recent_items', {'segment_id': segment_id}, sort=[{'created_at': 'asc'}])
        return [_item_from_doc(d) for d in docs]

    def link_item(self, item_id: str, segment_id: str) -> RecentItem:
        item = self.get_recent_item(item_id)
        item.segment_id = segment_id
        self._put('recent_items', item.id, _item_to_doc(item))
        return item

    def delete_recent_item(self, item_id: str) -> bool:
        return self._delete('recent_items', item_id)

    def _insert_segment(self, segment: Segment) -> Segment:
        self._put('segments', segment.id, _segment_to_doc(segment), version=segment.version)
        return segment

    def get_segment(self, segment_id: str) -> Segment:
        doc, version = self._get('segments', segment_id, 'Segment')
        return _segment_from_doc(doc, version)

    def list_segments(self, agent_id: str) -> List[Segment]:
        docs = self._search('segments', {'agent_id': agent_id}, sort=[{'created_at': 'asc'}])
        return [_segment_from_doc(d, d.get('_version')) for d in docs]

    def update_segment(self, segment: Segment) -> Segment:
        updated = replace(segment, version=segment.version + 1)
        self._put('segments', segment.id, _segment_to_doc(updated), version=updated.version)
        return updated

    def _delete_segment_record(self, segment_id: str) -> bool:
        return self._delete('segments', segment_id)

    def get_or_create_object_persona(self, agent_id: str, persona_type: str, identifier: str,
                                     profile: Optional[Dict[str, Any]] = None) -> ObjectPersona:
        docs = self._search('personas', {
            'agent_id': agent_id,
            'persona_type': 'object',
            'type': persona_type,
            'identifier': identifier
        }, size=1)
        if docs:
            doc = docs[0]
            return ObjectPersona(id=doc['id'],
                                 agent_id=agent_id,
                                 type=persona_type,
                                 identifier=identifier,
                                 profile=doc.get('profile') or {},
                                 created_at=parse_datetime(doc.get('created_at')))

        persona = ObjectPersona(agent_id=agent_id, type=persona_type, identifier=identifier, profile=profile or {})
        self._put('personas', persona.id, {
            'id': persona.id,
            'agent_id': agent_id,
            'persona_type': 'object',
            'type': persona_type,
            'identifier': identifier,
            'profile': persona.profile,
            'created_at': _iso(persona.created_at),
        })
        return persona

    def get_or_create_agent_persona(self, agent_id: str, name: str = '') -> AgentPersona:
        # One agent persona per agent, keyed by agent id
        doc_id = f'agent-{agent_id}'
        with self._wrap('get agent persona'):
            found = self.opensearch.get_document(self.indices['personas'], doc_id)
        if found is not None:
            doc, _ = found
            return AgentPersona(id=doc['id'],
                                agent_id=agent_id,
                                name=doc.get('name', ''),
                                description=doc.get('description', ''),
                                created_at=parse_datetime(doc.get('created_at')))

        persona = AgentPersona(agent_id=agent_id, name=name or agent_id, id=doc_id)
        self._put('personas', doc_id, {
            'id': doc_id,
            'agent_id': agent_id,
            'persona_type': 'agent',
            'name': persona.name,
            'description': persona.description,
            'created_at': _iso(persona.created_at),
        })
        return persona

    def add_knowledge(self, entry: PersonaKnowledge) -> PersonaKnowledge:
        self._put('knowledge', entry.id, _knowledge_to_doc(entry))
        return entry

    def get_knowledge(self, knowledge_id: str) -> PersonaKnowledge:
        doc, _ = self._get('knowledge', knowledge_id, 'Knowledge entry')
        return _knowledge_from_doc(doc)

    def list_knowledge(self, agent_id: str, kind: Optional[KnowledgeKind] = None,
                       limit: Optional[int] = None) -> List[PersonaKnowledge]:
        filters = {'agent_id': agent_id}
        if kind is not None:
            filters['kind'] = kind.value
        docs = self._search('knowledge', filters, sort=[{'created_at': 'desc'}], size=limit)
        return [_knowledge_from_doc(d) for d in docs]

    def update_knowledge(self, entry: PersonaKnowledge) -> PersonaKnowledge:
        self.get_knowledge(entry.id)
        self._put('knowledge', entry.id, _knowledge_to_doc(entry))
        return entry

    def delete_knowledge(self, knowledge_id: str) -> bool:
        return self._delete('knowledge', knowledge_id)

    def add_shared_entry(self, entry: SharedEntry) -> SharedEntry:
        self._put('shared', entry.id, _shared_to_doc(entry))
        return entry

    def list_shared_entries(self, limit: Optional[int] = None) -> List[SharedEntry]:
        docs = self._search('shared', {}, sort=[{'importance_score': 'desc'}, {'created_at': 'desc'}], size=limit)
        return [_shared_from_doc(d) for d in docs]

    def find_shared_by_source(self, knowledge_id: str) -> Optional[SharedEntry]:
        docs = self._search('shared', {'source_knowledge_id': knowledge_id}, size=1)
        return _shared_from_doc(docs[0]) if docs else None

    def delete_shared_entry(self, entry_id: str) -> bool:
        return self._delete('shared', entry_id)

    def count_shared_entries(self) -> int:
        with self._wrap('count shared entries'):
            return self.opensearch.count(self.indices['shared'])

    def list_agent_ids(self) -> List[str]:
        agent_ids = set()
        for index in ('recent_items', 'segments', 'knowledge'):
            agent_ids.update(d['agent_id'] for d in self._search(index, {}) if d.get('agent_id'))
        return sorted(agent_ids)

    def health_check(self) -> bool:
        return self.opensearch.health_check()


def create_store(config: Optional[AppConfig] = None) -> MemoryStore:
    """Build the storage backend selected by MemoryConfig.store_backend."""
    if config is None:
        from ..utils.config import config as default_config
        config = default_config

    memory_config: MemoryConfig = config.memory
    backend = memory_config.store_backend.lower()
    if backend == 'memory':
        return InMemoryStore()
    if backend == 'opensearch':
        return OpenSearchMemoryStore(config.opensearch)
    raise StorageError(f'Unknown store backend: {memory_config.store_backend}')
