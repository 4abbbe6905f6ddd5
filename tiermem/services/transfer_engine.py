"""
Capacity and transfer engine: moves memory between tiers.

- Tier 1 -> 2: overflowing recent items are clustered into segments by Fscore.
- Tier 2 -> 3: segments are heat-scored; over capacity the coldest are evicted, otherwise hot ones are
  promoted into persona knowledge and traits.
- Tier 3 -> 4: knowledge facts whose importance clears the threshold are contributed to shared system memory,
  which is kept within capacity by evicting the least important entries.

Every operation is safe to repeat. Work for one agent runs under that agent's store lock.
"""

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..models.core import (KnowledgeKind, PersonaKnowledge, PersonaOwner, RecentItem, Segment, SegmentOutcome,
                           SharedEntry, TierConfig)
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now
from .configuration import ConfigurationService
from .importance import calculate_importance
from .scoring import fscore, heat_score, recency_factor
from .storage import CAS_RETRIES, ConcurrentModificationError, MemoryStore, NotFoundError, StorageError
from .text_analysis import extract_keywords, generate_summary

logger = get_logger(__name__)

MAX_SEGMENT_KEYWORDS = 20
DEFAULT_OBJECT_PERSONA = ('user', 'default')


class TransferError(Exception):
    """Custom exception for tier transfer errors."""
    pass


def merge_keywords(existing: Sequence[str], incoming: Sequence[str], limit: int = MAX_SEGMENT_KEYWORDS) -> List[str]:
    merged = list(existing)
    merged.extend(k for k in incoming if k not in existing)
    return merged[:limit]


def merge_embeddings(existing: Sequence[float], incoming: Sequence[float], existing_weight: int) -> List[float]:
    """Running mean of the segment embedding with one more item."""
    if not existing or len(existing) != len(incoming) or existing_weight < 1:
        return list(incoming)
    total = existing_weight + 1
    return [(e * existing_weight + i) / total for e, i in zip(existing, incoming)]


def synthesize_knowledge(segment: Segment, items: Sequence[RecentItem]) -> str:
    """Render a segment and its interactions as a knowledge fact."""
    page_content = '\n\n'.join(f'Q: {item.query}\nA: {item.response}' for item in items)
    return (f'Topic: {segment.summary}\n\n'
            f'Key Information:\n{page_content}\n\n'
            f'Keywords: {", ".join(segment.keywords)}')


def extract_traits(items: Sequence[RecentItem]) -> List[Tuple[str, str, float]]:
    """Interaction-pattern traits as (name, value, confidence)."""
    interaction_count = len(items)
    avg_response_length = sum(len(item.response) for item in items) // max(interaction_count, 1)

    if interaction_count > 10:
        engagement = 'high'
    elif interaction_count > 5:
        engagement = 'medium'
    else:
        engagement = 'low'

    return [
        ('communication_style', 'detailed' if avg_response_length > 100 else 'concise', 0.7),
        ('engagement_level', engagement, 0.6),
    ]


class TransferEngine:
    """Capacity-triggered transfer, eviction and promotion between memory tiers."""

    def __init__(self, store: MemoryStore, embedder: BedrockEmbed, config_service: ConfigurationService):
        self.store = store
        self.embedder = embedder
        self.config_service = config_service
        self.scheduler = None
        self._system_lock = threading.Lock()

    # Tier 1 -> Tier 2

    def check_stm_capacity(self, agent_id: str) -> Dict[str, Any]:
        """
        Transfer the oldest unlinked recent items beyond the agent's tier-1 capacity.

        Items are processed oldest first and independently; a failed item stays in tier 1.

        Returns:
            Dictionary with counts and the ids of transferred items

        Raises:
            TransferError: If any item failed (after all others were attempted), so the job is retried
        """
        tier_config = self.config_service.get_config(agent_id)

        with self.store.agent_lock(agent_id):
            items = self.store.list_unlinked_items(agent_id)
            count = len(items)
            if count <= tier_config.stm_capacity:
                logger.debug(f'STM capacity ({count}/{tier_config.stm_capacity}) within limits for agent {agent_id}')
                return {'agent_id': agent_id, 'count': count, 'capacity': tier_config.stm_capacity,
                        'transferred': [], 'failed': []}

            transferred, failed = [], []
            for item in items[:count - tier_config.stm_capacity]:
                try:
                    self.transfer_item(item, tier_config)
                    transferred.append(item.id)
                except Exception as e:
                    logger.warning(f'Failed to transfer item {item.id} for agent {agent_id}: {e}')
                    failed.append(item.id)

        logger.info(f'Transferred {len(transferred)} items from STM to MTM for agent {agent_id}')
        if failed:
            raise TransferError(f'Failed to transfer {len(failed)} of {len(failed) + len(transferred)} items '
                                f'for agent {agent_id}')
        return {'agent_id': agent_id, 'count': count, 'capacity': tier_config.stm_capacity,
                'transferred': transferred, 'failed': failed}

    def item_features(self, item: RecentItem) -> Tuple[List[float], List[str]]:
        """Embedding and keywords for an item; embedding failure degrades to keyword-only matching."""
        try:
            embedding = self.embedder.embed(item.text)
        except BedrockEmbedError as e:
            logger.warning(f'Embedding unavailable for item {item.id}, using keywords only: {e}')
            embedding = []
        return embedding, extract_keywords(item.text)

    def find_best_segment(self, embedding: Sequence[float], keywords: Sequence[str], segments: Sequence[Segment],
                          threshold: float) -> Optional[Tuple[Segment, float]]:
        best = None
        for segment in segments:
            score = fscore(segment.embedding, embedding, segment.keywords, keywords)
            if best is None or score > best[1]:
                best = (segment, score)
        if best is None or best[1] < threshold:
            return None
        return best

    def transfer_item(self, item: RecentItem, tier_config: TierConfig) -> Segment:
        """Attach one item to its best-matching segment, or seed a new segment from it."""
        embedding, keywords = self.item_features(item)
        segments = self.store.list_segments(item.agent_id)
        best = self.find_best_segment(embedding, keywords, segments, tier_config.mtm_fscore_threshold)

        if best is not None:
            segment, score = best
            logger.debug(f'Item {item.id} matches segment {segment.id} with Fscore {score:.3f}')
            return self._attach(segment, item, embedding, keywords)

        now = utc_now()
        segment = Segment(agent_id=item.agent_id,
                          summary=generate_summary(item.query or item.text),
                          keywords=keywords[:MAX_SEGMENT_KEYWORDS],
                          embedding=list(embedding),
                          heat_score=heat_score(0, 1, 1.0, tier_config.heat_alpha, tier_config.heat_beta,
                                                tier_config.heat_gamma),
                          last_accessed=now,
                          created_at=now)
        created = self.store.create_segment(segment, item.id)
        logger.info(f'Created segment {created.id} for agent {item.agent_id} from item {item.id}')
        return created

    def _attach(self, segment: Segment, item: RecentItem, embedding: List[float], keywords: List[str]) -> Segment:
        for _ in range(CAS_RETRIES):
            merged = replace(segment,
                             keywords=merge_keywords(segment.keywords, keywords),
                             embedding=merge_embeddings(segment.embedding, embedding, segment.item_count) if embedding
                             else list(segment.embedding),
                             last_accessed=utc_now())
            try:
                updated = self.store.attach_item(merged, item.id)
                logger.debug(f'Attached item {item.id} to segment {segment.id}')
                return updated
            except ConcurrentModificationError:
                segment = self.store.get_segment(segment.id)
        raise TransferError(f'Segment {segment.id} kept changing while attaching item {item.id}')

    # Tier 2 heat, eviction and promotion

    def update_heat_scores(self, agent_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Recompute heat for every segment of the agent, then enforce tier-2 capacity."""
        tier_config = self.config_service.get_config(agent_id)
        now = now or utc_now()

        with self.store.agent_lock(agent_id):
            updated = 0
            for segment in self.store.list_segments(agent_id):
                if self._recompute_heat(segment, tier_config, now) is not None:
                    updated += 1
            outcomes = self.manage_mtm_capacity(agent_id, tier_config)

        result = {
            'agent_id': agent_id,
            'updated': updated,
            'evicted': [sid for sid, o in outcomes.items() if o == SegmentOutcome.EVICTED],
            'promoted': [sid for sid, o in outcomes.items() if o == SegmentOutcome.PROMOTED],
        }
        logger.info(f'Updated heat scores for {updated} segments for agent {agent_id}: '
                    f'{len(result["evicted"])} evicted, {len(result["promoted"])} promoted')
        return result

    def _recompute_heat(self, segment: Segment, tier_config: TierConfig, now: datetime) -> Optional[Segment]:
        for _ in range(CAS_RETRIES):
            interaction_length = len(self.store.list_segment_items(segment.id))
            if interaction_length == 0:
                logger.warning(f'Removing segment {segment.id} with no attached items')
                self.store.delete_segment(segment.id)
                return None

            heat = heat_score(segment.visit_count, interaction_length,
                              recency_factor(segment.last_accessed, tier_config.recency_time_constant, now),
                              tier_config.heat_alpha, tier_config.heat_beta, tier_config.heat_gamma)
            try:
                return self.store.update_segment(replace(segment, heat_score=heat, item_count=interaction_length))
            except ConcurrentModificationError:
                segment = self.store.get_segment(segment.id)
        raise TransferError(f'Segment {segment.id} kept changing during heat update')

    def manage_mtm_capacity(self, agent_id: str, tier_config: Optional[TierConfig] = None) -> Dict[str, SegmentOutcome]:
        """
        Evict the coldest segments when over capacity, otherwise promote every hot segment.

        Returns:
            Mapping of segment id to its outcome for every segment of the agent
        """
        tier_config = tier_config or self.config_service.get_config(agent_id)

        with self.store.agent_lock(agent_id):
            segments = self.store.list_segments(agent_id)
            outcomes = {s.id: SegmentOutcome.ACTIVE for s in segments}

            if len(segments) > tier_config.mtm_capacity:
                coldest = sorted(segments, key=lambda s: (s.heat_score, s.last_accessed))
                for segment in coldest[:len(segments) - tier_config.mtm_capacity]:
                    self.evict_segment(segment)
                    outcomes[segment.id] = SegmentOutcome.EVICTED
                return outcomes

            for segment in segments:
                if segment.heat_score < tier_config.heat_threshold:
                    continue
                try:
                    self.promote_segment(segment)
                    outcomes[segment.id] = SegmentOutcome.PROMOTED
                except (TransferError, StorageError) as e:
                    logger.warning(f'Failed to promote segment {segment.id}: {e}')
            return outcomes

    def evict_segment(self, segment: Segment) -> int:
        logger.info(f'Evicting segment {segment.id} with heat score {segment.heat_score:.4f} '
                    f'(agent {segment.agent_id}, {segment.item_count} items)')
        return self.store.delete_segment(segment.id)

    def promote_segment(self, segment: Segment) -> List[PersonaKnowledge]:
        """
        Materialize a segment into tier-3 knowledge and traits, then remove it.

        Record ids derive from the segment id, so a repeated promotion overwrites instead of duplicating.

        Returns:
            The knowledge fact followed by the derived traits
        """
        items = self.store.list_segment_items(segment.id)
        if not items:
            raise TransferError(f'No items found for segment {segment.id}')

        agent_id = segment.agent_id
        object_persona = self.store.get_or_create_object_persona(agent_id, *DEFAULT_OBJECT_PERSONA)
        agent_persona = self.store.get_or_create_agent_persona(agent_id)
        object_owner = PersonaOwner.for_object(object_persona.id)

        records = [
            PersonaKnowledge(agent_id=agent_id,
                             owner=object_owner,
                             content=synthesize_knowledge(segment, items),
                             keywords=list(segment.keywords),
                             id=f'{segment.id}-fact')
        ]
        for name, value, confidence in extract_traits(items):
            owner = PersonaOwner.for_agent(agent_persona.id) if name == 'communication_style' else object_owner
            records.append(
                PersonaKnowledge(agent_id=agent_id,
                                 owner=owner,
                                 content=value,
                                 kind=KnowledgeKind.TRAIT,
                                 trait_name=name,
                                 confidence=confidence,
                                 id=f'{segment.id}-trait-{name}'))

        for record in records:
            self.store.add_knowledge(record)
        self.store.delete_segment(segment.id)
        logger.info(f'Promoted segment {segment.id} (heat {segment.heat_score:.4f}) to LPM for agent {agent_id}')

        if self.scheduler is not None:
            self.scheduler.schedule('evaluate_knowledge_entry', {'knowledge_id': records[0].id})
        return records

    # Tier 3 -> Tier 4

    def evaluate_knowledge_entry(self, knowledge_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Contribute a knowledge entry to system memory if its importance clears the agent's threshold.

        Already-promoted entries are left alone; an existing shared entry for the same source is reused.
        """
        try:
            entry = self.store.get_knowledge(knowledge_id)
        except NotFoundError:
            logger.warning(f'Knowledge entry {knowledge_id} no longer exists, skipping evaluation')
            return {'knowledge_id': knowledge_id, 'status': 'not_found'}

        with self.store.agent_lock(entry.agent_id):
            entry = self.store.get_knowledge(knowledge_id)
            if entry.promoted_to_system:
                return {'knowledge_id': knowledge_id, 'status': 'already_promoted',
                        'system_memory_id': entry.system_memory_id}

            tier_config = self.config_service.get_config(entry.agent_id)
            importance = calculate_importance(entry, now)
            if importance < tier_config.system_memory_importance_threshold:
                logger.debug(f'Knowledge {knowledge_id} importance {importance} below threshold '
                             f'{tier_config.system_memory_importance_threshold}')
                return {'knowledge_id': knowledge_id, 'status': 'below_threshold', 'importance_score': importance}

            shared = self.store.find_shared_by_source(entry.id)
            if shared is None:
                shared = self.store.add_shared_entry(
                    SharedEntry(content=entry.content,
                                source_agent_id=entry.agent_id,
                                importance_score=importance,
                                source_knowledge_id=entry.id))
                logger.info(f'Agent {entry.agent_id} contributed knowledge {entry.id} to system memory '
                            f'as {shared.id} (importance {importance})')

            self.store.update_knowledge(replace(entry, promoted_to_system=True, system_memory_id=shared.id))

        return {'knowledge_id': knowledge_id, 'status': 'promoted', 'importance_score': importance,
                'system_memory_id': shared.id}

    def evaluate_agent_lpm(self, agent_id: str) -> Dict[str, Any]:
        """Evaluate every not-yet-promoted knowledge fact of the agent."""
        promoted = evaluated = 0
        for entry in self.store.list_knowledge(agent_id, kind=KnowledgeKind.FACT):
            if entry.promoted_to_system:
                continue
            evaluated += 1
            result = self.evaluate_knowledge_entry(entry.id)
            promoted += result['status'] == 'promoted'

        logger.info(f'Evaluated {evaluated} LPM entries for agent {agent_id}, promoted {promoted}')
        return {'agent_id': agent_id, 'evaluated': evaluated, 'promoted': promoted}

    def system_memory_maintenance(self, capacity: Optional[int] = None) -> Dict[str, Any]:
        """Evict the least important shared entries down to capacity."""
        capacity = capacity if capacity is not None else self.config_service.get_default().system_memory_capacity

        with self._system_lock:
            entries = self.store.list_shared_entries()
            evicted = []
            for entry in entries[capacity:]:
                logger.info(f'Archiving system memory entry {entry.id} (importance {entry.importance_score}, '
                            f'source agent {entry.source_agent_id})')
                self.store.delete_shared_entry(entry.id)
                evicted.append(entry.id)

        if evicted:
            logger.info(f'System memory maintenance evicted {len(evicted)} entries (capacity {capacity})')
        return {'count': len(entries) - len(evicted), 'capacity': capacity, 'evicted': evicted}

    # Fan-out over every agent

    def update_all_heat_scores(self) -> Dict[str, Any]:
        return self._for_each_agent(self.update_heat_scores, 'heat update')

    def evaluate_lpm_promotion(self) -> Dict[str, Any]:
        return self._for_each_agent(self.evaluate_agent_lpm, 'LPM evaluation')

    def _for_each_agent(self, operation, label: str) -> Dict[str, Any]:
        succeeded, failed = [], []
        for agent_id in self.store.list_agent_ids():
            try:
                operation(agent_id)
                succeeded.append(agent_id)
            except Exception as e:
                logger.error(f'{label} failed for agent {agent_id}: {e}')
                failed.append(agent_id)
        return {'succeeded': succeeded, 'failed': failed}

    def register_jobs(self, scheduler) -> None:
        """Register every engine operation as a background job type."""
        scheduler.register('check_stm_capacity', self.check_stm_capacity)
        scheduler.register('update_heat_scores', self.update_heat_scores)
        scheduler.register('evaluate_knowledge_entry', self.evaluate_knowledge_entry)
        scheduler.register('evaluate_agent_lpm', self.evaluate_agent_lpm)
        scheduler.register('system_memory_maintenance', self.system_memory_maintenance)
        scheduler.register('update_all_heat_scores', self.update_all_heat_scores)
        scheduler.register('evaluate_lpm_promotion', self.evaluate_lpm_promotion)
        self.scheduler = scheduler
