"""
Candidate Resolver — descriptors to ranked, tenant-scoped work items.

Behavioral Contract:
- Every index query carries the caller's tenant id. Isolation is enforced
  by the index at the query boundary.
- A hit from another tenant is a fatal invariant breach: it is logged at
  CRITICAL and the request aborts. It is never silently filtered.
- Ranking = similarity + evidence boosts, in strict order of strength:
  explicit mention > recent assignment > recent PR/commit > recency.
- Evidence chips explain the boosts; they do not change the ranking.
- Embedding or index failure degrades to an empty candidate list.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from intent_engine.limits.circuit_breaker import CircuitBreaker
from intent_engine.models.entities import (
    CandidateEntity,
    EvidenceChip,
    EvidenceType,
    IndexedEntity,
    LinkedChange,
    VectorHit,
)
from intent_engine.models.errors import ProviderError, TenantIsolationViolation
from intent_engine.models.intent import ContextEntities, EntityDescriptor
from intent_engine.models.wire import utc_now
from intent_engine.resolution.embeddings import Embedder, Vector
from intent_engine.resolution.index import VectorIndex

logger = logging.getLogger("intent-engine.resolver")


class ResolverConfig(BaseModel):
    """Tunables for candidate ranking."""

    top_k: int = 5
    min_similarity: float = 0.3
    mention_boost: float = 0.20
    assignment_boost: float = 0.12
    linkage_boost: float = 0.06
    recency_boost: float = 0.03
    recency_window_days: int = 7
    context_similarity: float = 0.6     # Baseline for items open in the caller's view
    embedding_timeout_seconds: float = 2.0
    vector_timeout_seconds: float = 2.0


class ResolveOutcome(BaseModel):
    candidates: List[CandidateEntity] = []
    degraded_stages: List[str] = []


def _ago(delta: timedelta) -> str:
    days = delta.days
    if days <= 0:
        hours = int(delta.total_seconds() // 3600)
        return "just now" if hours <= 0 else f"{hours}h ago"
    return "1 day ago" if days == 1 else f"{days} days ago"


class CandidateResolver:
    def __init__(
        self,
        index: VectorIndex,
        embedder: Embedder,
        config: Optional[ResolverConfig] = None,
        embedding_breaker: Optional[CircuitBreaker] = None,
        index_breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.index = index
        self.embedder = embedder
        self.config = config or ResolverConfig()
        self.embedding_breaker = embedding_breaker or CircuitBreaker("embeddings")
        self.index_breaker = index_breaker or CircuitBreaker("vector_index")
        self._clock = clock

    async def resolve(
        self,
        tenant_id: str,
        user_id: str,
        utterance: str,
        descriptors: List[EntityDescriptor],
        context: Optional[ContextEntities] = None,
    ) -> ResolveOutcome:
        context = context or ContextEntities()
        if not descriptors:
            descriptors = [EntityDescriptor(text=utterance)]

        # One embedding per distinct phrase within this request
        texts: List[str] = []
        for d in descriptors:
            if d.text not in texts:
                texts.append(d.text)

        vectors = await self._embed(texts)
        if vectors is None:
            return ResolveOutcome(degraded_stages=["resolver:embeddings"])
        by_text = dict(zip(texts, vectors))

        merged: Dict[str, Tuple[VectorHit, EntityDescriptor]] = {}
        for descriptor in descriptors:
            hits = await self._search(tenant_id, descriptor, by_text[descriptor.text])
            if hits is None:
                return ResolveOutcome(degraded_stages=["resolver:vector_index"])
            for hit in hits:
                self._assert_tenant(tenant_id, hit)
                current = merged.get(hit.entity.id)
                if current is None or hit.score > current[0].score:
                    merged[hit.entity.id] = (hit, descriptor)

        context_hits = await self._context_hits(tenant_id, descriptors, context)
        if context_hits is None:
            return ResolveOutcome(degraded_stages=["resolver:vector_index"])
        for hit in context_hits:
            self._assert_tenant(tenant_id, hit)
            current = merged.get(hit.entity.id)
            if current is None or hit.score > current[0].score:
                merged[hit.entity.id] = (hit, descriptors[0])

        candidates = [
            self._score(hit, descriptor, user_id, utterance, context)
            for hit, descriptor in merged.values()
        ]
        candidates.sort(key=lambda c: (-c.confidence, c.id))
        return ResolveOutcome(candidates=candidates[: self.config.top_k])

    async def _embed(self, texts: List[str]) -> Optional[List[Vector]]:
        if not self.embedding_breaker.allow_request():
            logger.warning("Embedding circuit open; candidate ranking degraded")
            return None
        try:
            vectors = await asyncio.wait_for(
                self.embedder.embed(texts),
                timeout=self.config.embedding_timeout_seconds,
            )
        except (asyncio.TimeoutError, ProviderError) as e:
            self.embedding_breaker.record_failure()
            logger.warning("Embedding failed; candidate ranking degraded: %s", e)
            return None
        except BaseException:
            self.embedding_breaker.release_trial()
            raise
        self.embedding_breaker.record_success()
        return vectors

    async def _search(
        self, tenant_id: str, descriptor: EntityDescriptor, vector: Vector
    ) -> Optional[List[VectorHit]]:
        if not self.index_breaker.allow_request():
            logger.warning("Vector index circuit open; candidate ranking degraded")
            return None
        limit = self.config.top_k * 2
        try:
            hits = await self._query(tenant_id, descriptor, vector, limit, typed=True)
            if not hits and descriptor.entity_type is not None:
                # A wrong type guess should not hide an otherwise good match
                hits = await self._query(tenant_id, descriptor, vector, limit, typed=False)
        except (asyncio.TimeoutError, ProviderError) as e:
            self.index_breaker.record_failure()
            logger.warning("Vector search failed; candidate ranking degraded: %s", e)
            return None
        except BaseException:
            self.index_breaker.release_trial()
            raise
        self.index_breaker.record_success()
        return hits

    async def _query(
        self,
        tenant_id: str,
        descriptor: EntityDescriptor,
        vector: Vector,
        limit: int,
        typed: bool,
    ) -> List[VectorHit]:
        entity_types = [descriptor.entity_type] if typed and descriptor.entity_type else None
        return await asyncio.wait_for(
            self.index.search(
                tenant_id,
                vector,
                limit=limit,
                entity_types=entity_types,
                min_score=self.config.min_similarity,
            ),
            timeout=self.config.vector_timeout_seconds,
        )

    async def _context_hits(
        self,
        tenant_id: str,
        descriptors: List[EntityDescriptor],
        context: ContextEntities,
    ) -> Optional[List[VectorHit]]:
        """Items the caller has open, fetched from the caller's partition only."""
        ids = context.ids()
        if not ids:
            return []
        wanted_types = {d.entity_type for d in descriptors if d.entity_type}
        try:
            entities = await asyncio.wait_for(
                self.index.fetch(tenant_id, ids),
                timeout=self.config.vector_timeout_seconds,
            )
        except (asyncio.TimeoutError, ProviderError) as e:
            self.index_breaker.record_failure()
            logger.warning("Context entity fetch failed; candidate ranking degraded: %s", e)
            return None
        return [
            VectorHit(entity=e, score=self.config.context_similarity)
            for e in entities
            if not wanted_types or e.type in wanted_types
        ]

    def _assert_tenant(self, tenant_id: str, hit: VectorHit) -> None:
        if hit.entity.tenant_id != tenant_id:
            logger.critical(
                "TENANT ISOLATION VIOLATION: vector index returned a foreign "
                "entity for a query scoped to tenant=%s",
                tenant_id,
            )
            raise TenantIsolationViolation()

    # --- Scoring ---

    def _within_window(self, at: Optional[datetime], now: datetime) -> bool:
        if at is None:
            return False
        return now - at <= timedelta(days=self.config.recency_window_days)

    def _latest(self, changes: List[LinkedChange], now: datetime) -> Optional[LinkedChange]:
        recent = [c for c in changes if self._within_window(c.at, now)]
        return max(recent, key=lambda c: c.at) if recent else None

    def _mention(
        self, entity: IndexedEntity, utterance: str, context: ContextEntities
    ) -> Optional[EvidenceChip]:
        lowered = utterance.lower()
        if entity.id in context.ids():
            return EvidenceChip(
                type=EvidenceType.MENTION, label="Open in context", value=entity.title
            )
        if entity.key and entity.key.lower() in lowered:
            return EvidenceChip(
                type=EvidenceType.MENTION, label="Mentioned by key", value=entity.key
            )
        if len(entity.title) >= 4 and entity.title.lower() in lowered:
            return EvidenceChip(
                type=EvidenceType.MENTION, label="Mentioned by title", value=entity.title
            )
        return None

    def _score(
        self,
        hit: VectorHit,
        descriptor: EntityDescriptor,
        user_id: str,
        utterance: str,
        context: ContextEntities,
    ) -> CandidateEntity:
        cfg = self.config
        now = self._clock()
        entity = hit.entity
        similarity = max(0.0, min(hit.score, 1.0))
        boosts: Dict[str, float] = {}
        evidence: List[EvidenceChip] = []

        mention = self._mention(entity, utterance, context)
        if mention:
            boosts["mention"] = cfg.mention_boost
            evidence.append(mention)

        if entity.assignee_id == user_id and self._within_window(entity.assigned_at, now):
            boosts["assignment"] = cfg.assignment_boost
            evidence.append(EvidenceChip(
                type=EvidenceType.ASSIGNMENT,
                label="Assigned to you",
                value=_ago(now - entity.assigned_at),
            ))

        pr = self._latest(entity.linked_prs, now)
        commit = self._latest(entity.recent_commits, now)
        if pr or commit:
            boosts["linkage"] = cfg.linkage_boost
        if pr:
            evidence.append(EvidenceChip(
                type=EvidenceType.PR, label="Linked PR", value=pr.ref, url=pr.url
            ))
        if commit:
            evidence.append(EvidenceChip(
                type=EvidenceType.COMMIT, label="Recent commit", value=commit.ref, url=commit.url
            ))

        if self._within_window(entity.updated_at, now):
            boosts["recency"] = cfg.recency_boost
            evidence.append(EvidenceChip(
                type=EvidenceType.TIME,
                label="Updated",
                value=_ago(now - entity.updated_at),
            ))

        confidence = min(similarity + sum(boosts.values()), 1.0)
        return CandidateEntity(
            id=entity.id,
            type=entity.type,
            title=entity.title,
            confidence=round(confidence, 4),
            evidence=evidence,
            metadata={
                "status": entity.status,
                "key": entity.key,
                "similarity": round(similarity, 4),
                "boosts": boosts,
                "matchedDescriptor": descriptor.text,
                "tenantScoped": True,
            },
        )
