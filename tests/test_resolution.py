"""Tests for embeddings, vector indexes and the Candidate Resolver."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Tuple
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import UUID

import pytest

from intent_engine.limits.circuit_breaker import CircuitBreaker
from intent_engine.models.entities import (
    EntityType,
    EvidenceType,
    IndexedEntity,
    LinkedChange,
    VectorHit,
)
from intent_engine.models.errors import ProviderError, TenantIsolationViolation
from intent_engine.models.intent import ContextEntities, EntityDescriptor
from intent_engine.models.limits import CircuitState
from intent_engine.resolution.embeddings import HashingEmbedder, OpenAIEmbedder, cosine_similarity
from intent_engine.resolution.index import InMemoryVectorIndex, QdrantVectorIndex
from intent_engine.resolution.resolver import CandidateResolver, ResolverConfig

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _make_entity(
    entity_id: str,
    title: str,
    tenant_id: str = "tenant_a",
    entity_type: EntityType = EntityType.TASK,
    **fields,
) -> IndexedEntity:
    return IndexedEntity(id=entity_id, tenant_id=tenant_id, type=entity_type, title=title, **fields)


class _StaticIndex:
    """Returns fixed scores. honor_tenant=False simulates a broken index."""

    def __init__(self, hits: List[Tuple[IndexedEntity, float]], honor_tenant: bool = True):
        self.hits = hits
        self.honor_tenant = honor_tenant
        self.searches = []

    async def search(self, tenant_id, vector, limit, entity_types=None, min_score=0.0):
        self.searches.append({"tenant_id": tenant_id, "entity_types": entity_types})
        results = [
            VectorHit(entity=entity, score=score)
            for entity, score in self.hits
            if (not self.honor_tenant or entity.tenant_id == tenant_id)
            and (not entity_types or entity.type in entity_types)
            and score >= min_score
        ]
        results.sort(key=lambda h: (-h.score, h.entity.id))
        return results[:limit]

    async def fetch(self, tenant_id, ids):
        return [e for e, _ in self.hits if e.id in ids and e.tenant_id == tenant_id]

    async def upsert(self, entity, vector):
        self.hits.append((entity, 1.0))

    async def health_check(self):
        return True


class _FailingIndex(_StaticIndex):
    def __init__(self, error=None, delay: float = 0.0):
        super().__init__([])
        self.error = error
        self.delay = delay

    async def search(self, tenant_id, vector, limit, entity_types=None, min_score=0.0):
        if self.delay:
            await asyncio.sleep(self.delay)
        raise self.error


class _FailingEmbedder:
    async def embed(self, texts):
        raise ProviderError("embedding provider returned HTTP 500")

    async def health_check(self):
        return False


class _SlowEmbedder:
    def __init__(self, delay: float):
        self.delay = delay
        self.calls = 0
        self.inner = HashingEmbedder(64)

    async def embed(self, texts):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return await self.inner.embed(texts)

    async def health_check(self):
        return True


def _make_resolver(index, **config) -> CandidateResolver:
    return CandidateResolver(
        index, HashingEmbedder(64), config=ResolverConfig(**config), clock=lambda: NOW
    )


class TestEmbeddings:
    @pytest.mark.asyncio
    async def test_hashing_embedder_is_deterministic_and_normalised(self):
        embedder = HashingEmbedder(64)
        first, second = await embedder.embed(["Login bug", "login bug"])
        assert first == second
        assert cosine_similarity(first, second) == pytest.approx(1.0)
        assert sum(v * v for v in first) == pytest.approx(1.0)

    def test_cosine_rejects_mismatched_dimensions(self):
        with pytest.raises(ValueError):
            cosine_similarity([1.0, 0.0], [1.0])


class TestInMemoryVectorIndex:
    def setup_method(self):
        self.index = InMemoryVectorIndex()
        self.embedder = HashingEmbedder(64)

    @pytest.mark.asyncio
    async def test_search_is_partitioned_by_tenant(self):
        await self.index.index_entities(
            [
                _make_entity("a_1", "Login bug", tenant_id="tenant_a"),
                _make_entity("b_1", "Login bug", tenant_id="tenant_b"),
            ],
            self.embedder,
        )
        vector = self.embedder.embed_one("login bug")
        hits = await self.index.search("tenant_a", vector, limit=10)
        assert [h.entity.id for h in hits] == ["a_1"]
        assert self.index.count("tenant_b") == 1

    @pytest.mark.asyncio
    async def test_fetch_never_crosses_tenants(self):
        await self.index.index_entities(
            [_make_entity("b_1", "Login bug", tenant_id="tenant_b")], self.embedder
        )
        assert await self.index.fetch("tenant_a", ["b_1"]) == []

    @pytest.mark.asyncio
    async def test_type_filter(self):
        await self.index.index_entities(
            [
                _make_entity("task_1", "Login bug"),
                _make_entity("story_1", "Login bug", entity_type=EntityType.STORY),
            ],
            self.embedder,
        )
        vector = self.embedder.embed_one("login bug")
        hits = await self.index.search("tenant_a", vector, limit=10, entity_types=[EntityType.STORY])
        assert [h.entity.id for h in hits] == ["story_1"]


class TestQdrantFilter:
    def test_filter_always_carries_tenant(self):
        index = QdrantVectorIndex("http://qdrant:6333", "work_items")
        query_filter = index.build_filter("tenant_a", [EntityType.TASK])
        must = query_filter["must"]
        assert {"key": "tenant_id", "match": {"value": "tenant_a"}} in must
        assert {"key": "type", "match": {"any": ["task"]}} in must


class TestCandidateResolver:
    @pytest.mark.asyncio
    async def test_only_callers_tenant_is_returned(self):
        index = InMemoryVectorIndex()
        embedder = HashingEmbedder(64)
        await index.index_entities(
            [
                _make_entity("a_1", "Login bug", tenant_id="tenant_a"),
                _make_entity("b_1", "Login bug", tenant_id="tenant_b"),
                _make_entity("b_2", "Login bug fix", tenant_id="tenant_b"),
            ],
            embedder,
        )
        resolver = CandidateResolver(index, embedder, clock=lambda: NOW)

        outcome = await resolver.resolve(
            "tenant_a", "user_1", "take the login bug",
            [EntityDescriptor(text="login bug", entity_type=EntityType.TASK)],
        )
        assert [c.id for c in outcome.candidates] == ["a_1"]
        assert outcome.candidates[0].metadata["tenantScoped"] is True

    @pytest.mark.asyncio
    async def test_foreign_hit_is_a_fatal_violation(self):
        foreign = _make_entity("b_1", "Login bug", tenant_id="tenant_b")
        resolver = _make_resolver(_StaticIndex([(foreign, 0.99)], honor_tenant=False))

        with pytest.raises(TenantIsolationViolation) as exc_info:
            await resolver.resolve(
                "tenant_a", "user_1", "take the login bug",
                [EntityDescriptor(text="login bug")],
            )
        assert "b_1" not in str(exc_info.value)
        assert "tenant_b" not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_boost_order(self):
        hits = [
            (_make_entity("plain", "Alpha item", updated_at=NOW - timedelta(days=1)), 0.5),
            (_make_entity("keyed", "Beta item", key="PROJ-7"), 0.5),
            (_make_entity(
                "assigned", "Gamma item",
                assignee_id="user_1", assigned_at=NOW - timedelta(days=1),
            ), 0.5),
            (_make_entity(
                "linked", "Delta item",
                linked_prs=[LinkedChange(ref="#42", url="https://git/pr/42", at=NOW - timedelta(hours=3))],
            ), 0.5),
        ]
        resolver = _make_resolver(_StaticIndex(hits))

        outcome = await resolver.resolve(
            "tenant_a", "user_1", "take ownership of PROJ-7",
            [EntityDescriptor(text="item")],
        )

        assert [c.id for c in outcome.candidates] == ["keyed", "assigned", "linked", "plain"]
        by_id = {c.id: c for c in outcome.candidates}
        assert by_id["keyed"].confidence == pytest.approx(0.70)
        assert by_id["assigned"].confidence == pytest.approx(0.62)
        assert by_id["linked"].confidence == pytest.approx(0.56)
        assert by_id["plain"].confidence == pytest.approx(0.53)

        assigned_chip = by_id["assigned"].evidence[0]
        assert assigned_chip.type == EvidenceType.ASSIGNMENT
        assert assigned_chip.value == "1 day ago"
        pr_chip = by_id["linked"].evidence[0]
        assert pr_chip.type == EvidenceType.PR
        assert pr_chip.value == "#42"

    @pytest.mark.asyncio
    async def test_stale_evidence_earns_no_boost(self):
        hits = [(_make_entity(
            "old", "Alpha item",
            assignee_id="user_1", assigned_at=NOW - timedelta(days=30),
            updated_at=NOW - timedelta(days=30),
        ), 0.5)]
        resolver = _make_resolver(_StaticIndex(hits))
        outcome = await resolver.resolve("tenant_a", "user_1", "item", [EntityDescriptor(text="item")])
        assert outcome.candidates[0].confidence == pytest.approx(0.5)
        assert outcome.candidates[0].evidence == []

    @pytest.mark.asyncio
    async def test_confidence_capped_at_one(self):
        hits = [(_make_entity(
            "hot", "Login bug", key="PROJ-1",
            assignee_id="user_1", assigned_at=NOW,
            updated_at=NOW,
        ), 0.95)]
        resolver = _make_resolver(_StaticIndex(hits))
        outcome = await resolver.resolve(
            "tenant_a", "user_1", "take PROJ-1", [EntityDescriptor(text="PROJ-1")]
        )
        assert outcome.candidates[0].confidence == 1.0

    @pytest.mark.asyncio
    async def test_context_entity_is_a_candidate(self):
        story = _make_entity("story_9", "Checkout redesign", entity_type=EntityType.STORY)
        resolver = _make_resolver(_StaticIndex([(story, 0.1)]))

        outcome = await resolver.resolve(
            "tenant_a", "user_1", "take ownership of this story",
            [EntityDescriptor(text="current story", entity_type=EntityType.STORY)],
            ContextEntities(story_id="story_9"),
        )
        candidate = outcome.candidates[0]
        assert candidate.id == "story_9"
        assert candidate.confidence == pytest.approx(0.8)
        assert candidate.evidence[0].label == "Open in context"

    @pytest.mark.asyncio
    async def test_top_k(self):
        hits = [(_make_entity(f"task_{i}", f"Item {i}"), 0.5 + i / 100) for i in range(8)]
        resolver = _make_resolver(_StaticIndex(hits), top_k=3)
        outcome = await resolver.resolve("tenant_a", "user_1", "x", [EntityDescriptor(text="x")])
        assert [c.id for c in outcome.candidates] == ["task_7", "task_6", "task_5"]

    @pytest.mark.asyncio
    async def test_typed_search_falls_back_to_untyped(self):
        story = _make_entity("story_1", "Login bug", entity_type=EntityType.STORY)
        index = _StaticIndex([(story, 0.9)])
        resolver = _make_resolver(index)
        outcome = await resolver.resolve(
            "tenant_a", "user_1", "login bug",
            [EntityDescriptor(text="login bug", entity_type=EntityType.TASK)],
        )
        assert [c.id for c in outcome.candidates] == ["story_1"]
        assert index.searches[0]["entity_types"] == [EntityType.TASK]
        assert index.searches[1]["entity_types"] is None

    @pytest.mark.asyncio
    async def test_embedding_failure_degrades(self):
        resolver = CandidateResolver(_StaticIndex([]), _FailingEmbedder(), clock=lambda: NOW)
        outcome = await resolver.resolve("tenant_a", "user_1", "x", [EntityDescriptor(text="x")])
        assert outcome.candidates == []
        assert outcome.degraded_stages == ["resolver:embeddings"]

    @pytest.mark.asyncio
    async def test_index_failure_degrades(self):
        resolver = _make_resolver(_FailingIndex(error=ProviderError("qdrant returned HTTP 503")))
        outcome = await resolver.resolve("tenant_a", "user_1", "x", [EntityDescriptor(text="x")])
        assert outcome.candidates == []
        assert outcome.degraded_stages == ["resolver:vector_index"]

    @pytest.mark.asyncio
    async def test_index_timeout_degrades(self):
        resolver = _make_resolver(
            _FailingIndex(error=ProviderError("unreachable"), delay=1.0),
            vector_timeout_seconds=0.05,
        )
        outcome = await resolver.resolve("tenant_a", "user_1", "x", [EntityDescriptor(text="x")])
        assert outcome.degraded_stages == ["resolver:vector_index"]

    @pytest.mark.asyncio
    async def test_timezone_aware_evidence_timestamps(self):
        entity = IndexedEntity.model_validate({
            "id": "a_1",
            "tenantId": "tenant_a",
            "type": "task",
            "title": "Alpha item",
            "updatedAt": "2026-03-01T10:00:00Z",
            "linkedPrs": [{"ref": "#7", "at": "2026-03-01T13:00:00+02:00"}],
        })
        resolver = _make_resolver(_StaticIndex([(entity, 0.5)]))

        outcome = await resolver.resolve("tenant_a", "user_1", "item", [EntityDescriptor(text="item")])

        candidate = outcome.candidates[0]
        assert candidate.confidence == pytest.approx(0.59)
        assert [chip.type for chip in candidate.evidence] == [EvidenceType.PR, EvidenceType.TIME]
        assert candidate.evidence[1].value == "2h ago"

    @pytest.mark.asyncio
    async def test_cancelled_embedding_trial_does_not_wedge_circuit(self):
        embedder = _SlowEmbedder(delay=10.0)
        breaker = CircuitBreaker("embeddings", failure_threshold=1, reset_timeout_seconds=0)
        breaker.record_failure()
        resolver = CandidateResolver(
            _StaticIndex([(_make_entity("a_1", "Login bug"), 0.9)]),
            embedder,
            config=ResolverConfig(embedding_timeout_seconds=30),
            embedding_breaker=breaker,
            clock=lambda: NOW,
        )
        descriptors = [EntityDescriptor(text="login bug")]

        task = asyncio.create_task(resolver.resolve("tenant_a", "user_1", "login bug", descriptors))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        embedder.delay = 0.0
        outcome = await resolver.resolve("tenant_a", "user_1", "login bug", descriptors)

        assert embedder.calls == 2
        assert [c.id for c in outcome.candidates] == ["a_1"]
        assert breaker.state == CircuitState.CLOSED


def _mock_http(response_json, status_code: int = 200):
    mock_response = MagicMock(status_code=status_code)
    mock_response.json.return_value = response_json
    mock_client = AsyncMock()
    mock_client.post.return_value = mock_response
    mock_ctx = MagicMock()
    mock_ctx.__aenter__ = AsyncMock(return_value=mock_client)
    mock_ctx.__aexit__ = AsyncMock(return_value=False)
    return mock_ctx, mock_client


class TestQdrantSearch:
    @pytest.mark.asyncio
    async def test_search_sends_tenant_filter(self):
        mock_ctx, mock_client = _mock_http({
            "result": [{
                "score": 0.91,
                "payload": {"id": "a_1", "tenant_id": "tenant_a", "type": "task", "title": "Login bug"},
            }]
        })
        index = QdrantVectorIndex("http://qdrant:6333", "work_items")

        with patch("intent_engine.resolution.index.httpx.AsyncClient", return_value=mock_ctx):
            hits = await index.search("tenant_a", [0.1, 0.2], limit=5)

        assert hits[0].entity.id == "a_1"
        assert hits[0].score == 0.91
        sent = mock_client.post.call_args.kwargs["json"]
        assert sent["filter"]["must"][0] == {"key": "tenant_id", "match": {"value": "tenant_a"}}

    @pytest.mark.asyncio
    async def test_http_error_is_provider_error(self):
        mock_ctx, _ = _mock_http({}, status_code=503)
        index = QdrantVectorIndex("http://qdrant:6333", "work_items")

        with patch("intent_engine.resolution.index.httpx.AsyncClient", return_value=mock_ctx):
            with pytest.raises(ProviderError):
                await index.search("tenant_a", [0.1, 0.2], limit=5)

    @pytest.mark.asyncio
    async def test_point_ids_are_uuids_per_tenant(self):
        mock_ctx, mock_client = _mock_http({"result": {"points": []}})
        mock_client.put.return_value = mock_client.post.return_value
        index = QdrantVectorIndex("http://qdrant:6333", "work_items")

        with patch("intent_engine.resolution.index.httpx.AsyncClient", return_value=mock_ctx):
            await index.upsert(_make_entity("task_1", "Login bug"), [0.1, 0.2])
            await index.fetch("tenant_a", ["task_1"])

        point = mock_client.put.call_args.kwargs["json"]["points"][0]
        assert UUID(point["id"]).version == 5
        assert point["payload"]["id"] == "task_1"
        assert point["id"] != index.point_id("tenant_b", "task_1")
        must = mock_client.post.call_args.kwargs["json"]["filter"]["must"]
        assert {"has_id": [point["id"]]} in must


class TestOpenAIEmbedder:
    def setup_method(self):
        self.embedder = OpenAIEmbedder("http://embed:8000/v1", "text-embedding-3-small")

    @pytest.mark.asyncio
    async def test_vectors_follow_input_order(self):
        mock_ctx, mock_client = _mock_http({
            "data": [
                {"index": 1, "embedding": [0.0, 1.0]},
                {"index": 0, "embedding": [1.0, 0.0]},
            ]
        })

        with patch("intent_engine.resolution.embeddings.httpx.AsyncClient", return_value=mock_ctx):
            vectors = await self.embedder.embed(["login bug", "current sprint"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        sent = mock_client.post.call_args.kwargs["json"]
        assert sent == {"model": "text-embedding-3-small", "input": ["login bug", "current sprint"]}

    @pytest.mark.asyncio
    async def test_count_mismatch_is_provider_error(self):
        mock_ctx, _ = _mock_http({"data": [{"index": 0, "embedding": [1.0]}]})

        with patch("intent_engine.resolution.embeddings.httpx.AsyncClient", return_value=mock_ctx):
            with pytest.raises(ProviderError):
                await self.embedder.embed(["a", "b"])

    @pytest.mark.asyncio
    async def test_unhealthy_on_http_error(self):
        mock_ctx, _ = _mock_http({}, status_code=500)

        with patch("intent_engine.resolution.embeddings.httpx.AsyncClient", return_value=mock_ctx):
            assert not await self.embedder.health_check()

    @pytest.mark.asyncio
    async def test_empty_input_makes_no_request(self):
        assert await self.embedder.embed([]) == []
