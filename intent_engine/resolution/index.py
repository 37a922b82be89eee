"""
Vector index backends. Every query is scoped to one tenant partition.

Behavioral Contract:
- search() takes the tenant id as a required argument and applies it inside
  the query itself; there is no code path that searches across partitions.
- A missing partition is an empty result, never a fallback to another tenant.
"""

import logging
import threading
from typing import Dict, List, Optional, Protocol, Sequence, Tuple
from uuid import NAMESPACE_URL, uuid5

import httpx

from intent_engine.models.entities import EntityType, IndexedEntity, VectorHit
from intent_engine.models.errors import ProviderError
from intent_engine.resolution.embeddings import Embedder, Vector, cosine_similarity

logger = logging.getLogger("intent-engine.vector-index")


class VectorIndex(Protocol):
    """Protocol for tenant-partitioned similarity search."""

    async def search(
        self,
        tenant_id: str,
        vector: Vector,
        limit: int,
        entity_types: Optional[Sequence[EntityType]] = None,
        min_score: float = 0.0,
    ) -> List[VectorHit]: ...

    async def fetch(self, tenant_id: str, ids: Sequence[str]) -> List[IndexedEntity]: ...

    async def upsert(self, entity: IndexedEntity, vector: Vector) -> None: ...

    async def health_check(self) -> bool: ...


class InMemoryVectorIndex:
    """One dict partition per tenant. Used in development and tests."""

    def __init__(self):
        self._partitions: Dict[str, Dict[str, Tuple[IndexedEntity, Vector]]] = {}
        self._lock = threading.Lock()

    async def upsert(self, entity: IndexedEntity, vector: Vector) -> None:
        with self._lock:
            partition = self._partitions.setdefault(entity.tenant_id, {})
            partition[entity.id] = (entity, vector)

    async def index_entities(
        self, entities: List[IndexedEntity], embedder: Embedder
    ) -> None:
        """Embed and upsert a batch of work items."""
        vectors = await embedder.embed([e.search_text() for e in entities])
        for entity, vector in zip(entities, vectors):
            await self.upsert(entity, vector)

    async def search(
        self,
        tenant_id: str,
        vector: Vector,
        limit: int,
        entity_types: Optional[Sequence[EntityType]] = None,
        min_score: float = 0.0,
    ) -> List[VectorHit]:
        with self._lock:
            partition = list(self._partitions.get(tenant_id, {}).values())

        hits = []
        for entity, stored in partition:
            if entity_types and entity.type not in entity_types:
                continue
            score = cosine_similarity(vector, stored)
            if score >= min_score:
                hits.append(VectorHit(entity=entity, score=round(score, 4)))
        hits.sort(key=lambda h: (-h.score, h.entity.id))
        return hits[:limit]

    async def fetch(self, tenant_id: str, ids: Sequence[str]) -> List[IndexedEntity]:
        with self._lock:
            partition = self._partitions.get(tenant_id, {})
            return [partition[i][0] for i in ids if i in partition]

    async def health_check(self) -> bool:
        return True

    def count(self, tenant_id: str) -> int:
        with self._lock:
            return len(self._partitions.get(tenant_id, {}))


class QdrantVectorIndex:
    """
    Qdrant REST client. The tenant filter is part of every search request.
    Point ids are UUIDs derived from (tenant, work item id);
    payloads carry the IndexedEntity fields.
    """

    def __init__(
        self,
        url: str,
        collection: str,
        api_key: str = "",
        timeout: float = 2.0,
    ):
        self.url = url.rstrip("/")
        self.collection = collection
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["api-key"] = self.api_key
        return headers

    @staticmethod
    def point_id(tenant_id: str, entity_id: str) -> str:
        """Qdrant point ids must be UUIDs; derive one per (tenant, work item)."""
        return str(uuid5(NAMESPACE_URL, f"intent-engine:{tenant_id}:{entity_id}"))

    @staticmethod
    def build_filter(
        tenant_id: str, entity_types: Optional[Sequence[EntityType]] = None
    ) -> dict:
        must = [{"key": "tenant_id", "match": {"value": tenant_id}}]
        if entity_types:
            must.append({"key": "type", "match": {"any": [t.value for t in entity_types]}})
        return {"must": must}

    async def search(
        self,
        tenant_id: str,
        vector: Vector,
        limit: int,
        entity_types: Optional[Sequence[EntityType]] = None,
        min_score: float = 0.0,
    ) -> List[VectorHit]:
        body = {
            "vector": vector,
            "limit": limit,
            "with_payload": True,
            "score_threshold": min_score,
            "filter": self.build_filter(tenant_id, entity_types),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.url}/collections/{self.collection}/points/search",
                    json=body,
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"vector search failed: {e}") from e

        if resp.status_code != 200:
            raise ProviderError(f"vector index returned HTTP {resp.status_code}")

        try:
            points = resp.json()["result"]
            return [
                VectorHit(
                    entity=IndexedEntity.model_validate(p["payload"]),
                    score=float(p["score"]),
                )
                for p in points
            ]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderError("vector index response is malformed") from e

    async def fetch(self, tenant_id: str, ids: Sequence[str]) -> List[IndexedEntity]:
        if not ids:
            return []
        query_filter = self.build_filter(tenant_id)
        query_filter["must"].append({"has_id": [self.point_id(tenant_id, i) for i in ids]})
        body = {"filter": query_filter, "limit": len(ids), "with_payload": True}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.url}/collections/{self.collection}/points/scroll",
                    json=body,
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"vector fetch failed: {e}") from e

        if resp.status_code != 200:
            raise ProviderError(f"vector index returned HTTP {resp.status_code}")

        try:
            points = resp.json()["result"]["points"]
            return [IndexedEntity.model_validate(p["payload"]) for p in points]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderError("vector index response is malformed") from e

    async def upsert(self, entity: IndexedEntity, vector: Vector) -> None:
        point = {
            "id": self.point_id(entity.tenant_id, entity.id),
            "vector": vector,
            "payload": entity.model_dump(mode="json"),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.put(
                    f"{self.url}/collections/{self.collection}/points",
                    json={"points": [point]},
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"vector upsert failed: {e}") from e
        if resp.status_code not in (200, 201):
            raise ProviderError(f"vector index returned HTTP {resp.status_code}")

    async def health_check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(
                    f"{self.url}/collections/{self.collection}",
                    headers=self._headers(),
                )
            return resp.status_code == 200
        except httpx.HTTPError:
            return False
