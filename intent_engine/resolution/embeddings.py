"""Text embedding backends."""

import hashlib
import logging
import math
import re
from typing import Dict, List, Protocol

import httpx

from intent_engine.models.errors import ProviderError

logger = logging.getLogger("intent-engine.embeddings")

Vector = List[float]


class Embedder(Protocol):
    """Pluggable embedding backend."""

    async def embed(self, texts: List[str]) -> List[Vector]: ...

    async def health_check(self) -> bool: ...


class OpenAIEmbedder:
    """OpenAI-compatible /embeddings client."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str = "",
        timeout: float = 2.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def embed(self, texts: List[str]) -> List[Vector]:
        if not texts:
            return []
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/embeddings",
                    json={"model": self.model, "input": texts},
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"embedding request failed: {e}") from e

        if resp.status_code != 200:
            raise ProviderError(f"embedding provider returned HTTP {resp.status_code}")

        try:
            items = sorted(resp.json()["data"], key=lambda d: d["index"])
            vectors = [item["embedding"] for item in items]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderError("embedding response is malformed") from e
        if len(vectors) != len(texts):
            raise ProviderError("embedding response count does not match input")
        return vectors

    async def health_check(self) -> bool:
        try:
            await self.embed(["health"])
            return True
        except ProviderError:
            return False


_TOKEN = re.compile(r"[a-z0-9]+(?:-[0-9]+)?")


class HashingEmbedder:
    """
    Deterministic feature-hashing embedder for development and tests.

    Tokens and character trigrams are hashed into a fixed number of signed
    buckets, then L2-normalised, so cosine similarity is a dot product.
    """

    def __init__(self, dimensions: int = 256):
        self.dimensions = dimensions

    def _features(self, text: str) -> List[str]:
        tokens = _TOKEN.findall(text.lower())
        features = list(tokens)
        for token in tokens:
            padded = f"#{token}#"
            features.extend(padded[i:i + 3] for i in range(len(padded) - 2))
        return features

    def embed_one(self, text: str) -> Vector:
        vector = [0.0] * self.dimensions
        for feature in self._features(text):
            digest = int(hashlib.sha256(feature.encode()).hexdigest(), 16)
            index = digest % self.dimensions
            sign = 1.0 if (digest >> 8) & 1 else -1.0
            vector[index] += sign
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]

    async def embed(self, texts: List[str]) -> List[Vector]:
        return [self.embed_one(t) for t in texts]

    async def health_check(self) -> bool:
        return True


def cosine_similarity(a: Vector, b: Vector) -> float:
    if len(a) != len(b):
        raise ValueError("vectors have different dimensions")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)
