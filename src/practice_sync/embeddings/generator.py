"""Embedding backends: offline hashing, local sentence-transformers, remote HTTP API."""

from __future__ import annotations

import hashlib
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from practice_sync.config import EmbeddingSettings

logger = logging.getLogger(__name__)

Vector = list[float]
_WORD_RE = re.compile(r"\w+", re.UNICODE)


@dataclass(slots=True)
class EmbeddingOutput:
    """Vectors for a batch of texts plus the usage a provider reported."""

    vectors: list[Vector]
    model: str
    input_tokens: int = 0
    cost_usd: float | None = None


class Embedder(Protocol):
    """Embedding backend interface.

    ``metered`` backends bill per request and run behind the AI guardrails;
    local backends are free and skip them.
    """

    model_name: str
    metered: bool

    def embed(self, texts: list[str]) -> EmbeddingOutput:
        """Encode texts into vectors."""
        raise NotImplementedError


@dataclass(slots=True)
class HashingEmbedder:
    """Feature-hashing embedder over words and character trigrams; free and offline."""

    model_name: str = "hashing-384"
    dimensions: int = 384
    ngram_size: int = 3
    metered: bool = False

    def embed(self, texts: list[str]) -> EmbeddingOutput:
        return EmbeddingOutput(
            vectors=[self._vectorize(text) for text in texts],
            model=self.model_name,
            input_tokens=sum(_approx_tokens(text) for text in texts),
            cost_usd=0.0,
        )

    def _vectorize(self, text: str) -> Vector:
        vector = [0.0] * self.dimensions
        for feature in self._features((text or "").lower()):
            digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dimensions
            vector[bucket] += 1.0 if digest[4] & 1 else -1.0
        norm = math.sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]

    def _features(self, text: str) -> list[str]:
        words = _WORD_RE.findall(text)
        features = [f"w:{word}" for word in words]
        for word in words:
            padded = f" {word} "
            features.extend(
                f"c:{padded[index : index + self.ngram_size]}"
                for index in range(max(1, len(padded) - self.ngram_size + 1))
            )
        return features


@dataclass(slots=True)
class SentenceTransformerEmbedder:
    """Local sentence-transformers model; imported only when selected."""

    model_name: str
    metered: bool = False
    _model: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        from sentence_transformers import SentenceTransformer  # type: ignore

        self._model = SentenceTransformer(self.model_name)

    def embed(self, texts: list[str]) -> EmbeddingOutput:
        # E5-family models expect the passage prefix on indexed text.
        prefixed = [f"passage: {text}" for text in texts]
        encoded = self._model.encode(prefixed, normalize_embeddings=True)
        return EmbeddingOutput(
            vectors=[row.tolist() for row in encoded],
            model=self.model_name,
            input_tokens=sum(_approx_tokens(text) for text in texts),
            cost_usd=0.0,
        )


class HttpEmbedder:
    """OpenAI-compatible ``/embeddings`` endpoint (OpenRouter, OpenAI, local gateways)."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        model_name: str,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model_name = model_name
        self.metered = True
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def embed(self, texts: list[str]) -> EmbeddingOutput:
        response = self._client.post(
            "/embeddings",
            json={"model": self.model_name, "input": texts},
        )
        response.raise_for_status()
        body = response.json()
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list) or len(data) != len(texts):
            raise ValueError("Invalid embeddings response format")

        ordered = sorted(data, key=lambda item: int(item.get("index", 0)))
        vectors: list[Vector] = []
        for item in ordered:
            embedding = item.get("embedding")
            if not isinstance(embedding, list):
                raise ValueError("Invalid embeddings response format")
            vectors.append([float(value) for value in embedding])

        usage = body.get("usage") or {}
        return EmbeddingOutput(
            vectors=vectors,
            model=str(body.get("model") or self.model_name),
            input_tokens=int(usage.get("prompt_tokens") or usage.get("total_tokens") or 0),
            cost_usd=float(usage["cost"]) if usage.get("cost") is not None else None,
        )

    def close(self) -> None:
        self._client.close()

    @property
    def closed(self) -> bool:
        return self._client.is_closed


def build_embedder(settings: EmbeddingSettings) -> Embedder:
    """Build the configured embedder.

    Falling back from sentence-transformers to hashing is explicit so a
    missing model never silently degrades similarity quality.
    """

    if settings.backend == "http":
        if not settings.api_key:
            raise RuntimeError(
                "PRACTICE_SYNC_EMBEDDING_API_KEY is required for the http embedding backend.",
            )
        return HttpEmbedder(
            model_name=settings.model_name,
            base_url=settings.api_base_url,
            api_key=settings.api_key,
            timeout_seconds=settings.request_timeout_seconds,
            max_retries=settings.max_retries,
        )
    if settings.backend == "sentence-transformers":
        try:
            return SentenceTransformerEmbedder(model_name=settings.model_name)
        except (ImportError, ModuleNotFoundError, OSError, RuntimeError, ValueError) as error:
            if settings.allow_model_fallback:
                logger.warning(
                    "Falling back to hashing embedder, %s unavailable: %s",
                    settings.model_name,
                    error,
                )
                return HashingEmbedder(
                    model_name=settings.model_name,
                    dimensions=settings.dimensions,
                )
            raise RuntimeError(
                f"Failed to initialize embedding model {settings.model_name}. "
                "Install sentence-transformers or set "
                "PRACTICE_SYNC_EMBEDDING_ALLOW_MODEL_FALLBACK=true.",
            ) from error
    return HashingEmbedder(model_name=settings.model_name, dimensions=settings.dimensions)


def cosine_similarity(left: Vector, right: Vector) -> float:
    """Cosine similarity that does not assume normalized input."""

    if len(left) != len(right):
        raise ValueError("Vectors must have the same size")

    dot = sum(l_value * r_value for l_value, r_value in zip(left, right, strict=True))
    left_norm = math.sqrt(sum(value * value for value in left))
    right_norm = math.sqrt(sum(value * value for value in right))
    if left_norm == 0 or right_norm == 0:
        return 0.0
    return max(-1.0, min(1.0, dot / (left_norm * right_norm)))


def _approx_tokens(text: str) -> int:
    return max(1, len(text) // 4) if text else 0
