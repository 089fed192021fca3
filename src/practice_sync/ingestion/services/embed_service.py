"""Embedding stage: owner text -> cached or freshly generated vectors."""

from __future__ import annotations

import logging
from functools import partial

from practice_sync.embeddings.cache import EmbeddingCache, SimilarMatch, content_hash
from practice_sync.embeddings.generator import Embedder, Vector
from practice_sync.errors import ConfigurationError
from practice_sync.guardrails import Blocked, GuardrailLedger, MeteredCall, with_guardrails
from practice_sync.guardrails.pricing import PricingTable
from practice_sync.ingestion.cleaning import chunk_text
from practice_sync.ingestion.errors import RecordNotFoundError
from practice_sync.ingestion.models import ChunkOutcome, EmbedResult, StageAction
from practice_sync.ingestion.repository import IngestionRepository

logger = logging.getLogger(__name__)

INTERACTION_OWNER = "interaction"


class EmbedService:
    """Embeds owner text chunk by chunk, paying only for text never seen before.

    Per chunk the lookup order is: the owner's own row for this hash, any row
    of the same user with this hash (vector copied at zero cost), and only
    then the embedder. Calls to a metered embedder go through the guardrails
    and spend one AI credit each.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        cache: EmbeddingCache,
        embedder: Embedder,
        ledger: GuardrailLedger,
        repository: IngestionRepository,
        chunk_max_chars: int = 2_000,
        similarity_threshold: float = 0.7,
        pricing: PricingTable | None = None,
    ) -> None:
        self.cache = cache
        self.embedder = embedder
        self.ledger = ledger
        self.repository = repository
        self.chunk_max_chars = chunk_max_chars
        self.similarity_threshold = similarity_threshold
        self.pricing = pricing or PricingTable()

    def embed_owner(self, user_id: str, owner_type: str, owner_id: str) -> EmbedResult:
        if owner_type != INTERACTION_OWNER:
            raise ConfigurationError(f"No embeddable text source for owner type {owner_type!r}")
        interaction = self.repository.get_interaction(user_id=user_id, interaction_id=owner_id)
        if interaction is None:
            raise RecordNotFoundError(f"Interaction not found: {owner_id}")
        return self.embed_text(
            user_id,
            owner_type,
            owner_id,
            interaction.embeddable_text,
        )

    def embed_text(
        self,
        user_id: str,
        owner_type: str,
        owner_id: str,
        text: str,
    ) -> EmbedResult:
        result = EmbedResult(owner_type=owner_type, owner_id=owner_id)
        for chunk_index, chunk in enumerate(chunk_text(text, self.chunk_max_chars)):
            digest = content_hash(chunk)
            stored = self.cache.get_for_owner(user_id, owner_type, owner_id, chunk_index, digest)
            if stored is not None:
                result.chunks.append(
                    ChunkOutcome(
                        chunk_index=chunk_index,
                        content_hash=digest,
                        action=StageAction.EXISTING,
                        embedding_id=stored.embedding_id,
                        vector=stored.vector,
                    ),
                )
                continue

            cached = self.cache.get(user_id, digest)
            if cached is not None:
                embedding_id = self.cache.put(
                    user_id,
                    owner_type,
                    owner_id,
                    chunk,
                    chunk_index,
                    cached,
                    model_name=self.embedder.model_name,
                    meta={"cache_hit": True},
                )
                result.chunks.append(
                    ChunkOutcome(
                        chunk_index=chunk_index,
                        content_hash=digest,
                        action=StageAction.CACHED,
                        embedding_id=embedding_id,
                        vector=cached,
                    ),
                )
                continue

            generated = self._generate(user_id, chunk)
            if isinstance(generated, Blocked):
                result.blocked_reason = generated.reason.value
                logger.info(
                    "Embedding %s/%s stopped at chunk %d: %s",
                    owner_type,
                    owner_id,
                    chunk_index,
                    generated.message,
                )
                break
            vector, cost_usd = generated
            result.cost_usd += cost_usd
            embedding_id = self.cache.put(
                user_id,
                owner_type,
                owner_id,
                chunk,
                chunk_index,
                vector,
                model_name=self.embedder.model_name,
            )
            result.chunks.append(
                ChunkOutcome(
                    chunk_index=chunk_index,
                    content_hash=digest,
                    action=StageAction.CREATED,
                    embedding_id=embedding_id,
                    vector=vector,
                ),
            )
        return result

    def search_similar(  # noqa: PLR0913
        self,
        user_id: str,
        query: str,
        *,
        owner_type: str | None = None,
        limit: int = 10,
        threshold: float | None = None,
    ) -> list[SimilarMatch] | Blocked:
        """Embed ``query`` (cache first, then guarded) and rank the user's vectors."""

        vector = self.cache.get(user_id, content_hash(query))
        if vector is None:
            generated = self._generate(user_id, query)
            if isinstance(generated, Blocked):
                return generated
            vector, _ = generated
        return self.cache.find_similar(
            vector,
            user_id,
            owner_type=owner_type,
            limit=limit,
            threshold=self.similarity_threshold if threshold is None else threshold,
        )

    def _generate(self, user_id: str, text: str) -> tuple[Vector, float] | Blocked:
        """Embed one text; metered backends spend a credit through the guardrails."""

        if not self.embedder.metered:
            output = self.embedder.embed([text])
            return output.vectors[0], output.cost_usd or 0.0
        guarded = with_guardrails(
            self.ledger,
            user_id,
            partial(self._metered_call, text),
            pricing=self.pricing,
            default_model=self.embedder.model_name,
        )
        if isinstance(guarded, Blocked):
            return guarded
        return guarded.value, guarded.cost_usd

    def _metered_call(self, text: str) -> MeteredCall[Vector]:
        output = self.embedder.embed([text])
        return MeteredCall(
            value=output.vectors[0],
            model=output.model,
            input_tokens=output.input_tokens,
            cost_usd=output.cost_usd,
        )
