"""Content-hash keyed embedding store with in-process similarity search."""

from __future__ import annotations

import hashlib
import logging
import struct
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select

from practice_sync.embeddings.generator import Vector, cosine_similarity
from practice_sync.storage.common import dump_json, load_json_object, to_db_datetime, utc_now
from practice_sync.storage.database import Database
from practice_sync.storage.sqlmodel_models import Embedding

logger = logging.getLogger(__name__)


def content_hash(text: str) -> str:
    """SHA-256 of the exact text; any whitespace change is a different key."""

    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class StoredEmbedding:
    """One persisted vector with its ownership and provenance."""

    embedding_id: str
    owner_type: str
    owner_id: str
    chunk_index: int
    content_hash: str
    model_name: str
    vector: Vector
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class SimilarMatch:
    embedding_id: str
    owner_type: str
    owner_id: str
    chunk_index: int
    similarity: float


class EmbeddingCache:
    """Vector store keyed by ``(user_id, content_hash)``.

    Similarity search is a linear scan over the user's vectors. That is fine
    for one practice's mailbox and calendar, and it is the first thing to
    replace with a vector index if per-user volumes grow.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    def get(self, user_id: str, content_hash: str) -> Vector | None:
        """Return any stored vector produced from text with this hash."""

        with self.database.session() as session:
            row = session.exec(
                select(Embedding)
                .where(
                    Embedding.user_id == user_id,
                    Embedding.content_hash == content_hash,
                )
                .order_by(col(Embedding.created_at).asc())
                .limit(1),
            ).first()
            if row is None:
                return None
            return _unpack_vector(row.embedding_blob, row.embedding_dim)

    def get_for_owner(  # noqa: PLR0913
        self,
        user_id: str,
        owner_type: str,
        owner_id: str,
        chunk_index: int,
        content_hash: str,
    ) -> StoredEmbedding | None:
        with self.database.session() as session:
            row = session.exec(
                select(Embedding).where(
                    Embedding.user_id == user_id,
                    Embedding.owner_type == owner_type,
                    Embedding.owner_id == owner_id,
                    Embedding.chunk_index == chunk_index,
                    Embedding.content_hash == content_hash,
                ),
            ).one_or_none()
            return _to_stored(row) if row is not None else None

    def put(  # noqa: PLR0913
        self,
        user_id: str,
        owner_type: str,
        owner_id: str,
        text: str,
        chunk_index: int,
        vector: Vector,
        *,
        model_name: str,
        meta: dict[str, Any] | None = None,
    ) -> str:
        """Store a vector for one owner chunk; an existing identical row is returned as-is."""

        digest = content_hash(text)
        embedding_id = str(uuid4())
        with self.database.session() as session:
            session.add(
                Embedding(
                    embedding_id=embedding_id,
                    user_id=user_id,
                    owner_type=owner_type,
                    owner_id=owner_id,
                    chunk_index=chunk_index,
                    content_hash=digest,
                    model_name=model_name,
                    embedding_dim=len(vector),
                    embedding_blob=_pack_vector(vector),
                    meta_json=dump_json(meta) if meta else None,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            try:
                session.commit()
                return embedding_id
            except IntegrityError:
                session.rollback()

        existing = self.get_for_owner(user_id, owner_type, owner_id, chunk_index, digest)
        if existing is None:
            raise RuntimeError(
                "Embedding insert conflicted but no row found: "
                f"{owner_type}/{owner_id}#{chunk_index}",
            )
        return existing.embedding_id

    def list_for_owner(self, user_id: str, owner_type: str, owner_id: str) -> list[StoredEmbedding]:
        with self.database.session() as session:
            rows = session.exec(
                select(Embedding)
                .where(
                    Embedding.user_id == user_id,
                    Embedding.owner_type == owner_type,
                    Embedding.owner_id == owner_id,
                )
                .order_by(col(Embedding.chunk_index).asc(), col(Embedding.created_at).asc()),
            ).all()
            return [_to_stored(row) for row in rows]

    def find_similar(  # noqa: PLR0913
        self,
        target_vector: Vector,
        user_id: str,
        *,
        owner_type: str | None = None,
        limit: int = 10,
        threshold: float = 0.7,
    ) -> list[SimilarMatch]:
        """Cosine-rank the user's vectors against ``target_vector``."""

        statement = select(Embedding).where(Embedding.user_id == user_id)
        if owner_type is not None:
            statement = statement.where(Embedding.owner_type == owner_type)
        with self.database.session() as session:
            rows = session.exec(statement).all()
            candidates = [
                (
                    row.embedding_id,
                    row.owner_type,
                    row.owner_id,
                    row.chunk_index,
                    row.embedding_dim,
                    row.embedding_blob,
                )
                for row in rows
            ]

        matches: list[SimilarMatch] = []
        skipped = 0
        for embedding_id, row_owner_type, owner_id, chunk_index, dim, blob in candidates:
            if dim != len(target_vector):
                skipped += 1
                continue
            similarity = cosine_similarity(target_vector, _unpack_vector(blob, dim))
            if similarity < threshold:
                continue
            matches.append(
                SimilarMatch(
                    embedding_id=embedding_id,
                    owner_type=row_owner_type,
                    owner_id=owner_id,
                    chunk_index=chunk_index,
                    similarity=similarity,
                ),
            )
        if skipped:
            logger.debug("Skipped %d embeddings with a different dimension", skipped)

        matches.sort(key=lambda match: match.similarity, reverse=True)
        return matches[: max(0, limit)]


def _to_stored(row: Embedding) -> StoredEmbedding:
    return StoredEmbedding(
        embedding_id=row.embedding_id,
        owner_type=row.owner_type,
        owner_id=row.owner_id,
        chunk_index=row.chunk_index,
        content_hash=row.content_hash,
        model_name=row.model_name,
        vector=_unpack_vector(row.embedding_blob, row.embedding_dim),
        meta=load_json_object(row.meta_json),
    )


def _pack_vector(vector: Vector) -> bytes:
    return struct.pack(f"{len(vector)}f", *vector)


def _unpack_vector(blob: bytes, dim: int) -> Vector:
    unpacked = struct.unpack(f"{dim}f", blob)
    return list(unpacked)
