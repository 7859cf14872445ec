# app/rag/retriever.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.rag.embeddings import get_embedding_client

logger = logging.getLogger(__name__)


@dataclass
class RetrievedMessage:
    message_id: str
    conversation_id: str
    role: str
    content: str
    created_at: datetime
    similarity: float  # 1 - cosine distance (higher is better)


def search_similar_messages(
    session: Session,
    user_id: str,
    query: str,
    exclude_conversation_id: Optional[str] = None,
    limit: int = 5,
    min_similarity: float = 0.7,
) -> List[RetrievedMessage]:
    """
    Top-`limit` messages from the user's other conversations whose
    embedding is within `min_similarity` cosine similarity of the query.
    Needs PostgreSQL with pgvector; returns [] on any other dialect.
    """
    if session.get_bind().dialect.name != "postgresql":
        return []

    query_emb = get_embedding_client().embed_query(query)

    sql = text(
        """
        SELECT m.id, m.conversation_id, m.role, m.content, m.created_at,
               1 - (e.embedding <=> CAST(:query_embedding AS vector)) AS similarity
        FROM message_embeddings e
        JOIN messages m ON m.id = e.message_id
        WHERE e.user_id = :user_id
          AND (CAST(:exclude AS varchar) IS NULL OR m.conversation_id <> :exclude)
          AND 1 - (e.embedding <=> CAST(:query_embedding AS vector)) >= :min_similarity
        ORDER BY e.embedding <=> CAST(:query_embedding AS vector)
        LIMIT :k;
        """
    )

    rows = session.execute(
        sql,
        {
            "user_id": user_id,
            "query_embedding": query_emb.tolist(),
            "exclude": exclude_conversation_id,
            "min_similarity": min_similarity,
            "k": limit,
        },
    ).fetchall()

    results = [
        RetrievedMessage(
            message_id=row.id,
            conversation_id=row.conversation_id,
            role=row.role,
            content=row.content,
            created_at=row.created_at,
            similarity=float(row.similarity) if row.similarity is not None else 0.0,
        )
        for row in rows
    ]
    logger.debug("Cross-conversation search returned %d messages", len(results))
    return results
