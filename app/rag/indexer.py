# app/rag/indexer.py
from __future__ import annotations

import logging
from typing import List, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from app.db import db_session
from app.models import Message, MessageEmbedding
from app.rag.embeddings import get_embedding_client

logger = logging.getLogger(__name__)


def _load_unindexed(session: Session, message_ids: Sequence[str]) -> List[Message]:
    messages = session.scalars(
        select(Message)
        .options(selectinload(Message.conversation), selectinload(Message.embedding))
        .where(Message.id.in_(list(message_ids)))
    )
    return [m for m in messages if m.embedding is None and m.content.strip()]


def index_messages_in_session(session: Session, message_ids: Sequence[str]) -> int:
    """
    Embed the given messages and store one MessageEmbedding per message.
    Messages that are already indexed or empty are skipped.

    Returns: number of embeddings inserted.
    """
    messages = _load_unindexed(session, message_ids)
    if not messages:
        return 0

    emb_client = get_embedding_client()
    embeddings = emb_client.embed([m.content for m in messages])

    for message, emb in zip(messages, embeddings):
        session.add(
            MessageEmbedding(
                message_id=message.id,
                user_id=message.conversation.user_id,
                embedding=emb,
            )
        )
    session.flush()
    return len(messages)


def index_messages(message_ids: Sequence[str]) -> int:
    """
    Background entry point: own session, never raises.
    A failed index only degrades cross-conversation search.
    """
    try:
        with db_session() as session:
            inserted = index_messages_in_session(session, message_ids)
    except Exception:
        logger.exception("Failed to index messages %s", list(message_ids))
        return 0

    logger.info("Indexed %d messages", inserted)
    return inserted
