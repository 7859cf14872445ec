# app/rag/history.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models import Message
from app.rag.retriever import search_similar_messages

logger = logging.getLogger(__name__)


def load_conversation_messages(session: Session, conversation_id: Optional[str]) -> List[Message]:
    if conversation_id is None:
        return []
    return list(
        session.scalars(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.asc(), Message.id.asc())
        )
    )


def build_history(
    session: Session,
    user_id: str,
    conversation_id: Optional[str],
    user_message: str,
) -> List[Dict[str, Any]]:
    """
    Prior turns handed to the model, oldest first:
      - the conversation's own messages
      - if the conversation is still short and cross-conversation search
        is on, semantically similar messages from the user's other
        conversations, prepended
      - cut to the MAX_CONTEXT_MESSAGES most recent (0 = no limit)
    """
    settings = get_settings()
    entries: List[Dict[str, Any]] = [
        {"role": m.role, "content": m.content}
        for m in load_conversation_messages(session, conversation_id)
    ]

    if settings.cross_conversation_search and len(entries) < settings.cross_conversation_threshold:
        try:
            related = search_similar_messages(
                session,
                user_id,
                user_message,
                exclude_conversation_id=conversation_id,
                limit=settings.max_cross_conversation_results,
                min_similarity=settings.min_similarity_score,
            )
        except SQLAlchemyError:
            # Enrichment is optional; the turn continues with local history
            logger.warning(
                "Cross-conversation search failed, using only current conversation",
                exc_info=True,
            )
            session.rollback()
            related = []
        except Exception:
            # Embedding model load or encode failures, same degradation
            logger.warning(
                "Cross-conversation search unavailable, using only current conversation",
                exc_info=True,
            )
            related = []

        if related:
            logger.debug(
                "Found %d related messages from other conversations (current has %d)",
                len(related),
                len(entries),
            )
            related.sort(key=lambda r: r.created_at)
            entries = [{"role": r.role, "content": r.content} for r in related] + entries

    limit = settings.max_context_messages
    if limit > 0 and len(entries) > limit:
        entries = entries[-limit:]
        logger.debug("Limited context to %d most recent messages", limit)

    return entries
