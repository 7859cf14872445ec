# app/api/routes.py
from __future__ import annotations

import json
import logging
import queue
import threading
from functools import lru_cache
from typing import Any, Callable, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Response
from fastapi.responses import StreamingResponse
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from app.chat.changes import EntityChange
from app.chat.stages import EpisodeStatus
from app.chat.status import StatusEvent, deserialize_timeline, event_to_dict
from app.db import SessionLocal, get_db
from app.errors import NotFoundError
from app.llm import OpenAILLMClient
from app.models import Assessment, Conversation, Episode, Message, Symptom
from app.rag import index_messages
from app.services import HealthChatOrchestrator, TurnResult
from .schemas import (
    AssessmentSchema,
    ChatRequest,
    ChatResponse,
    ConversationDetail,
    ConversationSummary,
    EntityChangeSchema,
    EpisodeSchema,
    MessageSchema,
    SymptomSchema,
    UpdateTitleRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """
    Caller identity is trusted from the header; there is no verification.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required.")
    return x_user_id.strip()


@lru_cache(maxsize=1)
def get_orchestrator() -> HealthChatOrchestrator:
    return HealthChatOrchestrator(llm=OpenAILLMClient())


def get_session_factory() -> Callable[[], Session]:
    """
    Session source for work that outlives the request (SSE worker thread).
    """
    return SessionLocal


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _changes(changes: List[EntityChange]) -> List[EntityChangeSchema]:
    return [EntityChangeSchema(**c.to_dict()) for c in changes]


def _chat_response(result: TurnResult) -> ChatResponse:
    return ChatResponse(
        message=result.message,
        conversation_id=result.conversation_id,
        symptom_changes=_changes(result.symptom_changes),
        appointment_changes=_changes(result.appointment_changes),
        assessment_changes=_changes(result.assessment_changes),
        status_information=(
            [event_to_dict(e) for e in result.status_timeline]
            if result.status_timeline
            else None
        ),
        appointment=result.appointment,
    )


def _message_schema(message: Message) -> MessageSchema:
    events = deserialize_timeline(message.status_information)
    return MessageSchema(
        id=message.id,
        role=message.role,
        content=message.content,
        created_at=message.created_at,
        status_information=[event_to_dict(e) for e in events] or None,
    )


def _emit_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def _owned_conversation(db: Session, conversation_id: str, user_id: str) -> Conversation:
    conversation = db.scalars(
        select(Conversation).where(
            Conversation.id == conversation_id,
            Conversation.user_id == user_id,
        )
    ).first()
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found.")
    return conversation


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

@router.post("/chat", response_model=ChatResponse)
def chat(
    payload: ChatRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    orchestrator: HealthChatOrchestrator = Depends(get_orchestrator),
) -> ChatResponse:
    """
    Run one conversation turn. NotFoundError / StoreUnavailableError are
    mapped by the app-level exception handlers.
    """
    result = orchestrator.handle_turn(
        db,
        user_id,
        payload.message,
        conversation_id=payload.conversation_id,
        schedule_indexing=lambda ids: background_tasks.add_task(index_messages, list(ids)),
    )
    return _chat_response(result)


@router.post("/chat/stream")
def chat_stream(
    payload: ChatRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: HealthChatOrchestrator = Depends(get_orchestrator),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
) -> StreamingResponse:
    """
    Same turn as /chat, streamed as server-sent events:
      - `status` for each status event as tool operations publish it
      - one final `message` (the ChatResponse) or `error`
    """
    events: "queue.Queue[Optional[tuple[str, dict]]]" = queue.Queue()

    def on_status(event: StatusEvent) -> None:
        events.put(("status", event_to_dict(event)))

    def worker() -> None:
        session = session_factory()
        try:
            result = orchestrator.handle_turn(
                session,
                user_id,
                payload.message,
                conversation_id=payload.conversation_id,
                on_status=on_status,
                schedule_indexing=index_messages,
            )
            events.put(("message", _chat_response(result).model_dump(mode="json")))
        except NotFoundError as exc:
            events.put(("error", {"message": str(exc), "status": 404}))
        except Exception:
            logger.exception("Streaming turn failed for user %s", user_id)
            events.put(("error", {"message": "Internal error", "status": 500}))
        finally:
            session.close()
            events.put(None)

    threading.Thread(target=worker, daemon=True).start()

    def event_stream():
        while True:
            item = events.get()
            if item is None:
                break
            name, data = item
            yield _emit_sse(name, data)

    return StreamingResponse(event_stream(), media_type="text/event-stream")


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

@router.get("/conversations", response_model=List[ConversationSummary])
def list_conversations(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return list(
        db.scalars(
            select(Conversation)
            .where(Conversation.user_id == user_id)
            .order_by(Conversation.updated_at.desc())
        )
    )


@router.get("/conversations/{conversation_id}", response_model=ConversationDetail)
def get_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
) -> ConversationDetail:
    conversation = _owned_conversation(db, conversation_id, user_id)
    return ConversationDetail(
        id=conversation.id,
        title=conversation.title,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        messages=[_message_schema(m) for m in conversation.messages],
    )


@router.put("/conversations/{conversation_id}", response_model=ConversationSummary)
def update_conversation_title(
    conversation_id: str,
    payload: UpdateTitleRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    conversation = _owned_conversation(db, conversation_id, user_id)
    conversation.title = payload.title.strip()
    db.commit()
    db.refresh(conversation)
    return conversation


@router.delete("/conversations/{conversation_id}", status_code=204)
def delete_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
) -> Response:
    conversation = _owned_conversation(db, conversation_id, user_id)
    db.delete(conversation)
    db.commit()
    logger.info("Deleted conversation %s", conversation_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Episodes, assessments, symptoms (read-only)
# ---------------------------------------------------------------------------

@router.get("/episodes/active", response_model=List[EpisodeSchema])
def list_active_episodes(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return list(
        db.scalars(
            select(Episode)
            .options(selectinload(Episode.symptom))
            .where(Episode.user_id == user_id, Episode.status == EpisodeStatus.ACTIVE.value)
            .order_by(Episode.started_at.desc())
        )
    )


@router.get("/episodes/symptom/{symptom_name}", response_model=List[EpisodeSchema])
def list_episodes_for_symptom(
    symptom_name: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return list(
        db.scalars(
            select(Episode)
            .join(Episode.symptom)
            .options(selectinload(Episode.symptom))
            .where(Episode.user_id == user_id, Symptom.name == symptom_name)
            .order_by(Episode.started_at.desc())
        )
    )


@router.get("/episodes/{episode_id}", response_model=EpisodeSchema)
def get_episode(
    episode_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    episode = db.get(Episode, episode_id)
    if episode is None or episode.user_id != user_id:
        raise HTTPException(status_code=404, detail="Episode not found.")
    return episode


@router.get("/assessments/conversation/{conversation_id}", response_model=List[AssessmentSchema])
def list_assessments_for_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    _owned_conversation(db, conversation_id, user_id)
    return list(
        db.scalars(
            select(Assessment)
            .options(selectinload(Assessment.links))
            .where(Assessment.conversation_id == conversation_id)
            .order_by(Assessment.created_at.desc())
        )
    )


@router.get("/assessments/recent", response_model=List[AssessmentSchema])
def list_recent_assessments(
    limit: int = 10,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    limit = max(1, min(limit, 100))
    return list(
        db.scalars(
            select(Assessment)
            .options(selectinload(Assessment.links))
            .where(Assessment.user_id == user_id)
            .order_by(Assessment.created_at.desc(), Assessment.id.desc())
            .limit(limit)
        )
    )


@router.get("/assessments/{assessment_id}", response_model=AssessmentSchema)
def get_assessment(
    assessment_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    assessment = db.get(Assessment, assessment_id)
    if assessment is None or assessment.user_id != user_id:
        raise HTTPException(status_code=404, detail="Assessment not found.")
    return assessment


@router.get("/symptoms", response_model=List[SymptomSchema])
def list_symptoms(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    return list(
        db.scalars(
            select(Symptom).where(Symptom.user_id == user_id).order_by(Symptom.name)
        )
    )
