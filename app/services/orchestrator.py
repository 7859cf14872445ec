# app/services/orchestrator.py
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.chat.agent import AgentRun, HealthChatAgent
from app.chat.changes import EntityChange, reconcile, take_snapshot
from app.chat.context import ConversationContext, hydrate_context
from app.chat.parser import parse_response
from app.chat.schema import AppointmentData, HealthAssistantResponse
from app.chat.status import StatusEvent, merge_status_timeline, serialize_timeline
from app.config import Settings, get_settings
from app.errors import NotFoundError, StoreUnavailableError
from app.llm.client import LLMClient
from app.models import Conversation, Message, utcnow
from app.rag.history import build_history

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_MESSAGE = "I apologize, but I encountered an error generating my response."
TITLE_LENGTH = 50


class ChatAgent(Protocol):
    def run(
        self,
        session: Session,
        ctx: ConversationContext,
        user_message: str,
        history: Optional[List[dict]] = None,
    ) -> AgentRun:
        ...


@dataclass
class TurnResult:
    message: str
    conversation_id: str
    symptom_changes: List[EntityChange] = field(default_factory=list)
    appointment_changes: List[EntityChange] = field(default_factory=list)
    assessment_changes: List[EntityChange] = field(default_factory=list)
    status_timeline: Optional[List[StatusEvent]] = None
    appointment: Optional[AppointmentData] = None
    user_message_id: Optional[str] = None
    assistant_message_id: Optional[str] = None


class ConversationLocks:
    """
    Process-local registry of one lock per conversation id.
    Two turns on the same conversation never interleave in this process.
    An entry lives only while some turn holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._holders: Dict[str, int] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _acquire_entry(self, conversation_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[conversation_id] = lock
            self._holders[conversation_id] = self._holders.get(conversation_id, 0) + 1
            return lock

    def _release_entry(self, conversation_id: str) -> None:
        with self._guard:
            remaining = self._holders[conversation_id] - 1
            if remaining:
                self._holders[conversation_id] = remaining
            else:
                del self._holders[conversation_id]
                del self._locks[conversation_id]

    @contextmanager
    def hold(self, conversation_id: str) -> Iterator[None]:
        lock = self._acquire_entry(conversation_id)
        try:
            with lock:
                yield
        finally:
            self._release_entry(conversation_id)


def make_title(message: str) -> str:
    text = message.strip()
    if len(text) > TITLE_LENGTH:
        return text[:TITLE_LENGTH] + "..."
    return text or "New conversation"


def route_response(response: HealthAssistantResponse) -> HealthAssistantResponse:
    """
    Surface urgent appointment signals in the logs.
    The response itself passes through unchanged.
    """
    appointment = response.appointment
    if appointment is None or not appointment.needed:
        return response

    urgency = (appointment.urgency or "").lower()
    if urgency == "emergency":
        logger.warning(
            "Emergency appointment signalled: %s",
            appointment.emergency_action or "no emergency action given",
        )
    elif urgency in ("high", "medium") and appointment.ready_to_book:
        logger.info(
            "Appointment ready to book with %s urgency for symptoms %s",
            appointment.urgency,
            ", ".join(appointment.symptoms) or "unspecified",
        )
    return response


class HealthChatOrchestrator:
    """
    Runs one conversation turn end to end:
      - resolve or create the conversation
      - hydrate the context and snapshot pre-turn state
      - run the tool loop
      - reconcile changes and merge the status timeline
      - pick or parse the reply
      - persist both messages and schedule their indexing
    """

    def __init__(
        self,
        agent: Optional[ChatAgent] = None,
        llm: Optional[LLMClient] = None,
        schedule_indexing: Optional[Callable[[Sequence[str]], None]] = None,
        locks: Optional[ConversationLocks] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        if agent is None:
            if llm is None:
                raise ValueError("Either an agent or an LLM client is required")
            agent = HealthChatAgent(llm)
        self.agent = agent
        self.schedule_indexing = schedule_indexing
        self.locks = locks if locks is not None else ConversationLocks()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def handle_turn(
        self,
        session: Session,
        user_id: str,
        message: str,
        conversation_id: Optional[str] = None,
        on_status: Optional[Callable[[StatusEvent], None]] = None,
        schedule_indexing: Optional[Callable[[Sequence[str]], None]] = None,
    ) -> TurnResult:
        """
        `on_status` receives every status event as it is published.
        `schedule_indexing` overrides the instance callback for this turn.
        """
        scheduler = schedule_indexing or self.schedule_indexing
        try:
            conversation = self._resolve_conversation(session, user_id, conversation_id, message)
            with self.locks.hold(conversation.id):
                return self._run_turn(
                    session, user_id, conversation, message, on_status, scheduler
                )
        except OperationalError as exc:
            session.rollback()
            logger.error("Store unavailable during turn for user %s", user_id, exc_info=True)
            raise StoreUnavailableError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _resolve_conversation(
        self,
        session: Session,
        user_id: str,
        conversation_id: Optional[str],
        message: str,
    ) -> Conversation:
        if conversation_id is not None:
            conversation = session.scalars(
                select(Conversation).where(
                    Conversation.id == conversation_id,
                    Conversation.user_id == user_id,
                )
            ).first()
            if conversation is None:
                raise NotFoundError("Conversation", conversation_id)
            return conversation

        now = utcnow()
        conversation = Conversation(
            user_id=user_id,
            title=make_title(message),
            created_at=now,
            updated_at=now,
        )
        session.add(conversation)
        session.commit()
        logger.info("Created conversation %s for user %s", conversation.id, user_id)
        return conversation

    def _run_turn(
        self,
        session: Session,
        user_id: str,
        conversation: Conversation,
        message: str,
        on_status: Optional[Callable[[StatusEvent], None]],
        scheduler: Optional[Callable[[Sequence[str]], None]],
    ) -> TurnResult:
        settings = self.settings

        history = build_history(session, user_id, conversation.id, message)
        ctx = hydrate_context(
            session,
            user_id,
            conversation.id,
            episode_days=settings.active_episode_days,
            negative_finding_days=settings.negative_finding_days,
        )
        if on_status is not None:
            ctx.status.subscribe(on_status)

        snapshot = None
        if settings.diff_fallback_enabled:
            snapshot = take_snapshot(session, user_id, conversation.id)

        run = self._run_agent(session, ctx, message, history)

        reconciled = reconcile(
            session,
            user_id,
            conversation.id,
            ctx.changes,
            snapshot,
            settings.change_window_seconds,
            diff_enabled=settings.diff_fallback_enabled,
        )

        timeline = merge_status_timeline(
            reconciled.symptoms,
            reconciled.assessments,
            ctx.status.drain(),
        )

        if run.final_response is not None:
            response = run.final_response
        else:
            response = parse_response(run.text)
        if not response.message.strip():
            response = response.model_copy(update={"message": EMPTY_RESPONSE_MESSAGE})
        response = route_response(response)

        user_msg, assistant_msg = self._persist(session, conversation, message, response, timeline)

        if scheduler is not None and settings.index_messages:
            scheduler([user_msg.id, assistant_msg.id])

        logger.info(
            "Turn complete for conversation %s: %d iterations, %s changes, %d status events",
            conversation.id,
            run.iterations,
            reconciled.source,
            len(timeline or []),
        )

        return TurnResult(
            message=response.message,
            conversation_id=conversation.id,
            symptom_changes=reconciled.symptoms,
            appointment_changes=reconciled.appointments,
            assessment_changes=reconciled.assessments,
            status_timeline=timeline,
            appointment=response.appointment,
            user_message_id=user_msg.id,
            assistant_message_id=assistant_msg.id,
        )

    def _run_agent(
        self,
        session: Session,
        ctx: ConversationContext,
        message: str,
        history: List[dict],
    ) -> AgentRun:
        """
        Model failures degrade to an empty run; the reply falls back to
        the apology and whatever was already committed is still reported.
        """
        try:
            return self.agent.run(session, ctx, message, history)
        except (NotFoundError, StoreUnavailableError, OperationalError):
            raise
        except Exception:
            logger.exception("Tool loop failed for conversation %s", ctx.conversation_id)
            session.rollback()
            return AgentRun(text="", final_response=ctx.final_response, iterations=0)

    def _persist(
        self,
        session: Session,
        conversation: Conversation,
        message: str,
        response: HealthAssistantResponse,
        timeline: Optional[List[StatusEvent]],
    ) -> tuple[Message, Message]:
        user_created = utcnow()
        assistant_created = utcnow()
        # History is ordered by created_at; keep the reply strictly after
        if assistant_created <= user_created:
            assistant_created = user_created + timedelta(microseconds=1)

        user_msg = Message(
            conversation_id=conversation.id,
            role="user",
            content=message,
            created_at=user_created,
        )
        assistant_msg = Message(
            conversation_id=conversation.id,
            role="assistant",
            content=response.message,
            created_at=assistant_created,
            status_information=serialize_timeline(timeline),
        )
        session.add_all([user_msg, assistant_msg])
        conversation.updated_at = assistant_created
        session.commit()
        return user_msg, assistant_msg
