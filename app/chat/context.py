# app/chat/context.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, selectinload

from app.chat.changes import EntityChange
from app.chat.schema import HealthAssistantResponse
from app.chat.stages import ConversationPhase, EpisodeStatus
from app.chat.status import StatusChannel
from app.errors import StoreUnavailableError
from app.models import Assessment, Episode, NegativeFinding, Symptom, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ConversationContext:
    """
    Working memory for one conversation turn.

    Hydrated from the store at the start of the turn, mutated in place by
    tool operations so later calls in the same turn see fresh state, and
    discarded once the turn is persisted. Owned by exactly one turn.
    """

    user_id: str
    conversation_id: Optional[str] = None

    active_episodes: List[Episode] = field(default_factory=list)
    active_symptoms: List[Symptom] = field(default_factory=list)
    negative_findings: List[NegativeFinding] = field(default_factory=list)

    # symptom name -> most recent open episode, used to suppress duplicates
    episodes_by_symptom: Dict[str, Episode] = field(default_factory=dict)

    current_assessment: Optional[Assessment] = None
    phase: ConversationPhase = ConversationPhase.GATHERING

    # Explicit change events reported by tool operations this turn
    changes: List[EntityChange] = field(default_factory=list)
    status: StatusChannel = field(default_factory=StatusChannel)

    # Set when the model calls submit_final_response
    final_response: Optional[HealthAssistantResponse] = None

    def find_episode(self, episode_id: int) -> Optional[Episode]:
        for episode in self.active_episodes:
            if episode.id == episode_id:
                return episode
        return None

    def record_change(self, change: EntityChange) -> None:
        self.changes.append(change)

    def active_symptom_names(self) -> List[str]:
        names: List[str] = []
        for episode in self.active_episodes:
            if episode.status != EpisodeStatus.ACTIVE.value or episode.symptom is None:
                continue
            if episode.symptom.name not in names:
                names.append(episode.symptom.name)
        return names


def hydrate_context(
    session: Session,
    user_id: str,
    conversation_id: Optional[str] = None,
    episode_days: int = 14,
    negative_finding_days: int = 7,
) -> ConversationContext:
    """
    Build the per-turn working set:
      - active episodes started within `episode_days`, newest first
      - the symptoms those episodes reference
      - negative findings reported within `negative_finding_days`
      - the conversation's latest assessment (phase -> assessing)

    Store failures are fatal; nothing is partially hydrated.
    """
    ctx = ConversationContext(user_id=user_id, conversation_id=conversation_id)
    now = utcnow()

    try:
        episodes = list(
            session.scalars(
                select(Episode)
                .options(selectinload(Episode.symptom))
                .where(
                    Episode.user_id == user_id,
                    Episode.status == EpisodeStatus.ACTIVE.value,
                    Episode.started_at >= now - timedelta(days=episode_days),
                )
                .order_by(Episode.started_at.desc(), Episode.id.desc())
            )
        )

        findings = list(
            session.scalars(
                select(NegativeFinding)
                .where(
                    NegativeFinding.user_id == user_id,
                    NegativeFinding.reported_at >= now - timedelta(days=negative_finding_days),
                )
                .order_by(NegativeFinding.reported_at.desc())
            )
        )

        assessment = None
        if conversation_id is not None:
            assessment = session.scalars(
                select(Assessment)
                .where(Assessment.conversation_id == conversation_id)
                .order_by(Assessment.created_at.desc(), Assessment.id.desc())
                .limit(1)
            ).first()
    except DBAPIError as exc:
        logger.error("Error hydrating context for user %s", user_id, exc_info=True)
        raise StoreUnavailableError(str(exc)) from exc

    ctx.active_episodes = episodes
    ctx.negative_findings = findings

    seen_symptoms: set[int] = set()
    for episode in episodes:
        if episode.symptom is not None and episode.symptom_id not in seen_symptoms:
            seen_symptoms.add(episode.symptom_id)
            ctx.active_symptoms.append(episode.symptom)

        if episode.symptom is None:
            continue
        name = episode.symptom.name
        current = ctx.episodes_by_symptom.get(name)
        if current is None or current.started_at < episode.started_at:
            ctx.episodes_by_symptom[name] = episode

    if assessment is not None:
        ctx.current_assessment = assessment
        ctx.phase = ConversationPhase.ASSESSING

    logger.debug(
        "Hydrated context for user %s: %d episodes, %d symptoms, %d negative findings",
        user_id,
        len(ctx.active_episodes),
        len(ctx.active_symptoms),
        len(ctx.negative_findings),
    )
    return ctx
