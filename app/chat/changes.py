# app/chat/changes.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Literal, Optional, Sequence

from sqlalchemy import select, or_
from sqlalchemy.orm import Session, selectinload

from app.models import UNKNOWN_SYMPTOM_NAME, Episode, Appointment, Assessment, utcnow

logger = logging.getLogger(__name__)

EntityKind = Literal["episode", "assessment", "appointment"]

PLACEHOLDER_NAMES = {"", UNKNOWN_SYMPTOM_NAME}
SYMPTOM_ACTIONS = {"created", "updated", "resolved"}


@dataclass
class EntityChange:
    """
    One reconciled mutation. `id` is a string because appointment ids
    are uuids while episode/assessment ids are integers.
    """

    entity: EntityKind
    id: str
    action: str  # created | updated | resolved
    name: Optional[str] = None
    confidence: Optional[float] = None

    def to_dict(self) -> dict:
        data = {"id": self.id, "action": self.action, "name": self.name}
        if self.confidence is not None:
            data["confidence"] = self.confidence
        return data


@dataclass
class Snapshot:
    """
    State captured before the model runs, for the diff fallback.
    """

    taken_at: datetime
    episodes: Dict[int, str] = field(default_factory=dict)  # active episode id -> symptom name
    appointment_ids: set[str] = field(default_factory=set)
    assessment_ids: set[int] = field(default_factory=set)


@dataclass
class ReconciledChanges:
    symptoms: List[EntityChange] = field(default_factory=list)
    appointments: List[EntityChange] = field(default_factory=list)
    assessments: List[EntityChange] = field(default_factory=list)
    source: Literal["explicit", "diff", "none"] = "none"

    @property
    def is_empty(self) -> bool:
        return not (self.symptoms or self.appointments or self.assessments)


def take_snapshot(session: Session, user_id: str, conversation_id: str | None) -> Snapshot:
    snapshot = Snapshot(taken_at=utcnow())

    episodes = session.scalars(
        select(Episode)
        .options(selectinload(Episode.symptom))
        .where(Episode.user_id == user_id, Episode.status == "active")
    )
    snapshot.episodes = {e.id: e.symptom_name for e in episodes}

    snapshot.appointment_ids = set(
        session.scalars(select(Appointment.id).where(Appointment.user_id == user_id))
    )

    if conversation_id is not None:
        snapshot.assessment_ids = set(
            session.scalars(
                select(Assessment.id).where(
                    Assessment.user_id == user_id,
                    Assessment.conversation_id == conversation_id,
                )
            )
        )
    return snapshot


def diff_episode_changes(
    session: Session,
    user_id: str,
    snapshot: Snapshot,
    cutoff: datetime,
) -> List[EntityChange]:
    """
    Episodes touched since `cutoff`:
      - not in the snapshot and created in the window -> created
      - in the snapshot and resolved in the window -> resolved
      - in the snapshot and otherwise updated in the window -> updated
    """
    changes: List[EntityChange] = []
    recent = session.scalars(
        select(Episode)
        .options(selectinload(Episode.symptom))
        .where(
            Episode.user_id == user_id,
            or_(
                Episode.created_at >= cutoff,
                Episode.updated_at >= cutoff,
                Episode.resolved_at >= cutoff,
            ),
        )
        .order_by(Episode.id)
    )

    for episode in recent:
        known = episode.id in snapshot.episodes
        created_in_window = episode.created_at >= cutoff
        resolved_in_window = (
            episode.status == "resolved"
            and episode.resolved_at is not None
            and episode.resolved_at >= cutoff
        )

        if created_in_window and not known:
            changes.append(
                EntityChange("episode", str(episode.id), "created", episode.symptom_name)
            )
        elif known and resolved_in_window:
            changes.append(
                EntityChange("episode", str(episode.id), "resolved", snapshot.episodes[episode.id])
            )
        elif known and not created_in_window and episode.updated_at >= cutoff:
            changes.append(
                EntityChange("episode", str(episode.id), "updated", episode.symptom_name)
            )
    return changes


def diff_appointment_changes(
    session: Session,
    user_id: str,
    snapshot: Snapshot,
    cutoff: datetime,
) -> List[EntityChange]:
    changes: List[EntityChange] = []
    recent = session.scalars(
        select(Appointment).where(
            Appointment.user_id == user_id,
            or_(Appointment.created_at >= cutoff, Appointment.updated_at >= cutoff),
        )
    )
    for appointment in recent:
        was_created = appointment.created_at >= cutoff
        known = appointment.id in snapshot.appointment_ids
        if was_created and not known:
            changes.append(EntityChange("appointment", appointment.id, "created"))
        elif not was_created and known:
            changes.append(EntityChange("appointment", appointment.id, "updated"))
    return changes


def diff_assessment_changes(
    session: Session,
    user_id: str,
    conversation_id: str,
    snapshot: Snapshot,
    cutoff: datetime,
) -> List[EntityChange]:
    changes: List[EntityChange] = []
    recent = session.scalars(
        select(Assessment)
        .where(
            Assessment.user_id == user_id,
            Assessment.conversation_id == conversation_id,
            Assessment.created_at >= cutoff,
        )
        .order_by(Assessment.id)
    )
    for assessment in recent:
        if assessment.id not in snapshot.assessment_ids:
            changes.append(
                EntityChange(
                    "assessment",
                    str(assessment.id),
                    "created",
                    assessment.hypothesis,
                    assessment.confidence,
                )
            )
    return changes


def diff_changes(
    session: Session,
    user_id: str,
    conversation_id: str,
    snapshot: Snapshot,
    window_seconds: int,
    now: datetime | None = None,
) -> ReconciledChanges:
    """
    Snapshot-diff fallback. Anything the model changed more than
    `window_seconds` before `now` is invisible here.
    """
    now = now or utcnow()
    cutoff = now - timedelta(seconds=window_seconds)
    return ReconciledChanges(
        symptoms=diff_episode_changes(session, user_id, snapshot, cutoff),
        appointments=diff_appointment_changes(session, user_id, snapshot, cutoff),
        assessments=diff_assessment_changes(session, user_id, conversation_id, snapshot, cutoff),
        source="diff",
    )


def split_explicit(events: Sequence[EntityChange]) -> ReconciledChanges:
    """
    Canonical change lists from events the tool operations reported.
    Placeholder-named symptom changes and assessment changes without a
    numeric id or confidence are dropped.
    """
    result = ReconciledChanges(source="explicit")
    for change in events:
        if change.entity == "episode":
            if change.action.lower() in SYMPTOM_ACTIONS and (change.name or "") not in PLACEHOLDER_NAMES:
                result.symptoms.append(change)
        elif change.entity == "assessment":
            if (
                change.action.lower() == "created"
                and change.id.isdigit()
                and change.confidence is not None
            ):
                result.assessments.append(change)
        # appointments are never reported explicitly
    return result


def reconcile(
    session: Session,
    user_id: str,
    conversation_id: str,
    explicit: Sequence[EntityChange],
    snapshot: Snapshot | None,
    window_seconds: int,
    diff_enabled: bool = True,
    now: datetime | None = None,
) -> ReconciledChanges:
    """
    Explicit events win whenever the tool loop reported any.
    Otherwise fall back to diffing against the pre-turn snapshot.
    """
    if explicit:
        result = split_explicit(explicit)
        logger.info(
            "Reconciled %d explicit events (%d symptom, %d assessment)",
            len(explicit),
            len(result.symptoms),
            len(result.assessments),
        )
        return result

    if not diff_enabled or snapshot is None:
        return ReconciledChanges(source="none")

    result = diff_changes(session, user_id, conversation_id, snapshot, window_seconds, now)
    logger.info(
        "No explicit events; diff fallback found %d symptom, %d appointment, %d assessment changes",
        len(result.symptoms),
        len(result.appointments),
        len(result.assessments),
    )
    return result
