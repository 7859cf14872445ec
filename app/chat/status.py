# app/chat/status.py
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Annotated, Callable, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from app.chat.changes import EntityChange
from app.models import UNKNOWN_SYMPTOM_NAME, utcnow

logger = logging.getLogger(__name__)


class _StatusBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timestamp: datetime = Field(default_factory=utcnow)


class SymptomAddedStatus(_StatusBase):
    type: Literal["symptom-added"] = "symptom-added"
    symptom_name: str = Field(..., alias="symptomName")
    episode_id: int = Field(..., alias="episodeId")
    location: Optional[str] = None


class GeneralStatus(_StatusBase):
    type: Literal["general"] = "general"
    message: str


class AssessmentGeneratingStatus(_StatusBase):
    type: Literal["assessment-generating"] = "assessment-generating"
    message: str = "Generating assessment..."


class AssessmentAnalyzingStatus(_StatusBase):
    type: Literal["assessment-analyzing"] = "assessment-analyzing"
    message: str = "Analyzing assessment..."


class AssessmentCreatedStatus(_StatusBase):
    type: Literal["assessment-created"] = "assessment-created"
    assessment_id: int = Field(..., alias="assessmentId")
    hypothesis: str
    confidence: float


StatusEvent = Annotated[
    Union[
        SymptomAddedStatus,
        GeneralStatus,
        AssessmentGeneratingStatus,
        AssessmentAnalyzingStatus,
        AssessmentCreatedStatus,
    ],
    Field(discriminator="type"),
]

_timeline_adapter = TypeAdapter(List[StatusEvent])

# generating -> created -> analyzing -> everything else
TYPE_PRIORITY = {
    "assessment-generating": 1,
    "assessment-created": 2,
    "assessment-analyzing": 3,
}
DEFAULT_PRIORITY = 5


def event_to_dict(event: StatusEvent) -> dict:
    return event.model_dump(mode="json", by_alias=True)


class StatusChannel:
    """
    Per-turn status channel.

    Tool operations publish into it while the model loop runs; every
    subscriber (e.g. an SSE stream) gets each event as it happens, and the
    merger drains the recorded events once the loop returns. Subscriber
    failures never reach the publisher.
    """

    def __init__(self) -> None:
        self._events: List[StatusEvent] = []
        self._subscribers: List[Callable[[StatusEvent], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[StatusEvent], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def publish(self, event: StatusEvent) -> None:
        with self._lock:
            self._events.append(event)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Status subscriber failed for %s event", event.type)

    def drain(self) -> List[StatusEvent]:
        with self._lock:
            events = list(self._events)
            self._events.clear()
        return events

    # --- convenience publishers used by tool operations ---

    def symptom_added(self, episode_id: int, symptom_name: str, location: str | None = None) -> None:
        self.publish(
            SymptomAddedStatus(
                symptom_name=symptom_name, episode_id=episode_id, location=location
            )
        )

    def general(self, message: str) -> None:
        self.publish(GeneralStatus(message=message))

    def generating_assessment(self) -> None:
        self.publish(AssessmentGeneratingStatus())

    def analyzing_assessment(self) -> None:
        self.publish(AssessmentAnalyzingStatus())

    def assessment_created(self, assessment_id: int, hypothesis: str, confidence: float) -> None:
        self.publish(
            AssessmentCreatedStatus(
                assessment_id=assessment_id, hypothesis=hypothesis, confidence=confidence
            )
        )


def _as_int(value: str) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _symptom_events(changes: Sequence[EntityChange], now: datetime) -> List[StatusEvent]:
    events: List[StatusEvent] = []
    for change in changes:
        action = change.action.lower()
        if action == "created":
            episode_id = _as_int(change.id)
            if episode_id is not None:
                events.append(
                    SymptomAddedStatus(
                        symptom_name=change.name or UNKNOWN_SYMPTOM_NAME,
                        episode_id=episode_id,
                        location=None,
                        timestamp=now,
                    )
                )
        elif action == "updated":
            message = f"Updated {change.name} details" if change.name else "Updated symptom details"
            events.append(GeneralStatus(message=message, timestamp=now))
        elif action == "resolved":
            message = f"Resolved {change.name}" if change.name else "Resolved symptom"
            events.append(GeneralStatus(message=message, timestamp=now))
    return events


def merge_status_timeline(
    symptom_changes: Sequence[EntityChange],
    assessment_changes: Sequence[EntityChange],
    realtime: Sequence[StatusEvent],
    now: datetime | None = None,
) -> Optional[List[StatusEvent]]:
    """
    Build the client-visible timeline for one turn.

    Reconciled entity changes lead, in reconciled order. Real-time events
    follow, ordered generating -> created -> analyzing -> rest, each group
    by timestamp. Every event, reconciled or real-time, goes through the
    same duplicate check:
      - assessment-created by assessment id; a real-time one replaces a
        reconciled one, and a later real-time one replaces an earlier one
        in place
      - generating / analyzing are singletons
      - general by message text
      - symptom-added by episode id

    Returns None when there is nothing to show.
    """
    if not symptom_changes and not assessment_changes and not realtime:
        return None

    now = now or utcnow()
    timeline: List[StatusEvent] = []

    for event in _symptom_events(symptom_changes, now):
        if _find_duplicate(timeline, event) is None:
            timeline.append(event)

    realtime_assessment_ids = {
        e.assessment_id for e in realtime if isinstance(e, AssessmentCreatedStatus)
    }
    for change in assessment_changes:
        if change.action.lower() != "created":
            continue
        assessment_id = _as_int(change.id)
        if assessment_id is None or assessment_id in realtime_assessment_ids:
            continue
        event = AssessmentCreatedStatus(
            assessment_id=assessment_id,
            hypothesis=change.name or "Assessment",
            confidence=change.confidence if change.confidence is not None else 0.0,
            timestamp=now,
        )
        if _find_duplicate(timeline, event) is None:
            timeline.append(event)

    ordered = sorted(
        realtime,
        key=lambda e: (TYPE_PRIORITY.get(e.type, DEFAULT_PRIORITY), e.timestamp),
    )
    for event in ordered:
        index = _find_duplicate(timeline, event)
        if index is None:
            timeline.append(event)
        elif isinstance(event, AssessmentCreatedStatus):
            # update_assessment republishes with the revised hypothesis and confidence
            timeline[index] = event

    return timeline or None


def _find_duplicate(timeline: Sequence[StatusEvent], event: StatusEvent) -> int | None:
    for index, existing in enumerate(timeline):
        if existing.type != event.type:
            continue
        if isinstance(event, AssessmentCreatedStatus):
            if existing.assessment_id == event.assessment_id:
                return index
        elif isinstance(event, GeneralStatus):
            if existing.message == event.message:
                return index
        elif isinstance(event, SymptomAddedStatus):
            if existing.episode_id == event.episode_id:
                return index
        else:
            # generating / analyzing: one per turn
            return index
    return None


def serialize_timeline(events: Optional[Sequence[StatusEvent]]) -> Optional[str]:
    if not events:
        return None
    return _timeline_adapter.dump_json(list(events), by_alias=True).decode("utf-8")


def deserialize_timeline(raw: Optional[str]) -> List[StatusEvent]:
    """
    Replay a persisted timeline (assistant message history).
    """
    if not raw:
        return []
    return _timeline_adapter.validate_json(raw)
