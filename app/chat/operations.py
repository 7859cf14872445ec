# app/chat/operations.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, selectinload

from app.chat.changes import EntityChange
from app.chat.context import ConversationContext
from app.chat.schema import AppointmentData, HealthAssistantResponse, SymptomChange
from app.chat.stages import ConversationPhase, EpisodeStage, EpisodeStatus, count_filled_fields, next_stage
from app.errors import NotFoundError, OperationError, StoreUnavailableError
from app.models import (
    Assessment,
    AssessmentEpisodeLink,
    Episode,
    NegativeFinding,
    Symptom,
    utcnow,
)

logger = logging.getLogger(__name__)

EMPTY_FINAL_MESSAGE = (
    "I've updated your health records. "
    "Is there anything else you'd like to discuss about your symptoms?"
)

RecommendedAction = Literal["self-care", "see-gp", "urgent-care", "emergency"]


# ---------------------------------------------------------------------------
# Requests: one closed union, validated before any handler runs
# ---------------------------------------------------------------------------

class _Request(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        str_strip_whitespace=True,
    )


class CreateEpisodeRequest(_Request):
    """Call immediately when the user reports ANY symptom. Creates the symptom and a new episode, or returns the existing open episode for that symptom. Use update_episode afterwards to add details."""

    operation: Literal["create_episode"] = "create_episode"
    name: str = Field(..., min_length=1, description="Symptom name, e.g. 'headache'")
    description: Optional[str] = Field(None, description="Optional extra description")


class UpdateEpisodeRequest(_Request):
    """Add details to an episode whenever you learn something new about it. Only supplied fields change."""

    operation: Literal["update_episode"] = "update_episode"
    episode_id: int
    severity: Optional[int] = Field(None, ge=1, le=10, description="1-10 scale")
    location: Optional[str] = None
    frequency: Optional[str] = Field(None, description="constant, intermittent or occasional")
    triggers: Optional[List[str]] = None
    relievers: Optional[List[str]] = None
    pattern: Optional[str] = Field(None, description="e.g. 'worse in morning'")


class LinkEpisodeRequest(_Request):
    """Link an episode to a related episode, marking it as linked."""

    operation: Literal["link_episode"] = "link_episode"
    episode_id: int
    related_episode_id: int


class ResolveEpisodeRequest(_Request):
    """Mark an episode as resolved when the user says the symptom is gone."""

    operation: Literal["resolve_episode"] = "resolve_episode"
    episode_id: int


class RecordNegativeFindingRequest(_Request):
    """Call when the user explicitly denies a symptom ('no fever')."""

    operation: Literal["record_negative_finding"] = "record_negative_finding"
    symptom_name: str = Field(..., min_length=1)
    episode_id: Optional[int] = Field(None, description="Related episode, if any")


class CreateAssessmentRequest(_Request):
    """Call when the user asks for an assessment or you have enough information. Episode weights are assigned automatically from active episodes. Call complete_assessment right after."""

    operation: Literal["create_assessment"] = "create_assessment"
    hypothesis: str = Field(..., min_length=1, description="Primary hypothesis, e.g. 'migraine'")
    confidence: float = Field(..., description="0.0-1.0, use 0.7 if unsure")
    differentials: Optional[List[str]] = None
    reasoning: str = ""
    recommended_action: RecommendedAction = "see-gp"
    negative_finding_ids: Optional[List[int]] = None


class EpisodeWeight(_Request):
    episode_id: int
    weight: float = Field(..., description="0.0-1.0 diagnostic contribution")
    reasoning: Optional[str] = None


class UpdateAssessmentRequest(_Request):
    """Refine an existing assessment. Only supplied fields change."""

    operation: Literal["update_assessment"] = "update_assessment"
    assessment_id: int
    hypothesis: Optional[str] = None
    confidence: Optional[float] = None
    differentials: Optional[List[str]] = None
    reasoning: Optional[str] = None
    recommended_action: Optional[RecommendedAction] = None
    episode_weights: Optional[List[EpisodeWeight]] = None
    negative_finding_ids: Optional[List[int]] = None


class CompleteAssessmentRequest(_Request):
    """Finalize an assessment. Call immediately after create_assessment."""

    operation: Literal["complete_assessment"] = "complete_assessment"
    assessment_id: Optional[int] = Field(None, description="Defaults to the current assessment")


class GetActiveEpisodesRequest(_Request):
    """List the user's active episodes. Check this before creating episodes to avoid duplicates."""

    operation: Literal["get_active_episodes"] = "get_active_episodes"


class GetSymptomHistoryRequest(_Request):
    """Past episodes for one symptom, newest first."""

    operation: Literal["get_symptom_history"] = "get_symptom_history"
    symptom_name: str = Field(..., min_length=1)


class SubmitFinalResponseRequest(_Request):
    """MANDATORY final step: call exactly once, after every other call, with a non-empty message for the user."""

    operation: Literal["submit_final_response"] = "submit_final_response"
    message: str = Field("", description="User-facing reply, must not be empty")
    appointment_needed: Optional[bool] = None
    appointment_urgency: Optional[str] = Field(None, description="Emergency, High, Medium, Low or None")
    appointment_symptoms: Optional[List[str]] = None
    appointment_duration: Optional[int] = Field(None, description="Minutes")
    appointment_ready_to_book: Optional[bool] = None
    appointment_follow_up_needed: Optional[bool] = None
    appointment_next_questions: Optional[List[str]] = None
    appointment_preferred_time: Optional[str] = Field(None, description="ISO 8601")
    appointment_emergency_action: Optional[str] = None
    symptom_changes: Optional[List[SymptomChange]] = None

    @field_validator("message", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


ToolRequest = Annotated[
    Union[
        CreateEpisodeRequest,
        UpdateEpisodeRequest,
        LinkEpisodeRequest,
        ResolveEpisodeRequest,
        RecordNegativeFindingRequest,
        CreateAssessmentRequest,
        UpdateAssessmentRequest,
        CompleteAssessmentRequest,
        GetActiveEpisodesRequest,
        GetSymptomHistoryRequest,
        SubmitFinalResponseRequest,
    ],
    Field(discriminator="operation"),
]

_request_adapter = TypeAdapter(ToolRequest)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class OperationResult:
    """
    Uniform outcome of one tool call: either a (possibly absent) change
    event plus data, or an OperationError.
    """

    ok: bool
    change: Optional[EntityChange] = None
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[OperationError] = None
    next_action: str = "Continue"

    @classmethod
    def success(
        cls,
        change: Optional[EntityChange] = None,
        next_action: str = "Continue",
        **data: Any,
    ) -> "OperationResult":
        return cls(ok=True, change=change, data=data, next_action=next_action)

    @classmethod
    def failure(cls, kind: str, message: str) -> "OperationResult":
        return cls(
            ok=False,
            error=OperationError(kind=kind, message=message),
            next_action="SubmitFinalResponse",
        )

    def to_tool_content(self) -> str:
        """
        What the model reads back as the tool message.
        """
        if not self.ok:
            payload = {
                "status": "error",
                "error": str(self.error),
                "nextRecommendedAction": self.next_action,
            }
        else:
            payload = {"status": "ok", "nextRecommendedAction": self.next_action, **self.data}
        return json.dumps(payload, default=str)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def normalize_differentials(values: Optional[List[str]]) -> Optional[List[str]]:
    cleaned = [v.strip() for v in (values or []) if v and v.strip()]
    return cleaned or None


def _owned_episode(session: Session, ctx: ConversationContext, episode_id: int) -> Episode:
    episode = session.get(Episode, episode_id)
    if episode is None or episode.user_id != ctx.user_id:
        raise NotFoundError("Episode", episode_id)
    return episode


def _owned_assessment(session: Session, ctx: ConversationContext, assessment_id: int) -> Assessment:
    assessment = session.get(Assessment, assessment_id)
    if assessment is None or assessment.user_id != ctx.user_id:
        raise NotFoundError("Assessment", assessment_id)
    return assessment


def _get_or_create_symptom(
    session: Session, user_id: str, name: str, description: Optional[str]
) -> Symptom:
    symptom = session.scalars(
        select(Symptom).where(Symptom.user_id == user_id, Symptom.name == name)
    ).first()
    now = utcnow()
    if symptom is not None:
        if description is not None and symptom.description != description:
            symptom.description = description
            symptom.updated_at = now
        return symptom

    symptom = Symptom(
        user_id=user_id,
        name=name,
        description=description,
        created_at=now,
        updated_at=now,
    )
    session.add(symptom)
    return symptom


def _episode_summary(episode: Episode) -> Dict[str, Any]:
    return {
        "id": episode.id,
        "symptom": episode.symptom_name,
        "stage": episode.stage,
        "status": episode.status,
        "startedAt": episode.started_at.isoformat() if episode.started_at else None,
        "severity": episode.severity,
        "location": episode.location,
        "frequency": episode.frequency,
        "triggers": episode.triggers or [],
        "relievers": episode.relievers or [],
        "pattern": episode.pattern,
    }


# ---------------------------------------------------------------------------
# Episode operations
# ---------------------------------------------------------------------------

def create_episode(
    session: Session, ctx: ConversationContext, req: CreateEpisodeRequest
) -> OperationResult:
    name = req.name
    existing = ctx.episodes_by_symptom.get(name)
    if existing is not None and existing.status == EpisodeStatus.ACTIVE.value:
        logger.info("Found recent episode %s for symptom %s", existing.id, name)
        return OperationResult.success(
            episodeId=existing.id,
            existing=True,
            message=f"Found existing episode {existing.id} for {name}. Use update_episode to add details.",
        )

    symptom = _get_or_create_symptom(session, ctx.user_id, name, req.description)
    now = utcnow()
    episode = Episode(
        symptom=symptom,
        user_id=ctx.user_id,
        stage=EpisodeStage.MENTIONED.value,
        status=EpisodeStatus.ACTIVE.value,
        started_at=now,
        created_at=now,
        updated_at=now,
    )
    session.add(episode)
    session.commit()

    ctx.active_episodes.insert(0, episode)
    if symptom not in ctx.active_symptoms:
        ctx.active_symptoms.append(symptom)
    ctx.episodes_by_symptom[name] = episode

    ctx.status.symptom_added(episode.id, name, None)
    logger.info("Created episode %s for symptom %s", episode.id, name)

    return OperationResult.success(
        change=EntityChange("episode", str(episode.id), "created", name),
        episodeId=episode.id,
        stage=episode.stage,
    )


def update_episode(
    session: Session, ctx: ConversationContext, req: UpdateEpisodeRequest
) -> OperationResult:
    episode = _owned_episode(session, ctx, req.episode_id)
    now = utcnow()

    if req.severity is not None:
        episode.severity = req.severity
        # Reassign so the JSON column is flagged dirty
        episode.timeline = [
            *(episode.timeline or []),
            {"date": now.isoformat(), "severity": req.severity, "notes": None},
        ]
    if req.location is not None:
        episode.location = req.location
    if req.frequency is not None:
        episode.frequency = req.frequency
    if req.triggers is not None:
        episode.triggers = list(req.triggers)
    if req.relievers is not None:
        episode.relievers = list(req.relievers)
    if req.pattern is not None:
        episode.pattern = req.pattern

    episode.stage = next_stage(episode.stage, count_filled_fields(episode)).value
    episode.updated_at = now
    session.commit()

    if ctx.find_episode(episode.id) is None and episode.status == EpisodeStatus.ACTIVE.value:
        ctx.active_episodes.append(episode)

    name = episode.symptom_name
    ctx.status.general(f"Updated {name} details")
    logger.info("Updated episode %s, stage: %s", episode.id, episode.stage)

    return OperationResult.success(
        change=EntityChange("episode", str(episode.id), "updated", name),
        episodeId=episode.id,
        stage=episode.stage,
    )


def link_episode(
    session: Session, ctx: ConversationContext, req: LinkEpisodeRequest
) -> OperationResult:
    if req.episode_id == req.related_episode_id:
        return OperationResult.failure("validation", "An episode cannot be linked to itself.")

    episode = _owned_episode(session, ctx, req.episode_id)
    _owned_episode(session, ctx, req.related_episode_id)

    episode.stage = EpisodeStage.LINKED.value
    episode.updated_at = utcnow()
    session.commit()

    ctx.status.general(f"Linked {episode.symptom_name} episode")
    logger.info("Linked episode %s to %s", req.episode_id, req.related_episode_id)
    return OperationResult.success(
        episodeId=episode.id,
        relatedEpisodeId=req.related_episode_id,
        stage=episode.stage,
    )


def resolve_episode(
    session: Session, ctx: ConversationContext, req: ResolveEpisodeRequest
) -> OperationResult:
    episode = _owned_episode(session, ctx, req.episode_id)
    name = episode.symptom_name

    if episode.status == EpisodeStatus.RESOLVED.value:
        return OperationResult.success(
            episodeId=episode.id,
            message=f"Episode {episode.id} is already resolved.",
        )

    now = utcnow()
    episode.status = EpisodeStatus.RESOLVED.value
    episode.resolved_at = now
    episode.updated_at = now
    session.commit()

    # A resolved episode no longer suppresses a new one for the same symptom
    if ctx.episodes_by_symptom.get(name) is episode:
        del ctx.episodes_by_symptom[name]

    ctx.status.general(f"Resolved {name}")
    logger.info("Resolved episode %s", episode.id)
    return OperationResult.success(
        change=EntityChange("episode", str(episode.id), "resolved", name),
        episodeId=episode.id,
    )


def record_negative_finding(
    session: Session, ctx: ConversationContext, req: RecordNegativeFindingRequest
) -> OperationResult:
    if req.episode_id is not None:
        _owned_episode(session, ctx, req.episode_id)

    finding = NegativeFinding(
        user_id=ctx.user_id,
        symptom_name=req.symptom_name,
        episode_id=req.episode_id,
        reported_at=utcnow(),
    )
    session.add(finding)
    session.commit()

    ctx.negative_findings.append(finding)
    ctx.status.general(f"Recorded that {req.symptom_name} is not present")
    logger.info("Recorded negative finding for %s", req.symptom_name)
    return OperationResult.success(
        negativeFindingId=finding.id,
        symptomName=finding.symptom_name,
        episodeId=finding.episode_id,
    )


# ---------------------------------------------------------------------------
# Assessment operations
# ---------------------------------------------------------------------------

def create_assessment(
    session: Session, ctx: ConversationContext, req: CreateAssessmentRequest
) -> OperationResult:
    if ctx.conversation_id is None:
        return OperationResult.failure(
            "validation",
            "Cannot create assessment because no conversation is active.",
        )

    ctx.status.generating_assessment()

    negative_finding_ids = req.negative_finding_ids or [nf.id for nf in ctx.negative_findings]
    active = [e for e in ctx.active_episodes if e.status == EpisodeStatus.ACTIVE.value]

    now = utcnow()
    assessment = Assessment(
        user_id=ctx.user_id,
        conversation_id=ctx.conversation_id,
        hypothesis=req.hypothesis,
        confidence=clamp_unit(req.confidence),
        differentials=normalize_differentials(req.differentials),
        reasoning=req.reasoning or "",
        recommended_action=req.recommended_action,
        negative_finding_ids=negative_finding_ids,
        created_at=now,
        updated_at=now,
    )
    if active:
        weight = clamp_unit(1.0 / len(active))
        for episode in active:
            assessment.links.append(
                AssessmentEpisodeLink(episode_id=episode.id, weight=weight, reasoning=None)
            )

    session.add(assessment)
    session.commit()

    ctx.current_assessment = assessment
    ctx.phase = ConversationPhase.ASSESSING

    ctx.status.assessment_created(assessment.id, assessment.hypothesis, assessment.confidence)
    ctx.status.analyzing_assessment()

    logger.info(
        "Created assessment %s: %s (confidence %.2f), recommended action %s",
        assessment.id,
        assessment.hypothesis,
        assessment.confidence,
        assessment.recommended_action,
    )
    return OperationResult.success(
        change=EntityChange(
            "assessment",
            str(assessment.id),
            "created",
            assessment.hypothesis,
            assessment.confidence,
        ),
        next_action="CompleteAssessment",
        assessmentId=assessment.id,
        confidence=assessment.confidence,
        linkedEpisodes=len(assessment.links),
    )


def _apply_episode_weights(
    session: Session,
    ctx: ConversationContext,
    assessment: Assessment,
    weights: List[EpisodeWeight],
) -> None:
    existing = {link.episode_id: link for link in assessment.links}
    wanted: set[int] = set()

    for item in weights:
        _owned_episode(session, ctx, item.episode_id)
        wanted.add(item.episode_id)
        link = existing.get(item.episode_id)
        if link is None:
            assessment.links.append(
                AssessmentEpisodeLink(
                    episode_id=item.episode_id,
                    weight=clamp_unit(item.weight),
                    reasoning=item.reasoning,
                )
            )
        else:
            link.weight = clamp_unit(item.weight)
            link.reasoning = item.reasoning

    for episode_id, link in existing.items():
        if episode_id not in wanted:
            assessment.links.remove(link)


def update_assessment(
    session: Session, ctx: ConversationContext, req: UpdateAssessmentRequest
) -> OperationResult:
    assessment = _owned_assessment(session, ctx, req.assessment_id)

    if req.hypothesis:
        assessment.hypothesis = req.hypothesis
    if req.confidence is not None:
        assessment.confidence = clamp_unit(req.confidence)
    if req.differentials is not None:
        assessment.differentials = normalize_differentials(req.differentials)
    if req.reasoning is not None:
        assessment.reasoning = req.reasoning
    if req.recommended_action is not None:
        assessment.recommended_action = req.recommended_action
    if req.negative_finding_ids is not None:
        assessment.negative_finding_ids = list(req.negative_finding_ids)
    if req.episode_weights:
        _apply_episode_weights(session, ctx, assessment, req.episode_weights)

    assessment.updated_at = utcnow()
    session.commit()

    if ctx.current_assessment is not None and ctx.current_assessment.id == assessment.id:
        ctx.current_assessment = assessment

    ctx.status.assessment_created(assessment.id, assessment.hypothesis, assessment.confidence)
    ctx.status.analyzing_assessment()
    logger.info("Updated assessment %s", assessment.id)

    return OperationResult.success(
        change=EntityChange(
            "assessment",
            str(assessment.id),
            "updated",
            assessment.hypothesis,
            assessment.confidence,
        ),
        assessmentId=assessment.id,
        confidence=assessment.confidence,
    )


def complete_assessment(
    session: Session, ctx: ConversationContext, req: CompleteAssessmentRequest
) -> OperationResult:
    if ctx.conversation_id is None:
        return OperationResult.failure(
            "validation", "Cannot complete assessment because no conversation is active."
        )

    if req.assessment_id is not None:
        target = _owned_assessment(session, ctx, req.assessment_id).id
    elif ctx.current_assessment is not None:
        target = ctx.current_assessment.id
    else:
        return OperationResult.failure(
            "validation", "No assessment found to complete. Please create an assessment first."
        )

    ctx.phase = ConversationPhase.RECOMMENDING
    logger.info("Completed assessment %s for conversation %s", target, ctx.conversation_id)
    return OperationResult.success(completedAssessmentId=target)


# ---------------------------------------------------------------------------
# Queries and the final answer
# ---------------------------------------------------------------------------

def get_active_episodes(
    session: Session, ctx: ConversationContext, req: GetActiveEpisodesRequest
) -> OperationResult:
    episodes = [
        _episode_summary(e)
        for e in ctx.active_episodes
        if e.status == EpisodeStatus.ACTIVE.value
    ]
    return OperationResult.success(activeEpisodes=episodes)


def get_symptom_history(
    session: Session, ctx: ConversationContext, req: GetSymptomHistoryRequest
) -> OperationResult:
    episodes = session.scalars(
        select(Episode)
        .join(Episode.symptom)
        .options(selectinload(Episode.symptom))
        .where(Episode.user_id == ctx.user_id, Symptom.name == req.symptom_name)
        .order_by(Episode.started_at.desc())
    )
    return OperationResult.success(
        symptomName=req.symptom_name,
        history=[_episode_summary(e) for e in episodes],
    )


def _parse_preferred_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def submit_final_response(
    session: Session, ctx: ConversationContext, req: SubmitFinalResponseRequest
) -> OperationResult:
    message = req.message
    if not message.strip():
        logger.warning("submit_final_response called with an empty message, using fallback")
        message = EMPTY_FINAL_MESSAGE

    appointment = None
    if any(
        [
            req.appointment_needed is not None,
            req.appointment_urgency,
            req.appointment_symptoms,
            req.appointment_duration is not None,
            req.appointment_ready_to_book is not None,
            req.appointment_follow_up_needed is not None,
            req.appointment_next_questions,
            req.appointment_preferred_time,
            req.appointment_emergency_action,
        ]
    ):
        appointment = AppointmentData(
            needed=bool(req.appointment_needed),
            urgency=req.appointment_urgency or "None",
            symptoms=req.appointment_symptoms or [],
            duration=req.appointment_duration,
            ready_to_book=bool(req.appointment_ready_to_book),
            follow_up_needed=bool(req.appointment_follow_up_needed),
            next_questions=req.appointment_next_questions or [],
            preferred_time=_parse_preferred_time(req.appointment_preferred_time),
            emergency_action=req.appointment_emergency_action,
        )

    ctx.final_response = HealthAssistantResponse(
        message=message,
        appointment=appointment,
        symptom_changes=req.symptom_changes,
    )
    return OperationResult.success(next_action="Complete")


# ---------------------------------------------------------------------------
# Registry and dispatch
# ---------------------------------------------------------------------------

ToolHandler = Callable[[Session, ConversationContext, Any], OperationResult]


@dataclass
class ToolDefinition:
    name: str
    handler: ToolHandler
    request_model: type[_Request]

    def schema(self) -> Dict[str, Any]:
        """
        OpenAI function-tool declaration for this operation.
        """
        params = self.request_model.model_json_schema(by_alias=True)
        params.pop("title", None)
        props = params.get("properties", {})
        props.pop("operation", None)
        for prop in props.values():
            prop.pop("title", None)
        params["required"] = [r for r in params.get("required", []) if r != "operation"]
        if not params["required"]:
            params.pop("required")
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": (self.request_model.__doc__ or "").strip(),
                "parameters": params,
            },
        }


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: Dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        self._tools[tool.name] = tool

    def resolve(self, name: str) -> ToolDefinition:
        tool = self._tools.get(name)
        if not tool:
            raise KeyError(f"Tool not found: {name}")
        return tool

    def list_names(self) -> List[str]:
        return sorted(self._tools.keys())

    def schemas(self) -> List[Dict[str, Any]]:
        return [self._tools[name].schema() for name in self.list_names()]


def build_registry() -> ToolRegistry:
    registry = ToolRegistry()
    for name, handler, model in [
        ("create_episode", create_episode, CreateEpisodeRequest),
        ("update_episode", update_episode, UpdateEpisodeRequest),
        ("link_episode", link_episode, LinkEpisodeRequest),
        ("resolve_episode", resolve_episode, ResolveEpisodeRequest),
        ("record_negative_finding", record_negative_finding, RecordNegativeFindingRequest),
        ("create_assessment", create_assessment, CreateAssessmentRequest),
        ("update_assessment", update_assessment, UpdateAssessmentRequest),
        ("complete_assessment", complete_assessment, CompleteAssessmentRequest),
        ("get_active_episodes", get_active_episodes, GetActiveEpisodesRequest),
        ("get_symptom_history", get_symptom_history, GetSymptomHistoryRequest),
        ("submit_final_response", submit_final_response, SubmitFinalResponseRequest),
    ]:
        registry.register(ToolDefinition(name=name, handler=handler, request_model=model))
    return registry


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "operation")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def parse_request(name: str, arguments: Union[str, Dict[str, Any], None]) -> ToolRequest:
    """
    Validate raw tool-call arguments into one member of the request union.
    Raises ValueError (json) or ValidationError.
    """
    if isinstance(arguments, str):
        payload = json.loads(arguments) if arguments.strip() else {}
    else:
        payload = dict(arguments or {})
    if not isinstance(payload, dict):
        raise ValueError("Tool arguments must be a JSON object")
    payload["operation"] = name
    return _request_adapter.validate_python(payload)


def dispatch(
    session: Session,
    ctx: ConversationContext,
    registry: ToolRegistry,
    name: str,
    arguments: Union[str, Dict[str, Any], None],
) -> OperationResult:
    """
    Run one tool call end to end. Never raises for bad input or a failed
    operation; only an unreachable store escapes.
    """
    try:
        tool = registry.resolve(name)
    except KeyError:
        return OperationResult.failure("validation", f"Unknown operation '{name}'.")

    try:
        request = parse_request(name, arguments)
    except ValidationError as exc:
        logger.info("Rejected %s call: %s", name, exc.error_count())
        return OperationResult.failure("validation", _validation_message(exc))
    except ValueError as exc:
        return OperationResult.failure("validation", f"Malformed arguments: {exc}")

    try:
        result = tool.handler(session, ctx, request)
    except NotFoundError as exc:
        session.rollback()
        return OperationResult.failure("not_found", f"{exc}.")
    except OperationalError as exc:
        session.rollback()
        logger.error("Store unavailable during %s", name, exc_info=True)
        raise StoreUnavailableError(str(exc)) from exc
    except Exception as exc:
        session.rollback()
        logger.exception("Error running %s", name)
        return OperationResult.failure("failed", f"Error running {name}: {exc}")

    if result.change is not None:
        ctx.record_change(result.change)
    return result
