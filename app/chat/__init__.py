# app/chat/__init__.py
from .agent import AgentRun, HealthChatAgent
from .changes import EntityChange, ReconciledChanges, reconcile, take_snapshot
from .context import ConversationContext, hydrate_context
from .operations import OperationResult, ToolRegistry, build_registry, dispatch
from .parser import parse_response
from .schema import AppointmentData, HealthAssistantResponse, SymptomChange
from .stages import ConversationPhase, EpisodeStage, EpisodeStatus
from .status import StatusChannel, merge_status_timeline, serialize_timeline

__all__ = [
    "AgentRun",
    "AppointmentData",
    "ConversationContext",
    "ConversationPhase",
    "EntityChange",
    "EpisodeStage",
    "EpisodeStatus",
    "HealthAssistantResponse",
    "HealthChatAgent",
    "OperationResult",
    "ReconciledChanges",
    "StatusChannel",
    "SymptomChange",
    "ToolRegistry",
    "build_registry",
    "dispatch",
    "hydrate_context",
    "merge_status_timeline",
    "parse_response",
    "reconcile",
    "serialize_timeline",
    "take_snapshot",
]
