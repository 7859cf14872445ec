# app/services/__init__.py
from .orchestrator import (
    ConversationLocks,
    HealthChatOrchestrator,
    TurnResult,
    make_title,
    route_response,
)

__all__ = [
    "ConversationLocks",
    "HealthChatOrchestrator",
    "TurnResult",
    "make_title",
    "route_response",
]
