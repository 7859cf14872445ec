# app/api/schemas.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.chat.schema import AppointmentData


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    conversation_id: Optional[str] = None


class EntityChangeSchema(BaseModel):
    id: str
    action: str
    name: Optional[str] = None
    confidence: Optional[float] = None


class ChatResponse(BaseModel):
    message: str
    conversation_id: str
    symptom_changes: List[EntityChangeSchema]
    appointment_changes: List[EntityChangeSchema]
    assessment_changes: List[EntityChangeSchema]
    # camelCase status payloads, same shape as the push channel
    status_information: Optional[List[Dict[str, Any]]] = None
    appointment: Optional[AppointmentData] = None


class ConversationSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    created_at: datetime
    updated_at: datetime


class MessageSchema(BaseModel):
    id: str
    role: str
    content: str
    created_at: datetime
    status_information: Optional[List[Dict[str, Any]]] = None


class ConversationDetail(ConversationSummary):
    messages: List[MessageSchema]


class UpdateTitleRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)


class EpisodeSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    symptom_name: str
    stage: str
    status: str
    started_at: datetime
    resolved_at: Optional[datetime] = None
    severity: Optional[int] = None
    location: Optional[str] = None
    frequency: Optional[str] = None
    triggers: Optional[List[str]] = None
    relievers: Optional[List[str]] = None
    pattern: Optional[str] = None
    timeline: Optional[List[Dict[str, Any]]] = None


class EpisodeLinkSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    episode_id: int
    weight: float
    reasoning: Optional[str] = None


class AssessmentSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_id: str
    hypothesis: str
    confidence: float
    differentials: Optional[List[str]] = None
    reasoning: str
    recommended_action: str
    negative_finding_ids: Optional[List[int]] = None
    created_at: datetime
    updated_at: datetime
    links: List[EpisodeLinkSchema] = Field(default_factory=list)


class SymptomSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    created_at: datetime
