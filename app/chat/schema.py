# app/chat/schema.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    # The model speaks camelCase JSON; we accept snake_case too
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class SymptomChange(_CamelModel):
    symptom: str = Field(..., description="Symptom name, e.g. 'headache'")
    action: str = Field(..., description="'added', 'removed' or 'updated'")


class AppointmentData(_CamelModel):
    needed: bool = False
    urgency: str = Field("None", description="Emergency, High, Medium, Low or None")
    symptoms: List[str] = Field(default_factory=list)
    duration: Optional[int] = Field(None, description="Minutes")
    ready_to_book: bool = False
    follow_up_needed: bool = False
    next_questions: List[str] = Field(default_factory=list)
    preferred_time: Optional[datetime] = None
    emergency_action: Optional[str] = None


class HealthAssistantResponse(_CamelModel):
    """
    Structured reply the model is asked to produce, either through the
    SubmitFinalResponse tool or as a JSON object in its final text.
    """

    message: str
    appointment: Optional[AppointmentData] = None
    symptom_changes: Optional[List[SymptomChange]] = None
