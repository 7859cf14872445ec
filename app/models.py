# app/models.py
from datetime import datetime, timezone
import uuid

from sqlalchemy import (
    String,
    DateTime,
    ForeignKey,
    Integer,
    Float,
    Text,
    CheckConstraint,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from app.db import Base, VectorType, JSONType
from app.config import get_settings

settings = get_settings()

# Name reported for an episode whose symptom row is missing
UNKNOWN_SYMPTOM_NAME = "Unknown symptom"


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """
    Naive UTC timestamp; every datetime column in the schema is naive UTC.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Symptom(Base):
    """
    Per-user named condition type ("Cough", "Headache").
    Created on first mention, only the description is ever backfilled.
    """
    __tablename__ = "symptoms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    episodes: Mapped[list["Episode"]] = relationship(
        "Episode", back_populates="symptom"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_symptoms_user_name"),
    )


class Episode(Base):
    __tablename__ = "episodes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symptom_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("symptoms.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    stage: Mapped[str] = mapped_column(String, nullable=False, default="mentioned")
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")

    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    severity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    location: Mapped[str | None] = mapped_column(String, nullable=True)
    frequency: Mapped[str | None] = mapped_column(String, nullable=True)
    triggers: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    relievers: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    pattern: Mapped[str | None] = mapped_column(Text, nullable=True)
    # [{"date": iso, "severity": int|None, "notes": str|None}, ...]
    timeline: Mapped[list | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    symptom: Mapped[Symptom] = relationship("Symptom", back_populates="episodes")

    __table_args__ = (
        CheckConstraint(
            "stage IN ('mentioned', 'explored', 'characterized', 'linked')",
            name="ck_episodes_stage_valid",
        ),
        CheckConstraint(
            "status IN ('active', 'resolved')",
            name="ck_episodes_status_valid",
        ),
        CheckConstraint(
            "severity IS NULL OR (severity >= 1 AND severity <= 10)",
            name="ck_episodes_severity_range",
        ),
    )

    @property
    def symptom_name(self) -> str:
        return self.symptom.name if self.symptom is not None else UNKNOWN_SYMPTOM_NAME


class NegativeFinding(Base):
    """
    A symptom the user explicitly denied. Append-only.
    """
    __tablename__ = "negative_findings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    episode_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("episodes.id", ondelete="SET NULL"), nullable=True
    )
    symptom_name: Mapped[str] = mapped_column(String, nullable=False)
    reported_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    messages: Mapped[list["Message"]] = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )
    assessments: Mapped[list["Assessment"]] = relationship(
        "Assessment", back_populates="conversation", cascade="all, delete-orphan"
    )


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, default=generate_uuid
    )
    conversation_id: Mapped[str] = mapped_column(
        String, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    # JSON array of status events, assistant messages only
    status_information: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "role IN ('user', 'assistant')",
            name="ck_messages_role_valid",
        ),
    )

    conversation: Mapped[Conversation] = relationship(
        "Conversation", back_populates="messages"
    )
    embedding: Mapped["MessageEmbedding"] = relationship(
        "MessageEmbedding",
        back_populates="message",
        uselist=False,
        cascade="all, delete-orphan",
    )


class MessageEmbedding(Base):
    """
    Message embeddings used for cross-conversation retrieval.
    Backed by pgvector.
    """
    __tablename__ = "message_embeddings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(
        String, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    embedding = mapped_column(
        VectorType(settings.embedding_dim), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    message: Mapped[Message] = relationship("Message", back_populates="embedding")


class Assessment(Base):
    __tablename__ = "assessments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    conversation_id: Mapped[str] = mapped_column(
        String, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )

    hypothesis: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    differentials: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")
    recommended_action: Mapped[str] = mapped_column(
        String, nullable=False, default="see-gp"
    )
    negative_finding_ids: Mapped[list | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    conversation: Mapped[Conversation] = relationship(
        "Conversation", back_populates="assessments"
    )
    links: Mapped[list["AssessmentEpisodeLink"]] = relationship(
        "AssessmentEpisodeLink",
        back_populates="assessment",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "confidence >= 0 AND confidence <= 1",
            name="ck_assessments_confidence_range",
        ),
        CheckConstraint(
            "recommended_action IN ('self-care', 'see-gp', 'urgent-care', 'emergency')",
            name="ck_assessments_recommended_action_valid",
        ),
    )


class AssessmentEpisodeLink(Base):
    __tablename__ = "assessment_episode_links"

    assessment_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("assessments.id", ondelete="CASCADE"), primary_key=True
    )
    episode_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("episodes.id", ondelete="CASCADE"), primary_key=True
    )
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)

    assessment: Mapped[Assessment] = relationship(
        "Assessment", back_populates="links"
    )

    __table_args__ = (
        CheckConstraint(
            "weight >= 0 AND weight <= 1",
            name="ck_assessment_episode_links_weight_range",
        ),
    )


class Appointment(Base):
    """
    Appointments are only observed here (diff fallback and history).
    Booking lives outside this service.
    """
    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    clinic_name: Mapped[str | None] = mapped_column(String, nullable=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="Pending")
    urgency: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
