import json
import os
from datetime import timedelta
from itertools import count
from typing import Any, Dict, List, Optional

import pytest

# Ensure tests use an in-memory SQLite DB and never reach a model provider
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("CROSS_CONVERSATION_SEARCH", "false")

from fastapi.testclient import TestClient

from app.chat.context import ConversationContext, hydrate_context
from app.db import Base, SessionLocal, engine, get_db
from app.llm.client import LLMClient, LLMToolResponse, ToolCall
from app.models import Conversation, Episode, Symptom, utcnow

USER_ID = "user-1"


class ScriptedLLM(LLMClient):
    """
    Replays pre-baked model rounds in order.
    Once the script runs out every round is an empty text reply.
    """

    def __init__(self, rounds: Optional[List[LLMToolResponse]] = None):
        self.rounds = list(rounds or [])
        self.calls: List[List[Dict[str, Any]]] = []

    def chat_with_tools(self, messages, tools, temperature=0.2, model=None) -> LLMToolResponse:
        self.calls.append(list(messages))
        if self.rounds:
            return self.rounds.pop(0)
        return LLMToolResponse(content=None)


_ids = count(1)


def tool_round(*calls: tuple, content: Optional[str] = None) -> LLMToolResponse:
    """
    tool_round(("create_episode", {"name": "Headache"}), ...)
    """
    return LLMToolResponse(
        content=content,
        tool_calls=[
            ToolCall(id=f"call_{next(_ids)}", name=name, arguments=json.dumps(args))
            for name, args in calls
        ],
    )


def text_round(content: str) -> LLMToolResponse:
    return LLMToolResponse(content=content)


@pytest.fixture(autouse=True)
def schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def conversation(session) -> Conversation:
    conv = Conversation(user_id=USER_ID, title="Test conversation")
    session.add(conv)
    session.commit()
    return conv


@pytest.fixture
def ctx(session, conversation) -> ConversationContext:
    return hydrate_context(session, USER_ID, conversation.id)


@pytest.fixture
def make_episode(session):
    def _make(
        name: str,
        user_id: str = USER_ID,
        age: timedelta = timedelta(hours=2),
        **fields: Any,
    ) -> Episode:
        symptom = session.query(Symptom).filter_by(user_id=user_id, name=name).first()
        if symptom is None:
            symptom = Symptom(user_id=user_id, name=name)
            session.add(symptom)
        stamp = utcnow() - age
        episode = Episode(
            symptom=symptom,
            user_id=user_id,
            started_at=stamp,
            created_at=stamp,
            updated_at=stamp,
            **fields,
        )
        session.add(episode)
        session.commit()
        return episode

    return _make


@pytest.fixture
def indexed(monkeypatch) -> List[List[str]]:
    """
    Records message ids handed to indexing instead of embedding them.
    """
    recorded: List[List[str]] = []
    import app.api.routes as routes_mod

    monkeypatch.setattr(routes_mod, "index_messages", lambda ids: recorded.append(list(ids)))
    return recorded


@pytest.fixture
def llm() -> ScriptedLLM:
    return ScriptedLLM()


@pytest.fixture
def client(llm, indexed):
    from app.api.routes import get_orchestrator, get_session_factory
    from app.main import app
    from app.services import HealthChatOrchestrator

    def _override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    orchestrator = HealthChatOrchestrator(llm=llm)
    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_session_factory] = lambda: SessionLocal
    yield TestClient(app)
    app.dependency_overrides.clear()
