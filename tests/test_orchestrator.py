import threading
import time

import pytest

from app.chat.agent import AgentRun
from app.chat.status import deserialize_timeline
from app.errors import NotFoundError
from app.models import Assessment, Conversation, Episode, Message, Symptom, utcnow
from app.services import ConversationLocks, HealthChatOrchestrator, make_title, route_response
from app.services.orchestrator import EMPTY_RESPONSE_MESSAGE
from app.chat.schema import AppointmentData, HealthAssistantResponse

from conftest import USER_ID, ScriptedLLM, tool_round


class SilentAgent:
    """
    Mutates the store directly without reporting explicit events or
    publishing status, so only the diff fallback can see the changes.
    """

    def __init__(self, text: str = '{"message": "Recorded."}'):
        self.text = text

    def run(self, session, ctx, user_message, history=None):
        now = utcnow()
        episode = Episode(
            symptom=Symptom(user_id=ctx.user_id, name="Headache"),
            user_id=ctx.user_id,
            started_at=now,
            created_at=now,
            updated_at=now,
        )
        assessment = Assessment(
            user_id=ctx.user_id,
            conversation_id=ctx.conversation_id,
            hypothesis="Tension headache",
            confidence=0.65,
            created_at=now,
            updated_at=now,
        )
        session.add_all([episode, assessment])
        session.commit()
        return AgentRun(text=self.text, final_response=None, iterations=1)


class ExplodingAgent:
    def run(self, session, ctx, user_message, history=None):
        raise RuntimeError("model provider timed out")


def test_diff_fallback_turn_yields_symptom_then_assessment(session):
    scheduled = []
    orchestrator = HealthChatOrchestrator(agent=SilentAgent(), schedule_indexing=scheduled.append)

    result = orchestrator.handle_turn(session, USER_ID, "My head hurts, what is it?")

    assert [e.type for e in result.status_timeline] == ["symptom-added", "assessment-created"]
    assert result.status_timeline[0].symptom_name == "Headache"
    assert result.status_timeline[1].hypothesis == "Tension headache"
    assert [c.action for c in result.symptom_changes] == ["created"]
    assert [c.confidence for c in result.assessment_changes] == [0.65]
    assert result.message == "Recorded."

    messages = session.query(Message).order_by(Message.created_at).all()
    assert [m.role for m in messages] == ["user", "assistant"]
    assert deserialize_timeline(messages[1].status_information) == result.status_timeline
    assert messages[0].status_information is None
    assert scheduled == [[result.user_message_id, result.assistant_message_id]]


def test_new_conversation_title_is_truncated(session):
    orchestrator = HealthChatOrchestrator(agent=SilentAgent())
    long_message = "I have had a pounding headache since Monday morning and it will not go away"

    result = orchestrator.handle_turn(session, USER_ID, long_message)

    conversation = session.get(Conversation, result.conversation_id)
    assert conversation.title == long_message[:50] + "..."
    assert make_title("short") == "short"


def test_foreign_conversation_is_not_found(session):
    other = Conversation(user_id="someone-else", title="theirs")
    session.add(other)
    session.commit()
    orchestrator = HealthChatOrchestrator(agent=SilentAgent())

    with pytest.raises(NotFoundError):
        orchestrator.handle_turn(session, USER_ID, "hello", conversation_id=other.id)
    with pytest.raises(NotFoundError):
        orchestrator.handle_turn(session, USER_ID, "hello", conversation_id="missing")
    assert session.query(Message).count() == 0


def test_model_failure_degrades_to_apology(session):
    orchestrator = HealthChatOrchestrator(agent=ExplodingAgent())

    result = orchestrator.handle_turn(session, USER_ID, "hello")

    assert result.message == EMPTY_RESPONSE_MESSAGE
    assert result.status_timeline is None
    assert session.query(Message).count() == 2


def test_explicit_events_drive_the_timeline(session, conversation):
    llm = ScriptedLLM(
        [
            tool_round(("create_episode", {"name": "Cough"})),
            tool_round(("create_assessment", {"hypothesis": "Common cold", "confidence": 0.5})),
            tool_round(("complete_assessment", {}), ("submit_final_response", {"message": "Rest up."})),
        ]
    )
    orchestrator = HealthChatOrchestrator(llm=llm)
    streamed = []

    result = orchestrator.handle_turn(
        session, USER_ID, "I keep coughing", conversation_id=conversation.id, on_status=streamed.append
    )

    assert result.message == "Rest up."
    # reconciled symptom first, then the real-time assessment narrative
    assert [e.type for e in result.status_timeline] == [
        "symptom-added",
        "assessment-generating",
        "assessment-created",
        "assessment-analyzing",
    ]
    assert [e.type for e in streamed] == [
        "symptom-added",
        "assessment-generating",
        "assessment-created",
        "assessment-analyzing",
    ]


def test_history_is_passed_to_the_model(session, conversation):
    session.add_all(
        [
            Message(conversation_id=conversation.id, role="user", content="first question"),
        ]
    )
    session.commit()
    llm = ScriptedLLM([tool_round(("submit_final_response", {"message": "ok"}))])

    HealthChatOrchestrator(llm=llm).handle_turn(
        session, USER_ID, "second question", conversation_id=conversation.id
    )

    sent = llm.calls[0]
    assert [m["content"] for m in sent[1:]] == ["first question", "second question"]


def test_route_response_passes_through(caplog):
    response = HealthAssistantResponse(
        message="Call emergency services.",
        appointment=AppointmentData(needed=True, urgency="Emergency", emergency_action="Call 911"),
    )

    with caplog.at_level("WARNING", logger="app.services.orchestrator"):
        routed = route_response(response)

    assert routed is response
    assert any("Emergency" in r.getMessage() for r in caplog.records)


def test_conversation_locks_are_per_conversation():
    locks = ConversationLocks()

    with locks.hold("a"):
        assert locks._locks["a"].locked()
        with locks.hold("b"):
            assert len(locks) == 2
        assert len(locks) == 1
    assert len(locks) == 0


def test_conversation_locks_do_not_accumulate():
    locks = ConversationLocks()

    for i in range(1000):
        with locks.hold(f"conversation-{i}"):
            pass
    with pytest.raises(RuntimeError):
        with locks.hold("failing"):
            raise RuntimeError("boom")

    assert len(locks) == 0


def test_waiting_turn_runs_after_the_holder():
    locks = ConversationLocks()
    order = []

    def second_turn():
        with locks.hold("a"):
            order.append("second")

    with locks.hold("a"):
        worker = threading.Thread(target=second_turn)
        worker.start()
        deadline = time.monotonic() + 5
        while locks._holders.get("a") != 2 and time.monotonic() < deadline:
            time.sleep(0.001)
        order.append("first")
    worker.join(timeout=5)

    assert order == ["first", "second"]
    assert len(locks) == 0


def test_repeated_episode_updates_appear_once(session, conversation):
    llm = ScriptedLLM(
        [
            tool_round(("create_episode", {"name": "Cough"})),
            tool_round(("update_episode", {"episodeId": 1, "severity": 4})),
            tool_round(
                ("update_episode", {"episodeId": 1, "location": "chest"}),
                ("submit_final_response", {"message": "Noted."}),
            ),
        ]
    )

    result = HealthChatOrchestrator(llm=llm).handle_turn(
        session, USER_ID, "I keep coughing", conversation_id=conversation.id
    )

    assert [c.action for c in result.symptom_changes] == ["created", "updated", "updated"]
    assert [(e.type, getattr(e, "message", None)) for e in result.status_timeline] == [
        ("symptom-added", None),
        ("general", "Updated Cough details"),
    ]
    stored = session.query(Message).filter_by(role="assistant").one()
    assert deserialize_timeline(stored.status_information) == result.status_timeline


@pytest.mark.parametrize("error", [RuntimeError("search backend down"), OSError("model download failed")])
def test_failed_enrichment_keeps_local_history(session, conversation, monkeypatch, error):
    from app.rag import history as history_mod

    settings = history_mod.get_settings().model_copy(update={"cross_conversation_search": True})
    monkeypatch.setattr(history_mod, "get_settings", lambda: settings)

    def broken_search(*args, **kwargs):
        raise error

    monkeypatch.setattr(history_mod, "search_similar_messages", broken_search)
    llm = ScriptedLLM([tool_round(("submit_final_response", {"message": "ok"}))])

    result = HealthChatOrchestrator(llm=llm).handle_turn(
        session, USER_ID, "hello", conversation_id=conversation.id
    )

    assert result.message == "ok"
    assert [m["content"] for m in llm.calls[0][1:]] == ["hello"]
