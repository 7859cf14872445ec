import json

import pytest

from app.chat.context import hydrate_context
from app.chat.operations import build_registry, dispatch
from app.chat.stages import ConversationPhase, EpisodeStage
from app.models import Assessment, Episode, NegativeFinding

from conftest import USER_ID


@pytest.fixture
def registry():
    return build_registry()


def run(session, ctx, registry, name, /, **args):
    return dispatch(session, ctx, registry, name, json.dumps(args))


def test_create_episode_twice_returns_existing_episode(session, ctx, registry):
    first = run(session, ctx, registry, "create_episode", name="Headache")
    second = run(session, ctx, registry, "create_episode", name="Headache")

    assert first.ok and second.ok
    assert second.data["episodeId"] == first.data["episodeId"]
    assert second.data["existing"] is True
    assert second.change is None
    assert session.query(Episode).count() == 1
    # only the real creation is reported
    assert [c.action for c in ctx.changes] == ["created"]


def test_create_episode_publishes_symptom_added(session, ctx, registry):
    result = run(session, ctx, registry, "create_episode", name="Cough")

    events = ctx.status.drain()
    assert [e.type for e in events] == ["symptom-added"]
    assert events[0].episode_id == result.data["episodeId"]
    assert events[0].symptom_name == "Cough"


def test_hydrated_episode_suppresses_duplicate(session, conversation, make_episode, registry):
    existing = make_episode("Headache")
    ctx = hydrate_context(session, USER_ID, conversation.id)

    result = run(session, ctx, registry, "create_episode", name="Headache")

    assert result.data["episodeId"] == existing.id
    assert session.query(Episode).count() == 1


def test_update_episode_stage_is_monotonic(session, ctx, registry):
    created = run(session, ctx, registry, "create_episode", name="Back pain")
    episode_id = created.data["episodeId"]

    stages = []
    for args in (
        {"severity": 5},
        {"location": "lower back", "frequency": "constant"},
        {"severity": 3},
        {"triggers": ["lifting"], "pattern": "worse at night"},
    ):
        result = run(session, ctx, registry, "update_episode", episodeId=episode_id, **args)
        assert result.ok
        stages.append(EpisodeStage(result.data["stage"]))

    orders = [list(EpisodeStage).index(s) for s in stages]
    assert orders == sorted(orders)
    assert stages[0] == EpisodeStage.EXPLORED
    assert stages[-1] == EpisodeStage.CHARACTERIZED

    episode = session.get(Episode, episode_id)
    assert [entry["severity"] for entry in episode.timeline] == [5, 3]


def test_linked_episode_stays_linked_after_update(session, ctx, registry):
    a = run(session, ctx, registry, "create_episode", name="Nausea").data["episodeId"]
    b = run(session, ctx, registry, "create_episode", name="Dizziness").data["episodeId"]

    assert run(session, ctx, registry, "link_episode", episodeId=a, relatedEpisodeId=b).ok
    result = run(session, ctx, registry, "update_episode", episodeId=a, severity=2)

    assert result.data["stage"] == "linked"


def test_update_unknown_episode_is_not_found(session, ctx, registry):
    result = run(session, ctx, registry, "update_episode", episodeId=999, severity=2)

    assert not result.ok
    assert result.error.kind == "not_found"
    assert "Episode 999 not found" in result.to_tool_content()


def test_foreign_episode_is_not_found(session, ctx, registry, make_episode):
    other = make_episode("Rash", user_id="someone-else")

    result = run(session, ctx, registry, "resolve_episode", episodeId=other.id)

    assert result.error.kind == "not_found"


def test_invalid_arguments_are_validation_errors(session, ctx, registry):
    bad_severity = run(session, ctx, registry, "update_episode", episodeId=1, severity=11)
    unknown = run(session, ctx, registry, "book_flight")
    malformed = dispatch(session, ctx, registry, "create_episode", "{not json")

    assert bad_severity.error.kind == "validation"
    assert unknown.error.kind == "validation"
    assert malformed.error.kind == "validation"
    assert json.loads(bad_severity.to_tool_content())["status"] == "error"


def test_resolve_episode_frees_symptom_for_a_new_episode(session, ctx, registry):
    first = run(session, ctx, registry, "create_episode", name="Fever").data["episodeId"]
    resolved = run(session, ctx, registry, "resolve_episode", episodeId=first)
    again = run(session, ctx, registry, "create_episode", name="Fever")

    assert resolved.change.action == "resolved"
    assert session.get(Episode, first).resolved_at is not None
    assert again.data["episodeId"] != first


def test_record_negative_finding(session, ctx, registry):
    result = run(session, ctx, registry, "record_negative_finding", symptomName="fever")

    assert result.ok
    assert session.query(NegativeFinding).one().symptom_name == "fever"
    assert ctx.status.drain()[0].message == "Recorded that fever is not present"


def test_create_assessment_defaults(session, ctx, registry):
    run(session, ctx, registry, "create_episode", name="Headache")
    run(session, ctx, registry, "create_episode", name="Nausea")
    run(session, ctx, registry, "record_negative_finding", symptomName="fever")
    ctx.status.drain()

    result = run(
        session,
        ctx,
        registry,
        "create_assessment",
        hypothesis="Migraine",
        confidence=1.7,
        differentials=["Tension headache", "  ", ""],
    )

    assert result.ok
    assert result.next_action == "CompleteAssessment"
    assessment = session.get(Assessment, result.data["assessmentId"])
    assert assessment.confidence == 1.0
    assert assessment.differentials == ["Tension headache"]
    assert assessment.recommended_action == "see-gp"
    assert assessment.negative_finding_ids == [ctx.negative_findings[0].id]
    assert sorted(link.weight for link in assessment.links) == [0.5, 0.5]
    assert ctx.phase == ConversationPhase.ASSESSING

    types = [e.type for e in ctx.status.drain()]
    assert types == ["assessment-generating", "assessment-created", "assessment-analyzing"]


def test_create_assessment_with_blank_differentials_stores_null(session, ctx, registry):
    result = run(
        session, ctx, registry, "create_assessment", hypothesis="Cold", confidence=0.4, differentials=[" "]
    )

    assert session.get(Assessment, result.data["assessmentId"]).differentials is None


def test_create_assessment_without_conversation(session, registry):
    ctx = hydrate_context(session, USER_ID, None)

    result = run(session, ctx, registry, "create_assessment", hypothesis="Flu", confidence=0.5)

    assert result.error.kind == "validation"
    assert "no conversation is active" in result.error.message
    assert session.query(Assessment).count() == 0


def test_update_assessment_clamps_weights(session, ctx, registry):
    a = run(session, ctx, registry, "create_episode", name="Cough").data["episodeId"]
    b = run(session, ctx, registry, "create_episode", name="Sore throat").data["episodeId"]
    assessment_id = run(
        session, ctx, registry, "create_assessment", hypothesis="Viral URI", confidence=0.6
    ).data["assessmentId"]

    result = run(
        session,
        ctx,
        registry,
        "update_assessment",
        assessmentId=assessment_id,
        confidence=-0.3,
        episodeWeights=[
            {"episodeId": a, "weight": 4.2, "reasoning": "primary"},
            {"episodeId": b, "weight": -1},
        ],
    )

    assert result.ok
    session.expire_all()
    assessment = session.get(Assessment, assessment_id)
    weights = {link.episode_id: link.weight for link in assessment.links}
    assert weights == {a: 1.0, b: 0.0}
    assert assessment.confidence == 0.0
    assert all(0.0 <= link.weight <= 1.0 for link in assessment.links)


def test_update_unknown_assessment_is_not_found(session, ctx, registry):
    result = run(session, ctx, registry, "update_assessment", assessmentId=42, hypothesis="x")

    assert result.error.kind == "not_found"


def test_complete_assessment(session, ctx, registry):
    missing = run(session, ctx, registry, "complete_assessment")
    assert missing.error.message.startswith("No assessment found to complete")

    run(session, ctx, registry, "create_assessment", hypothesis="Migraine", confidence=0.7)
    done = run(session, ctx, registry, "complete_assessment")

    assert done.ok
    assert ctx.phase == ConversationPhase.RECOMMENDING


def test_submit_final_response(session, ctx, registry):
    result = run(
        session,
        ctx,
        registry,
        "submit_final_response",
        message="Rest and drink fluids.",
        appointmentNeeded=True,
        appointmentUrgency="Low",
        appointmentPreferredTime="not a date",
        symptomChanges=[{"symptom": "cough", "action": "added"}],
    )

    assert result.ok
    assert ctx.final_response.message == "Rest and drink fluids."
    assert ctx.final_response.appointment.urgency == "Low"
    assert ctx.final_response.appointment.preferred_time is None
    assert ctx.final_response.symptom_changes[0].symptom == "cough"


def test_submit_final_response_with_empty_message_gets_fallback(session, ctx, registry):
    run(session, ctx, registry, "submit_final_response", message="   ")

    assert ctx.final_response.message.strip()
    assert ctx.final_response.appointment is None


def test_get_symptom_history(session, ctx, registry, make_episode):
    make_episode("Migraine", status="resolved")
    make_episode("Migraine")

    result = run(session, ctx, registry, "get_symptom_history", symptomName="Migraine")

    assert len(result.data["history"]) == 2


def test_tool_schemas_hide_discriminator(registry):
    schemas = {s["function"]["name"]: s["function"] for s in registry.schemas()}

    assert "submit_final_response" in schemas
    create = schemas["create_episode"]
    assert "operation" not in create["parameters"]["properties"]
    assert create["parameters"]["required"] == ["name"]
    assert "episodeId" in schemas["update_episode"]["parameters"]["properties"]
