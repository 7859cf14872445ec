import json

from app.models import Assessment, Conversation

from conftest import USER_ID, tool_round

HEADERS = {"X-User-Id": USER_ID}


def test_chat_requires_user_header(client):
    response = client.post("/api/chat", json={"message": "hi"})
    assert response.status_code == 401


def test_chat_turn_and_history(client, llm, indexed):
    llm.rounds.extend(
        [
            tool_round(("create_episode", {"name": "Headache"})),
            tool_round(("submit_final_response", {"message": "Noted your headache."})),
        ]
    )

    response = client.post("/api/chat", json={"message": "I have a headache"}, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Noted your headache."
    assert body["symptom_changes"] == [
        {"id": "1", "action": "created", "name": "Headache", "confidence": None}
    ]
    assert body["status_information"][0]["type"] == "symptom-added"
    assert body["status_information"][0]["symptomName"] == "Headache"
    assert len(indexed) == 1 and len(indexed[0]) == 2

    conversation_id = body["conversation_id"]
    detail = client.get(f"/api/conversations/{conversation_id}", headers=HEADERS).json()
    assert [m["role"] for m in detail["messages"]] == ["user", "assistant"]
    assert detail["messages"][1]["status_information"] == body["status_information"]

    listing = client.get("/api/conversations", headers=HEADERS).json()
    assert [c["id"] for c in listing] == [conversation_id]

    episodes = client.get("/api/episodes/active", headers=HEADERS).json()
    assert [e["symptom_name"] for e in episodes] == ["Headache"]
    assert client.get("/api/episodes/symptom/Headache", headers=HEADERS).json()[0]["id"] == 1
    assert client.get("/api/episodes/1", headers=HEADERS).status_code == 200
    assert client.get("/api/symptoms", headers=HEADERS).json()[0]["name"] == "Headache"


def test_unknown_conversation_is_404(client):
    response = client.post(
        "/api/chat",
        json={"message": "hi", "conversation_id": "does-not-exist"},
        headers=HEADERS,
    )

    assert response.status_code == 404
    assert "not found" in response.json()["detail"]


def test_other_users_cannot_read_records(client, session):
    conv = Conversation(user_id="someone-else", title="private")
    session.add(conv)
    session.commit()

    assert client.get(f"/api/conversations/{conv.id}", headers=HEADERS).status_code == 404
    assert client.get("/api/episodes/123", headers=HEADERS).status_code == 404
    assert client.get("/api/assessments/123", headers=HEADERS).status_code == 404


def test_rename_and_delete_conversation(client, session):
    conv = Conversation(user_id=USER_ID, title="old")
    session.add(conv)
    session.commit()
    conv_id = conv.id

    renamed = client.put(f"/api/conversations/{conv_id}", json={"title": "Migraine follow-up"}, headers=HEADERS)
    assert renamed.json()["title"] == "Migraine follow-up"

    assert client.delete(f"/api/conversations/{conv_id}", headers=HEADERS).status_code == 204
    assert client.get(f"/api/conversations/{conv_id}", headers=HEADERS).status_code == 404


def test_assessment_endpoints(client, session):
    conv = Conversation(user_id=USER_ID, title="c")
    session.add(conv)
    session.commit()
    session.add(
        Assessment(user_id=USER_ID, conversation_id=conv.id, hypothesis="Migraine", confidence=0.7)
    )
    session.commit()

    by_conv = client.get(f"/api/assessments/conversation/{conv.id}", headers=HEADERS).json()
    recent = client.get("/api/assessments/recent", headers=HEADERS).json()

    assert [a["hypothesis"] for a in by_conv] == ["Migraine"]
    assert recent[0]["id"] == by_conv[0]["id"]
    assert client.get(f"/api/assessments/{recent[0]['id']}", headers=HEADERS).json()["confidence"] == 0.7


def test_stream_emits_status_then_message(client, llm):
    llm.rounds.extend(
        [
            tool_round(("record_negative_finding", {"symptomName": "fever"})),
            tool_round(("submit_final_response", {"message": "Good, no fever."})),
        ]
    )

    with client.stream("POST", "/api/chat/stream", json={"message": "no fever"}, headers=HEADERS) as response:
        body = "".join(response.iter_text())

    blocks = [b for b in body.split("\n\n") if b.strip()]
    names = [b.splitlines()[0].removeprefix("event: ") for b in blocks]
    assert names == ["status", "message"]

    final = json.loads(blocks[-1].splitlines()[1].removeprefix("data: "))
    assert final["message"] == "Good, no fever."
    assert final["status_information"][0]["message"] == "Recorded that fever is not present"
