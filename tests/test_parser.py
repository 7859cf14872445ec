import logging

from app.chat.parser import FORMAT_ERROR_MESSAGE, extract_json_candidate, parse_response, parse_stats


def test_plain_text_is_returned_trimmed():
    assert parse_response("  I feel fine \n").message == "I feel fine"


def test_fenced_json():
    assert parse_response('```json\n{"message":"Hello"}\n```').message == "Hello"


def test_full_structured_response():
    raw = (
        '{"Message": "See a GP this week.",'
        ' "appointment": {"needed": true, "urgency": "Medium", "readyToBook": true},'
        ' "symptomChanges": [{"symptom": "cough", "action": "added"}]}'
    )

    response = parse_response(raw)

    assert response.message == "See a GP this week."
    assert response.appointment.ready_to_book is True
    assert response.symptom_changes[0].symptom == "cough"


def test_json_without_message_is_apology_and_logged(caplog):
    before = parse_stats["missing_message"]
    with caplog.at_level(logging.ERROR, logger="app.chat.parser"):
        response = parse_response('{"symptomChanges":[{"symptom":"cough","action":"added"}]}')

    assert response.message == FORMAT_ERROR_MESSAGE
    assert parse_stats["missing_message"] == before + 1
    assert any("missing required 'message'" in r.getMessage() for r in caplog.records)


def test_duplicate_keys_fall_back_to_regex():
    assert parse_response('{"message":"Hi","message":"Bye"}').message == "Hi"


def test_regex_unescapes_newlines():
    raw = 'Sure! {"message": "Line one\\nLine two", "appointment": '
    assert parse_response(raw).message == "Line one\nLine two"


def test_invalid_nested_fields_keep_the_message():
    raw = '{"message": "Take rest", "appointment": {"duration": "a while"}}'
    assert parse_response(raw).message == "Take rest"


def test_prose_around_json_is_ignored():
    raw = 'Here you go: {"message": "All good"} thanks'
    assert extract_json_candidate(raw) == '{"message": "All good"}'
    assert parse_response(raw).message == "All good"
