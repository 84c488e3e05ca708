import pytest

from backoffice_ai.response_guard import clean_answer, parse_json_object


@pytest.mark.parametrize("raw, expected", [
    ("Order 42 was delivered.", "Order 42 was delivered."),
    ("  padded  ", "padded"),
    ('{"answer": "Order 42 was delivered."}', "Order 42 was delivered."),
    ('{"response": "ok"}', "ok"),
    ('{"content": {"text": "nested"}}', "nested"),
    ('"quoted answer"', "quoted answer"),
    ('```json\n{"answer": "fenced"}\n```', "fenced"),
    ("```\nplain fenced\n```", "plain fenced"),
    ('{"total": 3}', '{"total": 3}'),
    ("{not json}", "{not json}"),
])
def test_clean_answer(raw, expected):
    assert clean_answer(raw) == expected


def test_clean_answer_none_and_empty():
    assert clean_answer(None) is None
    assert clean_answer('{"answer": "   "}') == '{"answer": "   "}'


def test_parse_json_object():
    assert parse_json_object('```json\n{"recommendations": []}\n```') == {"recommendations": []}
    assert parse_json_object(' {"a": 1} ') == {"a": 1}
    assert parse_json_object("[1, 2]") is None
    assert parse_json_object("Here are some books") is None
    assert parse_json_object(None) is None
