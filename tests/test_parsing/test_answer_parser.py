import pytest

from mcq_core.models import ParsedAnswer
from mcq_core.parser import DEFAULT_CONFIDENCE, load_json_lenient, parse_answer, strip_thinking

BARE = '{"question_id": "1", "selected_options": ["B"], "confidence": 0.9, "reasoning": "Abstract without abstract methods is legal."}'


def test_bare_json():
    parsed = parse_answer(BARE)
    assert parsed == ParsedAnswer(("B",), 0.9, "Abstract without abstract methods is legal.")


def test_thinking_block_and_fence_parse_same_as_bare_json():
    wrapped = (
        "<think>\nThe class can be abstract with zero abstract methods {not json here}.\n</think>\n"
        "```json\n" + BARE + "\n```"
    )
    assert parse_answer(wrapped) == parse_answer(BARE)


def test_prose_around_json():
    text = "Here is my answer:\n" + BARE + "\nLet me know if you need anything else."
    assert parse_answer(text) == parse_answer(BARE)


def test_braces_inside_string_values():
    text = 'Answer: {"selected_options": ["A"], "confidence": 0.7, "reasoning": "map {x} onto {y}"} done'
    parsed = parse_answer(text)
    assert parsed.selected_option_labels == ("A",)
    assert parsed.reasoning == "map {x} onto {y}"


def test_skips_unparseable_brace_before_answer():
    text = 'Consider {A, B}. Final: {"selected_options": ["C"], "confidence": 0.6}'
    assert parse_answer(text).selected_option_labels == ("C",)


def test_missing_fields_default():
    parsed = parse_answer('{"selected_options": ["D"]}')
    assert parsed.confidence == DEFAULT_CONFIDENCE
    assert parsed.reasoning == ""


@pytest.mark.parametrize("raw,expected", [
    ('"high"', DEFAULT_CONFIDENCE),
    ("true", DEFAULT_CONFIDENCE),
    ("null", DEFAULT_CONFIDENCE),
    ("1.7", 1.0),
    ("-0.2", 0.0),
    ("1", 1.0),
])
def test_confidence_coercion(raw, expected):
    parsed = parse_answer('{"selected_options": ["A"], "confidence": ' + raw + '}')
    assert parsed.confidence == expected


def test_selected_options_as_comma_string():
    parsed = parse_answer('{"selected_options": "A, C", "confidence": 0.8}')
    assert parsed.selected_option_labels == ("A", "C")


def test_duplicate_and_empty_labels_removed():
    parsed = parse_answer('{"selected_options": ["B", "", "B", null, "C"]}')
    assert parsed.selected_option_labels == ("B", "C")


def test_non_list_selection_is_empty():
    parsed = parse_answer('{"selected_options": {"B": true}, "confidence": 0.4}')
    assert parsed.selected_option_labels == ()
    assert parsed.confidence == 0.4


@pytest.mark.parametrize("raw", [None, "", "   ", "I think the answer is B.", '["B"]', "{broken json"])
def test_unrecoverable_returns_none(raw):
    assert parse_answer(raw) is None


def test_strip_thinking_variants():
    assert strip_thinking("<thinking>x</thinking>{}") == "{}"
    assert strip_thinking("<REASONING>\ny\n</REASONING>\n{}") == "{}"


def test_load_json_lenient_list_with_prose():
    text = 'Parsed questions:\n[{"id": "1", "question": "Q?", "options": ["a", "b"]}]\nDone.'
    value = load_json_lenient(text, list)
    assert isinstance(value, list)
    assert value[0]["id"] == "1"


def test_load_json_lenient_type_mismatch():
    assert load_json_lenient('{"a": 1}', list) is None
    assert load_json_lenient('[1, 2]', dict) is None


def test_load_json_lenient_either_container_takes_outer_object():
    text = 'Here is the question:\n{"id": "1", "question": "Q?", "options": [{"label": "A", "text": "a"}]}\nThanks.'
    value = load_json_lenient(text, (list, dict))
    assert isinstance(value, dict)
    assert value["options"][0]["label"] == "A"


def test_load_json_lenient_either_container_takes_outer_array():
    text = 'Result: [{"id": "1", "options": ["a", "b"]}, {"id": "2", "options": ["c", "d"]}]'
    value = load_json_lenient(text, (list, dict))
    assert [q["id"] for q in value] == ["1", "2"]
