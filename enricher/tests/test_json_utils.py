from enricher.src.utils.json_utils import (
    extract_first_json,
    find_json_substring,
    safe_loads,
    strip_trailing_commas,
)


def test_extract_first_json_simple_object():
    parsed = extract_first_json('{"title":"Invoice 42", "tags":["Tax"]}')
    assert isinstance(parsed, dict)
    assert parsed["title"] == "Invoice 42"


def test_extract_first_json_object_in_fence():
    text = """Here is the metadata:
```json
{"title": "Lease", "language": "de"}
```
Let me know if you need more."""
    parsed = extract_first_json(text)
    assert parsed == {"title": "Lease", "language": "de"}


def test_extract_first_json_prefers_json_tag_and_smart_quotes():
    text = 'Draft {"title": "wrong"} final: <json>{“title”: “Right”}</json>'
    parsed = extract_first_json(text)
    assert parsed["title"] == "Right"


def test_extract_first_json_surrounded_by_prose_with_quotes():
    text = 'The "best" answer is {"title": "A {braced} title", "tags": []} as requested.'
    parsed = extract_first_json(text)
    assert parsed["title"] == "A {braced} title"


def test_trailing_commas_are_tolerated():
    assert strip_trailing_commas('{"a": [1, 2,], }') == '{"a": [1, 2]}'
    assert extract_first_json('{"tags": ["x",],}') == {"tags": ["x"]}


def test_find_json_substring_none_when_unbalanced():
    assert find_json_substring('{"a": 1') is None
    assert extract_first_json("no json here") is None


def test_safe_loads_bytes():
    parsed = safe_loads(b'{"k":"v"}')
    assert parsed["k"] == "v"
