import pytest

from agentgate.incremental_json import IncrementalJSON


@pytest.mark.parametrize(
    "parts, expected",
    [
        (['{"a":1}'], '{"a":1}'),
        (['{"a":{"b":', "2}} trailing"], '{"a":{"b":2}}'),
        (['prefix {"a":"{\\"x\\":1}"}'], '{"a":"{\\"x\\":1}"}'),
    ],
    ids=["single chunk", "nested", "escaped"],
)
def test_feed_completes(parts, expected):
    parser = IncrementalJSON()
    result = None
    for part in parts:
        result = parser.feed(part)
    assert result == expected


def test_incomplete_returns_none():
    assert IncrementalJSON().feed('{"a":') is None


def test_text_without_brace_returns_none():
    assert IncrementalJSON().feed("no json here") is None


def test_braces_inside_strings_are_ignored():
    assert IncrementalJSON().feed('{"a":"}"} rest') == '{"a":"}"}'


def test_completed_parser_returns_same_object():
    parser = IncrementalJSON()
    first = parser.feed('{"a":1}{"b":2}')
    assert parser.feed('{"c":3}') == first == '{"a":1}'


def test_reset_allows_new_object():
    parser = IncrementalJSON()
    parser.feed('{"a":1}')
    parser.reset()
    assert parser.feed('x{"b":2}') == '{"b":2}'