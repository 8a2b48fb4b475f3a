"""
Unit tests for the structured-output repair stage.
"""

from serialforge.core.json_repair import (
    parse_json,
    parse_json_list,
    parse_json_object,
    repair_truncated_json,
)


class TestParseJson:
    """Tests for parse_json extraction strategies."""

    def test_direct(self):
        assert parse_json('{"title": "Dawn"}') == {"title": "Dawn"}

    def test_empty_input(self):
        assert parse_json("") is None
        assert parse_json("   ") is None
        assert parse_json(None) is None

    def test_fenced_block(self):
        text = 'Sure! Here it is:\n```json\n{"title": "Dawn", "content": "..."}\n```\nEnjoy.'

        assert parse_json(text)["title"] == "Dawn"

    def test_unterminated_fence(self):
        text = '```json\n{"title": "Dawn", "content": "She ran'

        assert parse_json(text) == {"title": "Dawn", "content": "She ran"}

    def test_object_inside_prose(self):
        text = 'The result is {"plan": "Cross the river."} as requested.'

        assert parse_json(text) == {"plan": "Cross the river."}

    def test_missing_opening_brace(self):
        text = '"title": "Dawn", "content": "Mira woke."}'

        assert parse_json(text) == {"title": "Dawn", "content": "Mira woke."}

    def test_truncated_nested_output(self):
        text = '{"plan": "Arc two", "briefs": [{"installment": 21, "brief": "Reach the ford"}, {"installment": 22, "bri'

        result = parse_json(text)

        assert result["plan"] == "Arc two"
        assert result["briefs"][0] == {"installment": 21, "brief": "Reach the ford"}

    def test_truncated_object_is_not_replaced_by_inner_array(self):
        text = '{"themes": ["duty", "memory"], "title": "The Long Ro'

        assert parse_json(text) == {"themes": ["duty", "memory"], "title": "The Long Ro"}

    def test_single_object_array_is_unwrapped(self):
        assert parse_json('[{"a": 1}]') == {"a": 1}
        assert parse_json('[{"a": 1}, {"a": 2}]') == [{"a": 1}, {"a": 2}]

    def test_garbage(self):
        assert parse_json("no structure here at all") is None


class TestRepairTruncatedJson:
    """Tests for repair_truncated_json."""

    def test_closes_open_string_and_brackets(self):
        assert repair_truncated_json('{"a": [1, 2, {"b": "x') == '{"a": [1, 2, {"b": "x"}]}'

    def test_drops_dangling_key(self):
        assert repair_truncated_json('{"a": 1, "b":') == '{"a": 1}'

    def test_drops_trailing_comma(self):
        assert repair_truncated_json('{"a": 1,') == '{"a": 1}'

    def test_strips_line_comments(self):
        assert repair_truncated_json('{"a": 1 // note\n}') == '{"a": 1 \n}'


class TestTypedHelpers:
    """Tests for parse_json_object and parse_json_list."""

    def test_object_only(self):
        assert parse_json_object('{"a": 1}') == {"a": 1}
        assert parse_json_object("[1, 2]") is None

    def test_list_from_array(self):
        assert parse_json_list("[1, 2, 3]") == [1, 2, 3]

    def test_list_keeps_single_entry(self):
        assert parse_json_list('[{"subject": "Sun"}]') == [{"subject": "Sun"}]

    def test_list_inside_prose_keeps_every_entry(self):
        text = (
            "Here are the constraints:\n"
            '[{"subject": "Sun", "predicate": "count", "value": "2"},'
            ' {"subject": "Moon", "predicate": "count", "value": "1"}]\n'
            "Let me know if you need more."
        )

        entries = parse_json_list(text, key="constraints")

        assert [e["subject"] for e in entries] == ["Sun", "Moon"]

    def test_object_after_bracketed_prose(self):
        assert parse_json('See [note 1]: {"plan": "Cross the river."}') == {"plan": "Cross the river."}

    def test_list_under_key(self):
        assert parse_json_list('{"items": [{"x": 1}]}', key="items") == [{"x": 1}]

    def test_list_from_unparseable(self):
        assert parse_json_list("nothing") == []
        assert parse_json_list('"just a string"') == []
