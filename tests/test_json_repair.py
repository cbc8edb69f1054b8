"""Tests for the JSON repair pipeline.

Each repair stage is tested on its own first, then the full pipeline is run
on the malformed outputs language models actually produce.
"""

from __future__ import annotations

import json

import pytest

from eventstory.core.json_repair import (
    PARSE_FAILURE_MESSAGE,
    REPAIR_STAGES,
    JsonRepairError,
    close_json_structure,
    fix_json_quirks,
    fix_single_quotes,
    parse_model_output,
    parse_with_fallback_flag,
    regex_fallback_extraction,
    robust_json_parse,
    sanitize_json_control_chars,
    strip_json_comments,
    strip_markdown_fences,
    try_repair_json,
)


# ---------------------------------------------------------------------------
# strip_markdown_fences
# ---------------------------------------------------------------------------


class TestStripMarkdownFences:
    def test_removes_json_fences(self) -> None:
        assert strip_markdown_fences('```json\n{"items":[]}\n```') == '{"items":[]}'

    def test_removes_fences_without_language_tag(self) -> None:
        assert strip_markdown_fences('```\n{"items":[]}\n```') == '{"items":[]}'

    def test_truncated_response_keeps_body(self) -> None:
        # Opening fence, closing fence never arrived
        raw = '```json\n{"items":[{"id":"foo"'
        assert strip_markdown_fences(raw) == '{"items":[{"id":"foo"'

    def test_strips_trailing_prose(self) -> None:
        assert strip_markdown_fences('{"items":[]} I hope this helps!') == '{"items":[]}'

    def test_valid_json_unchanged(self) -> None:
        text = '{"items":[],"story":"hello"}'
        assert strip_markdown_fences(text) == text

    def test_removes_partial_closing_fence(self) -> None:
        assert strip_markdown_fences('{"items":[]}\n``') == '{"items":[]}'

    def test_keeps_trailing_text_that_looks_like_json(self) -> None:
        assert strip_markdown_fences('{"a":1},{"b":2}') == '{"a":1},{"b":2}'

    @pytest.mark.parametrize(
        "text",
        [
            '{"items":[]}',
            '{"items":[{"id":"timing","value":"now"}],"story":"What:\\nDown"}',
            '[1, 2, 3]',
        ],
    )
    def test_idempotent_on_clean_json(self, text: str) -> None:
        assert strip_markdown_fences(text) == text
        assert strip_markdown_fences(strip_markdown_fences(text)) == text


# ---------------------------------------------------------------------------
# strip_json_comments
# ---------------------------------------------------------------------------


class TestStripJsonComments:
    def test_removes_line_comment(self) -> None:
        result = strip_json_comments('{"items":[] // no items found\n}')
        assert json.loads(result) == {"items": []}

    def test_removes_block_comment(self) -> None:
        result = strip_json_comments('{"items":[] /* empty */ }')
        assert json.loads(result) == {"items": []}

    def test_url_inside_string_preserved(self) -> None:
        text = '{"url":"https://example.com"}'
        assert strip_json_comments(text) == text

    def test_comment_markers_inside_strings_preserved(self) -> None:
        text = '{"note":"see /* not a comment */ and // neither","url":"https://example.com"}'
        result = strip_json_comments(text)
        assert result == text
        assert '"https://example.com"' in result

    def test_escaped_quote_does_not_end_string(self) -> None:
        text = '{"a":"say \\"hi\\" // still text"}'
        assert strip_json_comments(text) == text

    def test_unterminated_block_comment_swallows_rest(self) -> None:
        assert strip_json_comments('{"items":[] /* never closed') == '{"items":[] '


# ---------------------------------------------------------------------------
# fix_single_quotes
# ---------------------------------------------------------------------------


class TestFixSingleQuotes:
    def test_converts_keys_and_values(self) -> None:
        result = fix_single_quotes("{'items':[],'story':'hello'}")
        assert json.loads(result) == {"items": [], "story": "hello"}

    def test_double_quoted_json_unchanged(self) -> None:
        text = '{"items":[]}'
        assert fix_single_quotes(text) == text

    def test_escapes_double_quotes_inside_single_quoted_strings(self) -> None:
        result = fix_single_quotes("{'text':'the \"Payment API\" service'}")
        assert json.loads(result)["text"] == 'the "Payment API" service'

    def test_non_json_unchanged(self) -> None:
        assert fix_single_quotes("not json at all") == "not json at all"

    def test_single_quoted_array(self) -> None:
        assert json.loads(fix_single_quotes("['a', 'b']")) == ["a", "b"]


# ---------------------------------------------------------------------------
# sanitize_json_control_chars
# ---------------------------------------------------------------------------


class TestSanitizeJsonControlChars:
    def test_escapes_literal_newline(self) -> None:
        result = sanitize_json_control_chars('{"story":"line1\nline2"}')
        assert json.loads(result)["story"] == "line1\nline2"

    def test_escapes_literal_tab(self) -> None:
        result = sanitize_json_control_chars('{"story":"col1\tcol2"}')
        assert json.loads(result)["story"] == "col1\tcol2"

    def test_escapes_carriage_return(self) -> None:
        result = sanitize_json_control_chars('{"story":"line1\r\nline2"}')
        assert json.loads(result)["story"] == "line1\r\nline2"

    def test_existing_escapes_untouched(self) -> None:
        text = '{"story":"line1\\nline2"}'
        assert sanitize_json_control_chars(text) == text

    def test_newlines_outside_strings_untouched(self) -> None:
        text = '{\n  "items": []\n}'
        assert sanitize_json_control_chars(text) == text


# ---------------------------------------------------------------------------
# fix_json_quirks
# ---------------------------------------------------------------------------


class TestFixJsonQuirks:
    def test_missing_value_before_brace(self) -> None:
        assert json.loads(fix_json_quirks('{"key":}')) == {"key": None}

    def test_missing_value_before_comma(self) -> None:
        assert json.loads(fix_json_quirks('{"a":,"b":"ok"}')) == {"a": None, "b": "ok"}

    def test_trailing_comma_in_array(self) -> None:
        assert json.loads(fix_json_quirks('{"items":["a","b",]}')) == {"items": ["a", "b"]}

    def test_trailing_comma_in_object(self) -> None:
        assert json.loads(fix_json_quirks('{"a":"1","b":"2",}')) == {"a": "1", "b": "2"}

    def test_strips_bold_markers_in_values(self) -> None:
        result = fix_json_quirks('{"text":"the **Payment API** service"}')
        assert json.loads(result) == {"text": "the Payment API service"}


# ---------------------------------------------------------------------------
# close_json_structure
# ---------------------------------------------------------------------------


class TestCloseJsonStructure:
    def test_closes_object(self) -> None:
        assert json.loads(close_json_structure('{"items":[]')) == {"items": []}

    def test_closes_nested_in_lifo_order(self) -> None:
        result = close_json_structure('{"items":[{"id":"foo"')
        assert result == '{"items":[{"id":"foo"}]}'
        assert json.loads(result) == {"items": [{"id": "foo"}]}

    def test_closes_unterminated_string_first(self) -> None:
        result = close_json_structure('{"story":"truncated text')
        assert json.loads(result) == {"story": "truncated text"}

    def test_drops_trailing_comma(self) -> None:
        assert json.loads(close_json_structure('{"items":["a","b",')) == {"items": ["a", "b"]}

    def test_brackets_inside_strings_ignored(self) -> None:
        result = close_json_structure('{"story":"a [b] {c"')
        assert json.loads(result) == {"story": "a [b] {c"}

    def test_deeply_nested_input(self) -> None:
        depth = 5000
        result = close_json_structure("[" * depth)
        assert result == "[" * depth + "]" * depth

    @pytest.mark.parametrize(
        "cut",
        [
            '{"items":[{"id":"event_kind","value":"sys',
            '{"items":[{"id":"event_kind","value":"system_change"',
            '{"items":[{"id":"event_kind","value":"system_change"},',
            '{"items":[{"id":"event_kind","value":"system_change"}],"story":"What:\\nKeys',
            '{"items":[{"id":"event_kind","value":"system_change"}],"story":"What:\\nKeys are rotated"',
        ],
    )
    def test_truncated_documents_parse_after_closing(self, cut: str) -> None:
        parsed = json.loads(close_json_structure(cut))
        assert parsed["items"][0]["id"] == "event_kind"


# ---------------------------------------------------------------------------
# try_repair_json
# ---------------------------------------------------------------------------


class TestTryRepairJson:
    def test_valid_json_returned_as_is(self) -> None:
        assert try_repair_json('{"items":[]}') == '{"items":[]}'

    def test_closes_truncated_json(self) -> None:
        result = try_repair_json('{"items":[{"id":"foo"')
        assert result is not None
        assert json.loads(result) == {"items": [{"id": "foo"}]}

    def test_keeps_complete_items_of_truncated_list(self) -> None:
        result = try_repair_json('{"items":[{"id":"a"},{"id":"b')
        assert result == '{"items":[{"id":"a"},{"id":"b"}]}'
        assert json.loads(result) == {"items": [{"id": "a"}, {"id": "b"}]}

    def test_falls_back_to_second_to_last_object(self) -> None:
        # Closing fails, cutting at the last brace keeps the broken object
        result = try_repair_json('{"items":[{"id":"a"},{"id":"b" "c"}')
        assert result == '{"items":[{"id":"a"}]}'
        assert json.loads(result) == {"items": [{"id": "a"}]}

    def test_gives_up_after_two_cut_points(self) -> None:
        broken_tail = '{"items":[{"id":"a"},{"id":"b" "x"},{"id":"c" "y"},{"id":"d" "z"}'
        assert try_repair_json(broken_tail) is None

    def test_truncates_at_last_complete_object(self) -> None:
        # Closing alone cannot fix the dangling key
        result = try_repair_json('{"items":[{"id":"a"},{"id":"b"}],"story"')
        assert result is not None
        assert json.loads(result) == {"items": [{"id": "a"}, {"id": "b"}]}

    def test_unparseable_returns_none(self) -> None:
        assert try_repair_json("not json at all") is None


# ---------------------------------------------------------------------------
# regex_fallback_extraction
# ---------------------------------------------------------------------------


class TestRegexFallbackExtraction:
    def test_extracts_item(self) -> None:
        raw = (
            '{"items":[{"id":"event_kind","value":"system_change",'
            '"description":"API rotation","evidence":"rotating API keys"}]}'
        )
        result = regex_fallback_extraction(raw)
        assert len(result.items) == 1
        assert result.items[0].model_dump() == {
            "id": "event_kind",
            "value": "system_change",
            "description": "API rotation",
            "evidence": "rotating API keys",
        }

    def test_extracts_story_with_unescaped_newlines(self) -> None:
        result = regex_fallback_extraction('{"items":[],"story":"What:\\nSomething happened"}')
        assert result.story == "What:\nSomething happened"

    def test_gibberish_yields_empty_result(self) -> None:
        result = regex_fallback_extraction("totally broken output")
        assert result.items == []
        assert result.story is None

    def test_extracts_multiple_items_in_order(self) -> None:
        raw = (
            '{"items":[{"id":"event_kind","value":"system_change","description":"change","evidence":"change"},'
            '{"id":"timing","value":"now","description":"immediate","evidence":"right now"}]}'
        )
        result = regex_fallback_extraction(raw)
        assert [i.id for i in result.items] == ["event_kind", "timing"]

    def test_requires_strict_key_order(self) -> None:
        raw = '{"items":[{"value":"now","id":"timing","description":"d","evidence":"e"}]}'
        assert regex_fallback_extraction(raw).items == []


# ---------------------------------------------------------------------------
# robust_json_parse: full pipeline
# ---------------------------------------------------------------------------


class TestRobustJsonParse:
    def test_stage_order(self) -> None:
        assert [stage.__name__ for stage in REPAIR_STAGES] == [
            "strip_markdown_fences",
            "strip_json_comments",
            "fix_single_quotes",
            "sanitize_json_control_chars",
            "fix_json_quirks",
        ]

    def test_alias(self) -> None:
        assert parse_model_output is robust_json_parse

    def test_clean_json(self) -> None:
        result = robust_json_parse('{"items":[],"story":"What:\\nTest"}')
        assert result == {"items": [], "story": "What:\nTest"}

    def test_fenced_json(self) -> None:
        assert robust_json_parse('```json\n{"items":[],"story":"hello"}\n```')["items"] == []

    def test_single_quoted_json(self) -> None:
        assert robust_json_parse("{'items':[],'story':'hello'}") == {"items": [], "story": "hello"}

    def test_json_with_comments(self) -> None:
        assert robust_json_parse('{"items":[] // empty\n,"story":"hello"}')["story"] == "hello"

    def test_literal_newlines_in_strings(self) -> None:
        result = robust_json_parse('{"items":[],"story":"What:\nSomething\n\nWho:\nEveryone"}')
        assert result["story"] == "What:\nSomething\n\nWho:\nEveryone"

    def test_trailing_commas(self) -> None:
        assert robust_json_parse('{"items":["a","b",],"story":"test",}')["items"] == ["a", "b"]

    def test_truncated_response(self) -> None:
        raw = (
            '{"items":[{"id":"event_kind","value":"system_change",'
            '"description":"change","evidence":"we are changing'
        )
        result = robust_json_parse(raw)
        assert isinstance(result["items"], list)
        assert result["items"][0]["evidence"] == "we are changing"

    def test_fences_and_trailing_text(self) -> None:
        raw = '```json\n{"items":[],"story":"test"}\n```\nI hope this helps!'
        assert robust_json_parse(raw)["story"] == "test"

    def test_missing_values(self) -> None:
        result = robust_json_parse('{"items":[],"story":,"extra":}')
        assert result["items"] == []
        assert result["story"] is None

    def test_bold_markers_in_values(self) -> None:
        raw = (
            '{"items":[{"id":"what_happened","value":"**API** rotation",'
            '"description":"API change","evidence":"rotating **API** keys"}]}'
        )
        parsed_item = robust_json_parse(raw)["items"][0]
        assert parsed_item["value"] == "API rotation"
        assert parsed_item["evidence"] == "rotating API keys"

    def test_regex_fallback_for_unescaped_quotes(self) -> None:
        raw = (
            '{"items":[{"id":"what_happened","value":"the "Payment API" broke",'
            '"description":"API failure","evidence":"Payment API broke"}],'
            '"story":"What:\\nThe Payment API broke"}'
        )
        payload, used_fallback = parse_with_fallback_flag(raw)
        assert used_fallback is True
        assert payload["story"] == "What:\nThe Payment API broke"
        assert payload["items"] == []

    def test_story_object_passed_through(self) -> None:
        result = robust_json_parse('{"items":[],"story":{"headline":"Test","content":["line1","line2"]}}')
        assert result["story"] == {"headline": "Test", "content": ["line1", "line2"]}

    @pytest.mark.parametrize(
        "raw",
        ["completely broken garbage", "random garbage output with no structure at all", ""],
    )
    def test_total_failure_raises(self, raw: str) -> None:
        with pytest.raises(JsonRepairError, match=PARSE_FAILURE_MESSAGE):
            robust_json_parse(raw)

    def test_failure_is_a_value_error(self) -> None:
        with pytest.raises(ValueError):
            robust_json_parse("completely broken garbage")

    def test_non_object_json_goes_to_fallback(self) -> None:
        with pytest.raises(JsonRepairError):
            robust_json_parse("[1, 2, 3]")

    def test_clean_parse_does_not_flag_fallback(self) -> None:
        _, used_fallback = parse_with_fallback_flag('{"items":[]}')
        assert used_fallback is False
