"""Unit tests for model-output JSON parsing."""

import pytest

from ndaflow.utils.json_parser import extract_list, parse_json_safely, strip_code_fences


class TestParseJsonSafely:
    """Test suite for parse_json_safely."""

    def test_plain_object(self):
        assert parse_json_safely('{"gaps": []}') == {"gaps": []}

    def test_code_fences(self):
        assert strip_code_fences("```json\n{\"a\": 1}\n```") == '{"a": 1}'
        assert parse_json_safely("```\n[1, 2]\n```") == [1, 2]

    def test_surrounding_prose(self):
        text = 'Here is the analysis:\n{"assessments": [{"chunk_id": "a"}]}\nLet me know if you need more.'

        assert parse_json_safely(text) == {"assessments": [{"chunk_id": "a"}]}

    def test_trailing_data_after_value(self):
        assert parse_json_safely('{"a": 1} {"b": 2}') == {"a": 1}

    @pytest.mark.parametrize("text", [None, "", "no json here", "{broken"])
    def test_unparseable_returns_none(self, text):
        assert parse_json_safely(text) is None


class TestExtractList:
    def test_from_object(self):
        assert extract_list({"gaps": [1]}, "gaps") == [1]

    def test_from_bare_list(self):
        assert extract_list([1, 2], "gaps") == [1, 2]

    @pytest.mark.parametrize("payload", [None, {"gaps": "none"}, {"other": []}, "text"])
    def test_missing_or_wrong_type(self, payload):
        assert extract_list(payload, "gaps") == []
