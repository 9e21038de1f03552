"""Tests for lenient JSON parsing of planner output."""

import pytest

from sheet_agent.utils.json_repair import (
    JsonRepairError,
    close_truncated,
    extract_balanced,
    lenient_parse,
)


class TestLenientParse:
    """Test suite for lenient_parse."""

    @pytest.mark.unit
    def test_clean_json_needs_no_repair(self) -> None:
        result = lenient_parse('{"steps": []}')
        assert result.value == {"steps": []}
        assert not result.repaired

    @pytest.mark.unit
    def test_code_fence(self) -> None:
        result = lenient_parse('```json\n{"action": "complete"}\n```')
        assert result.value == {"action": "complete"}
        assert result.repairs == ["strip code fences"]

    @pytest.mark.unit
    def test_prose_and_trailing_comma(self) -> None:
        """Test surrounding prose is cut and trailing commas are dropped."""
        result = lenient_parse('Sure! Here you go: {"steps": [1, 2,],} Let me know.')
        assert result.value == {"steps": [1, 2]}
        assert result.repairs == [
            "extract first JSON segment",
            "tidy labels and trailing commas",
        ]

    @pytest.mark.unit
    def test_single_quotes(self) -> None:
        result = lenient_parse("{'action': 'respond', 'response': 'ok'}")
        assert result.value == {"action": "respond", "response": "ok"}
        assert "single to double quotes" in result.repairs

    @pytest.mark.unit
    def test_truncated_output_is_closed(self) -> None:
        """Test a response cut off mid-string gets closed."""
        result = lenient_parse('{"steps": [{"id": "s1", "description": "Read the da', truncated=True)
        assert result.value == {"steps": [{"id": "s1", "description": "Read the da"}]}
        assert result.repairs[-1] == "close truncated brackets"

    @pytest.mark.unit
    def test_garbage_raises(self) -> None:
        with pytest.raises(JsonRepairError, match="Could not parse"):
            lenient_parse("I cannot produce a plan for this request.")


class TestRepairSteps:
    """Test suite for the individual repair functions."""

    @pytest.mark.unit
    def test_extract_balanced_ignores_brackets_in_strings(self) -> None:
        text = 'prefix {"a": "}"} suffix {"b": 1}'
        assert extract_balanced(text) == '{"a": "}"}'

    @pytest.mark.unit
    def test_close_truncated_drops_dangling_separator(self) -> None:
        assert close_truncated('{"a": [1, 2,') == '{"a": [1, 2]}'
