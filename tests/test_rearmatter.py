"""Tests for rearmatter extraction and validation."""

from __future__ import annotations

import allure
import pytest

from meshbus.models import RearmatterError
from meshbus.rearmatter import (
    append_rearmatter,
    extract_rearmatter,
    format_rearmatter,
    parse_rearmatter,
    requires_section_breakdown,
)

pytestmark = [
    allure.epic("Message Bus"),
    allure.feature("Rearmatter Validation"),
]


class TestExtract:
    def test_extracts_trailing_block(self) -> None:
        body = "# Done\n\nImplementation done.\n\n---\nrearmatter:\n  confidence: 0.85\n  grade: B\n---"

        extracted = extract_rearmatter(body)

        assert extracted.content == "# Done\n\nImplementation done."
        assert extracted.rearmatter == "  confidence: 0.85\n  grade: B"

    def test_body_without_block_is_unchanged(self) -> None:
        body = "# Done\n\n---\n\nmore text"

        extracted = extract_rearmatter(body)

        assert extracted.content == body
        assert extracted.rearmatter is None


class TestParse:
    def test_valid_block(self) -> None:
        result = parse_rearmatter("  confidence: 0.85\n  grade: b\n")

        assert result.valid
        assert result.errors == []
        assert result.warnings == []
        assert result.data == {"confidence": 0.85, "grade": "B"}
        assert result.requires_sections is False

    def test_invalid_yaml_is_single_structural_error(self) -> None:
        result = parse_rearmatter("confidence: [0.5\n")

        assert not result.valid
        assert len(result.errors) == 1
        assert "Failed to parse" in result.errors[0]
        assert result.data is None

    def test_non_mapping_is_structural_error(self) -> None:
        result = parse_rearmatter("- just\n- a list\n")

        assert not result.valid
        assert result.errors == ["Rearmatter must be a mapping"]

    def test_strict_mode_raises_on_structural_error(self) -> None:
        with pytest.raises(RearmatterError, match="mapping"):
            parse_rearmatter("plain text", strict=True)

    @pytest.mark.parametrize("value", ["2.5", "-0.1", "high", "true"])
    def test_confidence_out_of_range_or_non_numeric(self, value: str) -> None:
        result = parse_rearmatter(f"confidence: {value}\n")

        assert not result.valid
        assert any("Confidence" in error for error in result.errors)

    def test_unknown_grade(self) -> None:
        result = parse_rearmatter("grade: E\n")

        assert not result.valid
        assert "Grade must be one of" in result.errors[0]

    def test_low_confidence_without_sections_warns(self) -> None:
        result = parse_rearmatter("confidence: 0.5\n")

        assert result.valid
        assert result.requires_sections is True
        assert any("no confidence_sections" in warning for warning in result.warnings)

    def test_poor_grade_without_sections_warns(self) -> None:
        result = parse_rearmatter("grade: D\n")

        assert result.valid
        assert any("no grade_sections" in warning for warning in result.warnings)

    def test_sections_provided_but_not_required_warns(self) -> None:
        result = parse_rearmatter(
            "confidence: 0.9\ngrade: A\nconfidence_sections:\n  intro: 0.9\n"
            "grade_sections:\n  intro: A\n",
        )

        assert result.valid
        assert sum("provided but not required" in warning for warning in result.warnings) == 2

    def test_section_entries_validated_individually(self) -> None:
        result = parse_rearmatter(
            "confidence: 0.4\nconfidence_sections:\n  intro: 0.9\n  body: 1.4\n"
            "grade: F\ngrade_sections:\n  intro: A\n  body: Z\n",
        )

        assert not result.valid
        assert len(result.errors) == 2
        assert any("confidence_sections['body']" in error for error in result.errors)
        assert any("grade_sections['body']" in error for error in result.errors)
        assert result.warnings == []

    def test_line_numbered_items(self) -> None:
        result = parse_rearmatter(
            "speculation:\n  12: might be cached\n  abc: not a line\n"
            "gaps:\n  0: zero line\n  4: '   '\n"
            "assumptions:\n  7: 42\n",
        )

        assert not result.valid
        assert result.errors == ["assumptions[7]: description must be a string, got int"]
        assert len(result.warnings) == 3

    def test_spawn_requires_fields(self) -> None:
        result = parse_rearmatter("spawn:\n  mesh: research\n  reason: ''\n")

        assert not result.valid
        assert "spawn.reason cannot be empty" in result.errors
        assert "spawn.context is required" in result.errors

    def test_spawn_optional_fields(self) -> None:
        result = parse_rearmatter(
            "spawn:\n  mesh: research\n  reason: need sources\n  context: topic X\n"
            "  lens: [history, 3]\n  priority: urgent\n  entity_refs: notalist\n",
        )

        assert not result.valid
        assert "spawn.lens[1] must be a string, got int" in result.errors
        assert any("spawn.priority" in error for error in result.errors)
        assert "spawn.entity_refs must be a list, got str" in result.errors

    def test_valid_spawn(self) -> None:
        result = parse_rearmatter(
            "spawn:\n  mesh: research\n  reason: need sources\n  context: topic X\n"
            "  lens: [history]\n  priority: HIGH\n  entity_refs: [doc-1]\n",
        )

        assert result.valid

    def test_unknown_fields_only_warn(self) -> None:
        result = parse_rearmatter("confidence: 0.9\nmood: upbeat\n")

        assert result.valid
        assert result.warnings == ["Unknown rearmatter field: 'mood'"]


@pytest.mark.parametrize("grade", ["A", "B", "C", "D", "F", None])
def test_low_confidence_always_requires_sections(grade: str | None) -> None:
    assert requires_section_breakdown(0.69, grade)


@pytest.mark.parametrize("confidence", [0.0, 0.7, 1.0, None])
@pytest.mark.parametrize("grade", ["D", "f"])
def test_poor_grade_always_requires_sections(confidence: float | None, grade: str) -> None:
    assert requires_section_breakdown(confidence, grade)


@pytest.mark.parametrize("confidence", [0.7, 0.95, 1])
@pytest.mark.parametrize("grade", ["A", "B", "c"])
def test_good_values_do_not_require_sections(confidence: float, grade: str) -> None:
    assert not requires_section_breakdown(confidence, grade)


def test_format_then_parse_reproduces_values() -> None:
    data = {
        "confidence": 0.6,
        "grade": "B",
        "confidence_sections": {"analysis": 0.5},
        "gaps": {3: "no benchmark"},
    }

    result = parse_rearmatter(format_rearmatter(data))

    assert result.valid
    assert result.data == data


def test_appended_block_is_extractable() -> None:
    body = append_rearmatter("Report body\n", {"confidence": 0.9, "grade": "A"})

    extracted = extract_rearmatter(body)

    assert extracted.content == "Report body"
    assert extracted.rearmatter is not None
    assert parse_rearmatter(extracted.rearmatter).data == {"confidence": 0.9, "grade": "A"}
