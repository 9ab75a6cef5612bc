"""Rearmatter: the self-assessment block agents append to message bodies.

A message body may end with::

    ---
    rearmatter:
      confidence: 0.6
      grade: B
      confidence_sections:
        analysis: 0.5
    ---

Validation is advisory. Callers log the result and never block delivery on it.
"""

from __future__ import annotations

import re
import textwrap
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import yaml

from meshbus.models import RearmatterError

GRADES = ("A", "B", "C", "D", "F")
GRADE_THRESHOLD = "C"
CONFIDENCE_THRESHOLD = 0.7
SPAWN_PRIORITIES = ("high", "normal", "low")
LINE_NUMBERED_FIELDS = ("speculation", "gaps", "assumptions")
VALID_FIELDS = (
    "confidence",
    "confidence_sections",
    "grade",
    "grade_sections",
    "speculation",
    "gaps",
    "assumptions",
    "spawn",
)

_BLOCK_RE = re.compile(r"\n---[ \t]*\nrearmatter:[ \t]*\n(.*?)\n---\s*\Z", re.DOTALL)


@dataclass(slots=True)
class ExtractedBody:
    """Message body split into content and the raw rearmatter YAML."""

    content: str
    rearmatter: str | None


@dataclass(slots=True)
class RearmatterResult:
    """Aggregated outcome of rearmatter validation."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    data: dict[str, Any] | None = None
    requires_sections: bool = False


def extract_rearmatter(body: str) -> ExtractedBody:
    """Split a trailing rearmatter block off a message body."""

    match = _BLOCK_RE.search(body)
    if match is None:
        return ExtractedBody(content=body, rearmatter=None)
    return ExtractedBody(content=body[: match.start()].strip(), rearmatter=match.group(1))


def parse_rearmatter(text: str, *, strict: bool = False) -> RearmatterResult:
    """Parse and validate rearmatter YAML (the part below the ``rearmatter:`` key).

    Structural failures (invalid YAML, non-mapping top level) produce a single
    error, or raise ``RearmatterError`` when ``strict`` is set. Field-level
    problems are collected into ``errors`` and ``warnings``; only errors make
    the result invalid.
    """

    try:
        data = yaml.safe_load(textwrap.dedent(text))
    except yaml.YAMLError as error:
        return _structural_failure(f"Failed to parse rearmatter YAML: {error}", strict=strict)
    if not isinstance(data, dict):
        return _structural_failure("Rearmatter must be a mapping", strict=strict)

    errors: list[str] = []
    warnings: list[str] = []
    confidence = data.get("confidence")
    grade = data.get("grade")

    if "confidence" in data:
        errors.extend(_confidence_errors(confidence))
    if "grade" in data:
        grade_errors = _grade_errors(grade)
        errors.extend(grade_errors)
        if not grade_errors and isinstance(grade, str):
            data["grade"] = grade.upper()

    requires = requires_section_breakdown(confidence, grade)

    if "confidence_sections" in data:
        errors.extend(
            _section_errors(data["confidence_sections"], "confidence_sections", _confidence_errors),
        )
        if not requires:
            warnings.append(
                "confidence_sections provided but not required "
                f"(confidence >= {CONFIDENCE_THRESHOLD} and grade >= {GRADE_THRESHOLD})",
            )
    elif requires and "confidence" in data:
        warnings.append(
            f"Confidence below threshold ({CONFIDENCE_THRESHOLD}) "
            "but no confidence_sections provided",
        )

    if "grade_sections" in data:
        errors.extend(_section_errors(data["grade_sections"], "grade_sections", _grade_errors))
        if not requires:
            warnings.append(
                "grade_sections provided but not required "
                f"(confidence >= {CONFIDENCE_THRESHOLD} and grade >= {GRADE_THRESHOLD})",
            )
    elif requires and "grade" in data:
        warnings.append(f"Grade below threshold ({GRADE_THRESHOLD}) but no grade_sections provided")

    for field_name in LINE_NUMBERED_FIELDS:
        if field_name in data:
            item_errors, item_warnings = _line_numbered_issues(data[field_name], field_name)
            errors.extend(item_errors)
            warnings.extend(item_warnings)

    if "spawn" in data:
        errors.extend(_spawn_errors(data["spawn"]))

    warnings.extend(
        f"Unknown rearmatter field: {key!r}" for key in data if key not in VALID_FIELDS
    )

    return RearmatterResult(
        valid=not errors,
        errors=errors,
        warnings=warnings,
        data=data,
        requires_sections=requires,
    )


def requires_section_breakdown(confidence: object, grade: object) -> bool:
    """Whether a per-section breakdown is mandatory for these top-level values.

    True when confidence is below 0.7 or the grade is worse than C. Values of
    the wrong type do not trigger the requirement.
    """

    number = _as_number(confidence)
    if number is not None and number < CONFIDENCE_THRESHOLD:
        return True
    if isinstance(grade, str) and grade.upper() in GRADES:
        return GRADES.index(grade.upper()) > GRADES.index(GRADE_THRESHOLD)
    return False


def format_rearmatter(data: dict[str, Any]) -> str:
    """Serialize rearmatter data back to YAML."""

    return yaml.safe_dump(
        data,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=float("inf"),
    )


def append_rearmatter(content: str, data: dict[str, Any]) -> str:
    """Append a rearmatter block to message content."""

    block = textwrap.indent(format_rearmatter(data), "  ").rstrip("\n")
    return f"{content.rstrip()}\n\n---\nrearmatter:\n{block}\n---"


def _structural_failure(message: str, *, strict: bool) -> RearmatterResult:
    if strict:
        raise RearmatterError(message)
    return RearmatterResult(valid=False, errors=[message])


def _as_number(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


def _type_name(value: object) -> str:
    return type(value).__name__


def _confidence_errors(value: object) -> list[str]:
    number = _as_number(value)
    if number is None:
        return [f"Confidence must be a number, got {_type_name(value)}"]
    if not 0.0 <= number <= 1.0:
        return [f"Confidence must be between 0.0 and 1.0, got {value}"]
    return []


def _grade_errors(value: object) -> list[str]:
    if not isinstance(value, str):
        return [f"Grade must be a string, got {_type_name(value)}"]
    if value.upper() not in GRADES:
        return [f"Grade must be one of [{', '.join(GRADES)}], got {value!r}"]
    return []


def _section_errors(
    sections: object,
    field_name: str,
    check: Callable[[object], list[str]],
) -> list[str]:
    if not isinstance(sections, dict):
        return [f"{field_name} must be a mapping of section names to values"]
    errors: list[str] = []
    for section, value in sections.items():
        problems = check(value)
        if problems:
            errors.append(f"{field_name}[{section!r}]: {', '.join(problems)}")
    return errors


def _line_numbered_issues(items: object, field_name: str) -> tuple[list[str], list[str]]:
    if not isinstance(items, dict):
        return [f"{field_name} must be a mapping of line numbers to descriptions"], []

    errors: list[str] = []
    warnings: list[str] = []
    for line_key, description in items.items():
        if not _is_positive_line_number(line_key):
            warnings.append(f"{field_name}[{line_key!r}]: line number should be a positive integer")
        if not isinstance(description, str):
            errors.append(
                f"{field_name}[{line_key!r}]: description must be a string, "
                f"got {_type_name(description)}",
            )
        elif not description.strip():
            warnings.append(f"{field_name}[{line_key!r}]: description is empty")
    return errors, warnings


def _is_positive_line_number(key: object) -> bool:
    if isinstance(key, bool):
        return False
    if isinstance(key, int):
        return key >= 1
    if isinstance(key, str):
        try:
            return int(key.strip()) >= 1
        except ValueError:
            return False
    return False


def _spawn_errors(spawn: object) -> list[str]:
    if not isinstance(spawn, dict):
        return ["spawn must be a mapping"]

    errors: list[str] = []
    for required in ("mesh", "reason", "context"):
        value = spawn.get(required)
        if value is None:
            errors.append(f"spawn.{required} is required")
        elif not isinstance(value, str):
            errors.append(f"spawn.{required} must be a string, got {_type_name(value)}")
        elif not value.strip():
            errors.append(f"spawn.{required} cannot be empty")

    for list_field in ("lens", "entity_refs"):
        if list_field not in spawn:
            continue
        values = spawn[list_field]
        if not isinstance(values, list):
            errors.append(f"spawn.{list_field} must be a list, got {_type_name(values)}")
            continue
        errors.extend(
            f"spawn.{list_field}[{index}] must be a string, got {_type_name(item)}"
            for index, item in enumerate(values)
            if not isinstance(item, str)
        )

    if "priority" in spawn:
        priority = spawn["priority"]
        if not isinstance(priority, str):
            errors.append(f"spawn.priority must be a string, got {_type_name(priority)}")
        elif priority.lower() not in SPAWN_PRIORITIES:
            errors.append(
                f"spawn.priority must be one of [{', '.join(SPAWN_PRIORITIES)}], "
                f"got {priority!r}",
            )
    return errors
