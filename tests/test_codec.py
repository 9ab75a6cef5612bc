from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from meshbus.codec import base_name, build_filename, identity_matches, parse_filename
from meshbus.models import FilenameDecodeError

pytestmark = [
    allure.epic("Message Bus"),
    allure.feature("Filename Protocol"),
]

_NOW = datetime(2026, 10, 17, 9, 0, 0, tzinfo=UTC)


def test_build_filename_uses_base_names_and_yearless_prefix() -> None:
    stamp = datetime(2026, 3, 4, 5, 6, 7, tzinfo=UTC)

    filename = build_filename(stamp, "core/core", "team/worker", "task", "abc123")

    assert filename == "0304050607-task-core>worker-abc123.md"


@pytest.mark.parametrize(
    ("from_agent", "to_agent", "msg_type", "msg_id"),
    [
        ("core/core", "team/worker", "task", "abc123"),
        ("planner", "research-807055/interviewer", "ask", "f00d"),
        ("a/b", "c", "delta", "1"),
    ],
)
def test_parse_filename_recovers_identity(
    from_agent: str,
    to_agent: str,
    msg_type: str,
    msg_id: str,
) -> None:
    stamp = datetime(2026, 12, 31, 23, 59, 58, tzinfo=UTC)

    parsed = parse_filename(build_filename(stamp, from_agent, to_agent, msg_type, msg_id), now=_NOW)

    assert parsed.msg_type == msg_type
    assert parsed.from_name == base_name(from_agent)
    assert parsed.to_name == base_name(to_agent)
    assert parsed.msg_id == msg_id
    assert parsed.timestamp == stamp


def test_parse_filename_assumes_current_year() -> None:
    stamp = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)
    filename = build_filename(stamp, "core", "worker", "task", "x1")

    parsed = parse_filename(filename, now=_NOW)

    assert parsed.timestamp == datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)


def test_parse_filename_keeps_known_hyphenated_types() -> None:
    parsed = parse_filename("0101000000-task-complete-core>worker-id9.md", now=_NOW)

    assert parsed.msg_type == "task-complete"
    assert parsed.from_name == "core"


def test_parse_filename_allows_hyphenated_recipient() -> None:
    parsed = parse_filename("0101000000-ask-core>agent-y-id9.md", now=_NOW)

    assert parsed.to_name == "agent-y"
    assert parsed.msg_id == "id9"


@pytest.mark.parametrize(
    "filename",
    [
        "notes.txt",
        "123-task-core>worker-id.md",
        "abcdefghij-task-core>worker-id.md",
        "0101000000-task-core-worker-id.md",
        "0101000000-task-core>>worker-id.md",
        "0101000000-task-core>worker.md",
        "0101000000-task>worker-id.md",
        "1301000000-task-core>worker-id.md",
        ".0101000000-task-core>worker-id.md.tmp",
    ],
)
def test_parse_filename_rejects_malformed_names(filename: str) -> None:
    with pytest.raises(FilenameDecodeError):
        parse_filename(filename, now=_NOW)


def test_identity_matches_full_and_base_forms() -> None:
    assert identity_matches("mesh-x/agent-y", "mesh-x/agent-y")
    assert identity_matches("agent-y", "mesh-x/agent-y")
    assert identity_matches("team/worker", "worker")
    assert not identity_matches("mesh-x/agent-z", "mesh-x/agent-y")
    assert not identity_matches("agent-z", "mesh-x/agent-y")
    assert not identity_matches("other/agent-y", "mesh-x/agent-y")
    assert not identity_matches("", "mesh-x/agent-y")


@pytest.mark.parametrize(
    ("from_agent", "to_agent", "msg_type", "msg_id"),
    [
        ("core/core", "team/worker", "task", "a1b2-c3d4"),
        ("core/core", "team/worker", "custom-type", "m1"),
        ("core/core", "team/work>er", "task", "m1"),
        ("complete-bot", "team/worker", "task", "m1"),
        ("core/core", "team/worker", "task", ""),
    ],
)
def test_build_filename_rejects_identity_that_would_not_decode(
    from_agent: str,
    to_agent: str,
    msg_type: str,
    msg_id: str,
) -> None:
    with pytest.raises(ValueError, match="identity"):
        build_filename(_NOW, from_agent, to_agent, msg_type, msg_id)


def test_build_filename_accepts_hyphenated_names_and_known_types() -> None:
    filename = build_filename(_NOW, "mesh-a/agent-x", "mesh-b/agent-y", "ask-human", "q1")

    assert filename == "1017090000-ask-human-agent-x>agent-y-q1.md"
