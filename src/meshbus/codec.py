"""Filename protocol for message files.

Format: ``MMDDHHMMSS-<type>-<fromName>><toName>-<id>.md``. Names are agent base
names (the last segment of a ``group/name`` path). The year is not stored, so
decoding assumes the current year. Recipient and id are split at the last
``-``, so ids written by this package never contain one. Files from other
writers may; readers take ``to`` from the frontmatter when it is present.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime

from meshbus.common import utc_now
from meshbus.models import FilenameDecodeError

MESSAGE_SUFFIX = ".md"
ROUTE_SEPARATOR = ">"
TIMESTAMP_FORMAT = "%m%d%H%M%S"

# Types that contain the field delimiter; matched longest first when decoding.
KNOWN_COMPOUND_TYPES = (
    "ask-response",
    "ask-human",
    "task-complete",
    "prompt-system",
)

_TIMESTAMP_RE = re.compile(r"^[0-9]{10}$")


@dataclass(slots=True, frozen=True)
class ParsedFilename:
    """Identity recovered from a message filename."""

    timestamp: datetime
    msg_type: str
    from_name: str
    to_name: str
    msg_id: str


def base_name(agent_id: str) -> str:
    """Return the trailing segment of a ``group/name`` agent path."""

    return agent_id.rsplit("/", 1)[-1]


def build_filename(
    timestamp: datetime,
    from_agent: str,
    to_agent: str,
    msg_type: str,
    msg_id: str,
) -> str:
    """Encode message identity into its on-disk filename.

    Raises ``ValueError`` if the type, names or id would not decode back to the
    same values, e.g. an id containing ``-`` or a name containing ``>``.
    """

    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(UTC)
    stamp = timestamp.strftime(TIMESTAMP_FORMAT)
    from_name = base_name(from_agent)
    to_name = base_name(to_agent)
    filename = (
        f"{stamp}-{msg_type}-{from_name}{ROUTE_SEPARATOR}{to_name}-{msg_id}{MESSAGE_SUFFIX}"
    )

    try:
        parsed = parse_filename(filename, now=timestamp)
    except FilenameDecodeError as error:
        raise ValueError(f"Cannot encode message identity: {error}") from error
    decoded = (parsed.msg_type, parsed.from_name, parsed.to_name, parsed.msg_id)
    if decoded != (msg_type, from_name, to_name, msg_id):
        raise ValueError(
            "Message identity does not survive the filename encoding: "
            f"type={msg_type!r} from={from_name!r} to={to_name!r} id={msg_id!r}",
        )
    return filename


def parse_filename(filename: str, *, now: datetime | None = None) -> ParsedFilename:
    """Decode a message filename, raising ``FilenameDecodeError`` if malformed."""

    if not filename.endswith(MESSAGE_SUFFIX):
        raise FilenameDecodeError(f"Not a message file: {filename!r}")
    stem = filename[: -len(MESSAGE_SUFFIX)]

    stamp, sep, rest = stem.partition("-")
    if not sep or not _TIMESTAMP_RE.match(stamp):
        raise FilenameDecodeError(f"Invalid timestamp prefix in filename: {filename!r}")

    if rest.count(ROUTE_SEPARATOR) != 1:
        raise FilenameDecodeError(
            f"Filename must contain exactly one {ROUTE_SEPARATOR!r}: {filename!r}",
        )
    head, tail = rest.split(ROUTE_SEPARATOR)
    msg_type, from_name = _split_type_and_sender(head, filename)

    to_name, sep, msg_id = tail.rpartition("-")
    if not sep or not to_name or not msg_id:
        raise FilenameDecodeError(f"Missing recipient or message id in filename: {filename!r}")

    year = (now or utc_now()).year
    try:
        timestamp = datetime.strptime(f"{year}{stamp}", "%Y" + TIMESTAMP_FORMAT).replace(
            tzinfo=UTC,
        )
    except ValueError as error:
        raise FilenameDecodeError(
            f"Invalid timestamp {stamp!r} in filename: {filename!r}",
        ) from error

    return ParsedFilename(
        timestamp=timestamp,
        msg_type=msg_type,
        from_name=from_name,
        to_name=to_name,
        msg_id=msg_id,
    )


def _split_type_and_sender(head: str, filename: str) -> tuple[str, str]:
    for known in sorted(KNOWN_COMPOUND_TYPES, key=len, reverse=True):
        prefix = f"{known}-"
        if head.startswith(prefix) and len(head) > len(prefix):
            return known, head[len(prefix) :]
    msg_type, sep, from_name = head.partition("-")
    if not sep or not msg_type or not from_name:
        raise FilenameDecodeError(f"Missing type or sender in filename: {filename!r}")
    return msg_type, from_name


def identity_matches(candidate: str, agent_id: str) -> bool:
    """Compare agent identities, accepting base-name and ``group/name`` forms.

    ``team/worker`` matches ``team/worker`` and ``worker``; it does not match
    ``other/worker`` or ``team/reviewer``. A bare group name such as ``team``
    is not an identity; the consumer treats it as addressing the whole group.
    """

    candidate = candidate.strip()
    if not candidate:
        return False
    if candidate == agent_id:
        return True
    if "/" not in candidate:
        return candidate == base_name(agent_id)
    if "/" not in agent_id:
        return base_name(candidate) == agent_id
    return False
