"""Message writer and reader for the shared log directory."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from meshbus.codec import build_filename, identity_matches, parse_filename
from meshbus.common import atomic_write_text, from_iso, to_iso, utc_now
from meshbus.config import BusSettings
from meshbus.models import (
    LIFECYCLE_TRANSITIONS,
    FilenameDecodeError,
    Message,
    MessageFormatError,
    MessageFrontmatter,
)
from meshbus.rearmatter import extract_rearmatter, parse_rearmatter
from meshbus.sinks import (
    ActivitySink,
    NullActivitySink,
    NullStateTransitionSink,
    StateTransitionSink,
)

logger = logging.getLogger(__name__)

_MESSAGE_RE = re.compile(r"\A---\n(.*?)\n---\n(.*)\Z", re.DOTALL)

__all__ = [
    "MessageStore",
    "build_filename",
    "format_message",
    "message_timestamp",
    "parse_filename",
    "parse_message",
]


def format_message(frontmatter: MessageFrontmatter, body: str) -> str:
    """Render frontmatter and body into the on-disk message text."""

    header = "\n".join(f"{key}: {value}" for key, value in frontmatter.fields())
    return f"---\n{header}\n---\n\n{body}"


def parse_message(text: str, path: Path) -> Message:
    """Parse message text read from ``path``.

    Raises ``MessageFormatError`` if the frontmatter block is missing or no
    timestamp can be recovered from either the frontmatter or the filename.
    """

    match = _MESSAGE_RE.match(text)
    if match is None:
        raise MessageFormatError(f"Invalid message format: {path}")

    raw: dict[str, str] = {}
    for line in match.group(1).splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip():
            raw[key.strip()] = value.strip()
    frontmatter = MessageFrontmatter.from_mapping(raw)

    body = match.group(2)
    if body.startswith("\n"):
        body = body[1:]

    return Message(
        path=path,
        frontmatter=frontmatter,
        body=body,
        timestamp=message_timestamp(frontmatter, path.name),
    )


def message_timestamp(frontmatter: MessageFrontmatter, filename: str) -> datetime:
    """Ordering timestamp: frontmatter value, or the year-less filename prefix."""

    if frontmatter.timestamp:
        try:
            return from_iso(frontmatter.timestamp)
        except ValueError:
            logger.debug("Unparsable frontmatter timestamp in %s", filename)
    try:
        return parse_filename(filename).timestamp
    except FilenameDecodeError as error:
        raise MessageFormatError(f"No usable timestamp for {filename}") from error


class MessageStore:
    """Writes messages into the shared log directory and reads them back."""

    def __init__(
        self,
        settings: BusSettings | None = None,
        *,
        activity_sink: ActivitySink | None = None,
        state_sink: StateTransitionSink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or BusSettings()
        self.activity_sink = activity_sink or NullActivitySink()
        self.state_sink = state_sink or NullStateTransitionSink()
        self._clock = clock

    @property
    def log_dir(self) -> Path:
        return self.settings.log_dir

    def write(  # noqa: PLR0913
        self,
        from_agent: str,
        to_agent: str,
        msg_type: str,
        msg_id: str,
        body: str,
        frontmatter: dict[str, str] | None = None,
        *,
        dual_write: bool | None = None,
        legacy_path: Path | None = None,
    ) -> Path:
        """Persist one message and return its path in the log directory.

        Rearmatter validation, activity tracking, lifecycle transitions and the
        legacy mirror are all best-effort. Only the primary write can raise:
        ``ValueError`` when the identity cannot be encoded in a filename (for
        example an id containing ``-``), ``OSError`` when the file cannot be
        written.
        """

        timestamp = self._clock()
        path = self.log_dir / build_filename(timestamp, from_agent, to_agent, msg_type, msg_id)

        if self.settings.writer.validate_rearmatter:
            self._log_rearmatter(msg_id=msg_id, body=body)

        header = MessageFrontmatter(
            to_agent=to_agent,
            from_agent=from_agent,
            msg_type=msg_type,
            msg_id=msg_id,
            timestamp=to_iso(timestamp),
            extra=dict(frontmatter or {}),
        )
        text = format_message(header, body)
        atomic_write_text(path, text)
        logger.info(
            "Message written: from=%s to=%s type=%s id=%s path=%s",
            from_agent,
            to_agent,
            msg_type,
            msg_id,
            path,
        )

        self._notify_activity(from_agent)
        self._request_transition(from_agent, msg_type)

        if dual_write is None:
            dual_write = self.settings.writer.dual_write
        if dual_write:
            self._mirror_to_legacy(text=text, legacy_path=legacy_path)

        return path

    def read_message(self, path: Path) -> Message:
        """Read and parse one message file."""

        return parse_message(path.read_text("utf-8"), path)

    def list_messages(
        self,
        *,
        agent: str | None = None,
        msg_type: str | None = None,
        since: datetime | None = None,
    ) -> list[Message]:
        """Messages in the log, oldest first, optionally filtered.

        ``agent`` matches either the sender or the recipient. Files that are not
        well-formed messages are skipped.
        """

        if not self.log_dir.is_dir():
            return []

        messages: list[Message] = []
        for path in sorted(self.log_dir.iterdir()):
            try:
                parse_filename(path.name)
            except FilenameDecodeError:
                continue
            try:
                message = self.read_message(path)
            except (MessageFormatError, UnicodeDecodeError) as error:
                logger.warning("Skipping malformed message %s: %s", path.name, error)
                continue
            except OSError as error:
                logger.warning("Could not read %s: %s", path, error)
                continue
            if agent is not None and not (
                identity_matches(message.to_agent, agent)
                or identity_matches(message.from_agent, agent)
            ):
                continue
            if msg_type is not None and message.msg_type != msg_type:
                continue
            if since is not None and message.timestamp <= since:
                continue
            messages.append(message)

        messages.sort(key=Message.sort_key)
        return messages

    def _log_rearmatter(self, *, msg_id: str, body: str) -> None:
        try:
            block = extract_rearmatter(body).rearmatter
            if block is None:
                return
            result = parse_rearmatter(block)
        except Exception:  # noqa: BLE001
            logger.debug("Rearmatter check failed for %s", msg_id, exc_info=True)
            return
        if not result.valid:
            logger.warning(
                "Rearmatter validation failed for %s: %s",
                msg_id,
                "; ".join(result.errors),
            )
        for warning in result.warnings:
            logger.debug("Rearmatter warning for %s: %s", msg_id, warning)

    def _notify_activity(self, agent_id: str) -> None:
        try:
            self.activity_sink.record_activity(agent_id)
        except Exception as error:  # noqa: BLE001
            logger.warning("Activity update failed for %s: %s", agent_id, error)

    def _request_transition(self, agent_id: str, msg_type: str) -> None:
        new_state = LIFECYCLE_TRANSITIONS.get(msg_type)
        if new_state is None:
            return
        try:
            self.state_sink.request_transition(agent_id, new_state)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "State transition to %s failed for %s: %s",
                new_state.value,
                agent_id,
                error,
            )

    def _mirror_to_legacy(self, *, text: str, legacy_path: Path | None) -> None:
        if legacy_path is None:
            logger.warning("Dual-write requested without a legacy path; skipping mirror")
            return
        try:
            atomic_write_text(legacy_path, text)
        except OSError as error:
            logger.warning("Dual-write failed for %s: %s", legacy_path, error)
            return
        logger.debug("Dual-write to legacy location %s", legacy_path)
