"""Domain models for bus messages, consumer state and status views."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

MANDATORY_FRONTMATTER_KEYS = ("to", "from", "type", "msg-id", "timestamp")


class MeshbusError(Exception):
    """Base error for the message bus."""


class FilenameDecodeError(MeshbusError, ValueError):
    """Filename does not follow the message filename protocol."""


class MessageFormatError(MeshbusError, ValueError):
    """Message file has no parseable frontmatter block."""


class RearmatterError(MeshbusError, ValueError):
    """Rearmatter block failed validation in strict mode."""


class ConsumerState(str, Enum):
    """Log consumer lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


class AgentState(str, Enum):
    """Agent lifecycle states understood by the state transition sink."""

    INITIALIZING = "initializing"
    READY = "ready"
    WORKING = "working"
    BLOCKED = "blocked"
    DISTRACTED = "distracted"
    COMPLETING = "completing"
    SUSPENDED = "suspended"
    KILLED = "killed"


# Message types that imply a lifecycle transition of the sender.
LIFECYCLE_TRANSITIONS: dict[str, AgentState] = {
    "ask-human": AgentState.BLOCKED,
    "task-complete": AgentState.COMPLETING,
}


@dataclass(slots=True)
class MessageFrontmatter:
    """Header block of a message file: five mandatory fields plus extensions."""

    to_agent: str
    from_agent: str
    msg_type: str
    msg_id: str
    timestamp: str
    extra: dict[str, str] = field(default_factory=dict)

    def fields(self) -> list[tuple[str, str]]:
        """Ordered key/value pairs as written to disk; mandatory keys win collisions."""

        pairs = [
            ("to", self.to_agent),
            ("from", self.from_agent),
            ("type", self.msg_type),
            ("msg-id", self.msg_id),
            ("timestamp", self.timestamp),
        ]
        pairs.extend(
            (key, str(value))
            for key, value in self.extra.items()
            if key not in MANDATORY_FRONTMATTER_KEYS
        )
        return pairs

    @classmethod
    def from_mapping(cls, raw: dict[str, str]) -> MessageFrontmatter:
        return cls(
            to_agent=raw.get("to", ""),
            from_agent=raw.get("from", ""),
            msg_type=raw.get("type", ""),
            msg_id=raw.get("msg-id", ""),
            timestamp=raw.get("timestamp", ""),
            extra={
                key: value
                for key, value in raw.items()
                if key not in MANDATORY_FRONTMATTER_KEYS
            },
        )


@dataclass(slots=True)
class Message:
    """One persisted message as read back from the log directory."""

    path: Path
    frontmatter: MessageFrontmatter
    body: str
    timestamp: datetime

    @property
    def filename(self) -> str:
        return self.path.name

    @property
    def to_agent(self) -> str:
        return self.frontmatter.to_agent

    @property
    def from_agent(self) -> str:
        return self.frontmatter.from_agent

    @property
    def msg_type(self) -> str:
        return self.frontmatter.msg_type

    @property
    def msg_id(self) -> str:
        return self.frontmatter.msg_id

    def sort_key(self) -> tuple[datetime, str]:
        return (self.timestamp, self.filename)


@dataclass(slots=True)
class ConsumerStatus:
    """Point-in-time snapshot of one consumer."""

    agent_id: str
    state: ConsumerState
    running: bool
    last_processed: datetime | None
    delivered: int = 0
    dead_lettered: int = 0


@dataclass(slots=True)
class BusStatus:
    """Aggregate supervisor status."""

    enabled: bool
    active_consumers: int
    consumers: list[ConsumerStatus] = field(default_factory=list)
