"""Durable per-consumer read cursors."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from urllib.parse import quote

from meshbus.common import atomic_write_text, from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OffsetRecord:
    """Last delivered position of one consumer."""

    agent_id: str
    last_processed: datetime
    processed_at_timestamp: tuple[str, ...] = ()
    updated_at: datetime | None = None

    def covers(self, timestamp: datetime, filename: str) -> bool:
        """Whether a message at ``timestamp`` was already delivered."""

        if timestamp < self.last_processed:
            return True
        return timestamp == self.last_processed and filename in self.processed_at_timestamp


def offset_token(agent_id: str) -> str:
    """Filesystem-safe, injective token for an agent identity."""

    return quote(agent_id, safe="")


class OffsetTracker:
    """Stores one JSON offset file per consumer identity."""

    def __init__(self, offsets_dir: Path) -> None:
        self.offsets_dir = offsets_dir

    def path_for(self, agent_id: str) -> Path:
        return self.offsets_dir / f"{offset_token(agent_id)}.json"

    def load(self, agent_id: str) -> datetime | None:
        record = self.load_record(agent_id)
        return record.last_processed if record is not None else None

    def load_record(self, agent_id: str) -> OffsetRecord | None:
        """Read the offset record, treating a missing or corrupt file as absent."""

        path = self.path_for(agent_id)
        try:
            raw = json.loads(path.read_text("utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as error:
            logger.warning("Ignoring unreadable offset file %s: %s", path, error)
            return None

        try:
            last_processed = from_iso(str(raw["lastProcessedTimestamp"]))
            updated_raw = raw.get("updatedAt")
            processed = raw.get("processedAtTimestamp") or []
            return OffsetRecord(
                agent_id=str(raw.get("agentId", agent_id)),
                last_processed=last_processed,
                processed_at_timestamp=tuple(str(name) for name in processed),
                updated_at=from_iso(updated_raw) if updated_raw else None,
            )
        except (KeyError, TypeError, ValueError) as error:
            logger.warning("Ignoring malformed offset file %s: %s", path, error)
            return None

    def save(
        self,
        agent_id: str,
        timestamp: datetime,
        processed_at_timestamp: tuple[str, ...] = (),
    ) -> OffsetRecord:
        """Overwrite the offset record atomically."""

        record = OffsetRecord(
            agent_id=agent_id,
            last_processed=timestamp,
            processed_at_timestamp=tuple(sorted(set(processed_at_timestamp))),
            updated_at=utc_now(),
        )
        payload = {
            "agentId": record.agent_id,
            "lastProcessedTimestamp": record.last_processed.isoformat(),
            "processedAtTimestamp": list(record.processed_at_timestamp),
            "updatedAt": to_iso(record.updated_at),
        }
        atomic_write_text(
            self.path_for(agent_id),
            json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True),
        )
        return record

    def reset(self, agent_id: str) -> None:
        """Delete the offset record so the next start replays the backlog."""

        self.path_for(agent_id).unlink(missing_ok=True)
