"""Runtime configuration for the message bus."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_ROOT_DIR = Path(".ai/tx")


@dataclass(slots=True)
class WriterSettings:
    """Message writer settings."""

    dual_write: bool = False
    validate_rearmatter: bool = True


@dataclass(slots=True)
class ConsumerSettings:
    """Log consumer watch and delivery settings."""

    settle_seconds: float = 0.1
    rescan_interval_seconds: float = 2.0
    use_polling_observer: bool = False
    max_delivery_attempts: int = 5
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 60.0
    stop_timeout_seconds: float = 10.0


@dataclass(slots=True)
class BusSettings:
    """Bus settings grouped by concern."""

    root_dir: Path = DEFAULT_ROOT_DIR
    log_dir_override: Path | None = None
    writer: WriterSettings = field(default_factory=WriterSettings)
    consumer: ConsumerSettings = field(default_factory=ConsumerSettings)

    @property
    def log_dir(self) -> Path:
        """Shared directory holding one file per message."""

        if self.log_dir_override is not None:
            return self.log_dir_override
        return self.root_dir / "msgs"

    @property
    def offsets_dir(self) -> Path:
        return self.root_dir / "state" / "offsets"

    @property
    def deadletter_dir(self) -> Path:
        return self.root_dir / "state" / "deadletter"

    @classmethod
    def from_env(cls, root_dir: Path | None = None) -> BusSettings:
        """Load settings from environment with defaults suitable for a local mesh."""

        log_dir_raw = os.getenv("MESHBUS_LOG_DIR", "").strip()
        return cls(
            root_dir=root_dir or Path(os.getenv("MESHBUS_ROOT", str(DEFAULT_ROOT_DIR))),
            log_dir_override=Path(log_dir_raw) if log_dir_raw else None,
            writer=WriterSettings(
                dual_write=_env_bool("MESHBUS_DUAL_WRITE", default=False),
                validate_rearmatter=_env_bool("MESHBUS_VALIDATE_REARMATTER", default=True),
            ),
            consumer=ConsumerSettings(
                settle_seconds=float(os.getenv("MESHBUS_SETTLE_SECONDS", "0.1")),
                rescan_interval_seconds=float(
                    os.getenv("MESHBUS_RESCAN_INTERVAL_SECONDS", "2.0"),
                ),
                use_polling_observer=_env_bool("MESHBUS_USE_POLLING", default=False),
                max_delivery_attempts=int(os.getenv("MESHBUS_MAX_DELIVERY_ATTEMPTS", "5")),
                retry_base_seconds=float(os.getenv("MESHBUS_RETRY_BASE_SECONDS", "1.0")),
                retry_max_seconds=float(os.getenv("MESHBUS_RETRY_MAX_SECONDS", "60.0")),
                stop_timeout_seconds=float(os.getenv("MESHBUS_STOP_TIMEOUT_SECONDS", "10.0")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if consumer timings are inconsistent."""

        consumer = self.consumer
        if consumer.settle_seconds < 0:
            raise ValueError("MESHBUS_SETTLE_SECONDS must be >= 0.")
        if consumer.rescan_interval_seconds <= 0:
            raise ValueError("MESHBUS_RESCAN_INTERVAL_SECONDS must be > 0.")
        if consumer.max_delivery_attempts < 0:
            raise ValueError("MESHBUS_MAX_DELIVERY_ATTEMPTS must be >= 0.")
        if consumer.retry_base_seconds < 0:
            raise ValueError("MESHBUS_RETRY_BASE_SECONDS must be >= 0.")
        if consumer.retry_max_seconds < consumer.retry_base_seconds:
            raise ValueError(
                "MESHBUS_RETRY_MAX_SECONDS must be >= MESHBUS_RETRY_BASE_SECONDS.",
            )
        if consumer.stop_timeout_seconds <= 0:
            raise ValueError("MESHBUS_STOP_TIMEOUT_SECONDS must be > 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
