from __future__ import annotations

from pathlib import Path

import allure
import pytest

from meshbus.config import BusSettings, ConsumerSettings

pytestmark = [
    allure.epic("Message Bus"),
    allure.feature("Configuration"),
]


def test_default_layout_under_root() -> None:
    settings = BusSettings(root_dir=Path("/srv/mesh"))

    assert settings.log_dir == Path("/srv/mesh/msgs")
    assert settings.offsets_dir == Path("/srv/mesh/state/offsets")
    assert settings.deadletter_dir == Path("/srv/mesh/state/deadletter")


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MESHBUS_ROOT", str(tmp_path))
    monkeypatch.setenv("MESHBUS_LOG_DIR", str(tmp_path / "shared"))
    monkeypatch.setenv("MESHBUS_DUAL_WRITE", "yes")
    monkeypatch.setenv("MESHBUS_MAX_DELIVERY_ATTEMPTS", "9")
    monkeypatch.setenv("MESHBUS_RESCAN_INTERVAL_SECONDS", "0.5")

    settings = BusSettings.from_env()

    assert settings.root_dir == tmp_path
    assert settings.log_dir == tmp_path / "shared"
    assert settings.writer.dual_write is True
    assert settings.consumer.max_delivery_attempts == 9
    assert settings.consumer.rescan_interval_seconds == 0.5


def test_from_env_rejects_invalid_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MESHBUS_DUAL_WRITE", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for MESHBUS_DUAL_WRITE"):
        BusSettings.from_env()


def test_validate_accepts_defaults() -> None:
    BusSettings().validate()


@pytest.mark.parametrize(
    ("consumer", "match"),
    [
        (ConsumerSettings(rescan_interval_seconds=0), "RESCAN_INTERVAL"),
        (ConsumerSettings(settle_seconds=-1), "SETTLE"),
        (ConsumerSettings(max_delivery_attempts=-1), "MAX_DELIVERY_ATTEMPTS"),
        (ConsumerSettings(retry_base_seconds=10, retry_max_seconds=5), "RETRY_MAX"),
        (ConsumerSettings(stop_timeout_seconds=0), "STOP_TIMEOUT"),
    ],
)
def test_validate_rejects_inconsistent_consumer_settings(
    consumer: ConsumerSettings,
    match: str,
) -> None:
    with pytest.raises(ValueError, match=match):
        BusSettings(consumer=consumer).validate()
