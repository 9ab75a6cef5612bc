"""Shared test fixtures."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from meshbus.config import BusSettings, ConsumerSettings
from meshbus.models import Message
from meshbus.store import MessageStore


class CollectingHandler:
    """Delivery handler that records messages and signals each arrival."""

    def __init__(self) -> None:
        self.messages: list[Message] = []
        self._lock = threading.Lock()
        self._arrived = threading.Condition(self._lock)

    def __call__(self, message: Message) -> None:
        with self._arrived:
            self.messages.append(message)
            self._arrived.notify_all()

    @property
    def msg_ids(self) -> list[str]:
        with self._lock:
            return [message.msg_id for message in self.messages]

    def wait_for(self, count: int, timeout: float = 5.0) -> bool:
        with self._arrived:
            return self._arrived.wait_for(lambda: len(self.messages) >= count, timeout=timeout)


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture()
def bus_settings(tmp_path: Path) -> BusSettings:
    """Settings rooted in a temp dir with fast watch timings."""

    return BusSettings(
        root_dir=tmp_path / "tx",
        consumer=ConsumerSettings(
            settle_seconds=0.01,
            rescan_interval_seconds=0.1,
            max_delivery_attempts=3,
            retry_base_seconds=0.0,
            retry_max_seconds=0.0,
            stop_timeout_seconds=2.0,
        ),
    )


@pytest.fixture()
def store(bus_settings: BusSettings) -> MessageStore:
    return MessageStore(bus_settings)


@pytest.fixture()
def collector() -> CollectingHandler:
    return CollectingHandler()
