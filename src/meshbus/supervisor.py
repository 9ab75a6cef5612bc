"""Registry of the consumers running in this process."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from types import TracebackType

from meshbus.config import BusSettings
from meshbus.consumer import LogConsumer
from meshbus.models import BusStatus
from meshbus.offsets import OffsetTracker
from meshbus.sinks import DeliveryHandler

logger = logging.getLogger(__name__)

ConsumerFactory = Callable[[str, DeliveryHandler], LogConsumer]


class BusSupervisor:
    """Starts, stops and reports on one consumer per agent identity.

    Supervisor operations never raise; failures are logged. Use it as a
    context manager to stop every consumer on exit.
    """

    def __init__(
        self,
        settings: BusSettings | None = None,
        *,
        handler_factory: Callable[[str], DeliveryHandler] | None = None,
        consumer_factory: ConsumerFactory | None = None,
        enabled: bool = False,
    ) -> None:
        self.settings = settings or BusSettings()
        self._handler_factory = handler_factory
        self._consumer_factory = consumer_factory or self._default_consumer
        self._offsets = OffsetTracker(self.settings.offsets_dir)
        self._consumers: dict[str, LogConsumer] = {}
        self._lock = threading.RLock()
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        with self._lock:
            self._enabled = True
        logger.info("Message bus enabled")

    def disable(self) -> None:
        """Refuse new consumers; running ones keep going."""

        with self._lock:
            self._enabled = False
        logger.info("Message bus disabled")

    def start_consumer(
        self,
        agent_id: str,
        handler: DeliveryHandler | None = None,
    ) -> LogConsumer | None:
        """Start (or return the already registered) consumer for ``agent_id``."""

        with self._lock:
            if not self._enabled:
                logger.info("Message bus disabled, not starting consumer for %s", agent_id)
                return None
            existing = self._consumers.get(agent_id)
            if existing is not None:
                logger.warning("Consumer already registered for %s", agent_id)
                return existing
            if handler is None and self._handler_factory is not None:
                handler = self._handler_factory(agent_id)
            if handler is None:
                logger.error("No delivery handler for %s, not starting consumer", agent_id)
                return None
            try:
                consumer = self._consumer_factory(agent_id, handler)
            except Exception:
                logger.exception("Could not create consumer for %s", agent_id)
                return None
            self._consumers[agent_id] = consumer

        # Started outside the lock so a slow backlog replay does not block status().
        try:
            consumer.start()
        except Exception:
            logger.exception("Consumer for %s failed to start", agent_id)
            with self._lock:
                if self._consumers.get(agent_id) is consumer:
                    del self._consumers[agent_id]
            self._safe_stop(agent_id, consumer)
            return None
        return consumer

    def stop_consumer(self, agent_id: str) -> bool:
        with self._lock:
            consumer = self._consumers.pop(agent_id, None)
        if consumer is None:
            logger.warning("No consumer registered for %s", agent_id)
            return False
        return self._safe_stop(agent_id, consumer)

    def stop_all(self) -> None:
        """Stop every registered consumer concurrently."""

        with self._lock:
            consumers = list(self._consumers.items())
            self._consumers.clear()
        if not consumers:
            return

        logger.info("Stopping %d consumers", len(consumers))
        with ThreadPoolExecutor(
            max_workers=len(consumers),
            thread_name_prefix="meshbus-stop",
        ) as pool:
            list(pool.map(lambda item: self._safe_stop(*item), consumers))
        logger.info("All consumers stopped")

    def status(self) -> BusStatus:
        with self._lock:
            snapshots = [consumer.status() for consumer in self._consumers.values()]
            return BusStatus(
                enabled=self._enabled,
                active_consumers=len(snapshots),
                consumers=snapshots,
            )

    def is_running(self, agent_id: str) -> bool:
        with self._lock:
            consumer = self._consumers.get(agent_id)
            return consumer is not None and consumer.running

    def get(self, agent_id: str) -> LogConsumer | None:
        with self._lock:
            return self._consumers.get(agent_id)

    def _default_consumer(self, agent_id: str, handler: DeliveryHandler) -> LogConsumer:
        return LogConsumer(agent_id, handler, settings=self.settings, offsets=self._offsets)

    @staticmethod
    def _safe_stop(agent_id: str, consumer: LogConsumer) -> bool:
        try:
            consumer.stop()
        except Exception:
            logger.exception("Error stopping consumer for %s", agent_id)
            return False
        return True

    def __enter__(self) -> BusSupervisor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.stop_all()
