"""Per-agent consumer that tails the shared log directory."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import random
import shutil
import threading
import time
from collections.abc import Awaitable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver
from watchdog.observers.polling import PollingObserver

from meshbus.codec import identity_matches, parse_filename
from meshbus.common import to_iso, utc_now
from meshbus.config import BusSettings
from meshbus.models import (
    ConsumerState,
    ConsumerStatus,
    FilenameDecodeError,
    Message,
    MessageFormatError,
)
from meshbus.offsets import OffsetRecord, OffsetTracker, offset_token
from meshbus.sinks import DeliveryHandler
from meshbus.store import parse_message

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _DeliveryFailure:
    attempts: int
    next_attempt_at: float
    last_error: str


class _WakeOnNewFile(FileSystemEventHandler):
    """Turns directory events into a wake-up signal; the scan decides what changed."""

    def __init__(self, wake: threading.Event) -> None:
        self._wake = wake

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._wake.set()

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._wake.set()


class LogConsumer:
    """Delivers messages addressed to one agent, in timestamp order, at least once."""

    def __init__(
        self,
        agent_id: str,
        handler: DeliveryHandler,
        *,
        settings: BusSettings | None = None,
        offsets: OffsetTracker | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.handler = handler
        self.settings = settings or BusSettings()
        self.offsets = offsets or OffsetTracker(self.settings.offsets_dir)
        self.state = ConsumerState.STOPPED
        self.last_processed: datetime | None = None
        self.delivered_count = 0
        self.dead_lettered_count = 0
        self._record: OffsetRecord | None = None
        self._settled: set[str] = set()
        self._failures: dict[str, _DeliveryFailure] = {}
        self._wake = threading.Event()
        self._stop_event = threading.Event()
        self._scan_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._observer: BaseObserver | None = None
        self._thread: threading.Thread | None = None
        self._random = random.Random()  # noqa: S311

    @property
    def log_dir(self) -> Path:
        return self.settings.log_dir

    @property
    def running(self) -> bool:
        return self.state is ConsumerState.RUNNING

    def start(self) -> None:
        """Replay the backlog after the saved offset, then watch for new files."""

        with self._state_lock:
            if self.state is not ConsumerState.STOPPED:
                logger.warning("Consumer already running for %s", self.agent_id)
                return
            logger.info("Starting consumer for %s", self.agent_id)
            self.state = ConsumerState.STARTING
            self._stop_event.clear()
            self._wake.clear()
            self._settled.clear()
            self._failures.clear()

        self._record = self.offsets.load_record(self.agent_id)
        self.last_processed = self._record.last_processed if self._record else None
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            logger.warning("Log directory %s unavailable: %s", self.log_dir, error)

        try:
            self.scan_once()
        except BaseException:
            self.state = ConsumerState.STOPPED
            raise

        with self._state_lock:
            if self._stop_event.is_set():
                self.state = ConsumerState.STOPPED
                logger.info("Consumer for %s stopped during startup", self.agent_id)
                return
            self._observer = self._start_observer()
            self._thread = threading.Thread(
                target=self._run,
                daemon=True,
                name=f"meshbus-consumer-{self.agent_id}",
            )
            self._thread.start()
            self.state = ConsumerState.RUNNING
        logger.info("Consumer started for %s", self.agent_id)

    def stop(self) -> None:
        """Stop watching; the last saved offset is left untouched.

        Safe to call at any point, including mid-scan: the scan stops before
        the next delivery and offsets are only ever replaced atomically.
        """

        if self.state is ConsumerState.STOPPED:
            return

        logger.info("Stopping consumer for %s", self.agent_id)
        timeout = self.settings.consumer.stop_timeout_seconds
        self._stop_event.set()
        self._wake.set()

        with self._state_lock:
            observer, self._observer = self._observer, None
            thread, self._thread = self._thread, None
            if observer is not None:
                observer.stop()
                observer.join(timeout=timeout)
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=timeout)
                if thread.is_alive():
                    logger.warning("Consumer thread for %s did not stop in time", self.agent_id)
            if self.state is ConsumerState.RUNNING:
                self.state = ConsumerState.STOPPED
        logger.info("Consumer stopped for %s", self.agent_id)

    def is_for_me(self, message: Message) -> bool:
        """Match the recipient against this agent.

        Accepts the full ``group/name`` id, the base name, and the bare group
        name, which addresses every agent of the group. The frontmatter ``to``
        wins; the filename recipient is only used when it is missing.
        """

        recipient = message.to_agent.strip()
        if not recipient:
            try:
                recipient = parse_filename(message.filename).to_name
            except FilenameDecodeError:
                return False
        if identity_matches(recipient, self.agent_id):
            return True
        group, sep, _ = self.agent_id.partition("/")
        return bool(sep) and recipient == group

    def status(self) -> ConsumerStatus:
        return ConsumerStatus(
            agent_id=self.agent_id,
            state=self.state,
            running=self.running,
            last_processed=self.last_processed,
            delivered=self.delivered_count,
            dead_lettered=self.dead_lettered_count,
        )

    def scan_once(self) -> int:
        """Deliver every pending message found in the directory; return the count."""

        delivered = 0
        with self._scan_lock:
            for message in self._pending_messages():
                if self._stop_event.is_set():
                    break
                if not self._deliver(message):
                    break
                delivered += 1
        return delivered

    def _run(self) -> None:
        settle = self.settings.consumer.settle_seconds
        while not self._stop_event.is_set():
            woke = self._wake.wait(timeout=self._next_wait_seconds())
            if self._stop_event.is_set():
                break
            if woke:
                self._wake.clear()
                if settle > 0 and self._stop_event.wait(timeout=settle):
                    break
            if self._observer is None:
                self._retry_watch()
            try:
                self.scan_once()
            except Exception:
                logger.exception("Scan failed for %s", self.agent_id)

    def _retry_watch(self) -> None:
        # stop() holds the state lock while joining this thread
        if not self._state_lock.acquire(blocking=False):
            return
        try:
            if self._observer is None and not self._stop_event.is_set():
                self._observer = self._start_observer()
        finally:
            self._state_lock.release()

    def _next_wait_seconds(self) -> float:
        interval = self.settings.consumer.rescan_interval_seconds
        if not self._failures:
            return interval
        soonest = min(failure.next_attempt_at for failure in self._failures.values())
        return max(0.0, min(interval, soonest - time.monotonic()))

    def _start_observer(self) -> BaseObserver | None:
        if not self.log_dir.is_dir():
            return None
        factories: list[type[BaseObserver]] = [PollingObserver]
        if not self.settings.consumer.use_polling_observer:
            factories.insert(0, Observer)
        for factory in factories:
            observer = factory()
            try:
                observer.schedule(_WakeOnNewFile(self._wake), str(self.log_dir), recursive=False)
                observer.start()
            except Exception as error:  # noqa: BLE001
                logger.warning(
                    "%s failed for %s: %s",
                    factory.__name__,
                    self.log_dir,
                    error,
                )
                continue
            return observer
        logger.warning("No directory watch for %s; relying on rescans", self.agent_id)
        return None

    def _pending_messages(self) -> list[Message]:
        if not self.log_dir.is_dir():
            return []
        try:
            entries = list(self.log_dir.iterdir())
        except OSError as error:
            logger.warning("Could not list %s: %s", self.log_dir, error)
            return []

        present = {path.name for path in entries}
        self._settled &= present
        for name in [name for name in self._failures if name not in present]:
            del self._failures[name]

        pending: list[Message] = []
        for path in entries:
            name = path.name
            if name in self._settled:
                continue
            try:
                parse_filename(name)
            except FilenameDecodeError:
                continue
            try:
                message = parse_message(path.read_text("utf-8"), path)
            except (MessageFormatError, UnicodeDecodeError) as error:
                logger.debug("Skipping unreadable message %s: %s", name, error)
                continue
            except OSError as error:
                logger.debug("Could not read %s: %s", path, error)
                continue
            if not self.is_for_me(message):
                self._settled.add(name)
                continue
            if self._record is not None and self._record.covers(message.timestamp, name):
                self._settled.add(name)
                continue
            pending.append(message)

        pending.sort(key=Message.sort_key)
        return pending

    def _deliver(self, message: Message) -> bool:
        failure = self._failures.get(message.filename)
        if failure is not None and time.monotonic() < failure.next_attempt_at:
            return False

        logger.info(
            "Delivering %s to %s (from=%s type=%s)",
            message.msg_id,
            self.agent_id,
            message.from_agent,
            message.msg_type,
        )
        try:
            self._invoke_handler(message)
        except Exception as error:  # noqa: BLE001
            return self._handle_failure(message, error)

        self._failures.pop(message.filename, None)
        self._advance(message)
        self.delivered_count += 1
        return True

    def _invoke_handler(self, message: Message) -> None:
        result = self.handler(message)
        if not inspect.isawaitable(result):
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(_await(result))
            return
        # Started from a coroutine: the caller's loop is busy running this scan.
        with ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"meshbus-handler-{self.agent_id}",
        ) as pool:
            pool.submit(asyncio.run, _await(result)).result()

    def _handle_failure(self, message: Message, error: Exception) -> bool:
        previous = self._failures.get(message.filename)
        attempts = (previous.attempts if previous else 0) + 1
        max_attempts = self.settings.consumer.max_delivery_attempts
        logger.warning(
            "Delivery of %s to %s failed (attempt %d): %s",
            message.filename,
            self.agent_id,
            attempts,
            error,
        )

        if max_attempts and attempts >= max_attempts and self._dead_letter(
            message,
            attempts=attempts,
            error=error,
        ):
            self._failures.pop(message.filename, None)
            self._advance(message)
            self.dead_lettered_count += 1
            return True

        self._failures[message.filename] = _DeliveryFailure(
            attempts=attempts,
            next_attempt_at=time.monotonic() + self._compute_retry_delay(retry_number=attempts),
            last_error=str(error),
        )
        return False

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        consumer = self.settings.consumer
        max_delay = min(
            consumer.retry_max_seconds,
            consumer.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def _dead_letter(self, message: Message, *, attempts: int, error: Exception) -> bool:
        target_dir = self.settings.deadletter_dir / offset_token(self.agent_id)
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(message.path, target_dir / message.filename)
            sidecar = {
                "agentId": self.agent_id,
                "filename": message.filename,
                "msgId": message.msg_id,
                "attempts": attempts,
                "error": str(error),
                "deadLetteredAt": to_iso(utc_now()),
            }
            (target_dir / f"{message.filename}.error.json").write_text(
                json.dumps(sidecar, ensure_ascii=False, indent=2, sort_keys=True),
                "utf-8",
            )
        except OSError as write_error:
            logger.warning(
                "Could not dead-letter %s for %s: %s",
                message.filename,
                self.agent_id,
                write_error,
            )
            return False
        logger.error(
            "Dead-lettered %s for %s after %d attempts: %s",
            message.filename,
            self.agent_id,
            attempts,
            error,
        )
        return True

    def _advance(self, message: Message) -> None:
        if self._record is not None and message.timestamp == self._record.last_processed:
            names = (*self._record.processed_at_timestamp, message.filename)
        else:
            names = (message.filename,)
        try:
            self._record = self.offsets.save(self.agent_id, message.timestamp, names)
        except OSError as error:
            logger.warning("Offset save failed for %s: %s", self.agent_id, error)
            self._record = OffsetRecord(
                agent_id=self.agent_id,
                last_processed=message.timestamp,
                processed_at_timestamp=names,
            )
        self._settled.add(message.filename)
        self.last_processed = message.timestamp


async def _await(awaitable: Awaitable[None]) -> None:
    await awaitable
