from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .gateway import SyncTimeoutError
from .utils.time_utils import now_ms


logger = logging.getLogger("taskbridge.sync")


@dataclass
class SyncOperation:
    entity_id: str
    kind: str
    payload: dict[str, Any]
    collection: str
    enqueued_at: int = field(default_factory=now_ms)
    attempts: int = 0


class WriteClock:
    """Timestamps (epoch ms) of the last successful remote write.

    Shared by every sync queue and read by the pull reconciler. Both the
    all-collections value and a per-collection value are tracked; the
    reconciler picks one according to its cooldown scope.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._any: Optional[int] = None
        self._per: dict[str, int] = {}
        self._writes: dict[Optional[str], int] = {}

    def touch(self, collection: str, at_ms: Optional[int] = None) -> int:
        at = now_ms() if at_ms is None else int(at_ms)
        with self._lock:
            self._any = at if self._any is None else max(self._any, at)
            self._per[collection] = max(self._per.get(collection, at), at)
            self._writes[None] = self._writes.get(None, 0) + 1
            self._writes[collection] = self._writes.get(collection, 0) + 1
        return at

    def last_write(self, collection: Optional[str] = None) -> Optional[int]:
        with self._lock:
            if collection is None:
                return self._any
            return self._per.get(collection)

    def write_count(self, collection: Optional[str] = None) -> int:
        """Number of touches so far; unlike timestamps it changes on every write."""
        with self._lock:
            return self._writes.get(collection, 0)


class SyncQueue:
    """Ordered buffer of pending mutations for one collection.

    Head-of-line blocking: if sending the head fails the queue stops and the
    operations behind it wait, so a remote update never overtakes its create.
    At most one gateway call is in flight; each call is bounded by
    `call_timeout_seconds` and a timeout counts as a failure.
    """

    def __init__(
        self,
        collection: str,
        send: Callable[[SyncOperation], None],
        *,
        on_success: Optional[Callable[[SyncOperation], None]] = None,
        on_failure: Optional[Callable[[SyncOperation, BaseException], None]] = None,
        write_clock: Optional[WriteClock] = None,
        call_timeout_seconds: float = 20.0,
        retry_interval_seconds: float = 5.0,
        auto_drain: bool = True,
    ):
        self.collection = str(collection)
        self._send = send
        self._on_success = on_success
        self._on_failure = on_failure
        self.write_clock = write_clock
        self.call_timeout_seconds = float(call_timeout_seconds)
        self.retry_interval_seconds = float(retry_interval_seconds)
        self.auto_drain = bool(auto_drain)

        self._ops: deque[SyncOperation] = deque()
        self._lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"taskbridge-send-{self.collection}")
        self._inflight: Optional[Future] = None
        self._worker: Optional[threading.Thread] = None
        self._blocked = False
        self._last_error: Optional[BaseException] = None

    # ---- state ----

    def __len__(self) -> int:
        with self._lock:
            return len(self._ops)

    def pending(self) -> list[SyncOperation]:
        with self._lock:
            return list(self._ops)

    @property
    def is_blocked(self) -> bool:
        return self._blocked

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    # ---- producer side ----

    def enqueue(self, op: SyncOperation) -> None:
        """Append `op` and wake the worker. Never blocks on the network."""
        with self._lock:
            self._ops.append(op)
        logger.debug("Queued %s %s %s", op.kind, self.collection, op.entity_id)
        if self.auto_drain:
            self.start()
            self._wake.set()

    # ---- draining ----

    def drain(self) -> int:
        """Send queued operations in order until the queue empties or a send fails.

        Returns the number of operations sent. A call made while another
        drain is running returns 0 immediately.
        """
        if not self._drain_lock.acquire(blocking=False):
            return 0
        sent = 0
        try:
            while True:
                with self._lock:
                    if not self._ops:
                        break
                    op = self._ops[0]

                if self._inflight is not None and not self._inflight.done():
                    # A timed-out call is still running; never start a second one.
                    self._blocked = True
                    break

                op.attempts += 1
                try:
                    self._call(op)
                except Exception as e:
                    self._blocked = True
                    self._last_error = e
                    logger.warning(
                        "Sync of %s %s %s failed (attempt %s): %s",
                        op.kind,
                        self.collection,
                        op.entity_id,
                        op.attempts,
                        e,
                    )
                    self._notify(self._on_failure, op, e)
                    break

                with self._lock:
                    if self._ops and self._ops[0] is op:
                        self._ops.popleft()
                self._blocked = False
                self._last_error = None
                sent += 1
                if self.write_clock is not None:
                    self.write_clock.touch(self.collection)
                self._notify(self._on_success, op)
        finally:
            self._drain_lock.release()
        return sent

    def _call(self, op: SyncOperation) -> None:
        future = self._executor.submit(self._send, op)
        self._inflight = future
        try:
            future.result(timeout=self.call_timeout_seconds)
        except FuturesTimeoutError:
            raise SyncTimeoutError(
                f"{op.kind} {self.collection} {op.entity_id} did not finish within {self.call_timeout_seconds:g}s"
            ) from None

    def _notify(self, cb: Optional[Callable], *args: Any) -> None:
        if cb is None:
            return
        try:
            cb(*args)
        except Exception:
            logger.exception("Sync callback failed for %s", self.collection)

    # ---- worker ----

    def start(self) -> None:
        with self._lock:
            if self._worker is not None or self._stop.is_set():
                return
            self._worker = threading.Thread(target=self._run, name=f"taskbridge-sync-{self.collection}", daemon=True)
            self._worker.start()

    def _run(self) -> None:
        while not self._stop.is_set():
            self._wake.wait(timeout=self.retry_interval_seconds)
            self._wake.clear()
            if self._stop.is_set():
                break
            if len(self):
                self.drain()

    def wait_for_idle(self, timeout: float = 5.0) -> bool:
        """Wait until the queue is empty and no drain is running."""
        end = time.monotonic() + float(timeout)
        while time.monotonic() < end:
            if not len(self) and not self._drain_lock.locked():
                return True
            time.sleep(0.02)
        return not len(self) and not self._drain_lock.locked()

    def shutdown(self, *, timeout: float = 2.0) -> None:
        self._stop.set()
        self._wake.set()
        worker = self._worker
        if worker is not None:
            worker.join(timeout=timeout)
        self._executor.shutdown(wait=False, cancel_futures=True)
        left = len(self)
        if left:
            logger.warning("Sync queue %s stopped with %s unsent operation(s)", self.collection, left)
