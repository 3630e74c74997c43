from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

from .notices import Notifier
from .store import LocalStore
from .sync_queue import WriteClock
from .utils.time_utils import now_ms


logger = logging.getLogger("taskbridge.sync")

RECONCILE_JOB_ID = "pull_reconciler"


@dataclass
class ReconcileResult:
    skipped: Optional[str] = None
    replaced: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    cooling: list[str] = field(default_factory=list)
    error: Optional[str] = None


def _fingerprint(items: list) -> list[dict]:
    return [x.to_wire() for x in items]


class PullReconciler:
    """Periodically replace local collections with the remote snapshot.

    A tick inside the cooldown window after a successful local write does
    nothing, so a just-made edit is not overwritten by remote state that has
    not caught up yet. A collection written locally while its fetch was in
    flight is also left alone for that tick. Empty fetches never overwrite
    local data.
    """

    def __init__(
        self,
        store: LocalStore,
        fetchers: Mapping[str, Callable[[], list]],
        write_clock: WriteClock,
        *,
        cooldown_ms: int = 15_000,
        cooldown_scope: str = "shared",
        notifier: Optional[Notifier] = None,
        failure_alert_threshold: int = 5,
    ):
        if cooldown_scope not in ("shared", "per_collection"):
            raise ValueError(f"Unknown cooldown scope: {cooldown_scope}")
        self.store = store
        self.fetchers = dict(fetchers)
        self.write_clock = write_clock
        self.cooldown_ms = int(cooldown_ms)
        self.cooldown_scope = cooldown_scope
        self.notifier = notifier
        self.failure_alert_threshold = max(1, int(failure_alert_threshold))
        self.consecutive_failures = 0
        self._running = threading.Lock()

    def _cooling(self, collection: Optional[str], now: int) -> bool:
        last = self.write_clock.last_write(collection)
        return last is not None and now - last < self.cooldown_ms

    def tick(self, now: Optional[int] = None) -> ReconcileResult:
        if not self._running.acquire(blocking=False):
            return ReconcileResult(skipped="busy")
        try:
            return self._tick(now_ms() if now is None else int(now), honor_cooldown=True)
        finally:
            self._running.release()

    def load_initial(self) -> ReconcileResult:
        """First load after start-up; the cooldown does not apply."""
        with self._running:
            return self._tick(now_ms(), honor_cooldown=False)

    def _clock_key(self, name: str) -> Optional[str]:
        return None if self.cooldown_scope == "shared" else name

    def _tick(self, now: int, *, honor_cooldown: bool) -> ReconcileResult:
        result = ReconcileResult()
        names = list(self.fetchers)

        if honor_cooldown:
            if self.cooldown_scope == "shared":
                if self._cooling(None, now):
                    result.skipped = "cooldown"
                    return result
            else:
                result.cooling = [n for n in names if self._cooling(n, now)]
                names = [n for n in names if n not in result.cooling]
                if not names:
                    result.skipped = "cooldown"
                    return result

        seen = {name: self.write_clock.write_count(self._clock_key(name)) for name in names}
        fetched: dict[str, list] = {}
        for name in names:
            try:
                fetched[name] = list(self.fetchers[name]())
            except Exception as e:
                self._record_failure(name, e)
                result.skipped = "error"
                result.error = str(e)
                return result

        self.consecutive_failures = 0
        for name, items in fetched.items():
            if not items:
                result.unchanged.append(name)
                continue
            with self.store.locked():
                # A local write landed while the fetch was in flight.
                if self.write_clock.write_count(self._clock_key(name)) != seen[name]:
                    result.cooling.append(name)
                    logger.debug("Kept local %s: written during the pull", name)
                    continue
                if _fingerprint(items) == _fingerprint(self.store.snapshot(name)):
                    result.unchanged.append(name)
                    continue
                self.store.replace_all(name, items)
            result.replaced.append(name)
            logger.debug("Replaced local %s with %s remote item(s)", name, len(items))
        return result

    def _record_failure(self, name: str, e: BaseException) -> None:
        self.consecutive_failures += 1
        logger.warning("Pull of %s failed (%s in a row): %s", name, self.consecutive_failures, e)
        if self.consecutive_failures == self.failure_alert_threshold and self.notifier is not None:
            self.notifier.add("Cannot reach the remote store; showing local data", level="warning")

    def schedule(self, sched, interval_ms: int) -> None:
        def _job() -> None:
            try:
                self.tick()
            except Exception:
                logger.exception("Error while reconciling with the remote store")

        sched.add_job(
            _job,
            "interval",
            seconds=max(0.25, int(interval_ms) / 1000.0),
            id=RECONCILE_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
