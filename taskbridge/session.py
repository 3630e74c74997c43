from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .board import TaskBoard
from .config import Settings, get_settings
from .gateway import GatewayClient
from .notices import Notifier
from .reconciler import PullReconciler, ReconcileResult
from .schemas import COLLECTIONS
from .store import LocalStore
from .sync_queue import SyncOperation, SyncQueue, WriteClock


logger = logging.getLogger("taskbridge.session")


class ClientSession:
    """Everything one user's client needs, wired together."""

    def __init__(
        self,
        *,
        settings: Settings,
        gateway: GatewayClient,
        store: Optional[LocalStore] = None,
        notifier: Optional[Notifier] = None,
        auto_drain: bool = True,
    ):
        self.settings = settings
        self.gateway = gateway
        self.store = store or LocalStore()
        self.notifier = notifier or Notifier()
        self.write_clock = WriteClock()

        sync = settings.sync
        self.queues: dict[str, SyncQueue] = {
            name: SyncQueue(
                name,
                gateway.send_operation,
                on_success=self._on_synced,
                on_failure=self._on_sync_failed,
                write_clock=self.write_clock,
                call_timeout_seconds=sync.call_timeout_seconds,
                retry_interval_seconds=sync.retry_interval_ms / 1000.0,
                auto_drain=auto_drain,
            )
            for name in COLLECTIONS
        }
        self.board = TaskBoard(self.store, self.queues, self.write_clock, self.notifier)
        self.reconciler = PullReconciler(
            self.store,
            gateway.fetchers(),
            self.write_clock,
            cooldown_ms=sync.cooldown_ms,
            cooldown_scope=sync.cooldown_scope,
            notifier=self.notifier,
            failure_alert_threshold=sync.failure_alert_threshold,
        )
        self.scheduler: Optional[BackgroundScheduler] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ClientSession":
        s = settings or get_settings()
        gateway = GatewayClient(
            s.remote.base_url,
            api_token=s.security.api_token,
            timeout_seconds=s.remote.request_timeout_seconds,
        )
        return cls(settings=s, gateway=gateway)

    def _on_synced(self, op: SyncOperation) -> None:
        logger.debug("Synced %s %s %s", op.kind, op.collection, op.entity_id)

    def _on_sync_failed(self, op: SyncOperation, error: BaseException) -> None:
        # Only the first failure of an operation is surfaced; retries are silent.
        if op.attempts == 1:
            self.notifier.add(f"Saving {op.collection} is delayed; will retry ({error})", "warning")

    def start(self) -> ReconcileResult:
        cache = self.settings.sync.cache_path
        if cache:
            loaded = self.store.load_cache(cache)
            if loaded:
                logger.info("Loaded %s cached item(s) from %s", loaded, cache)

        result = self.reconciler.load_initial()
        if result.error:
            self.notifier.add("Remote store unavailable; working from local data", "warning")

        for q in self.queues.values():
            q.start()

        self.scheduler = BackgroundScheduler(timezone=self.settings.app.timezone)
        self.reconciler.schedule(self.scheduler, self.settings.sync.poll_interval_ms)
        self.scheduler.start()
        return result

    def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        for q in self.queues.values():
            q.shutdown()

        cache = self.settings.sync.cache_path
        if cache:
            try:
                self.store.save_cache(cache)
            except OSError:
                logger.exception("Failed to write cache %s", cache)
