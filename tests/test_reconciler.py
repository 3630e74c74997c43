import threading

from taskbridge.notices import Notifier
from taskbridge.reconciler import PullReconciler
from taskbridge.schemas import Client, Task
from taskbridge.store import LocalStore
from taskbridge.sync_queue import WriteClock


COOLDOWN = 15_000


def _task(task_id, title="Remote"):
    return Task(id=task_id, title=title, startDate="2026-01-01", dueDate="2026-01-10")


class Remote:
    def __init__(self):
        self.tasks = [_task("r1")]
        self.clients = [Client(id="c1", name="Acme")]
        self.users = []
        self.fail = False
        self.fetches = 0

    def fetch_tasks(self):
        self.fetches += 1
        if self.fail:
            raise ConnectionError("offline")
        return list(self.tasks)

    def fetchers(self):
        return {"tasks": self.fetch_tasks, "users": lambda: list(self.users), "clients": lambda: list(self.clients)}


def _setup(scope="shared", threshold=5):
    store = LocalStore()
    store.replace_all("tasks", [_task("local", "Mine")])
    remote = Remote()
    clock = WriteClock()
    notifier = Notifier()
    rec = PullReconciler(
        store,
        remote.fetchers(),
        clock,
        cooldown_ms=COOLDOWN,
        cooldown_scope=scope,
        notifier=notifier,
        failure_alert_threshold=threshold,
    )
    return store, remote, clock, notifier, rec


def test_tick_inside_cooldown_never_replaces_local_state():
    store, remote, clock, _, rec = _setup()
    t0 = 1_700_000_000_000
    clock.touch("tasks", at_ms=t0)

    result = rec.tick(t0 + COOLDOWN - 1)
    assert result.skipped == "cooldown"
    assert remote.fetches == 0
    assert [t.id for t in store.snapshot("tasks")] == ["local"]

    result = rec.tick(t0 + COOLDOWN + 1)
    assert result.skipped is None
    assert "tasks" in result.replaced
    assert [t.id for t in store.snapshot("tasks")] == ["r1"]


def test_empty_fetch_never_overwrites():
    store, remote, _, _, rec = _setup()
    remote.tasks = []

    result = rec.tick(1)
    assert "tasks" in result.unchanged
    assert [t.id for t in store.snapshot("tasks")] == ["local"]
    # users came back empty as well; clients were replaced
    assert "clients" in result.replaced


def test_identical_snapshot_is_left_alone():
    store, remote, _, _, rec = _setup()
    rec.tick(1)
    before = store.snapshot("tasks")

    result = rec.tick(2)
    assert result.replaced == []
    assert store.snapshot("tasks")[0] is before[0]


def test_fetch_failure_skips_tick_and_alerts_once_after_threshold():
    store, remote, _, notifier, rec = _setup(threshold=3)
    remote.fail = True

    for i in range(5):
        result = rec.tick(i)
        assert result.skipped == "error"
    assert [t.id for t in store.snapshot("tasks")] == ["local"]
    assert rec.consecutive_failures == 5
    warnings = [n for n in notifier.active(0) if n.level == "warning"]
    assert len(warnings) == 1

    remote.fail = False
    rec.tick(10)
    assert rec.consecutive_failures == 0


def test_per_collection_scope_only_pauses_written_collection():
    store, remote, clock, _, rec = _setup(scope="per_collection")
    t0 = 1_700_000_000_000
    clock.touch("tasks", at_ms=t0)

    result = rec.tick(t0 + 1)
    assert result.cooling == ["tasks"]
    assert "clients" in result.replaced
    assert [t.id for t in store.snapshot("tasks")] == ["local"]


def test_initial_load_ignores_cooldown():
    store, remote, clock, _, rec = _setup()
    clock.touch("tasks")

    result = rec.load_initial()
    assert "tasks" in result.replaced
    assert [t.id for t in store.snapshot("tasks")] == ["r1"]


def test_overlapping_tick_is_skipped():
    store, remote, _, _, rec = _setup()
    entered = threading.Event()
    release = threading.Event()

    def slow_fetch():
        entered.set()
        release.wait(5)
        return [_task("r9")]

    rec.fetchers["tasks"] = slow_fetch
    t = threading.Thread(target=lambda: rec.tick(1))
    t.start()
    assert entered.wait(5)

    assert rec.tick(2).skipped == "busy"

    release.set()
    t.join(5)
    assert [x.id for x in store.snapshot("tasks")] == ["r9"]


def test_write_during_fetch_is_not_overwritten():
    store, remote, clock, _, rec = _setup()
    entered = threading.Event()
    release = threading.Event()
    results = []

    def slow_fetch():
        entered.set()
        release.wait(5)
        return [_task("r1")]

    rec.fetchers["tasks"] = slow_fetch
    t = threading.Thread(target=lambda: results.append(rec.tick()))
    t.start()
    assert entered.wait(5)

    clock.touch("tasks")
    store.append("tasks", _task("mine", "Just typed"))

    release.set()
    t.join(5)
    assert [x.id for x in store.snapshot("tasks")] == ["local", "mine"]
    assert "tasks" in results[0].cooling
    assert "tasks" not in results[0].replaced
