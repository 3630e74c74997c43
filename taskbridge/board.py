from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from .notices import Notifier
from .records import normalize_recurrence_input
from .recurrence import (
    apply_status_transition,
    cascade_delete_plan,
    expand_recurring_tasks,
    materialize_occurrence,
    upcoming_occurrences,
)
from .schemas import Client, Task, TaskStatus, User, UserRole
from .store import LocalStore
from .sync_queue import SyncOperation, SyncQueue, WriteClock
from .utils.time_utils import add_days, is_overdue, now_ms, parse_canonical_date, to_canonical_date, today_canonical


logger = logging.getLogger("taskbridge.board")

DEFAULT_DUE_IN_DAYS = 7


@dataclass
class TaskFilter:
    statuses: Sequence[str] = ()
    priorities: Sequence[str] = ()
    assignee_ids: Sequence[str] = ()
    client_ids: Sequence[str] = ()
    search: str = ""
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    overdue_only: bool = False
    recurring_only: bool = False


def _assigned_to(task: Task, user_id: str) -> bool:
    return user_id in task.assignee_ids or task.assignee_id == user_id


def supervisor_visible_clients(tasks: Iterable[Task], user: User) -> set[str]:
    """Clients where the supervisor still has unfinished work."""
    return {
        t.client_id
        for t in tasks
        if t.client_id and t.status != TaskStatus.done.value and _assigned_to(t, user.id)
    }


def filter_tasks(
    tasks: Iterable[Task],
    flt: Optional[TaskFilter] = None,
    *,
    current_user: Optional[User] = None,
    today: Optional[str] = None,
) -> list[Task]:
    """Dashboard filtering, including role-based visibility.

    Analysts only see their own tasks. Supervisors see every task of the
    clients where they have pending work, or only their own tasks when they
    have none. Admins see everything.
    """
    all_tasks = list(tasks)
    f = flt or TaskFilter()
    day = today or today_canonical()

    visible_clients: set[str] = set()
    if current_user is not None and current_user.role == UserRole.supervisor.value:
        visible_clients = supervisor_visible_clients(all_tasks, current_user)

    out: list[Task] = []
    for t in all_tasks:
        if f.statuses and t.status not in f.statuses:
            continue
        if f.priorities and t.priority not in f.priorities:
            continue

        if current_user is not None:
            if current_user.role == UserRole.analyst.value or (
                current_user.role == UserRole.supervisor.value and not visible_clients
            ):
                if not _assigned_to(t, current_user.id):
                    continue
            elif current_user.role == UserRole.supervisor.value:
                if not t.client_id or t.client_id not in visible_clients:
                    continue

        if f.assignee_ids and not (current_user is not None and current_user.role == UserRole.analyst.value):
            if not any(_assigned_to(t, uid) for uid in f.assignee_ids):
                continue
        if f.client_ids and (not t.client_id or t.client_id not in f.client_ids):
            continue
        if f.search and f.search.lower() not in t.title.lower():
            continue
        if f.date_from and t.due_date < f.date_from:
            continue
        if f.date_to and t.due_date > f.date_to:
            continue
        if f.overdue_only and (t.status == TaskStatus.done.value or not is_overdue(t.due_date, day)):
            continue
        if f.recurring_only and not t.is_recurring:
            continue
        out.append(t)
    return out


class TaskBoard:
    """Optimistic operations over the local store.

    Each operation changes local state first, stamps the write clock, queues
    the remote mutation(s) and posts a notice. Remote failures never reach
    the caller; the sync queues retry them.
    """

    def __init__(
        self,
        store: LocalStore,
        queues: Mapping[str, SyncQueue],
        write_clock: WriteClock,
        notifier: Notifier,
    ):
        self.store = store
        self.queues = dict(queues)
        self.write_clock = write_clock
        self.notifier = notifier

    # ---- helpers ----

    def _touch(self, collection: str) -> None:
        # Stamped before the store changes so an in-flight pull sees the write.
        self.write_clock.touch(collection)

    def _submit(self, collection: str, kind: str, items: Sequence[Any]) -> None:
        self.write_clock.touch(collection)
        queue = self.queues[collection]
        for item in items:
            queue.enqueue(SyncOperation(entity_id=item.id, kind=kind, payload=item.to_wire(), collection=collection))

    def _new_task_id(self) -> str:
        taken = {t.id for t in self.store.snapshot("tasks")}
        n = now_ms()
        while f"t{n}" in taken:
            n += 1
        return f"t{n}"

    @staticmethod
    def _task_data(data: Union[Task, Mapping[str, Any]]) -> dict[str, Any]:
        if isinstance(data, Task):
            return data.model_dump(by_alias=True)
        out = dict(data)
        if out.get("recurrence") not in (None, ""):
            out["recurrence"] = normalize_recurrence_input(out["recurrence"])
        return out

    # ---- tasks ----

    def create_task(self, data: Mapping[str, Any], *, today: Optional[str] = None) -> list[Task]:
        """Create a task; a recurring one also gets today's occurrence when due.

        Returns the tasks added to the store (mother first).
        """
        raw = self._task_data(data)
        day = today or today_canonical()

        rule = raw.get("recurrence") if raw.get("isRecurring") else None
        end_date = (rule or {}).get("endDate") if isinstance(rule, dict) else None
        due = end_date or to_canonical_date(raw.get("dueDate") or add_days(day, DEFAULT_DUE_IN_DAYS))
        status = raw.get("status") or TaskStatus.todo.value

        mother = Task(
            id=str(raw.get("id") or self._new_task_id()),
            title=raw.get("title") or "",
            description=raw.get("description") or "",
            status=status,
            priority=raw.get("priority") or "medium",
            assigneeIds=list(raw.get("assigneeIds") or []),
            assigneeId=raw.get("assigneeId"),
            clientId=raw.get("clientId"),
            startDate=to_canonical_date(raw.get("startDate") or day),
            dueDate=due,
            tags=list(raw.get("tags") or []),
            completedDate=day if status == TaskStatus.done.value else None,
            isRecurring=bool(rule),
            recurrence=rule,
        )

        created = [mother]
        if mother.is_mother:
            child = materialize_occurrence(mother, day, [], existing_ids=[t.id for t in self.store.snapshot("tasks")])
            if child is not None:
                created.append(child)

        self._touch("tasks")
        self.store.append("tasks", *created)
        self._submit("tasks", "create", created)
        if len(created) == 1:
            self.notifier.add("Task created", "success")
        else:
            self.notifier.add(f"{len(created)} tasks created", "success")
        return created

    def update_task(self, data: Union[Task, Mapping[str, Any]], *, today: Optional[str] = None) -> Optional[Task]:
        """Replace a task with an edited copy.

        Dates are normalised to canonical form first; a date that cannot be
        read raises ValueError and nothing is stored or queued. A rule the
        store could not read is kept unless the edit sends ``recurrenceRaw``.
        """
        raw = self._task_data(data)
        for key in ("startDate", "dueDate", "completedDate", "start_date", "due_date", "completed_date"):
            if raw.get(key):
                raw[key] = parse_canonical_date(raw[key])
        if isinstance(data, Task):
            sends_raw_rule = "recurrence_raw" in data.model_fields_set
        else:
            sends_raw_rule = "recurrenceRaw" in raw or "recurrence_raw" in raw
        task = Task.model_validate(raw)
        old = self.store.get("tasks", task.id)
        if old is None:
            self.notifier.add("Task no longer exists", "warning")
            return None

        if not sends_raw_rule and task.recurrence is None and old.recurrence_raw:
            task = task.model_copy(update={"recurrence_raw": old.recurrence_raw})
        if old.status != task.status:
            task = apply_status_transition(task.model_copy(update={"status": old.status}), task.status, today=today)
        self._touch("tasks")
        self.store.upsert("tasks", task)
        self._submit("tasks", "update", [task])
        if old.status != TaskStatus.done.value and task.status == TaskStatus.done.value:
            self.notifier.add(f"Completed: {task.title}", "success")
        else:
            self.notifier.add("Task updated", "success")
        return task

    def move_task(self, task_id: str, status: str, *, today: Optional[str] = None) -> Optional[Task]:
        old = self.store.get("tasks", task_id)
        if old is None:
            return None
        task = apply_status_transition(old, status, today=today)
        self._touch("tasks")
        self.store.upsert("tasks", task)
        self._submit("tasks", "update", [task])
        if task.status == TaskStatus.done.value and old.status != TaskStatus.done.value:
            self.notifier.add(f"Completed: {task.title}", "success")
        else:
            self.notifier.add(f"Task moved to {task.status}", "info", ttl_ms=2_000)
        return task

    def delete_task(self, task_id: str) -> list[Task]:
        """Delete a task; deleting a mother also deletes its unfinished children."""
        task = self.store.get("tasks", task_id)
        if task is None:
            return []
        doomed = cascade_delete_plan(task, self.store.snapshot("tasks"))
        self._touch("tasks")
        self.store.remove("tasks", [t.id for t in doomed])
        self._submit("tasks", "delete", doomed)
        if len(doomed) == 1:
            self.notifier.add("Task deleted", "success")
        else:
            self.notifier.add(f"{len(doomed)} tasks deleted", "success")
        return doomed

    def catch_up_recurring(self, day: Optional[str] = None) -> list[Task]:
        """Materialize missing occurrences for `day` over every local mother."""
        children = expand_recurring_tasks(self.store.snapshot("tasks"), day)
        if not children:
            return []
        self._touch("tasks")
        self.store.append("tasks", *children)
        self._submit("tasks", "create", children)
        self.notifier.add(f"{len(children)} recurring task(s) created", "info")
        return children

    def upcoming(self, task_id: str, *, limit: int = 30, today: Optional[str] = None) -> list[str]:
        """Preview dates of a mother, also kept on the local copy as `instances`."""
        task = self.store.get("tasks", task_id)
        if task is None:
            return []
        dates = upcoming_occurrences(task, start=today or today_canonical(), limit=limit)
        self.store.upsert("tasks", task.model_copy(update={"instances": dates}))
        return dates

    def filter_tasks(self, flt: Optional[TaskFilter] = None, *, current_user: Optional[User] = None) -> list[Task]:
        return filter_tasks(self.store.snapshot("tasks"), flt, current_user=current_user)

    # ---- users ----

    def create_user(self, user: User) -> User:
        self._touch("users")
        self.store.append("users", user)
        self._submit("users", "create", [user])
        self.notifier.add("User created", "success")
        return user

    def update_user(self, user: User) -> User:
        existing = self.store.get("users", user.id)
        if not (user.password or "").strip() and existing is not None:
            # A blank password on edit keeps the current one.
            user = user.model_copy(update={"password": existing.password})
        self._touch("users")
        self.store.upsert("users", user)
        self._submit("users", "update", [user])
        self.notifier.add("User updated", "success")
        return user

    def delete_user(self, user_id: str) -> Optional[User]:
        self._touch("users")
        removed = self.store.remove("users", [user_id])
        if not removed:
            return None
        self._submit("users", "delete", removed)
        self.notifier.add("User deleted", "success")
        return removed[0]

    # ---- clients ----

    def create_client(self, client: Client) -> Client:
        self._touch("clients")
        self.store.append("clients", client)
        self._submit("clients", "create", [client])
        self.notifier.add("Client created", "success")
        return client

    def update_client(self, client: Client) -> Client:
        self._touch("clients")
        self.store.upsert("clients", client)
        self._submit("clients", "update", [client])
        self.notifier.add("Client updated", "success")
        return client

    def delete_client(self, client_id: str) -> Optional[Client]:
        self._touch("clients")
        removed = self.store.remove("clients", [client_id])
        if not removed:
            return None
        self._submit("clients", "delete", removed)
        self.notifier.add("Client deleted", "success")
        return removed[0]
