"""Recurring tasks: rule matching and occurrence expansion.

A mother task carries a rule; each day it is due produces one dated child
task linked back through ``parentTaskId``. The board and the server sweep
both expand through `expand_recurring_tasks`, so a (mother, day) pair never
gets two children.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from .records import normalize_recurrence_input
from .schemas import Frequency, RecurrenceRule, Task, TaskStatus
from .utils.time_utils import (
    add_days,
    day_of_month,
    days_between,
    is_canonical,
    is_within,
    months_between,
    parse_canonical_date,
    today_canonical,
    weekday_of,
)


logger = logging.getLogger("taskbridge.recurrence")

WEEKDAY_NUMBERS = {
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}

# Upper bound on the number of days scanned by previews.
_MAX_PREVIEW_SPAN_DAYS = 366 * 2


class RecurrenceError(ValueError):
    pass


def parse_recurrence(raw: Any) -> RecurrenceRule:
    """Parse a rule from a dict, a JSON string or an existing RecurrenceRule."""
    if isinstance(raw, RecurrenceRule):
        rule = raw
    else:
        try:
            data = normalize_recurrence_input(raw)
        except ValueError as e:
            raise RecurrenceError(f"Unparseable recurrence: {e}") from None
        if not data:
            raise RecurrenceError("Recurrence is empty")
        if not data.get("frequency"):
            raise RecurrenceError("Recurrence frequency is required")
        try:
            rule = RecurrenceRule.model_validate(data)
        except ValidationError as e:
            raise RecurrenceError(f"Invalid recurrence: {e.errors()[0].get('msg', e)}") from None

    if rule.end_date is not None:
        try:
            parse_canonical_date(rule.end_date)
        except ValueError:
            raise RecurrenceError(f"Invalid recurrence end date: {rule.end_date!r}") from None
    return rule


def effective_end_date(mother: Task) -> str:
    """Last day a mother may produce occurrences: rule endDate, else dueDate."""
    rule = mother.recurrence
    end = (rule.end_date if rule is not None else None) or mother.due_date
    return parse_canonical_date(end)


def should_occur_on(rule: RecurrenceRule, day: str, *, start_date: str, end_date: Optional[str] = None) -> bool:
    """Decide whether `rule` produces an occurrence on the canonical `day`.

    Days outside ``[start_date, end_date]`` never occur, whatever the
    frequency says. A monthly rule whose dayOfMonth does not exist in a month
    has no occurrence that month; there is no clamping to the last day.

    ``interval`` counts periods from `start_date`: every N days, every N
    calendar weeks (Sunday based, starting with the week of `start_date`) or
    every N months.
    """
    if not rule.enabled:
        return False
    if not is_canonical(day):
        raise RecurrenceError(f"Not a canonical date: {day!r}")

    end = end_date or rule.end_date
    if end is None:
        raise RecurrenceError("Recurrence end date is required")
    if not is_within(day, start_date, end):
        return False

    every = int(rule.interval or 1)
    freq = Frequency(rule.frequency)
    if freq == Frequency.daily:
        return days_between(start_date, day) % every == 0
    if freq == Frequency.weekly:
        targets = {WEEKDAY_NUMBERS[name] for name in rule.days_of_week if name in WEEKDAY_NUMBERS}
        if weekday_of(day) not in targets:
            return False
        first_sunday = add_days(start_date, -weekday_of(start_date))
        return (days_between(first_sunday, day) // 7) % every == 0
    if freq == Frequency.monthly:
        if day_of_month(day) != int(rule.day_of_month or 1):
            return False
        return months_between(start_date, day) % every == 0

    raise RecurrenceError(f"Unsupported frequency: {rule.frequency}")


def _mother_window(mother: Task) -> tuple[RecurrenceRule, str, str]:
    rule = parse_recurrence(mother.recurrence)
    try:
        start = parse_canonical_date(mother.start_date)
    except ValueError:
        raise RecurrenceError(f"Invalid start date: {mother.start_date!r}") from None
    try:
        end = effective_end_date(mother)
    except ValueError:
        raise RecurrenceError("Recurrence has no usable end date") from None
    return rule, start, end


def new_occurrence_id(mother_id: str, day: str, existing_ids: Iterable[str] = ()) -> str:
    taken = set(existing_ids)
    while True:
        candidate = f"{mother_id}_{day}_{secrets.token_hex(3)}"
        if candidate not in taken:
            return candidate


def materialize_occurrence(
    mother: Task,
    day: str,
    existing_children: Iterable[Task],
    *,
    existing_ids: Iterable[str] = (),
) -> Optional[Task]:
    """Build the child task of `mother` for `day`, or return None.

    None means: not a recurring mother, malformed rule (logged), not due on
    `day`, or a child for (mother, day) already exists. Both the client and
    the daily sweep call this, so it must never create a second child.
    """
    if not mother.is_recurring or mother.parent_task_id or mother.recurrence is None:
        return None

    try:
        rule, start, end = _mother_window(mother)
        if not should_occur_on(rule, day, start_date=start, end_date=end):
            return None
    except RecurrenceError as e:
        logger.warning("Skipping mother task %s: %s", mother.id, e)
        return None

    children = list(existing_children)
    for child in children:
        if child.parent_task_id == mother.id and child.start_date == day:
            return None

    taken = set(existing_ids)
    taken.update(c.id for c in children)
    taken.add(mother.id)

    return Task(
        id=new_occurrence_id(mother.id, day, taken),
        title=f"{mother.title} ({day})",
        description=mother.description,
        status=TaskStatus.todo,
        priority=mother.priority,
        assigneeId=mother.assignee_id,
        assigneeIds=list(mother.assignee_ids),
        clientId=mother.client_id,
        startDate=day,
        dueDate=day,
        tags=list(mother.tags),
        completedDate=None,
        isRecurring=False,
        recurrence=None,
        parentTaskId=mother.id,
    )


class ChildIndex:
    """parentTaskId -> children, discovered by scanning a task list."""

    def __init__(self, tasks: Iterable[Task] = ()):
        self._children: dict[str, list[Task]] = {}
        self._ids: set[str] = set()
        for t in tasks:
            self.add(t)

    def add(self, task: Task) -> None:
        self._ids.add(task.id)
        if task.parent_task_id:
            self._children.setdefault(task.parent_task_id, []).append(task)

    def children_of(self, mother_id: str) -> list[Task]:
        return list(self._children.get(mother_id, []))

    @property
    def ids(self) -> set[str]:
        return set(self._ids)


def expand_recurring_tasks(
    tasks: Iterable[Task],
    day: Optional[str] = None,
    *,
    skipped: Optional[list[str]] = None,
) -> list[Task]:
    """Materialize every occurrence due on `day` that does not exist yet.

    This is the single expansion routine shared by task creation on the
    client and the server's daily sweep. Ids of mothers with malformed rules
    are appended to `skipped` when given; they never stop the batch.
    """
    target = day or today_canonical()
    all_tasks = list(tasks)
    index = ChildIndex(all_tasks)
    created: list[Task] = []

    for t in all_tasks:
        if not t.is_mother:
            continue
        try:
            _mother_window(t)
        except RecurrenceError as e:
            logger.warning("Skipping mother task %s: %s", t.id, e)
            if skipped is not None:
                skipped.append(t.id)
            continue
        child = materialize_occurrence(t, target, index.children_of(t.id), existing_ids=index.ids)
        if child is not None:
            index.add(child)
            created.append(child)

    return created


def upcoming_occurrences(mother: Task, *, start: Optional[str] = None, limit: int = 30) -> list[str]:
    """Occurrence dates from `start` (default: mother's startDate), for display."""
    if not mother.is_mother:
        return []
    try:
        rule, first, end = _mother_window(mother)
    except RecurrenceError as e:
        logger.warning("Cannot preview mother task %s: %s", mother.id, e)
        return []

    cur = max(first, start or first)
    out: list[str] = []
    scanned = 0
    while cur <= end and len(out) < int(limit) and scanned < _MAX_PREVIEW_SPAN_DAYS:
        if should_occur_on(rule, cur, start_date=first, end_date=end):
            out.append(cur)
        cur = add_days(cur, 1)
        scanned += 1
    return out


def apply_status_transition(task: Task, new_status: str, *, today: Optional[str] = None) -> Task:
    """Return a copy of `task` in `new_status` with completedDate kept consistent.

    Entering ``done`` stamps today's canonical date; leaving it clears the
    stamp. Any transition is allowed.
    """
    status = TaskStatus(new_status).value
    completed = task.completed_date
    if status == TaskStatus.done.value and task.status != TaskStatus.done.value:
        completed = today or today_canonical()
    elif status != TaskStatus.done.value:
        completed = None
    return task.model_copy(update={"status": status, "completed_date": completed})


def cascade_delete_plan(task: Task, tasks: Iterable[Task]) -> list[Task]:
    """Tasks removed when deleting `task`.

    Deleting a mother also removes its pending children; finished children
    stay as history. Children and standalone tasks are removed alone.
    """
    if task.parent_task_id or not task.is_recurring:
        return [task]
    pending = [
        t for t in tasks if t.parent_task_id == task.id and t.status != TaskStatus.done.value and t.id != task.id
    ]
    return [task, *pending]
