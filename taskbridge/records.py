"""Flat record shape of the remote store.

The store keeps one row per entity with plain string cells: lists are
comma-separated, nulls are empty strings and a recurrence rule is an opaque
JSON string. These helpers convert between that shape and the entities in
`schemas`.
"""

from __future__ import annotations

import enum
import json
import logging
from typing import Any, Mapping

from pydantic import ValidationError

from .schemas import WEEKDAY_NAMES, Client, RecurrenceRule, Task, User
from .utils.time_utils import to_canonical_date


logger = logging.getLogger("taskbridge.records")

TASK_COLUMNS = (
    "id",
    "title",
    "description",
    "status",
    "priority",
    "assigneeId",
    "startDate",
    "dueDate",
    "tags",
    "assigneeIds",
    "clientId",
    "completedDate",
    "recurrence",
    "parentTaskId",
)
USER_COLUMNS = ("id", "name", "email", "password", "role", "avatar")
CLIENT_COLUMNS = ("id", "name")


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, enum.Enum):
        return str(value.value)
    return str(value)


def _split_csv(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [p.strip() for p in str(value).split(",") if p.strip()]


def normalize_recurrence_input(raw: Any) -> dict[str, Any] | None:
    """Coerce a stored/submitted recurrence into a dict with current field names.

    Accepts a dict or a JSON string. Legacy rules with numeric ``days`` get
    ``daysOfWeek`` names, and ``enabled`` defaults to true. Raises ValueError
    when the value is not JSON or not an object.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, RecurrenceRule):
        return raw.model_dump(by_alias=True)
    data = raw
    if isinstance(raw, str):
        data = json.loads(raw)
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValueError("Recurrence must be a JSON object")

    rule = dict(data)
    if rule.get("days") and not rule.get("daysOfWeek"):
        names: list[str] = []
        for d in rule["days"]:
            try:
                names.append(WEEKDAY_NAMES[int(d)])
            except (TypeError, ValueError, IndexError):
                raise ValueError(f"Invalid legacy weekday: {d!r}") from None
        rule["daysOfWeek"] = names
        rule["enabled"] = True
    rule.pop("days", None)
    if rule.get("enabled") is None:
        rule["enabled"] = True
    return rule


def task_to_record(task: Task) -> dict[str, str]:
    recurrence = ""
    if not task.parent_task_id:
        if task.recurrence is not None:
            recurrence = json.dumps(task.recurrence.model_dump(by_alias=True, mode="json"), separators=(",", ":"))
        elif task.recurrence_raw:
            recurrence = task.recurrence_raw
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": _cell(task.status),
        "priority": _cell(task.priority),
        "assigneeId": _cell(task.assignee_id),
        "startDate": task.start_date,
        "dueDate": task.due_date,
        "tags": ",".join(task.tags),
        "assigneeIds": ",".join(task.assignee_ids),
        "clientId": _cell(task.client_id),
        "completedDate": _cell(task.completed_date),
        "recurrence": recurrence,
        "parentTaskId": _cell(task.parent_task_id),
    }


def task_from_record(record: Mapping[str, Any]) -> Task:
    """Map a store row to a Task.

    A recurrence cell that fails to parse is logged and the task is treated as
    non-recurring for this read; it is never fatal. The cell text is kept in
    `recurrence_raw` so a later save does not erase it.
    """
    task_id = _cell(record.get("id"))
    recurrence: RecurrenceRule | None = None
    unread_rule: str | None = None
    raw_rule = record.get("recurrence")
    if raw_rule:
        try:
            rule = normalize_recurrence_input(raw_rule)
            recurrence = RecurrenceRule.model_validate(rule) if rule else None
        except (ValueError, ValidationError) as e:
            logger.warning("Ignoring unparseable recurrence on task %s: %s", task_id, e)
            recurrence = None
            unread_rule = raw_rule if isinstance(raw_rule, str) else json.dumps(raw_rule)

    assignee_ids = _split_csv(record.get("assigneeIds"))
    legacy_assignee = _cell(record.get("assigneeId")) or None
    if not assignee_ids and legacy_assignee:
        assignee_ids = [legacy_assignee]

    return Task(
        id=task_id,
        title=_cell(record.get("title")),
        description=_cell(record.get("description")),
        status=_cell(record.get("status")) or "todo",
        priority=_cell(record.get("priority")) or "medium",
        assigneeId=legacy_assignee,
        assigneeIds=assignee_ids,
        clientId=_cell(record.get("clientId")) or None,
        startDate=to_canonical_date(record.get("startDate") or None),
        dueDate=to_canonical_date(record.get("dueDate") or None),
        tags=_split_csv(record.get("tags")),
        completedDate=_cell(record.get("completedDate")) or None,
        isRecurring=recurrence is not None,
        recurrence=recurrence,
        recurrenceRaw=unread_rule,
        parentTaskId=_cell(record.get("parentTaskId")) or None,
    )


def user_to_record(user: User) -> dict[str, str]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "password": user.password,
        "role": _cell(user.role),
        "avatar": user.avatar,
    }


def user_from_record(record: Mapping[str, Any]) -> User:
    return User(
        id=_cell(record.get("id")),
        name=_cell(record.get("name")),
        email=_cell(record.get("email")),
        password=_cell(record.get("password")),
        role=_cell(record.get("role")) or "Analyst",
        avatar=_cell(record.get("avatar")),
    )


def client_to_record(client: Client) -> dict[str, str]:
    return {"id": client.id, "name": client.name}


def client_from_record(record: Mapping[str, Any]) -> Client:
    return Client(id=_cell(record.get("id")), name=_cell(record.get("name")))
