from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from .models import (
    CLIENT_FIELD_MAP,
    TASK_FIELD_MAP,
    USER_FIELD_MAP,
    AppMeta,
    ClientRow,
    TaskRow,
    UserRow,
)
from .records import (
    client_to_record,
    normalize_recurrence_input,
    task_from_record,
    task_to_record,
    user_to_record,
)
from .schemas import ENTITY_CLIENT, ENTITY_TASK, ENTITY_USER, Client, MutationRequest, Task, User
from .utils.time_utils import parse_canonical_date


logger = logging.getLogger("taskbridge.crud")


_MODELS = {
    ENTITY_TASK: (TaskRow, TASK_FIELD_MAP),
    ENTITY_USER: (UserRow, USER_FIELD_MAP),
    ENTITY_CLIENT: (ClientRow, CLIENT_FIELD_MAP),
}


def _row_to_record(row: Any, field_map: dict[str, str]) -> dict[str, str]:
    return {key: str(getattr(row, attr) or "") for key, attr in field_map.items()}


def _apply_record(row: Any, record: dict[str, str], field_map: dict[str, str]) -> None:
    for key, attr in field_map.items():
        if key == "id":
            continue
        setattr(row, attr, record.get(key, "") or "")


def _first_error(e: ValidationError) -> str:
    errs = e.errors()
    if not errs:
        return str(e)
    loc = ".".join(str(p) for p in errs[0].get("loc", ()))
    msg = errs[0].get("msg", "invalid")
    return f"{loc}: {msg}" if loc else msg


# ---------------------- Reads ----------------------


def list_records(db: Session, entity_type: str) -> list[dict[str, str]]:
    model, field_map = _MODELS[entity_type]
    rows = db.query(model).order_by(model.created_at.asc(), model.id.asc()).all()
    return [_row_to_record(r, field_map) for r in rows]


def list_tasks(db: Session, *, unreadable: Optional[list[str]] = None) -> list[Task]:
    """All stored tasks; rows that cannot be read are logged and left out.

    Ids of such rows are appended to `unreadable` when given.
    """
    out: list[Task] = []
    for r in list_records(db, ENTITY_TASK):
        try:
            out.append(task_from_record(r))
        except ValidationError as e:
            logger.warning("Skipping unreadable task row %s: %s", r.get("id"), _first_error(e))
            if unreadable is not None:
                unreadable.append(r.get("id") or "")
    return out


def get_task(db: Session, *, task_id: str) -> Optional[Task]:
    row = db.query(TaskRow).filter(TaskRow.id == str(task_id)).first()
    if row is None:
        return None
    return task_from_record(_row_to_record(row, TASK_FIELD_MAP))


# ---------------------- Validation ----------------------


def validate_task_item(item: dict[str, Any]) -> Task:
    data = dict(item)
    if data.get("recurrence") not in (None, ""):
        data["recurrence"] = normalize_recurrence_input(data["recurrence"])
    try:
        task = Task.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Invalid task: {_first_error(e)}") from None

    updates: dict[str, Any] = {}
    for attr in ("start_date", "due_date", "completed_date"):
        value = getattr(task, attr)
        if value:
            updates[attr] = parse_canonical_date(value)
    if task.recurrence is not None:
        # A rule makes the row a mother whatever the client flag said.
        updates["is_recurring"] = True
    return task.model_copy(update=updates) if updates else task


def validate_user_item(item: dict[str, Any]) -> User:
    try:
        return User.model_validate(item)
    except ValidationError as e:
        raise ValueError(f"Invalid user: {_first_error(e)}") from None


def validate_client_item(item: dict[str, Any]) -> Client:
    try:
        return Client.model_validate(item)
    except ValidationError as e:
        raise ValueError(f"Invalid client: {_first_error(e)}") from None


# ---------------------- Writes ----------------------


def _upsert_record(db: Session, entity_type: str, record: dict[str, str]) -> None:
    model, field_map = _MODELS[entity_type]
    row = db.query(model).filter(model.id == record["id"]).first()
    if row is None:
        row = model(id=record["id"])
    _apply_record(row, record, field_map)
    db.add(row)


def delete_row(db: Session, entity_type: str, entity_id: str) -> bool:
    model, _ = _MODELS[entity_type]
    n = db.query(model).filter(model.id == str(entity_id)).delete(synchronize_session=False)
    return bool(n)


def apply_mutation(db: Session, req: MutationRequest) -> None:
    """Apply one incremental operation to one row.

    create/update are upserts and delete of a missing row is a no-op, so a
    retried operation converges to the same store state.
    Raises ValueError for invalid items.
    """
    entity_id = str((req.item or {}).get("id") or "").strip()
    if not entity_id:
        raise ValueError("Item id is required")

    if req.operation == "delete":
        deleted = delete_row(db, req.type, entity_id)
        db.commit()
        if not deleted:
            logger.info("Delete of missing %s %s ignored", req.type, entity_id)
        return

    if req.type == ENTITY_TASK:
        record = task_to_record(validate_task_item(req.item))
    elif req.type == ENTITY_USER:
        record = user_to_record(validate_user_item(req.item))
    else:
        record = client_to_record(validate_client_item(req.item))

    _upsert_record(db, req.type, record)
    db.commit()


def insert_tasks(db: Session, tasks: Iterable[Task]) -> int:
    """Write several tasks in a single commit."""
    n = 0
    for t in tasks:
        _upsert_record(db, ENTITY_TASK, task_to_record(t))
        n += 1
    if n:
        db.commit()
    return n


# ---------------------- App meta ----------------------


def get_meta(db: Session, key: str) -> Optional[str]:
    row = db.query(AppMeta).filter(AppMeta.key == key).first()
    return row.value if row else None


def set_meta(db: Session, key: str, value: str) -> None:
    row = db.query(AppMeta).filter(AppMeta.key == key).first()
    if row is None:
        row = AppMeta(key=key, value=value)
    else:
        row.value = value
    db.add(row)
    db.commit()

