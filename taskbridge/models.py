from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


class TaskRow(Base):
    """One task per row, cells kept in the store's flat text layout."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    title: Mapped[str] = mapped_column(String(512), default="", nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="todo", nullable=False)
    priority: Mapped[str] = mapped_column(String(16), default="medium", nullable=False)
    assignee_id: Mapped[str] = mapped_column(String(128), default="", nullable=False)
    start_date: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    due_date: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    tags: Mapped[str] = mapped_column(Text, default="", nullable=False)
    assignee_ids: Mapped[str] = mapped_column(Text, default="", nullable=False)
    client_id: Mapped[str] = mapped_column(String(128), default="", nullable=False)
    completed_date: Mapped[str] = mapped_column(String(32), default="", nullable=False)

    # Opaque JSON; parsed only by readers.
    recurrence: Mapped[str] = mapped_column(Text, default="", nullable=False)
    parent_task_id: Mapped[str] = mapped_column(String(128), default="", nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    email: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    password: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    role: Mapped[str] = mapped_column(String(32), default="Analyst", nullable=False)
    avatar: Mapped[str] = mapped_column(String(2048), default="", nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class ClientRow(Base):
    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="", nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class AppMeta(Base):
    __tablename__ = "app_meta"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


# Row <-> record attribute names, in store column order.
TASK_FIELD_MAP = {
    "id": "id",
    "title": "title",
    "description": "description",
    "status": "status",
    "priority": "priority",
    "assigneeId": "assignee_id",
    "startDate": "start_date",
    "dueDate": "due_date",
    "tags": "tags",
    "assigneeIds": "assignee_ids",
    "clientId": "client_id",
    "completedDate": "completed_date",
    "recurrence": "recurrence",
    "parentTaskId": "parent_task_id",
}
USER_FIELD_MAP = {k: k for k in ("id", "name", "email", "password", "role", "avatar")}
CLIENT_FIELD_MAP = {"id": "id", "name": "name"}
