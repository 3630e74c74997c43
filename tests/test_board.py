import pytest

from taskbridge.board import TaskBoard, TaskFilter, filter_tasks
from taskbridge.notices import Notifier
from taskbridge.schemas import Client, Task, User
from taskbridge.store import LocalStore
from taskbridge.sync_queue import SyncQueue, WriteClock


def _board():
    store = LocalStore()
    clock = WriteClock()
    sent = []
    queues = {
        name: SyncQueue(name, lambda op: sent.append((op.collection, op.kind, op.entity_id)), auto_drain=False)
        for name in ("tasks", "users", "clients")
    }
    board = TaskBoard(store, queues, clock, Notifier())
    return board, store, queues, clock, sent


def test_create_recurring_task_adds_todays_child():
    board, store, queues, clock, _ = _board()
    created = board.create_task(
        {
            "title": "Standup",
            "startDate": "2026-01-01",
            "isRecurring": True,
            "recurrence": {"frequency": "weekly", "days": [1, 5], "endDate": "2026-03-31"},
        },
        today="2026-01-05",
    )

    mother, child = created
    assert mother.is_mother
    assert mother.due_date == "2026-03-31"
    assert mother.recurrence.days_of_week == ["monday", "friday"]
    assert child.parent_task_id == mother.id
    assert child.start_date == "2026-01-05"

    assert len(store.snapshot("tasks")) == 2
    assert [o.kind for o in queues["tasks"].pending()] == ["create", "create"]
    assert "instances" not in queues["tasks"].pending()[0].payload
    assert clock.last_write("tasks") is not None


def test_create_recurring_task_on_an_off_day_adds_only_the_mother():
    board, store, _, _, _ = _board()
    created = board.create_task(
        {
            "title": "Standup",
            "startDate": "2026-01-01",
            "isRecurring": True,
            "recurrence": {"frequency": "weekly", "daysOfWeek": ["monday"], "endDate": "2026-03-31"},
        },
        today="2026-01-06",
    )
    assert len(created) == 1


def test_plain_task_defaults_due_date_a_week_out():
    board, _, _, _, _ = _board()
    (task,) = board.create_task({"title": "Call", "startDate": "2026-01-05"}, today="2026-01-05")
    assert task.due_date == "2026-01-12"
    assert not task.is_recurring


def test_move_to_done_and_back_tracks_completed_date():
    board, store, queues, _, _ = _board()
    (task,) = board.create_task({"title": "Call", "startDate": "2026-01-05"}, today="2026-01-05")

    done = board.move_task(task.id, "done", today="2026-01-07")
    assert done.completed_date == "2026-01-07"

    reopened = board.move_task(task.id, "inprogress")
    assert reopened.completed_date is None
    assert store.get("tasks", task.id).status == "inprogress"
    assert [o.kind for o in queues["tasks"].pending()] == ["create", "update", "update"]


def test_update_task_keeps_completion_when_status_unchanged():
    board, _, _, _, _ = _board()
    (task,) = board.create_task({"title": "Call", "startDate": "2026-01-05"}, today="2026-01-05")
    done = board.move_task(task.id, "done", today="2026-01-07")

    edited = board.update_task(done.model_copy(update={"title": "Call back"}))
    assert edited.title == "Call back"
    assert edited.completed_date == "2026-01-07"


def test_delete_mother_removes_only_pending_children():
    board, store, queues, _, _ = _board()
    mother = Task.model_validate(
        {
            "id": "m1",
            "title": "Report",
            "startDate": "2026-01-01",
            "dueDate": "2026-01-31",
            "isRecurring": True,
            "recurrence": {"frequency": "daily"},
        }
    )
    children = [
        Task(id="k1", title="a", parentTaskId="m1", startDate="2026-01-01", dueDate="2026-01-01", status="todo"),
        Task(id="k2", title="b", parentTaskId="m1", startDate="2026-01-02", dueDate="2026-01-02", status="review"),
        Task(id="k3", title="c", parentTaskId="m1", startDate="2026-01-03", dueDate="2026-01-03", status="done"),
    ]
    store.replace_all("tasks", [mother, *children])

    removed = board.delete_task("m1")
    assert sorted(t.id for t in removed) == ["k1", "k2", "m1"]
    assert [t.id for t in store.snapshot("tasks")] == ["k3"]
    assert sorted(o.entity_id for o in queues["tasks"].pending()) == ["k1", "k2", "m1"]


def test_catch_up_recurring_is_idempotent():
    board, store, _, _, _ = _board()
    mother = Task.model_validate(
        {
            "id": "m1",
            "title": "Report",
            "startDate": "2026-01-01",
            "dueDate": "2026-01-31",
            "isRecurring": True,
            "recurrence": {"frequency": "daily"},
        }
    )
    store.replace_all("tasks", [mother])

    assert len(board.catch_up_recurring("2026-01-10")) == 1
    assert board.catch_up_recurring("2026-01-10") == []


def test_user_update_keeps_password_when_blank():
    board, store, queues, _, _ = _board()
    board.create_user(User(id="u1", name="Ana", password="secret"))
    board.update_user(User(id="u1", name="Ana M", password=""))
    assert store.get("users", "u1").password == "secret"
    assert store.get("users", "u1").name == "Ana M"

    assert board.delete_user("u1").id == "u1"
    assert board.delete_user("u1") is None
    assert [o.kind for o in queues["users"].pending()] == ["create", "update", "delete"]


def test_client_operations_queue_in_order():
    board, store, queues, _, sent = _board()
    board.create_client(Client(id="c1", name="Acme"))
    board.update_client(Client(id="c1", name="Acme Inc"))
    board.delete_client("c1")
    assert store.snapshot("clients") == []

    assert queues["clients"].drain() == 3
    assert sent == [("clients", "create", "c1"), ("clients", "update", "c1"), ("clients", "delete", "c1")]


def test_filters_follow_roles():
    tasks = [
        Task(id="1", title="Mine", assigneeIds=["sup"], clientId="c1", status="todo", dueDate="2026-01-01"),
        Task(id="2", title="Team", assigneeIds=["a1"], clientId="c1", status="todo", dueDate="2026-02-01"),
        Task(id="3", title="Other client", assigneeIds=["a1"], clientId="c2", status="todo", dueDate="2026-02-01"),
        Task(id="4", title="Done", assigneeIds=["a1"], clientId="c1", status="done", dueDate="2026-01-01"),
    ]
    supervisor = User(id="sup", role="Supervisor")
    analyst = User(id="a1", role="Analyst")

    assert [t.id for t in filter_tasks(tasks, current_user=supervisor)] == ["1", "2", "4"]
    assert [t.id for t in filter_tasks(tasks, current_user=analyst)] == ["2", "3", "4"]

    overdue = filter_tasks(tasks, TaskFilter(overdue_only=True), today="2026-01-15")
    assert [t.id for t in overdue] == ["1"]

    assert [t.id for t in filter_tasks(tasks, TaskFilter(client_ids=["c2"]))] == ["3"]
    assert [t.id for t in filter_tasks(tasks, TaskFilter(search="team"))] == ["2"]


def test_update_task_normalizes_dates_before_queueing():
    board, store, queues, _, _ = _board()
    (task,) = board.create_task({"title": "Call", "startDate": "2026-01-05"}, today="2026-01-05")

    data = task.model_dump(by_alias=True)
    data.update({"dueDate": "2026-1-9", "startDate": "2026-1-5"})
    edited = board.update_task(data)
    assert edited.due_date == "2026-01-09"
    assert edited.start_date == "2026-01-05"
    assert queues["tasks"].pending()[-1].payload["dueDate"] == "2026-01-09"


def test_update_task_with_unreadable_date_changes_nothing():
    board, store, queues, _, _ = _board()
    (task,) = board.create_task({"title": "Call", "startDate": "2026-01-05"}, today="2026-01-05")
    data = task.model_dump(by_alias=True)
    data["dueDate"] = "next tuesday"

    with pytest.raises(ValueError):
        board.update_task(data)
    assert store.get("tasks", task.id).due_date == "2026-01-12"
    assert [o.kind for o in queues["tasks"].pending()] == ["create"]


def test_update_task_keeps_a_rule_the_store_could_not_read():
    board, store, queues, _, _ = _board()
    raw_rule = '{"frequency":"yearly","endDate":"2026-12-31"}'
    store.replace_all(
        "tasks",
        [Task(id="m1", title="Audit", startDate="2026-01-01", dueDate="2026-12-31", recurrenceRaw=raw_rule)],
    )

    edited = board.update_task(
        {"id": "m1", "title": "Yearly audit", "startDate": "2026-01-01", "dueDate": "2026-12-31"}
    )
    assert edited.recurrence_raw == raw_rule
    assert not edited.is_mother
    assert queues["tasks"].pending()[-1].payload["recurrenceRaw"] == raw_rule


def test_upcoming_fills_instances_without_sending_them():
    board, store, queues, _, _ = _board()
    mother = Task.model_validate(
        {
            "id": "m1",
            "title": "Report",
            "startDate": "2026-01-01",
            "dueDate": "2026-01-31",
            "isRecurring": True,
            "recurrence": {"frequency": "daily", "interval": 7},
        }
    )
    store.replace_all("tasks", [mother])

    dates = board.upcoming("m1", today="2026-01-02")
    assert dates == ["2026-01-08", "2026-01-15", "2026-01-22", "2026-01-29"]
    assert store.get("tasks", "m1").instances == dates
    assert store.get("tasks", "m1").to_wire().get("instances") is None
    assert queues["tasks"].pending() == []
