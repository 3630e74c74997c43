from __future__ import annotations

import json
import logging
import secrets
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Iterator, Optional

from apscheduler.jobstores.base import JobLookupError
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings, get_settings
from .crud import get_meta, insert_tasks, list_tasks, set_meta
from .models import AppMeta
from .recurrence import expand_recurring_tasks
from .utils.time_utils import parse_canonical_date, today_canonical


logger = logging.getLogger("taskbridge.sweep")

SWEEP_LOCK_NAME = "lock:recurrence_sweep"
LAST_SWEEP_KEY = "sweep:last_report"


@dataclass
class SweepReport:
    day: str
    examined: int = 0
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class LockUnavailable(Exception):
    pass


def _session_engine(db: Session) -> Engine:
    bind = db.get_bind()
    return getattr(bind, "engine", None) or bind


def _try_insert_lock(SessionMaker: sessionmaker, *, name: str, token: str, ttl_seconds: float) -> bool:
    expires = datetime.utcnow() + timedelta(seconds=float(ttl_seconds))
    s = SessionMaker()
    try:
        s.add(AppMeta(key=name, value=f"{token}|{expires.isoformat()}"))
        s.commit()
        return True
    except (IntegrityError, OperationalError):
        s.rollback()
    finally:
        s.close()

    # Break the lock if its holder died without releasing it.
    s = SessionMaker()
    try:
        row = s.query(AppMeta).filter(AppMeta.key == name).first()
        if row is None:
            return False
        try:
            held_until = datetime.fromisoformat(str(row.value).split("|", 1)[1])
        except (IndexError, ValueError):
            held_until = datetime.min
        if held_until < datetime.utcnow():
            logger.warning("Breaking stale lock %s (%s)", name, row.value)
            s.delete(row)
            s.commit()
        return False
    except OperationalError:
        s.rollback()
        return False
    finally:
        s.close()


@contextmanager
def sweep_lock(
    engine: Engine,
    *,
    name: str = SWEEP_LOCK_NAME,
    timeout_seconds: float = 30.0,
    ttl_seconds: float = 600.0,
    poll_seconds: float = 0.2,
) -> Iterator[str]:
    """Cross-process mutual exclusion through a row in app_meta.

    Waits at most `timeout_seconds`, then raises LockUnavailable.
    """
    SessionMaker = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    token = secrets.token_hex(8)
    deadline = time.monotonic() + max(0.0, float(timeout_seconds))

    while not _try_insert_lock(SessionMaker, name=name, token=token, ttl_seconds=ttl_seconds):
        if time.monotonic() >= deadline:
            raise LockUnavailable(name)
        time.sleep(poll_seconds)

    try:
        yield token
    finally:
        s = SessionMaker()
        try:
            row = s.query(AppMeta).filter(AppMeta.key == name).first()
            if row is not None and str(row.value).startswith(f"{token}|"):
                s.delete(row)
                s.commit()
        except OperationalError:
            s.rollback()
            logger.exception("Failed to release lock %s", name)
        finally:
            s.close()


def run_recurrence_sweep(
    db: Session,
    *,
    day: Optional[str] = None,
    lock_timeout_seconds: Optional[float] = None,
    settings: Optional[Settings] = None,
) -> Optional[SweepReport]:
    """Create today's occurrences for every stored mother task.

    Returns None when another sweep holds the lock; that run is simply
    abandoned and the next scheduled run tries again.
    """
    s = settings or get_settings()
    target = parse_canonical_date(day) if day else today_canonical()
    timeout = s.sweep.lock_timeout_seconds if lock_timeout_seconds is None else lock_timeout_seconds

    try:
        with sweep_lock(
            _session_engine(db),
            timeout_seconds=float(timeout),
            ttl_seconds=float(s.sweep.lock_ttl_seconds),
        ):
            report = _sweep_locked(db, day=target)
    except LockUnavailable:
        logger.info("Recurrence sweep for %s skipped: another run holds the lock", target)
        return None

    set_meta(db, LAST_SWEEP_KEY, json.dumps(asdict(report)))
    return report


def _sweep_locked(db: Session, *, day: str) -> SweepReport:
    logger.info("Recurrence sweep started for %s", day)
    report = SweepReport(day=day)
    tasks = list_tasks(db, unreadable=report.skipped)
    # Mothers whose rule text could not be read sit out this run.
    unread = [t.id for t in tasks if t.recurrence_raw and not t.parent_task_id]
    if unread:
        logger.warning("Recurrence sweep skipping %s task(s) with unreadable rules: %s", len(unread), unread)
    report.skipped.extend(unread)
    report.examined = sum(1 for t in tasks if t.is_mother) + len(unread)

    children = expand_recurring_tasks(tasks, day, skipped=report.skipped)
    if children:
        insert_tasks(db, children)
        report.created = [c.id for c in children]
        logger.info("Recurrence sweep created %s child task(s) for %s", len(children), day)
    else:
        logger.info("Recurrence sweep created no tasks for %s", day)
    return report


def last_sweep_report(db: Session) -> Optional[SweepReport]:
    raw = get_meta(db, LAST_SWEEP_KEY)
    if not raw:
        return None
    try:
        return SweepReport(**json.loads(raw))
    except (TypeError, ValueError):
        logger.warning("Discarding unreadable sweep report: %r", raw)
        return None


def configure_sweep_job(sched, settings: Optional[Settings] = None, *, session_factory=None) -> None:
    """(Re)register the daily sweep trigger.

    An existing job with the same id is removed first, so re-registering never
    produces a second schedule.
    """
    s = settings or get_settings()
    job_id = s.sweep.job_id

    try:
        sched.remove_job(job_id)
    except JobLookupError:
        pass

    if not s.sweep.enabled:
        logger.info("Recurrence sweep disabled")
        return

    if session_factory is None:
        from .db import SessionLocal as session_factory

    def _sweep_job() -> None:
        dbx = session_factory()
        try:
            run_recurrence_sweep(dbx, settings=s)
        except Exception:
            logger.exception("Error while running the recurrence sweep")
        finally:
            dbx.close()

    sched.add_job(
        _sweep_job,
        "cron",
        hour=int(s.sweep.hour_local),
        minute=int(s.sweep.minute),
        timezone=s.app.timezone,
        id=job_id,
        replace_existing=True,
    )
    logger.info(
        "Recurrence sweep scheduled daily at %02d:%02d %s",
        int(s.sweep.hour_local),
        int(s.sweep.minute),
        s.app.timezone,
    )
