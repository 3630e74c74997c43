from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from .utils.time_utils import get_app_tz, today_canonical


LOG_PREFIX = "taskbridge"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_LOGFILE_RE = re.compile(rf"^{re.escape(LOG_PREFIX)}-(\d{{4}}-\d{{2}}-\d{{2}})\.log$")

# Framework loggers that should end up in our handlers.
_PROPAGATED = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi", "apscheduler")


def _level_number(level: str | None) -> int:
    value = logging.getLevelName((level or "INFO").strip().upper())
    return value if isinstance(value, int) else logging.INFO


class CivilDayFileHandler(logging.FileHandler):
    """Append to ``<dir>/taskbridge-YYYY-MM-DD.log``, one file per civil day.

    The day is taken in the application timezone, the same calendar the sweep
    and task dates use, so a sweep's log lines land in that day's file.
    """

    def __init__(
        self,
        log_dir: str | Path,
        *,
        tz: Optional[ZoneInfo] = None,
        day_fn: Optional[Callable[[], str]] = None,
        level: int = logging.NOTSET,
    ):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        zone = tz or get_app_tz()
        self._day_fn = day_fn or (lambda: today_canonical(tz=zone))
        self.day = self._day_fn()
        super().__init__(self.path_for(self.day), mode="a", encoding="utf-8", delay=True)
        self.setLevel(level)

    def path_for(self, day: str) -> Path:
        return self.log_dir / f"{LOG_PREFIX}-{day}.log"

    def emit(self, record: logging.LogRecord) -> None:
        day = self._day_fn()
        if day != self.day:
            self.acquire()
            try:
                if self.stream is not None:
                    self.stream.close()
                    self.stream = None
                self.day = day
                # FileHandler reopens baseFilename lazily on the next write.
                self.baseFilename = os.path.abspath(self.path_for(day))
            except OSError:
                self.handleError(record)
                return
            finally:
                self.release()
        super().emit(record)


def _file_handler(root: logging.Logger) -> Optional[CivilDayFileHandler]:
    for h in root.handlers:
        if isinstance(h, CivilDayFileHandler):
            return h
    return None


def setup_logging(*, level: str = "INFO", log_dir: str | None = None, file_enabled: bool = True) -> None:
    """Console logging always, a per-day file under `log_dir` when enabled.

    Calling it again only updates levels and formatting.
    """
    lvl = _level_number(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    root = logging.getLogger()
    root.setLevel(lvl)

    console = [h for h in root.handlers if type(h) is logging.StreamHandler]
    if not console:
        console = [logging.StreamHandler()]
        root.addHandler(console[0])

    handlers: list[logging.Handler] = list(console)
    fh = _file_handler(root)
    if fh is None and file_enabled and log_dir:
        try:
            fh = CivilDayFileHandler(log_dir)
        except OSError as e:
            logging.getLogger("taskbridge").warning("File logging disabled, cannot use %s: %s", log_dir, e)
        else:
            root.addHandler(fh)
    if fh is not None:
        handlers.append(fh)

    for h in handlers:
        h.setLevel(lvl)
        h.setFormatter(formatter)
    for name in _PROPAGATED:
        logging.getLogger(name).propagate = True


def apply_log_level(level: str) -> int:
    """Change the level at runtime; returns the numeric level applied."""
    lvl = _level_number(level)
    root = logging.getLogger()
    root.setLevel(lvl)
    logging.getLogger(LOG_PREFIX).setLevel(lvl)
    for h in root.handlers:
        if type(h) is logging.StreamHandler or isinstance(h, CivilDayFileHandler):
            h.setLevel(lvl)
    return lvl


def list_log_files(log_dir: str | Path) -> list[Path]:
    """Daily log files under `log_dir`, most recent day first."""
    d = Path(log_dir)
    if not d.is_dir():
        return []
    dated = []
    for p in d.iterdir():
        m = _LOGFILE_RE.match(p.name)
        if m and p.is_file():
            dated.append((m.group(1), p))
    return [p for _, p in sorted(dated, reverse=True)]
