from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import require_api_token
from ..config import get_settings
from ..db import get_db
from ..logging_setup import apply_log_level, list_log_files
from ..schemas import LogFileOut, LoggingLevelUpdate, SweepOut, SweepRequest
from ..sweep import last_sweep_report, run_recurrence_sweep

router = APIRouter(dependencies=[Depends(require_api_token)])


@router.post("/sweep", response_model=Optional[SweepOut])
def api_run_sweep(payload: Optional[SweepRequest] = None, db: Session = Depends(get_db)):
    try:
        report = run_recurrence_sweep(db, day=payload.day if payload else None)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if report is None:
        raise HTTPException(status_code=409, detail="Another sweep is running")
    return SweepOut(**asdict(report))


@router.get("/sweep", response_model=Optional[SweepOut])
def api_last_sweep(db: Session = Depends(get_db)):
    report = last_sweep_report(db)
    return SweepOut(**asdict(report)) if report else None


@router.put("/logging")
def api_set_log_level(payload: LoggingLevelUpdate):
    level = str(payload.level).strip().upper()
    apply_log_level(level)
    return {"level": level}


@router.get("/logs/files", response_model=List[LogFileOut])
def api_list_logs():
    out: list[LogFileOut] = []
    for p in list_log_files(get_settings().logging.dir):
        try:
            st = p.stat()
        except OSError:
            continue
        out.append(
            LogFileOut(
                filename=p.name,
                size_bytes=int(st.st_size),
                modified_at_iso=datetime.fromtimestamp(st.st_mtime).isoformat(),
            )
        )
    return out
