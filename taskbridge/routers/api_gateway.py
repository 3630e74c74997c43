from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import require_api_token
from ..crud import apply_mutation, get_task, list_records
from ..db import get_db
from ..records import task_to_record
from ..schemas import ENTITY_CLIENT, ENTITY_TASK, ENTITY_USER, MutationRequest, MutationResponse


logger = logging.getLogger("taskbridge.gateway")

router = APIRouter(dependencies=[Depends(require_api_token)])


@router.post("/mutate", response_model=MutationResponse)
def api_mutate(payload: MutationRequest, db: Session = Depends(get_db)):
    try:
        apply_mutation(db, payload)
    except ValueError as e:
        db.rollback()
        logger.info("Rejected %s %s: %s", payload.operation, payload.type, e)
        return MutationResponse(success=False, error=str(e))
    return MutationResponse(success=True)


@router.get("/tasks", response_model=list[dict[str, str]])
def api_list_tasks(db: Session = Depends(get_db)):
    return list_records(db, ENTITY_TASK)


@router.get("/tasks/{task_id}", response_model=dict[str, str])
def api_get_task(task_id: str, db: Session = Depends(get_db)):
    task = get_task(db, task_id=task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task_to_record(task)


@router.get("/users", response_model=list[dict[str, str]])
def api_list_users(db: Session = Depends(get_db)):
    return list_records(db, ENTITY_USER)


@router.get("/clients", response_model=list[dict[str, str]])
def api_list_clients(db: Session = Depends(get_db)):
    return list_records(db, ENTITY_CLIENT)
