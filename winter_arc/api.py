"""HTTP surface for quest submission, availability and settlement."""
from __future__ import annotations

import logging
import sqlite3
from datetime import date
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from .ledger import UnknownInstanceError
from .models import SubmissionRequest
from .service import ArenaService
from .settlement import SettlementAbortedError, SettlementInProgressError

logger = logging.getLogger(__name__)

app = FastAPI(title="Winter Arc")

_service: Optional[ArenaService] = None


def get_service() -> ArenaService:
    global _service
    if _service is None:
        _service = ArenaService.from_env()
    return _service


class QuestEntry(BaseModel):
    quest_id: int
    completed: bool
    value: Optional[float] = None


class SubmissionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    instance_id: int
    user_id: str
    submitted_on: Optional[date] = Field(default=None, alias="date")
    quests: List[QuestEntry] = Field(min_length=1)


@app.get("/health")
def health(service: ArenaService = Depends(get_service)) -> dict:
    try:
        service.state.ping()
    except sqlite3.Error as exc:
        logger.error("Health check failed: %s", exc)
        raise HTTPException(status_code=503, detail="State store unavailable") from exc
    return {"status": "ok"}


@app.post("/submissions")
def submit_quests(payload: SubmissionPayload, service: ArenaService = Depends(get_service)) -> dict:
    requests = [SubmissionRequest(item.quest_id, item.completed, item.value) for item in payload.quests]
    try:
        return service.submit_quests(payload.instance_id, payload.user_id, requests, on=payload.submitted_on)
    except UnknownInstanceError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/users/{user_id}/availability")
def availability(
    user_id: str,
    on: Optional[date] = Query(default=None, alias="date"),
    service: ArenaService = Depends(get_service),
) -> dict:
    day = on or service.today()
    return {"user_id": user_id, "date": day.isoformat(), "quests": service.availability(user_id, day)}


@app.post("/settlements")
def settle(
    on: Optional[date] = Query(default=None, alias="date"),
    service: ArenaService = Depends(get_service),
) -> dict:
    try:
        report = service.settle(on)
    except SettlementInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except SettlementAbortedError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return report.to_dict()


@app.get("/instances/{instance_id}/status")
def processing_status(
    instance_id: int,
    on: Optional[date] = Query(default=None, alias="date"),
    service: ArenaService = Depends(get_service),
) -> dict:
    try:
        return service.processing_status(instance_id, on)
    except UnknownInstanceError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/boss")
def boss_status(
    on: Optional[date] = Query(default=None, alias="date"),
    service: ArenaService = Depends(get_service),
) -> dict:
    return service.boss_status(on)


@app.get("/boss/history")
def boss_history(
    limit: int = Query(default=12, ge=1, le=120),
    service: ArenaService = Depends(get_service),
) -> dict:
    return {"bosses": service.boss_history(limit)}


__all__ = ["app", "get_service"]
