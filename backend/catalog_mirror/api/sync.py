"""
sync.py

Sync triggers and sync-state reads for schedulers and ops tooling.
"""
import asyncio
import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from catalog_mirror.core.database import get_db
from catalog_mirror.errors import QueryValidationError, SyncLockBusy
from catalog_mirror.models import EntityType
from catalog_mirror.schemas import SyncQueued, SyncResultSchema, SyncStateSchema
from catalog_mirror.services import tasks
from catalog_mirror.services.sync_engine import get_sync_state

router = APIRouter()
logger = logging.getLogger(__name__)

SUPERSEDE_WAIT_SECONDS = 30


def _entity_type(value: str) -> EntityType:
    try:
        return EntityType.parse(value)
    except ValueError as e:
        raise QueryValidationError(str(e), field="entity_type") from None


@router.get("/state", response_model=List[SyncStateSchema])
def get_all_sync_states(db: Session = Depends(get_db)):
    return [get_sync_state(db, t) for t in EntityType]


@router.get("/{entity_type}/state", response_model=SyncStateSchema)
def get_entity_sync_state(entity_type: str, db: Session = Depends(get_db)):
    return get_sync_state(db, _entity_type(entity_type))


@router.post("/{entity_type}")
async def trigger_sync(
    entity_type: str,
    incremental: bool = False,
    supersede: bool = False,
    background: bool = True,
):
    """Start a sync.

    With `background` the sync is queued on a worker and the task ID returned.
    Otherwise it runs inline and the SyncResult is returned; a busy type
    answers 409 unless `supersede` cancels the running sync first.
    """
    etype = _entity_type(entity_type)
    if background:
        task = tasks.enqueue_sync(etype, incremental=incremental, supersede=supersede)
        return SyncQueued(entity_type=etype.value, task_id=getattr(task, "id", None), supersede=supersede)

    if supersede:
        tasks.request_supersede(etype)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + (SUPERSEDE_WAIT_SECONDS if supersede else 0)
    while True:
        try:
            result = await tasks.run_locked_sync(etype, incremental=incremental)
            return SyncResultSchema(**result)
        except SyncLockBusy:
            if loop.time() >= deadline:
                raise
            logger.debug(f"[SyncAPI] Waiting for running {etype.value} sync to stop")
            await asyncio.sleep(1)
