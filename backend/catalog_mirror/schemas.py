"""
schemas.py

Pydantic request/response bodies for the library, sync and restriction APIs.
"""
import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class LibraryQuery(BaseModel):
    """Body of POST /api/library/{entity_type}/query."""
    user_id: Optional[int] = None
    filters: Dict[str, Any] = Field(default_factory=dict)
    # IDs of the queried type, or entity type -> IDs
    excluded_ids: Optional[Union[List[str], Dict[str, List[str]]]] = None
    sort: Optional[str] = None
    direction: str = "DESC"
    page: int = 1
    per_page: int = 40
    random_seed: Optional[int] = None
    q: Optional[str] = None
    include_deleted: bool = False


class LibraryPage(BaseModel):
    entities: List[Dict[str, Any]]
    total: int
    page: int
    per_page: int
    total_pages: int
    random_seed: Optional[int] = None


class SyncStateSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    last_full_sync: Optional[datetime.datetime] = None
    last_incremental_sync: Optional[datetime.datetime] = None
    last_sync_count: int = 0
    last_sync_duration_ms: Optional[int] = None
    last_error: Optional[str] = None
    total_entities: int = 0
    phase: Optional[str] = None


class SyncResultSchema(BaseModel):
    status: str
    entity_type: str
    count: int = 0
    duration_ms: int = 0
    error: Optional[str] = None
    incremental: bool = False
    batches: int = 0
    inserted: int = 0
    revived: int = 0
    tombstoned: int = 0


class SyncQueued(BaseModel):
    status: str = "queued"
    entity_type: str
    task_id: Optional[str] = None
    supersede: bool = False


# Restrictions
class RestrictionUpdate(BaseModel):
    mode: str
    ids: List[str]
    restrict_empty: bool = False


class RestrictionSchema(BaseModel):
    entity_type: str
    mode: str
    ids: List[str]
    restrict_empty: bool = False
    updated_at: Optional[datetime.datetime] = None


class HiddenEntitySchema(BaseModel):
    entity_type: str
    entity_id: str
    hidden_at: Optional[datetime.datetime] = None


class ExclusionSummary(BaseModel):
    user_id: int
    counts: Dict[str, Dict[str, int]]
