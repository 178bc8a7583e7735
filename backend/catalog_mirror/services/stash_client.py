"""
stash_client.py

Async client for the remote catalog's GraphQL API. Every listing call is
bounded: callers pass an explicit page and a positive per_page, and the
"all records" page size (-1) is rejected before any request is sent.

Raw GraphQL objects are normalized into RemoteEntity records whose `fields`
match the local column names and whose `relations` hold related IDs only.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx

from catalog_mirror.core.config import settings
from catalog_mirror.errors import (
    StashAPIError,
    StashAuthError,
    StashNetworkError,
    StashUnavailableError,
)
from catalog_mirror.models import EntityType
from catalog_mirror.services.backoff import with_backoff
from catalog_mirror.utils.timezone import format_iso_utc, parse_remote_timestamp

logger = logging.getLogger(__name__)

MAX_PER_PAGE = 10000


@dataclass
class RemoteEntity:
    id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    # relation name -> related IDs (str) or dicts with "id" plus extra columns
    relations: Dict[str, List[Any]] = field(default_factory=dict)


@dataclass
class RemotePage:
    items: List[Any]
    total_count: int


def _ids(objs) -> List[str]:
    return [str(o["id"]) for o in (objs or []) if o and o.get("id") is not None]


def _nested_id(obj) -> Optional[str]:
    return str(obj["id"]) if obj and obj.get("id") is not None else None


def _timestamps(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "remote_created_at": parse_remote_timestamp(raw.get("created_at")),
        "remote_updated_at": parse_remote_timestamp(raw.get("updated_at")),
    }


def _scene(raw: Dict[str, Any]) -> RemoteEntity:
    files = raw.get("files") or []
    f = files[0] if files else {}
    paths = raw.get("paths") or {}
    fields = {
        "title": raw.get("title"),
        "code": raw.get("code"),
        "date": raw.get("date"),
        "details": raw.get("details"),
        "studio_id": _nested_id(raw.get("studio")),
        "rating100": raw.get("rating100"),
        "duration": f.get("duration"),
        "organized": bool(raw.get("organized")),
        "file_path": f.get("path"),
        "file_bit_rate": f.get("bit_rate"),
        "file_frame_rate": f.get("frame_rate"),
        "file_width": f.get("width"),
        "file_height": f.get("height"),
        "file_video_codec": f.get("video_codec"),
        "file_audio_codec": f.get("audio_codec"),
        "file_size": f.get("size"),
        "path_screenshot": paths.get("screenshot"),
        "path_preview": paths.get("preview"),
        "path_stream": paths.get("stream"),
        "o_counter": raw.get("o_counter") or 0,
        "play_count": raw.get("play_count") or 0,
        "play_duration": raw.get("play_duration") or 0,
        **_timestamps(raw),
    }
    groups = [
        {"id": str(g["group"]["id"]), "scene_index": g.get("scene_index")}
        for g in (raw.get("groups") or [])
        if g.get("group")
    ]
    relations = {
        "performers": _ids(raw.get("performers")),
        "tags": _ids(raw.get("tags")),
        "groups": groups,
        "galleries": _ids(raw.get("galleries")),
    }
    return RemoteEntity(str(raw["id"]), fields, relations)


def _performer(raw: Dict[str, Any]) -> RemoteEntity:
    fields = {
        "name": raw.get("name") or "",
        "disambiguation": raw.get("disambiguation"),
        "gender": raw.get("gender"),
        "birthdate": raw.get("birthdate"),
        "country": raw.get("country"),
        "alias_list": ", ".join(raw.get("alias_list") or []) or None,
        "details": raw.get("details"),
        "favorite": bool(raw.get("favorite")),
        "rating100": raw.get("rating100"),
        "scene_count": raw.get("scene_count") or 0,
        "image_count": raw.get("image_count") or 0,
        "gallery_count": raw.get("gallery_count") or 0,
        "group_count": raw.get("group_count") or 0,
        "image_path": raw.get("image_path"),
        **_timestamps(raw),
    }
    return RemoteEntity(str(raw["id"]), fields, {"tags": _ids(raw.get("tags"))})


def _studio(raw: Dict[str, Any]) -> RemoteEntity:
    fields = {
        "name": raw.get("name") or "",
        "parent_id": _nested_id(raw.get("parent_studio")),
        "details": raw.get("details"),
        "url": raw.get("url"),
        "favorite": bool(raw.get("favorite")),
        "rating100": raw.get("rating100"),
        "scene_count": raw.get("scene_count") or 0,
        "image_count": raw.get("image_count") or 0,
        "gallery_count": raw.get("gallery_count") or 0,
        "image_path": raw.get("image_path"),
        **_timestamps(raw),
    }
    return RemoteEntity(str(raw["id"]), fields, {"tags": _ids(raw.get("tags"))})


def _tag(raw: Dict[str, Any]) -> RemoteEntity:
    fields = {
        "name": raw.get("name") or "",
        "description": raw.get("description"),
        "favorite": bool(raw.get("favorite")),
        "scene_count": raw.get("scene_count") or 0,
        "image_count": raw.get("image_count") or 0,
        "gallery_count": raw.get("gallery_count") or 0,
        "performer_count": raw.get("performer_count") or 0,
        "image_path": raw.get("image_path"),
        **_timestamps(raw),
    }
    return RemoteEntity(str(raw["id"]), fields, {})


def _group(raw: Dict[str, Any]) -> RemoteEntity:
    fields = {
        "name": raw.get("name") or "",
        "date": raw.get("date"),
        "studio_id": _nested_id(raw.get("studio")),
        "rating100": raw.get("rating100"),
        "duration": raw.get("duration"),
        "director": raw.get("director"),
        "synopsis": raw.get("synopsis"),
        "scene_count": raw.get("scene_count") or 0,
        "front_image_path": raw.get("front_image_path"),
        **_timestamps(raw),
    }
    return RemoteEntity(str(raw["id"]), fields, {"tags": _ids(raw.get("tags"))})


def _gallery(raw: Dict[str, Any]) -> RemoteEntity:
    folder = raw.get("folder") or {}
    cover = raw.get("cover") or {}
    fields = {
        "title": raw.get("title"),
        "code": raw.get("code"),
        "date": raw.get("date"),
        "details": raw.get("details"),
        "studio_id": _nested_id(raw.get("studio")),
        "rating100": raw.get("rating100"),
        "organized": bool(raw.get("organized")),
        "image_count": raw.get("image_count") or 0,
        "folder_path": folder.get("path"),
        "cover_path": (cover.get("paths") or {}).get("thumbnail"),
        **_timestamps(raw),
    }
    relations = {
        "performers": _ids(raw.get("performers")),
        "tags": _ids(raw.get("tags")),
    }
    return RemoteEntity(str(raw["id"]), fields, relations)


def _image(raw: Dict[str, Any]) -> RemoteEntity:
    files = raw.get("visual_files") or []
    f = files[0] if files else {}
    paths = raw.get("paths") or {}
    fields = {
        "title": raw.get("title"),
        "date": raw.get("date"),
        "studio_id": _nested_id(raw.get("studio")),
        "rating100": raw.get("rating100"),
        "o_counter": raw.get("o_counter") or 0,
        "organized": bool(raw.get("organized")),
        "width": f.get("width"),
        "height": f.get("height"),
        "file_size": f.get("size"),
        "file_path": f.get("path"),
        "path_thumbnail": paths.get("thumbnail"),
        "path_image": paths.get("image"),
        **_timestamps(raw),
    }
    relations = {
        "performers": _ids(raw.get("performers")),
        "tags": _ids(raw.get("tags")),
        "galleries": _ids(raw.get("galleries")),
    }
    return RemoteEntity(str(raw["id"]), fields, relations)


@dataclass(frozen=True)
class _Query:
    operation: str  # e.g. findScenes
    collection: str  # key of the item list in the response
    filter_arg: str  # e.g. scene_filter / SceneFilterType
    filter_type: str
    selection: str
    normalize: Callable[[Dict[str, Any]], RemoteEntity]


_QUERIES: Dict[EntityType, _Query] = {
    EntityType.SCENE: _Query(
        "findScenes", "scenes", "scene_filter", "SceneFilterType",
        """id title code date details rating100 organized o_counter play_count play_duration
        created_at updated_at studio { id } performers { id } tags { id } galleries { id }
        groups { group { id } scene_index }
        files { path duration bit_rate frame_rate width height video_codec audio_codec size }
        paths { screenshot preview stream }""",
        _scene,
    ),
    EntityType.PERFORMER: _Query(
        "findPerformers", "performers", "performer_filter", "PerformerFilterType",
        """id name disambiguation gender birthdate country alias_list details favorite rating100
        scene_count image_count gallery_count group_count image_path created_at updated_at tags { id }""",
        _performer,
    ),
    EntityType.STUDIO: _Query(
        "findStudios", "studios", "studio_filter", "StudioFilterType",
        """id name details url favorite rating100 scene_count image_count gallery_count image_path
        created_at updated_at parent_studio { id } tags { id }""",
        _studio,
    ),
    EntityType.TAG: _Query(
        "findTags", "tags", "tag_filter", "TagFilterType",
        """id name description favorite scene_count image_count gallery_count performer_count
        image_path created_at updated_at""",
        _tag,
    ),
    EntityType.GROUP: _Query(
        "findGroups", "groups", "group_filter", "GroupFilterType",
        """id name date rating100 duration director synopsis scene_count front_image_path
        created_at updated_at studio { id } tags { id }""",
        _group,
    ),
    EntityType.GALLERY: _Query(
        "findGalleries", "galleries", "gallery_filter", "GalleryFilterType",
        """id title code date details rating100 organized image_count created_at updated_at
        folder { path } cover { paths { thumbnail } } studio { id } performers { id } tags { id }""",
        _gallery,
    ),
    EntityType.IMAGE: _Query(
        "findImages", "images", "image_filter", "ImageFilterType",
        """id title date rating100 o_counter organized created_at updated_at
        visual_files { ... on ImageFile { path width height size } }
        paths { thumbnail image } studio { id } performers { id } tags { id } galleries { id }""",
        _image,
    ),
}


class StashClient:
    """GraphQL client for one remote catalog instance."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.stash_url).rstrip("/")
        self.api_key = settings.stash_api_key if api_key is None else api_key
        self.timeout = timeout or settings.stash_timeout_seconds
        self._transport = transport
        self.max_retries = max_retries
        self.base_delay = base_delay

    @property
    def instance_id(self) -> str:
        return self.base_url

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["ApiKey"] = self.api_key
        return headers

    async def _post(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/graphql"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, json={"query": query, "variables": variables}, headers=self._headers())
                resp.raise_for_status()
                payload = resp.json()
        except httpx.TimeoutException as e:
            logger.error(f"[StashClient] Timeout talking to {url}: {e}")
            raise StashNetworkError(f"Timeout connecting to remote catalog at {url}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (401, 403):
                logger.error(f"[StashClient] Remote catalog rejected the API key (status {status})")
                raise StashAuthError("Remote catalog rejected the configured API key") from e
            if status == 429 or status >= 500:
                logger.error(f"[StashClient] Remote catalog unavailable (status {status})")
                raise StashUnavailableError(f"Remote catalog unavailable (status {status})") from e
            logger.error(f"[StashClient] Remote catalog returned HTTP error {status}: {e}")
            raise StashAPIError(f"Remote catalog error: HTTP {status}") from e
        except httpx.RequestError as e:
            logger.error(f"[StashClient] Network error connecting to {url}: {e}")
            raise StashNetworkError(f"Network error connecting to remote catalog: {e}") from e
        except ValueError as e:
            raise StashAPIError(f"Remote catalog returned invalid JSON: {e}") from e

        if payload.get("errors"):
            messages = "; ".join(str(err.get("message", err)) for err in payload["errors"])
            logger.error(f"[StashClient] GraphQL errors: {messages}")
            raise StashAPIError(f"GraphQL error: {messages}")
        return payload.get("data") or {}

    async def execute(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run a GraphQL document with transient-error retries."""
        return await with_backoff(
            self._post,
            query,
            variables or {},
            max_retries=self.max_retries,
            base_delay=self.base_delay,
        )

    @staticmethod
    def _check_paging(page: int, per_page: int) -> None:
        if page < 1:
            raise ValueError(f"page must be >= 1, got {page}")
        if per_page < 1 or per_page > MAX_PER_PAGE:
            # -1 means "everything" to the remote API; never send it
            raise ValueError(f"per_page must be between 1 and {MAX_PER_PAGE}, got {per_page}")

    def _document(self, spec: _Query, selection: str, incremental: bool) -> str:
        var_decl = "$filter: FindFilterType"
        args = "filter: $filter"
        if incremental:
            var_decl += f", ${spec.filter_arg}: {spec.filter_type}"
            args += f", {spec.filter_arg}: ${spec.filter_arg}"
        return (
            f"query ({var_decl}) {{ {spec.operation}({args}) "
            f"{{ count {spec.collection} {{ {selection} }} }} }}"
        )

    async def _list(self, entity_type: EntityType, page: int, per_page: int, selection: str,
                    updated_since: Optional[datetime]) -> Dict[str, Any]:
        self._check_paging(page, per_page)
        spec = _QUERIES[EntityType.parse(entity_type)]
        variables: Dict[str, Any] = {
            "filter": {"page": page, "per_page": per_page, "sort": "id", "direction": "ASC"},
        }
        if updated_since is not None:
            variables[spec.filter_arg] = {
                "updated_at": {"value": format_iso_utc(updated_since), "modifier": "GREATER_THAN"}
            }
        data = await self.execute(self._document(spec, selection, updated_since is not None), variables)
        result = data.get(spec.operation)
        if result is None:
            raise StashAPIError(f"Response missing {spec.operation}")
        return result

    async def list_entities(
        self,
        entity_type: EntityType,
        page: int,
        per_page: int,
        updated_since: Optional[datetime] = None,
    ) -> RemotePage:
        """Fetch one bounded page of full records, ordered by ID."""
        entity_type = EntityType.parse(entity_type)
        spec = _QUERIES[entity_type]
        result = await self._list(entity_type, page, per_page, spec.selection, updated_since)
        items = [spec.normalize(raw) for raw in result.get(spec.collection) or []]
        logger.debug(f"[StashClient] {spec.operation} page={page} per_page={per_page} -> {len(items)} items")
        return RemotePage(items=items, total_count=int(result.get("count") or 0))

    async def list_ids(self, entity_type: EntityType, page: int, per_page: int) -> RemotePage:
        """Fetch one bounded page of IDs only, for deletion reconciliation."""
        entity_type = EntityType.parse(entity_type)
        spec = _QUERIES[entity_type]
        result = await self._list(entity_type, page, per_page, "id", None)
        ids = [str(raw["id"]) for raw in result.get(spec.collection) or []]
        return RemotePage(items=ids, total_count=int(result.get("count") or 0))
