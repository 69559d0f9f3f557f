from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

import httpx

from .logger_factory import get_logger
from .utils.logfmt import fmt, truncate_detail

CHARACTERS = "characters"
PLACES = "places"
STORIES = "stories"
STORY_CHARACTERS = "story_characters"
STORY_PLACES = "story_places"

CANDIDATE_COLUMNS = {
    CHARACTERS: "id,name,aliases",
    PLACES: "id,name",
}
DETAIL_COLUMNS = {
    CHARACTERS: "id,name,aliases,title,faction,description,lore,bio",
    PLACES: "id,name,kind,description,lore_md",
}
STORY_COLUMNS = "id,title,excerpt"


class WorldStoreError(RuntimeError):
    pass


@dataclass(frozen=True)
class SupabaseSettings:
    url: str | None
    service_key: str | None

    @property
    def configured(self) -> bool:
        return bool(self.url and self.service_key)


class WorldStore(ABC):
    """Read-only view of the world tables used to ground chat answers."""

    @abstractmethod
    async def list_candidates(self, entity_type: str) -> list[dict]:
        ...

    @abstractmethod
    async def fetch_details(self, entity_type: str, ids: Sequence[str]) -> list[dict]:
        ...

    @abstractmethod
    async def fetch_joins(self, table: str, filter_column: str, ids: Sequence[str]) -> list[dict]:
        ...

    @abstractmethod
    async def fetch_stories(self, ids: Sequence[str], limit: int) -> list[dict]:
        ...

    async def aclose(self) -> None:
        return None


def _in_filter(ids: Sequence[str]) -> str:
    quoted = ",".join('"' + str(i).replace('"', '\\"') + '"' for i in ids)
    return f"in.({quoted})"


class PostgrestWorldStore(WorldStore):
    """WorldStore over a Supabase (PostgREST) REST endpoint.

    Uses the service-role key, so it must only ever run server side.
    """

    def __init__(
        self,
        *,
        base_url: str,
        service_key: str,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.log = get_logger("WorldStore")
        u = base_url.rstrip("/")
        self.rest_url = u if u.endswith("/rest/v1") else u + "/rest/v1"
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Accept": "application/json",
        }
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _select(self, table: str, params: dict) -> list[dict]:
        url = f"{self.rest_url}/{table}"
        try:
            r = await self._client.get(url, params=params, headers=self._headers)
        except httpx.HTTPError as e:
            raise WorldStoreError(f"{table} request failed: {e!r}") from e
        if r.status_code >= 400:
            raise WorldStoreError(f"{table} HTTP {r.status_code}: {truncate_detail(r.text)}")
        try:
            data = r.json()
        except ValueError as e:
            raise WorldStoreError(f"{table} returned non-JSON body") from e
        if not isinstance(data, list):
            raise WorldStoreError(f"{table} returned unexpected payload type {type(data).__name__}")
        self.log.debug(f"store-select {fmt('table', table)} {fmt('rows', len(data))}")
        return [row for row in data if isinstance(row, dict)]

    async def list_candidates(self, entity_type: str) -> list[dict]:
        columns = CANDIDATE_COLUMNS.get(entity_type)
        if columns is None:
            raise WorldStoreError(f"unknown entity type {entity_type}")
        return await self._select(entity_type, {"select": columns, "order": "created_at.asc"})

    async def fetch_details(self, entity_type: str, ids: Sequence[str]) -> list[dict]:
        columns = DETAIL_COLUMNS.get(entity_type)
        if columns is None:
            raise WorldStoreError(f"unknown entity type {entity_type}")
        if not ids:
            return []
        return await self._select(entity_type, {"select": columns, "id": _in_filter(ids)})

    async def fetch_joins(self, table: str, filter_column: str, ids: Sequence[str]) -> list[dict]:
        if not ids:
            return []
        return await self._select(table, {"select": "story_id", filter_column: _in_filter(ids)})

    async def fetch_stories(self, ids: Sequence[str], limit: int) -> list[dict]:
        if not ids or limit <= 0:
            return []
        return await self._select(
            STORIES,
            {"select": STORY_COLUMNS, "id": _in_filter(ids), "order": "created_at.desc", "limit": str(limit)},
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def build_world_store(settings: SupabaseSettings, *, timeout: float = 15.0) -> PostgrestWorldStore | None:
    """Return None when the store is not configured; callers treat that as 'no lore'."""
    if not settings.configured:
        get_logger("WorldStore").info("world-store-disabled reason=missing-supabase-env")
        return None
    return PostgrestWorldStore(base_url=str(settings.url), service_key=str(settings.service_key), timeout=timeout)
