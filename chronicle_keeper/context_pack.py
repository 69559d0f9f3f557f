from __future__ import annotations

import asyncio
from dataclasses import dataclass
import re
from typing import Optional, Sequence

from .entity_matcher import (
    MAX_CHARACTER_MATCHES,
    MAX_PLACE_MATCHES,
    build_haystack,
    candidates_from_rows,
    match_entities,
    parse_aliases,
)
from .logger_factory import get_logger
from .utils.logfmt import fmt, truncate_detail
from .world_store import CHARACTERS, PLACES, STORY_CHARACTERS, STORY_PLACES, WorldStore

ELLIPSIS = "…"

CHARACTER_HEADER = "【角色】"
PLACE_HEADER = "【地点】"
STORY_HEADER = "【相关短篇】"

_WS_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class ContextBudgets:
    alias_chars: int = 120
    short_chars: int = 220
    bio_chars: int = 400
    character_lore_chars: int = 600
    place_lore_chars: int = 400
    story_title_chars: int = 80
    story_excerpt_chars: int = 220
    total_chars: int = 2400
    max_story_candidates: int = 50
    max_stories: int = 6
    max_characters: int = MAX_CHARACTER_MATCHES
    max_places: int = MAX_PLACE_MATCHES


@dataclass(frozen=True)
class ContextPackResult:
    text: str = ""
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def collapse_whitespace(value) -> str:
    if value is None:
        return ""
    return _WS_RE.sub(" ", str(value)).strip()


def clip_text(text: str, limit: int) -> str:
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return text[: max(0, limit - len(ELLIPSIS))].rstrip() + ELLIPSIS


def clip_field(value, limit: int) -> str:
    return clip_text(collapse_whitespace(value), limit)


def order_by_ids(rows: Sequence[dict], ids: Sequence[str]) -> list[dict]:
    """Re-apply the ranked order; the bulk `id=in.(...)` query returns rows in table order."""
    by_id = {str(r.get("id")): r for r in rows if isinstance(r, dict)}
    return [by_id[i] for i in ids if i in by_id]


def collect_story_ids(join_rows: Sequence[Sequence[dict]], cap: int) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for rows in join_rows:
        for row in rows or []:
            sid = row.get("story_id") if isinstance(row, dict) else None
            if sid is None:
                continue
            sid = str(sid)
            if sid in seen:
                continue
            seen.add(sid)
            out.append(sid)
            if len(out) >= cap:
                return out
    return out


def render_character(row: dict, budgets: ContextBudgets) -> str:
    name = clip_field(row.get("name"), budgets.short_chars)
    if not name:
        return ""
    suffix = "·".join(p for p in (clip_field(row.get("title"), budgets.short_chars), clip_field(row.get("faction"), budgets.short_chars)) if p)
    lines = [f"- {name}（{suffix}）" if suffix else f"- {name}"]
    aliases = clip_field("、".join(parse_aliases(row.get("aliases"))), budgets.alias_chars)
    for label, value in (
        ("别名", aliases),
        ("简介", clip_field(row.get("description"), budgets.short_chars)),
        ("传说", clip_field(row.get("lore"), budgets.character_lore_chars)),
        ("生平", clip_field(row.get("bio"), budgets.bio_chars)),
    ):
        if value:
            lines.append(f"  {label}：{value}")
    return "\n".join(lines)


def render_place(row: dict, budgets: ContextBudgets) -> str:
    name = clip_field(row.get("name"), budgets.short_chars)
    if not name:
        return ""
    kind = clip_field(row.get("kind"), budgets.short_chars)
    lines = [f"- {name}（{kind}）" if kind else f"- {name}"]
    for label, value in (
        ("简介", clip_field(row.get("description"), budgets.short_chars)),
        ("传说", clip_field(row.get("lore_md"), budgets.place_lore_chars)),
    ):
        if value:
            lines.append(f"  {label}：{value}")
    return "\n".join(lines)


def render_story(row: dict, budgets: ContextBudgets) -> str:
    title = clip_field(row.get("title"), budgets.story_title_chars)
    if not title:
        return ""
    excerpt = clip_field(row.get("excerpt"), budgets.story_excerpt_chars)
    return f"- 《{title}》：{excerpt}" if excerpt else f"- 《{title}》"


def render_context_pack(characters: Sequence[dict], places: Sequence[dict], stories: Sequence[dict], budgets: ContextBudgets | None = None) -> str:
    budgets = budgets or ContextBudgets()
    sections: list[str] = []
    for header, rows, render in (
        (CHARACTER_HEADER, characters, render_character),
        (PLACE_HEADER, places, render_place),
        (STORY_HEADER, stories, render_story),
    ):
        entries = [e for e in (render(r, budgets) for r in rows) if e]
        if entries:
            sections.append(header + "\n" + "\n".join(entries))
    return clip_text("\n\n".join(sections), budgets.total_chars)


class ContextPackBuilder:
    """Looks up the lore behind names mentioned in a chat turn.

    build() never raises: a failed lookup comes back as a ContextPackResult
    carrying the error and empty text, and the caller decides whether to
    continue without context.
    """

    def __init__(self, store: WorldStore | None, budgets: ContextBudgets | None = None):
        self.store = store
        self.budgets = budgets or ContextBudgets()
        self.log = get_logger("ContextPack")

    @property
    def enabled(self) -> bool:
        return self.store is not None

    async def build(self, message: str, texts: Sequence[str] = (), correlation: str | None = None) -> ContextPackResult:
        if self.store is None:
            return ContextPackResult()
        try:
            text = await self._build(self.store, message, texts, correlation)
        except Exception as e:
            self.log.error(f"context-pack-error {fmt('correlation', correlation)} {fmt('error', truncate_detail(repr(e)))}")
            return ContextPackResult(error=e)
        return ContextPackResult(text=text)

    async def _build(self, store: WorldStore, message: str, texts: Sequence[str], correlation: str | None) -> str:
        b = self.budgets
        haystack = build_haystack(message, texts)
        if not haystack.strip():
            return ""

        char_rows, place_rows = await _gather(
            store.list_candidates(CHARACTERS),
            store.list_candidates(PLACES),
        )
        matches = match_entities(
            haystack,
            candidates_from_rows(char_rows),
            candidates_from_rows(place_rows),
            max_characters=b.max_characters,
            max_places=b.max_places,
        )
        self.log.debug(
            f"context-match {fmt('correlation', correlation)} "
            f"{fmt('characters', ','.join(matches.character_ids))} {fmt('places', ','.join(matches.place_ids))}"
        )
        if not matches:
            return ""

        char_details, place_details, char_joins, place_joins = await _gather(
            store.fetch_details(CHARACTERS, matches.character_ids) if matches.character_ids else _empty(),
            store.fetch_details(PLACES, matches.place_ids) if matches.place_ids else _empty(),
            store.fetch_joins(STORY_CHARACTERS, "character_id", matches.character_ids) if matches.character_ids else _empty(),
            store.fetch_joins(STORY_PLACES, "place_id", matches.place_ids) if matches.place_ids else _empty(),
        )
        story_ids = collect_story_ids([char_joins, place_joins], b.max_story_candidates)
        stories = await store.fetch_stories(story_ids, b.max_stories) if story_ids else []

        text = render_context_pack(
            order_by_ids(char_details, matches.character_ids),
            order_by_ids(place_details, matches.place_ids),
            stories[: b.max_stories],
            b,
        )
        self.log.info(
            f"context-pack {fmt('correlation', correlation)} {fmt('characters', len(matches.character_ids))} "
            f"{fmt('places', len(matches.place_ids))} {fmt('stories', len(story_ids))} {fmt('chars', len(text))}"
        )
        return text


async def _empty() -> list[dict]:
    return []


async def _gather(*aws):
    # wait for every lookup before failing so no sibling task is left running
    results = await asyncio.gather(*aws, return_exceptions=True)
    for r in results:
        if isinstance(r, BaseException):
            raise r
    return results
