from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Iterable, Sequence

MAX_CHARACTER_MATCHES = 4
MAX_PLACE_MATCHES = 4
MIN_NEEDLE_CHARS = 2

_ALIAS_SPLIT_RE = re.compile(r"[,，、;；\n]+")
# Compound names like "Mel, The Void Walker" or "艾琳·星语"
_NAME_SPLIT_RE = re.compile(r"[,，·・/|]+")


@dataclass(frozen=True)
class MatchCandidate:
    id: str
    name: str
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class EntityMatches:
    character_ids: list[str] = field(default_factory=list)
    place_ids: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.character_ids or self.place_ids)


def parse_aliases(value) -> tuple[str, ...]:
    """Aliases arrive as a list column or as one delimited string."""
    if value is None:
        return ()
    if isinstance(value, str):
        parts = _ALIAS_SPLIT_RE.split(value)
    elif isinstance(value, (list, tuple)):
        parts = [str(v) for v in value if v is not None]
    else:
        parts = [str(value)]
    return tuple(p.strip() for p in parts if p and p.strip())


def candidate_from_row(row: dict) -> MatchCandidate | None:
    cid = row.get("id")
    name = row.get("name")
    if cid is None or not isinstance(name, str):
        return None
    return MatchCandidate(id=str(cid), name=name, aliases=parse_aliases(row.get("aliases")))


def candidates_from_rows(rows: Iterable[dict]) -> list[MatchCandidate]:
    out: list[MatchCandidate] = []
    for row in rows or []:
        if not isinstance(row, dict):
            continue
        c = candidate_from_row(row)
        if c is not None:
            out.append(c)
    return out


def build_haystack(message: str, texts: Sequence[str] = ()) -> str:
    parts = [message or ""]
    parts.extend(t for t in texts if t)
    return "\n".join(parts).lower()


def candidate_needles(candidate: MatchCandidate) -> list[str]:
    raw = [candidate.name]
    raw.extend(_NAME_SPLIT_RE.split(candidate.name or ""))
    raw.extend(candidate.aliases)
    seen: set[str] = set()
    needles: list[str] = []
    for r in raw:
        n = (r or "").strip().lower()
        if len(n) < MIN_NEEDLE_CHARS or n in seen:
            continue
        seen.add(n)
        needles.append(n)
    return needles


def score_candidate(candidate: MatchCandidate, haystack: str) -> int:
    """Length of the longest name/alias found in the haystack, 0 on no hit.

    Plain substring containment, so a short alias can hit inside an
    unrelated longer word.
    """
    best = 0
    for needle in candidate_needles(candidate):
        if len(needle) > best and needle in haystack:
            best = len(needle)
    return best


def rank_candidates(candidates: Sequence[MatchCandidate], haystack: str, limit: int) -> list[str]:
    scored = [(score_candidate(c, haystack), c) for c in candidates]
    hits = [(s, c) for s, c in scored if s > 0]
    # sorted() is stable, so equal scores keep pool order
    hits = sorted(hits, key=lambda sc: sc[0], reverse=True)
    return [c.id for _, c in hits[: max(0, limit)]]


def match_entities(
    haystack: str,
    characters: Sequence[MatchCandidate],
    places: Sequence[MatchCandidate],
    *,
    max_characters: int = MAX_CHARACTER_MATCHES,
    max_places: int = MAX_PLACE_MATCHES,
) -> EntityMatches:
    if not haystack.strip():
        return EntityMatches()
    return EntityMatches(
        character_ids=rank_candidates(characters, haystack, max_characters),
        place_ids=rank_candidates(places, haystack, max_places),
    )
