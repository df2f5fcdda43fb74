from difflib import SequenceMatcher
from html import unescape
import logging
import re

import httpx

from . import tmdb
from .config import FUZZY_MATCH_THRESHOLD, YEAR_PROXIMITY_BONUS
from .import_types import FAILED_MATCH, ImportItem, MatchResult

logger = logging.getLogger(__name__)

LEADING_ARTICLE_RE = re.compile(r"^(the|a|an)\s+")


def _normalize_title_for_match(value: str) -> str:
    normalized = unescape(str(value or "")).lower()
    normalized = normalized.replace("&", " and ")
    normalized = re.sub(r"[^a-z0-9]+", " ", normalized)
    normalized = re.sub(r"\s+", " ", normalized).strip()
    return LEADING_ARTICLE_RE.sub("", normalized)


def _fold_title(value: str) -> str:
    return unescape(str(value or "")).strip().casefold()


def _candidate_year(candidate: dict) -> int | None:
    raw = str(candidate.get("release_date") or candidate.get("first_air_date") or "")
    match = re.match(r"^(\d{4})", raw)
    return int(match.group(1)) if match else None


def _candidate_titles(candidate: dict) -> list[str]:
    titles = [
        candidate.get("title"),
        candidate.get("name"),
        candidate.get("original_title"),
        candidate.get("original_name"),
    ]
    return [str(title) for title in titles if title]


def title_similarity(left: str, right: str) -> float:
    a = _normalize_title_for_match(left)
    b = _normalize_title_for_match(right)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return SequenceMatcher(None, a, b).ratio()


def _is_exact(item: ImportItem, candidate: dict) -> bool:
    wanted = _fold_title(item.title)
    if not any(_fold_title(title) == wanted for title in _candidate_titles(candidate)):
        return False
    return item.year is None or _candidate_year(candidate) == item.year


def _fuzzy_score(item: ImportItem, candidate: dict) -> float | None:
    similarity = max(
        (title_similarity(item.title, title) for title in _candidate_titles(candidate)),
        default=0.0,
    )
    if similarity < FUZZY_MATCH_THRESHOLD:
        return None
    candidate_year = _candidate_year(candidate)
    if item.year is not None and candidate_year is not None and abs(candidate_year - item.year) <= 1:
        similarity += YEAR_PROXIMITY_BONUS
    return similarity


def _valid_candidates(rows: list) -> list[dict]:
    candidates: list[dict] = []
    for row in rows or []:
        if not isinstance(row, dict):
            continue
        candidate_id = row.get("id")
        if isinstance(candidate_id, int) and candidate_id > 0 and _candidate_titles(row):
            candidates.append(row)
    return candidates


def _to_result(candidate: dict, confidence: str, media_type: str) -> MatchResult:
    title = str(candidate.get("title") or candidate.get("name") or "").strip()
    release_date = str(candidate.get("release_date") or candidate.get("first_air_date") or "").strip()
    return MatchResult(
        confidence=confidence,
        tmdb_id=int(candidate["id"]),
        matched_title=title or None,
        year=_candidate_year(candidate),
        poster_path=str(candidate.get("poster_path") or "").strip() or None,
        release_date=release_date or None,
        media_type=media_type,
    )


def pick_best_candidate(item: ImportItem, candidates: list[dict]) -> MatchResult:
    """Choose the catalog candidate for ``item``; candidate order breaks ties."""
    valid = _valid_candidates(candidates)
    for candidate in valid:
        if _is_exact(item, candidate):
            return _to_result(candidate, "exact", item.media_type)

    best_row: dict | None = None
    best_score = 0.0
    for candidate in valid:
        score = _fuzzy_score(item, candidate)
        if score is not None and score > best_score:
            best_score = score
            best_row = candidate

    if best_row is None:
        return FAILED_MATCH
    return _to_result(best_row, "fuzzy", item.media_type)


def _pick_find_result(item: ImportItem, payload: dict) -> MatchResult:
    movies = _valid_candidates(payload.get("movie_results") or [])
    shows = _valid_candidates(payload.get("tv_results") or [])
    ordered = [("tv", shows), ("movie", movies)] if item.media_type == "tv" else [("movie", movies), ("tv", shows)]
    for media_type, rows in ordered:
        if rows:
            return _to_result(rows[0], "exact", media_type)
    return FAILED_MATCH


async def match_item(item: ImportItem) -> MatchResult:
    """Resolve ``item`` against TMDB with a single lookup and no retries.

    Lookup errors come back as a failed match flagged with ``lookup_error``.
    ``CatalogUnavailableError`` is not caught: without credentials nothing
    can be matched.
    """
    query = item.title.strip()
    if not query:
        return FAILED_MATCH

    try:
        if item.imdb_id:
            payload = await tmdb.find_by_imdb_id(item.imdb_id)
            return _pick_find_result(item, payload if isinstance(payload, dict) else {})
        if item.media_type == "tv":
            payload = await tmdb.search_tv(query, page=1, year=item.year)
        else:
            payload = await tmdb.search_movie(query, page=1, year=item.year)
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("TMDB lookup failed for %r (%s): %s", query, item.year, exc)
        return MatchResult(confidence="failed", lookup_error=True)

    rows = payload.get("results") if isinstance(payload, dict) else None
    return pick_best_candidate(item, rows or [])
