import csv
from collections.abc import Callable, Iterator
from dataclasses import replace
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from html import unescape
import io
import logging
import re
import zipfile
import zlib

from .config import IMPORT_MAX_SECTION_BYTES, IMPORT_MAX_UPLOAD_BYTES
from .import_types import ImportItem, ImportParseError, ParseResult, ParseStats

logger = logging.getLogger(__name__)

LETTERBOXD_RATING_SCALE = 5.0
IMDB_RATING_SCALE = 10.0
IMDB_ID_RE = re.compile(r"^tt\d{7,8}$")
IMDB_TITLE_TYPES = {
    "movie": "movie",
    "video": "movie",
    "tvseries": "tv",
    "tvminiseries": "tv",
}
# Applied in this order; later sections enrich earlier ones.
LETTERBOXD_SECTIONS = ("watchlist.csv", "watched.csv", "diary.csv", "ratings.csv")


class _MalformedRow(ValueError):
    pass


def normalize_rating(value: float | None, scale_max: float) -> int | None:
    """Rescale a source rating onto 1-5, rounding halves up. Zero means unrated."""
    if value is None or value <= 0 or scale_max <= 0:
        return None
    scaled = Decimal(str(value)) * Decimal(5) / Decimal(str(scale_max))
    rounded = int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return max(1, min(5, rounded))


def _coerce_year(value: str | int | None) -> int | None:
    if isinstance(value, int):
        return value if 1870 <= value <= 2200 else None
    raw = str(value or "").strip()
    if not raw:
        return None
    match = re.search(r"(\d{4})", raw)
    if not match:
        return None
    year = int(match.group(1))
    return year if 1870 <= year <= 2200 else None


def _split_title_year(value: str) -> tuple[str, int | None]:
    text = unescape(str(value or "")).strip()
    if not text:
        return "", None
    for pattern in (
        r"^(?P<title>.+?),\s*(?P<year>\d{4})$",
        r"^(?P<title>.+?)\s+\((?P<year>\d{4})\)$",
    ):
        match = re.match(pattern, text)
        if not match:
            continue
        title = (match.group("title") or "").strip()
        year = _coerce_year(match.group("year"))
        if title:
            return title, year
    return text, None


def _parse_rating(raw: str, scale_max: float) -> float | None:
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        parsed = Decimal(raw)
    except InvalidOperation:
        raise _MalformedRow(f"invalid rating {raw!r}") from None
    if not parsed.is_finite():
        raise _MalformedRow(f"invalid rating {raw!r}")
    rating = float(parsed)
    if rating < 0 or rating > scale_max:
        raise _MalformedRow(f"rating {raw!r} is outside 0-{scale_max:g}")
    return rating or None


def _parse_date(raw: str) -> date | None:
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def _parse_tags(raw: str) -> frozenset[str]:
    return frozenset(tag.strip() for tag in (raw or "").split(",") if tag.strip())


def _item_key(item: ImportItem) -> tuple[str, int | None]:
    return (item.title.strip().lower(), item.year)


def _merge_items(existing: ImportItem, incoming: ImportItem) -> ImportItem:
    has_new_rating = incoming.normalized_rating is not None
    dates = [d for d in (existing.watched_date, incoming.watched_date) if d is not None]
    return replace(
        existing,
        status="watched" if "watched" in (existing.status, incoming.status) else "watchlist",
        source_rating=incoming.source_rating if has_new_rating else existing.source_rating,
        normalized_rating=incoming.normalized_rating if has_new_rating else existing.normalized_rating,
        watched_date=max(dates) if dates else None,
        is_rewatch=existing.is_rewatch or incoming.is_rewatch,
        tags=existing.tags | incoming.tags,
        imdb_id=incoming.imdb_id or existing.imdb_id,
    )


class _ItemMerger:
    def __init__(self, stats: ParseStats):
        self._items: dict[tuple[str, int | None], ImportItem] = {}
        self._stats = stats

    def add(self, item: ImportItem) -> None:
        key = _item_key(item)
        existing = self._items.get(key)
        if existing is None:
            self._items[key] = item
            return
        self._items[key] = _merge_items(existing, item)
        self._stats.rows_merged += 1

    def items(self) -> list[ImportItem]:
        return list(self._items.values())


def _decode_bytes(raw: bytes, encodings: tuple[str, ...]) -> str:
    for encoding in encodings:
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise ImportParseError("Could not decode the uploaded CSV data.")


def _clean_row(row: dict) -> dict[str, str]:
    # DictReader files surplus cells under a None key and pads short rows with None.
    return {
        key.strip().lower(): value.strip()
        for key, value in row.items()
        if isinstance(key, str) and isinstance(value, str)
    }


def _iter_csv_rows(
    csv_text: str,
    section: str,
    stats: ParseStats,
    errors: list[str],
) -> Iterator[tuple[int, dict[str, str]]]:
    reader = csv.DictReader(io.StringIO(csv_text))
    try:
        for row in reader:
            stats.rows_read += 1
            yield reader.line_num, _clean_row(row)
    except csv.Error as exc:
        stats.rows_read += 1
        stats.rows_rejected += 1
        errors.append(f"{section} line {reader.line_num}: unreadable CSV ({exc}); remaining rows skipped")


def _collect_section(
    csv_text: str,
    section: str,
    row_parser: Callable[[dict[str, str]], ImportItem],
    merger: _ItemMerger,
    stats: ParseStats,
    errors: list[str],
) -> None:
    accepted = 0
    for line_number, row in _iter_csv_rows(csv_text, section, stats, errors):
        try:
            item = row_parser(row)
        except _MalformedRow as exc:
            stats.rows_rejected += 1
            errors.append(f"{section} line {line_number}: {exc}")
            continue
        merger.add(item)
        accepted += 1
    stats.section_counts[section] = accepted


def _letterboxd_title_year(row: dict[str, str]) -> tuple[str, int | None]:
    raw_title = row.get("name") or row.get("film name") or row.get("title") or ""
    year = _coerce_year(row.get("year"))
    if year is not None:
        title = unescape(raw_title).strip()
    else:
        title, year = _split_title_year(raw_title)
    if not title:
        raise _MalformedRow("missing film title")
    return title, year


def _letterboxd_rating(row: dict[str, str]) -> tuple[float | None, int | None]:
    rating = _parse_rating(row.get("rating") or "", LETTERBOXD_RATING_SCALE)
    return rating, normalize_rating(rating, LETTERBOXD_RATING_SCALE)


def _parse_letterboxd_watchlist_row(row: dict[str, str]) -> ImportItem:
    title, year = _letterboxd_title_year(row)
    return ImportItem(title=title, year=year, status="watchlist")


def _parse_letterboxd_watched_row(row: dict[str, str]) -> ImportItem:
    title, year = _letterboxd_title_year(row)
    return ImportItem(title=title, year=year, status="watched")


def _parse_letterboxd_ratings_row(row: dict[str, str]) -> ImportItem:
    title, year = _letterboxd_title_year(row)
    source_rating, normalized = _letterboxd_rating(row)
    return ImportItem(
        title=title,
        year=year,
        source_rating=source_rating,
        normalized_rating=normalized,
        status="watched",
    )


def _parse_letterboxd_diary_row(row: dict[str, str]) -> ImportItem:
    title, year = _letterboxd_title_year(row)
    source_rating, normalized = _letterboxd_rating(row)
    return ImportItem(
        title=title,
        year=year,
        source_rating=source_rating,
        normalized_rating=normalized,
        status="watched",
        watched_date=_parse_date(row.get("watched date") or row.get("date") or ""),
        is_rewatch=(row.get("rewatch") or "").lower() == "yes",
        tags=_parse_tags(row.get("tags") or ""),
    )


LETTERBOXD_ROW_PARSERS: dict[str, Callable[[dict[str, str]], ImportItem]] = {
    "watchlist.csv": _parse_letterboxd_watchlist_row,
    "watched.csv": _parse_letterboxd_watched_row,
    "diary.csv": _parse_letterboxd_diary_row,
    "ratings.csv": _parse_letterboxd_ratings_row,
}


def _zip_member_name_case_insensitive(names: list[str], target_name: str) -> str | None:
    target = target_name.strip("/").lower()
    for name in names:
        if name.strip("/").lower() == target:
            return name
    return None


def _read_zip_text(archive: zipfile.ZipFile, member_name: str) -> str | None:
    actual_name = _zip_member_name_case_insensitive(archive.namelist(), member_name)
    if not actual_name:
        return None
    too_large = ImportParseError(f"{member_name} in the ZIP file is too large to import.")
    if archive.getinfo(actual_name).file_size > IMPORT_MAX_SECTION_BYTES:
        raise too_large
    try:
        # Header sizes are untrusted; cap the read as well.
        with archive.open(actual_name) as member:
            raw = member.read(IMPORT_MAX_SECTION_BYTES + 1)
    except (KeyError, EOFError, NotImplementedError, RuntimeError, zipfile.BadZipFile, zlib.error) as exc:
        raise ImportParseError(f"Could not read {member_name} from the ZIP file.") from exc
    if len(raw) > IMPORT_MAX_SECTION_BYTES:
        raise too_large
    return _decode_bytes(raw, ("utf-8-sig", "utf-8", "latin-1"))


def parse_letterboxd_export(zip_bytes: bytes) -> ParseResult:
    try:
        archive = zipfile.ZipFile(io.BytesIO(zip_bytes))
    except zipfile.BadZipFile:
        raise ImportParseError("Invalid ZIP file. Please upload the Letterboxd export ZIP.")

    with archive:
        sections = {name: _read_zip_text(archive, name) for name in LETTERBOXD_SECTIONS}

    if not any(text is not None for text in sections.values()):
        raise ImportParseError(
            "No Letterboxd CSV files found in the ZIP. "
            "Expected diary.csv, ratings.csv, watched.csv, or watchlist.csv."
        )

    stats = ParseStats()
    errors: list[str] = []
    merger = _ItemMerger(stats)
    for name in LETTERBOXD_SECTIONS:
        csv_text = sections[name]
        if csv_text is None:
            continue
        _collect_section(csv_text, name, LETTERBOXD_ROW_PARSERS[name], merger, stats, errors)

    items = merger.items()
    stats.unique_items = len(items)
    return ParseResult(items=items, errors=errors, stats=stats)


def _imdb_row_parser(is_ratings: bool) -> Callable[[dict[str, str]], ImportItem]:
    def _parse(row: dict[str, str]) -> ImportItem:
        imdb_id = row.get("const") or ""
        if not IMDB_ID_RE.fullmatch(imdb_id):
            raise _MalformedRow(f"invalid IMDb id {imdb_id!r}")
        # Exports write both "tvSeries" and "TV Series".
        title_type = "".join((row.get("title type") or "").split()).lower()
        media_type = IMDB_TITLE_TYPES.get(title_type)
        if media_type is None:
            raise _MalformedRow(f"unsupported title type {row.get('title type') or 'unknown'!r}")
        title = unescape(row.get("title") or "").strip()
        if not title:
            raise _MalformedRow("missing title")
        year = _coerce_year(row.get("year"))

        if not is_ratings:
            return ImportItem(
                title=title,
                year=year,
                status="watchlist",
                media_type=media_type,
                imdb_id=imdb_id,
            )
        rating = _parse_rating(row.get("your rating") or "", IMDB_RATING_SCALE)
        return ImportItem(
            title=title,
            year=year,
            source_rating=rating,
            normalized_rating=normalize_rating(rating, IMDB_RATING_SCALE),
            status="watched",
            watched_date=_parse_date(row.get("date rated") or ""),
            media_type=media_type,
            imdb_id=imdb_id,
        )

    return _parse


def parse_imdb_export(csv_bytes: bytes) -> ParseResult:
    content = _decode_bytes(csv_bytes, ("utf-8-sig", "cp1252", "latin-1"))
    if not content.strip():
        raise ImportParseError("The CSV file appears to be empty.")

    header_row = next(csv.reader(io.StringIO(content)), [])
    headers = {header.strip().lower() for header in header_row}
    if "const" not in headers:
        raise ImportParseError(
            'This does not appear to be a valid IMDb export. Missing "Const" column with IMDb IDs.'
        )
    is_ratings = "your rating" in headers
    section = "ratings.csv" if is_ratings else "watchlist.csv"

    stats = ParseStats()
    errors: list[str] = []
    merger = _ItemMerger(stats)
    _collect_section(content, section, _imdb_row_parser(is_ratings), merger, stats, errors)

    items = merger.items()
    stats.unique_items = len(items)
    return ParseResult(items=items, errors=errors, stats=stats)


PARSERS: dict[str, Callable[[bytes], ParseResult]] = {
    "letterboxd": parse_letterboxd_export,
    "imdb": parse_imdb_export,
}


def parse_export(source: str, raw_bytes: bytes) -> ParseResult:
    parser = PARSERS.get(source)
    if parser is None:
        raise ImportParseError(f'Import source "{source}" is not supported.')
    if not raw_bytes:
        raise ImportParseError("The uploaded file is empty.")
    if len(raw_bytes) > IMPORT_MAX_UPLOAD_BYTES:
        raise ImportParseError("File is too large. Please upload a smaller export.")

    result = parser(raw_bytes)
    logger.info(
        "Parsed %s export: %d rows, %d unique items, %d rejected",
        source,
        result.stats.rows_read,
        result.stats.unique_items,
        result.stats.rows_rejected,
    )
    return result
