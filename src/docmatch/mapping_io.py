"""Encode and decode match lists as CSV, TSV or JSON.

Column order is fixed for the delimited formats::

    File Reference, File Path, Match Score, Timestamp, Method, Session ID

Scores are written as percentages with one decimal (``"85.0%"``). On decode,
a value carrying ``%`` is divided by 100; a bare number is taken as a
fraction. Each decoded record must have a non-empty reference, a non-empty
path and a score within [0, 1]; bad records are reported per line and the
rest of the payload still decodes. Only a payload that cannot be read at all
raises ``ImportFailedError``.
"""
from __future__ import annotations

import csv
import hashlib
import io
import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import orjson

from docmatch.match_types import MATCH_METHODS, Match, utc_now_iso

log = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"
FORMATS: tuple[str, ...] = ("csv", "tsv", "json")
COLUMNS: tuple[str, ...] = (
    "File Reference",
    "File Path",
    "Match Score",
    "Timestamp",
    "Method",
    "Session ID",
)
MIME_TYPES: dict[str, str] = {
    "csv": "text/csv",
    "tsv": "text/tab-separated-values",
    "json": "application/json",
}
DEFAULT_SESSION_LABEL = "default"
INVALID_MAPPING = "Invalid mapping data"

# Header text (lowercased) -> Match field.
_HEADER_ALIASES: dict[str, str] = {
    "file reference": "reference",
    "reference": "reference",
    "file path": "path",
    "path": "path",
    "match score": "score",
    "score": "score",
    "timestamp": "timestamp",
    "method": "method",
    "session id": "session_id",
    "sessionid": "session_id",
}


class ImportFailedError(ValueError):
    """The payload as a whole could not be decoded."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"import failed: {reason}")
        self.reason = reason


@dataclass(frozen=True, slots=True)
class ExportPayload:
    content: str
    mime_type: str
    filename: str


@dataclass(frozen=True, slots=True)
class DecodeError:
    line: int
    error: str


@dataclass(frozen=True, slots=True)
class DecodeResult:
    mappings: tuple[Match, ...] = ()
    errors: tuple[DecodeError, ...] = ()
    metadata: dict[str, Any] | None = None


def detect_format(filename: str) -> str | None:
    """Format from a file extension, or None when unsupported."""
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return ext if ext in FORMATS else None


def export_filename(fmt: str, when: datetime | None = None) -> str:
    day = (when or datetime.now(UTC)).strftime("%Y-%m-%d")
    return f"mappings_{day}.{fmt}"


def folder_structure_hash(paths: Iterable[str]) -> str:
    """Fingerprint a corpus layout to spot a changed folder between export and import.

    Hashes the file count, the sorted directory names and the first and last
    five sorted paths. Returns the first 16 hex digits of the SHA-256.
    """
    all_paths = list(paths)
    ordered = sorted(all_paths)
    directories = sorted({d for p in all_paths for d in p.split("/")[:-1] if d})
    sample = ordered[:5] + ordered[-5:]
    material = f"{len(all_paths)}:{','.join(directories)}:{'|'.join(sample)}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def _row(match: Match, session_id: str | None) -> list[str]:
    return [
        match.reference,
        match.path,
        f"{match.score * 100:.1f}%",
        match.timestamp or utc_now_iso(),
        match.method or "manual",
        match.session_id or session_id or DEFAULT_SESSION_LABEL,
    ]


def _encode_csv(matches: Sequence[Match], session_id: str | None) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    buf.write(",".join(COLUMNS) + "\n")
    for match in matches:
        writer.writerow(_row(match, session_id))
    return buf.getvalue().rstrip("\n")


def _encode_tsv(matches: Sequence[Match], session_id: str | None) -> str:
    lines = ["\t".join(COLUMNS)]
    for match in matches:
        fields = [f.replace("\t", " ").replace("\n", " ") for f in _row(match, session_id)]
        lines.append("\t".join(fields))
    return "\n".join(lines)


def _match_record(match: Match) -> dict[str, Any]:
    record: dict[str, Any] = {
        "reference": match.reference,
        "path": match.path,
        "score": match.score,
        "timestamp": match.timestamp,
        "method": match.method,
        "sessionId": match.session_id,
    }
    if match.original_date:
        record["originalDate"] = match.original_date
    if match.original_reference:
        record["originalReference"] = match.original_reference
    return record


def _encode_json(
    matches: Sequence[Match],
    session_id: str | None,
    paths: Sequence[str] | None,
) -> str:
    total = len(matches)
    payload: dict[str, Any] = {
        "version": EXPORT_VERSION,
        "exportDate": utc_now_iso(),
        "sessionId": session_id,
        "statistics": {
            "totalMappings": total,
            "averageScore": (sum(m.score for m in matches) / total) if total else 0.0,
            "methods": dict(Counter(m.method for m in matches)),
        },
        "mappings": [_match_record(m) for m in matches],
    }
    if paths is not None:
        payload["folderStructureHash"] = folder_structure_hash(paths)
        payload["totalFileCount"] = len(paths)
    return orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode("utf-8")


def encode_matches(
    matches: Iterable[Match],
    fmt: str,
    *,
    session_id: str | None = None,
    paths: Sequence[str] | None = None,
) -> ExportPayload:
    """Serialize *matches* to *fmt* (``csv``, ``tsv`` or ``json``).

    Args:
        matches: Matches in the order they should appear.
        fmt: Output format.
        session_id: Session label for rows without their own session id.
        paths: Corpus paths; when given, JSON output carries a folder
            fingerprint and file count for import validation.

    Raises:
        ValueError: unsupported format.
    """
    items = list(matches)
    if fmt == "csv":
        content = _encode_csv(items, session_id)
    elif fmt == "tsv":
        content = _encode_tsv(items, session_id)
    elif fmt == "json":
        content = _encode_json(items, session_id, paths)
    else:
        raise ValueError(f"Unsupported export format: {fmt}")
    return ExportPayload(
        content=content,
        mime_type=MIME_TYPES[fmt],
        filename=export_filename(fmt),
    )


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _parse_score(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    text = str(value or "").strip()
    if not text:
        return None
    percent = text.endswith("%")
    try:
        number = float(text.rstrip("%").strip())
    except ValueError:
        return None
    return number / 100 if percent else number


def _build_match(fields: dict[str, Any]) -> Match | None:
    reference = str(fields.get("reference") or "").strip()
    path = str(fields.get("path") or "").strip()
    score = _parse_score(fields.get("score"))
    if not reference or not path or score is None or not 0.0 <= score <= 1.0:
        return None
    method = str(fields.get("method") or "").strip() or "imported"
    session = str(fields.get("session_id") or "").strip()
    original_date = str(fields.get("original_date") or "").strip()
    original_ref = str(fields.get("original_reference") or "").strip()
    return Match(
        reference=reference,
        path=path,
        score=score,
        method=method if method in MATCH_METHODS else "imported",
        timestamp=str(fields.get("timestamp") or "").strip() or utc_now_iso(),
        session_id=session or None,
        original_date=original_date or None,
        original_reference=original_ref or None,
    )


def _decode_delimited(content: str, delimiter: str) -> DecodeResult:
    lines = [line for line in content.splitlines() if line.strip()]
    if not lines:
        raise ImportFailedError("empty payload")

    def split(line: str) -> list[str]:
        if delimiter == "\t":
            return line.split("\t")
        return [v.strip() for v in next(csv.reader([line]))]

    header = [h.strip().lower() for h in split(lines[0])]
    columns = [_HEADER_ALIASES.get(h) for h in header]
    if "reference" not in columns or "path" not in columns:
        raise ImportFailedError("missing reference or path column")

    mappings: list[Match] = []
    errors: list[DecodeError] = []
    for idx, line in enumerate(lines[1:], start=2):
        try:
            values = split(line)
        except csv.Error as exc:
            errors.append(DecodeError(line=idx, error=str(exc)))
            continue
        fields = {
            col: values[pos]
            for pos, col in enumerate(columns)
            if col is not None and pos < len(values)
        }
        match = _build_match(fields)
        if match is None:
            log.debug("rejected mapping on line %d", idx)
            errors.append(DecodeError(line=idx, error=INVALID_MAPPING))
            continue
        mappings.append(match)
    return DecodeResult(mappings=tuple(mappings), errors=tuple(errors))


def _decode_json(content: str | bytes) -> DecodeResult:
    try:
        data = orjson.loads(content)
    except orjson.JSONDecodeError as exc:
        raise ImportFailedError(f"JSON parse error: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("mappings"), list):
        raise ImportFailedError("Invalid JSON format: missing mappings array")

    mappings: list[Match] = []
    errors: list[DecodeError] = []
    for idx, raw in enumerate(data["mappings"], start=1):
        match = None
        if isinstance(raw, dict):
            match = _build_match(
                {
                    "reference": raw.get("reference"),
                    "path": raw.get("path"),
                    "score": raw.get("score"),
                    "timestamp": raw.get("timestamp"),
                    "method": raw.get("method"),
                    "session_id": raw.get("sessionId", raw.get("session_id")),
                    "original_date": raw.get("originalDate", raw.get("original_date")),
                    "original_reference": raw.get(
                        "originalReference", raw.get("original_reference")
                    ),
                }
            )
        if match is None:
            log.debug("rejected mapping entry %d", idx)
            errors.append(DecodeError(line=idx, error=INVALID_MAPPING))
            continue
        mappings.append(match)

    metadata = {k: v for k, v in data.items() if k != "mappings"}
    return DecodeResult(mappings=tuple(mappings), errors=tuple(errors), metadata=metadata)


def decode_matches(content: str | bytes, fmt: str) -> DecodeResult:
    """Parse *content* in *fmt* into validated matches plus per-record errors.

    For CSV/TSV, ``line`` is the 1-based position among non-blank lines
    (the header is line 1). For JSON it is the 1-based index in ``mappings``.

    Raises:
        ImportFailedError: unsupported format, or a payload that cannot be
            parsed at all.
    """
    if fmt == "json":
        return _decode_json(content)
    if fmt not in ("csv", "tsv"):
        raise ImportFailedError(f"Unsupported import format: {fmt}")
    if isinstance(content, bytes):
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ImportFailedError(f"invalid UTF-8: {exc}") from exc
    else:
        text = content.lstrip("\ufeff")
    return _decode_delimited(text, "," if fmt == "csv" else "\t")
