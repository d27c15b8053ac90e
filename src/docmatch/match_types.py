"""Core record types for reference-to-path matching.

A *reference* is a human-authored description (``"Exhibit A5-01 - Lease"``)
waiting for a file; a *match* pairs it with one corpus path. References are
identified by their description text, paths by the path string itself.

All records are frozen so state transitions can share them freely.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

MATCH_METHODS: tuple[str, ...] = (
    "manual",
    "manual-bulk",
    "pattern",
    "auto-high-confidence",
    "imported",
)
SERIES_TYPES: tuple[str, ...] = ("exhibit", "appendix", "witness", "document")


def utc_now_iso() -> str:
    """Return current UTC timestamp in ISO-8601 format."""
    return datetime.now(UTC).isoformat()


def generate_session_id(prefix: str = "session") -> str:
    """Generate a compact session id suitable for storage keys."""
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
    return f"{prefix}_{ts}_{uuid4().hex[:8]}"


def _opt_str(value: Any) -> str | None:
    text = str(value).strip() if value is not None else ""
    return text or None


@dataclass(frozen=True, slots=True)
class Reference:
    """A document description awaiting a file assignment."""

    description: str
    date: str | None = None
    external_code: str | None = None
    generated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "date": self.date,
            "external_code": self.external_code,
            "generated": self.generated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Reference:
        return cls(
            description=str(data.get("description") or ""),
            date=_opt_str(data.get("date")),
            external_code=_opt_str(data.get("external_code")),
            generated=bool(data.get("generated", False)),
        )


@dataclass(frozen=True, slots=True)
class Match:
    """A confirmed reference-to-path pairing.

    ``original_date``/``original_reference`` carry the reference's optional
    fields so the reference can be rebuilt when the match is removed. The
    ``generated`` flag is not carried.
    """

    reference: str
    path: str
    score: float
    method: str
    timestamp: str
    session_id: str | None = None
    original_date: str | None = None
    original_reference: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference": self.reference,
            "path": self.path,
            "score": self.score,
            "method": self.method,
            "timestamp": self.timestamp,
            "session_id": self.session_id,
            "original_date": self.original_date,
            "original_reference": self.original_reference,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Match:
        method = str(data.get("method") or "imported")
        return cls(
            reference=str(data.get("reference") or ""),
            path=str(data.get("path") or ""),
            score=float(data.get("score") or 0.0),
            method=method if method in MATCH_METHODS else "imported",
            timestamp=str(data.get("timestamp") or utc_now_iso()),
            session_id=_opt_str(data.get("session_id")),
            original_date=_opt_str(data.get("original_date")),
            original_reference=_opt_str(data.get("original_reference")),
        )

    def as_reference(self) -> Reference:
        """Best-effort rebuild of the matched reference (``generated`` is lost)."""
        return Reference(
            description=self.reference,
            date=self.original_date,
            external_code=self.original_reference,
            generated=False,
        )


@dataclass(frozen=True, slots=True)
class OrderedSelection:
    """A selected reference or path with its user-visible pick order."""

    item: Any  # Reference for reference selections, str for path selections
    order: int


@dataclass(frozen=True, slots=True)
class PathCandidate:
    """A corpus path scored against some query."""

    path: str
    score: float


@dataclass(frozen=True, slots=True)
class MatchCandidate:
    """An automatically proposed match awaiting human confirmation."""

    reference: str
    path: str
    score: float
    method: str = "auto-high-confidence"


@dataclass(frozen=True, slots=True)
class BatchResult:
    """Best available path for one reference, as returned by a scoring backend."""

    reference: str
    best_match: PathCandidate


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    processed: int
    total: int
    found: int


@dataclass(frozen=True, slots=True)
class SeriesItem:
    """One reference inside a detected series.

    ``number_text`` keeps the digits exactly as written (``"0042"``) so path
    templates can substitute them back verbatim.
    """

    reference: str
    number: int
    number_text: str
    description: str = ""
    series_id: str = ""
    parent: str = ""


@dataclass(frozen=True, slots=True)
class Series:
    """A family of references sharing one numbering scheme, sorted by number."""

    type: str
    series_id: str
    items: tuple[SeriesItem, ...] = field(default_factory=tuple)

    @property
    def key(self) -> str:
        return f"{self.type}:{self.series_id}"
