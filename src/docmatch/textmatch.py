"""Reusable text-matching primitives for reference-to-path scoring.

Pure text operations with zero domain dependencies. ``fuzzy_score`` is the
single similarity measure; everything else in the package ranks candidates
with it.
"""
from __future__ import annotations

import re
from collections.abc import Iterable

from docmatch.match_types import PathCandidate

_EXTENSION_RE = re.compile(r"\.[^/.]+$")
_LEADING_WORD_RE = re.compile(r"^\w+-")
_ISO_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
_VERSION_SUFFIX_RE = re.compile(r"_v\d+")
_SEPARATOR_RUN_RE = re.compile(r"[_-]+")
_WHITESPACE_RE = re.compile(r"\s+")
_KEY_TERM_RE = re.compile(r"[A-Z]+-?\d+-\d+|[A-Z]+-?\d+|\d{3,}")


def fuzzy_score(needle: str, haystack: str, case_sensitive: bool = False) -> float:
    """Score how well *needle* occurs as an ordered subsequence of *haystack*.

    Scans the haystack once, greedily consuming needle characters in order.
    ``completion`` is the consumed fraction of the needle and ``density`` the
    consumed characters over the haystack length. A fully consumed needle
    scores ``(completion + density) / 2``; a partial one ``completion * 0.7``,
    so partial matches never exceed 0.7.

    Args:
        needle: Text being looked for (e.g. a reference description).
        haystack: Text being searched (e.g. a corpus path).
        case_sensitive: If False (default), both sides are lowercased.

    Returns:
        Score in [0, 1]; 0 when either string is empty.
    """
    if not needle or not haystack:
        return 0.0
    if not case_sensitive:
        needle = needle.lower()
        haystack = haystack.lower()

    consumed = 0
    needle_len = len(needle)
    for ch in haystack:
        if consumed >= needle_len:
            break
        if ch == needle[consumed]:
            consumed += 1

    completion = consumed / needle_len
    density = consumed / len(haystack)
    if consumed == needle_len:
        return (completion + density) / 2
    return completion * 0.7


def file_name(path: str) -> str:
    """Last ``/``-separated component of *path*."""
    return path.rsplit("/", 1)[-1]


def clean_file_name(text: str) -> str:
    """Normalize a file name or reference for loose comparison.

    Drops the extension, one leading ``word-`` prefix, an ISO date and a
    ``_vN`` version suffix, turns ``_``/``-`` runs into spaces and lowercases.
    """
    if not text:
        return ""
    text = _EXTENSION_RE.sub("", text, count=1)
    text = _LEADING_WORD_RE.sub("", text, count=1)
    text = _ISO_DATE_RE.sub("", text, count=1)
    text = _VERSION_SUFFIX_RE.sub("", text, count=1)
    text = _SEPARATOR_RUN_RE.sub(" ", text)
    text = _WHITESPACE_RE.sub(" ", text)
    return text.strip().lower()


def extract_key_terms(text: str) -> str:
    """Pull identifying codes (``A5-01``, ``CW-1``, ``0042``) out of *text*.

    Returns the codes joined by single spaces, or the cleaned text when no
    code is present.
    """
    if not text:
        return ""
    terms = _KEY_TERM_RE.findall(text)
    if terms:
        return " ".join(terms)
    return clean_file_name(text)


def _candidate_score(
    raw_query: str,
    cleaned_query: str,
    key_terms: str,
    path: str,
) -> float:
    return max(
        fuzzy_score(raw_query, path),
        fuzzy_score(cleaned_query, clean_file_name(file_name(path))),
        fuzzy_score(key_terms, path),
    )


def search_paths(
    query: str,
    paths: Iterable[str],
    used_paths: Iterable[str] = (),
    *,
    limit: int = 20,
    min_score: float = 0.05,
) -> list[PathCandidate]:
    """Rank corpus paths against a free-text query for manual confirmation.

    Each path is scored against three views of the query (raw, cleaned,
    key terms) and keeps the best. Paths already in *used_paths* are never
    returned.

    Args:
        query: Search text, usually a reference description.
        paths: Candidate corpus paths, in corpus order.
        used_paths: Paths already consumed by a match.
        limit: Maximum number of candidates returned.
        min_score: Candidates scoring at or below this are dropped.

    Returns:
        Candidates sorted by descending score; ties keep corpus order.
    """
    used = set(used_paths)
    available = [p for p in paths if p not in used]
    if not query.strip():
        return [PathCandidate(path=p, score=0.0) for p in available[:limit]]

    cleaned = clean_file_name(query)
    key_terms = extract_key_terms(query)
    scored: list[PathCandidate] = []
    for path in available:
        value = _candidate_score(query, cleaned, key_terms, path)
        if value > min_score:
            scored.append(PathCandidate(path=path, score=value))
    # sorted() is stable, so equal scores keep corpus order
    scored = sorted(scored, key=lambda c: c.score, reverse=True)
    return scored[:limit]


def best_path_match(
    reference: str,
    paths: Iterable[str],
    used_paths: Iterable[str] = (),
) -> PathCandidate | None:
    """Return the available path with the highest ``fuzzy_score(reference, path)``.

    The first path wins ties. Returns None when no path is available or every
    available path scores 0.
    """
    used = set(used_paths)
    best: PathCandidate | None = None
    for path in paths:
        if path in used:
            continue
        value = fuzzy_score(reference, path)
        if value <= 0.0:
            continue
        if best is None or value > best.score:
            best = PathCandidate(path=path, score=value)
    return best
