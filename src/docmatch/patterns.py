"""Series detection and path-template inference for numbered document families.

Legal bundles cite documents in families: ``Exhibit A5-01``, ``Exhibit A5-02``,
``CW-1 - Statement of Smith``, ``Appendix 3 to the Reply``. Once one member
of a family is located in the corpus, the path of every other member can
usually be predicted by swapping the number.

Pipeline:
  1. ``detect_series`` groups references by the first matching rule.
  2. ``find_path_pattern`` locates the first item's file and turns its path
     into a template.
  3. ``generate_paths_for_series`` fills the template for each item.

Generated paths are suggestions only; ``confirm_series_suggestions`` drops the
ones that do not exist in the corpus.
"""
from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from docmatch.match_types import Match, Reference, Series, SeriesItem, utc_now_iso
from docmatch.textmatch import fuzzy_score

PATTERN_SCORE_THRESHOLD = 0.7
PATTERN_CONFIDENCE = 0.30

SERIES_PLACEHOLDER = "{series}"
NUMBER_PLACEHOLDER = "{number}"


def _group(m: re.Match[str], idx: int) -> str:
    return (m.group(idx) or "").strip()


def _extract_exhibit(m: re.Match[str]) -> SeriesItem:
    return SeriesItem(
        reference=m.string,
        number=int(m.group(2)),
        number_text=m.group(2),
        description=_group(m, 3),
        series_id=m.group(1).upper(),
    )


def _extract_appendix(m: re.Match[str]) -> SeriesItem:
    return SeriesItem(
        reference=m.string,
        number=int(m.group(1)),
        number_text=m.group(1),
        description=_group(m, 3),
        parent=_group(m, 2),
    )


def _extract_witness(m: re.Match[str]) -> SeriesItem:
    return SeriesItem(
        reference=m.string,
        number=int(m.group(2)),
        number_text=m.group(2),
        description=_group(m, 3),
        series_id=m.group(1).upper(),
    )


def _extract_document(m: re.Match[str]) -> SeriesItem:
    return SeriesItem(
        reference=m.string,
        number=int(m.group(2)),
        number_text=m.group(2),
        description=_group(m, 3),
        series_id=m.group(1),
    )


@dataclass(frozen=True, slots=True)
class PatternRule:
    """A tagged matcher: the first rule whose regex matches claims the reference."""

    type: str
    regex: re.Pattern[str]
    extract: Callable[[re.Match[str]], SeriesItem]


# Priority order matters: a reference is claimed by the first rule only.
PATTERN_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        "exhibit",
        re.compile(r"^Exhibit\s+([A-Z]+\d*)-(\d+)(?:\s*-\s*(.+))?$", re.IGNORECASE),
        _extract_exhibit,
    ),
    PatternRule(
        "appendix",
        re.compile(
            r"^Appendix\s+(\d+)(?:\s+to\s+(.+?))?(?:\s*[-–]\s*(.+))?$",
            re.IGNORECASE,
        ),
        _extract_appendix,
    ),
    PatternRule(
        "witness",
        re.compile(r"^([CR]W)-(\d+)\s*(?:-\s*)?(.+)?$", re.IGNORECASE),
        _extract_witness,
    ),
    PatternRule(
        "document",
        re.compile(r"^([A-Z]+)\s*(\d{4,})(?:\s*-\s*(.+))?$"),
        _extract_document,
    ),
)


@dataclass(frozen=True, slots=True)
class PathTemplate:
    """A corpus path with the series id and number replaced by placeholders.

    ``number_width`` is the zero-padded width of the number (0 = unpadded).
    """

    template: str
    number_width: int = 0

    @property
    def has_number(self) -> bool:
        return NUMBER_PLACEHOLDER in self.template

    @property
    def has_series(self) -> bool:
        return SERIES_PLACEHOLDER in self.template


@dataclass(frozen=True, slots=True)
class SuggestedMapping:
    reference: str
    suggested_path: str
    confidence: float = PATTERN_CONFIDENCE


@dataclass(frozen=True, slots=True)
class SeriesSuggestion:
    series_key: str
    series: Series
    template: PathTemplate
    mappings: tuple[SuggestedMapping, ...]


def _description(ref: str | Reference) -> str:
    return ref.description if isinstance(ref, Reference) else str(ref)


def match_rule(reference: str) -> tuple[PatternRule, SeriesItem] | None:
    """Return the first rule matching *reference* and its extracted item."""
    for rule in PATTERN_RULES:
        m = rule.regex.match(reference)
        if m:
            return rule, rule.extract(m)
    return None


def detect_series(references: Iterable[str | Reference]) -> dict[str, Series]:
    """Group references into typed series keyed by ``"<type>:<series id>"``.

    References matching no rule are left out. Series keep first-seen order;
    items inside a series are sorted by number (stable for equal numbers).
    """
    grouped: dict[str, tuple[str, str, list[SeriesItem]]] = {}
    for ref in references:
        hit = match_rule(_description(ref))
        if hit is None:
            continue
        rule, item = hit
        key = f"{rule.type}:{item.series_id}"
        if key not in grouped:
            grouped[key] = (rule.type, item.series_id, [])
        grouped[key][2].append(item)

    return {
        key: Series(
            type=series_type,
            series_id=series_id,
            items=tuple(sorted(items, key=lambda it: it.number)),
        )
        for key, (series_type, series_id, items) in grouped.items()
    }


def _replace_last(text: str, old: str, new: str) -> str:
    idx = text.rfind(old)
    if idx < 0:
        return text
    return text[:idx] + new + text[idx + len(old):]


def extract_path_template(path: str, item: SeriesItem) -> PathTemplate:
    """Turn *path* into a template by replacing the item's number then series id.

    Number forms are tried widest first: the digits as written (``0042``),
    two-digit zero padding (``07``), then the bare number (``7``). The last
    occurrence is replaced, since the file name sits at the end of the path.
    """
    template = path
    width = 0
    forms: list[tuple[str, int]] = []
    raw = item.number_text
    bare = str(item.number)
    if raw != bare:
        forms.append((raw, len(raw)))
    padded = bare.zfill(2)
    if padded != bare and padded != raw:
        forms.append((padded, 2))
    forms.append((bare, 0))

    for literal, literal_width in forms:
        if literal in template:
            template = _replace_last(template, literal, NUMBER_PLACEHOLDER)
            width = literal_width
            break

    if item.series_id and item.series_id in template:
        template = _replace_last(template, item.series_id, SERIES_PLACEHOLDER)
    return PathTemplate(template=template, number_width=width)


def find_path_pattern(
    series: Series,
    candidate_paths: Iterable[str],
    *,
    threshold: float = PATTERN_SCORE_THRESHOLD,
    scorer: Callable[[str, str], float] = fuzzy_score,
) -> PathTemplate | None:
    """Infer a path template for *series* from the corpus.

    The first path whose ``scorer(first_item.reference, path)`` exceeds
    *threshold* is taken as the first item's file. Returns None when the
    series is empty or no path clears the threshold.
    """
    if not series.items:
        return None
    first = series.items[0]
    for path in candidate_paths:
        if scorer(first.reference, path) > threshold:
            return extract_path_template(path, first)
    return None


def generate_paths_for_series(
    series: Series,
    template: PathTemplate,
    *,
    confidence: float = PATTERN_CONFIDENCE,
) -> list[SuggestedMapping]:
    """Fill *template* for every item of *series*, in series order.

    Existence of the generated paths is not checked here.
    """
    mappings: list[SuggestedMapping] = []
    for item in series.items:
        path = template.template.replace(SERIES_PLACEHOLDER, item.series_id)
        number = str(item.number)
        if template.number_width:
            number = number.zfill(template.number_width)
        path = path.replace(NUMBER_PLACEHOLDER, number)
        mappings.append(
            SuggestedMapping(
                reference=item.reference,
                suggested_path=path,
                confidence=confidence,
            )
        )
    return mappings


def suggest_series_matches(
    references: Iterable[str | Reference],
    candidate_paths: Sequence[str],
    *,
    min_items: int = 2,
    threshold: float = PATTERN_SCORE_THRESHOLD,
    confidence: float = PATTERN_CONFIDENCE,
) -> list[SeriesSuggestion]:
    """Detect series among *references* and propose paths for each templatable one.

    Series with fewer than *min_items* items are skipped.
    """
    suggestions: list[SeriesSuggestion] = []
    for key, series in detect_series(references).items():
        if len(series.items) < min_items:
            continue
        template = find_path_pattern(series, candidate_paths, threshold=threshold)
        if template is None:
            continue
        mappings = generate_paths_for_series(series, template, confidence=confidence)
        suggestions.append(
            SeriesSuggestion(
                series_key=key,
                series=series,
                template=template,
                mappings=tuple(mappings),
            )
        )
    return suggestions


def confirm_series_suggestions(
    suggestions: Iterable[SeriesSuggestion],
    candidate_paths: Iterable[str],
    *,
    approve: Callable[[SeriesSuggestion], bool] | None = None,
    session_id: str | None = None,
) -> list[Match]:
    """Turn approved suggestions into ``pattern`` matches for paths that exist.

    *approve* is asked once per suggestion; without it every suggestion is
    approved. Commit the result with ``selection.apply_matches``, which
    re-checks used paths.
    """
    existing = set(candidate_paths)
    confirmed: list[Match] = []
    for suggestion in suggestions:
        if approve is not None and not approve(suggestion):
            continue
        for mapping in suggestion.mappings:
            if mapping.suggested_path not in existing:
                continue
            confirmed.append(
                Match(
                    reference=mapping.reference,
                    path=mapping.suggested_path,
                    score=mapping.confidence,
                    method="pattern",
                    timestamp=utc_now_iso(),
                    session_id=session_id,
                )
            )
    return confirmed
