"""Selection state machine for a single matching session.

One immutable ``SelectionState`` holds everything a reviewer works with:
known references, corpus paths, the unmatched queue, confirmed matches, the
used-path set and the ordered multi-selections. Every operation is a plain
function ``(state, input) -> state``. An operation that cannot apply returns
the input state object unchanged; nothing here raises on bad input.

Invariants held by every returned state:
  - ``used_paths`` is exactly the set of paths in ``matches`` (no path in
    two matches);
  - a reference is in ``unmatched_references`` iff no match names it;
  - selection order numbers are unique positive integers, and path
    selections never outnumber reference selections.
"""
from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from docmatch.match_types import (
    Match,
    OrderedSelection,
    PathCandidate,
    Reference,
    generate_session_id,
    utc_now_iso,
)

# Applied in order, first occurrence only; each strips one coded prefix or
# phrase from a file stem.
_SLUG_STRIP_RULES: tuple[re.Pattern[str], ...] = (
    re.compile(r"^\w+-"),
    re.compile(r"^RDCC-APPENDIX-\d+-\d+\s*-\s*"),
    re.compile(r"^(ELM-WAH-LTR-\d+|C0+\d+|D0+\d+|B0+\d+)\s*-?\s*", re.IGNORECASE),
    re.compile(r"dated\s+\d+\s+\w+\s+\d+", re.IGNORECASE),
)
_EXTENSION_RE = re.compile(r"\.[^/.]+$")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True, slots=True)
class SelectionState:
    references: tuple[Reference, ...] = ()
    paths: tuple[str, ...] = ()
    unmatched_references: tuple[Reference, ...] = ()
    matches: tuple[Match, ...] = ()
    used_paths: frozenset[str] = field(default_factory=frozenset)
    selected_references: tuple[OrderedSelection, ...] = ()
    selected_paths: tuple[OrderedSelection, ...] = ()
    current_reference: Reference | None = None
    selected_result: PathCandidate | None = None
    session_id: str = ""

    @property
    def matched_references(self) -> frozenset[str]:
        return frozenset(m.reference for m in self.matches)

    def stats(self) -> dict[str, Any]:
        total = len(self.matches) + len(self.unmatched_references)
        return {
            "total": total,
            "matched": len(self.matches),
            "unmatched": len(self.unmatched_references),
            "progress": round(len(self.matches) / total, 4) if total else 0.0,
        }

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-compatible dict of every field, for session persistence."""
        return {
            "session_id": self.session_id,
            "references": [r.to_dict() for r in self.references],
            "paths": list(self.paths),
            "unmatched_references": [r.to_dict() for r in self.unmatched_references],
            "matches": [m.to_dict() for m in self.matches],
            "used_paths": sorted(self.used_paths),
            "selected_references": [
                {"item": s.item.to_dict(), "order": s.order}
                for s in self.selected_references
            ],
            "selected_paths": [
                {"item": s.item, "order": s.order} for s in self.selected_paths
            ],
            "current_reference": (
                self.current_reference.to_dict() if self.current_reference else None
            ),
            "selected_result": (
                {"path": self.selected_result.path, "score": self.selected_result.score}
                if self.selected_result
                else None
            ),
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> SelectionState:
        current = data.get("current_reference")
        result = data.get("selected_result")
        return cls(
            references=tuple(Reference.from_dict(r) for r in data.get("references", [])),
            paths=tuple(str(p) for p in data.get("paths", [])),
            unmatched_references=tuple(
                Reference.from_dict(r) for r in data.get("unmatched_references", [])
            ),
            matches=tuple(Match.from_dict(m) for m in data.get("matches", [])),
            used_paths=frozenset(str(p) for p in data.get("used_paths", [])),
            selected_references=tuple(
                OrderedSelection(Reference.from_dict(s["item"]), int(s["order"]))
                for s in data.get("selected_references", [])
            ),
            selected_paths=tuple(
                OrderedSelection(str(s["item"]), int(s["order"]))
                for s in data.get("selected_paths", [])
            ),
            current_reference=Reference.from_dict(current) if current else None,
            selected_result=(
                PathCandidate(str(result["path"]), float(result["score"]))
                if result
                else None
            ),
            session_id=str(data.get("session_id") or ""),
        )


def invariant_violations(state: SelectionState) -> list[str]:
    """List every broken invariant in *state* (empty when consistent)."""
    problems: list[str] = []
    match_paths = [m.path for m in state.matches]
    if len(set(match_paths)) != len(match_paths):
        problems.append("path appears in more than one match")
    if set(match_paths) != set(state.used_paths):
        problems.append("used_paths differs from matched paths")
    matched = state.matched_references
    if len(matched) != len(state.matches):
        problems.append("reference appears in more than one match")
    for ref in state.unmatched_references:
        if ref.description in matched:
            problems.append(f"matched reference still unmatched: {ref.description}")
    descriptions = [r.description for r in state.unmatched_references]
    if len(set(descriptions)) != len(descriptions):
        problems.append("duplicate unmatched reference")
    for name, selection in (
        ("selected_references", state.selected_references),
        ("selected_paths", state.selected_paths),
    ):
        orders = [s.order for s in selection]
        if len(set(orders)) != len(orders) or any(o < 1 for o in orders):
            problems.append(f"{name} order numbers are not unique positive integers")
    if len(state.selected_paths) > len(state.selected_references):
        problems.append("more selected paths than selected references")
    return problems


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _dedupe(references: Iterable[Reference]) -> tuple[Reference, ...]:
    seen: set[str] = set()
    out: list[Reference] = []
    for ref in references:
        if ref.description in seen:
            continue
        seen.add(ref.description)
        out.append(ref)
    return tuple(out)


def _as_reference(value: Reference | str) -> Reference:
    return value if isinstance(value, Reference) else Reference(description=str(value))


def _find_unmatched(state: SelectionState, description: str) -> Reference | None:
    for ref in state.unmatched_references:
        if ref.description == description:
            return ref
    return None


def _next_order(selection: Sequence[OrderedSelection]) -> int:
    used = {s.order for s in selection}
    order = 1
    while order in used:
        order += 1
    return order


def _toggle(
    selection: tuple[OrderedSelection, ...],
    item: Any,
    key: Any,
) -> tuple[tuple[OrderedSelection, ...], bool]:
    """Remove *item* if selected (returns removed=True), else leave as is."""
    for idx, sel in enumerate(selection):
        if key(sel.item) == key(item):
            return selection[:idx] + selection[idx + 1:], True
    return selection, False


def _by_order(selection: Iterable[OrderedSelection]) -> list[Any]:
    return [s.item for s in sorted(selection, key=lambda s: s.order)]


def _new_match(
    state: SelectionState,
    ref: Reference,
    path: str,
    score: float,
    method: str,
) -> Match:
    return Match(
        reference=ref.description,
        path=path,
        score=score,
        method=method,
        timestamp=utc_now_iso(),
        session_id=state.session_id or None,
        original_date=ref.date,
        original_reference=ref.external_code,
    )


def _head(unmatched: Sequence[Reference]) -> Reference | None:
    return unmatched[0] if unmatched else None


# ---------------------------------------------------------------------------
# Session construction
# ---------------------------------------------------------------------------

def new_session(
    references: Iterable[Reference | str],
    paths: Iterable[str],
    *,
    session_id: str | None = None,
) -> SelectionState:
    """Build the initial state: every known reference starts unmatched."""
    known = _dedupe(_as_reference(r) for r in references)
    return SelectionState(
        references=known,
        paths=tuple(dict.fromkeys(paths)),
        unmatched_references=known,
        current_reference=_head(known),
        session_id=session_id or generate_session_id(),
    )


# ---------------------------------------------------------------------------
# Selection operations
# ---------------------------------------------------------------------------

def select_reference(state: SelectionState, ref: Reference | str) -> SelectionState:
    """Make *ref* the current reference and clear both multi-selections."""
    found = _find_unmatched(state, _as_reference(ref).description)
    if found is None:
        return state
    return replace(
        state,
        current_reference=found,
        selected_references=(),
        selected_paths=(),
        selected_result=None,
    )


def select_result(
    state: SelectionState,
    candidate: PathCandidate | None,
) -> SelectionState:
    """Record the search result chosen for ``confirm_match`` (None clears it)."""
    if candidate is not None and candidate.path in state.used_paths:
        return state
    return replace(state, selected_result=candidate, selected_paths=())


def toggle_reference_selection(
    state: SelectionState,
    ref: Reference | str,
) -> SelectionState:
    """Add *ref* with the lowest free order number, or remove it if selected.

    Removal leaves the other order numbers as they are. If more paths than
    references would remain selected, the latest-picked paths are dropped.
    """
    description = _as_reference(ref).description
    remaining, removed = _toggle(
        state.selected_references,
        description,
        key=lambda item: item.description if isinstance(item, Reference) else item,
    )
    if removed:
        paths = state.selected_paths
        if len(paths) > len(remaining):
            keep = sorted(paths, key=lambda s: s.order)[: len(remaining)]
            paths = tuple(s for s in paths if s in keep)
        return replace(state, selected_references=remaining, selected_paths=paths)

    found = _find_unmatched(state, description)
    if found is None:
        return state
    added = OrderedSelection(found, _next_order(state.selected_references))
    return replace(
        state,
        selected_references=state.selected_references + (added,),
        selected_result=None,
    )


def toggle_file_path_selection(state: SelectionState, path: str) -> SelectionState:
    """Add or remove *path*; adding is refused once paths match references 1:1."""
    remaining, removed = _toggle(state.selected_paths, path, key=lambda item: item)
    if removed:
        return replace(state, selected_paths=remaining)
    if len(state.selected_paths) >= len(state.selected_references):
        return state
    if path in state.used_paths:
        return state
    added = OrderedSelection(path, _next_order(state.selected_paths))
    return replace(
        state,
        selected_paths=state.selected_paths + (added,),
        selected_result=None,
    )


def select_all_references(state: SelectionState) -> SelectionState:
    """Toggle between no references selected and every unmatched one selected."""
    all_selected = (
        bool(state.selected_references)
        and len(state.selected_references) == len(state.unmatched_references)
    )
    if all_selected or not state.unmatched_references:
        selected: tuple[OrderedSelection, ...] = ()
    else:
        selected = tuple(
            OrderedSelection(ref, idx)
            for idx, ref in enumerate(state.unmatched_references, start=1)
        )
    return replace(
        state,
        selected_references=selected,
        selected_paths=(),
        selected_result=None,
    )


def bulk_deselect_all(state: SelectionState) -> SelectionState:
    return replace(state, selected_references=(), selected_paths=())


def clear_selections(state: SelectionState) -> SelectionState:
    return replace(
        state,
        selected_references=(),
        selected_paths=(),
        selected_result=None,
    )


# ---------------------------------------------------------------------------
# Match creation and removal
# ---------------------------------------------------------------------------

def confirm_match(
    state: SelectionState,
    candidate: PathCandidate | None = None,
) -> SelectionState:
    """Match the current reference to the chosen candidate (``method=manual``).

    The candidate comes from *candidate* or, when omitted, from
    ``state.selected_result``. The current reference then advances to the
    new head of the unmatched queue.
    """
    chosen = candidate or state.selected_result
    current = state.current_reference
    if current is None or chosen is None:
        return state
    if chosen.path in state.used_paths:
        return state
    ref = _find_unmatched(state, current.description)
    if ref is None:
        return state

    match = _new_match(state, ref, chosen.path, chosen.score, "manual")
    unmatched = tuple(r for r in state.unmatched_references if r.description != ref.description)
    return replace(
        state,
        matches=state.matches + (match,),
        used_paths=state.used_paths | {chosen.path},
        unmatched_references=unmatched,
        current_reference=_head(unmatched),
        selected_result=None,
    )


def confirm_bulk_match(state: SelectionState) -> SelectionState:
    """Pair selected references with selected paths by order rank.

    Requires equal selection sizes of at least 2. Both selections are sorted
    by their order numbers (not insertion sequence) before pairing; every
    pair becomes a ``manual-bulk`` match with score 1.0.
    """
    n_refs = len(state.selected_references)
    if n_refs < 2 or n_refs != len(state.selected_paths):
        return state

    refs = _by_order(state.selected_references)
    paths = _by_order(state.selected_paths)
    if len(set(paths)) != len(paths) or any(p in state.used_paths for p in paths):
        return state
    resolved: list[Reference] = []
    for ref in refs:
        found = _find_unmatched(state, ref.description)
        if found is None:
            return state
        resolved.append(found)

    new_matches = tuple(
        _new_match(state, ref, path, 1.0, "manual-bulk")
        for ref, path in zip(resolved, paths, strict=True)
    )
    paired = {r.description for r in resolved}
    unmatched = tuple(r for r in state.unmatched_references if r.description not in paired)
    return replace(
        state,
        matches=state.matches + new_matches,
        used_paths=state.used_paths | set(paths),
        unmatched_references=unmatched,
        selected_references=(),
        selected_paths=(),
        current_reference=_head(unmatched),
        selected_result=None,
    )


def apply_matches(
    state: SelectionState,
    matches: Iterable[Match],
) -> tuple[SelectionState, int]:
    """Commit pre-built matches (pattern, auto-accepted), re-checking conflicts.

    A match is skipped when its path is already used or its reference is
    already matched, including by an earlier entry of *matches*. Date and
    external code missing from a match are taken from its unmatched reference.
    Returns (new_state, applied_count).
    """
    applied: list[Match] = []
    used = set(state.used_paths)
    matched = set(state.matched_references)
    pending = {r.description: r for r in state.unmatched_references}
    for match in matches:
        if not match.reference or not match.path:
            continue
        if match.path in used or match.reference in matched:
            continue
        ref = pending.get(match.reference)
        if ref is not None:
            match = replace(
                match,
                original_date=match.original_date or ref.date,
                original_reference=match.original_reference or ref.external_code,
            )
        applied.append(match)
        used.add(match.path)
        matched.add(match.reference)

    if not applied:
        return state, 0

    unmatched = tuple(r for r in state.unmatched_references if r.description not in matched)
    current = state.current_reference
    if current is None or current.description in matched:
        current = _head(unmatched)
    new_state = replace(
        state,
        matches=state.matches + tuple(applied),
        used_paths=frozenset(used),
        unmatched_references=unmatched,
        current_reference=current,
        selected_references=tuple(
            s for s in state.selected_references if s.item.description not in matched
        ),
        selected_paths=tuple(s for s in state.selected_paths if s.item not in used),
    )
    return new_state, len(applied)


def remove_match(state: SelectionState, match: Match) -> SelectionState:
    """Delete *match*, free its path and put its reference back at the head.

    The reference is rebuilt from the match's stored fields with
    ``generated=False``; any other field the original reference had is lost.
    """
    idx = next(
        (
            i for i, m in enumerate(state.matches)
            if m.reference == match.reference and m.path == match.path
        ),
        None,
    )
    if idx is None:
        return state

    removed = state.matches[idx]
    restored = removed.as_reference()
    known = state.references
    if all(r.description != restored.description for r in known):
        known = known + (restored,)
    return replace(
        state,
        references=known,
        matches=state.matches[:idx] + state.matches[idx + 1:],
        used_paths=state.used_paths - {removed.path},
        unmatched_references=(restored,) + state.unmatched_references,
    )


# ---------------------------------------------------------------------------
# Queue management
# ---------------------------------------------------------------------------

def skip_reference(state: SelectionState) -> SelectionState:
    """Move the current reference to the back of the queue."""
    current = state.current_reference
    if current is None:
        return state
    ref = _find_unmatched(state, current.description)
    if ref is None:
        return state
    unmatched = tuple(
        r for r in state.unmatched_references if r.description != ref.description
    ) + (ref,)
    return replace(
        state,
        unmatched_references=unmatched,
        current_reference=_head(unmatched),
        selected_result=None,
    )


def bulk_skip_references(state: SelectionState) -> SelectionState:
    """Move every selected reference to the back, keeping their queue order."""
    if not state.selected_references:
        return state
    chosen = {s.item.description for s in state.selected_references}
    kept = tuple(r for r in state.unmatched_references if r.description not in chosen)
    moved = tuple(r for r in state.unmatched_references if r.description in chosen)
    unmatched = kept + moved
    return replace(
        state,
        unmatched_references=unmatched,
        selected_references=(),
        selected_paths=(),
        current_reference=_head(unmatched),
    )


def reference_from_path(path: str) -> Reference:
    """Derive a generated reference from a corpus path.

    Strips the extension and known coded prefixes from the file name, drops
    ``dated <d> <month> <yyyy>`` phrases, collapses whitespace, and prefixes
    ``"<parent folder> - "`` for paths deeper than two folders when the
    parent name is not already in the text.
    """
    parts = path.split("/")
    name = parts.pop() if parts else ""
    text = _EXTENSION_RE.sub("", name, count=1)
    for pattern in _SLUG_STRIP_RULES:
        text = pattern.sub("", text, count=1)
    text = _WHITESPACE_RE.sub(" ", text).strip()

    parent = parts[-1] if parts else ""
    if len(parts) > 2 and parent and parent.lower() not in text.lower():
        text = f"{parent} - {text}"
    return Reference(description=text or name, generated=True)


def detect_remaining_files(state: SelectionState) -> SelectionState:
    """Append generated references for corpus paths no match uses yet.

    Only descriptions not already unmatched or matched are added, so a
    repeated call with no state change adds nothing.
    """
    taken = {r.description for r in state.unmatched_references} | state.matched_references
    fresh: list[Reference] = []
    for path in state.paths:
        if path in state.used_paths:
            continue
        ref = reference_from_path(path)
        if ref.description in taken:
            continue
        taken.add(ref.description)
        fresh.append(ref)
    if not fresh:
        return state

    unmatched = state.unmatched_references + tuple(fresh)
    return replace(
        state,
        references=_dedupe(state.references + tuple(fresh)),
        unmatched_references=unmatched,
        current_reference=state.current_reference or _head(unmatched),
    )


def import_mappings(
    state: SelectionState,
    mappings: Iterable[Match],
    new_references: Iterable[Reference | str] = (),
    used_paths: Iterable[str] = (),
) -> SelectionState:
    """Load previously saved matches into the session.

    *new_references* join the known references; the unmatched queue is
    rebuilt as known references minus matched ones. Mappings whose path or
    reference is already taken are dropped. *used_paths* is the exporting
    session's view of consumed paths and is not copied: the used-path set is
    rebuilt from the accepted mappings, so it always equals the matched paths.
    """
    known = _dedupe(state.references + tuple(_as_reference(r) for r in new_references))
    matches = list(state.matches)
    used = set(state.used_paths)
    matched = set(state.matched_references)
    for mapping in mappings:
        if not mapping.reference or not mapping.path:
            continue
        if mapping.path in used or mapping.reference in matched:
            continue
        matches.append(mapping)
        used.add(mapping.path)
        matched.add(mapping.reference)

    unmatched = tuple(r for r in known if r.description not in matched)
    current = state.current_reference
    if current is None or current.description in matched:
        current = _head(unmatched)
    return replace(
        state,
        references=known,
        matches=tuple(matches),
        used_paths=frozenset(used),
        unmatched_references=unmatched,
        selected_references=(),
        selected_paths=(),
        selected_result=None,
        current_reference=current,
    )
