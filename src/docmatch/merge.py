"""Reconcile externally supplied matches with the current session.

``merge_matches`` is a single ordered pass over the imported list. Entries in
the same call can conflict with each other: a later entry sees the effects of
the earlier ones, and nothing is revisited.

``validate_import`` is a read-only preview that classifies an import against
the session before anything is merged.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from docmatch.mapping_io import folder_structure_hash
from docmatch.match_types import Match, Reference
from docmatch.selection import SelectionState

log = logging.getLogger(__name__)

MERGE_STRATEGIES: tuple[str, ...] = ("skip", "replace")
PATH_ALREADY_USED = "Path already used"
SAME_FILE_NAME_SIMILARITY = 0.8


@dataclass(frozen=True, slots=True)
class MergeError:
    reference: str
    error: str


@dataclass(frozen=True, slots=True)
class MergeResult:
    added: int = 0
    skipped: int = 0
    replaced: int = 0
    errors: tuple[MergeError, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": self.added,
            "skipped": self.skipped,
            "replaced": self.replaced,
            "errors": [{"reference": e.reference, "error": e.error} for e in self.errors],
        }


def merge_matches(
    state: SelectionState,
    imported: Iterable[Match],
    strategy: str = "skip",
) -> tuple[SelectionState, MergeResult]:
    """Apply *imported* to *state* under *strategy* (``skip`` or ``replace``).

    For each entry, in input order:
      - reference already matched: ``skip`` counts it as skipped; ``replace``
        frees the old path and installs the new match, unless the new path
        belongs to a different reference, which is recorded as an error;
      - path already used by a different reference: error, not added;
      - otherwise the match is added and its reference leaves the queue.

    Returns:
        (new_state, result). The state is the input object when nothing changed.
    """
    if strategy not in MERGE_STRATEGIES:
        raise ValueError(f"unknown merge strategy: {strategy!r}")

    matches: list[Match] = list(state.matches)
    ref_index = {m.reference: i for i, m in enumerate(matches)}
    path_owner = {m.path: m.reference for m in matches}
    errors: list[MergeError] = []
    added = skipped = replaced = 0

    for incoming in imported:
        by_ref = ref_index.get(incoming.reference)
        owner = path_owner.get(incoming.path)

        if by_ref is not None:
            if strategy == "skip":
                skipped += 1
                continue
            if owner is not None and owner != incoming.reference:
                log.debug("merge conflict on %s: path held by %s", incoming.path, owner)
                errors.append(MergeError(incoming.reference, PATH_ALREADY_USED))
                continue
            del path_owner[matches[by_ref].path]
            path_owner[incoming.path] = incoming.reference
            matches[by_ref] = incoming
            replaced += 1
            continue

        if owner is not None:
            log.debug("merge conflict on %s: path held by %s", incoming.path, owner)
            errors.append(MergeError(incoming.reference, PATH_ALREADY_USED))
            continue

        ref_index[incoming.reference] = len(matches)
        path_owner[incoming.path] = incoming.reference
        matches.append(incoming)
        added += 1

    result = MergeResult(
        added=added,
        skipped=skipped,
        replaced=replaced,
        errors=tuple(errors),
    )
    if not added and not replaced:
        return state, result

    matched = {m.reference for m in matches}
    known = state.references
    known_descriptions = {r.description for r in known}
    for m in matches:
        if m.reference not in known_descriptions:
            known = known + (m.as_reference(),)
            known_descriptions.add(m.reference)

    unmatched = tuple(r for r in state.unmatched_references if r.description not in matched)
    current = state.current_reference
    if current is None or current.description in matched:
        current = unmatched[0] if unmatched else None
    used = frozenset(m.path for m in matches)
    new_state = replace(
        state,
        references=known,
        matches=tuple(matches),
        used_paths=used,
        unmatched_references=unmatched,
        current_reference=current,
        selected_references=tuple(
            s for s in state.selected_references if s.item.description not in matched
        ),
        selected_paths=tuple(s for s in state.selected_paths if s.item not in used),
        selected_result=(
            None
            if state.selected_result is not None and state.selected_result.path in used
            else state.selected_result
        ),
    )
    return new_state, result


# ---------------------------------------------------------------------------
# Import preview
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class PotentialMove:
    """A missing file that probably moved to *suggested_path*."""

    reference: str
    original_path: str
    suggested_path: str
    similarity: float


@dataclass(frozen=True, slots=True)
class ImportValidation:
    exact: tuple[Match, ...] = ()
    missing_files: tuple[Match, ...] = ()
    missing_references: tuple[Match, ...] = ()
    potential_moves: tuple[PotentialMove, ...] = ()
    new_files: tuple[str, ...] = ()
    unmapped_references: tuple[Reference, ...] = ()
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_valid(self) -> bool:
        return bool(self.exact)

    def summary(self) -> dict[str, int]:
        return {
            "exact": len(self.exact),
            "missing_files": len(self.missing_files),
            "missing_references": len(self.missing_references),
            "potential_moves": len(self.potential_moves),
            "new_files": len(self.new_files),
            "unmapped_references": len(self.unmapped_references),
        }


def path_similarity(a: str, b: str) -> float:
    """0.8 for the same file name, else shared directory names over the deeper path."""
    parts_a = a.split("/")
    parts_b = b.split("/")
    if parts_a[-1] == parts_b[-1]:
        return SAME_FILE_NAME_SIMILARITY
    dirs_a = parts_a[:-1]
    dirs_b = parts_b[:-1]
    deepest = max(len(dirs_a), len(dirs_b))
    if not deepest:
        return 0.0
    common = [d for d in dirs_a if d in dirs_b]
    return len(common) / deepest


def validate_import(
    imported: Sequence[Match],
    state: SelectionState,
    *,
    metadata: dict[str, Any] | None = None,
) -> ImportValidation:
    """Classify *imported* against the session's references and corpus paths.

    When *metadata* from a JSON export carries ``folderStructureHash`` or
    ``totalFileCount``, a changed corpus is reported in ``warnings``.
    """
    corpus = set(state.paths)
    by_description = {r.description: r for r in state.references}

    exact: list[Match] = []
    missing_files: list[Match] = []
    missing_refs: list[Match] = []
    moves: list[PotentialMove] = []

    for mapping in imported:
        known = mapping.reference in by_description
        present = mapping.path in corpus
        if known and present:
            exact.append(mapping)
        elif not known:
            missing_refs.append(mapping)
        else:
            missing_files.append(mapping)
            name = mapping.path.rsplit("/", 1)[-1]
            moved_to = next((p for p in state.paths if p.rsplit("/", 1)[-1] == name), None)
            if moved_to is not None:
                moves.append(
                    PotentialMove(
                        reference=mapping.reference,
                        original_path=mapping.path,
                        suggested_path=moved_to,
                        similarity=path_similarity(mapping.path, moved_to),
                    )
                )

    warnings: list[str] = []
    if metadata and state.paths:
        expected_hash = metadata.get("folderStructureHash")
        if expected_hash and expected_hash != folder_structure_hash(state.paths):
            warnings.append(
                "Folder structure has changed since export. Some mappings may not be valid."
            )
        expected_count = metadata.get("totalFileCount")
        if isinstance(expected_count, int) and expected_count != len(state.paths):
            warnings.append(f"File count changed: {len(state.paths) - expected_count:+d} files")

    mapped_refs = {m.reference for m in imported}
    mapped_paths = {m.path for m in imported}
    return ImportValidation(
        exact=tuple(exact),
        missing_files=tuple(missing_files),
        missing_references=tuple(missing_refs),
        potential_moves=tuple(moves),
        new_files=tuple(p for p in state.paths if p not in mapped_paths),
        unmapped_references=tuple(
            r for r in state.references if r.description not in mapped_refs
        ),
        warnings=tuple(warnings),
    )
