"""Batched high-confidence auto-matching.

``BatchMatchPipeline`` walks a reference list in fixed-size batches, strictly
one after another, and asks a scoring backend for each reference's best
available path. Results at or above the threshold become
``auto-high-confidence`` candidates for human review; nothing is committed
here. Callers commit accepted candidates with ``selection.apply_matches``,
which re-checks used paths because detection and commit are not atomic.

Backends:
  - ``InlineBackend`` scores in the calling process.
  - ``ProcessPoolBackend`` runs the same computation in a worker process.
    Requests and results are pickled, so nothing is shared with the caller.
    If the pool cannot be started or dies, it raises ``BackendUnavailable``
    and the pipeline continues inline.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from multiprocessing import Pool
from typing import Any, Protocol

from docmatch.config import MatcherConfig
from docmatch.match_types import (
    BatchResult,
    Match,
    MatchCandidate,
    PathCandidate,
    ProgressEvent,
    Reference,
    utc_now_iso,
)
from docmatch.selection import SelectionState
from docmatch.textmatch import best_path_match

log = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
NO_MATCHES_MESSAGE = "no matches found above the given threshold"

ProgressObserver = Callable[[ProgressEvent], None]
Reviewer = Callable[[list[MatchCandidate], float], "list[MatchCandidate] | None"]


class BackendUnavailable(RuntimeError):
    """Raised when the delegated scoring backend cannot run a batch."""


class ScoringBackend(Protocol):
    name: str

    def score_batch(
        self,
        batch: Sequence[str],
        threshold: float,
        candidates: Sequence[str],
    ) -> list[BatchResult]:
        ...


def score_batch_inline(
    batch: Sequence[str],
    threshold: float,
    candidates: Sequence[str],
) -> list[BatchResult]:
    """Best candidate per reference, kept only when its score >= *threshold*.

    *candidates* must already exclude used paths.
    """
    results: list[BatchResult] = []
    for reference in batch:
        best = best_path_match(reference, candidates)
        if best is not None and best.score >= threshold:
            results.append(BatchResult(reference=reference, best_match=best))
    return results


def _score_batch_payload(
    payload: tuple[list[str], float, list[str]],
) -> list[tuple[str, str, float]]:
    """Worker-process entry point; plain tuples in and out."""
    batch, threshold, candidates = payload
    return [
        (r.reference, r.best_match.path, r.best_match.score)
        for r in score_batch_inline(batch, threshold, candidates)
    ]


class InlineBackend:
    name = "inline"

    def score_batch(
        self,
        batch: Sequence[str],
        threshold: float,
        candidates: Sequence[str],
    ) -> list[BatchResult]:
        return score_batch_inline(list(batch), threshold, list(candidates))


class ProcessPoolBackend:
    """Scores batches in a ``multiprocessing`` worker pool.

    Parameters
    ----------
    processes:
        Pool size. Batches are still submitted one at a time.
    """

    name = "process"

    def __init__(self, processes: int = 1) -> None:
        self._processes = max(1, int(processes))
        self._pool: Any = None

    def _ensure_pool(self) -> Any:
        if self._pool is None:
            try:
                self._pool = Pool(processes=self._processes)
            except (OSError, ValueError) as exc:
                raise BackendUnavailable(f"cannot start worker pool: {exc}") from exc
        return self._pool

    def score_batch(
        self,
        batch: Sequence[str],
        threshold: float,
        candidates: Sequence[str],
    ) -> list[BatchResult]:
        pool = self._ensure_pool()
        payload = (list(batch), float(threshold), list(candidates))
        try:
            rows = pool.apply(_score_batch_payload, (payload,))
        except Exception as exc:
            self.close()
            raise BackendUnavailable(f"worker pool failed: {exc}") from exc
        return [
            BatchResult(reference=ref, best_match=PathCandidate(path=path, score=score))
            for ref, path, score in rows
        ]

    def close(self) -> None:
        if self._pool is not None:
            self._pool.terminate()
            self._pool.join()
            self._pool = None

    def __enter__(self) -> ProcessPoolBackend:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def build_backend(config: MatcherConfig) -> ScoringBackend:
    """Select the scoring backend named by configuration."""
    if config.backend == "process":
        return ProcessPoolBackend(processes=config.workers or 1)
    return InlineBackend()


def _description(ref: str | Reference) -> str:
    return ref.description if isinstance(ref, Reference) else str(ref)


class BatchMatchPipeline:
    """Runs auto-matching over a reference list in sequential batches.

    Parameters
    ----------
    paths:
        Corpus paths, in corpus order.
    backend:
        Scoring backend; defaults to ``InlineBackend``.
    batch_size:
        References per batch.
    on_progress:
        Optional observer called after every batch with processed/total/found.
    """

    def __init__(
        self,
        paths: Iterable[str],
        *,
        backend: ScoringBackend | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        on_progress: ProgressObserver | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._paths = tuple(paths)
        self._backend: ScoringBackend = backend or InlineBackend()
        self._fallback = InlineBackend()
        self._batch_size = batch_size
        self.on_progress = on_progress

    @classmethod
    def from_config(
        cls,
        config: MatcherConfig,
        paths: Iterable[str],
        *,
        on_progress: ProgressObserver | None = None,
    ) -> BatchMatchPipeline:
        return cls(
            paths,
            backend=build_backend(config),
            batch_size=config.batch_size,
            on_progress=on_progress,
        )

    @property
    def backend(self) -> ScoringBackend:
        return self._backend

    def _score(
        self,
        batch: list[str],
        threshold: float,
        candidates: list[str],
    ) -> list[BatchResult]:
        try:
            return self._backend.score_batch(batch, threshold, candidates)
        except BackendUnavailable as exc:
            log.warning("%s backend unavailable, scoring inline: %s", self._backend.name, exc)
            self._backend = self._fallback
            return self._fallback.score_batch(batch, threshold, candidates)

    def find_high_confidence_matches(
        self,
        threshold: float,
        references: Sequence[str | Reference],
        used_paths: Iterable[str] = (),
    ) -> list[MatchCandidate]:
        """Propose the best available path for each reference scoring >= *threshold*.

        Paths in *used_paths* are never proposed. Candidates keep reference
        order. Two references may be proposed the same path; the commit step
        resolves that.
        """
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {threshold}")
        used = set(used_paths)
        candidates = [p for p in self._paths if p not in used]
        refs = [_description(r) for r in references]
        total = len(refs)

        found: list[MatchCandidate] = []
        for start in range(0, total, self._batch_size):
            batch = refs[start:start + self._batch_size]
            for result in self._score(batch, threshold, candidates):
                found.append(
                    MatchCandidate(
                        reference=result.reference,
                        path=result.best_match.path,
                        score=result.best_match.score,
                    )
                )
            processed = min(start + len(batch), total)
            log.debug("auto-match batch done: %d/%d, %d found", processed, total, len(found))
            if self.on_progress is not None:
                self.on_progress(ProgressEvent(processed=processed, total=total, found=len(found)))
        return found

    def run(self, state: SelectionState, threshold: float) -> list[MatchCandidate]:
        """Auto-match every unmatched reference of *state* against its free paths."""
        return self.find_high_confidence_matches(
            threshold,
            state.unmatched_references,
            used_paths=state.used_paths,
        )

    @staticmethod
    def review(
        candidates: list[MatchCandidate],
        threshold: float,
        reviewer: Reviewer | None,
    ) -> list[MatchCandidate]:
        """Hand the proposal to a human reviewer.

        The reviewer may return the full list, a subset, or None (rejected).
        Anything returned that was not proposed is ignored. Without a
        reviewer the full proposal is accepted.
        """
        if reviewer is None:
            return list(candidates)
        approved = reviewer(list(candidates), threshold)
        if not approved:
            return []
        proposed = set(candidates)
        return [c for c in approved if c in proposed]


def candidates_to_matches(
    candidates: Iterable[MatchCandidate],
    session_id: str | None = None,
) -> list[Match]:
    """Stamp accepted candidates as matches ready for ``apply_matches``."""
    return [
        Match(
            reference=c.reference,
            path=c.path,
            score=c.score,
            method=c.method,
            timestamp=utc_now_iso(),
            session_id=session_id,
        )
        for c in candidates
    ]
