#!/usr/bin/env python3
"""Auto-matcher CLI: match a reference list against a document corpus.

Loads references and corpus paths, proposes series matches from numbered
document families, then runs the batched high-confidence matcher over what
is left. Proposals are only committed with ``--yes``; otherwise they are
printed for review. Committed matches can be exported and persisted.

Usage examples:

    # Preview proposals as JSON to stdout
    python3 scripts/auto_matcher.py \\
      --references refs.txt --corpus bundle/ --threshold 0.8

    # Accept everything, export CSV and persist the session
    python3 scripts/auto_matcher.py \\
      --references refs.csv --corpus bundle/ --threshold 0.8 --yes \\
      --format csv --output out/ --store matches.duckdb

    # Resume a stored session with the process-pool backend
    python3 scripts/auto_matcher.py \\
      --references refs.txt --corpus bundle/ --store matches.duckdb \\
      --session session_20260101T000000Z_ab12cd34 --backend process --yes

Output:
    Run summary JSON to stdout, progress to stderr.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

import orjson

from docmatch.auto_match import (
    NO_MATCHES_MESSAGE,
    BatchMatchPipeline,
    candidates_to_matches,
)
from docmatch.config import load_config
from docmatch.io_utils import list_corpus_paths, load_references
from docmatch.mapping_io import FORMATS, encode_matches
from docmatch.match_store import MatchStore, SessionPersistence, open_store
from docmatch.match_types import Match, MatchCandidate, ProgressEvent
from docmatch.patterns import confirm_series_suggestions, suggest_series_matches
from docmatch.selection import (
    SelectionState,
    apply_matches,
    detect_remaining_files,
    import_mappings,
    new_session,
)


def _log(msg: str) -> None:
    """Write human-readable message to stderr."""
    print(msg, file=sys.stderr)


def _dump_json(obj: Any) -> None:
    sys.stdout.buffer.write(orjson.dumps(obj, option=orjson.OPT_INDENT_2))
    sys.stdout.buffer.write(b"\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Match document references to corpus file paths",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--references", required=True,
        help="Reference list (.txt, .csv, .json or .jsonl)",
    )
    parser.add_argument(
        "--corpus", "--paths", dest="corpus", required=True,
        help="Corpus directory to walk, or a file listing one path per line",
    )
    parser.add_argument("--config", default=None, help="Matcher config JSON")
    parser.add_argument(
        "--detect-remaining",
        action="store_true",
        help="Add generated references for corpus files nothing refers to",
    )
    parser.add_argument(
        "--threshold", type=float, default=0.8,
        help="Minimum score for auto-matched proposals (default: 0.8)",
    )
    parser.add_argument("--batch-size", type=int, default=None, help="References per batch")
    parser.add_argument(
        "--backend", choices=("inline", "process"), default=None,
        help="Scoring backend (default: from config)",
    )
    parser.add_argument(
        "--no-series",
        action="store_true",
        help="Skip series detection and template suggestions",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Accept every proposal (otherwise proposals are only reported)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Never export or persist, even with --yes",
    )
    parser.add_argument("--format", choices=FORMATS, default="csv", help="Export format")
    parser.add_argument(
        "--output", default=None,
        help="Export file, or a directory for the default mappings_<date> name",
    )
    parser.add_argument("--store", default=None, help="Path to matches DuckDB")
    parser.add_argument("--session", default=None, help="Session id to resume or create")
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output to stderr",
    )
    return parser


def _report_progress(event: ProgressEvent) -> None:
    _log(f"  auto-match {event.processed}/{event.total} ({event.found} found)")


def _candidate_row(candidate: MatchCandidate | Match) -> dict[str, Any]:
    return {
        "reference": candidate.reference,
        "path": candidate.path,
        "score": round(candidate.score, 4),
        "method": candidate.method,
    }


async def _persist(
    persistence: SessionPersistence,
    state: SelectionState,
    patterns: dict[str, list[Match]],
) -> dict[str, bool]:
    saved_matches = await persistence.save_matches(state.matches, state.session_id)
    saved_session = await persistence.save_session(state.to_snapshot())
    saved_patterns = True
    for pattern, matches in patterns.items():
        saved_patterns = await persistence.save_pattern(pattern, matches) and saved_patterns
    return {
        "matches": saved_matches,
        "session": saved_session,
        "patterns": saved_patterns,
    }


def _export_target(output: Path, filename: str) -> Path:
    if output.is_dir() or not output.suffix:
        return output / filename
    return output


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not 0.0 <= args.threshold <= 1.0:
        _log(f"Error: --threshold must be within [0, 1], got {args.threshold}")
        return 1

    try:
        config = load_config(args.config)
        overrides: dict[str, Any] = {}
        if args.batch_size is not None:
            overrides["batch_size"] = args.batch_size
        if args.backend is not None:
            overrides["backend"] = args.backend
        if args.store is not None:
            overrides["store_path"] = args.store
        config = replace(config, **overrides).validate()
    except (OSError, ValueError) as exc:
        _log(f"Error: invalid configuration: {exc}")
        return 1

    references_path = Path(args.references)
    corpus_path = Path(args.corpus)
    if not references_path.exists():
        _log(f"Error: reference file not found: {references_path}")
        return 1
    if not corpus_path.exists():
        _log(f"Error: corpus not found: {corpus_path}")
        return 1

    try:
        references = load_references(references_path)
    except ValueError as exc:
        _log(f"Error: {exc}")
        return 1
    paths = list_corpus_paths(corpus_path)
    _log(f"Loaded {len(references)} references and {len(paths)} corpus paths")

    store: MatchStore | None = None
    if config.store_path and not args.dry_run:
        store = open_store(config.store_path, create_if_missing=True)
    persistence = SessionPersistence(store)

    try:
        state = new_session(references, paths, session_id=args.session)
        if store is not None and args.session:
            stored = asyncio.run(persistence.load_matches(args.session))
            if stored:
                state = import_mappings(state, stored)
                _log(f"Resumed session {args.session} with {len(state.matches)} matches")

        if args.detect_remaining:
            before = len(state.unmatched_references)
            state = detect_remaining_files(state)
            _log(f"Generated {len(state.unmatched_references) - before} references from paths")

        # Series suggestions
        series_report: list[dict[str, Any]] = []
        pattern_matches: dict[str, list[Match]] = {}
        pattern_applied = 0
        if not args.no_series:
            available = [p for p in state.paths if p not in state.used_paths]
            suggestions = suggest_series_matches(
                state.unmatched_references,
                available,
                min_items=config.min_series_items,
                threshold=config.pattern_threshold,
                confidence=config.pattern_confidence,
            )
            for suggestion in suggestions:
                series_report.append({
                    "series": suggestion.series_key,
                    "template": suggestion.template.template,
                    "suggested": len(suggestion.mappings),
                })
            if args.yes and suggestions:
                for suggestion in suggestions:
                    confirmed = confirm_series_suggestions(
                        [suggestion], available, session_id=state.session_id,
                    )
                    if confirmed:
                        pattern_matches[suggestion.template.template] = confirmed
                state, pattern_applied = apply_matches(
                    state,
                    [m for ms in pattern_matches.values() for m in ms],
                )
            _log(f"Series: {len(suggestions)} templated, {pattern_applied} matches applied")

        # Batched auto-match
        pipeline = BatchMatchPipeline.from_config(
            config, state.paths, on_progress=_report_progress,
        )
        try:
            candidates = pipeline.run(state, args.threshold)
        finally:
            close = getattr(pipeline.backend, "close", None)
            if close is not None:
                close()
        if not candidates:
            _log(NO_MATCHES_MESSAGE)

        auto_applied = 0
        accepted = BatchMatchPipeline.review(
            candidates,
            args.threshold,
            (lambda proposed, _threshold: proposed) if args.yes else (lambda *_: None),
        )
        if accepted:
            state, auto_applied = apply_matches(
                state, candidates_to_matches(accepted, state.session_id),
            )
        _log(f"Auto-match: {len(candidates)} proposed, {auto_applied} applied")

        summary: dict[str, Any] = {
            "session_id": state.session_id,
            "references": len(references),
            "paths": len(paths),
            "threshold": args.threshold,
            "backend": config.backend,
            "series": series_report,
            "pattern_matches": pattern_applied,
            "auto_candidates": len(candidates),
            "auto_matches": auto_applied,
            "stats": state.stats(),
        }
        if not args.yes:
            summary["proposals"] = [_candidate_row(c) for c in candidates]

        if args.output and not args.dry_run:
            payload = encode_matches(
                state.matches, args.format, session_id=state.session_id, paths=state.paths,
            )
            target = _export_target(Path(args.output), payload.filename)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(payload.content, encoding="utf-8")
            summary["output"] = str(target)
            _log(f"Exported {len(state.matches)} matches to {target}")

        if store is not None:
            summary["persisted"] = asyncio.run(_persist(persistence, state, pattern_matches))
            summary["store"] = str(store.db_path)
    finally:
        if store is not None:
            store.close()

    _dump_json(summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
