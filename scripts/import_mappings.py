#!/usr/bin/env python3
"""Import a saved mapping file into a matching session.

Decodes a CSV, TSV or JSON mapping export, previews it against the session's
references and corpus, then merges it under ``--strategy skip`` (keep the
current match of an already matched reference) or ``--strategy replace``.

The session comes from ``--store``/``--session`` when that snapshot exists,
otherwise from ``--references``/``--corpus``.

Usage examples:

    python3 scripts/import_mappings.py \\
      --input mappings_2026-01-31.csv \\
      --store matches.duckdb --session session_20260131T101500Z_ab12cd34

    python3 scripts/import_mappings.py \\
      --input mappings.json --references refs.txt --corpus bundle/ \\
      --strategy replace --dry-run

Output:
    Merge summary JSON to stdout, progress to stderr. A payload that cannot
    be decoded prints ``import failed: <reason>`` and exits 1.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

import orjson

from docmatch.io_utils import list_corpus_paths, load_references
from docmatch.mapping_io import FORMATS, ImportFailedError, decode_matches, detect_format
from docmatch.match_store import MatchStore, SessionPersistence, open_store
from docmatch.match_types import Reference
from docmatch.merge import MERGE_STRATEGIES, merge_matches, validate_import
from docmatch.selection import SelectionState, new_session


def _log(msg: str) -> None:
    """Write human-readable message to stderr."""
    print(msg, file=sys.stderr)


def _dump_json(obj: Any) -> None:
    sys.stdout.buffer.write(orjson.dumps(obj, option=orjson.OPT_INDENT_2))
    sys.stdout.buffer.write(b"\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Import and merge a saved mapping file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--input", required=True, help="Mapping file (.csv, .tsv or .json)")
    parser.add_argument(
        "--format", choices=FORMATS, default=None,
        help="Input format (default: from the file extension)",
    )
    parser.add_argument(
        "--strategy", choices=MERGE_STRATEGIES, default="skip",
        help="How to treat references that already have a match (default: skip)",
    )
    parser.add_argument("--store", default=None, help="Path to matches DuckDB")
    parser.add_argument("--session", default=None, help="Session id to merge into")
    parser.add_argument("--references", default=None, help="Reference list for a new session")
    parser.add_argument("--corpus", default=None, help="Corpus directory or path list")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview and merge in memory without persisting",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output to stderr",
    )
    return parser


def _initial_state(
    args: argparse.Namespace,
    persistence: SessionPersistence,
) -> SelectionState:
    if args.session:
        snapshot = asyncio.run(persistence.load_session(args.session))
        if snapshot is not None:
            _log(f"Loaded session {args.session}")
            return SelectionState.from_snapshot(snapshot)

    references: list[Reference] = []
    paths: list[str] = []
    if args.references:
        references = load_references(Path(args.references))
    if args.corpus:
        paths = list_corpus_paths(Path(args.corpus))
    return new_session(references, paths, session_id=args.session)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    input_path = Path(args.input)
    if not input_path.exists():
        _log(f"Error: mapping file not found: {input_path}")
        return 1

    fmt = args.format or detect_format(input_path.name)
    try:
        if fmt is None:
            raise ImportFailedError(f"Unsupported import format: {input_path.suffix}")
        decoded = decode_matches(input_path.read_bytes(), fmt)
    except ImportFailedError as exc:
        _log(str(exc))
        return 1
    _log(f"Decoded {len(decoded.mappings)} mappings ({len(decoded.errors)} rejected)")

    store: MatchStore | None = None
    if args.store and not args.dry_run:
        store = open_store(args.store, create_if_missing=True)
    elif args.store:
        store_path = Path(args.store)
        if store_path.exists():
            store = open_store(store_path)
    persistence = SessionPersistence(store)

    try:
        try:
            state = _initial_state(args, persistence)
        except (OSError, ValueError) as exc:
            _log(f"Error: {exc}")
            return 1

        validation = validate_import(decoded.mappings, state, metadata=decoded.metadata)
        for warning in validation.warnings:
            _log(f"Warning: {warning}")

        state, result = merge_matches(state, decoded.mappings, args.strategy)
        _log(
            f"Merged: {result.added} added, {result.replaced} replaced, "
            f"{result.skipped} skipped, {len(result.errors)} conflicts"
        )

        summary: dict[str, Any] = {
            "session_id": state.session_id,
            "format": fmt,
            "strategy": args.strategy,
            "decoded": len(decoded.mappings),
            "decode_errors": [{"line": e.line, "error": e.error} for e in decoded.errors],
            "validation": {
                **validation.summary(),
                "is_valid": validation.is_valid,
                "warnings": list(validation.warnings),
                "potential_moves": [
                    {
                        "reference": m.reference,
                        "original_path": m.original_path,
                        "suggested_path": m.suggested_path,
                        "similarity": m.similarity,
                    }
                    for m in validation.potential_moves
                ],
            },
            "merge": result.to_dict(),
            "stats": state.stats(),
        }

        if store is not None and not args.dry_run:
            saved_matches = asyncio.run(
                persistence.save_matches(state.matches, state.session_id)
            )
            saved_session = asyncio.run(persistence.save_session(state.to_snapshot()))
            summary["persisted"] = {"matches": saved_matches, "session": saved_session}
    finally:
        if store is not None:
            store.close()

    _dump_json(summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
