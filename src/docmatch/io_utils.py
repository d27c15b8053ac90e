"""I/O utilities for JSON, JSONL, reference lists and corpus folders.

JSON goes through orjson. References load from ``.txt`` (one description per
line), ``.csv`` (a description column, optional date and code columns),
``.json`` or ``.jsonl``. Corpus paths come from a directory walk or a list
file.
"""
from __future__ import annotations

import csv
from pathlib import Path
from typing import Any

import orjson

from docmatch.match_types import Reference


def load_json(path: Path) -> Any:
    """Load JSON from a file."""
    return orjson.loads(path.read_bytes())


def save_json(obj: Any, path: Path, *, pretty: bool = True) -> None:
    """Save an object as JSON, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    opts = orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS if pretty else orjson.OPT_SORT_KEYS
    path.write_bytes(orjson.dumps(obj, option=opts))


def load_jsonl(path: Path) -> list[dict[str, Any]]:
    """Load a JSON Lines file (one JSON object per line). Blank lines skipped."""
    records: list[dict[str, Any]] = []
    for line in path.read_bytes().split(b"\n"):
        line = line.strip()
        if line:
            records.append(orjson.loads(line))
    return records


def save_jsonl(records: list[dict[str, Any]], path: Path) -> None:
    """Save a list of dicts as a JSON Lines file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [orjson.dumps(r) for r in records]
    path.write_bytes(b"\n".join(lines) + b"\n")


def _clean(value: Any) -> str | None:
    text = str(value).strip() if value is not None else ""
    return text or None


def _reference_from_record(record: Any) -> Reference | None:
    if isinstance(record, str):
        text = record.strip()
        return Reference(description=text) if text else None
    if not isinstance(record, dict):
        return None
    description = str(record.get("description") or "").strip()
    if not description:
        return None
    return Reference(
        description=description,
        date=_clean(record.get("date")),
        external_code=_clean(record.get("external_code", record.get("reference"))),
        generated=bool(record.get("generated", False)),
    )


def _find_column(header: list[str], *needles: str) -> int | None:
    for idx, name in enumerate(header):
        lowered = name.strip().lower()
        if any(n in lowered for n in needles):
            return idx
    return None


def _load_reference_csv(path: Path) -> list[Reference]:
    with path.open(newline="", encoding="utf-8-sig") as fh:
        rows = [row for row in csv.reader(fh) if any(cell.strip() for cell in row)]
    if not rows:
        return []
    header = rows[0]
    desc_col = _find_column(header, "description")
    if desc_col is None:
        raise ValueError(f"no description column in {path}")
    date_col = _find_column(header, "date")
    code_col = _find_column(header, "reference", "code")

    def cell(row: list[str], col: int | None) -> str | None:
        if col is None or col >= len(row):
            return None
        return row[col].strip() or None

    refs: list[Reference] = []
    for row in rows[1:]:
        description = cell(row, desc_col)
        if description:
            refs.append(
                Reference(
                    description=description,
                    date=cell(row, date_col),
                    external_code=cell(row, code_col),
                )
            )
    return refs


def load_references(path: Path) -> list[Reference]:
    """Load references from a file, picking the reader by extension.

    Entries without a description are dropped. Duplicates are kept; the
    session deduplicates them.

    Raises:
        ValueError: unsupported extension, or a CSV without a description column.
    """
    suffix = path.suffix.lower()
    if suffix == ".txt":
        return [
            Reference(description=line.strip())
            for line in path.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]
    if suffix == ".csv":
        return _load_reference_csv(path)
    if suffix == ".json":
        data = load_json(path)
        if isinstance(data, dict):
            data = data.get("references", [])
        records = data if isinstance(data, list) else []
    elif suffix == ".jsonl":
        records = load_jsonl(path)
    else:
        raise ValueError(f"unsupported reference file: {path}")
    refs = (_reference_from_record(r) for r in records)
    return [r for r in refs if r is not None]


def list_corpus_paths(root: Path) -> list[str]:
    """List corpus file paths, sorted.

    A directory is walked recursively; paths are ``/``-separated and start
    with the directory's own name (``bundle/exhibits/A5-01.pdf``). Hidden
    files and folders are skipped. A regular file is read as a list of
    paths, one per line.
    """
    if root.is_file():
        return sorted(
            line.strip()
            for line in root.read_text(encoding="utf-8").splitlines()
            if line.strip()
        )
    if not root.is_dir():
        raise FileNotFoundError(f"Corpus not found: {root}")
    paths: list[str] = []
    for item in root.rglob("*"):
        rel = item.relative_to(root)
        if any(part.startswith(".") for part in rel.parts):
            continue
        if item.is_file():
            paths.append("/".join((root.name, *rel.parts)))
    return sorted(paths)
