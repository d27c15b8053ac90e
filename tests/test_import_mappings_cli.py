"""Tests for the mapping import CLI (scripts/import_mappings.py)."""
from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

# Import the module under test (lives in scripts/)
_scripts_dir = str(Path(__file__).resolve().parents[1] / "scripts")
if _scripts_dir not in sys.path:
    sys.path.insert(0, _scripts_dir)

from import_mappings import build_parser, main  # noqa: E402

from docmatch.match_store import MatchStore  # noqa: E402

MAPPINGS_CSV = (
    "File Reference,File Path,Match Score\n"
    "Exhibit A5-01,bundle/Exhibit A5-01.pdf,90%\n"
    "Lease Agreement,old/Lease Agreement.pdf,80%\n"
    "Unknown,bundle/zzz.pdf,50%\n"
    "Bad,,10%\n"
)


@pytest.fixture()
def workspace(tmp_path: Path) -> dict[str, Path]:
    refs = tmp_path / "refs.txt"
    refs.write_text("Exhibit A5-01\nLease Agreement\n")
    bundle = tmp_path / "bundle"
    bundle.mkdir()
    for name in ("Exhibit A5-01.pdf", "Lease Agreement.pdf"):
        (bundle / name).write_bytes(b"%PDF")
    mappings = tmp_path / "mappings.csv"
    mappings.write_text(MAPPINGS_CSV)
    return {"refs": refs, "corpus": bundle, "mappings": mappings, "root": tmp_path}


def _run(capsys: pytest.CaptureFixture[str], argv: list[str]) -> tuple[int, dict, str]:
    rc = main(argv)
    captured = capsys.readouterr()
    summary = json.loads(captured.out) if rc == 0 else {}
    return rc, summary, captured.err


class TestParser:
    def test_defaults(self) -> None:
        args = build_parser().parse_args(["--input", "m.csv"])
        assert args.strategy == "skip"
        assert args.format is None
        assert args.dry_run is False


class TestImport:
    def test_preview_and_merge(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        rc, summary, _ = _run(
            capsys,
            [
                "--input", str(workspace["mappings"]),
                "--references", str(workspace["refs"]),
                "--corpus", str(workspace["corpus"]),
                "--dry-run",
            ],
        )
        assert rc == 0
        assert summary["format"] == "csv"
        assert summary["decoded"] == 3
        assert summary["decode_errors"] == [{"line": 5, "error": "Invalid mapping data"}]
        validation = summary["validation"]
        assert validation["exact"] == 1
        assert validation["missing_files"] == 1
        assert validation["missing_references"] == 1
        assert validation["is_valid"] is True
        assert validation["potential_moves"] == [
            {
                "reference": "Lease Agreement",
                "original_path": "old/Lease Agreement.pdf",
                "suggested_path": "bundle/Lease Agreement.pdf",
                "similarity": 0.8,
            }
        ]
        assert summary["merge"]["added"] == 3
        assert summary["stats"]["matched"] == 3
        assert "persisted" not in summary

    def test_persist_then_replace(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        db = workspace["root"] / "matches.duckdb"
        rc, summary, _ = _run(
            capsys,
            [
                "--input", str(workspace["mappings"]),
                "--references", str(workspace["refs"]),
                "--corpus", str(workspace["corpus"]),
                "--store", str(db),
                "--session", "s-import",
            ],
        )
        assert rc == 0
        assert summary["persisted"] == {"matches": True, "session": True}

        fix = workspace["root"] / "fix.tsv"
        fix.write_text(
            "File Reference\tFile Path\tMatch Score\n"
            "Lease Agreement\tbundle/Lease Agreement.pdf\t100.0%\n"
        )
        rc, summary, err = _run(
            capsys,
            [
                "--input", str(fix), "--strategy", "replace",
                "--store", str(db), "--session", "s-import",
            ],
        )
        assert rc == 0
        assert "Loaded session s-import" in err
        assert summary["merge"]["replaced"] == 1
        assert summary["stats"]["matched"] == 3

        with MatchStore(db) as store:
            paths = {m.reference: m.path for m in store.load_matches("s-import")}
        assert paths["Lease Agreement"] == "bundle/Lease Agreement.pdf"

    def test_skip_strategy_keeps_existing(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        db = workspace["root"] / "matches.duckdb"
        base = ["--store", str(db), "--session", "s-skip"]
        _run(
            capsys,
            [
                "--input", str(workspace["mappings"]),
                "--references", str(workspace["refs"]),
                "--corpus", str(workspace["corpus"]),
                *base,
            ],
        )
        rc, summary, _ = _run(capsys, ["--input", str(workspace["mappings"]), *base])
        assert rc == 0
        assert summary["merge"]["added"] == 0
        assert summary["merge"]["skipped"] == 3


class TestErrors:
    def test_missing_input(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        rc, _, err = _run(capsys, ["--input", str(workspace["root"] / "nope.csv")])
        assert rc == 1
        assert "mapping file not found" in err

    def test_undecodable_payload(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        bad = workspace["root"] / "bad.csv"
        bad.write_text("Reference,Score\nA,90%\n")
        rc, _, err = _run(capsys, ["--input", str(bad)])
        assert rc == 1
        assert "import failed: missing reference or path column" in err

    def test_invalid_utf8_payload(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        bad = workspace["root"] / "latin.csv"
        bad.write_bytes(b"File Reference,File Path,Match Score\n\xff\xfeabc,/p.pdf,90%\n")
        rc, _, err = _run(capsys, ["--input", str(bad)])
        assert rc == 1
        assert "import failed: invalid UTF-8" in err

    def test_unsupported_extension(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        other = workspace["root"] / "mappings.txt"
        other.write_text(MAPPINGS_CSV)
        rc, _, err = _run(capsys, ["--input", str(other)])
        assert rc == 1
        assert "import failed: Unsupported import format: .txt" in err

    def test_format_flag_overrides_extension(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        other = workspace["root"] / "mappings.txt"
        other.write_text(MAPPINGS_CSV)
        rc, summary, _ = _run(capsys, ["--input", str(other), "--format", "csv", "--dry-run"])
        assert rc == 0
        assert summary["decoded"] == 3


class TestUnusableStore:
    def test_corrupt_store_does_not_block_merge(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        db = workspace["root"] / "matches.duckdb"
        db.write_text("not a database")
        rc, summary, _ = _run(
            capsys,
            [
                "--input", str(workspace["mappings"]),
                "--references", str(workspace["refs"]),
                "--corpus", str(workspace["corpus"]),
                "--store", str(db), "--session", "s-bad",
            ],
        )
        assert rc == 0
        assert summary["merge"]["added"] == 3
        assert "persisted" not in summary
