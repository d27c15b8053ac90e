"""Tests for the auto-matcher CLI (scripts/auto_matcher.py).

Covers: proposal-only runs, accepted runs with series templates, export,
persistence and resume, dry runs, and argument errors.
"""
from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

# Import the module under test (lives in scripts/)
_scripts_dir = str(Path(__file__).resolve().parents[1] / "scripts")
if _scripts_dir not in sys.path:
    sys.path.insert(0, _scripts_dir)

from auto_matcher import build_parser, main  # noqa: E402

from docmatch.auto_match import NO_MATCHES_MESSAGE  # noqa: E402
from docmatch.match_store import MatchStore  # noqa: E402


@pytest.fixture()
def workspace(tmp_path: Path) -> dict[str, Path]:
    refs = tmp_path / "refs.txt"
    refs.write_text("Exhibit A5-01\nExhibit A5-02\nLease Agreement\n")
    bundle = tmp_path / "bundle"
    bundle.mkdir()
    for name in ("Exhibit A5-01.pdf", "Exhibit A5-02.pdf", "Lease Agreement.pdf"):
        (bundle / name).write_bytes(b"%PDF")
    return {"refs": refs, "corpus": bundle, "root": tmp_path}


def _run(capsys: pytest.CaptureFixture[str], argv: list[str]) -> tuple[int, dict, str]:
    rc = main(argv)
    captured = capsys.readouterr()
    summary = json.loads(captured.out) if rc == 0 else {}
    return rc, summary, captured.err


def _base(ws: dict[str, Path]) -> list[str]:
    return ["--references", str(ws["refs"]), "--corpus", str(ws["corpus"])]


class TestParser:
    def test_defaults(self) -> None:
        args = build_parser().parse_args(["--references", "r.txt", "--paths", "p.txt"])
        assert args.corpus == "p.txt"
        assert args.threshold == 0.8
        assert args.format == "csv"
        assert args.yes is False


class TestProposals:
    def test_without_yes_nothing_committed(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        rc, summary, _ = _run(capsys, [*_base(workspace), "--threshold", "0.75"])
        assert rc == 0
        assert summary["auto_candidates"] == 3
        assert summary["auto_matches"] == 0
        assert summary["pattern_matches"] == 0
        assert summary["stats"]["matched"] == 0
        assert [p["path"] for p in summary["proposals"]] == [
            "bundle/Exhibit A5-01.pdf",
            "bundle/Exhibit A5-02.pdf",
            "bundle/Lease Agreement.pdf",
        ]
        assert summary["series"][0]["series"] == "exhibit:A5"

    def test_no_matches_message(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        rc, summary, err = _run(capsys, [*_base(workspace), "--threshold", "0.99"])
        assert rc == 0
        assert summary["auto_candidates"] == 0
        assert NO_MATCHES_MESSAGE in err


class TestAccepted:
    def test_series_then_auto_match(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        rc, summary, _ = _run(capsys, [*_base(workspace), "--threshold", "0.75", "--yes"])
        assert rc == 0
        assert summary["pattern_matches"] == 2
        assert summary["auto_matches"] == 1
        assert summary["stats"] == {"total": 3, "matched": 3, "unmatched": 0, "progress": 1.0}
        assert "proposals" not in summary

    def test_no_series(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        rc, summary, _ = _run(
            capsys, [*_base(workspace), "--threshold", "0.75", "--yes", "--no-series"],
        )
        assert rc == 0
        assert summary["series"] == []
        assert summary["auto_matches"] == 3

    def test_export_to_directory(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        out_dir = workspace["root"] / "out"
        rc, summary, _ = _run(
            capsys,
            [*_base(workspace), "--threshold", "0.75", "--yes", "--output", str(out_dir)],
        )
        assert rc == 0
        target = Path(summary["output"])
        assert target.parent == out_dir
        assert target.name.startswith("mappings_")
        lines = target.read_text().split("\n")
        assert lines[0].startswith("File Reference,File Path")
        assert len(lines) == 4

    def test_export_json_file(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        target = workspace["root"] / "export.json"
        rc, _, _ = _run(
            capsys,
            [
                *_base(workspace), "--threshold", "0.75", "--yes",
                "--format", "json", "--output", str(target),
            ],
        )
        assert rc == 0
        data = json.loads(target.read_text())
        assert data["statistics"]["totalMappings"] == 3
        assert data["totalFileCount"] == 3

    def test_dry_run_writes_nothing(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        target = workspace["root"] / "export.csv"
        db = workspace["root"] / "matches.duckdb"
        rc, summary, _ = _run(
            capsys,
            [
                *_base(workspace), "--threshold", "0.75", "--yes", "--dry-run",
                "--output", str(target), "--store", str(db),
            ],
        )
        assert rc == 0
        assert not target.exists()
        assert not db.exists()
        assert "persisted" not in summary


class TestPersistence:
    def test_persist_and_resume(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        db = workspace["root"] / "matches.duckdb"
        argv = [
            *_base(workspace), "--threshold", "0.75", "--yes",
            "--store", str(db), "--session", "s-cli",
        ]
        rc, summary, _ = _run(capsys, argv)
        assert rc == 0
        assert summary["persisted"] == {"matches": True, "session": True, "patterns": True}
        assert summary["session_id"] == "s-cli"

        with MatchStore(db) as store:
            assert len(store.load_matches("s-cli")) == 3
            assert store.load_session("s-cli") is not None
            pattern = store.get_pattern("bundle/Exhibit {series}-{number}.pdf")
            assert pattern is not None
            assert pattern["match_count"] == 2

        rc, summary, err = _run(capsys, argv)
        assert rc == 0
        assert "Resumed session s-cli with 3 matches" in err
        assert summary["auto_candidates"] == 0
        assert summary["stats"]["matched"] == 3


class TestDetectRemaining:
    def test_generated_references_added(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        (workspace["corpus"] / "Witness Statement.pdf").write_bytes(b"%PDF")
        rc, summary, err = _run(
            capsys,
            [*_base(workspace), "--threshold", "0.75", "--detect-remaining", "--no-series"],
        )
        assert rc == 0
        assert "Generated 1 references from paths" in err
        assert summary["stats"]["unmatched"] == 4


class TestErrors:
    def test_missing_references(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        rc, _, err = _run(
            capsys,
            ["--references", str(workspace["root"] / "nope.txt"),
             "--corpus", str(workspace["corpus"])],
        )
        assert rc == 1
        assert "reference file not found" in err

    def test_missing_corpus(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        rc, _, err = _run(
            capsys,
            ["--references", str(workspace["refs"]),
             "--corpus", str(workspace["root"] / "nowhere")],
        )
        assert rc == 1
        assert "corpus not found" in err

    def test_bad_threshold(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        rc, _, err = _run(capsys, [*_base(workspace), "--threshold", "1.5"])
        assert rc == 1
        assert "--threshold" in err

    def test_bad_config(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        config = workspace["root"] / "docmatch.json"
        config.write_text('{"batch_size": 0}')
        rc, _, err = _run(capsys, [*_base(workspace), "--config", str(config)])
        assert rc == 1
        assert "invalid configuration" in err


class TestUnusableStore:
    def test_corrupt_store_does_not_block_matching(
        self, workspace: dict[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        db = workspace["root"] / "matches.duckdb"
        db.write_text("not a database")
        rc, summary, _ = _run(
            capsys,
            [*_base(workspace), "--threshold", "0.75", "--yes", "--store", str(db)],
        )
        assert rc == 0
        assert summary["stats"]["matched"] == 3
        assert "persisted" not in summary
        assert db.read_text() == "not a database"
