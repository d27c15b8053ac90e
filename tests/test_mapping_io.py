"""Tests for docmatch.mapping_io: CSV/TSV/JSON export and import."""
from __future__ import annotations

from datetime import datetime

import orjson
import pytest

from docmatch.mapping_io import (
    COLUMNS,
    INVALID_MAPPING,
    DecodeError,
    ImportFailedError,
    decode_matches,
    detect_format,
    encode_matches,
    export_filename,
    folder_structure_hash,
)
from docmatch.match_types import Match

TS = "2026-01-31T10:15:00+00:00"


def _matches() -> list[Match]:
    return [
        Match("Exhibit A5-01 - Lease", "bundle/Exhibit A5-01.pdf", 0.85, "manual", TS, "s1"),
        Match(
            "Letter, to counsel",
            "bundle/letters/letter.pdf",
            1.0,
            "manual-bulk",
            TS,
            original_date="2020-03-01",
            original_reference="C1",
        ),
    ]


class TestHelpers:
    def test_detect_format(self) -> None:
        assert detect_format("mappings.CSV") == "csv"
        assert detect_format("mappings.json") == "json"
        assert detect_format("mappings.txt") is None
        assert detect_format("mappings") is None

    def test_export_filename(self) -> None:
        assert export_filename("tsv", datetime(2026, 1, 31)) == "mappings_2026-01-31.tsv"

    def test_folder_hash_ignores_order(self) -> None:
        a = folder_structure_hash(["r/x/1.pdf", "r/y/2.pdf"])
        b = folder_structure_hash(["r/y/2.pdf", "r/x/1.pdf"])
        assert a == b
        assert len(a) == 16

    def test_folder_hash_sees_new_directory(self) -> None:
        before = folder_structure_hash(["r/x/1.pdf", "r/y/2.pdf"])
        after = folder_structure_hash(["r/x/1.pdf", "r/z/2.pdf"])
        assert before != after


class TestEncode:
    def test_csv(self) -> None:
        payload = encode_matches(_matches(), "csv", session_id="fallback")
        lines = payload.content.split("\n")
        assert lines[0] == ",".join(COLUMNS)
        assert lines[1] == (
            f'"Exhibit A5-01 - Lease","bundle/Exhibit A5-01.pdf","85.0%","{TS}","manual","s1"'
        )
        assert lines[2].endswith('"manual-bulk","fallback"')
        assert '"Letter, to counsel"' in lines[2]
        assert payload.mime_type == "text/csv"
        assert payload.filename.startswith("mappings_")
        assert payload.filename.endswith(".csv")

    def test_csv_default_session_label(self) -> None:
        content = encode_matches(_matches()[1:], "csv").content
        assert content.endswith('"default"')

    def test_tsv_flattens_tabs_and_newlines(self) -> None:
        match = Match("A\tB", "p\nq.pdf", 0.5, "manual", TS, "s1")
        lines = encode_matches([match], "tsv").content.split("\n")
        assert len(lines) == 2
        assert lines[1].split("\t")[:3] == ["A B", "p q.pdf", "50.0%"]

    def test_json(self) -> None:
        paths = ["bundle/Exhibit A5-01.pdf", "bundle/letters/letter.pdf", "bundle/x.pdf"]
        payload = encode_matches(_matches(), "json", session_id="s1", paths=paths)
        data = orjson.loads(payload.content)
        assert data["version"] == "1.0"
        assert data["sessionId"] == "s1"
        assert data["statistics"]["totalMappings"] == 2
        assert data["statistics"]["averageScore"] == pytest.approx(0.925)
        assert data["statistics"]["methods"] == {"manual": 1, "manual-bulk": 1}
        assert data["mappings"][1]["originalDate"] == "2020-03-01"
        assert "originalDate" not in data["mappings"][0]
        assert data["folderStructureHash"] == folder_structure_hash(paths)
        assert data["totalFileCount"] == 3
        assert payload.mime_type == "application/json"

    def test_json_empty(self) -> None:
        data = orjson.loads(encode_matches([], "json").content)
        assert data["statistics"]["averageScore"] == 0.0
        assert "folderStructureHash" not in data

    def test_unsupported(self) -> None:
        with pytest.raises(ValueError, match="Unsupported export format"):
            encode_matches(_matches(), "xml")


class TestDecodeDelimited:
    def test_csv_from_export(self) -> None:
        content = encode_matches(_matches(), "csv", session_id="fallback").content
        result = decode_matches(content, "csv")
        assert result.errors == ()
        assert [m.reference for m in result.mappings] == [
            "Exhibit A5-01 - Lease", "Letter, to counsel",
        ]
        assert result.mappings[0].score == pytest.approx(0.85)
        assert result.mappings[0].method == "manual"
        assert result.mappings[1].session_id == "fallback"
        assert result.metadata is None

    def test_tsv_from_export(self) -> None:
        content = encode_matches(_matches(), "tsv").content
        result = decode_matches(content, "tsv")
        assert [m.path for m in result.mappings] == [
            "bundle/Exhibit A5-01.pdf", "bundle/letters/letter.pdf",
        ]

    def test_invalid_utf8_bytes(self) -> None:
        content = b"File Reference,File Path,Match Score\n\xff\xfeabc,/p.pdf,90%\n"
        with pytest.raises(ImportFailedError, match="import failed: invalid UTF-8"):
            decode_matches(content, "csv")

    def test_bare_score_is_fraction(self) -> None:
        result = decode_matches("Reference,Path,Score\nA,a.pdf,0.9\n", "csv")
        assert result.mappings[0].score == pytest.approx(0.9)
        assert result.mappings[0].method == "imported"

    def test_bad_rows_reported_by_line(self) -> None:
        content = (
            "File Reference,File Path,Match Score\n"
            "\n"
            "A,a.pdf,150%\n"
            "B,,90%\n"
            "C,c.pdf,90%\n"
            "D,d.pdf,not a number\n"
        )
        result = decode_matches(content, "csv")
        assert [m.reference for m in result.mappings] == ["C"]
        assert result.errors == (
            DecodeError(2, INVALID_MAPPING),
            DecodeError(3, INVALID_MAPPING),
            DecodeError(5, INVALID_MAPPING),
        )

    def test_unknown_method_becomes_imported(self) -> None:
        result = decode_matches("Reference,Path,Score,Method\nA,a.pdf,50%,guess\n", "csv")
        assert result.mappings[0].method == "imported"

    def test_bom_is_stripped(self) -> None:
        content = "\ufeffFile Reference,File Path,Match Score\nA,a.pdf,90%\n".encode("utf-8")
        result = decode_matches(content, "csv")
        assert [m.reference for m in result.mappings] == ["A"]

    def test_missing_columns(self) -> None:
        with pytest.raises(ImportFailedError) as excinfo:
            decode_matches("Reference,Score\nA,90%\n", "csv")
        assert excinfo.value.reason == "missing reference or path column"
        assert str(excinfo.value).startswith("import failed: ")

    def test_empty_payload(self) -> None:
        with pytest.raises(ImportFailedError, match="empty payload"):
            decode_matches("\n\n", "tsv")

    def test_unsupported_format(self) -> None:
        with pytest.raises(ImportFailedError, match="Unsupported import format"):
            decode_matches("x", "xml")


class TestDecodeJson:
    def test_from_export(self) -> None:
        paths = ["bundle/Exhibit A5-01.pdf"]
        content = encode_matches(_matches(), "json", session_id="s1", paths=paths).content
        result = decode_matches(content.encode("utf-8"), "json")
        assert len(result.mappings) == 2
        assert result.mappings[1].original_reference == "C1"
        assert result.mappings[0].session_id == "s1"
        assert result.metadata is not None
        assert result.metadata["totalFileCount"] == 1
        assert "mappings" not in result.metadata

    def test_invalid_entries_reported(self) -> None:
        content = orjson.dumps(
            {
                "mappings": [
                    {"reference": "A", "path": "a.pdf", "score": 0.9},
                    {"reference": "B", "score": 0.9},
                    "not an object",
                ]
            }
        )
        result = decode_matches(content, "json")
        assert [m.reference for m in result.mappings] == ["A"]
        assert [e.line for e in result.errors] == [2, 3]

    def test_parse_error(self) -> None:
        with pytest.raises(ImportFailedError, match="JSON parse error"):
            decode_matches("{not json", "json")

    def test_missing_mappings(self) -> None:
        with pytest.raises(ImportFailedError, match="missing mappings array"):
            decode_matches('{"version": "1.0"}', "json")
