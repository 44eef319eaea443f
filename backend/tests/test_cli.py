from __future__ import annotations

import argparse
import csv
import io
import json
from pathlib import Path

import pytest

from spacelens.cli import main, parse_size

from .utils import pseudo_random_bytes, write_file


@pytest.mark.parametrize(
    "text, expected",
    [
        ("100MB", 100 * 1024 * 1024),
        ("1.5 kb", 1536),
        ("2GB", 2 * 1024 ** 3),
        ("512B", 512),
        ("4096", 4096),
    ],
)
def test_parse_size(text: str, expected: int):
    assert parse_size(text) == expected


@pytest.mark.parametrize("text", ["lots", "12XB", "MB", "1.5B"])
def test_parse_size_rejects_garbage(text: str):
    with pytest.raises(argparse.ArgumentTypeError):
        parse_size(text)


def build_tree(root: Path) -> Path:
    for index in range(1, 5):
        write_file(root / "dumps" / f"dump-00{index}.sql", b"d" * 2_000)
    write_file(root / "media" / "movie.mkv", b"m" * 200_000)
    return root


def test_outliers_json_output(tmp_path: Path, capsys):
    root = build_tree(tmp_path / "R")

    code = main(["outliers", str(root), "--format", "json", "--std-dev", "1.5"])

    assert code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["total_files_analyzed"] == 5
    assert payload["large_files"][0]["path"].endswith("movie.mkv")
    assert payload["pattern_groups"][0]["pattern"] == "dump*.sql"


def test_outliers_csv_output(tmp_path: Path, capsys):
    root = build_tree(tmp_path / "R")

    assert main(["outliers", str(root), "--format", "csv", "--no-patterns", "--std-dev", "1.5"]) == 0

    rows = list(csv.reader(io.StringIO(capsys.readouterr().out)))
    assert rows[0] == ["category", "path", "size_bytes", "file_count", "score", "detail"]
    assert [row[0] for row in rows[1:]] == ["large_file"]


def test_outliers_table_output(tmp_path: Path, capsys):
    root = build_tree(tmp_path / "R")

    assert main(["outliers", str(root), "--min-size", "100KB", "--std-dev", "1.5"]) == 0

    out = capsys.readouterr().out
    assert out.startswith("Analyzed 5 files")
    assert "movie.mkv" in out
    assert "dump*.sql" in out


def test_clusters_finds_identical_files(tmp_path: Path, capsys):
    root = tmp_path / "R"
    payload = pseudo_random_bytes(16 * 1024, seed=21)
    write_file(root / "a" / "copy.bin", payload)
    write_file(root / "b" / "copy.bin", payload)
    write_file(root / "c" / "other.bin", pseudo_random_bytes(16 * 1024, seed=99))

    code = main(["clusters", str(root), "--min-size", "1KB", "--min-similarity", "90", "--format", "json"])

    assert code == 0
    result = json.loads(capsys.readouterr().out)
    assert result["summary"]["total_clusters"] == 1
    assert sorted(Path(entry["path"]).parent.name for entry in result["clusters"][0]["files"]) == ["a", "b"]


def test_clusters_strict_mode_exits_with_usage_error(tmp_path: Path, capsys):
    root = tmp_path / "R"
    write_file(root / "only.bin", b"o" * 100)

    code = main(["clusters", str(root), "--strict"])

    assert code == 2
    assert "Insufficient files for clustering: 0 < 2" in capsys.readouterr().err


def test_invalid_similarity_exits_with_usage_error(tmp_path: Path, capsys):
    code = main(["clusters", str(tmp_path), "--min-similarity", "101"])
    assert code == 2
    assert "Invalid similarity threshold: 101" in capsys.readouterr().err


def test_missing_directory_exits_with_error(tmp_path: Path, capsys):
    assert main(["outliers", str(tmp_path / "missing")]) == 1
    assert "is not a directory" in capsys.readouterr().err


@pytest.mark.parametrize(
    "argv",
    [
        ["clusters", "--min-cluster-size", "0"],
        ["clusters", "--batch-size", "0"],
        ["outliers", "--std-dev", "0"],
        ["outliers", "--std-dev", "-1.5"],
        ["outliers", "--top", "-1"],
        ["outliers", "--max-depth", "0"],
        ["outliers", "--min-cluster-size", "abc"],
    ],
)
def test_out_of_range_options_are_rejected_at_parse_time(tmp_path: Path, capsys, argv):
    command, *flags = argv
    with pytest.raises(SystemExit) as excinfo:
        main([command, str(tmp_path), *flags])
    assert excinfo.value.code == 2
    assert "Traceback" not in capsys.readouterr().err


def test_negative_size_returns_usage_exit_code(tmp_path: Path, capsys):
    write_file(tmp_path / "R" / "file.bin", b"x" * 10)

    code = main(["outliers", str(tmp_path / "R"), "--min-size=-5B"])

    assert code == 2
    assert "invalid option value" in capsys.readouterr().err


def test_top_zero_is_accepted(tmp_path: Path, capsys):
    root = build_tree(tmp_path / "R")

    assert main(["outliers", str(root), "--top", "0", "--format", "json"]) == 0
    assert json.loads(capsys.readouterr().out)["large_files"] == []


def test_respect_ignore_flag_skips_ignored_files(tmp_path: Path, capsys):
    root = build_tree(tmp_path / "R")
    write_file(root / ".gitignore", b"media/\n")

    assert main(["outliers", str(root), "--respect-ignore", "--format", "json"]) == 0
    assert json.loads(capsys.readouterr().out)["total_files_analyzed"] == 4
