"""Tests for ignore_rules and large_files modules."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from company_sync.ignore_rules import (
    DEPENDENCIES_HEADER,
    LARGE_FILES_HEADER,
    IgnoreRuleSet,
    edit,
    escape_pattern,
    ensure_mandatory_entries,
)
from company_sync.large_files import find_oversized, quarantine_oversized


class TestIgnoreRuleSet:
    """Tests for IgnoreRuleSet."""

    def test_contains_normalizes_slashes(self):
        rules = IgnoreRuleSet(["/build/", "# comment", "", "*.log"])
        assert rules.contains("build")
        assert rules.contains("build/")
        assert rules.contains("/build")
        assert rules.contains("*.log")
        assert not rules.contains("comment")
        assert not rules.contains("buil")

    def test_append_section_adds_header_and_blank_line(self):
        rules = IgnoreRuleSet(["*.log"], existed=True)

        added = rules.append_section(["a.bin", "b.bin"], header=LARGE_FILES_HEADER)

        assert added == ["a.bin", "b.bin"]
        assert rules.render() == f"*.log\n\n{LARGE_FILES_HEADER}\na.bin\nb.bin\n"
        assert rules.dirty

    def test_append_section_is_idempotent(self):
        rules = IgnoreRuleSet(["a.bin"], existed=True)

        assert rules.append_section(["a.bin", "/a.bin"], header="# x") == []
        assert rules.render() == "a.bin\n"
        assert not rules.dirty

    def test_append_section_deduplicates_input(self):
        rules = IgnoreRuleSet()
        assert rules.append_section(["x", "x"]) == ["x"]

    def test_existing_lines_are_preserved(self, tmp_path: Path):
        path = tmp_path / ".gitignore"
        path.write_text("  keep-me  \n#c\n")
        rules = IgnoreRuleSet.load(path)
        rules.append_section(["new"])
        rules.save(path)
        assert path.read_text() == "  keep-me  \n#c\n\nnew\n"


class TestEscapePattern:
    """Tests for escape_pattern."""

    @pytest.mark.parametrize(
        "path, expected",
        [
            ("plain/file.bin", "plain/file.bin"),
            ("big[1].bin", "big\\[1].bin"),
            ("a*b?.bin", "a\\*b\\?.bin"),
            ("back\\slash", "back\\\\slash"),
            ("#notes.bin", "\\#notes.bin"),
            ("!keep.bin", "\\!keep.bin"),
            ("dir/#inner.bin", "dir/#inner.bin"),
            ("pad  ", "pad\\ \\ "),
        ],
    )
    def test_escapes_pattern_syntax(self, path, expected):
        assert escape_pattern(path) == expected

    def test_escaped_rules_are_recognized(self):
        rules = IgnoreRuleSet(["#big.bin", "\\!big.bin", "pad\\ "], existed=True)

        assert not rules.contains(escape_pattern("#big.bin"))
        assert rules.contains(escape_pattern("!big.bin"))
        assert rules.contains(escape_pattern("pad "))
        assert not rules.contains(escape_pattern("pad"))

    def test_unescaped_trailing_spaces_are_dropped(self):
        assert IgnoreRuleSet(["cache/   "]).contains("cache")


class TestEdit:
    """Tests for the edit() context manager."""

    def test_creates_missing_file(self, tmp_path: Path):
        with edit(tmp_path):
            pass
        assert (tmp_path / ".gitignore").exists()

    def test_unchanged_file_is_not_rewritten(self, tmp_path: Path):
        path = tmp_path / ".gitignore"
        path.write_text("x\n")
        os.utime(path, (1_000_000, 1_000_000))

        with edit(tmp_path) as rules:
            rules.append_section(["x"])

        assert path.stat().st_mtime == 1_000_000

    def test_nothing_written_when_block_raises(self, tmp_path: Path):
        path = tmp_path / ".gitignore"
        path.write_text("x\n")
        with pytest.raises(RuntimeError):
            with edit(tmp_path) as rules:
                rules.append_section(["y"])
                raise RuntimeError("boom")
        assert path.read_text() == "x\n"

    def test_mandatory_entries(self, tmp_path: Path):
        with edit(tmp_path) as rules:
            added = ensure_mandatory_entries(rules, backup_dir=".backups", dependency_dir="node_modules")
        assert added == [".backups/", "node_modules/"]
        assert (tmp_path / ".gitignore").read_text() == f".backups/\n\n{DEPENDENCIES_HEADER}\nnode_modules/\n"

        with edit(tmp_path) as rules:
            assert ensure_mandatory_entries(rules, backup_dir=".backups", dependency_dir="node_modules") == []

    def test_mandatory_entries_recognize_existing_forms(self):
        rules = IgnoreRuleSet(["/.backups", "node_modules"], existed=True)
        assert ensure_mandatory_entries(rules, backup_dir=".backups", dependency_dir="node_modules") == []


def make_file(path: Path, size: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as fh:
        fh.truncate(size)
    return path


class TestLargeFiles:
    """Tests for find_oversized and quarantine_oversized."""

    def test_threshold_is_strictly_greater(self, tmp_path: Path):
        make_file(tmp_path / "exact.bin", 100)
        make_file(tmp_path / "over.bin", 101)
        assert find_oversized(tmp_path, IgnoreRuleSet(), threshold=100) == ["over.bin"]

    def test_nested_paths_are_posix_relative(self, tmp_path: Path):
        make_file(tmp_path / "media" / "raw" / "clip.mov", 2048)
        assert find_oversized(tmp_path, IgnoreRuleSet(), threshold=1024) == ["media/raw/clip.mov"]

    def test_skips_ignored_files_and_directories(self, tmp_path: Path):
        make_file(tmp_path / "known.bin", 2048)
        make_file(tmp_path / "cache" / "big.bin", 2048)
        make_file(tmp_path / "node_modules" / "pkg" / "big.bin", 2048)
        make_file(tmp_path / ".git" / "objects" / "pack.pack", 2048)
        rules = IgnoreRuleSet(["known.bin", "cache/"])

        assert find_oversized(tmp_path, rules, threshold=1024) == []

    @pytest.mark.skipif(os.name != "posix", reason="POSIX-only test")
    def test_symlinks_are_not_followed(self, tmp_path: Path):
        target = make_file(tmp_path / "outside" / "big.bin", 2048)
        work = tmp_path / "work"
        work.mkdir()
        (work / "link.bin").symlink_to(target)
        assert find_oversized(work, IgnoreRuleSet(), threshold=1024) == []

    def test_quarantine_appends_section_once(self, tmp_path: Path):
        make_file(tmp_path / "big.bin", 2048)
        rules = IgnoreRuleSet()

        assert quarantine_oversized(tmp_path, rules, threshold=1024) == ["big.bin"]
        assert LARGE_FILES_HEADER in rules.lines
        assert quarantine_oversized(tmp_path, rules, threshold=1024) == []
        assert rules.lines.count(LARGE_FILES_HEADER) == 1

    def test_quarantine_escapes_names_and_reports_paths(self, tmp_path: Path):
        make_file(tmp_path / "big[1].bin", 2048)
        make_file(tmp_path / "!big.bin", 2048)
        rules = IgnoreRuleSet()

        added = quarantine_oversized(tmp_path, rules, threshold=1024)

        assert added == ["!big.bin", "big[1].bin"]
        assert "\\!big.bin" in rules.lines
        assert "big\\[1].bin" in rules.lines
        assert quarantine_oversized(tmp_path, rules, threshold=1024) == []
