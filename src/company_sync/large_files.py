"""Keep files over the size limit out of commits.

The server rejects very large blobs, so before staging the working tree is
scanned and every oversized file not yet ignored is appended to the ignore
file. Files already listed there are skipped, so repeated syncs do not flag
them again.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, List

from .config_schema import LARGE_FILE_THRESHOLD
from .ignore_rules import LARGE_FILES_HEADER, IgnoreRuleSet, escape_pattern
from .observability import log_debug, log_info

DEFAULT_SKIP_DIRS = frozenset({".git", ".backups", "node_modules"})


def find_oversized(
    workspace: Path,
    rules: IgnoreRuleSet,
    *,
    threshold: int = LARGE_FILE_THRESHOLD,
    skip_dirs: Iterable[str] = DEFAULT_SKIP_DIRS,
) -> List[str]:
    """Relative POSIX paths of files larger than ``threshold`` bytes."""
    workspace = Path(workspace)
    skip = set(skip_dirs)
    found: List[str] = []

    for dirpath, dirnames, filenames in os.walk(workspace):
        current = Path(dirpath)
        kept = []
        for name in sorted(dirnames):
            if name in skip:
                continue
            rel = (current / name).relative_to(workspace).as_posix()
            if rules.contains(escape_pattern(rel)):
                continue
            kept.append(name)
        dirnames[:] = kept

        for name in sorted(filenames):
            full = current / name
            rel = full.relative_to(workspace).as_posix()
            if rules.contains(escape_pattern(rel)):
                continue
            try:
                st = full.lstat()
            except OSError as e:
                log_debug(f"Skipping unreadable file {rel}: {e}")
                continue
            if not full.is_symlink() and full.is_file() and st.st_size > threshold:
                found.append(rel)

    return found


def quarantine_oversized(
    workspace: Path,
    rules: IgnoreRuleSet,
    *,
    threshold: int = LARGE_FILE_THRESHOLD,
    skip_dirs: Iterable[str] = DEFAULT_SKIP_DIRS,
) -> List[str]:
    """Append oversized files to ``rules``; returns the newly ignored paths."""
    oversized = find_oversized(workspace, rules, threshold=threshold, skip_dirs=skip_dirs)
    appended = set(rules.append_section([escape_pattern(p) for p in oversized], header=LARGE_FILES_HEADER))
    added = [p for p in oversized if escape_pattern(p) in appended]
    if added:
        log_info(f"Ignored {len(added)} large file(s)", files=added)
    return added
