"""The workspace ``.gitignore`` as an append-only list of rules.

Sync only ever appends machine-managed sections; existing lines are kept as
they are. Changes are written back as one whole-file replacement when an
:func:`edit` block exits cleanly, never as partial appends.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from .fs import atomic_write_text

IGNORE_FILENAME = ".gitignore"
LARGE_FILES_HEADER = "# Auto-ignored: Large files (>100MB)"
DEPENDENCIES_HEADER = "# Dependencies"
_GLOB_CHARS = "\\[*?"


def escape_pattern(path: str) -> str:
    """Rule matching exactly the workspace-relative POSIX ``path``.

    Glob characters are escaped, as are a leading ``#`` or ``!`` and trailing
    spaces, which git would otherwise read as a comment, a negation or
    padding.
    """
    escaped = "".join("\\" + ch if ch in _GLOB_CHARS else ch for ch in path)
    if escaped.startswith(("#", "!")):
        escaped = "\\" + escaped
    body = escaped.rstrip(" ")
    return body + "\\ " * (len(escaped) - len(body))


def _rule_text(line: str) -> str:
    """The line without the trailing spaces git ignores (escaped ones stay)."""
    while line.endswith(" ") and not line.endswith("\\ "):
        line = line[:-1]
    return line.lstrip()


def _normalize(pattern: str) -> str:
    return _rule_text(pattern).lstrip("/").rstrip("/")


class IgnoreRuleSet:
    """Ordered ignore-file lines with idempotent appends."""

    def __init__(self, lines: Optional[Iterable[str]] = None, *, existed: bool = False):
        self.lines: List[str] = list(lines or [])
        self.existed = existed
        self.dirty = False

    @classmethod
    def load(cls, path: Path) -> "IgnoreRuleSet":
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return cls(existed=False)
        return cls(text.splitlines(), existed=True)

    @property
    def patterns(self) -> List[str]:
        rules = []
        for line in self.lines:
            text = _rule_text(line)
            if text and not text.startswith("#"):
                rules.append(text)
        return rules

    def contains(self, pattern: str) -> bool:
        """True if an equivalent rule is already present.

        ``foo``, ``/foo``, ``foo/`` and ``/foo/`` are treated as the same rule.
        Compare paths through :func:`escape_pattern`.
        """
        wanted = _normalize(pattern)
        return any(_normalize(p) == wanted for p in self.patterns)

    def append_section(self, patterns: Iterable[str], header: Optional[str] = None) -> List[str]:
        """Append the patterns not already present, under an optional comment header.

        Returns the patterns actually added.
        """
        added: List[str] = []
        for pattern in patterns:
            if not self.contains(pattern) and pattern not in added:
                added.append(pattern)
        if not added:
            return []

        if self.lines and self.lines[-1].strip():
            self.lines.append("")
        if header:
            self.lines.append(header)
        self.lines.extend(added)
        self.dirty = True
        return added

    def render(self) -> str:
        return "\n".join(self.lines) + "\n" if self.lines else ""

    def save(self, path: Path) -> None:
        atomic_write_text(path, self.render())
        self.existed = True
        self.dirty = False


@contextmanager
def edit(workspace: Path) -> Iterator[IgnoreRuleSet]:
    """Load the workspace ignore file, yield it, and write it back if changed.

    Nothing is written if the block raises.
    """
    path = Path(workspace) / IGNORE_FILENAME
    rules = IgnoreRuleSet.load(path)
    yield rules
    if rules.dirty or not rules.existed:
        rules.save(path)


def ensure_mandatory_entries(rules: IgnoreRuleSet, *, backup_dir: str, dependency_dir: str) -> List[str]:
    """Make sure the backup and dependency-cache directories are ignored."""
    added = rules.append_section([f"{backup_dir}/"])
    added += rules.append_section([f"{dependency_dir}/"], header=DEPENDENCIES_HEADER)
    return added
