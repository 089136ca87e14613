"""Patch-based and full-file edits for the edit and write tools.

Both modes compute a diff summary before anything touches the disk, so the
confirmation gate can show the user what is about to change. Writes go to a
temporary sibling first and are renamed over the target.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .errors import ToolFailure


@dataclass
class EditDiff:
    removed_lines: list[str]
    added_lines: list[str]

    def as_dict(self) -> dict:
        return {"removed": self.removed_lines, "added": self.added_lines}


@dataclass
class WriteDiff:
    added_lines: list[str]
    removed_lines: list[str]
    old_content: str | None

    @property
    def added(self) -> int:
        return len(self.added_lines)

    @property
    def removed(self) -> int:
        return len(self.removed_lines)

    def as_dict(self) -> dict:
        return {"removed": self.removed_lines, "added": self.added_lines}


# ---------------------------------------------------------------------------
# Disk helpers
# ---------------------------------------------------------------------------


def atomic_write(path: str | Path, text: str) -> None:
    """Write `text` to `path` via a temp sibling and os.replace.

    A crash mid-write leaves either the old file or the new one, never a
    truncated target. The temp file is removed if anything fails.
    """
    target = Path(path)
    fd, tmp_name = tempfile.mkstemp(
        dir=target.parent, prefix=f".{target.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if target.exists():
            os.chmod(tmp_name, target.stat().st_mode & 0o7777)
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def _read_text(path: Path, display: str) -> str:
    if not path.exists():
        raise ToolFailure(f"File not found: {display}")
    if not path.is_file():
        raise ToolFailure(f"Not a file: {display}")
    try:
        # newline="" keeps CRLF intact so edits are byte-exact
        with path.open(encoding="utf-8", newline="") as f:
            return f.read()
    except UnicodeDecodeError as exc:
        raise ToolFailure(f"failed to decode {display} as UTF-8: {exc}") from exc


# ---------------------------------------------------------------------------
# Patch edit
# ---------------------------------------------------------------------------


def _check_single_occurrence(
    content: str, old_string: str, new_string: str, display: str
) -> None:
    if not old_string:
        raise ToolFailure("old_string must not be empty")
    if old_string == new_string:
        raise ToolFailure("old_string and new_string are identical, no changes")
    occurrences = content.count(old_string)
    if occurrences == 0:
        raise ToolFailure(f"old_string not found in {display}")
    if occurrences > 1:
        raise ToolFailure(
            f"old_string matches {occurrences} locations in {display}, "
            "must match exactly once. Add more context around the target section."
        )


def compute_edit_diff(path: str | Path, old_string: str, new_string: str) -> EditDiff:
    """Validate the exactly-once rule and return the lines being swapped."""
    display = str(path)
    content = _read_text(Path(path), display)
    _check_single_occurrence(content, old_string, new_string, display)
    return EditDiff(
        removed_lines=old_string.split("\n"),
        added_lines=new_string.split("\n"),
    )


def apply_edit(path: str | Path, old_string: str, new_string: str) -> str:
    """Replace the single occurrence of old_string and write atomically.

    Re-reads the file, so a change made between diff and confirmation is
    caught by the same exactly-once check. On any error the file is left
    untouched.
    """
    display = str(path)
    target = Path(path)
    content = _read_text(target, display)
    _check_single_occurrence(content, old_string, new_string, display)

    atomic_write(target, content.replace(old_string, new_string, 1))

    removed = len(old_string.split("\n"))
    added = len(new_string.split("\n"))
    return f"Edited {display} (+{added} / -{removed} lines)"


# ---------------------------------------------------------------------------
# Full write
# ---------------------------------------------------------------------------


def compute_write_diff(path: str | Path, content: str) -> WriteDiff:
    """Summarize a full-file write.

    For an existing file the counts come from a line-set difference: a line
    that only moved is not counted. Only used for the human-facing summary.
    """
    target = Path(path)
    new_lines = content.split("\n")
    if not target.exists():
        return WriteDiff(added_lines=new_lines, removed_lines=[], old_content=None)

    old_content = _read_text(target, str(path))
    old_lines = old_content.split("\n")
    old_set = set(old_lines)
    new_set = set(new_lines)
    return WriteDiff(
        added_lines=[line for line in new_lines if line not in old_set],
        removed_lines=[line for line in old_lines if line not in new_set],
        old_content=old_content,
    )


def write_file(path: str | Path, content: str) -> None:
    """Create or overwrite `path`, creating parent directories as needed."""
    target = Path(path)
    if target.is_dir():
        raise ToolFailure(f"Not a file: {path}")
    target.parent.mkdir(parents=True, exist_ok=True)
    atomic_write(target, content)
