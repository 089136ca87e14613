"""On-disk conversation store, one directory per working directory.

Layout::

    <root>/projects/<cwd-slug>/
        sessions-index.json   metadata for every session
        <session-id>.jsonl    one JSON message per line
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .edit import atomic_write
from .errors import AmbiguousSession, SessionNotFound

logger = logging.getLogger(__name__)

INDEX_FILE = "sessions-index.json"
INDEX_VERSION = 1
FIRST_PROMPT_CHARS = 120


def default_root() -> Path:
    return Path.home() / ".quill"


def cwd_slug(cwd: str | Path) -> str:
    return str(cwd).replace("\\", "-").replace("/", "-")


def read_git_branch(cwd: str | Path) -> str:
    """Branch name from .git/HEAD, or the short hash when detached."""
    head_file = Path(cwd) / ".git" / "HEAD"
    try:
        head = head_file.read_text(encoding="utf-8").strip()
    except OSError:
        return ""
    prefix = "ref: refs/heads/"
    return head[len(prefix) :] if head.startswith(prefix) else head[:8]


@dataclass
class SessionEntry:
    session_id: str
    first_prompt: str
    message_count: int
    created: str
    modified: str
    git_branch: str = ""

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "firstPrompt": self.first_prompt,
            "messageCount": self.message_count,
            "created": self.created,
            "modified": self.modified,
            "gitBranch": self.git_branch,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionEntry":
        return cls(
            session_id=data["sessionId"],
            first_prompt=data.get("firstPrompt", ""),
            message_count=data.get("messageCount", 0),
            created=data.get("created", ""),
            modified=data.get("modified", ""),
            git_branch=data.get("gitBranch", ""),
        )


def _first_prompt(messages: list) -> str:
    for msg in messages:
        if msg.get("role") == "user" and isinstance(msg.get("content"), str):
            return msg["content"][:FIRST_PROMPT_CHARS]
    return ""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionStore:
    def __init__(self, root: str | Path | None = None):
        self.root = Path(root) if root is not None else default_root()

    def project_dir(self, cwd: str | Path) -> Path:
        return self.root / "projects" / cwd_slug(cwd)

    def _index_path(self, cwd) -> Path:
        return self.project_dir(cwd) / INDEX_FILE

    def _session_path(self, cwd, session_id: str) -> Path:
        return self.project_dir(cwd) / f"{session_id}.jsonl"

    def _read_index(self, cwd) -> list[SessionEntry]:
        path = self._index_path(cwd)
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return [SessionEntry.from_dict(e) for e in data.get("entries", [])]
        except (OSError, json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            logger.warning("ignoring unreadable session index %s: %s", path, e)
            return []

    def _write_index(self, cwd, entries: list[SessionEntry]) -> None:
        payload = {"version": INDEX_VERSION, "entries": [e.to_dict() for e in entries]}
        atomic_write(self._index_path(cwd), json.dumps(payload, indent=2))

    def create(self, cwd: str | Path) -> str:
        """Allocate a new session id. Nothing is written until the first save."""
        self.project_dir(cwd).mkdir(parents=True, exist_ok=True)
        return str(uuid.uuid4())

    def save(self, cwd: str | Path, session_id: str, messages: list) -> None:
        """Overwrite the transcript with the full message list and update the index."""
        if not messages:
            return
        self.project_dir(cwd).mkdir(parents=True, exist_ok=True)
        lines = "\n".join(json.dumps(m, ensure_ascii=False) for m in messages)
        atomic_write(self._session_path(cwd, session_id), lines + "\n")

        entries = self._read_index(cwd)
        now = _now()
        existing = next((e for e in entries if e.session_id == session_id), None)
        entry = SessionEntry(
            session_id=session_id,
            first_prompt=_first_prompt(messages),
            message_count=len(messages),
            created=existing.created if existing else now,
            modified=now,
            git_branch=read_git_branch(cwd),
        )
        if existing:
            entries[entries.index(existing)] = entry
        else:
            entries.append(entry)
        self._write_index(cwd, entries)

    def load(self, cwd: str | Path, session_id: str) -> list:
        path = self._session_path(cwd, session_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        return [json.loads(line) for line in raw.splitlines() if line.strip()]

    def list(self, cwd: str | Path) -> list[SessionEntry]:
        """Index entries, most recently modified first."""
        return sorted(self._read_index(cwd), key=lambda e: e.modified, reverse=True)

    def resolve(self, cwd: str | Path, prefix: str) -> str:
        matches = [e for e in self._read_index(cwd) if e.session_id.startswith(prefix)]
        if not prefix or not matches:
            raise SessionNotFound(f"no session matches {prefix!r}")
        if len(matches) > 1:
            raise AmbiguousSession(
                f"{prefix!r} matches {len(matches)} sessions, use a longer prefix"
            )
        return matches[0].session_id

    def delete(self, cwd: str | Path, session_id: str) -> bool:
        entries = self._read_index(cwd)
        remaining = [e for e in entries if e.session_id != session_id]
        if len(remaining) == len(entries):
            return False
        self._session_path(cwd, session_id).unlink(missing_ok=True)
        self._write_index(cwd, remaining)
        return True
