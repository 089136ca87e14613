"""Shell command execution behind a layered safety policy.

Layers, applied in order before anything is spawned:

1. Denylist: high-risk command shapes are rejected outright.
2. Working-directory boundary: every ``cd <target>`` in the command text is
   resolved against the execution root and must stay inside it.

The second layer is a textual heuristic. It does not see through ``$(...)``,
``eval``, symlinks created by the command itself, or other deliberate
obfuscation, and must not be treated as a security boundary.
"""

import os
import re
import shlex
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path

from .cancel import CancellationToken
from .errors import PolicyViolation

DENYLIST_PATTERNS = [
    re.compile(r"rm\s+-rf\s+/(?:\s|$)"),
    re.compile(r"rm\s+-rf\s+~(?:\s|$)"),
    re.compile(r"rm\s+-rf\s+\$HOME(?:\s|$)"),
    re.compile(r"curl[^|]+\|\s*(?:ba)?sh"),
    re.compile(r"wget[^|]+\|\s*(?:ba)?sh"),
    re.compile(r":\s*\(\s*\)\s*\{.*:\|:&?\s*\}.*:"),  # fork bomb
    re.compile(r">\s*/dev/sd[a-z]"),
    re.compile(r"mkfs\."),
    re.compile(r"dd\s+if=.+of=/dev/"),
]

# `cd` at the start of the command or after a separator, optionally behind
# shell keywords and `{`, with its argument.
_CD_RE = re.compile(
    r"(?:^|[;&|(\n])\s*"
    r"(?:(?:then|do|else|elif|if|while|until|!|\{)\s+)*"
    r"cd\b(?:[ \t]+(\"[^\"]*\"|'[^']*'|[^\s;&|()]+))?"
)

DEFAULT_TIMEOUT = 30  # seconds
MAX_OUTPUT = 10 * 1024 * 1024  # 10 MB per stream
TRUNCATE_HEAD = 100
TRUNCATE_TAIL = 50

TIMEOUT_EXIT_CODE = 124
OVERFLOW_EXIT_CODE = 125
CANCELLED_EXIT_CODE = 130

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


@dataclass
class BashResult:
    stdout: str
    stderr: str
    exit_code: int

    def as_dict(self) -> dict:
        return {"stdout": self.stdout, "stderr": self.stderr, "exitCode": self.exit_code}


def check_denylist(command: str) -> None:
    for pattern in DENYLIST_PATTERNS:
        if pattern.search(command):
            raise PolicyViolation(f"Command blocked by security policy: {command}")


def _cd_target(raw: str | None) -> str:
    if raw is None:
        return "~"
    try:
        parts = shlex.split(raw)
    except ValueError:
        parts = [raw]
    return parts[0] if parts else "~"


def check_cwd_escape(command: str, root: str | Path) -> None:
    """Reject commands whose `cd` targets resolve outside `root`."""
    base = Path(root).resolve()
    for match in _CD_RE.finditer(command):
        target = _cd_target(match.group(1))
        if target == "-":
            raise PolicyViolation("`cd -` is not allowed: previous directory is unknown")
        expanded = os.path.expandvars(os.path.expanduser(target))
        candidate = Path(expanded)
        if not candidate.is_absolute():
            candidate = base / candidate
        resolved = candidate.resolve()
        if not resolved.is_relative_to(base):
            raise PolicyViolation(
                f"cd target {target!r} resolves to {resolved}, "
                f"which is outside the working directory {base}"
            )


def check_command(command: str, root: str | Path) -> None:
    """Apply every policy layer. Raises PolicyViolation on the first failure."""
    check_denylist(command)
    check_cwd_escape(command, root)


def truncate_output(output: str) -> str:
    """Keep the first 100 and last 50 lines, marking how many were dropped.

    A single trailing newline terminates the last line and is not a line of
    its own.
    """
    if not output:
        return output
    body, ending = (output[:-1], "\n") if output.endswith("\n") else (output, "")
    lines = body.split("\n")
    total = len(lines)
    if total <= TRUNCATE_HEAD + TRUNCATE_TAIL:
        return output
    dropped = total - TRUNCATE_HEAD - TRUNCATE_TAIL
    kept = lines[:TRUNCATE_HEAD] + [f"... {dropped} lines truncated ..."] + lines[-TRUNCATE_TAIL:]
    return "\n".join(kept) + ending


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable


class _StreamReader(threading.Thread):
    """Drain one pipe into memory, tripping `overflow` past the byte cap."""

    def __init__(
        self, pipe, limit: int, overflow: threading.Event, wake: threading.Event
    ):
        super().__init__(daemon=True)
        self._pipe = pipe
        self._limit = limit
        self._overflow = overflow
        self._wake = wake
        self.chunks: list[bytes] = []
        self.total = 0

    def run(self):
        try:
            while True:
                chunk = self._pipe.read(4096)
                if not chunk:
                    break
                if self.total >= self._limit:
                    continue  # keep draining so the child never blocks
                keep = chunk[: self._limit - self.total]
                self.chunks.append(keep)
                self.total += len(keep)
                if len(keep) < len(chunk):
                    self._overflow.set()
                    self._wake.set()
        except (OSError, ValueError):
            pass  # pipe closed after kill

    def text(self) -> str:
        return b"".join(self.chunks).decode("utf-8", errors="replace")


def run_bash(
    command: str,
    root: str | Path,
    token: CancellationToken | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_output: int = MAX_OUTPUT,
) -> BashResult:
    """Run `command` through /bin/sh inside `root` after the policy checks.

    Never spawns anything when a policy layer rejects the command. A command
    that times out, floods its output, or is cancelled is killed along with
    its process group and reports a synthetic non-zero exit code.
    """
    check_command(command, root)

    base_path = Path(root)
    if not base_path.is_dir():
        raise PolicyViolation(f"working directory does not exist: {root}")

    if token is not None and token.cancelled:
        return BashResult("", "Aborted", CANCELLED_EXIT_CODE)

    shell_cmd = (
        ["cmd.exe", "/c", command] if sys.platform == "win32" else ["/bin/sh", "-c", command]
    )
    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=str(base_path),
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        return BashResult("", f"failed to start shell command: {e}", 1)

    # Set when the process exits, the token fires, or output overflows.
    stop = threading.Event()
    overflow = threading.Event()
    cancelled = threading.Event()
    out_reader = _StreamReader(proc.stdout, max_output, overflow, stop)
    err_reader = _StreamReader(proc.stderr, max_output, overflow, stop)
    out_reader.start()
    err_reader.start()

    def _on_cancel():
        cancelled.set()
        stop.set()

    handle = token.add_callback(_on_cancel) if token is not None else None

    def _watch_exit():
        proc.wait()
        stop.set()

    threading.Thread(target=_watch_exit, daemon=True).start()

    try:
        finished = stop.wait(timeout)
    finally:
        if token is not None:
            token.remove_callback(handle)

    timed_out = not finished
    killed = timed_out or cancelled.is_set() or overflow.is_set()
    if killed and proc.poll() is None:
        _kill_process_tree(proc)
    else:
        proc.wait()

    out_reader.join(timeout=2)
    err_reader.join(timeout=2)
    proc.stdout.close()
    proc.stderr.close()

    stdout = out_reader.text()
    stderr = err_reader.text()

    if cancelled.is_set():
        return BashResult(stdout, stderr or "Aborted", CANCELLED_EXIT_CODE)
    if timed_out:
        note = f"command timed out after {timeout}s"
        return BashResult(stdout, f"{stderr}\n{note}" if stderr else note, TIMEOUT_EXIT_CODE)
    if overflow.is_set():
        note = f"output exceeded {max_output} bytes, command terminated"
        return BashResult(stdout, f"{stderr}\n{note}" if stderr else note, OVERFLOW_EXIT_CODE)
    return BashResult(stdout, stderr, proc.returncode)
