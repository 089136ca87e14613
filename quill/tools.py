"""Tool definitions, argument validation and execution for the agent."""

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path, PurePath, PurePosixPath, PureWindowsPath
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from . import edit as edit_engine
from . import fetch, sandbox
from .cancel import CancellationToken, run_abandonable
from .errors import (
    InvalidToolInput,
    PolicyViolation,
    ToolFailure,
    TurnCancelled,
    UserDenied,
)
from .gate import ConfirmationGate

logger = logging.getLogger(__name__)

READ_DENY_PATTERNS = ("**/.ssh/**", "**/.aws/**", "**/.config/**", "**/.env*")
LARGE_FILE_WARN_LINES = 500
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 200
MAX_GREP_MATCHES = 200
MAX_LINE_LENGTH = 2000


# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------


class _ToolInput(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ReadInput(_ToolInput):
    path: str = Field(min_length=1, description="Path to the file to read.")
    offset: int | None = Field(
        default=None, ge=1, description="1-based line number to start reading from."
    )
    limit: int | None = Field(
        default=None, ge=1, description="Maximum number of lines to return."
    )


class GlobInput(_ToolInput):
    pattern: str = Field(
        min_length=1, description="Glob pattern, e.g. '**/*.py' or 'src/*.ts'."
    )
    path: str | None = Field(
        default=None, description="Directory to search in. Defaults to the project root."
    )


class GrepInput(_ToolInput):
    pattern: str = Field(min_length=1, description="Regular expression to search for.")
    file_glob: str = Field(
        alias="fileGlob",
        min_length=1,
        description="Glob selecting which files to search, e.g. '**/*.py'.",
    )
    path: str | None = Field(
        default=None, description="Directory to search in. Defaults to the project root."
    )


class EditInput(_ToolInput):
    path: str = Field(min_length=1, description="Path to the file to edit.")
    old_string: str = Field(
        description="Exact text to replace. Must occur exactly once in the file."
    )
    new_string: str = Field(description="Replacement text.")


class WriteInput(_ToolInput):
    path: str = Field(min_length=1, description="Path to the file to create or overwrite.")
    content: str = Field(description="Full file contents.")


class BashInput(_ToolInput):
    command: str = Field(min_length=1, description="Shell command to run.")


class WebSearchInput(_ToolInput):
    query: str = Field(min_length=1, description="Search query.")
    limit: int = Field(default=5, description="Number of results (1-10).")


class WebFetchInput(_ToolInput):
    url: str = Field(min_length=1, description="http(s) URL to fetch.")


# ---------------------------------------------------------------------------
# Calls and outcomes
# ---------------------------------------------------------------------------


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str | dict = ""

    def parsed_arguments(self) -> dict:
        if isinstance(self.arguments, dict):
            return self.arguments
        if not self.arguments or not self.arguments.strip():
            return {}
        try:
            value = json.loads(self.arguments)
        except json.JSONDecodeError as e:
            raise InvalidToolInput(f"arguments are not valid JSON: {e}") from e
        if not isinstance(value, dict):
            raise InvalidToolInput("arguments must be a JSON object")
        return value


@dataclass
class ToolOutcome:
    """ToolResult when `error` is None, ToolError otherwise."""

    call_id: str
    name: str
    data: object = None
    error: str | None = None
    display: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_model(self) -> object:
        if self.error is not None:
            return {"error": self.error}
        return self.data

    def model_content(self) -> str:
        value = self.to_model()
        return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)


@dataclass
class ToolOutput:
    """Tool body return value when the user should see more than the model."""

    data: object
    display: str | None = None


@dataclass
class Confirmation:
    """What the user is asked to approve before a mutating tool runs."""

    description: str
    diff: dict | None = None


@dataclass
class Tool:
    name: str
    description: str
    input_model: type[BaseModel]
    needs_confirmation: bool
    execute: Callable
    # Runs policy checks and builds the confirmation prompt; may raise ToolFailure.
    describe: Callable | None = None

    def schema(self) -> dict:
        parameters = self.input_model.model_json_schema(by_alias=True)
        parameters.pop("title", None)
        for prop in parameters.get("properties", {}).values():
            prop.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def safe_resolve(file_path: str, base_dir: str | Path) -> Path:
    """Resolve a path against base_dir, requiring it to stay inside.

    Symlinks are resolved on both sides before the containment check.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()
    if resolved.is_relative_to(base):
        return resolved
    raise PolicyViolation(
        f"Path {file_path!r} resolves to {resolved}, "
        f"which is outside the working directory {base}"
    )


def is_read_denied(path: Path) -> bool:
    """Match credential and dotenv locations, relative to $HOME when inside it."""
    home = Path.home().resolve()
    if path.is_relative_to(home) and path != home:
        rel = PurePosixPath(*path.relative_to(home).parts)
    else:
        rel = PurePosixPath(*path.parts[1:])
    return any(rel.full_match(pattern) for pattern in READ_DENY_PATTERNS)


def _check_pattern(pattern: str) -> None:
    """Reject patterns that are absolute or contain '..'."""
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        raise InvalidToolInput(f"pattern {pattern!r} must be relative, not absolute")
    if ".." in PurePosixPath(pattern).parts or ".." in PureWindowsPath(pattern).parts:
        raise InvalidToolInput(f"pattern {pattern!r} contains '..', which is not allowed")


def _walk_matching(search_root: Path, pattern: str):
    """Yield non-hidden files under search_root whose relative path matches pattern."""
    for dirpath, dirs, files in os.walk(search_root):
        dirs[:] = sorted(d for d in dirs if not d.startswith("."))
        for filename in sorted(files):
            if filename.startswith("."):
                continue
            filepath = Path(dirpath) / filename
            if PurePath(filepath.relative_to(search_root)).full_match(pattern):
                yield filepath


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Maps tool names to validation, confirmation and execution.

    execute() never raises for tool-local problems: they come back as a
    ToolOutcome carrying an error. Only TurnCancelled escapes, so the engine
    can end the turn.
    """

    def __init__(
        self,
        root: str | Path,
        gate: ConfirmationGate,
        token: CancellationToken | None = None,
    ):
        self.root = Path(root).resolve()
        self.gate = gate
        self.token = token
        self._tools: dict[str, Tool] = {}
        for tool in self._builtin_tools():
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def schemas(self) -> list[dict]:
        return [tool.schema() for tool in self._tools.values()]

    def execute(self, call: ToolCall, token: CancellationToken | None = None) -> ToolOutcome:
        token = token if token is not None else self.token
        tool = self._tools.get(call.name)
        if tool is None:
            return ToolOutcome(
                call.id,
                call.name,
                error=f"Unknown tool: {call.name}. Available tools: {', '.join(self._tools)}",
            )

        try:
            params = tool.input_model.model_validate(call.parsed_arguments())
        except InvalidToolInput as e:
            return ToolOutcome(call.id, call.name, error=str(e))
        except ValidationError as e:
            return ToolOutcome(
                call.id, call.name, error=f"Invalid arguments for {call.name}: {_format_validation(e)}"
            )

        if token is not None:
            token.raise_if_cancelled()
        try:
            if tool.needs_confirmation:
                self._confirm(tool, params, token)
            result = tool.execute(params, token)
        except TurnCancelled:
            raise
        except ToolFailure as e:
            return ToolOutcome(call.id, call.name, error=str(e))
        except Exception as e:
            logger.warning("tool %s raised unexpectedly", call.name, exc_info=True)
            return ToolOutcome(call.id, call.name, error=f"{type(e).__name__}: {e}")

        if isinstance(result, ToolOutput):
            return ToolOutcome(call.id, call.name, data=result.data, display=result.display)
        return ToolOutcome(call.id, call.name, data=result)

    # -- confirmation ---------------------------------------------------------

    def _confirm(self, tool: Tool, params: BaseModel, token) -> None:
        if tool.describe is not None:
            request = tool.describe(params)
        else:
            request = Confirmation(f"Run {tool.name}")
        approved = self.gate.request(tool.name, request.description, request.diff, token)
        if token is not None:
            token.raise_if_cancelled()
        if not approved:
            raise UserDenied(f"User denied {tool.name}: {request.description}")

    def _display_path(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.root))
        except ValueError:
            return str(path)

    # -- read-only tools ------------------------------------------------------

    def _read(self, params: ReadInput, token):
        candidate = Path(os.path.expanduser(params.path))
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()

        if is_read_denied(resolved):
            raise PolicyViolation(
                f"Access denied: {params.path} is in the restricted path list."
            )
        if not resolved.exists():
            raise ToolFailure(f"File not found: {params.path}")
        if not resolved.is_file():
            raise ToolFailure(f"Not a file: {params.path}")
        if _is_binary(resolved):
            raise ToolFailure(f"binary file detected: {params.path}")
        try:
            with resolved.open(encoding="utf-8", newline="") as f:
                content = f.read()
        except UnicodeDecodeError as e:
            raise ToolFailure(f"failed to decode {params.path} as UTF-8: {e}") from e

        lines = content.split("\n")
        line_count = len(lines)
        result = {}
        if params.offset is not None or params.limit is not None:
            start = (params.offset or 1) - 1
            end = start + params.limit if params.limit is not None else line_count
            result["content"] = "\n".join(lines[start:end])
        else:
            result["content"] = content
            if line_count > LARGE_FILE_WARN_LINES:
                result["warning"] = (
                    f"Large file: {line_count} lines. Consider reading a specific "
                    "line range if you only need part of it."
                )
        result["lineCount"] = line_count
        return result

    def _search_root(self, path: str | None) -> Path:
        root = safe_resolve(path or ".", self.root)
        if not root.exists():
            raise ToolFailure(f"path does not exist: {path}")
        if not root.is_dir():
            raise ToolFailure(f"path is not a directory: {path}")
        return root

    def _glob(self, params: GlobInput, token):
        _check_pattern(params.pattern)
        search_root = self._search_root(params.path)
        files = sorted(
            self._display_path(p) for p in _walk_matching(search_root, params.pattern)
        )
        total = len(files)
        return {
            "files": files[:MAX_LIST_RESULTS],
            "count": total,
            "truncated": total > MAX_LIST_RESULTS,
        }

    def _grep(self, params: GrepInput, token):
        _check_pattern(params.file_glob)
        try:
            regex = re.compile(params.pattern)
        except re.error as e:
            raise InvalidToolInput(f"Invalid regex pattern: {params.pattern} ({e})")
        search_root = self._search_root(params.path)

        matches = []
        total = 0
        for filepath in _walk_matching(search_root, params.file_glob):
            try:
                if _is_binary(filepath):
                    continue
                text = filepath.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            rel = self._display_path(filepath)
            for line_no, line in enumerate(text.split("\n"), start=1):
                if not regex.search(line):
                    continue
                total += 1
                if len(matches) < MAX_GREP_MATCHES:
                    matches.append(
                        {"file": rel, "line": line_no, "content": line.strip()[:MAX_LINE_LENGTH]}
                    )
        return {
            "matches": matches,
            "count": total,
            "truncated": total > MAX_GREP_MATCHES,
        }

    # -- mutating tools -------------------------------------------------------

    def _describe_edit(self, params: EditInput) -> Confirmation:
        target = safe_resolve(params.path, self.root)
        diff = edit_engine.compute_edit_diff(target, params.old_string, params.new_string)
        return Confirmation(f"Edit {self._display_path(target)}", diff.as_dict())

    def _edit(self, params: EditInput, token):
        target = safe_resolve(params.path, self.root)
        message = edit_engine.apply_edit(target, params.old_string, params.new_string)
        return {"message": message.replace(str(target), self._display_path(target))}

    def _describe_write(self, params: WriteInput) -> Confirmation:
        target = safe_resolve(params.path, self.root)
        display = self._display_path(target)
        diff = edit_engine.compute_write_diff(target, params.content)
        if diff.old_content is None:
            description = f"Create {display} ({diff.added} lines)"
        else:
            description = f"Overwrite {display} (+{diff.added} / -{diff.removed} lines)"
        return Confirmation(description, diff.as_dict())

    def _write(self, params: WriteInput, token):
        target = safe_resolve(params.path, self.root)
        diff = edit_engine.compute_write_diff(target, params.content)
        edit_engine.write_file(target, params.content)
        return {
            "message": f"Wrote {self._display_path(target)}",
            "linesAdded": diff.added,
            "linesRemoved": diff.removed,
        }

    def _describe_bash(self, params: BashInput) -> Confirmation:
        # A blocked command is never offered for approval.
        sandbox.check_command(params.command, self.root)
        return Confirmation(params.command)

    def _bash(self, params: BashInput, token):
        result = sandbox.run_bash(params.command, self.root, token=token)
        if token is not None:
            token.raise_if_cancelled()
        display = result.stdout
        if result.stderr:
            display = f"{display}\n{result.stderr}" if display else result.stderr
        return ToolOutput(
            data={
                "stdout": sandbox.truncate_output(result.stdout),
                "stderr": sandbox.truncate_output(result.stderr),
                "exitCode": result.exit_code,
            },
            display=display,
        )

    # -- network tools --------------------------------------------------------

    def _web_search(self, params: WebSearchInput, token):
        return run_abandonable(fetch.search_web, token, params.query, params.limit)

    def _web_fetch(self, params: WebFetchInput, token):
        return run_abandonable(fetch.fetch_page, token, params.url)

    def _builtin_tools(self) -> list[Tool]:
        return [
            Tool(
                "read",
                "Read a text file. Returns its content and line count. "
                "Use offset/limit to read a range of lines from a large file.",
                ReadInput,
                False,
                self._read,
            ),
            Tool(
                "glob",
                "Find files by glob pattern. Returns paths relative to the project root, "
                "sorted, skipping hidden files and directories.",
                GlobInput,
                False,
                self._glob,
            ),
            Tool(
                "grep",
                "Search the contents of files matching fileGlob for a regular expression. "
                "Returns file, line number and the matching line.",
                GrepInput,
                False,
                self._grep,
            ),
            Tool(
                "edit",
                "Replace one exact occurrence of old_string with new_string in a file. "
                "old_string must match exactly once; include surrounding lines to disambiguate. "
                "Requires user approval.",
                EditInput,
                True,
                self._edit,
                self._describe_edit,
            ),
            Tool(
                "write",
                "Create a file or overwrite it with the given content. "
                "Parent directories are created. Requires user approval.",
                WriteInput,
                True,
                self._write,
                self._describe_write,
            ),
            Tool(
                "bash",
                "Run a shell command in the project root (30s timeout). "
                "Returns stdout, stderr and exitCode. Requires user approval.",
                BashInput,
                True,
                self._bash,
                self._describe_bash,
            ),
            Tool(
                "webSearch",
                "Search the web. Returns titles, URLs and descriptions.",
                WebSearchInput,
                False,
                self._web_search,
            ),
            Tool(
                "webFetch",
                "Fetch a web page and return its main content as markdown.",
                WebFetchInput,
                False,
                self._web_fetch,
            ),
        ]


def _format_validation(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)
