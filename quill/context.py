"""System prompt assembly and token accounting."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import tiktoken

BASE_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
GLOBAL_INSTRUCTIONS_TOKENS = 4000
PROJECT_INSTRUCTIONS_TOKENS = 8000
PROMPT_WARN_TOKENS = 20_000
INSTRUCTIONS_FILE = "AGENTS.md"
SECTION_SEPARATOR = "\n\n---\n\n"

_encoder = tiktoken.get_encoding("cl100k_base")


@dataclass
class ContextResult:
    system_prompt: str
    warnings: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)


def count_tokens(text: str) -> int:
    return len(_encoder.encode(text))


def truncate_to_tokens(text: str, max_tokens: int) -> tuple[str, bool]:
    tokens = _encoder.encode(text)
    if len(tokens) <= max_tokens:
        return text, False
    return _encoder.decode(tokens[:max_tokens]), True


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across OpenAI-format messages using tiktoken."""
    total = 0
    for m in messages:
        content = m.get("content") or ""
        if not isinstance(content, str):
            content = json.dumps(content)
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments", "") or "")
        total += len(_encoder.encode(content))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def _load_instructions(path: Path, max_tokens: int, label: str, warnings: list) -> str | None:
    if not path.is_file():
        return None
    try:
        raw = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        warnings.append(f"could not read {label} AGENTS.md ({path}): {e}")
        return None
    text, truncated = truncate_to_tokens(raw, max_tokens)
    if truncated:
        warnings.append(
            f"{label.capitalize()} AGENTS.md truncated to ~{max_tokens // 1000}k tokens "
            f"(file is ~{count_tokens(raw) // 1000}k tokens)."
        )
    return text


def build_context(
    cwd: str | Path,
    *,
    home: str | Path | None = None,
    include_instructions: bool = True,
    now: datetime | None = None,
) -> ContextResult:
    """Assemble the system prompt: base prompt, global and project AGENTS.md, date.

    The project file is only picked up at a repository root (a directory
    with a .git entry); there is no upward search.
    """
    cwd = Path(cwd)
    home = Path(home) if home is not None else Path.home()
    result = ContextResult(system_prompt="")
    sections = [BASE_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()]

    if include_instructions:
        global_path = home / ".quill" / INSTRUCTIONS_FILE
        content = _load_instructions(
            global_path, GLOBAL_INSTRUCTIONS_TOKENS, "global", result.warnings
        )
        if content:
            sections.append("## Global User Instructions (AGENTS.md)\n\n" + content)
            result.sources.append(str(global_path))

        if (cwd / ".git").exists():
            project_path = cwd / INSTRUCTIONS_FILE
            content = _load_instructions(
                project_path, PROJECT_INSTRUCTIONS_TOKENS, "project", result.warnings
            )
            if content:
                sections.append("## Project Instructions (AGENTS.md)\n\n" + content)
                result.sources.append(str(project_path))

    now = now or datetime.now().astimezone()
    sections.append(
        f"Current date and time: {now.strftime('%Y-%m-%d %H:%M %Z').strip()}\n"
        f"Working directory: {cwd.resolve()}"
    )

    result.system_prompt = SECTION_SEPARATOR.join(sections)
    total = count_tokens(result.system_prompt)
    if total > PROMPT_WARN_TOKENS:
        result.warnings.append(
            f"System prompt exceeds the 20k token budget (~{total} tokens). "
            "Consider trimming AGENTS.md files."
        )
    return result
