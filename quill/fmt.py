"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

DIFF_PREVIEW_LINES = 8

_console = Console(stderr=True)
_quiet = False


def init(*, color: bool = False, no_color: bool = False, quiet: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console, _quiet
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)
    _quiet = quiet


def console() -> Console:
    return _console


# -- Turn structure ----------------------------------------------------------


def step_header(n: int, max_n: int, token_est: int) -> None:
    if _quiet:
        return
    title = f"Step {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_spinner(label: str = "Waiting for model"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def turn_summary(steps: int, total_tokens: int, outcome: str) -> None:
    if _quiet:
        return
    if outcome == "completed":
        _console.print(
            Text(f"  \u2713 Done: {steps} steps, {total_tokens} tokens", style="bold green")
        )
    else:
        _console.print(
            Text(
                f"  Turn ended: {steps} steps, {total_tokens} tokens, outcome={outcome}",
                style="bold red",
            )
        )


def retry_notice(attempt: int, delay_ms: int, msg: str) -> None:
    line = Text()
    line.append(f"  \u21bb Retry {attempt}", style="yellow")
    line.append(f" in {delay_ms / 1000:.1f}s: ", style="yellow")
    line.append(msg.splitlines()[0] if msg else "", style="dim")
    _console.print(line)


def limit_reached(budget: int) -> None:
    line = Text()
    line.append("  \u26a0 Hard limit reached: ", style="bold yellow")
    line.append(f"{budget} tool steps in one turn. Stopping.", style="yellow")
    _console.print(line)


# -- Tool calls --------------------------------------------------------------


def describe_call(name: str, args: dict) -> str:
    """One-line summary of a tool call for the log."""
    if name == "grep":
        return f"{args.get('pattern', '')} in {args.get('fileGlob', '')}"
    key = {
        "read": "path",
        "edit": "path",
        "write": "path",
        "glob": "pattern",
        "bash": "command",
        "webSearch": "query",
        "webFetch": "url",
    }.get(name)
    if key is not None and key in args:
        return str(args[key])
    return ", ".join(f"{k}={v!r}" for k, v in args.items())


def tool_call(name: str, summary: str) -> None:
    if _quiet:
        return
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(name, style="bold magenta")
    if summary:
        header.append(f"  {summary}", style="dim")
    _console.print(header)


def tool_result(name: str, elapsed: float, preview: str) -> None:
    if _quiet:
        return
    header = Text()
    header.append(f"  \u2713 {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        for line in preview.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def confirm_request(tool_name: str, description: str, diff: dict | None = None) -> None:
    """Show what a mutating tool is about to do, with a short diff preview."""
    header = Text()
    header.append(f"  \u25c6 [ {tool_name} ] ", style="bold yellow")
    header.append(description, style="yellow")
    _console.print(header)
    if not diff:
        return
    for key, sign, style in (("removed", "-", "red"), ("added", "+", "green")):
        lines = diff.get(key) or []
        for line in lines[:DIFF_PREVIEW_LINES]:
            _console.print(Text(f"  \u2502  {sign} {line}", style=style))
        if len(lines) > DIFF_PREVIEW_LINES:
            _console.print(
                Text(
                    f"  \u2502  ... ({len(lines) - DIFF_PREVIEW_LINES} more {key} lines)",
                    style="dim",
                )
            )


# -- Assistant text ----------------------------------------------------------


def stream_text(chunk: str) -> None:
    _console.print(chunk, end="", markup=False, highlight=False, soft_wrap=True)


def stream_end() -> None:
    _console.print()


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Sessions ----------------------------------------------------------------


def session_table(entries, current_id: str | None = None) -> None:
    if not entries:
        info("No saved sessions for this directory.")
        return
    table = Table(box=None, pad_edge=False, header_style="bold")
    table.add_column("id")
    table.add_column("modified")
    table.add_column("msgs", justify="right")
    table.add_column("branch")
    table.add_column("first prompt", overflow="ellipsis", no_wrap=True)
    for entry in entries:
        marker = "*" if entry.session_id == current_id else " "
        table.add_row(
            f"{marker}{entry.session_id[:8]}",
            entry.modified[:19].replace("T", " "),
            str(entry.message_count),
            escape(entry.git_branch),
            escape(entry.first_prompt.splitlines()[0] if entry.first_prompt else ""),
        )
    _console.print(table)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    if _quiet:
        return
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner(version: str, model: str, session_id: str) -> None:
    _console.print(
        Text(f"quill {version}  model:{model}  session:{session_id[:8]}", style="bold cyan")
    )
    _console.print(Text("Type /help for commands, /exit or Ctrl-D to quit.", style="dim"))
