"""Command-line entry point: one-shot questions and the interactive REPL."""

import argparse
import queue
import sys
import threading
import time
from importlib import metadata
from pathlib import Path

from . import fmt
from .cancel import CancellationToken
from .config import (
    _UNSET,
    apply_config_to_args,
    generate_config,
    load_config,
    resolve_api_key,
)
from .engine import TurnObserver, TurnOutcome, TurnResult
from .errors import AgentError, ConfigError, InvalidToolInput, SessionLookupError
from .gate import ConfirmationGate, PendingConfirmation
from .provider import PROVIDERS, LiteLLMProvider, discover_model
from .session import AgentSession
from .sessions import SessionStore

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_LIMIT = 2
EXIT_CANCELLED = 130

PREVIEW_LINES = 10

_DONE = object()  # end-of-turn marker on the confirmation queue


def _version() -> str:
    try:
        return metadata.version("quill")
    except metadata.PackageNotFoundError:
        return "unknown"


# ---------------------------------------------------------------------------
# Turn progress rendering
# ---------------------------------------------------------------------------


class CliObserver(TurnObserver):
    """Renders turn progress on stderr.

    With `stream` the model text is printed as it arrives (REPL). Without
    it, text from steps that go on to call tools is logged as assistant
    text, and the final answer is left for the caller to print on stdout.
    """

    def __init__(self, *, stream: bool, step_budget: int):
        self.stream = stream
        self.step_budget = step_budget
        self._held_text = ""
        self._started: dict[str, float] = {}

    def on_step_start(self, step: int) -> None:
        self._held_text = ""
        if step > 1:
            fmt.info(f"step {step}/{self.step_budget}")

    def on_text(self, chunk: str) -> None:
        if self.stream:
            fmt.stream_text(chunk)

    def on_step_text(self, text: str) -> None:
        if self.stream:
            fmt.stream_end()
        else:
            self._held_text = text

    def on_tool_call(self, call) -> None:
        if self._held_text:
            fmt.assistant_text(self._held_text)
            self._held_text = ""
        try:
            args = call.parsed_arguments()
        except InvalidToolInput:
            args = {}
        self._started[call.id] = time.monotonic()
        fmt.tool_call(call.name, fmt.describe_call(call.name, args))

    def on_tool_result(self, outcome) -> None:
        elapsed = time.monotonic() - self._started.pop(outcome.call_id, time.monotonic())
        if outcome.ok:
            fmt.tool_result(outcome.name, elapsed, _preview(outcome))
        else:
            fmt.tool_error(outcome.name, outcome.error)

    def on_retry(self, attempt: int, delay_ms: int, exc: BaseException) -> None:
        fmt.retry_notice(attempt, delay_ms, str(exc))

    def on_limit_reached(self, budget: int) -> None:
        fmt.limit_reached(budget)


def _preview(outcome) -> str:
    if outcome.display:
        lines = outcome.display.rstrip("\n").splitlines()
        if len(lines) > PREVIEW_LINES:
            lines = lines[:PREVIEW_LINES] + [f"... ({len(lines) - PREVIEW_LINES} more lines)"]
        return "\n".join(lines)
    data = outcome.data
    if isinstance(data, dict):
        if "message" in data:
            return str(data["message"])
        if "lineCount" in data:
            return f"{data['lineCount']} lines"
        if "count" in data:
            return f"{data['count']} results"
        if "results" in data:
            return f"{len(data['results'])} results"
        if "title" in data:
            return data["title"] or data.get("url", "")
    return ""


def describe_failure(result: TurnResult, provider: str) -> str:
    msg = result.error_message or "unknown error"
    if result.error_kind == "auth":
        hint = "--api-key"
        env = {"openrouter": "OPENROUTER_API_KEY", "huggingface": "HF_TOKEN"}.get(provider)
        if env:
            hint = f"{env} or pass --api-key"
        return f"Invalid API key. Set {hint}. ({msg})"
    if result.error_kind == "network":
        return f"Network error: {msg}\n(Check your connection and try again.)"
    if result.error_kind == "rate_limit":
        return f"Rate limited by the provider after retries: {msg}"
    return msg


def exit_code_for(result: TurnResult) -> int:
    return {
        TurnOutcome.COMPLETED: EXIT_OK,
        TurnOutcome.LIMIT_REACHED: EXIT_LIMIT,
        TurnOutcome.CANCELLED: EXIT_CANCELLED,
        TurnOutcome.FAILED: EXIT_ERROR,
    }[result.outcome]


# ---------------------------------------------------------------------------
# Running a turn from the terminal
# ---------------------------------------------------------------------------


def _stdin_yes_no(prompt: str) -> bool:
    if not sys.stdin.isatty():
        fmt.warning("no terminal to confirm on, denying (use --yes in unattended runs)")
        return False
    sys.stderr.write(prompt)
    sys.stderr.flush()
    answer = sys.stdin.readline()
    if not answer:
        raise EOFError
    return answer.strip().lower() in ("y", "yes")


class TerminalTurnRunner:
    """Runs each turn on a worker thread while the main thread owns the terminal.

    The gate's confirmation requests are queued here and answered on the
    main thread. Ctrl-C there cancels the turn's token, which also denies
    any outstanding confirmation.

    `ask(prompt) -> bool` answers a request; the REPL swaps in its
    prompt_toolkit session once that exists.
    """

    def __init__(self, ask=_stdin_yes_no):
        self.ask = ask
        self._requests: queue.Queue = queue.Queue()

    def enqueue(self, pending: PendingConfirmation) -> None:
        self._requests.put(pending)

    def run(self, session: AgentSession, text: str, observer: TurnObserver) -> TurnResult:
        token = CancellationToken()
        box: dict = {}

        def worker():
            try:
                box["result"] = session.submit(text, token, observer)
            except BaseException as e:
                box["error"] = e
            finally:
                self._requests.put(_DONE)

        thread = threading.Thread(target=worker, name="quill-turn", daemon=True)
        thread.start()
        while True:
            try:
                item = self._requests.get(timeout=0.1)
            except queue.Empty:
                continue
            except KeyboardInterrupt:
                self._cancel(token)
                continue
            if item is _DONE:
                break
            self._answer(item, token)
        thread.join()

        if "error" in box:
            raise box["error"]
        return box["result"]

    def _answer(self, pending: PendingConfirmation, token: CancellationToken) -> None:
        if pending.resolved:
            return
        fmt.confirm_request(pending.tool_name, pending.description, pending.diff)
        try:
            approved = self.ask("  Apply? [y/N] ")
        except (KeyboardInterrupt, EOFError):
            self._cancel(token)
            approved = False
        pending.resolve(approved)

    def _cancel(self, token: CancellationToken) -> None:
        if not token.cancelled:
            fmt.warning("interrupted, cancelling turn...")
        token.cancel()


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------

HELP_TEXT = (
    "Available commands:\n"
    "  /help              Show this help message\n"
    "  /clear             Start a new conversation and reload AGENTS.md\n"
    "  /compact           Replace the history with a summary\n"
    "  /sessions          List saved sessions for this directory\n"
    "  /resume <prefix>   Resume a saved session by id prefix\n"
    "  /delete <prefix>   Delete a saved session by id prefix\n"
    "  /model [name]      Show or switch the model\n"
    "  /tokens            Show token usage\n"
    "  /exit, /quit       Exit the REPL"
)


def _repl_compact(session: AgentSession) -> None:
    fmt.info("compacting conversation...")
    try:
        result = session.compact()
    except Exception as e:
        fmt.error(f"compact failed: {e}")
        return
    if result is None:
        fmt.info("nothing to compact")
        return
    fmt.info(f"compacted: ~{result.tokens_before} -> ~{result.tokens_after} tokens")


def _repl_resume(session: AgentSession, arg: str) -> None:
    if not arg:
        fmt.warning("/resume requires a session id prefix (see /sessions)")
        return
    try:
        session_id = session.resume(arg)
    except SessionLookupError as e:
        fmt.warning(str(e))
        return
    fmt.info(f"resumed session {session_id[:8]} ({len(session.messages)} messages)")
    for msg in session.messages:
        if msg.get("role") == "user":
            fmt.info(f"> {msg.get('content') or ''}")
        elif msg.get("role") == "assistant" and msg.get("content"):
            fmt.assistant_text(msg["content"])


def _repl_delete(session: AgentSession, arg: str) -> None:
    if not arg:
        fmt.warning("/delete requires a session id prefix (see /sessions)")
        return
    try:
        session_id = session.delete_session(arg)
    except SessionLookupError as e:
        fmt.warning(str(e))
        return
    fmt.info(f"deleted session {session_id[:8]}")


def _repl_model(session: AgentSession, arg: str) -> None:
    if not arg:
        fmt.info(f"model: {session.model}")
        return
    session.set_model(arg)
    fmt.info(f"model: {arg}")


def _repl_tokens(session: AgentSession) -> None:
    usage = session.usage
    fmt.info(
        f"session usage: {usage.total_tokens} tokens "
        f"({usage.prompt_tokens} prompt, {usage.completion_tokens} completion)"
    )
    fmt.context_stats("current context", session.context_tokens())


def handle_command(session: AgentSession, line: str) -> str | None:
    """Run a slash command.

    Returns "exit" to leave the REPL, "handled" when the line was a
    command, or None when the line should be sent to the model.
    """
    if not line.startswith("/"):
        return None
    parts = line.split(None, 1)
    cmd = parts[0].lower()
    arg = parts[1].strip() if len(parts) > 1 else ""

    if cmd in ("/exit", "/quit"):
        return "exit"
    if cmd == "/help":
        fmt.info(HELP_TEXT)
    elif cmd == "/clear":
        for warning in session.clear():
            fmt.warning(warning)
        fmt.info("conversation cleared, context reloaded")
    elif cmd == "/compact":
        _repl_compact(session)
    elif cmd == "/sessions":
        fmt.session_table(session.list_sessions(), session.session_id)
    elif cmd == "/resume":
        _repl_resume(session, arg)
    elif cmd == "/delete":
        _repl_delete(session, arg)
    elif cmd == "/model":
        _repl_model(session, arg)
    elif cmd == "/tokens":
        _repl_tokens(session)
    else:
        fmt.warning(f"unknown command {cmd}, type /help for the list")
    return "handled"


def report_turn(result: TurnResult, provider: str) -> None:
    if result.outcome is TurnOutcome.CANCELLED:
        fmt.warning("turn cancelled")
    elif result.outcome is TurnOutcome.FAILED:
        fmt.error(describe_failure(result, provider))


def repl_loop(session: AgentSession, runner: TerminalTurnRunner, provider_name: str) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = session.store.root / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "quill> ")])

    def ask(prompt: str) -> bool:
        return prompt_session.prompt(prompt).strip().lower() in ("y", "yes")

    runner.ask = ask
    fmt.repl_banner(_version(), session.model, session.session_id)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue
        action = handle_command(session, line)
        if action == "exit":
            break
        if action == "handled":
            continue

        observer = CliObserver(stream=True, step_budget=session.max_steps)
        result = runner.run(session, line, observer)
        report_turn(result, provider_name)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser.

    Options that can also come from a config file default to _UNSET so
    apply_config_to_args can tell "not given" from "given as the default".
    """
    parser = argparse.ArgumentParser(
        prog="quill",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options]",
        description="A terminal coding agent with confirmed edits, a sandboxed shell and saved sessions.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider: lmstudio (local), openrouter, huggingface, or generic (litellm model string).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (LM Studio: auto-discovered when omitted).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "--max-steps",
        type=int,
        default=_UNSET,
        help="Maximum tool steps per turn (default: 20).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per step (default: provider default).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Project directory the tools work in (default: current directory).",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Approve every edit, write and command without asking. Refused on an interactive terminal.",
    )
    parser.add_argument(
        "--resume",
        metavar="PREFIX",
        default=None,
        help="Resume a saved session by id prefix.",
    )
    parser.add_argument(
        "--list-sessions",
        action="store_true",
        help="List saved sessions for the project directory and exit.",
    )
    parser.add_argument(
        "--no-instructions",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Don't load AGENTS.md files.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Suppress diagnostics; only print the final result.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (quill.toml) template.",
    )
    return parser


def build_provider(args) -> tuple[LiteLLMProvider, str]:
    """Return (provider, model) for the parsed arguments."""
    model = args.model
    if args.provider == "lmstudio":
        if not model:
            model = discover_model(args.base_url)
            if not model:
                raise ConfigError(
                    "no model is loaded in LM Studio; load one or pass --model"
                )
            fmt.info(f"using loaded model: {model}")
        return LiteLLMProvider("lmstudio", model, args.base_url), model

    if not model:
        raise ConfigError(f"--model is required when --provider is {args.provider}")
    api_key = resolve_api_key(args.provider, args.api_key)
    if not api_key and args.provider in ("openrouter", "huggingface"):
        env = "OPENROUTER_API_KEY" if args.provider == "openrouter" else "HF_TOKEN"
        raise ConfigError(
            f"--api-key or {env} env var required for {args.provider} provider"
        )
    return LiteLLMProvider(args.provider, model, args.base_url, api_key), model


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        print(_version())
        sys.exit(EXIT_OK)
    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(EXIT_OK)
    if args.project:
        parser.error("--project only makes sense with --init-config")

    try:
        sys.exit(_run_main(args, parser))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(EXIT_ERROR)


def _run_main(args, parser) -> int:
    apply_config_to_args(args, load_config(args.base_dir))
    fmt.init(color=args.color, no_color=args.no_color, quiet=args.quiet)

    store = SessionStore()
    if args.list_sessions:
        fmt.session_table(store.list(Path(args.base_dir).resolve()))
        return EXIT_OK

    if not args.repl and args.question is None and args.resume is None:
        parser.error("question is required (or use --repl)")
    if args.max_steps < 1:
        parser.error("--max-steps must be at least 1")

    runner = TerminalTurnRunner()
    gate = ConfirmationGate(runner.enqueue, skip_confirm=args.yes)
    provider, model = build_provider(args)
    session = AgentSession(
        provider=provider,
        model=model,
        gate=gate,
        base_dir=args.base_dir,
        store=store,
        max_steps=args.max_steps,
        max_output_tokens=args.max_output_tokens,
        temperature=args.temperature,
        no_instructions=args.no_instructions,
    )
    for warning in session.warnings:
        fmt.warning(warning)

    if args.resume:
        session_id = session.resume(args.resume)
        fmt.info(f"resumed session {session_id[:8]} ({len(session.messages)} messages)")

    if args.repl:
        if args.question:
            result = runner.run(
                session, args.question, CliObserver(stream=True, step_budget=args.max_steps)
            )
            report_turn(result, args.provider)
        repl_loop(session, runner, args.provider)
        return EXIT_OK

    if args.question is None:
        parser.error("question is required (or use --repl)")

    observer = CliObserver(stream=False, step_budget=args.max_steps)
    result = runner.run(session, args.question, observer)
    if result.outcome in (TurnOutcome.COMPLETED, TurnOutcome.LIMIT_REACHED) and result.text:
        print(result.text)
    fmt.turn_summary(result.steps, result.usage.total_tokens, result.outcome.value)
    report_turn(result, args.provider)
    return exit_code_for(result)
