"""Tests for the CLI entry point and REPL helpers."""

import sys
from io import StringIO
from types import SimpleNamespace

import pytest
from rich.console import Console

from quill import agent, fmt
from quill.agent import (
    EXIT_CANCELLED,
    EXIT_ERROR,
    EXIT_LIMIT,
    EXIT_OK,
    CliObserver,
    TerminalTurnRunner,
    build_parser,
    build_provider,
    describe_failure,
    exit_code_for,
    handle_command,
)
from quill.config import _UNSET, apply_config_to_args
from quill.engine import TurnOutcome, TurnResult
from quill.errors import ConfigError
from quill.gate import ConfirmationGate
from quill.provider import Finish, StepFinish, TextDelta, ToolCallDelta, ToolCallEnd, ToolCallStart, Usage
from quill.session import AgentSession
from quill.sessions import SessionStore
from quill.tools import ToolCall, ToolOutcome


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeProvider:
    def __init__(self, *steps):
        self.steps = list(steps)

    def stream(self, request):
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        return iter(step)


def _text(text):
    return [TextDelta(text), StepFinish(Usage(3, 2, 5)), Finish("stop")]


def _write_call(path="out.txt", content="data"):
    args = f'{{"path": "{path}", "content": "{content}"}}'
    return [
        ToolCallStart("w1", "write"),
        ToolCallDelta("w1", args),
        ToolCallEnd("w1"),
        StepFinish(Usage(3, 2, 5)),
        Finish("tool_calls"),
    ]


@pytest.fixture
def captured(monkeypatch):
    """Route fmt output into a buffer for the duration of the test."""
    buf = StringIO()
    monkeypatch.setattr(fmt, "_console", Console(file=buf, no_color=True, width=100))
    monkeypatch.setattr(fmt, "_quiet", False)
    return buf


@pytest.fixture
def project(tmp_path):
    p = tmp_path / "proj"
    p.mkdir()
    return p


def _session(tmp_path, project, provider, runner=None):
    runner = runner or TerminalTurnRunner(ask=lambda prompt: True)
    gate = ConfirmationGate(runner.enqueue, interactive=True)
    session = AgentSession(
        provider=provider,
        model="m",
        gate=gate,
        base_dir=str(project),
        store=SessionStore(tmp_path / "store"),
        home=tmp_path / "home",
    )
    return session, runner


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestParser:
    def test_question(self):
        args = build_parser().parse_args(["what does main do?"])
        assert args.question == "what does main do?"
        assert args.repl is False

    def test_config_backed_options_default_unset(self):
        args = build_parser().parse_args([])
        for dest in ("provider", "model", "max_steps", "quiet", "color", "no_color"):
            assert getattr(args, dest) is _UNSET

    def test_defaults_after_config(self):
        args = build_parser().parse_args(["--repl"])
        apply_config_to_args(args, {})
        assert args.provider == "lmstudio"
        assert args.max_steps == 20

    def test_provider_choices(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--provider", "nope", "q"])

    def test_color_flags_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--color", "--no-color", "q"])

    def test_full_flag_set(self):
        args = build_parser().parse_args(
            [
                "--provider", "openrouter", "--model", "x/y", "--api-key", "k",
                "--max-steps", "5", "--max-output-tokens", "100", "--temperature", "0.2",
                "--base-dir", "/tmp", "--yes", "--resume", "abc", "--no-instructions", "-q",
                "task",
            ]
        )
        assert args.provider == "openrouter"
        assert args.max_steps == 5
        assert args.temperature == 0.2
        assert args.yes is True
        assert args.resume == "abc"
        assert args.no_instructions is True
        assert args.quiet is True


class TestBuildProvider:
    def _args(self, **kw):
        base = dict(provider="lmstudio", model=None, base_url=None, api_key=None)
        base.update(kw)
        return SimpleNamespace(**base)

    def test_lmstudio_discovers_model(self, monkeypatch, captured):
        monkeypatch.setattr(agent, "discover_model", lambda base_url: "qwen3")
        provider, model = build_provider(self._args())
        assert model == "qwen3"
        assert provider.route()[0] == "openai/qwen3"

    def test_lmstudio_nothing_loaded(self, monkeypatch):
        monkeypatch.setattr(agent, "discover_model", lambda base_url: None)
        with pytest.raises(ConfigError, match="no model is loaded"):
            build_provider(self._args())

    def test_openrouter_requires_model(self):
        with pytest.raises(ConfigError, match="--model is required"):
            build_provider(self._args(provider="openrouter"))

    def test_openrouter_requires_key(self, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        with pytest.raises(ConfigError, match="OPENROUTER_API_KEY"):
            build_provider(self._args(provider="openrouter", model="a/b"))

    def test_huggingface_key_from_env(self, monkeypatch):
        monkeypatch.setenv("HF_TOKEN", "hf_abc")
        provider, _ = build_provider(self._args(provider="huggingface", model="org/m"))
        assert provider.api_key == "hf_abc"

    def test_generic_key_optional(self, monkeypatch):
        monkeypatch.delenv("QUILL_API_KEY", raising=False)
        provider, model = build_provider(self._args(provider="generic", model="ollama/llama3"))
        assert model == "ollama/llama3"
        assert provider.api_key is None


# ---------------------------------------------------------------------------
# Outcome reporting
# ---------------------------------------------------------------------------


class TestOutcomes:
    @pytest.mark.parametrize(
        "outcome,code",
        [
            (TurnOutcome.COMPLETED, EXIT_OK),
            (TurnOutcome.LIMIT_REACHED, EXIT_LIMIT),
            (TurnOutcome.CANCELLED, EXIT_CANCELLED),
            (TurnOutcome.FAILED, EXIT_ERROR),
        ],
    )
    def test_exit_codes(self, outcome, code):
        assert exit_code_for(TurnResult(outcome)) == code

    def test_auth_message_names_env_var(self):
        result = TurnResult(TurnOutcome.FAILED, error_kind="auth", error_message="401")
        assert "OPENROUTER_API_KEY" in describe_failure(result, "openrouter")

    def test_network_message(self):
        result = TurnResult(TurnOutcome.FAILED, error_kind="network", error_message="refused")
        msg = describe_failure(result, "lmstudio")
        assert msg.startswith("Network error: refused")
        assert "Check your connection" in msg


class TestCliObserver:
    def test_streaming(self, captured):
        obs = CliObserver(stream=True, step_budget=20)
        obs.on_text("Hel")
        obs.on_text("lo")
        obs.on_step_text("Hello")
        assert captured.getvalue() == "Hello\n"

    def test_held_text_shown_before_tool_call(self, captured):
        obs = CliObserver(stream=False, step_budget=20)
        obs.on_step_start(1)
        obs.on_step_text("Let me look.")
        obs.on_tool_call(ToolCall("c1", "read", '{"path": "a.py"}'))
        obs.on_tool_result(ToolOutcome("c1", "read", data={"content": "x", "lineCount": 1}))
        out = captured.getvalue()
        assert out.index("Let me look.") < out.index("a.py")
        assert "1 lines" in out

    def test_final_text_not_echoed_in_one_shot(self, captured):
        obs = CliObserver(stream=False, step_budget=20)
        obs.on_step_text("final answer")
        assert "final answer" not in captured.getvalue()

    def test_tool_error(self, captured):
        obs = CliObserver(stream=False, step_budget=20)
        obs.on_tool_call(ToolCall("c1", "edit", "{bad json"))
        obs.on_tool_result(ToolOutcome("c1", "edit", error="arguments are not valid JSON"))
        assert "arguments are not valid JSON" in captured.getvalue()


# ---------------------------------------------------------------------------
# Running turns from the terminal
# ---------------------------------------------------------------------------


class TestTerminalTurnRunner:
    def test_approved_confirmation(self, tmp_path, project, captured):
        session, runner = _session(tmp_path, project, FakeProvider(_write_call(), _text("done")))
        result = runner.run(session, "write it", CliObserver(stream=False, step_budget=20))
        assert result.outcome is TurnOutcome.COMPLETED
        assert (project / "out.txt").read_text() == "data"
        assert "[ write ]" in captured.getvalue()

    def test_denied_confirmation(self, tmp_path, project, captured):
        runner = TerminalTurnRunner(ask=lambda prompt: False)
        session, _ = _session(tmp_path, project, FakeProvider(_write_call(), _text("ok")), runner)
        result = runner.run(session, "write it", CliObserver(stream=False, step_budget=20))
        assert result.outcome is TurnOutcome.COMPLETED
        assert not (project / "out.txt").exists()
        assert "User denied write" in session.messages[2]["content"]

    def test_ask_replaced_after_construction(self, tmp_path, project, captured):
        runner = TerminalTurnRunner(ask=lambda prompt: True)
        session, _ = _session(tmp_path, project, FakeProvider(_write_call(), _text("ok")), runner)
        prompts = []

        def deny(prompt):
            prompts.append(prompt)
            return False

        runner.ask = deny
        runner.run(session, "write it", CliObserver(stream=False, step_budget=20))
        assert prompts == ["  Apply? [y/N] "]
        assert not (project / "out.txt").exists()

    def test_interrupt_at_prompt_cancels(self, tmp_path, project, captured):
        def interrupt(prompt):
            raise KeyboardInterrupt

        runner = TerminalTurnRunner(ask=interrupt)
        session, _ = _session(tmp_path, project, FakeProvider(_write_call(), _text("ok")), runner)
        result = runner.run(session, "write it", CliObserver(stream=False, step_budget=20))
        assert result.outcome is TurnOutcome.CANCELLED
        assert not (project / "out.txt").exists()
        assert session.messages == []


# ---------------------------------------------------------------------------
# Slash commands
# ---------------------------------------------------------------------------


class TestSlashCommands:
    @pytest.fixture
    def session(self, tmp_path, project):
        session, _ = _session(tmp_path, project, FakeProvider(_text("answer"), _text("summary")))
        return session

    def test_plain_text_not_a_command(self, session):
        assert handle_command(session, "hello") is None

    @pytest.mark.parametrize("cmd", ["/exit", "/quit", "/EXIT"])
    def test_exit(self, session, cmd):
        assert handle_command(session, cmd) == "exit"

    def test_help(self, session, captured):
        assert handle_command(session, "/help") == "handled"
        assert "/compact" in captured.getvalue()

    def test_unknown(self, session, captured):
        assert handle_command(session, "/frobnicate") == "handled"
        assert "unknown command /frobnicate" in captured.getvalue()

    def test_clear(self, session, captured):
        session.submit("hi")
        old = session.session_id
        handle_command(session, "/clear")
        assert session.messages == []
        assert session.session_id != old

    def test_model(self, session, captured):
        handle_command(session, "/model other")
        assert session.model == "other"
        handle_command(session, "/model")
        assert "model: other" in captured.getvalue()

    def test_sessions_and_resume(self, session, captured):
        session.submit("first question")
        sid = session.session_id
        session.clear()
        handle_command(session, "/sessions")
        assert sid[:8] in captured.getvalue()
        handle_command(session, f"/resume {sid[:8]}")
        assert session.session_id == sid
        assert "first question" in captured.getvalue()

    def test_resume_requires_prefix(self, session, captured):
        handle_command(session, "/resume")
        assert "requires a session id prefix" in captured.getvalue()

    def test_resume_unknown(self, session, captured):
        handle_command(session, "/resume ffff")
        assert "no session matches" in captured.getvalue()

    def test_delete(self, session, captured):
        session.submit("q")
        sid = session.session_id
        handle_command(session, f"/delete {sid[:8]}")
        assert session.list_sessions() == []
        assert f"deleted session {sid[:8]}" in captured.getvalue()

    def test_compact(self, session, captured):
        session.submit("q")
        handle_command(session, "/compact")
        assert len(session.messages) == 1
        assert "compacted" in captured.getvalue()

    def test_compact_empty(self, session, captured):
        handle_command(session, "/compact")
        assert "nothing to compact" in captured.getvalue()

    def test_tokens(self, session, captured):
        session.submit("q")
        handle_command(session, "/tokens")
        out = captured.getvalue()
        assert "session usage: 5 tokens" in out
        assert "current context" in out


# ---------------------------------------------------------------------------
# main()
# ---------------------------------------------------------------------------


class TestMain:
    @pytest.fixture(autouse=True)
    def _env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        monkeypatch.setattr(fmt, "_console", fmt._console)
        monkeypatch.setattr(fmt, "_quiet", fmt._quiet)

    def _main(self, monkeypatch, *argv):
        monkeypatch.setattr(sys, "argv", ["quill", *argv])
        with pytest.raises(SystemExit) as exc:
            agent.main()
        return exc.value.code

    def test_version(self, monkeypatch, capsys):
        assert self._main(monkeypatch, "--version") == 0
        assert capsys.readouterr().out.strip()

    def test_init_config(self, monkeypatch, capsys):
        assert self._main(monkeypatch, "--init-config", "--project") == 0
        assert "Project config" in capsys.readouterr().out

    def test_one_shot_prints_answer(self, monkeypatch, capsys, project):
        monkeypatch.setattr(agent, "build_provider", lambda args: (FakeProvider(_text("42")), "m"))
        code = self._main(monkeypatch, "--base-dir", str(project), "--yes", "the answer?")
        assert code == EXIT_OK
        assert capsys.readouterr().out == "42\n"

    def test_one_shot_limit_exit_code(self, monkeypatch, capsys, project):
        monkeypatch.setattr(
            agent, "build_provider", lambda args: (FakeProvider(_write_call()), "m")
        )
        code = self._main(
            monkeypatch, "--base-dir", str(project), "--yes", "--max-steps", "1", "go"
        )
        assert code == EXIT_LIMIT

    def test_config_error_exits_1(self, monkeypatch, capsys, project):
        code = self._main(
            monkeypatch, "--base-dir", str(project), "--provider", "openrouter", "q"
        )
        assert code == EXIT_ERROR
        assert "--model is required" in capsys.readouterr().err

    def test_list_sessions(self, monkeypatch, capsys, project):
        code = self._main(monkeypatch, "--base-dir", str(project), "--list-sessions")
        assert code == EXIT_OK
        assert "No saved sessions" in capsys.readouterr().err
