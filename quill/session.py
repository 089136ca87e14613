"""AgentSession: the conversation state one CLI or REPL run works against."""

import threading
from dataclasses import dataclass
from pathlib import Path

from .cancel import CancellationToken
from .context import build_context, count_tokens, estimate_tokens
from .engine import DEFAULT_STEP_BUDGET, TurnObserver, TurnOutcome, TurnResult, run_turn
from .errors import SessionNotFound, TurnInProgress
from .gate import ConfirmationGate
from .provider import StepRequest, Usage, complete_text
from .retry import with_retry
from .sessions import SessionEntry, SessionStore
from .tools import ToolRegistry

COMPACT_PROMPT = (
    "Produce a compact context summary of this conversation for your own use in "
    "continuing the session. Write in first person as the assistant. Cover: decisions "
    "made, files modified, key facts established, and any open tasks. At most 500 "
    "words. Output only the summary text, no headings."
)
SUMMARY_PREFIX = "Summary of the conversation so far:\n\n"


@dataclass
class CompactResult:
    tokens_before: int
    tokens_after: int
    summary: str


class AgentSession:
    """Owns the message history, the session id and everything a turn needs.

    Only one turn runs at a time; submit() from a second thread while a turn
    is in flight raises TurnInProgress instead of interleaving.
    """

    def __init__(
        self,
        *,
        provider,
        model: str,
        gate: ConfirmationGate,
        base_dir: str = ".",
        store: SessionStore | None = None,
        max_steps: int = DEFAULT_STEP_BUDGET,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
        no_instructions: bool = False,
        home: str | Path | None = None,
    ):
        self.base_dir = str(Path(base_dir).resolve())
        self.provider = provider
        self.model = model
        self.gate = gate
        self.store = store or SessionStore()
        self.max_steps = max_steps
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.no_instructions = no_instructions
        self.home = home

        self.registry = ToolRegistry(self.base_dir, gate)
        self.messages: list[dict] = []
        self.usage = Usage()
        self.system_prompt = ""
        self.warnings: list[str] = []
        self._busy = threading.Lock()

        self.session_id = self.store.create(self.base_dir)
        self.reload_context()

    # -- context --------------------------------------------------------------

    def reload_context(self) -> list[str]:
        """Rebuild the system prompt from disk. Returns any warnings."""
        ctx = build_context(
            self.base_dir, home=self.home, include_instructions=not self.no_instructions
        )
        self.system_prompt = ctx.system_prompt
        self.warnings = ctx.warnings
        return ctx.warnings

    def context_tokens(self) -> int:
        return count_tokens(self.system_prompt) + estimate_tokens(
            self.messages, self.registry.schemas()
        )

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    # -- turns ----------------------------------------------------------------

    def submit(
        self,
        text: str,
        token: CancellationToken | None = None,
        observer: TurnObserver | None = None,
    ) -> TurnResult:
        if not self._busy.acquire(blocking=False):
            raise TurnInProgress("a turn is already running")
        try:
            start = len(self.messages)
            self.messages.append({"role": "user", "content": text})
            try:
                result = run_turn(
                    self.messages,
                    self.system_prompt,
                    self.registry,
                    self.provider,
                    model=self.model,
                    step_budget=self.max_steps,
                    token=token,
                    observer=observer,
                    max_output_tokens=self.max_output_tokens,
                    temperature=self.temperature,
                )
            except BaseException:
                del self.messages[start:]
                raise
            self.usage = self.usage + result.usage

            if result.outcome in (TurnOutcome.COMPLETED, TurnOutcome.LIMIT_REACHED):
                self.store.save(self.base_dir, self.session_id, self.messages)
            elif result.outcome is TurnOutcome.CANCELLED:
                # Committed steps stay; a turn that committed nothing leaves no trace.
                if len(self.messages) == start + 1:
                    self.messages.pop()
            else:
                del self.messages[start:]
            return result
        finally:
            self._busy.release()

    # -- session management ---------------------------------------------------

    def clear(self) -> list[str]:
        """Start a fresh conversation with a new id and a reloaded context."""
        self._ensure_idle()
        self.messages = []
        self.usage = Usage()
        self.session_id = self.store.create(self.base_dir)
        return self.reload_context()

    def resume(self, prefix: str) -> str:
        self._ensure_idle()
        session_id = self.store.resolve(self.base_dir, prefix)
        loaded = self.store.load(self.base_dir, session_id)
        if not loaded:
            raise SessionNotFound(f"session {session_id[:8]} is empty or missing")
        self.messages = loaded
        self.session_id = session_id
        self.usage = Usage()
        return session_id

    def list_sessions(self) -> list[SessionEntry]:
        return self.store.list(self.base_dir)

    def delete_session(self, prefix: str) -> str:
        self._ensure_idle()
        session_id = self.store.resolve(self.base_dir, prefix)
        self.store.delete(self.base_dir, session_id)
        return session_id

    def set_model(self, name: str) -> None:
        self._ensure_idle()
        self.model = name

    def compact(self, token: CancellationToken | None = None) -> CompactResult | None:
        """Replace the history with a model-written summary. None if there is nothing to compact."""
        if not self.messages:
            return None
        if not self._busy.acquire(blocking=False):
            raise TurnInProgress("a turn is already running")
        try:
            tokens_before = estimate_tokens(self.messages)
            request = StepRequest(
                model=self.model,
                system_prompt=self.system_prompt,
                messages=[*self.messages, {"role": "user", "content": COMPACT_PROMPT}],
                max_output_tokens=self.max_output_tokens,
                temperature=self.temperature,
            )
            summary = with_retry(
                lambda: complete_text(self.provider, request), token=token
            ).strip()
            self.messages = [{"role": "user", "content": SUMMARY_PREFIX + summary}]
            self.store.save(self.base_dir, self.session_id, self.messages)
            return CompactResult(tokens_before, estimate_tokens(self.messages), summary)
        finally:
            self._busy.release()

    def _ensure_idle(self) -> None:
        if self.busy:
            raise TurnInProgress("a turn is already running")
