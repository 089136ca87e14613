"""The agent turn engine: stream a step, run its tool calls, repeat.

One turn is a sequence of steps. Each step streams one model response; if
the response requests tools they run sequentially in emission order and the
step is committed to the history as a unit (the assistant message with its
tool calls, then one tool message per call). The loop ends when a step
requests no tools, the step budget is spent, the token is cancelled, or the
provider fails for good.
"""

import enum
import time
from dataclasses import dataclass, field
from itertools import chain

from .cancel import CancellationToken
from .errors import ProviderError, TurnCancelled
from .provider import (
    Finish,
    StepFinish,
    StepRequest,
    TextDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
    Usage,
)
from .retry import classify_error, with_retry
from .tools import ToolCall, ToolRegistry

DEFAULT_STEP_BUDGET = 20
COALESCE_INTERVAL = 0.05  # seconds


class TurnOutcome(enum.Enum):
    COMPLETED = "completed"
    LIMIT_REACHED = "limit_reached"
    CANCELLED = "cancelled"
    FAILED = "failed"


class TurnState(enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    EXECUTING_TOOL = "executing_tool"
    FINALIZING = "finalizing"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class TurnResult:
    outcome: TurnOutcome
    finish_reason: str | None = None
    usage: Usage = field(default_factory=Usage)
    steps: int = 0
    error_kind: str | None = None
    error_message: str | None = None
    text: str = ""
    error: ProviderError | None = None


class TurnObserver:
    """Receives progress notifications from run_turn. All hooks are no-ops."""

    def on_step_start(self, step: int) -> None:
        pass

    def on_text(self, chunk: str) -> None:
        pass

    def on_step_text(self, text: str) -> None:
        pass

    def on_tool_call(self, call: ToolCall) -> None:
        pass

    def on_tool_result(self, outcome) -> None:
        pass

    def on_retry(self, attempt: int, delay_ms: int, exc: BaseException) -> None:
        pass

    def on_limit_reached(self, budget: int) -> None:
        pass

    def on_state(self, state: TurnState) -> None:
        pass


class TextCoalescer:
    """Batch text deltas so the UI redraws at most once per interval.

    Whatever is pushed comes out of emit() in order and in full; flush()
    drains the remainder at the end of a step.
    """

    def __init__(self, emit, interval: float = COALESCE_INTERVAL, clock=time.monotonic):
        self._emit = emit
        self._interval = interval
        self._clock = clock
        self._buffer: list[str] = []
        self._last_emit = clock()

    def push(self, text: str) -> None:
        if not text:
            return
        self._buffer.append(text)
        now = self._clock()
        if now - self._last_emit >= self._interval:
            self._drain(now)

    def flush(self) -> None:
        if self._buffer:
            self._drain(self._clock())

    def _drain(self, now: float) -> None:
        chunk = "".join(self._buffer)
        self._buffer.clear()
        self._last_emit = now
        self._emit(chunk)


def limit_message(budget: int) -> str:
    return (
        f"Stopped: reached the limit of {budget} tool steps in one turn. "
        "Ask me to continue if the task is not finished."
    )


@dataclass
class _PendingCall:
    id: str
    name: str
    parts: list

    def to_call(self) -> ToolCall:
        return ToolCall(self.id, self.name, "".join(self.parts) or "{}")


def _open_step(provider, request: StepRequest, token, observer):
    """Open the step's stream and pull its first event, retrying transient errors.

    Once the first event is in hand the stream is ours; failures after that
    are not retried, so text already shown is never repeated.
    """

    def attempt():
        events = iter(provider.stream(request))
        return events, next(events, None)

    try:
        events, first = with_retry(attempt, on_retry=observer.on_retry, token=token)
    except TurnCancelled:
        raise
    except Exception as exc:
        raise ProviderError(classify_error(exc), str(exc)) from exc
    return _provider_events(events), first


def _provider_events(events):
    """Pass stream events through, re-raising mid-stream failures as ProviderError."""
    try:
        yield from events
    except Exception as exc:
        raise ProviderError(classify_error(exc), str(exc)) from exc


def run_turn(
    messages: list,
    system_prompt: str,
    registry: ToolRegistry,
    provider,
    *,
    model: str,
    step_budget: int = DEFAULT_STEP_BUDGET,
    token: CancellationToken | None = None,
    observer: TurnObserver | None = None,
    max_output_tokens: int | None = None,
    temperature: float | None = None,
) -> TurnResult:
    """Drive one user turn to a terminal outcome.

    `messages` is mutated in place: only whole steps are appended, so a
    cancelled or failed turn leaves no partial assistant message behind.
    """
    token = token or CancellationToken()
    observer = observer or TurnObserver()
    usage = Usage()
    steps = 0
    finish_reason = None

    def set_state(state):
        observer.on_state(state)

    try:
        while True:
            token.raise_if_cancelled()
            observer.on_step_start(steps + 1)
            set_state(TurnState.STREAMING)

            request = StepRequest(
                model=model,
                system_prompt=system_prompt,
                messages=list(messages),
                tools=registry.schemas(),
                max_output_tokens=max_output_tokens,
                temperature=temperature,
            )
            events, first = _open_step(provider, request, token, observer)

            coalescer = TextCoalescer(observer.on_text)
            text_parts: list[str] = []
            pending: dict[str, _PendingCall] = {}
            step_usage = Usage()
            step_finish = None

            for event in chain([first], events):
                token.raise_if_cancelled()
                if event is None:
                    continue
                if isinstance(event, TextDelta):
                    text_parts.append(event.text)
                    coalescer.push(event.text)
                elif isinstance(event, ToolCallStart):
                    pending[event.id] = _PendingCall(event.id, event.name, [])
                elif isinstance(event, ToolCallDelta):
                    if event.id in pending:
                        pending[event.id].parts.append(event.arguments)
                elif isinstance(event, ToolCallEnd):
                    pass
                elif isinstance(event, StepFinish):
                    step_usage = event.usage
                elif isinstance(event, Finish):
                    step_finish = event.reason
            coalescer.flush()

            usage = usage + step_usage
            finish_reason = step_finish or finish_reason
            step_text = "".join(text_parts)
            if step_text:
                observer.on_step_text(step_text)

            if not pending:
                set_state(TurnState.FINALIZING)
                messages.append({"role": "assistant", "content": step_text})
                steps += 1
                set_state(TurnState.IDLE)
                return TurnResult(
                    TurnOutcome.COMPLETED,
                    finish_reason=finish_reason,
                    usage=usage,
                    steps=steps,
                    text=step_text,
                )

            set_state(TurnState.EXECUTING_TOOL)
            calls = [p.to_call() for p in pending.values()]
            tool_messages = []
            for call in calls:
                token.raise_if_cancelled()
                observer.on_tool_call(call)
                outcome = registry.execute(call, token)
                observer.on_tool_result(outcome)
                tool_messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": outcome.model_content(),
                    }
                )
            token.raise_if_cancelled()

            messages.append(
                {
                    "role": "assistant",
                    "content": step_text or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": call.arguments},
                        }
                        for call in calls
                    ],
                }
            )
            messages.extend(tool_messages)
            steps += 1

            if steps >= step_budget:
                set_state(TurnState.FINALIZING)
                notice = limit_message(step_budget)
                messages.append({"role": "assistant", "content": notice})
                observer.on_limit_reached(step_budget)
                set_state(TurnState.IDLE)
                return TurnResult(
                    TurnOutcome.LIMIT_REACHED,
                    finish_reason=finish_reason,
                    usage=usage,
                    steps=steps,
                    text=notice,
                )

    except TurnCancelled:
        set_state(TurnState.CANCELLED)
        return TurnResult(
            TurnOutcome.CANCELLED, finish_reason=finish_reason, usage=usage, steps=steps
        )
    except ProviderError as exc:
        # A transport error raised because the token fired is a cancellation.
        if token.cancelled:
            set_state(TurnState.CANCELLED)
            return TurnResult(
                TurnOutcome.CANCELLED, finish_reason=finish_reason, usage=usage, steps=steps
            )
        set_state(TurnState.FAILED)
        return TurnResult(
            TurnOutcome.FAILED,
            finish_reason=finish_reason,
            usage=usage,
            steps=steps,
            error_kind=exc.kind,
            error_message=str(exc),
            error=exc,
        )
