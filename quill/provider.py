"""Model-provider adapter: one streaming completion per agent step.

The engine only sees the event dataclasses below. LiteLLMProvider turns
litellm's OpenAI-style streaming chunks into them; tests substitute any
object with a ``stream(request)`` method.
"""

import json
import urllib.error
import urllib.request
import uuid
from dataclasses import dataclass, field

from .errors import AgentError, ConfigError

PROVIDERS = ("lmstudio", "openrouter", "huggingface", "generic")
DEFAULT_LMSTUDIO_URL = "http://127.0.0.1:1234"


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            self.prompt_tokens + other.prompt_tokens,
            self.completion_tokens + other.completion_tokens,
            self.total_tokens + other.total_tokens,
        )


# -- Stream events ------------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStart:
    id: str
    name: str


@dataclass(frozen=True)
class ToolCallDelta:
    id: str
    arguments: str


@dataclass(frozen=True)
class ToolCallEnd:
    id: str


@dataclass(frozen=True)
class StepFinish:
    usage: Usage


@dataclass(frozen=True)
class Finish:
    reason: str


@dataclass
class StepRequest:
    model: str
    system_prompt: str
    messages: list
    tools: list = field(default_factory=list)
    tool_choice: str = "auto"
    max_output_tokens: int | None = None
    temperature: float | None = None

    def full_messages(self) -> list:
        return [{"role": "system", "content": self.system_prompt}, *self.messages]


def _normalize_finish_reason(reason: str | None) -> str:
    if reason is None:
        return "stop"
    if reason == "function_call":
        return "tool_calls"
    return reason


def _usage_from(raw) -> Usage:
    if raw is None:
        return Usage()
    prompt = getattr(raw, "prompt_tokens", None) or 0
    completion = getattr(raw, "completion_tokens", None) or 0
    total = getattr(raw, "total_tokens", None) or (prompt + completion)
    return Usage(prompt, completion, total)


class LiteLLMProvider:
    """Routes completions through litellm for the supported providers."""

    def __init__(
        self,
        provider: str,
        model_id: str,
        base_url: str | None = None,
        api_key: str | None = None,
    ):
        if provider not in PROVIDERS:
            raise ConfigError(f"unknown provider {provider!r}")
        self.provider = provider
        self.model_id = model_id
        self.base_url = base_url
        self.api_key = api_key

    def route(self, model_id: str | None = None) -> tuple[str, dict]:
        """Return (litellm model string, extra completion kwargs)."""
        model_id = model_id or self.model_id
        if self.provider == "lmstudio":
            base = (self.base_url or DEFAULT_LMSTUDIO_URL).rstrip("/")
            return f"openai/{model_id}", {"api_base": f"{base}/v1", "api_key": "lm-studio"}

        kwargs = {"api_key": self.api_key}
        if self.base_url:
            kwargs["api_base"] = self.base_url
        if self.provider == "huggingface":
            return f"huggingface/{model_id.removeprefix('huggingface/')}", kwargs
        if self.provider == "openrouter":
            # Keep org names like "openrouter/free"; only drop a doubled prefix.
            bare_id = (
                model_id[len("openrouter/") :]
                if model_id.startswith("openrouter/openrouter/")
                else model_id
            )
            return f"openrouter/{bare_id}", kwargs
        return model_id, kwargs

    def open_stream(self, request: StepRequest):
        """Start the completion. Raises whatever litellm raises."""
        import litellm

        litellm.suppress_debug_info = True

        model_str, kwargs = self.route(request.model)
        completion_kwargs = dict(
            model=model_str,
            messages=request.full_messages(),
            stream=True,
            stream_options={"include_usage": True},
            **kwargs,
        )
        if request.tools:
            completion_kwargs["tools"] = request.tools
            completion_kwargs["tool_choice"] = request.tool_choice
        for key, val in [
            ("max_tokens", request.max_output_tokens),
            ("temperature", request.temperature),
        ]:
            if val is not None:
                completion_kwargs[key] = val
        return litellm.completion(**completion_kwargs)

    def stream(self, request: StepRequest):
        """Yield stream events for one step."""
        return translate_chunks(self.open_stream(request))


def translate_chunks(chunks):
    """Turn OpenAI-style streaming chunks into provider events.

    Tool-call fragments are keyed by their index; the id and name only
    arrive with the first fragment. Every started call gets a matching
    ToolCallEnd before StepFinish.
    """
    ids_by_index: dict[int, str] = {}
    open_ids: list[str] = []
    finish_reason = None
    usage = Usage()

    for chunk in chunks:
        raw_usage = getattr(chunk, "usage", None)
        if raw_usage is not None:
            usage = _usage_from(raw_usage)

        choices = getattr(chunk, "choices", None) or []
        if not choices:
            continue
        choice = choices[0]
        delta = getattr(choice, "delta", None)

        if delta is not None:
            content = getattr(delta, "content", None)
            if content:
                yield TextDelta(content)

            for tc in getattr(delta, "tool_calls", None) or []:
                index = getattr(tc, "index", None)
                if index is None:
                    index = len(ids_by_index)
                fn = getattr(tc, "function", None)
                if index not in ids_by_index:
                    call_id = getattr(tc, "id", None) or f"call_{uuid.uuid4().hex[:24]}"
                    ids_by_index[index] = call_id
                    open_ids.append(call_id)
                    yield ToolCallStart(call_id, getattr(fn, "name", None) or "")
                args = getattr(fn, "arguments", None) if fn is not None else None
                if args:
                    yield ToolCallDelta(ids_by_index[index], args)

        if getattr(choice, "finish_reason", None):
            finish_reason = choice.finish_reason

    for call_id in open_ids:
        yield ToolCallEnd(call_id)
    if open_ids and finish_reason in (None, "stop"):
        # Some local servers report "stop" even when they emitted tool calls.
        finish_reason = "tool_calls"
    yield StepFinish(usage)
    yield Finish(_normalize_finish_reason(finish_reason))


def complete_text(provider, request: StepRequest) -> str:
    """Run one tool-less step and return the concatenated text."""
    parts = []
    for event in provider.stream(request):
        if isinstance(event, TextDelta):
            parts.append(event.text)
    return "".join(parts)


def discover_model(base_url: str | None = None) -> str | None:
    """Query LM Studio's native API for the currently loaded LLM."""
    base = (base_url or DEFAULT_LMSTUDIO_URL).rstrip("/").removesuffix("/v1")
    url = f"{base}/api/v1/models"
    try:
        req = urllib.request.Request(url)
        with urllib.request.urlopen(req, timeout=10) as resp:
            data = json.loads(resp.read().decode())
    except urllib.error.URLError as e:
        raise AgentError(f"could not connect to LM Studio at {base}: {e}")
    except json.JSONDecodeError as e:
        raise AgentError(f"invalid JSON from {url}: {e}")

    # LM Studio uses "data" (OpenAI-compat) or "models" (native API)
    entries = data.get("data") or data.get("models") or []
    for entry in entries:
        if entry.get("type") == "llm" and entry.get("loaded_instances"):
            return entry.get("id", entry.get("key"))
    return None
