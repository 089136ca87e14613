"""Exception taxonomy shared by the engine, the tools and the CLI."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


# -- Tool-local failures ------------------------------------------------------
# Everything below ToolFailure is absorbed into a ToolError by the registry
# and never aborts a turn.


class ToolFailure(AgentError):
    """A failure local to a single tool call."""


class InvalidToolInput(ToolFailure):
    """Tool arguments did not match the tool's declared schema."""


class PolicyViolation(ToolFailure):
    """Denylisted command, denied path, or working-directory escape."""


class UserDenied(ToolFailure):
    """The user rejected a confirmation request."""


# -- Turn-level failures ------------------------------------------------------

PROVIDER_ERROR_KINDS = ("auth", "rate_limit", "network", "unknown")


class ProviderError(AgentError):
    """A model-provider call failed after the retry policy gave up."""

    def __init__(self, kind: str, message: str):
        if kind not in PROVIDER_ERROR_KINDS:
            raise ValueError(f"unknown provider error kind {kind!r}")
        super().__init__(message)
        self.kind = kind


class TurnCancelled(AgentError):
    """The turn's cancellation token fired at a suspension point."""


class TurnInProgress(AgentError):
    """A turn was submitted while another one is still running."""


# -- Session lookup -----------------------------------------------------------


class SessionLookupError(AgentError):
    """A session id prefix could not be resolved to exactly one session."""


class SessionNotFound(SessionLookupError):
    pass


class AmbiguousSession(SessionLookupError):
    pass
