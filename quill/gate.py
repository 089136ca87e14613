"""Confirmation gate: turns "this tool needs approval" into a blocking handshake."""

import sys
import threading
from concurrent.futures import Future, InvalidStateError

from .cancel import CancellationToken
from .errors import ConfigError


class PendingConfirmation:
    """One outstanding approval request.

    The UI calls resolve() exactly once; later calls are ignored.
    """

    def __init__(self, tool_name: str, description: str, diff: dict | None = None):
        self.tool_name = tool_name
        self.description = description
        self.diff = diff
        self._future: Future = Future()

    @property
    def resolved(self) -> bool:
        return self._future.done()

    def resolve(self, approved: bool) -> None:
        try:
            self._future.set_result(bool(approved))
        except InvalidStateError:
            pass  # already resolved, e.g. cancel raced the UI

    def wait(self) -> bool:
        return self._future.result()

    def __repr__(self):
        return f"PendingConfirmation({self.tool_name!r}, {self.description!r})"


class ConfirmationGate:
    """Serializes approval requests between the engine and the UI.

    `on_request` receives each PendingConfirmation and must arrange for it to
    be resolved eventually (directly, or from another thread). With
    `skip_confirm` every request is approved without suspension; that mode
    is refused on an interactive terminal.
    """

    def __init__(
        self,
        on_request=None,
        *,
        skip_confirm: bool = False,
        interactive: bool | None = None,
    ):
        if interactive is None:
            interactive = sys.stdin.isatty()
        if skip_confirm and interactive:
            raise ConfigError(
                "skipping confirmations is only allowed in non-interactive mode"
            )
        if not skip_confirm and on_request is None:
            raise ConfigError("a confirmation handler is required")
        self.skip_confirm = skip_confirm
        self._on_request = on_request
        self._lock = threading.Lock()
        self._pending: PendingConfirmation | None = None

    @property
    def pending(self) -> PendingConfirmation | None:
        return self._pending

    def request(
        self,
        tool_name: str,
        description: str,
        diff: dict | None = None,
        token: CancellationToken | None = None,
    ) -> bool:
        """Block until the user approves or denies. Cancellation means deny."""
        if self.skip_confirm:
            return True

        pending = PendingConfirmation(tool_name, description, diff)
        with self._lock:
            if self._pending is not None:
                raise RuntimeError(
                    f"confirmation already pending for {self._pending.tool_name!r}"
                )
            self._pending = pending

        handle = None
        try:
            if token is not None:
                handle = token.add_callback(lambda: pending.resolve(False))
            if not pending.resolved:
                self._on_request(pending)
            return pending.wait()
        finally:
            if token is not None:
                token.remove_callback(handle)
            with self._lock:
                self._pending = None
