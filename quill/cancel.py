"""Cooperative cancellation shared by the turn engine and its collaborators."""

import itertools
import threading

from .errors import TurnCancelled


class CancellationToken:
    """A one-shot, thread-safe cancellation flag with callbacks.

    The engine checks it at every suspension point; collaborators that block
    (subprocesses, confirmation prompts, backoff sleeps) register callbacks
    or wait on it so that cancelling wakes them immediately.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: dict[int, object] = {}
        self._ids = itertools.count()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
        for fn in callbacks:
            fn()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelled("turn cancelled")

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`. Returns True if cancelled meanwhile."""
        return self._event.wait(seconds)

    def add_callback(self, fn) -> int | None:
        """Run `fn` on cancellation. Fires immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                handle = next(self._ids)
                self._callbacks[handle] = fn
                return handle
        fn()
        return None

    def remove_callback(self, handle: int | None) -> None:
        if handle is None:
            return
        with self._lock:
            self._callbacks.pop(handle, None)


def run_abandonable(fn, token: CancellationToken | None, *args, **kwargs):
    """Run a blocking call on a daemon thread; abandon it if the token fires.

    Returns fn's result or re-raises its exception. Raises TurnCancelled as
    soon as the token is cancelled, without waiting for fn to return.
    """
    if token is None:
        return fn(*args, **kwargs)
    token.raise_if_cancelled()

    done = threading.Event()
    outcome: dict = {}

    def _target():
        try:
            outcome["value"] = fn(*args, **kwargs)
        except BaseException as e:
            outcome["error"] = e
        finally:
            done.set()

    handle = token.add_callback(done.set)
    worker = threading.Thread(target=_target, name="quill-abandonable", daemon=True)
    worker.start()
    try:
        done.wait()
    finally:
        token.remove_callback(handle)

    if "error" in outcome:
        raise outcome["error"]
    if "value" in outcome:
        return outcome["value"]
    raise TurnCancelled("turn cancelled")
