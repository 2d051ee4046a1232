"""
Cooperative cancellation of in-flight fits.

The fit cache hands each computation a CancelToken and makes it the current
token of the worker thread. Sampler code polls it at progress checkpoints
(the PyMC draw callback) through `current_token().raise_if_cancelled()`.
"""

import contextvars
import threading
from typing import Optional

from bayesfit.errors import FitCancelled


class CancelToken:
    """Thread-safe cancellation flag with a reason."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or `timeout` elapses. True if cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise FitCancelled(f"Fit cancelled: {self.reason}")

    def __repr__(self) -> str:
        return f"CancelToken(cancelled={self.cancelled}, reason={self.reason!r})"


# Token that never fires, for code running outside the cache
_NEVER = CancelToken()

_current: contextvars.ContextVar = contextvars.ContextVar("bayesfit_cancel_token", default=_NEVER)


def current_token() -> CancelToken:
    """The CancelToken of the fit running in this thread."""
    return _current.get()


def bind_token(token: CancelToken) -> contextvars.Token:
    """Make `token` current for this context; returns a reset handle."""
    return _current.set(token)


def unbind_token(handle: contextvars.Token) -> None:
    _current.reset(handle)
