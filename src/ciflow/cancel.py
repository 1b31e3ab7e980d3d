# cancel.py
from __future__ import annotations

import threading
from typing import Callable, List, Optional


class CancelToken:
    """
    Cooperative cancellation signal.

    Tokens form a tree (run -> job template -> ...). Cancelling a token
    cancels all of its children; cancelling a child never touches the parent.
    Callbacks run once, on the cancelling thread.
    """

    def __init__(self, parent: Optional["CancelToken"] = None, reason: str = ""):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._children: List[CancelToken] = []
        self.reason = reason
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: "CancelToken") -> None:
        with self._lock:
            cancelled = self._event.is_set()
            if not cancelled:
                self._children.append(child)
        if cancelled:
            child.cancel(self.reason)

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            children = list(self._children)
        for cb in callbacks:
            cb()
        for c in children:
            c.cancel(reason)

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Register callback; runs immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to timeout; returns True early if cancelled."""
        return self._event.wait(timeout)
