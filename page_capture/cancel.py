import logging
from threading import Event, Lock
from typing import Callable, List

from .errors import CaptureCancelledError


class CancelToken:
    def __init__(self) -> None:
        self._event = Event()
        self._lock = Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for cb in callbacks:
            try:
                cb()
            except Exception as e:
                logging.debug("cancel callback failed: %s", e)

    def on_cancel(self, cb: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)
                return
        cb()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CaptureCancelledError("capture stopped")
