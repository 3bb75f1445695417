import logging
import threading
from typing import Callable

log = logging.getLogger("ticker")

class Ticker:
    """Runs ``fn`` every ``interval`` seconds on its own thread until stopped."""

    def __init__(self, name: str, interval: float, fn: Callable[[], object], immediate: bool = True):
        self.name = name
        self.interval = interval
        self.fn = fn
        self.immediate = immediate
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> "Ticker":
        if self._thread is not None:
            return self
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: float | None = 5) -> None:
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout)

    def _loop(self) -> None:
        if self.immediate:
            self._run()
        while not self._stop.wait(self.interval):
            self._run()

    def _run(self) -> None:
        try:
            self.fn()
        except Exception:
            log.error(f"{self.name} tick failed", extra={"event": "tick_error"}, exc_info=True)
