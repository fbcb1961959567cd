"""
Tick scheduling for the monitor loop.

A ticker calls a callback on a fixed interval until stopped. ThreadTicker is
used in the service process; ManualTicker lets callers (tests, Celery tasks)
drive ticks explicitly.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Optional

from margin_engine.core.logging import get_logger

logger = get_logger(__name__)

TickCallback = Callable[[], object]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BaseTicker(ABC):
    """Calls a callback every `interval` seconds between start() and stop()"""

    @abstractmethod
    def start(self, callback: TickCallback, interval: float) -> None:
        pass

    @abstractmethod
    def stop(self) -> None:
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        pass


class ThreadTicker(BaseTicker):
    """Runs the callback on a daemon thread; the stop event doubles as the cancellation token"""

    def __init__(self, name: str = "margin-risk-ticker"):
        self.name = name
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self, callback: TickCallback, interval: float) -> None:
        if self.is_running:
            return
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            args=(callback, interval, self._stop_event),
            name=self.name,
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    @staticmethod
    def _run(callback: TickCallback, interval: float, stop_event: threading.Event) -> None:
        # wait() returns True as soon as stop() is called
        while not stop_event.wait(interval):
            try:
                callback()
            except Exception as e:
                logger.error(f"Scheduled tick failed: {e}", exc_info=True)


class ManualTicker(BaseTicker):
    """Records the callback and fires it only when fire() is called"""

    def __init__(self):
        self.callback: Optional[TickCallback] = None
        self.interval: Optional[float] = None
        self._running = False

    def start(self, callback: TickCallback, interval: float) -> None:
        self.callback = callback
        self.interval = interval
        self._running = True

    def stop(self) -> None:
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def fire(self, times: int = 1) -> None:
        for _ in range(times):
            if self._running and self.callback is not None:
                self.callback()
