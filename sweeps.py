"""
Scheduling helpers for the periodic sweeps.

``SingleFlight`` skips a run while the previous one is still in progress;
``PeriodicSweep`` is the ticker the web process uses to drive a sweep.
"""

import logging
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class SingleFlight:
    def __init__(self, name: str, func: Callable[..., Any]) -> None:
        self.name = name
        self.func = func
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def __call__(self, *args, **kwargs) -> Optional[Any]:
        if not self._lock.acquire(blocking=False):
            logger.info("%s already running, skipping this tick", self.name)
            return None
        try:
            return self.func(*args, **kwargs)
        finally:
            self._lock.release()


class PeriodicSweep(threading.Thread):
    def __init__(self, name: str, func: Callable[[], Any], interval: float) -> None:
        super().__init__(name=name, daemon=True)
        self.func = func
        self.interval = interval
        self._stopped = threading.Event()

    def run(self) -> None:
        logger.info("%s started, every %.0fs", self.name, self.interval)
        while not self._stopped.is_set():
            try:
                self.func()
            except Exception:
                logger.exception("%s tick failed", self.name)
            self._stopped.wait(self.interval)
        logger.info("%s stopped", self.name)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stopped.set()
        if self.is_alive():
            self.join(timeout)
