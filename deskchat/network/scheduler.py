import asyncio
import logging
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class Handle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def after_delay(self, delay: float, callback: Callable[[], None]) -> Handle: ...

    def every_interval(self, interval: float, callback: Callable[[], None]) -> Handle: ...

    def cancel_all(self) -> None: ...


class _Repeating:
    def __init__(self, loop: asyncio.AbstractEventLoop, interval: float, callback: Callable[[], None]):
        self.loop = loop
        self.interval = interval
        self.callback = callback
        self._timer: Optional[asyncio.TimerHandle] = loop.call_later(interval, self._fire)

    def _fire(self) -> None:
        self._timer = self.loop.call_later(self.interval, self._fire)
        try:
            self.callback()
        except Exception:
            # A failing tick must not stop the next one.
            logger.exception('Periodic callback %r failed', self.callback)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class AsyncioScheduler:
    """Timers on the running asyncio loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self.loop = loop or asyncio.get_running_loop()
        self._handles: list[Handle] = []

    def after_delay(self, delay: float, callback: Callable[[], None]) -> Handle:
        def fire() -> None:
            # one-shot timers forget themselves once they ran
            if handle in self._handles:
                self._handles.remove(handle)
            callback()

        handle = self.loop.call_later(delay, fire)
        self._handles.append(handle)
        return handle

    @property
    def pending(self) -> int:
        return len(self._handles)

    def every_interval(self, interval: float, callback: Callable[[], None]) -> Handle:
        handle = _Repeating(self.loop, interval, callback)
        self._handles.append(handle)
        return handle

    def cancel_all(self) -> None:
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()
