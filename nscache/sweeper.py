import asyncio
import logging
from concurrent.futures import Future
from threading import Thread
from typing import Callable, Optional, Union

logger = logging.getLogger(__name__)

_maintainer_loop = asyncio.new_event_loop()


def _maintance() -> None:
    asyncio.set_event_loop(_maintainer_loop)
    _maintainer_loop.run_forever()


_maintainer_thread = Thread(target=_maintance, daemon=True)
_maintainer_thread.start()


async def _run_periodically(interval: float, sweep: Callable[[], int]) -> None:
    while True:
        await asyncio.sleep(interval)
        sweep()


def schedule_periodic(
    interval: float,
    sweep: Callable[[], int],
    loop: Optional[asyncio.AbstractEventLoop] = None,
) -> "Union[Future[None], asyncio.Task[None]]":
    """
    Run ``sweep`` every ``interval`` seconds until the returned future is cancelled. Without
    ``loop`` it runs on the maintainer loop thread, otherwise ``loop`` must be the event loop
    running on the calling thread and the sweep runs there as a task.
    """
    if loop is None or loop is _maintainer_loop:
        return asyncio.run_coroutine_threadsafe(
            _run_periodically(interval, sweep), loop=_maintainer_loop
        )
    return loop.create_task(_run_periodically(interval, sweep))


def cancel_periodic(sweeper: "Union[Future[None], asyncio.Task[None]]") -> None:
    # a task whose loop already closed can no longer be scheduled, it will never run again
    if isinstance(sweeper, asyncio.Future) and sweeper.get_loop().is_closed():
        return
    sweeper.cancel()


class DebouncedSweep:
    """
    A pending-sweep ticket. Each ``trigger`` cancels the sweep armed by the previous
    trigger and arms a new one ``window`` seconds later, so a burst of triggers runs
    ``sweep`` once, after the burst has been quiet for a whole window.

    The timer handle is only ever touched from the thread running ``loop``, the maintainer
    loop unless another one is given.
    """

    def __init__(
        self,
        window: float,
        sweep: Callable[[], int],
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.window = window
        self.sweep = sweep
        self.loop = loop or _maintainer_loop
        self._handle: Optional[asyncio.TimerHandle] = None

    def trigger(self) -> None:
        self.loop.call_soon_threadsafe(self._rearm)

    def cancel(self) -> None:
        if self.loop.is_closed():
            self._handle = None
            return
        self.loop.call_soon_threadsafe(self._disarm)

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def _disarm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _rearm(self) -> None:
        self._disarm()
        self._handle = self.loop.call_later(self.window, self._fire)

    def _fire(self) -> None:
        self._handle = None
        removed = self.sweep()
        logger.debug("coalesced sweep removed %d expired entries", removed)
