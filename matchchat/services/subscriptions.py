import asyncio
import logging
from typing import Awaitable, Callable, Generic, Optional, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")

SnapshotLoader = Callable[[], Awaitable[T]]
SnapshotCallback = Callable[[T], Awaitable[None]]
ErrorCallback = Callable[[Exception], Awaitable[None]]


class Subscription(Generic[T]):
    """Live view of a query result, re-emitted in full after every change.

    The owner must call ``cancel()`` once it no longer wants snapshots; there is
    no timeout. Changes arriving while a snapshot is being loaded are coalesced
    into a single reload. A failed reload or a broken bus connection is
    reported once through ``on_error`` and ends the subscription.
    """

    def __init__(
        self,
        bus,
        channel: str,
        load: SnapshotLoader,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self.channel = channel
        self._bus = bus
        self._load = load
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._dirty = asyncio.Event()
        self._active = False
        self._bus_sub = None
        self._listener: Optional[asyncio.Task] = None
        self._worker: Optional[asyncio.Task] = None
        self._failure: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._active

    async def start(self) -> "Subscription[T]":
        self._active = True
        # listen before the first load so nothing committed in between is missed
        self._bus_sub = await self._bus.subscribe(self.channel, self._on_change)
        self._listener = asyncio.create_task(self._bus_sub.run())
        self._listener.add_done_callback(self._listener_done)
        try:
            await self._emit()
        except Exception:
            await self.cancel()
            raise
        self._worker = asyncio.create_task(self._drain())
        return self

    async def _on_change(self, _message: str) -> None:
        self._dirty.set()

    def _listener_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or not self._active:
            return
        error = task.exception()
        if error is None:
            error = ConnectionError(f"Bus subscription on '{self.channel}' ended")
        self._failure = asyncio.ensure_future(self._fail(error, "its bus connection failed"))

    async def _emit(self) -> None:
        snapshot = await self._load()
        if self._active:
            await self._on_snapshot(snapshot)

    async def _drain(self) -> None:
        while self._active:
            await self._dirty.wait()
            self._dirty.clear()
            if not self._active:
                break
            try:
                await self._emit()
            except Exception as e:
                await self._fail(e, "a failed reload")
                return

    async def _fail(self, error: Exception, reason: str) -> None:
        if not self._active:
            return
        logger.error(f"Subscription on '{self.channel}' stopped after {reason}: {error!r}")
        await self.cancel()
        if self._on_error is not None:
            await self._on_error(error)

    async def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self._dirty.set()
        if self._bus_sub is not None:
            await self._bus_sub.cancel()
        current = asyncio.current_task()
        pending = [t for t in (self._listener, self._worker) if t is not None and t is not current and not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        logger.debug(f"Subscription on '{self.channel}' cancelled")
