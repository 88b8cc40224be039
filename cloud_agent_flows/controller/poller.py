"""Cancellable, restartable poll loops keyed by exchange."""
import asyncio
import inspect
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Hashable,
    Optional,
    TypeVar,
)

from .errors import PollError, SequenceError


LOGGER = logging.getLogger(__name__)


T = TypeVar("T")
Query = Callable[[], Awaitable[T]]
Callback = Callable[[Any], Any]


async def _maybe_await(value: Any):
    if inspect.isawaitable(value):
        await value


class PollHandle(Generic[T]):
    """Handle on one running poll loop."""

    def __init__(self, key: Hashable, interval: float):
        self.key = key
        self.interval = interval
        self.cancelled = False
        self.polls = 0
        self.errors = 0
        self.last: Optional[T] = None
        self._future: "asyncio.Future[T]" = asyncio.get_running_loop().create_future()
        self._task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return (
            f"<PollHandle key={self.key!r} polls={self.polls} errors={self.errors} "
            f"cancelled={self.cancelled} done={self.done}>"
        )

    @property
    def done(self) -> bool:
        return self._future.done()

    def add_done_callback(self, callback: Callable[["PollHandle[T]"], Any]):
        self._future.add_done_callback(lambda _: callback(self))

    def exception(self) -> Optional[BaseException]:
        """Return the exception that stopped the loop, if any."""
        if not self._future.done() or self._future.cancelled():
            return None
        return self._future.exception()

    async def wait(self, timeout: Optional[float] = None) -> T:
        """Wait for the loop to complete and return the final result.

        Timing out leaves the loop running.
        """
        return await asyncio.wait_for(asyncio.shield(self._future), timeout)

    def _complete(self, result: T):
        if not self._future.done():
            self._future.set_result(result)

    def _fail(self, err: BaseException):
        if not self._future.done():
            self._future.set_exception(err)

    def _cancel(self):
        self.cancelled = True
        if not self._future.done():
            self._future.cancel()


class Poller:
    """Registry of poll loops, at most one per key."""

    def __init__(self, name: str, *, interval: float = 1.0):
        self.name = name
        self.interval = interval
        self._handles: Dict[Hashable, PollHandle] = {}

    def active(self, key: Hashable) -> bool:
        return key in self._handles

    def handle(self, key: Hashable) -> Optional[PollHandle]:
        return self._handles.get(key)

    def start(
        self,
        key: Hashable,
        query: Query[T],
        is_done: Callable[[T], bool],
        on_update: Callback,
        *,
        interval: Optional[float] = None,
        on_error: Optional[Callback] = None,
    ) -> PollHandle[T]:
        """Start polling query until is_done holds for a result."""
        if key in self._handles:
            raise SequenceError(f"{self.name}: already polling {key!r}")

        handle: PollHandle[T] = PollHandle(
            key, self.interval if interval is None else interval
        )
        self._handles[key] = handle
        handle._task = asyncio.get_running_loop().create_task(
            self._run(handle, query, is_done, on_update, on_error)
        )
        LOGGER.debug("%s: polling %r every %ss", self.name, key, handle.interval)
        return handle

    def cancel(self, handle: PollHandle):
        """Stop handle; results of a query in flight are discarded."""
        if self._handles.get(handle.key) is handle:
            del self._handles[handle.key]
        if handle.done and not handle.cancelled:
            return
        handle._cancel()
        if handle._task and not handle._task.done():
            handle._task.cancel()
        LOGGER.debug("%s: cancelled polling %r", self.name, handle.key)

    def cancel_all(self):
        for handle in list(self._handles.values()):
            self.cancel(handle)

    async def close(self):
        """Cancel every loop and wait for their tasks to unwind."""
        handles = list(self._handles.values())
        self.cancel_all()
        tasks = [handle._task for handle in handles if handle._task]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(
        self,
        handle: PollHandle[T],
        query: Query[T],
        is_done: Callable[[T], bool],
        on_update: Callback,
        on_error: Optional[Callback],
    ):
        try:
            while True:
                try:
                    result = await query()
                except PollError as err:
                    if handle.cancelled:
                        return
                    handle.errors += 1
                    LOGGER.warning(
                        "%s: poll of %r failed, retrying in %ss: %s",
                        self.name,
                        handle.key,
                        handle.interval,
                        err,
                    )
                    if on_error:
                        await _maybe_await(on_error(err))
                else:
                    if handle.cancelled:
                        return
                    handle.polls += 1
                    handle.last = result
                    await _maybe_await(on_update(result))
                    if handle.cancelled:
                        return
                    if is_done(result):
                        handle._complete(result)
                        return

                await asyncio.sleep(handle.interval)
        except asyncio.CancelledError:
            handle._cancel()
            raise
        except Exception as err:
            LOGGER.error("%s: polling %r stopped: %s", self.name, handle.key, err)
            handle._fail(err)
        finally:
            if self._handles.get(handle.key) is handle:
                del self._handles[handle.key]
