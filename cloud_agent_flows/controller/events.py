"""State-change events and the queue flows consume them from."""
import asyncio
import json
from typing import Callable, Generic, List, NamedTuple, Optional, Sequence, TypeVar


class Event(NamedTuple):
    topic: str
    payload: dict

    def __str__(self) -> str:
        payload = json.dumps(self.payload, sort_keys=True, indent=2)
        if len(payload) > 1000:
            payload = json.dumps(self.payload, sort_keys=True)
        return f'Event(topic="{self.topic}", payload={payload})'


EntryType = TypeVar("EntryType")
Condition = Callable[[EntryType], bool]


class EventQueue(Generic[EntryType]):
    """Async queue whose consumers wait for the first entry matching a condition.

    Entries that do not match stay queued in arrival order for other
    consumers.
    """

    def __init__(self, *, condition: Optional[Condition] = None):
        self._entries: List[EntryType] = []
        self._cond = asyncio.Condition()
        self.condition = condition

    def __len__(self) -> int:
        return len(self._entries)

    def _pop_first(self, condition: Optional[Condition]) -> Optional[EntryType]:
        for index, entry in enumerate(self._entries):
            if condition is None or condition(entry):
                return self._entries.pop(index)
        return None

    async def _get(self, condition: Optional[Condition]) -> EntryType:
        async with self._cond:
            while True:
                entry = self._pop_first(condition)
                if entry is not None:
                    return entry
                # Nothing matching yet; wait for the next put
                await self._cond.wait()

    async def get(
        self,
        condition: Optional[Condition] = None,
        *,
        timeout: Optional[float] = None,
    ) -> EntryType:
        """Remove and return the first entry matching condition."""
        try:
            return await asyncio.wait_for(self._get(condition), timeout)
        except asyncio.TimeoutError:
            raise asyncio.TimeoutError("Retrieval from event queue timed out") from None

    def get_nowait(self, condition: Optional[Condition] = None) -> Optional[EntryType]:
        return self._pop_first(condition)

    async def put(self, value: EntryType):
        """Append value and wake waiting consumers."""
        if self.condition and not self.condition(value):
            return
        async with self._cond:
            self._entries.append(value)
            self._cond.notify_all()

    def flush(self) -> Sequence[EntryType]:
        """Clear queue and return its contents at the time of clearing."""
        final = self._entries.copy()
        self._entries.clear()
        return final
