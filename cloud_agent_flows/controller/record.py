"""Base class for the exchange components."""
import asyncio
import json
import logging
from typing import (
    Callable,
    ClassVar,
    List,
    Optional,
    Tuple,
)

from .agent_service import AgentService
from .errors import ExchangeError, PollError, RemoteError, SequenceError
from .events import Event, EventQueue
from .poller import PollHandle, Poller
from .state import (
    CredentialFormat,
    ExchangeKind,
    ExchangeRecord,
    ExchangeRole,
    Payload,
)


LOGGER = logging.getLogger(__name__)


Listener = Callable[[ExchangeRecord], None]


class Exchange:
    """Base class for components that own one exchange record.

    A component holds at most one exchange. Its record only moves forward, by
    command responses from the local side or by polled snapshots, and every
    state change is published as an Event on the flow's queue.
    """

    kind: ClassVar[ExchangeKind]
    topic: ClassVar[str]

    def __init__(
        self,
        service: AgentService,
        *,
        fmt: Optional[CredentialFormat] = None,
        events: Optional[EventQueue[Event]] = None,
        poller: Optional[Poller] = None,
        interval: Optional[float] = None,
    ):
        self.service = service
        self.fmt = fmt
        self.events = events
        self.poller = poller or Poller(service.name)
        self.interval = interval
        self.record: Optional[ExchangeRecord] = None
        self._listeners: List[Listener] = []
        self._ready = asyncio.Event()
        self._failure: Optional[ExchangeError] = None
        self._handle: Optional[PollHandle[ExchangeRecord]] = None

    @property
    def name(self) -> str:
        exchange_id = self.record.id if self.record else None
        return f"{self.service.name} {type(self).__name__} ({exchange_id})"

    @property
    def id(self) -> Optional[str]:
        return self.record.id if self.record else None

    @property
    def state(self) -> Optional[str]:
        return self.record.state if self.record else None

    @property
    def is_ready(self) -> bool:
        return bool(self.record and self.record.is_ready)

    @property
    def polling(self) -> bool:
        return self._handle is not None and not self._handle.done

    @property
    def poll_key(self) -> Tuple[ExchangeKind, Optional[str]]:
        return (self.kind, self.id)

    @property
    def failure(self) -> Optional[ExchangeError]:
        return self._failure

    async def settled(self):
        """Wait until the exchange is ready, failed or cancelled."""
        await self._ready.wait()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Deliver every snapshot of this exchange to listener."""
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _begin(self, role: ExchangeRole) -> ExchangeRecord:
        if self.record is not None:
            raise SequenceError(
                f"{self.name}: already holds a {self.kind.value} exchange"
            )
        return ExchangeRecord.start(self.kind, role, self.fmt)

    def _require_record(self) -> ExchangeRecord:
        if self.record is None or self.record.id is None:
            raise SequenceError(f"{self.name}: no {self.kind.value} exchange started")
        return self.record

    def _require_role(self, role: ExchangeRole) -> ExchangeRecord:
        record = self._require_record()
        if record.role is not role:
            raise SequenceError(
                f"{self.name}: operation requires the {role.value} side of the "
                f"{self.kind.value} exchange"
            )
        return record

    async def _update(self, record: ExchangeRecord):
        previous = self.record
        self.record = record
        for listener in list(self._listeners):
            listener(record)

        if previous is None or previous.state != record.state:
            LOGGER.info(
                "%s: %s state %s -> %s",
                self.name,
                self.kind.value,
                previous.state if previous else None,
                record.state,
            )
            LOGGER.debug(
                "%s record: %s", self.name, json.dumps(record.to_dict(), sort_keys=True)
            )
            if self.events is not None:
                await self.events.put(
                    Event(
                        self.topic,
                        {
                            "id": record.id,
                            "state": record.state,
                            "ready": record.is_ready,
                            "terminal": record.is_terminal,
                            "record": record.to_dict(),
                        },
                    )
                )

        if record.is_failed:
            self._failure = RemoteError(
                f"{self.kind.value} exchange {record.id} ended in state {record.state}"
            )
            self._ready.set()
        elif record.is_ready:
            self._ready.set()

    async def _fetch(self) -> Tuple[str, Optional[Payload]]:
        """Return the current remote state and payload of the exchange."""
        raise NotImplementedError()

    async def _poll(self) -> ExchangeRecord:
        try:
            state, payload = await self._fetch()
        except (AttributeError, KeyError, TypeError, ValueError) as err:
            raise PollError(
                f"{self.name}: malformed {self.kind.value} state response: {err!r}"
            ) from err
        return self._require_record().advance(state, payload, polled=True)

    def _on_poll_finished(self, handle: PollHandle[ExchangeRecord]):
        err = handle.exception()
        if err is None or self._ready.is_set():
            return
        if isinstance(err, ExchangeError):
            self._failure = err
        else:
            self._failure = ExchangeError(f"{self.name}: polling failed: {err}")
        self._ready.set()

    def _watch(self, interval: Optional[float] = None) -> Optional[PollHandle]:
        """Start polling this exchange unless already polling or terminal."""
        record = self._require_record()
        if record.is_terminal or self.polling:
            return self._handle

        self._handle = self.poller.start(
            self.poll_key,
            self._poll,
            lambda polled: polled.is_terminal,
            self._update,
            interval=interval if interval is not None else self.interval,
        )
        self._handle.add_done_callback(self._on_poll_finished)
        return self._handle

    async def wait_ready(
        self, *, interval: Optional[float] = None, timeout: Optional[float] = None
    ) -> ExchangeRecord:
        """Poll until the exchange may gate the next stage.

        Polling carries on to the terminal state after this returns.
        """
        record = self._require_record()
        if not self._ready.is_set():
            self._watch(interval)
            LOGGER.info(
                "%s: awaiting %s readiness from state %s...",
                self.name,
                self.kind.value,
                record.state,
            )
            try:
                await asyncio.wait_for(self._ready.wait(), timeout)
            except asyncio.TimeoutError:
                raise asyncio.TimeoutError(
                    f"{self.name}: timed out awaiting {self.kind.value} readiness "
                    f"(state {self.state})"
                ) from None

        if self._failure:
            raise self._failure
        assert self.record
        LOGGER.info("%s: ready at state %s", self.name, self.record.state)
        return self.record

    def cancel(self):
        """Stop polling; pending waiters see a SequenceError."""
        if self._handle is not None:
            self.poller.cancel(self._handle)
            self._handle = None
        if not self._ready.is_set():
            self._failure = SequenceError(f"{self.name}: exchange was cancelled")
            self._ready.set()

    def discard(self):
        """Cancel polling and forget the exchange."""
        self.cancel()
        self.record = None
        self._listeners.clear()
