"""Proof presentation between verifier and prover."""
import asyncio
import logging
from typing import Dict, Optional, Tuple

from .agent_service import AgentService
from .errors import AmbiguousStateError, SequenceError
from .events import Event, EventQueue
from .poller import Poller
from .record import Exchange
from .state import (
    CredentialFormat,
    ExchangeKind,
    ExchangeRecord,
    ExchangeRole,
    Payload,
    PresentationPayload,
    Verification,
    initial_state,
    is_failed,
    is_terminal,
    state_rank,
)
from .utils import candidates, require


LOGGER = logging.getLogger(__name__)


def _ahead(kind: ExchangeKind, state: str, current: Optional[str]) -> bool:
    if is_failed(current):
        return False
    rank = state_rank(kind, state)
    current_rank = state_rank(kind, current) if current else None
    return rank is not None and (current_rank is None or rank > current_rank)


class PresentationExchange(Exchange):

    kind = ExchangeKind.PRESENTATION
    topic = "present_proof"

    def __init__(
        self,
        service: AgentService,
        *,
        fmt: CredentialFormat,
        events: Optional[EventQueue[Event]] = None,
        poller: Optional[Poller] = None,
        interval: Optional[float] = None,
    ):
        super().__init__(
            service, fmt=fmt, events=events, poller=poller, interval=interval
        )
        self.fmt: CredentialFormat = fmt

    @property
    def verified(self) -> Verification:
        if self.record is None:
            return Verification.UNKNOWN
        return self.record.payload.verified  # type: ignore[union-attr]

    @property
    def revealed_attributes(self) -> Dict[str, str]:
        if self.record is None:
            return {}
        return dict(self.record.payload.revealed_attributes)  # type: ignore

    async def send_request(self, connection_id: str, constraint_ref: str) -> str:
        """Request a presentation over connection_id.

        constraint_ref restricts acceptable credentials: a credential
        definition id for anoncreds, the issuer DID for W3C.
        """
        record = self._begin(ExchangeRole.INITIATOR)
        require(connection_id, "connection_id")
        require(constraint_ref, "constraint_ref")

        exchange_id = await self.service.send_proof_request(
            self.fmt, connection_id, constraint_ref
        )
        await self._update(
            record.with_id(exchange_id).advance(
                initial_state(self.kind, ExchangeRole.INITIATOR, self.fmt)
            )
        )
        return exchange_id

    async def _find_request(self, connection_id: str) -> Optional[str]:
        body = await self.service.get_proof_requests(self.fmt, connection_id)
        found = candidates(body, "presentationExchangeId")
        if not found:
            return None
        if len(found) > 1:
            raise AmbiguousStateError(
                f"{self.service.name}: {len(found)} proof requests pending on "
                f"connection {connection_id}"
            )
        return found[0]["presentationExchangeId"]

    async def _adopt(self, exchange_id: Optional[str]):
        if exchange_id is None:
            return
        if self.record is not None:
            if self.record.id == exchange_id:
                return
            raise SequenceError(
                f"{self.name}: already holds presentation exchange {self.record.id}, "
                f"cannot adopt {exchange_id}"
            )
        record = ExchangeRecord.start(self.kind, ExchangeRole.RESPONDER, self.fmt)
        await self._update(
            record.with_id(exchange_id).advance(
                initial_state(self.kind, ExchangeRole.RESPONDER, self.fmt)
            )
        )

    async def discover_request(self, connection_id: str) -> Optional[str]:
        """Look once for a proof request received over connection_id."""
        require(connection_id, "connection_id")
        exchange_id = await self._find_request(connection_id)
        await self._adopt(exchange_id)
        return exchange_id

    async def wait_for_request(
        self,
        connection_id: str,
        *,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Poll until a proof request is received over connection_id."""
        require(connection_id, "connection_id")
        LOGGER.info("%s: awaiting proof request...", self.service.name)
        handle = self.poller.start(
            ("proof-request", connection_id),
            lambda: self._find_request(connection_id),
            lambda exchange_id: exchange_id is not None,
            self._adopt,
            interval=interval if interval is not None else self.interval,
        )
        try:
            exchange_id = await handle.wait(timeout)
        except asyncio.TimeoutError:
            self.poller.cancel(handle)
            raise asyncio.TimeoutError(
                f"{self.service.name}: timed out awaiting proof request"
            ) from None
        assert exchange_id is not None
        return exchange_id

    async def submit_presentation(self, exchange_id: str, credential_id: str) -> str:
        """Present credential_id in answer to the request, returning the new state."""
        require(exchange_id, "exchange_id")
        require(credential_id, "credential_id")
        await self._adopt(exchange_id)
        record = self._require_role(ExchangeRole.RESPONDER)

        state = await self.service.send_presentation(
            self.fmt, exchange_id, credential_id
        )
        record = self._require_record()
        if state in record.path and _ahead(self.kind, state, record.state):
            await self._update(record.advance(state))
        LOGGER.info("%s: presentation sent", self.name)
        return state

    async def await_verification(
        self, *, interval: Optional[float] = None, timeout: Optional[float] = None
    ) -> ExchangeRecord:
        """Wait for the presentation to reach its terminal state."""
        record = await self.wait_ready(interval=interval, timeout=timeout)
        LOGGER.info(
            "%s: verified=%s revealed=%s",
            self.name,
            self.verified.value,
            self.revealed_attributes,
        )
        return record

    async def _fetch(self) -> Tuple[str, Optional[Payload]]:
        record = self._require_record()
        body = await self.service.get_presentation_exchange_state(self.fmt, record.id)
        state = body["state"]
        revealed = body.get("revealedAttributes") or {}
        return state, PresentationPayload(
            revealed_attributes={
                name: value for name, value in revealed.items() if value is not None
            },
            verified=Verification.from_remote(
                body.get("verified"),
                terminal=is_terminal(self.kind, state) and not is_failed(state),
            ),
        )
