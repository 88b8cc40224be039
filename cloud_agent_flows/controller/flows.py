"""Definitions of the example flows and the coordinator that sequences them."""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
import inspect
import logging
from typing import Any, Callable, Dict, Mapping, Optional

from .agent_service import AgentService
from .connection import ConnectionExchange, Invitation
from .credential_exchange import CredentialExchange, OfferResult, OfferSummary
from .errors import RemoteError, SequenceError
from .events import Event, EventQueue
from .poller import Poller
from .presentation_exchange import PresentationExchange
from .record import Exchange
from .state import (
    CredentialFormat,
    ExchangeKind,
    ExchangeRecord,
    ExchangeRole,
    Verification,
    is_failed,
)
from .utils import require


LOGGER = logging.getLogger(__name__)

W3C_CREDENTIAL_TYPE = "PermanentResident"
DEFAULT_ATTRIBUTES: Dict[CredentialFormat, Dict[str, str]] = {
    CredentialFormat.ANONCREDS: {"name": "Alice Smith", "expiry": "2030-01-01"},
    CredentialFormat.W3C: {"givenName": "Alice", "familyName": "Smith"},
}


class FlowVariant(Enum):
    """The example flows, named by what the local agent does."""

    ANONCREDS_ISSUE_AND_VERIFY = "anoncreds-issue-and-verify"
    W3C_ISSUE_AND_VERIFY = "w3c-issue-and-verify"
    W3C_HOLD_AND_PROVE = "w3c-hold-and-prove"

    @property
    def fmt(self) -> CredentialFormat:
        if self is FlowVariant.ANONCREDS_ISSUE_AND_VERIFY:
            return CredentialFormat.ANONCREDS
        return CredentialFormat.W3C

    @property
    def role(self) -> ExchangeRole:
        if self is FlowVariant.W3C_HOLD_AND_PROVE:
            return ExchangeRole.RESPONDER
        return ExchangeRole.INITIATOR


@dataclass
class FlowResult:
    variant: FlowVariant
    connection_id: Optional[str] = None
    credential_exchange_id: Optional[str] = None
    presentation_exchange_id: Optional[str] = None
    cred_def_id: Optional[str] = None
    issuer_did: Optional[str] = None
    credential_id: Optional[str] = None
    attribute_values: Dict[str, str] = field(default_factory=dict)
    revealed_attributes: Dict[str, str] = field(default_factory=dict)
    verified: Verification = Verification.UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant": self.variant.value,
            "connection_id": self.connection_id,
            "credential_exchange_id": self.credential_exchange_id,
            "presentation_exchange_id": self.presentation_exchange_id,
            "cred_def_id": self.cred_def_id,
            "issuer_did": self.issuer_did,
            "credential_id": self.credential_id,
            "attribute_values": self.attribute_values,
            "revealed_attributes": self.revealed_attributes,
            "verified": self.verified.value,
        }


class FlowCoordinator:
    """Run one connection, credential and presentation exchange in order.

    Each stage is gated on the previous exchange being ready for the next
    stage, as observed by polling. Calling a stage early raises
    SequenceError.
    """

    def __init__(
        self,
        service: AgentService,
        variant: FlowVariant,
        *,
        interval: float = 1.0,
        timeout: Optional[float] = None,
    ):
        self.service = service
        self.variant = variant
        self.interval = interval
        self.timeout = timeout
        self.events: EventQueue[Event] = EventQueue()
        self.poller = Poller(service.name, interval=interval)
        self.connection = ConnectionExchange(
            service, events=self.events, poller=self.poller, interval=interval
        )
        self.credential = CredentialExchange(
            service,
            fmt=variant.fmt,
            events=self.events,
            poller=self.poller,
            interval=interval,
        )
        self.presentation = PresentationExchange(
            service,
            fmt=variant.fmt,
            events=self.events,
            poller=self.poller,
            interval=interval,
        )
        self.schema_id: Optional[str] = None
        self.cred_def_id: Optional[str] = None
        self.issuer_did: Optional[str] = None
        self.closed = False

    @property
    def name(self) -> str:
        return f"{self.service.name} {self.variant.value}"

    async def __aenter__(self) -> "FlowCoordinator":
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    def exchange(self, kind: ExchangeKind) -> Exchange:
        if kind is ExchangeKind.CONNECTION:
            return self.connection
        if kind is ExchangeKind.CREDENTIAL:
            return self.credential
        return self.presentation

    def _check_open(self):
        if self.closed:
            raise SequenceError(f"{self.name}: flow is closed")

    def _check_role(self, role: ExchangeRole, operation: str):
        if self.variant.role is not role:
            raise SequenceError(
                f"{self.name}: {operation} is not part of the {self.variant.value} flow"
            )

    def _check_ready(self, exchange: Exchange, operation: str):
        if not exchange.is_ready:
            raise SequenceError(
                f"{self.name}: cannot {operation} before the {exchange.kind.value} "
                f"exchange is ready (state {exchange.state})"
            )

    async def connect(
        self, alias: str, invitation_url: Optional[str] = None
    ) -> Invitation:
        """Create (inviter) or accept (invitee) the connection invitation."""
        self._check_open()
        if self.variant.role is ExchangeRole.INITIATOR:
            invitation = await self.connection.create_invitation(alias)
        else:
            url = require(invitation_url, "invitation_url")
            invitation = Invitation(
                await self.connection.accept_invitation(alias, url), url
            )
        self.connection._watch(self.interval)
        return invitation

    async def prepare(self) -> str:
        """Publish the schema and credential definition for anoncreds issuance."""
        self._check_open()
        if self.variant.fmt is not CredentialFormat.ANONCREDS:
            raise SequenceError(f"{self.name}: only anoncreds issuance needs prepare")
        if self.cred_def_id:
            return self.cred_def_id

        if not self.schema_id:
            self.schema_id = await self.service.publish_schema()
        self.cred_def_id = await self.service.publish_cred_def(self.schema_id)
        LOGGER.info("%s: credential definition %s ready", self.name, self.cred_def_id)
        return self.cred_def_id

    async def issue(
        self,
        attribute_values: Optional[Mapping[str, str]] = None,
        definition_ref: Optional[str] = None,
    ) -> OfferResult:
        """Offer a credential over the ready connection."""
        self._check_open()
        self._check_role(ExchangeRole.INITIATOR, "issuing")
        self._check_ready(self.connection, "issue")
        if definition_ref is None:
            if self.variant.fmt is CredentialFormat.ANONCREDS:
                if not self.cred_def_id:
                    raise SequenceError(
                        f"{self.name}: cannot issue before prepare() has published "
                        "a credential definition"
                    )
                definition_ref = self.cred_def_id
            else:
                definition_ref = W3C_CREDENTIAL_TYPE

        assert self.connection.connection_id
        result = await self.credential.send_offer(
            self.connection.connection_id,
            definition_ref,
            attribute_values or DEFAULT_ATTRIBUTES[self.variant.fmt],
        )
        self.issuer_did = result.issuer_did or self.issuer_did
        self.credential._watch(self.interval)
        return result

    async def receive_credential(self, *, timeout: Optional[float] = None) -> str:
        """Accept the credential offered over the ready connection."""
        self._check_open()
        self._check_role(ExchangeRole.RESPONDER, "receiving a credential")
        self._check_ready(self.connection, "receive a credential")

        assert self.connection.connection_id
        summary: OfferSummary = await self.credential.wait_for_offer(
            self.connection.connection_id, timeout=self._timeout(timeout)
        )
        LOGGER.info("%s: offered credential %s", self.name, summary.attribute_values)
        holder_identifier = await self.credential.accept_offer(summary.exchange_id)
        self.credential._watch(self.interval)
        return holder_identifier

    async def verify(self, constraint_ref: Optional[str] = None) -> str:
        """Request a presentation of the issued credential."""
        self._check_open()
        self._check_role(ExchangeRole.INITIATOR, "verifying")
        self._check_ready(self.credential, "request a presentation")
        if constraint_ref is None:
            constraint_ref = (
                self.cred_def_id
                if self.variant.fmt is CredentialFormat.ANONCREDS
                else self.issuer_did
            )

        assert self.connection.connection_id
        exchange_id = await self.presentation.send_request(
            self.connection.connection_id, require(constraint_ref, "constraint_ref")
        )
        self.presentation._watch(self.interval)
        return exchange_id

    async def present(self, *, timeout: Optional[float] = None) -> str:
        """Answer the proof request with the stored credential."""
        self._check_open()
        self._check_role(ExchangeRole.RESPONDER, "presenting")
        self._check_ready(self.credential, "present a credential")
        credential_id = self.credential.credential_id
        if not credential_id:
            raise SequenceError(f"{self.name}: stored credential id is not known yet")

        assert self.connection.connection_id
        exchange_id = await self.presentation.wait_for_request(
            self.connection.connection_id, timeout=self._timeout(timeout)
        )
        state = await self.presentation.submit_presentation(exchange_id, credential_id)
        self.presentation._watch(self.interval)
        return state

    async def wait_for(
        self, kind: ExchangeKind, *, timeout: Optional[float] = None
    ) -> ExchangeRecord:
        """Consume flow events until the exchange of kind is ready."""
        self._check_open()
        exchange = self.exchange(kind)
        record = exchange._require_record()

        def _settled(event: Event) -> bool:
            return (
                event.topic == exchange.topic
                and event.payload["id"] == record.id
                and (event.payload["ready"] or is_failed(event.payload["state"]))
            )

        event = self.events.get_nowait(_settled)
        assert exchange.record
        if event is None and not (
            exchange.is_ready or exchange.record.is_failed or exchange.failure
        ):
            exchange._watch(self.interval)
            LOGGER.info("%s: waiting for %s exchange...", self.name, kind.value)
            event = await self._next_settled(exchange, _settled, timeout)

        if exchange.failure:
            raise exchange.failure
        assert exchange.record
        if exchange.record.is_failed:
            raise RemoteError(
                f"{kind.value} exchange {record.id} ended in state "
                f"{exchange.record.state}"
            )
        if event is not None:
            LOGGER.debug("%s: %s", self.name, event)
        return exchange.record

    async def _next_settled(
        self,
        exchange: Exchange,
        condition: Callable[[Event], bool],
        timeout: Optional[float],
    ) -> Optional[Event]:
        """Wait for a settling event, or for the exchange to stop without one.

        A poll loop that dies publishes no event; its failure is only on the
        exchange.
        """
        getter = asyncio.ensure_future(self.events.get(condition))
        stopped = asyncio.ensure_future(exchange.settled())
        try:
            done, _ = await asyncio.wait(
                {getter, stopped},
                timeout=self._timeout(timeout),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (getter, stopped):
                if not task.done():
                    task.cancel()
        if not done:
            raise asyncio.TimeoutError(
                f"{self.name}: timed out waiting for {exchange.kind.value} exchange "
                f"(state {exchange.state})"
            )
        return getter.result() if getter in done else None

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return self.timeout if timeout is None else timeout

    async def run(
        self,
        alias: str,
        *,
        invitation_url: Optional[str] = None,
        attribute_values: Optional[Mapping[str, str]] = None,
        on_invitation: Optional[Callable[[Invitation], Any]] = None,
        timeout: Optional[float] = None,
    ) -> FlowResult:
        """Drive the flow variant from connection to verified presentation."""
        invitation = await self.connect(alias, invitation_url)
        if on_invitation:
            value = on_invitation(invitation)
            if inspect.isawaitable(value):
                await value
        await self.wait_for(ExchangeKind.CONNECTION, timeout=timeout)

        if self.variant.role is ExchangeRole.INITIATOR:
            if self.variant.fmt is CredentialFormat.ANONCREDS:
                await self.prepare()
            await self.issue(attribute_values)
            await self.wait_for(ExchangeKind.CREDENTIAL, timeout=timeout)
            await self.verify()
        else:
            await self.receive_credential(timeout=timeout)
            await self.wait_for(ExchangeKind.CREDENTIAL, timeout=timeout)
            await self.present(timeout=timeout)

        await self.wait_for(ExchangeKind.PRESENTATION, timeout=timeout)
        return self.result()

    def result(self) -> FlowResult:
        return FlowResult(
            variant=self.variant,
            connection_id=self.connection.id,
            credential_exchange_id=self.credential.id,
            presentation_exchange_id=self.presentation.id,
            cred_def_id=self.cred_def_id,
            issuer_did=self.issuer_did,
            credential_id=self.credential.credential_id,
            attribute_values=self.credential.attribute_values,
            revealed_attributes=self.presentation.revealed_attributes,
            verified=self.presentation.verified,
        )

    async def close(self):
        """Cancel every poller, then discard exchange state."""
        if self.closed:
            return
        self.closed = True
        for exchange in (self.presentation, self.credential, self.connection):
            exchange.cancel()
        await self.poller.close()
        for exchange in (self.presentation, self.credential, self.connection):
            exchange.discard()
        self.events.flush()
        LOGGER.info("%s: flow closed", self.name)
