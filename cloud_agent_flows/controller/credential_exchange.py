"""Credential issuance between issuer and holder."""
import asyncio
import logging
from typing import Dict, Mapping, NamedTuple, Optional, Tuple
import uuid

from .agent_service import AgentService
from .errors import AmbiguousStateError, SequenceError
from .events import Event, EventQueue
from .poller import Poller
from .record import Exchange
from .state import (
    CredentialFormat,
    CredentialPayload,
    ExchangeKind,
    ExchangeRecord,
    ExchangeRole,
    Payload,
    initial_state,
)
from .utils import candidates, require


LOGGER = logging.getLogger(__name__)


class OfferResult(NamedTuple):
    exchange_id: str
    issuer_did: Optional[str] = None


class OfferSummary(NamedTuple):
    exchange_id: str
    attribute_values: Dict[str, str]


class CredentialExchange(Exchange):

    kind = ExchangeKind.CREDENTIAL
    topic = "issue_credential"

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
    def credential_id(self) -> Optional[str]:
        """Id of the stored credential, known once the holder has stored it."""
        if self.record is None:
            return None
        return self.record.payload.credential_id  # type: ignore[union-attr]

    @property
    def attribute_values(self) -> Dict[str, str]:
        if self.record is None:
            return {}
        return dict(self.record.payload.attribute_values)  # type: ignore[union-attr]

    async def send_offer(
        self,
        connection_id: str,
        definition_ref: str,
        attribute_values: Mapping[str, str],
    ) -> OfferResult:
        """Offer a credential over connection_id.

        definition_ref is the credential definition id for anoncreds and the
        credential type for W3C credentials.
        """
        record = self._begin(ExchangeRole.INITIATOR)
        require(connection_id, "connection_id")
        require(definition_ref, "definition_ref")

        body = await self.service.send_credential_offer(
            self.fmt, connection_id, definition_ref, attribute_values
        )
        result = OfferResult(body["credentialExchangeId"], body.get("issuerDid"))
        await self._update(
            record.with_id(result.exchange_id).advance(
                initial_state(self.kind, ExchangeRole.INITIATOR, self.fmt),
                CredentialPayload(
                    attribute_values=dict(attribute_values),
                    issuer_did=result.issuer_did,
                ),
            )
        )
        return result

    async def _find_offer(self, connection_id: str) -> Optional[OfferSummary]:
        body = await self.service.get_credential_offers(self.fmt, connection_id)
        found = candidates(body, "credentialExchangeId")
        if not found:
            return None
        if len(found) > 1:
            raise AmbiguousStateError(
                f"{self.service.name}: {len(found)} credential offers pending on "
                f"connection {connection_id}"
            )
        return OfferSummary(
            found[0]["credentialExchangeId"], dict(found[0].get("credentialData") or {})
        )

    async def _adopt(self, exchange_id: str, attribute_values: Mapping[str, str]):
        if self.record is not None:
            if self.record.id == exchange_id:
                return
            raise SequenceError(
                f"{self.name}: already holds credential exchange {self.record.id}, "
                f"cannot adopt {exchange_id}"
            )
        record = ExchangeRecord.start(self.kind, ExchangeRole.RESPONDER, self.fmt)
        await self._update(
            record.with_id(exchange_id).advance(
                initial_state(self.kind, ExchangeRole.RESPONDER, self.fmt),
                CredentialPayload(attribute_values=dict(attribute_values)),
            )
        )

    async def _adopt_offer(self, summary: Optional[OfferSummary]):
        if summary is not None:
            await self._adopt(summary.exchange_id, summary.attribute_values)

    async def discover_offer(self, connection_id: str) -> Optional[OfferSummary]:
        """Look once for a credential offer received over connection_id."""
        require(connection_id, "connection_id")
        summary = await self._find_offer(connection_id)
        await self._adopt_offer(summary)
        return summary

    async def wait_for_offer(
        self,
        connection_id: str,
        *,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> OfferSummary:
        """Poll until a credential offer is received over connection_id."""
        require(connection_id, "connection_id")
        LOGGER.info("%s: awaiting credential offer...", self.service.name)
        handle = self.poller.start(
            ("credential-offer", connection_id),
            lambda: self._find_offer(connection_id),
            lambda summary: summary is not None,
            self._adopt_offer,
            interval=interval if interval is not None else self.interval,
        )
        try:
            summary = await handle.wait(timeout)
        except asyncio.TimeoutError:
            self.poller.cancel(handle)
            raise asyncio.TimeoutError(
                f"{self.service.name}: timed out awaiting credential offer"
            ) from None
        assert summary is not None
        return summary

    async def accept_offer(self, exchange_id: str) -> str:
        """Request the offered credential, returning the holder identifier.

        A fresh identifier is generated for every credential so that holder
        DIDs cannot be correlated across credentials.
        """
        require(exchange_id, "exchange_id")
        await self._adopt(exchange_id, {})
        record = self._require_role(ExchangeRole.RESPONDER)

        holder_identifier = str(uuid.uuid4())
        body = await self.service.accept_credential_offer(
            self.fmt, exchange_id, holder_identifier
        )
        # Polling may have advanced the record during the request
        record = self._require_record()
        await self._update(
            record.advance(
                record.state,
                CredentialPayload(
                    holder_identifier=holder_identifier,
                    holder_did=body.get("holderDid"),
                ),
            )
        )
        LOGGER.info("%s: credential requested", self.name)
        return holder_identifier

    async def await_issuance(
        self, *, interval: Optional[float] = None, timeout: Optional[float] = None
    ) -> ExchangeRecord:
        """Wait until the credential is issued (issuer) or stored (holder)."""
        return await self.wait_ready(interval=interval, timeout=timeout)

    async def _fetch(self) -> Tuple[str, Optional[Payload]]:
        record = self._require_record()
        body = await self.service.get_credential_exchange_state(self.fmt, record.id)
        return body["state"], CredentialPayload(credential_id=body.get("credentialId"))
