"""Pairwise connection between two agents."""
import logging
from typing import NamedTuple, Optional, Tuple

from .record import Exchange
from .state import (
    ConnectionPayload,
    ExchangeKind,
    ExchangeRecord,
    ExchangeRole,
    Payload,
    initial_state,
)
from .utils import decode_invitation, require


LOGGER = logging.getLogger(__name__)


class Invitation(NamedTuple):
    connection_id: str
    invitation_url: str


class ConnectionExchange(Exchange):
    kind = ExchangeKind.CONNECTION
    topic = "connections"

    @property
    def connection_id(self) -> Optional[str]:
        return self.id

    async def create_invitation(self, alias: str) -> Invitation:
        """Create an invitation for the counterparty to accept."""
        record = self._begin(ExchangeRole.INITIATOR)
        require(alias, "alias")
        result = await self.service.create_invitation(alias)
        invitation = Invitation(result["connectionId"], result["invitationUrl"])

        await self._update(
            record.with_id(invitation.connection_id).advance(
                initial_state(self.kind, ExchangeRole.INITIATOR),
                ConnectionPayload(invitation_url=invitation.invitation_url),
            )
        )
        LOGGER.info("%s: invitation created: %s", self.name, invitation.invitation_url)
        return invitation

    async def accept_invitation(self, alias: str, invitation_url: str) -> str:
        """Accept an invitation created by the counterparty."""
        record = self._begin(ExchangeRole.RESPONDER)
        require(alias, "alias")
        invitation = decode_invitation(invitation_url)
        LOGGER.debug(
            "%s: accepting invitation from %s",
            self.service.name,
            invitation.get("label", "unknown inviter"),
        )

        connection_id = await self.service.accept_invitation(alias, invitation_url)
        await self._update(
            record.with_id(connection_id).advance(
                initial_state(self.kind, ExchangeRole.RESPONDER),
                ConnectionPayload(invitation_url=invitation_url),
            )
        )
        return connection_id

    async def await_active(
        self, *, interval: Optional[float] = None, timeout: Optional[float] = None
    ) -> ExchangeRecord:
        """Wait until the connection can carry the next exchange.

        The inviter may proceed from "response"; the invitee waits for "active".
        """
        return await self.wait_ready(interval=interval, timeout=timeout)

    async def _fetch(self) -> Tuple[str, Optional[Payload]]:
        record = self._require_record()
        body = await self.service.get_connection_state(record.id)
        return body["state"], None
