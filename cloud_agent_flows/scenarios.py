"""A set of scenarios to be executed by the demo scripts."""

import asyncio
from os import getenv
import random
import string
from typing import Mapping, NamedTuple, Optional

from . import AgentService, FlowCoordinator, FlowResult, FlowVariant, logging_to_stdout
from .controller.connection import Invitation

INVITER = getenv("INVITER", "http://localhost:3000")
INVITEE = getenv("INVITEE", "http://localhost:3001")
POLL_INTERVAL = float(getenv("POLL_INTERVAL", "1.0"))


def random_string(size):
    """Generate a random string."""
    return "".join(
        random.choice(string.ascii_letters + string.digits) for _ in range(size)
    )


def default_alias(prefix: str) -> str:
    return f"{prefix}-{random_string(6)}"


class IssuerHolder(NamedTuple):
    issuer: FlowResult
    holder: FlowResult


async def issued_and_verified(
    service: AgentService,
    *,
    variant: FlowVariant = FlowVariant.W3C_ISSUE_AND_VERIFY,
    alias: Optional[str] = None,
    attribute_values: Optional[Mapping[str, str]] = None,
    interval: float = POLL_INTERVAL,
    timeout: Optional[float] = None,
    invitations: "Optional[asyncio.Queue[Invitation]]" = None,
) -> FlowResult:
    """Issue a credential over a new connection, then verify its presentation."""
    async with FlowCoordinator(
        service, variant, interval=interval, timeout=timeout
    ) as flow:
        return await flow.run(
            alias or default_alias("holder"),
            attribute_values=attribute_values,
            on_invitation=invitations.put if invitations else None,
            timeout=timeout,
        )


async def held_and_proved(
    service: AgentService,
    invitation_url: str,
    *,
    alias: Optional[str] = None,
    interval: float = POLL_INTERVAL,
    timeout: Optional[float] = None,
) -> FlowResult:
    """Accept an invitation, store the offered credential, then prove it."""
    async with FlowCoordinator(
        service, FlowVariant.W3C_HOLD_AND_PROVE, interval=interval, timeout=timeout
    ) as flow:
        return await flow.run(
            alias or default_alias("issuer"),
            invitation_url=invitation_url,
            timeout=timeout,
        )


async def paired(
    issuer: AgentService,
    holder: AgentService,
    *,
    attribute_values: Optional[Mapping[str, str]] = None,
    interval: float = POLL_INTERVAL,
    timeout: Optional[float] = None,
) -> IssuerHolder:
    """Run the W3C issuer and holder flows against each other."""
    invitations: "asyncio.Queue[Invitation]" = asyncio.Queue()
    issuer_task = asyncio.ensure_future(
        issued_and_verified(
            issuer,
            attribute_values=attribute_values,
            interval=interval,
            timeout=timeout,
            invitations=invitations,
        )
    )
    getter = asyncio.ensure_future(invitations.get())
    try:
        done, _ = await asyncio.wait(
            {issuer_task, getter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        if getter not in done:
            if issuer_task in done:
                # Issuer flow failed before creating an invitation
                await issuer_task
            raise asyncio.TimeoutError("Issuer flow did not create an invitation")
        invitation = getter.result()
        holder_result = await held_and_proved(
            holder, invitation.invitation_url, interval=interval, timeout=timeout
        )
        issuer_result = await issuer_task
    finally:
        for task in (getter, issuer_task):
            if not task.done():
                task.cancel()
    return IssuerHolder(issuer_result, holder_result)


async def main():
    logging_to_stdout()

    async with AgentService("issuer", INVITER) as issuer, AgentService(
        "holder", INVITEE
    ) as holder:
        result = await paired(issuer, holder)
    print(result.issuer.to_dict())
    print(result.holder.to_dict())


if __name__ == "__main__":
    asyncio.run(main())
