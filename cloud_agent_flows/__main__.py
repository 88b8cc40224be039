"""Run the demo."""

import asyncio
from contextlib import contextmanager
import json
import os
from os import getenv
import sys

from typing import Optional

from blessings import Terminal

from . import AgentService, FlowCoordinator, FlowVariant, logging_to_stdout
from .controller.connection import Invitation
from .controller.state import CredentialFormat, ExchangeKind, ExchangeRole
from .scenarios import default_alias


AGENT_SERVICE = getenv("AGENT_SERVICE", "http://localhost:3000")
AGENT_SERVICE_API_KEY = getenv("AGENT_SERVICE_API_KEY")
POLL_INTERVAL = float(getenv("POLL_INTERVAL", "1.0"))
FLOW = getenv("FLOW", FlowVariant.W3C_ISSUE_AND_VERIFY.value)
CONNECTION_ALIAS = getenv("CONNECTION_ALIAS")
INVITATION_URL = getenv("INVITATION_URL")

term = Terminal()


@contextmanager
def section(title: str):
    if sys.stdout.isatty():
        size = os.get_terminal_size()
        left = "=" * (int(size.columns / 2) - int((len(title) + 1) / 2))
        right = "=" * (size.columns - (len(left) + len(title) + 2))
        print(f"{term.blue}{term.bold}{left} {title} {right}{term.normal}")
    else:
        print(title)
    yield


def show_invitation(invitation: Invitation):
    print(f"{term.bold}Invitation URL:{term.normal} {invitation.invitation_url}")


async def main(
    service: Optional[AgentService] = None,
    variant: Optional[FlowVariant] = None,
    invitation_url: Optional[str] = None,
):
    """Run steps."""
    logging_to_stdout()

    service = service or AgentService(
        "agent", AGENT_SERVICE, api_key=AGENT_SERVICE_API_KEY
    )
    variant = variant or FlowVariant(FLOW)
    invitation_url = invitation_url or INVITATION_URL
    alias = CONNECTION_ALIAS or default_alias(
        "holder" if variant.role is ExchangeRole.INITIATOR else "issuer"
    )

    async with service, FlowCoordinator(
        service, variant, interval=POLL_INTERVAL
    ) as flow:
        with section(f"Establish connection ({variant.value})"):
            invitation = await flow.connect(alias, invitation_url)
            if variant.role is ExchangeRole.INITIATOR:
                show_invitation(invitation)
            await flow.wait_for(ExchangeKind.CONNECTION)

        if variant.role is ExchangeRole.INITIATOR:
            if variant.fmt is CredentialFormat.ANONCREDS:
                with section("Publish schema and credential definition"):
                    await flow.prepare()

            with section("Issue credential"):
                await flow.issue()
                await flow.wait_for(ExchangeKind.CREDENTIAL)

            with section("Verify credential"):
                await flow.verify()
                await flow.wait_for(ExchangeKind.PRESENTATION)
        else:
            with section("Accept credential offer"):
                await flow.receive_credential()
                await flow.wait_for(ExchangeKind.CREDENTIAL)

            with section("Present credential"):
                await flow.present()
                await flow.wait_for(ExchangeKind.PRESENTATION)

        with section("Result"):
            print(json.dumps(flow.result().to_dict(), indent=2, sort_keys=True))


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
