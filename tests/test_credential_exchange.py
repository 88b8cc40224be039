"""Test credential issuance from both sides."""
import asyncio
import uuid

import httpx
import pytest

from conftest import INTERVAL, ScriptedAgent, states

from cloud_agent_flows.controller.credential_exchange import (
    CredentialExchange,
    OfferResult,
)
from cloud_agent_flows.controller.errors import (
    AmbiguousStateError,
    RemoteError,
    SequenceError,
    ValidationError,
)
from cloud_agent_flows.controller.state import CredentialFormat, ExchangeRole

W3C = CredentialFormat.W3C
ANONCREDS = CredentialFormat.ANONCREDS
ATTRIBUTES = {"givenName": "Alice", "familyName": "Smith"}


def w3c(service, **kwargs) -> CredentialExchange:
    return CredentialExchange(service, fmt=W3C, interval=INTERVAL, **kwargs)


@pytest.mark.asyncio
async def test_send_offer(agent: ScriptedAgent, service):
    agent.on(
        "POST",
        "/api/w3c/issue-credential",
        {"credentialExchangeId": "cx-1", "issuerDid": "did:key:issuer"},
    )
    credential = w3c(service)

    result = await credential.send_offer("conn-1", "PermanentResident", ATTRIBUTES)

    assert result == OfferResult("cx-1", "did:key:issuer")
    assert credential.state == "offer-sent"
    assert credential.record.role is ExchangeRole.INITIATOR
    assert credential.record.payload.issuer_did == "did:key:issuer"
    assert credential.attribute_values == ATTRIBUTES


@pytest.mark.asyncio
async def test_send_offer_validation(agent: ScriptedAgent, service):
    with pytest.raises(ValidationError):
        await w3c(service).send_offer("", "PermanentResident", ATTRIBUTES)
    with pytest.raises(ValidationError):
        await w3c(service).send_offer("conn-1", "", ATTRIBUTES)
    assert agent.requests == []


@pytest.mark.asyncio
async def test_rejected_offer(agent: ScriptedAgent, service):
    agent.on("POST", "/api/w3c/issue-credential", (500, {"error": "no public DID"}))
    credential = w3c(service)
    with pytest.raises(RemoteError):
        await credential.send_offer("conn-1", "PermanentResident", ATTRIBUTES)
    assert credential.record is None


@pytest.mark.asyncio
async def test_issuer_ready_before_acknowledgement(
    agent: ScriptedAgent, service, eventually
):
    agent.on("POST", "/api/w3c/issue-credential", {"credentialExchangeId": "cx-1"})
    agent.on(
        "GET",
        "/api/w3c/credential-exchange/cx-1",
        *states("offer-sent", "request-received", "credential-issued"),
    )
    credential = w3c(service)
    await credential.send_offer("conn-1", "PermanentResident", ATTRIBUTES)

    # The acknowledgement never arrives, which must not block the issuer
    record = await credential.await_issuance(timeout=2)
    assert record.state == "credential-issued"
    assert credential.polling

    agent.on("GET", "/api/w3c/credential-exchange/cx-1", {"state": "done"})
    await eventually(lambda: credential.state == "done")
    await eventually(lambda: not credential.polling)


@pytest.mark.asyncio
async def test_anoncreds_issuer_readiness(agent: ScriptedAgent, service):
    agent.on(
        "POST", "/api/anoncreds/issue-credential", {"credentialExchangeId": "cx-1"}
    )
    agent.on(
        "GET",
        "/api/anoncreds/credential-exchange/cx-1",
        *states("request_received", "credential_issued", "credential_acked"),
    )
    credential = CredentialExchange(service, fmt=ANONCREDS, interval=INTERVAL)
    await credential.send_offer("conn-1", "cred-def-1", {"name": "Alice"})

    record = await credential.await_issuance(timeout=2)
    assert record.state in ("credential_issued", "credential_acked")
    credential.cancel()


@pytest.mark.asyncio
async def test_discover_offer(agent: ScriptedAgent, service):
    agent.on(
        "GET",
        "/api/w3c/credential-offer/conn-1",
        {},
        {"credentialExchangeId": "cx-1", "credentialData": ATTRIBUTES},
    )
    credential = w3c(service)

    assert await credential.discover_offer("conn-1") is None
    assert credential.record is None

    summary = await credential.discover_offer("conn-1")
    assert summary.exchange_id == "cx-1"
    assert summary.attribute_values == ATTRIBUTES
    assert credential.state == "offer-received"
    assert credential.record.role is ExchangeRole.RESPONDER

    # Rediscovering the same offer is idempotent
    first = credential.record
    assert (await credential.discover_offer("conn-1")).exchange_id == "cx-1"
    assert credential.record is first


@pytest.mark.asyncio
async def test_discover_offer_from_results_list(agent: ScriptedAgent, service):
    agent.on(
        "GET",
        "/api/w3c/credential-offer/conn-1",
        {"results": [{"credentialExchangeId": "cx-1", "credentialData": ATTRIBUTES}]},
    )
    summary = await w3c(service).discover_offer("conn-1")
    assert summary.exchange_id == "cx-1"


@pytest.mark.asyncio
async def test_ambiguous_offers(agent: ScriptedAgent, service):
    agent.on(
        "GET",
        "/api/w3c/credential-offer/conn-1",
        {
            "results": [
                {"credentialExchangeId": "cx-1"},
                {"credentialExchangeId": "cx-2"},
            ]
        },
    )
    credential = w3c(service)
    with pytest.raises(AmbiguousStateError):
        await credential.discover_offer("conn-1")
    assert credential.record is None

    with pytest.raises(AmbiguousStateError):
        await credential.wait_for_offer("conn-1", timeout=2)


@pytest.mark.asyncio
async def test_wait_for_offer(agent: ScriptedAgent, service):
    agent.on(
        "GET",
        "/api/w3c/credential-offer/conn-1",
        {},
        (503, {"error": "unavailable"}),
        {},
        {"credentialExchangeId": "cx-1", "credentialData": ATTRIBUTES},
    )
    credential = w3c(service)

    summary = await credential.wait_for_offer("conn-1", timeout=2)
    assert summary.exchange_id == "cx-1"
    assert credential.id == "cx-1"
    assert len(agent.calls("GET", "/api/w3c/credential-offer/conn-1")) == 4


@pytest.mark.asyncio
async def test_wait_for_offer_timeout(agent: ScriptedAgent, service):
    agent.on("GET", "/api/w3c/credential-offer/conn-1", {})
    credential = w3c(service)
    with pytest.raises(asyncio.TimeoutError):
        await credential.wait_for_offer("conn-1", timeout=INTERVAL * 5)
    assert not credential.poller.active(("credential-offer", "conn-1"))


@pytest.mark.asyncio
async def test_accept_offer_uses_fresh_holder_identifiers(
    agent: ScriptedAgent, service
):
    agent.on(
        "GET",
        "/api/w3c/credential-offer/conn-1",
        {"credentialExchangeId": "cx-1"},
    )
    agent.on("POST", "/api/w3c/credential-request", {"holderDid": "did:key:holder"})

    first, second = w3c(service), w3c(service)
    await first.discover_offer("conn-1")
    identifiers = [await first.accept_offer("cx-1"), await second.accept_offer("cx-2")]

    assert identifiers[0] != identifiers[1]
    for identifier in identifiers:
        uuid.UUID(identifier)
    assert first.record.payload.holder_identifier == identifiers[0]
    assert first.record.payload.holder_did == "did:key:holder"
    assert [
        body["holderIdentifier"]
        for body in agent.bodies("POST", "/api/w3c/credential-request")
    ] == identifiers


@pytest.mark.asyncio
async def test_accept_offer_validation(agent: ScriptedAgent, service):
    with pytest.raises(ValidationError):
        await w3c(service).accept_offer("")
    assert agent.requests == []


@pytest.mark.asyncio
async def test_accept_other_offer_is_rejected(agent: ScriptedAgent, service):
    agent.on(
        "GET", "/api/w3c/credential-offer/conn-1", {"credentialExchangeId": "cx-1"}
    )
    credential = w3c(service)
    await credential.discover_offer("conn-1")
    with pytest.raises(SequenceError):
        await credential.accept_offer("cx-9")


@pytest.mark.asyncio
async def test_holder_ready_once_stored(agent: ScriptedAgent, service):
    agent.on(
        "GET", "/api/w3c/credential-offer/conn-1", {"credentialExchangeId": "cx-1"}
    )
    agent.on("POST", "/api/w3c/credential-request", {"holderDid": "did:key:holder"})
    agent.on(
        "GET",
        "/api/w3c/credential-exchange/cx-1",
        *states("request-sent", "credential-received"),
        {"state": "done", "credentialId": "cred-1"},
    )
    credential = w3c(service)
    seen = []
    credential.subscribe(lambda record: seen.append(record.state))

    await credential.discover_offer("conn-1")
    await credential.accept_offer("cx-1")
    assert credential.credential_id is None

    record = await credential.await_issuance(timeout=2)
    assert record.state == "done"
    assert credential.credential_id == "cred-1"
    assert "credential-received" in seen
    assert not credential.polling


@pytest.mark.asyncio
async def test_abandoned_issuance(agent: ScriptedAgent, service):
    agent.on("POST", "/api/w3c/issue-credential", {"credentialExchangeId": "cx-1"})
    agent.on(
        "GET",
        "/api/w3c/credential-exchange/cx-1",
        *states("request-received", "abandoned"),
    )
    credential = w3c(service)
    await credential.send_offer("conn-1", "PermanentResident", ATTRIBUTES)

    with pytest.raises(RemoteError):
        await credential.await_issuance(timeout=2)


@pytest.mark.asyncio
async def test_accept_offer_keeps_state_polled_meanwhile(
    agent: ScriptedAgent, service
):
    agent.on(
        "GET", "/api/w3c/credential-offer/conn-1", {"credentialExchangeId": "cx-1"}
    )
    credential = w3c(service)

    def _request(request: httpx.Request) -> httpx.Response:
        # A polled snapshot lands while the request is in flight
        credential.record = credential.record.advance("request-sent", polled=True)
        return httpx.Response(200, json={"holderDid": "did:key:holder"})

    agent.on("POST", "/api/w3c/credential-request", _request)
    await credential.discover_offer("conn-1")

    holder_identifier = await credential.accept_offer("cx-1")
    assert credential.state == "request-sent"
    assert credential.record.last_polled_at is not None
    assert credential.record.payload.holder_identifier == holder_identifier
