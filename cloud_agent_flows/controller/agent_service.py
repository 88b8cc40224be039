"""Interface for interacting with the agent service."""
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from .api import Api, ApiError
from .errors import PollError, RemoteError
from .state import CredentialFormat
from .utils import expect


LOGGER = logging.getLogger(__name__)


class AgentService:
    """Command and query client for an agent service.

    Commands (POST) are sent at most once and failures raise RemoteError.
    Queries (GET) are safe to repeat and failures raise PollError so pollers
    can retry them.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        headers: Optional[dict] = None,
        timeout: float = 5.0,
        long_timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.base_url = base_url
        self.long_timeout = long_timeout
        headers = dict(headers or {})
        if api_key:
            headers["x-api-key"] = api_key
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "AgentService":
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    async def close(self):
        await self.client.aclose()

    def _api(self, method: str, path: str, *, timeout: Optional[float] = None) -> Api:
        return Api(self.name, self.client, method, path, timeout=timeout)

    async def _command(
        self,
        operation: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        try:
            return await self._api("POST", path, timeout=timeout)(json_body=json_body)
        except ApiError as err:
            LOGGER.error("%s: failed to %s: %s", self.name, operation, err.message)
            raise RemoteError(
                f"Failed to {operation}",
                status_code=err.status_code,
                detail=err.content if err.content is not None else err.message,
            ) from err

    async def _query(self, operation: str, path: str, **params: str) -> Dict[str, Any]:
        try:
            return await self._api("GET", path)(**params)
        except ApiError as err:
            raise PollError(
                f"{self.name}: failed to {operation}: {err.message} "
                f"(status={err.status_code})"
            ) from err

    async def create_invitation(self, alias: str) -> Dict[str, str]:
        body = await self._command(
            "create connection invitation",
            "/api/connection-invitation",
            {"connectionAlias": alias},
        )
        return {
            "connectionId": expect(
                body, "connectionId", "create connection invitation"
            ),
            "invitationUrl": expect(
                body, "invitationUrl", "create connection invitation"
            ),
        }

    async def accept_invitation(self, alias: str, invitation_url: str) -> str:
        body = await self._command(
            "accept connection invitation",
            "/api/accept-connection-invitation",
            {"connectionAlias": alias, "invitationUrl": invitation_url},
        )
        return expect(body, "connectionId", "accept connection invitation")

    async def get_connection_state(self, connection_id: str) -> Dict[str, Any]:
        body = await self._query(
            "get connection state",
            "/api/connection/{connection_id}",
            connection_id=connection_id,
        )
        if not body.get("state"):
            raise PollError(f"{self.name}: connection state missing from response")
        return body

    async def publish_schema(self) -> str:
        body = await self._command("publish schema", "/api/anoncreds/schema")
        return expect(body, "schemaId", "publish schema")

    async def publish_cred_def(self, schema_id: str) -> str:
        """Publish cred def and return cred def id."""
        body = await self._command(
            "publish credential definition",
            "/api/anoncreds/credential-definition",
            {"schemaId": schema_id},
            timeout=self.long_timeout,
        )
        return expect(body, "credDefId", "publish credential definition")

    async def send_credential_offer(
        self,
        fmt: CredentialFormat,
        connection_id: str,
        definition_ref: str,
        attribute_values: Mapping[str, str],
    ) -> Dict[str, Any]:
        reference_key = (
            "credDefId" if fmt is CredentialFormat.ANONCREDS else "credentialType"
        )
        body = await self._command(
            "send credential offer",
            f"/api/{fmt.value}/issue-credential",
            {
                "connectionId": connection_id,
                reference_key: definition_ref,
                "credentialData": dict(attribute_values),
            },
        )
        expect(body, "credentialExchangeId", "send credential offer")
        return body

    async def get_credential_offers(
        self, fmt: CredentialFormat, connection_id: str
    ) -> Dict[str, Any]:
        return await self._query(
            "get credential offer",
            f"/api/{fmt.value}/credential-offer/{{connection_id}}",
            connection_id=connection_id,
        )

    async def accept_credential_offer(
        self, fmt: CredentialFormat, exchange_id: str, holder_identifier: str
    ) -> Dict[str, Any]:
        return await self._command(
            "send credential request",
            f"/api/{fmt.value}/credential-request",
            {
                "credentialExchangeId": exchange_id,
                "holderIdentifier": holder_identifier,
            },
        )

    async def get_credential_exchange_state(
        self, fmt: CredentialFormat, exchange_id: str
    ) -> Dict[str, Any]:
        body = await self._query(
            "get credential exchange state",
            f"/api/{fmt.value}/credential-exchange/{{exchange_id}}",
            exchange_id=exchange_id,
        )
        if not body.get("state"):
            raise PollError(
                f"{self.name}: credential exchange state missing from response"
            )
        return body

    async def send_proof_request(
        self, fmt: CredentialFormat, connection_id: str, constraint_ref: str
    ) -> str:
        constraint_key = (
            "credDefId" if fmt is CredentialFormat.ANONCREDS else "issuerDid"
        )
        body = await self._command(
            "send proof request",
            f"/api/{fmt.value}/proof-request",
            {"connectionId": connection_id, constraint_key: constraint_ref},
        )
        return expect(body, "presentationExchangeId", "send proof request")

    async def get_proof_requests(
        self, fmt: CredentialFormat, connection_id: str
    ) -> Dict[str, Any]:
        return await self._query(
            "get proof request",
            f"/api/{fmt.value}/proof-request/{{connection_id}}",
            connection_id=connection_id,
        )

    async def send_presentation(
        self, fmt: CredentialFormat, exchange_id: str, credential_id: str
    ) -> str:
        body = await self._command(
            "send proof presentation",
            f"/api/{fmt.value}/proof-presentation",
            {"presentationExchangeId": exchange_id, "credentialId": credential_id},
        )
        return body.get("state") or ""

    async def get_presentation_exchange_state(
        self, fmt: CredentialFormat, exchange_id: str
    ) -> Dict[str, Any]:
        body = await self._query(
            "get presentation exchange state",
            f"/api/{fmt.value}/presentation-exchange/{{exchange_id}}",
            exchange_id=exchange_id,
        )
        if not body.get("state"):
            raise PollError(
                f"{self.name}: presentation exchange state missing from response"
            )
        return body
