import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx


LOGGER = logging.getLogger(__name__)


class ApiError(Exception):
    """Raised when error on API call."""

    def __init__(self, message: str, status_code: Optional[int] = None, content=None):
        super().__init__(message, status_code, content)
        self.message = message
        self.status_code = status_code
        self.content = content


def _dump(value: Any) -> str:
    out = json.dumps(value, indent=2, sort_keys=True)
    if out.count("\n") > 30:
        out = json.dumps(value, sort_keys=True)
    return out


class Api:
    """A single agent service endpoint, logging each request and response."""

    def __init__(
        self,
        name: str,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        *,
        timeout: Optional[float] = None,
    ):
        self.name = name
        self.client = client
        self.method = method.upper()
        self.path = path
        self.timeout = timeout

    async def __call__(
        self, *, json_body: Optional[Dict[str, Any]] = None, **path_params: str
    ) -> Dict[str, Any]:
        path = self.path.format(
            **{key: quote(value, safe="") for key, value in path_params.items()}
        )
        LOGGER.info(
            "Request to %s %s %s: %s",
            self.name,
            self.method,
            path,
            _dump(json_body or {}),
        )
        extra: Dict[str, Any] = {}
        if self.timeout is not None:
            extra["timeout"] = self.timeout
        try:
            response = await self.client.request(
                self.method, path, json=json_body, **extra
            )
        except httpx.HTTPError as err:
            raise ApiError(f"Request failed: {err}") from err

        if not response.is_success:
            raise ApiError("Request failed!", response.status_code, response.text)

        try:
            body = response.json() if response.content else {}
        except ValueError as err:
            raise ApiError(
                "Response was not JSON", response.status_code, response.text
            ) from err

        if not isinstance(body, dict):
            raise ApiError(
                "Response was not a JSON object", response.status_code, response.text
            )

        LOGGER.info("Response: %s", _dump(body))
        return body
