import asyncio
import base64
import json
from typing import Any, Callable, Dict, List, Tuple

import httpx
import pytest

from cloud_agent_flows.controller.agent_service import AgentService

INTERVAL = 0.01
BASE_URL = "http://agent.test"


def make_invitation_url(label: str = "Cloud Agent") -> str:
    invitation = {
        "@type": "https://didcomm.org/connections/1.0/invitation",
        "@id": "3fa85f64-5717-4562-b3fc-2c963f66afa6",
        "label": label,
        "recipientKeys": ["H3C2AVvLMv6gmMNam3uVAjZpfkcJCwDwnZn6z3wXmqPV"],
        "serviceEndpoint": "https://agent.example.com",
    }
    encoded = base64.urlsafe_b64encode(json.dumps(invitation).encode()).decode()
    return f"https://agent.example.com?c_i={encoded.rstrip('=')}"


class ScriptedAgent:
    """Answers agent service routes from per-route scripts.

    Each route answers with its scripted responses in order and keeps
    repeating the last one. A response is a JSON body, a (status, body)
    tuple, or a callable taking the request.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Any]] = {}
        self.requests: List[httpx.Request] = []

    def on(self, method: str, path: str, *responses: Any) -> "ScriptedAgent":
        self.routes[(method.upper(), path)] = list(responses)
        return self

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method.upper() and request.url.path == path
        ]

    def bodies(self, method: str, path: str) -> List[dict]:
        return [json.loads(request.content) for request in self.calls(method, path)]

    def index(self, method: str, path: str) -> int:
        """Position of the first matching request."""
        for position, request in enumerate(self.requests):
            if request.method == method.upper() and request.url.path == path:
                return position
        raise AssertionError(f"No {method} {path} request was made")

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        script = self.routes.get((request.method, request.url.path))
        if not script:
            return httpx.Response(404, json={"error": "route not scripted"})

        response = script.pop(0) if len(script) > 1 else script[0]
        if callable(response):
            return response(request)
        if isinstance(response, tuple):
            status, body = response
            return httpx.Response(status, json=body)
        return httpx.Response(200, json=response)


def states(*names: str) -> List[Dict[str, str]]:
    return [{"state": name} for name in names]


@pytest.fixture
def agent():
    yield ScriptedAgent()


@pytest.fixture
def service(agent: ScriptedAgent):
    yield AgentService("test", BASE_URL, transport=httpx.MockTransport(agent))


@pytest.fixture
def eventually() -> Callable:
    async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0):
        async def _poll():
            while not predicate():
                await asyncio.sleep(INTERVAL)

        await asyncio.wait_for(_poll(), timeout)

    return _eventually
