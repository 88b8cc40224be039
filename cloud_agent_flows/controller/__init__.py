from .agent_service import AgentService
from .connection import ConnectionExchange, Invitation
from .credential_exchange import CredentialExchange, OfferResult, OfferSummary
from .errors import (
    AmbiguousStateError,
    ExchangeError,
    PollError,
    RemoteError,
    SequenceError,
    StateTransitionError,
    ValidationError,
)
from .flows import FlowCoordinator, FlowResult, FlowVariant
from .poller import PollHandle, Poller
from .presentation_exchange import PresentationExchange
from .state import (
    CredentialFormat,
    ExchangeKind,
    ExchangeRecord,
    ExchangeRole,
    Verification,
)


__all__ = [
    "AgentService",
    "AmbiguousStateError",
    "ConnectionExchange",
    "CredentialExchange",
    "CredentialFormat",
    "ExchangeError",
    "ExchangeKind",
    "ExchangeRecord",
    "ExchangeRole",
    "FlowCoordinator",
    "FlowResult",
    "FlowVariant",
    "Invitation",
    "OfferResult",
    "OfferSummary",
    "PollError",
    "PollHandle",
    "Poller",
    "PresentationExchange",
    "RemoteError",
    "SequenceError",
    "StateTransitionError",
    "ValidationError",
    "Verification",
]
