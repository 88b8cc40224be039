"""Exchange state vocabulary, predicates and record snapshots.

Every exchange kind advances along a fixed forward path whose spelling depends
on the role of the local agent and, for credentials and presentations, on the
credential format. Callers should use the predicates here rather than compare
state strings inline.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Dict,
    FrozenSet,
    Mapping,
    Optional,
    Tuple,
    Union,
)

from .errors import SequenceError, StateTransitionError


class ExchangeRole(Enum):
    """Which side produces the initiating artifact."""

    INITIATOR = "initiator"
    RESPONDER = "responder"


class ExchangeKind(Enum):
    CONNECTION = "connection"
    CREDENTIAL = "credential"
    PRESENTATION = "presentation"


class CredentialFormat(Enum):
    """Protocol variant used for credential and presentation exchanges."""

    ANONCREDS = "anoncreds"
    W3C = "w3c"


class Verification(Enum):
    """Verification result of a presentation; unknown until terminal."""

    UNKNOWN = "unknown"
    TRUE = "true"
    FALSE = "false"

    @classmethod
    def from_remote(cls, value: Any, *, terminal: bool) -> "Verification":
        if not terminal or value is None:
            return cls.UNKNOWN
        if isinstance(value, bool):
            return cls.TRUE if value else cls.FALSE
        if str(value).lower() == "true":
            return cls.TRUE
        if str(value).lower() == "false":
            return cls.FALSE
        return cls.UNKNOWN


FAILURE_STATES: FrozenSet[str] = frozenset({"abandoned", "error"})

_INITIATOR = ExchangeRole.INITIATOR
_RESPONDER = ExchangeRole.RESPONDER
_CONNECTION_PATH = ("invitation", "request", "response", "active")

_PATHS: Dict[
    Tuple[ExchangeKind, Optional[CredentialFormat], ExchangeRole], Tuple[str, ...]
] = {
    (ExchangeKind.CONNECTION, None, _INITIATOR): _CONNECTION_PATH,
    (ExchangeKind.CONNECTION, None, _RESPONDER): _CONNECTION_PATH,
    (ExchangeKind.CREDENTIAL, CredentialFormat.ANONCREDS, _INITIATOR): (
        "offer_sent",
        "request_received",
        "credential_issued",
        "credential_acked",
    ),
    (ExchangeKind.CREDENTIAL, CredentialFormat.ANONCREDS, _RESPONDER): (
        "offer_received",
        "request_sent",
        "credential_received",
        "credential_acked",
    ),
    (ExchangeKind.CREDENTIAL, CredentialFormat.W3C, _INITIATOR): (
        "offer-sent",
        "request-received",
        "credential-issued",
        "done",
    ),
    (ExchangeKind.CREDENTIAL, CredentialFormat.W3C, _RESPONDER): (
        "offer-received",
        "request-sent",
        "credential-received",
        "done",
    ),
    (ExchangeKind.PRESENTATION, CredentialFormat.ANONCREDS, _INITIATOR): (
        "request_sent",
        "presentation_received",
        "verified",
    ),
    (ExchangeKind.PRESENTATION, CredentialFormat.ANONCREDS, _RESPONDER): (
        "request_received",
        "presentation_sent",
        "presentation_acked",
    ),
    (ExchangeKind.PRESENTATION, CredentialFormat.W3C, _INITIATOR): (
        "request-sent",
        "presentation-received",
        "done",
    ),
    (ExchangeKind.PRESENTATION, CredentialFormat.W3C, _RESPONDER): (
        "request-received",
        "presentation-sent",
        "done",
    ),
}

# Position along the path from which an exchange may gate the next stage.
# An inviter can issue over a connection in "response"; an invitee waits for
# "active". Issuers may proceed once the credential is issued; holders only
# once it is stored.
_READY_RANK: Dict[Tuple[ExchangeKind, ExchangeRole], int] = {
    (ExchangeKind.CONNECTION, _INITIATOR): 2,
    (ExchangeKind.CONNECTION, _RESPONDER): 3,
    (ExchangeKind.CREDENTIAL, _INITIATOR): 2,
    (ExchangeKind.CREDENTIAL, _RESPONDER): 3,
    (ExchangeKind.PRESENTATION, _INITIATOR): 2,
    (ExchangeKind.PRESENTATION, _RESPONDER): 2,
}


def _build_ranks() -> Dict[ExchangeKind, Dict[str, int]]:
    ranks: Dict[ExchangeKind, Dict[str, int]] = {kind: {} for kind in ExchangeKind}
    for (kind, _, _), path in _PATHS.items():
        for rank, state in enumerate(path):
            ranks[kind][state] = rank
    return ranks


_RANKS = _build_ranks()
_TERMINAL: Dict[ExchangeKind, FrozenSet[str]] = {
    kind: frozenset(
        path[-1] for (path_kind, _, _), path in _PATHS.items() if path_kind is kind
    )
    for kind in ExchangeKind
}


def path_for(
    kind: ExchangeKind, role: ExchangeRole, fmt: Optional[CredentialFormat] = None
) -> Tuple[str, ...]:
    """Return the forward path of states for kind, role and format."""
    if kind is ExchangeKind.CONNECTION:
        fmt = None
    elif fmt is None:
        raise ValueError(f"A credential format is required for {kind.value} paths")
    return _PATHS[(kind, fmt, role)]


def initial_state(
    kind: ExchangeKind, role: ExchangeRole, fmt: Optional[CredentialFormat] = None
) -> str:
    return path_for(kind, role, fmt)[0]


def state_rank(kind: ExchangeKind, state: str) -> Optional[int]:
    """Return position of state along its path, or None if unknown."""
    return _RANKS[kind].get(state)


def is_failed(state: Optional[str]) -> bool:
    return state in FAILURE_STATES


def is_terminal(kind: ExchangeKind, state: Optional[str]) -> bool:
    """Return whether no further transition is expected from state."""
    if state is None:
        return False
    return state in FAILURE_STATES or state in _TERMINAL[kind]


def is_ready_for_next_stage(
    kind: ExchangeKind, state: Optional[str], role: ExchangeRole
) -> bool:
    """Return whether an exchange in state may gate the following stage."""
    if state is None or is_failed(state):
        return False
    rank = state_rank(kind, state)
    if rank is None:
        return False
    return rank >= _READY_RANK[(kind, role)]


def check_transition(kind: ExchangeKind, previous: Optional[str], new: str):
    """Raise StateTransitionError if new may not follow previous."""
    if new not in FAILURE_STATES and state_rank(kind, new) is None:
        raise StateTransitionError(f"Unknown {kind.value} state: {new}")

    if previous is None or previous == new:
        return

    if previous in FAILURE_STATES:
        raise StateTransitionError(
            f"{kind.value} exchange is {previous}; cannot move to {new}"
        )

    if new in FAILURE_STATES:
        return

    previous_rank = state_rank(kind, previous)
    new_rank = state_rank(kind, new)
    assert previous_rank is not None and new_rank is not None
    if new_rank < previous_rank:
        raise StateTransitionError(
            f"{kind.value} exchange cannot move backward from {previous} to {new}"
        )


def _known(new: Optional[str], old: Optional[str]) -> Optional[str]:
    return new if new is not None else old


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ConnectionPayload:
    invitation_url: Optional[str] = None

    def merge(self, other: "ConnectionPayload") -> "ConnectionPayload":
        return ConnectionPayload(
            invitation_url=_known(other.invitation_url, self.invitation_url)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"invitation_url": self.invitation_url}


@dataclass(frozen=True)
class CredentialPayload:
    attribute_values: Mapping[str, str] = field(default_factory=dict)
    credential_id: Optional[str] = None
    holder_identifier: Optional[str] = None
    holder_did: Optional[str] = None
    issuer_did: Optional[str] = None

    def merge(self, other: "CredentialPayload") -> "CredentialPayload":
        return CredentialPayload(
            attribute_values={**self.attribute_values, **other.attribute_values},
            credential_id=_known(other.credential_id, self.credential_id),
            holder_identifier=_known(other.holder_identifier, self.holder_identifier),
            holder_did=_known(other.holder_did, self.holder_did),
            issuer_did=_known(other.issuer_did, self.issuer_did),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attribute_values": dict(self.attribute_values),
            "credential_id": self.credential_id,
            "holder_identifier": self.holder_identifier,
            "holder_did": self.holder_did,
            "issuer_did": self.issuer_did,
        }


@dataclass(frozen=True)
class PresentationPayload:
    revealed_attributes: Mapping[str, str] = field(default_factory=dict)
    verified: Verification = Verification.UNKNOWN

    def merge(self, other: "PresentationPayload") -> "PresentationPayload":
        return PresentationPayload(
            revealed_attributes={
                **self.revealed_attributes,
                **other.revealed_attributes,
            },
            verified=(
                other.verified
                if other.verified is not Verification.UNKNOWN
                else self.verified
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revealed_attributes": dict(self.revealed_attributes),
            "verified": self.verified.value,
        }


Payload = Union[ConnectionPayload, CredentialPayload, PresentationPayload]

_PAYLOAD_TYPES = {
    ExchangeKind.CONNECTION: ConnectionPayload,
    ExchangeKind.CREDENTIAL: CredentialPayload,
    ExchangeKind.PRESENTATION: PresentationPayload,
}


@dataclass(frozen=True)
class ExchangeRecord:
    """Immutable snapshot of one exchange's position in its lifecycle."""

    kind: ExchangeKind
    role: ExchangeRole
    payload: Payload
    fmt: Optional[CredentialFormat] = None
    id: Optional[str] = None
    state: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    last_polled_at: Optional[datetime] = None

    @classmethod
    def start(
        cls,
        kind: ExchangeKind,
        role: ExchangeRole,
        fmt: Optional[CredentialFormat] = None,
    ) -> "ExchangeRecord":
        """Return a record for an exchange not yet created remotely."""
        path_for(kind, role, fmt)
        return cls(
            kind=kind,
            role=role,
            fmt=None if kind is ExchangeKind.CONNECTION else fmt,
            payload=_PAYLOAD_TYPES[kind](),
        )

    @property
    def path(self) -> Tuple[str, ...]:
        return path_for(self.kind, self.role, self.fmt)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.kind, self.state)

    @property
    def is_failed(self) -> bool:
        return is_failed(self.state)

    @property
    def is_ready(self) -> bool:
        return is_ready_for_next_stage(self.kind, self.state, self.role)

    def with_id(self, exchange_id: str) -> "ExchangeRecord":
        if self.id == exchange_id:
            return self
        if self.id is not None:
            raise SequenceError(
                f"{self.kind.value} exchange {self.id} cannot be reassigned "
                f"to {exchange_id}"
            )
        return replace(self, id=exchange_id)

    def advance(
        self,
        state: str,
        payload: Optional[Payload] = None,
        *,
        polled: bool = False,
    ) -> "ExchangeRecord":
        """Return a new snapshot moved forward to state."""
        if state not in self.path and state not in FAILURE_STATES:
            raise StateTransitionError(
                f"State {state} is not on the {self.role.value} "
                f"{self.kind.value} path {self.path}"
            )
        check_transition(self.kind, self.state, state)

        merged = self.payload
        if payload is not None:
            if not isinstance(payload, type(self.payload)):
                raise TypeError(
                    f"Expected {type(self.payload).__name__}, "
                    f"got {type(payload).__name__}"
                )
            merged = self.payload.merge(payload)  # type: ignore[arg-type]

        return replace(
            self,
            state=state,
            payload=merged,
            last_polled_at=_now() if polled else self.last_polled_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "role": self.role.value,
            "fmt": self.fmt.value if self.fmt else None,
            "state": self.state,
            "payload": self.payload.to_dict(),
            "created_at": self.created_at.isoformat(),
            "last_polled_at": self.last_polled_at.isoformat()
            if self.last_polled_at
            else None,
        }
