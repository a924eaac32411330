"""
pkp_orchestrator.orchestrator.state

Tagged states of the authentication workflow.

Responsibilities:
- Define one immutable variant per workflow state, carrying only data valid in that state.
- Provide the `StateKind` tag used for transition checks and logging.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import ClassVar

from pkp_orchestrator.models import (
    IdentityAssertion,
    KeyPairRecord,
    SessionCredentials,
    SignatureResult,
)


class StateKind(StrEnum):
    signed_out = "SignedOut"
    awaiting_redirect = "AwaitingRedirect"
    fetching_keys = "FetchingKeys"
    keys_fetched = "KeysFetched"
    minting = "Minting"
    minted = "Minted"
    creating_session = "CreatingSession"
    session_ready = "SessionReady"
    signing = "Signing"
    signed = "Signed"
    error = "Error"


@dataclass(frozen=True, slots=True)
class SignedOut:
    kind: ClassVar[StateKind] = StateKind.signed_out


@dataclass(frozen=True, slots=True)
class AwaitingRedirect:
    kind: ClassVar[StateKind] = StateKind.awaiting_redirect

    location: str


@dataclass(frozen=True, slots=True)
class FetchingKeys:
    kind: ClassVar[StateKind] = StateKind.fetching_keys

    assertion: IdentityAssertion


@dataclass(frozen=True, slots=True)
class KeysFetched:
    kind: ClassVar[StateKind] = StateKind.keys_fetched

    assertion: IdentityAssertion
    key_pairs: tuple[KeyPairRecord, ...]


@dataclass(frozen=True, slots=True)
class Minting:
    kind: ClassVar[StateKind] = StateKind.minting

    assertion: IdentityAssertion
    key_pairs: tuple[KeyPairRecord, ...]
    request_id: str | None = None


@dataclass(frozen=True, slots=True)
class Minted:
    kind: ClassVar[StateKind] = StateKind.minted

    assertion: IdentityAssertion
    key_pairs: tuple[KeyPairRecord, ...]
    minted: KeyPairRecord


@dataclass(frozen=True, slots=True)
class CreatingSession:
    kind: ClassVar[StateKind] = StateKind.creating_session

    assertion: IdentityAssertion
    key_pairs: tuple[KeyPairRecord, ...]
    key_pair: KeyPairRecord


@dataclass(frozen=True, slots=True)
class SessionReady:
    kind: ClassVar[StateKind] = StateKind.session_ready

    assertion: IdentityAssertion
    key_pairs: tuple[KeyPairRecord, ...]
    key_pair: KeyPairRecord
    credentials: SessionCredentials


@dataclass(frozen=True, slots=True)
class Signing:
    kind: ClassVar[StateKind] = StateKind.signing

    assertion: IdentityAssertion
    key_pairs: tuple[KeyPairRecord, ...]
    key_pair: KeyPairRecord
    credentials: SessionCredentials
    message: str


@dataclass(frozen=True, slots=True)
class Signed:
    """
    Session-ready with the latest signature attached; signing again is allowed from here.
    """

    kind: ClassVar[StateKind] = StateKind.signed

    assertion: IdentityAssertion
    key_pairs: tuple[KeyPairRecord, ...]
    key_pair: KeyPairRecord
    credentials: SessionCredentials
    message: str
    signature: SignatureResult
    verified: bool


@dataclass(frozen=True, slots=True)
class ErrorState:
    """
    Not terminal: `recover_to` is the state reached by acknowledging the error.
    """

    kind: ClassVar[StateKind] = StateKind.error

    error: Exception
    recover_to: WorkflowState


WorkflowState = (
    SignedOut
    | AwaitingRedirect
    | FetchingKeys
    | KeysFetched
    | Minting
    | Minted
    | CreatingSession
    | SessionReady
    | Signing
    | Signed
    | ErrorState
)


# --- Module Notes -----------------------------------------------------------
# Variants never share mutable fields; moving between states builds a new variant.
