"""
pkp_orchestrator.models

Domain records exchanged between components.

Responsibilities:
- Define the identity assertion, key pair, mint, session and signature records.
- Enforce the key pair invariant: the address is derived from the public key.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from eth_keys import keys
from eth_utils import ValidationError, decode_hex

# Auth method type ids understood by the signing network.
AUTH_METHOD_TYPES: dict[str, int] = {"discord": 4, "google": 6}


@dataclass(frozen=True, slots=True)
class IdentityAssertion:
    """
    Bearer proof returned by the identity provider. The token never appears in repr.
    """

    token: str = field(repr=False)
    issued_for: str

    @property
    def auth_method_type(self) -> int:
        try:
            return AUTH_METHOD_TYPES[self.issued_for]
        except KeyError as e:
            raise ValueError(f"Unsupported identity provider: {self.issued_for}") from e


def derive_address(public_key: str) -> str:
    """
    Checksummed address of a secp256k1 public key (compressed, uncompressed or raw 64 bytes).
    """

    try:
        raw = decode_hex(public_key)
        if len(raw) == 65 and raw[0] == 0x04:
            pk = keys.PublicKey(raw[1:])
        elif len(raw) == 64:
            pk = keys.PublicKey(raw)
        elif len(raw) == 33:
            pk = keys.PublicKey.from_compressed_bytes(raw)
        else:
            raise ValueError(f"unexpected public key length {len(raw)}")
    except ValidationError as e:
        raise ValueError(str(e)) from e
    return pk.to_checksum_address()


@dataclass(frozen=True, slots=True)
class KeyPairRecord:
    address: str
    public_key: str
    token_id: str | None = None

    @classmethod
    def from_public_key(
        cls,
        *,
        public_key: str,
        address: str | None = None,
        token_id: str | None = None,
    ) -> KeyPairRecord:
        derived = derive_address(public_key)
        # A reported address must agree with the key; otherwise the record is rejected.
        if address is not None and address.lower() != derived.lower():
            raise ValueError(f"address {address} does not match public key (derived {derived})")
        return cls(address=derived, public_key=public_key, token_id=token_id)


class MintStatus(StrEnum):
    pending = "pending"
    success = "success"
    failure = "failure"

    @classmethod
    def parse(cls, raw: str) -> MintStatus:
        normalized = _RELAY_STATUS.get(raw.strip().lower())
        if normalized is None:
            raise ValueError(f"Unknown mint status: {raw!r}")
        return normalized


_RELAY_STATUS: dict[str, MintStatus] = {
    "pending": MintStatus.pending,
    "inprogress": MintStatus.pending,
    "success": MintStatus.success,
    "succeeded": MintStatus.success,
    "failure": MintStatus.failure,
    "failed": MintStatus.failure,
}


@dataclass(frozen=True, slots=True)
class MintRequest:
    request_id: str


@dataclass(frozen=True, slots=True)
class MintStatusReport:
    status: MintStatus
    address: str | None = None
    public_key: str | None = None
    token_id: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class SessionCredentials:
    """
    Resource-scoped capabilities bound to one key pair and one identity assertion.
    """

    key_pair: KeyPairRecord
    assertion: IdentityAssertion
    session_public_key: str
    capabilities: Mapping[str, dict[str, Any]]
    issued_at: datetime
    expiration: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(tz=UTC)) >= self.expiration


@dataclass(frozen=True, slots=True)
class SignatureResult:
    r: str
    s: str
    recovery_id: int
    signature: str
    recovered_address: str
    digest: str


# --- Module Notes -----------------------------------------------------------
# Records are immutable; the orchestrator replaces them instead of editing in place.
