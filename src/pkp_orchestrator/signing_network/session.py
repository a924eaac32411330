"""
pkp_orchestrator.signing_network.session

Session credential creation against the signing network.

Responsibilities:
- Connect to the node set lazily and at most once.
- Exchange an identity assertion + target key pair for resource-scoped session capabilities.
- Assemble credentials all-or-nothing, signed by a fresh Ed25519 session key.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from types import MappingProxyType
from typing import Any

from cryptography.hazmat.primitives.asymmetric import ed25519

from pkp_orchestrator.errors import PkpAuthError, SessionCreationError
from pkp_orchestrator.models import IdentityAssertion, KeyPairRecord, SessionCredentials
from pkp_orchestrator.observability.logging import get_logger
from pkp_orchestrator.settings import Settings
from pkp_orchestrator.signing_network.transport import ConnectionHandle, SigningNetworkTransport

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ResourceScope:
    # What a single capability request asks the network to authorize.
    resource: str
    chain: str
    chain_id: int
    session_key: str


@dataclass(frozen=True, slots=True)
class SessionScope:
    chain: str
    chain_id: int
    resources: tuple[str, ...]
    expiration: datetime

    @classmethod
    def from_settings(cls, settings: Settings, *, now: datetime | None = None) -> SessionScope:
        issued = now or datetime.now(tz=UTC)
        return cls(
            chain=settings.session_chain,
            chain_id=settings.session_chain_id,
            resources=tuple(settings.session_resources),
            expiration=issued + timedelta(seconds=settings.session_ttl_seconds),
        )


# (resource scope, expiration) -> session signature issued by the network.
CapabilityRequest = Callable[[ResourceScope, datetime], Awaitable[dict[str, Any]]]


def make_capability_request(
    transport: SigningNetworkTransport,
    handle: ConnectionHandle,
    *,
    assertion: IdentityAssertion,
    key_pair: KeyPairRecord,
) -> CapabilityRequest:
    """
    Builds the capability-request function from immutable inputs only.
    """

    auth_method_type = assertion.auth_method_type
    token = assertion.token
    pkp_public_key = key_pair.public_key

    async def request(scope: ResourceScope, expiration: datetime) -> dict[str, Any]:
        return await transport.sign_session_key(
            handle,
            session_key=scope.session_key,
            auth_methods=[{"authMethodType": auth_method_type, "accessToken": token}],
            pkp_public_key=pkp_public_key,
            expiration=_iso(expiration),
            resources=[scope.resource],
            chain_id=scope.chain_id,
        )

    return request


class SigningNetworkSession:
    def __init__(self, *, transport: SigningNetworkTransport, settings: Settings) -> None:
        self._transport = transport
        self._settings = settings
        self._handle: ConnectionHandle | None = None
        self._connect_lock = asyncio.Lock()

    @property
    def transport(self) -> SigningNetworkTransport:
        return self._transport

    @property
    def handle(self) -> ConnectionHandle | None:
        return self._handle

    async def connect(self) -> ConnectionHandle:
        # The handshake is expensive; a failed attempt caches nothing so a later call can retry.
        async with self._connect_lock:
            if self._handle is None:
                self._handle = await self._transport.connect()
            return self._handle

    async def create_session(
        self,
        handle: ConnectionHandle,
        *,
        assertion: IdentityAssertion,
        key_pair: KeyPairRecord,
        scope: SessionScope | None = None,
        request_capability: CapabilityRequest | None = None,
    ) -> SessionCredentials:
        now = datetime.now(tz=UTC)
        scope = scope or SessionScope.from_settings(self._settings, now=now)
        _validate_scope(scope, now)

        if request_capability is None:
            try:
                request_capability = make_capability_request(
                    self._transport, handle, assertion=assertion, key_pair=key_pair
                )
            except ValueError as e:
                raise SessionCreationError(str(e)) from e

        session_key = ed25519.Ed25519PrivateKey.generate()
        session_public_key = session_key.public_key().public_bytes_raw().hex()
        session_key_uri = f"lit:session:{session_public_key}"

        # Nothing is kept unless every resource is authorized.
        capabilities: dict[str, dict[str, Any]] = {}
        for resource in scope.resources:
            resource_scope = ResourceScope(
                resource=resource,
                chain=scope.chain,
                chain_id=scope.chain_id,
                session_key=session_key_uri,
            )
            try:
                capability = await request_capability(resource_scope, scope.expiration)
            except SessionCreationError:
                raise
            except PkpAuthError as e:
                raise SessionCreationError(f"Capability request for {resource} failed: {e}") from e
            capabilities[resource] = _sign_capability(
                session_key,
                session_public_key=session_public_key,
                resource=resource,
                capability=capability,
                issued_at=now,
                expiration=scope.expiration,
            )

        log.info(
            "session_created",
            address=key_pair.address,
            resources=list(scope.resources),
            expiration=_iso(scope.expiration),
        )
        return SessionCredentials(
            key_pair=key_pair,
            assertion=assertion,
            session_public_key=session_public_key,
            capabilities=MappingProxyType(capabilities),
            issued_at=now,
            expiration=scope.expiration,
        )


def _validate_scope(scope: SessionScope, now: datetime) -> None:
    if not scope.resources:
        raise SessionCreationError("Session scope names no resources")
    for resource in scope.resources:
        scheme, sep, rest = resource.partition("://")
        if not sep or not scheme or not rest:
            raise SessionCreationError(f"Malformed resource URI in session scope: {resource!r}")
    if scope.expiration <= now:
        raise SessionCreationError("Session scope expiration is not in the future")


def _sign_capability(
    session_key: ed25519.Ed25519PrivateKey,
    *,
    session_public_key: str,
    resource: str,
    capability: dict[str, Any],
    issued_at: datetime,
    expiration: datetime,
) -> dict[str, Any]:
    signed_message = json.dumps(
        {
            "sessionKey": session_public_key,
            "resourceAbilityRequests": [{"resource": resource, "ability": "*"}],
            "capabilities": [capability],
            "issuedAt": _iso(issued_at),
            "expiration": _iso(expiration),
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return {
        "sig": session_key.sign(signed_message.encode("utf-8")).hex(),
        "derivedVia": "litSessionSignViaNacl",
        "signedMessage": signed_message,
        "address": session_public_key,
        "algo": "ed25519",
    }


def _iso(ts: datetime) -> str:
    return ts.astimezone(UTC).isoformat().replace("+00:00", "Z")


# --- Module Notes -----------------------------------------------------------
# The session private key lives only in this call frame; capabilities carry its signatures.
