"""
tests.conftest

Shared fixtures: test settings, a PKP key, a fake relay and an in-process signing network.

Responsibilities:
- Fake the relay over `httpx.MockTransport` so the real client code path is exercised.
- Fake the signing network with a real secp256k1 key so signatures genuinely recover.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest
from eth_account import Account
from eth_keys import keys

from pkp_orchestrator.errors import NetworkConnectError, SessionCreationError, SigningNetworkError
from pkp_orchestrator.settings import Settings
from pkp_orchestrator.signing_network.transport import ConnectionHandle

RELAY_URL = "http://relay.test"
REDIRECT_URI = "http://localhost:3000"


@dataclass(frozen=True)
class PkpKey:
    private_key: str
    public_key: str
    address: str


def make_pkp(seed: int) -> PkpKey:
    private = seed.to_bytes(32, "big")
    pk = keys.PrivateKey(private).public_key
    return PkpKey(
        private_key="0x" + private.hex(),
        public_key="0x04" + pk.to_bytes().hex(),
        address=pk.to_checksum_address(),
    )


@pytest.fixture()
def pkp() -> PkpKey:
    return make_pkp(0x11)


@pytest.fixture()
def other_pkp() -> PkpKey:
    return make_pkp(0x22)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        env="test",
        log_level="WARNING",
        redirect_uri=REDIRECT_URI,
        relay_base_url=RELAY_URL,
        relay_api_key="test-key",
        mint_poll_interval_seconds=0.0,
        mint_poll_max_attempts=5,
        mint_poll_timeout_seconds=5.0,
        signing_network_nodes=["http://node-a.test", "http://node-b.test", "http://node-c.test"],
        min_node_count=2,
    )


class FakeRelay:
    """
    Scripted relay. `statuses` is consumed one entry per poll; the last entry repeats.
    """

    def __init__(self) -> None:
        self.pkps: list[dict[str, Any]] | None = []
        self.listing_body: Any = None
        self.request_id: str | None = "r1"
        self.statuses: list[dict[str, Any]] = [{"status": "InProgress"}]
        self.fail_with: int | None = None
        self.requests: list[httpx.Request] = []
        self.polls = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"error": "relay down"})

        path = request.url.path
        if path.endswith("/userinfo"):
            if self.listing_body is not None:
                return httpx.Response(200, json=self.listing_body)
            return httpx.Response(200, json={"pkps": self.pkps})
        if path.startswith("/auth/status/"):
            index = min(self.polls, len(self.statuses) - 1)
            self.polls += 1
            return httpx.Response(200, json=self.statuses[index])
        if request.method == "POST" and path.startswith("/auth/"):
            return httpx.Response(200, json={"requestId": self.request_id})
        return httpx.Response(404, json={"error": "not found"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), base_url=RELAY_URL)


@pytest.fixture()
def relay() -> FakeRelay:
    return FakeRelay()


@dataclass
class FakeSigningNetwork:
    """
    In-process stand-in for the node set: signs with the real key behind each PKP public key.
    """

    keys_by_public_key: dict[str, str] = field(default_factory=dict)
    connect_calls: int = 0
    session_requests: list[dict[str, Any]] = field(default_factory=list)
    execute_requests: list[dict[str, Any]] = field(default_factory=list)
    fail_connect: bool = False
    reject_session_for: set[str] = field(default_factory=set)
    fail_execute: bool = False
    omit_signature: bool = False
    tamper: Callable[[dict[str, Any]], dict[str, Any]] | None = None
    closed: bool = False

    def register(self, key: PkpKey) -> None:
        self.keys_by_public_key[key.public_key.lower()] = key.private_key

    async def connect(self) -> ConnectionHandle:
        self.connect_calls += 1
        if self.fail_connect:
            raise NetworkConnectError("Connected to 0 of 3 nodes; 2 required")
        return ConnectionHandle(
            network="test", node_urls=("http://node-a.test",), min_node_count=1
        )

    async def sign_session_key(
        self,
        handle: ConnectionHandle,
        *,
        session_key: str,
        auth_methods: list[dict[str, Any]],
        pkp_public_key: str,
        expiration: str,
        resources: list[str],
        chain_id: int,
    ) -> dict[str, Any]:
        self.session_requests.append(
            {
                "session_key": session_key,
                "auth_methods": auth_methods,
                "pkp_public_key": pkp_public_key,
                "expiration": expiration,
                "resources": resources,
                "chain_id": chain_id,
            }
        )
        if set(resources) & self.reject_session_for:
            raise SessionCreationError("Signing network rejected the session request: invalid auth")
        return {"signedMessage": f"{session_key}|{resources[0]}", "derivedVia": "lit.bls"}

    async def execute_js(
        self,
        handle: ConnectionHandle,
        *,
        code: str,
        session_sigs: Mapping[str, Any],
        js_params: dict[str, Any],
    ) -> dict[str, Any]:
        self.execute_requests.append({"code": code, "session_sigs": dict(session_sigs), **js_params})
        if self.fail_execute:
            raise SigningNetworkError("Remote execution failed: node timeout")
        if self.omit_signature:
            return {"signatures": {}}

        private_key = self.keys_by_public_key[js_params["publicKey"].lower()]
        signed = Account.from_key(private_key).unsafe_sign_hash(bytes(js_params["toSign"]))
        share = {
            "r": f"{signed.r:064x}",
            "s": f"{signed.s:064x}",
            "recid": signed.v - 27,
            "publicKey": js_params["publicKey"],
        }
        if self.tamper is not None:
            share = self.tamper(share)
        return {"signatures": {js_params["sigName"]: share}}

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture()
def network(pkp: PkpKey, other_pkp: PkpKey) -> FakeSigningNetwork:
    net = FakeSigningNetwork()
    net.register(pkp)
    net.register(other_pkp)
    return net


def listing_entry(key: PkpKey, token_id: str = "1") -> dict[str, Any]:
    return {"tokenId": token_id, "publicKey": key.public_key, "ethAddress": key.address}


def success_status(key: PkpKey) -> dict[str, Any]:
    return {
        "status": "Succeeded",
        "pkpEthAddress": key.address,
        "pkpPublicKey": key.public_key,
        "pkpTokenId": "42",
    }


# --- Module Notes -----------------------------------------------------------
# Fixtures are synchronous; async resources are created inside each test.
