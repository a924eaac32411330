"""
tests.test_signing_transport

HTTP node transport: quorum handling and ECDSA share combination.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest
from conftest import FakeSigningNetwork, PkpKey
from eth_account import Account

from pkp_orchestrator.errors import (
    IncompleteShareError,
    NetworkConnectError,
    SessionCreationError,
    SigningNetworkError,
)
from pkp_orchestrator.models import IdentityAssertion, KeyPairRecord
from pkp_orchestrator.settings import Settings
from pkp_orchestrator.signing_network.shares import SECP256K1_N, combine_signature_shares
from pkp_orchestrator.signing_network.session import SigningNetworkSession
from pkp_orchestrator.signing_network.signer import MessageSigner, message_digest, verify
from pkp_orchestrator.signing_network.transport import ConnectionHandle, HttpSigningNetworkTransport

NODES = ("http://node-a.test", "http://node-b.test", "http://node-c.test")
# Fixed additive shares for nodes a and b; node c carries the remainder.
FIXED_SHARES = {"node-a.test": 0x1234, "node-b.test": 0xBEEF}


def _transport(settings: Settings, handler) -> HttpSigningNetworkTransport:
    return HttpSigningNetworkTransport(
        settings=settings, http=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )


def _split_signature(key: PkpKey, digest: bytes, *, high_s: bool = False) -> list[dict[str, Any]]:
    signed = Account.from_key(key.private_key).unsafe_sign_hash(digest)
    recid = signed.v - 27
    s = signed.s
    if high_s:
        s, recid = SECP256K1_N - s, recid ^ 1
    bigr = bytes([0x02 + recid]) + signed.r.to_bytes(32, "big")
    a, b = FIXED_SHARES["node-a.test"], FIXED_SHARES["node-b.test"]
    parts = [a, b, (s - a - b) % SECP256K1_N]
    return [
        {
            "signatureShare": f"{part:064x}",
            "bigr": bigr.hex(),
            "dataSigned": digest.hex(),
            "publicKey": key.public_key,
            "shareIndex": i,
        }
        for i, part in enumerate(parts)
    ]


def test_combine_shares_matches_direct_signature(pkp: PkpKey) -> None:
    digest = message_digest("Free the web!")
    direct = Account.from_key(pkp.private_key).unsafe_sign_hash(digest)

    combined = combine_signature_shares(_split_signature(pkp, digest), sig_name="sig1")
    assert int(combined["r"], 16) == direct.r
    assert int(combined["s"], 16) == direct.s
    assert combined["recid"] == direct.v - 27


def test_combine_shares_normalizes_high_s(pkp: PkpKey) -> None:
    digest = message_digest("high s")
    direct = Account.from_key(pkp.private_key).unsafe_sign_hash(digest)

    combined = combine_signature_shares(_split_signature(pkp, digest, high_s=True), sig_name="sig1")
    assert int(combined["s"], 16) == direct.s
    assert combined["recid"] == direct.v - 27


def test_combine_shares_rejects_disagreement(pkp: PkpKey) -> None:
    shares = _split_signature(pkp, message_digest("x"))
    shares[1] = {**shares[1], "dataSigned": "00" * 32}
    with pytest.raises(IncompleteShareError):
        combine_signature_shares(shares, sig_name="sig1")
    with pytest.raises(IncompleteShareError):
        combine_signature_shares([], sig_name="sig1")


def test_combine_shares_rejects_malformed_nonce_point(pkp: PkpKey) -> None:
    shares = [{**sh, "bigr": "04" + "00" * 32} for sh in _split_signature(pkp, message_digest("x"))]
    with pytest.raises(SigningNetworkError):
        combine_signature_shares(shares, sig_name="sig1")


@pytest.mark.asyncio
async def test_connect_keeps_answering_nodes(settings: Settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "node-c.test":
            raise httpx.ConnectError("down", request=request)
        return httpx.Response(200, json={"networkPublicKey": "net-key", "serverPublicKey": "srv"})

    transport = _transport(settings, handler)
    handle = await transport.connect()
    await transport.aclose()

    assert handle.node_urls == NODES[:2]
    assert handle.min_node_count == 2
    assert handle.network_public_key == "net-key"


@pytest.mark.asyncio
async def test_connect_below_quorum_fails(settings: Settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "node-a.test":
            return httpx.Response(200, json={"networkPublicKey": "k"})
        return httpx.Response(502, json={"message": "bad gateway"})

    transport = _transport(settings, handler)
    with pytest.raises(NetworkConnectError):
        await transport.connect()
    await transport.aclose()


@pytest.mark.asyncio
async def test_sign_session_key_collects_quorum(settings: Settings) -> None:
    seen: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append(body)
        index = NODES.index(f"http://{request.url.host}")
        return httpx.Response(
            200,
            json={
                "result": "success",
                "signatureShare": f"share-{index}",
                "shareIndex": index,
                "signedMessage": "capability",
            },
        )

    transport = _transport(settings, handler)
    handle = ConnectionHandle(network="test", node_urls=NODES, min_node_count=2)
    capability = await transport.sign_session_key(
        handle,
        session_key="lit:session:abcd",
        auth_methods=[{"authMethodType": 6, "accessToken": "abc"}],
        pkp_public_key="0x04ff",
        expiration="2030-01-01T00:00:00Z",
        resources=["litAction://*"],
        chain_id=1,
    )
    await transport.aclose()

    assert capability["signedMessage"] == "capability"
    assert [s["shareIndex"] for s in capability["shares"]] == [0, 1, 2]
    assert seen[0]["authMethods"] == [{"authMethodType": 6, "accessToken": "abc"}]
    assert seen[0]["resources"] == ["litAction://*"]


@pytest.mark.asyncio
async def test_sign_session_key_rejected(settings: Settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "node-a.test":
            return httpx.Response(
                200, json={"result": "success", "signatureShare": "s", "signedMessage": "m"}
            )
        return httpx.Response(401, json={"message": "auth method type mismatch"})

    transport = _transport(settings, handler)
    handle = ConnectionHandle(network="test", node_urls=NODES, min_node_count=2)
    with pytest.raises(SessionCreationError, match="auth method type mismatch"):
        await transport.sign_session_key(
            handle,
            session_key="lit:session:abcd",
            auth_methods=[],
            pkp_public_key="0x04ff",
            expiration="2030-01-01T00:00:00Z",
            resources=["litAction://*"],
            chain_id=1,
        )
    await transport.aclose()


def _execute_handler(key: PkpKey, *, drop_from: set[str] | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        params = body["jsParams"]
        digest = bytes(params["toSign"])
        index = NODES.index(f"http://{request.url.host}")
        share = _split_signature(key, digest)[index]
        signed_data = {} if request.url.host in (drop_from or set()) else {params["sigName"]: share}
        return httpx.Response(
            200, json={"success": True, "signedData": signed_data, "response": "", "logs": ""}
        )

    return handler


@pytest.mark.asyncio
async def test_message_signed_through_node_shares_verifies(
    settings: Settings, pkp: PkpKey, network: FakeSigningNetwork
) -> None:
    record = KeyPairRecord.from_public_key(public_key=pkp.public_key)
    # Credentials come from the in-process fake; only execution goes over HTTP.
    fake_session = SigningNetworkSession(transport=network, settings=settings)
    credentials = await fake_session.create_session(
        await fake_session.connect(),
        assertion=IdentityAssertion(token="abc", issued_for="google"),
        key_pair=record,
    )

    transport = _transport(settings, _execute_handler(pkp))
    handle = ConnectionHandle(network="test", node_urls=NODES, min_node_count=2)
    result = await MessageSigner(transport=transport).sign_message(
        handle, credentials, "Free the web!", record
    )
    await transport.aclose()

    assert result.recovered_address == pkp.address
    assert verify(result, "Free the web!", pkp.address)


@pytest.mark.asyncio
async def test_execute_below_quorum_omits_signature(settings: Settings, pkp: PkpKey) -> None:
    transport = _transport(settings, _execute_handler(pkp, drop_from={"node-a.test", "node-b.test"}))
    handle = ConnectionHandle(network="test", node_urls=NODES, min_node_count=2)
    result = await transport.execute_js(
        handle,
        code="// action",
        session_sigs={},
        js_params={"toSign": list(message_digest("m")), "publicKey": pkp.public_key, "sigName": "sig1"},
    )
    await transport.aclose()

    assert result["signatures"] == {}


@pytest.mark.asyncio
async def test_execute_with_no_successful_node_fails(settings: Settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"errorKind": "Unexpected", "message": "action crashed"})

    transport = _transport(settings, handler)
    handle = ConnectionHandle(network="test", node_urls=NODES, min_node_count=2)
    with pytest.raises(SigningNetworkError, match="action crashed"):
        await transport.execute_js(handle, code="", session_sigs={}, js_params={})
    await transport.aclose()
