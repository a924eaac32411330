"""
pkp_orchestrator.signing_network.transport

Transport boundary to the signing network's node set.

Responsibilities:
- Define the transport protocol used by session creation and message signing.
- Implement it over HTTPS/JSON: fan out to every node and require a quorum of answers.
- Combine per-node ECDSA shares so callers see `{signatures: {name: {r, s, recid}}}`.
"""

from __future__ import annotations

import asyncio
import base64
import secrets
from collections import Counter, defaultdict
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from pkp_orchestrator.errors import NetworkConnectError, SessionCreationError, SigningNetworkError
from pkp_orchestrator.observability.logging import get_logger
from pkp_orchestrator.settings import Settings
from pkp_orchestrator.signing_network.shares import combine_signature_shares

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ConnectionHandle:
    # Nodes that answered the handshake; later calls only go to these.
    network: str
    node_urls: tuple[str, ...]
    min_node_count: int
    network_public_key: str | None = None


class SigningNetworkTransport(Protocol):
    async def connect(self) -> ConnectionHandle: ...

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
    ) -> dict[str, Any]: ...

    async def execute_js(
        self,
        handle: ConnectionHandle,
        *,
        code: str,
        session_sigs: Mapping[str, Any],
        js_params: dict[str, Any],
    ) -> dict[str, Any]: ...

    async def aclose(self) -> None: ...


@dataclass(frozen=True, slots=True)
class _NodeReply:
    url: str
    body: dict[str, Any] | None
    error: str | None = None


class HttpSigningNetworkTransport:
    """
    - One shared `httpx.AsyncClient` for all nodes (absolute URLs per request)
    - Every call fans out concurrently and counts successful nodes against `min_node_count`
    """

    def __init__(self, *, settings: Settings, http: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http

    async def connect(self) -> ConnectionHandle:
        nodes = list(self._settings.signing_network_nodes)
        payload = {"clientPublicKey": "test", "challenge": secrets.token_hex(32)}
        replies = await self._fan_out(nodes, "/web/handshake", payload)

        ok = [r for r in replies if r.body is not None]
        required = self._settings.min_node_count
        if len(ok) < required:
            raise NetworkConnectError(
                f"Connected to {len(ok)} of {len(nodes)} {self._settings.signing_network} nodes; "
                f"{required} required"
            )

        # Nodes should agree on the network key; trust the majority answer.
        keys = Counter(r.body.get("networkPublicKey") for r in ok if r.body.get("networkPublicKey"))
        network_key = keys.most_common(1)[0][0] if keys else None
        log.info("signing_network_connected", network=self._settings.signing_network, nodes=len(ok))
        return ConnectionHandle(
            network=self._settings.signing_network,
            node_urls=tuple(r.url for r in ok),
            min_node_count=required,
            network_public_key=network_key,
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
        payload = {
            "sessionKey": session_key,
            "authMethods": auth_methods,
            "pkpPublicKey": pkp_public_key,
            "expiration": expiration,
            "resources": resources,
            "chainId": chain_id,
        }
        replies = await self._fan_out(list(handle.node_urls), "/web/sign_session_key", payload)

        ok: list[dict[str, Any]] = []
        errors: list[str] = []
        for r in replies:
            if r.body is not None and r.body.get("result") == "success" and r.body.get("signatureShare"):
                ok.append(r.body)
            else:
                errors.append(r.error or _node_message(r.body) or f"{r.url} refused the session key")

        if len(ok) < handle.min_node_count:
            reason = errors[0] if errors else "not enough nodes answered"
            raise SessionCreationError(f"Signing network rejected the session request: {reason}")

        messages = {b.get("signedMessage") for b in ok}
        if len(messages) != 1:
            raise SessionCreationError("Signing network nodes signed different session messages")

        shares = sorted(
            ({"shareIndex": b.get("shareIndex"), "signatureShare": b["signatureShare"]} for b in ok),
            key=lambda sh: (sh["shareIndex"] is None, sh["shareIndex"]),
        )
        return {
            "signedMessage": messages.pop(),
            "derivedVia": "lit.bls",
            "algo": "BLS",
            "shares": shares,
        }

    async def execute_js(
        self,
        handle: ConnectionHandle,
        *,
        code: str,
        session_sigs: Mapping[str, Any],
        js_params: dict[str, Any],
    ) -> dict[str, Any]:
        payload = {
            "code": base64.b64encode(code.encode("utf-8")).decode("ascii"),
            "jsParams": js_params,
            "authSig": dict(session_sigs),
        }
        replies = await self._fan_out(list(handle.node_urls), "/web/execute", payload)

        ok = [r.body for r in replies if r.body is not None and r.body.get("success") is True]
        if not ok:
            errors = [r.error or _node_message(r.body) or f"{r.url} failed" for r in replies]
            reason = errors[0] if errors else "no nodes available"
            raise SigningNetworkError(f"Remote execution failed: {reason}")

        by_name: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for body in ok:
            signed = body.get("signedData") or {}
            if isinstance(signed, dict):
                for name, share in signed.items():
                    if isinstance(share, dict):
                        by_name[name].append(share)

        signatures: dict[str, Any] = {}
        for name, shares in by_name.items():
            # Below quorum the name is left out; the signer reports it as an incomplete share.
            if len(shares) < handle.min_node_count:
                log.warning("signing_network_share_below_quorum", sig_name=name, shares=len(shares))
                continue
            signatures[name] = combine_signature_shares(shares, sig_name=name)

        return {
            "signatures": signatures,
            "response": ok[0].get("response"),
            "logs": ok[0].get("logs"),
        }

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _fan_out(
        self, node_urls: list[str], path: str, payload: dict[str, Any]
    ) -> list[_NodeReply]:
        return list(await asyncio.gather(*(self._post(url, path, payload) for url in node_urls)))

    async def _post(self, node_url: str, path: str, payload: dict[str, Any]) -> _NodeReply:
        url = f"{node_url.rstrip('/')}{path}"
        try:
            r = await self._http.post(url, json=payload, timeout=self._settings.network_timeout_seconds)
        except httpx.HTTPError as e:
            log.warning("signing_network_node_unreachable", node=node_url, path=path, error=str(e))
            return _NodeReply(url=node_url, body=None, error=f"{node_url} unreachable: {e}")

        try:
            body = r.json()
        except ValueError:
            body = None
        if r.is_error:
            message = _node_message(body) or f"HTTP {r.status_code}"
            log.warning("signing_network_node_error", node=node_url, path=path, status=r.status_code)
            return _NodeReply(url=node_url, body=None, error=message)
        if not isinstance(body, dict):
            return _NodeReply(url=node_url, body=None, error=f"{node_url} returned a malformed body")
        return _NodeReply(url=node_url, body=body)


def _node_message(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    for key in ("message", "error", "errorKind"):
        if body.get(key):
            return str(body[key])
    return None


# --- Module Notes -----------------------------------------------------------
# The connection handle is created once per orchestrator and only read afterwards.
