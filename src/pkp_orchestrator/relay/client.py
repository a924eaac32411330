"""
pkp_orchestrator.relay.client

HTTP client boundary used by the orchestrator to call the relay service.

Responsibilities:
- Attach the relay API key when one is configured.
- List key pairs bound to an identity and submit mint requests.
- Poll an asynchronous mint request with a cancellable, bounded retry loop.
- Map transport and payload problems onto typed relay errors.
"""

from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import quote

import httpx

from pkp_orchestrator.errors import (
    MintFailedError,
    MintTimeoutError,
    RelayProtocolError,
    RelayUnavailableError,
)
from pkp_orchestrator.models import (
    IdentityAssertion,
    KeyPairRecord,
    MintRequest,
    MintStatus,
    MintStatusReport,
)
from pkp_orchestrator.observability.logging import get_logger
from pkp_orchestrator.settings import Settings

log = get_logger(__name__)


class KeyCustodyClient:
    """
    - Keys are listed and minted per identity provider route (`/auth/{provider}`).
    - The relay owns minting; this client only submits and observes requests.
    """

    def __init__(self, *, settings: Settings, http: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http

    def _headers(self) -> dict[str, str]:
        if not self._settings.relay_api_key:
            return {}
        return {"api-key": self._settings.relay_api_key}

    async def _call(
        self,
        method: str,
        path: str,
        *,
        what: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            r = await self._http.request(method, path, headers=self._headers(), json=json)
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail = _error_detail(e.response)
            raise RelayUnavailableError(
                f"Relay rejected {what}: HTTP {e.response.status_code}{detail}"
            ) from e
        except httpx.HTTPError as e:
            raise RelayUnavailableError(f"Relay unreachable during {what}: {e}") from e

        try:
            body = r.json()
        except ValueError as e:
            raise RelayProtocolError(f"Relay returned a non-JSON body for {what}") from e
        if not isinstance(body, dict):
            raise RelayProtocolError(f"Relay returned a non-object body for {what}")
        return body

    async def list_key_pairs(self, assertion: IdentityAssertion) -> tuple[KeyPairRecord, ...]:
        body = await self._call(
            "POST",
            f"/auth/{assertion.issued_for}/userinfo",
            what="key pair listing",
            json={"idToken": assertion.token},
        )
        items = body.get("pkps")
        if not isinstance(items, list):
            raise RelayProtocolError("Unable to fetch PKPs through relay server: missing 'pkps'")

        records = tuple(_record_from_listing(item) for item in items)
        log.info("relay_keys_listed", provider=assertion.issued_for, count=len(records))
        return records

    async def request_mint(self, assertion: IdentityAssertion) -> MintRequest:
        body = await self._call(
            "POST",
            f"/auth/{assertion.issued_for}",
            what="mint request",
            json={"idToken": assertion.token},
        )
        request_id = body.get("requestId")
        if not isinstance(request_id, str) or not request_id.strip():
            raise RelayProtocolError("Unable to mint PKP through relay server: missing 'requestId'")
        log.info("relay_mint_requested", request_id=request_id)
        return MintRequest(request_id=request_id)

    async def mint_status(self, request_id: str) -> MintStatusReport:
        body = await self._call(
            "GET",
            f"/auth/status/{quote(request_id, safe='')}",
            what="mint status poll",
        )
        error = body.get("error")
        raw_status = body.get("status")
        if raw_status is None:
            if error:
                return MintStatusReport(status=MintStatus.failure, error=str(error))
            raise RelayProtocolError(f"Mint status for {request_id} has no 'status'")
        try:
            status = MintStatus.parse(str(raw_status))
        except ValueError as e:
            raise RelayProtocolError(str(e)) from e

        token_id = body.get("pkpTokenId")
        return MintStatusReport(
            status=status,
            address=body.get("pkpEthAddress") or None,
            public_key=body.get("pkpPublicKey") or None,
            token_id=str(token_id) if token_id is not None else None,
            error=str(error) if error else None,
        )

    async def poll_mint(self, request_id: str) -> KeyPairRecord:
        """
        Bounded retry loop: stops at `mint_poll_max_attempts` polls or the overall deadline,
        whichever comes first. Cancelling the awaiting task interrupts the sleep immediately.
        """

        s = self._settings
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + s.mint_poll_timeout_seconds
        delay = s.mint_poll_interval_seconds
        attempt = 0

        try:
            while attempt < s.mint_poll_max_attempts:
                attempt += 1
                report = await self.mint_status(request_id)
                log.debug("relay_mint_polled", request_id=request_id, attempt=attempt, status=report.status)

                if report.error is not None or report.status is MintStatus.failure:
                    raise MintFailedError(
                        report.error or f"Relay reported mint request {request_id} as failed",
                        request_id=request_id,
                    )
                if report.status is MintStatus.success:
                    return _record_from_report(request_id, report)

                remaining = deadline - loop.time()
                if remaining <= 0 or attempt >= s.mint_poll_max_attempts:
                    break
                await asyncio.sleep(min(delay, remaining))
                delay = min(delay * s.mint_poll_backoff, s.mint_poll_max_interval_seconds)
        except asyncio.CancelledError:
            log.info("relay_mint_poll_cancelled", request_id=request_id, attempt=attempt)
            raise

        elapsed = loop.time() - started
        log.warning("relay_mint_poll_timeout", request_id=request_id, attempts=attempt)
        raise MintTimeoutError(request_id=request_id, attempts=attempt, elapsed=elapsed)

    async def mint_key_pair(self, assertion: IdentityAssertion) -> KeyPairRecord:
        request = await self.request_mint(assertion)
        return await self.poll_mint(request.request_id)


def _record_from_listing(item: Any) -> KeyPairRecord:
    if not isinstance(item, dict):
        raise RelayProtocolError("Relay listed a PKP that is not an object")
    public_key = item.get("publicKey")
    address = item.get("ethAddress")
    if not public_key or not address:
        raise RelayProtocolError("Relay listed a PKP without 'ethAddress' and 'publicKey'")
    token_id = item.get("tokenId")
    try:
        return KeyPairRecord.from_public_key(
            public_key=str(public_key),
            address=str(address),
            token_id=str(token_id) if token_id is not None else None,
        )
    except ValueError as e:
        raise RelayProtocolError(f"Relay listed an invalid PKP: {e}") from e


def _record_from_report(request_id: str, report: MintStatusReport) -> KeyPairRecord:
    # Success without both fields is a protocol violation, never retried.
    if not report.address or not report.public_key:
        raise RelayProtocolError(
            f"Mint request {request_id} succeeded without 'pkpEthAddress' and 'pkpPublicKey'"
        )
    try:
        return KeyPairRecord.from_public_key(
            public_key=report.public_key,
            address=report.address,
            token_id=report.token_id,
        )
    except ValueError as e:
        raise RelayProtocolError(f"Mint request {request_id} returned an invalid PKP: {e}") from e


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict) and body.get("error"):
        return f" ({body['error']})"
    return ""


# --- Module Notes -----------------------------------------------------------
# Retries beyond mint polling are never automatic; the user re-triggers the operation.
