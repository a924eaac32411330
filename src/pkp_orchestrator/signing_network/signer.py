"""
pkp_orchestrator.signing_network.signer

Distributed message signing and local verification.

Responsibilities:
- Hash messages with the personal-message (EIP-191) scheme.
- Ask the network to sign the digest under the target key and assemble the result.
- Recover the signing address locally and compare it with the key pair's address.
"""

from __future__ import annotations

from datetime import UTC

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys.exceptions import BadSignature
from eth_utils import ValidationError, keccak

from pkp_orchestrator.errors import IncompleteShareError, SigningNetworkError
from pkp_orchestrator.models import KeyPairRecord, SessionCredentials, SignatureResult
from pkp_orchestrator.observability.logging import get_logger
from pkp_orchestrator.signing_network.transport import ConnectionHandle, SigningNetworkTransport

log = get_logger(__name__)

# Action executed by every node: produce one ECDSA share over `toSign` under `publicKey`.
SIGNING_ACTION = """
const go = async () => {
  const sigShare = await LitActions.signEcdsa({ toSign, publicKey, sigName });
};
go();
"""

_PERSONAL_MESSAGE_PREFIX = b"\x19Ethereum Signed Message:\n"


def message_digest(message: str) -> bytes:
    # Prefix + byte length keeps a signed message from ever being a valid raw transaction.
    data = message.encode("utf-8")
    return keccak(_PERSONAL_MESSAGE_PREFIX + str(len(data)).encode("ascii") + data)


def compact_signature(r: str, s: str, recovery_id: int) -> str:
    """
    65-byte `r || s || v` encoding with v = 27 + recovery id.
    """

    if recovery_id not in (0, 1):
        raise ValueError(f"Unsupported recovery id {recovery_id}")
    r_int = int(r.removeprefix("0x"), 16)
    s_int = int(s.removeprefix("0x"), 16)
    return (
        "0x"
        + r_int.to_bytes(32, "big").hex()
        + s_int.to_bytes(32, "big").hex()
        + bytes([27 + recovery_id]).hex()
    )


def recover_address(message: str, signature: str) -> str:
    return Account.recover_message(encode_defunct(text=message), signature=signature)


def verify(signature_result: SignatureResult, message: str, expected_address: str) -> bool:
    """
    True when the signature recovers to `expected_address`. Never raises for a bad signature.
    """

    try:
        signature = compact_signature(
            signature_result.r, signature_result.s, signature_result.recovery_id
        )
        recovered = recover_address(message, signature)
    except (BadSignature, ValidationError, ValueError, OverflowError):
        return False
    return recovered.lower() == expected_address.lower()


class MessageSigner:
    def __init__(self, *, transport: SigningNetworkTransport, signature_name: str = "sig1") -> None:
        self._transport = transport
        self._signature_name = signature_name

    async def sign_message(
        self,
        handle: ConnectionHandle,
        credentials: SessionCredentials | None,
        message: str,
        key_pair: KeyPairRecord,
    ) -> SignatureResult:
        # Local checks first; an expired session is never sent to the network.
        if credentials is None:
            raise SigningNetworkError("No session credentials; create a session first")
        if credentials.is_expired():
            raise SigningNetworkError(
                f"Session credentials expired at {credentials.expiration.astimezone(UTC).isoformat()}"
            )
        if credentials.key_pair.address.lower() != key_pair.address.lower():
            raise SigningNetworkError("Session credentials belong to a different key pair")

        name = self._signature_name
        digest = message_digest(message)
        result = await self._transport.execute_js(
            handle,
            code=SIGNING_ACTION,
            session_sigs=credentials.capabilities,
            js_params={"toSign": list(digest), "publicKey": key_pair.public_key, "sigName": name},
        )

        signatures = result.get("signatures") if isinstance(result, dict) else None
        if not isinstance(signatures, dict):
            raise SigningNetworkError("Remote execution returned no signatures")
        share = signatures.get(name)
        if not isinstance(share, dict) or any(share.get(k) in (None, "") for k in ("r", "s", "recid")):
            raise IncompleteShareError(f"Signature {name!r} missing from network response", sig_name=name)

        try:
            recid = int(share["recid"])
            # Some nodes report v (27/28) instead of the bare recovery id.
            if recid >= 27:
                recid -= 27
            r = f"{int(str(share['r']).removeprefix('0x'), 16):064x}"
            s = f"{int(str(share['s']).removeprefix('0x'), 16):064x}"
            signature = compact_signature(r, s, recid)
            recovered = recover_address(message, signature)
        except (BadSignature, ValidationError, ValueError, OverflowError) as e:
            raise SigningNetworkError(f"Network returned an unusable signature: {e}") from e

        log.info("message_signed", address=key_pair.address, recovered_address=recovered)
        return SignatureResult(
            r=r,
            s=s,
            recovery_id=recid,
            signature=signature,
            recovered_address=recovered,
            digest="0x" + digest.hex(),
        )


# --- Module Notes -----------------------------------------------------------
# `sign_message` reports the recovered address; deciding whether it matches is `verify`'s job.
