"""
pkp_orchestrator.signing_network.shares

Combination of per-node ECDSA signature shares.

Responsibilities:
- Check that node shares agree on the signing nonce point and the signed digest.
- Sum additive `s` shares into a single low-s `(r, s, recid)` signature.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from pkp_orchestrator.errors import IncompleteShareError, SigningNetworkError

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


def _strip_hex(value: Any) -> str:
    # Nodes sometimes return JSON-quoted hex strings.
    text = str(value).strip().strip('"').lower()
    return text[2:] if text.startswith("0x") else text


def combine_signature_shares(
    shares: Sequence[Mapping[str, Any]], *, sig_name: str
) -> dict[str, Any]:
    """
    Each share carries `signatureShare` (additive share of s), `bigr` (compressed nonce point R)
    and `dataSigned`. Returns `{r, s, recid, publicKey, dataSigned}` with r/s as 64-char hex.
    """

    if not shares:
        raise IncompleteShareError(f"No signature shares for {sig_name!r}", sig_name=sig_name)

    bigrs = {_strip_hex(sh.get("bigr", "")) for sh in shares}
    signed = {_strip_hex(sh.get("dataSigned", "")) for sh in shares}
    if len(bigrs) != 1 or len(signed) != 1:
        raise IncompleteShareError(
            f"Signature shares for {sig_name!r} disagree on the signed data", sig_name=sig_name
        )

    try:
        big_r = bytes.fromhex(bigrs.pop())
        s_total = sum(int(_strip_hex(sh["signatureShare"]), 16) for sh in shares) % SECP256K1_N
    except (KeyError, ValueError) as e:
        raise SigningNetworkError(f"Malformed signature share for {sig_name!r}") from e
    if len(big_r) != 33 or big_r[0] not in (0x02, 0x03):
        raise SigningNetworkError(f"Malformed nonce point in shares for {sig_name!r}")
    if s_total == 0:
        raise SigningNetworkError(f"Signature shares for {sig_name!r} combine to s = 0")

    x = int.from_bytes(big_r[1:], "big")
    r = x % SECP256K1_N
    recid = big_r[0] & 1
    if x >= SECP256K1_N:
        recid |= 2

    # Low-s form; negating s mirrors R, which flips the parity bit.
    if s_total > SECP256K1_N // 2:
        s_total = SECP256K1_N - s_total
        recid ^= 1

    first = shares[0]
    return {
        "r": f"{r:064x}",
        "s": f"{s_total:064x}",
        "recid": recid,
        "publicKey": first.get("publicKey"),
        "dataSigned": signed.pop(),
    }


# --- Module Notes -----------------------------------------------------------
# Shares from fewer than the quorum never reach this function; the transport filters them.
