"""
pkp_orchestrator.orchestrator.reducers

Reducers define how the orchestrator grows the collections it holds.

Why reducers:
- State variants are immutable; updates produce new collections instead of mutating.
- Keeping the merge rule in one place makes "prior length + 1" easy to check.
"""

from __future__ import annotations

from pkp_orchestrator.models import KeyPairRecord


def append_key_pair(
    left: tuple[KeyPairRecord, ...] | None, record: KeyPairRecord
) -> tuple[KeyPairRecord, ...]:
    """
    Append-only reducer for the held key pair collection.

    Always returns a new tuple of length `len(left) + 1`; a record already present is still
    appended, since the relay mints a distinct key each time.
    """

    return (*(left or ()), record)


def find_key_pair(
    records: tuple[KeyPairRecord, ...], address: str
) -> KeyPairRecord | None:
    # Addresses compare case-insensitively (checksum casing is presentation only).
    wanted = address.lower()
    for record in records:
        if record.address.lower() == wanted:
            return record
    return None
