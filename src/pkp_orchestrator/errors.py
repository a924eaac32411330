"""
pkp_orchestrator.errors

Typed error kinds raised by components and recorded by the orchestrator.

Responsibilities:
- Give every component-level failure a distinct, catchable type.
- Separate workflow failures (recorded as Error state) from caller misuse (raised).
"""

from __future__ import annotations


class PkpAuthError(Exception):
    """
    Base class for failures that put the workflow into the Error state.
    """


class MissingAssertionError(PkpAuthError):
    pass


class RelayUnavailableError(PkpAuthError):
    pass


class RelayProtocolError(PkpAuthError):
    pass


class MintFailedError(PkpAuthError):
    def __init__(self, message: str, *, request_id: str) -> None:
        super().__init__(message)
        self.request_id = request_id


class MintTimeoutError(PkpAuthError):
    def __init__(self, *, request_id: str, attempts: int, elapsed: float) -> None:
        super().__init__(
            f"Polling for mint request {request_id} timed out "
            f"after {attempts} attempts ({elapsed:.1f}s)"
        )
        self.request_id = request_id
        self.attempts = attempts
        self.elapsed = elapsed


class NetworkConnectError(PkpAuthError):
    pass


class SessionCreationError(PkpAuthError):
    pass


class SigningNetworkError(PkpAuthError):
    pass


class IncompleteShareError(PkpAuthError):
    def __init__(self, message: str, *, sig_name: str) -> None:
        super().__init__(message)
        self.sig_name = sig_name


class SignatureVerificationError(PkpAuthError):
    def __init__(self, *, expected_address: str, recovered_address: str) -> None:
        super().__init__(
            f"Signature recovers to {recovered_address}, expected {expected_address}"
        )
        self.expected_address = expected_address
        self.recovered_address = recovered_address


# Caller misuse: raised straight to the caller, never recorded as workflow state.


class InvalidTransitionError(Exception):
    pass


class OperationInProgressError(Exception):
    def __init__(self, *, requested: str, running: str) -> None:
        super().__init__(f"Cannot start {requested!r} while {running!r} is in flight")
        self.requested = requested
        self.running = running


class OrchestratorClosedError(Exception):
    pass


# --- Module Notes -----------------------------------------------------------
# The orchestrator catches `PkpAuthError` only; cancellation and programming errors propagate.
