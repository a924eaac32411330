"""
pkp_orchestrator.orchestrator.machine

The authentication-and-key-custody state machine.

Responsibilities:
- Compose redirect handling, relay custody, session creation and signing into one workflow.
- Own the current state and the data durably reached so far.
- Run one operation at a time as a cancellable task; reject overlapping operations.
- Record component failures as `ErrorState` with a recovery target computed at failure time.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from contextlib import AsyncExitStack

from pkp_orchestrator.errors import (
    InvalidTransitionError,
    OperationInProgressError,
    OrchestratorClosedError,
    PkpAuthError,
    SignatureVerificationError,
)
from pkp_orchestrator.identity.redirect import IdentityRedirectHandler, new_login_state
from pkp_orchestrator.models import IdentityAssertion, KeyPairRecord, SessionCredentials
from pkp_orchestrator.observability.context import operation_context
from pkp_orchestrator.observability.logging import get_logger
from pkp_orchestrator.orchestrator.reducers import append_key_pair, find_key_pair
from pkp_orchestrator.orchestrator.state import (
    AwaitingRedirect,
    CreatingSession,
    ErrorState,
    FetchingKeys,
    KeysFetched,
    Minted,
    Minting,
    SessionReady,
    Signed,
    SignedOut,
    Signing,
    WorkflowState,
)
from pkp_orchestrator.relay.client import KeyCustodyClient
from pkp_orchestrator.settings import Settings
from pkp_orchestrator.signing_network.session import SigningNetworkSession
from pkp_orchestrator.signing_network.signer import MessageSigner, verify

log = get_logger(__name__)

Listener = Callable[[WorkflowState], None]

DEFAULT_MESSAGE = "Free the web!"


class AuthOrchestrator:
    """
    Workflow:
    SignedOut -> AwaitingRedirect -> FetchingKeys -> KeysFetched
      -> (Minting -> Minted ->) CreatingSession -> SessionReady -> (Signing -> Signed)*
    Any component failure lands in ErrorState(recover_to); `acknowledge_error` goes back.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        redirects: IdentityRedirectHandler,
        custody: KeyCustodyClient,
        network: SigningNetworkSession,
        signer: MessageSigner,
        resources: AsyncExitStack | None = None,
        workflow_id: str | None = None,
    ) -> None:
        self._settings = settings
        self._redirects = redirects
        self._custody = custody
        self._network = network
        self._signer = signer
        self._resources = resources or AsyncExitStack()
        self.workflow_id = workflow_id or str(uuid.uuid4())

        self._state: WorkflowState = SignedOut()
        self._listeners: list[Listener] = []

        # Durably reached data; the recovery target is derived from these, not from the state.
        self._assertion: IdentityAssertion | None = None
        self._key_pairs: tuple[KeyPairRecord, ...] | None = None
        self._session: SessionCredentials | None = None
        self._pending_login_state: str | None = None

        self._inflight: asyncio.Task[None] | None = None
        self._inflight_name: str | None = None
        self._closed = False

    async def __aenter__(self) -> AuthOrchestrator:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def key_pairs(self) -> tuple[KeyPairRecord, ...]:
        return self._key_pairs or ()

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Listeners run synchronously on every transition. A listener that raises is logged and
        skipped; it never interrupts the operation or the remaining listeners.
        """

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- Operations ---------------------------------------------------------

    def start_login(self) -> str:
        """
        Returns the provider login URL; the caller navigates to it. State stays SignedOut.
        """

        self._begin("start_login", (SignedOut,))
        self._pending_login_state = new_login_state()
        url = self._redirects.build_login_url(
            self._settings.redirect_uri, state=self._pending_login_state
        )
        log.info("login_started", workflow_id=self.workflow_id, provider=self._redirects.provider)
        return url

    async def handle_redirect(self, location: str) -> WorkflowState:
        self._begin("handle_redirect", (SignedOut,))
        return await self._run("handle_redirect", lambda: self._complete_redirect(location))

    async def mint(self) -> WorkflowState:
        self._begin("mint", (KeysFetched,))
        return await self._run("mint", self._mint)

    async def select_key_pair(self, address: str) -> WorkflowState:
        self._begin("select_key_pair", (KeysFetched, SessionReady, Signed))
        record = find_key_pair(self.key_pairs, address)
        if record is None:
            raise InvalidTransitionError(f"No key pair with address {address} is held")
        return await self._run("select_key_pair", lambda: self._open_session(record))

    async def sign_message(self, message: str = DEFAULT_MESSAGE) -> WorkflowState:
        self._begin("sign_message", (SessionReady, Signed))
        return await self._run("sign_message", lambda: self._sign(message))

    def acknowledge_error(self) -> WorkflowState:
        self._begin("acknowledge_error", (ErrorState,))
        state = self._state
        if not isinstance(state, ErrorState):
            raise InvalidTransitionError(f"Cannot acknowledge an error from {state.kind}")
        self._transition(state.recover_to)
        return self._state

    async def aclose(self) -> None:
        """
        Teardown: cancels the in-flight operation (e.g., mint polling) and releases transports.
        """

        if self._closed:
            return
        self._closed = True
        task = self._inflight
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        await self._resources.aclose()
        log.info("orchestrator_closed", workflow_id=self.workflow_id)

    # --- Steps (run inside the operation task) ---------------------------------

    async def _complete_redirect(self, location: str) -> None:
        return_uri = self._settings.redirect_uri
        if not self._redirects.is_redirect_callback(location, return_uri):
            log.debug("redirect_ignored")
            return

        self._transition(AwaitingRedirect(location=location))
        assertion = self._redirects.extract_assertion(
            location, return_uri, expected_state=self._pending_login_state
        )
        self._pending_login_state = None

        self._transition(FetchingKeys(assertion=assertion))
        key_pairs = await self._custody.list_key_pairs(assertion)

        self._assertion = assertion
        self._key_pairs = key_pairs
        self._transition(KeysFetched(assertion=assertion, key_pairs=key_pairs))

    async def _mint(self) -> None:
        assertion = self._require_assertion()
        self._transition(Minting(assertion=assertion, key_pairs=self.key_pairs))

        request = await self._custody.request_mint(assertion)
        self._transition(
            Minting(assertion=assertion, key_pairs=self.key_pairs, request_id=request.request_id)
        )
        record = await self._custody.poll_mint(request.request_id)

        # Only a record with a verified address reaches the collection.
        self._key_pairs = append_key_pair(self._key_pairs, record)
        self._transition(Minted(assertion=assertion, key_pairs=self.key_pairs, minted=record))
        await self._open_session(record)

    async def _open_session(self, record: KeyPairRecord) -> None:
        assertion = self._require_assertion()
        self._transition(
            CreatingSession(assertion=assertion, key_pairs=self.key_pairs, key_pair=record)
        )
        handle = await self._network.connect()
        credentials = await self._network.create_session(
            handle, assertion=assertion, key_pair=record
        )

        self._session = credentials
        self._transition(
            SessionReady(
                assertion=assertion,
                key_pairs=self.key_pairs,
                key_pair=record,
                credentials=credentials,
            )
        )

    async def _sign(self, message: str) -> None:
        state = self._state
        if not isinstance(state, SessionReady | Signed):
            raise InvalidTransitionError(f"Cannot sign from {state.kind}")
        assertion, key_pair, credentials = state.assertion, state.key_pair, state.credentials

        self._transition(
            Signing(
                assertion=assertion,
                key_pairs=self.key_pairs,
                key_pair=key_pair,
                credentials=credentials,
                message=message,
            )
        )
        handle = await self._network.connect()
        result = await self._signer.sign_message(handle, credentials, message, key_pair)
        if not verify(result, message, key_pair.address):
            raise SignatureVerificationError(
                expected_address=key_pair.address, recovered_address=result.recovered_address
            )

        self._transition(
            Signed(
                assertion=assertion,
                key_pairs=self.key_pairs,
                key_pair=key_pair,
                credentials=credentials,
                message=message,
                signature=result,
                verified=True,
            )
        )

    # --- Machinery ------------------------------------------------------------

    def _begin(self, name: str, allowed: tuple[type, ...]) -> None:
        if self._closed:
            raise OrchestratorClosedError(f"Cannot run {name!r}: orchestrator is closed")
        if self._inflight is not None:
            raise OperationInProgressError(requested=name, running=self._inflight_name or "?")
        if not isinstance(self._state, allowed):
            raise InvalidTransitionError(f"Cannot run {name!r} from {self._state.kind}")

    async def _run(self, name: str, step: Callable[[], Awaitable[None]]) -> WorkflowState:
        # `_begin` has already run with no await in between, so claiming the slot here is safe.
        task = asyncio.create_task(self._guarded(name, step), name=f"pkp-{name}")
        self._inflight, self._inflight_name = task, name
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._closed and task.cancelled() and current is not None and not current.cancelling():
                raise OrchestratorClosedError(f"{name!r} was cancelled by teardown") from None
            # Caller cancelled: let the step unwind, then leave the transient state.
            task.cancel()
            await asyncio.wait({task})
            if task.cancelled():
                recover_to = self._recovery_target()
                log.info("operation_cancelled", operation=name, recover_to=str(recover_to.kind))
                self._transition(recover_to)
            raise
        finally:
            if self._inflight is task:
                self._inflight, self._inflight_name = None, None
        return self._state

    async def _guarded(self, name: str, step: Callable[[], Awaitable[None]]) -> None:
        with operation_context(workflow_id=self.workflow_id, operation=name):
            try:
                await step()
            except PkpAuthError as e:
                self._fail(e)

    def _fail(self, error: PkpAuthError) -> None:
        recover_to = self._recovery_target()
        log.warning(
            "workflow_error",
            error_type=type(error).__name__,
            error=str(error),
            failed_in=str(self._state.kind),
            recover_to=str(recover_to.kind),
        )
        self._transition(ErrorState(error=error, recover_to=recover_to))

    def _recovery_target(self) -> WorkflowState:
        if self._assertion is None or self._key_pairs is None:
            return SignedOut()
        session = self._session
        if session is not None and not session.is_expired():
            return SessionReady(
                assertion=self._assertion,
                key_pairs=self._key_pairs,
                key_pair=session.key_pair,
                credentials=session,
            )
        return KeysFetched(assertion=self._assertion, key_pairs=self._key_pairs)

    def _require_assertion(self) -> IdentityAssertion:
        if self._assertion is None:
            raise InvalidTransitionError("No identity assertion has been obtained")
        return self._assertion

    def _transition(self, state: WorkflowState) -> None:
        if self._closed:
            # Teardown freezes the workflow; nothing moves after close.
            return
        previous = self._state
        self._state = state
        log.info("state_transition", from_state=str(previous.kind), to_state=str(state.kind))
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                log.exception("listener_failed", state=str(state.kind))


# --- Module Notes -----------------------------------------------------------
# Retries are never automatic: after an error the user acknowledges and re-invokes an operation.
