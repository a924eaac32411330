"""
pkp_orchestrator.factory

Composition root for the orchestrator.

Responsibilities:
- Configure structured logging once.
- Build the HTTP clients, transports and components from settings.
- Hand resource ownership to the orchestrator so teardown releases exactly what was created here.
"""

from __future__ import annotations

from contextlib import AsyncExitStack

import httpx

from pkp_orchestrator.identity.redirect import IdentityRedirectHandler
from pkp_orchestrator.observability.logging import configure_logging, get_logger
from pkp_orchestrator.orchestrator.machine import AuthOrchestrator
from pkp_orchestrator.relay.client import KeyCustodyClient
from pkp_orchestrator.settings import Settings, get_settings
from pkp_orchestrator.signing_network.session import SigningNetworkSession
from pkp_orchestrator.signing_network.signer import MessageSigner
from pkp_orchestrator.signing_network.transport import (
    HttpSigningNetworkTransport,
    SigningNetworkTransport,
)

log = get_logger(__name__)


def create_orchestrator(
    *,
    settings: Settings | None = None,
    relay_http: httpx.AsyncClient | None = None,
    network_transport: SigningNetworkTransport | None = None,
    workflow_id: str | None = None,
) -> AuthOrchestrator:
    """
    Injected clients/transports stay owned by the caller; defaults are closed by `aclose()`.
    """

    settings = settings or get_settings()
    configure_logging(service_name=settings.service_name, level=settings.log_level)

    resources = AsyncExitStack()
    if relay_http is None:
        relay_http = httpx.AsyncClient(
            base_url=settings.relay_base_url, timeout=settings.relay_timeout_seconds
        )
        resources.push_async_callback(relay_http.aclose)
    if network_transport is None:
        network_transport = HttpSigningNetworkTransport(
            settings=settings,
            http=httpx.AsyncClient(timeout=settings.network_timeout_seconds),
        )
        resources.push_async_callback(network_transport.aclose)

    orchestrator = AuthOrchestrator(
        settings=settings,
        redirects=IdentityRedirectHandler(
            login_base_url=settings.login_base_url, provider=settings.identity_provider
        ),
        custody=KeyCustodyClient(settings=settings, http=relay_http),
        network=SigningNetworkSession(transport=network_transport, settings=settings),
        signer=MessageSigner(transport=network_transport, signature_name=settings.signature_name),
        resources=resources,
        workflow_id=workflow_id,
    )
    log.info("orchestrator_created", env=settings.env, workflow_id=orchestrator.workflow_id)
    return orchestrator


# --- Module Notes -----------------------------------------------------------
# This is the only place that decides concrete transports; components receive them injected.
