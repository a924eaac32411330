"""
pkp_orchestrator.signing_network

Signing network package.

Responsibilities:
- Node transport (handshake, session key signing, remote execution).
- Session credential creation and message signing on top of that transport.
"""

# Package marker.


# --- Module Notes -----------------------------------------------------------
# Threshold cryptography stays on the nodes; this package only speaks their public contract.
