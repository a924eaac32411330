"""
pkp_orchestrator.relay

Relay client package.

Responsibilities:
- Provide the client boundary for listing and minting key pairs through the relay service.
"""

# Package marker.


# --- Module Notes -----------------------------------------------------------
# The orchestrator should depend on this boundary (not on HTTP directly).
