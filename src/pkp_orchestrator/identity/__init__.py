"""
pkp_orchestrator.identity

Identity gateway package.

Responsibilities:
- Build login URLs and read identity assertions from redirect callbacks.
"""

# Package marker.


# --- Module Notes -----------------------------------------------------------
# The provider's own login UI and token issuance stay outside this package.
