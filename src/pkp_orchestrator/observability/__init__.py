"""
pkp_orchestrator.observability

Observability package.

Responsibilities:
- Structured logging configuration.
- Per-operation context propagation for consistent log enrichment.
"""

# Package marker.


# --- Module Notes -----------------------------------------------------------
# Tokens, keys and session capabilities must never be bound into log context.
