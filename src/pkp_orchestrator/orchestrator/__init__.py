"""
pkp_orchestrator.orchestrator

Orchestration package (tagged-state workflow).

Responsibilities:
- Workflow states, collection reducers, and the orchestrator state machine.
"""

# Package marker.


# --- Module Notes -----------------------------------------------------------
# Public surface area should remain small and stable; call sites should use `factory.create_orchestrator`.
