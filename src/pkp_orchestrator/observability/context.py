"""
pkp_orchestrator.observability.context

Operation-scoped logging context.

Responsibilities:
- Bind workflow id and operation name into structlog contextvars.
- Restore the previous context when the operation ends.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

import structlog


@contextmanager
def operation_context(*, workflow_id: str, operation: str) -> Iterator[None]:
    """
    Every log line emitted inside an orchestrator operation carries `workflow_id` and `operation`.
    """

    # bound_contextvars resets only the keys it set, so a caller's own context survives.
    with structlog.contextvars.bound_contextvars(workflow_id=workflow_id, operation=operation):
        yield


# --- Module Notes -----------------------------------------------------------
# Operations run as orchestrator-owned tasks; each task copies the context at creation,
# so binding inside the task keeps concurrent orchestrators from mixing fields.
