"""Organization scope for the current request or job.

Dispatch data is partitioned by organization. The scope feeds the Postgres
session hook (``SET LOCAL app.current_org_id``) and is stamped on every log
line emitted while it is active.
"""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

from app.infra.logging import LOG_CONTEXT, update_log_context

_org_scope: ContextVar[uuid.UUID | None] = ContextVar("dispatch_org_scope", default=None)


def set_current_org_id(org_id: uuid.UUID | None) -> None:
    _org_scope.set(org_id)
    if org_id is not None:
        update_log_context(org_id=str(org_id))


def get_current_org_id() -> uuid.UUID | None:
    return _org_scope.get()


@contextmanager
def org_id_context(org_id: uuid.UUID) -> Iterator[uuid.UUID]:
    """Run a job's work for one organization, restoring the previous scope on exit."""

    scope_token = _org_scope.set(org_id)
    log_token = LOG_CONTEXT.set({**LOG_CONTEXT.get({}), "org_id": str(org_id)})
    try:
        yield org_id
    finally:
        LOG_CONTEXT.reset(log_token)
        _org_scope.reset(scope_token)
