from fastapi import Request

from app.domain.outbox.service import OutboxAdapters
from app.infra.db import get_db_session

__all__ = ["get_db_session", "get_outbox_adapters"]


def get_outbox_adapters(request: Request) -> OutboxAdapters:
    adapters = getattr(request.app.state, "outbox_adapters", None)
    if adapters is None:
        adapters = OutboxAdapters()
        request.app.state.outbox_adapters = adapters
    return adapters
