from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.outbox.service import OutboxAdapters, process_outbox


async def run_outbox_delivery(session: AsyncSession, adapters: OutboxAdapters | None = None, *, limit: int = 50) -> dict[str, int]:
    return await process_outbox(session, adapters or OutboxAdapters(), limit=limit)
