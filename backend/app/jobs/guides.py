import uuid
from datetime import date, datetime
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.guides.service import archive_ephemeral_guides
from app.domain.saas.service import resolve_org_timezone
from app.infra.org_context import org_id_context


async def run_ephemeral_guide_archive(
    session: AsyncSession, org_id: uuid.UUID, *, today: date | None = None
) -> dict[str, int]:
    """Archive temporary and external guides dated before the org's current day."""

    with org_id_context(org_id):
        if today is None:
            tz_name = await resolve_org_timezone(session, org_id)
            today = datetime.now(tz=ZoneInfo(tz_name)).date()
        archived = await archive_ephemeral_guides(session, org_id, before=today)
        await session.commit()
    return {"archived": archived}
