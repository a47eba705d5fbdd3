from __future__ import annotations

import uuid

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.saas.db_models import Organization
from app.settings import settings

DEFAULT_ORG_NAME = "Default Org"


async def ensure_default_org(session: AsyncSession) -> Organization:
    """Ensure the deterministic default org exists for the current database.

    Uses dialect-specific upserts so it remains idempotent across Postgres (ON CONFLICT)
    and SQLite (INSERT OR IGNORE).
    """

    org_id = settings.default_org_id
    org = await session.get(Organization, org_id)
    if org is not None:
        return org

    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "") if bind else ""
    if dialect_name == "sqlite":
        org_stmt = sqlite.insert(Organization).values(org_id=org_id, name=DEFAULT_ORG_NAME)
        org_stmt = org_stmt.prefix_with("OR IGNORE")
    else:
        org_stmt = (
            postgresql.insert(Organization)
            .values(org_id=org_id, name=DEFAULT_ORG_NAME)
            .on_conflict_do_nothing()
        )
    await session.execute(org_stmt)
    await session.commit()
    org = await session.get(Organization, org_id)
    if org is None:
        org = await session.scalar(sa.select(Organization).where(Organization.name == DEFAULT_ORG_NAME))
    if org is None:
        raise RuntimeError("default organization could not be created")
    return org


async def create_organization(
    session: AsyncSession, *, name: str, timezone: str | None = None, org_id: uuid.UUID | None = None
) -> Organization:
    org = Organization(org_id=org_id or uuid.uuid4(), name=name, timezone=timezone)
    session.add(org)
    await session.flush()
    return org


async def resolve_org_timezone(session: AsyncSession, org_id: uuid.UUID) -> str:
    org = await session.get(Organization, org_id)
    if org is not None and org.timezone:
        return org.timezone
    return settings.dispatch_timezone
