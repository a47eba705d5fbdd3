import uuid

from fastapi import HTTPException, Request, status

from app.infra.org_context import set_current_org_id
from app.settings import settings


async def require_org_context(request: Request) -> uuid.UUID:
    """Organization for the request.

    ``X-Org-Id`` is honoured only in dev and testing; everywhere else the
    deployment's default organization is used.
    """

    org_id = settings.default_org_id
    header = request.headers.get("X-Org-Id")
    if header and (settings.testing or settings.app_env == "dev"):
        try:
            org_id = uuid.UUID(header)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid X-Org-Id") from exc
    request.state.current_org_id = org_id
    set_current_org_id(org_id)
    return org_id
