"""Dashboard summary for the authenticated caller's role."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.errors import ledger_http_error
from services.dashboard import build_dashboard
from services.errors import LedgerError

router = APIRouter()


@router.get("/me")
async def get_my_dashboard(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await build_dashboard(
            db,
            user_id=auth.user_id,
            role=auth.role,
            organization_id=auth.organization_id,
        )
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
