# routers/insights.py — Organisation analytics for staff
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from analytics_engine import get_dashboard_stats, get_insights_data, get_space_stats
from auth import CurrentUser, require_org_member
from database import get_db_session

router = APIRouter(prefix="/api/v1/insights", tags=["Insights"])


@router.get("")
async def insights(
    user: CurrentUser = Depends(require_org_member("insights:read")),
    db: AsyncSession = Depends(get_db_session),
):
    """KPIs, monthly counts, distributions, funnel and upcoming go-lives"""
    return (await get_insights_data(db, user.organisation_id)).to_dict()


@router.get("/space-stats")
async def space_stats(
    user: CurrentUser = Depends(require_org_member("insights:read")),
    db: AsyncSession = Depends(get_db_session),
):
    return await get_space_stats(db, user.organisation_id)


@router.get("/dashboard")
async def dashboard(
    user: CurrentUser = Depends(require_org_member("insights:read")),
    db: AsyncSession = Depends(get_db_session),
):
    return await get_dashboard_stats(db, user.organisation_id)
