from fastapi import APIRouter, Depends, Query

from api.dependencies import get_current_user
from schemas.user_schema import CurrentUser
from services import analytics_service
from services.analytics_service import parse_date_param
from utils.responses import no_store_json

router = APIRouter()


@router.get("/summary")
async def get_summary(
    period: str = Query("all", pattern="^(all|today|week|month|year|custom)$"),
    start_date: str = None,
    end_date: str = None,
    current_user: CurrentUser = Depends(get_current_user),
):
    return no_store_json(
        await analytics_service.get_summary(
            current_user.id,
            period=period,
            start_date=parse_date_param(start_date),
            end_date=parse_date_param(end_date, end_of_day=True),
        )
    )


@router.get("/trends")
async def get_trends(
    period: str = Query("month", pattern="^(day|week|month)$"),
    months: int = Query(6, ge=1, le=24),
    current_user: CurrentUser = Depends(get_current_user),
):
    return no_store_json(await analytics_service.get_trends(current_user.id, period=period, months=months))


@router.get("/categories")
async def get_categories(
    type: str = Query("expense", pattern="^(income|expense)$"),
    period: str = Query("month", pattern="^(all|today|week|month|year)$"),
    current_user: CurrentUser = Depends(get_current_user),
):
    return no_store_json(await analytics_service.get_category_breakdown(current_user.id, type=type, period=period))


@router.get("/monthly-comparison")
async def get_monthly_comparison(
    months: int = Query(6, ge=1, le=24),
    current_user: CurrentUser = Depends(get_current_user),
):
    return no_store_json(await analytics_service.get_monthly_comparison(current_user.id, months=months))


@router.get("/goals")
async def get_goals(current_user: CurrentUser = Depends(get_current_user)):
    return no_store_json(await analytics_service.get_goals_progress(current_user.id))
