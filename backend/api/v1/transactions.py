from fastapi import APIRouter, Depends, Query
from api.dependencies import get_current_user
from schemas.transaction_schema import BulkDeleteRequest, TransactionCreate, TransactionUpdate
from schemas.user_schema import CurrentUser
from services import transaction_service
from services.analytics_service import parse_date_param
from utils.responses import no_store_json
from utils.timing import timeit

router = APIRouter()


@router.get("/")
@timeit("list_transactions_route")
async def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=transaction_service.MAX_PAGE_SIZE),
    type: str = None,
    category: str = None,
    start_date: str = None,
    end_date: str = None,
    sort_by: str = "date",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    current_user: CurrentUser = Depends(get_current_user),
):
    return no_store_json(
        await transaction_service.list_transactions(
            current_user.id,
            page=page,
            limit=limit,
            type=type,
            category=category,
            start_date=parse_date_param(start_date),
            end_date=parse_date_param(end_date, end_of_day=True),
            sort_by=sort_by,
            sort_order=sort_order,
        )
    )


@router.get("/categories")
async def list_categories(current_user: CurrentUser = Depends(get_current_user)):
    return no_store_json(await transaction_service.get_categories(current_user.id))


@router.post("/bulk-delete")
async def bulk_delete(payload: BulkDeleteRequest, current_user: CurrentUser = Depends(get_current_user)):
    return no_store_json(await transaction_service.bulk_delete_transactions(current_user.id, payload.transaction_ids))


@router.get("/{transaction_id}")
async def get_transaction(transaction_id: str, current_user: CurrentUser = Depends(get_current_user)):
    return no_store_json(await transaction_service.get_transaction(current_user.id, transaction_id))


@router.post("/")
async def create_transaction(payload: TransactionCreate, current_user: CurrentUser = Depends(get_current_user)):
    return no_store_json(await transaction_service.create_transaction(current_user.id, payload), status_code=201)


@router.put("/{transaction_id}")
async def update_transaction(
    transaction_id: str,
    payload: TransactionUpdate,
    current_user: CurrentUser = Depends(get_current_user),
):
    return no_store_json(await transaction_service.update_transaction(current_user.id, transaction_id, payload))


@router.delete("/{transaction_id}")
async def delete_transaction(transaction_id: str, current_user: CurrentUser = Depends(get_current_user)):
    return no_store_json(await transaction_service.delete_transaction(current_user.id, transaction_id))
