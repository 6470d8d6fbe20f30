from fastapi import APIRouter, Depends
from api.dependencies import get_current_user
from schemas.user_schema import (
    ChangePasswordRequest,
    CurrentUser,
    DeleteAccountRequest,
    PreferencesUpdate,
    ProfileUpdate,
)
from services import user_service
from utils.responses import no_store_json
from utils.timing import timeit

router = APIRouter()


@router.get("/profile")
async def get_profile(current_user: CurrentUser = Depends(get_current_user)):
    return no_store_json(await user_service.get_profile(current_user.id))


@router.put("/profile")
async def update_profile(payload: ProfileUpdate, current_user: CurrentUser = Depends(get_current_user)):
    return no_store_json(await user_service.update_profile(current_user.id, payload))


@router.put("/password")
async def change_password(payload: ChangePasswordRequest, current_user: CurrentUser = Depends(get_current_user)):
    return no_store_json(await user_service.change_password(current_user.id, payload))


@router.get("/settings")
async def get_settings(current_user: CurrentUser = Depends(get_current_user)):
    return no_store_json(await user_service.get_settings(current_user.id))


@router.put("/preferences")
async def update_preferences(payload: PreferencesUpdate, current_user: CurrentUser = Depends(get_current_user)):
    return no_store_json(await user_service.update_preferences(current_user.id, payload.preferences))


@router.get("/stats")
async def get_stats(current_user: CurrentUser = Depends(get_current_user)):
    return no_store_json(await user_service.get_user_stats(current_user.id))


@router.get("/export-data")
@timeit("export_data")
async def export_data(current_user: CurrentUser = Depends(get_current_user)):
    response = no_store_json(await user_service.export_user_data(current_user.id))
    response.headers["Content-Disposition"] = "attachment; filename=finance-tracker-data.json"
    return response


@router.delete("/account")
async def delete_account(payload: DeleteAccountRequest, current_user: CurrentUser = Depends(get_current_user)):
    return no_store_json(await user_service.delete_account(current_user.id, payload.confirm_password))
