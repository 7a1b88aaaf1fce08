"""
FastAPI route: account registration, profile, contacts and settings.

    POST   /api/v1/accounts                     — register or log in
    GET    /api/v1/accounts/me                  — own profile
    PATCH  /api/v1/accounts/me                  — change name / push token
    PUT    /api/v1/accounts/me/push-token       — set / clear FCM token
    PATCH  /api/v1/accounts/me/settings         — partial settings update
    POST   /api/v1/accounts/me/contacts         — add or replace a contact
    DELETE /api/v1/accounts/me/contacts/{phone} — remove a contact
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.app.alerts.container import AlertServices
from backend.app.alerts.models import Account
from backend.app.api.deps import current_account, get_services
from backend.app.api.schemas import (
    ContactRequest,
    ProfileUpdateRequest,
    PushTokenRequest,
    RegisterRequest,
    SettingsUpdateRequest,
)

router = APIRouter(prefix="/api/v1/accounts", tags=["accounts"])


@router.post("", summary="Register or log in by phone number")
async def register(
    request: RegisterRequest,
    services: AlertServices = Depends(get_services),
):
    account = await services.directory.register(
        request.phone_number, request.name, request.push_token,
    )
    await services.directory.touch(account.account_id)
    return {"success": True, "account": account.to_dict()}


@router.get("/me", summary="Own profile")
async def get_profile(account: Account = Depends(current_account)):
    return {"success": True, "account": account.to_dict()}


@router.patch("/me", summary="Update profile")
async def update_profile(
    request: ProfileUpdateRequest,
    account: Account = Depends(current_account),
    services: AlertServices = Depends(get_services),
):
    updated = await services.directory.update_profile(
        account.account_id, name=request.name, push_token=request.push_token,
    )
    return {"success": True, "account": updated.to_dict()}


@router.put("/me/push-token", summary="Set or clear the push token")
async def update_push_token(
    request: PushTokenRequest,
    account: Account = Depends(current_account),
    services: AlertServices = Depends(get_services),
):
    updated = await services.directory.update_push_token(account.account_id, request.push_token)
    return {"success": True, "account": updated.to_dict()}


@router.patch("/me/settings", summary="Update alert settings")
async def update_settings(
    request: SettingsUpdateRequest,
    account: Account = Depends(current_account),
    services: AlertServices = Depends(get_services),
):
    updated = await services.directory.update_settings(
        account.account_id, **request.model_dump(exclude_none=True),
    )
    return {"success": True, "settings": updated.settings.to_dict()}


@router.post("/me/contacts", summary="Add or replace an emergency contact")
async def add_contact(
    request: ContactRequest,
    account: Account = Depends(current_account),
    services: AlertServices = Depends(get_services),
):
    updated = await services.directory.add_contact(
        account.account_id,
        request.phone_number,
        name=request.name,
        relationship=request.relationship,
        is_primary=request.is_primary,
    )
    return {
        "success": True,
        "emergency_contacts": [c.to_dict() for c in updated.emergency_contacts],
    }


@router.delete("/me/contacts/{phone_number}", summary="Remove an emergency contact")
async def remove_contact(
    phone_number: str,
    account: Account = Depends(current_account),
    services: AlertServices = Depends(get_services),
):
    updated = await services.directory.remove_contact(account.account_id, phone_number)
    return {
        "success": True,
        "emergency_contacts": [c.to_dict() for c in updated.emergency_contacts],
    }
