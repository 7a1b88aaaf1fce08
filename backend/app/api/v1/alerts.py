"""
FastAPI route: crash alert lifecycle endpoints.

Provides endpoints to:
    POST /api/v1/alerts                      — report a possible accident
    GET  /api/v1/alerts/history/sent         — alerts I raised
    GET  /api/v1/alerts/history/received     — alerts that notified me
    GET  /api/v1/alerts/history/all          — both, newest first, tagged by type
    GET  /api/v1/alerts/{id}                 — alert details
    POST /api/v1/alerts/{id}/cancel          — rider calls it off (pending only)
    POST /api/v1/alerts/{id}/acknowledge     — contact confirms they respond
    POST /api/v1/alerts/{id}/location        — rider location sample
    POST /api/v1/alerts/{id}/resolve         — rider closes the incident
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.app.alerts.alert_service import AlertPage
from backend.app.alerts.container import AlertServices
from backend.app.alerts.directory import same_number
from backend.app.alerts.models import Account, Alert, AlertStatus
from backend.app.api.deps import current_account, get_services
from backend.app.api.schemas import (
    AlertHistoryResponse,
    CreateAlertRequest,
    LocationUpdateRequest,
)
from backend.app.core.errors import NotFoundError

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

def _can_view(alert: Alert, account: Account) -> bool:
    if alert.owner_id == account.account_id:
        return True
    return any(
        same_number(r.contact_phone_number, account.phone_number)
        for r in alert.notifications_sent
    )


def _history(page: AlertPage, account: Optional[Account] = None) -> AlertHistoryResponse:
    alerts = []
    for alert in page.alerts:
        d = alert.to_dict()
        if account is not None:
            d["my_notification"] = next(
                (r.to_dict() for r in alert.notifications_sent
                 if same_number(r.contact_phone_number, account.phone_number)),
                None,
            )
        alerts.append(d)
    return AlertHistoryResponse(
        alerts=alerts,
        total=page.total,
        page=page.page,
        total_pages=page.total_pages,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "",
    summary="Report a possible accident",
    description=(
        "Persists a pending alert and starts the countdown. Contacts are "
        "notified when the countdown expires unless the rider cancels first."
    ),
)
async def create_alert(
    request: CreateAlertRequest,
    account: Account = Depends(current_account),
    services: AlertServices = Depends(get_services),
):
    alert = await services.alerts.create_alert(
        account.account_id,
        request.magnitude,
        request.location(),
        request.device_metadata(),
    )
    return {
        "success": True,
        "alert": alert.to_dict(),
        "countdown": services.alerts.countdown_for(account),
    }


@router.get("/history/sent", response_model=AlertHistoryResponse)
async def sent_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[AlertStatus] = Query(None),
    account: Account = Depends(current_account),
    services: AlertServices = Depends(get_services),
):
    result = await services.alerts.list_sent(
        account.account_id, status=status, page=page, limit=limit,
    )
    return _history(result)


@router.get("/history/received", response_model=AlertHistoryResponse)
async def received_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[AlertStatus] = Query(None),
    account: Account = Depends(current_account),
    services: AlertServices = Depends(get_services),
):
    result = await services.alerts.list_received(
        account.account_id, status=status, page=page, limit=limit,
    )
    return _history(result, account)


@router.get("/history/all", response_model=AlertHistoryResponse)
async def all_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    account: Account = Depends(current_account),
    services: AlertServices = Depends(get_services),
):
    result = await services.alerts.list_all(account.account_id, page=page, limit=limit)
    response = _history(result, account)
    for entry in response.alerts:
        entry["type"] = "sent" if entry["owner_id"] == account.account_id else "received"
    return response


@router.get("/{alert_id}", summary="Alert details")
async def get_alert(
    alert_id: str,
    account: Account = Depends(current_account),
    services: AlertServices = Depends(get_services),
):
    alert = await services.alerts.get_alert(alert_id)
    if not _can_view(alert, account):
        raise NotFoundError("Alert", alert_id=alert_id)
    return {"success": True, "alert": alert.to_dict()}


@router.post("/{alert_id}/cancel", summary="Cancel a pending alert")
async def cancel_alert(
    alert_id: str,
    account: Account = Depends(current_account),
    services: AlertServices = Depends(get_services),
):
    alert = await services.alerts.cancel_alert(alert_id, account.account_id)
    return {"success": True, "alert": alert.to_dict()}


@router.post("/{alert_id}/acknowledge", summary="Acknowledge a sent alert")
async def acknowledge_alert(
    alert_id: str,
    account: Account = Depends(current_account),
    services: AlertServices = Depends(get_services),
):
    alert = await services.alerts.acknowledge_alert(alert_id, account.phone_number)
    return {"success": True, "alert": alert.to_dict()}


@router.post("/{alert_id}/location", summary="Update the alert's location")
async def update_location(
    alert_id: str,
    request: LocationUpdateRequest,
    account: Account = Depends(current_account),
    services: AlertServices = Depends(get_services),
):
    alert = await services.alerts.update_alert_location(
        alert_id, request.latitude, request.longitude, requester_id=account.account_id,
    )
    return {"success": True, "location": alert.location.to_dict(), "status": alert.status.value}


@router.post("/{alert_id}/resolve", summary="Close a sent or acknowledged alert")
async def resolve_alert(
    alert_id: str,
    account: Account = Depends(current_account),
    services: AlertServices = Depends(get_services),
):
    alert = await services.alerts.resolve_alert(alert_id, account.account_id)
    return {"success": True, "alert": alert.to_dict()}
