"""
FastAPI dependencies shared by the v1 routers.

Authentication is delegated to the gateway in front of this service; the
verified caller identity arrives in the X-Account-ID header.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Request

from backend.app.alerts.container import AlertServices
from backend.app.alerts.models import Account
from backend.app.core.errors import AuthenticationError, NotFoundError


def get_services(request: Request) -> AlertServices:
    return request.app.state.services


async def current_account(
    x_account_id: Optional[str] = Header(None, alias="X-Account-ID"),
    services: AlertServices = Depends(get_services),
) -> Account:
    if not x_account_id:
        raise AuthenticationError("X-Account-ID header required")
    try:
        return await services.directory.get_account(x_account_id)
    except NotFoundError:
        raise AuthenticationError("Unknown account") from None
