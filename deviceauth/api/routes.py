from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from deviceauth.api.schemas import (
    AccessTokenResponse,
    DeviceSummary,
    Envelope,
    RefreshRequest,
    RevokeDeviceResponse,
    RevokeOthersRequest,
    RevokeOthersResponse,
)
from deviceauth.logging import get_correlation_id
from deviceauth.service.runtime import get_runtime

router = APIRouter(prefix="/v1")


async def get_user_id(authorization: Optional[str] = Header(None)) -> str:
    """Resolve the caller from the ``Authorization: Bearer`` header."""
    runtime = get_runtime()
    return runtime.gateway.authenticate_header(authorization)


def _ok(data) -> Envelope:
    return Envelope(status="ok", data=data, request_id=get_correlation_id())


@router.post("/auth/refresh", response_model=Envelope)
async def refresh_access_token(body: RefreshRequest):
    runtime = get_runtime()
    access_token = await runtime.sessions.refresh_access_token(body.refresh_token)
    return _ok(AccessTokenResponse(access_token=access_token))


@router.get("/devices", response_model=Envelope)
async def list_devices(user_id: str = Depends(get_user_id)):
    runtime = get_runtime()
    sessions = await runtime.sessions.get_active_devices(user_id)
    return _ok([DeviceSummary.from_session(s) for s in sessions])


@router.delete("/devices/{device_id}", response_model=Envelope)
async def revoke_device(device_id: str, user_id: str = Depends(get_user_id)):
    runtime = get_runtime()
    await runtime.sessions.revoke_device(user_id, device_id)
    return _ok(RevokeDeviceResponse(revoked=device_id))


@router.post("/devices/revoke-others", response_model=Envelope)
async def revoke_other_devices(
    body: RevokeOthersRequest, user_id: str = Depends(get_user_id)
):
    runtime = get_runtime()
    count = await runtime.sessions.revoke_all_other_devices(
        user_id, body.current_device_id
    )
    return _ok(RevokeOthersResponse(revoked_count=count))
