from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from deviceauth.storage.models import DeviceSession

# Upper bound for opaque tokens and identifiers accepted over HTTP
MAX_TOKEN_LENGTH = 4096
MAX_DEVICE_ID_LENGTH = 256


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: Literal["ok", "error"]
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: Optional[str] = None


class RefreshRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class AccessTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class RevokeOthersRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    current_device_id: str = Field(..., min_length=1, max_length=MAX_DEVICE_ID_LENGTH)


class RevokeOthersResponse(BaseModel):
    revoked_count: int


class RevokeDeviceResponse(BaseModel):
    revoked: str


class DeviceSummary(BaseModel):
    id: str
    device_id: str
    device_name: str
    device_type: str
    device_info: Dict[str, str] = Field(default_factory=dict)
    is_active: bool
    last_active: datetime
    created_at: datetime

    @classmethod
    def from_session(cls, session: DeviceSession) -> "DeviceSummary":
        return cls(**session.summary())
