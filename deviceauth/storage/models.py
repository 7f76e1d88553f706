from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

# Optional client metadata carried alongside the device identity
DEVICE_INFO_KEYS = ("os", "browser", "ip", "location")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceType(str, Enum):
    """Client form factors recognised for session listings."""

    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"
    OTHER = "other"

    @classmethod
    def coerce(cls, value: Any) -> "DeviceType":
        """Map free-form client input onto a known type, defaulting to ``other``."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return cls.OTHER
        return cls.OTHER


@dataclass
class DeviceInfo:
    device_id: str
    device_name: str
    device_type: DeviceType = DeviceType.OTHER
    os: Optional[str] = None
    browser: Optional[str] = None
    ip: Optional[str] = None
    location: Optional[str] = None

    def __post_init__(self) -> None:
        self.device_type = DeviceType.coerce(self.device_type)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceInfo":
        return cls(
            device_id=data.get("device_id") or data.get("deviceId") or "",
            device_name=data.get("device_name") or data.get("deviceName") or "",
            device_type=data.get("device_type") or data.get("deviceType"),
            os=data.get("os"),
            browser=data.get("browser"),
            ip=data.get("ip"),
            location=data.get("location"),
        )

    def metadata(self) -> Dict[str, str]:
        """Return the optional client metadata with absent keys omitted."""
        return {
            key: getattr(self, key)
            for key in DEVICE_INFO_KEYS
            if getattr(self, key) is not None
        }


@dataclass
class DeviceSession:
    id: str
    user_id: str
    device_id: str
    device_name: str
    device_type: DeviceType
    access_token: str
    refresh_token: str
    refresh_token_expiry: datetime
    is_active: bool = True
    last_active: datetime = field(default_factory=utcnow)
    device_info: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        device: DeviceInfo,
        *,
        access_token: str,
        refresh_token: str,
        refresh_token_expiry: datetime,
        now: Optional[datetime] = None,
    ) -> "DeviceSession":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            device_id=device.device_id,
            device_name=device.device_name,
            device_type=device.device_type,
            access_token=access_token,
            refresh_token=refresh_token,
            refresh_token_expiry=refresh_token_expiry,
            is_active=True,
            last_active=now,
            device_info=device.metadata(),
            created_at=now,
            updated_at=now,
        )

    def revoke(self, now: Optional[datetime] = None) -> None:
        """Deactivate and blank both tokens in one step."""
        self.is_active = False
        self.access_token = ""
        self.refresh_token = ""
        self.updated_at = now or utcnow()

    def summary(self) -> Dict[str, Any]:
        """Public view of the session; token values are never included."""
        return {
            "id": self.id,
            "device_id": self.device_id,
            "device_name": self.device_name,
            "device_type": self.device_type.value,
            "device_info": dict(self.device_info),
            "is_active": self.is_active,
            "last_active": self.last_active,
            "created_at": self.created_at,
        }
