from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Union

from deviceauth.logging import get_logger
from deviceauth.service.errors import (
    PersistenceError,
    SessionExpiredError,
    SessionNotFoundError,
    ValidationError,
)
from deviceauth.service.tokens import TokenIssuer
from deviceauth.storage.errors import StoreUnavailable
from deviceauth.storage.models import DeviceInfo, DeviceSession

logger = get_logger(__name__)


class SessionStore(Protocol):
    def upsert_device_session(
        self,
        user_id: str,
        device: DeviceInfo,
        *,
        access_token: str,
        refresh_token: str,
        refresh_token_expiry: datetime,
        now: Optional[datetime] = None,
    ) -> DeviceSession: ...

    def get_device_session(
        self, user_id: str, device_id: str
    ) -> Optional[DeviceSession]: ...

    def find_active_by_refresh_token(
        self, refresh_token: str
    ) -> Optional[DeviceSession]: ...

    def set_access_token(
        self,
        session_id: str,
        refresh_token: str,
        access_token: str,
        now: Optional[datetime] = None,
    ) -> Optional[DeviceSession]: ...

    def revoke_device_session(
        self, user_id: str, device_id: str, now: Optional[datetime] = None
    ) -> bool: ...

    def revoke_other_device_sessions(
        self, user_id: str, keep_device_id: str, now: Optional[datetime] = None
    ) -> int: ...

    def list_active_device_sessions(self, user_id: str) -> List[DeviceSession]: ...

    def close(self) -> None: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    refresh_token_expiry: datetime
    token_type: str = "bearer"


class SessionManager:
    """Creates, refreshes, lists and revokes per-device sessions.

    Each operation issues exactly one store mutation, so a concurrent
    refresh and revoke on the same device resolve in store order and never
    leave a half-revoked record behind.
    """

    def __init__(self, store: SessionStore, tokens: TokenIssuer) -> None:
        self.store = store
        self.tokens = tokens
        self.logger = logger

    def _persistence_error(self, exc: StoreUnavailable) -> PersistenceError:
        self.logger.warning("store_unavailable", operation=exc.operation)
        return PersistenceError(
            "session store unavailable", detail={"operation": exc.operation}
        )

    async def create_device_session(
        self, user_id: str, device_info: Union[DeviceInfo, Dict[str, Any]]
    ) -> TokenPair:
        """Register a device for an already-verified user.

        Re-registering the same device replaces its tokens, which silently
        invalidates the previous refresh token. A revoked device is
        reactivated.
        """
        if isinstance(device_info, DeviceInfo):
            device = device_info
        elif isinstance(device_info, dict) or device_info is None:
            device = DeviceInfo.from_dict(device_info or {})
        else:
            raise ValidationError("device_info must be a mapping")
        if not isinstance(user_id, str) or not user_id:
            raise ValidationError("user_id is required")
        if not isinstance(device.device_id, str) or not device.device_id.strip():
            raise ValidationError("device_id must be a non-empty string")
        if not isinstance(device.device_name, str) or not device.device_name.strip():
            raise ValidationError("device_name must be a non-empty string")

        now = self.tokens.now()
        access_token = self.tokens.generate_access_token(user_id)
        refresh_token = self.tokens.generate_refresh_token()
        expiry = self.tokens.refresh_token_expiry(now)
        try:
            session = self.store.upsert_device_session(
                user_id,
                device,
                access_token=access_token,
                refresh_token=refresh_token,
                refresh_token_expiry=expiry,
                now=now,
            )
        except StoreUnavailable as exc:
            raise self._persistence_error(exc) from exc
        self.logger.info(
            "device_session_created",
            user_id=user_id,
            device_id=device.device_id,
            device_type=device.device_type.value,
            session_id=session.id,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            refresh_token_expiry=session.refresh_token_expiry,
        )

    async def refresh_access_token(self, refresh_token: str) -> str:
        """Mint a new access token for the session holding ``refresh_token``.

        The refresh token itself is not rotated and its expiry is unchanged.
        """
        if not refresh_token:
            self.logger.info("refresh_rejected", reason="missing_token")
            raise SessionNotFoundError("invalid refresh token")
        try:
            session = self.store.find_active_by_refresh_token(refresh_token)
        except StoreUnavailable as exc:
            raise self._persistence_error(exc) from exc
        if session is None:
            self.logger.info("refresh_rejected", reason="no_active_session")
            raise SessionNotFoundError("invalid refresh token")

        now = self.tokens.now()
        if session.refresh_token_expiry < now:
            self.logger.info(
                "refresh_rejected",
                reason="expired",
                user_id=session.user_id,
                device_id=session.device_id,
            )
            raise SessionExpiredError("refresh token expired")

        access_token = self.tokens.generate_access_token(session.user_id)
        try:
            updated = self.store.set_access_token(
                session.id, refresh_token, access_token, now
            )
        except StoreUnavailable as exc:
            raise self._persistence_error(exc) from exc
        if updated is None:
            # Revoked or re-registered between lookup and update
            self.logger.info(
                "refresh_rejected",
                reason="session_changed",
                user_id=session.user_id,
                device_id=session.device_id,
            )
            raise SessionNotFoundError("invalid refresh token")
        self.logger.info(
            "access_token_refreshed",
            user_id=updated.user_id,
            device_id=updated.device_id,
        )
        return access_token

    async def revoke_device(self, user_id: str, device_id: str) -> None:
        """Deactivate one device; a missing or already revoked device is a no-op."""
        try:
            revoked = self.store.revoke_device_session(
                user_id, device_id, self.tokens.now()
            )
        except StoreUnavailable as exc:
            raise self._persistence_error(exc) from exc
        self.logger.info(
            "device_session_revoked",
            user_id=user_id,
            device_id=device_id,
            changed=revoked,
        )

    async def revoke_all_other_devices(
        self, user_id: str, current_device_id: str
    ) -> int:
        try:
            count = self.store.revoke_other_device_sessions(
                user_id, current_device_id, self.tokens.now()
            )
        except StoreUnavailable as exc:
            raise self._persistence_error(exc) from exc
        self.logger.info(
            "other_device_sessions_revoked",
            user_id=user_id,
            kept_device_id=current_device_id,
            revoked_count=count,
        )
        return count

    async def get_active_devices(self, user_id: str) -> List[DeviceSession]:
        """Active sessions for ``user_id``, most recently active first."""
        try:
            sessions = self.store.list_active_device_sessions(user_id)
        except StoreUnavailable as exc:
            raise self._persistence_error(exc) from exc
        return sorted(sessions, key=lambda s: s.last_active, reverse=True)
