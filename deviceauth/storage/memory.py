from __future__ import annotations

import dataclasses
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from deviceauth.logging import get_logger
from deviceauth.storage.errors import ConstraintViolation, StoreUnavailable
from deviceauth.storage.models import DeviceInfo, DeviceSession, DeviceType, utcnow


class MemoryStore:
    """In-process device session store.

    Every read-modify-write runs under a single re-entrant lock, which gives
    the same per-record atomicity the Postgres store gets from single-statement
    updates. Records handed out are copies, so callers never observe a record
    mid-mutation.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, DeviceSession] = {}
        # (user_id, device_id) -> session id; enforces one record per device
        self._device_index: Dict[Tuple[str, str], str] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @staticmethod
    def _snapshot(sess: DeviceSession) -> DeviceSession:
        return dataclasses.replace(sess, device_info=dict(sess.device_info))

    def upsert_device_session(
        self,
        user_id: str,
        device: DeviceInfo,
        *,
        access_token: str,
        refresh_token: str,
        refresh_token_expiry: datetime,
        now: Optional[datetime] = None,
    ) -> DeviceSession:
        now = now or utcnow()
        key = (user_id, device.device_id)
        with self._data_lock:
            existing_id = self._device_index.get(key)
            existing = self.sessions.get(existing_id) if existing_id else None
            if existing is None:
                sess = DeviceSession.new(
                    user_id,
                    device,
                    access_token=access_token,
                    refresh_token=refresh_token,
                    refresh_token_expiry=refresh_token_expiry,
                    now=now,
                )
                if sess.id in self.sessions:
                    raise ConstraintViolation("session id collision", {"id": sess.id})
            else:
                sess = dataclasses.replace(
                    existing,
                    device_name=device.device_name,
                    device_type=device.device_type,
                    access_token=access_token,
                    refresh_token=refresh_token,
                    refresh_token_expiry=refresh_token_expiry,
                    is_active=True,
                    last_active=now,
                    device_info=device.metadata(),
                    updated_at=now,
                )
            self._commit(
                "upsert_device_session",
                {**self.sessions, sess.id: sess},
                {**self._device_index, key: sess.id},
            )
            return self._snapshot(sess)

    def get_device_session(
        self, user_id: str, device_id: str
    ) -> Optional[DeviceSession]:
        with self._data_lock:
            session_id = self._device_index.get((user_id, device_id))
            sess = self.sessions.get(session_id) if session_id else None
            return self._snapshot(sess) if sess else None

    def find_active_by_refresh_token(
        self, refresh_token: str
    ) -> Optional[DeviceSession]:
        if not refresh_token:
            return None
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.is_active and sess.refresh_token == refresh_token:
                    return self._snapshot(sess)
        return None

    def set_access_token(
        self,
        session_id: str,
        refresh_token: str,
        access_token: str,
        now: Optional[datetime] = None,
    ) -> Optional[DeviceSession]:
        now = now or utcnow()
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if (
                not sess
                or not sess.is_active
                or not refresh_token
                or sess.refresh_token != refresh_token
            ):
                return None
            sess = dataclasses.replace(
                sess, access_token=access_token, last_active=now, updated_at=now
            )
            self._commit("set_access_token", {**self.sessions, session_id: sess})
            return self._snapshot(sess)

    def revoke_device_session(
        self, user_id: str, device_id: str, now: Optional[datetime] = None
    ) -> bool:
        with self._data_lock:
            session_id = self._device_index.get((user_id, device_id))
            sess = self.sessions.get(session_id) if session_id else None
            if not sess or not sess.is_active:
                return False
            revoked = self._snapshot(sess)
            revoked.revoke(now)
            self._commit("revoke_device_session", {**self.sessions, sess.id: revoked})
            return True

    def revoke_other_device_sessions(
        self, user_id: str, keep_device_id: str, now: Optional[datetime] = None
    ) -> int:
        now = now or utcnow()
        with self._data_lock:
            revoked: Dict[str, DeviceSession] = {}
            for sess in self.sessions.values():
                if (
                    sess.user_id == user_id
                    and sess.is_active
                    and sess.device_id != keep_device_id
                ):
                    revoked[sess.id] = self._snapshot(sess)
                    revoked[sess.id].revoke(now)
            if revoked:
                self._commit(
                    "revoke_other_device_sessions", {**self.sessions, **revoked}
                )
            return len(revoked)

    def list_active_device_sessions(self, user_id: str) -> List[DeviceSession]:
        with self._data_lock:
            active = [
                self._snapshot(sess)
                for sess in self.sessions.values()
                if sess.user_id == user_id and sess.is_active
            ]
        return sorted(active, key=lambda s: s.last_active, reverse=True)

    def close(self) -> None:
        with self._data_lock:
            self._persist_state("close", self.sessions)

    def _commit(
        self,
        operation: str,
        sessions: Dict[str, DeviceSession],
        device_index: Optional[Dict[Tuple[str, str], str]] = None,
    ) -> None:
        """Write the candidate state, then swap it in; a failed write changes nothing."""
        self._persist_state(operation, sessions)
        self.sessions = sessions
        if device_index is not None:
            self._device_index = device_index

    # persistence
    def _state_path(self) -> Optional[Path]:
        if self.fs_root is None:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "device_sessions.json"

    def _persist_state(
        self, operation: str, sessions: Dict[str, DeviceSession]
    ) -> None:
        if self.fs_root is None:
            return
        state = {
            "device_sessions": [self._serialize_session(s) for s in sessions.values()]
        }
        try:
            path = self._state_path()
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error(
                "store_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(operation, exc) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.sessions = {
            s["id"]: self._deserialize_session(s)
            for s in data.get("device_sessions", [])
        }
        self._device_index = {
            (s.user_id, s.device_id): s.id for s in self.sessions.values()
        }
        self.logger.info("memory_state_loaded", sessions=len(self.sessions))
        return True

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _serialize_session(self, session: DeviceSession) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "device_id": session.device_id,
            "device_name": session.device_name,
            "device_type": session.device_type.value,
            "access_token": session.access_token,
            "refresh_token": session.refresh_token,
            "refresh_token_expiry": self._serialize_datetime(
                session.refresh_token_expiry
            ),
            "is_active": session.is_active,
            "last_active": self._serialize_datetime(session.last_active),
            "device_info": session.device_info,
            "created_at": self._serialize_datetime(session.created_at),
            "updated_at": self._serialize_datetime(session.updated_at),
        }

    def _deserialize_session(self, data: dict) -> DeviceSession:
        created_at = self._deserialize_datetime(data["created_at"])
        return DeviceSession(
            id=data["id"],
            user_id=data["user_id"],
            device_id=data["device_id"],
            device_name=data.get("device_name", ""),
            device_type=DeviceType.coerce(data.get("device_type")),
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token", ""),
            refresh_token_expiry=self._deserialize_datetime(
                data["refresh_token_expiry"]
            ),
            is_active=data.get("is_active", False),
            last_active=self._deserialize_datetime(
                data.get("last_active", data["created_at"])
            ),
            device_info=data.get("device_info") or {},
            created_at=created_at,
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )
