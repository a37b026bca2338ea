from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from gatekeep.logging import get_logger
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import Otp, Permission, RefreshToken, User, utcnow


class MemoryStore:
    """In-process store with JSON snapshotting under ``fs_root``.

    Records are handed out as copies; callers persist changes through the
    ``update_*`` methods like they would against a database.
    """

    def __init__(self, fs_root: str = "/tmp/gatekeep", *, secret_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.otps: Dict[str, Otp] = {}  # user_id -> current challenge
        self.refresh_tokens: Dict[str, RefreshToken] = {}  # token value -> record
        self.permissions: Dict[str, Permission] = {}
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = self._build_cipher(secret_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "gatekeep_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str | None) -> Fernet:
        material = key_material
        if not material:
            key_path = self.fs_root / ".mfa_key"
            try:
                material = key_path.read_text().strip()
            except FileNotFoundError:
                material = ""
            if not material:
                material = secrets.token_urlsafe(64)
                try:
                    key_path.write_text(material)
                    os.chmod(key_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist MFA encryption key") from exc
        return Fernet(self._derive_cipher_key(material))

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("otp_secret_decrypt_failed")
            raise RuntimeError("stored OTP secret cannot be decrypted with the configured key") from exc

    # users
    def create_user(self, email: str, *, is_active: bool = True) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=email, is_active=is_active)
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def update_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user.id})
            user.updated_at = utcnow()
            self.users[user.id] = replace(user)
            self._persist_state()
            return replace(user)

    # otp challenges
    def create_otp(self, otp: Otp) -> Otp:
        with self._data_lock:
            if otp.user_id not in self.users:
                raise ConstraintViolation("user not found for otp", {"user_id": otp.user_id})
            # One live challenge per user; a newer one replaces the old
            self.otps[otp.user_id] = replace(otp)
            self._persist_state()
            return replace(otp)

    def get_otp_for_user(self, user_id: str) -> Optional[Otp]:
        with self._data_lock:
            otp = self.otps.get(user_id)
            return replace(otp) if otp else None

    def mark_otp_verified(self, otp: Otp) -> Optional[Otp]:
        """Flip ``verified`` on the live challenge ``otp.id`` exactly once.

        Returns ``None`` when that challenge was replaced or already verified.
        """
        with self._data_lock:
            current = self.otps.get(otp.user_id)
            if not current or current.id != otp.id or current.verified:
                return None
            current.mark_verified()
            self._persist_state()
            return replace(current)

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[token.token] = replace(token)
            self._persist_state()
            return replace(token)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def update_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            current = self.refresh_tokens.get(token.token)
            if not current or current.id != token.id:
                raise ConstraintViolation("refresh token not found", {"token_id": token.id})
            self.refresh_tokens[token.token] = replace(token)
            self._persist_state()
            return replace(token)

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            stale = [value for value, rec in self.refresh_tokens.items() if rec.user_id == user_id]
            for value in stale:
                self.refresh_tokens.pop(value, None)
            if stale:
                self._persist_state()
            return len(stale)

    def replace_refresh_tokens(self, token: RefreshToken) -> RefreshToken:
        """Drop every token of ``token.user_id`` and insert ``token`` atomically."""
        with self._data_lock:
            existing = self.refresh_tokens.get(token.token)
            if existing and existing.user_id != token.user_id:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            stale = [v for v, rec in self.refresh_tokens.items() if rec.user_id == token.user_id]
            for value in stale:
                self.refresh_tokens.pop(value, None)
            self.refresh_tokens[token.token] = replace(token)
            self._persist_state()
            return replace(token)

    # permissions
    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            perm = self.permissions.get(permission_id)
            return replace(perm) if perm else None

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._data_lock:
            perm = next((p for p in self.permissions.values() if p.name == name), None)
            return replace(perm) if perm else None

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return [replace(p) for p in sorted(self.permissions.values(), key=lambda p: p.name)]

    def list_permissions_by_resource(self, resource: str) -> List[Permission]:
        with self._data_lock:
            return [
                replace(p)
                for p in sorted(self.permissions.values(), key=lambda p: p.name)
                if p.resource == resource
            ]

    def create_permission(self, permission: Permission) -> Permission:
        with self._data_lock:
            if permission.id in self.permissions:
                raise ConstraintViolation("permission id already exists", {"field": "id"})
            self._ensure_unique_name(permission)
            self.permissions[permission.id] = replace(permission)
            self._persist_state()
            return replace(permission)

    def update_permission(self, permission: Permission) -> Permission:
        with self._data_lock:
            if permission.id not in self.permissions:
                raise ConstraintViolation(
                    "permission not found", {"permission_id": permission.id}
                )
            self._ensure_unique_name(permission)
            permission.updated_at = utcnow()
            self.permissions[permission.id] = replace(permission)
            self._persist_state()
            return replace(permission)

    def delete_permission(self, permission_id: str) -> bool:
        with self._data_lock:
            if self.permissions.pop(permission_id, None) is None:
                return False
            self._persist_state()
            return True

    def _ensure_unique_name(self, permission: Permission) -> None:
        for other in self.permissions.values():
            if other.name == permission.name and other.id != permission.id:
                raise ConstraintViolation("permission name already exists", {"field": "name"})

    # snapshotting
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "otps": [self._serialize_otp(o) for o in self.otps.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
            "permissions": [
                self._serialize_permission(p) for p in self.permissions.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.otps = {o["user_id"]: self._deserialize_otp(o) for o in data.get("otps", [])}
        self.refresh_tokens = {
            t["token"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self.permissions = {
            p["id"]: self._deserialize_permission(p) for p in data.get("permissions", [])
        }
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "is_active": user.is_active,
            "otp_enabled": user.otp_enabled,
            "otp_secret": self._encrypt_secret(user.otp_secret),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            is_active=data.get("is_active", True),
            otp_enabled=data.get("otp_enabled", False),
            otp_secret=self._decrypt_secret(data.get("otp_secret")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_otp(self, otp: Otp) -> dict:
        return {
            "id": otp.id,
            "user_id": otp.user_id,
            "secret": self._encrypt_secret(otp.secret),
            "created_at": self._serialize_datetime(otp.created_at),
            "expires_at": self._serialize_datetime(otp.expires_at),
            "verified": otp.verified,
        }

    def _deserialize_otp(self, data: dict) -> Otp:
        return Otp(
            id=data["id"],
            user_id=data["user_id"],
            secret=self._decrypt_secret(data["secret"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            verified=data.get("verified", False),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token": token.token,
            "expires_at": self._serialize_datetime(token.expires_at),
            "revoked": token.revoked,
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            user_id=data["user_id"],
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=data.get("revoked", False),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_permission(self, perm: Permission) -> dict:
        return {
            "id": perm.id,
            "name": perm.name,
            "description": perm.description,
            "resource": perm.resource,
            "action": perm.action,
            "created_at": self._serialize_datetime(perm.created_at),
            "updated_at": self._serialize_datetime(perm.updated_at),
        }

    def _deserialize_permission(self, data: dict) -> Permission:
        return Permission(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            resource=data["resource"],
            action=data["action"],
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )
