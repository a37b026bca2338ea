from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    is_active: bool = True
    otp_enabled: bool = False
    otp_secret: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def enable_otp(self, secret: str) -> None:
        self.otp_enabled = True
        self.otp_secret = secret
        self.updated_at = utcnow()

    def disable_otp(self) -> None:
        self.otp_enabled = False
        self.otp_secret = None
        self.updated_at = utcnow()

    def update_last_login(self, now: Optional[datetime] = None) -> None:
        self.last_login_at = now or utcnow()
        self.updated_at = self.last_login_at


@dataclass
class Otp:
    """A short-lived OTP challenge bound to one user."""

    id: str
    user_id: str
    secret: str
    created_at: datetime
    expires_at: datetime
    verified: bool = False

    @classmethod
    def new(
        cls,
        user_id: str,
        secret: str,
        expiration_minutes: int,
        now: Optional[datetime] = None,
    ) -> "Otp":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            secret=secret,
            created_at=created,
            expires_at=created + timedelta(minutes=expiration_minutes),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def mark_verified(self) -> None:
        self.verified = True


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        expiration_days: int,
        now: Optional[datetime] = None,
    ) -> "RefreshToken":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            expires_at=created + timedelta(days=expiration_days),
            created_at=created,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def is_revoked(self) -> bool:
        return self.revoked

    def revoke(self) -> None:
        self.revoked = True


@dataclass
class Permission:
    id: str
    name: str
    description: str
    resource: str
    action: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, name: str, description: str, resource: str, action: str
    ) -> "Permission":
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            resource=resource,
            action=action,
        )
