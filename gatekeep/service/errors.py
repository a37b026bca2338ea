from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries a stable ``error_code`` and a suggested HTTP
    ``status_code`` so the request boundary can map failures without
    inspecting messages:
    - not_found (404)
    - otp_expired (401)
    - otp_invalid (401)
    - unauthorized (401)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class EntityNotFoundError(ServiceError):
    """A referenced entity does not exist (404)."""

    status_code = 404
    error_code = "not_found"

    def __init__(self, entity_type: str, entity_id: Optional[str] = None) -> None:
        if entity_id is None:
            message = f"{entity_type} not found"
        else:
            message = f"{entity_type} with id {entity_id} not found"
        super().__init__(
            message, detail={"entity_type": entity_type, "entity_id": entity_id}
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class OtpExpiredError(ServiceError):
    """The OTP challenge is past its expiry (401)."""

    status_code = 401
    error_code = "otp_expired"

    def __init__(self, message: str = "OTP has expired") -> None:
        super().__init__(message)


class OtpInvalidError(ServiceError):
    """The presented code does not match (401)."""

    status_code = 401
    error_code = "otp_invalid"

    def __init__(self, message: str = "Invalid OTP") -> None:
        super().__init__(message)


class AuthFailureReason(str, Enum):
    INVALID = "invalid"
    EXPIRED = "expired"
    REVOKED = "revoked"
    DISABLED = "disabled"


_REASON_MESSAGES = {
    AuthFailureReason.INVALID: "Invalid refresh token",
    AuthFailureReason.EXPIRED: "Refresh token has expired",
    AuthFailureReason.REVOKED: "Refresh token has been revoked",
    AuthFailureReason.DISABLED: "Two-factor authentication is not enabled for this user",
}


class AuthenticationError(ServiceError):
    """Authentication failed for a specific reason (401)."""

    status_code = 401
    error_code = "unauthorized"

    def __init__(
        self, reason: AuthFailureReason, message: Optional[str] = None
    ) -> None:
        reason = AuthFailureReason(reason)
        super().__init__(
            message or _REASON_MESSAGES[reason], detail={"reason": reason.value}
        )
        self.reason = reason


class UnauthorizedError(ServiceError):
    """The access token's subject is gone or deactivated (401)."""

    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "User no longer active or not found") -> None:
        super().__init__(message)


__all__ = [
    "ServiceError",
    "EntityNotFoundError",
    "OtpExpiredError",
    "OtpInvalidError",
    "AuthFailureReason",
    "AuthenticationError",
    "UnauthorizedError",
]
