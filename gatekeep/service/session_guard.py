from __future__ import annotations

from typing import Any, Mapping

from gatekeep.logging import get_logger
from gatekeep.service.errors import UnauthorizedError
from gatekeep.service.otp import UserStore

logger = get_logger(__name__)


class UserSessionGuard:
    """Per-request liveness check for an already-decoded access token.

    Signature and expiry are verified by the caller; this only re-reads the
    subject so that deactivating an account takes effect on its next request
    instead of when its access token runs out.
    """

    def __init__(self, users: UserStore) -> None:
        self.users = users
        self.logger = logger

    def validate(self, claims: Mapping[str, Any]) -> Mapping[str, Any]:
        subject = claims.get("sub")
        if not subject:
            self.logger.warning("session_guard_rejected", reason="missing_subject")
            raise UnauthorizedError()

        user = self.users.get_user(str(subject))
        if not user or not user.is_active:
            self.logger.warning(
                "session_guard_rejected",
                user_id=str(subject),
                reason="missing" if not user else "inactive",
            )
            raise UnauthorizedError()

        return claims
