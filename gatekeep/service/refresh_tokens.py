from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.errors import AuthenticationError, AuthFailureReason, EntityNotFoundError
from gatekeep.service.locks import KeyedLock
from gatekeep.service.otp import UserStore
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import RefreshToken, utcnow

logger = get_logger(__name__)


class RefreshTokenStore(Protocol):
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def update_refresh_token(self, token: RefreshToken) -> RefreshToken: ...


class RefreshTokenLedger:
    """Owns refresh-token lifetime and the one-live-token-per-user rule.

    Access tokens are stateless and short-lived; every session termination
    goes through this ledger. Issuing a token for a user discards all of
    that user's earlier tokens, so a new login signs out other devices.
    """

    def __init__(
        self,
        users: UserStore,
        tokens: RefreshTokenStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.settings = settings
        self._clock = clock or utcnow
        self._locks = locks or KeyedLock()
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def create_refresh_token(self, user_id: str, token: str) -> RefreshToken:
        # Issuance follows primary authentication, so the user is not re-checked here
        record = RefreshToken.new(
            user_id, token, self.settings.refresh_token_ttl_days, now=self._now()
        )
        with self._locks.hold(user_id):
            if hasattr(self.tokens, "replace_refresh_tokens"):
                created = self.tokens.replace_refresh_tokens(record)  # type: ignore[attr-defined]
            else:
                self.tokens.delete_user_refresh_tokens(user_id)
                created = self.tokens.create_refresh_token(record)
        self.logger.info(
            "refresh_token_issued",
            user_id=user_id,
            expires_at=created.expires_at.isoformat(),
        )
        return created

    def validate_refresh_token(self, token: str) -> RefreshToken:
        record = self.tokens.get_refresh_token(token)
        if not record:
            raise AuthenticationError(AuthFailureReason.INVALID)

        if record.is_expired(self._now()):
            raise AuthenticationError(AuthFailureReason.EXPIRED)

        if record.is_revoked():
            raise AuthenticationError(AuthFailureReason.REVOKED)

        return record

    def revoke_refresh_token(self, token: str) -> None:
        record = self.tokens.get_refresh_token(token)
        if not record:
            raise AuthenticationError(AuthFailureReason.INVALID)

        with self._locks.hold(record.user_id):
            # Re-read under the lock; a concurrent login may have replaced it
            record = self.tokens.get_refresh_token(token)
            if not record:
                raise AuthenticationError(AuthFailureReason.INVALID)
            if record.is_revoked():
                return

            record.revoke()
            try:
                self.tokens.update_refresh_token(record)
            except ConstraintViolation as exc:
                # Deleted by another process between the read and the write
                raise AuthenticationError(AuthFailureReason.INVALID) from exc
        self.logger.info("refresh_token_revoked", user_id=record.user_id)

    def revoke_all_refresh_tokens(self, user_id: str) -> int:
        user = self.users.get_user(user_id)
        if not user:
            raise EntityNotFoundError("User", user_id)

        with self._locks.hold(user_id):
            removed = self.tokens.delete_user_refresh_tokens(user_id)
        self.logger.info("refresh_tokens_revoked_all", user_id=user_id, removed=removed)
        return removed
