from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Protocol

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.errors import EntityNotFoundError
from gatekeep.service.locks import KeyedLock
from gatekeep.service.otp import OtpAuthority, OtpStore, UserStore
from gatekeep.service.refresh_tokens import RefreshTokenLedger, RefreshTokenStore
from gatekeep.service.session_guard import UserSessionGuard
from gatekeep.service.two_factor import TwoFactorEnrollment, TwoFactorSetup
from gatekeep.storage.models import RefreshToken, User, utcnow

logger = get_logger(__name__)


class AuthStore(UserStore, OtpStore, RefreshTokenStore, Protocol):
    """Everything the auth flows need from persistence."""


class AuthService:
    """OTP, 2FA, refresh-token and session-liveness handling behind one object.

    The login boundary calls these in order: primary credentials (elsewhere),
    then ``verify_two_factor_token`` when the user has 2FA enabled, then
    ``create_refresh_token`` and ``update_last_login``.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow
        # Shared so OTP and token operations for one user never interleave
        locks = KeyedLock()
        self.otp = OtpAuthority(store, store, settings, clock=self._clock, locks=locks)
        self.two_factor = TwoFactorEnrollment(store, settings, clock=self._clock)
        self.refresh_tokens = RefreshTokenLedger(
            store, store, settings, clock=self._clock, locks=locks
        )
        self.session_guard = UserSessionGuard(store)
        self.logger = logger

    def generate_otp(self, user_id: str) -> str:
        return self.otp.generate_otp(user_id)

    def verify_otp(self, user_id: str, token: str) -> bool:
        return self.otp.verify_otp(user_id, token)

    def setup_two_factor_auth(self, user_id: str) -> TwoFactorSetup:
        return self.two_factor.setup_two_factor_auth(user_id)

    def verify_two_factor_token(self, user_id: str, token: str) -> bool:
        return self.two_factor.verify_two_factor_token(user_id, token)

    def disable_two_factor_auth(self, user_id: str) -> User:
        return self.two_factor.disable_two_factor_auth(user_id)

    def create_refresh_token(self, user_id: str, token: str) -> RefreshToken:
        return self.refresh_tokens.create_refresh_token(user_id, token)

    def validate_refresh_token(self, token: str) -> RefreshToken:
        return self.refresh_tokens.validate_refresh_token(token)

    def revoke_refresh_token(self, token: str) -> None:
        self.refresh_tokens.revoke_refresh_token(token)

    def revoke_all_refresh_tokens(self, user_id: str) -> int:
        return self.refresh_tokens.revoke_all_refresh_tokens(user_id)

    def validate_session(self, claims: Mapping[str, Any]) -> Mapping[str, Any]:
        return self.session_guard.validate(claims)

    def update_last_login(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise EntityNotFoundError("User", user_id)

        user.update_last_login(self._clock())
        updated = self.store.update_user(user)
        self.logger.info("last_login_updated", user_id=user_id)
        return updated
