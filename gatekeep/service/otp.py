from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service import totp
from gatekeep.service.errors import EntityNotFoundError, OtpExpiredError, OtpInvalidError
from gatekeep.service.locks import KeyedLock
from gatekeep.storage.models import Otp, User, utcnow

logger = get_logger(__name__)


class UserStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_user(self, user: User) -> User: ...


class OtpStore(Protocol):
    def create_otp(self, otp: Otp) -> Otp: ...

    def get_otp_for_user(self, user_id: str) -> Optional[Otp]: ...

    def mark_otp_verified(self, otp: Otp) -> Optional[Otp]: ...


class OtpAuthority:
    """Issues and verifies short-lived OTP challenges bound to a user.

    Each challenge gets its own secret which is never returned to the caller;
    only the code for the current time step leaves the service. A newer
    challenge for the same user replaces the previous one.
    """

    def __init__(
        self,
        users: UserStore,
        otps: OtpStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self.users = users
        self.otps = otps
        self.settings = settings
        self.params = totp.TotpParameters.from_settings(settings)
        self._clock = clock or utcnow
        self._locks = locks or KeyedLock()
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def generate_otp(self, user_id: str) -> str:
        user = self.users.get_user(user_id)
        if not user:
            raise EntityNotFoundError("User", user_id)

        now = self._now()
        secret = totp.generate_secret()
        otp = Otp.new(user_id, secret, self.settings.otp_expiration_minutes, now=now)
        with self._locks.hold(user_id):
            self.otps.create_otp(otp)
        self.logger.info("otp_issued", user_id=user_id, challenge_id=otp.id, expires_at=otp.expires_at.isoformat())

        return totp.totp(
            secret,
            now.timestamp(),
            step=self.params.step,
            digits=self.params.digits,
            algorithm=self.params.algorithm,
        )

    def verify_otp(self, user_id: str, token: str) -> bool:
        user = self.users.get_user(user_id)
        if not user:
            raise EntityNotFoundError("User", user_id)

        with self._locks.hold(user_id):
            otp = self.otps.get_otp_for_user(user_id)
            if not otp:
                raise EntityNotFoundError("OTP")

            now = self._now()
            if otp.is_expired(now):
                self.logger.info("otp_rejected", user_id=user_id, reason="expired")
                raise OtpExpiredError()

            if otp.verified:
                self.logger.warning("otp_rejected", user_id=user_id, reason="already_verified")
                raise OtpInvalidError("OTP has already been used")

            if not totp.verify_totp(
                otp.secret,
                token,
                now.timestamp(),
                step=self.params.step,
                digits=self.params.digits,
                window=self.params.window,
                algorithm=self.params.algorithm,
            ):
                self.logger.info("otp_rejected", user_id=user_id, reason="mismatch")
                raise OtpInvalidError()

            # None when the challenge was replaced or consumed since it was read
            if self.otps.mark_otp_verified(otp) is None:
                self.logger.warning("otp_rejected", user_id=user_id, reason="stale")
                raise OtpInvalidError("OTP has already been used")
        self.logger.info("otp_verified", user_id=user_id, challenge_id=otp.id)
        return True
