from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service import totp
from gatekeep.service.errors import (
    AuthenticationError,
    AuthFailureReason,
    EntityNotFoundError,
    OtpInvalidError,
)
from gatekeep.service.otp import UserStore
from gatekeep.storage.models import User, utcnow

logger = get_logger(__name__)


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_url: str
    qr_code_url: str


class TwoFactorEnrollment:
    """Persistent authenticator-app enrollment stored on the user aggregate."""

    def __init__(
        self,
        users: UserStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.users = users
        self.settings = settings
        self.params = totp.TotpParameters.from_settings(settings)
        self._clock = clock or utcnow
        self.logger = logger

    def _get_user(self, user_id: str) -> User:
        user = self.users.get_user(user_id)
        if not user:
            raise EntityNotFoundError("User", user_id)
        return user

    def setup_two_factor_auth(self, user_id: str) -> TwoFactorSetup:
        user = self._get_user(user_id)

        secret = totp.generate_secret()
        user.enable_otp(secret)
        self.users.update_user(user)

        uri = totp.provisioning_uri(
            secret,
            user.email,
            self.settings.otp_issuer,
            digits=self.params.digits,
            step=self.params.step,
            algorithm=self.params.algorithm,
        )
        self.logger.info("two_factor_enabled", user_id=user_id)
        return TwoFactorSetup(
            secret=secret,
            otpauth_url=uri,
            qr_code_url=totp.render_qr_data_url(uri),
        )

    def verify_two_factor_token(self, user_id: str, token: str) -> bool:
        user = self._get_user(user_id)

        if not user.otp_enabled or not user.otp_secret:
            raise AuthenticationError(AuthFailureReason.DISABLED)

        if not totp.verify_totp(
            user.otp_secret,
            token,
            self._clock().timestamp(),
            step=self.params.step,
            digits=self.params.digits,
            window=self.params.window,
            algorithm=self.params.algorithm,
        ):
            self.logger.info("two_factor_rejected", user_id=user_id)
            raise OtpInvalidError()

        return True

    def disable_two_factor_auth(self, user_id: str) -> User:
        user = self._get_user(user_id)
        user.disable_otp()
        updated = self.users.update_user(user)
        self.logger.info("two_factor_disabled", user_id=user_id)
        return updated
