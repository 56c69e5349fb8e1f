from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from ..errors import AuthenticationError, AuthFailure
from .captcha import CaptchaSolver
from .otp import OtpGenerator


logger = logging.getLogger(__name__)


def _mask(code: str) -> str:
    return f"{code[:1]}****{code[-1:]}" if len(code) >= 4 else "***"


class ChallengeResolver:
    """
    Answers the second-factor and image challenges raised during sign-in.

    Failures are reported as `AuthenticationError`; the session controller decides what to do with them.
    """

    def __init__(
        self,
        *,
        otp: OtpGenerator,
        otp_secret: str = "",
        captcha: Optional[CaptchaSolver] = None,
        captcha_timeout_s: float = 60.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._otp = otp
        self._otp_secret = otp_secret or ""
        self._captcha = captcha
        self.captcha_timeout_s = captcha_timeout_s
        self._clock = clock

    @property
    def can_answer_otp(self) -> bool:
        return bool(self._otp_secret)

    @property
    def can_solve_captcha(self) -> bool:
        return self._captcha is not None

    def one_time_code(self) -> str:
        if not self._otp_secret:
            raise AuthenticationError(
                AuthFailure.CHALLENGE_UNRESOLVED,
                "site requested a one-time code but no OTP secret is configured (set AMAZON_OTP_SECRET)",
            )
        try:
            code = self._otp.generate(self._otp_secret, self._clock())
        except Exception as e:
            # pyotp raises binascii.Error/ValueError/TypeError for malformed seeds.
            raise AuthenticationError(AuthFailure.CHALLENGE_FAILED, f"could not generate one-time code: {e}") from e
        logger.info("Generated one-time code (code=%s)", _mask(code))
        return code

    async def solve_captcha(self, image: bytes) -> str:
        """
        Solve an image challenge, giving up after `captcha_timeout_s`.
        """
        if self._captcha is None:
            raise AuthenticationError(
                AuthFailure.CHALLENGE_UNRESOLVED,
                "site presented an image challenge but no CAPTCHA solver is configured",
            )

        try:
            text = await asyncio.wait_for(self._captcha.solve(image), timeout=self.captcha_timeout_s)
        except asyncio.TimeoutError as e:
            raise AuthenticationError(
                AuthFailure.CHALLENGE_TIMEOUT,
                f"CAPTCHA solver did not answer within {self.captcha_timeout_s:g}s",
            ) from e
        except Exception as e:
            raise AuthenticationError(AuthFailure.CHALLENGE_FAILED, f"CAPTCHA solver failed: {e}") from e

        text = (text or "").strip()
        if not text:
            raise AuthenticationError(AuthFailure.CHALLENGE_FAILED, "CAPTCHA solver returned no text")
        return text
