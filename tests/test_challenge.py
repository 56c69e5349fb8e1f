from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pyotp
import pytest

from fakes import FakeSolver, FixedOtp
from freebie_agent.challenge import ChallengeResolver, TotpGenerator
from freebie_agent.challenge.otp import normalize_totp_secret
from freebie_agent.errors import AuthenticationError, AuthFailure


SECRET = "JBSWY3DPEHPK3PXP"


def test_totp_matches_rfc6238_reference() -> None:
    at = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    code = TotpGenerator().generate(SECRET, at)
    assert code == pyotp.TOTP(SECRET).at(at)
    assert len(code) == 6 and code.isdigit()


def test_totp_accepts_grouped_lowercase_secret() -> None:
    at = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert normalize_totp_secret("jbsw y3dp-ehpk 3pxp") == SECRET
    assert TotpGenerator().generate("jbsw y3dp ehpk 3pxp", at) == TotpGenerator().generate(SECRET, at)


def test_totp_digits_bounds() -> None:
    assert len(TotpGenerator(digits=8).generate(SECRET)) == 8
    with pytest.raises(ValueError):
        TotpGenerator(digits=4)


def test_resolver_passes_clock_time_to_generator() -> None:
    at = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
    otp = FixedOtp("000111")
    resolver = ChallengeResolver(otp=otp, otp_secret=SECRET, clock=lambda: at)

    assert resolver.can_answer_otp is True
    assert resolver.one_time_code() == "000111"
    assert otp.calls == [(SECRET, at)]


def test_resolver_bad_secret_is_challenge_failed() -> None:
    resolver = ChallengeResolver(otp=TotpGenerator(), otp_secret="not base32 at all!!")

    with pytest.raises(AuthenticationError) as exc:
        resolver.one_time_code()
    assert exc.value.kind is AuthFailure.CHALLENGE_FAILED


def test_resolver_captcha_paths() -> None:
    ok = ChallengeResolver(otp=FixedOtp(), captcha=FakeSolver(" ABCD \n"))
    assert asyncio.run(ok.solve_captcha(b"img")) == "ABCD"

    blank = ChallengeResolver(otp=FixedOtp(), captcha=FakeSolver(""))
    with pytest.raises(AuthenticationError) as exc:
        asyncio.run(blank.solve_captcha(b"img"))
    assert exc.value.kind is AuthFailure.CHALLENGE_FAILED

    slow = ChallengeResolver(otp=FixedOtp(), captcha=FakeSolver(delay_s=5.0), captcha_timeout_s=0.05)
    with pytest.raises(AuthenticationError) as exc:
        asyncio.run(slow.solve_captcha(b"img"))
    assert exc.value.kind is AuthFailure.CHALLENGE_TIMEOUT

    missing = ChallengeResolver(otp=FixedOtp())
    assert missing.can_solve_captcha is False
    with pytest.raises(AuthenticationError) as exc:
        asyncio.run(missing.solve_captcha(b"img"))
    assert exc.value.kind is AuthFailure.CHALLENGE_UNRESOLVED
