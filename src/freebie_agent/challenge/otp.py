from __future__ import annotations

import re
from datetime import datetime
from typing import Optional, Protocol

import pyotp


class OtpGenerator(Protocol):
    def generate(self, secret: str, at: Optional[datetime] = None) -> str: ...


def normalize_totp_secret(secret: str) -> str:
    """
    Authenticator setup pages show the base32 seed in groups ("ABCD EFGH ..."), sometimes lowercase.
    """
    return re.sub(r"[\s-]+", "", secret or "").upper()


class TotpGenerator:
    """RFC 6238 time-based codes (30s step, SHA-1), as used by authenticator apps."""

    def __init__(self, *, digits: int = 6, interval: int = 30) -> None:
        if not 6 <= digits <= 8:
            raise ValueError(f"TOTP digits must be between 6 and 8 (got {digits})")
        self.digits = digits
        self.interval = interval

    def generate(self, secret: str, at: Optional[datetime] = None) -> str:
        totp = pyotp.TOTP(normalize_totp_secret(secret), digits=self.digits, interval=self.interval)
        if at is None:
            return totp.now()
        return totp.at(at)
