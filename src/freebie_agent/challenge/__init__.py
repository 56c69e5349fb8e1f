from .captcha import CaptchaSolver, TesseractCaptchaSolver
from .otp import OtpGenerator, TotpGenerator
from .resolver import ChallengeResolver

__all__ = [
    "ChallengeResolver",
    "CaptchaSolver",
    "TesseractCaptchaSolver",
    "OtpGenerator",
    "TotpGenerator",
]
