from __future__ import annotations

import os
import re
import json
from decimal import Decimal
from pathlib import Path
from typing import Union

import yaml
from pydantic import BaseModel, Field, model_validator


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")

DEFAULT_LOGIN_URL = (
    "https://www.amazon.com/ap/signin"
    "?openid.pape.max_auth_age=0"
    "&openid.return_to=https%3A%2F%2Fwww.amazon.com%2F%3Fref_%3Dnav_signin"
    "&openid.identity=http%3A%2F%2Fspecs.openid.net%2Fauth%2F2.0%2Fidentifier_select"
    "&openid.assoc_handle=usflex"
    "&openid.mode=checkid_setup"
    "&openid.claimed_id=http%3A%2F%2Fspecs.openid.net%2Fauth%2F2.0%2Fidentifier_select"
    "&openid.ns=http%3A%2F%2Fspecs.openid.net%2Fauth%2F2.0"
)
DEFAULT_SEARCH_URL = "https://www.amazon.com/s?k=free+items"
DEFAULT_ITEM_URL_TEMPLATE = "https://www.amazon.com/dp/{item_id}"


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _parse_list_env(value: str) -> list[str]:
    """
    Accept "a@x.com, b@x.com", whitespace-separated values, or a JSON list.
    """
    s = (value or "").strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            data = json.loads(s)
            if isinstance(data, list):
                return [str(x).strip() for x in data if str(x).strip()]
        except ValueError:
            pass
    return [part for part in re.split(r"[,;\s]+", s) if part]


def _default_config_from_env() -> dict:
    """
    Env-only config so most users only need `.env`; YAML remains an optional override.

    Variable names match the ones the original Node script read (AMAZON_*, SENDGRID_API_KEY, EMAIL_*).
    """
    return {
        "site": {
            "login_url": os.getenv("SITE_LOGIN_URL", DEFAULT_LOGIN_URL),
            "search_url": os.getenv("SITE_SEARCH_URL", DEFAULT_SEARCH_URL),
            "item_url_template": os.getenv("SITE_ITEM_URL_TEMPLATE", DEFAULT_ITEM_URL_TEMPLATE),
        },
        "account": {
            "email": os.getenv("AMAZON_EMAIL", ""),
            "password": os.getenv("AMAZON_PASSWORD", ""),
            "otp_secret": os.getenv("AMAZON_OTP_SECRET", ""),
        },
        "captcha": {
            "enabled": _env_bool("CAPTCHA_ENABLED", default=True),
            "timeout_seconds": os.getenv("CAPTCHA_TIMEOUT_SECONDS", "60"),
            "tesseract_cmd": os.getenv("TESSERACT_CMD", ""),
        },
        "email": {
            "enabled": _env_bool("EMAIL_ENABLED", default=True),
            "smtp_host": os.getenv("SMTP_HOST", "smtp.sendgrid.net"),
            "smtp_port": os.getenv("SMTP_PORT", "587"),
            "smtp_user": os.getenv("SMTP_USER", "apikey"),
            "smtp_password": os.getenv("SENDGRID_API_KEY", ""),
            "sender": os.getenv("EMAIL_USER", ""),
            "recipients": _parse_list_env(os.getenv("EMAIL_RECEIVER", "")),
            "subject_prefix": os.getenv("EMAIL_SUBJECT_PREFIX", "[freebie-agent]"),
        },
        "purchase": {
            "quota": os.getenv("PURCHASE_QUOTA", "15"),
            "max_price": os.getenv("PURCHASE_MAX_PRICE", "0"),
            "require_free_shipping": _env_bool("REQUIRE_FREE_SHIPPING", default=True),
            "step_timeout_seconds": os.getenv("STEP_TIMEOUT_SECONDS", "5"),
        },
        "run": {
            "duration_hours": os.getenv("RUN_DURATION_HOURS", "24"),
            "interval_min_seconds": os.getenv("SCAN_INTERVAL_MIN_SECONDS", "120"),
            "interval_max_seconds": os.getenv("SCAN_INTERVAL_MAX_SECONDS", "180"),
            "max_challenge_rounds": os.getenv("MAX_CHALLENGE_ROUNDS", "4"),
            "listing_timeout_seconds": os.getenv("LISTING_TIMEOUT_SECONDS", "15"),
        },
        "browser": {
            "headless": _env_bool("BROWSER_HEADLESS", default=True),
            "slow_mo_ms": os.getenv("BROWSER_SLOW_MO_MS", "0"),
            "debug_dir": os.getenv("DEBUG_DIR", "data/debug"),
        },
        "state": {
            "db_path": os.getenv("STATE_DB_PATH", "data/state.db"),
            "persist_ledger": _env_bool("PERSIST_LEDGER", default=True),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/agent.log"),
        },
    }


class SiteConfig(BaseModel):
    login_url: str = DEFAULT_LOGIN_URL
    search_url: str = DEFAULT_SEARCH_URL
    # "{item_id}" is replaced with the listing's item id (ASIN). Empty: use the listing's own link.
    item_url_template: str = DEFAULT_ITEM_URL_TEMPLATE

    @model_validator(mode="after")
    def _validate_urls(self) -> "SiteConfig":
        for name in ("login_url", "search_url"):
            value = (getattr(self, name) or "").strip()
            if not value.startswith(("http://", "https://")):
                raise ValueError(f"site.{name} must be a full URL (got {value!r})")
            setattr(self, name, value)
        if self.item_url_template and "{item_id}" not in self.item_url_template:
            raise ValueError("site.item_url_template must contain the '{item_id}' placeholder")
        return self


class AccountConfig(BaseModel):
    email: str = ""
    password: str = Field(default="", repr=False)
    # Base32 seed shown when enrolling an authenticator app; needed only if the account uses TOTP 2SV.
    otp_secret: str = Field(default="", repr=False)


class CaptchaConfig(BaseModel):
    enabled: bool = True
    timeout_seconds: float = Field(default=60.0, gt=0)
    tesseract_cmd: str = ""


class EmailConfig(BaseModel):
    enabled: bool = True
    smtp_host: str = "smtp.sendgrid.net"
    smtp_port: int = 587
    smtp_user: str = "apikey"
    smtp_password: str = Field(default="", repr=False)
    sender: str = ""
    recipients: list[str] = Field(default_factory=list)
    subject_prefix: str = "[freebie-agent]"


class PurchaseConfig(BaseModel):
    quota: int = Field(default=15, ge=1)
    max_price: Decimal = Field(default=Decimal("0"), ge=0)
    require_free_shipping: bool = True
    step_timeout_seconds: float = Field(default=5.0, gt=0)
    free_shipping_markers: list[str] = Field(default_factory=lambda: ["free shipping", "free delivery"])


class RunConfig(BaseModel):
    duration_hours: float = Field(default=24.0, gt=0)
    interval_min_seconds: float = Field(default=120.0, ge=0)
    interval_max_seconds: float = Field(default=180.0, ge=0)
    max_challenge_rounds: int = Field(default=4, ge=1)
    listing_timeout_seconds: float = Field(default=15.0, gt=0)

    @model_validator(mode="after")
    def _validate_band(self) -> "RunConfig":
        if self.interval_max_seconds < self.interval_min_seconds:
            raise ValueError(
                "run.interval_max_seconds must be >= run.interval_min_seconds "
                f"(got {self.interval_min_seconds:g}..{self.interval_max_seconds:g})"
            )
        return self


class BrowserConfig(BaseModel):
    headless: bool = True
    slow_mo_ms: int = Field(default=0, ge=0)
    typing_delay_ms_min: int = Field(default=50, ge=0)
    typing_delay_ms_max: int = Field(default=150, ge=0)
    debug_dir: str = "data/debug"


class StateConfig(BaseModel):
    db_path: str = "data/state.db"
    # Off: purchase counts live only as long as the process (a restart resets every quota).
    persist_ledger: bool = True


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/agent.log"


class AppConfig(BaseModel):
    site: SiteConfig = SiteConfig()
    account: AccountConfig
    captcha: CaptchaConfig = CaptchaConfig()
    email: EmailConfig = EmailConfig()
    purchase: PurchaseConfig = PurchaseConfig()
    run: RunConfig = RunConfig()
    browser: BrowserConfig = BrowserConfig()
    state: StateConfig = StateConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="after")
    def _require_secrets(self) -> "AppConfig":
        # Purchasing is a real side effect: refuse to start with anything required missing.
        missing: list[str] = []
        if not self.account.email.strip():
            missing.append("account.email (AMAZON_EMAIL)")
        if not self.account.password:
            missing.append("account.password (AMAZON_PASSWORD)")
        if self.email.enabled:
            if not self.email.smtp_password:
                missing.append("email.smtp_password (SENDGRID_API_KEY)")
            if not self.email.sender.strip():
                missing.append("email.sender (EMAIL_USER)")
            if not self.email.recipients:
                missing.append("email.recipients (EMAIL_RECEIVER)")
        if missing:
            raise ValueError("Missing required configuration: " + ", ".join(missing))
        return self


def load_config(path: Union[str, Path]) -> AppConfig:
    p = Path(path)
    raw: dict = {}
    if p.exists():
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
