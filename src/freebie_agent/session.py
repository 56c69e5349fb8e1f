from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Optional

from .browser.driver import BrowserError, DrivenBrowser, ElementWaitTimeout
from .browser.selectors import SiteSelectors
from .challenge.resolver import ChallengeResolver
from .errors import AuthenticationError, AuthFailure
from .models import NavigationResult, Session
from .notify import Notifier


logger = logging.getLogger(__name__)


class AuthState(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    CREDENTIALS_SUBMITTED = "CREDENTIALS_SUBMITTED"
    CHALLENGE_PENDING = "CHALLENGE_PENDING"
    CAPTCHA_PENDING = "CAPTCHA_PENDING"
    AUTHENTICATED = "AUTHENTICATED"
    FAILED = "FAILED"


class Surface(str, Enum):
    IDENTITY_FORM = "identity_form"
    PASSWORD_FORM = "password_form"
    OTP_CHALLENGE = "otp_challenge"
    IMAGE_CHALLENGE = "image_challenge"
    AUTHENTICATED = "authenticated"
    UNKNOWN = "unknown"


# Single round-trip snapshot of which sign-in widgets are on screen.
SURFACE_PROBE_SCRIPT = """
(sel) => {
  const visible = (css) => {
    for (const el of document.querySelectorAll(css)) {
      const r = el.getBoundingClientRect();
      if (r.width > 0 && r.height > 0) return true;
    }
    return false;
  };
  const text = (css) => {
    const el = document.querySelector(css);
    return el ? (el.innerText || '').trim() : '';
  };
  return {
    url: location.href,
    identity: visible(sel.identity),
    password: visible(sel.password),
    otp: visible(sel.otp),
    captcha: visible(sel.captcha),
    signOut: !!document.querySelector(sel.signOut),
    greeting: text(sel.greeting),
    error: text(sel.error),
  };
}
"""


def classify_surface(probe: dict[str, Any], selectors: SiteSelectors) -> Surface:
    """
    Map a probe snapshot to the sign-in surface it shows.

    Challenges win over forms: the image challenge is rendered on top of a second password form.
    """
    if probe.get("captcha"):
        return Surface.IMAGE_CHALLENGE
    if probe.get("otp"):
        return Surface.OTP_CHALLENGE
    if probe.get("password"):
        return Surface.PASSWORD_FORM
    if probe.get("identity"):
        return Surface.IDENTITY_FORM

    url = str(probe.get("url") or "")
    if selectors.sign_in_url_fragment in url:
        return Surface.UNKNOWN
    greeting = str(probe.get("greeting") or "").strip().lower()
    if probe.get("signOut") or (greeting and selectors.signed_out_greeting_text not in greeting):
        return Surface.AUTHENTICATED
    return Surface.UNKNOWN


_FORM_SURFACES = (Surface.PASSWORD_FORM, Surface.IDENTITY_FORM)


def _error_text(probe: dict[str, Any]) -> str:
    return str(probe.get("error") or "").strip()


def _same_surface(a: dict[str, Any], b: dict[str, Any]) -> bool:
    keys = ("url", "identity", "password", "otp", "captcha", "error")
    return all(a.get(k) == b.get(k) for k in keys)


class SessionController:
    """
    Drives the browser through sign-in, answering OTP/image challenges, and owns the resulting `Session`.

    States: UNAUTHENTICATED -> CREDENTIALS_SUBMITTED -> (CHALLENGE_PENDING | CAPTCHA_PENDING)* ->
    AUTHENTICATED, or FAILED from anywhere. One attempt per run: a failure is reported to the notifier
    and raised as `AuthenticationError`.
    """

    def __init__(
        self,
        *,
        browser: DrivenBrowser,
        resolver: ChallengeResolver,
        notifier: Notifier,
        identity: str,
        secret: str,
        login_url: str,
        selectors: Optional[SiteSelectors] = None,
        max_challenge_rounds: int = 4,
        step_timeout_s: float = 10.0,
        surface_timeout_s: float = 20.0,
        settle_timeout_s: float = 5.0,
        poll_interval_s: float = 0.5,
    ) -> None:
        self._browser = browser
        self._resolver = resolver
        self._notifier = notifier
        self._identity = identity
        self._secret = secret
        self.login_url = login_url
        self.selectors = selectors or SiteSelectors()
        self.max_challenge_rounds = max_challenge_rounds
        self.step_timeout_s = step_timeout_s
        self.surface_timeout_s = surface_timeout_s
        self.settle_timeout_s = settle_timeout_s
        self.poll_interval_s = poll_interval_s

        self._state = AuthState.UNAUTHENTICATED
        self._session: Optional[Session] = None

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    async def authenticate(self) -> Session:
        try:
            session = await self._sign_in()
        except AuthenticationError as e:
            self._transition(AuthState.FAILED)
            logger.error("Sign-in failed (%s)", e)
            await self._browser.save_debug("login_failure")
            await self._notifier.notify("Login Error", f"Login failed for {self._identity}: {e}")
            raise
        return session

    def guard(self, result: NavigationResult) -> None:
        """
        Called after every navigation; a redirect to the sign-in page means the session is gone.
        """
        if self.selectors.sign_in_url_fragment in (result.url or ""):
            self.invalidate(f"redirected to sign-in ({result.url})")
            raise AuthenticationError(
                AuthFailure.SESSION_EXPIRED,
                f"session is no longer valid (navigation landed on {result.url})",
            )

    def invalidate(self, reason: str) -> None:
        if self._session is not None:
            logger.warning("Session invalidated: %s", reason)
        self._session = None
        self._transition(AuthState.UNAUTHENTICATED)

    async def _sign_in(self) -> Session:
        sel = self.selectors
        self._session = None
        self._transition(AuthState.UNAUTHENTICATED)

        try:
            result = await self._browser.navigate(self.login_url)
        except BrowserError as e:
            raise AuthenticationError(AuthFailure.NAVIGATION_FAILED, f"could not open the sign-in page: {e}") from e
        logger.info("Sign-in page response status: %s", result.status)
        if not result.ok:
            raise AuthenticationError(
                AuthFailure.NAVIGATION_FAILED,
                f"sign-in page returned status {result.status} ({result.url})",
            )
        try:
            await self._browser.wait_for_element(sel.identity_input, self.step_timeout_s)
        except BrowserError as e:
            raise AuthenticationError(
                AuthFailure.NAVIGATION_FAILED,
                f"page at {result.url} is not the expected sign-in form ({e})",
            ) from e

        previous: Optional[dict[str, Any]] = await self._submit_credentials()
        self._transition(AuthState.CREDENTIALS_SUBMITTED)

        rounds = 0
        while True:
            surface, probe = await self._await_surface(previous)
            previous = probe

            if surface is Surface.AUTHENTICATED:
                self._session = Session(identity=self._identity)
                self._transition(AuthState.AUTHENTICATED)
                logger.info("Sign-in complete (challenge_rounds=%d)", rounds)
                return self._session

            if surface in _FORM_SURFACES:
                detail = _error_text(probe)
                if detail:
                    raise AuthenticationError(AuthFailure.INVALID_CREDENTIALS, detail)
                raise AuthenticationError(
                    AuthFailure.UNRECOGNIZED_SURFACE,
                    f"sign-in form still showing with no error message after {self.surface_timeout_s:g}s "
                    f"(url={probe.get('url')})",
                )

            if surface is Surface.UNKNOWN:
                raise AuthenticationError(
                    AuthFailure.UNRECOGNIZED_SURFACE,
                    f"could not recognize the page after sign-in within {self.surface_timeout_s:g}s "
                    f"(url={probe.get('url')})",
                )

            rounds += 1
            if rounds > self.max_challenge_rounds:
                raise AuthenticationError(
                    AuthFailure.CHALLENGE_EXHAUSTED,
                    f"still challenged after {self.max_challenge_rounds} attempt(s) ({surface.value})",
                )

            if surface is Surface.OTP_CHALLENGE:
                self._transition(AuthState.CHALLENGE_PENDING)
                await self._answer_otp()
            else:
                self._transition(AuthState.CAPTCHA_PENDING)
                await self._answer_image_challenge(reenter_password=bool(probe.get("password")))

    async def _submit_credentials(self) -> Optional[dict[str, Any]]:
        """Fill both credential steps and submit; returns the pre-submit snapshot (None if unreadable)."""
        sel = self.selectors
        await self._interact(self._browser.type(sel.identity_input, self._identity), what="identity field")
        await self._interact(self._browser.click(sel.identity_continue), what="continue button")
        try:
            await self._browser.wait_for_element(sel.password_input, self.step_timeout_s)
        except BrowserError as e:
            raise AuthenticationError(AuthFailure.LOGIN_FORM_MISSING, f"password field did not appear ({e})") from e
        await self._interact(self._browser.type(sel.password_input, self._secret), what="password field")
        before = await self._probe()
        await self._interact(self._browser.click(sel.sign_in_submit), what="sign-in button")
        return before or None

    async def _answer_otp(self) -> None:
        sel = self.selectors
        code = self._resolver.one_time_code()
        await self._interact(self._browser.type(sel.otp_input, code), what="one-time code field")
        await self._interact(self._browser.click(sel.otp_submit), what="one-time code submit")

    async def _answer_image_challenge(self, *, reenter_password: bool) -> None:
        sel = self.selectors
        try:
            image = await self._browser.screenshot(sel.captcha_image)
        except BrowserError as e:
            raise AuthenticationError(AuthFailure.CHALLENGE_FAILED, f"could not capture challenge image ({e})") from e

        answer = await self._resolver.solve_captcha(image)

        if reenter_password:
            await self._interact(self._browser.type(sel.password_input, self._secret), what="password field")
        await self._interact(self._browser.type(sel.captcha_input, answer), what="challenge answer field")
        await self._interact(self._browser.click(sel.captcha_submit), what="challenge submit")

    async def _interact(self, action, *, what: str) -> None:
        try:
            await action
        except ElementWaitTimeout as e:
            raise AuthenticationError(AuthFailure.LOGIN_FORM_MISSING, f"{what} not available ({e})") from e
        except BrowserError as e:
            raise AuthenticationError(AuthFailure.NAVIGATION_FAILED, f"{what} interaction failed ({e})") from e

    async def _probe(self) -> dict[str, Any]:
        sel = self.selectors
        arg = {
            "identity": sel.identity_input,
            "password": sel.password_input,
            "otp": sel.otp_input,
            "captcha": sel.captcha_image,
            "signOut": sel.sign_out_link,
            "greeting": sel.account_greeting,
            "error": sel.login_error_box,
        }
        try:
            data = await self._browser.evaluate_extraction(SURFACE_PROBE_SCRIPT, arg)
        except BrowserError as e:
            # Mid-navigation the execution context is torn down; that is "not known yet", not an error.
            logger.debug("Surface probe failed (%s); retrying.", e)
            return {}
        return dict(data or {})

    async def _await_surface(self, previous: Optional[dict[str, Any]]) -> tuple[Surface, dict[str, Any]]:
        """
        Poll until the page shows a recognizable surface.

        When `previous` is given, an identical snapshot is not accepted until `settle_timeout_s` has
        passed, so a form still on screen right after a submit is not mistaken for the next step. A
        sign-in form without an error message is not accepted before `surface_timeout_s` runs out.
        """
        start = time.monotonic()
        deadline = start + self.surface_timeout_s
        probe: dict[str, Any] = {}
        while True:
            probe = await self._probe()
            surface = classify_surface(probe, self.selectors) if probe else Surface.UNKNOWN
            now = time.monotonic()

            unchanged = previous is not None and probe and _same_surface(probe, previous)
            settling = unchanged and now - start < self.settle_timeout_s
            silent_form = surface in _FORM_SURFACES and not _error_text(probe)
            if surface is not Surface.UNKNOWN and not settling and not silent_form:
                logger.debug("Sign-in surface: %s (url=%s)", surface.value, probe.get("url"))
                return surface, probe
            if now >= deadline:
                return (surface if silent_form else Surface.UNKNOWN), probe
            await asyncio.sleep(self.poll_interval_s)

    def _transition(self, new_state: AuthState) -> None:
        if new_state is not self._state:
            logger.info("Auth state %s -> %s", self._state.value, new_state.value)
        self._state = new_state
