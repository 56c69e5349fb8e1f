from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from .browser import PlaywrightBrowser
from .challenge import ChallengeResolver, TesseractCaptchaSolver, TotpGenerator
from .config import AppConfig, load_config
from .executor import TransactionExecutor
from .ledger import PurchaseLedger
from .logging_config import configure_logging
from .models import RunSummary, make_acceptance_predicate
from .notify import EmailNotifier, LogNotifier, Notifier, SafeNotifier
from .runner import RunLoop
from .scanner import CatalogScanner
from .session import SessionController
from .state import StateStore
from .util.debug_bundle import create_debug_bundle


logger = logging.getLogger("freebie_agent")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="freebie_agent")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Sign in, then scan for free items and buy them until the run window closes")
    run.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    run.add_argument("--headful", action="store_true", help="Run browser headful (debug)")
    run.add_argument(
        "--dry-run",
        action="store_true",
        help="Sign in and scan, but only log the items that would be purchased.",
    )
    run.add_argument(
        "--duration-hours",
        type=float,
        default=None,
        help="Override run.duration_hours for this run.",
    )
    run.add_argument("--slowmo-ms", type=int, default=None, help="Playwright slow motion in milliseconds (debug).")
    run.add_argument("--step-debug", action="store_true", help="Save a screenshot after every navigation under the debug dir.")

    preflight = sub.add_parser(
        "preflight",
        help="Validate config (and optionally email delivery) without opening a browser",
    )
    preflight.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    preflight.add_argument(
        "--send-test-notification",
        action="store_true",
        help="Send a test email through the configured SMTP server.",
    )

    show = sub.add_parser("show-ledger", help="Print persisted per-item purchase counts")
    show.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")

    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    try:
        cfg = load_config(args.config)
    except ValidationError as e:
        logger.error("Invalid configuration:\n%s", e)
        return EXIT_CONFIG
    configure_logging(
        level=cfg.logging.level,
        file_path=cfg.logging.file_path,
        redact=(cfg.account.password, cfg.account.otp_secret, cfg.email.smtp_password),
    )

    if args.cmd == "preflight":
        logger.info("Config OK (account=%s quota=%d)", cfg.account.email, cfg.purchase.quota)
        if not cfg.account.otp_secret:
            logger.warning("No AMAZON_OTP_SECRET set; a one-time-code challenge will end the run.")
        if args.send_test_notification:
            if not cfg.email.enabled:
                logger.error("--send-test-notification requires email.enabled")
                return EXIT_CONFIG
            asyncio.run(
                _build_email_notifier(cfg).notify("Test Notification", "freebie-agent preflight: email delivery works.")
            )
        logger.info("Preflight OK")
        return EXIT_OK

    if args.cmd == "show-ledger":
        state = StateStore(cfg.state.db_path)
        try:
            rows = state.list_purchase_counts()
        finally:
            state.close()
        if not rows:
            print("No purchases recorded.")
            return EXIT_OK
        for row in rows:
            flag = " (quota reached)" if row.succeeded >= cfg.purchase.quota else ""
            print(f"{row.item_id}\t{row.succeeded}/{cfg.purchase.quota}\t{row.last_purchased_at}\t{row.title}{flag}")
        return EXIT_OK

    if args.cmd == "run":
        if args.duration_hours is not None:
            if args.duration_hours <= 0:
                logger.error("--duration-hours must be > 0")
                return EXIT_CONFIG
            cfg.run.duration_hours = args.duration_hours
        if args.slowmo_ms is not None:
            cfg.browser.slow_mo_ms = max(0, args.slowmo_ms)
        if args.headful:
            cfg.browser.headless = False

        logger.info("Starting run (dry_run=%s duration_hours=%g)", args.dry_run, cfg.run.duration_hours)
        state = StateStore(cfg.state.db_path)
        run_id = state.record_run_start()
        try:
            summary = asyncio.run(_run(cfg, state, run_id, dry_run=args.dry_run, step_debug=args.step_debug))
        except Exception as e:
            state.record_run_finish(run_id, ok=False, message=str(e))
            _write_debug_bundle(cfg, label="crash")
            raise
        finally:
            state.close()

        if summary.fatal:
            _write_debug_bundle(cfg, label="fatal", summary=summary)
            return EXIT_FATAL
        return EXIT_OK

    raise AssertionError("Unhandled command")


async def _run(cfg: AppConfig, state: StateStore, run_id: int, *, dry_run: bool, step_debug: bool) -> RunSummary:
    ledger = PurchaseLedger(
        cfg.purchase.quota,
        store=state if cfg.state.persist_ledger else None,
        run_id=run_id,
    )
    notifier = _build_notifier(cfg)

    browser = PlaywrightBrowser(
        headless=cfg.browser.headless,
        slow_mo_ms=cfg.browser.slow_mo_ms,
        debug_dir=cfg.browser.debug_dir,
        typing_delay_ms=(cfg.browser.typing_delay_ms_min, cfg.browser.typing_delay_ms_max),
        step_debug=step_debug,
        action_timeout_s=cfg.purchase.step_timeout_seconds,
    )
    try:
        await browser.start()
    except Exception:
        await browser.close()
        raise

    resolver = ChallengeResolver(
        otp=TotpGenerator(),
        otp_secret=cfg.account.otp_secret,
        captcha=TesseractCaptchaSolver(tesseract_cmd=cfg.captcha.tesseract_cmd or None) if cfg.captcha.enabled else None,
        captcha_timeout_s=cfg.captcha.timeout_seconds,
    )
    controller = SessionController(
        browser=browser,
        resolver=resolver,
        notifier=notifier,
        identity=cfg.account.email,
        secret=cfg.account.password,
        login_url=cfg.site.login_url,
        max_challenge_rounds=cfg.run.max_challenge_rounds,
    )
    scanner = CatalogScanner(
        browser=browser,
        search_url=cfg.site.search_url,
        item_url_template=cfg.site.item_url_template,
        listing_timeout_s=cfg.run.listing_timeout_seconds,
        free_shipping_markers=cfg.purchase.free_shipping_markers,
        guard=controller.guard,
    )
    executor = TransactionExecutor(
        browser=browser,
        ledger=ledger,
        notifier=notifier,
        step_timeout_s=cfg.purchase.step_timeout_seconds,
        guard=controller.guard,
    )
    loop = RunLoop(
        browser=browser,
        session=controller,
        scanner=scanner,
        executor=executor,
        ledger=ledger,
        notifier=notifier,
        predicate=make_acceptance_predicate(
            max_price=cfg.purchase.max_price,
            require_free_shipping=cfg.purchase.require_free_shipping,
        ),
        duration_s=cfg.run.duration_hours * 3600.0,
        interval_s=(cfg.run.interval_min_seconds, cfg.run.interval_max_seconds),
        dry_run=dry_run,
    )
    _install_signal_handlers(loop)

    summary = await loop.run()
    message = summary.stop_reason or None
    if dry_run and message:
        message = f"dry-run: {message}"
    state.record_run_finish(run_id, ok=not summary.fatal, message=message)
    return summary


def _install_signal_handlers(run_loop: RunLoop) -> None:
    aio_loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            aio_loop.add_signal_handler(sig, run_loop.stop)
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support signal handlers; Ctrl+C still raises KeyboardInterrupt.
            logger.debug("Signal handler for %s not installed", sig)


def _build_email_notifier(cfg: AppConfig) -> EmailNotifier:
    e = cfg.email
    return EmailNotifier(
        host=e.smtp_host,
        port=e.smtp_port,
        user=e.smtp_user,
        password=e.smtp_password,
        sender=e.sender,
        recipients=e.recipients,
        subject_prefix=e.subject_prefix,
    )


def _build_notifier(cfg: AppConfig) -> Notifier:
    if not cfg.email.enabled:
        logger.info("Email notifications disabled; notifications go to the log only.")
        return LogNotifier()
    return SafeNotifier(_build_email_notifier(cfg))


def _write_debug_bundle(cfg: AppConfig, *, label: str, summary: Optional[RunSummary] = None) -> None:
    # Auto-bundle debug artifacts + log for easy sharing.
    try:
        bundle = create_debug_bundle(
            debug_dir=cfg.browser.debug_dir,
            log_file=cfg.logging.file_path,
            out_dir=str(Path(cfg.state.db_path).parent),
            label=label,
            summary=summary,
        )
        logger.error("Wrote debug bundle: %s", bundle)
    except OSError:
        logger.debug("Failed to create debug bundle.", exc_info=True)
