import logging
import re
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from agents.tana_agent.config import Credentials, TanaSettings


VIEWPORT = {"width": 1400, "height": 900}
HEADED_SLOW_MO_MS = 75
WORKSPACE_SELECTORS = (
    '[data-testid^="column-"]',
    '[class*="NodeAsCard"]',
    '[contenteditable="true"]',
    '[data-testid="workspace"]',
    '[data-test-id="workspace-root"]',
)
SESSION_EXPIRED_SELECTOR = (
    'button:has-text("Sign in with"), '
    'button:has-text("Sign in with Microsoft"), '
    'button:has-text("Sign in with Google")'
)
EMAIL_INPUT_SELECTOR = 'input[type="email"], input[name="email"]'
PASSWORD_INPUT_SELECTOR = 'input[type="password"], input[name="password"]'
SUBMIT_BUTTON_NAME = re.compile(r"continue|login|log in|sign in", re.I)


@dataclass
class BrowserSession:
    browser: Any
    context: Any
    page: Any

    def save_storage_state(self, path: str) -> str:
        out_path = Path(path).expanduser()
        out_path.parent.mkdir(parents=True, exist_ok=True)
        self.context.storage_state(path=str(out_path))
        return str(out_path)

    def close(self) -> None:
        # A persistent context owns its browser process.
        if self.browser is not None:
            self.browser.close()
        else:
            self.context.close()


def _is_playwright_executable_error(error: Exception) -> bool:
    return "Executable doesn't exist" in str(error)


def _ensure_playwright_browsers(logger: logging.Logger) -> bool:
    command = [sys.executable, "-m", "playwright", "install", "chromium"]
    logger.warning("Chromium not found; attempting automatic install")
    try:
        subprocess.run(command, check=True, timeout=900, text=True, capture_output=True)
        logger.info("Automatic Chromium install completed")
        return True
    except Exception:
        logger.exception("Could not install Chromium at runtime")
        return False


def _with_browser_install(launch, logger: logging.Logger):
    try:
        return launch()
    except Exception as err:
        if not _is_playwright_executable_error(err):
            raise
        if not _ensure_playwright_browsers(logger):
            raise
        return launch()


def open_session(playwright, settings: TanaSettings, logger: logging.Logger) -> BrowserSession:
    """Open a page on either a persistent profile or an ephemeral context."""
    launch_kwargs: Dict[str, Any] = {
        "headless": settings.headless,
        "slow_mo": 0 if settings.headless else HEADED_SLOW_MO_MS,
    }
    if settings.browser_channel:
        launch_kwargs["channel"] = settings.browser_channel

    if settings.uses_persistent_profile:
        profile_path = Path(settings.user_data_dir).expanduser()
        profile_path.mkdir(parents=True, exist_ok=True)
        context = _with_browser_install(
            lambda: playwright.chromium.launch_persistent_context(
                str(profile_path), viewport=VIEWPORT, **launch_kwargs
            ),
            logger,
        )
        logger.info("Using persistent profile at %s", profile_path)
        page = context.pages[0] if context.pages else context.new_page()
        return BrowserSession(browser=None, context=context, page=page)

    browser = _with_browser_install(lambda: playwright.chromium.launch(**launch_kwargs), logger)
    context_kwargs: Dict[str, Any] = {"viewport": VIEWPORT}
    storage_path = Path(settings.storage_state_path).expanduser() if settings.storage_state_path else None
    if storage_path is not None and storage_path.exists():
        context_kwargs["storage_state"] = str(storage_path)
        logger.info("Reusing storage_state from %s", storage_path)
    elif storage_path is not None:
        logger.warning("storage_state %s not found; starting with a fresh session", storage_path)
    context = browser.new_context(**context_kwargs)
    return BrowserSession(browser=browser, context=context, page=context.new_page())


def maybe_login(page, credentials: Credentials, logger: logging.Logger) -> bool:
    """Fill the login form when one is shown; returns False when already signed in."""
    email_input = page.locator(EMAIL_INPUT_SELECTOR)
    password_input = page.locator(PASSWORD_INPUT_SELECTOR)
    if email_input.count() == 0 and password_input.count() == 0:
        logger.info("No login form detected; assuming session is already active.")
        return False

    if email_input.count() > 0:
        if credentials.email:
            email_input.first.fill(credentials.email)
        else:
            logger.warning("Email input present but TANA_EMAIL is missing; fill manually.")

    if password_input.count() > 0:
        if credentials.password:
            password_input.first.fill(credentials.password)
        else:
            logger.warning("Password input present but TANA_PASSWORD is missing; fill manually.")

    submit = page.get_by_role("button", name=SUBMIT_BUTTON_NAME)
    if submit.count() > 0:
        submit.first.click()
        try:
            page.wait_for_load_state("networkidle", timeout=15_000)
        except PlaywrightTimeoutError:
            logger.debug("Network did not go idle after login submit")
    return True


def wait_for_workspace(page, logger: logging.Logger, timeout_ms: int = 20_000, settle_ms: int = 2_000) -> bool:
    # Tana is a SPA; networkidle may never settle, so wait on UI markers instead.
    page.wait_for_load_state("domcontentloaded")
    ready = True
    try:
        page.wait_for_selector(", ".join(WORKSPACE_SELECTORS), timeout=timeout_ms)
    except PlaywrightTimeoutError:
        ready = False
        logger.warning("No workspace marker seen after %sms; continuing", timeout_ms)
    page.wait_for_timeout(settle_ms)
    if ready:
        logger.info("Workspace appears ready.")
    return ready


def is_session_expired(page) -> bool:
    return page.locator(SESSION_EXPIRED_SELECTOR).count() > 0


def relogin_hint(link: str, user_data_dir: Optional[str] = None) -> str:
    profile = user_data_dir or "chrome-profile"
    return f"TANA_KANBAN_URL=\"{link}\" PROFILE_DIR=\"{profile}\" python no_headless/bootstrap_session.py"
