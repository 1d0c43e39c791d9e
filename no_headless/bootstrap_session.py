#!/usr/bin/env python3
"""
Headed Tana login that leaves an authenticated browser profile behind.

Usage:
  TANA_KANBAN_URL="https://app.tana.inc/?wsid=..." python3 no_headless/bootstrap_session.py

Optional:
  PROFILE_DIR="chrome-profile"          persistent profile to create/reuse
  OUT_FILE="playwright/.auth/user.json"  also write a storage_state file
  BROWSER_CHANNEL="chrome"               OAuth providers block bundled Chromium
"""

from __future__ import annotations

import os
from pathlib import Path

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright


VIEWPORT = {"width": 1400, "height": 900}
LOGIN_TIMEOUT_MS = 300_000
LOGGED_IN_SELECTOR = '[data-testid^="column-"], [contenteditable="true"], [data-role="NodeAsCard"]'


def main() -> None:
    target_url = os.getenv("TANA_KANBAN_URL", "").strip() or "https://app.tana.inc"
    profile_dir = Path(os.getenv("PROFILE_DIR", "chrome-profile").strip()).resolve()
    out_file = os.getenv("OUT_FILE", "").strip()
    channel = os.getenv("BROWSER_CHANNEL", "chrome").strip()

    profile_dir.mkdir(parents=True, exist_ok=True)
    print(f"Profile directory: {profile_dir}")
    print(f"Tana URL: {target_url}")

    with sync_playwright() as p:
        context = p.chromium.launch_persistent_context(
            str(profile_dir),
            headless=False,
            channel=channel or None,
            viewport=VIEWPORT,
            args=["--start-maximized"],
        )
        page = context.pages[0] if context.pages else context.new_page()
        page.goto(target_url)

        print("Log in with Microsoft/Google in the browser window.")
        print("The window closes by itself once the workspace is visible.")
        try:
            page.wait_for_selector(LOGGED_IN_SELECTOR, timeout=LOGIN_TIMEOUT_MS)
        except PlaywrightTimeoutError:
            context.close()
            raise SystemExit("Login timed out or failed. Please try again.")

        # Give the app a moment to flush the session to the profile.
        page.wait_for_timeout(3_000)

        if out_file:
            out_path = Path(out_file).resolve()
            out_path.parent.mkdir(parents=True, exist_ok=True)
            context.storage_state(path=str(out_path))
            print(f"Storage state saved to: {out_path}")

        context.close()

    print(f"Login successful. Session saved to: {profile_dir}")
    print("Run the watcher with: tana-agent --watch --user-data-dir", profile_dir)


if __name__ == "__main__":
    main()
