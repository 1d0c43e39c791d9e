#!/usr/bin/env python3
"""
Command line entry point for the Tana agent.

Usage:
  tana-agent --link "https://app.tana.inc/?wsid=..." --target "Write report" --status Done
  tana-agent --link "..." --column "In progress" --column-testid column-YnoDw59tQHaz
  tana-agent --watch --link "..." --columns "Backlog:column-ABC,In progress:column-XYZ"

Settings not given as flags are read from the environment (a local .env is
loaded first) and then from DATA_DIR/options.json.
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from agents.tana_agent.config import build_settings
from agents.tana_agent.errors import ConfigurationInvalidError
from agents.tana_agent.service import TanaAgentService


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="tana-agent",
        description="Update Tana kanban card status, or watch columns and click a per-card button",
    )
    ap.add_argument("--link", help="Tana view URL (default: TANA_LINKS/TANA_LINK)")
    ap.add_argument("--target", help="Free text identifying the card to update")
    ap.add_argument("--status", help="Status value to select")
    ap.add_argument("--field", help="Status field label (default: Status)")
    ap.add_argument("--column", help="Column name for column mode")
    ap.add_argument("--column-testid", dest="column_testid", help="Column data-testid (preferred over name)")
    ap.add_argument("--card-selector", dest="card_selector", help="Selector for cards inside a column")
    ap.add_argument("--status-toggle", dest="status_toggle", help="Fallback toggle selector inside each card")
    ap.add_argument("--button-text", dest="button_text", help="Per-card action button text (default: SYNC)")
    ap.add_argument("--button-selector", dest="button_selector", help="Per-card action button CSS selector")
    headless = ap.add_mutually_exclusive_group()
    headless.add_argument("--headless", dest="headless", action="store_true", default=None)
    headless.add_argument("--headed", dest="headless", action="store_false")
    ap.add_argument("--storage-state", dest="storage_state", help="Storage state JSON to start from")
    ap.add_argument("--save-state", dest="save_state", help="Write a fresh storage state here after the run")
    ap.add_argument("--user-data-dir", dest="user_data_dir", help="Persistent browser profile directory")
    ap.add_argument("--browser-channel", dest="browser_channel", help="Browser channel, e.g. chrome or msedge")
    ap.add_argument("--watch", action="store_true", default=None, help="Poll columns until interrupted")
    ap.add_argument("--columns", help='Watched columns as "Name:testid,Name:testid"')
    ap.add_argument("--poll-interval", dest="poll_interval", type=int, help="Watch poll interval in ms")
    ap.add_argument("--webhook-url", dest="webhook_url", help="Chat webhook for notifications")
    ap.add_argument("--artifacts-dir", dest="artifacts_dir", help="Where failure screenshots go")
    return ap


def _load_options(data_dir: Path) -> Dict[str, Any]:
    options_path = data_dir / "options.json"
    if not options_path.exists():
        return {}
    try:
        options = json.loads(options_path.read_text(encoding="utf-8"))
    except Exception:
        logging.getLogger("agent_runner").exception("Could not parse %s; ignoring it", options_path)
        return {}
    return options if isinstance(options, dict) else {}


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stdout,
    )
    logger = logging.getLogger("agent_runner.tana_agent")

    args = vars(build_parser().parse_args(argv))
    data_dir = Path(os.getenv("DATA_DIR", ".")).resolve()

    try:
        settings = build_settings(args, os.environ, _load_options(data_dir))
    except ConfigurationInvalidError as err:
        print(f"Configuration error: {err}", file=sys.stderr)
        return EXIT_CONFIG

    service = TanaAgentService(data_dir=data_dir, logger=logger)
    try:
        if settings.watch:
            logger.info("Watching columns; press Ctrl+C to stop.")
            report = service.run_watch(settings)
            logger.info("Watcher finished: ticks=%s actions=%s failures=%s", report.ticks, report.actions, report.failures)
        else:
            service.run_once(settings)
    except KeyboardInterrupt:
        logger.info("Interrupted; exiting")
        return EXIT_OK
    except Exception as err:
        screenshot = getattr(err, "artifact", "") or "not captured"
        print(f"Automation failed: {err}. Screenshot: {screenshot}", file=sys.stderr)
        return EXIT_FAILED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
