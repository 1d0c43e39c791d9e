import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI

from agents.tana_agent.config import build_settings
from agents.tana_agent.service import TanaAgentService
from routers.tana_agent import create_tana_router


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger("agent_runner")

APP = FastAPI(title="Tana Agent Runner")


# Home Assistant add-ons mount /data for persistence; DATA_DIR overrides it elsewhere.
DATA_DIR = Path(os.getenv("DATA_DIR", "/data")).resolve()
DATA_DIR.mkdir(parents=True, exist_ok=True)


def _load_addon_options() -> Dict[str, Any]:
    """Load persisted add-on options from DATA_DIR/options.json."""
    options_path = DATA_DIR / "options.json"
    if not options_path.exists():
        logger.info("No options.json found; using environment variables or defaults")
        return {}
    try:
        options = json.loads(options_path.read_text(encoding="utf-8"))
        logger.info("Add-on options loaded from %s", options_path)
        return options if isinstance(options, dict) else {}
    except Exception:
        logger.exception("Could not parse %s; using defaults", options_path)
        return {}


ADDON_OPTIONS = _load_addon_options()


def _setting(name: str, default: str = "") -> str:
    """Read a setting from ENV first, then options.json."""
    env_name = name.upper()
    if env_name in os.environ:
        return os.getenv(env_name, default)
    return str(ADDON_OPTIONS.get(name.lower(), default))


JOB_SECRET = _setting("job_secret", "")


def _tana_settings(overrides: Dict[str, Any]):
    return build_settings(overrides, os.environ, ADDON_OPTIONS)


def _missing_tana_config() -> List[str]:
    missing = []
    if not (_setting("tana_links") or _setting("tana_link") or _setting("tana_kanban_url")):
        missing.append("tana_link")
    return missing


TANA_SERVICE = TanaAgentService(data_dir=DATA_DIR, logger=logging.getLogger("agent_runner.tana_agent"))
APP.include_router(create_tana_router(TANA_SERVICE, JOB_SECRET, _tana_settings))


@APP.get("/health")
def health():
    """Health check plus effective configuration flags."""
    return {
        "ok": True,
        "data_dir": str(DATA_DIR),
        "has_job_secret": bool(JOB_SECRET),
        "has_webhook": bool(_setting("webhook_url")),
        "missing_tana_config": _missing_tana_config(),
        "watching": TANA_SERVICE.is_watching(),
    }
