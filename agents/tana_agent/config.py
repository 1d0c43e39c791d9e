"""Settings for the Tana agent.

Values are resolved once at startup, in priority order: CLI arguments,
environment variables (``.env`` is loaded by the CLI), then the add-on
``options.json``. The resulting ``TanaSettings`` is immutable and passed
explicitly to every component that needs it.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from agents.tana_agent.errors import ConfigurationInvalidError


DEFAULT_STATUS_FIELD = "Status"
DEFAULT_BUTTON_TEXT = "SYNC"
DEFAULT_POLL_INTERVAL_MS = 2_000
DEFAULT_SESSION_CHECK_MS = 60_000
DEFAULT_ARTIFACTS_DIR = "artifacts"

# Individual column env vars accepted when COLUMNS_CONFIG is not set.
LEGACY_COLUMN_ENV = (
    ("COLUMN_BACKLOG", "Backlog"),
    ("COLUMN_TODO", "Todo"),
    ("COLUMN_IN_PROGRESS", "In progress"),
    ("COLUMN_REVIEW", "Review"),
    ("COLUMN_BLOCKED", "Blocked"),
    ("COLUMN_DONE", "Done"),
)


@dataclass(frozen=True)
class Credentials:
    email: str = ""
    password: str = ""


@dataclass(frozen=True)
class TanaSettings:
    link: str
    target_text: str = ""
    status_field: str = DEFAULT_STATUS_FIELD
    status_value: str = ""
    column_name: str = ""
    column_id: str = ""
    card_selector: str = ""
    status_toggle_selector: str = ""
    button_text: str = DEFAULT_BUTTON_TEXT
    button_selector: str = ""
    headless: bool = False
    storage_state_path: str = ""
    save_state_path: str = ""
    user_data_dir: str = ""
    browser_channel: str = ""
    credentials: Credentials = field(default_factory=Credentials)
    columns: Tuple[Tuple[str, str], ...] = ()
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    session_check_interval_ms: int = DEFAULT_SESSION_CHECK_MS
    webhook_url: str = ""
    artifacts_dir: str = DEFAULT_ARTIFACTS_DIR
    watch: bool = False

    @property
    def is_column_mode(self) -> bool:
        return bool(self.column_name or self.column_id)

    @property
    def uses_persistent_profile(self) -> bool:
        return bool(self.user_data_dir)

    def summary(self) -> Dict[str, Any]:
        """Loggable view without credentials."""
        return {
            "link": self.link,
            "mode": "watch" if self.watch else ("column" if self.is_column_mode else "card"),
            "headless": self.headless,
            "button": self.button_selector or f'text="{self.button_text}"',
            "poll_interval_ms": self.poll_interval_ms,
            "webhook": "configured" if self.webhook_url else "not set",
            "columns": [f"{name}: {column_id}" for name, column_id in self.columns],
            "session": "profile" if self.user_data_dir else ("storage_state" if self.storage_state_path else "fresh"),
        }


def parse_columns_config(raw: str) -> Tuple[Tuple[str, str], ...]:
    """Parse ``"Backlog:column-ABC,In Progress:column-XYZ"`` into ordered pairs."""
    pairs = []
    seen = set()
    for chunk in str(raw or "").split(","):
        name, sep, column_id = chunk.partition(":")
        name = name.strip()
        column_id = column_id.strip()
        if not sep or not name or not column_id or name in seen:
            continue
        seen.add(name)
        pairs.append((name, column_id))
    return tuple(pairs)


def flag_to_bool(value: Any, fallback: bool) -> bool:
    if value is None or str(value).strip() == "":
        return fallback
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_links(raw: str) -> list:
    return [value.strip() for value in str(raw or "").split(",") if value.strip()]


def _positive_int(value: Any, name: str, default: int) -> int:
    if value is None or str(value).strip() == "":
        return default
    try:
        parsed = int(str(value).strip())
    except ValueError as exc:
        raise ConfigurationInvalidError(f"{name} must be an integer (got {value!r})", step="config") from exc
    if parsed <= 0:
        raise ConfigurationInvalidError(f"{name} must be positive (got {parsed})", step="config")
    return parsed


def build_settings(
    args: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
    options: Optional[Mapping[str, Any]] = None,
) -> TanaSettings:
    """Resolve and validate settings; raises before any browser work starts."""
    args = {k: v for k, v in (args or {}).items() if v is not None}
    env = os.environ if env is None else env
    options = options or {}

    def pick(arg_name: str, *env_names: str, default: Any = "") -> Any:
        if arg_name in args and args[arg_name] != "":
            return args[arg_name]
        for env_name in env_names:
            value = env.get(env_name)
            if value is not None and str(value).strip() != "":
                return value
        for env_name in env_names:
            value = options.get(env_name.lower())
            if value is not None and str(value).strip() != "":
                return value
        return default

    links = _parse_links(pick("link", "TANA_LINKS", "TANA_LINK", "TANA_KANBAN_URL"))
    link = links[0] if links else ""
    if not link:
        raise ConfigurationInvalidError(
            "Missing target link. Supply --link, or set TANA_LINKS/TANA_LINK in .env",
            step="config",
        )

    watch = flag_to_bool(args.get("watch"), False)
    target_text = str(pick("target", "TANA_TARGET_TEXT", "STATUS_TARGET_TEXT")).strip()
    status_value = str(pick("status", "TANA_STATUS_VALUE", "STATUS_VALUE")).strip()
    status_field = str(pick("field", "TANA_STATUS_FIELD", "STATUS_FIELD", default=DEFAULT_STATUS_FIELD)).strip()
    column_name = str(pick("column", "TANA_COLUMN")).strip()
    column_id = str(pick("column_testid", "TANA_COLUMN_TESTID")).strip()

    columns = parse_columns_config(pick("columns", "COLUMNS_CONFIG"))
    if not columns:
        columns = tuple(
            (label, str(env.get(env_name, "")).strip())
            for env_name, label in LEGACY_COLUMN_ENV
            if str(env.get(env_name, "")).strip()
        )

    if watch:
        if not columns:
            raise ConfigurationInvalidError(
                "No columns configured! Set COLUMNS_CONFIG or individual COLUMN_* env vars.",
                step="config",
            )
    else:
        if not target_text and not column_name and not column_id:
            raise ConfigurationInvalidError(
                "Missing target. Provide --target/TANA_TARGET_TEXT, or use --column / --column-testid for column mode.",
                step="config",
            )
        # Column mode can run on action buttons/toggles alone.
        is_column_only = bool(column_name or column_id) and not target_text
        if not status_value and not is_column_only:
            raise ConfigurationInvalidError(
                "Missing status value. Supply --status or set TANA_STATUS_VALUE.",
                step="config",
            )

    storage_state_path = str(pick("storage_state", "STORAGE_STATE")).strip()
    user_data_dir = str(pick("user_data_dir", "USER_DATA_DIR")).strip()
    if storage_state_path and user_data_dir:
        raise ConfigurationInvalidError(
            "Use either a profile directory (--user-data-dir) or a storage state (--storage-state), not both",
            step="config",
        )

    return TanaSettings(
        link=link,
        target_text=target_text,
        status_field=status_field or DEFAULT_STATUS_FIELD,
        status_value=status_value,
        column_name=column_name,
        column_id=column_id,
        card_selector=str(pick("card_selector", "TANA_CARD_SELECTOR")).strip(),
        status_toggle_selector=str(pick("status_toggle", "TANA_STATUS_TOGGLE_SELECTOR")).strip(),
        button_text=str(pick("button_text", "BUTTON_TEXT", default=DEFAULT_BUTTON_TEXT)).strip(),
        button_selector=str(pick("button_selector", "BUTTON_SELECTOR")).strip(),
        # Headed by default for debugging.
        headless=flag_to_bool(pick("headless", "HEADLESS", default=None), False),
        storage_state_path=storage_state_path,
        save_state_path=str(pick("save_state", "SAVE_STORAGE_STATE")).strip(),
        user_data_dir=user_data_dir,
        browser_channel=str(pick("browser_channel", "BROWSER_CHANNEL")).strip(),
        credentials=Credentials(
            email=str(env.get("TANA_EMAIL", "") or ""),
            password=str(env.get("TANA_PASSWORD", "") or ""),
        ),
        columns=columns,
        poll_interval_ms=_positive_int(
            pick("poll_interval", "POLL_INTERVAL", default=None), "POLL_INTERVAL", DEFAULT_POLL_INTERVAL_MS
        ),
        session_check_interval_ms=_positive_int(
            pick("session_check_interval", "SESSION_CHECK_INTERVAL", default=None),
            "SESSION_CHECK_INTERVAL",
            DEFAULT_SESSION_CHECK_MS,
        ),
        webhook_url=str(pick("webhook_url", "WEBHOOK_URL")).strip(),
        artifacts_dir=str(pick("artifacts_dir", "ARTIFACTS_DIR", default=DEFAULT_ARTIFACTS_DIR)).strip(),
        watch=watch,
    )
