import logging
from typing import Any, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx


def sanitize_url_for_log(raw_url: str) -> str:
    if not raw_url:
        return ""
    try:
        parts = urlsplit(raw_url)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except Exception:
        return raw_url


class WebhookNotifier:
    """Posts human-readable notifications to a chat webhook (Slack, Discord, ...).

    Delivery is best-effort: a missing URL skips the post and send failures
    are logged, never raised, so a broken webhook cannot stop a run.
    """

    def __init__(self, url: str, logger: Optional[logging.Logger] = None, timeout: float = 15) -> None:
        self.url = str(url or "").strip()
        self.logger = logger or logging.getLogger("agent_runner.tana_agent.notifier")
        self.timeout = timeout

    @staticmethod
    def build_payload(message: str, is_error: bool = False) -> Dict[str, Any]:
        return {
            "text": message,
            # Slack
            "attachments": [{"color": "danger" if is_error else "good", "text": message}],
            # Discord
            "content": message,
            "ok": not is_error,
        }

    def notify(self, message: str, is_error: bool = False) -> bool:
        log_fn = self.logger.error if is_error else self.logger.info
        log_fn("[notify] %s", message)
        if not self.url:
            self.logger.debug("Webhook skipped: URL not configured")
            return False
        try:
            httpx.post(self.url, json=self.build_payload(message, is_error), timeout=self.timeout)
            return True
        except Exception:
            self.logger.exception("Webhook send failed (url=%s)", sanitize_url_for_log(self.url))
            return False
