"""Selector strategies for locating Tana cards and kanban columns.

Tana renders the same card in several DOM shapes depending on the view
(kanban, list, embedded search), so lookups go through an ordered chain of
strategies. The resolver returns the first strategy that yields a
candidate and then applies one bounded visibility wait.
"""

import logging
from typing import Optional, Sequence

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from agents.tana_agent.errors import NotFoundError
from agents.tana_agent.models import Bucket


CARD_SELECTORS = (
    '[role="article"]',
    '[data-test-id*="card"]',
    '[data-testid*="card"]',
    '[data-test-id*="list-item"]',
    '[data-testid*="list-item"]',
)
COLUMN_CONTAINER_SELECTOR = ".react-kanban-column"
EDITABLE_TEXT_SELECTOR = 'span[data-role="editable"]'
KANBAN_CARD_SELECTOR = '[data-testid^="card-"]'
DEFAULT_RESOLVE_TIMEOUT_MS = 15_000
# Cards can unmount mid-read while being dragged between columns.
CARD_ATTRIBUTE_TIMEOUT_MS = 2_000


def css_string(value: str) -> str:
    return str(value).replace("\\", "\\\\").replace('"', '\\"')


class SelectorStrategy:
    """One way of finding an element; returns ``None`` when it does not apply."""

    name = "strategy"

    def attempt(self, scope, criteria):
        raise NotImplementedError


class StructuralCardStrategy(SelectorStrategy):
    def __init__(self, selector: str) -> None:
        self.selector = selector
        self.name = f"structural:{selector}"

    def attempt(self, scope, criteria):
        candidate = scope.locator(self.selector, has_text=criteria).first
        if candidate.count() > 0:
            return candidate
        return None


class TextCardStrategy(SelectorStrategy):
    # Unconditional last resort: any element containing the text.
    name = "text"

    def attempt(self, scope, criteria):
        return scope.get_by_text(criteria, exact=False).first


class ColumnIdStrategy(SelectorStrategy):
    name = "column_id"

    def attempt(self, scope, criteria: Bucket):
        if not criteria.bucket_id:
            return None
        return scope.locator(f'[data-testid="{css_string(criteria.bucket_id)}"]').first


class ColumnNameStrategy(SelectorStrategy):
    name = "column_name"

    def attempt(self, scope, criteria: Bucket):
        if not criteria.name:
            return None
        # :has-text() is a case-insensitive substring match; prefer bucket_id to disambiguate.
        title = scope.locator(f'{EDITABLE_TEXT_SELECTOR}:has-text("{css_string(criteria.name)}")')
        return scope.locator(COLUMN_CONTAINER_SELECTOR).filter(has=title).first


def default_card_strategies() -> list:
    strategies: list = [StructuralCardStrategy(selector) for selector in CARD_SELECTORS]
    strategies.append(TextCardStrategy())
    return strategies


def default_column_strategies() -> list:
    return [ColumnIdStrategy(), ColumnNameStrategy()]


class SelectorResolver:
    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        card_strategies: Optional[Sequence[SelectorStrategy]] = None,
        column_strategies: Optional[Sequence[SelectorStrategy]] = None,
        timeout_ms: int = DEFAULT_RESOLVE_TIMEOUT_MS,
    ) -> None:
        self.logger = logger or logging.getLogger("agent_runner.tana_agent.selector_resolver")
        self.card_strategies = list(card_strategies) if card_strategies is not None else default_card_strategies()
        self.column_strategies = (
            list(column_strategies) if column_strategies is not None else default_column_strategies()
        )
        self.timeout_ms = timeout_ms

    @staticmethod
    def _first_match(strategies: Sequence[SelectorStrategy], scope, criteria):
        for strategy in strategies:
            candidate = strategy.attempt(scope, criteria)
            if candidate is not None:
                return strategy, candidate
        return None, None

    def _wait_visible(self, candidate, timeout_ms: int, step: str, label: str):
        try:
            candidate.wait_for(state="visible", timeout=timeout_ms)
        except PlaywrightTimeoutError as err:
            raise NotFoundError(f"{label} not visible after {timeout_ms}ms", step=step) from err
        return candidate

    def resolve_card(self, page, text: str, timeout_ms: Optional[int] = None):
        """Find the first card containing ``text`` and wait for it to be visible."""
        timeout = self.timeout_ms if timeout_ms is None else timeout_ms
        strategy, candidate = self._first_match(self.card_strategies, page, text)
        if candidate is None:
            raise NotFoundError(f"No selector strategy matched card {text!r}", step="resolve_card")
        self.logger.info("Selecting node containing text: %r (strategy=%s)", text, strategy.name)
        return self._wait_visible(candidate, timeout, "resolve_card", f"Card containing {text!r}")

    def resolve_column(self, page, bucket: Bucket, timeout_ms: Optional[int] = None):
        timeout = self.timeout_ms if timeout_ms is None else timeout_ms
        strategy, candidate = self._first_match(self.column_strategies, page, bucket)
        if candidate is None:
            raise NotFoundError("Column needs a name or an id", step="resolve_column")
        self.logger.info(
            "Locating column: %r%s (strategy=%s)",
            bucket.name,
            f" (testId: {bucket.bucket_id})" if bucket.bucket_id else "",
            strategy.name,
        )
        return self._wait_visible(
            candidate,
            timeout,
            "resolve_column",
            f"Column {bucket.bucket_id or bucket.name!r}",
        )


def card_by_id(page, card_id: str):
    return page.locator(f'[data-testid="{css_string(card_id)}"]').first


def card_id(card, timeout_ms: int = CARD_ATTRIBUTE_TIMEOUT_MS) -> str:
    return str(card.get_attribute("data-testid", timeout=timeout_ms) or "").strip()


def card_title(card, fallback: str = "Untitled") -> str:
    try:
        text = card.locator(EDITABLE_TEXT_SELECTOR).first.inner_text(timeout=2_000)
    except Exception:
        return fallback
    return str(text or "").strip() or fallback


def action_button(card, text: str = "", selector: str = ""):
    """Per-card action button; an explicit CSS selector wins over button text."""
    if selector:
        return card.locator(selector).first
    if text:
        return card.locator(f'button:has-text("{css_string(text)}")').first
    return None
