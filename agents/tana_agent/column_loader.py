import logging
from typing import List, Optional

from agents.tana_agent.selector_resolver import KANBAN_CARD_SELECTOR


SCROLL_TO_END_JS = "el => { el.scrollTop = el.scrollHeight; }"
SCROLL_TO_TOP_JS = "el => { el.scrollTop = 0; }"


class ColumnLoader:
    """Materializes every card of a lazily rendered kanban column.

    The column only mounts cards near the viewport, so the loader scrolls
    the container to its end, waits for lazy content and recounts until a
    scroll adds nothing. ``max_scrolls`` caps layouts that never settle.
    """

    def __init__(
        self,
        page,
        card_selector: str = KANBAN_CARD_SELECTOR,
        settle_ms: int = 500,
        max_scrolls: int = 20,
        reset_settle_ms: int = 300,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.page = page
        self.card_selector = card_selector or KANBAN_CARD_SELECTOR
        self.settle_ms = settle_ms
        self.max_scrolls = max(1, int(max_scrolls))
        self.reset_settle_ms = reset_settle_ms
        self.logger = logger or logging.getLogger("agent_runner.tana_agent.column_loader")
        self.last_scroll_attempts = 0

    def load_all_cards(self, column) -> List:
        cards = column.locator(self.card_selector)
        count = cards.count()
        attempts = 0

        while attempts < self.max_scrolls:
            column.evaluate(SCROLL_TO_END_JS)
            self.page.wait_for_timeout(self.settle_ms)
            attempts += 1
            recount = cards.count()
            if recount <= count:
                break
            count = recount
            self.logger.info("Found %s card(s) so far, scrolling for more...", count)
        else:
            self.logger.warning("Column still growing after %s scroll(s); stopping at cap", attempts)

        self.last_scroll_attempts = attempts

        # Back to the top so later clicks do not act on a scrolled-away viewport.
        column.evaluate(SCROLL_TO_TOP_JS)
        self.page.wait_for_timeout(self.reset_settle_ms)

        total = cards.count()
        self.logger.info("Found %s card(s) in column (after scrolling)", total)
        return [cards.nth(index) for index in range(total)]
