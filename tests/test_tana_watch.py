import logging
import tempfile
import unittest
from pathlib import Path
from unittest import mock

try:
    from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

    from agents.tana_agent.errors import NotFoundError, SessionExpiredError
    from agents.tana_agent.service import CardAction, TanaAgentService
    from agents.tana_agent.session import SESSION_EXPIRED_SELECTOR

    DEPS_AVAILABLE = True
except ModuleNotFoundError:  # pragma: no cover - depends on local environment
    DEPS_AVAILABLE = False


class _Board:
    """Scripted kanban: one ``{column: [card ids]}`` state per tick, baseline first."""

    def __init__(self, states) -> None:
        self.states = list(states)
        self.tick = 0
        self.missing_at = set()
        self.unreadable_at = set()

    @property
    def current(self):
        return self.states[min(self.tick, len(self.states) - 1)]

    def advance(self) -> None:
        self.tick += 1


class _StopEvent:
    def __init__(self, board, stop_after=None) -> None:
        self.board = board
        self.stop_after = stop_after
        self.timeouts = []

    def wait(self, timeout=None) -> bool:
        self.timeouts.append(timeout)
        if self.stop_after is not None and len(self.timeouts) > self.stop_after:
            return True
        self.board.advance()
        return False


class _Element:
    def __init__(self, name: str, log: list, present: bool = True) -> None:
        self.name = name
        self.log = log
        self.present = present

    @property
    def first(self):
        return self

    def count(self) -> int:
        return 1 if self.present else 0

    def click(self, timeout=None) -> None:
        self.log.append(self.name)

    def inner_text(self, timeout=None) -> str:
        return self.name


class _Handle:
    def __init__(self, card_id: str, log: list, fail: bool = False, unreadable: bool = False) -> None:
        self.card_id = card_id
        self.log = log
        self.fail = fail
        self.unreadable = unreadable
        self.attribute_timeouts = []

    @property
    def first(self):
        return self

    def get_attribute(self, name: str, timeout=None) -> str:
        self.attribute_timeouts.append(timeout)
        if self.unreadable:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded.")
        return self.card_id

    def scroll_into_view_if_needed(self, timeout=None) -> None:
        if self.fail:
            raise RuntimeError("element detached")

    def locator(self, selector: str):
        if selector.startswith("button"):
            return _Element(f"click:{self.card_id}", self.log)
        return _Element(f"title:{self.card_id}", self.log)


class _FakePage:
    def __init__(self, expired: bool = False, failing=()) -> None:
        self.expired = expired
        self.failing = set(failing)
        self.clicks = []
        self.waits = []

    def locator(self, selector: str):
        if selector == SESSION_EXPIRED_SELECTOR:
            return _Element("login", [], present=self.expired)
        card_id = selector.split('"')[1]
        return _Handle(card_id, self.clicks, fail=card_id in self.failing)

    def wait_for_timeout(self, ms) -> None:
        self.waits.append(ms)


class _Resolver:
    def __init__(self, board) -> None:
        self.board = board

    def resolve_column(self, page, bucket, timeout_ms=None):
        if self.board.tick in self.board.missing_at:
            raise NotFoundError(f"Column {bucket.name!r} not visible", step="resolve_column")
        return bucket.name


class _Loader:
    def __init__(self, board, page) -> None:
        self.board = board
        self.page = page

    def load_all_cards(self, column):
        unreadable = self.board.tick in self.board.unreadable_at
        return [
            _Handle(card_id, self.page.clicks, unreadable=unreadable)
            for card_id in self.board.current.get(column, [])
        ]


COLUMNS = (("Backlog", "column-B"), ("Review", "column-R"))


@unittest.skipUnless(DEPS_AVAILABLE, "playwright is not installed in this environment")
class WatchLoopTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.notifier = mock.Mock()

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _run(
        self,
        states,
        page=None,
        max_ticks=None,
        stop_after=None,
        missing_at=(),
        unreadable_at=(),
        check_ms=60_000,
    ):
        board = _Board(states)
        board.missing_at = set(missing_at)
        board.unreadable_at = set(unreadable_at)
        page = page or _FakePage()
        service = TanaAgentService(
            data_dir=Path(self.tmpdir.name),
            logger=logging.getLogger("tests.tana.watch"),
            resolver=_Resolver(board),
            loader_factory=lambda p, card_selector="", logger=None: _Loader(board, page),
        )
        stop = _StopEvent(board, stop_after=stop_after)
        report = service.watch(
            page,
            COLUMNS,
            CardAction(button_text="SYNC"),
            stop,
            notifier=self.notifier,
            poll_interval_ms=1_000,
            session_check_interval_ms=check_ms,
            max_ticks=max_ticks,
        )
        return report, page, stop

    def test_baseline_produces_no_actions(self) -> None:
        state = {"Backlog": ["card-1"], "Review": ["card-2"]}
        report, page, stop = self._run([state, state, state], max_ticks=2)

        self.assertEqual(report.ticks, 2)
        self.assertEqual(report.events, 0)
        self.assertEqual(page.clicks, [])
        self.assertEqual(stop.timeouts, [1.0, 1.0])

    def test_new_and_moved_cards_are_dispatched(self) -> None:
        states = [
            {"Backlog": ["card-1", "card-2"], "Review": []},
            {"Backlog": ["card-2", "card-3"], "Review": ["card-1"]},
        ]
        report, page, _ = self._run(states, max_ticks=1)

        self.assertEqual(report.events, 2)
        self.assertEqual(report.actions, 2)
        self.assertEqual(page.clicks, ["click:card-1", "click:card-3"])

    def test_removed_cards_are_only_logged(self) -> None:
        states = [
            {"Backlog": ["card-1", "card-2"], "Review": []},
            {"Backlog": ["card-2"], "Review": []},
        ]
        with self.assertLogs("tests.tana.watch", level="INFO") as logs:
            report, page, _ = self._run(states, max_ticks=1)

        self.assertEqual(report.events, 1)
        self.assertEqual(report.actions, 0)
        self.assertEqual(page.clicks, [])
        self.assertTrue(any("Card removed: card-1" in line for line in logs.output))

    def test_stop_event_ends_loop(self) -> None:
        state = {"Backlog": ["card-1"], "Review": []}
        report, _, stop = self._run([state], stop_after=3)

        self.assertEqual(report.ticks, 3)
        self.assertEqual(len(stop.timeouts), 4)

    def test_failed_action_does_not_stop_loop(self) -> None:
        states = [
            {"Backlog": [], "Review": []},
            {"Backlog": ["card-1", "card-2"], "Review": []},
        ]
        page = _FakePage(failing={"card-1"})
        report, page, _ = self._run(states, page=page, max_ticks=2)

        self.assertEqual(report.failures, 1)
        self.assertEqual(report.actions, 1)
        self.assertEqual(page.clicks, ["click:card-2"])

    def test_failed_actions_notify_once_per_tick(self) -> None:
        states = [
            {"Backlog": [], "Review": []},
            {"Backlog": ["card-1", "card-2"], "Review": []},
        ]
        page = _FakePage(failing={"card-1", "card-2"})
        report, _, _ = self._run(states, page=page, max_ticks=2)

        self.assertEqual(report.failures, 2)
        self.notifier.notify.assert_called_once()
        self.assertIn("2 card action(s) failed", self.notifier.notify.call_args.args[0])
        self.assertTrue(self.notifier.notify.call_args.kwargs["is_error"])

    def test_successful_ticks_do_not_notify(self) -> None:
        states = [
            {"Backlog": [], "Review": []},
            {"Backlog": ["card-1"], "Review": []},
        ]
        report, _, _ = self._run(states, max_ticks=2)

        self.assertEqual(report.actions, 1)
        self.notifier.notify.assert_not_called()

    def test_missing_column_skips_tick_without_removals(self) -> None:
        states = [
            {"Backlog": ["card-1"], "Review": []},
            {"Backlog": ["card-1"], "Review": []},
            {"Backlog": ["card-1"], "Review": ["card-9"]},
        ]
        report, page, _ = self._run(states, max_ticks=2, missing_at={1})

        self.assertEqual(report.ticks, 2)
        self.assertEqual(report.events, 1)
        self.assertEqual(page.clicks, ["click:card-9"])

    def test_card_unmounted_during_snapshot_skips_tick(self) -> None:
        states = [
            {"Backlog": ["card-1"], "Review": []},
            {"Backlog": [], "Review": ["card-1"]},
            {"Backlog": [], "Review": ["card-1"]},
        ]
        with self.assertLogs("tests.tana.watch", level="WARNING") as logs:
            report, page, _ = self._run(states, max_ticks=2, unreadable_at={1})

        self.assertEqual(report.ticks, 2)
        self.assertEqual(report.events, 1)
        self.assertEqual(page.clicks, ["click:card-1"])
        self.assertTrue(any("Skipping tick 1" in line for line in logs.output))
        self.notifier.notify.assert_not_called()

    def test_expired_session_notifies_and_raises(self) -> None:
        state = {"Backlog": ["card-1"], "Review": []}
        with self.assertRaises(SessionExpiredError):
            self._run([state], page=_FakePage(expired=True), max_ticks=5, check_ms=2_000)

        self.notifier.notify.assert_called_once()
        message = self.notifier.notify.call_args.args[0]
        self.assertIn("SESSION EXPIRED", message)
        self.assertTrue(self.notifier.notify.call_args.kwargs["is_error"])

    def test_session_checked_only_on_interval(self) -> None:
        state = {"Backlog": ["card-1"], "Review": []}
        report, _, _ = self._run([state], page=_FakePage(expired=True), max_ticks=1, check_ms=2_000)
        self.assertEqual(report.ticks, 1)
        self.notifier.notify.assert_not_called()


if __name__ == "__main__":
    unittest.main()
