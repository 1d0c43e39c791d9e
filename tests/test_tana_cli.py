import io
import os
import tempfile
import unittest
from contextlib import redirect_stderr
from unittest import mock

try:
    from agents.tana_agent import cli
    from agents.tana_agent.errors import NotFoundError

    DEPS_AVAILABLE = True
except ModuleNotFoundError:  # pragma: no cover - depends on local environment
    DEPS_AVAILABLE = False


LINK = "https://app.tana.inc/?wsid=demo"


@unittest.skipUnless(DEPS_AVAILABLE, "playwright/python-dotenv are not installed in this environment")
class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        patches = [
            mock.patch.dict(os.environ, {"DATA_DIR": self.tmpdir.name}, clear=True),
            mock.patch.object(cli, "load_dotenv"),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)
        service_patcher = mock.patch.object(cli, "TanaAgentService")
        self.service_cls = service_patcher.start()
        self.addCleanup(service_patcher.stop)
        self.service = self.service_cls.return_value

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _main(self, argv):
        stderr = io.StringIO()
        with redirect_stderr(stderr):
            code = cli.main(argv)
        return code, stderr.getvalue()

    def test_missing_link_is_config_error(self) -> None:
        code, err = self._main(["--target", "Write report", "--status", "Done"])
        self.assertEqual(code, cli.EXIT_CONFIG)
        self.assertIn("Configuration error", err)
        self.service_cls.assert_not_called()

    def test_single_card_run(self) -> None:
        code, _ = self._main(["--link", LINK, "--target", "Write report", "--status", "Done", "--headless"])
        self.assertEqual(code, cli.EXIT_OK)
        settings = self.service.run_once.call_args.args[0]
        self.assertEqual(settings.target_text, "Write report")
        self.assertTrue(settings.headless)

    def test_failure_prints_screenshot_path(self) -> None:
        self.service.run_once.side_effect = NotFoundError(
            "Card containing 'x' not visible after 15000ms",
            step="resolve_card",
            artifact="/tmp/1-failure.png",
        )
        code, err = self._main(["--link", LINK, "--target", "x", "--status", "Done"])
        self.assertEqual(code, cli.EXIT_FAILED)
        self.assertIn("Automation failed: Card containing 'x' not visible after 15000ms.", err)
        self.assertIn("Screenshot: /tmp/1-failure.png", err)

    def test_watch_mode(self) -> None:
        self.service.run_watch.return_value = mock.Mock(ticks=3, actions=1, failures=0)
        code, _ = self._main(["--link", LINK, "--watch", "--columns", "Backlog:column-A", "--poll-interval", "750"])
        self.assertEqual(code, cli.EXIT_OK)
        settings = self.service.run_watch.call_args.args[0]
        self.assertEqual(settings.columns, (("Backlog", "column-A"),))
        self.assertEqual(settings.poll_interval_ms, 750)

    def test_interrupt_exits_cleanly(self) -> None:
        self.service.run_watch.side_effect = KeyboardInterrupt
        code, _ = self._main(["--link", LINK, "--watch", "--columns", "Backlog:column-A"])
        self.assertEqual(code, cli.EXIT_OK)


if __name__ == "__main__":
    unittest.main()
