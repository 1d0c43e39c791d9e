import json
import math
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from agents.tana_agent.column_loader import ColumnLoader
from agents.tana_agent.config import TanaSettings
from agents.tana_agent.errors import (
    AgentBusyError,
    ConfigurationInvalidError,
    InteractionTimeoutError,
    NotFoundError,
    SessionExpiredError,
)
from agents.tana_agent.models import (
    ActionResult,
    BatchReport,
    Bucket,
    Card,
    Removed,
    Snapshot,
    Transitioned,
    WatchReport,
)
from agents.tana_agent.notifier import WebhookNotifier, sanitize_url_for_log
from agents.tana_agent.selector_resolver import (
    SelectorResolver,
    action_button,
    card_by_id,
    card_id,
    card_title,
)
from agents.tana_agent.session import (
    is_session_expired,
    maybe_login,
    open_session,
    relogin_hint,
    wait_for_workspace,
)
from agents.tana_agent.state_diff import diff_snapshots


AGENT_NAME = "tana_agent"

SELECT_CARD_TIMEOUT_MS = 10_000
OPEN_FIELD_TIMEOUT_MS = 8_000
SELECT_OPTION_TIMEOUT_MS = 6_000
ACTION_CLICK_TIMEOUT_MS = 6_000
ACTION_BUTTON_SETTLE_MS = 1_000
TOGGLE_SETTLE_MS = 500
BOARD_LOAD_TIMEOUT_MS = 30_000


@dataclass(frozen=True)
class CardAction:
    """What to do with one card, tried in order: button, toggle, status field."""

    button_text: str = ""
    button_selector: str = ""
    toggle_selector: str = ""
    field: str = "Status"
    value: str = ""

    @classmethod
    def from_settings(cls, settings: TanaSettings, with_status: bool = True) -> "CardAction":
        return cls(
            button_text=settings.button_text,
            button_selector=settings.button_selector,
            toggle_selector=settings.status_toggle_selector,
            field=settings.status_field,
            value=settings.status_value if with_status else "",
        )

    @property
    def button_label(self) -> str:
        return self.button_selector or self.button_text


class TanaAgentService:
    """Agent that updates Tana kanban cards through Playwright."""

    def __init__(
        self,
        data_dir: Path,
        logger,
        resolver: Optional[SelectorResolver] = None,
        loader_factory: Optional[Callable[..., Any]] = None,
        notifier_factory: Callable[..., WebhookNotifier] = WebhookNotifier,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.logger = logger
        self.resolver = resolver or SelectorResolver(logger=logger)
        self.loader_factory = loader_factory or ColumnLoader
        self.notifier_factory = notifier_factory
        self.events_path = self.data_dir / "tana_agent_events.jsonl"
        self.status_path = self.data_dir / "tana_agent_status.json"
        self._run_lock = threading.Lock()
        self._watch_lock = threading.Lock()
        self._watch_stop: Optional[threading.Event] = None
        self._watch_thread: Optional[threading.Thread] = None
        self._debug("Service initialized", data_dir=str(self.data_dir))

    @staticmethod
    def now_id() -> str:
        return time.strftime("%Y%m%d-%H%M%S")

    @staticmethod
    def _now_text() -> str:
        return datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    def _debug(self, message: str, **meta: Any) -> None:
        suffix = " | " + ", ".join(f"{k}={v}" for k, v in meta.items()) if meta else ""
        self.logger.debug("[DEBUG][%s] %s | timestamp_text=%s%s", AGENT_NAME, message, self._now_text(), suffix)

    def _append_event(self, event: str, **meta: Any) -> None:
        payload = {
            "ts": datetime.now().isoformat(),
            "event": event,
            "meta": meta,
        }
        try:
            self.events_path.parent.mkdir(parents=True, exist_ok=True)
            with self.events_path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(payload, ensure_ascii=False) + "\n")
        except Exception:
            self.logger.exception("Failed to store runtime event")

    def _persist_status(self, ok: bool, message: str, **meta: Any) -> None:
        data = {"ok": ok, "message": message, "updated_at": datetime.now().isoformat(), **meta}
        try:
            self.status_path.parent.mkdir(parents=True, exist_ok=True)
            self.status_path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        except Exception:
            self.logger.exception("Failed to persist tana_agent status")

    def get_status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {"ok": True, "message": "Tana agent ready"}
        if self.status_path.exists():
            try:
                status = json.loads(self.status_path.read_text(encoding="utf-8"))
            except Exception:
                self.logger.exception("Failed to read tana_agent status")
                status = {"ok": False, "message": "Failed to read status"}
        status["watching"] = self.is_watching()
        status["busy"] = self._run_lock.locked()
        return status

    def get_events(self, limit: int = 200) -> Dict[str, Any]:
        if not self.events_path.exists():
            return {"events": []}
        lines = self.events_path.read_text(encoding="utf-8").splitlines()
        items: List[Dict[str, Any]] = []
        for line in lines[-max(1, min(limit, 2000)) :]:
            try:
                items.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return {"events": items}

    def _artifacts_dir(self, artifacts_dir: Optional[str] = None) -> Path:
        path = Path(artifacts_dir or "artifacts").expanduser()
        if not path.is_absolute():
            path = self.data_dir / path
        path.mkdir(parents=True, exist_ok=True)
        return path

    def capture_screenshot(self, page, label: str, artifacts_dir: Optional[Path] = None) -> str:
        target_dir = artifacts_dir or self._artifacts_dir()
        target_dir.mkdir(parents=True, exist_ok=True)
        safe_label = re.sub(r"\s+", "-", str(label or "capture").strip()) or "capture"
        png_path = target_dir / f"{int(time.time() * 1000)}-{safe_label}.png"
        page.screenshot(path=str(png_path), full_page=True)
        self._debug("Screenshot captured", label=safe_label, png=str(png_path))
        return str(png_path)

    def _capture_failure(self, page, label: str, artifacts_dir: Optional[Path] = None) -> str:
        if page is None:
            return ""
        try:
            path = self.capture_screenshot(page, label, artifacts_dir)
            self.logger.warning("Failure screenshot saved: %s", path)
            return path
        except Exception:
            self.logger.exception("Could not save failure screenshot")
            return ""

    @staticmethod
    def _click_step(
        locator,
        step: str,
        timeout_ms: int,
        *,
        scroll: bool = False,
        wait_visible: bool = False,
    ) -> None:
        try:
            if wait_visible:
                locator.wait_for(state="visible", timeout=timeout_ms)
            if scroll:
                locator.scroll_into_view_if_needed(timeout=timeout_ms)
            locator.click(timeout=timeout_ms)
        except PlaywrightTimeoutError as err:
            raise InteractionTimeoutError(f"Step {step} did not complete within {timeout_ms}ms", step=step) from err

    def _select_option(self, page, value: str) -> str:
        option = page.get_by_role("option", name=re.compile(re.escape(value), re.I)).first
        if option.count() > 0:
            self._click_step(option, "select_option", SELECT_OPTION_TIMEOUT_MS)
            return "role"
        by_text = page.get_by_text(value, exact=False).first
        self._click_step(by_text, "select_option", SELECT_OPTION_TIMEOUT_MS)
        return "text"

    def apply_status(self, page, card, field: str, value: str) -> ActionResult:
        """Select ``card``, open its ``field`` control and pick ``value``."""
        self._click_step(card, "select_card", SELECT_CARD_TIMEOUT_MS, scroll=True, wait_visible=True)

        self.logger.info('Opening status field "%s"', field)
        label = page.get_by_text(field, exact=False).first
        self._click_step(label, "open_field", OPEN_FIELD_TIMEOUT_MS, scroll=True)

        matched_by = self._select_option(page, value)
        self.logger.info("Set %s to %s (option matched by %s)", field, value, matched_by)
        return ActionResult(ok=True, path="status", step="select_option")

    def update_status(self, page, target_text: str, field: str, value: str) -> ActionResult:
        card = self.resolver.resolve_card(page, target_text)
        result = self.apply_status(page, card, field, value)
        return ActionResult(ok=True, card=target_text, path=result.path, step=result.step)

    def drive_single_card_update(
        self,
        page,
        target_text: str,
        field: str,
        value: str,
        artifacts_dir: Optional[Path] = None,
    ) -> ActionResult:
        """Single-card update; any failure is captured once and re-raised."""
        try:
            result = self.update_status(page, target_text, field, value)
        except Exception as err:
            artifact = self._capture_failure(page, "failure", artifacts_dir)
            if artifact:
                err.artifact = artifact
            self._append_event(
                "status_update_failed",
                target=target_text,
                field=field,
                value=value,
                step=getattr(err, "step", ""),
                error=str(err),
                artifact=artifact,
            )
            raise
        self._append_event("status_updated", target=target_text, field=field, value=value)
        self.logger.info('Updated "%s" -> %s: %s', target_text, field, value)
        return result

    def apply_card_action(self, page, card, action: CardAction, label: str = "") -> ActionResult:
        """Run the first applicable action on ``card``: button, then toggle, then status."""
        try:
            card.scroll_into_view_if_needed(timeout=ACTION_CLICK_TIMEOUT_MS)
        except PlaywrightTimeoutError as err:
            raise InteractionTimeoutError("Card could not be scrolled into view", step="scroll_card") from err

        button = action_button(card, action.button_text, action.button_selector)
        if button is not None and button.count() > 0:
            self.logger.info('  Clicking "%s" for %s', action.button_label, label or "card")
            self._click_step(button, "action_button", ACTION_CLICK_TIMEOUT_MS)
            page.wait_for_timeout(ACTION_BUTTON_SETTLE_MS)
            return ActionResult(ok=True, card=label, path="button")

        if action.toggle_selector:
            toggle = card.locator(action.toggle_selector).first
            if toggle.count() > 0:
                self.logger.info("  Clicking toggle for %s", label or "card")
                self._click_step(toggle, "status_toggle", ACTION_CLICK_TIMEOUT_MS)
                page.wait_for_timeout(TOGGLE_SETTLE_MS)
                return ActionResult(ok=True, card=label, path="toggle")

        if action.value:
            field_label = (
                card.get_by_text(action.field, exact=False)
                .first.or_(page.get_by_text(action.field, exact=False).first)
                .first
            )
            self._click_step(field_label, "open_field", OPEN_FIELD_TIMEOUT_MS, scroll=True)
            self._select_option(page, action.value)
            self.logger.info("  Set %s to %s for %s", action.field, action.value, label or "card")
            return ActionResult(ok=True, card=label, path="status")

        self.logger.info('  No "%s" button found for %s', action.button_label, label or "card")
        return ActionResult(ok=True, card=label, path="skipped")

    def _loader(self, page, card_selector: str = ""):
        return self.loader_factory(page, card_selector=card_selector, logger=self.logger)

    def apply_column_action(
        self,
        page,
        bucket: Bucket,
        action: CardAction,
        card_selector: str = "",
        notifier: Optional[WebhookNotifier] = None,
    ) -> BatchReport:
        """Run ``action`` on every card of a column; card failures never stop the batch."""
        column = self.resolver.resolve_column(page, bucket)
        self.logger.info("Column found")
        cards = self._loader(page, card_selector).load_all_cards(column)
        if not cards:
            self.logger.info("No cards found in this column.")
            return BatchReport(attempted=0, failed=0)

        results: List[ActionResult] = []
        failed = 0
        for index, card in enumerate(cards, start=1):
            label = card_title(card, fallback=f"card {index}")
            self.logger.info('Processing card #%s: "%s"', index, label[:50])
            try:
                result = self.apply_card_action(page, card, action, label=label)
            except Exception as err:
                failed += 1
                self.logger.exception("Card #%s (%s) failed; continuing with next card", index, label[:50])
                result = ActionResult(
                    ok=False,
                    card=label,
                    step=getattr(err, "step", ""),
                    error=str(err),
                )
            results.append(result)

        report = BatchReport(attempted=len(cards), failed=failed, results=tuple(results))
        log_fn = self.logger.warning if failed else self.logger.info
        log_fn(
            "Done processing %s card(s) in column %r: attempted=%s failed=%s",
            report.attempted,
            bucket.name or bucket.bucket_id,
            report.attempted,
            report.failed,
        )
        self._append_event(
            "column_processed",
            column=bucket.name,
            column_id=bucket.bucket_id or "",
            attempted=report.attempted,
            failed=report.failed,
        )
        if failed and notifier is not None:
            notifier.notify(
                f"Column {bucket.name or bucket.bucket_id}: {failed} of {report.attempted} card(s) failed",
                is_error=True,
            )
        return report

    def capture_snapshot(self, page, columns: Sequence[Tuple[str, str]], card_selector: str = "") -> Snapshot:
        loader = self._loader(page, card_selector)
        cards: List[Card] = []
        for name, column_id in columns:
            column = self.resolver.resolve_column(page, Bucket(name=name, bucket_id=column_id or None))
            for handle in loader.load_all_cards(column):
                cid = card_id(handle)
                if cid:
                    cards.append(Card(card_id=cid, bucket=name))
        snapshot = Snapshot.from_cards(cards)
        if len(snapshot) != len(cards):
            self.logger.warning(
                "Snapshot saw %s duplicate card id(s); keeping first column per card",
                len(cards) - len(snapshot),
            )
        return snapshot

    def watch(
        self,
        page,
        columns: Sequence[Tuple[str, str]],
        action: CardAction,
        stop_event: threading.Event,
        notifier: Optional[WebhookNotifier] = None,
        poll_interval_ms: int = 2_000,
        session_check_interval_ms: int = 60_000,
        card_selector: str = "",
        max_ticks: Optional[int] = None,
    ) -> WatchReport:
        """Poll columns and act on cards that appear in or move between them.

        The first snapshot is the baseline and produces no events. The loop
        runs until ``stop_event`` is set or ``max_ticks`` ticks have run.
        """
        notifier = notifier or self.notifier_factory("", self.logger)
        previous = self.capture_snapshot(page, columns, card_selector)
        self.logger.info("Tracking %s cards across %s column(s)", len(previous), len(columns))

        check_every = max(1, math.ceil(session_check_interval_ms / max(1, poll_interval_ms)))
        ticks = events = actions = failures = 0

        while max_ticks is None or ticks < max_ticks:
            if stop_event.wait(poll_interval_ms / 1000.0):
                self.logger.info("Stop requested; leaving watch loop")
                break
            ticks += 1

            if ticks % check_every == 0 and is_session_expired(page):
                notifier.notify("SESSION EXPIRED during watch! Re-login required.", is_error=True)
                raise SessionExpiredError("Session expired - re-authentication required", step="watch")

            try:
                current = self.capture_snapshot(page, columns, card_selector)
            except (NotFoundError, PlaywrightError) as err:
                # A missing column or a card unmounted mid-read would look like removals; keep the last snapshot.
                self.logger.warning("Skipping tick %s: %s", ticks, err)
                continue

            tick_failures = 0
            for change in diff_snapshots(previous, current):
                events += 1
                if isinstance(change, Removed):
                    self.logger.info("Card removed: %s (was in %s)", change.card_id, change.last_bucket)
                    continue
                if isinstance(change, Transitioned):
                    self.logger.info(
                        "Status changed: %s %s -> %s",
                        change.card_id,
                        change.from_bucket,
                        change.to_bucket,
                    )
                else:
                    self.logger.info("New card: %s in %s", change.card_id, change.bucket)

                handle = card_by_id(page, change.card_id)
                label = card_title(handle)
                try:
                    result = self.apply_card_action(page, handle, action, label=label)
                except Exception as err:
                    failures += 1
                    tick_failures += 1
                    self.logger.exception("Action failed for card %s; continuing", change.card_id)
                    self._append_event("watch_action_failed", card=change.card_id, error=str(err))
                    continue
                if result.path != "skipped":
                    actions += 1
                    self.logger.info("  Action %s done for %r (total: %s)", result.path, label, actions)
                    self._append_event("watch_action", card=change.card_id, path=result.path)

            if tick_failures:
                notifier.notify(f"Kanban watcher: {tick_failures} card action(s) failed on tick {ticks}", is_error=True)

            previous = current

        return WatchReport(ticks=ticks, events=events, actions=actions, failures=failures)

    def _open_board(self, session, settings: TanaSettings) -> None:
        page = session.page
        self.logger.info(
            "Opening %s in %s mode",
            sanitize_url_for_log(settings.link),
            "headless" if settings.headless else "headed",
        )
        page.goto(settings.link, wait_until="domcontentloaded")
        maybe_login(page, settings.credentials, self.logger)
        wait_for_workspace(page, self.logger)

    def run_once(self, settings: TanaSettings) -> Dict[str, Any]:
        """Single-shot run: one card by text, or every card of one column."""
        if not self._run_lock.acquire(blocking=False):
            raise AgentBusyError("Tana flow already running")

        run_id = self.now_id()
        artifacts_dir = self._artifacts_dir(settings.artifacts_dir)
        notifier = self.notifier_factory(settings.webhook_url, self.logger)
        self._persist_status(True, "Run started", run_id=run_id)
        self.logger.info("Starting Tana run (run_id=%s, settings=%s)", run_id, settings.summary())

        try:
            with sync_playwright() as p:
                session = open_session(p, settings, self.logger)
                page = session.page
                try:
                    self._open_board(session, settings)
                    if is_session_expired(page):
                        notifier.notify(
                            f"SESSION EXPIRED! Please re-login: {relogin_hint(settings.link, settings.user_data_dir)}",
                            is_error=True,
                        )
                        raise SessionExpiredError("Session expired - re-authentication required", step="open_board")

                    if settings.is_column_mode:
                        report = self.apply_column_action(
                            page,
                            Bucket(name=settings.column_name, bucket_id=settings.column_id or None),
                            CardAction.from_settings(settings),
                            card_selector=settings.card_selector,
                            notifier=notifier,
                        )
                        result: Dict[str, Any] = {
                            "ok": True,
                            "mode": "column",
                            "column": settings.column_name or settings.column_id,
                            "attempted": report.attempted,
                            "failed": report.failed,
                        }
                        self.logger.info('Completed processing column "%s"', settings.column_name or settings.column_id)
                    else:
                        self.drive_single_card_update(
                            page,
                            settings.target_text,
                            settings.status_field,
                            settings.status_value,
                            artifacts_dir,
                        )
                        result = {
                            "ok": True,
                            "mode": "card",
                            "target": settings.target_text,
                            "field": settings.status_field,
                            "value": settings.status_value,
                        }

                    if settings.save_state_path:
                        saved = session.save_storage_state(settings.save_state_path)
                        self.logger.info("Saved storage state to %s", saved)
                        result["saved_state"] = saved
                except Exception as err:
                    if not getattr(err, "artifact", ""):
                        artifact = self._capture_failure(page, "failure", artifacts_dir)
                        if artifact:
                            err.artifact = artifact
                    raise
                finally:
                    session.close()
                    self.logger.info("Playwright resources closed (run_id=%s)", run_id)
        except Exception as err:
            self._persist_status(
                False,
                f"Run failed: {err}",
                run_id=run_id,
                step=getattr(err, "step", ""),
                artifact=getattr(err, "artifact", ""),
            )
            self._append_event("run_failed", run_id=run_id, error=str(err), artifact=getattr(err, "artifact", ""))
            raise
        finally:
            self._run_lock.release()

        result["run_id"] = run_id
        self._persist_status(True, "Run completed", **result)
        self._append_event("run_completed", **result)
        return result

    def run_watch(
        self,
        settings: TanaSettings,
        stop_event: Optional[threading.Event] = None,
        max_ticks: Optional[int] = None,
    ) -> WatchReport:
        """Open the board and watch the configured columns until stopped."""
        if not settings.columns:
            raise ConfigurationInvalidError("Watch mode needs at least one column", step="config")
        if not self._run_lock.acquire(blocking=False):
            raise AgentBusyError("Tana flow already running")

        stop_event = stop_event or threading.Event()
        notifier = self.notifier_factory(settings.webhook_url, self.logger)
        run_id = self.now_id()
        self._persist_status(True, "Watcher starting", run_id=run_id)
        self.logger.info("Starting Tana watcher (run_id=%s, settings=%s)", run_id, settings.summary())

        try:
            with sync_playwright() as p:
                session = open_session(p, settings, self.logger)
                page = session.page
                try:
                    page.goto(settings.link, wait_until="domcontentloaded")
                    if is_session_expired(page):
                        notifier.notify(
                            f"SESSION EXPIRED! Please re-login: {relogin_hint(settings.link, settings.user_data_dir)}",
                            is_error=True,
                        )
                        raise SessionExpiredError("Session expired - re-authentication required", step="open_board")

                    first_name, first_id = settings.columns[0]
                    self.resolver.resolve_column(
                        page, Bucket(name=first_name, bucket_id=first_id or None), timeout_ms=BOARD_LOAD_TIMEOUT_MS
                    )
                    self.logger.info("Kanban board loaded")
                    notifier.notify("Kanban watcher started")
                    self._persist_status(True, "Watching", run_id=run_id, columns=[name for name, _ in settings.columns])

                    report = self.watch(
                        page,
                        settings.columns,
                        CardAction.from_settings(settings, with_status=False),
                        stop_event,
                        notifier=notifier,
                        poll_interval_ms=settings.poll_interval_ms,
                        session_check_interval_ms=settings.session_check_interval_ms,
                        card_selector=settings.card_selector,
                        max_ticks=max_ticks,
                    )
                except SessionExpiredError:
                    raise
                except Exception as err:
                    notifier.notify(f"Kanban watcher stopped: {err}", is_error=True)
                    raise
                finally:
                    session.close()
        except Exception as err:
            self._persist_status(False, f"Watcher failed: {err}", run_id=run_id, step=getattr(err, "step", ""))
            self._append_event("watch_failed", run_id=run_id, error=str(err))
            raise
        finally:
            self._run_lock.release()

        self._persist_status(
            True,
            "Watcher stopped",
            run_id=run_id,
            ticks=report.ticks,
            events=report.events,
            actions=report.actions,
            failures=report.failures,
        )
        self._append_event("watch_stopped", run_id=run_id, ticks=report.ticks, actions=report.actions)
        return report

    def is_watching(self) -> bool:
        thread = self._watch_thread
        return bool(thread is not None and thread.is_alive())

    def start_watch(self, settings: TanaSettings) -> Dict[str, Any]:
        with self._watch_lock:
            if self.is_watching():
                raise AgentBusyError("Watcher already running")
            if self._run_lock.locked():
                raise AgentBusyError("Tana flow already running")
            stop_event = threading.Event()

            def _target() -> None:
                try:
                    self.run_watch(settings, stop_event=stop_event)
                except Exception:
                    self.logger.exception("Background watcher ended with an error")

            thread = threading.Thread(target=_target, name="tana-watcher", daemon=True)
            self._watch_stop = stop_event
            self._watch_thread = thread
            thread.start()
        return {"ok": True, "watching": True, "columns": [name for name, _ in settings.columns]}

    def stop_watch(self, timeout: float = 10.0) -> Dict[str, Any]:
        with self._watch_lock:
            stop_event = self._watch_stop
            thread = self._watch_thread
            if stop_event is None or thread is None:
                return {"ok": True, "watching": False, "stopped": False}
            stop_event.set()
        thread.join(timeout=timeout)
        return {"ok": True, "watching": thread.is_alive(), "stopped": not thread.is_alive()}
