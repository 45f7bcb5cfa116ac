"""Selenium collector driving the post/follow export extensions."""
from __future__ import annotations

import logging
import pickle
import re
import signal
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from selenium import webdriver
from selenium.common.exceptions import NoSuchElementException, WebDriverException
from selenium.webdriver.common.by import By

from ..config import BrowserSettings
from ..data.records import FOLLOW_DATA_TYPES, POST_DATA_TYPES, RawMapping
from ..errors import CollectorFailure
from .session import Collector, CollectorSession, Deadline

LOGGER = logging.getLogger(__name__)

BASE_URL = "https://twitter.com"
MISSING_ACCOUNT_TEXT = "This account doesn't exist"
EXPORT_COUNTER = re.compile(r"Export\s+(?:Posts?|Replies?|Following|Followers?)\s*\((\d+)\)", re.IGNORECASE)
CAP_NOTICES = (
    "You can export up to 300",
    "export up to 300 tweets only",
    "export up to 300 data entries",
)
EXTRACTING_NOTICES = ("Extracting", "Please wait")
ROW_SELECTOR = "table tbody tr, table tr[role='row']"
CELL_SELECTOR = "td, [role='cell']"
HEADER_SELECTOR = "table thead th, table tr th"

EXPORT_TYPE_LABELS = {
    "posts": "Posts",
    "replies": "Replies",
    "followers": "Followers",
    "following": "Following",
}


@dataclass(frozen=True)
class ProgressSnapshot:
    count: int
    from_export_button: bool = False
    cap_notice: bool = False
    extracting: bool = False


def parse_progress(body_text: str, button_texts: Sequence[str], row_count: int) -> ProgressSnapshot:
    """Read the collected count from the ``Export <Kind> (<n>)`` button, else the table."""

    for text in button_texts:
        match = EXPORT_COUNTER.search(text or "")
        if match:
            return ProgressSnapshot(count=int(match.group(1)), from_export_button=True)
    return ProgressSnapshot(
        count=row_count,
        cap_notice=any(notice in body_text for notice in CAP_NOTICES),
        extracting=any(notice in body_text for notice in EXTRACTING_NOTICES),
    )


class ProgressMonitor:
    """Decides when an extension export has converged.

    Stops when the target is reached, when the free-tier cap is reached with
    its notice shown, when a targeted export makes no progress for too long,
    or when an untargeted export holds a stable count.
    """

    def __init__(self, target: Optional[int], settings: BrowserSettings) -> None:
        self._target = target or None
        self._settings = settings
        self.last_count = 0
        self.stable_polls = 0
        self.no_progress_polls = 0

    def observe(self, snapshot: ProgressSnapshot) -> Optional[str]:
        """Feed one poll; return a stop reason or ``None`` to keep polling."""
        count = snapshot.count
        if count > 0 and count != self.last_count:
            self.last_count = count
            self.no_progress_polls = 0
            self.stable_polls = 0
        elif count > 0:
            self.stable_polls = 0 if snapshot.extracting else self.stable_polls + 1

        target = self._target
        if target and count >= target:
            return f"target {target} reached"
        if snapshot.cap_notice and count >= self._settings.free_tier_cap:
            return f"free-tier cap {self._settings.free_tier_cap} reached"
        if target and count < target:
            if not snapshot.extracting and self.no_progress_polls > self._settings.max_no_progress_polls:
                return f"no progress at {count}/{target}"
        elif not target and count > 0 and self.stable_polls >= self._settings.max_stable_polls:
            return "count stable"

        self.no_progress_polls = 0 if snapshot.extracting else self.no_progress_polls + 1
        return None


def rows_to_records(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> List[Dict[str, str]]:
    """Key table cells by header text, falling back to ``column_<i>``."""

    records = []
    for cells in rows:
        if not cells:
            continue
        record = {}
        for index, value in enumerate(cells):
            key = headers[index].strip() if index < len(headers) and headers[index].strip() else f"column_{index}"
            record[key] = value.strip()
        records.append(record)
    return records


class ExtensionExportCollector(Collector):
    """Configures an export extension for one profile and reads its results table."""

    def __init__(
        self,
        driver,
        settings: BrowserSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._driver = driver
        self._settings = settings
        self._sleep = sleep

    def collect(
        self,
        handle: str,
        data_type: str,
        max_count: Optional[int] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> List[RawMapping]:
        dashboard_url = self._dashboard_url(data_type)
        if not dashboard_url:
            raise CollectorFailure(handle, data_type, "no export dashboard URL configured")
        try:
            self._open_profile(handle, data_type)
            self._driver.switch_to.new_window("tab")
            self._driver.get(dashboard_url)
            self._configure_export(handle, data_type, max_count)
            reason = self._monitor(max_count, deadline)
            records = self._read_rows()
        except WebDriverException as exc:
            raise CollectorFailure(handle, data_type, exc.msg or str(exc)) from exc

        LOGGER.info("Collected %s %s row(s) for @%s (%s)", len(records), data_type, handle, reason)
        return records

    def _dashboard_url(self, data_type: str) -> Optional[str]:
        if data_type in POST_DATA_TYPES:
            return self._settings.post_dashboard_url
        if data_type in FOLLOW_DATA_TYPES:
            return self._settings.follow_dashboard_url
        return None

    def _open_profile(self, handle: str, data_type: str) -> None:
        self._driver.get(f"{BASE_URL}/{handle}")
        self._sleep(self._settings.poll_interval_seconds)
        if MISSING_ACCOUNT_TEXT in (self._driver.page_source or ""):
            raise CollectorFailure(handle, data_type, "account does not exist")

    def _configure_export(self, handle: str, data_type: str, max_count: Optional[int]) -> None:
        driver = self._driver
        try:
            username_input = driver.find_element(By.CSS_SELECTOR, "input[type='text'], input:not([type])")
            username_input.clear()
            username_input.send_keys(handle)
        except NoSuchElementException:
            LOGGER.debug("No username input on dashboard; assuming the extension picked up the open profile")

        label = EXPORT_TYPE_LABELS.get(data_type)
        if label:
            options = driver.find_elements(
                By.XPATH, f"//label[contains(normalize-space(.), '{label}')] | //button[normalize-space(.)='{label}']"
            )
            if options:
                options[0].click()

        if max_count:
            try:
                count_input = driver.find_element(By.CSS_SELECTOR, "input[type='number']")
                count_input.clear()
                count_input.send_keys(str(max_count))
            except NoSuchElementException:
                LOGGER.debug("No max-count input on dashboard")

        for button in driver.find_elements(By.TAG_NAME, "button"):
            if (button.text or "").strip().lower().startswith("start"):
                button.click()
                return
        LOGGER.debug("No start button found; export may already be running")

    def _snapshot(self) -> ProgressSnapshot:
        driver = self._driver
        body_text = driver.find_element(By.TAG_NAME, "body").text or ""
        button_texts = [button.text for button in driver.find_elements(By.TAG_NAME, "button")]
        row_count = len(driver.find_elements(By.CSS_SELECTOR, ROW_SELECTOR))
        return parse_progress(body_text, button_texts, row_count)

    def _monitor(self, target: Optional[int], deadline: Optional[Deadline]) -> str:
        monitor = ProgressMonitor(target, self._settings)
        while True:
            if deadline is not None and deadline.expired():
                LOGGER.warning("Collection deadline passed at %s row(s); using partial results", monitor.last_count)
                return "deadline"
            reason = monitor.observe(self._snapshot())
            if reason:
                return reason
            self._sleep(self._settings.poll_interval_seconds)

    def _read_rows(self) -> List[Dict[str, str]]:
        driver = self._driver
        headers = [cell.text for cell in driver.find_elements(By.CSS_SELECTOR, HEADER_SELECTOR)]
        rows = []
        for row in driver.find_elements(By.CSS_SELECTOR, ROW_SELECTOR):
            if row.find_elements(By.TAG_NAME, "th"):
                continue
            rows.append([cell.text or "" for cell in row.find_elements(By.CSS_SELECTOR, CELL_SELECTOR)])
        return rows_to_records(headers, rows)


class BrowserCollectorSession(CollectorSession):
    """Chrome with the export extensions loaded, started on first use."""

    def __init__(
        self,
        settings: BrowserSettings,
        *,
        driver_factory: Optional[Callable[[webdriver.ChromeOptions], object]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__()
        self._settings = settings
        self._driver_factory = driver_factory or (lambda options: webdriver.Chrome(options=options))
        self._sleep = sleep
        self._driver = None
        self._main_window: Optional[str] = None

    def _chrome_options(self) -> webdriver.ChromeOptions:
        options = webdriver.ChromeOptions()
        if self._settings.chrome_binary:
            options.binary_location = str(self._settings.chrome_binary)
        if self._settings.headless:
            options.add_argument("--headless=new")
        options.add_argument(f"--window-size={self._settings.window_size}")
        options.add_argument("--disable-blink-features=AutomationControlled")
        if self._settings.extension_dirs:
            joined = ",".join(str(path) for path in self._settings.extension_dirs)
            options.add_argument(f"--load-extension={joined}")
        options.add_experimental_option("excludeSwitches", ["enable-automation"])
        return options

    def _init_driver(self) -> None:
        options = self._chrome_options()
        # chromedriver must not receive the operator's Ctrl+C directly.
        old_sigint_handler = signal.signal(signal.SIGINT, signal.SIG_IGN)
        try:
            self._driver = self._driver_factory(options)
        finally:
            signal.signal(signal.SIGINT, old_sigint_handler)
        self._main_window = self._driver.current_window_handle

    def _login_with_cookies(self) -> None:
        assert self._driver is not None
        try:
            with self._settings.cookies_path.open("rb") as fh:
                cookies = pickle.load(fh)
        except FileNotFoundError as exc:
            raise RuntimeError(f"Cookie file missing at {self._settings.cookies_path}") from exc

        self._driver.get(BASE_URL)
        for cookie in cookies:
            self._driver.add_cookie(cookie)
        self._driver.refresh()
        LOGGER.info("Restored browser session from %s (%s cookies)", self._settings.cookies_path, len(cookies))

    def acquire(self) -> Collector:
        if self._driver is None:
            self._init_driver()
            try:
                self._login_with_cookies()
            except Exception:
                self.close()
                raise
        return ExtensionExportCollector(self._driver, self._settings, sleep=self._sleep)

    def release(self, collector: Collector) -> None:
        """Close tabs a task opened and return to the main window."""
        if self._driver is None or self._main_window is None:
            return
        for window in list(self._driver.window_handles):
            if window != self._main_window:
                self._driver.switch_to.window(window)
                self._driver.close()
        self._driver.switch_to.window(self._main_window)

    def close(self) -> None:
        if self._driver is not None:
            self._driver.quit()
            self._driver = None
            self._main_window = None
