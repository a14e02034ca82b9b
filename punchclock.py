#!/usr/bin/env python3
"""
punchclock.py

Jittered timeclock scheduler for the Senior platform.
"""

from __future__ import annotations

import argparse
import dataclasses
import http.client
import http.cookiejar
import json
import logging
import os
import random
import re
import sys
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib import request as urllib_request
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import croniter


LOG_FILE = "punchclock.log"
DEFAULT_CONFIG = "punchclock.yaml"
DEFAULT_TIMEZONE = "America/Sao_Paulo"
DEFAULT_MAX_JITTER_SECONDS = 300
DEFAULT_MAX_RETRIES = 3
DEFAULT_POLL_SECONDS = 60
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
DEFAULT_NOTIFY_TIMEOUT_SECONDS = 5
DEFAULT_NOTIFY_QUEUE_SIZE = 100
DEFAULT_PREVIEW_COUNT = 5
RETRY_DELAY_SECONDS = 5
FIRING_WINDOW_SECONDS = 30
MAX_POLL_SECONDS = 2 * FIRING_WINDOW_SECONDS

DEFAULT_BASE_URL = "https://platform.senior.com.br"
DEFAULT_APP_VERSION = "3.12.3"
LOGIN_PATH = "/auth/LoginServlet"
EMPLOYEE_QUERY_PATH = "/t/senior.com.br/bridge/1.0/rest/hcm/pontomobile/queries/employeeByUserQuery"
CLOCKING_EVENT_PATH = (
    "/t/senior.com.br/bridge/1.0/rest/hcm/pontomobile_clocking_event/actions/clockingEventImportByBrowser"
)
TOKEN_COOKIE = "com.senior.token"
CLOCKING_SIGNATURE = "N2IyZTNhYzUyOWFhNmM4YTUzM2U2YzEzMDM1MDk4NmY5MGM3MDQ0YTFkZDNhMzJjMGViZDBkM2EwZjFhYjk0Zg=="
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64)"

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_SKIPPED = "skipped"
SKIP_REASON_VACATION = "vacation_period"

VALID_STRATEGIES = {"poll", "timer"}
SCHEDULE_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}

CONFIG_KEYS = {
    "user",
    "password",
    "timezone",
    "schedules",
    "weekdays",
    "random_offset",
    "vacation",
    "webhook_url",
    "max_retries",
    "strategy",
    "poll_seconds",
    "request_timeout",
    "notify_timeout",
    "debug",
    "platform",
}
ENV_OVERRIDES = {
    "PUNCH_USER": "user",
    "PUNCH_PASSWORD": "password",
    "TZ": "timezone",
    "SCHEDULES": "schedules",
    "WEEKDAYS": "weekdays",
    "RANDOM_OFFSET": "random_offset",
    "VACATION_START": "vacation_start",
    "VACATION_END": "vacation_end",
    "WEBHOOK_URL": "webhook_url",
    "MAX_RETRIES": "max_retries",
    "STRATEGY": "strategy",
    "POLL_SECONDS": "poll_seconds",
    "REQUEST_TIMEOUT": "request_timeout",
    "DEBUG": "debug",
}


class PunchClockError(Exception):
    """Base error for punchclock."""


class ConfigError(PunchClockError):
    """Config validation error."""


class RemoteActionError(PunchClockError):
    """A remote call failed; retried by PunchExecutor."""


class AuthError(RemoteActionError):
    pass


class SubmitError(RemoteActionError):
    pass


class NotifyError(PunchClockError):
    pass


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("punchclock")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    return logger


def set_debug(enabled: bool) -> None:
    logger.setLevel(logging.DEBUG if enabled else logging.INFO)


logger = setup_logging()
UTC = timezone.utc


@dataclass(frozen=True)
class NominalTime:
    hour: int
    minute: int

    @property
    def label(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class WeekdaySpec:
    all_days: bool
    days: FrozenSet[int]

    def matches(self, weekday: int) -> bool:
        return self.all_days or weekday in self.days


@dataclass(frozen=True)
class VacationRange:
    start: date
    end: date


@dataclass(frozen=True)
class PlatformSettings:
    user: str
    password: str
    base_url: str = DEFAULT_BASE_URL
    timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    app_version: str = DEFAULT_APP_VERSION

    def __repr__(self) -> str:
        return f"PlatformSettings(user={self.user!r}, base_url={self.base_url!r})"


@dataclass(frozen=True)
class Config:
    nominal_times: Tuple[NominalTime, ...]
    weekday_pattern: str
    weekdays: WeekdaySpec
    timezone: ZoneInfo
    timezone_name: str
    platform: PlatformSettings
    max_jitter_seconds: int = DEFAULT_MAX_JITTER_SECONDS
    vacation: Optional[VacationRange] = None
    max_retries: int = DEFAULT_MAX_RETRIES
    notify_target: Optional[str] = None
    strategy: str = "poll"
    poll_seconds: int = DEFAULT_POLL_SECONDS
    notify_timeout_seconds: int = DEFAULT_NOTIFY_TIMEOUT_SECONDS
    debug: bool = False


@dataclass(frozen=True)
class TriggerWindow:
    nominal: NominalTime
    day: date
    scheduled_at: datetime
    offset_seconds: int

    @property
    def effective_at(self) -> datetime:
        return self.scheduled_at + timedelta(seconds=self.offset_seconds)

    def contains(self, instant: datetime, slack_seconds: int = FIRING_WINDOW_SECONDS) -> bool:
        delta = instant.astimezone(UTC) - self.effective_at.astimezone(UTC)
        return abs(delta.total_seconds()) <= slack_seconds


@dataclass
class PunchResult:
    success: bool
    attempts: int
    payload: Any = None
    error: Optional[str] = None


@dataclass(frozen=True)
class PunchOutcome:
    status: str
    scheduled_at: datetime
    offset_seconds: int
    executed_at: Optional[datetime] = None
    attempts: Optional[int] = None
    response: Any = None
    error: Optional[str] = None
    reason: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status": self.status,
            "scheduledTime": self.scheduled_at.astimezone(UTC).isoformat(),
            "offsetSeconds": self.offset_seconds,
        }
        if self.executed_at is not None:
            payload["executedTime"] = self.executed_at.astimezone(UTC).isoformat()
        if self.attempts is not None:
            payload["attempts"] = self.attempts
        if self.status == STATUS_SUCCESS:
            payload["response"] = self.response
        if self.error is not None:
            payload["error"] = self.error
        if self.reason is not None:
            payload["reason"] = self.reason
        return payload


# --- weekday / vacation policies -------------------------------------------


def _weekday_number(token: str, pattern: str) -> int:
    tok = token.strip()
    if not tok.isdecimal():
        raise ConfigError(f'Error: Invalid WEEKDAYS "{pattern}": token "{token}" is not numeric.')
    num = int(tok)
    if num < 0 or num > 7:
        raise ConfigError(f'Error: Invalid WEEKDAYS "{pattern}": days must be between 0 and 7.')
    return 0 if num == 7 else num


def parse_weekday_pattern(pattern: Optional[str]) -> WeekdaySpec:
    """Parse a WEEKDAYS pattern such as "*", "1-5", "0,6" or "1,2,3".

    Sunday is 0 and 7 is accepted as an alias for it. Ranges must be
    increasing once 7 is folded to 0, so "6-7" is rejected while "0-7"
    collapses to Sunday only.
    """
    raw = (pattern or "").strip()
    if not raw or raw == "*":
        return WeekdaySpec(all_days=True, days=frozenset(range(7)))

    days: Set[int] = set()
    for part in raw.split(","):
        if "-" in part:
            left, _, right = part.partition("-")
            start = _weekday_number(left, raw)
            end = _weekday_number(right, raw)
            if start > end:
                raise ConfigError(
                    f'Error: Invalid WEEKDAYS "{raw}": ranges must be increasing (e.g. "1-5").'
                )
            days.update(range(start, end + 1))
        else:
            days.add(_weekday_number(part, raw))
    return WeekdaySpec(all_days=False, days=frozenset(days))


def weekday_matches(pattern: Optional[str], weekday: int) -> bool:
    return parse_weekday_pattern(pattern).matches(weekday)


def sunday_weekday(day: date) -> int:
    """Weekday number with Sunday=0 ... Saturday=6."""
    return day.isoweekday() % 7


def is_blackout(today: date, vacation: Optional[VacationRange]) -> bool:
    if vacation is None:
        return False
    return vacation.start <= today <= vacation.end


# --- jitter ----------------------------------------------------------------


def realize_nominal(nominal: NominalTime, day: date, tz: ZoneInfo) -> datetime:
    return datetime(day.year, day.month, day.day, nominal.hour, nominal.minute, tzinfo=tz)


class JitterPlanner:
    """Draws a fresh random offset every time a nominal time is planned."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        # The random module itself is the process-wide source.
        self._rng: Any = rng if rng is not None else random

    def draw_offset(self, max_jitter_seconds: int) -> int:
        if max_jitter_seconds <= 0:
            return 0
        return self._rng.randrange(-max_jitter_seconds, max_jitter_seconds)

    def plan_for(
        self,
        nominal: NominalTime,
        today: date,
        tz: ZoneInfo,
        max_jitter_seconds: int,
    ) -> TriggerWindow:
        return TriggerWindow(
            nominal=nominal,
            day=today,
            scheduled_at=realize_nominal(nominal, today, tz),
            offset_seconds=self.draw_offset(max_jitter_seconds),
        )


# --- remote platform -------------------------------------------------------


def _default_opener(jar: http.cookiejar.CookieJar) -> urllib_request.OpenerDirector:
    return urllib_request.build_opener(urllib_request.HTTPCookieProcessor(jar))


def _http_error_message(exc: urllib_error.HTTPError) -> str:
    try:
        body = json.loads(exc.read().decode("utf-8"))
    except Exception:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"HTTP {exc.code} {exc.reason}"


def _url_error_message(exc: Exception) -> str:
    if isinstance(exc, urllib_error.HTTPError):
        return _http_error_message(exc)
    if isinstance(exc, urllib_error.URLError):
        return str(exc.reason)
    return str(exc)


def build_clocking_payload(employee: Mapping[str, Any], app_version: str) -> Dict[str, Any]:
    try:
        company = employee["company"]
        return {
            "clockingInfo": {
                "company": {
                    "id": company["id"],
                    "arpId": company["arpId"],
                    "identifier": company["cnpj"],
                },
                "employee": {
                    "id": employee["id"],
                    "arpId": employee["arpId"],
                    "cpf": employee["cpfNumber"],
                    "pis": employee["pis"],
                },
                "appVersion": app_version,
                "timeZone": company["timeZone"],
                "signature": {
                    "signatureVersion": 1,
                    "signature": CLOCKING_SIGNATURE,
                },
                "use": "02",
            }
        }
    except (KeyError, TypeError) as exc:
        raise SubmitError(f"Employee data is missing field {exc}.") from exc


class SeniorPlatformClient:
    """Login and clocking calls against the Senior platform.

    Every call to ``authenticate`` uses its own cookie jar, so concurrent
    firings never share a session.
    """

    def __init__(
        self,
        settings: PlatformSettings,
        opener_factory: Callable[[http.cookiejar.CookieJar], Any] = _default_opener,
    ) -> None:
        self.settings = settings
        self._opener_factory = opener_factory

    def _url(self, path: str) -> str:
        return self.settings.base_url.rstrip("/") + path

    def authenticate(self) -> str:
        logger.info("Authenticating on the Senior platform...")
        jar = http.cookiejar.CookieJar()
        opener = self._opener_factory(jar)
        body = urllib_parse.urlencode(
            {"user": self.settings.user, "password": self.settings.password}
        ).encode("utf-8")
        headers = {
            "Origin": self.settings.base_url,
            "Content-Type": "application/x-www-form-urlencoded",
            "User-Agent": USER_AGENT,
        }
        req = urllib_request.Request(url=self._url(LOGIN_PATH), data=body, method="POST", headers=headers)
        try:
            with opener.open(req, timeout=self.settings.timeout_seconds) as response:
                response.read()
        except (OSError, http.client.HTTPException) as exc:
            raise AuthError(f"Authentication failed: {_url_error_message(exc)}") from exc

        token_cookie = next((cookie for cookie in jar if cookie.name == TOKEN_COOKIE), None)
        if token_cookie is None or not token_cookie.value:
            raise AuthError(f"Authentication failed: cookie {TOKEN_COOKIE} not found.")
        try:
            token_data = json.loads(urllib_parse.unquote(token_cookie.value))
            access_token = token_data["access_token"]
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthError(f"Authentication failed: unreadable token cookie ({exc}).") from exc
        logger.info("Authentication succeeded.")
        return access_token

    def _post_json(self, opener: Any, path: str, token: str, payload: Dict[str, Any]) -> Any:
        req = urllib_request.Request(
            url=self._url(path),
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"bearer {token}",
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
            },
        )
        try:
            with opener.open(req, timeout=self.settings.timeout_seconds) as response:
                raw = response.read()
        except (OSError, http.client.HTTPException) as exc:
            raise SubmitError(_url_error_message(exc)) from exc
        if not raw:
            return {}
        try:
            return json.loads(raw.decode("utf-8"))
        except ValueError as exc:
            raise SubmitError(f"Invalid JSON response from {path}.") from exc

    def submit_punch(self, token: str) -> Any:
        opener = self._opener_factory(http.cookiejar.CookieJar())
        logger.info("Fetching employee data...")
        try:
            data = self._post_json(opener, EMPLOYEE_QUERY_PATH, token, {})
        except SubmitError as exc:
            raise SubmitError(f"Failed to fetch employee data: {exc}") from exc
        employee = data.get("employee") if isinstance(data, dict) else None
        if not isinstance(employee, dict):
            raise SubmitError("Failed to fetch employee data: response has no employee.")

        payload = build_clocking_payload(employee, self.settings.app_version)
        result = self._post_json(opener, CLOCKING_EVENT_PATH, token, payload)
        logger.info("Clocking event accepted by the platform.")
        return result


class PunchExecutor:
    """Authenticate + submit with a bounded number of attempts and fixed backoff."""

    def __init__(
        self,
        authenticate: Callable[[], str],
        submit_punch: Callable[[str], Any],
        max_retries: int,
        retry_delay_seconds: float = RETRY_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self._authenticate = authenticate
        self._submit_punch = submit_punch
        self._sleep = sleep

    def execute(self) -> PunchResult:
        last_error = ""
        for attempt in range(1, self.max_retries + 1):
            logger.info("Punching clock (attempt %s/%s)", attempt, self.max_retries)
            try:
                token = self._authenticate()
                payload = self._submit_punch(token)
            except RemoteActionError as exc:
                last_error = str(exc)
                logger.error("Attempt %s/%s failed: %s", attempt, self.max_retries, last_error)
                if attempt < self.max_retries:
                    logger.info("Retrying in %s seconds...", self.retry_delay_seconds)
                    self._sleep(self.retry_delay_seconds)
                continue
            return PunchResult(success=True, attempts=attempt, payload=payload)
        return PunchResult(success=False, attempts=self.max_retries, error=last_error)


def build_executor(client: SeniorPlatformClient, config: Config) -> PunchExecutor:
    return PunchExecutor(client.authenticate, client.submit_punch, config.max_retries)


# --- outcome notification --------------------------------------------------


class OutcomeNotifier:
    """Best-effort, non-blocking webhook delivery of punch outcomes."""

    def __init__(
        self,
        target: Optional[str],
        timeout_seconds: float = DEFAULT_NOTIFY_TIMEOUT_SECONDS,
        tz: Optional[ZoneInfo] = None,
        max_queue: int = DEFAULT_NOTIFY_QUEUE_SIZE,
        opener: Any = None,
    ) -> None:
        self.target = (target or "").strip() or None
        self.timeout_seconds = timeout_seconds
        self._tz = tz or UTC
        self._opener = opener if opener is not None else urllib_request.build_opener()
        self._queue: "Queue[PunchOutcome]" = Queue(maxsize=max_queue)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._dropped_events = 0

        if self.target:
            self._thread = threading.Thread(target=self._run, daemon=True, name="punchclock-notifier")
            self._thread.start()

    @property
    def enabled(self) -> bool:
        return self.target is not None

    def notify(self, outcome: PunchOutcome) -> None:
        if not self.enabled:
            logger.debug("No webhook configured; %s outcome not sent.", outcome.status)
            return
        try:
            self._queue.put_nowait(outcome)
        except Full:
            self._dropped_events += 1
            logger.warning(
                "Webhook queue is full; dropping %s outcome (dropped=%s).",
                outcome.status,
                self._dropped_events,
            )

    def close(self, timeout_seconds: float = 2.0) -> None:
        if not self.enabled:
            return
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout_seconds)
        while True:
            try:
                outcome = self._queue.get_nowait()
            except Empty:
                break
            self.deliver(outcome)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                outcome = self._queue.get(timeout=0.2)
            except Empty:
                continue
            self.deliver(outcome)

    def deliver(self, outcome: PunchOutcome) -> bool:
        body = {"timestamp": datetime.now(tz=self._tz).isoformat(), **outcome.to_payload()}
        req = urllib_request.Request(
            url=self.target,
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with self._opener.open(req, timeout=self.timeout_seconds) as response:
                status = getattr(response, "status", 200)
                if not 200 <= status < 300:
                    raise NotifyError(f"webhook answered HTTP {status}")
        except NotifyError as exc:
            logger.warning("Failed to send webhook: %s", str(exc))
            return False
        except OSError as exc:
            logger.warning("Failed to send webhook: %s", _url_error_message(exc))
            return False
        except Exception as exc:  # pragma: no cover
            logger.warning("Unexpected webhook failure: %s", str(exc))
            return False
        logger.debug("Webhook sent (%s).", outcome.status)
        return True


# --- scheduler -------------------------------------------------------------


class TriggerScheduler:
    """Decides when each nominal time fires and hands firings to workers.

    Two strategies share the same bookkeeping. ``evaluate`` is a poll cycle
    (run once a minute by ``run_forever``) that fires when now is within
    FIRING_WINDOW_SECONDS of a window's effective instant. ``arm`` keeps one
    cancellable timer per nominal time set to the next effective instant.

    Windows are planned once per (nominal time, day) and a firing claims
    that pair under a lock, so a nominal time fires at most once per day.
    """

    def __init__(
        self,
        config: Config,
        executor_factory: Callable[[], PunchExecutor],
        notifier: Any,
        planner: Optional[JitterPlanner] = None,
        dispatch: Optional[Callable[[Callable[[], Any]], None]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self.config = config
        self._executor_factory = executor_factory
        self._notifier = notifier
        self._planner = planner or JitterPlanner()
        self._dispatch = dispatch or self._spawn_worker
        self._clock = clock or (lambda: datetime.now(tz=config.timezone))
        self._timer_factory = timer_factory
        self._nominal_times: List[NominalTime] = list(dict.fromkeys(config.nominal_times))
        self._lock = threading.Lock()
        self._windows: Dict[Tuple[NominalTime, date], TriggerWindow] = {}
        self._evaluated: Set[Tuple[NominalTime, date]] = set()
        self._current_day: Optional[date] = None
        self._timers: Dict[NominalTime, Any] = {}
        self._closed = False

    def now(self) -> datetime:
        return self._clock().astimezone(self.config.timezone)

    def _spawn_worker(self, work: Callable[[], Any]) -> None:
        thread = threading.Thread(target=work, daemon=True, name="punchclock-firing")
        thread.start()

    def _rollover(self, today: date) -> None:
        # Yesterday is retained: a late nominal time can have its effective
        # instant pushed past midnight.
        keep_from = today - timedelta(days=1)
        with self._lock:
            if self._current_day == today:
                return
            if self._current_day is not None:
                logger.info("Day rollover %s -> %s; nominal times re-armed.", self._current_day, today)
            self._current_day = today
            self._windows = {key: w for key, w in self._windows.items() if key[1] >= keep_from}
            self._evaluated = {key for key in self._evaluated if key[1] >= keep_from}

    def window_for(self, nominal: NominalTime, day: date) -> TriggerWindow:
        key = (nominal, day)
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                window = self._planner.plan_for(
                    nominal, day, self.config.timezone, self.config.max_jitter_seconds
                )
                self._windows[key] = window
                logger.debug(
                    "Planned %s on %s: offset %ss, effective %s",
                    nominal.label,
                    day.isoformat(),
                    window.offset_seconds,
                    window.effective_at.strftime("%H:%M:%S"),
                )
            return window

    def is_evaluated(self, nominal: NominalTime, day: date) -> bool:
        with self._lock:
            return (nominal, day) in self._evaluated

    def _claim(self, window: TriggerWindow) -> bool:
        key = (window.nominal, window.day)
        with self._lock:
            if self._closed or key in self._evaluated:
                return False
            self._evaluated.add(key)
            return True

    def _day_allowed(self, day: date) -> bool:
        return self.config.weekdays.matches(sunday_weekday(day))

    def evaluate(self, now: Optional[datetime] = None) -> List[TriggerWindow]:
        """Run one poll cycle and return the windows dispatched by it.

        The weekday gate is checked against each window's own calendar day, so
        a window whose offset crosses midnight follows its nominal day's weekday.
        """
        local_now = (now or self.now()).astimezone(self.config.timezone)
        today = local_now.date()
        self._rollover(today)

        if not self._day_allowed(today):
            logger.debug(
                "Day %s not allowed by WEEKDAYS (%s).", sunday_weekday(today), self.config.weekday_pattern
            )

        dispatched: List[TriggerWindow] = []
        for day in (today - timedelta(days=1), today, today + timedelta(days=1)):
            if not self._day_allowed(day):
                continue
            for nominal in self._nominal_times:
                if self.is_evaluated(nominal, day):
                    continue
                window = self.window_for(nominal, day)
                if not window.contains(local_now):
                    continue
                if not self._claim(window):
                    continue
                self._dispatch(lambda w=window: self.fire(w))
                dispatched.append(window)
        return dispatched

    def fire(self, window: TriggerWindow) -> PunchOutcome:
        try:
            outcome = self._run_window(window)
        except Exception as exc:
            logger.exception("Unexpected error while punching for %s: %s", window.nominal.label, exc)
            outcome = PunchOutcome(
                status=STATUS_ERROR,
                scheduled_at=window.scheduled_at,
                offset_seconds=window.offset_seconds,
                executed_at=self.now(),
                attempts=0,
                error=str(exc),
            )
        self._notifier.notify(outcome)
        return outcome

    def _run_window(self, window: TriggerWindow) -> PunchOutcome:
        if is_blackout(window.day, self.config.vacation):
            logger.info("Vacation period; punch for %s skipped.", window.nominal.label)
            return PunchOutcome(
                status=STATUS_SKIPPED,
                scheduled_at=window.scheduled_at,
                offset_seconds=window.offset_seconds,
                reason=SKIP_REASON_VACATION,
            )

        logger.info(
            "Firing: base %s | offset %ss | effective %s",
            window.nominal.label,
            window.offset_seconds,
            window.effective_at.strftime("%H:%M:%S"),
        )
        executed_at = self.now()
        result = self._executor_factory().execute()
        if result.success:
            logger.info("Punch for %s registered after %s attempt(s).", window.nominal.label, result.attempts)
            return PunchOutcome(
                status=STATUS_SUCCESS,
                scheduled_at=window.scheduled_at,
                offset_seconds=window.offset_seconds,
                executed_at=executed_at,
                attempts=result.attempts,
                response=result.payload,
            )
        logger.error(
            "Punch for %s failed after %s attempt(s): %s",
            window.nominal.label,
            result.attempts,
            result.error,
        )
        return PunchOutcome(
            status=STATUS_ERROR,
            scheduled_at=window.scheduled_at,
            offset_seconds=window.offset_seconds,
            executed_at=executed_at,
            attempts=result.attempts,
            error=result.error,
        )

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info(
            "Poll scheduler active | times: %s | WEEKDAYS: %s | TZ: %s",
            ", ".join(n.label for n in self._nominal_times),
            self.config.weekday_pattern,
            self.config.timezone_name,
        )
        while not stop_event.is_set():
            try:
                self.evaluate()
            except Exception as exc:
                logger.exception("Evaluation cycle failed: %s", exc)
            logger.debug("Heartbeat: service active.")
            stop_event.wait(self.config.poll_seconds)

    # Timer strategy.

    def next_window(self, nominal: NominalTime, after: datetime) -> TriggerWindow:
        """First window of ``nominal`` whose effective instant is after ``after``
        and whose day has not been claimed yet."""
        tz = self.config.timezone
        local_after = after.astimezone(tz)
        start = local_after - timedelta(seconds=self.config.max_jitter_seconds + 1)
        iterator = croniter(f"{nominal.minute} {nominal.hour} * * *", start)
        for _ in range(1000):
            nxt = iterator.get_next(datetime)
            if nxt.tzinfo is None:
                nxt = nxt.replace(tzinfo=tz)
            day = nxt.astimezone(tz).date()
            if self.is_evaluated(nominal, day):
                continue
            window = self.window_for(nominal, day)
            if window.effective_at.astimezone(UTC) > local_after.astimezone(UTC):
                return window
        raise PunchClockError(f"No upcoming run found for {nominal.label}.")

    def arm(self, now: Optional[datetime] = None) -> Dict[NominalTime, TriggerWindow]:
        local_now = (now or self.now()).astimezone(self.config.timezone)
        self._rollover(local_now.date())
        armed: Dict[NominalTime, TriggerWindow] = {}
        for nominal in self._nominal_times:
            window = self._arm_nominal(nominal, local_now)
            if window is not None:
                armed[nominal] = window
        return armed

    def _arm_nominal(self, nominal: NominalTime, now: datetime) -> Optional[TriggerWindow]:
        window = self.next_window(nominal, now)
        delay = max(0.0, (window.effective_at.astimezone(UTC) - now.astimezone(UTC)).total_seconds())
        timer = self._timer_factory(delay, self._on_timer, args=(window,))
        timer.daemon = True
        with self._lock:
            if self._closed:
                return None
            previous = self._timers.get(nominal)
            self._timers[nominal] = timer
        if previous is not None:
            previous.cancel()
        timer.start()
        logger.info(
            "Armed %s for %s (offset %ss, effective %s).",
            nominal.label,
            window.day.isoformat(),
            window.offset_seconds,
            window.effective_at.isoformat(),
        )
        return window

    def _on_timer(self, window: TriggerWindow) -> None:
        try:
            self._rollover(self.now().date())
            if not self._day_allowed(window.day):
                logger.debug(
                    "Day %s not allowed by WEEKDAYS (%s).",
                    sunday_weekday(window.day),
                    self.config.weekday_pattern,
                )
            elif self._claim(window):
                self._dispatch(lambda: self.fire(window))
        except Exception as exc:
            logger.exception("Timer cycle for %s failed: %s", window.nominal.label, exc)
        finally:
            reference = max(self.now(), window.effective_at)
            try:
                self._arm_nominal(window.nominal, reference)
            except Exception as exc:
                logger.exception("Failed to re-arm %s: %s", window.nominal.label, exc)

    def run_timers(self, stop_event: threading.Event) -> None:
        logger.info(
            "Timer scheduler active | times: %s | WEEKDAYS: %s | TZ: %s",
            ", ".join(n.label for n in self._nominal_times),
            self.config.weekday_pattern,
            self.config.timezone_name,
        )
        self.arm()
        while not stop_event.wait(self.config.poll_seconds):
            logger.debug("Heartbeat: service active.")

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        logger.info("Scheduler stopped; %s pending timer(s) cancelled.", len(timers))


def next_nominal_runs(
    config: Config,
    count: int,
    now: Optional[datetime] = None,
) -> List[Tuple[datetime, bool]]:
    """Next ``count`` nominal (pre-jitter) runs, each flagged True when it
    falls inside the vacation window."""
    tz = config.timezone
    local_now = (now or datetime.now(tz=tz)).astimezone(tz)
    if config.weekdays.all_days:
        dow = "*"
    else:
        dow = ",".join(str(day) for day in sorted(config.weekdays.days))
    runs: List[datetime] = []
    for nominal in dict.fromkeys(config.nominal_times):
        iterator = croniter(f"{nominal.minute} {nominal.hour} * * {dow}", local_now)
        for _ in range(count):
            nxt = iterator.get_next(datetime)
            if nxt.tzinfo is None:
                nxt = nxt.replace(tzinfo=tz)
            runs.append(nxt.astimezone(tz))
    runs.sort()
    return [(run, is_blackout(run.date(), config.vacation)) for run in runs[:count]]


# --- configuration ---------------------------------------------------------


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_int(
    value: Any, field_path: str, default: int, minimum: int = 1, maximum: Optional[int] = None
) -> int:
    if value is None:
        return default
    if isinstance(value, str) and re.fullmatch(r"-?\d+", value.strip()):
        value = int(value.strip())
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    if maximum is not None and value > maximum:
        raise ConfigError(f"Error: {field_path} must be <= {maximum}.")
    return value


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_VALUES:
            return True
        if lowered in FALSE_VALUES:
            return False
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def parse_schedules(value: Any, field_path: str) -> Tuple[NominalTime, ...]:
    if isinstance(value, str):
        items: List[Any] = value.split(",")
    elif isinstance(value, list):
        items = value
    else:
        raise ConfigError(f'Error: {field_path} is required, e.g. "08:00,12:00,13:00,18:00".')

    out: List[NominalTime] = []
    for idx, item in enumerate(items):
        item_path = f"{field_path}[{idx}]"
        if not isinstance(item, str):
            # YAML reads unquoted 12:00 as a base-60 integer.
            raise ConfigError(f"Error: {item_path} must be a quoted HH:MM string.")
        match = SCHEDULE_RE.match(item.strip())
        if not match:
            raise ConfigError(f'Error: {item_path} must be HH:MM, got "{item.strip()}".')
        hour = int(match.group(1))
        minute = int(match.group(2))
        if hour > 23 or minute > 59:
            raise ConfigError(f'Error: {item_path} is not a valid time of day: "{item.strip()}".')
        out.append(NominalTime(hour=hour, minute=minute))
    if not out:
        raise ConfigError(f"Error: {field_path} must list at least one HH:MM time.")
    return tuple(out)


def _parse_date(value: Any, field_path: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError as exc:
            raise ConfigError(f'Error: {field_path} must be YYYY-MM-DD, got "{value}".') from exc
    raise ConfigError(f"Error: {field_path} must be a YYYY-MM-DD date.")


def parse_vacation(start_raw: Any, end_raw: Any) -> Optional[VacationRange]:
    if start_raw is None and end_raw is None:
        return None
    if start_raw is None or end_raw is None:
        raise ConfigError("Error: vacation start and end must be set together.")
    vacation = VacationRange(
        start=_parse_date(start_raw, "vacation.start"),
        end=_parse_date(end_raw, "vacation.end"),
    )
    if vacation.start > vacation.end:
        logger.warning(
            "Vacation start %s is after end %s; no day will be skipped.",
            vacation.start.isoformat(),
            vacation.end.isoformat(),
        )
    return vacation


def _ensure_http_url(value: Any, field_path: str) -> str:
    url = ensure_str(value, field_path)
    if not (url.startswith("http://") or url.startswith("https://")):
        raise ConfigError(f"Error: {field_path} must be an HTTP URL.")
    return url


def _load_config_payload(config_path: Optional[Path]) -> Dict[str, Any]:
    if config_path is None:
        config_path = Path(DEFAULT_CONFIG)
        if not config_path.exists():
            return {}
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    unknown = set(payload.keys()) - CONFIG_KEYS
    if unknown:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown)}.")
    return payload


def _flatten_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    raw = {key: value for key, value in payload.items() if key not in {"vacation", "platform"}}

    vacation = payload.get("vacation")
    if vacation is not None:
        if not isinstance(vacation, dict):
            raise ConfigError("Error: vacation must be a mapping with start and end.")
        unknown = set(vacation.keys()) - {"start", "end"}
        if unknown:
            raise ConfigError(f"Error: Unknown keys in vacation: {sorted(unknown)}.")
        raw["vacation_start"] = vacation.get("start")
        raw["vacation_end"] = vacation.get("end")

    platform = payload.get("platform") or {}
    if not isinstance(platform, dict):
        raise ConfigError("Error: platform must be a mapping.")
    unknown = set(platform.keys()) - {"base_url", "app_version"}
    if unknown:
        raise ConfigError(f"Error: Unknown keys in platform: {sorted(unknown)}.")
    raw["base_url"] = platform.get("base_url")
    raw["app_version"] = platform.get("app_version")
    return raw


def build_config(raw: Mapping[str, Any]) -> Config:
    user = ensure_str(raw.get("user"), "user (PUNCH_USER)")
    password = raw.get("password")
    if not isinstance(password, str) or not password:
        raise ConfigError("Error: password (PUNCH_PASSWORD) must be a non-empty string.")

    timezone_raw = raw.get("timezone")
    timezone_name = DEFAULT_TIMEZONE if timezone_raw is None else ensure_str(timezone_raw, "timezone")
    tz = parse_timezone(timezone_name, "timezone")

    weekdays_raw = raw.get("weekdays")
    weekday_pattern = "*" if weekdays_raw is None else str(weekdays_raw).strip() or "*"
    weekdays = parse_weekday_pattern(weekday_pattern)

    strategy = str(raw.get("strategy") or "poll").strip().lower()
    if strategy not in VALID_STRATEGIES:
        raise ConfigError(f'Error: strategy must be one of {sorted(VALID_STRATEGIES)}, got "{strategy}".')

    webhook_raw = raw.get("webhook_url")
    notify_target = _ensure_http_url(webhook_raw, "webhook_url") if webhook_raw else None
    base_url = _ensure_http_url(raw.get("base_url") or DEFAULT_BASE_URL, "platform.base_url")
    app_version = ensure_str(raw.get("app_version") or DEFAULT_APP_VERSION, "platform.app_version")

    return Config(
        nominal_times=parse_schedules(raw.get("schedules"), "schedules"),
        weekday_pattern=weekday_pattern,
        weekdays=weekdays,
        timezone=tz,
        timezone_name=timezone_name,
        platform=PlatformSettings(
            user=user,
            password=password,
            base_url=base_url,
            timeout_seconds=ensure_int(
                raw.get("request_timeout"), "request_timeout", DEFAULT_REQUEST_TIMEOUT_SECONDS, 1
            ),
            app_version=app_version,
        ),
        max_jitter_seconds=ensure_int(raw.get("random_offset"), "random_offset", DEFAULT_MAX_JITTER_SECONDS, 0),
        vacation=parse_vacation(raw.get("vacation_start"), raw.get("vacation_end")),
        max_retries=ensure_int(raw.get("max_retries"), "max_retries", DEFAULT_MAX_RETRIES, 1),
        notify_target=notify_target,
        strategy=strategy,
        poll_seconds=ensure_int(
            raw.get("poll_seconds"), "poll_seconds", DEFAULT_POLL_SECONDS, 1, MAX_POLL_SECONDS
        ),
        notify_timeout_seconds=ensure_int(
            raw.get("notify_timeout"), "notify_timeout", DEFAULT_NOTIFY_TIMEOUT_SECONDS, 1
        ),
        debug=ensure_bool(raw.get("debug"), "debug", False),
    )


def load_config(config_path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> Config:
    """Build the Config from an optional YAML file, then environment overrides."""
    env = os.environ if environ is None else environ
    raw = _flatten_payload(_load_config_payload(config_path))
    for env_key, key in ENV_OVERRIDES.items():
        value = env.get(env_key)
        if value is not None and value.strip():
            raw[key] = value
    return build_config(raw)


# --- commands --------------------------------------------------------------


def log_banner(config: Config) -> None:
    logger.info(
        "Schedule active | times: %s | WEEKDAYS: %s | TZ: %s | jitter: +/-%ss | retries: %s",
        ", ".join(n.label for n in config.nominal_times),
        config.weekday_pattern,
        config.timezone_name,
        config.max_jitter_seconds,
        config.max_retries,
    )
    if config.vacation is not None:
        logger.info(
            "Vacation: %s -> %s",
            config.vacation.start.strftime("%d/%m/%Y"),
            config.vacation.end.strftime("%d/%m/%Y"),
        )


def command_validate(config_path: Optional[Path]) -> int:
    config = load_config(config_path)
    print("Config valid.")
    print(f"Times: {', '.join(n.label for n in config.nominal_times)}")
    print(f"Weekdays: {config.weekday_pattern}")
    print(f"Timezone: {config.timezone_name}")
    print(f"Jitter: +/-{config.max_jitter_seconds}s")
    print(f"Max attempts: {config.max_retries}")
    if config.vacation is not None:
        print(f"Vacation: {config.vacation.start.isoformat()} -> {config.vacation.end.isoformat()}")
    print(f"Webhook: {'configured' if config.notify_target else 'none'}")
    print(f"Strategy: {config.strategy}")
    return 0


def command_preview(config_path: Optional[Path], count: int, now: Optional[datetime] = None) -> int:
    config = load_config(config_path)
    print(f"Next {count} nominal run(s) in {config.timezone_name} (jitter +/-{config.max_jitter_seconds}s):")
    runs = next_nominal_runs(config, count, now=now)
    if not runs:
        print("- none")
    for run_at, on_vacation in runs:
        suffix = " (vacation, skipped)" if on_vacation else ""
        print(f"- {run_at.isoformat()}{suffix}")
    return 0


def command_run(config_path: Optional[Path]) -> int:
    config = load_config(config_path)
    set_debug(config.debug)
    notifier = OutcomeNotifier(config.notify_target, config.notify_timeout_seconds, config.timezone)
    client = SeniorPlatformClient(config.platform)
    scheduler = TriggerScheduler(
        config,
        executor_factory=lambda: build_executor(client, config),
        notifier=notifier,
    )
    now = scheduler.now().replace(second=0, microsecond=0)
    window = TriggerWindow(
        nominal=NominalTime(hour=now.hour, minute=now.minute),
        day=now.date(),
        scheduled_at=now,
        offset_seconds=0,
    )
    try:
        outcome = scheduler.fire(window)
    finally:
        notifier.close()
    return 1 if outcome.status == STATUS_ERROR else 0


def command_daemon(config_path: Optional[Path], strategy: Optional[str], poll_seconds: Optional[int]) -> int:
    config = load_config(config_path)
    if strategy:
        config = dataclasses.replace(config, strategy=strategy)
    if poll_seconds:
        config = dataclasses.replace(config, poll_seconds=poll_seconds)
    set_debug(config.debug)

    notifier = OutcomeNotifier(config.notify_target, config.notify_timeout_seconds, config.timezone)
    client = SeniorPlatformClient(config.platform)
    scheduler = TriggerScheduler(
        config,
        executor_factory=lambda: build_executor(client, config),
        notifier=notifier,
    )
    log_banner(config)
    stop_event = threading.Event()
    try:
        if config.strategy == "timer":
            scheduler.run_timers(stop_event)
        else:
            scheduler.run_forever(stop_event)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130
    finally:
        stop_event.set()
        scheduler.shutdown()
        notifier.close()
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="punchclock jittered timeclock scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to YAML config (default: {DEFAULT_CONFIG} when present; env vars override)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", help="Validate configuration")

    preview_parser = subparsers.add_parser("preview", help="Show the next nominal punch times")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    subparsers.add_parser("run", help="Punch once right now")

    daemon_parser = subparsers.add_parser("daemon", help="Run the scheduler loop")
    daemon_parser.add_argument(
        "--strategy",
        choices=sorted(VALID_STRATEGIES),
        default=None,
        help="poll: check every minute; timer: one deferred timer per time of day",
    )
    daemon_parser.add_argument(
        "--poll-seconds",
        type=int,
        default=None,
        help=f"Polling interval in seconds (default: {DEFAULT_POLL_SECONDS})",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config).resolve() if args.config else None

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "preview":
            if args.count <= 0:
                raise PunchClockError("--count must be >= 1")
            return command_preview(config_path, count=args.count)
        if args.command == "run":
            return command_run(config_path)
        if args.command == "daemon":
            if args.poll_seconds is not None and args.poll_seconds <= 0:
                raise PunchClockError("--poll-seconds must be >= 1")
            if args.poll_seconds is not None and args.poll_seconds > MAX_POLL_SECONDS:
                raise PunchClockError(f"--poll-seconds must be <= {MAX_POLL_SECONDS}")
            return command_daemon(config_path, strategy=args.strategy, poll_seconds=args.poll_seconds)
        raise PunchClockError(f"Unsupported command: {args.command}")
    except PunchClockError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
