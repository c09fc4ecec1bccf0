from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import Config
from .models import GenerationAuditEntry
from .pipelines.autonews_pass import STATUS_SKIPPED, PassResult, run_autonews_pass
from .storage import insert_generation_log, sum_saved_since
from .utils import get_zone, local_day_start, log_event, to_utc_iso, utc_now

STATUS_ERROR = "error"


@dataclass
class SchedulerState:
    interval_seconds: int
    in_flight: bool = False
    last_run_at: str | None = None
    last_status: str | None = None
    last_reason: str | None = None
    next_run_at: str | None = None
    today_key: str | None = None
    today_count_saved: int = 0


@dataclass(frozen=True)
class Allowance:
    allowed: int
    used_hour: int
    used_day: int


@dataclass(frozen=True)
class RunOutcome:
    status: str
    reason: str | None
    audit: GenerationAuditEntry
    result: PassResult | None = None


def is_within_time_window(hour: int, start: int, end: int) -> bool:
    if start == end:
        return True
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


class GenerationScheduler:
    """Runs generation passes under a time window, quotas and an in-flight lock.

    Every call to ``run_once`` appends exactly one audit entry, which is also
    what later runs aggregate to work out the remaining hourly and daily
    allowance. The lock is process-local; several scheduler processes sharing
    one database need an external lock.

    A tick rejected as ``in_flight`` never touches the connection while the
    running pass holds it: its audit entry is queued and written by the
    running thread just before it releases the lock.
    """

    def __init__(
        self,
        conn: Any,
        config: Config,
        logger: logging.Logger,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.conn = conn
        self.config = config
        self.logger = logger
        self.clock = clock or utc_now
        self.rng = rng or random.Random()
        self.zone = get_zone(config.app.timezone)
        self.state = SchedulerState(interval_seconds=config.scheduler.interval_seconds)
        self._lock = threading.Lock()
        self._deferred_lock = threading.Lock()
        self._deferred: list[GenerationAuditEntry] = []

    def compute_allowed_count(self, now: datetime | None = None) -> Allowance:
        now = now or self.clock()
        settings = self.config.scheduler
        hour_ago = now - timedelta(hours=1)
        day_start = local_day_start(now, self.zone)
        used_hour = sum_saved_since(self.conn, settings.triggered_by, to_utc_iso(hour_ago))
        used_day = sum_saved_since(self.conn, settings.triggered_by, to_utc_iso(day_start))
        left_hour = max(0, settings.max_per_hour - used_hour)
        left_day = max(0, settings.max_per_day - used_day)
        allowed = max(0, min(settings.max_per_run, left_hour, left_day))
        return Allowance(allowed=allowed, used_hour=used_hour, used_day=used_day)

    def pick_categories(self) -> list[str]:
        forced = self.config.scheduler.categories
        if not forced:
            return []
        return [self.rng.choice(forced)]

    def _roll_day(self, now: datetime) -> None:
        key = now.astimezone(self.zone).date().isoformat()
        if self.state.today_key != key:
            self.state.today_key = key
            self.state.today_count_saved = 0

    def run_once(self, reason: str = "interval") -> RunOutcome:
        now = self.clock()
        started = time.monotonic()
        with self._deferred_lock:
            if not self._lock.acquire(blocking=False):
                log_event(self.logger, logging.INFO, "autonews_skipped", reason="in_flight")
                entry = self._audit_entry(now, started, STATUS_SKIPPED, "in_flight")
                self._deferred.append(entry)
                return RunOutcome(status=STATUS_SKIPPED, reason="in_flight", audit=entry)

        self.state.in_flight = True
        try:
            local_hour = now.astimezone(self.zone).hour
            settings = self.config.scheduler
            if not is_within_time_window(local_hour, settings.window_start_hour, settings.window_end_hour):
                log_event(
                    self.logger,
                    logging.INFO,
                    "autonews_skipped",
                    reason="outside_window",
                    hour=local_hour,
                    window_start=settings.window_start_hour,
                    window_end=settings.window_end_hour,
                )
                return self._finish(now, started, STATUS_SKIPPED, "outside_window")

            self._roll_day(now)
            allowance = self.compute_allowed_count(now)
            if allowance.allowed <= 0:
                log_event(
                    self.logger,
                    logging.INFO,
                    "autonews_skipped",
                    reason="no_allowance",
                    used_hour=allowance.used_hour,
                    used_day=allowance.used_day,
                )
                return self._finish(now, started, STATUS_SKIPPED, "no_allowance")

            categories = self.pick_categories()
            log_event(
                self.logger,
                logging.INFO,
                "autonews_run_started",
                trigger=reason,
                allowed=allowance.allowed,
                status=settings.status,
                categories=",".join(categories) or "(auto)",
            )
            try:
                result = run_autonews_pass(
                    self.conn,
                    self.config,
                    self.logger,
                    allowance.allowed,
                    categories=categories,
                    now=now,
                )
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.ERROR, "autonews_run_failed", error=str(exc))
                return self._finish(
                    now,
                    started,
                    STATUS_ERROR,
                    "exception",
                    requested=allowance.allowed,
                    categories=categories,
                    error_message=str(exc),
                )

            self.state.today_count_saved += result.saved
            log_event(
                self.logger,
                logging.INFO,
                "autonews_run_finished",
                status=result.status,
                reason=result.reason,
                requested=result.requested,
                generated=result.generated,
                saved=result.saved,
                skipped_duplicates=result.skipped_duplicates,
                skipped_topic=result.skipped_topic,
                seeds_count=result.seeds_count,
            )
            return self._finish(
                now,
                started,
                result.status,
                result.reason,
                requested=result.requested,
                categories=categories,
                result=result,
            )
        finally:
            with self._deferred_lock:
                deferred, self._deferred = self._deferred, []
                for entry in deferred:
                    self._write_audit(entry)
                self.state.in_flight = False
                self._lock.release()

    def _audit_entry(
        self,
        now: datetime,
        started: float,
        status: str,
        reason: str | None,
        requested: int = 0,
        categories: list[str] | None = None,
        error_message: str | None = None,
        result: PassResult | None = None,
    ) -> GenerationAuditEntry:
        return GenerationAuditEntry(
            run_at=to_utc_iso(now),
            model=(result.model if result else None) or self.config.llm.model,
            count_requested=requested,
            count_generated=result.generated if result else 0,
            count_saved=result.saved if result else 0,
            status=status,
            reason=reason,
            error_message=error_message,
            duration_ms=int((time.monotonic() - started) * 1000),
            request_status=self.config.scheduler.status,
            categories=categories or [],
            samples=result.samples if result else [],
            triggered_by=self.config.scheduler.triggered_by,
        )

    def _write_audit(self, entry: GenerationAuditEntry) -> None:
        try:
            insert_generation_log(self.conn, entry)
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.ERROR, "audit_write_failed", error=str(exc))

    def _finish(
        self,
        now: datetime,
        started: float,
        status: str,
        reason: str | None,
        requested: int = 0,
        categories: list[str] | None = None,
        error_message: str | None = None,
        result: PassResult | None = None,
    ) -> RunOutcome:
        entry = self._audit_entry(
            now,
            started,
            status,
            reason,
            requested=requested,
            categories=categories,
            error_message=error_message,
            result=result,
        )
        self._write_audit(entry)
        self.state.last_run_at = entry.run_at
        self.state.last_status = status
        self.state.last_reason = reason
        return RunOutcome(status=status, reason=reason, audit=entry, result=result)

    def run_loop(
        self, stop_event: threading.Event | None = None, max_runs: int | None = None
    ) -> int:
        stop_event = stop_event or threading.Event()
        log_event(
            self.logger,
            logging.INFO,
            "autonews_loop_started",
            interval_seconds=self.state.interval_seconds,
            window=f"{self.config.scheduler.window_start_hour}-{self.config.scheduler.window_end_hour}",
            status=self.config.scheduler.status,
            categories=",".join(self.config.scheduler.categories) or "(auto)",
        )
        runs = 0
        while not stop_event.is_set():
            self.run_once(reason="interval")
            runs += 1
            if max_runs is not None and runs >= max_runs:
                break
            self.state.next_run_at = to_utc_iso(
                self.clock() + timedelta(seconds=self.state.interval_seconds)
            )
            stop_event.wait(self.state.interval_seconds)
        self.state.next_run_at = None
        return runs

    def status_snapshot(self) -> dict[str, object]:
        settings = self.config.scheduler
        return {
            "interval_seconds": self.state.interval_seconds,
            "in_flight": self.state.in_flight,
            "window_start_hour": settings.window_start_hour,
            "window_end_hour": settings.window_end_hour,
            "timezone": self.config.app.timezone,
            "categories": list(settings.categories),
            "status": settings.status,
            "max_per_run": settings.max_per_run,
            "max_per_hour": settings.max_per_hour,
            "max_per_day": settings.max_per_day,
            "today_key": self.state.today_key,
            "today_count_saved": self.state.today_count_saved,
            "last_run_at": self.state.last_run_at,
            "last_status": self.state.last_status,
            "last_reason": self.state.last_reason,
            "next_run_at": self.state.next_run_at,
        }
