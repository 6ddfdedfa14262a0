"""
Appointment reminder scheduler - Periodic scan that sends reminder notifications.

Every REMINDER_CHECK_INTERVAL_SECONDS the scheduler:
1. Loads confirmed appointments from the start of today to +7 days
   (cached 2 minutes under the "appointments" tag)
2. Classifies each one by the hours left until it starts:
   - day-before bucket: 22 < hours <= 24
   - same-day bucket:    0 < hours <= 2
3. Drops appointments already notified for that reminder type, using a cached
   marker set (5 minutes, "notifications" tag) and then, when configured,
   a live database check so a stale cache can never cause a duplicate
4. Creates the remaining reminders concurrently (bounded by a semaphore),
   isolating each failure, and invalidates the "notifications" tag after
   every successful send

Architecture:
    - One asyncio timer task; each tick runs the scan in its own task
    - A tick arriving while the previous scan is still running is skipped
    - stop() cancels the timer only; an in-flight scan runs to completion
    - A scan cut short by the timeout keeps the counts of what it already sent
    - All collaborators (fetchers, notification creator, cache, clock) are
      injected so tests can use fakes and a fixed clock
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from database.models import AppointmentStatus, NotificationType
from booking.services.notification_service import (
    REMINDER_NOTIFICATION_TYPES,
    ReminderKind,
)
from shared.cache import (
    APPOINTMENTS_TAG,
    APPOINTMENTS_TTL_SECONDS,
    DEFAULT_TTL_SECONDS,
    NOTIFICATIONS_TAG,
    MemoryCache,
)

logger = logging.getLogger(__name__)

AppointmentFetcher = Callable[[datetime, datetime], Awaitable[Sequence[Any]]]
NotificationFetcher = Callable[[], Awaitable[Sequence[Any]]]
ReminderCreator = Callable[[int, Any, ReminderKind], Awaitable[Any]]
SentReminderChecker = Callable[[NotificationType, Iterable[int]], Awaitable[set[int]]]
RunCallback = Callable[["ReminderRunResult"], Awaitable[None]]

# Dedup marker snapshots live as long as the default cache entries
SENT_MARKERS_TTL_SECONDS = DEFAULT_TTL_SECONDS


@dataclass
class ReminderRunResult:
    """
    Outcome of a single reminder scan.

    Attributes:
        sent: Reminders created, per kind
        duplicates_skipped: Candidates dropped because already notified
        errors: Failed dispatches plus run-level failures
        duration_seconds: Wall time of the scan
        skipped_overlap: True if the scan did not run because another was in flight
    """
    sent: dict[ReminderKind, int] = field(
        default_factory=lambda: {kind: 0 for kind in ReminderKind}
    )
    duplicates_skipped: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    skipped_overlap: bool = False

    @property
    def total_sent(self) -> int:
        return sum(self.sent.values())


class AppointmentReminderScheduler:
    """
    Periodically sends day-before and same-day reminders for confirmed appointments.

    States: stopped (no timer task) and running (timer task active).

    Example:
        >>> scheduler = build_reminder_scheduler()
        >>> await scheduler.start()   # runs one scan now, then every interval
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        fetch_appointments: AppointmentFetcher,
        fetch_notifications: NotificationFetcher,
        create_reminder: ReminderCreator,
        cache: MemoryCache,
        *,
        check_sent_reminders: SentReminderChecker | None = None,
        clock: Callable[[], datetime] | None = None,
        timezone: str = "Europe/Rome",
        interval_seconds: float = 300,
        day_before_hours: float = 24,
        day_before_window_hours: float = 2,
        same_day_hours: float = 2,
        scan_days: int = 7,
        max_concurrent_dispatches: int = 5,
        run_timeout_seconds: float | None = 120.0,
        on_run_complete: RunCallback | None = None,
    ):
        """
        Initialize the scheduler.

        Args:
            fetch_appointments: (start, end) -> confirmed appointments in the window
            fetch_notifications: () -> every notification (dedup markers)
            create_reminder: (user_id, appointment, kind) -> persists one reminder
            cache: Shared tagged TTL cache
            check_sent_reminders: (type, appointment_ids) -> ids already notified,
                read from the live store. None trusts the cached markers alone.
            clock: Returns the current timezone-aware datetime
            timezone: IANA timezone used for "start of today"
            interval_seconds: Seconds between scans
            day_before_hours: Upper bound of the day-before window
            day_before_window_hours: Width of the day-before window
            same_day_hours: Upper bound of the same-day window
            scan_days: Days scanned from the start of today
            max_concurrent_dispatches: Concurrent reminder creations per bucket
            run_timeout_seconds: Abort a scan after this long (None/0 = no limit)
            on_run_complete: Awaited with the result after every scan
        """
        self._fetch_appointments = fetch_appointments
        self._fetch_notifications = fetch_notifications
        self._create_reminder = create_reminder
        self._check_sent_reminders = check_sent_reminders
        self._cache = cache
        self._tz = ZoneInfo(timezone)
        self._clock = clock or (lambda: datetime.now(self._tz))
        self.interval_seconds = interval_seconds
        self.day_before_hours = day_before_hours
        self.day_before_window_hours = day_before_window_hours
        self.same_day_hours = same_day_hours
        self.scan_days = scan_days
        self.max_concurrent_dispatches = max(1, max_concurrent_dispatches)
        self.run_timeout_seconds = run_timeout_seconds or None
        self._on_run_complete = on_run_complete

        self._timer_task: asyncio.Task | None = None
        self._run_task: asyncio.Task | None = None
        self._in_flight = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        """True while the recurring timer is active."""
        return self._timer_task is not None and not self._timer_task.done()

    async def start(self) -> None:
        """
        Run one scan immediately, then schedule a scan every interval.

        Calling start() on a running scheduler replaces its timer.
        """
        await self.stop()

        await self.run_once()

        self._timer_task = asyncio.create_task(
            self._timer_loop(), name="reminder-scheduler-timer"
        )
        logger.info(
            f"Reminder scheduler started | interval={self.interval_seconds}s | "
            f"day_before<={self.day_before_hours}h | same_day<={self.same_day_hours}h"
        )

    async def stop(self) -> None:
        """
        Cancel the timer and wait for it to exit.

        A scan already running is not interrupted; use wait_for_in_flight() for it.
        """
        timer, self._timer_task = self._timer_task, None
        if timer is None:
            return
        timer.cancel()
        await asyncio.gather(timer, return_exceptions=True)
        logger.info("Reminder scheduler stopped")

    async def wait_for_in_flight(self) -> None:
        """Wait for a scan started by the timer to finish, if any."""
        task = self._run_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self._tick()

    def _tick(self) -> None:
        if self._run_task is not None and not self._run_task.done():
            logger.warning("Previous reminder scan still running, skipping this tick")
            return
        self._run_task = asyncio.create_task(
            self.run_once(), name="reminder-scheduler-run"
        )

    # ------------------------------------------------------------------
    # Single scan
    # ------------------------------------------------------------------

    async def run_once(self) -> ReminderRunResult:
        """
        Run one scan unless another is in flight.

        Never raises: failures and timeouts are logged and counted in the result.
        """
        if self._in_flight:
            logger.warning("Reminder scan already in flight, not starting another")
            return ReminderRunResult(skipped_overlap=True)

        self._in_flight = True
        result = ReminderRunResult()
        started = time.monotonic()
        try:
            if self.run_timeout_seconds:
                await asyncio.wait_for(
                    self.check_and_send_reminders(result), self.run_timeout_seconds
                )
            else:
                await self.check_and_send_reminders(result)
        except asyncio.TimeoutError:
            logger.error(
                f"Reminder scan aborted after {self.run_timeout_seconds}s timeout"
            )
            result.errors += 1
            result.duration_seconds = time.monotonic() - started
            self._log_summary(result)
        finally:
            self._in_flight = False

        if self._on_run_complete is not None:
            try:
                await self._on_run_complete(result)
            except Exception as e:
                logger.error(f"Reminder run callback failed: {e}", exc_info=True)

        return result

    async def check_and_send_reminders(
        self, result: ReminderRunResult | None = None
    ) -> ReminderRunResult:
        """
        Scan confirmed appointments and send the reminders that are due.

        Errors are caught here and logged; the next scan proceeds normally.

        Args:
            result: Result filled in as reminders go out, so a caller that
                cancels the scan still sees what was sent
        """
        started = time.monotonic()
        if result is None:
            result = ReminderRunResult()

        try:
            now = self._now()
            window_start, window_end = self.scan_window(now)

            appointments = await self._cache.get_or_set(
                f"reminders:confirmed_appointments:{window_start.isoformat()}:{window_end.isoformat()}",
                lambda: self._fetch_appointments(window_start, window_end),
                ttl_seconds=APPOINTMENTS_TTL_SECONDS,
                tags=[APPOINTMENTS_TAG],
            )

            buckets = self.classify(appointments, now)

            for kind, candidates in buckets.items():
                if not candidates:
                    continue
                pending = await self._drop_already_sent(kind, candidates, result)
                if pending:
                    await self._dispatch(kind, pending, result)

        except Exception as e:
            result.errors += 1
            logger.error(f"Error while sending appointment reminders: {e}", exc_info=True)

        result.duration_seconds = time.monotonic() - started
        self._log_summary(result)
        return result

    @staticmethod
    def _log_summary(result: ReminderRunResult) -> None:
        if result.total_sent or result.errors:
            logger.info(
                f"Completed reminder check in {result.duration_seconds:.2f}s: "
                f"day_before={result.sent[ReminderKind.DAY_BEFORE]}, "
                f"same_day={result.sent[ReminderKind.SAME_DAY]}, "
                f"duplicates_skipped={result.duplicates_skipped}, errors={result.errors}"
            )
        else:
            logger.debug(f"Reminder check found nothing to send ({result.duration_seconds:.2f}s)")

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return self._as_aware(self._clock())

    def _as_aware(self, dt: datetime) -> datetime:
        if dt.tzinfo is None:
            return dt.replace(tzinfo=self._tz)
        return dt

    def scan_window(self, now: datetime) -> tuple[datetime, datetime]:
        """[start of today, start of today + scan_days] in the scheduler timezone."""
        start = now.astimezone(self._tz).replace(hour=0, minute=0, second=0, microsecond=0)
        return start, start + timedelta(days=self.scan_days)

    def classify(
        self, appointments: Iterable[Any], now: datetime
    ) -> dict[ReminderKind, list[Any]]:
        """
        Split appointments into reminder buckets.

        Only confirmed appointments strictly in the future are considered.
        An appointment lands in the day-before bucket when
        day_before_hours - day_before_window_hours < hours_left <= day_before_hours,
        and in the same-day bucket when 0 < hours_left <= same_day_hours.

        hours_left is elapsed time, so it stays correct across DST changes.
        """
        buckets: dict[ReminderKind, list[Any]] = {kind: [] for kind in ReminderKind}
        day_before_lower = self.day_before_hours - self.day_before_window_hours
        # Same-tzinfo subtraction is wall-clock; compare in UTC
        now_utc = self._as_aware(now).astimezone(UTC)

        for appointment in appointments:
            if appointment.status != AppointmentStatus.CONFIRMED:
                continue

            appointment_utc = self._as_aware(appointment.date).astimezone(UTC)
            if appointment_utc <= now_utc:
                continue

            hours_left = (appointment_utc - now_utc).total_seconds() / 3600

            if day_before_lower < hours_left <= self.day_before_hours:
                buckets[ReminderKind.DAY_BEFORE].append(appointment)

            if 0 < hours_left <= self.same_day_hours:
                buckets[ReminderKind.SAME_DAY].append(appointment)

        return buckets

    # ------------------------------------------------------------------
    # Deduplication
    # ------------------------------------------------------------------

    async def sent_markers(self, notification_type: NotificationType) -> set[int]:
        """Appointment ids already notified with `notification_type` (cached)."""
        return await self._cache.get_or_set(
            f"reminders:sent_markers:{notification_type.value}",
            lambda: self._build_sent_markers(notification_type),
            ttl_seconds=SENT_MARKERS_TTL_SECONDS,
            tags=[NOTIFICATIONS_TAG],
        )

    async def _build_sent_markers(self, notification_type: NotificationType) -> set[int]:
        notifications = await self._fetch_notifications()
        return {
            notification.related_id
            for notification in notifications
            if notification.type == notification_type and notification.related_id is not None
        }

    async def _drop_already_sent(
        self, kind: ReminderKind, candidates: list[Any], result: ReminderRunResult
    ) -> list[Any]:
        notification_type = REMINDER_NOTIFICATION_TYPES[kind]

        markers = await self.sent_markers(notification_type)
        pending = [a for a in candidates if a.id not in markers]

        if pending and self._check_sent_reminders is not None:
            already_sent = await self._check_sent_reminders(
                notification_type, [a.id for a in pending]
            )
            if already_sent:
                logger.debug(
                    f"Live check found {len(already_sent)} {notification_type.value} "
                    f"reminders missing from cached markers"
                )
                pending = [a for a in pending if a.id not in already_sent]

        result.duplicates_skipped += len(candidates) - len(pending)
        return pending

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(
        self, kind: ReminderKind, appointments: list[Any], result: ReminderRunResult
    ) -> None:
        semaphore = asyncio.Semaphore(self.max_concurrent_dispatches)

        async def send_one(appointment: Any) -> None:
            async with semaphore:
                await self._create_reminder(appointment.client_id, appointment, kind)
            result.sent[kind] += 1
            self._cache.invalidate_by_tag(NOTIFICATIONS_TAG)
            logger.info(
                f"Sent {kind.value} reminder for appointment {appointment.id}",
                extra={"appointment_id": appointment.id},
            )

        outcomes = await asyncio.gather(
            *(send_one(appointment) for appointment in appointments),
            return_exceptions=True,
        )

        current = asyncio.current_task()
        for appointment, outcome in zip(appointments, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                if current is not None and current.cancelling():
                    raise outcome
                result.errors += 1
                logger.error(
                    f"{kind.value} reminder for appointment {appointment.id} was cancelled",
                    extra={"appointment_id": appointment.id},
                )
            elif isinstance(outcome, Exception):
                result.errors += 1
                logger.error(
                    f"Failed to send {kind.value} reminder for appointment {appointment.id}: {outcome}",
                    exc_info=outcome,
                    extra={"appointment_id": appointment.id},
                )
            elif isinstance(outcome, BaseException):
                raise outcome


def build_reminder_scheduler(
    cache: MemoryCache | None = None,
    on_run_complete: RunCallback | None = None,
) -> AppointmentReminderScheduler:
    """
    Create a scheduler wired to the database, the notification service and settings.

    Args:
        cache: Cache to use (default: the process-wide cache)
        on_run_complete: Optional hook awaited after every scan
    """
    from booking.services.appointment_query_service import (
        fetch_all_notifications,
        fetch_confirmed_appointments_in_range,
        fetch_sent_reminder_ids,
    )
    from booking.services.notification_service import create_reminder_notification
    from shared.cache import get_cache
    from shared.config import get_settings

    settings = get_settings()

    return AppointmentReminderScheduler(
        fetch_appointments=fetch_confirmed_appointments_in_range,
        fetch_notifications=fetch_all_notifications,
        create_reminder=create_reminder_notification,
        cache=cache or get_cache(),
        check_sent_reminders=fetch_sent_reminder_ids,
        timezone=settings.TIMEZONE,
        interval_seconds=settings.REMINDER_CHECK_INTERVAL_SECONDS,
        day_before_hours=settings.REMINDER_DAY_BEFORE_HOURS,
        day_before_window_hours=settings.REMINDER_DAY_BEFORE_WINDOW_HOURS,
        same_day_hours=settings.REMINDER_SAME_DAY_HOURS,
        scan_days=settings.REMINDER_SCAN_DAYS,
        max_concurrent_dispatches=settings.REMINDER_MAX_CONCURRENT_DISPATCHES,
        run_timeout_seconds=settings.REMINDER_RUN_TIMEOUT_SECONDS,
        on_run_complete=on_run_complete,
    )
