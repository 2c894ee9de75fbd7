"""Cancellable periodic calendar refresh."""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler

from staybook.config import get_section
from staybook.events import Event, EventBus, EventType, event_bus
from staybook.modules.availability.index import AvailabilityIndex, AvailabilitySnapshot

logger = logging.getLogger(__name__)

RefreshCallback = Callable[[AvailabilitySnapshot], None]


class CalendarRefreshTask:
    """Re-reads one property's calendar on a fixed interval until cancelled.

    ``refresh`` is idempotent: it always recomputes from storage and hands the
    callback the latest snapshot. Once ``cancel`` returns, the callback is
    never invoked again, even if a run was already in flight.
    """

    def __init__(
        self,
        scheduler: BaseScheduler,
        index: AvailabilityIndex,
        property_id: int,
        on_refresh: RefreshCallback | None = None,
        interval_seconds: float | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._index = index
        self.property_id = property_id
        self._on_refresh = on_refresh
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else get_section("availability")["refresh_seconds"]
        )
        self._bus = bus or event_bus
        self.task_id = f"calendar_refresh:{property_id}:{uuid.uuid4().hex[:8]}"
        self._cancelled = threading.Event()
        self._deliver_lock = threading.Lock()
        self.latest: AvailabilitySnapshot | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def start(self) -> "CalendarRefreshTask":
        """Take an initial snapshot and schedule the periodic job."""
        if self.cancelled:
            raise RuntimeError(f"Refresh task {self.task_id} was cancelled")
        self.refresh()
        self._scheduler.add_job(
            self.refresh,
            "interval",
            seconds=self.interval_seconds,
            id=self.task_id,
            name=f"Calendar refresh for property {self.property_id}",
            replace_existing=True,
        )
        logger.info("Started %s every %ss", self.task_id, self.interval_seconds)
        return self

    def refresh(self) -> AvailabilitySnapshot | None:
        """Recompute the calendar; returns None if the task is cancelled."""
        if self.cancelled:
            return None
        snap = self._index.snapshot(self.property_id, force=True)
        with self._deliver_lock:
            if self.cancelled:
                return None
            self.latest = snap
            if self._on_refresh is not None:
                self._on_refresh(snap)
        self._bus.publish(Event(
            event_type=EventType.AVAILABILITY_REFRESHED,
            data={"property_id": self.property_id, "blocked_dates": len(snap.blocked)},
        ))
        return snap

    def cancel(self) -> None:
        """Stop refreshing. Safe to call more than once."""
        with self._deliver_lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
        try:
            self._scheduler.remove_job(self.task_id)
        except JobLookupError:
            logger.debug("Job %s already gone", self.task_id)
        logger.info("Cancelled %s", self.task_id)
