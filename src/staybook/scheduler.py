"""APScheduler setup for periodic tasks."""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from staybook.config import get_section

logger = logging.getLogger(__name__)


def create_scheduler(service) -> BackgroundScheduler:
    """Create and configure the background scheduler for a ``BookingService``."""
    scheduler = BackgroundScheduler()
    sched_config = get_section("scheduler")
    store = service.store

    # Cancel card bookings whose payment never completed (every 5 min by default)
    scheduler.add_job(
        store.sweep_abandoned_payments,
        "interval",
        minutes=sched_config["payment_sweep_interval"],
        id="payment_sweep",
        name="Abandoned Payment Sweep",
    )

    # Move stays to checked-in / completed as dates pass (hourly by default)
    scheduler.add_job(
        store.advance_stays,
        "interval",
        minutes=sched_config["stay_advance_interval"],
        id="stay_advance",
        name="Stay Advance",
    )

    # Expired booking summaries
    scheduler.add_job(
        service.purge_expired_drafts,
        "interval",
        minutes=sched_config["payment_sweep_interval"],
        id="draft_purge",
        name="Draft Purge",
    )

    logger.info("Scheduler configured with %d jobs", len(scheduler.get_jobs()))
    return scheduler
