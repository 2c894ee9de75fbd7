"""Booking lifecycle: states, allowed transitions and their guards."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Callable

from staybook.config import get_section
from staybook.errors import CancellationWindowError, InvalidTransitionError, ValidationError

logger = logging.getLogger(__name__)


class BookingStatus(str, Enum):
    DRAFT = "draft"  # Client-side selection, never persisted
    SUMMARY = "summary"  # Validated and priced, held as a draft token
    PAYMENT_PENDING = "pending"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.DRAFT: {BookingStatus.SUMMARY, BookingStatus.CANCELLED},
    BookingStatus.SUMMARY: {
        BookingStatus.DRAFT,
        BookingStatus.PAYMENT_PENDING,
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.PAYMENT_PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {
        BookingStatus.CHECKED_IN,
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.CHECKED_IN: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.CANCELLED: set(),
    BookingStatus.COMPLETED: set(),
}

TERMINAL = frozenset({BookingStatus.CANCELLED, BookingStatus.COMPLETED})


class ActorKind(str, Enum):
    GUEST = "guest"
    HOST = "host"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    kind: ActorKind
    id: int | None = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(ActorKind.SYSTEM)

    @property
    def label(self) -> str:
        if self.id is None:
            return self.kind.value
        return f"{self.kind.value}:{self.id}"


@dataclass(frozen=True)
class PenaltyContext:
    """What the penalty hook sees for a late cancellation."""

    booking_id: int
    actor: Actor
    hours_before_checkin: float
    total_price: float


PenaltyHook = Callable[[PenaltyContext], None]


def checkin_instant(check_in: date, checkin_time: time) -> datetime:
    return datetime.combine(check_in, checkin_time, tzinfo=timezone.utc)


class BookingStateMachine:
    """Decides whether a booking may move from one status to another."""

    def __init__(
        self,
        free_cancellation_hours: float | None = None,
        penalty_hook: PenaltyHook | None = None,
    ) -> None:
        config = get_section("booking")
        hours = (
            free_cancellation_hours
            if free_cancellation_hours is not None
            else config["free_cancellation_hours"]
        )
        self.free_cancellation_window = timedelta(hours=hours)
        self._penalty_hook = penalty_hook

    def can_transition(self, current: BookingStatus, target: BookingStatus) -> bool:
        return target in TRANSITIONS.get(current, set())

    def assert_transition(self, current: BookingStatus, target: BookingStatus) -> None:
        if not self.can_transition(current, target):
            raise InvalidTransitionError(current.value, target.value)

    def guard_cancel(
        self,
        booking_id: int,
        check_in_at: datetime,
        actor: Actor,
        total_price: float,
        now: datetime | None = None,
        accept_penalty: bool = False,
    ) -> PenaltyContext | None:
        """Check the free-cancellation window. Returns the penalty owed, if any.

        System cancellations (declined or abandoned payments) skip the window.
        Guest and host cancellations inside it are refused unless the caller
        accepts the penalty. The hook is not called here; the caller passes
        the returned context to ``apply_penalty`` once the cancellation is
        committed.
        """
        if actor.kind is ActorKind.SYSTEM:
            return None

        now = now or datetime.now(timezone.utc)
        remaining = check_in_at - now
        if remaining > self.free_cancellation_window:
            return None

        hours = remaining.total_seconds() / 3600
        if not accept_penalty:
            raise CancellationWindowError(
                f"Free cancellation ends {self.free_cancellation_window.total_seconds() / 3600:g} hours "
                f"before check-in ({hours:.1f} hours left); a cancellation fee applies"
            )
        return PenaltyContext(
            booking_id=booking_id,
            actor=actor,
            hours_before_checkin=hours,
            total_price=total_price,
        )

    def apply_penalty(self, penalty: PenaltyContext) -> None:
        logger.info("Late cancellation of booking %s by %s, penalty applies", penalty.booking_id, penalty.actor.label)
        if self._penalty_hook is not None:
            self._penalty_hook(penalty)

    def guard_check_in(self, check_in: date, check_out: date, today: date) -> None:
        if not check_in <= today < check_out:
            raise ValidationError(f"Check-in is only possible between {check_in} and {check_out}")

    def guard_complete(self, check_out: date, today: date) -> None:
        if today < check_out:
            raise ValidationError(f"Stay cannot be completed before check-out on {check_out}")
