"""FastAPI application exposing the booking engine."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, timedelta

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from staybook.database import init_db
from staybook.errors import (
    BookingError,
    ConflictError,
    NotFoundError,
    PaymentError,
    PersistenceError,
    PricingError,
    PromotionError,
    ValidationError,
)
from staybook.models.booking import Booking
from staybook.modules.availability import CalendarRefreshTask, HostCalendar, availability_index
from staybook.modules.booking.flow import BookingService, RequestContext
from staybook.modules.booking.state import ActorKind
from staybook.modules.payments import PayTabsGateway, parse_payment_result
from staybook.modules.promotions import PromoCodeProvider
from staybook.scheduler import create_scheduler
from staybook.terms import BookingRequest, PaymentMethod, RentalType

logger = logging.getLogger(__name__)

_service: BookingService | None = None
_watches: dict[str, CalendarRefreshTask] = {}


def get_service() -> BookingService:
    """Shared booking service wired to the configured payment gateway."""
    global _service
    if _service is None:
        _service = BookingService(gateway=PayTabsGateway())
    return _service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting Staybook...")
    init_db()

    scheduler = create_scheduler(get_service())
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info("Scheduler started.")

    yield

    for task in list(_watches.values()):
        task.cancel()
    _watches.clear()
    scheduler.shutdown()
    logger.info("Staybook shut down.")


app = FastAPI(title="Staybook", lifespan=lifespan)


# --- Error mapping ---

_STATUS_CODES: list[tuple[type[BookingError], int]] = [
    (NotFoundError, 404),
    (ConflictError, 409),
    (PaymentError, 402),
    (PersistenceError, 503),
    (ValidationError, 422),
    (PricingError, 422),
    (PromotionError, 422),
]


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    status = next((code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 400)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content={"error": exc.code, "message": exc.message})


# --- Request context ---


def request_context(
    x_actor_id: int = Header(...),
    x_actor_role: str = Header(default="guest"),
) -> RequestContext:
    """Caller identity, as established by the authentication layer in front of this app."""
    try:
        role = ActorKind(x_actor_role.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown role {x_actor_role!r}") from None
    if role is ActorKind.SYSTEM:
        raise HTTPException(status_code=403, detail="System role is not available over HTTP")
    return RequestContext(actor_id=x_actor_id, role=role)


def booking_to_dict(booking: Booking) -> dict:
    return {
        "id": booking.id,
        "reference": booking.reference,
        "property_id": booking.property_id,
        "guest_id": booking.guest_id,
        "host_id": booking.host_id,
        "check_in": booking.check_in.isoformat(),
        "check_out": booking.check_out.isoformat(),
        "rental_type": booking.rental_type,
        "duration_months": booking.duration_months,
        "guests": booking.guests,
        "status": booking.status,
        "payment_method": booking.payment_method,
        "total_price": booking.total_price,
        "contract_value": booking.contract_value,
        "discount": booking.discount,
        "currency": booking.currency,
        "cancellation_reason": booking.cancellation_reason,
        "cancelled_by": booking.cancelled_by,
        "penalty_applied": booking.penalty_applied,
    }


# --- Request bodies ---


class QuoteIn(BaseModel):
    property_id: int
    rental_type: RentalType = RentalType.DAILY
    guests: int
    check_in: date
    check_out: date | None = None
    duration_months: int | None = None
    promo_code: str | None = None
    payment_method: PaymentMethod = PaymentMethod.CARD
    abort_on_promo_error: bool = False


class SubmitIn(BaseModel):
    token: str


class CancelIn(BaseModel):
    reason: str | None = None
    accept_penalty: bool = False


class PromoGrantIn(BaseModel):
    code: str


class BlocksIn(BaseModel):
    dates: list[date] = Field(min_length=1)
    reason: str | None = None


# --- Availability ---


@app.get("/api/properties/{property_id}/availability")
async def property_availability(
    property_id: int,
    start: date | None = None,
    days: int = Query(default=60, ge=1, le=366),
):
    """Blocked dates in a window. Advisory; the commit re-checks."""
    start = start or date.today()
    end = start + timedelta(days=days)
    snap = availability_index.snapshot(property_id)
    blocked = sorted(d for d in snap.blocked if start <= d < end)
    return {
        "property_id": property_id,
        "start": start.isoformat(),
        "end": end.isoformat(),
        "blocked": [d.isoformat() for d in blocked],
        "computed_at": snap.computed_at.isoformat(),
    }


@app.post("/api/properties/{property_id}/blocks")
async def add_blocks(property_id: int, body: BlocksIn, ctx: RequestContext = Depends(request_context)):
    """Host blocks dates on their calendar."""
    if ctx.role is not ActorKind.HOST:
        raise HTTPException(status_code=403, detail="Only hosts can block dates")
    blocks = HostCalendar().block_dates(property_id, body.dates, host_id=ctx.actor_id, reason=body.reason)
    return {"blocked": [b.blocked_date.isoformat() for b in blocks]}


@app.post("/api/properties/{property_id}/blocks/remove")
async def remove_blocks(property_id: int, body: BlocksIn, ctx: RequestContext = Depends(request_context)):
    if ctx.role is not ActorKind.HOST:
        raise HTTPException(status_code=403, detail="Only hosts can unblock dates")
    removed = HostCalendar().unblock_dates(property_id, body.dates, host_id=ctx.actor_id)
    return {"removed": removed}


@app.post("/api/properties/{property_id}/watch")
async def watch_calendar(property_id: int, request: Request):
    """Start a periodic calendar refresh for a client viewing this property."""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler is not running")
    task = CalendarRefreshTask(scheduler, availability_index, property_id).start()
    _watches[task.task_id] = task
    return {"task_id": task.task_id, "interval_seconds": task.interval_seconds}


@app.get("/api/watches/{task_id}")
async def watch_status(task_id: str):
    task = _watches.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Unknown watch")
    latest = task.latest
    return {
        "task_id": task_id,
        "property_id": task.property_id,
        "blocked": sorted(d.isoformat() for d in latest.blocked) if latest else [],
        "computed_at": latest.computed_at.isoformat() if latest else None,
    }


@app.delete("/api/watches/{task_id}")
async def stop_watch(task_id: str):
    task = _watches.pop(task_id, None)
    if task is None:
        raise HTTPException(status_code=404, detail="Unknown watch")
    task.cancel()
    return {"task_id": task_id, "cancelled": True}


# --- Booking flow ---


@app.post("/api/bookings/quote")
async def quote_booking(
    body: QuoteIn,
    ctx: RequestContext = Depends(request_context),
    service: BookingService = Depends(get_service),
):
    """Validate and price a selection (Draft -> Summary)."""
    request = BookingRequest(
        property_id=body.property_id,
        guest_id=ctx.actor_id,
        rental_type=body.rental_type,
        guests=body.guests,
        check_in=body.check_in,
        check_out=body.check_out,
        duration_months=body.duration_months,
        promo_code=body.promo_code,
        payment_method=body.payment_method,
    )
    quote = service.prepare_summary(ctx, request, abort_on_promo_error=body.abort_on_promo_error)
    return quote.to_dict()


@app.post("/api/bookings")
async def submit_booking(
    body: SubmitIn,
    ctx: RequestContext = Depends(request_context),
    service: BookingService = Depends(get_service),
):
    result = service.submit(ctx, body.token)
    return {"booking": booking_to_dict(result.booking), "redirect_url": result.redirect_url}


@app.get("/api/bookings/{booking_id}")
async def get_booking(
    booking_id: int,
    ctx: RequestContext = Depends(request_context),
    service: BookingService = Depends(get_service),
):
    return booking_to_dict(service.get_booking(ctx, booking_id))


@app.post("/api/bookings/{booking_id}/cancel")
async def cancel_booking(
    booking_id: int,
    body: CancelIn,
    ctx: RequestContext = Depends(request_context),
    service: BookingService = Depends(get_service),
):
    booking = service.cancel(ctx, booking_id, reason=body.reason, accept_penalty=body.accept_penalty)
    return booking_to_dict(booking)


@app.post("/api/bookings/{booking_id}/payment/refresh")
async def refresh_payment(
    booking_id: int,
    ctx: RequestContext = Depends(request_context),
    service: BookingService = Depends(get_service),
):
    """Guest returned from the payment page; ask the gateway for the result."""
    return booking_to_dict(service.refresh_payment(ctx, booking_id))


@app.post("/api/payments/callback")
async def payment_callback(request: Request, service: BookingService = Depends(get_service)):
    """Server-to-server payment notification.

    The body only names the transaction; its outcome is re-read from the gateway.
    """
    payload = await request.json()
    hint = parse_payment_result(payload)
    logger.info("Payment notification for %s (reported %s)", hint.transaction_ref, hint.status.value)
    booking = service.verify_payment(hint.transaction_ref)
    return {"booking_id": booking.id, "status": booking.status}


# --- Promotions ---


@app.post("/api/promos")
async def grant_promo(body: PromoGrantIn, ctx: RequestContext = Depends(request_context)):
    grant = PromoCodeProvider().grant(body.code, ctx.actor_id)
    return {"promo_code_id": grant.promo_code_id, "granted_at": grant.granted_at.isoformat()}


@app.get("/api/promos")
async def list_promos(
    check_in: date | None = None,
    check_out: date | None = None,
    ctx: RequestContext = Depends(request_context),
):
    usable = PromoCodeProvider().available_for(ctx.actor_id, check_in, check_out)
    return [
        {
            "code": p.code,
            "value": p.value,
            "expires_on": p.expires_on.isoformat() if p.expires_on else None,
        }
        for p in usable
    ]


def main() -> None:
    """Entry point for running the app."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    init_db()
    logger.info("Database initialized.")

    uvicorn.run(
        "staybook.app:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )


if __name__ == "__main__":
    main()
