"""Booking cost calculation and inventory reservation.

A booking is priced from the items' current daily rates, validated against
available stock and then written in a single transaction: the booking row,
one line item per requested item, and a conditional stock decrement per
item. If any decrement finds less stock than requested the whole
transaction is rolled back, so concurrent requests cannot oversell an item.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .models import Booking, BookingItem, BookingStatus, InventoryItem, PaymentStatus
from .schemas import Identity

logger = logging.getLogger(__name__)

ALLOWED_DEPOSIT_PERCENTAGES = (30, 50, 100)
ACTIVE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED})
CENTS = Decimal("0.01")
WHOLE = Decimal("1")


class BookingError(Exception):
    """Base class for booking validation failures."""


class ItemNotFoundError(BookingError):
    def __init__(self, item_id: int) -> None:
        super().__init__(f"Inventory item {item_id} not found")
        self.item_id = item_id


class StockExceededError(BookingError):
    def __init__(self, item_name: str, requested: int, available: int) -> None:
        super().__init__(f"Quantity exceeds available stock for {item_name}")
        self.item_name = item_name
        self.requested = requested
        self.available = available


class InvalidRentalPeriodError(BookingError):
    pass


@dataclass(frozen=True)
class BookingLine:
    item_id: int
    quantity: int


@dataclass(frozen=True)
class RentalPeriod:
    start: date
    end: date
    days: int


@dataclass
class QuoteLine:
    item: InventoryItem
    quantity: int
    daily_rate: Decimal
    total_amount: Decimal


@dataclass
class BookingQuote:
    period: RentalPeriod
    deposit_percentage: int
    lines: List[QuoteLine] = field(default_factory=list)
    total_cost: Decimal = Decimal("0")
    deposit_amount: Decimal = Decimal("0")
    balance_amount: Decimal = Decimal("0")


def compute_rental_days(start: date, end: date) -> int:
    """Inclusive number of hire days between two dates."""

    if end < start:
        raise InvalidRentalPeriodError("Return date cannot be before pickup date")
    return (end - start).days + 1


def resolve_rental_period(
    start: date,
    end: Optional[date] = None,
    rental_days: Optional[int] = None,
    late_return_allowance_days: int = 0,
) -> RentalPeriod:
    """Normalize the two booking-form variants to one billed period.

    With an explicit end date the billed days are the inclusive day count.
    With a day count the return date is derived from it, and any late return
    allowance pushes the return date out without adding billed days.
    """

    if late_return_allowance_days < 0:
        raise InvalidRentalPeriodError("Late return allowance cannot be negative")
    if end is not None:
        days = compute_rental_days(start, end)
        return RentalPeriod(start=start, end=end + timedelta(days=late_return_allowance_days), days=days)
    if rental_days is None or rental_days < 1:
        raise InvalidRentalPeriodError("Rental must last at least one day")
    end = start + timedelta(days=rental_days - 1 + late_return_allowance_days)
    return RentalPeriod(start=start, end=end, days=rental_days)


def split_deposit(total: Decimal, deposit_percentage: int) -> tuple[Decimal, Decimal]:
    if deposit_percentage not in ALLOWED_DEPOSIT_PERCENTAGES:
        raise BookingError(f"Deposit percentage must be one of {ALLOWED_DEPOSIT_PERCENTAGES}")
    deposit = (total * deposit_percentage / 100).quantize(WHOLE, rounding=ROUND_HALF_UP)
    return deposit.quantize(CENTS), (total - deposit).quantize(CENTS)


def _requested_quantities(lines: Iterable[BookingLine]) -> "OrderedDict[int, int]":
    totals: "OrderedDict[int, int]" = OrderedDict()
    for line in lines:
        if line.quantity < 1:
            raise BookingError("Quantity must be at least 1")
        totals[line.item_id] = totals.get(line.item_id, 0) + line.quantity
    return totals


def _load_items(db: Session, item_ids: Iterable[int], lock: bool = False) -> dict[int, InventoryItem]:
    ids = list(item_ids)
    query = select(InventoryItem).where(InventoryItem.id.in_(ids))
    if lock:
        # SQLite ignores FOR UPDATE; other databases honour it.
        query = query.with_for_update()
    items = {item.id: item for item in db.scalars(query)}
    for item_id in ids:
        if item_id not in items:
            raise ItemNotFoundError(item_id)
    return items


def quote_booking(
    db: Session,
    period: RentalPeriod,
    lines: Sequence[BookingLine],
    deposit_percentage: int,
    lock: bool = False,
) -> BookingQuote:
    """Price a booking and check stock without writing anything."""

    if not lines:
        raise BookingError("A booking needs at least one item")
    requested = _requested_quantities(lines)
    items = _load_items(db, requested.keys(), lock=lock)

    for item_id, quantity in requested.items():
        item = items[item_id]
        if quantity > item.available_quantity:
            raise StockExceededError(item.name, quantity, item.available_quantity)

    quote = BookingQuote(period=period, deposit_percentage=deposit_percentage)
    for line in lines:
        item = items[line.item_id]
        daily_rate = Decimal(item.price_per_day).quantize(CENTS)
        line_total = (daily_rate * line.quantity * period.days).quantize(CENTS)
        quote.lines.append(QuoteLine(item=item, quantity=line.quantity, daily_rate=daily_rate, total_amount=line_total))

    quote.total_cost = sum((line.total_amount for line in quote.lines), Decimal("0")).quantize(CENTS)
    quote.deposit_amount, quote.balance_amount = split_deposit(quote.total_cost, deposit_percentage)
    return quote


def _reserve_stock(db: Session, item: InventoryItem, quantity: int) -> None:
    result = db.execute(
        update(InventoryItem)
        .where(InventoryItem.id == item.id, InventoryItem.available_quantity >= quantity)
        .values(available_quantity=InventoryItem.available_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.refresh(item)
        raise StockExceededError(item.name, quantity, item.available_quantity)


def create_booking(
    db: Session,
    identity: Identity,
    period: RentalPeriod,
    lines: Sequence[BookingLine],
    deposit_percentage: int,
    customer_id: Optional[int] = None,
) -> Booking:
    """Create a booking, its line items and the stock reservation atomically.

    ``identity`` is the caller; ``customer_id`` lets back-office callers book
    for someone else, in which case the caller is recorded as the handling
    staff member. Raises a ``BookingError`` subclass and writes nothing when
    validation or the reservation fails.
    """

    owner_id = customer_id if customer_id is not None else identity.user_id
    try:
        quote = quote_booking(db, period, lines, deposit_percentage, lock=True)
        booking = Booking(
            customer_id=owner_id,
            staff_id=identity.user_id if owner_id != identity.user_id else None,
            hire_start_date=period.start,
            hire_end_date=period.end,
            total_cost=quote.total_cost,
            deposit_amount=quote.deposit_amount,
            balance_amount=quote.balance_amount,
            status=BookingStatus.PENDING,
            payment_status=PaymentStatus.UNPAID,
        )
        db.add(booking)
        db.flush()

        for line in quote.lines:
            db.add(
                BookingItem(
                    booking_id=booking.id,
                    item_id=line.item.id,
                    quantity=line.quantity,
                    daily_rate=line.daily_rate,
                    total_amount=line.total_amount,
                )
            )

        items = {line.item.id: line.item for line in quote.lines}
        for item_id, quantity in _requested_quantities(lines).items():
            _reserve_stock(db, items[item_id], quantity)

        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(booking)
    logger.info(
        "booking %s created for customer %s | days=%s | total=%s | deposit=%s",
        booking.id,
        owner_id,
        period.days,
        booking.total_cost,
        booking.deposit_amount,
    )
    return booking


def release_booking_stock(db: Session, booking: Booking) -> None:
    """Return a booking's reserved quantities to available stock.

    Stock never rises above the item's total quantity. The caller commits.
    """

    for line in booking.items:
        item = line.item
        item.available_quantity = min(item.total_quantity, item.available_quantity + line.quantity)
    logger.info("stock released for booking %s", booking.id)


def change_booking_status(db: Session, booking: Booking, new_status: BookingStatus) -> Booking:
    """Move a booking to ``new_status``, releasing stock when it stops being active."""

    new_status = BookingStatus(new_status)
    if booking.status not in ACTIVE_STATUSES and new_status in ACTIVE_STATUSES:
        raise BookingError(f"Cannot reopen a {booking.status.value} booking")
    try:
        if booking.status in ACTIVE_STATUSES and new_status not in ACTIVE_STATUSES:
            release_booking_stock(db, booking)
        booking.status = new_status
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(booking)
    return booking
