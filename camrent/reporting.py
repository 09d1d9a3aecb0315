"""Read-side aggregations for the reports service."""
from __future__ import annotations

import math
from collections import OrderedDict
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Sequence, Tuple

from dateutil.relativedelta import relativedelta

from .booking_workflow import compute_rental_days
from .models import Booking, BookingItem, InventoryItem, PaymentStatus

CENTS = Decimal("0.01")


def month_label(moment: date) -> str:
    return moment.strftime("%b %Y")


def paid_revenue(bookings: Iterable[Booking]) -> Decimal:
    return sum((Decimal(b.total_cost) for b in bookings if b.payment_status == PaymentStatus.PAID), Decimal("0"))


def monthly_revenue(bookings: Iterable[Booking], today: date, months: int = 6) -> List[Tuple[str, Decimal]]:
    """Revenue from paid bookings per calendar month, oldest first.

    Every one of the last ``months`` months is present, including months
    without revenue.
    """

    first_month = date(today.year, today.month, 1) - relativedelta(months=months - 1)
    buckets: "OrderedDict[str, Decimal]" = OrderedDict()
    for offset in range(months):
        buckets[month_label(first_month + relativedelta(months=offset))] = Decimal("0")

    for booking in bookings:
        if booking.payment_status != PaymentStatus.PAID:
            continue
        label = month_label(booking.created_at)
        if label in buckets:
            buckets[label] += Decimal(booking.total_cost)
    return list(buckets.items())


def top_items(lines: Iterable[Tuple[str, int]], limit: int = 5) -> List[Tuple[str, int]]:
    """Rank items by total quantity rented."""

    totals: dict[str, int] = {}
    for name, quantity in lines:
        totals[name] = totals.get(name, 0) + quantity
    return sorted(totals.items(), key=lambda entry: (-entry[1], entry[0]))[:limit]


def item_analytics(item: InventoryItem, lines: Sequence[BookingItem], now: datetime) -> dict:
    """Revenue and utilization figures for one item.

    ``lines`` are the item's booking lines, each with its booking loaded.
    Utilization is the share of days since the item was added that it spent
    on hire, capped at 100.
    """

    total_revenue = sum((Decimal(line.total_amount) for line in lines), Decimal("0"))
    durations = [compute_rental_days(line.booking.hire_start_date, line.booking.hire_end_date) for line in lines]
    total_days = sum(durations)
    days_owned = max(1, math.ceil((now - item.created_at).total_seconds() / 86400))
    last_booked = max((line.booking.hire_start_date for line in lines), default=None)

    return {
        "id": item.id,
        "name": item.name,
        "category": item.category,
        "price_per_day": float(item.price_per_day),
        "total_quantity": item.total_quantity,
        "created_at": item.created_at,
        "total_revenue": float(total_revenue),
        "total_bookings": len(lines),
        "total_days_booked": total_days,
        "average_booking_duration": round(total_days / len(lines), 2) if lines else 0.0,
        "utilization_rate": round(min(100.0, total_days / days_owned * 100), 2),
        "revenue_per_owned_day": float((total_revenue / days_owned).quantize(CENTS)),
        "last_booked": last_booked,
    }
