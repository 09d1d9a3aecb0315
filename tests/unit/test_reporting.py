"""Unit tests for report aggregations."""
from datetime import date, datetime
from decimal import Decimal
from types import SimpleNamespace

from camrent.models import PaymentStatus
from camrent.reporting import item_analytics, monthly_revenue, paid_revenue, top_items


def booking(total, paid=True, created=datetime(2024, 3, 15), start=date(2024, 3, 1), end=date(2024, 3, 3)):
    return SimpleNamespace(
        total_cost=Decimal(total),
        payment_status=PaymentStatus.PAID if paid else PaymentStatus.PARTIAL,
        created_at=created,
        hire_start_date=start,
        hire_end_date=end,
    )


def test_paid_revenue_ignores_unpaid():
    assert paid_revenue([booking("100"), booking("50", paid=False)]) == Decimal("100")


def test_monthly_revenue_covers_six_months():
    bookings = [
        booking("100", created=datetime(2024, 3, 2)),
        booking("40", created=datetime(2024, 3, 20)),
        booking("70", created=datetime(2023, 12, 31)),
        booking("999", created=datetime(2023, 6, 1)),
        booking("5", paid=False, created=datetime(2024, 3, 5)),
    ]

    months = monthly_revenue(bookings, today=date(2024, 3, 28))

    assert [label for label, _ in months] == ["Oct 2023", "Nov 2023", "Dec 2023", "Jan 2024", "Feb 2024", "Mar 2024"]
    assert dict(months)["Mar 2024"] == Decimal("140")
    assert dict(months)["Dec 2023"] == Decimal("70")
    assert dict(months)["Nov 2023"] == Decimal("0")


def test_top_items_ranks_by_quantity():
    lines = [("Camera", 1), ("Light", 2), ("Camera", 3), ("Mic", 1)]

    assert top_items(lines, limit=2) == [("Camera", 4), ("Light", 2)]


def test_item_analytics():
    item = SimpleNamespace(
        id=1,
        name="Camera",
        category="Cameras",
        price_per_day=Decimal("1000.00"),
        total_quantity=2,
        created_at=datetime(2024, 3, 1),
    )
    lines = [
        SimpleNamespace(total_amount=Decimal("3000.00"), booking=booking("3000")),
        SimpleNamespace(
            total_amount=Decimal("1000.00"),
            booking=booking("1000", start=date(2024, 3, 10), end=date(2024, 3, 10)),
        ),
    ]

    stats = item_analytics(item, lines, now=datetime(2024, 3, 21))

    assert stats["total_revenue"] == 4000.0
    assert stats["total_bookings"] == 2
    assert stats["total_days_booked"] == 4
    assert stats["average_booking_duration"] == 2.0
    assert stats["utilization_rate"] == 20.0
    assert stats["revenue_per_owned_day"] == 200.0
    assert stats["last_booked"] == date(2024, 3, 10)


def test_item_analytics_utilization_is_capped():
    item = SimpleNamespace(
        id=1, name="Camera", category="Cameras", price_per_day=Decimal("10"), total_quantity=1,
        created_at=datetime(2024, 3, 1),
    )
    lines = [SimpleNamespace(total_amount=Decimal("100"), booking=booking("100", start=date(2024, 1, 1), end=date(2024, 1, 10)))]

    stats = item_analytics(item, lines, now=datetime(2024, 3, 2))

    assert stats["utilization_rate"] == 100.0
