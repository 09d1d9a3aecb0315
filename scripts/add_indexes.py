#!/usr/bin/env python3
"""Add the secondary indexes the rental queries rely on."""
from sqlalchemy import create_engine, text

from camrent.config import get_settings

INDEXES = {
    "idx_bookings_customer_status": "bookings (customer_id, status)",
    "idx_bookings_payment_status": "bookings (payment_status)",
    "idx_bookings_hire_dates": "bookings (hire_start_date, hire_end_date)",
    "idx_booking_items_item_booking": "booking_items (item_id, booking_id)",
    "idx_payments_booking_status": "payments (booking_id, status)",
    "idx_inventory_items_category_name": "inventory_items (category, name)",
    "idx_user_roles_role": "user_roles (role)",
}


def add_indexes(database_url: str | None = None) -> None:
    engine = create_engine(database_url or get_settings().database_url)
    with engine.begin() as conn:
        for name, target in INDEXES.items():
            conn.execute(text(f"CREATE INDEX IF NOT EXISTS {name} ON {target};"))
            print(f"  {name} ON {target}")
    print("Indexes added successfully.")


if __name__ == "__main__":
    add_indexes()
