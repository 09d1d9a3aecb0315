from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from camrent import reporting
from camrent.config import get_settings
from camrent.database import Base, engine, get_db
from camrent.dependencies import require_admin, require_back_office
from camrent.logging_middleware import add_audit_middleware
from camrent.models import Booking, BookingItem, BookingStatus, InventoryItem, Profile, User, UserRole
from camrent.rate_limit import READ_LIMIT, apply_rate_limiter, limiter
from camrent.roles import BACK_OFFICE_ROLES, effective_role_rows
from camrent.schemas import (
    Identity,
    ItemAnalyticsRead,
    MonthlyRevenueRead,
    OverviewRead,
    StaffContactRead,
    TopItemRead,
)

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Reports Service", version="0.1.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "reports")
    Instrumentator(registry=CollectorRegistry()).instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "reports"}


@app.get("/reports/overview", response_model=OverviewRead)
@limiter.limit(READ_LIMIT)
def overview(
    request: Request,
    _: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
) -> OverviewRead:
    """Dashboard totals: paid revenue, counts, monthly revenue, top items and staff contacts."""

    bookings = db.scalars(select(Booking)).all()
    total_revenue = reporting.paid_revenue(bookings)
    total_customers = db.scalar(select(func.count(Profile.id))) or 0
    total_items = db.scalar(select(func.count(InventoryItem.id))) or 0

    item_lines = db.execute(
        select(InventoryItem.name, BookingItem.quantity)
        .select_from(BookingItem)
        .join(InventoryItem, InventoryItem.id == BookingItem.item_id)
    ).all()

    staff_rows = db.scalars(
        select(UserRole)
        .options(joinedload(UserRole.user).joinedload(User.profile))
        .where(UserRole.role.in_(sorted(BACK_OFFICE_ROLES)))
        .order_by(UserRole.created_at)
    ).all()

    return OverviewRead(
        total_revenue=float(total_revenue),
        total_bookings=len(bookings),
        total_customers=total_customers,
        total_items=total_items,
        average_booking_value=float(total_revenue / len(bookings)) if bookings else 0.0,
        revenue_per_customer=float(total_revenue / total_customers) if total_customers else 0.0,
        monthly_revenue=[
            MonthlyRevenueRead(month=month, revenue=float(revenue))
            for month, revenue in reporting.monthly_revenue(bookings, datetime.utcnow().date())
        ],
        top_items=[TopItemRead(name=name, quantity=quantity) for name, quantity in reporting.top_items(item_lines)],
        staff=[
            StaffContactRead(
                name=(row.user.profile and row.user.profile.full_name) or "No name",
                role=row.role,
                phone=(row.user.profile and row.user.profile.phone_number) or "No phone",
            )
            for row in effective_role_rows(staff_rows)
        ],
    )


@app.get("/reports/items", response_model=List[ItemAnalyticsRead])
@limiter.limit(READ_LIMIT)
def item_analysis(
    request: Request,
    _: Identity = Depends(require_back_office),
    db: Session = Depends(get_db),
) -> List[ItemAnalyticsRead]:
    """Per-item revenue and utilization, highest revenue first."""

    items = db.scalars(select(InventoryItem)).all()
    lines = db.scalars(
        select(BookingItem)
        .join(Booking, Booking.id == BookingItem.booking_id)
        .where(Booking.status != BookingStatus.CANCELLED)
        .options(joinedload(BookingItem.booking))
    ).all()
    by_item = defaultdict(list)
    for line in lines:
        by_item[line.item_id].append(line)

    now = datetime.utcnow()
    rows = [ItemAnalyticsRead(**reporting.item_analytics(item, by_item[item.id], now)) for item in items]
    return sorted(rows, key=lambda row: row.total_revenue, reverse=True)
