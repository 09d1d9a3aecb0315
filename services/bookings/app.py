from contextlib import asynccontextmanager
from decimal import Decimal
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.orm import Session, joinedload, selectinload

from camrent.booking_workflow import (
    ACTIVE_STATUSES,
    BookingError,
    BookingLine,
    ItemNotFoundError,
    StockExceededError,
    change_booking_status,
    create_booking,
    quote_booking,
    resolve_rental_period,
)
from camrent.config import get_settings
from camrent.database import Base, engine, get_db
from camrent.dependencies import get_identity, require_back_office
from camrent.logging_middleware import add_audit_middleware
from camrent.models import Booking, BookingItem, BookingStatus, PaymentStatus, User
from camrent.rate_limit import READ_LIMIT, WRITE_LIMIT, apply_rate_limiter, limiter
from camrent.roles import is_back_office, resolve_role
from camrent.schemas import (
    BookingAssign,
    BookingCreate,
    BookingDetailRead,
    BookingItemRead,
    BookingPaymentStatusUpdate,
    BookingRequest,
    BookingStatusUpdate,
    Identity,
    MyBookingsRead,
    QuoteLineRead,
    QuoteRead,
)

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Bookings Service", version="0.1.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "bookings")
    Instrumentator(registry=CollectorRegistry()).instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


def _booking_error(exc: BookingError) -> HTTPException:
    if isinstance(exc, ItemNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, StockExceededError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _period_and_lines(booking_in: BookingRequest):
    period = resolve_rental_period(
        booking_in.hire_start_date,
        end=booking_in.hire_end_date,
        rental_days=booking_in.rental_days,
        late_return_allowance_days=booking_in.late_return_allowance_days,
    )
    lines = [BookingLine(item_id=line.item_id, quantity=line.quantity) for line in booking_in.items]
    return period, lines


def _booking_query(db: Session):
    return db.query(Booking).options(
        joinedload(Booking.customer).joinedload(User.profile),
        selectinload(Booking.items).joinedload(BookingItem.item),
    )


def _detail(booking: Booking) -> BookingDetailRead:
    detail = BookingDetailRead.model_validate(booking, from_attributes=True)
    profile = booking.customer.profile if booking.customer else None
    detail.customer_name = profile.full_name if profile else None
    detail.customer_phone = profile.phone_number if profile else None
    detail.items = [
        BookingItemRead(
            id=line.id,
            item_id=line.item_id,
            item_name=line.item.name if line.item else None,
            quantity=line.quantity,
            daily_rate=float(line.daily_rate),
            total_amount=float(line.total_amount),
        )
        for line in booking.items
    ]
    return detail


def _get_visible_booking(db: Session, booking_id: int, identity: Identity) -> Booking:
    booking = _booking_query(db).filter(Booking.id == booking_id).first()
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    if booking.customer_id != identity.user_id and not is_back_office(identity.role):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return booking


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "bookings"}


@app.post("/bookings/quote", response_model=QuoteRead)
@limiter.limit(READ_LIMIT)
def quote(
    request: Request,
    booking_in: BookingRequest,
    _: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> QuoteRead:
    try:
        period, lines = _period_and_lines(booking_in)
        result = quote_booking(db, period, lines, booking_in.deposit_percentage)
    except BookingError as exc:
        raise _booking_error(exc) from exc
    return QuoteRead(
        hire_start_date=period.start,
        hire_end_date=period.end,
        rental_days=period.days,
        deposit_percentage=result.deposit_percentage,
        lines=[
            QuoteLineRead(
                item_id=line.item.id,
                name=line.item.name,
                quantity=line.quantity,
                daily_rate=float(line.daily_rate),
                total_amount=float(line.total_amount),
            )
            for line in result.lines
        ],
        total_cost=float(result.total_cost),
        deposit_amount=float(result.deposit_amount),
        balance_amount=float(result.balance_amount),
    )


@app.post("/bookings", response_model=BookingDetailRead, status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT)
def create(
    request: Request,
    booking_in: BookingCreate,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> BookingDetailRead:
    customer_id = booking_in.customer_id
    if customer_id is not None and customer_id != identity.user_id:
        if not is_back_office(identity.role):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only staff can book for customers")
        if not db.get(User, customer_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
    else:
        customer_id = None

    try:
        period, lines = _period_and_lines(booking_in)
        booking = create_booking(db, identity, period, lines, booking_in.deposit_percentage, customer_id=customer_id)
    except BookingError as exc:
        raise _booking_error(exc) from exc
    return _detail(_booking_query(db).filter(Booking.id == booking.id).one())


@app.get("/bookings/me", response_model=MyBookingsRead)
@limiter.limit(READ_LIMIT)
def my_bookings(
    request: Request,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> MyBookingsRead:
    bookings = (
        _booking_query(db)
        .filter(Booking.customer_id == identity.user_id)
        .order_by(Booking.created_at.desc())
        .all()
    )
    counted = [b for b in bookings if b.status != BookingStatus.CANCELLED]
    outstanding = sum(
        (Decimal(b.balance_amount) for b in counted if b.payment_status != PaymentStatus.PAID),
        Decimal("0"),
    )
    return MyBookingsRead(
        bookings=[_detail(b) for b in bookings],
        active_count=sum(1 for b in bookings if b.status in ACTIVE_STATUSES),
        total_spent=float(sum((Decimal(b.total_cost) for b in counted), Decimal("0"))),
        outstanding_balance=float(outstanding),
    )


@app.get("/bookings", response_model=List[BookingDetailRead])
@limiter.limit(READ_LIMIT)
def list_bookings(
    request: Request,
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    payment_status: Optional[PaymentStatus] = None,
    _: Identity = Depends(require_back_office),
    db: Session = Depends(get_db),
) -> List[BookingDetailRead]:
    query = _booking_query(db)
    if status_filter is not None:
        query = query.filter(Booking.status == status_filter)
    if payment_status is not None:
        query = query.filter(Booking.payment_status == payment_status)
    return [_detail(b) for b in query.order_by(Booking.created_at.desc()).all()]


@app.get("/bookings/{booking_id}", response_model=BookingDetailRead)
@limiter.limit(READ_LIMIT)
def get_booking(
    request: Request,
    booking_id: int,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> BookingDetailRead:
    return _detail(_get_visible_booking(db, booking_id, identity))


@app.patch("/bookings/{booking_id}/status", response_model=BookingDetailRead)
@limiter.limit(WRITE_LIMIT)
def update_status(
    request: Request,
    booking_id: int,
    update: BookingStatusUpdate,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> BookingDetailRead:
    booking = _get_visible_booking(db, booking_id, identity)
    # Customers may only cancel their own pending bookings.
    if not is_back_office(identity.role):
        if update.status != BookingStatus.CANCELLED or booking.status != BookingStatus.PENDING:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Customers can only cancel pending bookings")
    try:
        change_booking_status(db, booking, update.status)
    except BookingError as exc:
        raise _booking_error(exc) from exc
    return _detail(booking)


@app.patch("/bookings/{booking_id}/payment-status", response_model=BookingDetailRead)
@limiter.limit(WRITE_LIMIT)
def update_payment_status(
    request: Request,
    booking_id: int,
    update: BookingPaymentStatusUpdate,
    identity: Identity = Depends(require_back_office),
    db: Session = Depends(get_db),
) -> BookingDetailRead:
    booking = _get_visible_booking(db, booking_id, identity)
    booking.payment_status = update.payment_status
    db.commit()
    db.refresh(booking)
    return _detail(booking)


@app.patch("/bookings/{booking_id}/assign", response_model=BookingDetailRead)
@limiter.limit(WRITE_LIMIT)
def assign_staff(
    request: Request,
    booking_id: int,
    assignment: BookingAssign,
    identity: Identity = Depends(require_back_office),
    db: Session = Depends(get_db),
) -> BookingDetailRead:
    booking = _get_visible_booking(db, booking_id, identity)
    if assignment.staff_id is not None:
        if not db.get(User, assignment.staff_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Staff member not found")
        if not is_back_office(resolve_role(db, assignment.staff_id)):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User is not a staff member")
    booking.staff_id = assignment.staff_id
    db.commit()
    db.refresh(booking)
    return _detail(booking)
