from contextlib import asynccontextmanager
from typing import Any, Dict, List

import httpx
from circuitbreaker import CircuitBreakerError
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.orm import Session, joinedload

from camrent.config import get_settings
from camrent.database import Base, engine, get_db
from camrent.dependencies import get_identity, require_back_office
from camrent.logging_middleware import add_audit_middleware
from camrent.models import Booking, Payment, PaymentRecordStatus, User
from camrent.mpesa import MpesaClient, MpesaError, get_mpesa_client
from camrent.payments import (
    PaymentError,
    initiate_stk_deposit,
    payment_totals,
    reconcile_callback,
    record_cash_deposit,
)
from camrent.rate_limit import GATEWAY_LIMIT, READ_LIMIT, WRITE_LIMIT, apply_rate_limiter, limiter
from camrent.roles import is_back_office
from camrent.schemas import (
    CashPaymentRequest,
    DepositStkRequest,
    Identity,
    PaymentCreate,
    PaymentListRead,
    PaymentRead,
    PaymentStatusUpdate,
    PaymentUpdate,
    StkPushRequest,
)

settings = get_settings()

GATEWAY_ERRORS = (MpesaError, httpx.HTTPError, CircuitBreakerError)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Payments Service", version="0.1.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "payments")
    Instrumentator(registry=CollectorRegistry()).instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


def _payment_query(db: Session):
    return db.query(Payment).options(joinedload(Payment.booking).joinedload(Booking.customer).joinedload(User.profile))


def _to_read(payment: Payment) -> PaymentRead:
    read = PaymentRead.model_validate(payment, from_attributes=True)
    booking = payment.booking
    profile = booking.customer.profile if booking and booking.customer else None
    read.customer_name = profile.full_name if profile else None
    return read


def _to_list(payments: List[Payment]) -> PaymentListRead:
    totals = payment_totals(payments)
    return PaymentListRead(
        payments=[_to_read(p) for p in payments],
        total_amount=float(totals["total"]),
        pending_amount=float(totals["pending"]),
        completed_amount=float(totals["completed"]),
    )


def _get_booking(db: Session, booking_id: int, identity: Identity) -> Booking:
    booking = db.get(Booking, booking_id)
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    if booking.customer_id != identity.user_id and not is_back_office(identity.role):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return booking


def _get_payment_or_404(db: Session, payment_id: int) -> Payment:
    payment = _payment_query(db).filter(Payment.id == payment_id).first()
    if not payment:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return payment


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "payments"}


@app.post("/functions/mpesa-stk-push")
@limiter.limit(GATEWAY_LIMIT)
def mpesa_stk_push(
    request: Request,
    push: StkPushRequest,
    _: Identity = Depends(get_identity),
    client: MpesaClient = Depends(get_mpesa_client),
) -> JSONResponse:
    """Forward an STK Push prompt to the gateway."""

    try:
        data = client.stk_push(
            phone_number=push.phone_number,
            amount=push.amount,
            account_reference=push.account_reference,
            transaction_desc=push.transaction_desc,
        )
    except GATEWAY_ERRORS as exc:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": str(exc), "message": "Failed to initiate STK Push"},
        )
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"success": True, "data": data, "message": "STK Push initiated successfully"},
    )


@app.post("/bookings/{booking_id}/payments/stk", response_model=PaymentRead, status_code=status.HTTP_201_CREATED)
@limiter.limit(GATEWAY_LIMIT)
def pay_deposit_by_stk(
    request: Request,
    booking_id: int,
    body: DepositStkRequest,
    identity: Identity = Depends(get_identity),
    client: MpesaClient = Depends(get_mpesa_client),
    db: Session = Depends(get_db),
) -> PaymentRead:
    booking = _get_booking(db, booking_id, identity)
    try:
        payment = initiate_stk_deposit(db, client, booking, body.phone_number, body.amount)
    except PaymentError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except GATEWAY_ERRORS as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Failed to initiate STK Push: {exc}") from exc
    return _to_read(_get_payment_or_404(db, payment.id))


@app.post("/bookings/{booking_id}/payments/cash", response_model=PaymentRead, status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT)
def pay_deposit_in_cash(
    request: Request,
    booking_id: int,
    body: CashPaymentRequest,
    identity: Identity = Depends(require_back_office),
    db: Session = Depends(get_db),
) -> PaymentRead:
    booking = _get_booking(db, booking_id, identity)
    try:
        payment = record_cash_deposit(db, booking, body.amount)
    except PaymentError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _to_read(_get_payment_or_404(db, payment.id))


@app.post("/payments/callback")
def mpesa_callback(
    payload: Dict[str, Any] = Body(...),
    token: str = Query(""),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Result notification posted by the gateway once the payer responds."""

    if token != settings.mpesa_callback_token:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid callback token")
    try:
        reconcile_callback(db, payload)
    except PaymentError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return {"ResultCode": 0, "ResultDesc": "Accepted"}


@app.get("/payments", response_model=PaymentListRead)
@limiter.limit(READ_LIMIT)
def list_payments(
    request: Request,
    status_filter: PaymentRecordStatus | None = Query(None, alias="status"),
    _: Identity = Depends(require_back_office),
    db: Session = Depends(get_db),
) -> PaymentListRead:
    query = _payment_query(db)
    if status_filter is not None:
        query = query.filter(Payment.status == status_filter)
    return _to_list(query.order_by(Payment.created_at.desc()).all())


@app.get("/payments/me", response_model=PaymentListRead)
@limiter.limit(READ_LIMIT)
def my_payments(
    request: Request,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> PaymentListRead:
    payments = (
        _payment_query(db)
        .join(Booking, Booking.id == Payment.booking_id)
        .filter(Booking.customer_id == identity.user_id)
        .order_by(Payment.created_at.desc())
        .all()
    )
    return _to_list(payments)


@app.post("/payments", response_model=PaymentRead, status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT)
def create_payment(
    request: Request,
    payment_in: PaymentCreate,
    _: Identity = Depends(require_back_office),
    db: Session = Depends(get_db),
) -> PaymentRead:
    if not db.get(Booking, payment_in.booking_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    payment = Payment(**payment_in.model_dump(), status=PaymentRecordStatus.PENDING)
    db.add(payment)
    db.commit()
    return _to_read(_get_payment_or_404(db, payment.id))


@app.put("/payments/{payment_id}", response_model=PaymentRead)
@limiter.limit(WRITE_LIMIT)
def update_payment(
    request: Request,
    payment_id: int,
    payment_update: PaymentUpdate,
    _: Identity = Depends(require_back_office),
    db: Session = Depends(get_db),
) -> PaymentRead:
    payment = _get_payment_or_404(db, payment_id)
    for field, value in payment_update.model_dump(exclude_unset=True).items():
        setattr(payment, field, value)
    db.commit()
    db.refresh(payment)
    return _to_read(payment)


@app.patch("/payments/{payment_id}/status", response_model=PaymentRead)
@limiter.limit(WRITE_LIMIT)
def update_payment_status(
    request: Request,
    payment_id: int,
    update: PaymentStatusUpdate,
    _: Identity = Depends(require_back_office),
    db: Session = Depends(get_db),
) -> PaymentRead:
    payment = _get_payment_or_404(db, payment_id)
    payment.status = update.status
    db.commit()
    db.refresh(payment)
    return _to_read(payment)


@app.delete("/payments/{payment_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(WRITE_LIMIT)
def delete_payment(
    request: Request,
    payment_id: int,
    _: Identity = Depends(require_back_office),
    db: Session = Depends(get_db),
) -> None:
    payment = _get_payment_or_404(db, payment_id)
    db.delete(payment)
    db.commit()
