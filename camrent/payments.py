"""Deposit payments: STK Push initiation, cash recording and gateway callbacks."""
from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Booking, BookingStatus, Payment, PaymentRecordStatus, PaymentStatus, PaymentType
from .mpesa import MpesaClient, MpesaError

logger = logging.getLogger(__name__)

_PAYMENT_STATUS_RANK = {PaymentStatus.UNPAID: 0, PaymentStatus.PARTIAL: 1, PaymentStatus.PAID: 2}


class PaymentError(Exception):
    """Raised for payment operation errors."""


def _raise_status(booking: Booking, status: PaymentStatus) -> None:
    """Move the booking's payment status forward, never backwards."""

    if _PAYMENT_STATUS_RANK[status] > _PAYMENT_STATUS_RANK[booking.payment_status]:
        booking.payment_status = status


def _ensure_payable(booking: Booking) -> None:
    if booking.status == BookingStatus.CANCELLED:
        raise PaymentError("Cannot take payment for a cancelled booking")
    if booking.payment_status == PaymentStatus.PAID:
        raise PaymentError("Booking is already fully paid")


def initiate_stk_deposit(
    db: Session,
    client: MpesaClient,
    booking: Booking,
    phone_number: str,
    amount: Optional[Decimal] = None,
) -> Payment:
    """Send an STK Push for the booking deposit and record a pending payment.

    The booking is marked ``partial`` as soon as the prompt is accepted by the
    gateway; settlement is confirmed later through :func:`reconcile_callback`.
    """

    _ensure_payable(booking)
    amount = Decimal(booking.deposit_amount if amount is None else amount)
    if amount <= 0:
        raise PaymentError("Please enter a valid amount")
    if amount > booking.deposit_amount:
        raise PaymentError(f"Amount cannot exceed deposit amount of KES {booking.deposit_amount:,.2f}")

    data = client.stk_push(
        phone_number=phone_number,
        amount=amount,
        account_reference=f"DEP-{booking.id}",
        transaction_desc=f"Deposit payment for booking {booking.id}",
    )
    checkout_id = data.get("CheckoutRequestID")
    if not checkout_id:
        raise MpesaError("M-Pesa response did not include a CheckoutRequestID")
    payment = Payment(
        booking_id=booking.id,
        amount=amount,
        payment_type=PaymentType.DEPOSIT,
        mpesa_reference=checkout_id,
        status=PaymentRecordStatus.PENDING,
    )
    db.add(payment)
    booking.mpesa_reference = checkout_id
    booking.payment_status = PaymentStatus.PARTIAL
    db.commit()
    db.refresh(payment)
    logger.info("deposit STK push recorded | booking=%s | payment=%s", booking.id, payment.id)
    return payment


def record_cash_deposit(db: Session, booking: Booking, amount: Decimal, now: Optional[float] = None) -> Payment:
    """Record a cash deposit that was collected at the counter."""

    _ensure_payable(booking)
    amount = Decimal(amount)
    if amount <= 0:
        raise PaymentError("Please enter a valid cash amount")
    if amount > booking.deposit_amount:
        raise PaymentError(f"Cash amount cannot exceed deposit amount of KES {booking.deposit_amount:,.2f}")

    millis = int((now if now is not None else time.time()) * 1000)
    payment = Payment(
        booking_id=booking.id,
        amount=amount,
        payment_type=PaymentType.DEPOSIT,
        mpesa_reference=f"CASH-{millis}",
        status=PaymentRecordStatus.COMPLETED,
    )
    db.add(payment)
    if amount >= booking.deposit_amount:
        _raise_status(booking, PaymentStatus.PARTIAL)
    db.commit()
    db.refresh(payment)
    logger.info("cash deposit recorded | booking=%s | amount=%s", booking.id, amount)
    return payment


def _callback_metadata(callback: Dict[str, Any]) -> Dict[str, Any]:
    items = callback.get("CallbackMetadata", {}).get("Item", [])
    return {entry.get("Name"): entry.get("Value") for entry in items if "Name" in entry}


def reconcile_callback(db: Session, payload: Dict[str, Any]) -> Optional[Payment]:
    """Apply an STK Push result to the matching pending payment.

    Returns ``None`` when no payment carries the checkout id. Payments that are
    no longer pending are returned unchanged, so repeated deliveries are
    harmless.
    """

    try:
        callback = payload["Body"]["stkCallback"]
        checkout_id = callback["CheckoutRequestID"]
        result_code = int(callback["ResultCode"])
    except (KeyError, TypeError, ValueError) as exc:
        raise PaymentError("Malformed STK callback payload") from exc

    payment = db.scalars(select(Payment).where(Payment.mpesa_reference == checkout_id)).first()
    if payment is None:
        logger.warning("STK callback for unknown checkout %s", checkout_id)
        return None
    if payment.status != PaymentRecordStatus.PENDING:
        return payment

    booking = payment.booking
    if result_code == 0:
        payment.status = PaymentRecordStatus.COMPLETED
        receipt = _callback_metadata(callback).get("MpesaReceiptNumber")
        if receipt:
            booking.mpesa_reference = str(receipt)
        if payment.payment_type == PaymentType.DEPOSIT:
            _raise_status(booking, PaymentStatus.PARTIAL)
        else:
            _raise_status(booking, PaymentStatus.PAID)
    else:
        payment.status = PaymentRecordStatus.FAILED
        settled = any(p.status == PaymentRecordStatus.COMPLETED for p in booking.payments if p.id != payment.id)
        if not settled and booking.payment_status == PaymentStatus.PARTIAL:
            booking.payment_status = PaymentStatus.UNPAID
    db.commit()
    db.refresh(payment)
    logger.info(
        "STK callback reconciled | checkout=%s | result=%s | payment=%s",
        checkout_id,
        result_code,
        payment.status.value,
    )
    return payment


def payment_totals(payments: Iterable[Payment]) -> Dict[str, Decimal]:
    totals = {"total": Decimal("0"), "pending": Decimal("0"), "completed": Decimal("0")}
    for payment in payments:
        amount = Decimal(payment.amount)
        totals["total"] += amount
        if payment.status == PaymentRecordStatus.PENDING:
            totals["pending"] += amount
        elif payment.status == PaymentRecordStatus.COMPLETED:
            totals["completed"] += amount
    return totals
