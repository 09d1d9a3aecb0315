"""Pydantic schemas shared across the services."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from .models import BookingStatus, PaymentRecordStatus, PaymentStatus, PaymentType, RoleEnum

Money = Decimal
DepositPercentage = Literal[30, 50, 100]


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class Identity(BaseModel):
    """The caller of a request, passed explicitly into service code."""

    user_id: int
    email: str
    role: RoleEnum


class UserRegister(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)


class UserRead(BaseModel):
    id: int
    email: str
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class ProfileBase(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=255)
    phone_number: str = Field(..., min_length=7, max_length=32)
    id_number: str = Field(..., min_length=1, max_length=64)
    id_photo_url: Optional[str] = Field(None, max_length=512)


class ProfileCreate(ProfileBase):
    pass


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=1, max_length=255)
    phone_number: Optional[str] = Field(None, min_length=7, max_length=32)
    id_number: Optional[str] = Field(None, min_length=1, max_length=64)
    id_photo_url: Optional[str] = Field(None, max_length=512)


class ProfileRead(ProfileBase):
    id: int
    user_id: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class MeRead(BaseModel):
    user_id: int
    email: str
    role: RoleEnum
    profile: Optional[ProfileRead] = None


class CustomerProvisionRequest(BaseModel):
    """Body of the account-provisioning function (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    password: str = Field(..., min_length=8)
    full_name: str = Field(..., alias="fullName", min_length=1)
    phone_number: str = Field(..., alias="phoneNumber", min_length=7)
    id_number: str = Field(..., alias="idNumber", min_length=1)


class RoleUpdate(BaseModel):
    role: RoleEnum


class StaffMemberRead(BaseModel):
    user_id: int
    email: str
    role: RoleEnum
    full_name: Optional[str] = None
    phone_number: Optional[str] = None
    created_at: datetime


class CustomerSummaryRead(BaseModel):
    user_id: int
    email: str
    full_name: str
    phone_number: str
    id_number: str
    booking_count: int
    total_spent: float
    created_at: datetime


class InventoryItemBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    category: str = Field("Camera Accessories", max_length=100)
    price_per_day: Money = Field(..., gt=0, max_digits=10, decimal_places=2)
    total_quantity: int = Field(..., ge=0)
    available_quantity: int = Field(..., ge=0)
    image_url: Optional[str] = Field(None, max_length=512)


class InventoryItemCreate(InventoryItemBase):
    @model_validator(mode="after")
    def _check_stock(self) -> "InventoryItemCreate":
        if self.available_quantity > self.total_quantity:
            raise ValueError("available_quantity cannot exceed total_quantity")
        return self


class InventoryItemUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    category: Optional[str] = Field(None, max_length=100)
    price_per_day: Optional[Money] = Field(None, gt=0, max_digits=10, decimal_places=2)
    total_quantity: Optional[int] = Field(None, ge=0)
    available_quantity: Optional[int] = Field(None, ge=0)
    image_url: Optional[str] = Field(None, max_length=512)


class InventoryItemRead(BaseModel):
    id: int
    name: str
    description: Optional[str]
    category: str
    price_per_day: float
    total_quantity: int
    available_quantity: int
    image_url: Optional[str]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class BookingLineIn(BaseModel):
    item_id: int
    quantity: int = Field(1, ge=1)


class BookingRequest(BaseModel):
    """Rental request: either an explicit end date or a number of rental days."""

    hire_start_date: date
    hire_end_date: Optional[date] = None
    rental_days: Optional[int] = Field(None, ge=1)
    late_return_allowance_days: int = Field(0, ge=0)
    deposit_percentage: DepositPercentage = 50
    items: List[BookingLineIn] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _check_period(self) -> "BookingRequest":
        if (self.hire_end_date is None) == (self.rental_days is None):
            raise ValueError("Provide exactly one of hire_end_date or rental_days")
        if self.hire_end_date is not None and self.hire_end_date < self.hire_start_date:
            raise ValueError("hire_end_date must not be before hire_start_date")
        return self


class BookingCreate(BookingRequest):
    customer_id: Optional[int] = Field(None, description="Back office only: book on behalf of a customer")


class QuoteLineRead(BaseModel):
    item_id: int
    name: str
    quantity: int
    daily_rate: float
    total_amount: float


class QuoteRead(BaseModel):
    hire_start_date: date
    hire_end_date: date
    rental_days: int
    deposit_percentage: int
    lines: List[QuoteLineRead]
    total_cost: float
    deposit_amount: float
    balance_amount: float


class BookingItemRead(BaseModel):
    id: int
    item_id: int
    item_name: Optional[str] = None
    quantity: int
    daily_rate: float
    total_amount: float

    model_config = {"from_attributes": True}


class BookingRead(BaseModel):
    id: int
    customer_id: int
    staff_id: Optional[int]
    hire_start_date: date
    hire_end_date: date
    total_cost: float
    deposit_amount: float
    balance_amount: float
    status: BookingStatus
    payment_status: PaymentStatus
    mpesa_reference: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class BookingDetailRead(BookingRead):
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    items: List[BookingItemRead] = Field(default_factory=list)


class BookingStatusUpdate(BaseModel):
    status: BookingStatus


class BookingPaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus


class BookingAssign(BaseModel):
    staff_id: Optional[int] = None


class MyBookingsRead(BaseModel):
    bookings: List[BookingDetailRead]
    active_count: int
    total_spent: float
    outstanding_balance: float


class StkPushRequest(BaseModel):
    phone_number: str = Field(..., min_length=9)
    amount: Money = Field(..., gt=0)
    account_reference: str = Field(..., min_length=1, max_length=12)
    transaction_desc: str = Field(..., min_length=1, max_length=100)


class DepositStkRequest(BaseModel):
    phone_number: str = Field(..., min_length=9)
    amount: Optional[Money] = Field(None, gt=0)


class CashPaymentRequest(BaseModel):
    amount: Money = Field(..., gt=0)


class PaymentCreate(BaseModel):
    booking_id: int
    amount: Money = Field(..., gt=0, max_digits=10, decimal_places=2)
    payment_type: PaymentType = PaymentType.DEPOSIT
    mpesa_reference: str = Field(..., min_length=1, max_length=128)


class PaymentUpdate(BaseModel):
    amount: Optional[Money] = Field(None, gt=0, max_digits=10, decimal_places=2)
    payment_type: Optional[PaymentType] = None
    mpesa_reference: Optional[str] = Field(None, min_length=1, max_length=128)


class PaymentStatusUpdate(BaseModel):
    status: PaymentRecordStatus


class PaymentRead(BaseModel):
    id: int
    booking_id: int
    amount: float
    mpesa_reference: str
    payment_type: PaymentType
    status: PaymentRecordStatus
    created_at: datetime
    customer_name: Optional[str] = None

    model_config = {"from_attributes": True}


class PaymentListRead(BaseModel):
    payments: List[PaymentRead]
    total_amount: float
    pending_amount: float
    completed_amount: float


class MonthlyRevenueRead(BaseModel):
    month: str
    revenue: float


class TopItemRead(BaseModel):
    name: str
    quantity: int


class StaffContactRead(BaseModel):
    name: str
    role: RoleEnum
    phone: str


class OverviewRead(BaseModel):
    total_revenue: float
    total_bookings: int
    total_customers: int
    total_items: int
    average_booking_value: float
    revenue_per_customer: float
    monthly_revenue: List[MonthlyRevenueRead]
    top_items: List[TopItemRead]
    staff: List[StaffContactRead]


class ItemAnalyticsRead(BaseModel):
    id: int
    name: str
    category: str
    price_per_day: float
    total_quantity: int
    created_at: datetime
    total_revenue: float
    total_bookings: int
    total_days_booked: int
    average_booking_duration: float
    utilization_rate: float
    revenue_per_owned_day: float
    last_booked: Optional[date] = None
