from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional
import datetime

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator

from .models import BookingState, PaymentState, UserRole

# Money travels as a JSON number
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class Actor(BaseModel):
    """The authenticated caller, taken from the bearer token."""
    id: str
    role: UserRole


class TagIn(BaseModel):
    # quantity, priceModifier and any other per-booking field are kept as extras
    model_config = ConfigDict(extra="allow")

    id: int
    name: Optional[str] = None
    pid: Optional[int] = None


class DietaryIn(BaseModel):
    tags: List[TagIn] = Field(default_factory=list)
    notes: Optional[str] = None


class BookingBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timings: Optional[Dict[str, Any]] = None
    location: Optional[Dict[str, Any]] = None
    logistics: Optional[Dict[str, Any]] = None
    dietary: Optional[DietaryIn] = None
    event_type: Optional[TagIn] = Field(default=None, alias="eventType")

    @field_validator("timings")
    @classmethod
    def event_date_must_parse(cls, timings):
        date = (timings or {}).get("date")
        if date is None:
            return timings
        if not isinstance(date, str):
            raise ValueError("timings.date must be a date string")
        try:
            date_parser.parse(date)
        except (ValueError, OverflowError):
            raise ValueError(f"timings.date is not a valid date: {date!r}")
        return timings


class BookingCreate(BookingBase):
    # customer_id comes from the JWT token; menuPrice and fees are server side
    vendor_id: str
    covers: int = Field(gt=0)


class BookingUpdate(BookingBase):
    covers: Optional[int] = Field(default=None, gt=0)
    state: Optional[BookingState] = None

    @field_validator("covers", "state")
    @classmethod
    def not_null(cls, value, info):
        # Omit a field to leave it unchanged; null is not a value for it
        if value is None:
            raise ValueError(f"{info.field_name} may not be null")
        return value


class VendorSummary(BaseModel):
    id: str
    name: str


class CustomerSummary(BaseModel):
    id: str
    email: str


class PaymentCreate(BaseModel):
    card_token: str


class CardDetails(BaseModel):
    number: str
    exp_month: int
    exp_year: int
    cvc: str


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    total: Money
    currency: str
    state: PaymentState
    provider: Dict[str, Any]
    created: Optional[datetime.datetime] = None
    updated: Optional[datetime.datetime] = None


class DietaryRead(BaseModel):
    tags: List[Dict[str, Any]] = Field(default_factory=list)
    notes: Optional[str] = None


class BookingRead(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    state: BookingState
    covers: int
    menu_price: Money = Field(alias="menuPrice")
    commission_fee: Money
    service_fee: Money
    timings: Optional[Dict[str, Any]] = None
    location: Optional[Dict[str, Any]] = None
    logistics: Optional[Dict[str, Any]] = None
    event_type: Dict[str, Any] = Field(default_factory=dict, alias="eventType")
    dietary: DietaryRead
    tags: List[Dict[str, Any]] = Field(default_factory=list)
    payment: List[str] = Field(default_factory=list)
    payments: List[PaymentRead] = Field(default_factory=list)
    total: Money
    vendor_id: str
    customer_id: str
    vendor: VendorSummary
    customer: CustomerSummary
    created: Optional[datetime.datetime] = None
    updated: Optional[datetime.datetime] = None


class SearchResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_records: int = Field(alias="totalRecords")
    results: List[BookingRead]
    paging: Dict[str, Any] = Field(default_factory=dict)


class DeliveryRead(BaseModel):
    template: str
    receiver: str
    sent: bool
    error: Optional[str] = None


class Message(BaseModel):
    message: str
    deliveries: List[DeliveryRead] = Field(default_factory=list)


class TransactionToken(BaseModel):
    id: str


# --- Users and vendors ---

class UserCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    type: UserRole = UserRole.CUSTOMER
    first_name: str = Field(default="", alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    phone: str = ""


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    email: str
    type: UserRole
    first_name: str = Field(alias="firstName")
    last_name: str = Field(alias="lastName")
    phone: str
    customer_id: Optional[str] = None
    created: Optional[datetime.datetime] = None


class UserUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = None
    type: Optional[UserRole] = None
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    phone: Optional[str] = None

    @field_validator("email", "type", "first_name", "last_name", "phone")
    @classmethod
    def not_null(cls, value, info):
        if value is None:
            raise ValueError(f"{info.field_name} may not be null")
        return value


class UserSearchResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_records: int = Field(alias="totalRecords")
    results: List[UserRead]
    paging: Dict[str, Any] = Field(default_factory=dict)


class VendorCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    menu_price: Decimal = Field(default=Decimal("0"), ge=0, alias="menuPrice")
    user_id: Optional[str] = None


class VendorRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    name: str
    menu_price: Money = Field(alias="menuPrice")
    user_id: str
