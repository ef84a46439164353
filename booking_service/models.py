import datetime
import uuid
from enum import Enum as PyEnum

from sqlalchemy import Column, Integer, String, Text, Numeric, ForeignKey, TIMESTAMP, JSON, Index
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base

# Tag categories (Tag.pid)
DIETARY_TAG_CATEGORY = 2
EVENT_TAG_CATEGORY = 5


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


# --- ENUM for User Roles ---
class UserRole(str, PyEnum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    ADMIN = "admin"


class BookingState(str, PyEnum):
    BOOKED = "booked"
    PENDING = "pending"
    APPROVED_VENDOR = "approvedVendor"
    COMPLETED = "completed"
    DECLINED_VENDOR = "declinedVendor"
    DECLINED_ADMIN = "declinedAdmin"


class PaymentState(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# --- User Model ---
class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, index=True, nullable=False)
    type = Column(SQLEnum(UserRole, values_callable=_enum_values), default=UserRole.CUSTOMER, nullable=False)
    first_name = Column(String(100), nullable=False, default="")
    last_name = Column(String(100), nullable=False, default="")
    phone = Column(String(50), nullable=False, default="")

    # Customer id at the payment provider
    customer_id = Column(String(255), nullable=True)

    created = Column(TIMESTAMP, default=utcnow)
    updated = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Vendor(Base):
    __tablename__ = "vendors"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)

    # Current default price; bookings keep their own copy
    menu_price = Column(Numeric(10, 2), nullable=False, default=0)

    user_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    profile = relationship("User")


class Tag(Base):
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    pid = Column(Integer, index=True, nullable=True)


class BookingTag(Base):
    """Booking <-> tag association; per-pair fields live in additional_data."""
    __tablename__ = "booking_tags"

    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(Integer, ForeignKey("tags.id"), primary_key=True)
    additional_data = Column(JSON, nullable=True)

    tag = relationship("Tag", lazy="joined")


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=new_id)
    state = Column(
        SQLEnum(BookingState, values_callable=_enum_values),
        default=BookingState.PENDING,
        nullable=False,
    )

    covers = Column(Integer, nullable=False)

    # Snapshots taken when the booking is created
    menu_price = Column(Numeric(10, 2), nullable=False)
    commission_fee = Column(Numeric(10, 2), nullable=False)
    service_fee = Column(Numeric(10, 2), nullable=False)

    timings = Column(JSON, nullable=True)
    location = Column(JSON, nullable=True)
    logistics = Column(JSON, nullable=True)
    dietary_notes = Column(Text, nullable=True)

    vendor_id = Column(String(36), ForeignKey("vendors.id"), index=True, nullable=False)
    customer_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)

    created = Column(TIMESTAMP, default=utcnow)
    updated = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    vendor = relationship("Vendor")
    customer = relationship("User")
    tag_links = relationship(
        "BookingTag", cascade="all, delete-orphan", order_by="BookingTag.tag_id"
    )
    payments = relationship(
        "Payment", back_populates="booking", cascade="all, delete-orphan", order_by="Payment.created"
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), index=True, nullable=False)
    total = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(8), nullable=False)
    state = Column(
        SQLEnum(PaymentState, values_callable=_enum_values),
        default=PaymentState.PENDING,
        nullable=False,
    )

    # {"name": "Stripe", "id": <external transaction id>}
    provider = Column(JSON, nullable=False)

    created = Column(TIMESTAMP, default=utcnow)
    updated = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    booking = relationship("Booking", back_populates="payments")


class Setting(Base):
    __tablename__ = "settings"

    key = Column(String(100), primary_key=True)
    value = Column(String(255), nullable=False)


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)

    # Status to track if the event has been applied
    status = Column(String(20), default="PENDING", nullable=False)

    # Mirror operation, e.g. "bookings.index"
    topic = Column(String(255), nullable=False)

    # The full JSON payload for the operation
    payload = Column(Text, nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow)

    # An index on 'status' will make the poller's query much faster
    __table_args__ = (
        Index('ix_outbox_events_status', 'status'),
    )
