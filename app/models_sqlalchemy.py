import math
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Boolean, ForeignKey, Text, JSON, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

BOOKING_STATUSES = ("pending", "confirmed", "cancelled", "completed", "refunded")
PAYMENT_STATUSES = ("pending", "success", "failed", "cancelled", "refunded")


def utcnow():
    """Naive UTC timestamp; every datetime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(value):
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def new_id():
    return uuid.uuid4().hex


class User(Base):
    __tablename__ = "Users"
    id = Column(String(64), primary_key=True, default=new_id)
    email = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=True)
    role = Column(String(20), nullable=False, default="user")
    is_verified = Column(Boolean, nullable=False, default=False)
    verification_token = Column(String(128), nullable=True, index=True)
    reset_password_token = Column(String(128), nullable=True, index=True)
    reset_password_expire = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    bookings = relationship("Booking", back_populates="user")
    payments = relationship("Payment", back_populates="user")


class Location(Base):
    __tablename__ = "Locations"
    id = Column(String(64), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False)
    state = Column(String(50), nullable=False)
    country = Column(String(50), nullable=False, default="Nigeria")
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    image = Column(String(500), nullable=False)
    description = Column(String(500), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def full_name(self):
        return f"{self.name}, {self.state}"

    def distance_to(self, other):
        """Great-circle distance in kilometres."""
        return haversine_km(self.latitude, self.longitude, other.latitude, other.longitude)


class Route(Base):
    __tablename__ = "Routes"
    id = Column(String(64), primary_key=True, default=new_id)
    from_location_id = Column(String(64), ForeignKey("Locations.id"), nullable=False)
    to_location_id = Column(String(64), ForeignKey("Locations.id"), nullable=False)
    distance = Column(Float, nullable=False)
    estimated_duration = Column(String(50), nullable=False)
    base_price = Column(Float, nullable=False)
    transport_modes = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    popularity_score = Column(Float, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    from_location = relationship("Location", foreign_keys=[from_location_id])
    to_location = relationship("Location", foreign_keys=[to_location_id])

    __table_args__ = (
        UniqueConstraint("from_location_id", "to_location_id", name="uq_routes_from_to"),
    )

    @property
    def available_modes(self):
        return [m for m in (self.transport_modes or []) if m.get("availability") != "unavailable"]

    @property
    def available_transport_types(self):
        return [m["type"] for m in self.available_modes]

    @property
    def cheapest_price(self):
        modes = self.available_modes
        if not modes:
            return self.base_price
        return min(m["price"] for m in modes)

    @property
    def fastest_duration(self):
        modes = self.available_modes
        if not modes:
            return self.estimated_duration
        return min(modes, key=lambda m: duration_to_minutes(m["duration"]))["duration"]

    def get_transport_mode(self, transport_type, operator=None):
        for mode in self.available_modes:
            if mode["type"] != transport_type:
                continue
            if operator and mode.get("operator") != operator:
                continue
            return mode
        return None


class Booking(Base):
    __tablename__ = "Bookings"
    id = Column(String(64), primary_key=True, default=new_id)
    booking_reference = Column(String(12), nullable=False, unique=True, index=True)
    user_id = Column(String(64), ForeignKey("Users.id"), nullable=False)
    route_id = Column(String(64), ForeignKey("Routes.id"), nullable=False)
    from_location_id = Column(String(64), ForeignKey("Locations.id"), nullable=False)
    to_location_id = Column(String(64), ForeignKey("Locations.id"), nullable=False)
    departure_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime, nullable=True)
    passengers = Column(Integer, nullable=False)
    trip_type = Column(String(20), nullable=False)
    selected_transport = Column(JSON, nullable=False)
    total_price = Column(Float, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    payment_status = Column(String(20), nullable=False, default="pending")
    payment_method = Column(String(20), nullable=False, default="paystack")
    payment_reference = Column(String(64), nullable=True)
    contact_info = Column(JSON, nullable=False)
    special_requests = Column(Text, nullable=True)
    refund_amount = Column(Float, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="bookings")
    route = relationship("Route")
    from_location = relationship("Location", foreign_keys=[from_location_id])
    to_location = relationship("Location", foreign_keys=[to_location_id])
    payments = relationship("Payment", back_populates="booking", cascade="all, delete-orphan")

    @property
    def formatted_reference(self):
        return f"STAYA-{self.booking_reference}"

    @property
    def hours_until_departure(self):
        return (self.departure_date - utcnow()).total_seconds() / 3600


class Payment(Base):
    __tablename__ = "Payments"
    id = Column(String(64), primary_key=True, default=new_id)
    booking_id = Column(String(64), ForeignKey("Bookings.id"), nullable=False)
    user_id = Column(String(64), ForeignKey("Users.id"), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="NGN")
    payment_method = Column(String(20), nullable=False, default="paystack")
    payment_reference = Column(String(64), nullable=False, unique=True, index=True)
    external_reference = Column(String(128), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="pending")
    # "metadata" is reserved on declarative classes
    payment_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    booking = relationship("Booking", back_populates="payments")
    user = relationship("User", back_populates="payments")


class RateLimitHit(Base):
    __tablename__ = "RateLimitHits"
    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(128), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


def haversine_km(lat1, lng1, lat2, lng2):
    radius = 6371.0
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2)
    return radius * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def duration_to_minutes(duration):
    """'7h 30m' -> 450. Unparseable strings count as zero."""
    hours = minutes = 0
    for part in (duration or "").split():
        if part.endswith("h") and part[:-1].isdigit():
            hours = int(part[:-1])
        elif part.endswith("m") and part[:-1].isdigit():
            minutes = int(part[:-1])
    return hours * 60 + minutes


Index("ix_routes_from_to_active", Route.from_location_id, Route.to_location_id, Route.is_active)
Index("ix_routes_popularity", Route.popularity_score)
Index("ix_locations_state", Location.state)
Index("ix_bookings_user_status", Booking.user_id, Booking.status)
Index("ix_bookings_status_departure", Booking.status, Booking.departure_date)
Index("ix_payments_user_status", Payment.user_id, Payment.status)
Index("ix_payments_booking", Payment.booking_id)
Index("ix_rate_limit_key_created", RateLimitHit.key, RateLimitHit.created_at)
