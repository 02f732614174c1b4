from typing import Optional, List, Any, Dict, Literal
from datetime import datetime
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

NIGERIAN_PHONE = r"^(\+234|0)[789][01]\d{8}$"

TransportType = Literal["bus", "flight", "train", "car"]
Availability = Literal["available", "limited", "unavailable"]
TripType = Literal["one-way", "round-trip"]
BookingStatus = Literal["pending", "confirmed", "cancelled", "completed"]
Role = Literal["user", "admin", "operator"]

# ---------- Users & Auth ----------

class UserCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = Field(None, pattern=NIGERIAN_PHONE)

class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)

class EmailRequest(BaseModel):
    email: EmailStr

class ResetPasswordRequest(BaseModel):
    password: str = Field(..., min_length=6)

class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)

class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    phone: Optional[str] = Field(None, pattern=NIGERIAN_PHONE)

class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    phone: Optional[str] = None
    role: str
    is_verified: bool
    created_at: datetime

# ---------- Locations ----------

class LocationBase(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    state: str = Field(..., min_length=2, max_length=50)
    country: str = Field("Nigeria", min_length=2, max_length=50)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    image: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = Field(None, max_length=500)

class LocationCreate(LocationBase):
    id: Optional[str] = Field(None, min_length=1, max_length=64)

class LocationUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    state: Optional[str] = Field(None, min_length=2, max_length=50)
    country: Optional[str] = Field(None, min_length=2, max_length=50)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    image: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = Field(None, max_length=500)
    is_active: Optional[bool] = None

class LocationResponse(LocationBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    full_name: str
    is_active: bool

class NearbyLocationResponse(LocationResponse):
    distance_km: float

# ---------- Routes ----------

class TransportModeSchema(BaseModel):
    type: TransportType
    operator: str = Field(..., min_length=1, max_length=100)
    price: float = Field(..., ge=0)
    duration: str = Field(..., min_length=1)
    availability: Availability = "available"
    departure_time: Optional[str] = None
    arrival_time: Optional[str] = None
    amenities: List[str] = Field(default_factory=list)

class RouteCreate(BaseModel):
    id: Optional[str] = Field(None, min_length=1, max_length=64)
    from_location_id: str
    to_location_id: str
    distance: float = Field(..., ge=0)
    estimated_duration: str = Field(..., min_length=1)
    base_price: float = Field(..., ge=0)
    transport_modes: List[TransportModeSchema] = Field(..., min_length=1)

class RouteUpdate(BaseModel):
    distance: Optional[float] = Field(None, ge=0)
    estimated_duration: Optional[str] = Field(None, min_length=1)
    base_price: Optional[float] = Field(None, ge=0)
    transport_modes: Optional[List[TransportModeSchema]] = Field(None, min_length=1)
    is_active: Optional[bool] = None
    popularity_score: Optional[float] = Field(None, ge=0)

class RouteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    from_location_id: str
    to_location_id: str
    distance: float
    estimated_duration: str
    base_price: float
    transport_modes: List[TransportModeSchema]
    is_active: bool
    popularity_score: float
    available_transport_types: List[str]
    cheapest_price: float
    fastest_duration: str

class PriceRequest(BaseModel):
    from_location_id: str
    to_location_id: str
    passengers: int = Field(1, ge=1, le=10)
    transport_type: Optional[TransportType] = None
    departure_date: Optional[datetime] = None

# ---------- Bookings ----------

class ContactInfo(BaseModel):
    email: EmailStr
    phone: str = Field(..., pattern=NIGERIAN_PHONE)
    emergency_contact: Optional[str] = Field(None, pattern=NIGERIAN_PHONE)

class ContactInfoUpdate(BaseModel):
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, pattern=NIGERIAN_PHONE)
    emergency_contact: Optional[str] = Field(None, pattern=NIGERIAN_PHONE)

class BookingCreate(BaseModel):
    from_location_id: str
    to_location_id: str
    departure_date: datetime
    return_date: Optional[datetime] = None
    passengers: int = Field(..., ge=1, le=10)
    trip_type: TripType
    transport_type: TransportType
    operator_name: Optional[str] = None
    contact_info: ContactInfo
    special_requests: Optional[str] = Field(None, max_length=500)

class BookingUpdate(BaseModel):
    special_requests: Optional[str] = Field(None, max_length=500)
    contact_info: Optional[ContactInfoUpdate] = None

class BookingStatusUpdate(BaseModel):
    status: BookingStatus

class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_reference: str
    formatted_reference: str
    hours_until_departure: float
    user_id: str
    route_id: str
    from_location_id: str
    to_location_id: str
    departure_date: datetime
    return_date: Optional[datetime] = None
    passengers: int
    trip_type: str
    selected_transport: Dict[str, Any]
    total_price: float
    status: str
    payment_status: str
    payment_method: str
    payment_reference: Optional[str] = None
    contact_info: Dict[str, Any]
    special_requests: Optional[str] = None
    refund_amount: Optional[float] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

# ---------- Payments ----------

class PaymentInitRequest(BaseModel):
    booking_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

class RefundRequest(BaseModel):
    amount: Optional[float] = Field(None, gt=0)

class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    user_id: str
    amount: float
    currency: str
    payment_method: str
    payment_reference: str
    external_reference: Optional[str] = None
    status: str
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="payment_metadata")
    created_at: datetime
    updated_at: datetime

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_metadata(cls, value):
        return value or {}
