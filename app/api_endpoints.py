import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, APIRouter, Depends, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from sqlalchemy import or_, and_
from sqlalchemy.orm import Session

import auth_service
import booking_service
import models_sqlalchemy as models
import models_pydantic as schemas
import payment_service
import rate_limit
from config import get_settings, validate_environment
from database import engine, get_db, SessionLocal
from errors import (
    BusinessRuleViolation, NotFound, ValidationFailed, envelope, paginate, register_exception_handlers,
)
from paystack import get_paystack_client
from seed import initial_popularity, seed_database
from travel_service import TravelService

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_environment()
    if not settings.has_paystack_credentials:
        logger.warning("PAYSTACK_SECRET_KEY is not set; payments and webhooks will be rejected")
    models.Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        seed_database(db)
    logger.info("STAYA API ready (%s)", settings.environment)
    yield


app = FastAPI(title="STAYA Booking API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

router = APIRouter(prefix=settings.api_prefix)

# ---------- Utility Functions ----------
def booking_out(booking):
    return schemas.BookingResponse.model_validate(booking)

def payment_out(payment):
    return schemas.PaymentResponse.model_validate(payment)

def location_out(location):
    return schemas.LocationResponse.model_validate(location)

def route_out(route):
    return schemas.RouteResponse.model_validate(route)

def user_out(user):
    return schemas.UserResponse.model_validate(user)

def get_location_or_404(db, location_id, active_only=True):
    query = db.query(models.Location).filter(models.Location.id == location_id)
    if active_only:
        query = query.filter(models.Location.is_active.is_(True))
    location = query.first()
    if not location:
        raise NotFound("Location not found", error="LOCATION_NOT_FOUND")
    return location

def get_route_or_404(db, route_id):
    route = db.query(models.Route).filter(models.Route.id == route_id).first()
    if not route:
        raise NotFound("Route not found", error="ROUTE_NOT_FOUND")
    return route

# ---------- Health ----------
@app.get("/")
def read_root():
    return envelope("STAYA Booking API is running")

@router.get("/health")
def health():
    return envelope("OK", data={"environment": settings.environment, "time": models.utcnow()})

# ---------- Auth Endpoints ----------
@router.post("/auth/register", status_code=status.HTTP_201_CREATED)
def register(payload: schemas.UserCreate, db: Session = Depends(get_db)):
    user = auth_service.register(db, payload)
    return envelope(
        "Registration successful. Please check your email to verify your account.",
        data={"user": user_out(user)},
    )

@router.post("/auth/login")
def login(payload: schemas.LoginRequest, db: Session = Depends(get_db)):
    user = auth_service.login(db, payload.email, payload.password)
    return envelope("Login successful", data={"user": user_out(user), **auth_service.token_pair(user)})

@router.post("/auth/refresh-token")
def refresh_token(payload: schemas.RefreshTokenRequest, db: Session = Depends(get_db)):
    return envelope("Token refreshed successfully", data=auth_service.refresh_tokens(db, payload.refresh_token))

@router.get("/auth/verify-email/{token}")
def verify_email(token: str, db: Session = Depends(get_db)):
    auth_service.verify_email(db, token)
    return envelope("Email verified successfully. You can now log in.")

@router.post("/auth/resend-verification")
def resend_verification(payload: schemas.EmailRequest, db: Session = Depends(get_db)):
    auth_service.resend_verification(db, payload.email)
    return envelope("Verification email sent successfully")

@router.post("/auth/forgot-password")
def forgot_password(payload: schemas.EmailRequest, db: Session = Depends(get_db)):
    auth_service.forgot_password(db, payload.email)
    return envelope("Password reset email sent successfully")

@router.post("/auth/reset-password/{token}")
def reset_password(token: str, payload: schemas.ResetPasswordRequest, db: Session = Depends(get_db)):
    auth_service.reset_password(db, token, payload.password)
    return envelope("Password reset successfully")

@router.post("/auth/change-password")
def change_password(payload: schemas.ChangePasswordRequest, db: Session = Depends(get_db),
                    user: models.User = Depends(auth_service.get_current_user)):
    rate_limit.hit(db, f"sensitive:{user.id}")
    auth_service.change_password(db, user, payload.current_password, payload.new_password)
    return envelope("Password changed successfully")

@router.get("/auth/me")
def get_me(user: models.User = Depends(auth_service.get_current_user)):
    return envelope("User profile retrieved successfully", data={"user": user_out(user)})

@router.post("/auth/logout")
def logout(user: models.User = Depends(auth_service.get_current_user)):
    # tokens are stateless; the client discards them
    return envelope("Logged out successfully")

# ---------- User Endpoints ----------
@router.get("/users/profile")
def get_profile(user: models.User = Depends(auth_service.get_current_user)):
    return envelope("User profile retrieved successfully", data={"user": user_out(user)})

@router.put("/users/profile")
def update_profile(payload: schemas.UserUpdate, db: Session = Depends(get_db),
                   user: models.User = Depends(auth_service.get_current_user)):
    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(user, field, value)
    db.commit()
    db.refresh(user)
    return envelope("Profile updated successfully", data={"user": user_out(user)})

@router.get("/users")
def list_users(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
               db: Session = Depends(get_db), admin: models.User = Depends(auth_service.require_admin)):
    query = db.query(models.User)
    total = query.count()
    users = query.order_by(models.User.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return envelope(
        "Users retrieved successfully",
        data={"users": [user_out(u) for u in users]},
        pagination=paginate(page, limit, total),
    )

@router.get("/users/{user_id}")
def get_user(user_id: str, db: Session = Depends(get_db),
             admin: models.User = Depends(auth_service.require_admin)):
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise NotFound("User not found", error="USER_NOT_FOUND")
    return envelope("User retrieved successfully", data={"user": user_out(user)})

# ---------- Location Endpoints ----------
@router.get("/locations")
def list_locations(state: Optional[str] = None, search: Optional[str] = None,
                   limit: Optional[int] = Query(None, ge=1), db: Session = Depends(get_db)):
    query = db.query(models.Location).filter(models.Location.is_active.is_(True))
    if state:
        query = query.filter(models.Location.state.ilike(f"%{state}%"))
    if search:
        query = query.filter(or_(models.Location.name.ilike(f"%{search}%"), models.Location.state.ilike(f"%{search}%")))
    query = query.order_by(models.Location.name)
    if limit:
        query = query.limit(limit)
    return envelope("Locations retrieved successfully", data={"locations": [location_out(l) for l in query.all()]})

@router.get("/locations/state/{state}")
def locations_by_state(state: str, db: Session = Depends(get_db)):
    locations = (
        db.query(models.Location)
        .filter(models.Location.state.ilike(f"%{state}%"), models.Location.is_active.is_(True))
        .order_by(models.Location.name)
        .all()
    )
    return envelope("Locations retrieved successfully", data={"locations": [location_out(l) for l in locations]})

@router.get("/locations/nearby/{lat}/{lng}")
def nearby_locations(lat: float, lng: float, radius: float = Query(100, gt=0), db: Session = Depends(get_db)):
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise ValidationFailed("Coordinates out of range")
    # Bounding box first, then the exact great-circle distance
    lat_delta = radius / 111
    lng_delta = radius / max(0.01, 111 * abs(math.cos(math.radians(lat))))
    candidates = db.query(models.Location).filter(
        models.Location.is_active.is_(True),
        models.Location.latitude.between(lat - lat_delta, lat + lat_delta),
        models.Location.longitude.between(lng - lng_delta, lng + lng_delta),
    ).all()
    origin = models.Location(latitude=lat, longitude=lng)
    nearby = []
    for loc in candidates:
        distance = origin.distance_to(loc)
        if distance <= radius:
            item = location_out(loc).model_dump()
            item["distance_km"] = round(distance, 2)
            nearby.append(schemas.NearbyLocationResponse(**item))
    nearby.sort(key=lambda item: item.distance_km)
    return envelope("Nearby locations retrieved successfully", data={"locations": nearby})

@router.get("/locations/{location_id}")
def get_location(location_id: str, db: Session = Depends(get_db)):
    return envelope("Location retrieved successfully", data={"location": location_out(get_location_or_404(db, location_id))})

@router.post("/locations", status_code=status.HTTP_201_CREATED)
def create_location(payload: schemas.LocationCreate, db: Session = Depends(get_db),
                    admin: models.User = Depends(auth_service.require_admin)):
    data = payload.model_dump(exclude_none=True)
    if "id" in data and db.query(models.Location).filter(models.Location.id == data["id"]).first():
        raise BusinessRuleViolation("A location with this id already exists", error="LOCATION_EXISTS")
    location = models.Location(**data, is_active=True)
    db.add(location)
    db.commit()
    db.refresh(location)
    logger.info("Location %s created by %s", location.id, admin.id)
    return envelope("Location created successfully", data={"location": location_out(location)})

@router.put("/locations/{location_id}")
def update_location(location_id: str, payload: schemas.LocationUpdate, db: Session = Depends(get_db),
                    admin: models.User = Depends(auth_service.require_admin)):
    location = get_location_or_404(db, location_id, active_only=False)
    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(location, field, value)
    db.commit()
    db.refresh(location)
    return envelope("Location updated successfully", data={"location": location_out(location)})

@router.delete("/locations/{location_id}")
def delete_location(location_id: str, db: Session = Depends(get_db),
                    admin: models.User = Depends(auth_service.require_admin)):
    location = get_location_or_404(db, location_id, active_only=False)
    location.is_active = False
    db.commit()
    return envelope("Location deactivated successfully")

# ---------- Route Endpoints ----------
@router.get("/routes")
def list_routes(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100), db: Session = Depends(get_db)):
    query = db.query(models.Route).filter(models.Route.is_active.is_(True))
    total = query.count()
    routes = query.order_by(models.Route.popularity_score.desc()).offset((page - 1) * limit).limit(limit).all()
    return envelope(
        "Routes retrieved successfully",
        data={"routes": [route_out(r) for r in routes]},
        pagination=paginate(page, limit, total),
    )

@router.get("/routes/search")
def search_routes(from_location_id: str = Query(..., alias="from"), to_location_id: Optional[str] = Query(None, alias="to"),
                  db: Session = Depends(get_db)):
    query = db.query(models.Route).filter(models.Route.is_active.is_(True))
    if to_location_id:
        query = query.filter(or_(
            and_(models.Route.from_location_id == from_location_id, models.Route.to_location_id == to_location_id),
            and_(models.Route.from_location_id == to_location_id, models.Route.to_location_id == from_location_id),
        ))
    else:
        query = query.filter(or_(models.Route.from_location_id == from_location_id,
                                 models.Route.to_location_id == from_location_id))
    routes = query.order_by(models.Route.popularity_score.desc()).all()
    return envelope("Routes retrieved successfully", data={"routes": [route_out(r) for r in routes]})

@router.get("/routes/popular")
def popular_routes(limit: int = Query(10, ge=1, le=50), db: Session = Depends(get_db)):
    routes = (
        db.query(models.Route)
        .filter(models.Route.is_active.is_(True))
        .order_by(models.Route.popularity_score.desc())
        .limit(limit)
        .all()
    )
    return envelope("Popular routes retrieved successfully", data={"routes": [route_out(r) for r in routes]})

@router.get("/routes/from/{location_id}")
def routes_from_location(location_id: str, db: Session = Depends(get_db)):
    route_ids = [r.id for r in TravelService.from_session(db).get_routes_from(location_id) if r.is_active]
    routes = []
    if route_ids:
        routes = (
            db.query(models.Route)
            .filter(models.Route.id.in_(route_ids))
            .order_by(models.Route.popularity_score.desc())
            .all()
        )
    return envelope("Routes retrieved successfully", data={"routes": [route_out(r) for r in routes]})

@router.post("/routes/calculate-price")
def calculate_price(payload: schemas.PriceRequest, db: Session = Depends(get_db),
                    user: Optional[models.User] = Depends(auth_service.get_optional_user)):
    logger.debug("Price quote %s -> %s requested by %s", payload.from_location_id, payload.to_location_id,
                 user.id if user else "anonymous")
    service = TravelService.from_session(db)
    quote = service.quote(
        payload.from_location_id,
        payload.to_location_id,
        payload.passengers,
        payload.transport_type,
        models.as_utc_naive(payload.departure_date),
    )
    if not quote["available"]:
        raise BusinessRuleViolation("Route not found or not available", error="ROUTE_NOT_FOUND")
    return envelope("Price calculated successfully", data=quote)

@router.get("/routes/{route_id}")
def get_route(route_id: str, db: Session = Depends(get_db)):
    return envelope("Route retrieved successfully", data={"route": route_out(get_route_or_404(db, route_id))})

@router.post("/routes", status_code=status.HTTP_201_CREATED)
def create_route(payload: schemas.RouteCreate, db: Session = Depends(get_db),
                 admin: models.User = Depends(auth_service.require_admin)):
    if payload.from_location_id == payload.to_location_id:
        raise ValidationFailed("Origin and destination must differ")
    get_location_or_404(db, payload.from_location_id)
    get_location_or_404(db, payload.to_location_id)
    existing = db.query(models.Route).filter(or_(
        and_(models.Route.from_location_id == payload.from_location_id, models.Route.to_location_id == payload.to_location_id),
        and_(models.Route.from_location_id == payload.to_location_id, models.Route.to_location_id == payload.from_location_id),
    )).first()
    if existing or (payload.id and db.query(models.Route).filter(models.Route.id == payload.id).first()):
        raise BusinessRuleViolation("A route between these locations already exists", error="ROUTE_EXISTS")

    modes = [m.model_dump(exclude_none=True) for m in payload.transport_modes]
    route = models.Route(
        from_location_id=payload.from_location_id,
        to_location_id=payload.to_location_id,
        distance=payload.distance,
        estimated_duration=payload.estimated_duration,
        base_price=payload.base_price,
        transport_modes=modes,
        is_active=True,
        popularity_score=initial_popularity(modes, payload.base_price),
    )
    if payload.id:
        route.id = payload.id
    db.add(route)
    db.commit()
    db.refresh(route)
    logger.info("Route %s created by %s", route.id, admin.id)
    return envelope("Route created successfully", data={"route": route_out(route)})

@router.put("/routes/{route_id}")
def update_route(route_id: str, payload: schemas.RouteUpdate, db: Session = Depends(get_db),
                 admin: models.User = Depends(auth_service.require_admin)):
    route = get_route_or_404(db, route_id)
    for field, value in payload.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(route, field, value)
    db.commit()
    db.refresh(route)
    return envelope("Route updated successfully", data={"route": route_out(route)})

@router.delete("/routes/{route_id}")
def delete_route(route_id: str, db: Session = Depends(get_db),
                 admin: models.User = Depends(auth_service.require_admin)):
    route = get_route_or_404(db, route_id)
    route.is_active = False
    db.commit()
    return envelope("Route deactivated successfully")

# ---------- Booking Endpoints ----------
@router.post("/bookings", status_code=status.HTTP_201_CREATED)
def create_booking(payload: schemas.BookingCreate, db: Session = Depends(get_db),
                   user: models.User = Depends(auth_service.get_current_user)):
    booking = booking_service.create_booking(db, user, payload)
    return envelope("Booking created successfully", data={"booking": booking_out(booking)})

@router.get("/bookings/my-bookings")
def my_bookings(status: Optional[str] = None, db: Session = Depends(get_db),
                user: models.User = Depends(auth_service.get_current_user)):
    bookings = booking_service.get_user_bookings(db, user.id, status)
    return envelope("Bookings retrieved successfully", data={"bookings": [booking_out(b) for b in bookings]})

@router.get("/bookings/stats/overview")
def booking_stats(db: Session = Depends(get_db), admin: models.User = Depends(auth_service.require_admin)):
    return envelope("Booking statistics retrieved successfully", data=booking_service.get_booking_stats(db))

@router.get("/bookings")
def all_bookings(status: Optional[str] = None, from_date: Optional[datetime] = None, to_date: Optional[datetime] = None,
                 page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                 db: Session = Depends(get_db), admin: models.User = Depends(auth_service.require_admin)):
    bookings, total = booking_service.get_all_bookings(db, status, from_date, to_date, page, limit)
    return envelope(
        "Bookings retrieved successfully",
        data={"bookings": [booking_out(b) for b in bookings]},
        pagination=paginate(page, limit, total),
    )

@router.get("/bookings/{booking_id}")
def get_booking(booking_id: str, db: Session = Depends(get_db),
                user: models.User = Depends(auth_service.get_current_user)):
    booking = booking_service.get_booking(db, booking_id, user)
    return envelope("Booking retrieved successfully", data={"booking": booking_out(booking)})

@router.put("/bookings/{booking_id}")
def update_booking(booking_id: str, payload: schemas.BookingUpdate, db: Session = Depends(get_db),
                   user: models.User = Depends(auth_service.get_current_user)):
    booking = booking_service.update_booking(db, booking_id, user, payload)
    return envelope("Booking updated successfully", data={"booking": booking_out(booking)})

@router.post("/bookings/{booking_id}/cancel")
def cancel_booking(booking_id: str, db: Session = Depends(get_db),
                   user: models.User = Depends(auth_service.get_current_user)):
    result = booking_service.cancel_booking(db, booking_id, user)
    return envelope("Booking cancelled successfully", data={
        "booking": booking_out(result["booking"]),
        "refund_amount": result["refund_amount"],
        "refund_percentage": result["refund_percentage"],
    })

@router.put("/bookings/{booking_id}/status")
def update_booking_status(booking_id: str, payload: schemas.BookingStatusUpdate, db: Session = Depends(get_db),
                          admin: models.User = Depends(auth_service.require_admin)):
    booking = booking_service.update_booking_status(db, booking_id, payload.status)
    return envelope("Booking status updated successfully", data={"booking": booking_out(booking)})

# ---------- Payment Endpoints ----------
@router.post("/payments/webhook/paystack")
async def paystack_webhook(request: Request, db: Session = Depends(get_db), client=Depends(get_paystack_client)):
    body = await request.body()
    if not client.verify_signature(body, request.headers.get("x-paystack-signature", "")):
        logger.warning("Rejected Paystack webhook with an invalid signature")
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED,
                            content=envelope("Invalid signature", success=False, error="INVALID_SIGNATURE"))
    try:
        event = await request.json()
    except ValueError:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST,
                            content=envelope("Malformed event", success=False, error="VALIDATION_ERROR"))
    # gateway verification blocks, keep it off the event loop
    handled = await run_in_threadpool(payment_service.handle_webhook, db, client, event)
    if handled:
        return envelope("Webhook processed")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST,
                        content=envelope("Webhook not processed", success=False, error="WEBHOOK_NOT_HANDLED"))

@router.post("/payments/initialize")
def initialize_payment(payload: schemas.PaymentInitRequest, db: Session = Depends(get_db),
                       user: models.User = Depends(auth_service.get_current_user), client=Depends(get_paystack_client)):
    result = payment_service.initialize_payment(db, client, user, payload.booking_id, payload.metadata)
    result["payment"] = payment_out(result["payment"])
    result["public_key"] = settings.paystack_public_key
    return envelope("Payment initialized successfully", data=result)

@router.get("/payments/verify/{reference}")
def verify_payment(reference: str, db: Session = Depends(get_db),
                   user: models.User = Depends(auth_service.get_current_user), client=Depends(get_paystack_client)):
    payment = payment_service.verify_payment(db, client, reference, user)
    return envelope("Payment verified successfully", data={"payment": payment_out(payment)})

@router.get("/payments/my-payments")
def my_payments(db: Session = Depends(get_db), user: models.User = Depends(auth_service.get_current_user)):
    payments = payment_service.get_user_payments(db, user.id)
    return envelope("Payments retrieved successfully", data={"payments": [payment_out(p) for p in payments]})

@router.get("/payments/reference/{reference}")
def payment_by_reference(reference: str, db: Session = Depends(get_db),
                         user: models.User = Depends(auth_service.get_current_user)):
    payment = payment_service.get_payment_by_reference(db, reference, user)
    return envelope("Payment retrieved successfully", data={"payment": payment_out(payment)})

@router.get("/payments/stats/overview")
def payment_stats(db: Session = Depends(get_db), admin: models.User = Depends(auth_service.require_admin)):
    return envelope("Payment statistics retrieved successfully", data=payment_service.get_payment_stats(db))

@router.get("/payments")
def all_payments(status: Optional[str] = None, page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                 db: Session = Depends(get_db), admin: models.User = Depends(auth_service.require_admin)):
    payments, total = payment_service.get_all_payments(db, status, page, limit)
    return envelope(
        "Payments retrieved successfully",
        data={"payments": [payment_out(p) for p in payments]},
        pagination=paginate(page, limit, total),
    )

@router.post("/payments/{payment_id}/refund")
def refund_payment(payment_id: str, payload: Optional[schemas.RefundRequest] = None, db: Session = Depends(get_db),
                   admin: models.User = Depends(auth_service.require_admin)):
    amount = payload.amount if payload else None
    payment = payment_service.process_refund(db, payment_id, amount)
    return envelope("Refund processed successfully", data={"payment": payment_out(payment)})


app.include_router(router)


def main():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
