"""Reference data: destinations, the Taraba route table and an optional admin account.

Seeding is idempotent; rows that already exist are left untouched.
"""

import logging
import os

from sqlalchemy.orm import Session

import models_sqlalchemy as models
from auth_service import hash_password
from travel_service import TARABA_ROUTES

logger = logging.getLogger(__name__)

UNSPLASH = "https://images.unsplash.com/photo-{}?w=400&h=300&fit=crop&auto=format&q=80"

# (id, name, state, latitude, longitude, image id, description)
LOCATIONS = [
    ("tar-1", "Jalingo", "Taraba", 8.8833, 11.3667, "1587974928442-77dc3e0dba72", "Capital city of Taraba State"),
    ("tar-2", "Wukari", "Taraba", 7.8667, 9.7833, "1571019613454-1cb2f99b2d8b", "Ancient Jukun kingdom headquarters"),
    ("tar-3", "Bali", "Taraba", 7.8500, 10.9667, "1578662996442-48f60103fc96", "Historic emirate town"),
    ("tar-4", "Gembu", "Taraba", 6.7000, 11.2667, "1506905925346-21bda4d32df4", "Mambilla Plateau headquarters"),
    ("tar-5", "Serti", "Taraba", 7.5000, 11.3667, "1500382017468-9049fed747ef", "Agricultural hub of Taraba"),
    ("tar-6", "Takum", "Taraba", 7.2667, 9.9833, "1541888946425-d81bb19240f5", "Border town with Cameroon"),
    ("tar-7", "Ibi", "Taraba", 8.1833, 9.7500, "1544551763-46a013bb70d5", "River port town on River Benue"),
    ("tar-8", "Mutum-Biyu", "Taraba", 8.6333, 10.7667, "1566073771259-6a8506099945", "Commercial center in Gassol LGA"),
    ("ng-1", "Abuja", "FCT", 9.0765, 7.3986, "1555881400-74d7acaacd8b", "Federal capital territory"),
    ("ng-2", "Lagos", "Lagos", 6.5244, 3.3792, "1555881400-74d7acaacd8b", "Commercial capital of Nigeria"),
    ("ng-3", "Kano", "Kano", 12.0022, 8.5920, "1587974928442-77dc3e0dba72", "Ancient commercial center"),
    ("ng-4", "Port Harcourt", "Rivers", 4.8156, 7.0498, "1519904981063-b0cf448d479e", "Oil city and garden city"),
    ("ng-5", "Kaduna", "Kaduna", 10.5105, 7.4165, "1571019613454-1cb2f99b2d8b", "Centre of learning"),
    ("ng-6", "Jos", "Plateau", 9.8965, 8.8583, "1506905925346-21bda4d32df4", "Plateau state capital"),
    ("ng-7", "Makurdi", "Benue", 7.7337, 8.5214, "1500382017468-9049fed747ef", "Food basket capital"),
    ("ng-8", "Yola", "Adamawa", 9.2035, 12.4954, "1541888946425-d81bb19240f5", "Land of beauty"),
    ("ng-9", "Bauchi", "Bauchi", 10.3158, 9.8442, "1544551763-46a013bb70d5", "Pearl of tourism"),
    ("ng-10", "Gombe", "Gombe", 10.2897, 11.1673, "1566073771259-6a8506099945", "Jewel in the savannah"),
]


def initial_popularity(transport_modes, base_price):
    return len(transport_modes) * 10 + max(0, 100 - base_price / 1000)


def seed_locations(db: Session) -> int:
    existing = {loc_id for (loc_id,) in db.query(models.Location.id).all()}
    added = 0
    for loc_id, name, state, lat, lng, image, description in LOCATIONS:
        if loc_id in existing:
            continue
        db.add(models.Location(
            id=loc_id,
            name=name,
            state=state,
            country="Nigeria",
            latitude=lat,
            longitude=lng,
            image=UNSPLASH.format(image),
            description=description,
            is_active=True,
        ))
        added += 1
    db.commit()
    return added


def seed_routes(db: Session) -> int:
    existing = {route_id for (route_id,) in db.query(models.Route.id).all()}
    added = 0
    for info in TARABA_ROUTES:
        if info.id in existing:
            continue
        modes = [m.to_dict() for m in info.transport_modes]
        db.add(models.Route(
            id=info.id,
            from_location_id=info.from_id,
            to_location_id=info.to_id,
            distance=info.distance,
            estimated_duration=info.estimated_duration,
            base_price=info.base_price,
            transport_modes=modes,
            is_active=info.is_active,
            popularity_score=initial_popularity(modes, info.base_price),
        ))
        added += 1
    db.commit()
    return added


def seed_admin(db: Session, email=None, password=None):
    email = (email or os.getenv("ADMIN_EMAIL", "admin@staya.com")).lower()
    password = password or os.getenv("ADMIN_PASSWORD")
    if not password:
        return None
    user = db.query(models.User).filter(models.User.email == email).first()
    if user:
        return user
    user = models.User(
        email=email,
        name="STAYA Admin",
        password_hash=hash_password(password),
        role="admin",
        is_verified=True,
    )
    db.add(user)
    db.commit()
    logger.info("Created admin account %s", email)
    return user


def seed_database(db: Session) -> None:
    locations = seed_locations(db)
    routes = seed_routes(db)
    seed_admin(db)
    logger.info("Seeded %d locations and %d routes", locations, routes)
