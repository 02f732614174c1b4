"""Route lookup and fare pricing for Nigerian intercity travel.

The lookup is a linear scan over a small list of :class:`RouteInfo` records,
matched on the unordered pair of location ids. Callers get sentinels rather
than exceptions when no route exists: a price of ``0``, an empty list of
transport modes, or the duration ``"N/A"``.

Fares are ``unit price x passengers x demand multiplier``, rounded half-up to
the nearest ₦500. The demand multiplier is a pure function of the route,
the time left before departure and the seat availability of the chosen
mode, so two identical quotes always agree.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from models_sqlalchemy import utcnow

PRICE_INCREMENT = 500
CURRENCY = "NGN"
POPULAR_ROUTES = ("tar-jalingo-abuja", "tar-jalingo-lagos", "tar-jalingo-kano")

MIN_MULTIPLIER = 0.90
MAX_MULTIPLIER = 1.25
LATE_BOOKING_HOURS = 72
EARLY_BOOKING_HOURS = 30 * 24


@dataclass
class TransportMode:
    type: str
    operator: str
    price: float
    duration: str
    availability: str = "available"
    departure_time: Optional[str] = None
    arrival_time: Optional[str] = None
    amenities: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        data = {
            "type": self.type,
            "operator": self.operator,
            "price": self.price,
            "duration": self.duration,
            "availability": self.availability,
            "amenities": list(self.amenities),
        }
        if self.departure_time:
            data["departure_time"] = self.departure_time
        if self.arrival_time:
            data["arrival_time"] = self.arrival_time
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "TransportMode":
        return cls(
            type=data["type"],
            operator=data.get("operator", ""),
            price=data.get("price", 0),
            duration=data.get("duration", ""),
            availability=data.get("availability", "available"),
            departure_time=data.get("departure_time"),
            arrival_time=data.get("arrival_time"),
            amenities=list(data.get("amenities") or []),
        )


@dataclass
class RouteInfo:
    id: str
    from_id: str
    to_id: str
    distance: float
    estimated_duration: str
    base_price: float
    transport_modes: List[TransportMode]
    is_active: bool = True

    def connects(self, from_id: str, to_id: str) -> bool:
        return (self.from_id == from_id and self.to_id == to_id) or (
            self.from_id == to_id and self.to_id == from_id
        )

    def mode(self, transport_type: str) -> Optional[TransportMode]:
        return next((m for m in self.transport_modes if m.type == transport_type), None)

    @classmethod
    def from_model(cls, route) -> "RouteInfo":
        return cls(
            id=route.id,
            from_id=route.from_location_id,
            to_id=route.to_location_id,
            distance=route.distance,
            estimated_duration=route.estimated_duration,
            base_price=route.base_price,
            transport_modes=[TransportMode.from_dict(m) for m in route.transport_modes or []],
            is_active=route.is_active,
        )


def _route(route_id, from_id, to_id, distance, duration, base_price, modes):
    return RouteInfo(
        id=route_id,
        from_id=from_id,
        to_id=to_id,
        distance=distance,
        estimated_duration=duration,
        base_price=base_price,
        transport_modes=[TransportMode(*mode) for mode in modes],
    )


# Taraba State routes: intra-state first, then to major Nigerian cities.
TARABA_ROUTES: List[RouteInfo] = [
    _route("tar-jalingo-wukari", "tar-1", "tar-2", 195, "3h 30m", 3500, [
        ("bus", "ABC Transport", 3500, "3h 30m", "available"),
        ("car", "Private Hire", 15000, "2h 45m", "available"),
    ]),
    _route("tar-jalingo-gembu", "tar-1", "tar-4", 180, "4h 15m", 4000, [
        ("bus", "Peace Mass Transit", 4000, "4h 15m", "available"),
        ("car", "Private Hire", 18000, "3h 30m", "limited"),
    ]),
    _route("tar-jalingo-bali", "tar-1", "tar-3", 85, "1h 45m", 2000, [
        ("bus", "Taraba Line Transport", 2000, "1h 45m", "available"),
        ("car", "Private Hire", 8000, "1h 20m", "available"),
    ]),
    _route("tar-jalingo-abuja", "tar-1", "ng-1", 450, "7h 30m", 8500, [
        ("bus", "ABC Transport", 8500, "7h 30m", "available"),
        ("flight", "Air Peace", 45000, "1h 15m", "limited"),
        ("car", "Private Hire", 35000, "6h 45m", "available"),
    ]),
    _route("tar-jalingo-lagos", "tar-1", "ng-2", 850, "12h 30m", 15000, [
        ("bus", "God is Good Motors", 15000, "12h 30m", "available"),
        ("flight", "Air Peace", 65000, "1h 45m", "available"),
        ("car", "Private Hire", 60000, "11h 15m", "limited"),
    ]),
    _route("tar-jalingo-kano", "tar-1", "ng-3", 520, "8h 45m", 10000, [
        ("bus", "Borno Express", 10000, "8h 45m", "available"),
        ("flight", "Max Air", 50000, "1h 30m", "limited"),
        ("car", "Private Hire", 40000, "7h 30m", "available"),
    ]),
    _route("tar-jalingo-jos", "tar-1", "ng-6", 280, "5h 15m", 6000, [
        ("bus", "Peace Mass Transit", 6000, "5h 15m", "available"),
        ("car", "Private Hire", 25000, "4h 30m", "available"),
    ]),
    _route("tar-jalingo-makurdi", "tar-1", "ng-7", 220, "4h 30m", 5000, [
        ("bus", "Cross Line Transport", 5000, "4h 30m", "available"),
        ("car", "Private Hire", 20000, "3h 45m", "available"),
    ]),
    _route("tar-jalingo-yola", "tar-1", "ng-8", 160, "3h 15m", 4500, [
        ("bus", "Adamawa Transport", 4500, "3h 15m", "available"),
        ("car", "Private Hire", 16000, "2h 45m", "available"),
    ]),
]


def demand_multiplier(route_id: str, hours_until_departure: Optional[float] = None,
                      availability: Optional[str] = None) -> float:
    multiplier = 1.10 if route_id in POPULAR_ROUTES else 1.00
    if hours_until_departure is not None:
        if hours_until_departure < LATE_BOOKING_HOURS:
            multiplier += 0.10
        elif hours_until_departure >= EARLY_BOOKING_HOURS:
            multiplier -= 0.10
    if availability == "limited":
        multiplier += 0.05
    return round(min(MAX_MULTIPLIER, max(MIN_MULTIPLIER, multiplier)), 2)


def round_to_increment(amount: float, increment: int = PRICE_INCREMENT) -> int:
    """Round half-up to the nearest increment, never below one increment."""
    return max(increment, int(math.floor(amount / increment + 0.5)) * increment)


class TravelService:
    """Price and route lookup over an in-memory route table."""

    def __init__(self, routes: Optional[Iterable[RouteInfo]] = None):
        self.routes: List[RouteInfo] = list(TARABA_ROUTES if routes is None else routes)

    @classmethod
    def from_session(cls, db) -> "TravelService":
        from models_sqlalchemy import Route

        return cls(RouteInfo.from_model(r) for r in db.query(Route).all())

    def find_route(self, from_id: str, to_id: str) -> Optional[RouteInfo]:
        return next((r for r in self.routes if r.connects(from_id, to_id)), None)

    def is_route_available(self, from_id: str, to_id: str) -> bool:
        route = self.find_route(from_id, to_id)
        return bool(route and route.is_active)

    def calculate_price(self, from_id: str, to_id: str, passengers: int,
                        transport_type: Optional[str] = None,
                        departure_date: Optional[datetime] = None,
                        now: Optional[datetime] = None) -> int:
        route = self.find_route(from_id, to_id)
        if route is None or not route.is_active:
            return 0

        unit_price = route.base_price
        availability = None
        if transport_type:
            mode = route.mode(transport_type)
            if mode is not None:
                unit_price = mode.price
                availability = mode.availability

        hours = None
        if departure_date is not None:
            hours = (departure_date - (now or utcnow())).total_seconds() / 3600

        multiplier = demand_multiplier(route.id, hours, availability)
        return round_to_increment(unit_price * passengers * multiplier)

    def get_available_transport_modes(self, from_id: str, to_id: str) -> List[TransportMode]:
        route = self.find_route(from_id, to_id)
        if route is None:
            return []
        return [m for m in route.transport_modes if m.availability != "unavailable"]

    def get_estimated_duration(self, from_id: str, to_id: str, transport_type: Optional[str] = None) -> str:
        route = self.find_route(from_id, to_id)
        if route is None:
            return "N/A"
        if transport_type:
            mode = route.mode(transport_type)
            return mode.duration if mode else route.estimated_duration
        return route.estimated_duration

    def get_routes_from(self, location_id: str) -> List[RouteInfo]:
        return [r for r in self.routes if location_id in (r.from_id, r.to_id)]

    def quote(self, from_id: str, to_id: str, passengers: int,
              transport_type: Optional[str] = None,
              departure_date: Optional[datetime] = None,
              now: Optional[datetime] = None) -> Dict:
        route = self.find_route(from_id, to_id)
        available = self.is_route_available(from_id, to_id)
        hours = None
        if departure_date is not None:
            hours = (departure_date - (now or utcnow())).total_seconds() / 3600
        mode = route.mode(transport_type) if (route and transport_type) else None
        return {
            "route_id": route.id if route else None,
            "available": available,
            "price": self.calculate_price(from_id, to_id, passengers, transport_type, departure_date, now),
            "currency": CURRENCY,
            "passengers": passengers,
            "multiplier": demand_multiplier(route.id, hours, mode.availability if mode else None)
            if available else None,
            "duration": self.get_estimated_duration(from_id, to_id, transport_type),
            "transport_modes": [m.to_dict() for m in self.get_available_transport_modes(from_id, to_id)]
            if available else [],
        }
