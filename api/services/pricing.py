"""
Pricing Engine — running-cost model for a synthesized route.

Cost components:
  1. Fuel: distance / mileage × diesel price
  2. Driver wage: paid in 12-hour shift blocks, one block minimum
  3. Maintenance: per-km wear rate by vehicle class
  4. Tolls: per-km highway rate on tolled or long (>100 km) trips
"""

import math
from dataclasses import dataclass


# ── Constants ──────────────────────────────────────────────

DIESEL_PRICE_PER_L = 93.5   # ₹ per litre

MILEAGE_KM_PER_L = {
    "VAN": 8.0,
    "TRUCK": 4.0,
}

MAINTENANCE_PER_KM = {
    "VAN": 1.5,
    "TRUCK": 2.5,
}

SHIFT_MINUTES = 12 * 60
WAGE_PER_SHIFT = 800        # ₹ per 12h block, also the floor

TOLL_RATE_REPORTED = 3.5    # ₹/km when the router reports toll sections
TOLL_RATE_ESTIMATED = 3.0   # ₹/km assumed on long hauls
TOLL_FREE_MAX_KM = 100.0

SHORT_HAUL_KM = 50.0        # great-circle span below which a trip is short-haul


# ── Data classes ───────────────────────────────────────────

@dataclass
class RouteCost:
    vehicle_class: str
    mileage_km_per_l: float
    fuel_required_litres: float
    diesel_price_used: float
    fuel: int
    time: int
    maintenance: int
    tolls: int

    @property
    def total(self) -> int:
        return self.fuel + self.time + self.maintenance + self.tolls

    def breakdown(self) -> dict:
        return {
            "fuel": self.fuel,
            "time": self.time,
            "maintenance": self.maintenance,
            "tolls": self.tolls,
            "total": self.total,
        }


# ── Core Functions ─────────────────────────────────────────

def vehicle_class(is_heavy: bool) -> str:
    return "TRUCK" if is_heavy else "VAN"


def driver_wage(time_min: float) -> int:
    """max(800, ceil(time / 12h) × 800)."""
    shifts = math.ceil(max(time_min, 0) / SHIFT_MINUTES)
    return max(WAGE_PER_SHIFT, shifts * WAGE_PER_SHIFT)


def toll_cost(distance_km: float, has_tolls: bool) -> float:
    if not has_tolls and distance_km <= TOLL_FREE_MAX_KM:
        return 0.0
    rate = TOLL_RATE_REPORTED if has_tolls else TOLL_RATE_ESTIMATED
    return distance_km * rate


def calculate_route_cost(
    distance_km: float,
    time_min: float,
    is_heavy: bool = False,
    short_haul: bool = False,
    has_tolls: bool = False,
) -> RouteCost:
    """
    Price a route from its corrected totals.

    Args:
        distance_km: Final (plausibility-corrected) road distance
        time_min: Final travel time in minutes
        is_heavy: Truck-class vehicle profile
        short_haul: Great-circle span under 50 km (van mileage applies)
        has_tolls: Road router reported toll sections

    Returns:
        RouteCost with every component rounded to whole rupees
    """
    klass = vehicle_class(is_heavy)
    mileage = MILEAGE_KM_PER_L["VAN"] if short_haul else MILEAGE_KM_PER_L[klass]
    litres = distance_km / mileage

    return RouteCost(
        vehicle_class=klass,
        mileage_km_per_l=mileage,
        fuel_required_litres=round(litres, 1),
        diesel_price_used=DIESEL_PRICE_PER_L,
        fuel=round(litres * DIESEL_PRICE_PER_L),
        time=driver_wage(time_min),
        maintenance=round(distance_km * MAINTENANCE_PER_KM[klass]),
        tolls=round(toll_cost(distance_km, has_tolls)),
    )
