"""Pydantic schemas for API request/response models."""

from __future__ import annotations
import uuid
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field, computed_field, field_validator


# ── Enums ──────────────────────────────────────────────────

class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class RouteStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RouteEventType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    ASSIGNMENT = "assignment"
    COMPLETION = "completion"
    REOPTIMIZE = "reoptimize"


class SynthesisPath(str, Enum):
    ADVISOR_VERIFIED = "advisor-verified"
    PLAUSIBILITY_OVERRIDE = "plausibility-override"
    FALLBACK = "fallback"


# ── Delivery Stops ─────────────────────────────────────────

class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class PackageDetails(BaseModel):
    weight: float | None = None
    volume: float | None = None
    type: str | None = None


class DeliveryStop(BaseModel):
    address: str = Field(..., min_length=1)
    coordinates: Coordinates | None = None
    priority: Priority = Priority.NORMAL
    time_window: str = "anytime"
    package_details: PackageDetails = Field(default_factory=PackageDetails)

    @field_validator("time_window", mode="before")
    @classmethod
    def _flatten_window(cls, value):
        # Dispatch screens send {"start": "9 AM", "end": "12 PM"}
        if isinstance(value, dict):
            parts = [str(v) for v in (value.get("start"), value.get("end")) if v]
            return " - ".join(parts) or "anytime"
        if value is None or not str(value).strip():
            return "anytime"
        return value


class RouteStop(DeliveryStop):
    order: int


class VehicleProfile(BaseModel):
    type: str = "van"
    capacity: float = 1000
    fuel_efficiency: float = 25

    @property
    def is_heavy(self) -> bool:
        kind = self.type.lower()
        return any(word in kind for word in ("truck", "lorry", "trailer", "heavy"))


class RouteConstraints(BaseModel):
    traffic: bool = False
    weather: bool = False
    notes: str | None = None


# ── Priced Route ───────────────────────────────────────────

class RouteLeg(BaseModel):
    origin: str
    destination: str
    distance_km: float
    time_min: int


class CostBreakdown(BaseModel):
    fuel: int = 0
    time: int = 0
    maintenance: int = 0
    tolls: int = 0

    @computed_field
    @property
    def total(self) -> int:
        return self.fuel + self.time + self.maintenance + self.tolls


class TrafficAnalysis(BaseModel):
    delay_min: int = 0
    avg_speed_kmh: int = 0


class PricedRoute(BaseModel):
    route: list[RouteStop]
    route_legs: list[RouteLeg] = []
    total_distance: float
    estimated_time: int
    fuel_required_litres: float
    diesel_price_used: float
    cost_breakdown: CostBreakdown
    traffic_analysis: TrafficAnalysis = Field(default_factory=TrafficAnalysis)
    reasoning: str
    constraints_alert: str | None = None
    generated_by: str
    synthesis_path: SynthesisPath
    optimization_model: str


# ── Route Requests ─────────────────────────────────────────

class RouteOptimizeRequest(BaseModel):
    deliveries: list[DeliveryStop] = Field(..., min_length=1)
    vehicle_data: VehicleProfile = Field(default_factory=VehicleProfile)
    constraints: RouteConstraints = Field(default_factory=RouteConstraints)
    user_id: uuid.UUID | None = None
    company_id: uuid.UUID | None = None


class RouteUpdate(BaseModel):
    """Operator actions: assign driver, change status, movement tracking."""
    driver_id: uuid.UUID | None = None
    status: RouteStatus | None = None
    active_leg: int | None = Field(None, ge=0)
    is_stationary: bool | None = None
    last_departed_at: datetime | None = None


class RouteEdit(BaseModel):
    deliveries: list[DeliveryStop] | None = Field(None, min_length=1)
    vehicle_data: VehicleProfile | None = None
    status: RouteStatus | None = None


class TrafficReading(BaseModel):
    congestion_level: str | None = None
    current_speed: float | None = Field(None, ge=0)
    free_flow_speed: float | None = Field(None, ge=0)
    confidence: float | None = None

    class Config:
        extra = "allow"


class WeatherReading(BaseModel):
    condition: str = ""
    description: str = ""
    temperature: float | None = None

    class Config:
        extra = "allow"


class ReoptimizeRequest(BaseModel):
    """Optional simulated conditions; live providers are used when omitted."""
    traffic_data: TrafficReading | None = None
    weather_data: WeatherReading | None = None


# ── Route Responses ────────────────────────────────────────

class RouteResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID | None = None
    company_id: uuid.UUID | None = None
    driver_id: uuid.UUID | None = None
    deliveries: list[DeliveryStop]
    route: list[RouteStop]
    route_legs: list[RouteLeg] = []
    vehicle_data: VehicleProfile
    total_distance: float
    estimated_time: int
    fuel_required_litres: float | None = None
    diesel_price_used: float | None = None
    cost_breakdown: CostBreakdown
    traffic_analysis: TrafficAnalysis
    reasoning: str | None = None
    constraints_alert: str | None = None
    status: str
    active_leg: int = 0
    is_stationary: bool = True
    last_departed_at: datetime | None = None
    generated_by: str
    synthesis_path: str | None = None
    optimization_model: str | None = None
    is_archived: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class ReoptimizeResponse(BaseModel):
    route: RouteResponse
    reoptimized: bool
    advisor_said_reoptimize: bool
    significant_delay: bool
    severe_weather: bool
    reasoning: str


class RealTimeUpdateResponse(BaseModel):
    id: int
    route_plan_id: uuid.UUID
    traffic_data: dict
    weather_data: dict
    advisor_said_reoptimize: bool
    should_reoptimize: bool
    decision: str
    reasoning: str | None
    timestamp: datetime

    class Config:
        from_attributes = True


# ── Real-time Notifications ────────────────────────────────

class RouteNotification(BaseModel):
    type: RouteEventType
    message: str
    route_id: str
    route_name: str
    status: str
    timestamp: str
