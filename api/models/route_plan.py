"""RoutePlan ORM model — a priced, ordered multi-stop route."""

import uuid
from datetime import datetime
from sqlalchemy import String, Integer, Numeric, Boolean, DateTime, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship
from db.database import Base


class RoutePlan(Base):
    __tablename__ = "route_plans"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID | None] = mapped_column()
    company_id: Mapped[uuid.UUID | None] = mapped_column(index=True)
    driver_id: Mapped[uuid.UUID | None] = mapped_column(index=True)

    # Input and synthesized path
    deliveries: Mapped[list] = mapped_column(JSON, default=list)
    route: Mapped[list] = mapped_column(JSON, default=list)
    route_legs: Mapped[list] = mapped_column(JSON, default=list)
    vehicle_data: Mapped[dict] = mapped_column(JSON, default=dict)

    # Totals
    total_distance: Mapped[float] = mapped_column(Numeric(10, 1, asdecimal=False), default=0)
    estimated_time: Mapped[int] = mapped_column(Integer, default=0)  # minutes
    fuel_required_litres: Mapped[float | None] = mapped_column(Numeric(10, 1, asdecimal=False))
    diesel_price_used: Mapped[float | None] = mapped_column(Numeric(6, 2, asdecimal=False))
    cost_breakdown: Mapped[dict] = mapped_column(JSON, default=dict)
    traffic_analysis: Mapped[dict] = mapped_column(JSON, default=dict)

    reasoning: Mapped[str | None] = mapped_column(Text)
    constraints_alert: Mapped[str | None] = mapped_column(Text)

    # draft → active → completed, or cancelled
    status: Mapped[str] = mapped_column(String(20), default="draft", index=True)

    # Client-side position simulation
    active_leg: Mapped[int] = mapped_column(Integer, default=0)
    is_stationary: Mapped[bool] = mapped_column(Boolean, default=True)
    last_departed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Provenance
    generated_by: Mapped[str] = mapped_column(String(20), default="fallback")
    synthesis_path: Mapped[str | None] = mapped_column(String(30))
    optimization_model: Mapped[str | None] = mapped_column(String(100))

    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    updates = relationship(
        "RealTimeUpdate", back_populates="route_plan", lazy="noload",
        order_by="RealTimeUpdate.timestamp",
    )

    __mapper_args__ = {"version_id_col": version}
