"""RealTimeUpdate ORM model — history of live-condition checks per route."""

import uuid
from datetime import datetime
from sqlalchemy import String, Boolean, DateTime, ForeignKey, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship
from db.database import Base


class RealTimeUpdate(Base):
    __tablename__ = "realtime_updates"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    route_plan_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("route_plans.id"), nullable=False, index=True)
    traffic_data: Mapped[dict] = mapped_column(JSON, default=dict)
    weather_data: Mapped[dict] = mapped_column(JSON, default=dict)
    advisor_said_reoptimize: Mapped[bool] = mapped_column(Boolean, default=False)
    should_reoptimize: Mapped[bool] = mapped_column(Boolean, default=False)
    decision: Mapped[str] = mapped_column(String(20), default="unchanged")  # reoptimized, unchanged
    reasoning: Mapped[str | None] = mapped_column(Text)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    # Relationships
    route_plan = relationship("RoutePlan", back_populates="updates")
