from models.route_plan import RoutePlan
from models.realtime_update import RealTimeUpdate

__all__ = ["RoutePlan", "RealTimeUpdate"]
