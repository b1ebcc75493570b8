"""Bounce suppression and list rebalancing for campaign partitions."""

from .graph import build_maintenance_graph
from .planner import BalancedPlanner, Move, Planner, RebalancingPlan, SuppressionPlan
from .supervisor import ListMaintenanceOrchestrator

__all__ = [
    "BalancedPlanner",
    "ListMaintenanceOrchestrator",
    "Move",
    "Planner",
    "RebalancingPlan",
    "SuppressionPlan",
    "build_maintenance_graph",
]
