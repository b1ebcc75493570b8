from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, TypedDict

from lifecycle.models import Round

from .planner import RebalancingPlan, SuppressionPlan


@dataclass
class JournalEntry:
    action: str
    list_id: str
    contact_ids: list[str]
    phase: str


@dataclass
class MaintenanceContext:
    round: Round
    lists: list[str] = field(default_factory=list)
    members: dict[str, list[str]] = field(default_factory=dict)
    before_state: dict[str, int] = field(default_factory=dict)
    after_state: dict[str, int] = field(default_factory=dict)
    bounces: list[dict[str, Any]] = field(default_factory=list)
    suppression: SuppressionPlan | None = None
    rebalancing: RebalancingPlan | None = None
    journal: list[JournalEntry] = field(default_factory=list)
    moves_applied: int = 0
    log_ids: list[int] = field(default_factory=list)
    heartbeat: Callable[[], None] | None = None


class MaintenanceState(TypedDict):
    ctx: MaintenanceContext
    halt: bool
    needs_rollback: bool
    outcome: str
    error: str | None
