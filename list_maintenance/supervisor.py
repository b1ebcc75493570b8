from __future__ import annotations

from typing import Any, Callable

from lifecycle.models import Round

from .graph import build_maintenance_graph
from .nodes import OUTCOME_FAILED, MaintenanceNodes
from .planner import Planner
from .state import MaintenanceContext, MaintenanceState


class ListMaintenanceOrchestrator:
    """Runs bounce suppression and list rebalancing for a round as one unit."""

    def __init__(
        self,
        provider: Any,
        store: Any,
        planner: Planner | None = None,
        soft_bounce_threshold: int = 3,
        nodes: MaintenanceNodes | None = None,
    ) -> None:
        self.store = store
        self.nodes = nodes or MaintenanceNodes(
            provider=provider,
            store=store,
            planner=planner,
            soft_bounce_threshold=soft_bounce_threshold,
        )
        self.graph = build_maintenance_graph(self.nodes)

    def run_maintenance(self, rnd: Round, heartbeat: Callable[[], None] | None = None) -> dict[str, Any]:
        """Run one maintenance unit for ``rnd``.

        ``heartbeat`` is called before every list mutation to keep the
        caller's round lease alive; if it raises, the unit is rolled back.
        """
        ctx = MaintenanceContext(round=rnd, heartbeat=heartbeat)
        state: MaintenanceState = {
            "ctx": ctx,
            "halt": False,
            "needs_rollback": False,
            "outcome": "",
            "error": None,
        }
        final_state = self.graph.invoke(state)

        plan = ctx.suppression
        return {
            "round_id": rnd.id,
            "outcome": final_state.get("outcome") or OUTCOME_FAILED,
            "reason": final_state.get("error") or "",
            "lists": ctx.lists,
            "before_state": ctx.before_state,
            "after_state": ctx.after_state,
            "suppressed_count": plan.removal_count if plan else 0,
            "suppressed_ids": plan.suppressed_ids if plan else [],
            "monitored_ids": plan.monitor if plan else [],
            "moves_applied": ctx.moves_applied,
            "log_ids": list(ctx.log_ids),
        }
