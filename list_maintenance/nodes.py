from __future__ import annotations

from typing import Any

from lifecycle.errors import ProviderRequestError
from lifecycle.models import CANCELLED, MaintenanceLog

from .planner import (
    BalancedPlanner,
    Planner,
    apply_removals,
    plan_suppression,
    validate_rebalancing,
    validate_suppression,
)
from .state import JournalEntry, MaintenanceState

ADD = "add"
REMOVE = "remove"

OUTCOME_SUCCESS = "success"
OUTCOME_ROLLED_BACK = "rolledBack"
OUTCOME_RECONCILIATION_FAILED = "reconciliation_failed"
OUTCOME_BLOCKED = "blocked"
OUTCOME_FAILED = "failed"


def _describe(exc: Exception) -> str:
    if isinstance(exc, ProviderRequestError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"


class MaintenanceNodes:
    """Checkpointed steps of one maintenance unit.

    Every list mutation is journalled before it is sent, so a failure at any
    point can be undone by replaying the journal's inverse.
    """

    def __init__(self, provider: Any, store: Any, planner: Planner | None = None, soft_bounce_threshold: int = 3) -> None:
        self.provider = provider
        self.store = store
        self.planner = planner or BalancedPlanner()
        self.soft_bounce_threshold = soft_bounce_threshold

    def _renew(self, state: MaintenanceState) -> None:
        heartbeat = state["ctx"].heartbeat
        if heartbeat is not None:
            heartbeat()

    def _apply(self, state: MaintenanceState, action: str, list_id: str, contact_ids: list[str], phase: str) -> None:
        self._renew(state)
        state["ctx"].journal.append(JournalEntry(action=action, list_id=list_id, contact_ids=list(contact_ids), phase=phase))
        if action == ADD:
            self.provider.add_contacts(list_id, contact_ids)
        else:
            self.provider.remove_contacts(list_id, contact_ids)

    def _sizes(self, lists: list[str]) -> dict[str, int]:
        # Counted the same way as before_state.
        return {list_id: len(self.provider.list_contacts(list_id)) for list_id in lists}

    def fetch_state(self, state: MaintenanceState) -> dict[str, Any]:
        ctx = state["ctx"]
        rnd = ctx.round
        if not rnd.external_campaign_id:
            return {"halt": True, "outcome": OUTCOME_BLOCKED, "error": "round has no provider campaign id"}
        lists: list[str] = []
        for sibling in self.store.list_rounds(rnd.campaign_name):
            if sibling.status != CANCELLED and sibling.list_id not in lists:
                lists.append(sibling.list_id)
        if rnd.list_id not in lists:
            lists.append(rnd.list_id)
        try:
            ctx.members = {list_id: self.provider.list_contacts(list_id) for list_id in lists}
            ctx.bounces = self.provider.get_bounce_events(rnd.external_campaign_id)
        except ProviderRequestError as exc:
            return {"halt": True, "outcome": OUTCOME_FAILED, "error": f"fetch failed: {exc}"}
        ctx.lists = lists
        ctx.before_state = {list_id: len(ids) for list_id, ids in ctx.members.items()}
        return {"halt": False}

    def plan_suppression(self, state: MaintenanceState) -> dict[str, Any]:
        ctx = state["ctx"]
        soft_ids = sorted(
            {str(event.get("contact_id")) for event in ctx.bounces if str(event.get("type", "")).lower() == "soft"}
        )
        prior = self.store.soft_bounce_counts(soft_ids)
        plan = plan_suppression(ctx.bounces, prior, ctx.members, threshold=self.soft_bounce_threshold)
        errors = validate_suppression(ctx.members, plan)
        if errors:
            return {"halt": True, "outcome": OUTCOME_BLOCKED, "error": "suppression plan rejected: " + "; ".join(errors[:5])}
        ctx.suppression = plan
        return {"halt": False}

    def apply_suppression(self, state: MaintenanceState) -> dict[str, Any]:
        ctx = state["ctx"]
        plan = ctx.suppression
        try:
            for list_id, contact_ids in plan.removals.items():
                self._apply(state, REMOVE, list_id, contact_ids, "suppression")
        except Exception as exc:
            return {"needs_rollback": True, "error": f"suppression failed: {_describe(exc)}"}
        ctx.members = apply_removals(ctx.members, plan.removals)
        return {"needs_rollback": False}

    def plan_rebalancing(self, state: MaintenanceState) -> dict[str, Any]:
        ctx = state["ctx"]
        snapshot = {list_id: list(ids) for list_id, ids in ctx.members.items()}
        try:
            plan = self.planner.plan(snapshot)
        except Exception as exc:
            return {"needs_rollback": True, "outcome": OUTCOME_BLOCKED, "error": f"planner failed: {type(exc).__name__}: {exc}"}
        errors = validate_rebalancing(ctx.members, plan)
        expected_total = sum(ctx.before_state.values()) - ctx.suppression.removal_count
        if not errors and sum(plan.targets.values()) != expected_total:
            errors.append(f"targets sum to {sum(plan.targets.values())}, expected {expected_total} after suppression")
        if errors:
            return {
                "needs_rollback": True,
                "outcome": OUTCOME_BLOCKED,
                "error": "rebalancing plan rejected: " + "; ".join(errors[:5]),
            }
        ctx.rebalancing = plan
        return {"needs_rollback": False}

    def apply_rebalancing(self, state: MaintenanceState) -> dict[str, Any]:
        ctx = state["ctx"]
        groups: dict[tuple[str, str], list[str]] = {}
        for move in ctx.rebalancing.moves:
            groups.setdefault((move.from_list, move.to_list), []).append(move.contact_id)
        try:
            for (from_list, to_list), contact_ids in groups.items():
                self._apply(state, ADD, to_list, contact_ids, "rebalancing")
                self._apply(state, REMOVE, from_list, contact_ids, "rebalancing")
                ctx.moves_applied += len(contact_ids)
            ctx.after_state = self._sizes(ctx.lists)
        except Exception as exc:
            return {"needs_rollback": True, "error": f"rebalancing failed after {ctx.moves_applied} moves: {_describe(exc)}"}
        if ctx.after_state != ctx.rebalancing.targets:
            return {
                "needs_rollback": True,
                "error": f"lists ended at {ctx.after_state}, plan targeted {ctx.rebalancing.targets}",
            }
        return {"needs_rollback": False}

    def persist_log(self, state: MaintenanceState) -> dict[str, Any]:
        ctx = state["ctx"]
        plan = ctx.suppression
        log = MaintenanceLog(
            round_id=ctx.round.id,
            before_state=ctx.before_state,
            after_state=ctx.after_state,
            outcome=OUTCOME_SUCCESS,
            suppressed_count=plan.removal_count,
            suppressed_ids=plan.suppressed_ids,
            moves_applied=ctx.moves_applied,
        )
        suppressions = [
            {"contact_id": row["contact_id"], "reason": row["reason"], "bounce_type": row["bounce_type"]}
            for row in plan.suppress
        ]
        ctx.log_ids.append(self.store.commit_maintenance(log, suppressions=suppressions, soft_bounces=plan.soft_bounce_ids))
        return {"outcome": OUTCOME_SUCCESS, "error": None}

    def rollback(self, state: MaintenanceState) -> dict[str, Any]:
        ctx = state["ctx"]
        failure = state.get("error") or "maintenance failed"
        restored: dict[str, int] = {}
        reconcile_error = ""
        try:
            for entry in reversed(ctx.journal):
                self._renew(state)
                if entry.action == ADD:
                    self.provider.remove_contacts(entry.list_id, entry.contact_ids)
                else:
                    self.provider.add_contacts(entry.list_id, entry.contact_ids)
            restored = self._sizes(ctx.lists)
        except Exception as exc:
            reconcile_error = f"rollback could not be applied: {_describe(exc)}"
        if not reconcile_error and restored != ctx.before_state:
            reconcile_error = f"rollback left lists at {restored}, expected {ctx.before_state}"

        suppressed_ids = ctx.suppression.suppressed_ids if ctx.suppression else []
        partial = MaintenanceLog(
            round_id=ctx.round.id,
            before_state=ctx.before_state,
            after_state=restored,
            outcome="partial",
            suppressed_count=0,
            suppressed_ids=suppressed_ids,
            moves_applied=ctx.moves_applied,
            error=failure if not reconcile_error else f"{failure}; {reconcile_error}",
        )
        partial_id = self.store.commit_maintenance(partial)
        ctx.log_ids.append(partial_id)
        if reconcile_error:
            return {"outcome": OUTCOME_RECONCILIATION_FAILED, "error": f"{failure}; {reconcile_error}"}

        rolled_back = MaintenanceLog(
            round_id=ctx.round.id,
            before_state=ctx.before_state,
            after_state=restored,
            outcome=OUTCOME_ROLLED_BACK,
            moves_applied=0,
            rollback_of=partial_id,
            error=failure,
        )
        ctx.log_ids.append(self.store.commit_maintenance(rolled_back))
        outcome = OUTCOME_BLOCKED if state.get("outcome") == OUTCOME_BLOCKED else OUTCOME_ROLLED_BACK
        return {"outcome": outcome, "error": failure}
