from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from .config import LifecycleConfig
from .errors import ProviderRequestError
from .models import (
    BLOCKED,
    BLOCKING,
    COMPLETED,
    LAUNCH,
    LAUNCHING,
    LAUNCH_WARNING,
    MAINTENANCE,
    PRELAUNCH,
    PREFLIGHT,
    READY,
    SCHEDULED,
    SEND_UNACKNOWLEDGED,
    SENT,
    TRANSIENT,
    WRAPUP,
    Round,
    StageResult,
)

ESCALATION_AMBIGUOUS = "ambiguous"
ESCALATION_RECONCILIATION = "reconciliation"

METRIC_KEYS = ("sent", "delivered", "opened", "clicked", "bounced", "hard_bounced", "soft_bounced", "unsubscribed")


@dataclass
class StageContext:
    round: Round
    store: Any
    provider: Any
    notifier: Any
    config: LifecycleConfig
    maintenance: Any = None
    attempt: int = 1
    state: dict[str, Any] = field(default_factory=dict)
    heartbeat: Callable[[], None] | None = None


class Stage(Protocol):
    name: str
    expected_status: str
    in_flight_status: str | None
    success_status: str | None
    block_status: str | None

    def accepts(self, rnd: Round) -> bool: ...

    def run(self, ctx: StageContext) -> StageResult: ...

    def success_fields(self, result: StageResult) -> dict[str, Any]: ...

    def block_fields(self, result: StageResult) -> dict[str, Any]: ...


class BaseStage:
    name = ""
    expected_status = SCHEDULED
    in_flight_status: str | None = None
    success_status: str | None = None
    block_status: str | None = None

    def accepts(self, rnd: Round) -> bool:
        return rnd.status == self.expected_status

    def run(self, ctx: StageContext) -> StageResult:
        raise NotImplementedError

    def success_fields(self, result: StageResult) -> dict[str, Any]:
        return {}

    def block_fields(self, result: StageResult) -> dict[str, Any]:
        return {}

    def _ok(self, payload: dict[str, Any]) -> StageResult:
        return StageResult(stage=self.name, payload=payload)

    def _transient(self, reason: str, payload: dict[str, Any] | None = None) -> StageResult:
        return StageResult(stage=self.name, payload=payload or {}, outcome=TRANSIENT, reason=reason)

    def _blocking(self, reason: str, payload: dict[str, Any] | None = None, escalation: str = "") -> StageResult:
        return StageResult(stage=self.name, payload=payload or {}, outcome=BLOCKING, reason=reason, escalation=escalation)

    def _provider_failure(self, exc: ProviderRequestError, payload: dict[str, Any] | None = None) -> StageResult:
        if exc.retryable:
            return self._transient(f"provider_error: {exc}", payload)
        return self._blocking(f"provider_refused: {exc}", payload)


def _within_tolerance(actual: int, expected: int, tolerance_pct: float) -> bool:
    allowed = expected * max(0.0, tolerance_pct) / 100.0
    return abs(actual - expected) <= allowed


class PreLaunchStage(BaseStage):
    """T-48h: make sure the provider draft exists and announce the round."""

    name = PRELAUNCH
    expected_status = SCHEDULED

    def run(self, ctx: StageContext) -> StageResult:
        rnd = ctx.round
        created = False
        try:
            if rnd.draft_id:
                ctx.provider.get_draft(rnd.draft_id)
            else:
                draft_id = ctx.provider.create_draft(
                    rnd.list_id,
                    rnd.subject,
                    rnd.sender_email,
                    f"{rnd.campaign_name} - Round {rnd.round_number}",
                )
                ctx.store.update_fields(rnd.id, draft_id=draft_id)
                rnd.draft_id = draft_id
                created = True
        except ProviderRequestError as exc:
            return self._provider_failure(exc)
        notification = ctx.notifier.notify(rnd, self.name)
        return self._ok({"draft_id": rnd.draft_id, "draft_created": created, "notification": notification["status"]})


class PreFlightStage(BaseStage):
    """T-1h: verify list, draft and suppression state before launch is allowed."""

    name = PREFLIGHT
    expected_status = SCHEDULED
    success_status = READY
    block_status = BLOCKED

    def run(self, ctx: StageContext) -> StageResult:
        rnd = ctx.round
        checks: dict[str, Any] = {"expected_recipients": rnd.recipient_count}
        if not rnd.draft_id:
            return self._blocking("no provider draft is attached to the round", checks)
        if not rnd.subject.strip() or not rnd.sender_email.strip():
            return self._blocking("subject and sender email are required", checks)
        try:
            draft = ctx.provider.get_draft(rnd.draft_id)
            contacts = ctx.provider.list_contacts(rnd.list_id)
        except ProviderRequestError as exc:
            return self._provider_failure(exc, checks)

        checks["draft_status"] = draft.get("status", "")
        checks["list_size"] = len(contacts)
        if str(draft.get("status", "")).lower() in {"sent", "archived"}:
            return self._blocking(f"draft {rnd.draft_id} is already {draft.get('status')}", checks)
        draft_list = str(draft.get("list_id") or rnd.list_id)
        if draft_list != rnd.list_id:
            return self._blocking(f"draft targets list {draft_list}, round expects {rnd.list_id}", checks)
        if not _within_tolerance(len(contacts), rnd.recipient_count, ctx.config.preflight_list_tolerance_pct):
            return self._blocking(
                f"list {rnd.list_id} has {len(contacts)} contacts, expected {rnd.recipient_count}",
                checks,
            )
        suppressed = ctx.store.suppressed_contact_ids(contacts)
        checks["suppressed_on_list"] = len(suppressed)
        if suppressed:
            return self._blocking(f"list {rnd.list_id} contains {len(suppressed)} suppressed contacts", checks)

        notification = ctx.notifier.notify(rnd, self.name, {"list_size": len(contacts)})
        checks["notification"] = notification["status"]
        return self._ok(checks)

    def block_fields(self, result: StageResult) -> dict[str, Any]:
        return {"blocked_reason": result.reason}


class LaunchWarningStage(BaseStage):
    name = LAUNCH_WARNING
    expected_status = READY

    def run(self, ctx: StageContext) -> StageResult:
        notification = ctx.notifier.notify(ctx.round, self.name)
        return self._ok({"notification": notification["status"]})


class LaunchStage(BaseStage):
    """T+0: trigger the provider send.

    The orchestrator persists ``launching`` before ``run`` is called. Any
    failure that leaves the send possibly accepted is reported as blocking
    with an ambiguous escalation, so it is never retried. A round left in
    ``launching`` by an unacknowledged failure is accepted again.
    """

    name = LAUNCH
    expected_status = READY
    in_flight_status = LAUNCHING
    success_status = SENT
    block_status = BLOCKED

    def accepts(self, rnd: Round) -> bool:
        if rnd.status == LAUNCHING:
            return rnd.send_state == SEND_UNACKNOWLEDGED
        return super().accepts(rnd)

    def run(self, ctx: StageContext) -> StageResult:
        rnd = ctx.round
        if not rnd.draft_id:
            return self._blocking("no provider draft is attached to the round")
        try:
            external_id = ctx.provider.trigger_send(rnd.draft_id)
        except ProviderRequestError as exc:
            if exc.acknowledged:
                return self._blocking(
                    f"send outcome unknown, verify in provider before retrying: {exc}",
                    {"draft_id": rnd.draft_id},
                    escalation=ESCALATION_AMBIGUOUS,
                )
            return self._provider_failure(exc, {"draft_id": rnd.draft_id})
        ctx.state["external_campaign_id"] = external_id
        ctx.store.update_fields(rnd.id, external_campaign_id=external_id)
        notification = ctx.notifier.notify(rnd, self.name, {"external_campaign_id": external_id})
        return self._ok({"external_campaign_id": external_id, "notification": notification["status"]})

    def success_fields(self, result: StageResult) -> dict[str, Any]:
        return {"external_campaign_id": result.payload["external_campaign_id"]}

    def block_fields(self, result: StageResult) -> dict[str, Any]:
        fields: dict[str, Any] = {"blocked_reason": result.reason}
        if result.payload.get("external_campaign_id"):
            fields["external_campaign_id"] = result.payload["external_campaign_id"]
        return fields


def normalize_metrics(raw: dict[str, Any]) -> dict[str, Any]:
    metrics: dict[str, Any] = {key: int(raw.get(key) or 0) for key in METRIC_KEYS}
    delivered = metrics["delivered"] or metrics["sent"]
    metrics["open_rate"] = round(metrics["opened"] / delivered, 4) if delivered else 0.0
    metrics["click_rate"] = round(metrics["clicked"] / delivered, 4) if delivered else 0.0
    metrics["bounce_rate"] = round(metrics["bounced"] / metrics["sent"], 4) if metrics["sent"] else 0.0
    return metrics


class WrapUpStage(BaseStage):
    """T+2h: collect delivery metrics and post the summary."""

    name = WRAPUP
    expected_status = SENT
    success_status = COMPLETED
    block_status = COMPLETED

    def run(self, ctx: StageContext) -> StageResult:
        rnd = ctx.round
        if not rnd.external_campaign_id:
            return self._blocking("round has no provider campaign id")
        try:
            raw = ctx.provider.get_delivery_metrics(rnd.external_campaign_id)
        except ProviderRequestError as exc:
            return self._provider_failure(exc)
        metrics = normalize_metrics(raw)
        notification = ctx.notifier.notify(rnd, self.name, metrics)
        return self._ok({"metrics": metrics, "notification": notification["status"]})

    def success_fields(self, result: StageResult) -> dict[str, Any]:
        return {"metrics": result.payload["metrics"]}


class MaintenanceStage(BaseStage):
    """T+24h: hand the round to the list maintenance orchestrator."""

    name = MAINTENANCE
    expected_status = COMPLETED

    def run(self, ctx: StageContext) -> StageResult:
        rnd = ctx.round
        if not ctx.config.maintenance_enabled:
            return self._ok({"status": "skipped", "reason": "maintenance_disabled"})
        if rnd.maintenance_halted:
            return self._blocking("maintenance is halted for this round until an operator clears it")
        if ctx.maintenance is None:
            return self._blocking("list maintenance orchestrator is not configured")
        report = ctx.maintenance.run_maintenance(rnd, heartbeat=ctx.heartbeat)
        outcome = report.get("outcome")
        if outcome == "success":
            notification = ctx.notifier.notify(rnd, self.name, report)
            return self._ok(dict(report, notification=notification["status"]))
        if outcome == "reconciliation_failed":
            return self._blocking(report.get("reason", "rollback could not be verified"), report, ESCALATION_RECONCILIATION)
        if outcome == "blocked":
            return self._blocking(report.get("reason", "maintenance plan rejected"), report)
        return self._transient(report.get("reason", "maintenance did not complete"), report)

    def block_fields(self, result: StageResult) -> dict[str, Any]:
        if result.escalation == ESCALATION_RECONCILIATION:
            return {"maintenance_halted": True}
        return {}


def default_lifecycle_stages() -> list[Stage]:
    return [
        PreLaunchStage(),
        PreFlightStage(),
        LaunchWarningStage(),
        LaunchStage(),
        WrapUpStage(),
        MaintenanceStage(),
    ]
