from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any

from .cache import RoundStatusCache
from .config import LifecycleConfig
from .errors import InvalidTransitionError, LeaseLostError
from .models import (
    BLOCKED,
    BLOCKING,
    CANCELLED,
    COMPLETED,
    LAUNCH,
    LAUNCHING,
    MAINTENANCE,
    OK,
    READY,
    ROUND_STATUSES,
    SCHEDULED,
    SEND_UNACKNOWLEDGED,
    SENT,
    TRANSIENT,
    Round,
    StageJob,
    StageResult,
    parse_utc,
    utc_now,
)
from .queue import StageJobQueue
from .scheduler import JobScheduler
from .stages import Stage, StageContext, default_lifecycle_stages
from .store import RoundStore, new_round_id

LEASE_DEFER_SECONDS = 5
RESCHEDULABLE_STATUSES = {SCHEDULED, READY}
MIN_RESUME_LEAD = timedelta(minutes=1)


class LifecycleOrchestrator:
    """Advances rounds through their steps as queued jobs come due.

    Every step runs under a per-round lease and every status change is a
    compare-and-set against the step's expected status, so a duplicate or
    late job is discarded instead of repeating a side effect.
    """

    def __init__(
        self,
        store: RoundStore,
        queue: StageJobQueue,
        provider: Any,
        notifier: Any,
        config: LifecycleConfig | None = None,
        maintenance: Any = None,
        stages: list[Stage] | None = None,
        cache: RoundStatusCache | None = None,
        owner: str | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.provider = provider
        self.notifier = notifier
        self.config = config or LifecycleConfig()
        self.maintenance = maintenance
        self.stages = {stage.name: stage for stage in (stages or default_lifecycle_stages())}
        self.scheduler = JobScheduler(queue, self.config)
        self.cache = cache
        self.owner = owner or f"orchestrator-{uuid.uuid4().hex[:8]}"

    # job execution

    def _record(self, round_id: str, result: StageResult) -> None:
        self.store.append_event(round_id, result)
        if self.cache is not None:
            self.cache.invalidate(round_id)

    def _discard(self, job: StageJob, reason: str, rnd: Round | None = None) -> dict[str, Any]:
        self.queue.mark_discarded(job.job_id, reason)
        self._record(job.round_id, StageResult(stage=job.stage, payload={"job_id": job.job_id}, outcome="discarded", reason=reason))
        if rnd is not None and job.stage == LAUNCH and rnd.status == LAUNCHING and rnd.send_state != SEND_UNACKNOWLEDGED:
            return self._interrupted_launch(job, rnd)
        return {"status": "discarded", "job_id": job.job_id, "round_id": job.round_id, "stage": job.stage, "reason": reason}

    def _interrupted_launch(self, job: StageJob, rnd: Round) -> dict[str, Any]:
        # Only reachable under the lease, so no send is in flight for this round.
        reason = "launch was interrupted after launching was recorded; verify the send in the provider"
        blocked = self.store.transition(rnd.id, [LAUNCHING], BLOCKED, blocked_reason=reason)
        self.notifier.alert(blocked or rnd, LAUNCH, reason, {"Escalation": "ambiguous"})
        return {"status": "escalated", "job_id": job.job_id, "round_id": rnd.id, "stage": LAUNCH, "reason": reason}

    def handle_job(self, job: StageJob) -> dict[str, Any]:
        stage = self.stages.get(job.stage)
        if stage is None:
            self.queue.mark_dead_letter(job.job_id, f"unknown_stage:{job.stage}")
            return {"status": "dead_letter", "job_id": job.job_id, "reason": f"unknown_stage:{job.stage}"}

        lease_owner = f"{self.owner}:{job.job_id}"
        if not self.store.acquire_lease(job.round_id, lease_owner, self.config.lease_ttl_seconds):
            self.queue.defer(job.job_id, "round_lease_busy", LEASE_DEFER_SECONDS)
            return {"status": "deferred", "job_id": job.job_id, "round_id": job.round_id, "stage": job.stage}
        try:
            return self._run_locked(job, stage, lease_owner)
        finally:
            self.store.release_lease(job.round_id, lease_owner)

    def _renew_lease(self, round_id: str, lease_owner: str) -> None:
        if not self.store.acquire_lease(round_id, lease_owner, self.config.lease_ttl_seconds):
            raise LeaseLostError(f"lease on {round_id} was taken over while {lease_owner} was running")

    def _run_locked(self, job: StageJob, stage: Stage, lease_owner: str) -> dict[str, Any]:
        rnd = self.store.get_round(job.round_id)
        if rnd is None:
            return self._discard(job, "round_not_found")
        if not stage.accepts(rnd):
            return self._discard(job, f"status_mismatch: expected {stage.expected_status}, found {rnd.status}", rnd)

        active_status = stage.expected_status
        if stage.in_flight_status:
            # The marker is cleared on claim, so a crash during this attempt
            # reads as an interrupted launch.
            claimed = self.store.transition(rnd.id, [rnd.status], stage.in_flight_status, send_state="")
            if claimed is None:
                return self._discard(job, "status_changed_before_claim")
            rnd = claimed
            active_status = stage.in_flight_status
            if self.cache is not None:
                self.cache.invalidate(rnd.id)

        ctx = StageContext(
            round=rnd,
            store=self.store,
            provider=self.provider,
            notifier=self.notifier,
            config=self.config,
            maintenance=self.maintenance,
            attempt=job.attempt,
            heartbeat=lambda: self._renew_lease(job.round_id, lease_owner),
        )
        try:
            result = stage.run(ctx)
        except Exception as exc:
            if stage.in_flight_status:
                result = StageResult(
                    stage=stage.name,
                    payload=dict(ctx.state),
                    outcome=BLOCKING,
                    reason=f"unexpected error while {stage.in_flight_status}: {type(exc).__name__}: {exc}",
                    escalation="ambiguous",
                )
            else:
                result = StageResult(
                    stage=stage.name,
                    payload=dict(ctx.state),
                    outcome=TRANSIENT,
                    reason=f"{type(exc).__name__}: {exc}",
                )
        self._record(rnd.id, result)

        if result.outcome == OK:
            return self._complete(job, stage, rnd, active_status, result)
        if result.outcome == TRANSIENT and job.attempt < self.config.max_stage_attempts:
            return self._retry(job, stage, rnd, result)
        if result.outcome == TRANSIENT:
            result = StageResult(
                stage=stage.name,
                payload=result.payload,
                outcome=BLOCKING,
                reason=f"retries exhausted after {job.attempt} attempts: {result.reason}",
                escalation=result.escalation,
            )
            self._record(rnd.id, result)
        return self._block(job, stage, rnd, active_status, result)

    def _complete(self, job: StageJob, stage: Stage, rnd: Round, active_status: str, result: StageResult) -> dict[str, Any]:
        fields = stage.success_fields(result)
        status = rnd.status
        if stage.success_status:
            updated = self.store.transition(rnd.id, [active_status], stage.success_status, **fields)
            if updated is None:
                # Cancelled or overridden while the step ran; keep the record.
                if fields:
                    self.store.update_fields(rnd.id, **fields)
                current = self.store.get_round(rnd.id)
                self.queue.mark_done(job.job_id)
                if current is not None and stage.in_flight_status:
                    self.notifier.alert(
                        current,
                        stage.name,
                        f"{stage.name} succeeded but the round moved to {current.status}; recorded result {fields}",
                    )
                return {
                    "status": "superseded",
                    "job_id": job.job_id,
                    "round_id": rnd.id,
                    "stage": stage.name,
                    "round_status": current.status if current else None,
                }
            status = updated.status
        elif fields:
            self.store.update_fields(rnd.id, **fields)
        self.queue.mark_done(job.job_id)
        return {"status": "done", "job_id": job.job_id, "round_id": rnd.id, "stage": stage.name, "round_status": status}

    def _retry(self, job: StageJob, stage: Stage, rnd: Round, result: StageResult) -> dict[str, Any]:
        if stage.in_flight_status:
            # Not acknowledged by the provider: stay in flight, flagged for retry.
            self.store.transition(
                rnd.id, [stage.in_flight_status], stage.in_flight_status, send_state=SEND_UNACKNOWLEDGED
            )
        retry_at = self.queue.mark_retry(job.job_id, result.reason, self.config.retry_base_seconds)
        return {
            "status": "retry",
            "job_id": job.job_id,
            "round_id": rnd.id,
            "stage": stage.name,
            "attempt": job.attempt,
            "retry_at": retry_at.isoformat() if retry_at else None,
            "error": result.reason,
        }

    def _block(self, job: StageJob, stage: Stage, rnd: Round, active_status: str, result: StageResult) -> dict[str, Any]:
        fields = stage.block_fields(result)
        current = rnd
        if stage.block_status:
            moved = self.store.transition(rnd.id, [active_status], stage.block_status, **fields)
            current = moved or self.store.get_round(rnd.id) or rnd
        elif fields:
            current = self.store.update_fields(rnd.id, **fields) or rnd
        details = {"Attempt": job.attempt}
        if result.escalation:
            details["Escalation"] = result.escalation
        self.notifier.alert(current, stage.name, result.reason, details)
        self.queue.mark_failed(job.job_id, result.reason)
        if self.cache is not None:
            self.cache.invalidate(rnd.id)
        return {
            "status": "failed",
            "job_id": job.job_id,
            "round_id": rnd.id,
            "stage": stage.name,
            "round_status": current.status,
            "escalation": result.escalation,
            "error": result.reason,
        }

    # operator surface

    def register_campaign(
        self,
        campaign_name: str,
        rounds: list[dict[str, Any]],
        notification_channel: str = "",
        now: datetime | None = None,
    ) -> dict[str, Any]:
        campaign_name = campaign_name.strip()
        if not campaign_name:
            raise ValueError("campaign_name is required")
        if not rounds:
            raise ValueError("at least one round is required")
        if self.store.campaign_exists(campaign_name):
            raise ValueError(f"campaign {campaign_name!r} is already registered")

        created: list[Round] = []
        previous_at: datetime | None = None
        for number, spec in enumerate(rounds, start=1):
            scheduled_at = parse_utc(spec["scheduled_at"])
            if previous_at is not None and scheduled_at <= previous_at:
                raise ValueError(f"round {number} must launch after round {number - 1}")
            previous_at = scheduled_at
            recipient_count = int(spec["recipient_count"])
            if recipient_count < 0:
                raise ValueError(f"round {number} recipient_count must be >= 0")
            list_id = str(spec.get("list_id") or "").strip()
            if not list_id:
                raise ValueError(f"round {number} list_id is required")
            created.append(
                Round(
                    id=new_round_id(),
                    campaign_name=campaign_name,
                    round_number=number,
                    scheduled_at=scheduled_at,
                    list_id=list_id,
                    recipient_count=recipient_count,
                    draft_id=spec.get("draft_id") or None,
                    subject=str(spec.get("subject") or ""),
                    sender_email=str(spec.get("sender_email") or ""),
                    notification_channel=notification_channel or str(spec.get("notification_channel") or ""),
                )
            )
        self.store.create_rounds(created)
        schedules = [self.scheduler.schedule_round(rnd, now=now) for rnd in created]
        return {
            "campaign_name": campaign_name,
            "rounds": [rnd.to_dict() for rnd in created],
            "schedules": schedules,
        }

    def _require_round(self, round_id: str) -> Round:
        rnd = self.store.get_round(round_id)
        if rnd is None:
            raise ValueError(f"round {round_id!r} not found")
        return rnd

    def cancel_round(self, round_id: str) -> dict[str, Any]:
        rnd = self._require_round(round_id)
        if rnd.status == CANCELLED:
            return {"round_id": round_id, "status": CANCELLED, "cancelled_jobs": 0}
        cancelled = self.store.transition(round_id, ROUND_STATUSES - {CANCELLED}, CANCELLED)
        if cancelled is None:
            raise InvalidTransitionError(f"round {round_id} changed while cancelling; retry")
        jobs = self.scheduler.cancel_jobs(round_id)
        self._record(round_id, StageResult(stage="operator", payload={"from": rnd.status, "cancelled_jobs": jobs}, reason="cancelled"))
        return {"round_id": round_id, "status": CANCELLED, "previous_status": rnd.status, "cancelled_jobs": jobs}

    def reschedule_round(self, round_id: str, new_scheduled_at: str | datetime, now: datetime | None = None) -> dict[str, Any]:
        rnd = self._require_round(round_id)
        if rnd.status not in RESCHEDULABLE_STATUSES:
            raise InvalidTransitionError(f"round {round_id} is {rnd.status}; only scheduled or ready rounds can be rescheduled")
        new_at = parse_utc(new_scheduled_at)
        siblings = [r for r in self.store.list_rounds(rnd.campaign_name) if r.id != rnd.id and r.status != CANCELLED]
        for other in siblings:
            if other.round_number < rnd.round_number and other.scheduled_at >= new_at:
                raise ValueError(f"round {rnd.round_number} must launch after round {other.round_number}")
            if other.round_number > rnd.round_number and other.scheduled_at <= new_at:
                raise ValueError(f"round {rnd.round_number} must launch before round {other.round_number}")
        updated = self.store.update_fields(round_id, scheduled_at=new_at)
        summary = self.scheduler.reschedule(updated or rnd, new_at, now=now)
        self._record(round_id, StageResult(stage="operator", payload=summary, reason="rescheduled"))
        return summary

    def trigger_stage(self, round_id: str, stage: str, now: datetime | None = None) -> dict[str, Any]:
        rnd = self._require_round(round_id)
        if stage not in self.stages:
            raise ValueError(f"unknown stage {stage!r}")
        expected = self.stages[stage].expected_status
        if not self.stages[stage].accepts(rnd):
            raise InvalidTransitionError(f"{stage} needs status {expected}, round {round_id} is {rnd.status}")
        now = now or utc_now()
        job_id, created = self.scheduler.register_job(round_id, stage, now)
        if not created:
            self.queue.fire_now(job_id)
        return {"round_id": round_id, "stage": stage, "job_id": job_id, "created": created}

    def resume_blocked(
        self,
        round_id: str,
        new_scheduled_at: str | datetime | None = None,
        external_campaign_id: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Operator release of a blocked round.

        With ``external_campaign_id`` the operator confirms the provider sent
        the round, which moves it to ``sent``. Otherwise the round returns to
        ``scheduled`` and pre-flight runs again before any launch.
        """
        rnd = self._require_round(round_id)
        if rnd.status != BLOCKED:
            raise InvalidTransitionError(f"round {round_id} is {rnd.status}, not blocked")
        now = now or utc_now()
        if external_campaign_id:
            resumed = self.store.transition(
                round_id, [BLOCKED], SENT, external_campaign_id=external_campaign_id, blocked_reason=""
            )
            if resumed is None:
                raise InvalidTransitionError(f"round {round_id} changed while resuming; retry")
            summary = self.scheduler.schedule_round(resumed, now=now)
        else:
            scheduled_at = parse_utc(new_scheduled_at) if new_scheduled_at else rnd.scheduled_at
            if scheduled_at <= now + MIN_RESUME_LEAD:
                raise ValueError("launch time has passed; pass a new launch time to resume")
            resumed = self.store.transition(round_id, [BLOCKED], SCHEDULED, scheduled_at=scheduled_at, blocked_reason="")
            if resumed is None:
                raise InvalidTransitionError(f"round {round_id} changed while resuming; retry")
            summary = self.scheduler.reschedule(resumed, scheduled_at, now=now)
        self._record(round_id, StageResult(stage="operator", payload=summary, reason=f"resumed to {resumed.status}"))
        return {"round_id": round_id, "status": resumed.status, "schedule": summary}

    def clear_maintenance_halt(self, round_id: str, now: datetime | None = None) -> dict[str, Any]:
        rnd = self._require_round(round_id)
        if not rnd.maintenance_halted:
            return {"round_id": round_id, "maintenance_halted": False, "job_id": None}
        self.store.update_fields(round_id, maintenance_halted=False)
        job_id = None
        if rnd.status == COMPLETED and self.config.maintenance_enabled:
            job_id, _ = self.scheduler.register_job(round_id, MAINTENANCE, now or utc_now())
        self._record(round_id, StageResult(stage="operator", payload={"job_id": job_id}, reason="maintenance_halt_cleared"))
        return {"round_id": round_id, "maintenance_halted": False, "job_id": job_id}

    def round_status(self, round_id: str) -> dict[str, Any]:
        if self.cache is not None:
            cached = self.cache.get(round_id)
            if cached is not None:
                return cached
        rnd = self._require_round(round_id)
        view = {
            "round": rnd.to_dict(),
            "jobs": self.scheduler.job_status(round_id),
            "maintenance_logs": [
                {
                    "id": log.id,
                    "outcome": log.outcome,
                    "suppressed_count": log.suppressed_count,
                    "moves_applied": log.moves_applied,
                    "rollback_of": log.rollback_of,
                    "error": log.error,
                    "created_at": log.created_at,
                }
                for log in self.store.list_maintenance_logs(round_id)
            ],
        }
        if self.cache is not None:
            self.cache.put(round_id, view)
        return view

    def recover(self, now: datetime | None = None) -> dict[str, Any]:
        """Process-start recovery: re-derive jobs and report lost rounds."""
        now = now or utc_now()
        rounds = self.store.list_rounds()
        resynced = self.scheduler.resync(rounds, now=now)
        lost = self.scheduler.find_lost_rounds(self.store.list_rounds(), now=now)
        for rnd in lost:
            self.notifier.alert(rnd, rnd.status, "round is past its launch time with no job that can advance it")
        return {
            "resynced": len(resynced),
            "registered": sum(len(row["registered"]) for row in resynced),
            "lost_rounds": [rnd.id for rnd in lost],
        }
