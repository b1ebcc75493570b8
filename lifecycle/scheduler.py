from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from .config import LifecycleConfig
from .models import (
    ADVANCING_STAGES,
    JOB_DEAD_LETTER,
    JOB_DISCARDED,
    JOB_DONE,
    JOB_FAILED,
    JOB_QUEUED,
    JOB_RUNNING,
    MAINTENANCE,
    STAGES,
    Round,
    StageJob,
    parse_utc,
    utc_now,
)
from .queue import StageJobQueue

SETTLED_JOB_STATUSES = {JOB_DONE, JOB_FAILED, JOB_DEAD_LETTER, JOB_DISCARDED}
LOST_SCAN_JOB_STATUSES = {JOB_QUEUED, JOB_RUNNING, JOB_FAILED}


class JobScheduler:
    """Registers the time-triggered steps of each round on the durable queue.

    Registration is idempotent per (round, step): the queue keeps at most one
    queued or running job for the pair, so ``schedule_round`` and ``resync``
    can be re-run after any restart without duplicating work.
    """

    def __init__(self, queue: StageJobQueue, config: LifecycleConfig | None = None) -> None:
        self.queue = queue
        self.config = config or LifecycleConfig()

    def stages(self) -> list[str]:
        if self.config.maintenance_enabled:
            return list(STAGES)
        return [stage for stage in STAGES if stage != MAINTENANCE]

    def fire_times(self, scheduled_at: datetime) -> dict[str, datetime]:
        launch_at = parse_utc(scheduled_at)
        return {stage: launch_at + self.config.offset(stage) for stage in self.stages()}

    def register_job(self, round_id: str, stage: str, fire_at: datetime) -> tuple[str, bool]:
        return self.queue.register(round_id, stage, fire_at)

    def _settled_stages(self, round_id: str) -> set[str]:
        return {job.stage for job in self.queue.jobs_for_round(round_id) if job.status in SETTLED_JOB_STATUSES}

    def schedule_round(self, rnd: Round, now: datetime | None = None, replay_future: bool = False) -> dict[str, Any]:
        """Register every step of ``rnd`` that has not already run.

        Steps whose fire time has passed are registered to fire now; whether
        they still apply is decided by the status check when they run. With
        ``replay_future`` a step that already ran is registered again when its
        fire time lies in the future.
        """
        now = now or utc_now()
        settled = self._settled_stages(rnd.id)
        registered: list[str] = []
        existing: list[str] = []
        skipped: list[str] = []
        for stage, fire_at in self.fire_times(rnd.scheduled_at).items():
            if stage in settled and not (replay_future and fire_at > now):
                skipped.append(stage)
                continue
            _, created = self.register_job(rnd.id, stage, max(fire_at, now))
            (registered if created else existing).append(stage)
        return {
            "round_id": rnd.id,
            "registered": registered,
            "existing": existing,
            "skipped": skipped,
        }

    def cancel_jobs(self, round_id: str) -> int:
        return self.queue.cancel_for_round(round_id)

    def reschedule(self, rnd: Round, new_scheduled_at: datetime, now: datetime | None = None) -> dict[str, Any]:
        cancelled = self.cancel_jobs(rnd.id)
        rnd.scheduled_at = parse_utc(new_scheduled_at)
        summary = self.schedule_round(rnd, now=now, replay_future=True)
        summary["cancelled"] = cancelled
        return summary

    def resync(self, rounds: Iterable[Round], now: datetime | None = None) -> list[dict[str, Any]]:
        now = now or utc_now()
        return [self.schedule_round(rnd, now=now) for rnd in rounds if not rnd.is_terminal]

    def find_lost_rounds(self, rounds: Iterable[Round], now: datetime | None = None) -> list[Round]:
        """Rounds past their launch time with no job left that can advance them."""
        now = now or utc_now()
        tracked = self.queue.stages_by_round(LOST_SCAN_JOB_STATUSES)
        lost: list[Round] = []
        for rnd in rounds:
            if rnd.status not in ADVANCING_STAGES or parse_utc(rnd.scheduled_at) > now:
                continue
            if not ADVANCING_STAGES[rnd.status] & tracked.get(rnd.id, set()):
                lost.append(rnd)
        return lost

    def job_status(self, round_id: str) -> dict[str, dict[str, Any]]:
        latest: dict[str, StageJob] = {}
        for job in self.queue.jobs_for_round(round_id):
            current = latest.get(job.stage)
            if current is None or not current.is_active:
                latest[job.stage] = job
        return {
            stage: {
                "job_id": job.job_id,
                "status": job.status,
                "fire_at": job.fire_at.isoformat(),
                "attempt": job.attempt,
                "last_error": job.last_error,
            }
            for stage, job in latest.items()
        }
