from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any

from .models import StageJob
from .queue import StageJobQueue
from .runtime import LifecycleOrchestrator


class StageWorker:
    def __init__(
        self,
        orchestrator: LifecycleOrchestrator,
        queue: StageJobQueue,
        max_attempts: int = 3,
        concurrency: int = 1,
        retry_base_seconds: int = 30,
        store: Any = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.queue = queue
        self.store = store
        self.max_attempts = max_attempts
        self.concurrency = max(1, concurrency)
        self.retry_base_seconds = retry_base_seconds

    def _handle(self, job: StageJob) -> dict[str, Any]:
        try:
            return self.orchestrator.handle_job(job)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            if job.attempt >= self.max_attempts:
                self.queue.mark_dead_letter(job.job_id, error)
                return {"job_id": job.job_id, "status": "dead_letter", "error": error}
            self.queue.mark_retry(job.job_id, error, self.retry_base_seconds)
            return {"job_id": job.job_id, "status": "retry", "error": error}

    def process_once(self, now: datetime | None = None) -> dict[str, Any] | None:
        jobs = self.queue.claim_due(limit=1, now=now)
        if not jobs:
            return None
        return self._handle(jobs[0])

    def process_batch(self, now: datetime | None = None) -> list[dict[str, Any]]:
        jobs = self.queue.claim_due(limit=self.concurrency, now=now)
        if not jobs:
            return []
        if len(jobs) == 1:
            return [self._handle(jobs[0])]
        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(jobs))) as pool:
            return list(pool.map(self._handle, jobs))

    def run_until_idle(self, now: datetime | None = None, max_jobs: int = 1000) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        while len(results) < max_jobs:
            result = self.process_once(now=now)
            if result is None:
                break
            results.append(result)
        return results

    def recover_stale_once(self, stale_after_seconds: int = 900, limit: int = 100) -> int:
        # A job whose round lease is still live is running, however old its claim.
        leased = self.store.live_leases() if self.store is not None else set()
        return self.queue.recover_stale_running(
            stale_after_seconds=stale_after_seconds,
            max_attempts=self.max_attempts,
            limit=limit,
            skip_round_ids=leased,
        )
