from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta
from typing import Iterable, Protocol

from .db import Database
from .errors import SchedulingError
from .models import (
    JOB_CANCELLED,
    JOB_DEAD_LETTER,
    JOB_DISCARDED,
    JOB_DONE,
    JOB_FAILED,
    JOB_QUEUED,
    JOB_RUNNING,
    StageJob,
    parse_utc,
    utc_now,
)


def _next_backoff(attempt: int, base_seconds: int = 30) -> timedelta:
    return timedelta(seconds=max(1, base_seconds) * (2 ** max(0, attempt - 1)))


def _new_job_id(round_id: str, stage: str) -> str:
    return f"{stage}-{round_id}-{uuid.uuid4().hex[:8]}"


class StageJobQueue(Protocol):
    def register(self, round_id: str, stage: str, fire_at: datetime) -> tuple[str, bool]: ...

    def claim_due(self, limit: int = 1, now: datetime | None = None) -> list[StageJob]: ...

    def get_job(self, job_id: str) -> StageJob | None: ...

    def jobs_for_round(self, round_id: str) -> list[StageJob]: ...

    def mark_done(self, job_id: str) -> None: ...

    def mark_discarded(self, job_id: str, reason: str) -> None: ...

    def mark_failed(self, job_id: str, error: str) -> None: ...

    def mark_retry(self, job_id: str, error: str, retry_base_seconds: int = 30) -> datetime | None: ...

    def defer(self, job_id: str, reason: str, delay_seconds: int = 5) -> None: ...

    def cancel_for_round(self, round_id: str) -> int: ...

    def stages_by_round(self, statuses: Iterable[str]) -> dict[str, set[str]]: ...

    def fire_now(self, job_id: str) -> None: ...

    def recover_stale_running(
        self,
        stale_after_seconds: int = 900,
        max_attempts: int = 3,
        limit: int = 100,
        skip_round_ids: Iterable[str] = (),
    ) -> int: ...


class InMemoryStageJobQueue:
    def __init__(self) -> None:
        self.jobs: list[StageJob] = []
        self.registrations = 0
        self._lock = threading.Lock()

    def _find(self, job_id: str) -> StageJob | None:
        for job in self.jobs:
            if job.job_id == job_id:
                return job
        return None

    def register(self, round_id: str, stage: str, fire_at: datetime) -> tuple[str, bool]:
        with self._lock:
            self.registrations += 1
            for job in self.jobs:
                if job.round_id == round_id and job.stage == stage and job.is_active:
                    return job.job_id, False
            job = StageJob(job_id=_new_job_id(round_id, stage), round_id=round_id, stage=stage, fire_at=parse_utc(fire_at))
            self.jobs.append(job)
            return job.job_id, True

    def claim_due(self, limit: int = 1, now: datetime | None = None) -> list[StageJob]:
        now = now or utc_now()
        claimed: list[StageJob] = []
        with self._lock:
            due = sorted(
                (job for job in self.jobs if job.status == JOB_QUEUED and job.fire_at <= now),
                key=lambda job: job.fire_at,
            )
            for job in due[: max(1, limit)]:
                job.status = JOB_RUNNING
                job.attempt += 1
                job.locked_at = utc_now()
                claimed.append(StageJob(**vars(job)))
        return claimed

    def get_job(self, job_id: str) -> StageJob | None:
        with self._lock:
            job = self._find(job_id)
            return StageJob(**vars(job)) if job else None

    def jobs_for_round(self, round_id: str) -> list[StageJob]:
        with self._lock:
            return [StageJob(**vars(job)) for job in self.jobs if job.round_id == round_id]

    def _finish(self, job_id: str, status: str, error: str = "") -> None:
        with self._lock:
            job = self._find(job_id)
            if job is None:
                return
            job.status = status
            job.locked_at = None
            if error:
                job.last_error = error

    def mark_done(self, job_id: str) -> None:
        self._finish(job_id, JOB_DONE)

    def mark_discarded(self, job_id: str, reason: str) -> None:
        self._finish(job_id, JOB_DISCARDED, reason)

    def mark_failed(self, job_id: str, error: str) -> None:
        self._finish(job_id, JOB_FAILED, error)

    def mark_dead_letter(self, job_id: str, error: str) -> None:
        self._finish(job_id, JOB_DEAD_LETTER, error)

    def mark_retry(self, job_id: str, error: str, retry_base_seconds: int = 30) -> datetime | None:
        with self._lock:
            job = self._find(job_id)
            if job is None:
                return None
            job.status = JOB_QUEUED
            job.locked_at = None
            job.last_error = error
            job.fire_at = utc_now() + _next_backoff(job.attempt, retry_base_seconds)
            return job.fire_at

    def defer(self, job_id: str, reason: str, delay_seconds: int = 5) -> None:
        with self._lock:
            job = self._find(job_id)
            if job is None:
                return
            job.status = JOB_QUEUED
            job.attempt = max(0, job.attempt - 1)
            job.locked_at = None
            job.last_error = reason
            job.fire_at = utc_now() + timedelta(seconds=max(0, delay_seconds))

    def cancel_for_round(self, round_id: str) -> int:
        cancelled = 0
        with self._lock:
            for job in self.jobs:
                if job.round_id == round_id and job.status == JOB_QUEUED:
                    job.status = JOB_CANCELLED
                    cancelled += 1
        return cancelled

    def stages_by_round(self, statuses: Iterable[str]) -> dict[str, set[str]]:
        wanted = set(statuses)
        found: dict[str, set[str]] = {}
        with self._lock:
            for job in self.jobs:
                if job.status in wanted:
                    found.setdefault(job.round_id, set()).add(job.stage)
        return found

    def fire_now(self, job_id: str) -> None:
        with self._lock:
            job = self._find(job_id)
            if job is not None and job.status == JOB_QUEUED:
                job.fire_at = utc_now()

    def recover_stale_running(
        self,
        stale_after_seconds: int = 900,
        max_attempts: int = 3,
        limit: int = 100,
        skip_round_ids: Iterable[str] = (),
    ) -> int:
        cutoff = utc_now() - timedelta(seconds=max(1, stale_after_seconds))
        skip = set(skip_round_ids)
        recovered = 0
        with self._lock:
            for job in self.jobs:
                if recovered >= limit:
                    break
                if job.status != JOB_RUNNING or not job.locked_at or job.locked_at > cutoff:
                    continue
                if job.round_id in skip:
                    continue
                job.status = JOB_DEAD_LETTER if job.attempt >= max_attempts else JOB_QUEUED
                job.locked_at = None
                job.worker_id = None
                job.last_error = "stale_timeout_recovered"
                recovered += 1
        return recovered


JOB_COLUMNS = "job_id, round_id, stage, fire_at, status, attempt, last_error, locked_at, worker_id"


def _job_from_row(row: tuple) -> StageJob:
    return StageJob(
        job_id=row[0],
        round_id=row[1],
        stage=row[2],
        fire_at=parse_utc(row[3]),
        status=row[4],
        attempt=int(row[5]),
        last_error=row[6] or "",
        locked_at=row[7],
        worker_id=row[8],
    )


class PostgresStageJobQueue:
    def __init__(self, db: Database, worker_id: str = "lifecycle-worker-1") -> None:
        self.db = db
        self.worker_id = worker_id

    def register(self, round_id: str, stage: str, fire_at: datetime) -> tuple[str, bool]:
        import psycopg

        job_id = _new_job_id(round_id, stage)
        try:
            with self.db.transaction() as cur:
                cur.execute(
                    """
                    insert into stage_jobs (job_id, round_id, stage, fire_at, status, attempt, created_at, updated_at)
                    values (%s, %s, %s, %s, 'queued', 0, now(), now())
                    on conflict (round_id, stage) where status in ('queued', 'running') do nothing
                    returning job_id
                    """,
                    (job_id, round_id, stage, fire_at),
                )
                if cur.fetchone():
                    return job_id, True
                cur.execute(
                    """
                    select job_id
                    from stage_jobs
                    where round_id = %s
                      and stage = %s
                      and status in ('queued', 'running')
                    """,
                    (round_id, stage),
                )
                row = cur.fetchone()
        except psycopg.Error as exc:
            raise SchedulingError(f"could not register {stage} for {round_id}: {exc}") from exc
        if not row:
            raise SchedulingError(f"could not register {stage} for {round_id}: no active job after conflict")
        return row[0], False

    def claim_due(self, limit: int = 1, now: datetime | None = None) -> list[StageJob]:
        with self.db.transaction() as cur:
            cur.execute(
                f"""
                with candidate as (
                    select job_id
                    from stage_jobs
                    where status = 'queued'
                      and fire_at <= coalesce(%s::timestamptz, now())
                    order by fire_at asc, created_at asc
                    for update skip locked
                    limit %s
                )
                update stage_jobs s
                set status = 'running',
                    attempt = s.attempt + 1,
                    locked_at = now(),
                    worker_id = %s,
                    updated_at = now()
                from candidate c
                where s.job_id = c.job_id
                returning {", ".join(f"s.{col.strip()}" for col in JOB_COLUMNS.split(","))}
                """,
                (now, max(1, int(limit)), self.worker_id),
            )
            rows = cur.fetchall()
        return [_job_from_row(row) for row in rows]

    def get_job(self, job_id: str) -> StageJob | None:
        with self.db.transaction() as cur:
            cur.execute(f"select {JOB_COLUMNS} from stage_jobs where job_id = %s", (job_id,))
            row = cur.fetchone()
        return _job_from_row(row) if row else None

    def jobs_for_round(self, round_id: str) -> list[StageJob]:
        with self.db.transaction() as cur:
            cur.execute(
                f"select {JOB_COLUMNS} from stage_jobs where round_id = %s order by fire_at asc, created_at asc",
                (round_id,),
            )
            rows = cur.fetchall()
        return [_job_from_row(row) for row in rows]

    def _finish(self, job_id: str, status: str, error: str = "") -> None:
        with self.db.transaction() as cur:
            cur.execute(
                """
                update stage_jobs
                set status = %s,
                    last_error = case when %s = '' then last_error else %s end,
                    locked_at = null,
                    updated_at = now()
                where job_id = %s
                """,
                (status, error, error, job_id),
            )

    def mark_done(self, job_id: str) -> None:
        self._finish(job_id, JOB_DONE)

    def mark_discarded(self, job_id: str, reason: str) -> None:
        self._finish(job_id, JOB_DISCARDED, reason)

    def mark_failed(self, job_id: str, error: str) -> None:
        self._finish(job_id, JOB_FAILED, error)

    def mark_dead_letter(self, job_id: str, error: str) -> None:
        self._finish(job_id, JOB_DEAD_LETTER, error)

    def mark_retry(self, job_id: str, error: str, retry_base_seconds: int = 30) -> datetime | None:
        with self.db.transaction() as cur:
            cur.execute("select attempt from stage_jobs where job_id = %s", (job_id,))
            row = cur.fetchone()
            if not row:
                return None
            fire_at = utc_now() + _next_backoff(int(row[0]), retry_base_seconds)
            cur.execute(
                """
                update stage_jobs
                set status = 'queued',
                    last_error = %s,
                    locked_at = null,
                    fire_at = %s,
                    updated_at = now()
                where job_id = %s
                """,
                (error, fire_at, job_id),
            )
        return fire_at

    def defer(self, job_id: str, reason: str, delay_seconds: int = 5) -> None:
        with self.db.transaction() as cur:
            cur.execute(
                """
                update stage_jobs
                set status = 'queued',
                    attempt = greatest(attempt - 1, 0),
                    last_error = %s,
                    locked_at = null,
                    fire_at = now() + make_interval(secs => %s),
                    updated_at = now()
                where job_id = %s
                """,
                (reason, max(0, int(delay_seconds)), job_id),
            )

    def cancel_for_round(self, round_id: str) -> int:
        with self.db.transaction() as cur:
            cur.execute(
                """
                update stage_jobs
                set status = 'cancelled',
                    updated_at = now()
                where round_id = %s
                  and status = 'queued'
                returning job_id
                """,
                (round_id,),
            )
            return len(cur.fetchall())

    def stages_by_round(self, statuses: Iterable[str]) -> dict[str, set[str]]:
        found: dict[str, set[str]] = {}
        with self.db.transaction() as cur:
            cur.execute("select distinct round_id, stage from stage_jobs where status = any(%s)", (list(statuses),))
            for round_id, stage in cur.fetchall():
                found.setdefault(round_id, set()).add(stage)
        return found

    def fire_now(self, job_id: str) -> None:
        with self.db.transaction() as cur:
            cur.execute(
                """
                update stage_jobs
                set fire_at = now(),
                    updated_at = now()
                where job_id = %s
                  and status = 'queued'
                """,
                (job_id,),
            )

    def recover_stale_running(
        self,
        stale_after_seconds: int = 900,
        max_attempts: int = 3,
        limit: int = 100,
        skip_round_ids: Iterable[str] = (),
    ) -> int:
        stale_after_seconds = max(1, int(stale_after_seconds))
        with self.db.transaction() as cur:
            cur.execute(
                """
                with candidate as (
                    select job_id, attempt
                    from stage_jobs
                    where status = 'running'
                      and locked_at is not null
                      and locked_at <= (now() - make_interval(secs => %s))
                      and not (round_id = any(%s))
                      and not exists (
                          select 1
                          from round_leases l
                          where l.round_id = stage_jobs.round_id
                            and l.expires_at > now()
                      )
                    order by locked_at asc
                    limit %s
                    for update skip locked
                )
                update stage_jobs s
                set status = case when c.attempt >= %s then 'dead_letter' else 'queued' end,
                    last_error = 'stale_timeout_recovered',
                    locked_at = null,
                    worker_id = null,
                    fire_at = now(),
                    updated_at = now()
                from candidate c
                where s.job_id = c.job_id
                returning s.job_id
                """,
                (stale_after_seconds, list(skip_round_ids), max(1, int(limit)), max_attempts),
            )
            rows = cur.fetchall()
        return len(rows)
