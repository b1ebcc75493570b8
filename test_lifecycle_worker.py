#!/usr/bin/env python3

import json
import unittest
from datetime import datetime, timedelta, timezone

import redis

from lifecycle.cache import RoundStatusCache
from lifecycle.models import JOB_DEAD_LETTER, JOB_DONE, JOB_QUEUED, JOB_RUNNING, LAUNCH, MAINTENANCE, PREFLIGHT
from lifecycle.queue import InMemoryStageJobQueue
from lifecycle.store import InMemoryRoundStore
from lifecycle.worker import StageWorker

LAUNCH_AT = datetime(2025, 10, 15, 9, 0, tzinfo=timezone.utc)


class _RecordingOrchestrator:
    def __init__(self, queue, fail: bool = False) -> None:
        self.queue = queue
        self.fail = fail
        self.handled: list[str] = []

    def handle_job(self, job):
        self.handled.append(job.job_id)
        if self.fail:
            raise RuntimeError("store unavailable")
        self.queue.mark_done(job.job_id)
        return {"status": "done", "job_id": job.job_id}


class _FakeRedis:
    def __init__(self, broken: bool = False) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.broken = broken

    def _check(self) -> None:
        if self.broken:
            raise redis.ConnectionError("redis down")

    def get(self, key):
        self._check()
        return self.values.get(key)

    def set(self, key, value, ex=None):
        self._check()
        self.values[key] = value
        self.ttls[key] = ex

    def delete(self, key):
        self._check()
        self.values.pop(key, None)


class StageWorkerTests(unittest.TestCase):
    def test_process_batch_handles_due_jobs_concurrently(self) -> None:
        queue = InMemoryStageJobQueue()
        for index in range(4):
            queue.register(f"rnd_{index}", LAUNCH, LAUNCH_AT)
        orchestrator = _RecordingOrchestrator(queue)
        worker = StageWorker(orchestrator, queue, concurrency=3)

        results = worker.process_batch(now=LAUNCH_AT)

        self.assertEqual(len(results), 3)
        self.assertEqual(len(set(orchestrator.handled)), 3)
        self.assertEqual(sum(1 for job in queue.jobs if job.status == JOB_DONE), 3)
        self.assertEqual(worker.run_until_idle(now=LAUNCH_AT)[0]["status"], "done")

    def test_unexpected_error_retries_then_dead_letters(self) -> None:
        queue = InMemoryStageJobQueue()
        job_id, _ = queue.register("rnd_1", PREFLIGHT, LAUNCH_AT)
        worker = StageWorker(_RecordingOrchestrator(queue, fail=True), queue, max_attempts=2, retry_base_seconds=1)

        first = worker.process_once(now=LAUNCH_AT)
        self.assertEqual(first["status"], "retry")
        self.assertEqual(queue.get_job(job_id).status, JOB_QUEUED)

        second = worker.process_once(now=datetime.now(tz=timezone.utc) + timedelta(hours=1))
        self.assertEqual(second["status"], "dead_letter")
        self.assertEqual(queue.get_job(job_id).status, JOB_DEAD_LETTER)
        self.assertIn("store unavailable", queue.get_job(job_id).last_error)

    def test_empty_queue(self) -> None:
        queue = InMemoryStageJobQueue()
        worker = StageWorker(_RecordingOrchestrator(queue), queue)
        self.assertIsNone(worker.process_once(now=LAUNCH_AT))
        self.assertEqual(worker.process_batch(now=LAUNCH_AT), [])
        self.assertEqual(worker.recover_stale_once(), 0)

    def test_reaper_leaves_jobs_whose_round_lease_is_live(self) -> None:
        queue = InMemoryStageJobQueue()
        store = InMemoryRoundStore()
        busy_id, _ = queue.register("rnd_busy", MAINTENANCE, LAUNCH_AT)
        idle_id, _ = queue.register("rnd_idle", MAINTENANCE, LAUNCH_AT)
        queue.claim_due(limit=2, now=LAUNCH_AT)
        for job in queue.jobs:
            job.locked_at = datetime.now(tz=timezone.utc) - timedelta(hours=2)
        self.assertTrue(store.acquire_lease("rnd_busy", "worker-a:maintenance", 900))
        worker = StageWorker(_RecordingOrchestrator(queue), queue, store=store)

        recovered = worker.recover_stale_once(stale_after_seconds=60)

        self.assertEqual(recovered, 1)
        self.assertEqual(queue.get_job(busy_id).status, JOB_RUNNING)
        self.assertEqual(queue.get_job(idle_id).status, JOB_QUEUED)


class RoundStatusCacheTests(unittest.TestCase):
    def test_put_get_invalidate(self) -> None:
        client = _FakeRedis()
        cache = RoundStatusCache(client, ttl_seconds=60)

        cache.put("rnd_1", {"round": {"status": "ready"}})

        self.assertEqual(cache.get("rnd_1"), {"round": {"status": "ready"}})
        self.assertEqual(client.ttls["lifecycle:round_status:rnd_1"], 60)
        cache.invalidate("rnd_1")
        self.assertIsNone(cache.get("rnd_1"))

    def test_redis_errors_are_advisory(self) -> None:
        cache = RoundStatusCache(_FakeRedis(broken=True))

        cache.put("rnd_1", {"round": {}})
        cache.invalidate("rnd_1")
        self.assertIsNone(cache.get("rnd_1"))

    def test_corrupt_entry_is_a_miss(self) -> None:
        client = _FakeRedis()
        client.values["lifecycle:round_status:rnd_1"] = "{not json"
        self.assertIsNone(RoundStatusCache(client).get("rnd_1"))
        client.values["lifecycle:round_status:rnd_2"] = json.dumps({"ok": 1})
        self.assertEqual(RoundStatusCache(client).get("rnd_2"), {"ok": 1})


if __name__ == "__main__":
    unittest.main()
