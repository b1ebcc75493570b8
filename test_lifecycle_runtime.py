#!/usr/bin/env python3

import unittest
from datetime import datetime, timedelta, timezone

from lifecycle.config import LifecycleConfig
from lifecycle.errors import InvalidTransitionError, ProviderRequestError
from lifecycle.models import (
    BLOCKED,
    CANCELLED,
    COMPLETED,
    JOB_CANCELLED,
    JOB_DISCARDED,
    JOB_FAILED,
    JOB_QUEUED,
    LAUNCH,
    LAUNCHING,
    MAINTENANCE,
    PREFLIGHT,
    READY,
    SCHEDULED,
    SEND_UNACKNOWLEDGED,
    SENT,
    status_rank,
    utc_now,
)
from lifecycle.notifications import NotificationDispatcher
from lifecycle.queue import InMemoryStageJobQueue
from lifecycle.runtime import LifecycleOrchestrator
from lifecycle.store import InMemoryRoundStore
from lifecycle.worker import StageWorker


class FakeProvider:
    def __init__(self, list_size: int = 1000) -> None:
        self.lists = {"list-1": [f"c{i}" for i in range(list_size)]}
        self.drafts: dict[str, dict] = {}
        self.send_calls: list[str] = []
        self.send_errors: list[Exception] = []
        self.metrics_error: Exception | None = None

    def create_draft(self, list_id, subject, sender_email, title):
        draft_id = f"draft-{len(self.drafts) + 1}"
        self.drafts[draft_id] = {"status": "draft", "list_id": list_id}
        return draft_id

    def get_draft(self, draft_id):
        return dict(self.drafts[draft_id])

    def list_contacts(self, list_id):
        return list(self.lists[list_id])

    def trigger_send(self, draft_id):
        self.send_calls.append(draft_id)
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.drafts[draft_id]["status"] = "sent"
        return "ext-100"

    def get_delivery_metrics(self, external_id):
        if self.metrics_error is not None:
            raise self.metrics_error
        return {"sent": 1000, "delivered": 980, "opened": 400, "clicked": 50, "bounced": 20}


class FakeChat:
    def __init__(self) -> None:
        self.messages: list[dict] = []

    def post_message(self, channel, text, blocks=None):
        self.messages.append({"channel": channel, "text": text, "blocks": blocks})
        return f"ts-{len(self.messages)}"


class StatusWriteFailingStore(InMemoryRoundStore):
    def __init__(self, failing_stage: str) -> None:
        super().__init__()
        self.failing_stage = failing_stage

    def set_notification_status(self, round_id, stage, status):
        if stage == self.failing_stage:
            raise RuntimeError("status write lost")
        super().set_notification_status(round_id, stage, status)


class StubMaintenance:
    def __init__(self, outcome: str = "success") -> None:
        self.outcome = outcome
        self.calls = 0

    def run_maintenance(self, rnd, heartbeat=None):
        self.calls += 1
        return {"outcome": self.outcome, "reason": "" if self.outcome == "success" else "rollback left lists uneven"}


class SlowMaintenance:
    """Outlives the lease TTL and renews through the heartbeat."""

    def __init__(self, store) -> None:
        self.store = store
        self.renewed_lease = None

    def run_maintenance(self, rnd, heartbeat=None):
        owner, _ = self.store.leases[rnd.id]
        self.store.leases[rnd.id] = (owner, utc_now() - timedelta(seconds=1))
        heartbeat()
        self.renewed_lease = self.store.leases[rnd.id]
        return {"outcome": "success", "suppressed_count": 0, "moves_applied": 0}


def _build(provider=None, maintenance=None, store=None, **config_overrides):
    config = LifecycleConfig(**config_overrides)
    store = store or InMemoryRoundStore()
    queue = InMemoryStageJobQueue()
    chat = FakeChat()
    notifier = NotificationDispatcher(chat, store, config, sleep=lambda seconds: None)
    orchestrator = LifecycleOrchestrator(
        store=store,
        queue=queue,
        provider=provider or FakeProvider(),
        notifier=notifier,
        config=config,
        maintenance=maintenance or StubMaintenance(),
    )
    worker = StageWorker(orchestrator, queue, max_attempts=config.max_stage_attempts)
    return orchestrator, worker, store, queue, chat


def _round_spec(scheduled_at: datetime, recipient_count: int = 1000) -> dict:
    return {
        "scheduled_at": scheduled_at.isoformat(),
        "list_id": "list-1",
        "recipient_count": recipient_count,
        "subject": "Quarterly update",
        "sender_email": "news@example.com",
    }


def _future_launch() -> datetime:
    return (utc_now() + timedelta(days=3)).replace(microsecond=0)


class LifecycleRuntimeTests(unittest.TestCase):
    def _register(self, orchestrator, launch_at, **kwargs):
        result = orchestrator.register_campaign("Q4 Launch", [_round_spec(launch_at, **kwargs)], notification_channel="#q4")
        return result["rounds"][0]["id"]

    def test_round_runs_through_every_step_in_order(self) -> None:
        provider = FakeProvider()
        maintenance = StubMaintenance()
        orchestrator, worker, store, _, chat = _build(provider=provider, maintenance=maintenance)
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)

        results = worker.run_until_idle(now=launch_at + timedelta(days=2))

        self.assertEqual([r["stage"] for r in results], ["prelaunch", "preflight", "launch_warning", "launch", "wrapup", "maintenance"])
        rnd = store.get_round(round_id)
        self.assertEqual(rnd.status, COMPLETED)
        self.assertEqual(rnd.external_campaign_id, "ext-100")
        self.assertEqual(rnd.metrics["delivered"], 980)
        self.assertEqual(provider.send_calls, ["draft-1"])
        self.assertEqual(maintenance.calls, 1)
        self.assertEqual(set(rnd.notification_status.values()), {"sent"})
        self.assertTrue(all(message["channel"] == "#q4" for message in chat.messages))

        ranks = [status_rank(status) for status in store.status_history[round_id]]
        self.assertEqual(ranks, sorted(ranks))
        self.assertEqual(store.status_history[round_id], [SCHEDULED, READY, LAUNCHING, SENT, COMPLETED])

    def test_preflight_list_mismatch_blocks_and_launch_is_discarded(self) -> None:
        provider = FakeProvider(list_size=998)
        orchestrator, worker, store, queue, chat = _build(provider=provider)
        launch_at = datetime(2025, 10, 15, 9, 0, tzinfo=timezone.utc)
        registered = orchestrator.register_campaign(
            "Q4 Launch", [_round_spec(launch_at)], now=datetime(2025, 10, 10, tzinfo=timezone.utc)
        )
        round_id = registered["rounds"][0]["id"]
        preflight = [job for job in queue.jobs if job.stage == PREFLIGHT][0]
        self.assertEqual(preflight.fire_at, datetime(2025, 10, 15, 8, 0, tzinfo=timezone.utc))

        worker.run_until_idle(now=datetime(2025, 10, 15, 8, 0, tzinfo=timezone.utc))
        rnd = store.get_round(round_id)
        self.assertEqual(rnd.status, BLOCKED)
        self.assertIn("998", rnd.blocked_reason)
        self.assertTrue(any(m["channel"] == "#campaign-alerts" and round_id in m["text"] for m in chat.messages))

        worker.run_until_idle(now=datetime(2025, 10, 15, 9, 0, tzinfo=timezone.utc))
        launch = [job for job in queue.jobs if job.stage == LAUNCH][0]
        self.assertEqual(launch.status, JOB_DISCARDED)
        self.assertEqual(store.get_round(round_id).status, BLOCKED)
        self.assertEqual(provider.send_calls, [])

    def test_duplicate_launch_after_send_is_a_no_op(self) -> None:
        provider = FakeProvider()
        orchestrator, worker, store, queue, _ = _build(provider=provider)
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)
        worker.run_until_idle(now=launch_at + timedelta(minutes=1))
        self.assertEqual(store.get_round(round_id).status, SENT)

        queue.register(round_id, LAUNCH, launch_at)
        result = worker.process_once(now=launch_at + timedelta(minutes=2))

        self.assertEqual(result["status"], "discarded")
        self.assertEqual(provider.send_calls, ["draft-1"])
        self.assertEqual(store.get_round(round_id).status, SENT)

    def test_acknowledged_then_dropped_send_is_never_retried(self) -> None:
        provider = FakeProvider()
        provider.send_errors = [ProviderRequestError("read timeout after request sent", acknowledged=True)]
        orchestrator, worker, store, queue, chat = _build(provider=provider)
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)

        worker.run_until_idle(now=launch_at + timedelta(days=2))

        self.assertEqual(provider.send_calls, ["draft-1"])
        rnd = store.get_round(round_id)
        self.assertEqual(rnd.status, BLOCKED)
        self.assertIn("verify", rnd.blocked_reason)
        launch = [job for job in queue.jobs if job.stage == LAUNCH][0]
        self.assertEqual(launch.status, JOB_FAILED)
        alerts = [m for m in chat.messages if m["channel"] == "#campaign-alerts"]
        self.assertEqual(len(alerts), 1)
        self.assertIn("launch", alerts[0]["text"])

    def test_unacknowledged_send_failure_is_retried(self) -> None:
        provider = FakeProvider()
        provider.send_errors = [ProviderRequestError("connect timeout")]
        orchestrator, worker, store, _, _ = _build(provider=provider)
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)

        worker.run_until_idle(now=launch_at - timedelta(minutes=1))
        first = worker.process_once(now=launch_at)
        self.assertEqual(first["status"], "retry")
        waiting = store.get_round(round_id)
        self.assertEqual(waiting.status, LAUNCHING)
        self.assertEqual(waiting.send_state, SEND_UNACKNOWLEDGED)

        worker.run_until_idle(now=launch_at + timedelta(hours=1))
        self.assertEqual(provider.send_calls, ["draft-1", "draft-1"])
        rnd = store.get_round(round_id)
        self.assertEqual(rnd.status, SENT)
        self.assertEqual(rnd.send_state, "")
        ranks = [status_rank(status) for status in store.status_history[round_id]]
        self.assertEqual(ranks, sorted(ranks))
        self.assertEqual(store.status_history[round_id], [SCHEDULED, READY, LAUNCHING, SENT])

    def test_crash_during_launch_retry_is_escalated(self) -> None:
        provider = FakeProvider()
        provider.send_errors = [ProviderRequestError("connect timeout")]
        orchestrator, worker, store, _, _ = _build(provider=provider)
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)
        worker.run_until_idle(now=launch_at - timedelta(minutes=1))
        self.assertEqual(worker.process_once(now=launch_at)["status"], "retry")
        # the retry claimed the round and died before trigger_send returned
        store.transition(round_id, [LAUNCHING], LAUNCHING, send_state="")

        worker.run_until_idle(now=launch_at + timedelta(hours=1))

        self.assertEqual(provider.send_calls, ["draft-1"])
        self.assertEqual(store.get_round(round_id).status, BLOCKED)

    def test_retries_exhausted_escalates_to_blocked(self) -> None:
        provider = FakeProvider()
        provider.send_errors = [ProviderRequestError("unavailable", status_code=503) for _ in range(3)]
        orchestrator, worker, store, _, _ = _build(provider=provider)
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)

        worker.run_until_idle(now=launch_at + timedelta(hours=1))

        self.assertEqual(len(provider.send_calls), 3)
        rnd = store.get_round(round_id)
        self.assertEqual(rnd.status, BLOCKED)
        self.assertIn("retries exhausted", rnd.blocked_reason)
        self.assertEqual(store.status_history[round_id], [SCHEDULED, READY, LAUNCHING, BLOCKED])

    def test_send_id_survives_a_failure_after_the_send(self) -> None:
        provider = FakeProvider()
        store = StatusWriteFailingStore(LAUNCH)
        orchestrator, worker, store, _, chat = _build(provider=provider, store=store, maintenance_enabled=False)
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)

        worker.run_until_idle(now=launch_at + timedelta(minutes=1))

        rnd = store.get_round(round_id)
        self.assertEqual(rnd.status, BLOCKED)
        self.assertEqual(rnd.external_campaign_id, "ext-100")
        self.assertEqual(provider.send_calls, ["draft-1"])
        launch_events = [e for e in store.events if e["stage"] == LAUNCH and e["outcome"] == "blocking"]
        self.assertEqual(launch_events[0]["payload"], {"external_campaign_id": "ext-100"})
        self.assertTrue(any(m["channel"] == "#campaign-alerts" for m in chat.messages))

    def test_wrapup_failure_still_completes_round(self) -> None:
        provider = FakeProvider()
        provider.metrics_error = ProviderRequestError("stats down", status_code=502)
        orchestrator, worker, store, _, chat = _build(provider=provider, maintenance_enabled=False)
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)

        worker.run_until_idle(now=launch_at + timedelta(hours=3))

        rnd = store.get_round(round_id)
        self.assertEqual(rnd.status, COMPLETED)
        self.assertIsNone(rnd.metrics)
        self.assertTrue(any("wrapup" in m["text"] for m in chat.messages if m["channel"] == "#campaign-alerts"))

    def test_reconciliation_failure_halts_maintenance(self) -> None:
        maintenance = StubMaintenance(outcome="reconciliation_failed")
        orchestrator, worker, store, queue, _ = _build(maintenance=maintenance)
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)

        worker.run_until_idle(now=launch_at + timedelta(days=2))

        rnd = store.get_round(round_id)
        self.assertEqual(rnd.status, COMPLETED)
        self.assertTrue(rnd.maintenance_halted)
        self.assertEqual(maintenance.calls, 1)

        orchestrator.trigger_stage(round_id, MAINTENANCE, now=launch_at + timedelta(days=2))
        result = worker.process_once(now=launch_at + timedelta(days=2, minutes=1))
        self.assertEqual(result["status"], "failed")
        self.assertEqual(maintenance.calls, 1)

        maintenance.outcome = "success"
        cleared = orchestrator.clear_maintenance_halt(round_id, now=launch_at + timedelta(days=2))
        self.assertIsNotNone(cleared["job_id"])
        worker.run_until_idle(now=launch_at + timedelta(days=2, minutes=5))
        self.assertFalse(store.get_round(round_id).maintenance_halted)
        self.assertEqual(maintenance.calls, 2)

    def test_busy_lease_defers_without_using_an_attempt(self) -> None:
        orchestrator, worker, store, queue, _ = _build()
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)
        self.assertTrue(store.acquire_lease(round_id, "someone-else", 60))

        result = worker.process_once(now=launch_at)

        self.assertEqual(result["status"], "deferred")
        job = queue.get_job(result["job_id"])
        self.assertEqual(job.status, JOB_QUEUED)
        self.assertEqual(job.attempt, 0)
        self.assertEqual(store.get_round(round_id).status, SCHEDULED)

    def test_long_maintenance_renews_its_lease(self) -> None:
        store = InMemoryRoundStore()
        maintenance = SlowMaintenance(store)
        orchestrator, worker, store, queue, _ = _build(maintenance=maintenance, store=store)
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)

        worker.run_until_idle(now=launch_at + timedelta(days=2))

        owner, expires_at = maintenance.renewed_lease
        self.assertTrue(owner.endswith(next(job.job_id for job in queue.jobs if job.stage == MAINTENANCE)))
        self.assertGreater(expires_at, utc_now())
        self.assertEqual(store.get_round(round_id).status, COMPLETED)
        self.assertNotIn(round_id, store.leases)

    def test_interrupted_launch_is_escalated_not_resent(self) -> None:
        provider = FakeProvider()
        orchestrator, worker, store, _, chat = _build(provider=provider)
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)
        worker.run_until_idle(now=launch_at - timedelta(minutes=1))
        store.transition(round_id, [READY], LAUNCHING)

        result = worker.process_once(now=launch_at)

        self.assertEqual(result["status"], "escalated")
        self.assertEqual(provider.send_calls, [])
        self.assertEqual(store.get_round(round_id).status, BLOCKED)
        self.assertTrue(any(m["channel"] == "#campaign-alerts" for m in chat.messages))

    def test_cancel_mid_retry_stops_the_round(self) -> None:
        provider = FakeProvider()
        provider.send_errors = [ProviderRequestError("connect timeout")]
        orchestrator, worker, store, queue, _ = _build(provider=provider)
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)
        worker.run_until_idle(now=launch_at - timedelta(minutes=1))
        self.assertEqual(worker.process_once(now=launch_at)["status"], "retry")

        cancelled = orchestrator.cancel_round(round_id)
        worker.run_until_idle(now=launch_at + timedelta(days=2))

        self.assertEqual(cancelled["status"], CANCELLED)
        self.assertGreaterEqual(cancelled["cancelled_jobs"], 1)
        self.assertEqual(store.get_round(round_id).status, CANCELLED)
        self.assertEqual(provider.send_calls, ["draft-1"])
        self.assertTrue(all(job.status != JOB_QUEUED for job in queue.jobs))
        self.assertTrue(any(job.status == JOB_CANCELLED for job in queue.jobs))

    def test_resume_blocked_requires_future_launch_and_reruns_preflight(self) -> None:
        provider = FakeProvider(list_size=998)
        orchestrator, worker, store, queue, _ = _build(provider=provider)
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)
        worker.run_until_idle(now=launch_at - timedelta(minutes=30))
        self.assertEqual(store.get_round(round_id).status, BLOCKED)

        provider.lists["list-1"].extend(["c998", "c999"])
        new_launch = launch_at + timedelta(days=1)
        resumed = orchestrator.resume_blocked(round_id, new_scheduled_at=new_launch)
        self.assertEqual(resumed["status"], SCHEDULED)
        self.assertIn(PREFLIGHT, resumed["schedule"]["registered"])

        worker.run_until_idle(now=new_launch + timedelta(minutes=1))
        self.assertEqual(store.get_round(round_id).status, SENT)
        self.assertEqual(provider.send_calls, ["draft-1"])

    def test_resume_with_verified_send_moves_round_to_sent(self) -> None:
        provider = FakeProvider()
        provider.send_errors = [ProviderRequestError("connection reset", acknowledged=True)]
        orchestrator, worker, store, _, _ = _build(provider=provider, maintenance_enabled=False)
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)
        worker.run_until_idle(now=launch_at + timedelta(minutes=1))
        self.assertEqual(store.get_round(round_id).status, BLOCKED)

        orchestrator.resume_blocked(round_id, external_campaign_id="ext-verified")
        worker.run_until_idle(now=launch_at + timedelta(hours=3))

        rnd = store.get_round(round_id)
        self.assertEqual(rnd.status, COMPLETED)
        self.assertEqual(rnd.external_campaign_id, "ext-verified")
        self.assertEqual(len(provider.send_calls), 1)

    def test_register_campaign_validates_input(self) -> None:
        orchestrator, _, _, _, _ = _build()
        launch_at = _future_launch()
        orchestrator.register_campaign("Q4 Launch", [_round_spec(launch_at)])
        with self.assertRaises(ValueError):
            orchestrator.register_campaign("Q4 Launch", [_round_spec(launch_at)])
        with self.assertRaises(ValueError):
            orchestrator.register_campaign(
                "Q1 Launch", [_round_spec(launch_at), _round_spec(launch_at - timedelta(days=1))]
            )

    def test_reschedule_only_before_launch(self) -> None:
        orchestrator, worker, store, queue, _ = _build()
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)
        new_launch = launch_at + timedelta(days=2)

        summary = orchestrator.reschedule_round(round_id, new_launch)

        self.assertGreaterEqual(summary["cancelled"], 5)
        active = [job for job in queue.jobs if job.is_active]
        self.assertEqual(len(active), len({job.stage for job in active}))
        launch = [job for job in active if job.stage == LAUNCH][0]
        self.assertEqual(launch.fire_at, new_launch)

        worker.run_until_idle(now=new_launch + timedelta(minutes=1))
        with self.assertRaises(InvalidTransitionError):
            orchestrator.reschedule_round(round_id, new_launch + timedelta(days=1))

    def test_round_status_reports_jobs(self) -> None:
        orchestrator, _, _, _, _ = _build()
        launch_at = _future_launch()
        round_id = self._register(orchestrator, launch_at)

        view = orchestrator.round_status(round_id)

        self.assertEqual(view["round"]["status"], SCHEDULED)
        self.assertEqual(set(view["jobs"]), {"prelaunch", "preflight", "launch_warning", "launch", "wrapup", "maintenance"})
        self.assertEqual(view["maintenance_logs"], [])


if __name__ == "__main__":
    unittest.main()
