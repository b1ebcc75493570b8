from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_utc(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# Round status, ordered. blocked and cancelled sit outside the order.
SCHEDULED = "scheduled"
READY = "ready"
LAUNCHING = "launching"
SENT = "sent"
COMPLETED = "completed"
BLOCKED = "blocked"
CANCELLED = "cancelled"

STATUS_ORDER = [SCHEDULED, READY, LAUNCHING, SENT, COMPLETED]
ROUND_STATUSES = set(STATUS_ORDER) | {BLOCKED, CANCELLED}
TERMINAL_STATUSES = {CANCELLED}

# Lifecycle steps, in firing order.
PRELAUNCH = "prelaunch"
PREFLIGHT = "preflight"
LAUNCH_WARNING = "launch_warning"
LAUNCH = "launch"
WRAPUP = "wrapup"
MAINTENANCE = "maintenance"

STAGES = [PRELAUNCH, PREFLIGHT, LAUNCH_WARNING, LAUNCH, WRAPUP, MAINTENANCE]

# Steps that move a round out of each status.
ADVANCING_STAGES: dict[str, set[str]] = {
    SCHEDULED: {PREFLIGHT},
    READY: {LAUNCH},
    LAUNCHING: {LAUNCH},
    SENT: {WRAPUP},
}

# Stage outcomes.
OK = "ok"
TRANSIENT = "transient"
BLOCKING = "blocking"

# Job statuses.
JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_DONE = "done"
JOB_FAILED = "failed"
JOB_DISCARDED = "discarded"
JOB_CANCELLED = "cancelled"
JOB_DEAD_LETTER = "dead_letter"

ACTIVE_JOB_STATUSES = {JOB_QUEUED, JOB_RUNNING}

NOTIFY_SENT = "sent"
NOTIFY_FAILED = "failed"

# Round.send_state: set when the last launch attempt was refused before the
# provider accepted it, so the launch may run again from launching.
SEND_UNACKNOWLEDGED = "unacknowledged"


def status_rank(status: str) -> int:
    """Position of ``status`` in the forward order, -1 for side states."""
    if status in STATUS_ORDER:
        return STATUS_ORDER.index(status)
    return -1


@dataclass
class StageResult:
    stage: str
    payload: dict[str, Any]
    outcome: str = OK
    reason: str = ""
    escalation: str = ""
    created_at: str = field(default_factory=utc_now_iso)

    @property
    def ok(self) -> bool:
        return self.outcome == OK


@dataclass
class Round:
    id: str
    campaign_name: str
    round_number: int
    scheduled_at: datetime
    list_id: str
    recipient_count: int
    status: str = SCHEDULED
    notification_status: dict[str, str] = field(default_factory=dict)
    external_campaign_id: str | None = None
    metrics: dict[str, Any] | None = None
    draft_id: str | None = None
    subject: str = ""
    sender_email: str = ""
    notification_channel: str = ""
    maintenance_halted: bool = False
    blocked_reason: str = ""
    send_state: str = ""
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "campaign_name": self.campaign_name,
            "round_number": self.round_number,
            "scheduled_at": self.scheduled_at.isoformat(),
            "list_id": self.list_id,
            "recipient_count": self.recipient_count,
            "status": self.status,
            "notification_status": dict(self.notification_status),
            "external_campaign_id": self.external_campaign_id,
            "metrics": self.metrics,
            "draft_id": self.draft_id,
            "subject": self.subject,
            "sender_email": self.sender_email,
            "notification_channel": self.notification_channel,
            "maintenance_halted": self.maintenance_halted,
            "blocked_reason": self.blocked_reason,
            "send_state": self.send_state,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class StageJob:
    job_id: str
    round_id: str
    stage: str
    fire_at: datetime
    status: str = JOB_QUEUED
    attempt: int = 0
    last_error: str = ""
    locked_at: datetime | None = None
    worker_id: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES


@dataclass
class MaintenanceLog:
    round_id: str
    before_state: dict[str, int]
    after_state: dict[str, int]
    outcome: str
    suppressed_count: int = 0
    suppressed_ids: list[str] = field(default_factory=list)
    moves_applied: int = 0
    rollback_of: int | None = None
    error: str = ""
    id: int | None = None
    created_at: str = field(default_factory=utc_now_iso)
