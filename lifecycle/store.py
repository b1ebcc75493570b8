from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Iterable, Protocol

from .db import Database
from .models import (
    MaintenanceLog,
    Round,
    StageResult,
    parse_utc,
    utc_now,
    utc_now_iso,
)

UPDATABLE_FIELDS = {
    "notification_status",
    "external_campaign_id",
    "metrics",
    "draft_id",
    "maintenance_halted",
    "blocked_reason",
    "send_state",
    "scheduled_at",
}


def new_round_id() -> str:
    return f"rnd_{uuid.uuid4().hex[:12]}"


class RoundStore(Protocol):
    def create_rounds(self, rounds: list[Round]) -> list[Round]: ...

    def campaign_exists(self, campaign_name: str) -> bool: ...

    def get_round(self, round_id: str) -> Round | None: ...

    def list_rounds(self, campaign_name: str | None = None, statuses: Iterable[str] | None = None) -> list[Round]: ...

    def transition(
        self, round_id: str, expected: Iterable[str], new_status: str, **fields: Any
    ) -> Round | None: ...

    def update_fields(self, round_id: str, **fields: Any) -> Round | None: ...

    def set_notification_status(self, round_id: str, stage: str, status: str) -> None: ...

    def acquire_lease(self, round_id: str, owner: str, ttl_seconds: int) -> bool: ...

    def release_lease(self, round_id: str, owner: str) -> None: ...

    def live_leases(self) -> set[str]: ...

    def append_event(self, round_id: str, result: StageResult) -> None: ...

    def commit_maintenance(
        self,
        log: MaintenanceLog,
        suppressions: list[dict[str, Any]] | None = None,
        soft_bounces: list[str] | None = None,
    ) -> int: ...

    def list_maintenance_logs(self, round_id: str) -> list[MaintenanceLog]: ...

    def suppressed_contact_ids(self, contact_ids: Iterable[str]) -> set[str]: ...

    def soft_bounce_counts(self, contact_ids: Iterable[str]) -> dict[str, int]: ...


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown round fields: {sorted(unknown)}")


class InMemoryRoundStore:
    def __init__(self) -> None:
        self.rounds: dict[str, Round] = {}
        self.events: list[dict[str, Any]] = []
        self.maintenance_logs: list[MaintenanceLog] = []
        self.suppressed: dict[str, dict[str, Any]] = {}
        self.soft_bounces: dict[str, int] = {}
        self.leases: dict[str, tuple[str, datetime]] = {}
        self.status_history: dict[str, list[str]] = {}
        self._lock = threading.RLock()

    def create_rounds(self, rounds: list[Round]) -> list[Round]:
        with self._lock:
            for rnd in rounds:
                if rnd.id in self.rounds:
                    raise ValueError(f"Round {rnd.id} already exists")
                for existing in self.rounds.values():
                    if existing.campaign_name == rnd.campaign_name and existing.round_number == rnd.round_number:
                        raise ValueError(f"{rnd.campaign_name} round {rnd.round_number} already exists")
            for rnd in rounds:
                self.rounds[rnd.id] = copy.deepcopy(rnd)
                self.status_history[rnd.id] = [rnd.status]
            return [copy.deepcopy(rnd) for rnd in rounds]

    def campaign_exists(self, campaign_name: str) -> bool:
        with self._lock:
            return any(rnd.campaign_name == campaign_name for rnd in self.rounds.values())

    def get_round(self, round_id: str) -> Round | None:
        with self._lock:
            rnd = self.rounds.get(round_id)
            return copy.deepcopy(rnd) if rnd else None

    def list_rounds(self, campaign_name: str | None = None, statuses: Iterable[str] | None = None) -> list[Round]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            rows = [
                copy.deepcopy(rnd)
                for rnd in self.rounds.values()
                if (campaign_name is None or rnd.campaign_name == campaign_name)
                and (wanted is None or rnd.status in wanted)
            ]
        return sorted(rows, key=lambda r: (r.campaign_name, r.round_number))

    def transition(self, round_id: str, expected: Iterable[str], new_status: str, **fields: Any) -> Round | None:
        _check_fields(fields)
        expected_set = set(expected)
        with self._lock:
            rnd = self.rounds.get(round_id)
            if rnd is None or rnd.status not in expected_set:
                return None
            if rnd.status != new_status:
                self.status_history.setdefault(round_id, []).append(new_status)
            rnd.status = new_status
            for key, value in fields.items():
                setattr(rnd, key, copy.deepcopy(value))
            rnd.updated_at = utc_now_iso()
            return copy.deepcopy(rnd)

    def update_fields(self, round_id: str, **fields: Any) -> Round | None:
        _check_fields(fields)
        with self._lock:
            rnd = self.rounds.get(round_id)
            if rnd is None:
                return None
            for key, value in fields.items():
                setattr(rnd, key, copy.deepcopy(value))
            rnd.updated_at = utc_now_iso()
            return copy.deepcopy(rnd)

    def set_notification_status(self, round_id: str, stage: str, status: str) -> None:
        with self._lock:
            rnd = self.rounds.get(round_id)
            if rnd is None:
                return
            rnd.notification_status[stage] = status
            rnd.updated_at = utc_now_iso()

    def acquire_lease(self, round_id: str, owner: str, ttl_seconds: int) -> bool:
        now = utc_now()
        with self._lock:
            current = self.leases.get(round_id)
            if current and current[0] != owner and current[1] > now:
                return False
            self.leases[round_id] = (owner, now + timedelta(seconds=max(1, ttl_seconds)))
            return True

    def release_lease(self, round_id: str, owner: str) -> None:
        with self._lock:
            current = self.leases.get(round_id)
            if current and current[0] == owner:
                del self.leases[round_id]

    def live_leases(self) -> set[str]:
        now = utc_now()
        with self._lock:
            return {round_id for round_id, (_, expires_at) in self.leases.items() if expires_at > now}

    def append_event(self, round_id: str, result: StageResult) -> None:
        with self._lock:
            self.events.append(
                {
                    "round_id": round_id,
                    "stage": result.stage,
                    "outcome": result.outcome,
                    "reason": result.reason,
                    "payload": result.payload,
                    "created_at": result.created_at,
                }
            )

    def commit_maintenance(
        self,
        log: MaintenanceLog,
        suppressions: list[dict[str, Any]] | None = None,
        soft_bounces: list[str] | None = None,
    ) -> int:
        with self._lock:
            log = copy.deepcopy(log)
            log.id = len(self.maintenance_logs) + 1
            self.maintenance_logs.append(log)
            for row in suppressions or []:
                self.suppressed.setdefault(str(row["contact_id"]), dict(row, source_round_id=log.round_id))
            for contact_id in soft_bounces or []:
                self.soft_bounces[contact_id] = self.soft_bounces.get(contact_id, 0) + 1
            return log.id

    def list_maintenance_logs(self, round_id: str) -> list[MaintenanceLog]:
        with self._lock:
            return [copy.deepcopy(log) for log in self.maintenance_logs if log.round_id == round_id]

    def suppressed_contact_ids(self, contact_ids: Iterable[str]) -> set[str]:
        with self._lock:
            return {cid for cid in contact_ids if cid in self.suppressed}

    def soft_bounce_counts(self, contact_ids: Iterable[str]) -> dict[str, int]:
        with self._lock:
            return {cid: self.soft_bounces.get(cid, 0) for cid in contact_ids}


ROUND_COLUMNS = (
    "id, campaign_name, round_number, scheduled_at, list_id, recipient_count, status, "
    "notification_status, external_campaign_id, metrics, draft_id, subject, sender_email, "
    "notification_channel, maintenance_halted, blocked_reason, created_at, updated_at, send_state"
)

JSON_FIELDS = {"notification_status", "metrics"}


def _round_from_row(row: tuple[Any, ...]) -> Round:
    return Round(
        id=row[0],
        campaign_name=row[1],
        round_number=int(row[2]),
        scheduled_at=parse_utc(row[3]),
        list_id=str(row[4]),
        recipient_count=int(row[5]),
        status=row[6],
        notification_status=dict(row[7] or {}),
        external_campaign_id=row[8],
        metrics=row[9],
        draft_id=row[10],
        subject=row[11] or "",
        sender_email=row[12] or "",
        notification_channel=row[13] or "",
        maintenance_halted=bool(row[14]),
        blocked_reason=row[15] or "",
        created_at=row[16].isoformat() if isinstance(row[16], datetime) else str(row[16]),
        updated_at=row[17].isoformat() if isinstance(row[17], datetime) else str(row[17]),
        send_state=row[18] or "",
    )


def _set_clause(fields: dict[str, Any]) -> tuple[str, list[Any]]:
    parts: list[str] = []
    params: list[Any] = []
    for key, value in fields.items():
        if key in JSON_FIELDS:
            parts.append(f"{key} = %s::jsonb")
            params.append(json.dumps(value, separators=(",", ":")) if value is not None else None)
        else:
            parts.append(f"{key} = %s")
            params.append(value)
    return "".join(f"{part}, " for part in parts), params


def _log_from_row(row: tuple[Any, ...]) -> MaintenanceLog:
    return MaintenanceLog(
        id=int(row[0]),
        round_id=row[1],
        before_state=dict(row[2] or {}),
        after_state=dict(row[3] or {}),
        suppressed_count=int(row[4]),
        suppressed_ids=list(row[5] or []),
        moves_applied=int(row[6]),
        rollback_of=row[7],
        outcome=row[8],
        error=row[9] or "",
        created_at=row[10].isoformat() if isinstance(row[10], datetime) else str(row[10]),
    )


class PostgresRoundStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def ensure_schema(self) -> None:
        self.db.ensure_schema()

    def create_rounds(self, rounds: list[Round]) -> list[Round]:
        with self.db.transaction() as cur:
            for rnd in rounds:
                cur.execute(
                    f"""
                    insert into lifecycle_rounds ({ROUND_COLUMNS})
                    values (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s::jsonb, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        rnd.id,
                        rnd.campaign_name,
                        rnd.round_number,
                        rnd.scheduled_at,
                        rnd.list_id,
                        rnd.recipient_count,
                        rnd.status,
                        json.dumps(rnd.notification_status, separators=(",", ":")),
                        rnd.external_campaign_id,
                        json.dumps(rnd.metrics) if rnd.metrics is not None else None,
                        rnd.draft_id,
                        rnd.subject,
                        rnd.sender_email,
                        rnd.notification_channel,
                        rnd.maintenance_halted,
                        rnd.blocked_reason,
                        rnd.created_at,
                        rnd.updated_at,
                        rnd.send_state,
                    ),
                )
        return rounds

    def campaign_exists(self, campaign_name: str) -> bool:
        with self.db.transaction() as cur:
            cur.execute("select 1 from lifecycle_rounds where campaign_name = %s limit 1", (campaign_name,))
            return cur.fetchone() is not None

    def get_round(self, round_id: str) -> Round | None:
        with self.db.transaction() as cur:
            cur.execute(f"select {ROUND_COLUMNS} from lifecycle_rounds where id = %s", (round_id,))
            row = cur.fetchone()
        return _round_from_row(row) if row else None

    def list_rounds(self, campaign_name: str | None = None, statuses: Iterable[str] | None = None) -> list[Round]:
        clauses: list[str] = []
        params: list[Any] = []
        if campaign_name is not None:
            clauses.append("campaign_name = %s")
            params.append(campaign_name)
        if statuses is not None:
            clauses.append("status = any(%s)")
            params.append(list(statuses))
        where = f"where {' and '.join(clauses)}" if clauses else ""
        with self.db.transaction() as cur:
            cur.execute(
                f"select {ROUND_COLUMNS} from lifecycle_rounds {where} order by campaign_name, round_number",
                params,
            )
            rows = cur.fetchall()
        return [_round_from_row(row) for row in rows]

    def transition(self, round_id: str, expected: Iterable[str], new_status: str, **fields: Any) -> Round | None:
        _check_fields(fields)
        set_sql, set_params = _set_clause(fields)
        with self.db.transaction() as cur:
            cur.execute(
                f"""
                update lifecycle_rounds
                set {set_sql}status = %s,
                    updated_at = now()
                where id = %s
                  and status = any(%s)
                returning {ROUND_COLUMNS}
                """,
                (*set_params, new_status, round_id, list(expected)),
            )
            row = cur.fetchone()
        return _round_from_row(row) if row else None

    def update_fields(self, round_id: str, **fields: Any) -> Round | None:
        _check_fields(fields)
        if not fields:
            return self.get_round(round_id)
        set_sql, set_params = _set_clause(fields)
        with self.db.transaction() as cur:
            cur.execute(
                f"""
                update lifecycle_rounds
                set {set_sql}updated_at = now()
                where id = %s
                returning {ROUND_COLUMNS}
                """,
                (*set_params, round_id),
            )
            row = cur.fetchone()
        return _round_from_row(row) if row else None

    def set_notification_status(self, round_id: str, stage: str, status: str) -> None:
        with self.db.transaction() as cur:
            cur.execute(
                """
                update lifecycle_rounds
                set notification_status = notification_status || jsonb_build_object(%s::text, %s::text),
                    updated_at = now()
                where id = %s
                """,
                (stage, status, round_id),
            )

    def acquire_lease(self, round_id: str, owner: str, ttl_seconds: int) -> bool:
        with self.db.transaction() as cur:
            cur.execute(
                """
                insert into round_leases (round_id, owner, expires_at)
                values (%s, %s, now() + make_interval(secs => %s))
                on conflict (round_id) do update
                set owner = excluded.owner,
                    expires_at = excluded.expires_at
                where round_leases.expires_at <= now()
                   or round_leases.owner = excluded.owner
                returning round_id
                """,
                (round_id, owner, max(1, int(ttl_seconds))),
            )
            return cur.fetchone() is not None

    def release_lease(self, round_id: str, owner: str) -> None:
        with self.db.transaction() as cur:
            cur.execute("delete from round_leases where round_id = %s and owner = %s", (round_id, owner))

    def live_leases(self) -> set[str]:
        with self.db.transaction() as cur:
            cur.execute("select round_id from round_leases where expires_at > now()")
            return {row[0] for row in cur.fetchall()}

    def append_event(self, round_id: str, result: StageResult) -> None:
        with self.db.transaction() as cur:
            cur.execute(
                """
                insert into lifecycle_events (round_id, stage, outcome, reason, payload, created_at)
                values (%s, %s, %s, %s, %s::jsonb, %s)
                """,
                (
                    round_id,
                    result.stage,
                    result.outcome,
                    result.reason,
                    json.dumps(result.payload, separators=(",", ":"), default=str),
                    result.created_at,
                ),
            )

    def commit_maintenance(
        self,
        log: MaintenanceLog,
        suppressions: list[dict[str, Any]] | None = None,
        soft_bounces: list[str] | None = None,
    ) -> int:
        with self.db.transaction() as cur:
            cur.execute(
                """
                insert into maintenance_logs (
                    round_id, before_state, after_state, suppressed_count, suppressed_ids,
                    moves_applied, rollback_of, outcome, error, created_at
                )
                values (%s, %s::jsonb, %s::jsonb, %s, %s::jsonb, %s, %s, %s, %s, %s)
                returning id
                """,
                (
                    log.round_id,
                    json.dumps(log.before_state, separators=(",", ":")),
                    json.dumps(log.after_state, separators=(",", ":")),
                    log.suppressed_count,
                    json.dumps(log.suppressed_ids, separators=(",", ":")),
                    log.moves_applied,
                    log.rollback_of,
                    log.outcome,
                    log.error,
                    log.created_at,
                ),
            )
            log_id = int(cur.fetchone()[0])
            for row in suppressions or []:
                cur.execute(
                    """
                    insert into suppressed_contacts (contact_id, reason, bounce_type, source_round_id)
                    values (%s, %s, %s, %s)
                    on conflict (contact_id) do nothing
                    """,
                    (str(row["contact_id"]), row.get("reason", ""), row.get("bounce_type", ""), log.round_id),
                )
            for contact_id in soft_bounces or []:
                cur.execute(
                    """
                    insert into contact_bounces (contact_id, soft_bounce_count, last_bounce_at)
                    values (%s, 1, now())
                    on conflict (contact_id) do update
                    set soft_bounce_count = contact_bounces.soft_bounce_count + 1,
                        last_bounce_at = now()
                    """,
                    (contact_id,),
                )
        return log_id

    def list_maintenance_logs(self, round_id: str) -> list[MaintenanceLog]:
        with self.db.transaction() as cur:
            cur.execute(
                """
                select id, round_id, before_state, after_state, suppressed_count, suppressed_ids,
                       moves_applied, rollback_of, outcome, error, created_at
                from maintenance_logs
                where round_id = %s
                order by id asc
                """,
                (round_id,),
            )
            rows = cur.fetchall()
        return [_log_from_row(row) for row in rows]

    def suppressed_contact_ids(self, contact_ids: Iterable[str]) -> set[str]:
        ids = [str(cid) for cid in contact_ids]
        if not ids:
            return set()
        with self.db.transaction() as cur:
            cur.execute("select contact_id from suppressed_contacts where contact_id = any(%s)", (ids,))
            return {row[0] for row in cur.fetchall()}

    def soft_bounce_counts(self, contact_ids: Iterable[str]) -> dict[str, int]:
        ids = [str(cid) for cid in contact_ids]
        counts = {cid: 0 for cid in ids}
        if not ids:
            return counts
        with self.db.transaction() as cur:
            cur.execute(
                "select contact_id, soft_bounce_count from contact_bounces where contact_id = any(%s)",
                (ids,),
            )
            for contact_id, count in cur.fetchall():
                counts[contact_id] = int(count)
        return counts
