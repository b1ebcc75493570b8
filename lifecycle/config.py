from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta

from .models import LAUNCH, LAUNCH_WARNING, MAINTENANCE, PRELAUNCH, PREFLIGHT, WRAPUP

TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_OFFSETS_MINUTES: dict[str, int] = {
    PRELAUNCH: -48 * 60,
    PREFLIGHT: -60,
    LAUNCH_WARNING: -15,
    LAUNCH: 0,
    WRAPUP: 120,
    MAINTENANCE: 24 * 60,
}


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in TRUTHY


def _offsets_from_env() -> dict[str, int]:
    offsets = dict(DEFAULT_OFFSETS_MINUTES)
    for stage in offsets:
        raw = os.environ.get(f"OFFSET_{stage.upper()}_MINUTES", "").strip()
        if raw:
            offsets[stage] = int(raw)
    return offsets


@dataclass(frozen=True)
class LifecycleConfig:
    database_url: str = ""
    redis_url: str = ""
    provider_api_url: str = ""
    provider_api_token: str = ""
    slack_bot_token: str = ""
    campaign_channel: str = "#campaigns"
    alert_channel: str = "#campaign-alerts"
    maintenance_enabled: bool = True
    max_stage_attempts: int = 3
    retry_base_seconds: int = 30
    lease_ttl_seconds: int = 900
    worker_concurrency: int = 4
    preflight_list_tolerance_pct: float = 0.0
    soft_bounce_suppress_threshold: int = 3
    notify_max_attempts: int = 3
    cache_ttl_seconds: int = 300
    offsets_minutes: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_OFFSETS_MINUTES))

    def offset(self, stage: str) -> timedelta:
        return timedelta(minutes=self.offsets_minutes[stage])

    @classmethod
    def from_env(cls) -> "LifecycleConfig":
        return cls(
            database_url=os.environ.get("DATABASE_URL", "").strip(),
            redis_url=os.environ.get("REDIS_URL", "").strip(),
            provider_api_url=os.environ.get("PROVIDER_API_URL", "").strip(),
            provider_api_token=os.environ.get("PROVIDER_API_TOKEN", "").strip(),
            slack_bot_token=os.environ.get("SLACK_BOT_TOKEN", "").strip(),
            campaign_channel=os.environ.get("SLACK_CAMPAIGN_CHANNEL", "#campaigns").strip(),
            alert_channel=os.environ.get("SLACK_ALERT_CHANNEL", "#campaign-alerts").strip(),
            maintenance_enabled=_env_flag("MAINTENANCE_ENABLED", "true"),
            max_stage_attempts=max(1, int(os.environ.get("MAX_STAGE_ATTEMPTS", "3"))),
            retry_base_seconds=max(1, int(os.environ.get("RETRY_BASE_SECONDS", "30"))),
            lease_ttl_seconds=max(1, int(os.environ.get("LEASE_TTL_SECONDS", "900"))),
            worker_concurrency=max(1, int(os.environ.get("WORKER_CONCURRENCY", "4"))),
            preflight_list_tolerance_pct=float(os.environ.get("PREFLIGHT_LIST_TOLERANCE_PCT", "0")),
            soft_bounce_suppress_threshold=max(1, int(os.environ.get("SOFT_BOUNCE_SUPPRESS_THRESHOLD", "3"))),
            notify_max_attempts=max(1, int(os.environ.get("NOTIFY_MAX_ATTEMPTS", "3"))),
            cache_ttl_seconds=max(1, int(os.environ.get("CACHE_TTL_SECONDS", "300"))),
            offsets_minutes=_offsets_from_env(),
        )
