"""Process wiring: one instance of each external dependency, injected."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import requests

from list_maintenance import ListMaintenanceOrchestrator

from .cache import RoundStatusCache
from .clients import ChatClient, ProviderClient
from .config import LifecycleConfig
from .db import Database
from .notifications import NotificationDispatcher
from .queue import InMemoryStageJobQueue, PostgresStageJobQueue
from .runtime import LifecycleOrchestrator
from .store import InMemoryRoundStore, PostgresRoundStore
from .worker import StageWorker


class PrintingChat:
    """Chat sink for --dry-run: one JSON line per message on stdout."""

    def post_message(self, channel: str, text: str, blocks: list[dict[str, Any]] | None = None) -> str:
        print(json.dumps({"chat": {"channel": channel, "text": text}}, separators=(",", ":"), sort_keys=True))
        return "dry-run"


@dataclass
class Components:
    config: LifecycleConfig
    store: Any
    queue: Any
    orchestrator: LifecycleOrchestrator
    worker: StageWorker
    db: Database | None = None
    sessions: tuple[requests.Session, ...] = ()

    def close(self) -> None:
        for session in self.sessions:
            session.close()
        if self.db is not None:
            self.db.close()


def build_components(config: LifecycleConfig, dry_run: bool = False, worker_id: str = "lifecycle-worker-1") -> Components:
    chat_session = requests.Session()
    provider_session = requests.Session()
    db: Database | None = None
    if dry_run:
        store: Any = InMemoryRoundStore()
        queue: Any = InMemoryStageJobQueue()
        chat: Any = PrintingChat()
    else:
        db = Database(config.database_url)
        db.ensure_schema()
        store = PostgresRoundStore(db)
        queue = PostgresStageJobQueue(db, worker_id=worker_id)
        chat = ChatClient(config.slack_bot_token, session=chat_session) if config.slack_bot_token else None

    provider = (
        ProviderClient(config.provider_api_url, config.provider_api_token, session=provider_session)
        if config.provider_api_url
        else None
    )
    cache = RoundStatusCache.from_url(config.redis_url, config.cache_ttl_seconds) if config.redis_url and not dry_run else None
    notifier = NotificationDispatcher(chat, store, config, cache=cache)
    maintenance = (
        ListMaintenanceOrchestrator(provider, store, soft_bounce_threshold=config.soft_bounce_suppress_threshold)
        if provider is not None
        else None
    )
    orchestrator = LifecycleOrchestrator(
        store=store,
        queue=queue,
        provider=provider,
        notifier=notifier,
        config=config,
        maintenance=maintenance,
        cache=cache,
        owner=worker_id,
    )
    worker = StageWorker(
        orchestrator,
        queue,
        max_attempts=config.max_stage_attempts,
        concurrency=config.worker_concurrency,
        retry_base_seconds=config.retry_base_seconds,
        store=store,
    )
    return Components(
        config=config,
        store=store,
        queue=queue,
        orchestrator=orchestrator,
        worker=worker,
        db=db,
        sessions=(chat_session, provider_session),
    )
