"""Durable lifecycle engine for scheduled campaign rounds."""

from .config import LifecycleConfig
from .queue import InMemoryStageJobQueue, PostgresStageJobQueue
from .runtime import LifecycleOrchestrator
from .scheduler import JobScheduler
from .stages import StageContext, default_lifecycle_stages
from .store import InMemoryRoundStore, PostgresRoundStore
from .worker import StageWorker

__all__ = [
    "InMemoryRoundStore",
    "InMemoryStageJobQueue",
    "JobScheduler",
    "LifecycleConfig",
    "LifecycleOrchestrator",
    "PostgresRoundStore",
    "PostgresStageJobQueue",
    "StageContext",
    "StageWorker",
    "default_lifecycle_stages",
]
