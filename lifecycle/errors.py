"""Error taxonomy for the lifecycle engine."""

from __future__ import annotations


class LifecycleError(Exception):
    """Base class for lifecycle engine errors."""


class SchedulingError(LifecycleError):
    """The job queue refused a registration."""


class InvalidTransitionError(LifecycleError):
    """An operator action is not legal from the round's current status."""


class LeaseLostError(LifecycleError):
    """Another worker took the round lease while a step was still running."""


class NotificationError(LifecycleError):
    """A chat notification could not be delivered."""


class ProviderRequestError(LifecycleError):
    """Email provider call failed.

    ``acknowledged`` is True when the provider accepted the request before the
    failure, or when that cannot be ruled out.
    """

    def __init__(self, message: str, *, acknowledged: bool = False, status_code: int | None = None) -> None:
        super().__init__(message)
        self.acknowledged = acknowledged
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        if self.acknowledged:
            return False
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code == 429
