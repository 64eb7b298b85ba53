"""Exception taxonomy for the reminder engine.

Provider errors are raised by `app.utils.sms` implementations and consumed by
the dispatcher / reconciler; none of them escape the worker loop.
"""

from __future__ import annotations


class ReminderError(Exception):
    """Base class for all engine errors."""


class ValidationError(ReminderError):
    """Event or template data cannot produce a reminder (missing recipient,
    unresolved placeholder). The instance is never created."""


class ProviderError(ReminderError):
    def __init__(self, message: str, *, code: str | None = None, raw: dict | None = None):
        super().__init__(message)
        self.code = code
        self.raw = raw


class TransientProviderError(ProviderError):
    """Timeout, rate limit, 5xx: retried with backoff."""


class PermanentProviderError(ProviderError):
    """Invalid recipient or rejected content: never retried."""


class StaleClaimError(ReminderError):
    """The worker no longer owns the claim it is trying to settle."""

    def __init__(self, instance_id: str):
        super().__init__(f"claim on reminder {instance_id} is no longer held")
        self.instance_id = instance_id


class StoreConflictError(ReminderError):
    """A conditional write lost a race to another writer."""


class InstanceNotFound(ReminderError, LookupError):
    pass
