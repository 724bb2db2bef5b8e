"""Exception hierarchy for the sync engine.

The worker decides between redelivery and dead-lettering from the
exception type alone:
- NonRetryableTaskError subclasses go straight to the dead letter stream.
- TransientVendorError (and anything else) is retried with backoff.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all sync engine errors."""


class NonRetryableTaskError(SyncError):
    """Redelivering the task cannot succeed; dead-letter it immediately."""


class ProcessNotFoundError(NonRetryableTaskError):
    """No sync process exists with the given id."""

    def __init__(self, process_id: str) -> None:
        self.process_id = process_id
        super().__init__(f"Sync process '{process_id}' not found")


class InvalidStateTransitionError(NonRetryableTaskError):
    """The requested state is not reachable from the current state."""

    def __init__(self, process_id: str, from_state: str, to_state: str) -> None:
        self.process_id = process_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition for process '{process_id}': {from_state} -> {to_state}"
        )


class ProcessTerminalError(NonRetryableTaskError):
    """The process is COMPLETED or ERROR and accepts no further writes."""

    def __init__(self, process_id: str, state: str) -> None:
        self.process_id = process_id
        self.state = state
        super().__init__(f"Sync process '{process_id}' is terminal ({state})")


class ProcessFailedError(NonRetryableTaskError):
    """A task failed its sync process, which is now in ERROR."""

    def __init__(self, process_id: str, cause: BaseException) -> None:
        self.process_id = process_id
        self.cause = cause
        super().__init__(f"Sync process '{process_id}' failed: {cause}")


class StaleProcessError(SyncError):
    """Optimistic concurrency check failed: the row changed since it was read."""

    def __init__(self, process_id: str, expected_version: int) -> None:
        self.process_id = process_id
        self.expected_version = expected_version
        super().__init__(
            f"Sync process '{process_id}' changed since version {expected_version}"
        )


class TransientVendorError(SyncError):
    """Rate limit, timeout or other vendor hiccup worth redelivering."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class PhoneLookupUnsupportedError(SyncError):
    """The vendor has no phone search API."""


class ContactNotFoundError(SyncError):
    """No CRM contact matches the phone number of an inbound activity."""

    def __init__(self, phone_number: str) -> None:
        self.phone_number = phone_number
        super().__init__(f"No CRM contact found for {phone_number}")
