"""Command and event types shared by the queue, reconciler and engine.

This module contains:
- CommandRequest: a caller's intent to change one resource
- CommandOutcome / OutcomeStatus: how a command ended
- CommandHandle: two-stage future returned by SyncEngine.issue()
- BatchHandle: per-target handles for a multi-resource command
- ResourceChange, SyncDegraded, SyncRestored: events for subscribers
- SyncStatus: point-in-time health of the polling loop
"""

import logging
import threading
import time
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from core.errors import CommandCancelled, CommandRejected, CommandTimedOut
from models.resources import ResourceId, ResourceState

logger = logging.getLogger(__name__)

CANCELLED = 'cancelled'


def _new_token() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class CommandRequest:
    """Desired attribute delta for one resource.

    Only the attributes to change are present in delta.
    """
    target: ResourceId
    delta: Mapping[str, Any]
    correlation_token: str = field(default_factory=_new_token)
    submitted_at: float = field(default_factory=time.monotonic)

    def __post_init__(self):
        object.__setattr__(self, 'delta', MappingProxyType(dict(self.delta)))

    @property
    def attributes(self) -> frozenset[str]:
        return frozenset(self.delta)

    def overlaps(self, other: 'CommandRequest') -> bool:
        """True if both commands target the same resource and share an attribute."""
        return self.target == other.target and not self.attributes.isdisjoint(other.attributes)


class OutcomeStatus(str, Enum):
    ACCEPTED = 'accepted'
    CONVERGED = 'converged'
    TIMED_OUT = 'timed_out'
    REJECTED = 'rejected'
    SUPERSEDED = 'superseded'


@dataclass(frozen=True)
class CommandOutcome:
    status: OutcomeStatus
    correlation_token: str
    reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not OutcomeStatus.ACCEPTED

    @property
    def cancelled(self) -> bool:
        return self.status is OutcomeStatus.REJECTED and self.reason == CANCELLED

    def __str__(self) -> str:
        if self.reason:
            return f"{self.status.value} ({self.reason})"
        return self.status.value


class CommandHandle:
    """Handle for one issued command.

    The first stage resolves to ACCEPTED once the bridge acknowledged the
    command, or straight to the terminal outcome if it never got that far.
    The second stage resolves exactly once to a terminal outcome:
    CONVERGED, TIMED_OUT, REJECTED or SUPERSEDED.
    """

    def __init__(self, request: CommandRequest):
        self.request = request
        self.cancel_requested = False
        self._accepted: Future = Future()
        self._final: Future = Future()
        self._lock = threading.Lock()
        self._resolved = False
        self._canceller: Callable[['CommandHandle'], bool] | None = None

    def __repr__(self) -> str:
        state = self.outcome or 'pending'
        return f"<CommandHandle {self.request.target} {self.correlation_token} {state}>"

    @property
    def correlation_token(self) -> str:
        return self.request.correlation_token

    @property
    def outcome(self) -> CommandOutcome | None:
        """Terminal outcome, or None while the command is still open."""
        if self._final.done():
            return self._final.result()
        return None

    def bind_canceller(self, canceller: Callable[['CommandHandle'], bool]):
        self._canceller = canceller

    def accepted(self, timeout: float | None = None) -> CommandOutcome:
        """Wait for the first stage.

        Raises:
            concurrent.futures.TimeoutError: If nothing resolved in time
        """
        return self._accepted.result(timeout)

    def result(self, timeout: float | None = None) -> CommandOutcome:
        """Wait for the terminal outcome.

        Raises:
            concurrent.futures.TimeoutError: If nothing resolved in time
        """
        return self._final.result(timeout)

    def done(self) -> bool:
        return self._final.done()

    def cancel(self) -> bool:
        """Cancel the command.

        Returns:
            True if the command was still queued and is now resolved as
            rejected('cancelled'). False if it was already dispatched (only
            further retries are prevented) or already finished.
        """
        if self.done() or self._canceller is None:
            return False
        return self._canceller(self)

    def add_done_callback(self, callback: Callable[['CommandHandle'], None]):
        """Call callback(handle) once the terminal outcome is known."""
        self._final.add_done_callback(lambda _future: callback(self))

    def raise_for_outcome(self, timeout: float | None = None) -> CommandOutcome:
        """Wait for the terminal outcome and raise if it is a failure.

        Raises:
            CommandCancelled: The command was cancelled
            CommandRejected: The bridge or validation refused the command
            CommandTimedOut: The state never converged before the deadline
        """
        outcome = self.result(timeout)
        token = outcome.correlation_token
        if outcome.cancelled:
            raise CommandCancelled(f"Command {token} was cancelled", token)
        if outcome.status is OutcomeStatus.REJECTED:
            raise CommandRejected(outcome.reason or 'rejected', token)
        if outcome.status is OutcomeStatus.TIMED_OUT:
            raise CommandTimedOut(f"Command {token} did not converge", token)
        return outcome

    def mark_accepted(self) -> bool:
        """Resolve the first stage as ACCEPTED. Returns False if already resolved."""
        with self._lock:
            if self._resolved or self._accepted.done():
                return False
            outcome = CommandOutcome(OutcomeStatus.ACCEPTED, self.correlation_token)
            self._accepted.set_result(outcome)
        return True

    def resolve(self, status: OutcomeStatus, reason: str | None = None) -> bool:
        """Resolve the terminal outcome.

        Returns:
            True if this call resolved the handle, False if it was already
            resolved (the first resolution wins)
        """
        if status is OutcomeStatus.ACCEPTED:
            raise ValueError("ACCEPTED is not a terminal outcome")
        outcome = CommandOutcome(status, self.correlation_token, reason)
        with self._lock:
            if self._resolved:
                return False
            self._resolved = True
            settle_first_stage = not self._accepted.done()
        # Futures run callbacks inline, so results are set outside the lock
        if settle_first_stage:
            self._accepted.set_result(outcome)
        self._final.set_result(outcome)
        logger.debug("Command %s on %s resolved: %s", self.correlation_token, self.request.target, outcome)
        return True


class BatchHandle:
    """Handles for the same delta issued to several resources.

    Each target resolves independently, so a batch can partly converge and
    partly time out.
    """

    def __init__(self, handles: Mapping[ResourceId, CommandHandle]):
        self.handles = dict(handles)

    def __len__(self) -> int:
        return len(self.handles)

    def done(self) -> bool:
        return all(handle.done() for handle in self.handles.values())

    def cancel(self) -> int:
        """Cancel every queued target. Returns how many were still queued."""
        return sum(1 for handle in self.handles.values() if handle.cancel())

    def results(self, timeout: float | None = None) -> dict[ResourceId, CommandOutcome]:
        """Wait for every target, sharing one overall timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        outcomes = {}
        for target, handle in self.handles.items():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            outcomes[target] = handle.result(remaining)
        return outcomes

    def failures(self, timeout: float | None = None) -> dict[ResourceId, CommandOutcome]:
        """Targets whose terminal outcome is anything other than CONVERGED."""
        return {
            target: outcome
            for target, outcome in self.results(timeout).items()
            if outcome.status is not OutcomeStatus.CONVERGED
        }


class ChangeKind(str, Enum):
    ADDED = 'added'
    UPDATED = 'updated'
    REMOVED = 'removed'


@dataclass(frozen=True)
class ResourceChange:
    kind: ChangeKind
    resource_id: ResourceId
    previous: ResourceState | None = None
    current: ResourceState | None = None


@dataclass(frozen=True)
class SyncDegraded:
    """Emitted for every failed poll while the bridge stays unreachable."""
    consecutive_poll_failures: int
    error: str = ''


@dataclass(frozen=True)
class SyncRestored:
    """Emitted on the first successful poll after one or more failures."""
    after_failures: int


SyncEvent = ResourceChange | SyncDegraded | SyncRestored


@dataclass(frozen=True)
class SyncStatus:
    degraded: bool
    consecutive_poll_failures: int
    last_success_at: float | None
    pending_expectations: int
