"""Poll-driven state reconciliation.

Each cycle walks idle -> polling -> diffing -> notifying -> idle (a failed
poll skips diffing). The reconciler is the only writer of the ResourceModel
and the only owner of pending expectations: it marks commands converged
when polled state matches them and timed out when their deadline passes.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from transitions import Machine

from core.config import SyncConfig
from core.errors import TransportError
from core.rate_limit import TokenBucket
from core.transport import BridgeTransport
from models.commands import (
    CommandHandle,
    CommandRequest,
    OutcomeStatus,
    ResourceChange,
    SyncDegraded,
    SyncEvent,
    SyncRestored,
)
from models.resource_model import ResourceModel
from models.resources import ResourceId, ResourceState, ResourceType

logger = logging.getLogger(__name__)


def attribute_matches(name: str, observed: Any, desired: Any, config: SyncConfig) -> bool:
    """Compare one polled attribute with the commanded value within tolerance."""
    if observed is None:
        return desired is None
    if name == 'brightness':
        return abs(observed - desired) <= config.brightness_tolerance
    if name == 'mirek':
        return abs(observed - desired) <= config.mirek_tolerance
    if name == 'speed':
        return abs(observed - desired) <= config.speed_tolerance
    if name == 'xy':
        return all(abs(o - d) <= config.xy_tolerance for o, d in zip(observed, desired))
    return observed == desired


@dataclass
class PendingExpectation:
    """What a dispatched command should make the bridge report."""
    request: CommandRequest
    handle: CommandHandle
    baseline_revision: int | None
    registered_at: float
    deadline: float

    @property
    def resource_id(self) -> ResourceId:
        return self.request.target

    def overlaps(self, request: CommandRequest) -> bool:
        return self.request.overlaps(request)

    def is_satisfied_by(self, state: ResourceState, config: SyncConfig) -> bool:
        return all(
            attribute_matches(name, state.get(name), desired, config)
            for name, desired in self.request.delta.items()
        )


@dataclass(frozen=True)
class CycleReport:
    ok: bool
    changes: tuple[ResourceChange, ...] = ()
    converged: tuple[str, ...] = ()
    timed_out: tuple[str, ...] = ()
    error: str | None = None


@dataclass
class _Resolutions:
    converged: list[PendingExpectation] = field(default_factory=list)
    timed_out: list[PendingExpectation] = field(default_factory=list)
    removed: list[PendingExpectation] = field(default_factory=list)


class StateReconciler:
    """Polls the bridge, feeds the model and resolves pending expectations."""

    if TYPE_CHECKING:
        # FSM generated methods and attributes for static analysis
        phase: str
        start_poll: Callable[[], None]
        poll_succeeded: Callable[[], None]
        poll_failed: Callable[[], None]
        begin_notify: Callable[[], None]
        end_cycle: Callable[[], None]

    # FSM States
    STATE_IDLE = 'idle'
    STATE_POLLING = 'polling'
    STATE_DIFFING = 'diffing'
    STATE_NOTIFYING = 'notifying'

    def __init__(self, transport: BridgeTransport, model: ResourceModel, config: SyncConfig,
                 publish: Callable[[SyncEvent], None] | None = None,
                 clock: Callable[[], float] = time.monotonic,
                 scope: Iterable[ResourceType] | None = None,
                 budget: TokenBucket | None = None,
                 cancel: threading.Event | None = None):
        """Initialise the reconciler.

        Args:
            transport: Bridge transport used for polls
            model: Resource model this reconciler exclusively writes
            config: Timeouts and convergence tolerances
            publish: Receives every ResourceChange, SyncDegraded and
                SyncRestored event
            clock: Monotonic clock for deadlines
            scope: Resource types to poll; None polls everything
            budget: Token bucket each poll draws one token per bridge
                request from; shared with command dispatch
            cancel: Event that aborts a wait for poll budget
        """
        self._transport = transport
        self._model = model
        self._config = config
        self._publish = publish or (lambda event: None)
        self._clock = clock
        self._scope = None if scope is None else frozenset(scope)
        self._budget = budget
        self._cancel = cancel

        self._pending: list[PendingExpectation] = []
        self._lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._closed = False

        self.consecutive_failures = 0
        self.last_success_at: float | None = None

        # FSM Initialization
        self.state_machine = Machine(
            model=self,
            states=[
                self.STATE_IDLE,
                self.STATE_POLLING,
                self.STATE_DIFFING,
                self.STATE_NOTIFYING,
            ],
            initial=self.STATE_IDLE,
            ignore_invalid_triggers=True,
            model_attribute='phase'
        )

        # FSM Transitions
        self.state_machine.add_transition(trigger='start_poll', source=self.STATE_IDLE, dest=self.STATE_POLLING)
        self.state_machine.add_transition(
            trigger='poll_succeeded', source=self.STATE_POLLING, dest=self.STATE_DIFFING
        )
        self.state_machine.add_transition(
            trigger='poll_failed', source=self.STATE_POLLING, dest=self.STATE_NOTIFYING
        )
        self.state_machine.add_transition(
            trigger='begin_notify', source=self.STATE_DIFFING, dest=self.STATE_NOTIFYING
        )
        self.state_machine.add_transition(trigger='end_cycle', source='*', dest=self.STATE_IDLE)

    @property
    def degraded(self) -> bool:
        return self.consecutive_failures > 0

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def pending(self) -> list[PendingExpectation]:
        with self._lock:
            return list(self._pending)

    def covers(self, rtype: ResourceType) -> bool:
        """True if polls include resources of this type."""
        return self._scope is None or rtype in self._scope

    def expect(self, request: CommandRequest, handle: CommandHandle) -> PendingExpectation | None:
        """Register what an acknowledged command should converge to.

        The deadline counts from request.submitted_at, so time spent queued
        or retrying is part of the command timeout. Older expectations on
        overlapping attributes of the same resource are superseded. After
        close, the handle times out immediately.
        """
        current = self._model.get(request.target)
        expectation = PendingExpectation(
            request=request,
            handle=handle,
            baseline_revision=current.revision if current else None,
            registered_at=self._clock(),
            deadline=request.submitted_at + self._config.command_timeout,
        )

        with self._lock:
            if self._closed:
                superseded = None
            else:
                superseded = [p for p in self._pending if p.overlaps(request)]
                self._pending = [p for p in self._pending if p not in superseded]
                self._pending.append(expectation)

        if superseded is None:
            handle.resolve(OutcomeStatus.TIMED_OUT, 'engine shut down')
            return None

        for old in superseded:
            old.handle.resolve(OutcomeStatus.SUPERSEDED, f"superseded by {request.correlation_token}")
        return expectation

    def fail_all(self, reason: str = 'engine shut down') -> int:
        """Time out every pending expectation and refuse new ones."""
        with self._lock:
            self._closed = True
            pending = self._pending
            self._pending = []
        for expectation in pending:
            expectation.handle.resolve(OutcomeStatus.TIMED_OUT, reason)
        return len(pending)

    def run_cycle(self) -> CycleReport:
        """Run one poll/diff/notify cycle. Cycles never overlap."""
        with self._cycle_lock:
            if not self._take_poll_budget():
                return CycleReport(ok=False, error='poll cancelled')
            started_at = self._clock()
            self.start_poll()
            try:
                try:
                    states = self._transport.poll(self._scope)
                except Exception as e:
                    if not isinstance(e, TransportError):
                        logger.exception("Unexpected error polling the bridge")
                    self.poll_failed()
                    return self._handle_poll_failure(e)

                self.poll_succeeded()
                changes = self._model.apply_poll_snapshot(states, self._scope)
                self.begin_notify()
                return self._handle_poll_success(changes, started_at)
            finally:
                self.end_cycle()

    def _take_poll_budget(self) -> bool:
        if self._budget is None:
            return True
        cost = min(self._transport.requests_per_poll(self._scope), self._budget.capacity)
        return self._budget.acquire(cost, cancel=self._cancel)

    def _handle_poll_failure(self, error: Exception) -> CycleReport:
        self.consecutive_failures += 1
        logger.warning("Poll failed (%d consecutive): %s", self.consecutive_failures, error)
        self._publish(SyncDegraded(self.consecutive_failures, str(error)))

        # A missed poll never resolves anything early, but deadlines still hold
        now = self._clock()
        resolutions = _Resolutions()
        with self._lock:
            remaining = []
            for expectation in self._pending:
                if expectation.handle.done():
                    continue
                if now >= expectation.deadline:
                    resolutions.timed_out.append(expectation)
                else:
                    remaining.append(expectation)
            self._pending = remaining

        self._resolve(resolutions)
        return CycleReport(
            ok=False,
            timed_out=tuple(p.handle.correlation_token for p in resolutions.timed_out),
            error=str(error),
        )

    def _handle_poll_success(self, changes: list[ResourceChange], started_at: float) -> CycleReport:
        if self.consecutive_failures:
            logger.info("Bridge sync restored after %d failed polls", self.consecutive_failures)
            self._publish(SyncRestored(self.consecutive_failures))
            self.consecutive_failures = 0

        now = self._clock()
        self.last_success_at = now

        for change in changes:
            self._publish(change)

        resolutions = _Resolutions()
        with self._lock:
            remaining = []
            for expectation in self._pending:
                if expectation.handle.done():
                    continue
                state = self._model.get(expectation.resource_id)
                if state is None and self._was_removed(expectation):
                    resolutions.removed.append(expectation)
                elif (state is not None and started_at >= expectation.registered_at
                      and expectation.is_satisfied_by(state, self._config)):
                    # Only polls begun after acknowledgement can confirm a command
                    resolutions.converged.append(expectation)
                elif now >= expectation.deadline:
                    resolutions.timed_out.append(expectation)
                else:
                    remaining.append(expectation)
            self._pending = remaining

        self._resolve(resolutions)
        return CycleReport(
            ok=True,
            changes=tuple(changes),
            converged=tuple(p.handle.correlation_token for p in resolutions.converged),
            timed_out=tuple(p.handle.correlation_token for p in resolutions.timed_out),
        )

    def _was_removed(self, expectation: PendingExpectation) -> bool:
        # Unknown at registration or outside the polled types: absence says nothing
        return expectation.baseline_revision is not None and self.covers(expectation.resource_id.rtype)

    def _resolve(self, resolutions: _Resolutions):
        for expectation in resolutions.converged:
            expectation.handle.resolve(OutcomeStatus.CONVERGED)
        for expectation in resolutions.timed_out:
            logger.info("Command %s on %s did not converge within %.1fs",
                        expectation.handle.correlation_token, expectation.resource_id,
                        self._config.command_timeout)
            expectation.handle.resolve(OutcomeStatus.TIMED_OUT)
        for expectation in resolutions.removed:
            expectation.handle.resolve(OutcomeStatus.REJECTED, 'resource removed')
