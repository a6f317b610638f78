"""SyncEngine: the facade applications use.

This module contains:
- Subscription: a subscriber's private event stream
- SyncEngine: wires the ResourceModel, CommandQueue and StateReconciler
  together and runs the polling loop
"""

import dataclasses
import logging
import queue
import threading
import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from typing import Any

from core.command_queue import CommandQueue
from core.config import SyncConfig
from core.errors import CommandRejected
from core.rate_limit import TokenBucket
from core.reconciler import CycleReport, StateReconciler
from core.transport import BridgeTransport
from models.commands import (
    BatchHandle,
    CommandHandle,
    CommandRequest,
    OutcomeStatus,
    SyncEvent,
    SyncStatus,
)
from models.resource_model import ResourceModel
from models.resources import ResourceId, ResourceState, ResourceType, validate_delta

logger = logging.getLogger(__name__)

ENGINE_SHUT_DOWN = 'engine shut down'

_END = object()

# Events buffered per subscriber before the oldest are dropped
DEFAULT_BUFFER_SIZE = 1000


class Subscription:
    """Ordered stream of SyncEvents for one subscriber.

    Events are buffered per subscriber, so a slow consumer never delays the
    polling loop or other subscribers. The buffer holds at most maxsize
    events; when it is full the oldest event is dropped and counted in
    `dropped`. Iterating blocks until the next event and stops once the
    subscription or the engine is closed.
    """

    def __init__(self, on_close: Callable[['Subscription'], None] | None = None,
                 maxsize: int = DEFAULT_BUFFER_SIZE):
        if maxsize < 1:
            raise ValueError(f"Subscription buffer must hold at least one event, got {maxsize}")
        self._events: queue.Queue = queue.Queue(maxsize)
        self._put_lock = threading.Lock()
        self._on_close = on_close
        self.closed = False
        self.dropped = 0

    def _put(self, item):
        with self._put_lock:
            while True:
                try:
                    self._events.put_nowait(item)
                    return
                except queue.Full:
                    pass
                try:
                    oldest = self._events.get_nowait()
                except queue.Empty:
                    continue
                if oldest is not _END:
                    self.dropped += 1
                    if self.dropped == 1 or self.dropped % 100 == 0:
                        logger.warning("Subscriber is not keeping up, %d events dropped", self.dropped)

    def _push(self, event: SyncEvent):
        if not self.closed:
            self._put(event)

    def _end(self):
        self.closed = True
        self._put(_END)

    def get(self, timeout: float | None = None) -> SyncEvent | None:
        """Next event, or None on timeout or once the stream has ended."""
        try:
            event = self._events.get(timeout=timeout)
        except queue.Empty:
            return None
        if event is _END:
            # Leave the marker for any other reader of this stream
            self._put(_END)
            return None
        return event

    def drain(self) -> list[SyncEvent]:
        """Every event buffered right now, without waiting."""
        events = []
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return events
            if event is _END:
                self._put(_END)
                return events
            events.append(event)

    def close(self):
        if self.closed:
            return
        if self._on_close is not None:
            self._on_close(self)
        self._end()

    def __iter__(self) -> Iterator[SyncEvent]:
        while True:
            event = self._events.get()
            if event is _END:
                self._put(_END)
                return
            yield event

    def __enter__(self) -> 'Subscription':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class SyncEngine:
    """Keeps a local view of a bridge in sync and issues commands against it.

    Example:
        engine = SyncEngine(HttpBridgeTransport(ip, token))
        with engine:
            handle = engine.issue(ResourceId.light(rid), {'on': True})
            print(handle.result(timeout=10))
    """

    def __init__(self, transport: BridgeTransport, config: SyncConfig | None = None,
                 clock: Callable[[], float] = time.monotonic,
                 scope: Iterable[ResourceType] | None = None):
        """Initialise the engine. Nothing runs until start().

        Args:
            transport: Bridge transport; the engine closes it on shutdown
            config: Tuning knobs (defaults to SyncConfig())
            clock: Monotonic clock shared by deadlines and rate limits
            scope: Resource types to keep in sync; None syncs all of them
        """
        self.config = config or SyncConfig()
        self.transport = transport
        self._clock = clock
        self.model = ResourceModel()
        self._stopping = threading.Event()
        # Polls and commands share the bridge's request budget
        self.budget = TokenBucket(self.config.command_rate_limit, self.config.command_burst, clock)
        self.reconciler = StateReconciler(
            transport, self.model, self.config, publish=self._publish, clock=clock, scope=scope,
            budget=self.budget, cancel=self._stopping,
        )
        self.queue = CommandQueue(
            transport, self.config, on_accepted=self.reconciler.expect, clock=clock, bucket=self.budget
        )

        self._subscribers: list[Subscription] = []
        self._subscribers_lock = threading.Lock()

        self._cycle_cond = threading.Condition()
        self._cycles_completed = 0
        self._cycle_running = False

        self._wake = threading.Event()
        self._poll_thread: threading.Thread | None = None
        self._started = False
        self._shut_down = False

    def __enter__(self) -> 'SyncEngine':
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

    @property
    def running(self) -> bool:
        return self._started and not self._shut_down

    def start(self, background_polling: bool = True):
        """Start dispatch workers and, optionally, the polling loop.

        Args:
            background_polling: Poll every config.poll_interval on a
                background thread. Without it, call refresh() to poll.
        """
        if self._shut_down:
            raise RuntimeError("SyncEngine cannot be restarted after shutdown")
        if self._started:
            return
        self._started = True
        self.queue.start()
        if background_polling:
            self._poll_thread = threading.Thread(target=self._poll_loop, name='hue-sync-poll', daemon=True)
            self._poll_thread.start()
        logger.info("Sync engine started (poll interval %.1fs)", self.config.poll_interval)

    def _poll_loop(self):
        while not self._stopping.is_set():
            self._run_cycle()
            self._wake.wait(self.config.poll_interval)
            self._wake.clear()

    def _run_cycle(self) -> CycleReport:
        with self._cycle_cond:
            self._cycle_running = True
        try:
            return self.reconciler.run_cycle()
        finally:
            with self._cycle_cond:
                self._cycle_running = False
                self._cycles_completed += 1
                self._cycle_cond.notify_all()

    def refresh(self, timeout: float | None = None) -> bool:
        """Wait until a poll that started after this call has completed.

        With background polling the next poll is triggered early; without
        it the poll runs on the calling thread.

        Returns:
            True if a fresh poll completed (successfully or not) in time
        """
        if self._shut_down:
            return False
        if self._poll_thread is None:
            self._run_cycle()
            return True

        with self._cycle_cond:
            # A cycle already underway started before this call
            target = self._cycles_completed + (2 if self._cycle_running else 1)
        self._wake.set()
        with self._cycle_cond:
            return self._cycle_cond.wait_for(
                lambda: self._cycles_completed >= target or self._shut_down, timeout
            ) and not self._shut_down

    def issue(self, target: ResourceId | CommandRequest, delta: Mapping[str, Any] | None = None,
              correlation_token: str | None = None) -> CommandHandle:
        """Issue a command without blocking.

        Args:
            target: Resource to change, or a ready-made CommandRequest whose
                submitted_at must come from the engine's clock
            delta: Attributes to change (ignored when target is a request)
            correlation_token: Token to tag the command with; generated if
                omitted

        Returns:
            CommandHandle. Invalid commands, and commands to resource types
            outside the engine's scope, come back already rejected.
        """
        if isinstance(target, CommandRequest):
            request = target
        else:
            extra = {'correlation_token': correlation_token} if correlation_token else {}
            request = CommandRequest(target, delta or {}, submitted_at=self._clock(), **extra)

        try:
            normalized = validate_delta(request.target.rtype, request.delta)
        except CommandRejected as e:
            logger.info("Rejected %s on %s: %s", request.correlation_token, request.target, e.reason)
            handle = CommandHandle(request)
            handle.resolve(OutcomeStatus.REJECTED, e.reason)
            return handle

        if not self.reconciler.covers(request.target.rtype):
            handle = CommandHandle(request)
            handle.resolve(OutcomeStatus.REJECTED, f"{request.target.rtype.value} resources are not synced")
            return handle

        if self._shut_down:
            handle = CommandHandle(request)
            handle.resolve(OutcomeStatus.REJECTED, ENGINE_SHUT_DOWN)
            return handle

        return self.queue.submit(dataclasses.replace(request, delta=normalized))

    def issue_many(self, targets: Iterable[ResourceId], delta: Mapping[str, Any]) -> BatchHandle:
        """Issue the same delta to several resources, one command each."""
        return BatchHandle({target: self.issue(target, delta) for target in targets})

    def current_state(self, resource_id: ResourceId) -> ResourceState | None:
        """Last polled state of a resource. Never blocks on the bridge."""
        return self.model.get(resource_id)

    def states(self, rtype: ResourceType | None = None) -> list[ResourceState]:
        return self.model.all(rtype)

    def find(self, rtype: ResourceType, name: str) -> ResourceState | None:
        return self.model.find_by_name(rtype, name)

    def subscribe(self, maxsize: int = DEFAULT_BUFFER_SIZE) -> Subscription:
        """Open a new event stream.

        Each subscriber sees the events published after it subscribed, in
        publication order. A subscriber that falls more than maxsize events
        behind loses the oldest ones.
        """
        subscription = Subscription(on_close=self._unsubscribe, maxsize=maxsize)
        if self._shut_down:
            subscription._end()
            return subscription
        with self._subscribers_lock:
            self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription):
        with self._subscribers_lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def _publish(self, event: SyncEvent):
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription._push(event)

    @property
    def sync_status(self) -> SyncStatus:
        return SyncStatus(
            degraded=self.reconciler.degraded,
            consecutive_poll_failures=self.reconciler.consecutive_failures,
            last_success_at=self.reconciler.last_success_at,
            pending_expectations=self.reconciler.pending_count,
        )

    def shutdown(self, timeout: float | None = 5.0):
        """Stop polling and dispatch and resolve every open command.

        Queued commands resolve rejected('cancelled'); commands waiting to
        converge resolve timed_out('engine shut down'). Safe to call twice.
        """
        if self._shut_down:
            return
        self._shut_down = True
        logger.info("Shutting down sync engine")

        self._stopping.set()
        self._wake.set()
        with self._cycle_cond:
            self._cycle_cond.notify_all()
        if self._poll_thread is not None:
            self._poll_thread.join(timeout)
            self._poll_thread = None

        self.queue.close(timeout)
        self.reconciler.fail_all(ENGINE_SHUT_DOWN)

        with self._subscribers_lock:
            subscribers = self._subscribers
            self._subscribers = []
        for subscription in subscribers:
            subscription._end()

        self.transport.close()
