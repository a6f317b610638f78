"""Rate-limited, coalescing command dispatch.

Commands for the same resource leave in submission order, one at a time.
Commands for different resources go out concurrently on a small worker
pool, all drawing from one global token bucket that polling shares (plus
a slower bucket for group commands). An unsent command is dropped when a
newer command touches the same attributes of the same resource.
"""

import dataclasses
import itertools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import tenacity

from core.config import SyncConfig
from core.errors import TransportError
from core.rate_limit import TokenBucket
from core.transport import BridgeTransport
from models.commands import CANCELLED, CommandHandle, CommandRequest, OutcomeStatus
from models.payloads import command_endpoint, to_api_payload
from models.resources import ResourceId, ResourceType

logger = logging.getLogger(__name__)

OnAccepted = Callable[[CommandRequest, CommandHandle], None]


class _DispatchAborted(Exception):
    """Raised inside a send attempt when the queue closes while waiting for a token."""


@dataclass
class _QueuedCommand:
    request: CommandRequest
    handle: CommandHandle
    sequence: int


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TransportError) and exc.is_transient


class CommandQueue:
    """Accepts commands and dispatches them through a BridgeTransport."""

    def __init__(self, transport: BridgeTransport, config: SyncConfig, on_accepted: OnAccepted,
                 clock: Callable[[], float] = time.monotonic, bucket: TokenBucket | None = None):
        """Initialise the queue.

        Args:
            transport: Bridge transport used for sends
            config: Rate limit and retry settings
            on_accepted: Called with (request, handle) after the bridge
                acknowledged a command, before the handle reports ACCEPTED
            clock: Monotonic clock for the token buckets
            bucket: Global token bucket, shared with polling; built from
                config when omitted
        """
        self._transport = transport
        self._config = config
        self._on_accepted = on_accepted
        self._bucket = bucket or TokenBucket(config.command_rate_limit, config.command_burst, clock)
        self._type_buckets: dict[ResourceType, TokenBucket] = {}
        if config.group_rate_limit:
            self._type_buckets[ResourceType.GROUP] = TokenBucket(config.group_rate_limit, 1, clock)

        self._cond = threading.Condition()
        self._queued: list[_QueuedCommand] = []
        self._in_flight: set[ResourceId] = set()
        self._sequence = itertools.count()
        self._closing = threading.Event()
        self._workers: list[threading.Thread] = []

    def __len__(self) -> int:
        with self._cond:
            return len(self._queued)

    @property
    def closed(self) -> bool:
        return self._closing.is_set()

    def queued_requests(self) -> list[CommandRequest]:
        """Requests waiting for dispatch, in dispatch order."""
        with self._cond:
            return [entry.request for entry in self._queued]

    def submit(self, request: CommandRequest) -> CommandHandle:
        """Queue a validated command without blocking.

        Unsent commands for the same resource that share an attribute with
        this one are dropped and resolve SUPERSEDED. Their other attributes
        carry over, so {on, brightness} followed by {brightness} still turns
        the light on; the handle's request holds the merged delta.

        Returns:
            Handle that resolves as the command progresses
        """
        superseded = []
        with self._cond:
            if self._closing.is_set():
                closed = True
            else:
                closed = False
                superseded = [entry for entry in self._queued if entry.request.overlaps(request)]
                if superseded:
                    self._queued = [entry for entry in self._queued if entry not in superseded]
                    merged = {}
                    for entry in superseded:
                        merged.update(entry.request.delta)
                    merged.update(request.delta)
                    request = dataclasses.replace(request, delta=merged)
                handle = CommandHandle(request)
                handle.bind_canceller(self.cancel)
                self._queued.append(_QueuedCommand(request, handle, next(self._sequence)))
                self._cond.notify()

        if closed:
            handle = CommandHandle(request)
            handle.resolve(OutcomeStatus.REJECTED, 'command queue closed')
            return handle

        for entry in superseded:
            logger.debug("Coalesced %s into %s on %s", entry.request.correlation_token,
                         request.correlation_token, request.target)
            entry.handle.resolve(OutcomeStatus.SUPERSEDED, f"coalesced into {request.correlation_token}")
        return handle

    def cancel(self, handle: CommandHandle) -> bool:
        """Cancel a command.

        A queued command is removed and resolves rejected('cancelled'). A
        command already being dispatched only stops retrying.

        Returns:
            True if the command was removed from the queue
        """
        removed = None
        with self._cond:
            for entry in self._queued:
                if entry.handle is handle:
                    removed = entry
                    break
            if removed is not None:
                self._queued.remove(removed)
            handle.cancel_requested = True

        if removed is None:
            return False
        handle.resolve(OutcomeStatus.REJECTED, CANCELLED)
        return True

    def start(self):
        """Start the dispatch workers."""
        if self._workers or self._closing.is_set():
            return
        for index in range(self._config.dispatch_workers):
            worker = threading.Thread(target=self._worker_loop, name=f"hue-sync-dispatch-{index}", daemon=True)
            worker.start()
            self._workers.append(worker)

    def close(self, timeout: float | None = None):
        """Stop dispatching.

        Unsent commands resolve rejected('cancelled'); in-flight commands
        finish their current attempt but are not retried.
        """
        with self._cond:
            self._closing.set()
            dropped = self._queued
            self._queued = []
            self._cond.notify_all()

        for entry in dropped:
            entry.handle.resolve(OutcomeStatus.REJECTED, CANCELLED)
        for worker in self._workers:
            worker.join(timeout)
        self._workers = []

    def _take_next(self) -> _QueuedCommand | None:
        # Caller holds self._cond
        for entry in self._queued:
            if entry.request.target not in self._in_flight:
                self._queued.remove(entry)
                self._in_flight.add(entry.request.target)
                return entry
        return None

    def _worker_loop(self):
        while True:
            with self._cond:
                entry = self._take_next()
                while entry is None:
                    if self._closing.is_set():
                        return
                    self._cond.wait()
                    entry = self._take_next()
            try:
                self._dispatch(entry)
            finally:
                with self._cond:
                    self._in_flight.discard(entry.request.target)
                    self._cond.notify_all()

    def _should_stop(self, handle: CommandHandle) -> Callable[[tenacity.RetryCallState], bool]:
        def stop(retry_state: tenacity.RetryCallState) -> bool:
            return handle.cancel_requested or self._closing.is_set()
        return stop

    def _build_retryer(self, handle: CommandHandle) -> tenacity.Retrying:
        """Build tenacity retryer with configured limits."""
        return tenacity.Retrying(
            stop=tenacity.stop_any(
                tenacity.stop_after_attempt(self._config.max_retry_attempts),
                self._should_stop(handle),
            ),
            wait=tenacity.wait_exponential(
                multiplier=self._config.retry_backoff_base,
                max=self._config.retry_backoff_max,
            ),
            retry=tenacity.retry_if_exception(_is_transient),
            before_sleep=self._log_retry,
            sleep=self._closing.wait,
            reraise=True,
        )

    def _log_retry(self, retry_state: tenacity.RetryCallState):
        """Callback invoked before each retry sleep."""
        request = retry_state.args[0]
        logger.warning(
            "Transient error sending %s to %s (attempt %d/%d): %s",
            request.correlation_token,
            request.target,
            retry_state.attempt_number,
            self._config.max_retry_attempts,
            retry_state.outcome.exception(),
        )

    def _send_once(self, request: CommandRequest, endpoint: str, payload: dict) -> list[dict]:
        """One send attempt; every attempt, retries included, costs a token."""
        buckets = [self._bucket]
        type_bucket = self._type_buckets.get(request.target.rtype)
        if type_bucket is not None:
            buckets.append(type_bucket)
        for bucket in buckets:
            if not bucket.acquire(cancel=self._closing):
                raise _DispatchAborted()
        return self._transport.send(endpoint, payload)

    def _dispatch(self, entry: _QueuedCommand):
        request, handle = entry.request, entry.handle
        endpoint = command_endpoint(request.target)
        payload = to_api_payload(request.target.rtype, request.delta)
        logger.debug("Dispatching %s to %s", request.correlation_token, endpoint)

        try:
            self._build_retryer(handle)(self._send_once, request, endpoint, payload)
        except _DispatchAborted:
            handle.resolve(OutcomeStatus.REJECTED, CANCELLED)
            return
        except TransportError as e:
            if e.is_transient and (handle.cancel_requested or self._closing.is_set()):
                handle.resolve(OutcomeStatus.REJECTED, CANCELLED)
            elif e.is_transient:
                logger.error("Giving up on %s after %d attempts: %s",
                             request.correlation_token, self._config.max_retry_attempts, e)
                handle.resolve(OutcomeStatus.REJECTED, f"retries exhausted: {e}")
            else:
                logger.info("Bridge rejected %s on %s: %s", request.correlation_token, request.target, e)
                handle.resolve(OutcomeStatus.REJECTED, str(e))
            return
        except Exception as e:
            logger.exception("Unexpected error dispatching %s", request.correlation_token)
            handle.resolve(OutcomeStatus.REJECTED, f"dispatch failed: {e}")
            return

        self._on_accepted(request, handle)
        handle.mark_accepted()
