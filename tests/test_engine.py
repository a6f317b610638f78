"""Tests for SyncEngine in core/engine.py"""

import threading

import pytest

from core.engine import SyncEngine
from core.errors import CommandRejected, ConnectionRefused
from models.commands import (
    ChangeKind,
    CommandRequest,
    OutcomeStatus,
    ResourceChange,
    SyncDegraded,
    SyncRestored,
)
from models.resources import ResourceId, ResourceType
from fakes import FakeClock

LAMP = ResourceId.light('lamp-1')
FLOOR = ResourceId.light('lamp-2')


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(bridge, sync_config, clock):
    """Engine polled on demand with refresh(), on a fake clock."""
    engine = SyncEngine(bridge, sync_config, clock=clock)
    engine.start(background_polling=False)
    engine.refresh()
    yield engine
    engine.shutdown(timeout=2)


class TestIssue:
    """Tests for issuing commands."""

    def test_converges_after_poll(self, engine):
        """A command is ACCEPTED once sent and CONVERGED once a poll confirms it."""
        handle = engine.issue(LAMP, {'on': True, 'brightness': 200})

        assert handle.accepted(timeout=2).status is OutcomeStatus.ACCEPTED
        assert not handle.done()

        engine.refresh()
        assert handle.result(timeout=1).status is OutcomeStatus.CONVERGED
        assert engine.current_state(LAMP).attributes.brightness == 200

    def test_times_out_when_bridge_ignores_command(self, engine, bridge, clock):
        """Accepted but never reported: TIMED_OUT, and the model keeps polled truth."""
        bridge.auto_apply = False
        handle = engine.issue(LAMP, {'on': True, 'brightness': 200})
        assert handle.accepted(timeout=2).status is OutcomeStatus.ACCEPTED

        engine.refresh()
        assert not handle.done()

        clock.advance(engine.config.command_timeout + 0.5)
        engine.refresh()
        assert handle.result(timeout=1).status is OutcomeStatus.TIMED_OUT

        state = engine.current_state(LAMP)
        assert state.attributes.on is False
        assert state.attributes.brightness == 100
        assert engine.sync_status.pending_expectations == 0

    def test_submission_time_from_engine_clock(self, engine, clock):
        handle = engine.issue(LAMP, {'on': True})
        assert handle.request.submitted_at == clock()

    def test_type_outside_scope_rejected(self, bridge, sync_config, clock):
        engine = SyncEngine(bridge, sync_config, clock=clock, scope=[ResourceType.LIGHT])
        engine.start(background_polling=False)
        try:
            engine.refresh()
            handle = engine.issue(ResourceId.scene('scene-1'), {'active': True})

            outcome = handle.result(timeout=0)
            assert outcome.status is OutcomeStatus.REJECTED
            assert 'not synced' in outcome.reason
            assert bridge.sent == []

            engine.issue(LAMP, {'on': True}).accepted(timeout=2)
            engine.refresh()
            assert engine.current_state(LAMP).attributes.on is True
        finally:
            engine.shutdown(timeout=2)

    def test_invalid_command_rejected_without_send(self, engine, bridge):
        handle = engine.issue(LAMP, {'brightness': 300})

        outcome = handle.result(timeout=0)
        assert outcome.status is OutcomeStatus.REJECTED
        assert '300' in outcome.reason
        assert bridge.sent == []
        with pytest.raises(CommandRejected):
            handle.raise_for_outcome(timeout=0)

    def test_read_only_attribute_rejected(self, engine):
        handle = engine.issue(ResourceId.group('room-1'), {'lights': ('lamp-1',)})
        assert handle.result(timeout=0).status is OutcomeStatus.REJECTED

    def test_correlation_token_kept(self, engine):
        handle = engine.issue(LAMP, {'on': True}, correlation_token='abc')
        assert handle.correlation_token == 'abc'
        assert handle.accepted(timeout=2).correlation_token == 'abc'

    def test_issue_request_object(self, engine, clock):
        request = CommandRequest(FLOOR, {'mirek': 250}, submitted_at=clock())
        handle = engine.issue(request)
        assert handle.request.correlation_token == request.correlation_token
        handle.accepted(timeout=2)
        engine.refresh()
        assert handle.result(timeout=1).status is OutcomeStatus.CONVERGED

    def test_xy_normalised_before_dispatch(self, engine, bridge):
        handle = engine.issue(LAMP, {'xy': [0.3, 0.3]})
        handle.accepted(timeout=2)
        assert bridge.sent[-1][1] == {'color': {'xy': {'x': 0.3, 'y': 0.3}}}

    def test_scene_recall(self, engine):
        handle = engine.issue(ResourceId.scene('scene-1'), {'active': True})
        handle.accepted(timeout=2)
        engine.refresh()
        assert handle.result(timeout=1).status is OutcomeStatus.CONVERGED

    def test_issue_many(self, engine):
        batch = engine.issue_many([LAMP, FLOOR], {'on': False})
        for handle in batch.handles.values():
            handle.accepted(timeout=2)

        engine.refresh()
        outcomes = batch.results(timeout=1)
        assert set(outcomes) == {LAMP, FLOOR}
        assert batch.failures(timeout=0) == {}


class TestState:
    """Tests for reading synchronised state."""

    def test_current_state_and_find(self, engine):
        assert engine.current_state(LAMP).name == 'Desk lamp'
        assert engine.current_state(ResourceId.light('missing')) is None
        assert engine.find(ResourceType.GROUP, 'office').id == ResourceId.group('room-1')
        assert len(engine.states(ResourceType.LIGHT)) == 2

    def test_polls_share_command_budget(self, engine):
        assert engine.queue._bucket is engine.budget
        before = engine.budget.available

        engine.refresh()
        engine.refresh()

        assert engine.budget.available == before - 2

    def test_sync_status(self, engine):
        status = engine.sync_status
        assert not status.degraded
        assert status.last_success_at is not None
        assert status.pending_expectations == 0


class TestSubscriptions:
    """Tests for the event stream."""

    def test_change_events(self, engine, bridge):
        subscription = engine.subscribe()
        engine.issue(LAMP, {'on': True}).accepted(timeout=2)
        engine.refresh()

        event = subscription.get(timeout=1)
        assert isinstance(event, ResourceChange)
        assert event.kind is ChangeKind.UPDATED
        assert event.resource_id == LAMP

    def test_unchanged_poll_is_silent(self, engine):
        subscription = engine.subscribe()
        engine.refresh()
        engine.refresh()
        assert subscription.drain() == []

    def test_degraded_and_restored(self, engine, bridge):
        """Three failed polls give three SyncDegraded events, then SyncRestored."""
        subscription = engine.subscribe()
        bridge.poll_errors.extend([ConnectionRefused('bridge offline')] * 3)

        for _ in range(3):
            engine.refresh()

        events = subscription.drain()
        assert [e.consecutive_poll_failures for e in events] == [1, 2, 3]
        assert all(isinstance(e, SyncDegraded) for e in events)
        assert engine.sync_status.degraded
        # The last known state stays readable
        assert engine.current_state(LAMP) is not None

        engine.refresh()
        assert subscription.drain() == [SyncRestored(3)]
        assert not engine.sync_status.degraded

    def test_every_subscriber_sees_events(self, engine, bridge):
        first, second = engine.subscribe(), engine.subscribe()
        bridge.poll_errors.append(ConnectionRefused('down'))
        engine.refresh()
        assert len(first.drain()) == 1
        assert len(second.drain()) == 1

    def test_closed_subscription_stops_receiving(self, engine, bridge):
        subscription = engine.subscribe()
        subscription.close()
        bridge.poll_errors.append(ConnectionRefused('down'))
        engine.refresh()
        assert subscription.get(timeout=0) is None


    def test_slow_subscriber_loses_oldest(self, engine, bridge):
        subscription = engine.subscribe(maxsize=2)
        bridge.poll_errors.extend([ConnectionRefused('down')] * 3)

        for _ in range(3):
            engine.refresh()

        assert [e.consecutive_poll_failures for e in subscription.drain()] == [2, 3]
        assert subscription.dropped == 1

    def test_full_subscription_still_ends(self, engine, bridge):
        subscription = engine.subscribe(maxsize=1)
        bridge.poll_errors.append(ConnectionRefused('down'))
        engine.refresh()

        engine.shutdown()

        assert list(subscription) == []
        assert subscription.closed

class TestShutdown:
    """Tests for shutdown."""

    def test_pending_commands_time_out(self, engine, bridge):
        bridge.auto_apply = False
        handle = engine.issue(LAMP, {'on': True})
        handle.accepted(timeout=2)

        engine.shutdown()

        outcome = handle.result(timeout=1)
        assert outcome.status is OutcomeStatus.TIMED_OUT
        assert outcome.reason == 'engine shut down'
        assert bridge.closed

    def test_queued_commands_cancelled(self, engine, bridge):
        gate = threading.Event()
        bridge.send_gate = gate
        engine.issue(LAMP, {'on': True})
        queued = engine.issue(LAMP, {'brightness': 20})

        gate.set()
        engine.shutdown()

        assert queued.result(timeout=2).status in (OutcomeStatus.REJECTED, OutcomeStatus.TIMED_OUT)

    def test_issue_after_shutdown(self, engine):
        engine.shutdown()
        outcome = engine.issue(LAMP, {'on': True}).result(timeout=0)
        assert outcome.status is OutcomeStatus.REJECTED
        assert outcome.reason == 'engine shut down'

    def test_subscriptions_end(self, engine):
        subscription = engine.subscribe()
        engine.shutdown()
        assert list(subscription) == []
        assert list(engine.subscribe()) == []

    def test_shutdown_twice(self, engine):
        engine.shutdown()
        engine.shutdown()
        assert not engine.running

    def test_cannot_restart(self, engine):
        engine.shutdown()
        with pytest.raises(RuntimeError):
            engine.start()


class TestBackgroundPolling:
    """Tests with the polling thread running."""

    def test_converges_without_manual_refresh(self, bridge, sync_config):
        with SyncEngine(bridge, sync_config) as engine:
            assert engine.refresh(timeout=2)
            handle = engine.issue(LAMP, {'on': True})
            assert handle.result(timeout=3).status is OutcomeStatus.CONVERGED
        assert bridge.closed

    def test_refresh_waits_for_new_poll(self, bridge, sync_config):
        with SyncEngine(bridge, sync_config) as engine:
            engine.refresh(timeout=2)
            before = bridge.poll_count
            assert engine.refresh(timeout=2)
            assert bridge.poll_count > before
