"""Tests for ResourceModel in models/resource_model.py"""

from models.commands import ChangeKind
from models.resource_model import ResourceModel
from models.resources import ResourceId, ResourceType
from fakes import group, light, scene


class TestApplyPollSnapshot:
    """Tests for diffing and applying polled snapshots."""

    def test_first_snapshot_adds_everything(self):
        """Every resource in the first poll is ADDED with a fresh revision."""
        model = ResourceModel()
        changes = model.apply_poll_snapshot([light('1'), light('2')])

        assert [c.kind for c in changes] == [ChangeKind.ADDED, ChangeKind.ADDED]
        assert len(model) == 2
        assert model.get(ResourceId.light('1')).revision > 0

    def test_identical_snapshot_is_no_op(self):
        """Applying the same snapshot twice changes nothing the second time."""
        model = ResourceModel()
        model.apply_poll_snapshot([light('1', on=True)])
        before = model.snapshot()
        revision = model.get(ResourceId.light('1')).revision

        assert model.apply_poll_snapshot([light('1', on=True)]) == []
        assert model.snapshot() is before
        assert model.get(ResourceId.light('1')).revision == revision

    def test_update_bumps_revision(self):
        """A content change is reported with previous and current state."""
        model = ResourceModel()
        model.apply_poll_snapshot([light('1', on=False)])
        old = model.get(ResourceId.light('1'))

        changes = model.apply_poll_snapshot([light('1', on=True)])

        assert len(changes) == 1
        change = changes[0]
        assert change.kind is ChangeKind.UPDATED
        assert change.previous == old
        assert change.current.revision > old.revision
        assert model.get(ResourceId.light('1')).attributes.on is True

    def test_removed_resource(self):
        """Resources missing from a full poll are REMOVED."""
        model = ResourceModel()
        model.apply_poll_snapshot([light('1'), light('2')])

        changes = model.apply_poll_snapshot([light('1')])

        assert [(c.kind, c.resource_id) for c in changes] == [(ChangeKind.REMOVED, ResourceId.light('2'))]
        assert ResourceId.light('2') not in model

    def test_scoped_poll_keeps_other_types(self):
        """A light-only poll never removes groups or scenes."""
        model = ResourceModel()
        model.apply_poll_snapshot([light('1'), group('g'), scene('s')])

        changes = model.apply_poll_snapshot([light('1')], scope=[ResourceType.LIGHT])

        assert changes == []
        assert len(model) == 3

    def test_change_order(self):
        """Changes come as added, then updated, then removed."""
        model = ResourceModel()
        model.apply_poll_snapshot([light('a', on=False), light('b')])

        changes = model.apply_poll_snapshot([light('a', on=True), light('c')])

        assert [c.kind for c in changes] == [ChangeKind.ADDED, ChangeKind.UPDATED, ChangeKind.REMOVED]

    def test_duplicate_ids_last_wins(self):
        """With duplicates in one snapshot the last entry is kept."""
        model = ResourceModel()
        model.apply_poll_snapshot([light('1', on=False), light('1', on=True)])
        assert model.get(ResourceId.light('1')).attributes.on is True

    def test_readded_resource_gets_new_revision(self):
        """Revisions never repeat, even across removal."""
        model = ResourceModel()
        model.apply_poll_snapshot([light('1')])
        first = model.get(ResourceId.light('1')).revision
        model.apply_poll_snapshot([])
        model.apply_poll_snapshot([light('1')])
        assert model.get(ResourceId.light('1')).revision > first

    def test_snapshot_is_isolated_from_later_polls(self):
        """A snapshot taken earlier keeps its view."""
        model = ResourceModel()
        model.apply_poll_snapshot([light('1', on=False)])
        snapshot = model.snapshot()

        model.apply_poll_snapshot([light('1', on=True)])

        assert snapshot[ResourceId.light('1')].attributes.on is False


class TestQueries:
    """Tests for read helpers."""

    def test_all_filters_by_type(self):
        model = ResourceModel()
        model.apply_poll_snapshot([light('2'), light('1'), scene('s')])
        assert [s.id.rid for s in model.all(ResourceType.LIGHT)] == ['1', '2']

    def test_find_by_name_case_insensitive(self):
        model = ResourceModel()
        model.apply_poll_snapshot([light('1', 'Desk Lamp')])
        assert model.find_by_name(ResourceType.LIGHT, 'desk lamp').id == ResourceId.light('1')
        assert model.find_by_name(ResourceType.GROUP, 'desk lamp') is None
