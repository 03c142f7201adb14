"""Tests for busy-time merging and conflict detection."""

from datetime import datetime

from homesync.domain.calendar_sync.busy_slots import intervals_overlap, merge_busy_slots
from homesync.domain.calendar_sync.errors import UnknownProviderError
from homesync.domain.calendar_sync.schemas import BusySlot, NormalizedEvent


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 1, 15, hour, minute)


def _slot(start: datetime, end: datetime, label: str = "Busy", source: int = 1, event_id=None) -> BusySlot:
    return BusySlot(start=start, end=end, label=label, source_connections=[source], event_id=event_id)


def _event(event_id: str, start: datetime, end: datetime, title: str = "Busy", all_day: bool = False):
    return NormalizedEvent(id=event_id, title=title, start=start, end=end, is_all_day=all_day)


class TestIntervalsOverlap:
    def test_touching_intervals_do_not_overlap(self):
        assert not intervals_overlap(_at(10), _at(11), _at(11), _at(12))

    def test_one_minute_overlap(self):
        assert intervals_overlap(_at(10), _at(11), _at(10, 59), _at(12))

    def test_containment(self):
        assert intervals_overlap(_at(10), _at(12), _at(10, 30), _at(11))


class TestMergeBusySlots:
    def test_merges_overlapping_slots(self):
        merged = merge_busy_slots(
            [
                [_slot(_at(10), _at(10, 30)), _slot(_at(12), _at(12, 30))],
                [_slot(_at(10, 15), _at(11), source=2)],
            ]
        )

        assert [(s.start, s.end) for s in merged] == [
            (_at(10), _at(11)),
            (_at(12), _at(12, 30)),
        ]

    def test_concatenates_labels_and_sources(self):
        merged = merge_busy_slots(
            [
                [_slot(_at(10), _at(11), label="Dentist", source=1)],
                [_slot(_at(10, 30), _at(11, 30), label="Team sync", source=2)],
            ]
        )

        assert len(merged) == 1
        assert merged[0].label == "Dentist / Team sync"
        assert merged[0].source_connections == [1, 2]
        assert merged[0].end == _at(11, 30)

    def test_touching_slots_are_merged(self):
        merged = merge_busy_slots([[_slot(_at(10), _at(11)), _slot(_at(11), _at(12))]])
        assert [(s.start, s.end) for s in merged] == [(_at(10), _at(12))]

    def test_contained_slot_keeps_outer_end(self):
        merged = merge_busy_slots([[_slot(_at(9), _at(13)), _slot(_at(10), _at(11))]])
        assert [(s.start, s.end) for s in merged] == [(_at(9), _at(13))]

    def test_equal_starts_keep_input_order(self):
        merged = merge_busy_slots(
            [
                [_slot(_at(10), _at(10, 30), label="first", source=1)],
                [_slot(_at(10), _at(10, 45), label="second", source=2)],
            ]
        )
        assert merged[0].label == "first / second"

    def test_empty_input(self):
        assert merge_busy_slots([]) == []
        assert merge_busy_slots([[], []]) == []

    def test_inputs_are_not_mutated(self):
        first = _slot(_at(10), _at(11))
        merge_busy_slots([[first, _slot(_at(10, 30), _at(12))]])
        assert first.end == _at(11)


class TestBusyTimeService:
    async def test_busy_slots_merge_across_connections(
        self, orchestrator, google_adapter, outlook_adapter, make_user, make_connection
    ):
        user = make_user()
        google = make_connection(user, provider="google")
        outlook = make_connection(user, provider="outlook")
        google_adapter.add_event(google.id, _event("g1", _at(10), _at(10, 30), title="Site visit"))
        google_adapter.add_event(google.id, _event("holiday", _at(0), _at(23, 59), all_day=True))
        outlook_adapter.add_event(outlook.id, _event("o1", _at(10, 15), _at(11), title="Call"))

        result = await orchestrator.busy_time.get_busy_slots(user.id, _at(8), _at(18))

        assert [(s.start, s.end) for s in result.busy_slots] == [(_at(10), _at(11))]
        assert result.busy_slots[0].label == "Site visit / Call"
        assert len(result.by_connection[google.id]) == 1  # all-day event excluded
        assert result.failed_connections == []

    async def test_touching_slot_is_not_a_conflict(self, orchestrator, google_adapter, make_user, make_connection):
        user = make_user()
        connection = make_connection(user)
        google_adapter.add_event(connection.id, _event("e1", _at(11), _at(12)))

        result = await orchestrator.busy_time.check_conflicts(user.id, _at(10), _at(11))

        assert result.has_conflicts is False
        assert result.total_conflicts == 0

    async def test_overlapping_slot_is_a_conflict(self, orchestrator, google_adapter, make_user, make_connection):
        user = make_user()
        connection = make_connection(user)
        google_adapter.add_event(connection.id, _event("e1", _at(10, 59), _at(12)))

        result = await orchestrator.busy_time.check_conflicts(user.id, _at(10), _at(11))

        assert result.has_conflicts is True
        assert result.total_conflicts == 1
        assert result.conflicts_by_connection[0].connection_id == connection.id
        assert result.conflicts_by_connection[0].provider == "google"

    async def test_excluded_event_does_not_conflict(self, orchestrator, google_adapter, make_user, make_connection):
        user = make_user()
        connection = make_connection(user)
        google_adapter.add_event(connection.id, _event("own-event", _at(10), _at(11)))

        result = await orchestrator.busy_time.check_conflicts(
            user.id, _at(10, 30), _at(11, 30), exclude_external_event_ids="own-event"
        )

        assert result.has_conflicts is False

    async def test_failing_connection_is_reported_not_raised(
        self, orchestrator, google_adapter, outlook_adapter, make_user, make_connection
    ):
        user = make_user()
        google = make_connection(user, provider="google")
        outlook = make_connection(user, provider="outlook")
        google_adapter.add_event(google.id, _event("e1", _at(10), _at(11)))
        outlook_adapter.fail("list", outlook.id, UnknownProviderError("Graph unavailable", status_code=503))

        result = await orchestrator.busy_time.check_conflicts(user.id, _at(10), _at(11))

        assert result.has_conflicts is True
        assert result.failed_connections == [outlook.id]

    async def test_other_owners_calendars_are_ignored(self, orchestrator, google_adapter, make_user, make_connection):
        owner = make_user()
        other = make_user()
        make_connection(owner)
        other_connection = make_connection(other)
        google_adapter.add_event(other_connection.id, _event("e1", _at(10), _at(11)))

        result = await orchestrator.busy_time.check_conflicts(owner.id, _at(10), _at(11))

        assert result.has_conflicts is False
