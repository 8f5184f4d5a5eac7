"""Tests for time window creation, merge/split, auto-detection and stats."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import T0
from termsession.activity import ActivityTracker
from termsession.config import TimeWindowConfig
from termsession.errors import NotFoundError, ValidationError
from termsession.models import WindowStatus, WindowType
from termsession.time_windows import (
    TimeWindowManager,
    WindowCriteria,
    duration_bucket,
    partition_by_gap,
)


@pytest.fixture
def session(lifecycle, fingerprint):
    return lifecycle.create(fingerprint)


@pytest.fixture
def windows(store, bus):
    return TimeWindowManager(store, TimeWindowConfig(), bus)


@pytest.fixture
def tracker(store, lifecycle, clock):
    return ActivityTracker(store, lifecycle, clock=clock)


def _hours(value):
    return T0 + timedelta(hours=value)


class TestCreateTimeWindow:
    """Tests for TimeWindowManager.create_time_window()."""

    def test_creates_active_manual_window(self, windows, session, store):
        window = windows.create_time_window(session.id, T0, _hours(1), name="Focus")

        assert window.type == WindowType.MANUAL
        assert window.status == WindowStatus.ACTIVE
        assert window.duration == timedelta(hours=1)
        assert store.get_window(window.id).name == "Focus"

    def test_end_must_follow_start(self, windows, session):
        with pytest.raises(ValidationError):
            windows.create_time_window(session.id, T0, T0)
        with pytest.raises(ValidationError):
            windows.create_time_window(session.id, _hours(1), T0)

    def test_unknown_session_raises_not_found(self, windows):
        with pytest.raises(NotFoundError) as exc_info:
            windows.create_time_window("nope", T0, _hours(1))

        assert exc_info.value.kind == "Session"

    def test_rejects_unknown_type(self, windows, session):
        with pytest.raises(ValidationError):
            windows.create_time_window(session.id, T0, _hours(1), type="lunch")

    def test_rejects_merged_status(self, windows, session):
        with pytest.raises(ValidationError):
            windows.create_time_window(session.id, T0, _hours(1), status="merged")

    def test_naive_timestamps_are_treated_as_utc(self, windows, session):
        window = windows.create_time_window(
            session.id, datetime(2026, 3, 2, 9, 0), datetime(2026, 3, 2, 10, 0)
        )

        assert window.start_time == T0
        assert window.start_time.tzinfo is not None

    def test_eight_hours_auto_splits_into_two_parts(self, windows, session, recorded_events):
        """An 8h window with a 4h maximum is stored as 09-13 and 13-17."""
        first = windows.create_time_window(session.id, T0, _hours(8), name="Long day")

        parts = sorted(
            windows.find_time_windows(WindowCriteria(session_id=session.id)),
            key=lambda w: w.start_time,
        )

        assert first.id == parts[0].id
        assert [(w.start_time, w.end_time) for w in parts] == [
            (_hours(0), _hours(4)),
            (_hours(4), _hours(8)),
        ]
        assert [w.name for w in parts] == ["Long day (part 1)", "Long day (part 2)"]
        assert {w.metadata["split_group"] for w in parts} == {parts[0].metadata["split_group"]}
        assert [w.metadata["part"] for w in parts] == [1, 2]
        assert [e.type for e in recorded_events] == ["window:split:auto"]

    def test_uneven_auto_split_keeps_short_tail(self, windows, session):
        windows.create_time_window(session.id, T0, _hours(9))

        parts = sorted(
            windows.find_time_windows(WindowCriteria(session_id=session.id)),
            key=lambda w: w.start_time,
        )

        assert [w.duration for w in parts] == [
            timedelta(hours=4),
            timedelta(hours=4),
            timedelta(hours=1),
        ]
        assert all(w.duration <= timedelta(hours=4) for w in parts)

    def test_exact_maximum_is_not_split(self, windows, session):
        windows.create_time_window(session.id, T0, _hours(4))

        assert len(windows.find_time_windows(WindowCriteria(session_id=session.id))) == 1

    def test_auto_split_can_be_disabled(self, store, bus, session):
        manager = TimeWindowManager(store, TimeWindowConfig(auto_split_long_windows=False), bus)

        window = manager.create_time_window(session.id, T0, _hours(8))

        assert window.duration == timedelta(hours=8)
        assert len(manager.find_time_windows()) == 1

    def test_overlap_is_allowed_but_reported(self, windows, session, recorded_events):
        existing = windows.create_time_window(session.id, T0, _hours(2))
        recorded_events.clear()

        overlapping = windows.create_time_window(session.id, _hours(1), _hours(3))

        types = [e.type for e in recorded_events]
        assert types == ["window:overlap", "window:created"]
        assert recorded_events[0].data["overlapping_ids"] == [existing.id]
        assert overlapping.id != existing.id

    def test_abutting_windows_do_not_overlap(self, windows, session, recorded_events):
        windows.create_time_window(session.id, T0, _hours(1))
        windows.create_time_window(session.id, _hours(1), _hours(2))

        assert "window:overlap" not in [e.type for e in recorded_events]


class TestFindTimeWindows:
    """Tests for find_time_windows() and get_time_window_info()."""

    def test_contains_time_uses_half_open_intervals(self, windows, session):
        early = windows.create_time_window(session.id, T0, _hours(1))
        late = windows.create_time_window(session.id, _hours(1), _hours(2))

        found = windows.find_time_windows(WindowCriteria(contains_time=_hours(1)))

        assert [w.id for w in found] == [late.id]
        found = windows.find_time_windows(WindowCriteria(contains_time=_hours(0.5)))
        assert [w.id for w in found] == [early.id]

    def test_latest_start_first(self, windows, session):
        a = windows.create_time_window(session.id, T0, _hours(1))
        b = windows.create_time_window(session.id, _hours(2), _hours(3))

        assert [w.id for w in windows.find_time_windows()] == [b.id, a.id]

    def test_duration_filters_and_limit(self, windows, session):
        windows.create_time_window(session.id, T0, T0 + timedelta(minutes=10))
        mid = windows.create_time_window(session.id, _hours(1), _hours(2))
        windows.create_time_window(session.id, _hours(3), _hours(6))

        found = windows.find_time_windows(
            WindowCriteria(min_duration=timedelta(minutes=30), max_duration=timedelta(hours=2))
        )
        assert [w.id for w in found] == [mid.id]
        assert len(windows.find_time_windows(WindowCriteria(limit=2))) == 2

    def test_merged_windows_hidden_unless_requested(self, windows, session):
        a = windows.create_time_window(session.id, T0, _hours(1))
        b = windows.create_time_window(session.id, _hours(1), _hours(2))
        merged = windows.merge_time_windows([a.id, b.id])

        current = windows.find_time_windows()
        retired = windows.find_time_windows(WindowCriteria(status="merged"))

        assert [w.id for w in current] == [merged.id]
        assert {w.id for w in retired} == {a.id, b.id}
        assert len(windows.find_time_windows(WindowCriteria(include_merged=True))) == 3

    def test_filter_by_type_and_task(self, windows, session):
        windows.create_time_window(session.id, T0, _hours(1), type="break")
        work = windows.create_time_window(session.id, _hours(1), _hours(2), type="work", task_id="T-1")

        assert [w.id for w in windows.find_time_windows(WindowCriteria(type="work"))] == [work.id]
        assert [w.id for w in windows.find_time_windows(WindowCriteria(task_id="T-1"))] == [work.id]

    def test_window_info_lists_tasks_and_files(self, windows, session, tracker):
        tracker.record_activity(session.id, "task", "T-1", at=T0 + timedelta(minutes=5))
        tracker.record_activity(session.id, "file", "a.py", at=T0 + timedelta(minutes=10))
        tracker.record_activity(session.id, "task", "T-2", at=T0 + timedelta(minutes=20))
        tracker.record_activity(session.id, "task", "T-1", at=T0 + timedelta(minutes=30))
        tracker.record_activity(session.id, "task", "T-9", at=_hours(2))
        window = windows.create_time_window(session.id, T0, _hours(1))

        info = windows.get_time_window_info(window.id)

        assert info.task_ids == ("T-1", "T-2")
        assert info.file_count == 1

    def test_window_info_unknown_id(self, windows):
        assert windows.get_time_window_info("tw-missing") is None

    def test_start_and_end_range_bounds_are_inclusive(self, windows, session):
        early = windows.create_time_window(session.id, T0, _hours(1))
        mid = windows.create_time_window(session.id, _hours(2), _hours(3))
        windows.create_time_window(session.id, _hours(4), _hours(6))

        started = windows.find_time_windows(WindowCriteria(start_range=(T0, _hours(2))))
        ended = windows.find_time_windows(WindowCriteria(end_range=(_hours(3), _hours(6))))
        both = windows.find_time_windows(
            WindowCriteria(start_range=(T0, _hours(2)), end_range=(_hours(3), _hours(6)))
        )

        assert [w.id for w in started] == [mid.id, early.id]
        assert len(ended) == 2
        assert [w.id for w in both] == [mid.id]


class TestWindowAtTime:
    """Tests for find_time_window_at_time() and get_or_create_time_window_for_timestamp()."""

    def test_finds_covering_window(self, windows, session):
        window = windows.create_time_window(session.id, T0, _hours(1))

        assert windows.find_time_window_at_time(session.id, _hours(0.5)).id == window.id
        assert windows.find_time_window_at_time(session.id, _hours(1)) is None

    def test_latest_ending_window_wins_when_several_cover(self, windows, session):
        windows.create_time_window(session.id, T0, _hours(1))
        longer = windows.create_time_window(session.id, _hours(0.5), _hours(2))

        assert windows.find_time_window_at_time(session.id, _hours(0.75)).id == longer.id

    def test_merged_windows_are_not_found(self, windows, session):
        a = windows.create_time_window(session.id, T0, _hours(1))
        b = windows.create_time_window(session.id, _hours(1), _hours(2))
        merged = windows.merge_time_windows([a.id, b.id])

        assert windows.find_time_window_at_time(session.id, _hours(0.5)).id == merged.id

    def test_existing_window_is_returned(self, windows, session, store):
        window = windows.create_time_window(session.id, T0, _hours(1))

        found = windows.get_or_create_time_window_for_timestamp(session.id, _hours(0.5))

        assert found.id == window.id
        assert len(store.query_windows(session_id=session.id)) == 1

    def test_creates_window_centered_on_timestamp(self, windows, session):
        at = _hours(5)

        created = windows.get_or_create_time_window_for_timestamp(session.id, at)

        assert created.type == WindowType.AUTO
        assert (created.start_time, created.end_time) == (
            at - timedelta(minutes=2.5),
            at + timedelta(minutes=2.5),
        )
        assert created.name == f"Window at {at.isoformat()}"

    def test_created_window_honours_duration_name_and_type(self, windows, session):
        created = windows.get_or_create_time_window_for_timestamp(
            session.id,
            _hours(5),
            window_duration=timedelta(hours=1),
            name="Recovery",
            type="recovery",
        )

        assert created.duration == timedelta(hours=1)
        assert created.name == "Recovery"
        assert created.type == WindowType.RECOVERY

    def test_long_created_window_returns_part_covering_timestamp(self, windows, session):
        at = _hours(5)

        created = windows.get_or_create_time_window_for_timestamp(
            session.id, at, window_duration=timedelta(hours=10)
        )

        assert created.contains(at)

    def test_auto_create_disabled_raises_not_found(self, store, bus, session):
        windows = TimeWindowManager(store, TimeWindowConfig(auto_create_windows=False), bus)

        with pytest.raises(NotFoundError) as exc_info:
            windows.get_or_create_time_window_for_timestamp(session.id, T0)

        assert exc_info.value.kind == "Time window"
        assert store.query_windows(session_id=session.id) == []

    def test_non_positive_duration_rejected(self, windows, session):
        with pytest.raises(ValidationError):
            windows.get_or_create_time_window_for_timestamp(
                session.id, T0, window_duration=timedelta(0)
            )

    def test_unknown_session_raises_not_found(self, windows):
        with pytest.raises(NotFoundError) as exc_info:
            windows.get_or_create_time_window_for_timestamp("nope", T0)

        assert exc_info.value.kind == "Session"


class TestMergeTimeWindows:
    """Tests for merge_time_windows()."""

    def test_requires_two_windows_and_changes_nothing(self, windows, session, store):
        only = windows.create_time_window(session.id, T0, _hours(1))

        with pytest.raises(ValidationError, match="at least two windows required"):
            windows.merge_time_windows([only.id])
        with pytest.raises(ValidationError):
            windows.merge_time_windows([only.id, only.id])

        assert store.get_window(only.id).status == WindowStatus.ACTIVE
        assert len(windows.find_time_windows(WindowCriteria(include_merged=True))) == 1

    def test_abutting_windows_merge_into_one_span(self, windows, session, store, recorded_events):
        a = windows.create_time_window(session.id, T0, _hours(1))
        b = windows.create_time_window(session.id, _hours(1), _hours(2))
        recorded_events.clear()

        merged = windows.merge_time_windows([b.id, a.id])

        assert merged.start_time == _hours(0)
        assert merged.end_time == _hours(2)
        assert merged.status == WindowStatus.ACTIVE
        assert merged.type == WindowType.MANUAL
        assert merged.name == "Merged Window (2 windows)"
        assert merged.metadata["merged_from"] == [a.id, b.id]
        for source in (a, b):
            retired = store.get_window(source.id)
            assert retired.status == WindowStatus.MERGED
            assert retired.metadata["merged_into"] == merged.id
        assert [e.type for e in recorded_events] == ["window:merged"]

    def test_gap_between_inputs_is_absorbed(self, windows, session):
        a = windows.create_time_window(session.id, T0, _hours(1))
        b = windows.create_time_window(session.id, _hours(3), _hours(4))

        merged = windows.merge_time_windows([a.id, b.id], name="Morning", type="work")

        assert merged.duration == timedelta(hours=4)
        assert merged.name == "Morning"
        assert merged.type == WindowType.WORK

    def test_preserve_boundaries_records_inputs(self, windows, session):
        a = windows.create_time_window(session.id, T0, _hours(1))
        b = windows.create_time_window(session.id, _hours(2), _hours(3))

        merged = windows.merge_time_windows([a.id, b.id], preserve_boundaries=True)
        stored = windows.get_time_window(merged.id)

        assert [entry["id"] for entry in stored.metadata["boundaries"]] == [a.id, b.id]

    def test_shared_task_survives_merge(self, windows, session):
        a = windows.create_time_window(session.id, T0, _hours(1), task_id="T-1")
        b = windows.create_time_window(session.id, _hours(1), _hours(2), task_id="T-1")
        c = windows.create_time_window(session.id, _hours(2), _hours(3), task_id="T-2")

        assert windows.merge_time_windows([a.id, b.id]).task_id == "T-1"
        d = windows.create_time_window(session.id, _hours(4), _hours(5), task_id="T-1")
        assert windows.merge_time_windows([c.id, d.id]).task_id is None

    def test_unknown_id_rolls_back(self, windows, session, store):
        a = windows.create_time_window(session.id, T0, _hours(1))

        with pytest.raises(NotFoundError):
            windows.merge_time_windows([a.id, "tw-missing"])

        assert store.get_window(a.id).status == WindowStatus.ACTIVE

    def test_already_merged_input_rejected(self, windows, session):
        a = windows.create_time_window(session.id, T0, _hours(1))
        b = windows.create_time_window(session.id, _hours(1), _hours(2))
        windows.merge_time_windows([a.id, b.id])

        c = windows.create_time_window(session.id, _hours(3), _hours(4))
        with pytest.raises(ValidationError):
            windows.merge_time_windows([a.id, c.id])

    def test_cross_session_merge_rejected(self, windows, session, lifecycle):
        from conftest import make_fingerprint

        other = lifecycle.create(make_fingerprint(tty="/dev/pts/9"))
        a = windows.create_time_window(session.id, T0, _hours(1))
        b = windows.create_time_window(other.id, _hours(1), _hours(2))

        with pytest.raises(ValidationError):
            windows.merge_time_windows([a.id, b.id])


class TestSplitTimeWindow:
    """Tests for split_time_window()."""

    def test_split_produces_adjacent_halves(self, windows, session, store, recorded_events):
        original = windows.create_time_window(session.id, T0, _hours(2), name="Deep work")
        recorded_events.clear()

        first, second = windows.split_time_window(original.id, _hours(0.5))

        assert (first.start_time, first.end_time) == (_hours(0), _hours(0.5))
        assert (second.start_time, second.end_time) == (_hours(0.5), _hours(2))
        assert first.name == "Deep work (first part)"
        assert second.name == "Deep work (second part)"
        assert first.metadata["split_from"] == original.id
        retired = store.get_window(original.id)
        assert retired.status == WindowStatus.MERGED
        assert retired.metadata["split_into"] == [first.id, second.id]
        assert [e.type for e in recorded_events] == ["window:split"]

    def test_parts_inherit_type_task_and_status(self, windows, session):
        original = windows.create_time_window(
            session.id, T0, _hours(2), type="meeting", status="completed", task_id="T-4"
        )

        first, second = windows.split_time_window(
            original.id, _hours(1), first_name="Standup", second_name="Planning"
        )

        for part in (first, second):
            assert part.type == WindowType.MEETING
            assert part.status == WindowStatus.COMPLETED
            assert part.task_id == "T-4"
        assert (first.name, second.name) == ("Standup", "Planning")

    @pytest.mark.parametrize("offset", [0, 2, 3, -1])
    def test_split_time_must_be_strictly_inside(self, windows, session, store, offset):
        original = windows.create_time_window(session.id, T0, _hours(2))

        with pytest.raises(ValidationError, match="split time must be between window start and end"):
            windows.split_time_window(original.id, _hours(offset))

        assert store.get_window(original.id).status == WindowStatus.ACTIVE

    def test_split_unknown_window(self, windows):
        with pytest.raises(NotFoundError):
            windows.split_time_window("tw-missing", T0)

    def test_gap_is_cut_evenly_around_split_time(self, windows, session):
        original = windows.create_time_window(session.id, T0, _hours(2), type="work")

        first, second = windows.split_time_window(
            original.id, _hours(1), gap=timedelta(minutes=10), second_type="break"
        )

        assert first.end_time == _hours(1) - timedelta(minutes=5)
        assert second.start_time == _hours(1) + timedelta(minutes=5)
        assert (first.type, second.type) == (WindowType.WORK, WindowType.BREAK)
        assert first.metadata["gap_seconds"] == 600

    def test_first_type_overrides_original(self, windows, session):
        original = windows.create_time_window(session.id, T0, _hours(2))

        first, second = windows.split_time_window(original.id, _hours(1), first_type="meeting")

        assert (first.type, second.type) == (WindowType.MEETING, WindowType.MANUAL)
        assert "gap_seconds" not in first.metadata

    @pytest.mark.parametrize("gap_minutes", [20, 60])
    def test_gap_leaving_empty_part_rejected(self, windows, session, store, gap_minutes):
        original = windows.create_time_window(session.id, T0, _hours(2))

        with pytest.raises(ValidationError, match="leaves an empty part"):
            windows.split_time_window(
                original.id, T0 + timedelta(minutes=10), gap=timedelta(minutes=gap_minutes)
            )

        assert store.get_window(original.id).status == WindowStatus.ACTIVE

    def test_negative_gap_and_unknown_type_rejected(self, windows, session):
        original = windows.create_time_window(session.id, T0, _hours(2))

        with pytest.raises(ValidationError):
            windows.split_time_window(original.id, _hours(1), gap=timedelta(minutes=-1))
        with pytest.raises(ValidationError):
            windows.split_time_window(original.id, _hours(1), second_type="lunch")


class TestAutoDetect:
    """Tests for auto_detect_time_windows()."""

    def _record(self, tracker, session_id, minutes):
        for offset in minutes:
            tracker.record_activity(
                session_id, "command", f"cmd-{offset}", at=T0 + timedelta(minutes=offset)
            )

    def test_gap_splits_activity_into_windows(self, windows, session, tracker):
        self._record(tracker, session.id, [0, 5, 10, 60, 70])

        detected = windows.auto_detect_time_windows(session.id)

        assert [(w.start_time, w.end_time) for w in detected] == [
            (T0, T0 + timedelta(minutes=10)),
            (T0 + timedelta(minutes=60), T0 + timedelta(minutes=70)),
        ]
        assert all(w.type == WindowType.AUTO for w in detected)
        assert [w.name for w in detected] == ["Auto-detected window 1", "Auto-detected window 2"]

    def test_detected_windows_never_overlap(self, windows, session, tracker):
        self._record(tracker, session.id, [0, 3, 20, 21, 22, 50, 90, 91])

        detected = windows.auto_detect_time_windows(session.id, timedelta(minutes=15))

        for earlier, later in zip(detected, detected[1:]):
            assert earlier.end_time <= later.start_time

    def test_single_event_runs_are_dropped(self, windows, session, tracker):
        self._record(tracker, session.id, [0, 60, 61])

        detected = windows.auto_detect_time_windows(session.id)

        assert len(detected) == 1
        assert detected[0].start_time == T0 + timedelta(minutes=60)

    def test_fewer_than_two_events_yields_nothing(self, windows, session, tracker):
        assert windows.auto_detect_time_windows(session.id) == []
        self._record(tracker, session.id, [0])
        assert windows.auto_detect_time_windows(session.id) == []

    def test_rerun_replaces_previous_auto_windows(self, windows, session, tracker):
        self._record(tracker, session.id, [0, 5])
        manual = windows.create_time_window(session.id, _hours(3), _hours(4))
        windows.auto_detect_time_windows(session.id)
        self._record(tracker, session.id, [8, 100, 110])

        detected = windows.auto_detect_time_windows(session.id)

        current = windows.find_time_windows(WindowCriteria(session_id=session.id))
        auto_ids = {w.id for w in current if w.type == WindowType.AUTO}
        assert auto_ids == {w.id for w in detected}
        assert len(detected) == 2
        assert manual.id in {w.id for w in current}

    def test_single_task_becomes_window_task(self, windows, session, tracker):
        tracker.record_activity(session.id, "task", "T-1", at=T0)
        tracker.record_activity(session.id, "file", "a.py", at=T0 + timedelta(minutes=5))

        (detected,) = windows.auto_detect_time_windows(session.id)

        assert detected.task_id == "T-1"
        assert detected.metadata["event_count"] == 2

    def test_non_positive_gap_rejected(self, windows, session):
        with pytest.raises(ValidationError):
            windows.auto_detect_time_windows(session.id, timedelta(0))

    def test_rerun_keeps_split_parts(self, windows, session, tracker, store):
        self._record(tracker, session.id, [0, 5, 10, 60, 70])
        first_run = windows.auto_detect_time_windows(session.id)
        first, second = windows.split_time_window(first_run[0].id, T0 + timedelta(minutes=5))

        detected = windows.auto_detect_time_windows(session.id)

        assert [(w.start_time, w.end_time) for w in detected] == [
            (T0 + timedelta(minutes=60), T0 + timedelta(minutes=70)),
        ]
        for part in (first, second):
            assert store.get_window(part.id).status == WindowStatus.ACTIVE
        original = store.get_window(first_run[0].id)
        assert original.status == WindowStatus.MERGED
        assert original.metadata["split_into"] == [first.id, second.id]
        assert store.get_window(first_run[1].id) is None

        auto = sorted(
            (w for w in windows.find_time_windows(WindowCriteria(session_id=session.id))
             if w.type == WindowType.AUTO),
            key=lambda w: w.start_time,
        )
        assert len(auto) == 3
        for earlier, later in zip(auto, auto[1:]):
            assert earlier.end_time <= later.start_time

    def test_rerun_keeps_auto_merge_result(self, windows, session, tracker, store):
        self._record(tracker, session.id, [0, 5, 10, 60, 70])
        first_run = windows.auto_detect_time_windows(session.id)
        merged = windows.merge_time_windows([w.id for w in first_run], type="auto")

        detected = windows.auto_detect_time_windows(session.id)

        assert detected == []
        assert store.get_window(merged.id).status == WindowStatus.ACTIVE
        current = windows.find_time_windows(WindowCriteria(session_id=session.id))
        assert [w.id for w in current] == [merged.id]

    def test_rerun_keeps_manual_merge_result(self, windows, session, tracker, store):
        self._record(tracker, session.id, [0, 5, 60, 70])
        first_run = windows.auto_detect_time_windows(session.id)
        merged = windows.merge_time_windows([w.id for w in first_run])

        detected = windows.auto_detect_time_windows(session.id)

        assert len(detected) == 2
        assert store.get_window(merged.id).status == WindowStatus.ACTIVE

    def test_merge_adjacent_joins_runs_within_threshold(self, windows, session, tracker):
        self._record(tracker, session.id, [0, 2, 10, 12, 40, 42])

        plain = windows.auto_detect_time_windows(session.id, timedelta(minutes=5))
        joined = windows.auto_detect_time_windows(
            session.id, timedelta(minutes=5), merge_adjacent=True
        )

        assert len(plain) == 3
        assert [(w.start_time, w.end_time) for w in joined] == [
            (T0, T0 + timedelta(minutes=12)),
            (T0 + timedelta(minutes=40), T0 + timedelta(minutes=42)),
        ]
        assert joined[0].metadata["merged_runs"] == 2
        assert joined[0].metadata["event_count"] == 4
        assert "merged_runs" not in joined[1].metadata

    def test_merge_adjacent_uses_configured_threshold(self, store, bus, session, tracker):
        windows = TimeWindowManager(store, TimeWindowConfig(auto_merge_minutes=1), bus)
        self._record(tracker, session.id, [0, 2, 10, 12])

        joined = windows.auto_detect_time_windows(
            session.id, timedelta(minutes=5), merge_adjacent=True
        )

        assert len(joined) == 2


class TestStats:
    """Tests for calculate_time_window_stats()."""

    def test_distribution_for_ten_minutes_one_hour_three_hours(self, windows, session):
        windows.create_time_window(session.id, T0, T0 + timedelta(minutes=10))
        windows.create_time_window(session.id, _hours(1), _hours(2), type="work")
        windows.create_time_window(session.id, _hours(3), _hours(6), type="work")

        stats = windows.calculate_time_window_stats()

        assert stats.total_windows == 3
        assert stats.total_duration == timedelta(hours=4, minutes=10)
        assert stats.average_duration == timedelta(hours=4, minutes=10) / 3
        assert stats.duration_distribution.short == 1
        assert stats.duration_distribution.medium == 1
        assert stats.duration_distribution.long == 1
        assert stats.duration_distribution.very_long == 0
        assert stats.type_distribution == {"manual": 1, "work": 2}

    def test_empty_stats_are_zero(self, windows):
        stats = windows.calculate_time_window_stats()

        assert stats.total_windows == 0
        assert stats.average_duration == timedelta(0)

    def test_tasks_and_files_counted_per_window(self, windows, session, tracker):
        tracker.record_activity(session.id, "task", "T-1", at=T0 + timedelta(minutes=1))
        tracker.record_activity(session.id, "file", "a.py", at=T0 + timedelta(minutes=2))
        tracker.record_activity(session.id, "task", "T-1", at=_hours(1.5))
        windows.create_time_window(session.id, T0, _hours(1))
        windows.create_time_window(session.id, _hours(1), _hours(2))

        stats = windows.calculate_time_window_stats(WindowCriteria(session_id=session.id))

        assert stats.total_tasks == 2
        assert stats.total_files == 1


class TestHelpers:
    """Tests for module-level helpers."""

    @pytest.mark.parametrize(
        "duration,bucket",
        [
            (timedelta(minutes=29), "short"),
            (timedelta(minutes=30), "medium"),
            (timedelta(hours=2), "long"),
            (timedelta(hours=4), "very_long"),
        ],
    )
    def test_duration_bucket_edges(self, duration, bucket):
        assert duration_bucket(duration) == bucket

    def test_partition_by_gap(self):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        stamps = [base, base + timedelta(minutes=15), base + timedelta(minutes=31)]

        assert partition_by_gap(stamps, timedelta(minutes=15)) == [[0, 1], [2]]
        assert partition_by_gap([], timedelta(minutes=15)) == []
