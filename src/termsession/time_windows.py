"""
Time window management.

A time window is a half-open interval [start, end) of work inside a session.
Windows are created explicitly, derived from the activity log by
auto-detection, or produced by merge and split. Windows consumed by merge or
split keep their row with status ``merged`` and drop out of every "current"
query.

All multi-row changes (auto-split create, merge, split, re-detection) run in
one store transaction, so a concurrent reader never sees a retired window
without its replacement.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .config import TimeWindowConfig
from .errors import NotFoundError, ValidationError
from .events import EventBus
from .models import (
    ActivityType,
    DurationDistribution,
    TimeWindow,
    TimeWindowInfo,
    TimeWindowStats,
    WindowStatus,
    WindowType,
    normalize_timestamp,
)
from .storage import SessionStore

logger = logging.getLogger("termsession.windows")

SHORT_WINDOW = timedelta(minutes=30)
MEDIUM_WINDOW = timedelta(hours=2)
LONG_WINDOW = timedelta(hours=4)

CURRENT_STATUSES = (WindowStatus.ACTIVE, WindowStatus.COMPLETED)


@dataclass
class WindowCriteria:
    """
    Filters for find_time_windows(); every given field must match.

    Attributes:
        session_id: Owning session
        type: Window type
        status: Window status; asking for ``merged`` includes retired windows
        contains_time: Matches windows with start <= t < end
        start_range: Inclusive (earliest, latest) bounds on the start time
        end_range: Inclusive (earliest, latest) bounds on the end time
        task_id: Associated task
        min_duration: Inclusive lower bound on duration
        max_duration: Inclusive upper bound on duration
        include_merged: Also return retired (merged) windows
        limit: Maximum number of windows returned
    """

    session_id: str | None = None
    type: WindowType | str | None = None
    status: WindowStatus | str | None = None
    contains_time: datetime | None = None
    start_range: tuple[datetime, datetime] | None = None
    end_range: tuple[datetime, datetime] | None = None
    task_id: str | None = None
    min_duration: timedelta | None = None
    max_duration: timedelta | None = None
    include_merged: bool = False
    limit: int | None = None


def generate_window_id() -> str:
    return f"tw-{uuid.uuid4().hex[:12]}"


def duration_bucket(duration: timedelta) -> str:
    if duration < SHORT_WINDOW:
        return "short"
    if duration < MEDIUM_WINDOW:
        return "medium"
    if duration < LONG_WINDOW:
        return "long"
    return "very_long"


def parse_window_type(value: WindowType | str) -> WindowType:
    try:
        return WindowType(value)
    except ValueError as exc:
        valid = ", ".join(t.value for t in WindowType)
        raise ValidationError(f"Invalid window type: {value} (expected one of: {valid})") from exc


def parse_window_status(value: WindowStatus | str) -> WindowStatus:
    try:
        return WindowStatus(value)
    except ValueError as exc:
        valid = ", ".join(s.value for s in WindowStatus)
        raise ValidationError(f"Invalid window status: {value} (expected one of: {valid})") from exc


def _within(moment: datetime, bounds: tuple[datetime, datetime]) -> bool:
    earliest, latest = bounds
    return normalize_timestamp(earliest) <= moment <= normalize_timestamp(latest)


def is_detected_window(window: TimeWindow) -> bool:
    """True for windows auto-detection created and nobody has reshaped since."""
    metadata = window.metadata
    return bool(metadata.get("auto_detected")) and not (
        "split_from" in metadata or "merged_from" in metadata
    )


def partition_by_gap(timestamps: list[datetime], gap: timedelta) -> list[list[int]]:
    """
    Split sorted timestamps into runs wherever consecutive items are more
    than ``gap`` apart. Returns runs as lists of indices.
    """
    runs: list[list[int]] = []
    current: list[int] = []
    for index, ts in enumerate(timestamps):
        if current and ts - timestamps[current[-1]] > gap:
            runs.append(current)
            current = []
        current.append(index)
    if current:
        runs.append(current)
    return runs


class TimeWindowManager:
    def __init__(
        self,
        store: SessionStore,
        config: TimeWindowConfig | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self.config = config or TimeWindowConfig()
        self._bus = bus or EventBus()

    # =========================================================================
    # Create
    # =========================================================================

    def create_time_window(
        self,
        session_id: str,
        start: datetime,
        end: datetime,
        *,
        name: str | None = None,
        type: WindowType | str = WindowType.MANUAL,
        status: WindowStatus | str | None = None,
        task_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TimeWindow:
        """
        Create a window, auto-splitting it when longer than the maximum.

        With auto-split on, an interval longer than max_window_duration is
        stored as ceil(duration / max) consecutive windows of at most the
        maximum each, and the first one is returned.

        Raises:
            ValidationError: end <= start, or an unknown type/status.
            NotFoundError: The session does not exist.
        """
        start = normalize_timestamp(start)
        end = normalize_timestamp(end)
        if end <= start:
            raise ValidationError("Time window end must be after start")
        window_type = parse_window_type(type)
        window_status = parse_window_status(status) if status is not None else WindowStatus.ACTIVE
        if window_status == WindowStatus.MERGED:
            raise ValidationError("Windows cannot be created as merged")

        duration = end - start
        max_duration = self.config.max_window_duration
        if self.config.auto_split_long_windows and duration > max_duration:
            return self._create_split(
                session_id, start, end, name, window_type, window_status, task_id, metadata or {}
            )

        if duration < self.config.min_window_duration:
            logger.info(
                "Window for %s is shorter than the minimum (%s < %s)",
                session_id,
                duration,
                self.config.min_window_duration,
            )

        window = TimeWindow(
            id=generate_window_id(),
            session_id=session_id,
            start_time=start,
            end_time=end,
            type=window_type,
            status=window_status,
            name=name,
            task_id=task_id,
            metadata=dict(metadata or {}),
        )
        with self._store.transaction() as conn:
            self._require_session(session_id, conn)
            overlapping = self._overlapping(session_id, start, end, conn)
            self._store.insert_window(window, conn=conn)

        self._report_overlap(window, overlapping)
        self._bus.emit("window:created", window_id=window.id, session_id=session_id)
        logger.info("Created window %s for %s (%s)", window.id, session_id, duration)
        return window

    def _create_split(
        self,
        session_id: str,
        start: datetime,
        end: datetime,
        name: str | None,
        window_type: WindowType,
        window_status: WindowStatus,
        task_id: str | None,
        metadata: dict[str, Any],
    ) -> TimeWindow:
        max_duration = self.config.max_window_duration
        parts = math.ceil((end - start) / max_duration)
        group_id = generate_window_id()
        base_name = name or "Time Window"

        windows: list[TimeWindow] = []
        for index in range(parts):
            part_start = start + max_duration * index
            part_end = min(start + max_duration * (index + 1), end)
            windows.append(
                TimeWindow(
                    id=generate_window_id(),
                    session_id=session_id,
                    start_time=part_start,
                    end_time=part_end,
                    type=window_type,
                    status=window_status,
                    name=f"{base_name} (part {index + 1})",
                    task_id=task_id,
                    metadata={
                        **metadata,
                        "auto_split": True,
                        "split_group": group_id,
                        "part": index + 1,
                        "parts": parts,
                    },
                )
            )

        with self._store.transaction() as conn:
            self._require_session(session_id, conn)
            overlapping = self._overlapping(session_id, start, end, conn)
            for window in windows:
                self._store.insert_window(window, conn=conn)

        self._report_overlap(windows[0], overlapping)
        logger.info(
            "Split %s window for %s into %d parts of at most %s",
            end - start,
            session_id,
            parts,
            max_duration,
        )
        self._bus.emit(
            "window:split:auto",
            session_id=session_id,
            window_ids=[w.id for w in windows],
            original_start=start,
            original_end=end,
        )
        return windows[0]

    # =========================================================================
    # Query
    # =========================================================================

    def find_time_windows(self, criteria: WindowCriteria | None = None) -> list[TimeWindow]:
        """Windows matching ``criteria``, latest start first."""
        criteria = criteria or WindowCriteria()
        window_type = parse_window_type(criteria.type) if criteria.type is not None else None
        if criteria.status is not None:
            statuses = [parse_window_status(criteria.status)]
        elif criteria.include_merged:
            statuses = None
        else:
            statuses = list(CURRENT_STATUSES)

        windows = self._store.query_windows(
            session_id=criteria.session_id,
            window_type=window_type,
            statuses=statuses,
            contains_time=(
                normalize_timestamp(criteria.contains_time) if criteria.contains_time else None
            ),
            task_id=criteria.task_id,
        )
        if criteria.start_range is not None:
            windows = [w for w in windows if _within(w.start_time, criteria.start_range)]
        if criteria.end_range is not None:
            windows = [w for w in windows if _within(w.end_time, criteria.end_range)]
        if criteria.min_duration is not None:
            windows = [w for w in windows if w.duration >= criteria.min_duration]
        if criteria.max_duration is not None:
            windows = [w for w in windows if w.duration <= criteria.max_duration]
        if criteria.limit is not None:
            windows = windows[: max(criteria.limit, 0)]
        return windows

    def get_time_window(self, window_id: str) -> TimeWindow | None:
        return self._store.get_window(window_id)

    def get_time_window_info(self, window_id: str) -> TimeWindowInfo | None:
        """A window together with the tasks and files touched inside it."""
        window = self._store.get_window(window_id)
        if window is None:
            return None
        task_ids, file_count = self._store.activity_between(
            window.session_id, window.start_time, window.end_time
        )
        return TimeWindowInfo(window=window, task_ids=tuple(task_ids), file_count=file_count)

    def find_time_window_at_time(self, session_id: str, timestamp: datetime) -> TimeWindow | None:
        """The current window containing ``timestamp``; the latest-ending one if several do."""
        matches = self._store.query_windows(
            session_id=session_id,
            statuses=CURRENT_STATUSES,
            contains_time=normalize_timestamp(timestamp),
        )
        return max(matches, key=lambda w: w.end_time, default=None)

    def get_or_create_time_window_for_timestamp(
        self,
        session_id: str,
        timestamp: datetime,
        *,
        window_duration: timedelta | None = None,
        name: str | None = None,
        type: WindowType | str = WindowType.AUTO,
    ) -> TimeWindow:
        """
        Return the window containing ``timestamp``, creating one if none does.

        A new window is centered on the timestamp and lasts ``window_duration``
        (default: the minimum window duration).

        Raises:
            NotFoundError: No window contains the timestamp and auto-creation
                is disabled, or the session does not exist.
            ValidationError: A non-positive window_duration.
        """
        timestamp = normalize_timestamp(timestamp)
        existing = self.find_time_window_at_time(session_id, timestamp)
        if existing is not None:
            return existing
        if not self.config.auto_create_windows:
            raise NotFoundError("Time window", f"{session_id} at {timestamp.isoformat()}")

        duration = window_duration if window_duration is not None else self.config.min_window_duration
        if duration <= timedelta(0):
            raise ValidationError("Window duration must be positive")
        half = duration / 2
        window = self.create_time_window(
            session_id,
            timestamp - half,
            timestamp + half,
            name=name or f"Window at {timestamp.isoformat()}",
            type=type,
        )
        if not window.contains(timestamp):
            # Auto-split returned an earlier part; hand back the one covering the timestamp.
            window = self.find_time_window_at_time(session_id, timestamp) or window
        logger.debug("Created window %s for timestamp %s", window.id, timestamp.isoformat())
        return window

    # =========================================================================
    # Merge / split
    # =========================================================================

    def merge_time_windows(
        self,
        window_ids: list[str],
        *,
        name: str | None = None,
        type: WindowType | str | None = None,
        preserve_boundaries: bool = False,
    ) -> TimeWindow:
        """
        Merge windows into one spanning min(start)..max(end).

        Gaps between the inputs are absorbed. The inputs are retired with
        status ``merged`` and a ``merged_into`` note.

        Raises:
            ValidationError: Fewer than two distinct ids, an input that is
                already merged, or inputs from different sessions.
            NotFoundError: An id does not exist.
        """
        ids = list(dict.fromkeys(window_ids))
        if len(ids) < 2:
            raise ValidationError("at least two windows required")
        window_type = parse_window_type(type) if type is not None else WindowType.MANUAL

        with self._store.transaction() as conn:
            sources: list[TimeWindow] = []
            for window_id in ids:
                window = self._store.get_window(window_id, conn=conn)
                if window is None:
                    raise NotFoundError("Time window", window_id)
                if window.status == WindowStatus.MERGED:
                    raise ValidationError(f"Time window {window_id} has already been merged")
                sources.append(window)

            session_ids = {w.session_id for w in sources}
            if len(session_ids) > 1:
                raise ValidationError("Cannot merge windows from different sessions")

            sources.sort(key=lambda w: w.start_time)
            task_ids = {w.task_id for w in sources}
            metadata: dict[str, Any] = {
                "merged_from": [w.id for w in sources],
                "original_windows": len(sources),
            }
            if preserve_boundaries:
                metadata["boundaries"] = [
                    {"id": w.id, "start": w.start_time, "end": w.end_time} for w in sources
                ]
            merged = TimeWindow(
                id=generate_window_id(),
                session_id=sources[0].session_id,
                start_time=min(w.start_time for w in sources),
                end_time=max(w.end_time for w in sources),
                type=window_type,
                status=WindowStatus.ACTIVE,
                name=name or f"Merged Window ({len(sources)} windows)",
                task_id=task_ids.pop() if len(task_ids) == 1 else None,
                metadata=metadata,
            )
            for window in sources:
                window.status = WindowStatus.MERGED
                window.metadata = {**window.metadata, "merged_into": merged.id}
                self._store.update_window(window, conn=conn)
            self._store.insert_window(merged, conn=conn)

        if merged.duration > self.config.max_window_duration:
            logger.warning(
                "Merged window %s exceeds the maximum duration (%s > %s)",
                merged.id,
                merged.duration,
                self.config.max_window_duration,
            )
        logger.info("Merged %d windows into %s", len(sources), merged.id)
        self._bus.emit(
            "window:merged",
            window_id=merged.id,
            session_id=merged.session_id,
            merged_from=[w.id for w in sources],
        )
        return merged

    def split_time_window(
        self,
        window_id: str,
        split_time: datetime,
        *,
        first_name: str | None = None,
        second_name: str | None = None,
        first_type: WindowType | str | None = None,
        second_type: WindowType | str | None = None,
        gap: timedelta | None = None,
    ) -> tuple[TimeWindow, TimeWindow]:
        """
        Split a window at ``split_time`` into [start, split) and [split, end).

        With a ``gap``, half of it is cut from each side of the split time, so
        the parts become [start, split - gap/2) and [split + gap/2, end). Parts
        inherit the original's type unless first_type/second_type say
        otherwise. The original is retired with status ``merged`` and a
        ``split_into`` note.

        Raises:
            ValidationError: split_time not strictly inside the window, a gap
                that leaves either part empty, an unknown type, or the window
                has already been merged.
            NotFoundError: The window does not exist.
        """
        split_time = normalize_timestamp(split_time)
        gap = gap or timedelta(0)
        if gap < timedelta(0):
            raise ValidationError("Split gap must not be negative")
        first_type = parse_window_type(first_type) if first_type is not None else None
        second_type = parse_window_type(second_type) if second_type is not None else None

        with self._store.transaction() as conn:
            original = self._store.get_window(window_id, conn=conn)
            if original is None:
                raise NotFoundError("Time window", window_id)
            if original.status == WindowStatus.MERGED:
                raise ValidationError(f"Time window {window_id} has already been merged")
            if not original.start_time < split_time < original.end_time:
                raise ValidationError("split time must be between window start and end")
            first_end = split_time - gap / 2
            second_start = split_time + gap / 2
            if not (original.start_time < first_end and second_start < original.end_time):
                raise ValidationError(f"A {gap} gap at the split time leaves an empty part")

            base_name = original.name or "Time Window"
            part_metadata: dict[str, Any] = {
                "split_from": original.id,
                "split_time": split_time.isoformat(),
            }
            if gap:
                part_metadata["gap_seconds"] = gap.total_seconds()
            first = TimeWindow(
                id=generate_window_id(),
                session_id=original.session_id,
                start_time=original.start_time,
                end_time=first_end,
                type=first_type or original.type,
                status=original.status,
                name=first_name or f"{base_name} (first part)",
                task_id=original.task_id,
                metadata=dict(part_metadata),
            )
            second = TimeWindow(
                id=generate_window_id(),
                session_id=original.session_id,
                start_time=second_start,
                end_time=original.end_time,
                type=second_type or original.type,
                status=original.status,
                name=second_name or f"{base_name} (second part)",
                task_id=original.task_id,
                metadata=dict(part_metadata),
            )
            original.status = WindowStatus.MERGED
            original.metadata = {**original.metadata, "split_into": [first.id, second.id]}
            self._store.update_window(original, conn=conn)
            self._store.insert_window(first, conn=conn)
            self._store.insert_window(second, conn=conn)

        logger.info("Split window %s at %s", window_id, split_time.isoformat())
        self._bus.emit(
            "window:split",
            window_id=window_id,
            session_id=original.session_id,
            split_time=split_time,
            new_window_ids=[first.id, second.id],
        )
        return first, second

    # =========================================================================
    # Auto-detection and stats
    # =========================================================================

    def auto_detect_time_windows(
        self,
        session_id: str,
        gap_threshold: timedelta | None = None,
        *,
        merge_adjacent: bool = False,
    ) -> list[TimeWindow]:
        """
        Derive ``auto`` windows from the session's activity log.

        Events are scanned in time order and a boundary is placed wherever
        two consecutive events are more than ``gap_threshold`` apart. With
        ``merge_adjacent``, runs separated by no more than the auto-merge
        threshold are joined again. Each run spanning a positive interval
        becomes one window from its first to its last event.

        Re-running replaces the windows earlier detection produced. Windows
        a user has reshaped (split or merge results) are kept, and a newly
        detected run overlapping a kept auto window is skipped, so auto
        windows never overlap.

        Returns:
            The detected windows in chronological order; empty with fewer
            than two events.
        """
        gap = gap_threshold if gap_threshold is not None else self.config.activity_gap_threshold
        if gap <= timedelta(0):
            raise ValidationError("Gap threshold must be positive")

        events = self._store.list_events(session_id)
        if len(events) < 2:
            return []

        timestamps = [event.timestamp for event in events]
        runs: list[list[int]] = []
        run_counts: list[int] = []
        for run in partition_by_gap(timestamps, gap):
            if (
                merge_adjacent
                and runs
                and timestamps[run[0]] - timestamps[runs[-1][-1]] <= self.config.auto_merge_threshold
            ):
                runs[-1].extend(run)
                run_counts[-1] += 1
            else:
                runs.append(list(run))
                run_counts.append(1)

        with self._store.transaction() as conn:
            current = self._store.query_windows(
                session_id=session_id, statuses=CURRENT_STATUSES, conn=conn
            )
            previous = [
                w for w in current if w.status == WindowStatus.ACTIVE and is_detected_window(w)
            ]
            replaced = {w.id for w in previous}
            kept = [w for w in current if w.type == WindowType.AUTO and w.id not in replaced]

            windows: list[TimeWindow] = []
            skipped = 0
            for run, run_count in zip(runs, run_counts):
                first, last = events[run[0]], events[run[-1]]
                if last.timestamp <= first.timestamp:
                    continue
                if any(w.overlaps(first.timestamp, last.timestamp) for w in kept):
                    skipped += 1
                    continue
                task_ids = list(
                    dict.fromkeys(
                        events[i].payload for i in run if events[i].type == ActivityType.TASK
                    )
                )
                metadata: dict[str, Any] = {
                    "auto_detected": True,
                    "event_count": len(run),
                    "task_ids": task_ids,
                }
                if run_count > 1:
                    metadata["merged_runs"] = run_count
                windows.append(
                    TimeWindow(
                        id=generate_window_id(),
                        session_id=session_id,
                        start_time=first.timestamp,
                        end_time=last.timestamp,
                        type=WindowType.AUTO,
                        status=WindowStatus.ACTIVE,
                        name=f"Auto-detected window {len(windows) + 1}",
                        task_id=task_ids[0] if len(task_ids) == 1 else None,
                        metadata=metadata,
                    )
                )

            self._store.delete_windows(replaced, conn=conn)
            for window in windows:
                self._store.insert_window(window, conn=conn)

        if skipped:
            logger.info(
                "Skipped %d detected run(s) overlapping reshaped auto windows in %s",
                skipped,
                session_id,
            )
        logger.info(
            "Detected %d windows from %d events for %s (replaced %d)",
            len(windows),
            len(events),
            session_id,
            len(previous),
        )
        return windows

    def calculate_time_window_stats(self, criteria: WindowCriteria | None = None) -> TimeWindowStats:
        """Aggregate duration, type and activity statistics over matching windows."""
        windows = self.find_time_windows(criteria)
        stats = TimeWindowStats()
        if not windows:
            return stats

        distribution = DurationDistribution()
        type_counts: dict[str, int] = {}
        total = timedelta(0)
        total_tasks = 0
        total_files = 0
        for window in windows:
            total += window.duration
            type_counts[window.type.value] = type_counts.get(window.type.value, 0) + 1
            bucket = duration_bucket(window.duration)
            setattr(distribution, bucket, getattr(distribution, bucket) + 1)
            task_ids, file_count = self._store.activity_between(
                window.session_id, window.start_time, window.end_time
            )
            total_tasks += len(task_ids)
            total_files += file_count

        stats.total_windows = len(windows)
        stats.total_duration = total
        stats.average_duration = total / len(windows)
        stats.total_tasks = total_tasks
        stats.total_files = total_files
        stats.type_distribution = type_counts
        stats.duration_distribution = distribution
        return stats

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_session(self, session_id: str, conn) -> None:
        if self._store.get_session(session_id, conn=conn) is None:
            raise NotFoundError("Session", session_id)

    def _overlapping(self, session_id: str, start: datetime, end: datetime, conn) -> list[TimeWindow]:
        return self._store.query_windows(
            session_id=session_id,
            statuses=CURRENT_STATUSES,
            overlapping=(start, end),
            conn=conn,
        )

    def _report_overlap(self, window: TimeWindow, overlapping: list[TimeWindow]) -> None:
        if not overlapping:
            return
        logger.warning(
            "Window %s overlaps %d existing window(s) in session %s",
            window.id,
            len(overlapping),
            window.session_id,
        )
        self._bus.emit(
            "window:overlap",
            window_id=window.id,
            session_id=window.session_id,
            overlapping_ids=[w.id for w in overlapping],
        )
