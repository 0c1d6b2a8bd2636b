"""Highlighting and edit locking for time-slot columns of inspection tables.

Inspection sheets carry one column per scheduled check (``08:00``, ``09:00``
and so on).  The coordinator marks the column being worked on now, flags past
columns as complete or incomplete, hints at upcoming ones and, when a lock
window is configured, disables controls in columns too far from the clock.

The tables are plain Python objects so the same rules run in tests, in the
API and behind any renderer.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from biscuit_qc.storage import MemoryStore, StorageError

logger = logging.getLogger(__name__)

CLASS_ACTIVE = "time-slot-active"
CLASS_UPCOMING = "time-slot-upcoming"
CLASS_PAST = "time-slot-past"
CLASS_LOCKED = "time-slot-locked"
CLASS_COMPLETE = "time-slot-complete"
CLASS_INCOMPLETE = "time-slot-incomplete"
SLOT_CLASSES = (CLASS_ACTIVE, CLASS_UPCOMING, CLASS_PAST, CLASS_COMPLETE, CLASS_INCOMPLETE)

TIME_RE = re.compile(r"^([01]?\d|2[0-3]):[0-5]\d$")
LOCK_STORAGE_KEY = "qc_inspection_lock_window"
UPDATE_INTERVAL_SECONDS = 60
PAST_THRESHOLD_MINUTES = 30
UPCOMING_WINDOW_MINUTES = 120
MAX_LOCK_WINDOW_MINUTES = 720
MINUTES_PER_DAY = 1440

PLACEHOLDER_TEXT_RE = re.compile(r"^(?:-|--|—|n/a|n\.a\.|na|pending|tbd|none)$", re.IGNORECASE)
PLACEHOLDER_VALUE_RE = re.compile(
    r"^(?:select|choose|choose option|pending|n/a|na|--|-|tbd|none)$", re.IGNORECASE
)


@dataclass(eq=False)
class Control:
    """An interactive element inside a cell (input, select, checkbox...)."""

    kind: str = "text"
    value: Any = ""
    checked: bool = False
    name: str | None = None
    form: str | None = None
    required: bool = False
    optional: bool = False
    disabled: bool = False
    aria_disabled: bool = False
    placeholder_value: str | None = None
    classes: set[str] = field(default_factory=set)
    lock_managed: bool = False
    prev_disabled: bool = False


@dataclass(eq=False)
class Cell:
    controls: list[Control] = field(default_factory=list)
    text: str = ""
    colspan: int = 1
    required: bool = False
    optional: bool = False
    skip_indicator: bool = False
    classes: set[str] = field(default_factory=set)
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass(eq=False)
class HeaderCell:
    text: str = ""
    colspan: int = 1
    rowspan: int = 1
    classes: set[str] = field(default_factory=set)
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass(eq=False)
class InspectionTable:
    table_id: str
    header_rows: list[list[HeaderCell]] = field(default_factory=list)
    body_rows: list[list[Cell]] = field(default_factory=list)
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass
class TrackedTable:
    table: InspectionTable
    times: list[str]
    headers: list[HeaderCell]
    column_indexes: list[int]
    headers_by_column: dict[int, list[HeaderCell]]
    column_lock_state: dict[int, bool] = field(default_factory=dict)
    active_index: int = -1
    last_update: datetime | None = None


# ---------------------------------------------------------------------------
# Time helpers


def parse_time_to_minutes(text: str | None) -> int | None:
    if not isinstance(text, str):
        return None
    text = text.strip()
    if not TIME_RE.match(text):
        return None
    hours, minutes = text.split(":")
    return int(hours) * 60 + int(minutes)


def find_current_inspection_index(times: list[str], now_minutes: int) -> int:
    """Index of the slot with the smallest backward distance from ``now_minutes``."""
    best_index, best_diff = -1, None
    for index, label in enumerate(times or []):
        minutes = parse_time_to_minutes(label)
        if minutes is None:
            continue
        diff = (now_minutes - minutes) % MINUTES_PER_DAY
        if best_diff is None or diff < best_diff:
            best_index, best_diff = index, diff
    return best_index


def find_next_inspection_index(times: list[str], now_minutes: int) -> int:
    best_index, best_diff = -1, None
    for index, label in enumerate(times or []):
        minutes = parse_time_to_minutes(label)
        if minutes is None:
            continue
        diff = (minutes - now_minutes) % MINUTES_PER_DAY
        if best_diff is None or diff < best_diff:
            best_index, best_diff = index, diff
    return best_index


def normalized_minutes_diff(target_minutes: int, now_minutes: int) -> int:
    diff = abs(target_minutes - now_minutes)
    return min(diff, MINUTES_PER_DAY - diff)


# ---------------------------------------------------------------------------
# Table geometry


def _header_layout(table: InspectionTable) -> tuple[dict[int, int], dict[int, list[HeaderCell]]]:
    occupancy: dict[int, set[int]] = {}
    positions: dict[int, int] = {}
    by_column: dict[int, list[HeaderCell]] = {}
    for row_index, row in enumerate(table.header_rows):
        pointer = 0
        for cell in row:
            taken = occupancy.setdefault(row_index, set())
            while pointer in taken:
                pointer += 1
            positions[id(cell)] = pointer
            for col_offset in range(max(1, cell.colspan)):
                column = pointer + col_offset
                by_column.setdefault(column, []).append(cell)
                for row_offset in range(max(1, cell.rowspan)):
                    occupancy.setdefault(row_index + row_offset, set()).add(column)
            pointer += max(1, cell.colspan)
    return positions, by_column


def cell_at_column(row: list[Cell], column: int) -> Cell | None:
    pointer = 0
    for cell in row:
        span = max(1, cell.colspan)
        if pointer <= column < pointer + span:
            return cell
        pointer += span
    return None


def column_cells(table: InspectionTable, column: int) -> list[Cell]:
    cells = []
    for row in table.body_rows:
        cell = cell_at_column(row, column)
        if cell is not None:
            cells.append(cell)
    return cells


# ---------------------------------------------------------------------------
# Completion


def has_meaningful_value(control: Control) -> bool:
    if control.kind == "hidden":
        return False
    if control.kind in ("checkbox", "radio"):
        return bool(control.checked)
    if control.value is None:
        return False
    text = " ".join(str(control.value).split())
    if not text:
        return False
    if control.kind == "contenteditable":
        return not PLACEHOLDER_TEXT_RE.match(text)
    normalized = text.lower()
    if control.placeholder_value and normalized == control.placeholder_value.strip().lower():
        return False
    return not PLACEHOLDER_VALUE_RE.match(normalized)


def _cell_text_filled(cell: Cell) -> bool:
    text = " ".join(cell.text.split())
    return bool(text) and not PLACEHOLDER_TEXT_RE.match(text)


def is_column_complete(table: InspectionTable, column: int) -> bool:
    """Whether every field of ``column`` holds data and no required field is empty.

    Radio groups count once, grade selects only count a non-``A`` grade and
    cells without controls only count when they are required.  A column with
    nothing to check is not complete.
    """

    cells = [cell for cell in column_cells(table, column) if not cell.skip_indicator]
    total = filled = 0
    missing_required = False
    seen_groups: set[tuple[str, str]] = set()

    for cell in cells:
        cell_required = cell.required and not cell.optional
        controls = [c for c in cell.controls if c.kind not in ("hidden", "button")]
        if not controls:
            if cell_required:
                total += 1
                if _cell_text_filled(cell):
                    filled += 1
                else:
                    missing_required = True
            continue

        for control in controls:
            required = not control.optional and (control.required or cell_required)
            if control.kind == "radio" and control.name:
                group_key = (control.form or "", control.name)
                if group_key in seen_groups:
                    continue
                seen_groups.add(group_key)
                group = [
                    radio
                    for other in cells
                    for radio in other.controls
                    if radio.kind == "radio"
                    and radio.name == control.name
                    and (radio.form or "") == (control.form or "")
                ]
                group_required = any(
                    not radio.optional and (radio.required or cell_required) for radio in group
                )
                total += 1
                if any(radio.checked for radio in group):
                    filled += 1
                elif group_required:
                    missing_required = True
                continue

            total += 1
            if has_meaningful_value(control):
                if "grade-select" in control.classes and (not control.value or control.value == "A"):
                    if required:
                        missing_required = True
                    continue
                filled += 1
            elif required:
                missing_required = True

    if total == 0:
        return False
    return filled == total and not missing_required


# ---------------------------------------------------------------------------
# Lock window


class LockWindowSettings:
    """Persisted minute radius outside which time columns are locked."""

    def __init__(self, store=None) -> None:
        self.store = store if store is not None else MemoryStore()
        self._window = self._load()

    @staticmethod
    def clamp(value: Any) -> int:
        try:
            minutes = int(value)
        except (TypeError, ValueError):
            return 0
        if minutes < 0:
            return 0
        return min(minutes, MAX_LOCK_WINDOW_MINUTES)

    def _load(self) -> int:
        try:
            raw = self.store.get_item(LOCK_STORAGE_KEY)
        except StorageError as exc:
            logger.warning("Failed to read lock window: %s", exc)
            return 0
        if raw is None:
            return 0
        return self.clamp(raw)

    @property
    def window_minutes(self) -> int:
        return self._window

    def set_window_minutes(self, value: Any) -> int:
        self._window = self.clamp(value)
        try:
            self.store.set_item(LOCK_STORAGE_KEY, str(self._window))
        except StorageError as exc:
            logger.warning("Failed to persist lock window: %s", exc)
        return self._window

    def summary(self) -> str:
        value = self._window
        if value > 0:
            plural = "" if value == 1 else "s"
            return (
                f"Columns unlock within ±{value} minute{plural} of the scheduled inspection time."
            )
        return "Locking disabled. Inspection columns remain editable at any time."


def _lock_control(control: Control, locked: bool) -> None:
    if locked:
        if not control.lock_managed:
            control.lock_managed = True
            control.prev_disabled = control.disabled
        control.disabled = True
        control.aria_disabled = True
    elif control.lock_managed:
        control.disabled = control.prev_disabled
        control.aria_disabled = control.prev_disabled
        control.lock_managed = False
        control.prev_disabled = False


# ---------------------------------------------------------------------------
# Coordinator


class TimeSlotCoordinator:
    """Tracks inspection tables and refreshes their slot state on a timer."""

    def __init__(
        self,
        settings: LockWindowSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or LockWindowSettings()
        self.clock = clock or datetime.now
        self.tables: dict[str, TrackedTable] = {}
        self._lock = threading.RLock()
        self._timer: threading.Timer | None = None
        self._interval = UPDATE_INTERVAL_SECONDS

    def track(self, table: InspectionTable) -> TrackedTable | None:
        """Start tracking ``table``; returns ``None`` when it has no time columns."""
        if not table.header_rows or not table.body_rows:
            logger.debug("Table %s has no header or body rows", table.table_id)
            return None
        time_row = table.header_rows[1] if len(table.header_rows) > 1 else table.header_rows[0]
        time_cells = [cell for cell in time_row if TIME_RE.match(cell.text.strip())]
        if not time_cells:
            logger.debug("No time columns found in table %s", table.table_id)
            with self._lock:
                self.tables.pop(table.table_id, None)
            return None

        positions, by_column = _header_layout(table)
        times = []
        for cell in time_cells:
            label = cell.text.strip()
            cell.attributes["data-time-slot"] = label
            times.append(label)
        info = TrackedTable(
            table=table,
            times=times,
            headers=time_cells,
            column_indexes=[positions[id(cell)] for cell in time_cells],
            headers_by_column=by_column,
        )
        with self._lock:
            self.tables[table.table_id] = info
        return info

    def untrack(self, table_id: str) -> None:
        with self._lock:
            info = self.tables.pop(table_id, None)
            if info is not None:
                self._clear_locks(info)

    # Locking --------------------------------------------------------------

    def _header_targets(self, info: TrackedTable, index: int) -> list[HeaderCell]:
        column = info.column_indexes[index]
        targets = list(info.headers_by_column.get(column, []))
        if info.headers[index] not in targets:
            targets.append(info.headers[index])
        return targets

    def _apply_lock(self, info: TrackedTable, index: int, locked: bool, force: bool) -> None:
        column = info.column_indexes[index]
        if not force and info.column_lock_state.get(column) == locked:
            return
        info.column_lock_state[column] = locked
        for header in self._header_targets(info, index):
            if locked:
                header.classes.add(CLASS_LOCKED)
                header.attributes["data-time-lock-state"] = "locked"
                header.attributes["aria-disabled"] = "true"
            else:
                header.classes.discard(CLASS_LOCKED)
                header.attributes.pop("data-time-lock-state", None)
                header.attributes.pop("aria-disabled", None)
        for cell in column_cells(info.table, column):
            if locked:
                cell.classes.add(CLASS_LOCKED)
                cell.attributes["data-time-lock-state"] = "locked"
            else:
                cell.classes.discard(CLASS_LOCKED)
                cell.attributes.pop("data-time-lock-state", None)
            for control in cell.controls:
                _lock_control(control, locked)

    def _clear_locks(self, info: TrackedTable) -> None:
        for index, column in enumerate(info.column_indexes):
            if info.column_lock_state.get(column):
                self._apply_lock(info, index, False, force=True)
        info.column_lock_state.clear()

    def _update_locks(self, info: TrackedTable, now_minutes: int, force: bool) -> None:
        window = self.settings.window_minutes
        if window <= 0:
            if info.column_lock_state:
                self._clear_locks(info)
            return
        for index, label in enumerate(info.times):
            minutes = parse_time_to_minutes(label)
            if minutes is None:
                continue
            locked = normalized_minutes_diff(minutes, now_minutes) > window
            self._apply_lock(info, index, locked, force)

    # Highlighting ---------------------------------------------------------

    @staticmethod
    def classify(minutes: int, now_minutes: int) -> str:
        """Status of a non-active slot: ``upcoming``, ``past`` or ``scheduled``."""
        ahead = (minutes - now_minutes) % MINUTES_PER_DAY
        if 0 < ahead < UPCOMING_WINDOW_MINUTES:
            return "upcoming"
        behind = (now_minutes - minutes) % MINUTES_PER_DAY
        if behind > PAST_THRESHOLD_MINUTES:
            return "past"
        return "scheduled"

    @staticmethod
    def _mark(target, status: str, completion: str | None = None) -> None:
        target.classes.difference_update(SLOT_CLASSES)
        target.attributes.pop("data-slot-completion", None)
        target.attributes.pop("data-active-slot", None)
        if status == "active":
            target.classes.add(CLASS_ACTIVE)
            target.attributes["data-active-slot"] = "true"
        elif status == "upcoming":
            target.classes.add(CLASS_UPCOMING)
        elif status == "past":
            target.classes.add(CLASS_PAST)
            target.classes.add(CLASS_COMPLETE if completion == "complete" else CLASS_INCOMPLETE)
            target.attributes["data-slot-completion"] = completion or "incomplete"
        if status == "scheduled":
            target.attributes.pop("data-slot-status", None)
        else:
            target.attributes["data-slot-status"] = completion or status

    def _highlight(self, info: TrackedTable, now_minutes: int) -> None:
        active = info.active_index
        for index, label in enumerate(info.times):
            minutes = parse_time_to_minutes(label)
            if minutes is None:
                continue
            column = info.column_indexes[index]
            if index == active:
                status, completion, title = "active", None, f"Current inspection time: {label}"
            else:
                status = self.classify(minutes, now_minutes)
                completion = None
                if status == "past":
                    completion = "complete" if is_column_complete(info.table, column) else "incomplete"
                    verdict = "Completed" if completion == "complete" else "Needs attention"
                    title = f"Past inspection time: {label} ({verdict})"
                elif status == "upcoming":
                    title = f"Upcoming inspection time: {label}"
                else:
                    title = f"Scheduled inspection time: {label}"
            for header in self._header_targets(info, index):
                self._mark(header, status, completion)
                header.attributes["title"] = title
                header.attributes["aria-label"] = title
            for cell in column_cells(info.table, column):
                self._mark(cell, status, completion)
                if status == "active":
                    cell.attributes["data-time-slot"] = label
        info.table.attributes["data-active-time-slot"] = info.times[active]
        info.table.attributes["data-active-column-index"] = str(info.column_indexes[active])

    def _summary(self, info: TrackedTable) -> dict[str, Any]:
        slots = []
        for index, label in enumerate(info.times):
            column = info.column_indexes[index]
            header = info.headers[index]
            slots.append({
                "time": label,
                "column": column,
                "status": header.attributes.get("data-slot-status", "scheduled"),
                "locked": bool(info.column_lock_state.get(column)),
            })
        active = info.active_index
        return {
            "active_index": active,
            "active_time": info.times[active] if active >= 0 else None,
            "slots": slots,
        }

    def refresh(self, now: datetime | None = None, force: bool = False) -> dict[str, dict[str, Any]]:
        """Recompute lock and highlight state for every tracked table."""
        now = now or self.clock()
        now_minutes = now.hour * 60 + now.minute
        summaries = {}
        with self._lock:
            for table_id, info in list(self.tables.items()):
                if not info.times:
                    continue
                active = find_current_inspection_index(info.times, now_minutes)
                self._update_locks(info, now_minutes, force)
                if active != -1 and (force or active != info.active_index):
                    info.active_index = active
                    info.last_update = now
                    self._highlight(info, now_minutes)
                summaries[table_id] = self._summary(info)
        return summaries

    def notify_mutation(self, cell: Cell | None = None) -> dict[str, dict[str, Any]] | None:
        if cell is not None and cell.skip_indicator:
            return None
        return self.refresh(force=True)

    # Timer ----------------------------------------------------------------

    def _tick(self) -> None:
        try:
            self.refresh()
        finally:
            with self._lock:
                if self._timer is not None:
                    self._schedule()

    def _schedule(self) -> None:
        self._timer = threading.Timer(self._interval, self._tick)
        self._timer.daemon = True
        self._timer.start()

    def start(self, interval: float = UPDATE_INTERVAL_SECONDS) -> None:
        with self._lock:
            if self._timer is not None:
                return
            self._interval = interval
            self.refresh(force=True)
            self._schedule()

    def stop(self) -> None:
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    @property
    def running(self) -> bool:
        return self._timer is not None


# ---------------------------------------------------------------------------
# JSON shapes


def _classes(value: Any) -> set[str]:
    if isinstance(value, str):
        return set(value.split())
    return set(value or ())


def control_from_dict(data: dict[str, Any]) -> Control:
    return Control(
        kind=data.get("kind") or data.get("type") or "text",
        value="" if data.get("value") is None else data.get("value"),
        checked=bool(data.get("checked")),
        name=data.get("name"),
        form=data.get("form"),
        required=bool(data.get("required")),
        optional=bool(data.get("optional")),
        disabled=bool(data.get("disabled")),
        aria_disabled=bool(data.get("aria_disabled", data.get("disabled"))),
        placeholder_value=data.get("placeholder_value"),
        classes=_classes(data.get("classes")),
    )


def inspection_table_from_dict(data: dict[str, Any]) -> InspectionTable:
    """Build an :class:`InspectionTable` from its JSON description.

    Header cells accept ``text``, ``colspan`` and ``rowspan``; body cells accept
    ``text``, ``colspan``, ``required``, ``optional``, ``skip_indicator`` and a
    list of ``controls``.  A bare string stands for a text-only cell.
    """

    if not isinstance(data, dict):
        raise ValueError("Inspection table must be an object")
    table_id = str(data.get("id") or data.get("table_id") or "inspection")

    header_rows = []
    for row in data.get("header_rows") or []:
        cells = []
        for cell in row:
            if isinstance(cell, str):
                cell = {"text": cell}
            cells.append(HeaderCell(
                text=str(cell.get("text") or ""),
                colspan=max(int(cell.get("colspan") or 1), 1),
                rowspan=max(int(cell.get("rowspan") or 1), 1),
                classes=_classes(cell.get("classes")),
            ))
        header_rows.append(cells)

    body_rows = []
    for row in data.get("body_rows") or data.get("rows") or []:
        cells = []
        for cell in row:
            if isinstance(cell, str):
                cell = {"text": cell}
            cells.append(Cell(
                controls=[control_from_dict(item) for item in cell.get("controls") or []],
                text=str(cell.get("text") or ""),
                colspan=max(int(cell.get("colspan") or 1), 1),
                required=bool(cell.get("required")),
                optional=bool(cell.get("optional")),
                skip_indicator=bool(cell.get("skip_indicator")),
                classes=_classes(cell.get("classes")),
            ))
        body_rows.append(cells)

    return InspectionTable(table_id=table_id, header_rows=header_rows, body_rows=body_rows)


def _node_dict(node) -> dict[str, Any]:
    return {"classes": sorted(node.classes), "attributes": dict(node.attributes)}


def inspection_table_to_dict(table: InspectionTable) -> dict[str, Any]:
    return {
        "id": table.table_id,
        "attributes": dict(table.attributes),
        "header_rows": [
            [{"text": cell.text, **_node_dict(cell)} for cell in row]
            for row in table.header_rows
        ],
        "body_rows": [
            [
                {
                    **_node_dict(cell),
                    "controls": [
                        {
                            "name": control.name,
                            "value": control.value,
                            "disabled": control.disabled,
                            "aria_disabled": control.aria_disabled,
                        }
                        for control in cell.controls
                    ],
                }
                for cell in row
            ]
            for row in table.body_rows
        ],
    }
