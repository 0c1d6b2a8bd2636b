"""Relational table engine driven by the schema DSL.

The engine owns the parsed schema and the row data for every table, keeps
computed columns and rollups current after each mutation, renders a plain
view model for the UI layer and persists itself to a key/value store.
"""

from __future__ import annotations

import io
import json
import logging
import math
import uuid
from functools import cmp_to_key
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Font

from biscuit_qc.expressions import evaluate
from biscuit_qc.schema_dsl import (
    Field,
    Rollup,
    Schema,
    computed_field_order,
    parse,
    rollup_dependents,
    synthesize_rollup_fields,
)
from biscuit_qc.storage import MemoryStore, StorageError

logger = logging.getLogger(__name__)

STORAGE_KEY = "prompt_ai_tables_v1"


class UnknownTableError(LookupError):
    """Raised when an operation names a table the schema does not define."""


class UnknownRowError(LookupError):
    """Raised when a row id does not exist in the table."""


class UnknownFieldError(LookupError):
    """Raised when a field key does not exist in the table."""


class ReadOnlyFieldError(ValueError):
    """Raised when a caller tries to write a computed field."""


def _finite_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _is_number(value: Any) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


def format_value(value: Any, field: Field) -> str:
    """Render ``value`` the way a table cell displays it."""
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if field.type == "number" and field.decimals is not None:
        number = _finite_number(value)
        if number is not None:
            return f"{number:.{field.decimals}f}"
    return str(value)


def _compare_values(a: Any, b: Any) -> int:
    if _is_number(a) and _is_number(b):
        return (a > b) - (a < b)
    left = "" if a is None else str(a).casefold()
    right = "" if b is None else str(b).casefold()
    return (left > right) - (left < right)


class TableEngine:
    """State holder for the DSL-defined tables of one storage namespace."""

    def __init__(self, store=None, namespace: str = "") -> None:
        self.store = store if store is not None else MemoryStore()
        self.namespace = namespace or ""
        self.schema: dict[str, Schema] = {}
        self.data: dict[str, list[dict[str, Any]]] = {}
        self.filters: dict[str, str] = {}
        self.sort: dict[str, dict[str, str]] = {}
        self.selection: dict[str, set[str]] = {}
        self.dsl = ""
        self._order: dict[str, list[Field]] = {}
        self._direct_dependents: dict[str, set[str]] = {}
        self.dependents: dict[str, set[str]] = {}

    @property
    def storage_key(self) -> str:
        if self.namespace:
            return f"{STORAGE_KEY}_{self.namespace}"
        return STORAGE_KEY

    # ------------------------------------------------------------------
    # Schema

    def _install(self, schemas: dict[str, Schema]) -> None:
        order = {name: computed_field_order(name, meta) for name, meta in schemas.items()}
        direct = rollup_dependents(schemas, transitive=False)
        closed = rollup_dependents(schemas)

        self.schema = schemas
        self._order = order
        self._direct_dependents = direct
        self.dependents = closed
        self.data = {name: self.data.get(name, []) for name in schemas}
        self.filters = {k: v for k, v in self.filters.items() if k in schemas}
        self.selection = {k: v for k, v in self.selection.items() if k in schemas}
        self.sort = {
            name: state
            for name, state in self.sort.items()
            if name in schemas and schemas[name].get_field(state.get("key", "")) is not None
        }

    def build_from_dsl(self, source: str) -> dict[str, Schema]:
        """Parse ``source`` and install it as the current schema.

        Rows of tables that survive the rebuild are kept. Nothing changes when
        parsing or dependency ordering fails.
        """

        schemas = synthesize_rollup_fields(parse(source))
        self._install(schemas)
        self.dsl = source
        self.recompute_all()
        self.save()
        logger.info(
            "Built %d table(s) for namespace %r: %s",
            len(schemas),
            self.namespace,
            ", ".join(schemas),
        )
        return schemas

    def _meta(self, table: str) -> Schema:
        try:
            return self.schema[table]
        except KeyError:
            raise UnknownTableError(f"Unknown table {table!r}") from None

    def _find_row(self, table: str, row_id: str) -> dict[str, Any]:
        for row in self.data.get(table, []):
            if row.get("id") == row_id:
                return row
        raise UnknownRowError(f"Row {row_id!r} not found in {table}")

    # ------------------------------------------------------------------
    # Mutations

    @staticmethod
    def _coerce(field: Field, value: Any) -> Any:
        if field.type == "number":
            if value is None or (isinstance(value, str) and not value.strip()):
                return None
            return _finite_number(value)
        if field.type == "ref":
            return value
        return "" if value is None else str(value)

    def add_row(self, table: str, values: dict[str, Any] | None = None) -> dict[str, Any]:
        meta = self._meta(table)
        row: dict[str, Any] = {}
        for field in meta.fields:
            if field.default is not None and not field.computed:
                row[field.key] = field.default
        row["id"] = row.get("id") or f"{table}_{uuid.uuid4().hex}"
        for key, value in (values or {}).items():
            field = meta.get_field(key)
            if field is None or field.computed or key == "id":
                continue
            row[key] = self._coerce(field, value)
        self.data.setdefault(table, []).append(row)
        self.recompute(table)
        self.save()
        return row

    def set_value(self, table: str, row_id: str, key: str, value: Any) -> dict[str, Any]:
        return self.set_values(table, row_id, {key: value})

    def set_values(self, table: str, row_id: str, values: dict[str, Any]) -> dict[str, Any]:
        """Write several plain fields of one row; nothing is written unless all keys are valid."""
        meta = self._meta(table)
        fields = []
        for key in values:
            field = meta.get_field(key)
            if field is None:
                raise UnknownFieldError(f"Unknown field {key!r} in table {table}")
            if field.computed:
                raise ReadOnlyFieldError(f"Field {key!r} in table {table} is computed")
            fields.append(field)
        row = self._find_row(table, row_id)
        for field in fields:
            row[field.key] = self._coerce(field, values[field.key])
        self.recompute(table)
        self.save()
        return row

    def select_row(self, table: str, row_id: str, selected: bool = True) -> None:
        self._meta(table)
        self._find_row(table, row_id)
        chosen = self.selection.setdefault(table, set())
        if selected:
            chosen.add(row_id)
        else:
            chosen.discard(row_id)

    def clear_selection(self, table: str) -> None:
        self.selection.pop(table, None)

    def delete_selected(self, table: str) -> int:
        self._meta(table)
        chosen = self.selection.pop(table, set())
        rows = self.data.get(table, [])
        kept = [row for row in rows if row.get("id") not in chosen]
        removed = len(rows) - len(kept)
        self.data[table] = kept
        self.recompute(table)
        self.save()
        return removed

    # ------------------------------------------------------------------
    # Computation

    def _ref(self, ref_id: Any) -> dict[str, Any] | None:
        if ref_id is None or ref_id == "":
            return None
        for rows in self.data.values():
            for row in rows:
                if row.get("id") == ref_id:
                    return row
        return None

    def build_context(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        return {
            "row": row,
            "this": row,
            "cols": row,
            "table": table,
            "data": self.data,
            "ref": self._ref,
        }

    def compute_rollup(self, table: str, rollup: Rollup, current_row: dict[str, Any]):
        source = rollup.source_table
        if source is None:
            return None
        base = self.build_context(table, current_row)
        passed = 0
        values: list[float] = []
        for candidate in self.data.get(source, []):
            scope = dict(base)
            scope["other"] = candidate
            scope[source] = candidate
            if rollup.where and not evaluate(rollup.where, scope):
                continue
            passed += 1
            number = _finite_number(evaluate(rollup.body, scope))
            if number is not None:
                values.append(number)

        if rollup.agg == "count":
            return passed
        if rollup.agg == "sum":
            return sum(values)
        if rollup.agg == "avg":
            return sum(values) / len(values) if values else 0
        if rollup.agg == "min":
            return min(values) if values else None
        if rollup.agg == "max":
            return max(values) if values else None
        return None

    def _recompute_table(self, table: str) -> None:
        rows = self.data.get(table, [])
        for field in self._order.get(table, []):
            for row in rows:
                if field.rollup is not None:
                    row[field.key] = self.compute_rollup(table, field.rollup, row)
                else:
                    row[field.key] = evaluate(field.compute_expr, self.build_context(table, row))

    def _cascade(self, table: str) -> list[str]:
        names = list(self.schema)
        visited: set[str] = set()
        finished: list[str] = []

        def visit(name: str) -> None:
            visited.add(name)
            for dependent in sorted(self._direct_dependents.get(name, ()), key=names.index):
                if dependent not in visited:
                    visit(dependent)
            finished.append(name)

        visit(table)
        return [name for name in reversed(finished) if name != table]

    def recompute(self, table: str) -> None:
        """Refresh ``table`` and every table whose rollups read from it."""
        self._meta(table)
        self._recompute_table(table)
        for dependent in self._cascade(table):
            self._recompute_table(dependent)

    def recompute_all(self) -> None:
        for table in self.schema:
            self._recompute_table(table)
        # second pass settles rollups over tables declared later
        for table in self.schema:
            if self.dependents.get(table):
                for dependent in self._cascade(table):
                    self._recompute_table(dependent)

    # ------------------------------------------------------------------
    # View

    def set_filter(self, table: str, text: str | None) -> None:
        self._meta(table)
        if text:
            self.filters[table] = str(text)
        else:
            self.filters.pop(table, None)

    def toggle_sort(self, table: str, key: str) -> dict[str, str] | None:
        meta = self._meta(table)
        if meta.get_field(key) is None:
            raise UnknownFieldError(f"Unknown field {key!r} in table {table}")
        current = self.sort.get(table)
        if current and current["key"] == key:
            if current["dir"] == "asc":
                self.sort[table] = {"key": key, "dir": "desc"}
            else:
                self.sort.pop(table)
        else:
            self.sort[table] = {"key": key, "dir": "asc"}
        return self.sort.get(table)

    def visible_rows(self, table: str) -> list[dict[str, Any]]:
        self._meta(table)
        rows = list(self.data.get(table, []))
        needle = self.filters.get(table, "").lower()
        if needle:
            rows = [
                row
                for row in rows
                if needle
                in json.dumps(row, separators=(",", ":"), ensure_ascii=False, default=str).lower()
            ]
        sorter = self.sort.get(table)
        if sorter:
            key = sorter["key"]
            rows.sort(
                key=cmp_to_key(lambda a, b: _compare_values(a.get(key), b.get(key))),
                reverse=sorter["dir"] == "desc",
            )
        return rows

    @staticmethod
    def _validate(field: Field, value: Any) -> str:
        if field.computed or field.type == "ref":
            return ""
        if field.required and (value is None or value == ""):
            return "Required"
        if field.type == "number" and _is_number(value):
            if field.min is not None and value < field.min:
                return f"Min {field.min}"
            if field.max is not None and value > field.max:
                return f"Max {field.max}"
        return ""

    def _cell(self, table: str, field: Field, row: dict[str, Any]) -> dict[str, Any]:
        value = row.get(field.key)
        classes: list[str] = []
        style: dict[str, str] = {}
        if field.format_rules:
            scope = self.build_context(table, row)
            for rule in field.format_rules:
                if evaluate(rule.when, scope):
                    if rule.add_class:
                        classes.extend(c for c in rule.add_class.split() if c not in classes)
                    style.update(rule.style)
        cell: dict[str, Any] = {
            "key": field.key,
            "value": value,
            "text": format_value(value, field),
            "editable": not field.computed,
            "error": self._validate(field, value),
            "classes": classes,
            "style": style,
        }
        if field.type == "ref":
            display = field.display_field or "id"
            options = []
            for ref_row in self.data.get(field.ref_table or "", []):
                label = ref_row.get(display)
                options.append({
                    "value": ref_row.get("id", ""),
                    "label": str(label if label is not None else ref_row.get("id", "")),
                    "selected": value not in (None, "") and value == ref_row.get("id"),
                })
            cell["options"] = options
        elif field.type == "select":
            cell["options"] = [
                {"value": option, "label": option, "selected": option == value}
                for option in field.options
            ]
        return cell

    def footer(self, table: str) -> dict[str, dict[str, str]]:
        """Sum and average of each visible column over the unfiltered rows."""
        meta = self._meta(table)
        totals: dict[str, dict[str, str]] = {"sum": {}, "avg": {}}
        rows = self.data.get(table, [])
        for field in meta.fields:
            if field.hidden:
                continue
            numbers = [row.get(field.key) for row in rows if _is_number(row.get(field.key))]
            decimals = field.decimals if field.decimals is not None else 2
            if numbers:
                total = sum(numbers)
                totals["sum"][field.key] = f"{total:.{decimals}f}"
                totals["avg"][field.key] = f"{total / len(numbers):.{decimals}f}"
            else:
                totals["sum"][field.key] = ""
                totals["avg"][field.key] = ""
        return totals

    def table_view(self, table: str) -> dict[str, Any]:
        meta = self._meta(table)
        columns = [field for field in meta.fields if not field.hidden]
        sorter = self.sort.get(table) or {}
        chosen = self.selection.get(table, set())
        rows = self.visible_rows(table)
        return {
            "name": table,
            "columns": [
                {
                    "key": field.key,
                    "label": field.label,
                    "type": field.type,
                    "computed": field.computed,
                    "required": field.required,
                    "sort": sorter.get("dir") if sorter.get("key") == field.key else None,
                }
                for field in columns
            ],
            "rows": [
                {
                    "id": row.get("id"),
                    "selected": row.get("id") in chosen,
                    "cells": [self._cell(table, field, row) for field in columns],
                }
                for row in rows
            ],
            "footer": self.footer(table),
            "filter": self.filters.get(table, ""),
            "rollups": [rollup.key for rollup in meta.rollups],
            "total_rows": len(self.data.get(table, [])),
        }

    def view(self) -> dict[str, dict[str, Any]]:
        return {table: self.table_view(table) for table in self.schema}

    # ------------------------------------------------------------------
    # Persistence

    def snapshot(self) -> dict[str, Any]:
        return {
            "schema": {name: meta.to_dict() for name, meta in self.schema.items()},
            "data": self.data,
            "dsl": self.dsl,
        }

    def save(self) -> bool:
        try:
            payload = json.dumps(self.snapshot())
            self.store.set_item(self.storage_key, payload)
        except (StorageError, TypeError, ValueError) as exc:
            logger.warning("Failed to save tables under %s: %s", self.storage_key, exc)
            return False
        return True

    def load(self) -> bool:
        """Restore state from the store; returns ``False`` when nothing usable is stored."""
        try:
            raw = self.store.get_item(self.storage_key)
        except StorageError as exc:
            logger.warning("Failed to read tables under %s: %s", self.storage_key, exc)
            return False
        if not raw:
            return False
        try:
            payload = json.loads(raw)
            schemas = {
                name: Schema.from_dict(meta)
                for name, meta in (payload.get("schema") or {}).items()
            }
            data = payload.get("data") or {}
            restored = {
                name: [dict(row) for row in data.get(name) or []] for name in schemas
            }
            self._install(schemas)
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Ignoring corrupt table state under %s: %s", self.storage_key, exc)
            return False
        self.data = restored
        self.dsl = payload.get("dsl") or ""
        return True

    def reset(self) -> None:
        self.schema = {}
        self.data = {}
        self.filters = {}
        self.sort = {}
        self.selection = {}
        self.dsl = ""
        self._order = {}
        self._direct_dependents = {}
        self.dependents = {}
        try:
            self.store.remove_item(self.storage_key)
        except StorageError as exc:
            logger.warning("Failed to clear tables under %s: %s", self.storage_key, exc)

    # ------------------------------------------------------------------
    # Export

    def export_workbook(self, table: str) -> Workbook:
        meta = self._meta(table)
        columns = [field for field in meta.fields if not field.hidden]
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = table[:31]
        sheet.append(["#"] + [field.label for field in columns])
        for cell in sheet[1]:
            cell.font = Font(bold=True)
        for index, row in enumerate(self.data.get(table, []), start=1):
            values = []
            for field in columns:
                value = row.get(field.key)
                values.append(value if _is_number(value) else format_value(value, field))
            sheet.append([index] + values)
        totals = self.footer(table)
        for label, key in (("Sum", "sum"), ("Avg", "avg")):
            sheet.append([label] + [totals[key].get(field.key, "") for field in columns])
            for cell in sheet[sheet.max_row]:
                cell.font = Font(italic=True)
        return workbook

    def export_xlsx(self, table: str) -> bytes:
        buf = io.BytesIO()
        self.export_workbook(table).save(buf)
        return buf.getvalue()
