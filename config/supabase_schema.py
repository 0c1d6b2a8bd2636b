"""Supabase table and column names used by the QC record store.

Every table the application reads or writes is listed here with its logical
column identifiers.  Deployments whose database uses different names can
override any entry through ``SUPABASE_SCHEMA_JSON`` (a JSON object of
``{"identifier": {"name": ..., "columns": {...}}}``) instead of editing code.
Identifiers without a mapping are passed through unchanged.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping


@dataclass(frozen=True)
class SupabaseTable:
    """Configuration for a Supabase table."""

    name: str
    columns: Mapping[str, str] = field(default_factory=dict)
    primary_key: str = "id"
    unique: tuple[str, ...] = ()


def _identity(*names: str) -> Dict[str, str]:
    return {name: name for name in names}


_DEFAULT_SUPABASE_SCHEMA: Dict[str, SupabaseTable] = {
    "products": SupabaseTable(
        name="products",
        columns=_identity(
            "id",
            "product_id",
            "name",
            "code",
            "batch_code",
            "ingredients_type",
            "has_cream",
            "standard_weight",
            "shelf_life",
            "cartons_per_pallet",
            "packs_per_box",
            "boxes_per_carton",
            "empty_box_weight",
            "empty_carton_weight",
            "aql_level",
            "day_format",
            "month_format",
            "description",
            "notes",
            "table_dsl",
            "is_active",
            "created_at",
            "updated_at",
        ),
        unique=("product_id",),
    ),
    "reports": SupabaseTable(
        name="reports",
        columns=_identity(
            "id",
            "product_id",
            "product_name",
            "batch_no",
            "report_date",
            "shift",
            "shift_duration",
            "production_line",
            "operator_name",
            "supervisor_name",
            "qc_inspector",
            "status",
            "score",
            "defects_count",
            "total_inspected",
            "pass_rate",
            "notes",
            "form_data",
            "calculations",
            "time_slots",
            "created_at",
            "updated_at",
        ),
    ),
    "report_parameters": SupabaseTable(
        name="report_parameters",
        columns=_identity(
            "id",
            "report_id",
            "section_id",
            "parameter_id",
            "parameter_name",
            "value",
            "numeric_value",
            "time_slot",
            "column_index",
            "row_index",
        ),
    ),
    "settings": SupabaseTable(
        name="settings",
        columns=_identity(
            "id",
            "key",
            "value",
            "data_type",
            "description",
            "category",
            "is_system",
            "created_at",
            "updated_at",
        ),
        unique=("key",),
    ),
    "sessions": SupabaseTable(
        name="sessions",
        columns=_identity(
            "id",
            "session_key",
            "user_id",
            "data",
            "expires_at",
            "created_at",
            "updated_at",
        ),
        unique=("session_key",),
    ),
    "signatures": SupabaseTable(
        name="signatures",
        columns=_identity(
            "id",
            "name",
            "role",
            "department",
            "signature_data",
            "is_default",
            "is_active",
            "created_at",
            "updated_at",
        ),
    ),
    "app_users": SupabaseTable(
        name="app_users",
        columns=_identity(
            "id",
            "username",
            "display_name",
            "email",
            "password_hash",
            "role",
        ),
        unique=("username",),
    ),
}


def _normalise_columns(columns: Any) -> Dict[str, str]:
    if not isinstance(columns, Mapping):
        return {}
    return {
        logical: actual
        for logical, actual in columns.items()
        if isinstance(logical, str) and isinstance(actual, str)
    }


def _load_schema_from_env() -> Dict[str, SupabaseTable]:
    """Merge ``SUPABASE_SCHEMA_JSON`` overrides into the default mapping."""

    schema = dict(_DEFAULT_SUPABASE_SCHEMA)

    raw_schema = os.getenv("SUPABASE_SCHEMA_JSON")
    if not raw_schema:
        return schema

    try:
        parsed = json.loads(raw_schema)
    except json.JSONDecodeError:
        return schema
    if not isinstance(parsed, Mapping):
        return schema

    for identifier, entry in parsed.items():
        if not isinstance(identifier, str) or not isinstance(entry, Mapping):
            continue
        name = entry.get("name")
        if not isinstance(name, str) or not name:
            continue
        default = schema.get(identifier)
        columns = dict(default.columns) if default else {}
        columns.update(_normalise_columns(entry.get("columns", {})))
        schema[identifier] = SupabaseTable(
            name=name,
            columns=columns,
            primary_key=default.primary_key if default else "id",
            unique=default.unique if default else (),
        )

    return schema


SUPABASE_SCHEMA: Dict[str, SupabaseTable] = _load_schema_from_env()


def table_name(identifier: str) -> str:
    """Return the configured Supabase table name for ``identifier``."""

    table = SUPABASE_SCHEMA.get(identifier)
    return table.name if table else identifier


def column_name(table_identifier: str, column_identifier: str) -> str:
    """Return the configured column name for ``table_identifier``."""

    return table_columns(table_identifier).get(column_identifier, column_identifier)


def table_columns(table_identifier: str) -> Mapping[str, str]:
    table = SUPABASE_SCHEMA.get(table_identifier)
    return table.columns if table else {}


def unique_columns(table_identifier: str) -> tuple[str, ...]:
    table = SUPABASE_SCHEMA.get(table_identifier)
    return table.unique if table else ()


def to_supabase_payload(
    table_identifier: str, payload: Mapping[str, Any]
) -> Dict[str, Any]:
    """Return ``payload`` with keys mapped to Supabase column names.

    Keys that are not logical columns of the table are dropped so clients
    cannot write arbitrary columns.
    """

    columns = table_columns(table_identifier)
    if not columns:
        return dict(payload)
    return {columns[key]: value for key, value in payload.items() if key in columns}


def from_supabase_row(table_identifier: str, row: Mapping[str, Any]) -> Dict[str, Any]:
    """Inverse of :func:`to_supabase_payload` for rows read back from Supabase."""

    reverse = {actual: logical for logical, actual in table_columns(table_identifier).items()}
    return {reverse.get(key, key): value for key, value in row.items()}
