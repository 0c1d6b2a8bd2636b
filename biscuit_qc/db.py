from datetime import datetime, timedelta, timezone
from typing import Any, Tuple

from flask import current_app

from config.supabase_schema import (
    column_name,
    from_supabase_row,
    table_columns,
    table_name,
    to_supabase_payload,
    unique_columns,
)


SESSION_LIFETIME = timedelta(hours=24)

# Postgres error code for unique constraint violations.
UNIQUE_VIOLATION_CODE = "23505"


def _ensure_supabase_client() -> Tuple[Any, str | None]:
    """Return the configured Supabase client or an explanatory error.

    Returns:
        tuple: (client, error). When Supabase is unavailable the client will be
        ``None`` and ``error`` will contain a message explaining the failure.
    """

    supabase = current_app.config.get("SUPABASE")
    if not supabase or not hasattr(supabase, "table"):
        return None, (
            "Supabase client is not configured. Set SUPABASE_URL and SUPABASE_"
            "SERVICE_KEY to enable the QC record store."
        )
    return supabase, None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_unique_violation(error: str | None) -> bool:
    """Return ``True`` when ``error`` reports a duplicate key."""

    if not error:
        return False
    lowered = error.lower()
    return UNIQUE_VIOLATION_CODE in lowered or "duplicate key" in lowered


def _rows(identifier: str, data) -> list[dict]:
    return [from_supabase_row(identifier, row) for row in data or []]


def _first(identifier: str, data) -> dict | None:
    rows = _rows(identifier, data)
    return rows[0] if rows else None


def _fetch_by(identifier: str, column: str, value, label: str) -> tuple[dict | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name(identifier))
            .select("*")
            .eq(column_name(identifier, column), value)
            .limit(1)
            .execute()
        )
        return _first(identifier, response.data), None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch {label}: {exc}"


def _insert(identifier: str, record: dict, label: str) -> tuple[dict | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    payload = to_supabase_payload(identifier, record)
    try:
        response = supabase.table(table_name(identifier)).insert(payload).execute()
        return _first(identifier, response.data), None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to create {label}: {exc}"


def _update_by(
    identifier: str, column: str, value, updates: dict, label: str
) -> tuple[dict | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    payload = dict(updates)
    if "updated_at" in table_columns(identifier):
        payload["updated_at"] = _now()
    payload = to_supabase_payload(identifier, payload)

    try:
        response = (
            supabase.table(table_name(identifier))
            .update(payload)
            .eq(column_name(identifier, column), value)
            .execute()
        )
        return _first(identifier, response.data), None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to update {label}: {exc}"


def _delete_by(identifier: str, column: str, value, label: str) -> tuple[dict | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name(identifier))
            .delete()
            .eq(column_name(identifier, column), value)
            .execute()
        )
        return _first(identifier, response.data), None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to delete {label}: {exc}"


def writable_fields(identifier: str, record: dict) -> dict:
    """Return the subset of ``record`` that maps onto real columns.

    Identity and bookkeeping columns are never writable by clients.
    """

    skipped = {"id", "created_at", "updated_at"}
    columns = table_columns(identifier)
    return {
        key: value
        for key, value in record.items()
        if key in columns and key not in skipped
    }


def _check_unique(identifier: str, record: dict, label: str) -> str | None:
    """Return a duplicate-key error when ``record`` collides with a stored row."""

    for column in unique_columns(identifier):
        value = record.get(column)
        if value in (None, ""):
            continue
        existing, error = _fetch_by(identifier, column, value, label)
        if error:
            return error
        if existing:
            return (
                f"Failed to create {label}: duplicate key value violates unique "
                f"constraint on {column} ({UNIQUE_VIOLATION_CODE})"
            )
    return None


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def fetch_products(
    *, search: str | None = None, active: bool | None = None
) -> tuple[list[dict] | None, str | None]:
    """Return products newest first, optionally filtered by activity or text."""

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        query = supabase.table(table_name("products")).select("*")
        if active is not None:
            query = query.eq(column_name("products", "is_active"), active)
        response = (
            query.order(column_name("products", "created_at"), desc=True).execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch products: {exc}"

    rows = _rows("products", response.data)
    needle = (search or "").strip().casefold()
    if needle:
        rows = [
            row
            for row in rows
            if any(
                needle in str(row.get(key) or "").casefold()
                for key in ("name", "product_id", "code")
            )
        ]
    return rows, None


def fetch_product(product_id) -> tuple[dict | None, str | None]:
    return _fetch_by("products", "id", product_id, "product")


def insert_product(record: dict) -> tuple[dict | None, str | None]:
    """Insert a product after checking its business identifier is unused."""

    error = _check_unique("products", record, "product")
    if error:
        return None, error
    payload = dict(record)
    payload.setdefault("is_active", True)
    payload["created_at"] = payload["updated_at"] = _now()
    return _insert("products", payload, "product")


def update_product(product_id, updates: dict) -> tuple[dict | None, str | None]:
    return _update_by("products", "id", product_id, updates, "product")


def delete_product(product_id) -> tuple[dict | None, str | None]:
    return _delete_by("products", "id", product_id, "product")


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def fetch_reports(
    filters: dict[str, Any] | None = None,
    *,
    date_from: str | None = None,
    date_to: str | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> tuple[list[dict] | None, str | None]:
    """Return reports newest first filtered by column equality and date range."""

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        query = supabase.table(table_name("reports")).select("*")
        for key, value in (filters or {}).items():
            if value in (None, ""):
                continue
            query = query.eq(column_name("reports", key), value)
        report_date = column_name("reports", "report_date")
        if date_from:
            query = query.gte(report_date, date_from)
        if date_to:
            query = query.lte(report_date, date_to)
        query = query.order(column_name("reports", "created_at"), desc=True)
        if limit is not None:
            query = query.range(offset, offset + limit - 1)
        response = query.execute()
        return _rows("reports", response.data), None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch reports: {exc}"


def fetch_report(report_id) -> tuple[dict | None, str | None]:
    return _fetch_by("reports", "id", report_id, "report")


def insert_report(record: dict) -> tuple[dict | None, str | None]:
    payload = dict(record)
    payload.setdefault("status", "draft")
    payload["created_at"] = payload["updated_at"] = _now()
    return _insert("reports", payload, "report")


def update_report(report_id, updates: dict) -> tuple[dict | None, str | None]:
    return _update_by("reports", "id", report_id, updates, "report")


def delete_report(report_id) -> tuple[dict | None, str | None]:
    return _delete_by("reports", "id", report_id, "report")


def fetch_report_parameters(report_id) -> tuple[list[dict] | None, str | None]:
    """Return the stored parameter readings of ``report_id``."""

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name("report_parameters"))
            .select("*")
            .eq(column_name("report_parameters", "report_id"), report_id)
            .execute()
        )
        return _rows("report_parameters", response.data), None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch report parameters: {exc}"


def insert_report_parameters(
    report_id, parameters: list[dict]
) -> tuple[list[dict] | None, str | None]:
    """Store parameter readings for ``report_id`` in a single insert."""

    if not parameters:
        return [], None

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    payload = [
        to_supabase_payload("report_parameters", {**param, "report_id": report_id})
        for param in parameters
    ]
    try:
        response = (
            supabase.table(table_name("report_parameters")).insert(payload).execute()
        )
        return _rows("report_parameters", response.data), None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to store report parameters: {exc}"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def fetch_settings(category: str | None = None) -> tuple[list[dict] | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        query = supabase.table(table_name("settings")).select("*")
        if category:
            query = query.eq(column_name("settings", "category"), category)
        response = query.order(column_name("settings", "key")).execute()
        return _rows("settings", response.data), None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch settings: {exc}"


def fetch_setting(key: str) -> tuple[dict | None, str | None]:
    return _fetch_by("settings", "key", key, "setting")


def upsert_setting(key: str, values: dict) -> tuple[dict | None, str | None]:
    """Create or update the setting identified by ``key``."""

    if not key:
        return None, "Setting key is required"

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    payload = {**values, "key": key, "updated_at": _now()}
    payload = to_supabase_payload("settings", payload)

    try:
        response = (
            supabase.table(table_name("settings"))
            .upsert(payload, on_conflict=column_name("settings", "key"))
            .execute()
        )
        return _first("settings", response.data), None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to update setting: {exc}"


def update_setting(key: str, updates: dict) -> tuple[dict | None, str | None]:
    return _update_by("settings", "key", key, updates, "setting")


def delete_setting(key: str) -> tuple[dict | None, str | None]:
    return _delete_by("settings", "key", key, "setting")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def _expired(record: dict, now: datetime) -> bool:
    expires_at = record.get("expires_at")
    if not expires_at:
        return False
    try:
        moment = datetime.fromisoformat(str(expires_at).replace("Z", "+00:00"))
    except ValueError:
        return False
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment < now


def fetch_session(session_key: str, now: datetime | None = None) -> tuple[dict | None, str | None]:
    """Return the live session for ``session_key``; expired sessions read as missing."""

    record, error = _fetch_by("sessions", "session_key", session_key, "session")
    if error or record is None:
        return None, error
    if _expired(record, now or datetime.now(timezone.utc)):
        return None, None
    return record, None


def save_session(
    session_key: str,
    *,
    user_id=None,
    data=None,
    expires_at: str | None = None,
) -> tuple[tuple[dict | None, bool], str | None]:
    """Create or refresh a session.

    Returns ``((record, created), error)`` where ``created`` tells whether a
    new row was inserted.
    """

    existing, error = _fetch_by("sessions", "session_key", session_key, "session")
    if error:
        return (None, False), error

    expiry = expires_at or (datetime.now(timezone.utc) + SESSION_LIFETIME).isoformat()
    if existing:
        record, error = _update_by(
            "sessions",
            "session_key",
            session_key,
            {"data": data, "expires_at": expiry},
            "session",
        )
        return (record, False), error

    record, error = _insert(
        "sessions",
        {
            "session_key": session_key,
            "user_id": user_id,
            "data": data,
            "expires_at": expiry,
            "created_at": _now(),
            "updated_at": _now(),
        },
        "session",
    )
    return (record, True), error


def delete_session(session_key: str) -> tuple[dict | None, str | None]:
    return _delete_by("sessions", "session_key", session_key, "session")


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


def fetch_signatures(
    *, active: bool | None = None, role: str | None = None
) -> tuple[list[dict] | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        query = supabase.table(table_name("signatures")).select("*")
        if active is not None:
            query = query.eq(column_name("signatures", "is_active"), active)
        if role:
            query = query.eq(column_name("signatures", "role"), role)
        response = (
            query.order(column_name("signatures", "role"))
            .order(column_name("signatures", "name"))
            .execute()
        )
        return _rows("signatures", response.data), None
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch signatures: {exc}"


def fetch_signature(signature_id) -> tuple[dict | None, str | None]:
    return _fetch_by("signatures", "id", signature_id, "signature")


def insert_signature(record: dict) -> tuple[dict | None, str | None]:
    payload = dict(record)
    payload.setdefault("is_active", True)
    payload.setdefault("is_default", False)
    payload["created_at"] = payload["updated_at"] = _now()
    return _insert("signatures", payload, "signature")


def update_signature(signature_id, updates: dict) -> tuple[dict | None, str | None]:
    return _update_by("signatures", "id", signature_id, updates, "signature")


def delete_signature(signature_id) -> tuple[dict | None, str | None]:
    return _delete_by("signatures", "id", signature_id, "signature")


# ---------------------------------------------------------------------------
# Application users
# ---------------------------------------------------------------------------


def fetch_app_users(include_sensitive: bool = False) -> tuple[list[dict] | None, str | None]:
    """Return application users stored in Supabase.

    Args:
        include_sensitive: When ``True`` the returned records include
            ``password_hash``.  Callers must not expose it.
    """

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = supabase.table(table_name("app_users")).select("*").execute()
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch app users: {exc}"

    data = _rows("app_users", response.data)
    if not include_sensitive:
        data = [
            {key: value for key, value in row.items() if key != "password_hash"}
            for row in data
        ]
    return data, None


def fetch_app_user_credentials(username: str) -> tuple[dict | None, str | None]:
    """Return the Supabase record for ``username`` if it exists."""

    records, error = fetch_app_users(include_sensitive=True)
    if error:
        return None, error

    normalized = (username or "").casefold()
    for record in records or []:
        if (record.get("username") or "").casefold() == normalized:
            return record, None
    return None, None
