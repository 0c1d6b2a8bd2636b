import io
import os
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from openpyxl import load_workbook

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

os.environ.setdefault("SECRET_KEY", "test")
os.environ.setdefault("SUPABASE_URL", "http://localhost")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "service")

import biscuit_qc
from biscuit_qc import create_app, get_store
from biscuit_qc.table_engine import STORAGE_KEY


SAMPLES_DSL = """
table Samples {
  fields:
    weight: number decimals=1 min=5
    grade: text
    net: number = weight - 1
  rollups:
    total = sum(Samples.weight)
}
"""


class FakeSupabase:
    def table(self, name):
        return SimpleNamespace(
            select=lambda *args, **kwargs: SimpleNamespace(
                execute=lambda: SimpleNamespace(data=[])
            )
        )


@pytest.fixture
def table_app(monkeypatch, tmp_path):
    monkeypatch.setattr(biscuit_qc, "create_client", lambda url, key: FakeSupabase())
    monkeypatch.setenv("QC_STORE_PATH", str(tmp_path / "qc.db"))
    app = create_app()
    app.testing = True
    return app


def _login(client, role="OPERATOR"):
    with client.session_transaction() as sess:
        sess["username"] = role
        sess["role"] = role


def _build(client, namespace="P-100", source=SAMPLES_DSL):
    return client.post(f"/api/tables/{namespace}/build", json={"dsl": source})


def test_table_api_requires_login(table_app):
    client = table_app.test_client()
    response = client.get("/api/tables/P-100")
    assert response.status_code == 401
    assert response.get_json()["description"] == "Authentication required"


def test_build_rejects_invalid_source(table_app):
    client = table_app.test_client()
    _login(client)

    missing = client.post("/api/tables/P-100/build", json={})
    assert missing.status_code == 400

    response = _build(client, source="table Broken {\n fields:\n  a: number\n")
    assert response.status_code == 400
    body = response.get_json()
    assert body["error"] == "invalid_schema"
    assert "Unterminated block" in body["description"]

    assert client.get("/api/tables/bad.namespace").status_code == 400


def test_build_add_and_edit_rows(table_app):
    client = table_app.test_client()
    _login(client)

    built = _build(client)
    assert built.status_code == 200
    assert list(built.get_json()["tables"]) == ["Samples"]

    added = client.post("/api/tables/P-100/Samples/rows", json={"values": {"weight": 12}})
    assert added.status_code == 201
    row = added.get_json()["row"]
    assert row["net"] == 11
    assert row["total"] == 12

    edited = client.patch(
        f"/api/tables/P-100/Samples/rows/{row['id']}", json={"key": "weight", "value": "3"}
    )
    assert edited.status_code == 200
    body = edited.get_json()
    assert body["row"]["net"] == 2
    cells = body["table"]["rows"][0]["cells"]
    assert cells[0]["error"] == "Min 5"

    read_only = client.patch(
        f"/api/tables/P-100/Samples/rows/{row['id']}", json={"values": {"net": 1}}
    )
    assert read_only.status_code == 400

    missing_row = client.patch(
        "/api/tables/P-100/Samples/rows/Samples_missing", json={"key": "weight", "value": 1}
    )
    assert missing_row.status_code == 404

    assert client.post("/api/tables/P-100/Nope/rows", json={}).status_code == 404


def test_state_is_persisted_per_namespace(table_app):
    client = table_app.test_client()
    _login(client)
    _build(client)
    client.post("/api/tables/P-100/Samples/rows", json={"values": {"weight": 8, "grade": "B"}})
    client.post("/api/tables/P-100/Samples/rows", json={"values": {"weight": 20, "grade": "A"}})

    with table_app.app_context():
        assert get_store().keys(STORAGE_KEY) == [f"{STORAGE_KEY}_P-100"]

    body = client.get("/api/tables/P-100?table=Samples&sort=weight&dir=desc").get_json()
    assert [row["cells"][0]["value"] for row in body["table"]["rows"]] == [20, 8]
    assert body["table"]["footer"]["sum"]["weight"] == "28.0"

    filtered = client.get(
        "/api/tables/P-100", query_string={"table": "Samples", "filter": '"grade":"B"'}
    ).get_json()
    assert len(filtered["table"]["rows"]) == 1

    assert client.get("/api/tables/P-200").get_json()["tables"] == {}
    assert client.get("/api/tables/P-100?table=Nope").status_code == 404
    assert client.get("/api/tables/P-100?table=Samples&sort=weight&dir=up").status_code == 400


def test_delete_rows_and_reset(table_app):
    client = table_app.test_client()
    _login(client)
    _build(client)
    row_id = client.post(
        "/api/tables/P-100/Samples/rows", json={"values": {"weight": 10}}
    ).get_json()["row"]["id"]

    assert client.post("/api/tables/P-100/Samples/delete", json={"ids": []}).status_code == 400
    deleted = client.post("/api/tables/P-100/Samples/delete", json={"ids": [row_id]})
    assert deleted.get_json()["deleted"] == 1

    assert client.post("/api/tables/P-100/reset").status_code == 403
    _login(client, "SUPERVISOR")
    reset = client.post("/api/tables/P-100/reset")
    assert reset.get_json()["tables"] == {}


def test_export_table_as_workbook(table_app):
    client = table_app.test_client()
    _login(client)
    _build(client)
    client.post("/api/tables/P-100/Samples/rows", json={"values": {"weight": 10, "grade": "A"}})

    response = client.get("/api/tables/P-100/Samples/export")
    assert response.status_code == 200
    assert response.mimetype == (
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    )
    assert "P-100_Samples.xlsx" in response.headers["Content-Disposition"]

    sheet = load_workbook(io.BytesIO(response.data))["Samples"]
    assert [cell.value for cell in sheet[1]] == ["#", "weight", "grade", "net", "total"]


def test_lock_window_settings_endpoint(table_app):
    client = table_app.test_client()
    _login(client)

    body = client.get("/api/time-slots/lock-window").get_json()
    assert body["minutes"] == 0
    assert body["summary"].startswith("Locking disabled")

    assert client.put("/api/time-slots/lock-window", json={"minutes": 30}).status_code == 403

    _login(client, "SUPERVISOR")
    assert client.put("/api/time-slots/lock-window", json={}).status_code == 400
    updated = client.put("/api/time-slots/lock-window", json={"minutes": 5000}).get_json()
    assert updated["minutes"] == 720


def test_evaluate_time_slots(table_app):
    client = table_app.test_client()
    _login(client, "SUPERVISOR")
    client.put("/api/time-slots/lock-window", json={"minutes": 30})

    table = {
        "id": "line-1",
        "header_rows": [["Check", "08:00", "09:00"]],
        "body_rows": [
            [
                "Weight",
                {"controls": [{"name": "w-0800", "value": "12"}]},
                {"controls": [{"name": "w-0900", "value": ""}]},
            ]
        ],
    }
    response = client.post("/api/time-slots/evaluate", json={"table": table, "now": "09:05"})
    assert response.status_code == 200
    body = response.get_json()
    assert body["slots"]["active_time"] == "09:00"
    assert [slot["locked"] for slot in body["slots"]["slots"]] == [True, False]
    assert body["lock_window"]["minutes"] == 30
    assert body["table"]["body_rows"][0][1]["controls"][0]["disabled"] is True

    no_times = {"header_rows": [["Check"]], "body_rows": [["Weight"]]}
    assert client.post("/api/time-slots/evaluate", json={"table": no_times}).status_code == 400
    assert client.post("/api/time-slots/evaluate", json={"table": "x"}).status_code == 400
    assert client.post(
        "/api/time-slots/evaluate", json={"table": table, "now": "soon"}
    ).status_code == 400


def test_compute_calculation_endpoint(table_app):
    client = table_app.test_client()
    _login(client)

    operations = client.get("/api/calculations/operations").get_json()["operations"]
    assert [op["value"] for op in operations][:2] == ["sum", "subtract"]

    response = client.post(
        "/api/calculations/compute",
        json={
            "calculation": {
                "steps": [
                    {
                        "id": "s1",
                        "operation": "divide",
                        "inputs": [
                            {"type": "parameter", "paramId": "defects"},
                            {"type": "constant", "value": 3},
                        ],
                    }
                ]
            },
            "parameters": {"defects": 10},
            "params": [{"id": "defects", "label": "Defects"}],
        },
    )
    body = response.get_json()
    assert body["result"] == 3.33
    assert body["preview"][0] == "Step 1 = [Defects] ÷ [3]"

    invalid = client.post("/api/calculations/compute", json={"calculation": "nope"})
    assert invalid.status_code == 400


def test_compute_endpoint_tolerates_malformed_steps(table_app):
    client = table_app.test_client()
    _login(client)

    response = client.post(
        "/api/calculations/compute",
        json={
            "calculation": {
                "steps": [
                    {"id": "s1", "operation": ["sum"], "inputs": [1, {"type": "parameter", "paramId": ["w"]}]}
                ]
            },
            "parameters": ["w"],
            "variables": "none",
            "params": "none",
        },
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["result"] is None
    assert body["calculation"]["steps"][0]["operation"] == "sum"
    assert body["calculation"]["steps"][0]["inputs"] == [{"type": "parameter", "paramId": ["w"]}]


def test_row_edit_is_all_or_nothing(table_app):
    client = table_app.test_client()
    _login(client)
    _build(client)
    row_id = client.post(
        "/api/tables/P-100/Samples/rows", json={"values": {"weight": 12}}
    ).get_json()["row"]["id"]

    computed = client.patch(
        f"/api/tables/P-100/Samples/rows/{row_id}", json={"values": {"weight": 30, "net": 1}}
    )
    assert computed.status_code == 400
    unknown = client.patch(
        f"/api/tables/P-100/Samples/rows/{row_id}", json={"values": {"weight": 30, "sugar": 1}}
    )
    assert unknown.status_code == 404
    listed_key = client.patch(f"/api/tables/P-100/Samples/rows/{row_id}", json={"key": ["weight"]})
    assert listed_key.status_code == 400

    rows = client.get("/api/tables/P-100?table=Samples").get_json()["table"]["rows"]
    assert rows[0]["cells"][0]["value"] == 12
